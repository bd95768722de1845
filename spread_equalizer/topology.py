"""Evict pods so that topology spread constraints are honored again.

One pass works on one snapshot of the cluster:

1. every constraint active in a namespace (declared on pods or in the
   policy) gets a map of topology domain -> matching pods,
2. each domain holding more than ``minimum + maxSkew`` pods gets an
   eviction quota,
3. the quota is filled from the domain's members in a stable order and the
   picks are merged by pod identity,
4. the merged candidates are handed to the evictor one at a time.

Each topology key is balanced on its own; nested keys (rack in room in
building) are not related to each other.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ClusterStateError, EvictionError, PolicyError, SelectorError
from .policy import FailurePolicy, StrategyParams, validate_constraint
from .selectors import LabelSelector, parse_selector, selector_string

logger = logging.getLogger(__name__)

REASON = "PodTopologySpread"

NodeLabels = Mapping[str, Mapping[str, str]]
Predicate = Callable[[object], bool]


@dataclass(frozen=True, order=True)
class PodIdentity:
    namespace: str
    name: str

    @classmethod
    def of(cls, pod) -> "PodIdentity":
        return cls(pod.metadata.namespace, pod.metadata.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class TopologyDomain:
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


@dataclass
class DomainMembership:
    namespace: str
    topology_key: str
    max_skew: int
    selector: LabelSelector
    members: Dict[TopologyDomain, List[object]] = field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.topology_key} maxSkew={self.max_skew} selector={self.selector}"


@dataclass
class SkewRecord:
    membership: DomainMembership
    counts: Dict[TopologyDomain, int]
    minimum: int
    quotas: Dict[TopologyDomain, int]

    def skew(self, domain: TopologyDomain) -> int:
        return self.counts[domain] - self.minimum


@dataclass
class EvictionCandidate:
    pod: object
    node_name: str
    domain: TopologyDomain
    record: SkewRecord
    reason: str = REASON
    # every (constraint, domain) that picked this pod, first one included
    selected_by: List[Tuple[str, TopologyDomain]] = field(default_factory=list)

    @property
    def identity(self) -> PodIdentity:
        return PodIdentity.of(self.pod)


@dataclass
class PassResult:
    records: List[SkewRecord] = field(default_factory=list)
    candidates: List[EvictionCandidate] = field(default_factory=list)
    evicted: List[PodIdentity] = field(default_factory=list)
    refused: List[PodIdentity] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False

    @property
    def total_quota(self) -> int:
        return sum(sum(record.quotas.values()) for record in self.records)


def _cancelled(stop) -> bool:
    return stop is not None and stop.is_set()


def extract_constraints(pod) -> list:
    """Return the topology spread constraints ``pod`` declares, possibly none."""
    spec = getattr(pod, "spec", None)
    return list(getattr(spec, "topology_spread_constraints", None) or [])


def _constraint_key(constraint) -> Tuple[str, object, str]:
    return (
        constraint.topology_key,
        constraint.max_skew,
        selector_string(constraint.label_selector),
    )


def constraints_for_namespace(namespace: str, pods: Iterable, params: StrategyParams) -> list:
    """Distinct constraints active in ``namespace``.

    Pods are visited in identity order so the result is stable; constraints
    declared identically by many replicas are kept once.
    """
    found: Dict[Tuple[str, object, str], object] = {}
    for pod in sorted(pods, key=PodIdentity.of):
        for constraint in extract_constraints(pod):
            found.setdefault(_constraint_key(constraint), constraint)
    for constraint in params.namespaced_constraints.get(namespace, ()):
        found.setdefault(_constraint_key(constraint), constraint)
    return list(found.values())


def index_node_labels(nodes: Iterable) -> Dict[str, Dict[str, str]]:
    return {node.metadata.name: dict(node.metadata.labels or {}) for node in nodes}


def build_domain_membership(
    namespace: str,
    constraint,
    pods: Iterable,
    node_labels: NodeLabels,
    is_evictable: Optional[Predicate] = None,
) -> Optional[DomainMembership]:
    """Group the namespace's pods into the constraint's topology domains.

    Every domain seen on any node is present, even with no members, so that
    an empty domain can serve as the skew baseline. Returns None when the
    constraint's label selector cannot be parsed.
    """
    key = constraint.topology_key
    try:
        selector = parse_selector(constraint.label_selector)
    except SelectorError as exc:
        logger.error(
            "couldn't parse label selector of constraint on %s in namespace %s, skipping it: %s",
            key,
            namespace,
            exc,
        )
        return None

    members: Dict[TopologyDomain, List[object]] = {}
    # an empty label value does not name a domain
    for labels in node_labels.values():
        if labels.get(key):
            members.setdefault(TopologyDomain(key, labels[key]), [])

    for pod in pods:
        if pod.metadata.namespace != namespace:
            continue
        node_name = pod.spec.node_name
        if not node_name:
            continue
        labels = node_labels.get(node_name)
        if labels is None:
            logger.debug(
                "pod %s/%s is on node %s which is not known, ignoring it",
                namespace,
                pod.metadata.name,
                node_name,
            )
            continue
        if not labels.get(key):
            continue
        if not selector.matches(pod.metadata.labels):
            continue
        if is_evictable is not None and not is_evictable(pod):
            continue
        members[TopologyDomain(key, labels[key])].append(pod)

    return DomainMembership(
        namespace=namespace,
        topology_key=key,
        max_skew=constraint.max_skew,
        selector=selector,
        members=members,
    )


def evaluate_skew(membership: DomainMembership) -> SkewRecord:
    validate_constraint(membership.max_skew, membership.topology_key)
    counts = {domain: len(pods) for domain, pods in membership.members.items()}
    minimum = min(counts.values()) if counts else 0
    quotas = {}
    for domain, count in counts.items():
        skew = count - minimum
        if skew > membership.max_skew:
            quotas[domain] = skew - membership.max_skew
    for domain in sorted(counts):
        logger.debug(
            "namespace %s, %s: %s has %d pods (min %d, quota %d)",
            membership.namespace,
            membership.describe(),
            domain,
            counts[domain],
            minimum,
            quotas.get(domain, 0),
        )
    return SkewRecord(membership=membership, counts=counts, minimum=minimum, quotas=quotas)


def _timestamp(value) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.timestamp()


def pod_sort_key(pod):
    """Lowest priority first, then newest, then by identity."""
    priority = pod.spec.priority if pod.spec.priority is not None else 0
    started = _timestamp(getattr(pod.status, "start_time", None))
    if started is None:
        started = _timestamp(pod.metadata.creation_timestamp)
    start_ts = float("inf") if started is None else started
    return (priority, -start_ts, pod.metadata.namespace, pod.metadata.name)


def select_candidates(
    records: Sequence[SkewRecord],
    is_evictable: Optional[Predicate] = None,
) -> List[EvictionCandidate]:
    """Fill every quota from its domain and merge the picks by pod identity."""
    chosen: Dict[PodIdentity, EvictionCandidate] = {}
    for record in records:
        description = record.membership.describe()
        for domain in sorted(record.quotas):
            quota = record.quotas[domain]
            members = record.membership.members[domain]
            if is_evictable is not None:
                members = [pod for pod in members if is_evictable(pod)]
            ordered = sorted(members, key=pod_sort_key)
            if len(ordered) < quota:
                logger.warning(
                    "domain %s in namespace %s is %d pods over its skew limit but only "
                    "%d can be evicted; %d pod(s) will remain imbalanced",
                    domain,
                    record.membership.namespace,
                    quota,
                    len(ordered),
                    quota - len(ordered),
                )
            for pod in ordered[:quota]:
                identity = PodIdentity.of(pod)
                candidate = chosen.get(identity)
                if candidate is None:
                    candidate = EvictionCandidate(
                        pod=pod,
                        node_name=pod.spec.node_name,
                        domain=domain,
                        record=record,
                    )
                    chosen[identity] = candidate
                candidate.selected_by.append((description, domain))
    return list(chosen.values())


def dispatch_evictions(
    candidates: Sequence[EvictionCandidate],
    evictor,
    on_error: FailurePolicy = FailurePolicy.ABORT,
    stop=None,
    result: Optional[PassResult] = None,
) -> PassResult:
    """Ask ``evictor`` to evict each candidate in order.

    A refusal leaves the pod in place for a later pass. An
    :class:`EvictionError` is recorded and, under ``FailurePolicy.ABORT``,
    ends the dispatch.
    """
    result = result if result is not None else PassResult()
    for candidate in candidates:
        if _cancelled(stop):
            logger.warning("pass cancelled, %s and later candidates not evicted", candidate.identity)
            result.cancelled = True
            break
        try:
            evicted = evictor.evict_pod(candidate.pod, candidate.node_name, candidate.reason)
        except EvictionError as exc:
            logger.error("error evicting pod %s: %s", candidate.identity, exc)
            result.errors.append(exc)
            if on_error is FailurePolicy.ABORT:
                result.aborted = True
                break
            continue
        if evicted:
            result.evicted.append(candidate.identity)
        else:
            result.refused.append(candidate.identity)
    return result


def evaluate_namespace(
    namespace: str,
    pods: Sequence,
    node_labels: NodeLabels,
    params: StrategyParams,
    is_evictable: Optional[Predicate] = None,
) -> List[SkewRecord]:
    counted = None if params.count_non_evictable else is_evictable
    records = []
    for constraint in constraints_for_namespace(namespace, pods, params):
        try:
            validate_constraint(constraint.max_skew, constraint.topology_key)
        except PolicyError as exc:
            logger.error("ignoring invalid constraint in namespace %s: %s", namespace, exc)
            continue
        membership = build_domain_membership(namespace, constraint, pods, node_labels, counted)
        if membership is None:
            continue
        records.append(evaluate_skew(membership))
    return records


def plan_topology_spread(
    cluster,
    is_evictable: Optional[Predicate] = None,
    params: Optional[StrategyParams] = None,
    stop=None,
) -> PassResult:
    """Build skew records and eviction candidates without evicting anything.

    Failing to list nodes or namespaces raises :class:`ClusterStateError`.
    Failing to list one namespace's pods skips that namespace and records
    the error on the result.
    """
    params = params or StrategyParams()
    result = PassResult()

    if _cancelled(stop):
        result.cancelled = True
        return result
    node_labels = index_node_labels(cluster.list_nodes())
    if _cancelled(stop):
        result.cancelled = True
        return result
    namespaces = [ns for ns in cluster.list_namespaces() if params.namespaces.allows(ns)]

    for namespace in namespaces:
        if _cancelled(stop):
            result.cancelled = True
            return result
        try:
            pods = cluster.list_pods(namespace)
        except ClusterStateError as exc:
            logger.error("skipping namespace %s: %s", namespace, exc)
            result.errors.append(exc)
            continue
        result.records.extend(
            evaluate_namespace(namespace, pods, node_labels, params, is_evictable)
        )

    result.candidates = select_candidates(result.records, is_evictable)
    logger.info(
        "%d constraint(s) evaluated, %d pod(s) selected for eviction",
        len(result.records),
        len(result.candidates),
    )
    return result


def remove_pods_violating_topology_spread(
    cluster,
    evictor,
    params: Optional[StrategyParams] = None,
    stop=None,
) -> PassResult:
    """Run one rebalancing pass.

    ``cluster`` provides ``list_nodes()``, ``list_namespaces()`` and
    ``list_pods(namespace)``; ``evictor`` provides ``is_evictable(pod)`` and
    ``evict_pod(pod, node_name, reason)``. ``stop`` is an optional
    ``threading.Event``; once set, no further API or eviction calls are made.
    """
    params = params or StrategyParams()
    result = plan_topology_spread(cluster, evictor.is_evictable, params, stop)
    if result.cancelled:
        return result
    return dispatch_evictions(result.candidates, evictor, params.on_error, stop, result)
