"""Policy document model, loading and validation.

The policy file mirrors the descheduler's ``DeschedulerPolicy``; only the
``RemovePodsViolatingTopologySpreadConstraint`` strategy is understood, other
strategy entries are ignored.
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

import yaml
from kubernetes import client

from .errors import PolicyError, SelectorError
from .selectors import parse_selector

STRATEGY_NAME = "RemovePodsViolatingTopologySpreadConstraint"


class FailurePolicy(enum.Enum):
    """What the dispatcher does after an eviction API error."""

    ABORT = "abort"
    CONTINUE = "continue"


@dataclass
class Namespaces:
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.include and self.exclude:
            raise PolicyError("namespaces.include and namespaces.exclude are mutually exclusive")

    def allows(self, namespace: str) -> bool:
        if self.include:
            return namespace in self.include
        return namespace not in self.exclude


@dataclass
class StrategyParams:
    """Inputs threaded through one rebalancing pass."""

    namespaces: Namespaces = field(default_factory=Namespaces)
    # namespace -> constraints applied in addition to the ones pods declare
    namespaced_constraints: Dict[str, List[client.V1TopologySpreadConstraint]] = field(
        default_factory=dict
    )
    count_non_evictable: bool = False
    on_error: FailurePolicy = FailurePolicy.ABORT


@dataclass
class Policy:
    enabled: bool = True
    weight: int = 0
    params: StrategyParams = field(default_factory=StrategyParams)
    node_selector: Optional[str] = None
    evict_local_storage_pods: bool = False
    max_pods_to_evict_per_node: Optional[int] = None
    threshold_priority: Optional[int] = None


def validate_constraint(max_skew, topology_key) -> None:
    """Reject constraints the scheduler itself would refuse.

    ``maxSkew`` must be an integer of at least 1; it is never clamped.
    """
    if isinstance(max_skew, bool) or not isinstance(max_skew, int) or max_skew < 1:
        raise PolicyError(f"maxSkew must be an integer >= 1, got {max_skew!r}")
    if not topology_key or not isinstance(topology_key, str):
        raise PolicyError("topologyKey is required")


def _constraint_from_dict(raw: Mapping) -> client.V1TopologySpreadConstraint:
    if not isinstance(raw, Mapping):
        raise PolicyError(f"topology spread constraint must be a mapping, got {raw!r}")
    selector = raw.get("labelSelector")
    if selector is not None:
        if not isinstance(selector, Mapping):
            raise PolicyError(f"labelSelector must be a mapping, got {selector!r}")
        try:
            parse_selector(selector)
        except SelectorError as exc:
            raise PolicyError(f"invalid labelSelector: {exc}") from exc
        selector = client.V1LabelSelector(
            match_labels=selector.get("matchLabels"),
            match_expressions=[
                client.V1LabelSelectorRequirement(
                    key=expr.get("key"),
                    operator=expr.get("operator"),
                    values=expr.get("values"),
                )
                for expr in selector.get("matchExpressions") or []
            ]
            or None,
        )
    max_skew = raw.get("maxSkew")
    topology_key = raw.get("topologyKey")
    validate_constraint(max_skew, topology_key)
    return client.V1TopologySpreadConstraint(
        max_skew=max_skew,
        topology_key=topology_key,
        when_unsatisfiable=raw.get("whenUnsatisfiable", "DoNotSchedule"),
        label_selector=selector,
    )


def _as_list(value, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise PolicyError(f"{what} must be a list of strings, got {value!r}")
    return [str(item) for item in value]


def _as_mapping(value, what: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PolicyError(f"{what} must be a mapping, got {value!r}")
    return value


def _as_sequence(value, what: str) -> Sequence:
    if value is None:
        return []
    if isinstance(value, (str, Mapping)) or not isinstance(value, Sequence):
        raise PolicyError(f"{what} must be a list, got {value!r}")
    return value


def _as_bool(value, what: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise PolicyError(f"{what} must be true or false, got {value!r}")
    return value


def policy_from_dict(doc: Optional[Mapping]) -> Policy:
    """Build a :class:`Policy` from a parsed policy document."""
    doc = _as_mapping(doc, "policy document")

    strategies = _as_mapping(doc.get("strategies"), "strategies")
    entry = strategies.get(STRATEGY_NAME)
    if entry is None:
        # no strategies section at all means the only strategy we know is on
        strategy: Mapping = {"enabled": not strategies}
    else:
        strategy = _as_mapping(entry, STRATEGY_NAME)
    params_doc = _as_mapping(strategy.get("params"), "params")

    enabled = _as_bool(strategy.get("enabled"), "enabled")
    weight = strategy.get("weight", 0)
    if weight is None:
        weight = 0
    if isinstance(weight, bool) or not isinstance(weight, int):
        raise PolicyError(f"weight must be an integer, got {weight!r}")

    namespaces_doc = _as_mapping(params_doc.get("namespaces"), "namespaces")
    namespaces = Namespaces(
        include=_as_list(namespaces_doc.get("include"), "namespaces.include"),
        exclude=_as_list(namespaces_doc.get("exclude"), "namespaces.exclude"),
    )

    namespaced: Dict[str, List[client.V1TopologySpreadConstraint]] = {}
    items = _as_sequence(
        params_doc.get("namespacedTopologySpreadConstraints"),
        "namespacedTopologySpreadConstraints",
    )
    for item in items:
        item = _as_mapping(item, "namespacedTopologySpreadConstraints entry")
        namespace = item.get("namespace")
        if not namespace or not isinstance(namespace, str):
            raise PolicyError("namespacedTopologySpreadConstraints entry needs a namespace")
        constraints = _as_sequence(
            item.get("topologySpreadConstraints"), "topologySpreadConstraints"
        )
        namespaced.setdefault(namespace, []).extend(
            _constraint_from_dict(raw) for raw in constraints
        )

    max_per_node = doc.get("maxNoOfPodsToEvictPerNode")
    if max_per_node is not None and (
        isinstance(max_per_node, bool) or not isinstance(max_per_node, int) or max_per_node < 0
    ):
        raise PolicyError(f"maxNoOfPodsToEvictPerNode must be >= 0, got {max_per_node!r}")

    threshold = params_doc.get("thresholdPriority")
    if threshold is not None and (isinstance(threshold, bool) or not isinstance(threshold, int)):
        raise PolicyError(f"thresholdPriority must be an integer, got {threshold!r}")

    node_selector = doc.get("nodeSelector")
    if node_selector is not None and not isinstance(node_selector, str):
        raise PolicyError(f"nodeSelector must be a selector string, got {node_selector!r}")

    on_error = params_doc.get("onError", FailurePolicy.ABORT.value)
    try:
        failure_policy = FailurePolicy(on_error)
    except ValueError as exc:
        raise PolicyError(f"onError must be 'abort' or 'continue', got {on_error!r}") from exc

    return Policy(
        enabled=enabled,
        weight=weight,
        params=StrategyParams(
            namespaces=namespaces,
            namespaced_constraints=namespaced,
            count_non_evictable=_as_bool(params_doc.get("countNonEvictable"), "countNonEvictable"),
            on_error=failure_policy,
        ),
        node_selector=node_selector,
        evict_local_storage_pods=_as_bool(doc.get("evictLocalStoragePods"), "evictLocalStoragePods"),
        max_pods_to_evict_per_node=max_per_node,
        threshold_priority=threshold,
    )


def load_policy(path: str) -> Policy:
    try:
        with open(path, encoding="utf-8") as handle:
            doc = yaml.safe_load(handle)
    except OSError as exc:
        raise PolicyError(f"cannot read policy file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PolicyError(f"cannot parse policy file {path}: {exc}") from exc
    return policy_from_dict(doc)
