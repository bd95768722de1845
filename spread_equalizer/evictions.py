"""Eviction safety checks and the rate-limited eviction executor."""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import urllib3
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .errors import EvictionError

logger = logging.getLogger(__name__)

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
SAFE_TO_EVICT_ANNOTATION = "cluster-autoscaler.kubernetes.io/safe-to-evict"
FORCE_EVICT_ANNOTATION = "descheduler.alpha.kubernetes.io/evict"

# API statuses that mean "not evicted this round" rather than failure
_REFUSAL_STATUSES = {404, 429}


def _is_managed_by_daemonset(pod) -> bool:
    for owner in pod.metadata.owner_references or []:
        if owner.kind == "DaemonSet":
            return True
    return False


def _uses_local_storage(pod) -> bool:
    for volume in pod.spec.volumes or []:
        if getattr(volume, "empty_dir", None) is not None:
            return True
    return False


def create_eviction_body(pod, grace_period: Optional[int]):
    delete_opts = client.V1DeleteOptions(
        grace_period_seconds=grace_period,
    )
    return client.V1Eviction(
        metadata=client.V1ObjectMeta(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
        ),
        delete_options=delete_opts,
    )


def eviction_api_for(client_module, core_api):
    """Prefer the policy/v1 eviction endpoint when the client ships it."""
    policy_api_cls = getattr(client_module, "PolicyV1Api", None)
    if policy_api_cls is not None:
        candidate = policy_api_cls()
        if hasattr(candidate, "create_namespaced_pod_eviction"):
            return candidate
    return core_api


class PodEvictor:
    """Decides whether a pod may be evicted and sends eviction requests.

    Limits are enforced here, so callers must route every eviction of a pass
    through one instance, sequentially.
    """

    def __init__(
        self,
        eviction_api,
        dry_run: bool = False,
        grace_period: Optional[int] = None,
        max_evictions: Optional[int] = None,
        max_pods_to_evict_per_node: Optional[int] = None,
        evict_local_storage_pods: bool = False,
        threshold_priority: Optional[int] = None,
    ):
        self.eviction_api = eviction_api
        self.dry_run = dry_run
        self.grace_period = grace_period
        self.max_evictions = max_evictions
        self.max_pods_to_evict_per_node = max_pods_to_evict_per_node
        self.evict_local_storage_pods = evict_local_storage_pods
        self.threshold_priority = threshold_priority
        self.node_pod_count: Dict[str, int] = defaultdict(int)
        self.evicted: List[Tuple[str, str, str]] = []
        self._global_limit_logged = False

    @property
    def total_evicted(self) -> int:
        return len(self.evicted)

    def is_evictable(self, pod) -> bool:
        annotations = pod.metadata.annotations or {}
        if annotations.get(MIRROR_POD_ANNOTATION):
            return False
        if FORCE_EVICT_ANNOTATION in annotations:
            return True
        if annotations.get(SAFE_TO_EVICT_ANNOTATION) == "false":
            return False
        if not pod.metadata.owner_references:
            return False
        if _is_managed_by_daemonset(pod):
            return False
        if pod.status is None or pod.status.phase not in {"Pending", "Running"}:
            return False
        if not self.evict_local_storage_pods and _uses_local_storage(pod):
            return False
        if self.threshold_priority is not None:
            priority = pod.spec.priority if pod.spec.priority is not None else 0
            if priority >= self.threshold_priority:
                return False
        return True

    def _limit_reached(self, node_name: str) -> bool:
        if self.max_evictions is not None and self.total_evicted >= self.max_evictions:
            if not self._global_limit_logged:
                logger.info(
                    "global eviction limit (%d) reached, skipping remaining evictions",
                    self.max_evictions,
                )
                self._global_limit_logged = True
            return True
        if (
            self.max_pods_to_evict_per_node is not None
            and self.node_pod_count[node_name] >= self.max_pods_to_evict_per_node
        ):
            logger.info(
                "per-node eviction limit (%d) reached for node %s",
                self.max_pods_to_evict_per_node,
                node_name,
            )
            return True
        return False

    def evict_pod(self, pod, node_name: str, reason: str) -> bool:
        """Evict ``pod`` from ``node_name``.

        Returns False when a limit or disruption budget refused the eviction;
        raises :class:`EvictionError` on any other API failure.
        """
        namespace, name = pod.metadata.namespace, pod.metadata.name
        if self._limit_reached(node_name):
            return False

        if not self.dry_run:
            body = create_eviction_body(pod, self.grace_period)
            try:
                self.eviction_api.create_namespaced_pod_eviction(
                    name=name,
                    namespace=namespace,
                    body=body,
                )
            except ApiException as exc:
                if exc.status in _REFUSAL_STATUSES:
                    logger.info(
                        "eviction of %s/%s refused (status %s): %s",
                        namespace,
                        name,
                        exc.status,
                        exc.reason,
                    )
                    return False
                raise EvictionError(
                    f"failed to evict {namespace}/{name}: {exc}",
                    namespace=namespace,
                    name=name,
                ) from exc
            except urllib3.exceptions.HTTPError as exc:
                raise EvictionError(
                    f"failed to evict {namespace}/{name}: {exc}",
                    namespace=namespace,
                    name=name,
                ) from exc

        self.node_pod_count[node_name] += 1
        self.evicted.append((namespace, name, node_name))
        logger.info(
            "%s pod %s/%s on node %s (reason=%s)",
            "would evict" if self.dry_run else "evicted",
            namespace,
            name,
            node_name,
            reason,
        )
        return True
