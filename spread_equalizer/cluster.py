"""Read-only access to cluster state through the Kubernetes API."""

import logging
from typing import List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from .errors import ClusterStateError

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (ApiException, urllib3.exceptions.HTTPError)


def load_client(kubeconfig: Optional[str], context: Optional[str]):
    try:
        if kubeconfig or context:
            config.load_kube_config(config_file=kubeconfig, context=context)
        else:
            config.load_kube_config()
    except config.config_exception.ConfigException:
        logger.debug("no usable kubeconfig, falling back to in-cluster config")
        config.load_incluster_config()

    return client


class KubernetesClusterState:
    """Lists nodes, namespaces and pods for a single rebalancing pass."""

    def __init__(self, core_api: client.CoreV1Api, node_selector: Optional[str] = None):
        self.core_api = core_api
        self.node_selector = node_selector

    def list_nodes(self) -> List[client.V1Node]:
        try:
            nodes = self.core_api.list_node(label_selector=self.node_selector).items
        except _TRANSPORT_ERRORS as exc:
            raise ClusterStateError(f"couldn't list nodes: {exc}") from exc
        schedulable = [
            node for node in nodes if not getattr(node.spec, "unschedulable", False)
        ]
        logger.debug("listed %d nodes, %d schedulable", len(nodes), len(schedulable))
        return sorted(schedulable, key=lambda node: node.metadata.name)

    def list_namespaces(self) -> List[str]:
        try:
            namespaces = self.core_api.list_namespace().items
        except _TRANSPORT_ERRORS as exc:
            raise ClusterStateError(f"couldn't list namespaces: {exc}") from exc
        return sorted(ns.metadata.name for ns in namespaces)

    def list_pods(self, namespace: str) -> List[client.V1Pod]:
        try:
            return self.core_api.list_namespaced_pod(namespace=namespace).items
        except _TRANSPORT_ERRORS as exc:
            raise ClusterStateError(
                f"couldn't list pods in namespace {namespace}: {exc}",
                namespace=namespace,
            ) from exc
