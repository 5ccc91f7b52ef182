"""Cluster API adapter built on the official kubernetes client"""

from typing import List, Optional, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from urllib3.exceptions import HTTPError

from .errors import NodeNotFound
from .models import NodeInfo, PodFilters, PodRef

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"


class ClusterNodeAPI(Protocol):
    def get_node(self, name: str) -> NodeInfo: ...

    def list_nodes(self, selector: Optional[str] = None) -> List[NodeInfo]: ...

    def set_schedulable(self, name: str, schedulable: bool) -> None: ...


class ClusterPodAPI(Protocol):
    def list_pods(self, filters: PodFilters) -> List[PodRef]: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status == 429 or (exc.status or 0) >= 500
    return isinstance(exc, HTTPError)


transient_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    reraise=True,
)


def error_reason(error: Exception) -> str:
    """Short description of a cluster call failure"""
    if isinstance(error, ApiException):
        return f"API error {error.status}: {error.reason}"
    return str(error)


def load_client_config(kubeconfig: Optional[str] = None, context: Optional[str] = None):
    """Load kubeconfig, falling back to the in-cluster service account"""
    try:
        config.load_kube_config(config_file=kubeconfig, context=context)
    except ConfigException:
        if kubeconfig or context:
            raise
        logger.debug("No kubeconfig found, trying in-cluster configuration")
        config.load_incluster_config()


def node_info_from_v1(node: client.V1Node) -> NodeInfo:
    conditions = (node.status.conditions if node.status else None) or []
    ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
    return NodeInfo(
        name=node.metadata.name,
        unschedulable=bool(node.spec and node.spec.unschedulable),
        labels=dict(node.metadata.labels or {}),
        ready=ready,
    )


def pod_ref_from_v1(pod: client.V1Pod) -> PodRef:
    annotations = pod.metadata.annotations or {}
    owners = pod.metadata.owner_references or []
    volumes = (pod.spec.volumes if pod.spec else None) or []
    return PodRef(
        namespace=pod.metadata.namespace,
        name=pod.metadata.name,
        node_name=pod.spec.node_name if pod.spec else "",
        owner_kinds=tuple(ref.kind for ref in owners),
        phase=(pod.status.phase if pod.status else None) or "Unknown",
        is_mirror=MIRROR_POD_ANNOTATION in annotations,
        has_local_storage=any(vol.empty_dir is not None for vol in volumes),
    )


class KubernetesHelper:
    """Helper class for Kubernetes node and pod operations"""

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None):
        self.core_v1 = core_v1 if core_v1 is not None else client.CoreV1Api()

    @classmethod
    def from_kubeconfig(cls, kubeconfig: Optional[str] = None, context: Optional[str] = None) -> "KubernetesHelper":
        load_client_config(kubeconfig, context)
        return cls()

    @transient_retry
    def get_node(self, name: str) -> NodeInfo:
        try:
            return node_info_from_v1(self.core_v1.read_node(name))
        except ApiException as e:
            if e.status == 404:
                raise NodeNotFound(name) from e
            logger.error(f"Failed to read node {name}: {e.reason}")
            raise

    @transient_retry
    def list_nodes(self, selector: Optional[str] = None) -> List[NodeInfo]:
        """Get nodes with optional label selector"""
        try:
            if selector:
                nodes = self.core_v1.list_node(label_selector=selector)
            else:
                nodes = self.core_v1.list_node()
            return [node_info_from_v1(node) for node in nodes.items]
        except ApiException as e:
            logger.error(f"Failed to get nodes: {e.reason}")
            raise

    def set_schedulable(self, name: str, schedulable: bool):
        body = {"spec": {"unschedulable": not schedulable}}
        try:
            self.core_v1.patch_node(name, body)
        except ApiException as e:
            if e.status == 404:
                raise NodeNotFound(name) from e
            raise

    @transient_retry
    def list_pods(self, filters: PodFilters) -> List[PodRef]:
        kwargs = {"field_selector": f"spec.nodeName={filters.node_name}"}
        if filters.label_selector:
            kwargs["label_selector"] = filters.label_selector
        if filters.namespace:
            pods = self.core_v1.list_namespaced_pod(filters.namespace, **kwargs)
        else:
            pods = self.core_v1.list_pod_for_all_namespaces(**kwargs)
        return [pod_ref_from_v1(pod) for pod in pods.items]

    def get_pod(self, namespace: str, name: str) -> Optional[PodRef]:
        """Read a single pod, None once it no longer exists"""
        try:
            return pod_ref_from_v1(self.core_v1.read_namespaced_pod(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def evict_pod(self, namespace: str, name: str, grace_period: Optional[int] = None):
        delete_options = None
        if grace_period is not None:
            delete_options = client.V1DeleteOptions(grace_period_seconds=grace_period)
        eviction = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            delete_options=delete_options,
        )
        self.core_v1.create_namespaced_pod_eviction(name=name, namespace=namespace, body=eviction)

    def delete_pod(self, namespace: str, name: str, grace_period: Optional[int] = None):
        self.core_v1.delete_namespaced_pod(name, namespace, grace_period_seconds=grace_period)
