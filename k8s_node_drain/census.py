from typing import List

from loguru import logger

from .kube import ClusterPodAPI
from .models import DrainOptions, PodFilters, PodRef


class PodCensus:
    """Read-only view of the pods scheduled on a node"""

    def __init__(self, pods: ClusterPodAPI):
        self.pods = pods

    def list_on_node(self, node: str, filters: PodFilters) -> List[PodRef]:
        if filters.node_name != node:
            filters = PodFilters(node_name=node, namespace=filters.namespace, label_selector=filters.label_selector)
        return self.pods.list_pods(filters)

    @staticmethod
    def unmanaged(pods: List[PodRef]) -> List[PodRef]:
        """Pods that an eviction destroys instead of rescheduling"""
        return [pod for pod in pods if not pod.has_controller and not pod.is_terminated and not pod.is_mirror]

    def check(self, node: str, options: DrainOptions) -> List[PodRef]:
        """Log what lives on a node before it is touched, return the unmanaged pods"""
        logger.info(f"Checking pods on node: {node}")
        pods = self.list_on_node(node, options.filters_for(node))
        logger.info(f"Found {len(pods)} pods on node {node}")

        unmanaged = self.unmanaged(pods)
        if unmanaged:
            logger.warning(f"Found {len(unmanaged)} pods without a controller on node {node}:")
            for pod in unmanaged:
                logger.warning(f"  {pod.key} ({pod.phase})")
        return unmanaged

    def remaining(self, node: str, options: DrainOptions) -> int:
        """Pods still waiting to leave the node during a drain"""
        pods = self.list_on_node(node, options.filters_for(node))
        return sum(
            1 for pod in pods
            if not pod.is_terminated
            and not pod.is_mirror
            and not (options.ignore_daemonsets and pod.is_daemonset)
        )
