from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .errors import CordonFailed, NodeNotFound, UncordonFailed
from .kube import ClusterNodeAPI, error_reason


class CordonController:
    """Toggle the schedulable flag of a node; both directions are idempotent"""

    def __init__(self, nodes: ClusterNodeAPI, dry_run: bool = False):
        self.nodes = nodes
        self.dry_run = dry_run

    def cordon(self, node: str) -> bool:
        """Mark a node unschedulable, returns False if it already was"""
        logger.info(f"Cordoning node: {node}")
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would cordon node: {node}")
            return False

        try:
            changed = self._set_schedulable(node, False)
        except (NodeNotFound, ApiException, HTTPError) as e:
            raise CordonFailed(node, error_reason(e)) from e

        if changed:
            logger.success(f"Node {node} cordoned successfully.")
        else:
            logger.info(f"Node {node} already cordoned.")
        return changed

    def uncordon(self, node: str) -> bool:
        """Mark a node schedulable, returns False if it already was"""
        logger.info(f"Uncordoning node: {node}")
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would uncordon node: {node}")
            return False

        try:
            changed = self._set_schedulable(node, True)
        except (NodeNotFound, ApiException, HTTPError) as e:
            raise UncordonFailed(node, error_reason(e)) from e

        if changed:
            logger.success(f"Node {node} uncordoned successfully.")
        else:
            logger.info(f"Node {node} already schedulable.")
        return changed

    def _set_schedulable(self, node: str, schedulable: bool) -> bool:
        current = self.nodes.get_node(node)
        if current.unschedulable != schedulable:
            return False
        self.nodes.set_schedulable(node, schedulable)
        return True
