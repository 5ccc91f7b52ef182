"""Error taxonomy for node maintenance runs"""

from typing import Optional


class NodeDrainError(Exception):
    """Base class for every error raised by k8s_node_drain"""


class NoMatchingNodes(NodeDrainError):
    def __init__(self, selector: str):
        super().__init__(f"No nodes found matching selector: {selector}")
        self.selector = selector


class NoValidNodes(NodeDrainError):
    pass


class NodeNotFound(NodeDrainError):
    def __init__(self, node: str):
        super().__init__(f"Node not found: {node}")
        self.node = node


class CordonFailed(NodeDrainError):
    def __init__(self, node: str, reason: str):
        super().__init__(f"Failed to cordon node {node}: {reason}")
        self.node = node
        self.reason = reason


class UncordonFailed(NodeDrainError):
    def __init__(self, node: str, reason: str):
        super().__init__(f"Failed to uncordon node {node}: {reason}")
        self.node = node
        self.reason = reason


class DrainFailed(NodeDrainError):
    def __init__(self, node: str, reason: str):
        super().__init__(f"Failed to drain node {node}: {reason}")
        self.node = node
        self.reason = reason


class DrainTimedOut(NodeDrainError):
    def __init__(self, node: str, timeout: float):
        super().__init__(f"Drain of node {node} timed out after {timeout:g} seconds")
        self.node = node
        self.timeout = timeout


class ConfirmationDenied(NodeDrainError):
    def __init__(self, prompt: str, summary: Optional[object] = None):
        super().__init__(f"Operation cancelled by user: {prompt}")
        self.prompt = prompt
        # partial BatchSummary when the denial happens mid-batch
        self.summary = summary
