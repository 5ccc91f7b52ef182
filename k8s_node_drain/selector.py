from typing import List, Optional, Sequence

from loguru import logger

from .errors import NoMatchingNodes, NoValidNodes
from .kube import ClusterNodeAPI
from .models import NodeTarget, ResolvedFrom


class NodeSelector:
    """Resolve the nodes a batch run operates on"""

    def __init__(self, nodes: ClusterNodeAPI):
        self.nodes = nodes

    def resolve(self, explicit_names: Sequence[str], selector: Optional[str] = None) -> List[NodeTarget]:
        """
        Resolve explicit node names or a label selector into validated targets.

        A non-empty selector replaces the explicit names; the two are never merged.
        Unknown names are dropped with a warning.
        """
        if selector:
            logger.info(f"Getting nodes with selector: {selector}")
            matched = self.nodes.list_nodes(selector)
            if not matched:
                raise NoMatchingNodes(selector)
            if explicit_names:
                logger.warning(
                    f"Selector '{selector}' overrides the node names given on the command line: {', '.join(explicit_names)}"
                )
            names = [node.name for node in matched]
            resolved_from = ResolvedFrom.SELECTOR
            logger.info(f"Selected nodes: {' '.join(names)}")
        else:
            names = list(explicit_names)
            resolved_from = ResolvedFrom.EXPLICIT

        if not names:
            raise NoValidNodes("No nodes specified via arguments or selector.")

        return self._validate(names, resolved_from)

    def _validate(self, names: List[str], resolved_from: ResolvedFrom) -> List[NodeTarget]:
        logger.info("Validating node names...")
        available = {node.name: node for node in self.nodes.list_nodes()}

        targets = []
        seen = set()
        for name in names:
            if name in seen:
                logger.warning(f"Node listed more than once, processing it once: {name}")
                continue
            seen.add(name)

            node = available.get(name)
            if node is None:
                logger.error(f"Node not found: {name}")
                continue
            if node.unschedulable:
                logger.warning(f"Node is already cordoned: {name}")
            targets.append(NodeTarget(name=name, resolved_from=resolved_from))

        if not targets:
            raise NoValidNodes("No valid nodes found.")

        logger.success(f"Found {len(targets)} valid nodes.")
        return targets
