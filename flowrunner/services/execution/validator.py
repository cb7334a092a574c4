"""Static checks on a workflow graph before it is saved.

The orchestrator does not call this; its step bound is the runtime guard
against cycles that slip through.
"""

import re
from collections import deque
from typing import Dict, List, Set

from flowrunner.constants import TRIGGER_NODE_TYPES
from flowrunner.core.logging import get_logger
from flowrunner.services.parameter_resolver import find_template_paths
from .errors import WorkflowValidationError
from .models import WorkflowDefinition

logger = get_logger(__name__)

BLOCK_REFERENCE = re.compile(r"^blocks\.([\w-]+)(?:\.|$)")


class WorkflowValidator:
    """Raises ``WorkflowValidationError`` on the first broken rule."""

    def validate(self, definition: WorkflowDefinition) -> None:
        self._check_triggers(definition)
        self._check_edges(definition)
        self._check_cycles(definition)
        self._check_template_references(definition)
        logger.debug("Workflow validated", workflow_id=definition.id,
                     nodes=len(definition.nodes), edges=len(definition.edges))

    @staticmethod
    def _adjacency(definition: WorkflowDefinition) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
        for edge in definition.edges:
            adjacency.setdefault(edge.source_node_id, []).append(edge.target_node_id)
        return adjacency

    def _check_triggers(self, definition: WorkflowDefinition) -> None:
        triggers = [n for n in definition.nodes if n.type in TRIGGER_NODE_TYPES]
        if len(triggers) > 1:
            raise WorkflowValidationError(
                "MULTIPLE_TRIGGERS",
                "Workflow cannot have multiple trigger nodes",
                {"nodeIds": [n.id for n in triggers]},
            )

    def _check_edges(self, definition: WorkflowDefinition) -> None:
        for edge in definition.edges:
            if edge.source_node_id == edge.target_node_id:
                raise WorkflowValidationError(
                    "SELF_LOOP",
                    f"Edge {edge.id} connects node {edge.source_node_id} to itself",
                    {"edgeId": edge.id},
                )
            for node_id in (edge.source_node_id, edge.target_node_id):
                if definition.get_node(node_id) is None:
                    raise WorkflowValidationError(
                        "UNKNOWN_NODE",
                        f"Edge {edge.id} references non-existent node {node_id}",
                        {"edgeId": edge.id, "nodeId": node_id},
                    )

    def _check_cycles(self, definition: WorkflowDefinition) -> None:
        start = definition.trigger_node_id or next(
            (n.id for n in definition.nodes if n.type in TRIGGER_NODE_TYPES), None
        )
        if start is None:
            return

        adjacency = self._adjacency(definition)
        visited: Set[str] = set()
        on_path: Set[str] = set()
        stack = [(start, iter(adjacency.get(start, [])))]
        visited.add(start)
        on_path.add(start)

        while stack:
            node_id, neighbors = stack[-1]
            advanced = False
            for neighbor in neighbors:
                if neighbor in on_path:
                    raise WorkflowValidationError(
                        "CIRCULAR_DEPENDENCY",
                        f"Circular dependency detected at node {neighbor}",
                        {"nodeId": neighbor},
                    )
                if neighbor not in visited:
                    visited.add(neighbor)
                    on_path.add(neighbor)
                    stack.append((neighbor, iter(adjacency.get(neighbor, []))))
                    advanced = True
                    break
            if not advanced:
                on_path.discard(node_id)
                stack.pop()

    def _check_template_references(self, definition: WorkflowDefinition) -> None:
        for node in definition.nodes:
            ancestors = None
            for path in find_template_paths(node.config):
                match = BLOCK_REFERENCE.match(path)
                if not match:
                    continue
                referenced = match.group(1)
                if definition.get_node(referenced) is None:
                    raise WorkflowValidationError(
                        "UNKNOWN_REFERENCE",
                        f"Node {node.id} references non-existent node {referenced}",
                        {"nodeId": node.id, "referencedNodeId": referenced},
                    )
                if ancestors is None:
                    ancestors = upstream_node_ids(definition, node.id)
                if referenced not in ancestors:
                    raise WorkflowValidationError(
                        "INVALID_FORWARD_REFERENCE",
                        f"Node {node.id} references node {referenced} which is not upstream",
                        {"nodeId": node.id, "referencedNodeId": referenced},
                    )


def upstream_node_ids(definition: WorkflowDefinition, node_id: str) -> List[str]:
    """Every transitive ancestor of ``node_id``, nearest first (BFS over incoming edges)."""
    seen: Set[str] = set()
    ordered: List[str] = []
    queue = deque([node_id])
    while queue:
        current = queue.popleft()
        for edge in definition.incoming_edges(current):
            source = edge.source_node_id
            if source not in seen and source != node_id:
                seen.add(source)
                ordered.append(source)
                queue.append(source)
    return ordered
