"""Node processor registry.

Uses a registry pattern for handler dispatch without if-else chains. The
registry is populated once at startup and only read afterwards.
"""

from typing import Dict, List

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.errors import ProcessorNotFoundError
from .base import NodeProcessor

logger = get_logger(__name__)


class NodeProcessorRegistry:
    """Maps node type strings to processor instances."""

    def __init__(self):
        self._processors: Dict[str, NodeProcessor] = {}

    def register(self, processor: NodeProcessor) -> None:
        node_type = processor.get_node_type()
        if node_type in self._processors:
            logger.warning("Replacing node processor", node_type=node_type)
        self._processors[node_type] = processor
        logger.debug("Node processor registered", node_type=node_type,
                     processor=type(processor).__name__)

    def get_processor(self, node_type: str) -> NodeProcessor:
        """Return the processor for ``node_type``.

        Raises:
            ProcessorNotFoundError: If nothing is registered for the type
        """
        processor = self._processors.get(node_type)
        if processor is None:
            raise ProcessorNotFoundError(node_type)
        return processor

    def has_processor(self, node_type: str) -> bool:
        return node_type in self._processors

    def all_processors(self) -> List[NodeProcessor]:
        return list(self._processors.values())

    def node_types(self) -> List[str]:
        return sorted(self._processors)
