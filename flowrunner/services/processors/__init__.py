"""Node processors.

- base.py: NodeProcessor contract
- registry.py: type -> processor map
- passthrough.py: START, TIME_BLOCK
- branching.py: IF, SWITCH
- llm_transform.py: LLM_TRANSFORM (via the llm queue)
"""

from flowrunner.core.config import Settings
from flowrunner.services.queue.broker import JobQueue
from .base import NodeProcessor
from .registry import NodeProcessorRegistry
from .passthrough import StartNodeProcessor, TimeBlockNodeProcessor, with_run_metadata
from .branching import IfNodeProcessor, SwitchNodeProcessor
from .llm_transform import LlmTransformNodeProcessor


def build_registry(queue: JobQueue, settings: Settings) -> NodeProcessorRegistry:
    """Registry with every built-in processor."""
    registry = NodeProcessorRegistry()
    registry.register(StartNodeProcessor())
    registry.register(TimeBlockNodeProcessor())
    registry.register(IfNodeProcessor())
    registry.register(SwitchNodeProcessor())
    registry.register(LlmTransformNodeProcessor(queue, timeout_seconds=settings.llm_job_timeout_seconds))
    return registry


__all__ = [
    "NodeProcessor",
    "NodeProcessorRegistry",
    "StartNodeProcessor",
    "TimeBlockNodeProcessor",
    "IfNodeProcessor",
    "SwitchNodeProcessor",
    "LlmTransformNodeProcessor",
    "build_registry",
    "with_run_metadata",
]
