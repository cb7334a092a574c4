"""Execution event fan-out.

Events are delivered in-process to per-execution subscribers and to global
subscribers. Delivery is best effort: there is no replay, and a subscriber
that falls behind loses its oldest events.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set

from flowrunner.core.logging import get_logger
from .models import utcnow

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


class ExecutionEventType(str, Enum):
    EXECUTION_STARTED = "execution:started"
    EXECUTION_COMPLETED = "execution:completed"
    EXECUTION_FAILED = "execution:failed"
    NODE_STARTED = "node:started"
    NODE_COMPLETED = "node:completed"
    NODE_FAILED = "node:failed"
    NODE_SIGNATURE_REQUIRED = "node:signature_required"


TERMINAL_EVENT_TYPES = frozenset({
    ExecutionEventType.EXECUTION_COMPLETED,
    ExecutionEventType.EXECUTION_FAILED,
})


@dataclass
class ExecutionEvent:
    type: ExecutionEventType
    execution_id: str
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type.value,
            "executionId": self.execution_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }
        if self.node_id:
            data["nodeId"] = self.node_id
        if self.node_type:
            data["nodeType"] = self.node_type
        if self.error:
            data["error"] = self.error
        return data


class Subscription:
    """Async iterator over the events delivered to one subscriber."""

    def __init__(self, execution_id: Optional[str], maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.execution_id = execution_id
        self.queue: "asyncio.Queue[ExecutionEvent]" = asyncio.Queue(maxsize=maxsize)

    def put(self, event: ExecutionEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            logger.warning("Subscriber queue full, dropping oldest event",
                           execution_id=self.execution_id)
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> ExecutionEvent:
        """Next event; raises ``asyncio.TimeoutError`` after ``timeout`` seconds."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ExecutionEvent:
        return await self.queue.get()


class ExecutionEventEmitter:
    """Publishes execution events to execution-scoped and global subscribers."""

    def __init__(self):
        self._by_execution: Dict[str, Set[Subscription]] = {}
        self._global: Set[Subscription] = set()

    def emit(self, event: ExecutionEvent) -> None:
        subscribers = list(self._by_execution.get(event.execution_id, ())) + list(self._global)
        for subscription in subscribers:
            subscription.put(event)
        logger.debug("Event emitted", event_type=event.type.value,
                     execution_id=event.execution_id, node_id=event.node_id,
                     subscribers=len(subscribers))

    def subscribe(self, execution_id: str) -> Subscription:
        subscription = Subscription(execution_id)
        self._by_execution.setdefault(execution_id, set()).add(subscription)
        return subscription

    def subscribe_all(self) -> Subscription:
        subscription = Subscription(None)
        self._global.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.execution_id is None:
            self._global.discard(subscription)
            return
        subscribers = self._by_execution.get(subscription.execution_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._by_execution[subscription.execution_id]

    def subscriber_count(self, execution_id: Optional[str] = None) -> int:
        if execution_id is None:
            return len(self._global)
        return len(self._by_execution.get(execution_id, ()))

    # =========================================================================
    # EMIT HELPERS
    # =========================================================================

    def execution_started(self, execution_id: str, workflow_id: str, triggered_by: str) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.EXECUTION_STARTED,
            execution_id=execution_id,
            data={"workflowId": workflow_id, "triggeredBy": triggered_by},
        ))

    def execution_completed(self, execution_id: str, data: Dict[str, Any]) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.EXECUTION_COMPLETED,
            execution_id=execution_id,
            data=data,
        ))

    def execution_failed(self, execution_id: str, error: Dict[str, Any]) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.EXECUTION_FAILED,
            execution_id=execution_id,
            error=error,
        ))

    def node_started(self, execution_id: str, node_id: str, node_type: str) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.NODE_STARTED,
            execution_id=execution_id,
            node_id=node_id,
            node_type=node_type,
        ))

    def node_completed(self, execution_id: str, node_id: str, node_type: str,
                       output: Dict[str, Any], duration_ms: int) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.NODE_COMPLETED,
            execution_id=execution_id,
            node_id=node_id,
            node_type=node_type,
            data={"output": output, "durationMs": duration_ms},
        ))

    def node_failed(self, execution_id: str, node_id: str, node_type: str,
                    error: Optional[Dict[str, Any]]) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.NODE_FAILED,
            execution_id=execution_id,
            node_id=node_id,
            node_type=node_type,
            error=error,
        ))

    def node_signature_required(self, execution_id: str, node_id: str, node_type: str,
                                data: Dict[str, Any]) -> None:
        self.emit(ExecutionEvent(
            type=ExecutionEventType.NODE_SIGNATURE_REQUIRED,
            execution_id=execution_id,
            node_id=node_id,
            node_type=node_type,
            data=data,
        ))
