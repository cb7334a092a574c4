"""In-process execution event fan-out."""

import asyncio

import pytest

from flowrunner.services.execution.events import (
    ExecutionEvent,
    ExecutionEventType,
    Subscription,
)


async def test_execution_subscribers_only_see_their_execution(events):
    mine = events.subscribe("exec-1")
    other = events.subscribe("exec-2")
    everything = events.subscribe_all()

    events.node_started("exec-1", "n1", "START")

    event = await mine.get(timeout=1)
    assert event.type == ExecutionEventType.NODE_STARTED
    assert event.node_id == "n1"
    assert (await everything.get(timeout=1)).execution_id == "exec-1"
    assert other.queue.empty()


async def test_unsubscribe_stops_delivery_and_drops_empty_buckets(events):
    subscription = events.subscribe("exec-1")
    everything = events.subscribe_all()
    assert events.subscriber_count("exec-1") == 1
    assert events.subscriber_count() == 1

    events.unsubscribe(subscription)
    events.unsubscribe(everything)
    events.execution_started("exec-1", "wf-1", "MANUAL")

    assert events.subscriber_count("exec-1") == 0
    assert events.subscriber_count() == 0
    assert subscription.queue.empty()


def test_full_subscriber_drops_oldest_event():
    subscription = Subscription("exec-1", maxsize=2)
    for node_id in ("a", "b", "c"):
        subscription.put(ExecutionEvent(ExecutionEventType.NODE_STARTED, "exec-1", node_id=node_id))

    assert subscription.queue.qsize() == 2
    assert subscription.queue.get_nowait().node_id == "b"
    assert subscription.queue.get_nowait().node_id == "c"


async def test_get_times_out():
    with pytest.raises(asyncio.TimeoutError):
        await Subscription("exec-1").get(timeout=0.01)


def test_event_serialization_omits_empty_fields():
    completed = ExecutionEvent(ExecutionEventType.EXECUTION_COMPLETED, "exec-1", data={"ok": True})
    assert completed.is_terminal
    assert set(completed.to_dict()) == {"type", "executionId", "timestamp", "data"}

    failed = ExecutionEvent(ExecutionEventType.NODE_FAILED, "exec-1", node_id="n1",
                            node_type="IF", error={"message": "bad"})
    data = failed.to_dict()
    assert not failed.is_terminal
    assert data["type"] == "node:failed"
    assert data["nodeId"] == "n1"
    assert data["nodeType"] == "IF"
    assert data["error"] == {"message": "bad"}
