from __future__ import annotations

import asyncio

import pytest

from palchat.agents.events import PipelineEventBroker


def test_emit_without_listener_queues_backlog() -> None:
    broker = PipelineEventBroker(max_backlog=2)

    broker.emit("s1", "stage", node="extract_expression", data={"status": "running"})
    broker.emit("s1", "stage", node="extract_expression", data={"status": "complete"})
    broker.emit("s1", "pipeline", node="pipeline", data={"success": True})

    events = broker.drain("s1")
    assert [event["type"] for event in events] == ["stage", "pipeline"]
    assert events[-1]["sequence"] == 3
    assert events[-1]["sessionId"] == "s1"
    assert broker.drain("s1") == []


def test_clear_reports_dropped_events() -> None:
    broker = PipelineEventBroker()
    broker.emit("s1", "reply", node="conversation")

    assert broker.clear("s1") == 1
    assert broker.clear("unknown") == 0


@pytest.mark.asyncio
async def test_registered_listener_receives_events() -> None:
    broker = PipelineEventBroker()
    broker.register("live")

    waiter = asyncio.create_task(broker.next_event("live", timeout=1.0))
    await asyncio.sleep(0)
    broker.emit("live", "stage", node="evaluate_expression", data={"status": "complete"})

    event = await waiter
    assert event["node"] == "evaluate_expression"
    broker.unregister("live")


@pytest.mark.asyncio
async def test_next_event_times_out_without_events() -> None:
    broker = PipelineEventBroker()
    broker.register("quiet")

    with pytest.raises(asyncio.TimeoutError):
        await broker.next_event("quiet", timeout=0.01)
