"""Tests for the live log fan-out and the EventLog."""

from __future__ import annotations

import pytest

from orchestrator.models.event import Severity
from orchestrator.models.task import ExecutionState
from orchestrator.services.log_hub import LogHub, completion_payload


class TestLogHub:
    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self):
        hub = LogHub()
        async with hub.subscribe("t1") as a, hub.subscribe("t1") as b:
            hub.publish("t1", {"event_id": 1})
            assert a.get_nowait() == {"event_id": 1}
            assert b.get_nowait() == {"event_id": 1}

    @pytest.mark.asyncio
    async def test_publish_is_scoped_to_task(self):
        hub = LogHub()
        async with hub.subscribe("t1") as queue:
            hub.publish("t2", {"event_id": 1})
            assert queue.empty()

    @pytest.mark.asyncio
    async def test_unsubscribe_on_exit(self):
        hub = LogHub()
        async with hub.subscribe("t1"):
            assert hub.subscriber_count("t1") == 1
        assert hub.subscriber_count("t1") == 0
        hub.publish("t1", {"event_id": 1})  # no subscribers, no error

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self):
        hub = LogHub(max_queue_size=2)
        async with hub.subscribe("t1") as queue:
            for i in range(3):
                hub.publish("t1", {"event_id": i})
            assert [queue.get_nowait()["event_id"] for _ in range(2)] == [1, 2]

    @pytest.mark.asyncio
    async def test_close_sends_completion(self):
        hub = LogHub()
        async with hub.subscribe("t1") as queue:
            hub.close("t1", ExecutionState.COMPLETED)
            assert queue.get_nowait() == {"type": "complete", "execution_state": "completed"}

    def test_completion_payload(self):
        assert completion_payload(ExecutionState.FAILED) == {"type": "complete", "execution_state": "failed"}


class TestEventLog:
    @pytest.mark.asyncio
    async def test_emit_persists_then_publishes(self, store, events, log_hub, sample_task):
        await store.create_task(sample_task)
        async with log_hub.subscribe(sample_task.task_id) as queue:
            event = await events.warning(sample_task.task_id, "Iteration 1 failed")

            payload = queue.get_nowait()
            assert payload["event_id"] == event.event_id
            assert payload["severity"] == "warning"

        stored = await store.list_events(sample_task.task_id)
        assert [(e.event_message, e.severity) for e in stored] == [("Iteration 1 failed", Severity.WARNING)]

    @pytest.mark.asyncio
    async def test_severity_helpers(self, store, events, sample_task):
        await store.create_task(sample_task)
        await events.info(sample_task.task_id, "a")
        await events.success(sample_task.task_id, "b")
        await events.error(sample_task.task_id, "c")
        severities = [e.severity for e in await store.list_events(sample_task.task_id)]
        assert severities == [Severity.INFO, Severity.SUCCESS, Severity.ERROR]
