"""
Per-task publish/subscribe fan-out for live log delivery.

The work queue feeds workers; this hub is the separate push path from
workers to SSE subscribers. Events are persisted first (``EventLog.emit``)
and only then published, so a subscriber that replays the store and then
drains its queue sees every event, deduplicating by event_id.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from orchestrator.models.event import Event, Severity
from orchestrator.models.task import ExecutionState

logger = structlog.get_logger()


def completion_payload(state: ExecutionState) -> dict:
    return {"type": "complete", "execution_state": state.value}


class LogHub:
    """In-memory fan-out of task events to any number of subscribers."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    @asynccontextmanager
    async def subscribe(self, task_id: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(task_id, set()).add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(task_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[task_id]

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))

    def publish(self, task_id: str, payload: dict) -> None:
        for queue in list(self._subscribers.get(task_id, ())):
            if queue.full():
                # slow consumer: drop its oldest entry rather than block the worker
                queue.get_nowait()
                logger.warning("Log subscriber lagging, dropped oldest event", task_id=task_id)
            queue.put_nowait(payload)

    def close(self, task_id: str, state: ExecutionState) -> None:
        """Tell subscribers the task reached a terminal state."""
        self.publish(task_id, completion_payload(state))


class EventLog:
    """Append an event to the store, then push it to live subscribers."""

    def __init__(self, store, hub: LogHub):
        self.store = store
        self.hub = hub

    async def emit(self, task_id: str, message: str, severity: Severity = Severity.INFO) -> Event:
        event = await self.store.append_event(task_id, message, severity)
        self.hub.publish(task_id, event.to_stream_payload())
        return event

    async def info(self, task_id: str, message: str) -> Event:
        return await self.emit(task_id, message, Severity.INFO)

    async def warning(self, task_id: str, message: str) -> Event:
        return await self.emit(task_id, message, Severity.WARNING)

    async def error(self, task_id: str, message: str) -> Event:
        return await self.emit(task_id, message, Severity.ERROR)

    async def success(self, task_id: str, message: str) -> Event:
        return await self.emit(task_id, message, Severity.SUCCESS)

    def complete(self, task_id: str, state: ExecutionState) -> None:
        self.hub.close(task_id, state)
