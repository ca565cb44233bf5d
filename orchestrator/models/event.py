"""Event model — one append-only entry in a task's audit trail."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    INFO = "info"
    ERROR = "error"
    SUCCESS = "success"
    WARNING = "warning"


class Event(BaseModel):
    event_id: Optional[int] = None  # assigned by the store
    task_id: str
    event_message: str
    severity: Severity = Severity.INFO
    event_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_stream_payload(self) -> dict:
        """Shape sent to SSE subscribers."""
        return {
            "event_id": self.event_id,
            "event_message": self.event_message,
            "severity": self.severity.value,
            "event_time": self.event_time.isoformat(),
        }
