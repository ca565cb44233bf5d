"""
SQLite-backed Task Store and Event Log.

Projects, tasks and events survive restarts. All access goes through one
connection guarded by a lock and is pushed onto a worker thread with
``asyncio.to_thread`` so the event loop never blocks on disk I/O. Writes are
always scoped to a single task_id or project id.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from orchestrator.models.event import Event, Severity
from orchestrator.models.project import Project
from orchestrator.models.task import ExecutionState, Task
from orchestrator.services.schema import EVENTS, PROJECTS, TASKS, init_schema, validate_identifier

logger = structlog.get_logger()

_UPDATABLE_TASK_FIELDS = frozenset(TASKS.column_names) - {"task_id"}
# fixed at submission; project_id is only ever cleared by deleting the project
_CREATION_TASK_FIELDS = frozenset({"task_id", "project_id", "tenant_id", "initiated_at"})


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        # fixed width so lexicographic order matches time order
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    return value


def _row_values(model, columns: tuple[str, ...]) -> list[Any]:
    data = model.model_dump()
    return [_to_db(data.get(c)) for c in columns]


class TaskStore:
    """Durable state for projects, tasks and their append-only events."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._configure_connection()
        init_schema(self._conn)

    def _configure_connection(self) -> None:
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        def _locked():
            with self._lock:
                with self._conn:
                    return fn(self._conn)

        return await asyncio.to_thread(_locked)

    # ── Projects ──────────────────────────────────────────────────

    async def create_project(self, project: Project) -> Project:
        columns = PROJECTS.column_names
        sql = (
            f"INSERT INTO {PROJECTS.name} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        values = _row_values(project, columns)
        await self._run(lambda conn: conn.execute(sql, values))
        await logger.ainfo("Project created", project_id=project.id, name=project.name)
        return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        row = await self._run(
            lambda conn: conn.execute(
                f"SELECT * FROM {PROJECTS.name} WHERE id = ?", (project_id,)
            ).fetchone()
        )
        return Project(**dict(row)) if row else None

    async def list_projects(self) -> list[Project]:
        rows = await self._run(
            lambda conn: conn.execute(
                f"SELECT * FROM {PROJECTS.name} ORDER BY created_at DESC"
            ).fetchall()
        )
        return [Project(**dict(r)) for r in rows]

    async def delete_project(self, project_id: str) -> bool:
        cursor = await self._run(
            lambda conn: conn.execute(f"DELETE FROM {PROJECTS.name} WHERE id = ?", (project_id,))
        )
        return cursor.rowcount > 0

    async def mark_project_synced(self, project_id: str, when: Optional[datetime] = None) -> None:
        when = when or datetime.now(timezone.utc)
        await self._run(
            lambda conn: conn.execute(
                f"UPDATE {PROJECTS.name} SET last_synced = ? WHERE id = ?",
                (_to_db(when), project_id),
            )
        )

    # ── Tasks ─────────────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        columns = TASKS.column_names
        sql = (
            f"INSERT INTO {TASKS.name} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        values = _row_values(task, columns)
        await self._run(lambda conn: conn.execute(sql, values))
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        row = await self._run(
            lambda conn: conn.execute(
                f"SELECT * FROM {TASKS.name} WHERE task_id = ?", (task_id,)
            ).fetchone()
        )
        return Task(**dict(row)) if row else None

    async def update_task(self, task_id: str, **fields: Any) -> None:
        """Update selected columns of one task. Field names are allow-listed."""
        if not fields:
            return
        for name in fields:
            if name not in _UPDATABLE_TASK_FIELDS:
                raise ValueError(f"Unknown task field: {name!r}")
            validate_identifier(name)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_to_db(v) for v in fields.values()] + [task_id]
        await self._run(
            lambda conn: conn.execute(
                f"UPDATE {TASKS.name} SET {assignments} WHERE task_id = ?", values
            )
        )

    async def save_task(self, task: Task) -> None:
        """Persist every mutable field of ``task``."""
        data = task.model_dump()
        await self.update_task(
            task.task_id, **{k: data[k] for k in TASKS.column_names if k not in _CREATION_TASK_FIELDS}
        )

    async def list_recent_tasks(self, limit: int = 100, tenant_id: Optional[str] = None) -> list[Task]:
        def _query(conn):
            if tenant_id is None:
                return conn.execute(
                    f"SELECT * FROM {TASKS.name} ORDER BY initiated_at DESC LIMIT ?", (limit,)
                ).fetchall()
            return conn.execute(
                f"SELECT * FROM {TASKS.name} WHERE tenant_id = ? "
                "ORDER BY initiated_at DESC LIMIT ?",
                (tenant_id, limit),
            ).fetchall()

        rows = await self._run(_query)
        return [Task(**dict(r)) for r in rows]

    async def list_queued_tasks(self, tenant_id: Optional[str] = None) -> list[Task]:
        """Queued tasks, oldest first (dispatch order)."""

        def _query(conn):
            sql = f"SELECT * FROM {TASKS.name} WHERE execution_state = ?"
            params: list[Any] = [ExecutionState.QUEUED.value]
            if tenant_id is not None:
                sql += " AND tenant_id = ?"
                params.append(tenant_id)
            return conn.execute(sql + " ORDER BY initiated_at ASC", params).fetchall()

        rows = await self._run(_query)
        return [Task(**dict(r)) for r in rows]

    async def list_unfinished_tasks(self) -> list[Task]:
        """Tasks that were mid-execution, i.e. neither queued nor terminal."""
        idle = (
            ExecutionState.QUEUED.value,
            ExecutionState.COMPLETED.value,
            ExecutionState.FAILED.value,
        )
        rows = await self._run(
            lambda conn: conn.execute(
                f"SELECT * FROM {TASKS.name} WHERE execution_state NOT IN (?, ?, ?) "
                "ORDER BY initiated_at ASC",
                idle,
            ).fetchall()
        )
        return [Task(**dict(r)) for r in rows]

    async def list_tasks_by_project(self, project_id: str, limit: int = 100) -> list[Task]:
        rows = await self._run(
            lambda conn: conn.execute(
                f"SELECT * FROM {TASKS.name} WHERE project_id = ? "
                "ORDER BY initiated_at DESC LIMIT ?",
                (project_id, limit),
            ).fetchall()
        )
        return [Task(**dict(r)) for r in rows]

    # ── Events ────────────────────────────────────────────────────

    async def append_event(
        self, task_id: str, message: str, severity: Severity = Severity.INFO
    ) -> Event:
        event = Event(task_id=task_id, event_message=message, severity=severity)
        columns = tuple(c for c in EVENTS.column_names if c != "event_id")
        sql = (
            f"INSERT INTO {EVENTS.name} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        values = _row_values(event, columns)
        cursor = await self._run(lambda conn: conn.execute(sql, values))
        event.event_id = cursor.lastrowid
        return event

    async def list_events(self, task_id: str, after_id: Optional[int] = None) -> list[Event]:
        def _query(conn):
            if after_id is None:
                return conn.execute(
                    f"SELECT * FROM {EVENTS.name} WHERE task_id = ? "
                    "ORDER BY event_time ASC, event_id ASC",
                    (task_id,),
                ).fetchall()
            return conn.execute(
                f"SELECT * FROM {EVENTS.name} WHERE task_id = ? AND event_id > ? "
                "ORDER BY event_time ASC, event_id ASC",
                (task_id, after_id),
            ).fetchall()

        rows = await self._run(_query)
        return [Event(**dict(r)) for r in rows]
