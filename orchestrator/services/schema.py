"""
Typed schema builder for the task store.

Tables are declared as data and rendered to DDL here; every identifier is
checked against an allow-list pattern before it reaches a SQL string, so no
caller-supplied text is ever concatenated into a statement.

``init_schema`` is idempotent: tables and indexes use IF NOT EXISTS and
columns added to a declaration after a database was created are migrated in
with ALTER TABLE ADD COLUMN.
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass, field
from typing import Optional, Union

import structlog

logger = structlog.get_logger()

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

_RESERVED = frozenset(
    {
        "alter", "and", "as", "by", "create", "delete", "drop", "from", "group", "index",
        "insert", "into", "join", "not", "null", "or", "order", "pragma", "select", "set",
        "table", "union", "update", "values", "where",
    }
)

_COLUMN_TYPES = frozenset({"TEXT", "INTEGER", "REAL", "BLOB"})
_ON_DELETE = frozenset({"CASCADE", "SET NULL", "RESTRICT", "NO ACTION"})

Literal = Union[str, int, float, None]


def validate_identifier(name: str) -> str:
    """Return ``name`` if it is a safe SQL identifier, else raise ValueError."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    if name in _RESERVED:
        raise ValueError(f"Reserved word used as SQL identifier: {name!r}")
    return name


def _render_literal(value: Literal) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


@dataclass(frozen=True)
class Column:
    name: str
    type: str = "TEXT"
    primary_key: bool = False
    autoincrement: bool = False
    not_null: bool = False
    default: Literal = None
    references: Optional[tuple[str, str]] = None  # (table, column)
    on_delete: Optional[str] = None

    def __post_init__(self):
        validate_identifier(self.name)
        if self.type not in _COLUMN_TYPES:
            raise ValueError(f"Unsupported column type {self.type!r} for {self.name}")
        if self.autoincrement and not (self.primary_key and self.type == "INTEGER"):
            raise ValueError(f"AUTOINCREMENT requires an INTEGER PRIMARY KEY ({self.name})")
        if self.references:
            validate_identifier(self.references[0])
            validate_identifier(self.references[1])
        if self.on_delete is not None and self.on_delete not in _ON_DELETE:
            raise ValueError(f"Unsupported ON DELETE action {self.on_delete!r}")

    def ddl(self) -> str:
        parts = [self.name, self.type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
            if self.autoincrement:
                parts.append("AUTOINCREMENT")
        if self.not_null:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {_render_literal(self.default)}")
        if self.references:
            table, column = self.references
            parts.append(f"REFERENCES {table}({column})")
            if self.on_delete:
                parts.append(f"ON DELETE {self.on_delete}")
        return " ".join(parts)

    def can_add_later(self) -> bool:
        """Whether SQLite accepts this column in ALTER TABLE ADD COLUMN."""
        if self.primary_key:
            return False
        return not (self.not_null and self.default is None)


@dataclass(frozen=True)
class Index:
    name: str
    columns: tuple[str, ...]

    def __post_init__(self):
        validate_identifier(self.name)
        for column in self.columns:
            validate_identifier(column)


@dataclass(frozen=True)
class Table:
    name: str
    columns: tuple[Column, ...]
    indexes: tuple[Index, ...] = field(default_factory=tuple)

    def __post_init__(self):
        validate_identifier(self.name)
        names = [c.name for c in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate column in table {self.name}")
        for index in self.indexes:
            missing = set(index.columns) - set(names)
            if missing:
                raise ValueError(f"Index {index.name} references unknown columns {sorted(missing)}")

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def create_sql(self) -> str:
        body = ",\n    ".join(c.ddl() for c in self.columns)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {body}\n)"

    def index_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS {i.name} ON {self.name}({', '.join(i.columns)})"
            for i in self.indexes
        ]

    def add_column_sql(self, column: Column) -> str:
        if not column.can_add_later():
            raise ValueError(f"Column {self.name}.{column.name} cannot be added to an existing table")
        return f"ALTER TABLE {self.name} ADD COLUMN {column.ddl()}"


PROJECTS = Table(
    name="projects",
    columns=(
        Column("id", primary_key=True),
        Column("name", not_null=True),
        Column("repository_url", not_null=True),
        Column("local_path", not_null=True, default=""),
        Column("last_synced"),
        Column("created_at", not_null=True),
    ),
)

TASKS = Table(
    name="tasks",
    columns=(
        Column("task_id", primary_key=True),
        Column("user_prompt", not_null=True),
        Column("project_id", references=("projects", "id"), on_delete="SET NULL"),
        Column("repository_url", not_null=True),
        Column("source_branch", not_null=True, default="main"),
        Column("destination_branch", not_null=True),
        Column("execution_state", not_null=True, default="queued"),
        Column("pull_request_link"),
        Column("preview_url"),
        Column("iteration_count", "INTEGER", not_null=True, default=0),
        Column("initiated_at", not_null=True),
        Column("last_modified", not_null=True),
        Column("tenant_id", not_null=True, default="default"),
        Column("llm_provider"),
        Column("llm_model"),
        Column("llm_prompt_tokens", "INTEGER", not_null=True, default=0),
        Column("llm_completion_tokens", "INTEGER", not_null=True, default=0),
        Column("llm_total_tokens", "INTEGER", not_null=True, default=0),
        Column("preflight_seconds", "REAL", not_null=True, default=0.0),
        Column("total_job_seconds", "REAL"),
        Column("files_changed_count", "INTEGER", not_null=True, default=0),
        Column("last_diff"),
        Column("error_message"),
    ),
    indexes=(
        Index("idx_tasks_by_project", ("project_id",)),
        Index("idx_tasks_by_state", ("execution_state", "initiated_at")),
    ),
)

EVENTS = Table(
    name="events",
    columns=(
        Column("event_id", "INTEGER", primary_key=True, autoincrement=True),
        Column("task_id", not_null=True, references=("tasks", "task_id")),
        Column("event_message", not_null=True),
        Column("severity", not_null=True, default="info"),
        Column("event_time", not_null=True),
    ),
    indexes=(Index("idx_events_by_task", ("task_id", "event_time")),),
)

SCHEMA: tuple[Table, ...] = (PROJECTS, TASKS, EVENTS)


def _existing_columns(conn: sqlite3.Connection, table: Table) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table.name})").fetchall()
    return {row[1] for row in rows}


def init_schema(conn: sqlite3.Connection, tables: tuple[Table, ...] = SCHEMA) -> list[str]:
    """Create or migrate ``tables``. Returns the statements that changed the schema."""
    applied: list[str] = []
    with conn:
        for table in tables:
            existing = _existing_columns(conn, table)
            if not existing:
                conn.execute(table.create_sql())
                applied.append(f"create table {table.name}")
            else:
                for column in table.columns:
                    if column.name not in existing:
                        conn.execute(table.add_column_sql(column))
                        applied.append(f"add column {table.name}.{column.name}")
            for statement in table.index_sql():
                conn.execute(statement)

    if applied:
        logger.info("Schema initialised", changes=applied)
    return applied
