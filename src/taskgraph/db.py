"""Schema, migrations and backend construction.

The five tables are the same in both dialects; Dolt gets MySQL ENUM and
JSON columns, SQLite gets TEXT columns with CHECK constraints listing the
same enum values.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator, Sequence
from pathlib import Path

from taskgraph.backends import DoltBackend, SqliteBackend
from taskgraph.config import Config
from taskgraph.errors import VALIDATION_FAILED, TaskGraphError
from taskgraph.models import (
    ACTORS,
    DEFAULT_ACTOR,
    DEFAULT_EDGE_TYPE,
    DEFAULT_OWNER,
    DEFAULT_PLAN_STATUS,
    DEFAULT_RISK,
    DEFAULT_TASK_STATUS,
    EDGE_TYPES,
    EVENT_KINDS,
    MAX_EXTERNAL_KEY_LEN,
    MAX_KEY_LEN,
    MAX_PATH_LEN,
    MAX_TITLE_LEN,
    OWNERS,
    PLAN_STATUSES,
    RISKS,
    TASK_STATUSES,
)
from taskgraph.query import Backend

log = logging.getLogger(__name__)

TABLES = ("plan", "task", "edge", "event", "decision")


def _enum_values(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _enum_column(dialect: str, name: str, values: Sequence[str]) -> str:
    if dialect == "dolt":
        return f"ENUM({_enum_values(values)})"
    return f"TEXT CHECK ({name} IN ({_enum_values(values)}))"


def schema_statements(dialect: str) -> list[str]:
    """CREATE TABLE statements for *dialect* (``dolt`` or ``sqlite``)."""
    json_type = "JSON" if dialect == "dolt" else "TEXT"
    uuid_type = "CHAR(36)"

    def enum(name: str, values: Sequence[str]) -> str:
        return _enum_column(dialect, name, values)

    return [
        f"""CREATE TABLE IF NOT EXISTS plan (
    plan_id {uuid_type} PRIMARY KEY,
    title VARCHAR({MAX_TITLE_LEN}) NOT NULL,
    intent TEXT NOT NULL,
    status {enum("status", PLAN_STATUSES)} DEFAULT '{DEFAULT_PLAN_STATUS}',
    priority INT DEFAULT 0,
    source_path VARCHAR({MAX_PATH_LEN}) NULL,
    source_commit VARCHAR({MAX_KEY_LEN}) NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
)""",
        f"""CREATE TABLE IF NOT EXISTS task (
    task_id {uuid_type} PRIMARY KEY,
    plan_id {uuid_type} NOT NULL,
    feature_key VARCHAR({MAX_KEY_LEN}) NULL,
    title VARCHAR({MAX_TITLE_LEN}) NOT NULL,
    intent TEXT NULL,
    scope_in TEXT NULL,
    scope_out TEXT NULL,
    acceptance {json_type} NULL,
    status {enum("status", TASK_STATUSES)} DEFAULT '{DEFAULT_TASK_STATUS}',
    owner {enum("owner", OWNERS)} DEFAULT '{DEFAULT_OWNER}',
    area VARCHAR({MAX_KEY_LEN}) NULL,
    risk {enum("risk", RISKS)} DEFAULT '{DEFAULT_RISK}',
    estimate_mins INT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    external_key VARCHAR({MAX_EXTERNAL_KEY_LEN}) NULL UNIQUE,
    FOREIGN KEY (plan_id) REFERENCES plan(plan_id)
)""",
        f"""CREATE TABLE IF NOT EXISTS edge (
    from_task_id {uuid_type} NOT NULL,
    to_task_id {uuid_type} NOT NULL,
    type {enum("type", EDGE_TYPES)} DEFAULT '{DEFAULT_EDGE_TYPE}',
    reason TEXT NULL,
    PRIMARY KEY (from_task_id, to_task_id, type),
    FOREIGN KEY (from_task_id) REFERENCES task(task_id),
    FOREIGN KEY (to_task_id) REFERENCES task(task_id)
)""",
        f"""CREATE TABLE IF NOT EXISTS event (
    event_id {uuid_type} PRIMARY KEY,
    task_id {uuid_type} NOT NULL,
    kind {enum("kind", EVENT_KINDS)} NOT NULL,
    body {json_type} NOT NULL,
    actor {enum("actor", ACTORS)} DEFAULT '{DEFAULT_ACTOR}',
    created_at DATETIME NOT NULL,
    FOREIGN KEY (task_id) REFERENCES task(task_id)
)""",
        f"""CREATE TABLE IF NOT EXISTS decision (
    decision_id {uuid_type} PRIMARY KEY,
    plan_id {uuid_type} NOT NULL,
    task_id {uuid_type} NULL,
    summary VARCHAR({MAX_TITLE_LEN}) NOT NULL,
    context TEXT NOT NULL,
    options {json_type} NULL,
    decision TEXT NOT NULL,
    consequences TEXT NULL,
    source_ref VARCHAR({MAX_PATH_LEN}) NULL,
    created_at DATETIME NOT NULL,
    FOREIGN KEY (plan_id) REFERENCES plan(plan_id),
    FOREIGN KEY (task_id) REFERENCES task(task_id)
)""",
    ]


def apply_migrations(backend: Backend) -> None:
    dialect = getattr(backend, "dialect", "dolt")
    log.info("Applying %s migrations...", dialect)
    for statement in schema_statements(dialect):
        backend.execute(statement)
    backend.commit("db: apply schema migrations")
    log.info("Migrations applied.")


def get_backend(config: Config, *, no_commit: bool = False) -> Backend:
    if config.backend == "sqlite":
        return SqliteBackend(Path(config.sqlite_path), no_commit=no_commit)
    if config.backend == "dolt":
        return DoltBackend(Path(config.dolt_repo_path), no_commit=no_commit)
    raise TaskGraphError(VALIDATION_FAILED, f"Unknown backend '{config.backend}'")


@contextlib.contextmanager
def connect(config: Config, *, no_commit: bool = False) -> Iterator[Backend]:
    """Context manager wrapper for get_backend().

    Usage:
        with connect(config) as backend:
            start_task(backend, task_id)
    # backend.close() is guaranteed even on exceptions.
    """
    backend = get_backend(config, no_commit=no_commit)
    try:
        yield backend
    finally:
        close = getattr(backend, "close", None)
        if close is not None:
            close()
