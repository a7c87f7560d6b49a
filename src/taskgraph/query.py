"""SQL literal formatting and the query builder every component goes through.

Values are rendered inline (the backend contract takes a finished SQL
string), so every scalar passes through :func:`sql_escape` (Dolt) or
:func:`sqlite_escape` (SQLite). JSON columns are written as
``JSON_OBJECT('key', '<json text>', ...)`` where each value is the
JSON-encoded text of the Python value, stored as a string. Existing rows
depend on that encoding; keep it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from taskgraph.errors import DB_PARSE_FAILED, VALIDATION_FAILED, TaskGraphError

log = logging.getLogger(__name__)


class Backend(Protocol):
    """What the builder needs from storage."""

    def execute(self, sql: str) -> list[dict[str, Any]]: ...

    def execute_write(self, sql: str) -> int: ...

    def commit(self, message: str) -> None: ...


@dataclass(frozen=True)
class JsonObj:
    value: Mapping[str, Any]


def json_obj(value: Mapping[str, Any]) -> JsonObj:
    return JsonObj(dict(value))


SqlValue = str | int | float | bool | None | JsonObj
Escape = Callable[[str], str]


def now() -> str:
    """UTC timestamp in DATETIME literal form (``YYYY-MM-DD HH:MM:SS``)."""
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def sql_escape(value: str) -> str:
    """Escape for a MySQL-compatible single-quoted literal (Dolt)."""
    return value.replace("\\", "\\\\").replace("'", "''").replace("\0", "")


def sqlite_escape(value: str) -> str:
    """SQLite treats backslashes literally; only quotes need doubling."""
    return value.replace("'", "''").replace("\0", "")


def quote_ident(name: str) -> str:
    return f"`{name}`"


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def format_value(value: SqlValue, escape: Escape = sql_escape) -> str:
    if value is None:
        return "NULL"
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, str):
        return f"'{escape(value)}'"
    if isinstance(value, JsonObj):
        pairs = ", ".join(
            f"'{escape(key)}', '{escape(_json_text(val))}'" for key, val in value.value.items()
        )
        return f"JSON_OBJECT({pairs})"
    return f"'{escape(str(value))}'"


def build_where_clause(where: Mapping[str, Any], escape: Escape = sql_escape) -> str:
    parts: list[str] = []
    for key, val in where.items():
        if isinstance(val, Mapping) and "op" in val:
            parts.append(f"{quote_ident(key)} {val['op']} {format_value(val['value'], escape)}")
        else:
            parts.append(f"{quote_ident(key)} = {format_value(val, escape)}")
    return " AND ".join(parts)


class QueryBuilder:
    """Compose statements and run them on a backend.

    String literals are escaped for the backend's dialect (``sqlite`` or
    MySQL-compatible for everything else).

    Usage:
        q = QueryBuilder(backend)
        q.insert("task", {"task_id": tid, "title": "x"})
        rows = q.select("task", columns=["status"], where={"task_id": tid})
    """

    def __init__(self, backend: Backend) -> None:
        self.backend = backend
        self.escape: Escape = (
            sqlite_escape if getattr(backend, "dialect", None) == "sqlite" else sql_escape
        )

    def literal(self, value: SqlValue) -> str:
        """Render *value* as a SQL literal for hand-written statements."""
        return format_value(value, self.escape)

    def insert(self, table: str, data: Mapping[str, SqlValue]) -> list[dict[str, Any]]:
        cols = ", ".join(quote_ident(key) for key in data)
        vals = ", ".join(self.literal(val) for val in data.values())
        return self.raw(f"INSERT INTO {quote_ident(table)} ({cols}) VALUES ({vals})")

    def update(
        self,
        table: str,
        data: Mapping[str, SqlValue],
        where: Mapping[str, Any],
    ) -> int:
        """Run the UPDATE and return how many rows it changed.

        An empty *where* is rejected rather than rewriting the whole table.
        """
        if not where:
            raise TaskGraphError(
                VALIDATION_FAILED, f"Refusing to update {table} without a WHERE clause."
            )
        set_parts = ", ".join(
            f"{quote_ident(key)} = {self.literal(val)}" for key, val in data.items()
        )
        sql = (
            f"UPDATE {quote_ident(table)} SET {set_parts} "
            f"WHERE {build_where_clause(where, self.escape)}"
        )
        log.debug("SQL: %s", sql)
        return self.backend.execute_write(sql)

    def select(
        self,
        table: str,
        *,
        columns: Sequence[str] | None = None,
        where: Mapping[str, Any] | None = None,
        group_by: Sequence[str] | None = None,
        having: str | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        cols = ", ".join(quote_ident(col) for col in columns) if columns else "*"
        sql = f"SELECT {cols} FROM {quote_ident(table)}"
        if where:
            sql += f" WHERE {build_where_clause(where, self.escape)}"
        if group_by:
            sql += " GROUP BY " + ", ".join(quote_ident(col) for col in group_by)
        if having:
            sql += f" HAVING {having}"
        # order_by is trusted, already-formatted SQL
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return self.raw(sql)

    def count(self, table: str, where: Mapping[str, Any] | None = None) -> int:
        sql = f"SELECT COUNT(*) AS count FROM {quote_ident(table)}"
        if where:
            sql += f" WHERE {build_where_clause(where, self.escape)}"
        rows = self.raw(sql)
        if not rows:
            return 0
        try:
            return int(rows[0]["count"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TaskGraphError(
                DB_PARSE_FAILED, f"Unexpected COUNT result for {table}: {rows[0]!r}", exc
            ) from exc

    def raw(self, sql: str) -> list[dict[str, Any]]:
        log.debug("SQL: %s", sql)
        return self.backend.execute(sql)
