"""Read-side queries shared by the CLI and the MCP server.

All functions are DB reads; no click imports, no stdout output.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from taskgraph.errors import PLAN_NOT_FOUND, TASK_NOT_FOUND, VALIDATION_FAILED, TaskGraphError
from taskgraph.models import (
    RISKS,
    TASK_STATUSES,
    TASK_TERMINAL_STATUSES,
    decode_acceptance,
    decode_json_column,
    is_uuid,
)
from taskgraph.query import Backend, QueryBuilder

log = logging.getLogger(__name__)

DEFAULT_NEXT_LIMIT = 10
SHOW_RECENT_EVENTS = 5


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def find_plan_id(backend: Backend, plan_ref: str) -> str | None:
    """Resolve *plan_ref* as a plan id first, then as a plan title."""
    q = QueryBuilder(backend)
    if is_uuid(plan_ref):
        rows = q.select("plan", columns=["plan_id"], where={"plan_id": plan_ref})
        if rows:
            return rows[0]["plan_id"]
    rows = q.select("plan", columns=["plan_id"], where={"title": plan_ref}, limit=1)
    return rows[0]["plan_id"] if rows else None


def resolve_plan_id(backend: Backend, plan_ref: str) -> str:
    plan_id = find_plan_id(backend, plan_ref)
    if plan_id is None:
        raise TaskGraphError(PLAN_NOT_FOUND, f"Plan '{plan_ref}' not found.")
    return plan_id


def get_plan(backend: Backend, plan_id: str) -> dict[str, Any]:
    rows = QueryBuilder(backend).select("plan", where={"plan_id": plan_id})
    if not rows:
        raise TaskGraphError(PLAN_NOT_FOUND, f"Plan with ID {plan_id} not found.")
    return rows[0]


def get_task(backend: Backend, task_id: str) -> dict[str, Any]:
    rows = QueryBuilder(backend).select("task", where={"task_id": task_id})
    if not rows:
        raise TaskGraphError(TASK_NOT_FOUND, f"Task with ID {task_id} not found.")
    return rows[0]


def list_plans(backend: Backend, status: str | None = None) -> list[dict[str, Any]]:
    where = {"status": status} if status else None
    return QueryBuilder(backend).select(
        "plan", where=where, order_by="`priority` DESC, `created_at` ASC"
    )


def status_counts(rows: Sequence[Mapping[str, Any]]) -> dict[str, int]:
    counts = {status: 0 for status in TASK_STATUSES}
    for row in rows:
        status = row.get("status")
        if status in counts:
            counts[status] += 1
    return counts


# ---------------------------------------------------------------------------
# Runnable tasks
# ---------------------------------------------------------------------------


def _risk_rank_sql(column: str) -> str:
    # ENUM columns sort by declaration order, TEXT columns alphabetically.
    whens = " ".join(f"WHEN '{risk}' THEN {rank}" for rank, risk in enumerate(RISKS))
    return f"CASE {column} {whens} ELSE {len(RISKS)} END"


def _unmet_blockers_sql(task_column: str) -> str:
    terminal = ", ".join(f"'{status}'" for status in sorted(TASK_TERMINAL_STATUSES))
    return (
        "(SELECT COUNT(*) FROM `edge` e "
        "JOIN `task` bt ON e.from_task_id = bt.task_id "
        f"WHERE e.to_task_id = {task_column} AND e.type = 'blocks' "
        f"AND bt.status NOT IN ({terminal}))"
    )


def _todo_tasks_sql(q: QueryBuilder, plan_id: str | None) -> str:
    plan_filter = f" AND p.plan_id = {q.literal(plan_id)}" if plan_id else ""
    return (
        "SELECT t.task_id, t.title, p.title AS plan_title, p.priority AS plan_priority, "
        "t.risk, t.estimate_mins, t.created_at, "
        f"{_unmet_blockers_sql('t.task_id')} AS unmet_blockers "
        "FROM `task` t JOIN `plan` p ON t.plan_id = p.plan_id "
        f"WHERE t.status = 'todo'{plan_filter}"
    )


def count_runnable_tasks(backend: Backend, plan_ref: str | None = None) -> int:
    q = QueryBuilder(backend)
    plan_id = resolve_plan_id(backend, plan_ref) if plan_ref else None
    rows = q.raw(
        f"SELECT COUNT(*) AS runnable FROM ({_todo_tasks_sql(q, plan_id)}) todo "
        "WHERE unmet_blockers = 0"
    )
    return int(rows[0]["runnable"]) if rows else 0


def next_runnable_tasks(
    backend: Backend,
    plan_ref: str | None = None,
    limit: int = DEFAULT_NEXT_LIMIT,
) -> list[dict[str, Any]]:
    """Todo tasks with no unmet blockers, best candidates first.

    Ordered by plan priority (high first), risk (low first), estimate
    (known and short first), then creation time.
    An unknown *plan_ref* raises ``PLAN_NOT_FOUND``.
    """
    if limit <= 0:
        raise TaskGraphError(
            VALIDATION_FAILED, f"Invalid limit: {limit}. Must be a positive integer."
        )
    q = QueryBuilder(backend)
    plan_id = resolve_plan_id(backend, plan_ref) if plan_ref else None
    sql = (
        "SELECT task_id, title, plan_title, risk, estimate_mins "
        f"FROM ({_todo_tasks_sql(q, plan_id)}) runnable WHERE unmet_blockers = 0 "
        f"ORDER BY plan_priority DESC, {_risk_rank_sql('risk')} ASC, "
        "CASE WHEN estimate_mins IS NULL THEN 1 ELSE 0 END, "
        "estimate_mins ASC, created_at ASC "
        f"LIMIT {int(limit)}"
    )
    return q.raw(sql)


# ---------------------------------------------------------------------------
# Task detail and overview
# ---------------------------------------------------------------------------


def show_task(backend: Backend, task_id: str) -> dict[str, Any]:
    q = QueryBuilder(backend)
    key = q.literal(task_id)
    rows = q.raw(
        "SELECT t.*, p.title AS plan_title FROM `task` t "
        f"JOIN `plan` p ON t.plan_id = p.plan_id WHERE t.task_id = {key}"
    )
    if not rows:
        raise TaskGraphError(TASK_NOT_FOUND, f"Task with ID {task_id} not found.")
    task = dict(rows[0])
    task["acceptance"] = decode_acceptance(task.get("acceptance"))

    blockers = q.raw(
        "SELECT e.from_task_id, t.title, t.status, e.reason FROM `edge` e "
        "JOIN `task` t ON e.from_task_id = t.task_id "
        f"WHERE e.to_task_id = {key} AND e.type = 'blocks'"
    )
    dependents = q.raw(
        "SELECT e.to_task_id, t.title, t.status, e.reason FROM `edge` e "
        "JOIN `task` t ON e.to_task_id = t.task_id "
        f"WHERE e.from_task_id = {key} AND e.type = 'blocks'"
    )
    events = q.select(
        "event",
        columns=["event_id", "kind", "body", "created_at", "actor"],
        where={"task_id": task_id},
        order_by="`created_at` DESC, `event_id` DESC",
        limit=SHOW_RECENT_EVENTS,
    )
    for event in events:
        event["body"] = decode_json_column(event.get("body"))

    return {
        "task": task,
        "blockers": blockers,
        "dependents": dependents,
        "events": events,
    }


def status_overview(backend: Backend, plan_ref: str | None = None) -> dict[str, Any]:
    """Per-plan task counts by status, overall counts, and the runnable count."""
    q = QueryBuilder(backend)
    if plan_ref:
        plans = [get_plan(backend, resolve_plan_id(backend, plan_ref))]
    else:
        plans = list_plans(backend)

    summaries: list[dict[str, Any]] = []
    all_tasks: list[dict[str, Any]] = []
    for plan in plans:
        tasks = q.select("task", columns=["status"], where={"plan_id": plan["plan_id"]})
        all_tasks.extend(tasks)
        summaries.append(
            {
                "plan_id": plan["plan_id"],
                "title": plan["title"],
                "status": plan["status"],
                "priority": plan["priority"],
                "tasks": status_counts(tasks),
            }
        )

    return {
        "plans": summaries,
        "tasks": status_counts(all_tasks),
        "runnable": count_runnable_tasks(backend, plan_ref),
    }


# ---------------------------------------------------------------------------
# Portfolio views
# ---------------------------------------------------------------------------


def portfolio_overlaps(backend: Backend, min_features: int = 2) -> dict[str, Any]:
    """Cross-feature ``relates`` links and areas shared by several features.

    ``relatesOverlaps`` lists tasks related to tasks of at least
    ``min_features - 1`` other features; ``areaHotspots`` lists areas whose
    tasks span at least ``min_features`` features.
    """
    if min_features <= 0:
        raise TaskGraphError(
            VALIDATION_FAILED,
            f"Invalid min count: {min_features}. Must be a positive integer.",
        )
    q = QueryBuilder(backend)
    pairs = q.raw(
        "SELECT t1.task_id, t1.title, t1.feature_key, t2.feature_key AS related_feature "
        "FROM `task` t1 "
        "JOIN `edge` e ON t1.task_id = e.from_task_id AND e.type = 'relates' "
        "JOIN `task` t2 ON e.to_task_id = t2.task_id "
        "WHERE t1.feature_key IS NOT NULL AND t2.feature_key IS NOT NULL "
        "AND t1.feature_key != t2.feature_key"
    )
    by_task: dict[str, dict[str, Any]] = {}
    for row in pairs:
        entry = by_task.setdefault(
            row["task_id"],
            {
                "task_id": row["task_id"],
                "title": row["title"],
                "feature_key": row["feature_key"],
                "related": set(),
            },
        )
        entry["related"].add(row["related_feature"])

    relates_overlaps = []
    for entry in by_task.values():
        related = sorted(entry.pop("related"))
        if len(related) >= min_features - 1:
            relates_overlaps.append(
                {**entry, "related_features": related, "feature_count": len(related)}
            )

    area_rows = q.raw(
        "SELECT area, task_id, feature_key FROM `task` WHERE area IS NOT NULL "
        "ORDER BY area ASC"
    )
    area_hotspots = []
    for area, stats in _area_stats(area_rows).items():
        if len(stats["features"]) >= min_features:
            area_hotspots.append(
                {
                    "area": area,
                    "task_count": stats["task_count"],
                    "features_in_area": sorted(stats["features"]),
                    "feature_key_count": len(stats["features"]),
                }
            )
    return {"relatesOverlaps": relates_overlaps, "areaHotspots": area_hotspots}


def _area_stats(rows: Sequence[Mapping[str, Any]]) -> dict[str, dict[str, Any]]:
    stats: dict[str, dict[str, Any]] = {}
    for row in rows:
        entry = stats.setdefault(row["area"], {"task_count": 0, "features": set()})
        entry["task_count"] += 1
        if row.get("feature_key"):
            entry["features"].add(row["feature_key"])
    return stats


def portfolio_hotspots(backend: Backend) -> dict[str, Any]:
    """Task counts per area (busiest first) and areas touched by more than one feature."""
    rows = QueryBuilder(backend).raw(
        "SELECT area, task_id, feature_key FROM `task` WHERE area IS NOT NULL"
    )
    stats = _area_stats(rows)
    tasks_per_area = sorted(
        ({"area": area, "task_count": entry["task_count"]} for area, entry in stats.items()),
        key=lambda item: (-item["task_count"], item["area"]),
    )
    multi_feature_areas = [
        {"area": area, "features": sorted(entry["features"])}
        for area, entry in sorted(stats.items())
        if len(entry["features"]) > 1
    ]
    return {"tasksPerArea": tasks_per_area, "multiFeatureAreas": multi_feature_areas}
