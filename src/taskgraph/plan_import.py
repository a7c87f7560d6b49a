"""Idempotent import of a parsed plan document into the task graph.

Tasks are matched to existing rows by ``external_key``, so re-importing an
edited plan updates tasks in place instead of duplicating them. The stored
key is the document's task key scoped to the plan (``<key>-<plan hash>``),
which lets several plans reuse keys such as ``setup`` or ``tests``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskgraph.errors import VALIDATION_FAILED, TaskGraphError
from taskgraph.models import (
    DEFAULT_TASK_STATUS,
    MAX_EXTERNAL_KEY_LEN,
    PLAN_HASH_LEN,
    TASK_STATUSES,
    ParsedTask,
    encode_acceptance,
    new_id,
    plan_hash,
    validate_choice,
)
from taskgraph.plan_parser import parse_plan_file
from taskgraph.queries import find_plan_id
from taskgraph.query import Backend, QueryBuilder, now
from taskgraph.tasks import append_event

log = logging.getLogger(__name__)

IMPORT_EDGE_REASON = "Blocked by plan import"


def scoped_external_key(stable_key: str, plan_id: str) -> str:
    return f"{stable_key}-{plan_hash(plan_id)}"


def normalize_external_key(external_key: str, plan_id: str) -> str:
    """Strip this plan's hash suffix; keys stored without one are returned as is."""
    suffix = f"-{plan_hash(plan_id)}"
    if external_key.endswith(suffix):
        return external_key[: -len(suffix)]
    return external_key


def _check_batch(parsed_tasks: Sequence[ParsedTask]) -> None:
    """Reject a batch that could only be applied in part."""
    seen: set[str] = set()
    limit = MAX_EXTERNAL_KEY_LEN - PLAN_HASH_LEN - 1
    for parsed in parsed_tasks:
        if parsed.stable_key in seen:
            raise TaskGraphError(
                VALIDATION_FAILED, f"Duplicate task key '{parsed.stable_key}' in plan document."
            )
        seen.add(parsed.stable_key)
        if len(parsed.stable_key) > limit:
            raise TaskGraphError(
                VALIDATION_FAILED,
                f"Task key '{parsed.stable_key}' is longer than {limit} characters.",
            )
        if parsed.status is not None:
            validate_choice(parsed.status, set(TASK_STATUSES), "task status")


@dataclass
class ImportResult:
    imported_tasks_count: int = 0
    updated_tasks_count: int = 0
    created_edges_count: int = 0
    unresolved_blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "importedTasksCount": self.imported_tasks_count,
            "updatedTasksCount": self.updated_tasks_count,
            "createdEdgesCount": self.created_edges_count,
            "unresolvedBlockers": list(self.unresolved_blockers),
        }


def upsert_tasks_and_edges(
    backend: Backend,
    plan_id: str,
    parsed_tasks: Sequence[ParsedTask],
) -> ImportResult:
    """Insert new tasks, update known ones, add missing ``blocks`` edges, commit once.

    Blocker keys resolve only against tasks that existed before this call,
    so a blocker first introduced in the same batch is not linked until the
    next import. Unresolved keys are logged and skipped.
    """
    _check_batch(parsed_tasks)
    q = QueryBuilder(backend)
    timestamp = now()
    result = ImportResult()

    existing = q.select("task", columns=["task_id", "external_key"], where={"plan_id": plan_id})
    key_to_task_id: dict[str, str] = {
        normalize_external_key(row["external_key"], plan_id): row["task_id"]
        for row in existing
        if row.get("external_key")
    }

    for parsed in parsed_tasks:
        task_id = key_to_task_id.get(parsed.stable_key)
        external_key = scoped_external_key(parsed.stable_key, plan_id)
        fields = {
            "title": parsed.title,
            "external_key": external_key,
            "feature_key": parsed.feature or None,
            "area": parsed.area or None,
            "acceptance": encode_acceptance(parsed.acceptance),
        }
        if parsed.intent is not None:
            fields["intent"] = parsed.intent
        if task_id:
            q.update("task", {**fields, "updated_at": timestamp}, {"task_id": task_id})
            result.updated_tasks_count += 1
        else:
            task_id = new_id()
            q.insert(
                "task",
                {
                    "task_id": task_id,
                    "plan_id": plan_id,
                    **fields,
                    "status": parsed.status or DEFAULT_TASK_STATUS,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                },
            )
            append_event(
                q,
                task_id,
                "created",
                {"title": parsed.title, "externalKey": external_key},
                created_at=timestamp,
            )
            result.imported_tasks_count += 1

        for blocker_key in parsed.blocked_by:
            blocker_id = key_to_task_id.get(blocker_key)
            if not blocker_id:
                log.warning(
                    "Blocker task with stable key '%s' not found. "
                    "Skipping edge creation for task '%s'.",
                    blocker_key,
                    parsed.stable_key,
                )
                result.unresolved_blockers.append(blocker_key)
                continue
            edge_key = {"from_task_id": blocker_id, "to_task_id": task_id, "type": "blocks"}
            if q.count("edge", edge_key) == 0:
                q.insert("edge", {**edge_key, "reason": IMPORT_EDGE_REASON})
                result.created_edges_count += 1

    backend.commit("plan-import: upsert tasks and edges")
    log.info(
        "Imported %d new and %d updated tasks into plan %s",
        result.imported_tasks_count,
        result.updated_tasks_count,
        plan_id,
    )
    return result


def import_plan(
    backend: Backend,
    file_path: str | Path,
    plan_ref: str,
    fmt: str = "legacy",
) -> dict[str, Any]:
    """Parse *file_path* as *fmt* and upsert it into the plan named by *plan_ref*.

    *plan_ref* is a plan id or title. A missing plan is created from the
    document's title and intent.
    """
    parsed = parse_plan_file(file_path, fmt)
    _check_batch(parsed.tasks)
    q = QueryBuilder(backend)
    plan_id = find_plan_id(backend, plan_ref)
    created_plan = False
    if plan_id is None:
        plan_id = new_id()
        title = parsed.plan_title or plan_ref
        timestamp = now()
        q.insert(
            "plan",
            {
                "plan_id": plan_id,
                "title": title,
                "intent": parsed.plan_intent or f"Imported from {file_path}",
                "source_path": str(file_path),
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        )
        backend.commit(f"plan: create {title} from import")
        log.info("Created new plan '%s' with ID: %s", title, plan_id)
        created_plan = True

    result = upsert_tasks_and_edges(backend, plan_id, parsed.tasks)
    return {
        "filePath": str(file_path),
        "plan_id": plan_id,
        "createdPlan": created_plan,
        **result.to_dict(),
    }
