"""Write-side task and plan operations.

Each operation is a straight chain: load and check, mutate, append one
event per status change, commit once. A raised :class:`TaskGraphError`
anywhere before the commit leaves the commit out; nothing is retried.

Status writes are compare-and-swap: the UPDATE is conditioned on the
status that was read and must report a changed row. If another writer got
there first, even with the same target status, the operation fails with
``INVALID_TRANSITION`` instead of overwriting its change.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from taskgraph.errors import (
    EDGE_EXISTS,
    INVALID_TRANSITION,
    TASK_NOT_FOUND,
    VALIDATION_FAILED,
    TaskGraphError,
)
from taskgraph.invariants import (
    check_no_blocker_cycle,
    check_runnable,
    check_valid_transition,
    count_unmet_blockers,
)
from taskgraph.models import (
    DEFAULT_ACTOR,
    DEFAULT_OWNER,
    DEFAULT_RISK,
    OWNERS,
    RISKS,
    VALID_ACTORS,
    VALID_EDGE_TYPES,
    VALID_EVENT_KINDS,
    VALID_PLAN_STATUSES,
    decode_acceptance,
    encode_acceptance,
    new_id,
    validate_choice,
)
from taskgraph.queries import get_plan, get_task
from taskgraph.query import Backend, QueryBuilder, json_obj, now

log = logging.getLogger(__name__)

LINK_DIRECTIONS = ("original-to-new", "new-to-original")
SPLIT_EDGE_REASON = "split dependency"
# Descriptive fields a split copies from the original task.
SPLIT_COPIED_FIELDS = (
    "plan_id",
    "feature_key",
    "intent",
    "scope_in",
    "scope_out",
    "acceptance",
    "owner",
    "area",
    "risk",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def append_event(
    q: QueryBuilder,
    task_id: str,
    kind: str,
    body: Mapping[str, Any],
    *,
    actor: str = DEFAULT_ACTOR,
    created_at: str | None = None,
) -> str:
    validate_choice(kind, VALID_EVENT_KINDS, "event kind")
    event_id = new_id()
    q.insert(
        "event",
        {
            "event_id": event_id,
            "task_id": task_id,
            "kind": kind,
            "body": json_obj(body),
            "actor": actor,
            "created_at": created_at or now(),
        },
    )
    return event_id


def _transition(
    q: QueryBuilder,
    task_id: str,
    current: str | None,
    next_status: str,
    timestamp: str,
) -> None:
    """Move *task_id* to *next_status* if its status is still *current*.

    ``current=None`` skips the status condition (forced writes).
    """
    where: dict[str, Any] = {"task_id": task_id}
    if current is not None:
        where["status"] = current
    if q.update("task", {"status": next_status, "updated_at": timestamp}, where) > 0:
        return
    rows = q.select("task", columns=["status"], where={"task_id": task_id})
    if not rows:
        raise TaskGraphError(TASK_NOT_FOUND, f"Task with ID {task_id} not found.")
    raise TaskGraphError(
        INVALID_TRANSITION,
        f"Task {task_id} changed status concurrently: expected '{current}', "
        f"found '{rows[0]['status']}'.",
    )


def _release_dependents(q: QueryBuilder, task_id: str, timestamp: str) -> list[str]:
    """Return blocked dependents of *task_id* with no unmet blockers left to ``todo``."""
    released: list[str] = []
    edges = q.select(
        "edge", columns=["to_task_id"], where={"from_task_id": task_id, "type": "blocks"}
    )
    for edge in edges:
        dependent_id = edge["to_task_id"]
        rows = q.select("task", columns=["status"], where={"task_id": dependent_id})
        if not rows or rows[0]["status"] != "blocked":
            continue
        if count_unmet_blockers(q.backend, dependent_id) > 0:
            continue
        _transition(q, dependent_id, "blocked", "todo", timestamp)
        append_event(
            q,
            dependent_id,
            "unblocked",
            {"releasedBy": task_id, "timestamp": timestamp},
            created_at=timestamp,
        )
        released.append(dependent_id)
    if released:
        log.info("Released %d dependent(s) of %s", len(released), task_id)
    return released


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def create_plan(
    backend: Backend,
    title: str,
    intent: str = "",
    source_path: str | None = None,
    priority: int = 0,
) -> dict[str, Any]:
    if not title.strip():
        raise TaskGraphError(VALIDATION_FAILED, "Plan title must not be empty.")
    plan_id = new_id()
    timestamp = now()
    QueryBuilder(backend).insert(
        "plan",
        {
            "plan_id": plan_id,
            "title": title,
            "intent": intent,
            "priority": int(priority),
            "source_path": source_path,
            "created_at": timestamp,
            "updated_at": timestamp,
        },
    )
    backend.commit(f"plan: create {title}")
    return {"plan_id": plan_id, "title": title, "intent": intent, "source_path": source_path}


def set_plan_status(backend: Backend, plan_id: str, status: str) -> dict[str, Any]:
    validate_choice(status, VALID_PLAN_STATUSES, "plan status")
    plan = get_plan(backend, plan_id)
    QueryBuilder(backend).update(
        "plan", {"status": status, "updated_at": now()}, {"plan_id": plan_id}
    )
    backend.commit(f"plan: set status {plan_id} {plan['status']} -> {status}")
    return {"plan_id": plan_id, "previous_status": plan["status"], "status": status}


def set_plan_priority(backend: Backend, plan_id: str, priority: int) -> dict[str, Any]:
    get_plan(backend, plan_id)
    QueryBuilder(backend).update(
        "plan", {"priority": int(priority), "updated_at": now()}, {"plan_id": plan_id}
    )
    backend.commit(f"plan: set priority {plan_id} {int(priority)}")
    return {"plan_id": plan_id, "priority": int(priority)}


def auto_complete_plan_if_done(backend: Backend, plan_id: str) -> bool:
    """Mark the plan done when some task is done and every task is done or canceled.

    Commits on its own (``plan: auto-complete <id>``); returns whether the
    plan was completed.
    """
    q = QueryBuilder(backend)
    rows = q.select("task", columns=["status"], where={"plan_id": plan_id})
    if not rows:
        return False
    done = sum(1 for row in rows if row["status"] == "done")
    canceled = sum(1 for row in rows if row["status"] == "canceled")
    if done == 0 or done + canceled != len(rows):
        return False
    plan = get_plan(backend, plan_id)
    if plan["status"] == "done":
        return False
    q.update("plan", {"status": "done", "updated_at": now()}, {"plan_id": plan_id})
    backend.commit(f"plan: auto-complete {plan_id}")
    log.info("Plan %s auto-completed", plan_id)
    return True


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def create_task(
    backend: Backend,
    plan_id: str,
    title: str,
    *,
    feature_key: str | None = None,
    area: str | None = None,
    acceptance: Sequence[str] | None = None,
    intent: str | None = None,
    owner: str = DEFAULT_OWNER,
    risk: str = DEFAULT_RISK,
    estimate_mins: int | None = None,
) -> dict[str, Any]:
    if not title.strip():
        raise TaskGraphError(VALIDATION_FAILED, "Task title must not be empty.")
    validate_choice(owner, set(OWNERS), "owner")
    validate_choice(risk, set(RISKS), "risk")
    get_plan(backend, plan_id)

    q = QueryBuilder(backend)
    task_id = new_id()
    timestamp = now()
    q.insert(
        "task",
        {
            "task_id": task_id,
            "plan_id": plan_id,
            "feature_key": feature_key,
            "title": title,
            "intent": intent,
            "area": area,
            "acceptance": encode_acceptance(acceptance),
            "owner": owner,
            "risk": risk,
            "estimate_mins": estimate_mins,
            "created_at": timestamp,
            "updated_at": timestamp,
        },
    )
    append_event(q, task_id, "created", {"title": title}, created_at=timestamp)
    backend.commit(f"task: create {task_id} - {title}")
    return {
        "task_id": task_id,
        "plan_id": plan_id,
        "title": title,
        "feature_key": feature_key,
        "area": area,
        "acceptance": list(acceptance) if acceptance is not None else None,
    }


def start_task(backend: Backend, task_id: str, actor: str = DEFAULT_ACTOR) -> dict[str, Any]:
    validate_choice(actor, VALID_ACTORS, "actor")
    check_runnable(backend, task_id)
    q = QueryBuilder(backend)
    timestamp = now()
    _transition(q, task_id, "todo", "doing", timestamp)
    append_event(q, task_id, "started", {"timestamp": timestamp}, actor=actor, created_at=timestamp)
    backend.commit(f"task: start {task_id}")
    return {"task_id": task_id, "status": "doing"}


def finish_task(
    backend: Backend,
    task_id: str,
    evidence: str = "",
    checks: Any = None,
    *,
    force: bool = False,
    actor: str = DEFAULT_ACTOR,
) -> dict[str, Any]:
    """Mark a task done and record the evidence.

    *checks* is either already-decoded JSON or a JSON string. ``force``
    skips the transition table (finish from any status).
    """
    validate_choice(actor, VALID_ACTORS, "actor")
    if isinstance(checks, str):
        try:
            checks = json.loads(checks)
        except json.JSONDecodeError as exc:
            raise TaskGraphError(
                VALIDATION_FAILED, f"Invalid JSON for acceptance checks: {checks}", exc
            ) from exc

    task = get_task(backend, task_id)
    if not force:
        check_valid_transition(task["status"], "done")

    q = QueryBuilder(backend)
    timestamp = now()
    _transition(q, task_id, None if force else task["status"], "done", timestamp)
    append_event(
        q,
        task_id,
        "done",
        {"evidence": evidence, "checks": checks, "timestamp": timestamp},
        actor=actor,
        created_at=timestamp,
    )
    released = _release_dependents(q, task_id, timestamp)
    backend.commit(f"task: done {task_id}")

    plan_completed = auto_complete_plan_if_done(backend, task["plan_id"])
    return {
        "task_id": task_id,
        "status": "done",
        "evidence": evidence,
        "checks": checks,
        "released": released,
        "plan_completed": plan_completed,
    }


def block_task(
    backend: Backend,
    task_id: str,
    blocker_task_id: str,
    reason: str | None = None,
) -> dict[str, Any]:
    """Record that *blocker_task_id* blocks *task_id* and mark the task blocked.

    The edge is only inserted when missing, and the status only changes when
    the task is not already blocked, so repeating the call adds an event and
    nothing else.
    """
    task = get_task(backend, task_id)
    get_task(backend, blocker_task_id)

    q = QueryBuilder(backend)
    edges = q.select("edge", where={"type": "blocks"})
    check_no_blocker_cycle(blocker_task_id, task_id, edges)
    if task["status"] != "blocked":
        check_valid_transition(task["status"], "blocked")

    edge_key = {"from_task_id": blocker_task_id, "to_task_id": task_id, "type": "blocks"}
    if q.count("edge", edge_key) == 0:
        q.insert("edge", {**edge_key, "reason": reason})

    timestamp = now()
    if task["status"] != "blocked":
        _transition(q, task_id, task["status"], "blocked", timestamp)
    append_event(
        q,
        task_id,
        "blocked",
        {"blockerTaskId": blocker_task_id, "reason": reason, "timestamp": timestamp},
        created_at=timestamp,
    )
    backend.commit(f"task: block {task_id} on {blocker_task_id}")
    return {
        "task_id": task_id,
        "blocker_task_id": blocker_task_id,
        "reason": reason,
        "status": "blocked",
    }


def unblock_task(backend: Backend, task_id: str) -> dict[str, Any]:
    task = get_task(backend, task_id)
    check_valid_transition(task["status"], "todo")
    unmet = count_unmet_blockers(backend, task_id)
    if unmet > 0:
        raise TaskGraphError(
            INVALID_TRANSITION,
            f"Task {task_id} still has {unmet} unmet blockers.",
        )
    q = QueryBuilder(backend)
    timestamp = now()
    _transition(q, task_id, "blocked", "todo", timestamp)
    append_event(q, task_id, "unblocked", {"timestamp": timestamp}, created_at=timestamp)
    backend.commit(f"task: unblock {task_id}")
    return {"task_id": task_id, "status": "todo"}


def cancel_task(backend: Backend, task_id: str, reason: str | None = None) -> dict[str, Any]:
    task = get_task(backend, task_id)
    check_valid_transition(task["status"], "canceled")
    q = QueryBuilder(backend)
    timestamp = now()
    _transition(q, task_id, task["status"], "canceled", timestamp)
    append_event(
        q, task_id, "note", {"type": "cancel", "reason": reason}, created_at=timestamp
    )
    released = _release_dependents(q, task_id, timestamp)
    backend.commit(f"cancel: task {task_id}")

    plan_completed = auto_complete_plan_if_done(backend, task["plan_id"])
    return {
        "task_id": task_id,
        "status": "canceled",
        "released": released,
        "plan_completed": plan_completed,
    }


def add_edge(
    backend: Backend,
    from_task_id: str,
    edge_type: str,
    to_task_id: str,
    reason: str | None = None,
) -> dict[str, Any]:
    validate_choice(edge_type, VALID_EDGE_TYPES, "edge type")
    get_task(backend, from_task_id)
    get_task(backend, to_task_id)

    q = QueryBuilder(backend)
    if edge_type == "blocks":
        edges = q.select("edge", where={"type": "blocks"})
        check_no_blocker_cycle(from_task_id, to_task_id, edges)
    edge_key = {"from_task_id": from_task_id, "to_task_id": to_task_id, "type": edge_type}
    if q.count("edge", edge_key) > 0:
        raise TaskGraphError(
            EDGE_EXISTS,
            f"Edge {from_task_id} {edge_type} {to_task_id} already exists.",
        )
    q.insert("edge", {**edge_key, "reason": reason})
    backend.commit(f"edge: add {from_task_id} {edge_type} {to_task_id}")
    return {**edge_key, "reason": reason}


def split_task(
    backend: Backend,
    task_id: str,
    titles: Sequence[str],
    *,
    keep_original: bool = True,
    link_direction: str = "original-to-new",
) -> dict[str, Any]:
    """Decompose a task into new ``todo`` tasks linked by ``relates`` edges."""
    if link_direction not in LINK_DIRECTIONS:
        raise TaskGraphError(
            VALIDATION_FAILED,
            f"Invalid link direction '{link_direction}'. "
            f"Must be one of: {', '.join(LINK_DIRECTIONS)}",
        )
    new_titles = [title.strip() for title in titles if title.strip()]
    if not new_titles:
        raise TaskGraphError(VALIDATION_FAILED, "At least one new task title is required.")

    original = get_task(backend, task_id)
    if not keep_original:
        check_valid_transition(original["status"], "canceled")

    q = QueryBuilder(backend)
    timestamp = now()
    new_tasks: list[dict[str, str]] = []
    mappings: list[dict[str, str]] = []
    for title in new_titles:
        new_task_id = new_id()
        copied = {name: original.get(name) for name in SPLIT_COPIED_FIELDS}
        copied["acceptance"] = encode_acceptance(decode_acceptance(copied["acceptance"]))
        q.insert(
            "task",
            {
                "task_id": new_task_id,
                **copied,
                "title": title,
                "status": "todo",
                "estimate_mins": None,
                "external_key": None,
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        )
        append_event(
            q, new_task_id, "created", {"title": title, "splitFrom": task_id}, created_at=timestamp
        )
        if link_direction == "new-to-original":
            from_id, to_id = new_task_id, task_id
        else:
            from_id, to_id = task_id, new_task_id
        q.insert(
            "edge",
            {
                "from_task_id": from_id,
                "to_task_id": to_id,
                "type": "relates",
                "reason": SPLIT_EDGE_REASON,
            },
        )
        new_tasks.append({"id": new_task_id, "title": title})
        mappings.append({"original": task_id, "new": new_task_id})

    status = original["status"]
    if not keep_original:
        _transition(q, task_id, original["status"], "canceled", timestamp)
        status = "canceled"

    append_event(
        q,
        task_id,
        "split",
        {"newTasks": new_tasks, "taskMappings": mappings},
        created_at=timestamp,
    )
    backend.commit(f"task: split {task_id} into {', '.join(new_titles)}")
    return {
        "original_task_id": task_id,
        "original_status": status,
        "new_tasks": new_tasks,
        "link_direction": link_direction,
    }


def add_note(
    backend: Backend,
    task_id: str,
    message: str,
    actor: str = DEFAULT_ACTOR,
    agent: str | None = None,
) -> dict[str, Any]:
    validate_choice(actor, VALID_ACTORS, "actor")
    if not message.strip():
        raise TaskGraphError(VALIDATION_FAILED, "Note message must not be empty.")
    get_task(backend, task_id)
    q = QueryBuilder(backend)
    timestamp = now()
    event_id = append_event(
        q,
        task_id,
        "note",
        {"message": message, "agent": agent, "timestamp": timestamp},
        actor=actor,
        created_at=timestamp,
    )
    backend.commit(f"task: note {task_id}")
    return {"task_id": task_id, "event_id": event_id}
