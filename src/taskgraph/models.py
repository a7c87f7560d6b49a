"""Domain model: enumerations and row shapes for plans, tasks, edges, events, decisions.

Enum value strings are the storage ENUM values; never rename them.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, TypedDict

from taskgraph.errors import VALIDATION_FAILED, TaskGraphError
from taskgraph.query import JsonObj, json_obj

PLAN_STATUSES = ("draft", "active", "paused", "done", "abandoned")
TASK_STATUSES = ("todo", "doing", "blocked", "done", "canceled")
OWNERS = ("human", "agent")
RISKS = ("low", "medium", "high")
EDGE_TYPES = ("blocks", "relates")
EVENT_KINDS = (
    "created",
    "started",
    "progress",
    "blocked",
    "unblocked",
    "done",
    "split",
    "decision_needed",
    "note",
)
ACTORS = ("human", "agent")

VALID_PLAN_STATUSES = set(PLAN_STATUSES)
VALID_TASK_STATUSES = set(TASK_STATUSES)
VALID_EDGE_TYPES = set(EDGE_TYPES)
VALID_EVENT_KINDS = set(EVENT_KINDS)
VALID_ACTORS = set(ACTORS)
TASK_TERMINAL_STATUSES = {"done", "canceled"}

DEFAULT_PLAN_STATUS = "draft"
DEFAULT_TASK_STATUS = "todo"
DEFAULT_OWNER = "agent"
DEFAULT_RISK = "low"
DEFAULT_EDGE_TYPE = "blocks"
DEFAULT_ACTOR = "agent"

# Column widths shared by both schema dialects.
MAX_TITLE_LEN = 255
MAX_KEY_LEN = 64
MAX_EXTERNAL_KEY_LEN = 128
MAX_PATH_LEN = 512
PLAN_HASH_LEN = 6


# -- Row TypedDicts matching table schemas --


class PlanRow(TypedDict):
    plan_id: str
    title: str
    intent: str
    status: str
    priority: int
    source_path: str | None
    source_commit: str | None
    created_at: str
    updated_at: str


class TaskRow(TypedDict):
    task_id: str
    plan_id: str
    feature_key: str | None
    title: str
    intent: str | None
    scope_in: str | None
    scope_out: str | None
    acceptance: Any
    status: str
    owner: str
    area: str | None
    risk: str
    estimate_mins: int | None
    created_at: str
    updated_at: str
    external_key: str | None


class EdgeRow(TypedDict):
    from_task_id: str
    to_task_id: str
    type: str
    reason: str | None


class EventRow(TypedDict):
    event_id: str
    task_id: str
    kind: str
    body: Any
    actor: str
    created_at: str


class DecisionRow(TypedDict):
    decision_id: str
    plan_id: str
    task_id: str | None
    summary: str
    context: str
    options: Any
    decision: str
    consequences: str | None
    source_ref: str | None
    created_at: str


class GraphNode(TypedDict):
    id: str
    label: str
    status: str


# "from" is a keyword, hence the functional form.
GraphEdge = TypedDict("GraphEdge", {"from": str, "to": str, "type": str})


@dataclass
class ParsedTask:
    stable_key: str
    title: str = ""
    feature: str | None = None
    area: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    # Only set by formats that carry it; applied when the task is first inserted.
    status: str | None = None
    intent: str | None = None


@dataclass
class ParsedPlan:
    plan_title: str | None
    plan_intent: str | None
    tasks: list[ParsedTask]


def new_id() -> str:
    return str(uuid.uuid4())


def plan_hash(plan_id: str) -> str:
    """Short stable digest of a plan id, used to scope imported task keys."""
    return hashlib.sha256(plan_id.encode("utf-8")).hexdigest()[:PLAN_HASH_LEN]


def is_uuid(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value.lower()
    except (ValueError, AttributeError, TypeError):
        return False


def validate_choice(value: str, valid: set[str], label: str) -> str:
    if value not in valid:
        raise TaskGraphError(
            VALIDATION_FAILED,
            f"Invalid {label} '{value}'. Must be one of: {', '.join(sorted(valid))}",
        )
    return value


def decode_json_column(raw: Any) -> Any:
    """Return the Python value of a JSON column as read back from a backend.

    Values written through ``JSON_OBJECT`` hold JSON text as strings, and
    some backends hand JSON columns back as text, so strings are decoded
    until a non-string value (or undecodable text) remains.
    """
    value = raw
    for _ in range(4):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            break
    if isinstance(value, dict):
        return {key: _decode_member(val) for key, val in value.items()}
    return value


def _decode_member(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def decode_acceptance(raw: Any) -> list[str] | None:
    """Acceptance is stored as ``{"val": <json text of the list>}``."""
    if raw is None:
        return None
    value = decode_json_column(raw)
    if isinstance(value, dict):
        value = value.get("val")
    for _ in range(3):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            break
    if isinstance(value, list):
        return [str(item) for item in value]
    return None


def encode_acceptance(acceptance: Sequence[str] | None) -> JsonObj | None:
    """Inverse of :func:`decode_acceptance`; empty or missing lists store NULL."""
    if not acceptance:
        return None
    return json_obj({"val": json.dumps(list(acceptance), separators=(",", ":"))})
