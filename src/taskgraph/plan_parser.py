"""Parse plan documents into a :class:`ParsedPlan`.

Two formats are read. ``legacy`` is line-oriented markdown; recognized lines::

    # Plan title
    INTENT: why the plan exists
    TASK: stable-key
      TITLE: Human title
      FEATURE: feature-key
      AREA: backend
      BLOCKED_BY: other-key, another-key
      ACCEPTANCE:
        - first criterion
        - second criterion

Everything else is ignored (and ends an open ACCEPTANCE list).

``cursor`` is a markdown file opening with YAML frontmatter whose ``todos``
list holds the tasks::

    ---
    name: Plan title
    overview: why the plan exists
    todos:
      - id: stable-key
        content: Human title
        status: pending
        blockedBy: [other-key]
    ---
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from taskgraph.errors import FILE_READ_FAILED, VALIDATION_FAILED, TaskGraphError
from taskgraph.models import ParsedPlan, ParsedTask

log = logging.getLogger(__name__)

PLAN_FORMATS = ("legacy", "cursor")
FRONTMATTER_RE = re.compile(r"^---[ \t]*\r?\n(.*?)\r?\n---", re.DOTALL)


def _value_after(line: str, prefix: str) -> str:
    return line[len(prefix) :].strip()


def _flush(task: ParsedTask | None, tasks: list[ParsedTask]) -> None:
    if task is None or not task.stable_key:
        return
    if not task.title:
        task.title = task.stable_key
    tasks.append(task)


def parse_plan_text(content: str) -> ParsedPlan:
    plan_title: str | None = None
    plan_intent: str | None = None
    tasks: list[ParsedTask] = []
    current: ParsedTask | None = None
    in_acceptance = False

    for line in content.split("\n"):
        stripped = line.strip()

        if line.startswith("# "):
            plan_title = line[2:].strip()
        elif line.startswith("INTENT:"):
            plan_intent = _value_after(line, "INTENT:")
        elif stripped.startswith("TASK:"):
            _flush(current, tasks)
            current = ParsedTask(stable_key=_value_after(stripped, "TASK:"))
            in_acceptance = False
        elif current is not None and stripped.startswith("TITLE:"):
            current.title = _value_after(stripped, "TITLE:")
            in_acceptance = False
        elif current is not None and stripped.startswith("FEATURE:"):
            current.feature = _value_after(stripped, "FEATURE:")
            in_acceptance = False
        elif current is not None and stripped.startswith("AREA:"):
            current.area = _value_after(stripped, "AREA:")
            in_acceptance = False
        elif current is not None and stripped.startswith("BLOCKED_BY:"):
            keys = [key.strip() for key in _value_after(stripped, "BLOCKED_BY:").split(",")]
            current.blocked_by.extend(key for key in keys if key)
            in_acceptance = False
        elif current is not None and stripped.startswith("ACCEPTANCE:"):
            in_acceptance = True
        elif current is not None and in_acceptance and stripped.startswith("-"):
            current.acceptance.append(stripped[1:].strip())
        elif stripped:
            in_acceptance = False

    _flush(current, tasks)
    log.debug("Parsed plan %r with %d tasks", plan_title, len(tasks))
    return ParsedPlan(plan_title=plan_title, plan_intent=plan_intent, tasks=tasks)


def _read(path: str | Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TaskGraphError(
            FILE_READ_FAILED, f"Failed to read or parse markdown file at {path}", exc
        ) from exc


def parse_plan_markdown(path: str | Path) -> ParsedPlan:
    return parse_plan_text(_read(path))


def _cursor_task(todo: dict[str, Any]) -> ParsedTask:
    key = todo["id"].strip()
    blocked_by = todo.get("blockedBy")
    if not isinstance(blocked_by, list):
        blocked_by = []
    intent = todo.get("intent")
    return ParsedTask(
        stable_key=key,
        title=todo["content"].strip() or key,
        blocked_by=[blocker.strip() for blocker in blocked_by if isinstance(blocker, str)],
        # completed maps to done; pending, in_progress and anything else to todo
        status="done" if todo.get("status") == "completed" else "todo",
        intent=intent if isinstance(intent, str) else None,
    )


def parse_cursor_text(content: str, source: str = "<text>") -> ParsedPlan:
    match = FRONTMATTER_RE.match(content)
    if not match:
        raise TaskGraphError(
            FILE_READ_FAILED, f"File {source} does not have YAML frontmatter (--- ... ---)"
        )
    try:
        frontmatter = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise TaskGraphError(
            FILE_READ_FAILED, f"Invalid YAML frontmatter in {source}", exc
        ) from exc
    if not isinstance(frontmatter, dict):
        raise TaskGraphError(FILE_READ_FAILED, f"Invalid YAML frontmatter in {source}")

    todos = frontmatter.get("todos") or []
    if not isinstance(todos, list):
        raise TaskGraphError(FILE_READ_FAILED, f"Expected 'todos' to be a list in {source}")
    # entries without a string id and content are skipped
    tasks = [
        _cursor_task(todo)
        for todo in todos
        if isinstance(todo, dict)
        and isinstance(todo.get("id"), str)
        and todo["id"].strip()
        and isinstance(todo.get("content"), str)
    ]

    name = frontmatter.get("name")
    overview = frontmatter.get("overview")
    log.debug("Parsed cursor plan %r with %d tasks", name, len(tasks))
    return ParsedPlan(
        plan_title=str(name) if name is not None else None,
        plan_intent=str(overview) if overview is not None else None,
        tasks=tasks,
    )


def parse_cursor_plan(path: str | Path) -> ParsedPlan:
    return parse_cursor_text(_read(path), str(path))


def parse_plan_file(path: str | Path, fmt: str = "legacy") -> ParsedPlan:
    if fmt == "legacy":
        return parse_plan_markdown(path)
    if fmt == "cursor":
        return parse_cursor_plan(path)
    raise TaskGraphError(
        VALIDATION_FAILED,
        f"Invalid plan format '{fmt}'. Must be one of: {', '.join(PLAN_FORMATS)}",
    )
