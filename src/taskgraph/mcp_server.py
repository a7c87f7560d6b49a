"""MCP server exposing the task workflow to agents.

Run with ``tg mcp`` (stdio transport). Every tool returns a JSON string:
the same payload the matching CLI command prints, or
``{"ok": false, "code": ..., "error": ...}`` on failure.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from mcp.server.fastmcp import FastMCP

from taskgraph.config import read_config
from taskgraph.db import connect
from taskgraph.errors import TaskGraphError
from taskgraph.queries import DEFAULT_NEXT_LIMIT, next_runnable_tasks, show_task, status_overview
from taskgraph.query import Backend
from taskgraph.tasks import add_note, block_task, finish_task, start_task

log = logging.getLogger(__name__)

server = FastMCP("taskgraph-mcp")


def _call(operation: Callable[[Backend], Any]) -> str:
    try:
        with connect(read_config()) as backend:
            payload = operation(backend)
    except TaskGraphError as exc:
        log.warning("Tool call failed: %s", exc.message)
        return json.dumps({"ok": False, "code": exc.code, "error": exc.message})
    return json.dumps(payload, default=str)


@server.tool()
def tg_status(plan: str | None = None) -> str:
    """Task counts by status per plan, plus the number of runnable tasks."""
    return _call(lambda backend: status_overview(backend, plan))


@server.tool()
def tg_next(plan: str | None = None, limit: int = DEFAULT_NEXT_LIMIT) -> str:
    """Runnable tasks (todo, every blocker done or canceled), best first."""
    return _call(lambda backend: next_runnable_tasks(backend, plan, limit))


@server.tool()
def tg_show(task_id: str) -> str:
    """A task with its plan title, blockers, dependents and latest events."""
    return _call(lambda backend: show_task(backend, task_id))


@server.tool()
def tg_start(task_id: str, actor: str = "agent") -> str:
    """Move a runnable task from todo to doing."""
    return _call(lambda backend: start_task(backend, task_id, actor))


@server.tool()
def tg_done(
    task_id: str,
    evidence: str = "",
    checks: str | None = None,
    force: bool = False,
) -> str:
    """Mark a task done with evidence; checks is an optional JSON string."""
    return _call(lambda backend: finish_task(backend, task_id, evidence, checks, force=force))


@server.tool()
def tg_note(task_id: str, message: str, agent: str | None = None) -> str:
    """Append a note event to a task."""
    return _call(lambda backend: add_note(backend, task_id, message, agent=agent))


@server.tool()
def tg_block(task_id: str, blocker_task_id: str, reason: str | None = None) -> str:
    """Block a task on another task (rejects cycles)."""
    return _call(lambda backend: block_task(backend, task_id, blocker_task_id, reason))


def run() -> None:
    server.run(transport="stdio")
