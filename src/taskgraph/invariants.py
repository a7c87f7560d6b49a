"""Graph and lifecycle invariants checked before every task mutation.

All three checks raise :class:`TaskGraphError` on violation and return
None otherwise. Callers run them before writing anything, so a failed
check leaves no partial state behind.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from taskgraph.errors import (
    CYCLE_DETECTED,
    INVALID_TRANSITION,
    TASK_NOT_FOUND,
    TASK_NOT_RUNNABLE,
    TaskGraphError,
)
from taskgraph.models import TASK_TERMINAL_STATUSES
from taskgraph.query import Backend, QueryBuilder

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "todo": frozenset({"doing", "blocked", "canceled"}),
    "doing": frozenset({"done", "blocked", "canceled"}),
    "blocked": frozenset({"todo", "canceled"}),
    "done": frozenset(),
    "canceled": frozenset(),
}


def check_valid_transition(current: str, next_status: str) -> None:
    if next_status not in VALID_TRANSITIONS.get(current, frozenset()):
        raise TaskGraphError(
            INVALID_TRANSITION,
            f"Invalid task status transition from '{current}' to '{next_status}'.",
        )


def _blocks_adjacency(edges: Iterable[Mapping[str, Any]]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}
    for edge in edges:
        if edge.get("type") != "blocks":
            continue
        graph.setdefault(edge["from_task_id"], []).append(edge["to_task_id"])
    return graph


def _has_cycle_from(start: str, graph: Mapping[str, list[str]], finished: set[str]) -> bool:
    """Iterative DFS from *start*; True on a back-edge to the recursion stack.

    Nodes fully explored by earlier calls are in *finished* and skipped.
    """
    visited: set[str] = {start}
    on_stack: set[str] = {start}
    stack: list[tuple[str, int]] = [(start, 0)]
    while stack:
        node, index = stack[-1]
        neighbors = graph.get(node, [])
        if index >= len(neighbors):
            stack.pop()
            on_stack.discard(node)
            finished.add(node)
            continue
        stack[-1] = (node, index + 1)
        neighbor = neighbors[index]
        if neighbor in on_stack:
            return True
        if neighbor not in visited and neighbor not in finished:
            visited.add(neighbor)
            on_stack.add(neighbor)
            stack.append((neighbor, 0))
    return False


def check_no_blocker_cycle(
    from_task_id: str,
    to_task_id: str,
    existing_edges: Iterable[Mapping[str, Any]],
) -> None:
    """Reject a new ``from -> to`` blocks edge that would close a cycle.

    Only ``blocks`` edges take part; ``relates`` edges are ignored even when
    they form a loop of their own. A self-loop (``from == to``) is a cycle.
    """
    candidate = {"from_task_id": from_task_id, "to_task_id": to_task_id, "type": "blocks"}
    graph = _blocks_adjacency([*existing_edges, candidate])
    finished: set[str] = set()
    for node in graph:
        if node not in finished and _has_cycle_from(node, graph, finished):
            raise TaskGraphError(
                CYCLE_DETECTED,
                f"Blocking edge from {from_task_id} to {to_task_id} would create a cycle.",
            )


def _terminal_status_in_clause() -> str:
    return ", ".join(f"'{status}'" for status in sorted(TASK_TERMINAL_STATUSES))


def count_unmet_blockers(backend: Backend, task_id: str) -> int:
    q = QueryBuilder(backend)
    rows = q.raw(
        "SELECT COUNT(*) AS unmet FROM `edge` e "
        "JOIN `task` bt ON e.from_task_id = bt.task_id "
        f"WHERE e.to_task_id = {q.literal(task_id)} "
        "AND e.type = 'blocks' "
        f"AND bt.status NOT IN ({_terminal_status_in_clause()})"
    )
    return int(rows[0]["unmet"]) if rows else 0


def check_runnable(backend: Backend, task_id: str) -> None:
    """A task is runnable when it is ``todo`` and every blocker is done or canceled.

    Read-only and unlocked: the caller's following write is not atomic with
    this check.
    """
    rows = QueryBuilder(backend).select("task", columns=["status"], where={"task_id": task_id})
    if not rows:
        raise TaskGraphError(TASK_NOT_FOUND, f"Task with ID {task_id} not found.")
    status = rows[0]["status"]
    if status != "todo":
        raise TaskGraphError(
            INVALID_TRANSITION,
            f"Task {task_id} is not in 'todo' status. Current status: {status}.",
        )
    unmet = count_unmet_blockers(backend, task_id)
    if unmet > 0:
        raise TaskGraphError(
            TASK_NOT_RUNNABLE,
            f"Task {task_id} has {unmet} unmet blockers and is not runnable.",
        )
