"""Mermaid and Graphviz DOT renderings of the task graph."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from taskgraph.models import GraphEdge, GraphNode
from taskgraph.query import Backend, QueryBuilder

_MERMAID_ID_RE = re.compile(r"[^A-Za-z0-9]")
_MERMAID_ARROWS = {"blocks": "-->", "relates": "---"}


def _mermaid_id(task_id: str) -> str:
    return _MERMAID_ID_RE.sub("", task_id)


def format_mermaid_graph(nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> str:
    """``graph TD`` text; edge types other than blocks/relates are left out."""
    lines = ["graph TD"]
    for node in nodes:
        label = node["label"].replace('"', "#quot;")
        lines.append(f'  {_mermaid_id(node["id"])}["{label}"]')
    for edge in edges:
        arrow = _MERMAID_ARROWS.get(edge["type"])
        if arrow is None:
            continue
        lines.append(f"  {_mermaid_id(edge['from'])} {arrow} {_mermaid_id(edge['to'])}")
    return "\n".join(lines) + "\n"


def format_dot_graph(nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> str:
    lines = ["digraph TaskGraph {", "  rankdir=LR;", "  node [shape=box];"]
    for node in nodes:
        label = node["label"].replace('"', '\\"')
        lines.append(f'  "{node["id"]}" [label="{label}"];')
    for edge in edges:
        lines.append(f'  "{edge["from"]}" -> "{edge["to"]}" [label="{edge["type"]}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


def get_graph_data(
    backend: Backend,
    plan_id: str | None = None,
    feature_key: str | None = None,
) -> dict[str, Any]:
    """Nodes for the tasks matching the filters and the edges between them."""
    q = QueryBuilder(backend)
    where: dict[str, Any] = {}
    if plan_id:
        where["plan_id"] = plan_id
    if feature_key:
        where["feature_key"] = feature_key
    tasks = q.select(
        "task",
        columns=["task_id", "title", "status"],
        where=where,
        order_by="`created_at` ASC, `task_id` ASC",
    )
    nodes: list[GraphNode] = [
        {
            "id": task["task_id"],
            "label": f"{task['title']} ({task['status']})",
            "status": task["status"],
        }
        for task in tasks
    ]
    node_ids = {node["id"] for node in nodes}

    edges: list[GraphEdge] = []
    for row in q.select(
        "edge",
        columns=["from_task_id", "to_task_id", "type"],
        order_by="`from_task_id` ASC, `to_task_id` ASC, `type` ASC",
    ):
        if row["from_task_id"] in node_ids and row["to_task_id"] in node_ids:
            edges.append(
                {"from": row["from_task_id"], "to": row["to_task_id"], "type": row["type"]}
            )
    return {"nodes": nodes, "edges": edges}
