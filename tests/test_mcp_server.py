"""Tests for the MCP tool functions."""

import json

import pytest

from taskgraph import mcp_server
from taskgraph.tasks import add_edge, create_plan, create_task


@pytest.fixture()
def seeded(tg_home, backend):
    plan_id = create_plan(backend, "Agents")["plan_id"]
    first = create_task(backend, plan_id, "first")["task_id"]
    second = create_task(backend, plan_id, "second")["task_id"]
    add_edge(backend, first, "blocks", second)
    return {"plan_id": plan_id, "first": first, "second": second}


def test_server_name():
    assert mcp_server.server.name == "taskgraph-mcp"


def test_status_and_next(seeded):
    status = json.loads(mcp_server.tg_status())
    assert status["tasks"]["todo"] == 2
    assert status["runnable"] == 1

    runnable = json.loads(mcp_server.tg_next(plan="Agents"))
    assert [row["task_id"] for row in runnable] == [seeded["first"]]


def test_start_done_flow(seeded):
    started = json.loads(mcp_server.tg_start(seeded["first"]))
    assert started["status"] == "doing"
    finished = json.loads(
        mcp_server.tg_done(seeded["first"], evidence="ok", checks='["lint", "tests"]')
    )
    assert finished["checks"] == ["lint", "tests"]
    assert json.loads(mcp_server.tg_start(seeded["second"]))["status"] == "doing"


def test_show_note_block(seeded):
    assert "event_id" in json.loads(mcp_server.tg_note(seeded["second"], "looking", agent="a-1"))
    blocked = json.loads(mcp_server.tg_block(seeded["second"], seeded["first"], "waiting"))
    assert blocked["status"] == "blocked"

    detail = json.loads(mcp_server.tg_show(seeded["second"]))
    assert detail["task"]["status"] == "blocked"
    kinds = {event["kind"] for event in detail["events"]}
    assert {"note", "blocked"} <= kinds


def test_errors_are_json(seeded):
    payload = json.loads(mcp_server.tg_start(seeded["second"]))
    assert payload["ok"] is False
    assert payload["code"] == "TASK_NOT_RUNNABLE"
    assert "unmet blockers" in payload["error"]

    missing = json.loads(mcp_server.tg_show("nope"))
    assert missing["code"] == "TASK_NOT_FOUND"

    bad_limit = json.loads(mcp_server.tg_next(limit=0))
    assert bad_limit["code"] == "VALIDATION_FAILED"


def test_missing_config(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKGRAPH_DIR", str(tmp_path / "empty"))
    payload = json.loads(mcp_server.tg_status())
    assert payload["code"] == "CONFIG_NOT_FOUND"
