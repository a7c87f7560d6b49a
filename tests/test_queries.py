"""Tests for read-side queries."""

import pytest

from taskgraph.errors import PLAN_NOT_FOUND, TASK_NOT_FOUND, VALIDATION_FAILED, TaskGraphError
from taskgraph.queries import (
    SHOW_RECENT_EVENTS,
    count_runnable_tasks,
    find_plan_id,
    list_plans,
    next_runnable_tasks,
    portfolio_hotspots,
    portfolio_overlaps,
    resolve_plan_id,
    show_task,
    status_counts,
    status_overview,
)
from taskgraph.query import QueryBuilder
from taskgraph.tasks import (
    add_edge,
    add_note,
    block_task,
    cancel_task,
    create_plan,
    create_task,
    finish_task,
    start_task,
)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def test_find_plan_by_id_or_title(backend):
    plan_id = create_plan(backend, "Roadmap")["plan_id"]
    assert find_plan_id(backend, plan_id) == plan_id
    assert find_plan_id(backend, "Roadmap") == plan_id
    assert find_plan_id(backend, "Nope") is None


def test_resolve_plan_id_raises(backend):
    with pytest.raises(TaskGraphError) as excinfo:
        resolve_plan_id(backend, "Nope")
    assert excinfo.value.code == PLAN_NOT_FOUND
    assert excinfo.value.message == "Plan 'Nope' not found."


def test_list_plans_orders_by_priority(backend):
    create_plan(backend, "Low", priority=1)
    create_plan(backend, "High", priority=9)
    assert [plan["title"] for plan in list_plans(backend)] == ["High", "Low"]
    assert list_plans(backend, status="active") == []


def test_status_counts_zero_fills():
    counts = status_counts([{"status": "todo"}, {"status": "todo"}, {"status": "bogus"}])
    assert counts == {"todo": 2, "doing": 0, "blocked": 0, "done": 0, "canceled": 0}


# ---------------------------------------------------------------------------
# Next runnable
# ---------------------------------------------------------------------------


def test_next_prefers_higher_priority_plans(backend):
    low = create_plan(backend, "Low", priority=0)["plan_id"]
    high = create_plan(backend, "High", priority=5)["plan_id"]
    create_task(backend, low, "low plan task")
    create_task(backend, high, "high plan task", risk="high")

    rows = next_runnable_tasks(backend)
    assert [row["title"] for row in rows] == ["high plan task", "low plan task"]
    assert rows[0]["plan_title"] == "High"


def test_next_orders_by_risk_then_estimate(backend):
    plan_id = create_plan(backend, "P")["plan_id"]
    create_task(backend, plan_id, "risky", risk="high", estimate_mins=5)
    create_task(backend, plan_id, "unknown size", risk="low")
    create_task(backend, plan_id, "long", risk="low", estimate_mins=90)
    create_task(backend, plan_id, "short", risk="low", estimate_mins=10)
    create_task(backend, plan_id, "medium", risk="medium", estimate_mins=1)

    titles = [row["title"] for row in next_runnable_tasks(backend)]
    assert titles == ["short", "long", "unknown size", "medium", "risky"]


def test_next_skips_unrunnable_tasks(backend):
    plan_id = create_plan(backend, "P")["plan_id"]
    blocker = create_task(backend, plan_id, "blocker")["task_id"]
    waiting = create_task(backend, plan_id, "waiting")["task_id"]
    busy = create_task(backend, plan_id, "busy")["task_id"]
    freed = create_task(backend, plan_id, "freed")["task_id"]
    add_edge(backend, blocker, "blocks", waiting)
    start_task(backend, busy)
    done_blocker = create_task(backend, plan_id, "done blocker")["task_id"]
    add_edge(backend, done_blocker, "blocks", freed)
    finish_task(backend, done_blocker, force=True)

    ids = {row["task_id"] for row in next_runnable_tasks(backend)}
    assert ids == {blocker, freed}
    assert count_runnable_tasks(backend) == 2


def test_next_filters_by_plan_title_or_id(backend):
    first = create_plan(backend, "First")["plan_id"]
    second = create_plan(backend, "Second")["plan_id"]
    create_task(backend, first, "a")
    create_task(backend, second, "b")

    assert [row["title"] for row in next_runnable_tasks(backend, "Second")] == ["b"]
    assert [row["title"] for row in next_runnable_tasks(backend, first)] == ["a"]


def test_runnable_queries_reject_unknown_plan(backend):
    create_task(backend, create_plan(backend, "Known")["plan_id"], "a")
    for query in (next_runnable_tasks, count_runnable_tasks):
        with pytest.raises(TaskGraphError) as excinfo:
            query(backend, "Missing")
        assert excinfo.value.code == PLAN_NOT_FOUND


def test_next_limit(backend):
    plan_id = create_plan(backend, "P")["plan_id"]
    for index in range(4):
        create_task(backend, plan_id, f"t{index}", estimate_mins=index + 1)
    assert len(next_runnable_tasks(backend, limit=2)) == 2
    with pytest.raises(TaskGraphError) as excinfo:
        next_runnable_tasks(backend, limit=0)
    assert excinfo.value.code == VALIDATION_FAILED


def test_plan_titles_with_quotes_are_escaped(backend):
    plan_id = create_plan(backend, "Bob's plan")["plan_id"]
    create_task(backend, plan_id, "it's fine")
    assert [row["title"] for row in next_runnable_tasks(backend, "Bob's plan")] == ["it's fine"]


# ---------------------------------------------------------------------------
# Show and status
# ---------------------------------------------------------------------------


def test_show_task(backend):
    plan_id = create_plan(backend, "Plan")["plan_id"]
    upstream = create_task(backend, plan_id, "upstream")["task_id"]
    task_id = create_task(
        backend, plan_id, "middle", acceptance=["works", "has \\ backslash"]
    )["task_id"]
    downstream = create_task(backend, plan_id, "downstream")["task_id"]
    block_task(backend, task_id, upstream, "needs upstream")
    add_edge(backend, task_id, "blocks", downstream)

    detail = show_task(backend, task_id)
    assert detail["task"]["title"] == "middle"
    assert detail["task"]["plan_title"] == "Plan"
    assert detail["task"]["status"] == "blocked"
    assert detail["task"]["acceptance"] == ["works", "has \\ backslash"]
    assert [row["from_task_id"] for row in detail["blockers"]] == [upstream]
    assert detail["blockers"][0]["reason"] == "needs upstream"
    assert [row["to_task_id"] for row in detail["dependents"]] == [downstream]
    assert {event["kind"] for event in detail["events"]} == {"created", "blocked"}


def test_show_task_limits_events(backend):
    plan_id = create_plan(backend, "Plan")["plan_id"]
    task_id = create_task(backend, plan_id, "chatty")["task_id"]
    for index in range(SHOW_RECENT_EVENTS + 3):
        add_note(backend, task_id, f"note {index}")
    detail = show_task(backend, task_id)
    assert len(detail["events"]) == SHOW_RECENT_EVENTS
    assert all(isinstance(event["body"], dict) for event in detail["events"])


def test_show_task_event_order_is_stable_within_a_second(backend):
    plan_id = create_plan(backend, "Plan")["plan_id"]
    task_id = create_task(backend, plan_id, "chatty")["task_id"]
    for index in range(SHOW_RECENT_EVENTS + 2):
        add_note(backend, task_id, f"note {index}")
    QueryBuilder(backend).raw(
        "UPDATE `event` SET `created_at` = '2025-01-01 00:00:00' "
        f"WHERE `task_id` = '{task_id}'"
    )

    first = show_task(backend, task_id)["events"]
    second = show_task(backend, task_id)["events"]
    ids = [event["event_id"] for event in first]
    assert ids == [event["event_id"] for event in second]
    assert ids == sorted(ids, reverse=True)


def test_show_task_missing(backend):
    with pytest.raises(TaskGraphError) as excinfo:
        show_task(backend, "missing")
    assert excinfo.value.code == TASK_NOT_FOUND


def test_status_overview(backend):
    first = create_plan(backend, "First", priority=2)["plan_id"]
    second = create_plan(backend, "Second")["plan_id"]
    a = create_task(backend, first, "a")["task_id"]
    create_task(backend, first, "b")
    c = create_task(backend, second, "c")["task_id"]
    start_task(backend, a)
    cancel_task(backend, c)

    overview = status_overview(backend)
    assert [plan["title"] for plan in overview["plans"]] == ["First", "Second"]
    assert overview["plans"][0]["tasks"]["doing"] == 1
    assert overview["plans"][0]["tasks"]["todo"] == 1
    assert overview["plans"][1]["tasks"]["canceled"] == 1
    assert overview["tasks"] == {"todo": 1, "doing": 1, "blocked": 0, "done": 0, "canceled": 1}
    assert overview["runnable"] == 1

    scoped = status_overview(backend, "Second")
    assert [plan["plan_id"] for plan in scoped["plans"]] == [second]
    assert scoped["runnable"] == 0


def test_status_overview_unknown_plan(backend):
    with pytest.raises(TaskGraphError) as excinfo:
        status_overview(backend, "ghost")
    assert excinfo.value.code == PLAN_NOT_FOUND


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


@pytest.fixture()
def portfolio(backend):
    plan_id = create_plan(backend, "Portfolio")["plan_id"]
    ids = {}
    for title, feature, area in [
        ("login", "auth", "api"),
        ("billing", "payments", "api"),
        ("invoices", "reports", "api"),
        ("dashboard", "reports", "ui"),
        ("theme", None, "ui"),
    ]:
        ids[title] = create_task(backend, plan_id, title, feature_key=feature, area=area)[
            "task_id"
        ]
    add_edge(backend, ids["login"], "relates", ids["billing"])
    add_edge(backend, ids["login"], "relates", ids["invoices"])
    add_edge(backend, ids["dashboard"], "relates", ids["invoices"])
    add_edge(backend, ids["billing"], "relates", ids["theme"])
    return ids


def test_portfolio_overlaps(backend, portfolio):
    result = portfolio_overlaps(backend, min_features=2)
    overlaps = {row["title"]: row for row in result["relatesOverlaps"]}
    assert set(overlaps) == {"login"}
    assert overlaps["login"]["related_features"] == ["payments", "reports"]
    assert overlaps["login"]["feature_count"] == 2

    assert result["areaHotspots"] == [
        {
            "area": "api",
            "task_count": 3,
            "features_in_area": ["auth", "payments", "reports"],
            "feature_key_count": 3,
        }
    ]


def test_portfolio_overlaps_lower_threshold(backend, portfolio):
    result = portfolio_overlaps(backend, min_features=1)
    assert {row["title"] for row in result["relatesOverlaps"]} == {"login"}
    assert {row["area"] for row in result["areaHotspots"]} == {"api", "ui"}


def test_portfolio_overlaps_validates_min(backend):
    with pytest.raises(TaskGraphError) as excinfo:
        portfolio_overlaps(backend, min_features=0)
    assert excinfo.value.code == VALIDATION_FAILED


def test_portfolio_hotspots(backend, portfolio):
    result = portfolio_hotspots(backend)
    assert result["tasksPerArea"] == [
        {"area": "api", "task_count": 3},
        {"area": "ui", "task_count": 2},
    ]
    assert result["multiFeatureAreas"] == [
        {"area": "api", "features": ["auth", "payments", "reports"]}
    ]


def test_portfolio_empty(backend):
    assert portfolio_hotspots(backend) == {"tasksPerArea": [], "multiFeatureAreas": []}
    assert portfolio_overlaps(backend) == {"relatesOverlaps": [], "areaHotspots": []}
