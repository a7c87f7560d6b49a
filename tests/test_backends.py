"""Tests for the SQLite and Dolt storage backends."""

import json
import subprocess
from unittest.mock import patch

import pytest

from taskgraph.backends import DoltBackend, SqliteBackend
from taskgraph.errors import (
    DB_COMMIT_FAILED,
    DB_PARSE_FAILED,
    DB_QUERY_FAILED,
    TaskGraphError,
)

# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


def test_sqlite_execute_returns_dicts(tmp_path):
    backend = SqliteBackend(tmp_path / "db" / "tg.db")
    backend.execute("CREATE TABLE t (a INT, b TEXT)")
    backend.execute("INSERT INTO t VALUES (1, 'x')")
    assert backend.execute("SELECT a, b FROM t") == [{"a": 1, "b": "x"}]
    backend.close()


def test_sqlite_error_is_wrapped(tmp_path):
    backend = SqliteBackend(tmp_path / "tg.db")
    with pytest.raises(TaskGraphError) as excinfo:
        backend.execute("SELECT * FROM missing_table")
    assert excinfo.value.code == DB_QUERY_FAILED
    assert "missing_table" in excinfo.value.message
    backend.close()


def test_sqlite_commit_persists(tmp_path):
    path = tmp_path / "tg.db"
    backend = SqliteBackend(path)
    backend.execute("CREATE TABLE t (a INT)")
    backend.execute("INSERT INTO t VALUES (1)")
    backend.commit("add row")
    backend.close()

    reopened = SqliteBackend(path)
    assert reopened.execute("SELECT COUNT(*) AS n FROM t") == [{"n": 1}]
    reopened.close()


def test_sqlite_no_commit_discards_writes(tmp_path, caplog):
    path = tmp_path / "tg.db"
    setup = SqliteBackend(path)
    setup.execute("CREATE TABLE t (a INT)")
    setup.commit("schema")
    setup.close()

    dry = SqliteBackend(path, no_commit=True)
    dry.execute("INSERT INTO t VALUES (1)")
    with caplog.at_level("INFO", logger="taskgraph.backends"):
        dry.commit("would add row")
    dry.close()
    assert "Skipping commit (dry run): would add row" in caplog.text

    reopened = SqliteBackend(path)
    assert reopened.execute("SELECT COUNT(*) AS n FROM t") == [{"n": 0}]
    reopened.close()


def test_sqlite_execute_write_counts_changed_rows(tmp_path):
    backend = SqliteBackend(tmp_path / "tg.db")
    backend.execute("CREATE TABLE t (a INT, b TEXT)")
    backend.execute("INSERT INTO t VALUES (1, 'x')")
    backend.execute("INSERT INTO t VALUES (2, 'x')")
    assert backend.execute_write("UPDATE t SET b = 'y' WHERE b = 'x'") == 2
    assert backend.execute_write("UPDATE t SET b = 'z' WHERE a = 3") == 0
    backend.close()


# ---------------------------------------------------------------------------
# Dolt
# ---------------------------------------------------------------------------


def _completed(cmd, stdout="", returncode=0):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")


def test_dolt_execute_parses_rows(tmp_path):
    payload = {"rows": [{"task_id": "t1", "status": "todo"}]}
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd, json.dumps(payload)),
    ) as run:
        rows = DoltBackend(tmp_path).execute("SELECT * FROM task")

    assert rows == payload["rows"]
    args, kwargs = run.call_args
    assert args[0] == ["dolt", "sql", "-q", "SELECT * FROM task", "-r", "json"]
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["check"] is True


def test_dolt_execute_empty_output(tmp_path):
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd, "  \n"),
    ):
        assert DoltBackend(tmp_path).execute("UPDATE task SET title = 'x'") == []


def test_dolt_execute_bad_json(tmp_path):
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd, "not json"),
    ):
        with pytest.raises(TaskGraphError) as excinfo:
            DoltBackend(tmp_path).execute("SELECT 1")
    assert excinfo.value.code == DB_PARSE_FAILED


def test_dolt_execute_failure_includes_stderr(tmp_path):
    error = subprocess.CalledProcessError(1, ["dolt"], output="", stderr="table not found: x")
    with patch("taskgraph.backends.subprocess.run", side_effect=error):
        with pytest.raises(TaskGraphError) as excinfo:
            DoltBackend(tmp_path).execute("SELECT * FROM x")
    assert excinfo.value.code == DB_QUERY_FAILED
    assert "table not found: x" in excinfo.value.message
    assert excinfo.value.cause is error


def test_dolt_missing_binary(tmp_path):
    with patch("taskgraph.backends.subprocess.run", side_effect=FileNotFoundError("dolt")):
        with pytest.raises(TaskGraphError) as excinfo:
            DoltBackend(tmp_path).execute("SELECT 1")
    assert excinfo.value.code == DB_QUERY_FAILED


def test_dolt_execute_write_reads_row_count_from_same_call(tmp_path):
    stdout = '{"rows": []}\n{"rows": [{"affected": 1}]}\n'
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd, stdout),
    ) as run:
        changed = DoltBackend(tmp_path).execute_write("UPDATE task SET status = 'doing'")

    assert changed == 1
    assert run.call_count == 1
    sql = run.call_args[0][0][3]
    assert sql == "UPDATE task SET status = 'doing'; SELECT ROW_COUNT() AS affected"


def test_dolt_execute_write_zero_rows(tmp_path):
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd, '{"rows": [{"affected": 0}]}'),
    ):
        assert DoltBackend(tmp_path).execute_write("UPDATE task SET title = 'x'") == 0


def test_dolt_execute_write_without_row_count(tmp_path):
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd, ""),
    ):
        with pytest.raises(TaskGraphError) as excinfo:
            DoltBackend(tmp_path).execute_write("UPDATE task SET title = 'x'")
    assert excinfo.value.code == DB_PARSE_FAILED


def test_dolt_commit_stages_then_commits(tmp_path):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return _completed(cmd)

    with patch("taskgraph.backends.subprocess.run", side_effect=fake_run):
        DoltBackend(tmp_path).commit("task: start abc")

    assert calls == [
        ["dolt", "add", "-A"],
        ["dolt", "commit", "-m", "task: start abc", "--allow-empty"],
    ]


def test_dolt_commit_failure(tmp_path):
    def fake_run(cmd, **kwargs):
        if cmd[1] == "commit":
            raise subprocess.CalledProcessError(1, cmd, stderr="nothing to commit")
        return _completed(cmd)

    with patch("taskgraph.backends.subprocess.run", side_effect=fake_run):
        with pytest.raises(TaskGraphError) as excinfo:
            DoltBackend(tmp_path).commit("msg")
    assert excinfo.value.code == DB_COMMIT_FAILED


def test_dolt_no_commit_skips_subprocess(tmp_path):
    with patch("taskgraph.backends.subprocess.run") as run:
        DoltBackend(tmp_path, no_commit=True).commit("msg")
    run.assert_not_called()


def test_dolt_init_repo(tmp_path):
    repo = tmp_path / "dolt"
    with patch(
        "taskgraph.backends.subprocess.run",
        side_effect=lambda cmd, **kwargs: _completed(cmd),
    ) as run:
        assert DoltBackend.init_repo(repo) is True
    assert repo.is_dir()
    assert run.call_args.args[0] == ["dolt", "init"]


def test_dolt_init_repo_existing(tmp_path):
    (tmp_path / ".dolt").mkdir()
    with patch("taskgraph.backends.subprocess.run") as run:
        assert DoltBackend.init_repo(tmp_path) is False
    run.assert_not_called()
