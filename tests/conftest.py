"""Shared test fixtures: a migrated template DB copied per test."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from taskgraph.backends import SqliteBackend
from taskgraph.db import apply_migrations


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single migrated SQLite template; ``db_path`` copies it per test."""
    tmp_dir = Path(tempfile.mkdtemp(prefix="taskgraph-template-"))
    path = tmp_dir / "template.db"
    try:
        backend = SqliteBackend(path)
        apply_migrations(backend)
        backend.close()
        yield path
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


@pytest.fixture()
def db_path(tmp_path: Path, _db_template_path: Path) -> Path:
    path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, path)
    return path


@pytest.fixture()
def backend(db_path: Path) -> SqliteBackend:
    """Per-test SQLite backend with the schema applied."""
    db = SqliteBackend(db_path)
    try:
        yield db
    finally:
        db.close()


class FakeBackend:
    """Records every statement and commit; reads reply from a queue of canned results."""

    dialect = "dolt"

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.statements: list[str] = []
        self.commits: list[str] = []
        self.affected = 1

    def execute(self, sql):
        self.statements.append(sql)
        if self.responses:
            return self.responses.pop(0)
        return []

    def execute_write(self, sql):
        self.statements.append(sql)
        return self.affected

    def commit(self, message):
        self.commits.append(message)


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def tg_home(tmp_path: Path, db_path: Path, monkeypatch) -> Path:
    """A .taskgraph directory configured for the per-test SQLite database."""
    home = tmp_path / ".taskgraph"
    home.mkdir()
    (home / "config.json").write_text(
        json.dumps({"backend": "sqlite", "sqlitePath": str(db_path)})
    )
    monkeypatch.setenv("TASKGRAPH_DIR", str(home))
    monkeypatch.delenv("TASKGRAPH_DB_PATH", raising=False)
    return home
