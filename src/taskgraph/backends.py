"""Storage backends satisfying the ``execute`` / ``execute_write`` / ``commit`` contract.

``DoltBackend`` shells out to the ``dolt`` binary, so every commit becomes a
versioned snapshot. ``SqliteBackend`` keeps everything in a local SQLite
file; its commits are plain transaction commits with no history.

Both raise :class:`TaskGraphError` (never ``sqlite3.Error`` or
``CalledProcessError``) so callers handle one error type.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import subprocess
from pathlib import Path
from typing import Any

from taskgraph.errors import (
    DB_COMMIT_FAILED,
    DB_PARSE_FAILED,
    DB_QUERY_FAILED,
    TaskGraphError,
)

log = logging.getLogger(__name__)

VALID_BACKENDS = {"dolt", "sqlite"}
DEFAULT_BACKEND = "dolt"


def _process_detail(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        return (exc.stderr or exc.stdout or "").strip()
    return str(exc)


class SqliteBackend:
    dialect = "sqlite"

    def __init__(self, db_path: Path, *, no_commit: bool = False) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.db_path = db_path
        self.no_commit = no_commit
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA busy_timeout=10000")

    def execute(self, sql: str) -> list[dict[str, Any]]:
        try:
            rows = self.conn.execute(sql).fetchall()
        except sqlite3.Error as exc:
            raise TaskGraphError(DB_QUERY_FAILED, f"SQLite query failed: {sql}", exc) from exc
        return [dict(row) for row in rows]

    def execute_write(self, sql: str) -> int:
        """Run a data-changing statement and return the number of rows it touched."""
        try:
            cursor = self.conn.execute(sql)
        except sqlite3.Error as exc:
            raise TaskGraphError(DB_QUERY_FAILED, f"SQLite query failed: {sql}", exc) from exc
        return cursor.rowcount

    def commit(self, message: str) -> None:
        if self.no_commit:
            log.info("Skipping commit (dry run): %s", message)
            return
        try:
            self.conn.commit()
        except sqlite3.Error as exc:
            raise TaskGraphError(DB_COMMIT_FAILED, f"SQLite commit failed: {message}", exc) from exc
        log.info("Committed: %s", message)

    def close(self) -> None:
        self.conn.close()


class DoltBackend:
    """Run statements through ``dolt sql -q <sql> -r json`` inside a Dolt repo."""

    dialect = "dolt"

    def __init__(self, repo_path: Path, *, no_commit: bool = False) -> None:
        self.repo_path = repo_path
        self.no_commit = no_commit

    @staticmethod
    def init_repo(repo_path: Path) -> bool:
        """Create a Dolt repository at *repo_path* unless one exists.

        Returns True when a new repository was created.
        """
        if (repo_path / ".dolt").exists():
            log.info("Dolt repository already exists at %s", repo_path)
            return False
        repo_path.mkdir(parents=True, exist_ok=True)
        try:
            subprocess.run(
                ["dolt", "init"],
                cwd=str(repo_path),
                check=True,
                capture_output=True,
                text=True,
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise TaskGraphError(
                DB_QUERY_FAILED,
                f"Failed to initialize Dolt repository: {_process_detail(exc)}",
                exc,
            ) from exc
        log.info("Created Dolt repository at %s", repo_path)
        return True

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["dolt", *args],
            cwd=str(self.repo_path),
            check=True,
            capture_output=True,
            text=True,
        )

    def _query(self, sql: str) -> list[dict[str, Any]]:
        """Run *sql* and return every JSON result document ``dolt`` printed."""
        try:
            result = self._run(["sql", "-q", sql, "-r", "json"])
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise TaskGraphError(
                DB_QUERY_FAILED,
                f"Dolt SQL query failed: {sql} ({_process_detail(exc)})",
                exc,
            ) from exc
        stdout = result.stdout.strip()
        decoder = json.JSONDecoder()
        documents: list[dict[str, Any]] = []
        pos = 0
        while pos < len(stdout):
            try:
                payload, pos = decoder.raw_decode(stdout, pos)
            except json.JSONDecodeError as exc:
                raise TaskGraphError(
                    DB_PARSE_FAILED, f"Failed to parse Dolt SQL output: {stdout}", exc
                ) from exc
            if isinstance(payload, dict):
                documents.append(payload)
            while pos < len(stdout) and stdout[pos].isspace():
                pos += 1
        return documents

    def execute(self, sql: str) -> list[dict[str, Any]]:
        documents = self._query(sql)
        if not documents:
            return []
        return list(documents[-1].get("rows") or [])

    def execute_write(self, sql: str) -> int:
        """Run a data-changing statement and return the number of rows it changed.

        ``ROW_COUNT()`` is session-scoped, so it runs in the same ``dolt sql``
        call as the statement.
        """
        documents = self._query(f"{sql}; SELECT ROW_COUNT() AS affected")
        for payload in reversed(documents):
            rows = payload.get("rows") or []
            if rows and "affected" in rows[0]:
                try:
                    return int(rows[0]["affected"])
                except (TypeError, ValueError) as exc:
                    raise TaskGraphError(
                        DB_PARSE_FAILED, f"Unexpected ROW_COUNT result: {rows[0]!r}", exc
                    ) from exc
        raise TaskGraphError(DB_PARSE_FAILED, f"Dolt did not report a row count for: {sql}")

    def commit(self, message: str) -> None:
        if self.no_commit:
            log.info("Skipping commit (dry run): %s", message)
            return
        try:
            self._run(["add", "-A"])
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise TaskGraphError(
                DB_COMMIT_FAILED, f"Dolt add failed before commit: {message}", exc
            ) from exc
        try:
            self._run(["commit", "-m", message, "--allow-empty"])
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise TaskGraphError(DB_COMMIT_FAILED, f"Dolt commit failed: {message}", exc) from exc
        log.info("Committed: %s", message)

    def close(self) -> None:
        pass
