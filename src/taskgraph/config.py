"""Read and write ``.taskgraph/config.json``.

The file records which backend to use and where it lives::

    {"backend": "dolt", "doltRepoPath": "/repo/.taskgraph/dolt"}

``TASKGRAPH_DB_PATH`` overrides the SQLite file location at read time.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from taskgraph.errors import CONFIG_NOT_FOUND, CONFIG_PARSE_FAILED, TaskGraphError
from taskgraph.paths import config_path

log = logging.getLogger(__name__)


@dataclass
class Config:
    backend: str = "dolt"
    dolt_repo_path: str = ""
    sqlite_path: str = ""

    def to_dict(self) -> dict[str, str]:
        data = {"backend": self.backend}
        if self.dolt_repo_path:
            data["doltRepoPath"] = self.dolt_repo_path
        if self.sqlite_path:
            data["sqlitePath"] = self.sqlite_path
        return data


def read_config(base_path: Path | None = None) -> Config:
    path = config_path(base_path)
    if not path.exists():
        raise TaskGraphError(
            CONFIG_NOT_FOUND,
            f"Config file not found at {path}. Please run 'tg init' first.",
        )
    try:
        raw = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise TaskGraphError(
            CONFIG_PARSE_FAILED, f"Failed to parse config file at {path}", exc
        ) from exc
    if not isinstance(raw, dict):
        raise TaskGraphError(CONFIG_PARSE_FAILED, f"Config file at {path} must be a JSON object")

    config = Config(
        backend=str(raw.get("backend") or "dolt"),
        dolt_repo_path=str(raw.get("doltRepoPath") or ""),
        sqlite_path=str(raw.get("sqlitePath") or ""),
    )
    env_db = os.environ.get("TASKGRAPH_DB_PATH")
    if env_db:
        config.sqlite_path = str(Path(env_db).expanduser())
    log.debug("Loaded config from %s: %s", path, config)
    return config


def write_config(config: Config, base_path: Path | None = None) -> Path:
    path = config_path(base_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config.to_dict(), indent=2) + "\n")
    except OSError as exc:
        raise TaskGraphError(
            CONFIG_PARSE_FAILED, f"Failed to write config file to {path}", exc
        ) from exc
    return path
