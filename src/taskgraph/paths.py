"""Canonical filesystem locations for taskgraph configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

TASKGRAPH_DIR_NAME = ".taskgraph"
CONFIG_FILE_NAME = "config.json"
DOLT_DIR_NAME = "dolt"
SQLITE_FILE_NAME = "taskgraph.db"


def taskgraph_dir(base_path: Path | None = None) -> Path:
    env_dir = os.environ.get("TASKGRAPH_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return (base_path or Path.cwd()) / TASKGRAPH_DIR_NAME


def config_path(base_path: Path | None = None) -> Path:
    return taskgraph_dir(base_path) / CONFIG_FILE_NAME
