"""Error codes and the structured error raised across taskgraph.

Every failure a caller is expected to handle is a ``TaskGraphError``
carrying one of the codes below. CLI and MCP entry points turn it into a
``{"ok": false, "code": ..., "error": ...}`` payload.
"""

from __future__ import annotations

from typing import Any

# Backend layer
DB_QUERY_FAILED = "DB_QUERY_FAILED"
DB_COMMIT_FAILED = "DB_COMMIT_FAILED"
DB_PARSE_FAILED = "DB_PARSE_FAILED"

# Domain layer
TASK_NOT_FOUND = "TASK_NOT_FOUND"
PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
INVALID_TRANSITION = "INVALID_TRANSITION"
TASK_NOT_RUNNABLE = "TASK_NOT_RUNNABLE"
CYCLE_DETECTED = "CYCLE_DETECTED"
EDGE_EXISTS = "EDGE_EXISTS"

# Configuration
CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
CONFIG_PARSE_FAILED = "CONFIG_PARSE_FAILED"

# Plan import
FILE_READ_FAILED = "FILE_READ_FAILED"
PARSE_FAILED = "PARSE_FAILED"

VALIDATION_FAILED = "VALIDATION_FAILED"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

ERROR_CODES = frozenset(
    {
        DB_QUERY_FAILED,
        DB_COMMIT_FAILED,
        DB_PARSE_FAILED,
        TASK_NOT_FOUND,
        PLAN_NOT_FOUND,
        INVALID_TRANSITION,
        TASK_NOT_RUNNABLE,
        CYCLE_DETECTED,
        EDGE_EXISTS,
        CONFIG_NOT_FOUND,
        CONFIG_PARSE_FAILED,
        FILE_READ_FAILED,
        PARSE_FAILED,
        VALIDATION_FAILED,
        UNKNOWN_ERROR,
    }
)


class TaskGraphError(Exception):
    """Raised with a stable error code; short-circuits the operation in progress."""

    def __init__(self, code: str, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.code = code if code in ERROR_CODES else UNKNOWN_ERROR
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "cause": str(self.cause) if self.cause is not None else None,
        }
