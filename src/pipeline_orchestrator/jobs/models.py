"""Domain models for job residency, task state, and operator results."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class TaskState(str, Enum):
    """Per-task lifecycle states recorded in the status snapshot."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class JobLocation(str, Enum):
    """Mutually exclusive residency directories of a job."""

    PENDING = "pending"
    CURRENT = "current"
    COMPLETE = "complete"
    REJECTED = "rejected"


# Residency lookup precedence when resolving a job id.
LOCATION_PRECEDENCE = (
    JobLocation.CURRENT,
    JobLocation.PENDING,
    JobLocation.COMPLETE,
    JobLocation.REJECTED,
)


class ErrorCode(str, Enum):
    """Normalized failure codes surfaced to operators."""

    BAD_REQUEST = "bad_request"
    JOB_NOT_FOUND = "job_not_found"
    JOB_RUNNING = "job_running"
    DEPENDENCIES_NOT_SATISFIED = "dependencies_not_satisfied"
    TASK_NOT_FOUND = "task_not_found"
    TASK_NOT_PENDING = "task_not_pending"
    NOT_FOUND = "not_found"
    INVALID_JSON = "invalid_json"
    FS_ERROR = "fs_error"
    PIPELINE_NOT_FOUND = "pipeline_not_found"
    INVALID_JOB_METADATA = "invalid_job_metadata"
    SPAWN_FAILED = "spawn_failed"
    INTERNAL_ERROR = "internal_error"


class RestartMode(str, Enum):
    """Which reset variant a restart applied."""

    CLEAN_SLATE = "clean-slate"
    PARTIAL = "partial"
    SINGLE_TASK = "single-task"
    SINGLE_TASK_START = "single-task-start"


class StatusStoreError(RuntimeError):
    """Status snapshot could not be read or mutated."""

    def __init__(self, message: str, *, code: ErrorCode) -> None:
        super().__init__(message)
        self.code = code


class TaskNotFoundError(StatusStoreError):
    """Requested task is absent from the status snapshot."""

    def __init__(self, task_name: str) -> None:
        super().__init__(f"Task not found: {task_name}", code=ErrorCode.TASK_NOT_FOUND)
        self.task_name = task_name


class ResidencyError(RuntimeError):
    """Job directory could not be moved between lifecycle locations."""


@dataclass(slots=True)
class OperationResult:
    """Structured outcome of a lifecycle operation."""

    ok: bool
    code: ErrorCode | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **details: Any) -> OperationResult:
        return cls(ok=True, details=details)

    @classmethod
    def failure(cls, code: ErrorCode, message: str, **details: Any) -> OperationResult:
        return cls(ok=False, code=code, message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the `{ok, code?, message?, ...details}` envelope."""

        payload: dict[str, Any] = {"ok": self.ok}
        if self.code is not None:
            payload["code"] = self.code.value
        if self.message is not None:
            payload["message"] = self.message
        payload.update(self.details)
        return payload


def is_valid_job_id(job_id: object) -> bool:
    return isinstance(job_id, str) and bool(JOB_ID_PATTERN.fullmatch(job_id))
