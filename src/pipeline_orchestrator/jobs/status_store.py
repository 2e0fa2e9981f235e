"""Durable, crash-tolerant store for per-job task status snapshots."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pipeline_orchestrator.config import StatusSettings
from pipeline_orchestrator.jobs.layout import STATUS_FILE_NAME
from pipeline_orchestrator.jobs.models import (
    ErrorCode,
    StatusStoreError,
    TaskNotFoundError,
    TaskState,
)
from pipeline_orchestrator.jobs.status_files import (
    atomic_write_json,
    is_locked,
    read_json_with_retry,
)

logger = logging.getLogger(__name__)

Snapshot = dict[str, Any]
Mutator = Callable[[Snapshot], Snapshot | None]

FILE_BUCKETS = ("artifacts", "logs", "tmp")


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601 form."""

    return datetime.now(tz=UTC).isoformat()


def empty_files() -> dict[str, list[str]]:
    return {bucket: [] for bucket in FILE_BUCKETS}


def default_snapshot(job_id: str) -> Snapshot:
    return {
        "id": job_id,
        "state": TaskState.PENDING.value,
        "current": None,
        "currentStage": None,
        "lastUpdated": utc_now_iso(),
        "tasks": {},
        "files": empty_files(),
    }


def new_task_record() -> dict[str, Any]:
    return {
        "state": TaskState.PENDING.value,
        "currentStage": None,
        "attempts": 0,
        "refinementAttempts": 0,
        "files": empty_files(),
    }


def normalize_snapshot(snapshot: Snapshot, *, job_id: str) -> Snapshot:
    """Fill in missing or malformed root fields in place."""

    if not isinstance(snapshot.get("id"), str):
        snapshot["id"] = job_id
    if not isinstance(snapshot.get("state"), str):
        snapshot["state"] = TaskState.PENDING.value
    if snapshot.get("current") is not None and not isinstance(snapshot["current"], str):
        snapshot["current"] = None
    snapshot.setdefault("current", None)
    if snapshot.get("currentStage") is not None and not isinstance(snapshot["currentStage"], str):
        snapshot["currentStage"] = None
    snapshot.setdefault("currentStage", None)
    if not isinstance(snapshot.get("lastUpdated"), str) or not snapshot["lastUpdated"]:
        snapshot["lastUpdated"] = utc_now_iso()
    if not isinstance(snapshot.get("tasks"), dict):
        snapshot["tasks"] = {}
    files = snapshot.get("files")
    if not isinstance(files, dict):
        snapshot["files"] = empty_files()
    else:
        for bucket in FILE_BUCKETS:
            if not isinstance(files.get(bucket), list):
                files[bucket] = []
    for name, task in list(snapshot["tasks"].items()):
        if not isinstance(task, dict):
            snapshot["tasks"][name] = new_task_record()
    return snapshot


def reset_task_record(task: dict[str, Any], *, clear_token_usage: bool) -> None:
    """Return one task record to pending with zeroed counters."""

    task["state"] = TaskState.PENDING.value
    task["currentStage"] = None
    task.pop("failedStage", None)
    task.pop("error", None)
    task["attempts"] = 0
    task["refinementAttempts"] = 0
    if clear_token_usage:
        task["tokenUsage"] = []


def running_task_name(snapshot: Mapping[str, Any]) -> str | None:
    """Prefer the explicit `current` pointer, else the first task in state running."""

    tasks = snapshot.get("tasks") or {}
    current = snapshot.get("current")
    if isinstance(current, str) and _task_state(tasks.get(current)) == TaskState.RUNNING.value:
        return current
    for name, task in tasks.items():
        if _task_state(task) == TaskState.RUNNING.value:
            return name
    return None


def _task_state(task: object) -> str | None:
    return task.get("state") if isinstance(task, dict) else None


def compute_progress(tasks: Mapping[str, Any]) -> float:
    if not tasks:
        return 0
    done = sum(
        1
        for task in tasks.values()
        if isinstance(task, dict) and task.get("state") == TaskState.DONE.value
    )
    return done / len(tasks) * 100


@dataclass(slots=True)
class StatusReadResult:
    """Status snapshot read outcome with classified failure code."""

    ok: bool
    snapshot: Snapshot | None
    code: ErrorCode | None = None
    message: str | None = None
    path: Path | None = None


class StatusStore:
    """Reads and atomically mutates `tasks-status.json` files.

    Writes targeting the same job directory are serialized within the process.
    Atomicity on disk comes from temp-file-then-rename; lock sentinels are
    advisory only.
    """

    def __init__(
        self,
        settings: StatusSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or StatusSettings()
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def read(self, job_dir: Path) -> StatusReadResult:
        status_path = job_dir / STATUS_FILE_NAME
        if is_locked(job_dir):
            logger.warning("Job directory %s is locked, retrying read", job_dir)
            self._sleep(self.settings.read_retry_delay_seconds)
            if is_locked(job_dir):
                logger.warning("Job directory %s still locked, reading anyway", job_dir)

        result = read_json_with_retry(
            status_path,
            max_file_bytes=self.settings.max_file_bytes,
            max_attempts=self.settings.read_max_attempts,
            retry_delay_seconds=self.settings.read_retry_delay_seconds,
            sleep=self._sleep,
        )
        if not result.ok or result.payload is None:
            return StatusReadResult(
                ok=False,
                snapshot=None,
                code=result.code,
                message=result.message,
                path=status_path,
            )
        return StatusReadResult(
            ok=True,
            snapshot=normalize_snapshot(result.payload, job_id=job_dir.name),
            path=status_path,
        )

    def write(self, job_dir: Path, mutate: Mutator) -> Snapshot:
        """Apply `mutate` to the current snapshot and persist the result atomically."""

        status_path = job_dir / STATUS_FILE_NAME
        job_id = job_dir.name
        with self._lock_for(job_dir):
            current = self._load_for_write(status_path, job_id=job_id)
            validated = normalize_snapshot(current, job_id=job_id)
            updated = mutate(validated)
            snapshot = normalize_snapshot(
                validated if updated is None else updated,
                job_id=job_id,
            )
            snapshot["lastUpdated"] = utc_now_iso()
            atomic_write_json(status_path, snapshot)
            return snapshot

    def initialize(
        self,
        job_dir: Path,
        *,
        job_id: str,
        task_names: Iterable[str],
        name: str | None = None,
    ) -> Snapshot:
        """Create a fresh snapshot with every task pending."""

        def _mutate(_: Snapshot) -> Snapshot:
            snapshot = default_snapshot(job_id)
            if name is not None:
                snapshot["name"] = name
            snapshot["createdAt"] = snapshot["lastUpdated"]
            snapshot["tasks"] = {task_name: new_task_record() for task_name in task_names}
            return snapshot

        return self.write(job_dir, _mutate)

    def update_task(self, job_dir: Path, task_name: str, patch: Mapping[str, Any]) -> Snapshot:
        """Merge `patch` into one task record, creating the record if needed."""

        def _mutate(snapshot: Snapshot) -> None:
            task = snapshot["tasks"].setdefault(task_name, new_task_record())
            task.update(patch)

        return self.write(job_dir, _mutate)

    def reset_clean_slate(self, job_dir: Path, *, clear_token_usage: bool = True) -> Snapshot:
        def _mutate(snapshot: Snapshot) -> None:
            _reset_root(snapshot)
            snapshot["progress"] = 0
            for task in snapshot["tasks"].values():
                reset_task_record(task, clear_token_usage=clear_token_usage)

        return self.write(job_dir, _mutate)

    def reset_from_task(
        self,
        job_dir: Path,
        from_task: str,
        *,
        task_order: Iterable[str] | None = None,
        clear_token_usage: bool = True,
    ) -> Snapshot:
        """Reset `from_task` and every task after it; earlier tasks are untouched.

        Order follows `task_order` (the pipeline definition) when given, else the
        snapshot's own key order.
        """

        order = list(task_order) if task_order is not None else None

        def _mutate(snapshot: Snapshot) -> None:
            tasks = snapshot["tasks"]
            if from_task not in tasks:
                raise TaskNotFoundError(from_task)
            names = [name for name in order if name in tasks] if order is not None else []
            names += [name for name in tasks if name not in names]
            start = names.index(from_task)

            _reset_root(snapshot)
            for name in names[start:]:
                reset_task_record(tasks[name], clear_token_usage=clear_token_usage)
            snapshot["progress"] = compute_progress(tasks)

        return self.write(job_dir, _mutate)

    def reset_single_task(
        self,
        job_dir: Path,
        task_name: str,
        *,
        clear_token_usage: bool = True,
    ) -> Snapshot:
        def _mutate(snapshot: Snapshot) -> None:
            task = snapshot["tasks"].get(task_name)
            if task is None:
                raise TaskNotFoundError(task_name)
            reset_task_record(task, clear_token_usage=clear_token_usage)

        return self.write(job_dir, _mutate)

    def _load_for_write(self, status_path: Path, *, job_id: str) -> Snapshot:
        result = read_json_with_retry(
            status_path,
            max_file_bytes=self.settings.max_file_bytes,
            max_attempts=1,
        )
        if result.ok and result.payload is not None:
            return result.payload
        if result.code == ErrorCode.NOT_FOUND:
            return default_snapshot(job_id)
        if result.code == ErrorCode.INVALID_JSON:
            logger.warning("%s; replacing with a fresh snapshot", result.message)
            return default_snapshot(job_id)
        raise StatusStoreError(
            result.message or f"Cannot read {status_path}",
            code=result.code or ErrorCode.FS_ERROR,
        )

    def _lock_for(self, job_dir: Path) -> threading.Lock:
        key = str(job_dir.resolve())
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


def _reset_root(snapshot: Snapshot) -> None:
    snapshot["state"] = TaskState.PENDING.value
    snapshot["current"] = None
    snapshot["currentStage"] = None
