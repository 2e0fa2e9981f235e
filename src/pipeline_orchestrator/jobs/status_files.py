"""Low-level JSON file helpers: bounded retrying reads, atomic writes, lock sentinels."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pipeline_orchestrator.config import (
    MAX_STATUS_READ_ATTEMPTS,
    MAX_STATUS_READ_DELAY_SECONDS,
)
from pipeline_orchestrator.jobs.models import ErrorCode

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
_BOM = "\ufeff"


@dataclass(slots=True)
class JsonReadResult:
    """Outcome of a bounded JSON object read."""

    ok: bool
    payload: dict[str, Any] | None
    code: ErrorCode | None = None
    message: str | None = None
    attempts: int = 0


class _ReadFailure(Exception):
    def __init__(self, code: ErrorCode, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


def read_json_with_retry(  # noqa: PLR0913
    path: Path,
    *,
    max_file_bytes: int,
    max_attempts: int = 3,
    retry_delay_seconds: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> JsonReadResult:
    """Read a JSON object, retrying parse and filesystem races a bounded number of times.

    `not_found` is returned immediately. `invalid_json` and `fs_error` are retried
    because a concurrent writer may be mid-rename.
    """

    attempts = max(1, min(max_attempts, MAX_STATUS_READ_ATTEMPTS))
    delay = max(0.0, min(retry_delay_seconds, MAX_STATUS_READ_DELAY_SECONDS))

    attempt = 1
    while True:
        try:
            payload = _read_json_object(path, max_file_bytes=max_file_bytes)
        except _ReadFailure as failure:
            if not failure.retryable or attempt >= attempts:
                return JsonReadResult(
                    ok=False,
                    payload=None,
                    code=failure.code,
                    message=str(failure),
                    attempts=attempt,
                )
            logger.warning(
                "Retrying read of %s after %s (attempt %d/%d)",
                path,
                failure.code.value,
                attempt,
                attempts,
            )
            sleep(delay)
            attempt += 1
            continue
        return JsonReadResult(ok=True, payload=payload, attempts=attempt)


def _read_json_object(path: Path, *, max_file_bytes: int) -> dict[str, Any]:
    try:
        stat = path.stat()
    except FileNotFoundError as error:
        raise _ReadFailure(
            ErrorCode.NOT_FOUND,
            f"File not found: {path}",
            retryable=False,
        ) from error
    except OSError as error:
        raise _ReadFailure(
            ErrorCode.FS_ERROR,
            f"Cannot stat {path}: {error}",
            retryable=True,
        ) from error

    if not path.is_file():
        raise _ReadFailure(ErrorCode.FS_ERROR, f"Not a regular file: {path}", retryable=False)
    if stat.st_size > max_file_bytes:
        raise _ReadFailure(
            ErrorCode.FS_ERROR,
            f"File too large: {path} ({stat.st_size} bytes > {max_file_bytes})",
            retryable=False,
        )

    try:
        raw = path.read_bytes()
    except FileNotFoundError as error:
        raise _ReadFailure(
            ErrorCode.NOT_FOUND,
            f"File not found: {path}",
            retryable=False,
        ) from error
    except OSError as error:
        raise _ReadFailure(
            ErrorCode.FS_ERROR,
            f"Cannot read {path}: {error}",
            retryable=True,
        ) from error

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as error:
        raise _ReadFailure(
            ErrorCode.INVALID_JSON,
            f"File is not valid UTF-8: {path}",
            retryable=True,
        ) from error
    if text.startswith(_BOM):
        text = text[len(_BOM) :]

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise _ReadFailure(
            ErrorCode.INVALID_JSON,
            f"Invalid JSON in {path}: {error.msg}",
            retryable=True,
        ) from error
    if not isinstance(payload, dict):
        raise _ReadFailure(
            ErrorCode.INVALID_JSON,
            f"Expected JSON object in {path}",
            retryable=True,
        )
    return payload


def atomic_write_json(path: Path, payload: Any) -> None:
    """Persist JSON through a same-directory temp file and `os.replace`.

    Key order is preserved; snapshot task order is significant.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_json(path: Path, payload: Any) -> None:
    """Persist a JSON artifact using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True, default=str),
        "utf-8",
    )


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8-sig"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def is_locked(job_dir: Path, *, suffix: str = LOCK_SUFFIX) -> bool:
    """Return True if the job dir or one of its immediate children holds a lock sentinel."""

    try:
        entries = list(job_dir.iterdir())
    except OSError:
        return False

    child_dirs: list[Path] = []
    for entry in entries:
        if entry.is_file() and entry.name.endswith(suffix):
            return True
        if entry.is_dir():
            child_dirs.append(entry)

    for child in child_dirs:
        try:
            if any(item.is_file() and item.name.endswith(suffix) for item in child.iterdir()):
                return True
        except OSError:
            continue
    return False
