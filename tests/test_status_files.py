from __future__ import annotations

import json
from pathlib import Path

import allure

from pipeline_orchestrator.jobs.models import ErrorCode
from pipeline_orchestrator.jobs.status_files import (
    atomic_write_json,
    is_locked,
    read_json_with_retry,
)

pytestmark = [
    allure.epic("Job State Store"),
    allure.feature("Bounded Reads & Atomic Writes"),
]


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_read_strips_byte_order_mark(tmp_path: Path) -> None:
    path = tmp_path / "status.json"
    path.write_bytes(b"\xef\xbb\xbf" + json.dumps({"state": "done"}).encode("utf-8"))

    result = read_json_with_retry(path, max_file_bytes=1024)

    assert result.ok
    assert result.payload == {"state": "done"}


def test_read_missing_file_returns_not_found_without_retry(tmp_path: Path) -> None:
    sleep = _SleepRecorder()

    result = read_json_with_retry(
        tmp_path / "missing.json",
        max_file_bytes=1024,
        max_attempts=3,
        sleep=sleep,
    )

    assert not result.ok
    assert result.code == ErrorCode.NOT_FOUND
    assert result.attempts == 1
    assert sleep.calls == []


def test_read_invalid_json_retries_up_to_limit(tmp_path: Path) -> None:
    path = tmp_path / "status.json"
    path.write_text('{"state": ', "utf-8")
    sleep = _SleepRecorder()

    result = read_json_with_retry(
        path,
        max_file_bytes=1024,
        max_attempts=3,
        retry_delay_seconds=0.01,
        sleep=sleep,
    )

    assert not result.ok
    assert result.code == ErrorCode.INVALID_JSON
    assert result.attempts == 3
    assert sleep.calls == [0.01, 0.01]


def test_read_caps_attempts_and_delay(tmp_path: Path) -> None:
    path = tmp_path / "status.json"
    path.write_text("[1, 2, 3]", "utf-8")
    sleep = _SleepRecorder()

    result = read_json_with_retry(
        path,
        max_file_bytes=1024,
        max_attempts=99,
        retry_delay_seconds=10.0,
        sleep=sleep,
    )

    assert result.code == ErrorCode.INVALID_JSON
    assert result.attempts == 5
    assert sleep.calls == [0.05] * 4


def test_read_rejects_oversized_file_without_retry(tmp_path: Path) -> None:
    path = tmp_path / "status.json"
    path.write_text(json.dumps({"blob": "x" * 200}), "utf-8")
    sleep = _SleepRecorder()

    result = read_json_with_retry(path, max_file_bytes=64, sleep=sleep)

    assert result.code == ErrorCode.FS_ERROR
    assert "too large" in (result.message or "")
    assert sleep.calls == []


def test_read_directory_is_fs_error(tmp_path: Path) -> None:
    result = read_json_with_retry(tmp_path, max_file_bytes=1024, sleep=_SleepRecorder())

    assert result.code == ErrorCode.FS_ERROR


def test_read_retries_transient_os_errors_until_success(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "status.json"
    path.write_text(json.dumps({"state": "done"}), "utf-8")
    original_read_bytes = Path.read_bytes
    failures = [PermissionError(13, "busy"), PermissionError(13, "busy")]

    def _flaky_read_bytes(self: Path) -> bytes:
        if self == path and failures:
            raise failures.pop(0)
        return original_read_bytes(self)

    monkeypatch.setattr(Path, "read_bytes", _flaky_read_bytes)
    sleep = _SleepRecorder()

    result = read_json_with_retry(
        path,
        max_file_bytes=1024,
        max_attempts=5,
        retry_delay_seconds=0.02,
        sleep=sleep,
    )

    assert result.ok
    assert result.payload == {"state": "done"}
    assert result.attempts == 3
    assert sleep.calls == [0.02, 0.02]


def test_read_persistent_os_error_is_bounded_fs_error(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "status.json"
    path.write_text(json.dumps({"state": "done"}), "utf-8")

    def _broken_read_bytes(self: Path) -> bytes:
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(Path, "read_bytes", _broken_read_bytes)
    sleep = _SleepRecorder()

    result = read_json_with_retry(
        path,
        max_file_bytes=1024,
        max_attempts=99,
        retry_delay_seconds=10.0,
        sleep=sleep,
    )

    assert result.code == ErrorCode.FS_ERROR
    assert "Cannot read" in (result.message or "")
    assert result.attempts == 5
    assert sleep.calls == [0.05] * 4


def test_atomic_write_preserves_key_order_and_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "status.json"
    payload = {"tasks": {"zeta": 1, "alpha": 2}, "id": "job"}

    atomic_write_json(path, payload)
    atomic_write_json(path, payload)

    assert list(json.loads(path.read_text("utf-8"))["tasks"]) == ["zeta", "alpha"]
    assert [item.name for item in path.parent.iterdir()] == ["status.json"]


def test_lock_detection_checks_job_dir_and_direct_children(tmp_path: Path) -> None:
    job_dir = tmp_path / "job"
    nested = job_dir / "tasks" / "draft"
    nested.mkdir(parents=True)
    assert not is_locked(job_dir)

    (nested / "write.lock").write_text("", "utf-8")
    assert not is_locked(job_dir)

    (job_dir / "tasks" / "write.lock").write_text("", "utf-8")
    assert is_locked(job_dir)


def test_lock_detection_on_missing_dir_is_false(tmp_path: Path) -> None:
    assert not is_locked(tmp_path / "absent")
