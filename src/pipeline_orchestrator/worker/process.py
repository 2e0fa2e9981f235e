"""Detached worker process spawning and signal-based termination."""

from __future__ import annotations

import errno
import logging
import os
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from pipeline_orchestrator.config import Settings
from pipeline_orchestrator.jobs.layout import PID_FILE_NAME

logger = logging.getLogger(__name__)

WORKER_MODULE = "pipeline_orchestrator.worker.runner"


class WorkerSpawnError(RuntimeError):
    """Worker process could not be started."""


class WorkerSignalError(RuntimeError):
    """A running worker could not be signaled."""


@dataclass(slots=True)
class SpawnedWorker:
    """Handle of a fire-and-forget worker process."""

    job_id: str
    pid: int
    start_from_task: str | None
    single_task: bool


@dataclass(slots=True)
class TerminationResult:
    """What `terminate` did to a job's worker."""

    pid: int | None
    stopped: bool
    signal: str | None


def read_pid(job_dir: Path) -> int | None:
    """Return the recorded worker pid, or None when the marker is absent or malformed."""

    try:
        raw = (job_dir / PID_FILE_NAME).read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        pid = int(raw)
    except ValueError:
        logger.warning("Ignoring malformed pid marker in %s: %r", job_dir, raw)
        return None
    return pid if pid > 0 else None


def write_pid_marker(job_dir: Path, pid: int | None = None) -> Path:
    path = job_dir / PID_FILE_NAME
    path.write_text(f"{pid if pid is not None else os.getpid()}\n", "utf-8")
    return path


def remove_pid_marker(job_dir: Path) -> None:
    (job_dir / PID_FILE_NAME).unlink(missing_ok=True)


class WorkerProcessController:
    """Spawns one detached worker per invocation and stops workers by signal."""

    def __init__(
        self,
        settings: Settings,
        *,
        kill: Callable[[int, int], None] = os.kill,
        sleep: Callable[[float], None] = time.sleep,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
    ) -> None:
        self.settings = settings
        self._kill = kill
        self._sleep = sleep
        self._popen = popen
        self._children: list[subprocess.Popen[bytes]] = []

    def spawn(
        self,
        job_id: str,
        *,
        start_from_task: str | None = None,
        single_task: bool = False,
    ) -> SpawnedWorker:
        """Start a worker for `job_id` without waiting for it."""

        self._reap_finished()
        env = dict(os.environ)
        env.update(
            self.settings.worker_env(
                start_from_task=start_from_task,
                single_task=single_task,
            ),
        )
        argv = [self.settings.worker.python_executable, "-m", WORKER_MODULE, job_id]
        try:
            process = self._popen(  # noqa: S603
                argv,
                env=env,
                cwd=str(self.settings.paths.root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as error:
            raise WorkerSpawnError(f"Failed to spawn worker for job {job_id}: {error}") from error

        self._children.append(process)
        logger.info(
            "Spawned worker pid=%s job=%s start_from=%s single_task=%s",
            process.pid,
            job_id,
            start_from_task,
            single_task,
        )
        return SpawnedWorker(
            job_id=job_id,
            pid=process.pid,
            start_from_task=start_from_task,
            single_task=single_task,
        )

    def terminate(self, job_dir: Path) -> TerminationResult:
        """SIGTERM, wait the grace window, SIGKILL if still alive; always drop the marker."""

        pid = read_pid(job_dir)
        try:
            if pid is None:
                return TerminationResult(pid=None, stopped=False, signal=None)
            sent = self._signal_with_escalation(pid)
            return TerminationResult(pid=pid, stopped=sent is not None, signal=sent)
        finally:
            remove_pid_marker(job_dir)
            self._reap_finished()

    def _signal_with_escalation(self, pid: int) -> str | None:
        if not self._send(pid, signal.SIGTERM):
            logger.info("Worker pid=%s already exited", pid)
            return None
        used = signal.SIGTERM.name
        self._sleep(self.settings.worker.stop_grace_seconds)
        if self._is_alive(pid) and self._send(pid, _force_signal()):
            used = _force_signal().name
        logger.info("Stopped worker pid=%s with %s", pid, used)
        return used

    def _send(self, pid: int, signum: int) -> bool:
        try:
            self._kill(pid, signum)
        except ProcessLookupError:
            return False
        except OSError as error:
            if error.errno == errno.ESRCH:
                return False
            raise WorkerSignalError(f"Failed to signal worker pid={pid}: {error}") from error
        return True

    def _is_alive(self, pid: int) -> bool:
        self._reap_finished()
        return self._send(pid, 0)

    def _reap_finished(self) -> None:
        self._children = [child for child in self._children if child.poll() is None]


def _force_signal() -> signal.Signals:
    return getattr(signal, "SIGKILL", signal.SIGTERM)
