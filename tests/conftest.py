"""Shared test fixtures."""

from __future__ import annotations

import json
import textwrap
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from pipeline_orchestrator.config import PathSettings, Settings, StatusSettings
from pipeline_orchestrator.jobs.models import JobLocation
from pipeline_orchestrator.worker.process import SpawnedWorker, TerminationResult


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        paths=PathSettings(
            root=tmp_path,
            data_dir=tmp_path / "pipeline-data",
            pipelines_dir=tmp_path / "pipeline-config",
        ),
        status=StatusSettings(read_retry_delay_seconds=0.0),
    )


@pytest.fixture()
def write_pipeline(settings: Settings) -> Callable[..., Path]:
    """Write `pipeline-config/<slug>/pipeline.json` plus optional task modules."""

    def _write(
        slug: str,
        tasks: list[Any],
        *,
        modules: dict[str, str] | None = None,
        task_config: dict[str, Any] | None = None,
    ) -> Path:
        pipeline_dir = settings.paths.pipelines_dir / slug
        pipeline_dir.mkdir(parents=True, exist_ok=True)
        payload: dict[str, Any] = {"name": slug, "tasks": tasks}
        if task_config:
            payload["taskConfig"] = task_config
        (pipeline_dir / "pipeline.json").write_text(json.dumps(payload), "utf-8")
        for name, source in (modules or {}).items():
            module_path = pipeline_dir / "tasks" / f"{name}.py"
            module_path.parent.mkdir(parents=True, exist_ok=True)
            module_path.write_text(textwrap.dedent(source), "utf-8")
        return pipeline_dir

    return _write


@pytest.fixture()
def make_job(settings: Settings) -> Callable[..., Path]:
    """Create a job directory with metadata, pinned pipeline and status snapshot."""

    def _make(  # noqa: PLR0913
        job_id: str,
        tasks: dict[str, str],
        *,
        location: JobLocation = JobLocation.CURRENT,
        pipeline: str = "demo",
        root_state: str = "pending",
        current: str | None = None,
        pinned_tasks: list[Any] | None = None,
        seed: dict[str, Any] | None = None,
    ) -> Path:
        job_dir = settings.paths.data_dir / location.value / job_id
        (job_dir / "tasks").mkdir(parents=True)
        (job_dir / "job.json").write_text(
            json.dumps({"id": job_id, "name": job_id, "pipeline": pipeline}),
            "utf-8",
        )
        (job_dir / "seed.json").write_text(json.dumps(seed or {"topic": "demo"}), "utf-8")
        (job_dir / "pipeline.json").write_text(
            json.dumps({"name": pipeline, "tasks": pinned_tasks or list(tasks)}),
            "utf-8",
        )
        snapshot = {
            "id": job_id,
            "state": root_state,
            "current": current,
            "currentStage": "inference" if current else None,
            "lastUpdated": "2026-01-01T00:00:00+00:00",
            "tasks": {
                name: {
                    "state": state,
                    "currentStage": "inference" if state == "running" else None,
                    "attempts": 1 if state != "pending" else 0,
                    "refinementAttempts": 1 if state != "pending" else 0,
                    "tokenUsage": [{"totalTokens": 10}] if state != "pending" else [],
                    "files": {"artifacts": [], "logs": [], "tmp": []},
                }
                for name, state in tasks.items()
            },
            "files": {"artifacts": [], "logs": [], "tmp": []},
        }
        (job_dir / "tasks-status.json").write_text(json.dumps(snapshot, indent=2), "utf-8")
        return job_dir

    return _make


@dataclass
class FakeWorkers:
    """Stand-in for the worker process controller that records calls."""

    termination: TerminationResult = field(
        default_factory=lambda: TerminationResult(pid=None, stopped=False, signal=None),
    )
    spawned: list[SpawnedWorker] = field(default_factory=list)
    terminated: list[Path] = field(default_factory=list)
    on_spawn: Callable[[SpawnedWorker], None] | None = None
    spawn_error: Exception | None = None
    terminate_error: Exception | None = None

    def spawn(
        self,
        job_id: str,
        *,
        start_from_task: str | None = None,
        single_task: bool = False,
    ) -> SpawnedWorker:
        if self.spawn_error is not None:
            raise self.spawn_error
        worker = SpawnedWorker(
            job_id=job_id,
            pid=4242,
            start_from_task=start_from_task,
            single_task=single_task,
        )
        self.spawned.append(worker)
        if self.on_spawn is not None:
            self.on_spawn(worker)
        return worker

    def terminate(self, job_dir: Path) -> TerminationResult:
        self.terminated.append(job_dir)
        if self.terminate_error is not None:
            raise self.terminate_error
        (job_dir / "runner.pid").unlink(missing_ok=True)
        return self.termination


@pytest.fixture()
def fake_workers() -> FakeWorkers:
    return FakeWorkers()
