"""Worker process body: drives the stage pipeline executor across a job's tasks."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pipeline_orchestrator.backend.invoker import ModelInvoker
from pipeline_orchestrator.config import Settings, worker_scope_from_env
from pipeline_orchestrator.jobs.layout import JobLayout, JobPaths
from pipeline_orchestrator.jobs.models import (
    ErrorCode,
    JobLocation,
    ResidencyError,
    StatusStoreError,
    TaskNotFoundError,
    TaskState,
)
from pipeline_orchestrator.jobs.status_files import load_json, write_json
from pipeline_orchestrator.jobs.status_store import (
    Snapshot,
    StatusStore,
    new_task_record,
    utc_now_iso,
)
from pipeline_orchestrator.pipeline.context import ExecutionContext
from pipeline_orchestrator.pipeline.definition import (
    PipelineCatalog,
    PipelineDefinition,
    PipelineDefinitionError,
    TaskDescriptor,
    load_pipeline_definition,
)
from pipeline_orchestrator.pipeline.executor import PipelineRunResult, StagePipelineExecutor
from pipeline_orchestrator.pipeline.loader import ModuleRef
from pipeline_orchestrator.worker.process import remove_pid_marker, write_pid_marker

logger = logging.getLogger(__name__)

OUTPUT_FILE_NAME = "output.json"
EXECUTION_LOGS_FILE_NAME = "execution-logs.json"
FAILURE_DETAILS_FILE_NAME = "failure-details.json"


class StopRequested(BaseException):
    """Raised from the signal handler to unwind an in-flight task."""

    def __init__(self, signal_name: str) -> None:
        super().__init__(signal_name)
        self.signal_name = signal_name


@dataclass(slots=True)
class JobRunSummary:
    """What one worker invocation did."""

    job_id: str
    location: JobLocation
    completed_tasks: list[str] = field(default_factory=list)
    skipped_tasks: list[str] = field(default_factory=list)
    failed_task: str | None = None
    failed_stage: str | None = None


@dataclass(slots=True)
class _TaskOutcome:
    ok: bool
    output: Any = None
    failed_stage: str | None = None


class JobRunner:
    """Runs the pinned pipeline of one job and retires the job when it finishes."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: StatusStore | None = None,
        executor: StagePipelineExecutor | None = None,
        invoker_factory: Callable[[Path], ModelInvoker] | None = None,
    ) -> None:
        self.settings = settings
        self.layout = JobLayout(settings.paths.data_dir)
        self.catalog = PipelineCatalog(settings.paths.pipelines_dir)
        self.store = store or StatusStore(settings.status)
        self.executor = executor or StagePipelineExecutor(
            max_refinement_attempts=settings.task_runner.max_refinement_attempts,
        )
        self.invoker_factory = invoker_factory or (
            lambda workdir: ModelInvoker.from_settings(settings.model, workdir=workdir)
        )
        self._job_dir: Path | None = None

    def run(
        self,
        job_id: str,
        *,
        start_from_task: str | None = None,
        single_task: bool = False,
    ) -> JobRunSummary:
        if single_task and not start_from_task:
            raise ValueError("A single-task run requires the task to start from.")

        paths = self._claim(job_id)
        self._job_dir = paths.job_dir
        write_pid_marker(paths.job_dir)
        try:
            with self._signal_handlers():
                return self._run_job(
                    paths,
                    start_from_task=start_from_task,
                    single_task=single_task,
                )
        finally:
            if self._job_dir is not None:
                remove_pid_marker(self._job_dir)
            self._job_dir = None

    def _claim(self, job_id: str) -> JobPaths:
        paths = self.layout.resolve(job_id)
        if paths is None:
            raise ResidencyError(f"Job not found: {job_id}")
        if paths.location == JobLocation.PENDING:
            return self.layout.move(paths, JobLocation.CURRENT)
        if paths.location != JobLocation.CURRENT:
            raise ResidencyError(
                f"Job {job_id} is already retired to {paths.location.value}.",
            )
        return paths

    def _run_job(
        self,
        paths: JobPaths,
        *,
        start_from_task: str | None,
        single_task: bool,
    ) -> JobRunSummary:
        definition = load_pipeline_definition(paths.pipeline_path)
        job_meta = load_json(paths.job_meta_path) if paths.job_meta_path.exists() else {}
        seed = load_json(paths.seed_path) if paths.seed_path.exists() else {}
        slug = _pipeline_slug(job_meta, definition)

        names = definition.task_names
        if start_from_task is not None and start_from_task not in names:
            raise TaskNotFoundError(start_from_task)
        start_index = names.index(start_from_task) if start_from_task else 0
        scheduled = [start_from_task] if single_task else names[start_index:]

        self._prepare_snapshot(paths, definition)
        summary = JobRunSummary(job_id=paths.job_id, location=paths.location)
        artifacts = self._collect_upstream_artifacts(paths, names[:start_index])

        for descriptor in definition.tasks:
            if descriptor.name not in scheduled:
                continue
            snapshot = self._read_snapshot(paths)
            if snapshot["tasks"][descriptor.name].get("state") == TaskState.DONE.value:
                summary.skipped_tasks.append(descriptor.name)
                artifacts[descriptor.name] = _read_output(paths.task_dir(descriptor.name))
                continue

            outcome = self._run_task(
                paths,
                definition=definition,
                descriptor=descriptor,
                slug=slug,
                seed=seed,
                artifacts=artifacts,
            )
            if not outcome.ok:
                summary.failed_task = descriptor.name
                summary.failed_stage = outcome.failed_stage
                summary.location = self._retire(paths, JobLocation.REJECTED).location
                return summary
            summary.completed_tasks.append(descriptor.name)
            artifacts[descriptor.name] = outcome.output

        snapshot = self._read_snapshot(paths)
        if all(task.get("state") == TaskState.DONE.value for task in snapshot["tasks"].values()):
            summary.location = self._retire(paths, JobLocation.COMPLETE).location
            return summary

        self.store.write(paths.job_dir, _set_root(state=TaskState.PENDING))
        logger.info("Job %s finished a partial run; remaining tasks stay pending", paths.job_id)
        return summary

    def _prepare_snapshot(self, paths: JobPaths, definition: PipelineDefinition) -> None:
        def _mutate(snapshot: Snapshot) -> None:
            for name in definition.task_names:
                snapshot["tasks"].setdefault(name, new_task_record())
            snapshot["state"] = TaskState.RUNNING.value
            snapshot["current"] = None
            snapshot["currentStage"] = None

        self.store.write(paths.job_dir, _mutate)

    def _run_task(  # noqa: PLR0913
        self,
        paths: JobPaths,
        *,
        definition: PipelineDefinition,
        descriptor: TaskDescriptor,
        slug: str | None,
        seed: Any,
        artifacts: dict[str, Any],
    ) -> _TaskOutcome:
        name = descriptor.name
        task_dir = paths.task_dir(name)
        task_dir.mkdir(parents=True, exist_ok=True)
        self.store.write(paths.job_dir, _mark_running(name))
        logger.info("Job %s: running task %s", paths.job_id, name)

        invoker = self.invoker_factory(task_dir)
        context = ExecutionContext(
            job_id=paths.job_id,
            task_name=name,
            seed=seed,
            task_config=definition.config_for(descriptor),
            artifacts=dict(artifacts),
            task_dir=task_dir,
            llm=invoker,
        )
        started = time.monotonic()
        result: PipelineRunResult | None = None
        task_error: Exception | None = None
        try:
            result = self.executor.run(
                self._module_ref(paths, descriptor, slug=slug),
                context,
                on_stage_start=lambda stage: self.store.write(
                    paths.job_dir,
                    _mark_stage(name, stage),
                ),
            )
        except Exception as error:  # noqa: BLE001
            task_error = error
        finally:
            self._flush_usage(paths, name, invoker)

        if result is not None:
            write_json(task_dir / EXECUTION_LOGS_FILE_NAME, result.log_dicts())

        if result is not None and result.ok:
            try:
                write_json(task_dir / OUTPUT_FILE_NAME, result.context.output)
            except Exception as error:  # noqa: BLE001
                task_error = error
        elapsed_ms = (time.monotonic() - started) * 1000

        if result is not None and result.ok and task_error is None:
            self.store.write(
                paths.job_dir,
                _mark_done(
                    name,
                    execution_time_ms=elapsed_ms,
                    refinement_attempts=result.refinement_attempts,
                ),
            )
            return _TaskOutcome(ok=True, output=result.context.output)

        failure: Exception | None = task_error or (None if result is None else result.error)
        failed_stage = None if result is None or result.ok else result.failed_stage
        error_payload = {
            "name": type(failure).__name__ if failure is not None else "Error",
            "message": str(failure) if failure is not None else "Task failed",
        }
        write_json(
            task_dir / FAILURE_DETAILS_FILE_NAME,
            {
                "jobId": paths.job_id,
                "task": name,
                "failedStage": failed_stage,
                "error": error_payload,
                "executionTimeMs": round(elapsed_ms, 3),
                "refinementAttempts": context.refinement_attempts,
                "logs": [] if result is None else result.log_dicts(),
            },
        )
        self.store.write(
            paths.job_dir,
            _mark_failed(
                name,
                failed_stage=failed_stage,
                error=error_payload,
                execution_time_ms=elapsed_ms,
                refinement_attempts=context.refinement_attempts,
                has_execution_logs=result is not None,
            ),
        )
        logger.error(
            "Job %s: task %s failed at stage %s: %s",
            paths.job_id,
            name,
            failed_stage,
            error_payload["message"],
        )
        return _TaskOutcome(ok=False, failed_stage=failed_stage)

    def _module_ref(
        self,
        paths: JobPaths,
        descriptor: TaskDescriptor,
        *,
        slug: str | None,
    ) -> ModuleRef:
        if descriptor.module:
            if not descriptor.module.endswith(".py"):
                return descriptor.module
            module_path = Path(descriptor.module)
            if module_path.is_absolute():
                return module_path
            base = self.catalog.pipeline_dir(slug) if slug else paths.job_dir
            return base / module_path
        if slug:
            candidate = self.catalog.task_module_path(slug, descriptor.name)
            if candidate.is_file():
                return candidate
        raise PipelineDefinitionError(f"No task module found for task {descriptor.name}.")

    def _flush_usage(self, paths: JobPaths, task_name: str, invoker: ModelInvoker) -> None:
        entries = invoker.drain_usage()
        if not entries:
            return

        def _mutate(snapshot: Snapshot) -> None:
            task = snapshot["tasks"].setdefault(task_name, new_task_record())
            usage = task.get("tokenUsage")
            task["tokenUsage"] = [*(usage if isinstance(usage, list) else []), *entries]

        self.store.write(paths.job_dir, _mutate)

    def _collect_upstream_artifacts(
        self,
        paths: JobPaths,
        task_names: list[str],
    ) -> dict[str, Any]:
        return {name: _read_output(paths.task_dir(name)) for name in task_names}

    def _read_snapshot(self, paths: JobPaths) -> Snapshot:
        result = self.store.read(paths.job_dir)
        if not result.ok or result.snapshot is None:
            raise StatusStoreError(
                result.message or f"Cannot read status of job {paths.job_id}",
                code=result.code or ErrorCode.FS_ERROR,
            )
        return result.snapshot

    def _retire(self, paths: JobPaths, target: JobLocation) -> JobPaths:
        state = TaskState.DONE if target == JobLocation.COMPLETE else TaskState.ERROR
        snapshot = self.store.write(paths.job_dir, _set_root(state=state))
        remove_pid_marker(paths.job_dir)
        retired = self.layout.move(paths, target)
        self._job_dir = None
        if target == JobLocation.COMPLETE:
            _append_run_record(self.layout.runs_log_path(), snapshot)
        logger.info("Job %s retired to %s", paths.job_id, target.value)
        return retired

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            raise StopRequested(name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _pipeline_slug(job_meta: dict[str, Any], definition: PipelineDefinition) -> str | None:
    slug = job_meta.get("pipeline")
    if isinstance(slug, str) and slug:
        return slug
    return definition.name


def _read_output(task_dir: Path) -> Any:
    path = task_dir / OUTPUT_FILE_NAME
    try:
        return json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as error:
        logger.warning("Ignoring unreadable task output %s: %s", path, error)
        return None


def _append_run_record(path: Path, snapshot: Snapshot) -> None:
    tasks = snapshot.get("tasks") or {}
    record = {
        "id": snapshot.get("id"),
        "name": snapshot.get("name"),
        "finishedAt": utc_now_iso(),
        "tasks": list(tasks),
        "totalExecutionTimeMs": round(
            sum(task.get("executionTimeMs") or 0 for task in tasks.values()),
            3,
        ),
        "totalRefinementAttempts": sum(
            task.get("refinementAttempts") or 0 for task in tasks.values()
        ),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, ensure_ascii=False) + "\n")


def _append_file(task: dict[str, Any], bucket: str, name: str) -> None:
    files = task.setdefault("files", {"artifacts": [], "logs": [], "tmp": []})
    entries = files.setdefault(bucket, [])
    if name not in entries:
        entries.append(name)


def _set_root(*, state: TaskState) -> Callable[[Snapshot], None]:
    def _mutate(snapshot: Snapshot) -> None:
        snapshot["state"] = state.value
        snapshot["current"] = None
        snapshot["currentStage"] = None

    return _mutate


def _mark_running(task_name: str) -> Callable[[Snapshot], None]:
    def _mutate(snapshot: Snapshot) -> None:
        task = snapshot["tasks"].setdefault(task_name, new_task_record())
        task["state"] = TaskState.RUNNING.value
        task["startedAt"] = utc_now_iso()
        task["attempts"] = int(task.get("attempts") or 0) + 1
        task["currentStage"] = None
        task.pop("failedStage", None)
        task.pop("error", None)
        snapshot["state"] = TaskState.RUNNING.value
        snapshot["current"] = task_name
        snapshot["currentStage"] = None

    return _mutate


def _mark_stage(task_name: str, stage: str) -> Callable[[Snapshot], None]:
    def _mutate(snapshot: Snapshot) -> None:
        snapshot["tasks"].setdefault(task_name, new_task_record())["currentStage"] = stage
        snapshot["current"] = task_name
        snapshot["currentStage"] = stage

    return _mutate


def _mark_done(
    task_name: str,
    *,
    execution_time_ms: float,
    refinement_attempts: int,
) -> Callable[[Snapshot], None]:
    def _mutate(snapshot: Snapshot) -> None:
        task = snapshot["tasks"].setdefault(task_name, new_task_record())
        task["state"] = TaskState.DONE.value
        task["currentStage"] = None
        task["endedAt"] = utc_now_iso()
        task["executionTimeMs"] = round(execution_time_ms, 3)
        task["refinementAttempts"] = refinement_attempts
        _append_file(task, "artifacts", OUTPUT_FILE_NAME)
        _append_file(task, "logs", EXECUTION_LOGS_FILE_NAME)
        snapshot["current"] = None
        snapshot["currentStage"] = None

    return _mutate


def _mark_failed(  # noqa: PLR0913
    task_name: str,
    *,
    failed_stage: str | None,
    error: dict[str, str],
    execution_time_ms: float,
    refinement_attempts: int,
    has_execution_logs: bool,
) -> Callable[[Snapshot], None]:
    def _mutate(snapshot: Snapshot) -> None:
        task = snapshot["tasks"].setdefault(task_name, new_task_record())
        task["state"] = TaskState.ERROR.value
        task["currentStage"] = None
        task["failedStage"] = failed_stage
        task["error"] = error
        task["endedAt"] = utc_now_iso()
        task["executionTimeMs"] = round(execution_time_ms, 3)
        task["refinementAttempts"] = refinement_attempts
        _append_file(task, "logs", FAILURE_DETAILS_FILE_NAME)
        if has_execution_logs:
            _append_file(task, "logs", EXECUTION_LOGS_FILE_NAME)
        snapshot["current"] = None
        snapshot["currentStage"] = None

    return _mutate


def main(argv: list[str] | None = None) -> int:
    """Entry point of a spawned worker: `python -m pipeline_orchestrator.worker.runner <job_id>`."""

    parser = argparse.ArgumentParser(prog="pipeline-orchestrator-worker")
    parser.add_argument("job_id")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.getenv("PIPELINE_ORCHESTRATOR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    settings.validate()
    start_from_task, single_task = worker_scope_from_env()
    try:
        summary = JobRunner(settings).run(
            args.job_id,
            start_from_task=start_from_task,
            single_task=single_task,
        )
    except StopRequested as stop:
        logger.warning("Worker for job %s stopped by %s", args.job_id, stop.signal_name)
        return 143
    except Exception:  # noqa: BLE001
        logger.exception("Worker for job %s crashed", args.job_id)
        return 1
    return 0 if summary.failed_task is None else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
