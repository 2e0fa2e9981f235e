"""Job lifecycle manager: serialized submit, restart, stop, start and rescan operations."""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from pipeline_orchestrator.config import Settings
from pipeline_orchestrator.jobs.guards import OperationGuards
from pipeline_orchestrator.jobs.layout import JobLayout, JobPaths
from pipeline_orchestrator.jobs.models import (
    ErrorCode,
    JobLocation,
    OperationResult,
    RestartMode,
    StatusStoreError,
    TaskState,
    is_valid_job_id,
)
from pipeline_orchestrator.jobs.status_files import atomic_write_json, load_json, write_json
from pipeline_orchestrator.jobs.status_store import (
    Snapshot,
    StatusStore,
    new_task_record,
    running_task_name,
    utc_now_iso,
)
from pipeline_orchestrator.pipeline.definition import (
    PipelineCatalog,
    PipelineDefinition,
    PipelineDefinitionError,
    load_pipeline_definition,
)
from pipeline_orchestrator.worker.process import (
    SpawnedWorker,
    WorkerProcessController,
    WorkerSpawnError,
)

logger = logging.getLogger(__name__)

RESTART_OPERATION = "restart"
STOP_OPERATION = "stop"
START_OPERATION = "start"


class _Rejected(Exception):
    """Short-circuits an operation with a prepared failure result."""

    def __init__(self, result: OperationResult) -> None:
        super().__init__(result.message)
        self.result = result


def _reject(code: ErrorCode, message: str, **details: Any) -> _Rejected:
    return _Rejected(OperationResult.failure(code, message, **details))


class JobLifecycleManager:
    """Coordinates job residency, status resets and worker processes.

    Validation and conflict checks run before any guard is taken or any file
    changes. Guards are per (operation, job) and always released.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: StatusStore | None = None,
        workers: WorkerProcessController | None = None,
        guards: OperationGuards | None = None,
    ) -> None:
        self.settings = settings
        self.layout = JobLayout(settings.paths.data_dir)
        self.catalog = PipelineCatalog(settings.paths.pipelines_dir)
        self.store = store or StatusStore(settings.status)
        self.workers = workers or WorkerProcessController(settings)
        self.guards = guards or OperationGuards()

    def submit(
        self,
        *,
        pipeline: str,
        seed: Mapping[str, Any],
        name: str | None = None,
        job_id: str | None = None,
    ) -> OperationResult:
        """Create a job in pending with its pinned pipeline, seed and initial snapshot."""

        resolved_id = job_id or uuid.uuid4().hex[:12]
        return self._run(
            "submit",
            resolved_id,
            lambda: self._submit(job_id=resolved_id, pipeline=pipeline, seed=seed, name=name),
        )

    def status(self, job_id: str) -> OperationResult:
        def _body() -> OperationResult:
            paths = self._resolve(job_id)
            snapshot = self._read_snapshot(paths)
            return OperationResult.success(
                jobId=job_id,
                location=paths.location.value,
                snapshot=snapshot,
            )

        return self._run("status", job_id, _body)

    def rescan(self, job_id: str) -> OperationResult:
        return self._run("rescan", job_id, lambda: self._rescan(job_id))

    def restart(
        self,
        job_id: str,
        *,
        from_task: str | None = None,
        single_task: bool = False,
        clear_token_usage: bool = True,
    ) -> OperationResult:
        return self._run(
            RESTART_OPERATION,
            job_id,
            lambda: self._restart(
                job_id,
                from_task=from_task,
                single_task=single_task,
                clear_token_usage=clear_token_usage,
            ),
        )

    def stop(self, job_id: str) -> OperationResult:
        return self._run(STOP_OPERATION, job_id, lambda: self._stop(job_id))

    def start_task(self, job_id: str, task_name: str) -> OperationResult:
        return self._run(START_OPERATION, job_id, lambda: self._start_task(job_id, task_name))

    def _run(
        self,
        operation: str,
        job_id: str,
        body: Callable[[], OperationResult],
    ) -> OperationResult:
        try:
            return body()
        except _Rejected as rejected:
            logger.info(
                "%s of job %s rejected: %s",
                operation,
                job_id,
                rejected.result.code.value if rejected.result.code else "unknown",
            )
            return rejected.result
        except WorkerSpawnError as error:
            logger.error("%s of job %s could not start a worker: %s", operation, job_id, error)
            return OperationResult.failure(ErrorCode.SPAWN_FAILED, str(error), jobId=job_id)
        except StatusStoreError as error:
            logger.warning("%s of job %s failed on status store: %s", operation, job_id, error)
            return OperationResult.failure(error.code, str(error), jobId=job_id)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error during %s of job %s", operation, job_id)
            return OperationResult.failure(
                ErrorCode.INTERNAL_ERROR,
                "Internal server error",
                jobId=job_id,
            )

    def _submit(
        self,
        *,
        job_id: str,
        pipeline: str,
        seed: Mapping[str, Any],
        name: str | None,
    ) -> OperationResult:
        if not is_valid_job_id(job_id):
            raise _reject(ErrorCode.BAD_REQUEST, f"Invalid job id: {job_id!r}")
        if not isinstance(seed, Mapping):
            raise _reject(ErrorCode.BAD_REQUEST, "Seed must be a JSON object.")
        if self.layout.resolve(job_id) is not None:
            raise _reject(ErrorCode.BAD_REQUEST, f"Job already exists: {job_id}")
        definition = self._source_definition(pipeline)

        staging = self.layout.staging_dir / job_id
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        try:
            job_name = name or str(seed.get("name") or job_id)
            write_json(
                staging / "job.json",
                {
                    "id": job_id,
                    "name": job_name,
                    "pipeline": pipeline,
                    "createdAt": utc_now_iso(),
                },
            )
            write_json(staging / "seed.json", dict(seed))
            atomic_write_json(staging / "pipeline.json", definition.raw)
            for task_name in definition.task_names:
                (staging / "tasks" / task_name).mkdir(parents=True, exist_ok=True)
            self.store.initialize(
                staging,
                job_id=job_id,
                task_names=definition.task_names,
                name=job_name,
            )
            target = self.layout.job_dir(job_id, JobLocation.PENDING)
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(staging, target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info("Submitted job %s for pipeline %s", job_id, pipeline)
        return OperationResult.success(
            jobId=job_id,
            location=JobLocation.PENDING.value,
            tasks=definition.task_names,
        )

    def _rescan(self, job_id: str) -> OperationResult:
        paths = self._resolve(job_id)
        slug = self._pipeline_slug(paths)
        source = self._source_definition(slug)
        pinned = self._pinned_definition(paths)
        pinned_names = pinned.task_names if pinned is not None else []

        source_set = set(source.task_names)
        pinned_set = set(pinned_names)
        added = [task for task in source.task_names if task not in pinned_set]
        removed = [task for task in pinned_names if task not in source_set]
        if not added and not removed:
            return OperationResult.success(jobId=job_id, added=[], removed=[])

        atomic_write_json(paths.pipeline_path, source.raw)
        for task_name in source.task_names:
            paths.task_dir(task_name).mkdir(parents=True, exist_ok=True)

        def _reconcile(snapshot: Snapshot) -> None:
            existing = snapshot["tasks"]
            # Removed tasks keep their directories but leave the snapshot.
            snapshot["tasks"] = {
                task: existing.get(task) or new_task_record() for task in source.task_names
            }

        self.store.write(paths.job_dir, _reconcile)
        logger.info("Rescanned job %s: added=%s removed=%s", job_id, added, removed)
        return OperationResult.success(jobId=job_id, added=added, removed=removed)

    def _restart(
        self,
        job_id: str,
        *,
        from_task: str | None,
        single_task: bool,
        clear_token_usage: bool,
    ) -> OperationResult:
        paths = self._resolve(job_id)
        if single_task and not from_task:
            raise _reject(ErrorCode.BAD_REQUEST, "singleTask requires fromTask.")
        snapshot = self._read_snapshot(paths)
        if snapshot.get("state") == TaskState.RUNNING.value:
            raise _reject(ErrorCode.JOB_RUNNING, "Job is currently running", jobId=job_id)
        if from_task is not None and from_task not in snapshot["tasks"]:
            raise _reject(
                ErrorCode.TASK_NOT_FOUND,
                f"Task not found: {from_task}",
                jobId=job_id,
                taskId=from_task,
            )

        with self.guards.hold(RESTART_OPERATION, job_id) as acquired:
            if not acquired:
                raise _reject(
                    ErrorCode.JOB_RUNNING,
                    "Job restart is already in progress",
                    jobId=job_id,
                )
            paths = self.layout.move(paths, JobLocation.CURRENT)
            if single_task and from_task:
                mode = RestartMode.SINGLE_TASK
                self.store.reset_single_task(
                    paths.job_dir,
                    from_task,
                    clear_token_usage=clear_token_usage,
                )
            elif from_task:
                mode = RestartMode.PARTIAL
                pinned = self._pinned_definition(paths)
                self.store.reset_from_task(
                    paths.job_dir,
                    from_task,
                    task_order=pinned.task_names if pinned is not None else None,
                    clear_token_usage=clear_token_usage,
                )
            else:
                mode = RestartMode.CLEAN_SLATE
                self.store.reset_clean_slate(paths.job_dir, clear_token_usage=clear_token_usage)

            spawned = self._dispatch(paths, start_from_task=from_task, single_task=single_task)

        logger.info("Restarted job %s (%s)", job_id, mode.value)
        return OperationResult.success(
            jobId=job_id,
            mode=mode.value,
            spawned=True,
            pid=spawned.pid,
        )

    def _stop(self, job_id: str) -> OperationResult:
        paths = self._resolve(job_id)
        with self.guards.hold(STOP_OPERATION, job_id) as acquired:
            if not acquired:
                raise _reject(
                    ErrorCode.JOB_RUNNING,
                    "Job stop is already in progress",
                    jobId=job_id,
                )
            termination = self.workers.terminate(paths.job_dir)

            read = self.store.read(paths.job_dir)
            reset_task: str | None = None
            if read.ok and read.snapshot is not None:
                reset_task = running_task_name(read.snapshot)
                if reset_task is not None:
                    self.store.reset_single_task(paths.job_dir, reset_task)
                self.store.write(paths.job_dir, _clear_running)
            elif read.code != ErrorCode.NOT_FOUND:
                raise _reject(
                    read.code or ErrorCode.FS_ERROR,
                    read.message or "Failed to read job status",
                    jobId=job_id,
                )

        logger.info(
            "Stopped job %s: signal=%s reset_task=%s",
            job_id,
            termination.signal,
            reset_task,
        )
        return OperationResult.success(
            jobId=job_id,
            stopped=termination.stopped,
            resetTask=reset_task,
            signal=termination.signal,
        )

    def _start_task(self, job_id: str, task_name: str) -> OperationResult:
        paths = self._resolve(job_id)
        if not isinstance(task_name, str) or not task_name:
            raise _reject(ErrorCode.BAD_REQUEST, "taskId is required", jobId=job_id)
        snapshot = self._read_snapshot(paths)
        tasks: dict[str, Any] = snapshot["tasks"]
        if snapshot.get("state") == TaskState.RUNNING.value or any(
            isinstance(task, dict) and task.get("state") == TaskState.RUNNING.value
            for task in tasks.values()
        ):
            raise _reject(ErrorCode.JOB_RUNNING, "Job is currently running", jobId=job_id)
        if task_name not in tasks:
            raise _reject(
                ErrorCode.TASK_NOT_FOUND,
                f"Task not found: {task_name}",
                jobId=job_id,
                taskId=task_name,
            )
        if tasks[task_name].get("state") != TaskState.PENDING.value:
            raise _reject(
                ErrorCode.TASK_NOT_PENDING,
                f"Task {task_name} is not pending",
                jobId=job_id,
                taskId=task_name,
                state=tasks[task_name].get("state"),
            )

        missing = self._unsatisfied_dependencies(paths, tasks, task_name)
        if missing:
            raise _reject(
                ErrorCode.DEPENDENCIES_NOT_SATISFIED,
                "Upstream tasks are not done",
                jobId=job_id,
                taskId=task_name,
                missing=missing,
            )

        with self.guards.hold(START_OPERATION, job_id) as acquired:
            if not acquired:
                raise _reject(
                    ErrorCode.JOB_RUNNING,
                    "Job start is already in progress",
                    jobId=job_id,
                )
            paths = self.layout.move(paths, JobLocation.CURRENT)
            spawned = self._dispatch(paths, start_from_task=task_name, single_task=True)

        logger.info("Started task %s of job %s", task_name, job_id)
        return OperationResult.success(
            jobId=job_id,
            taskId=task_name,
            mode=RestartMode.SINGLE_TASK_START.value,
            spawned=True,
            pid=spawned.pid,
        )

    def _dispatch(
        self,
        paths: JobPaths,
        *,
        start_from_task: str | None,
        single_task: bool,
    ) -> SpawnedWorker:
        """Mark the job running, then spawn its worker.

        The running state is written before the child exists, so any later
        restart or start sees the job as busy even from another process.
        """

        self.store.write(paths.job_dir, _mark_dispatched)
        try:
            return self.workers.spawn(
                paths.job_id,
                start_from_task=start_from_task,
                single_task=single_task,
            )
        except WorkerSpawnError:
            self.store.write(paths.job_dir, _clear_running)
            raise

    def _unsatisfied_dependencies(
        self,
        paths: JobPaths,
        tasks: Mapping[str, Any],
        task_name: str,
    ) -> list[str]:
        """Every upstream task not yet done, in pipeline order."""

        pinned = self._pinned_definition(paths)
        if pinned is not None and pinned.index_of(task_name) is not None:
            upstream = pinned.upstream_of(task_name)
        else:
            names = list(tasks)
            upstream = names[: names.index(task_name)]
        return [
            name
            for name in upstream
            if not isinstance(tasks.get(name), dict)
            or tasks[name].get("state") != TaskState.DONE.value
        ]

    def _resolve(self, job_id: str) -> JobPaths:
        if not is_valid_job_id(job_id):
            raise _reject(ErrorCode.BAD_REQUEST, f"Invalid job id: {job_id!r}")
        paths = self.layout.resolve(job_id)
        if paths is None:
            raise _reject(ErrorCode.JOB_NOT_FOUND, "Job not found", jobId=job_id)
        return paths

    def _read_snapshot(self, paths: JobPaths) -> Snapshot:
        result = self.store.read(paths.job_dir)
        if result.ok and result.snapshot is not None:
            return result.snapshot
        code = result.code or ErrorCode.FS_ERROR
        if code == ErrorCode.NOT_FOUND:
            code = ErrorCode.JOB_NOT_FOUND
        raise _reject(code, result.message or "Failed to read job status", jobId=paths.job_id)

    def _pipeline_slug(self, paths: JobPaths) -> str:
        try:
            meta = load_json(paths.job_meta_path)
        except (OSError, ValueError, TypeError) as error:
            raise _reject(
                ErrorCode.INVALID_JOB_METADATA,
                f"Cannot read job metadata: {error}",
                jobId=paths.job_id,
            ) from error
        slug = meta.get("pipeline")
        if not isinstance(slug, str) or not slug:
            raise _reject(
                ErrorCode.INVALID_JOB_METADATA,
                "Job metadata has no pipeline reference",
                jobId=paths.job_id,
            )
        return slug

    def _source_definition(self, slug: str) -> PipelineDefinition:
        try:
            return self.catalog.load(slug)
        except PipelineDefinitionError as error:
            raise _reject(ErrorCode.PIPELINE_NOT_FOUND, str(error), pipeline=slug) from error

    def _pinned_definition(self, paths: JobPaths) -> PipelineDefinition | None:
        if not paths.pipeline_path.exists():
            return None
        try:
            return load_pipeline_definition(paths.pipeline_path)
        except PipelineDefinitionError as error:
            raise _reject(
                ErrorCode.INVALID_JOB_METADATA,
                str(error),
                jobId=paths.job_id,
            ) from error


def _clear_running(snapshot: Snapshot) -> None:
    snapshot["current"] = None
    snapshot["currentStage"] = None
    if snapshot.get("state") == TaskState.RUNNING.value:
        snapshot["state"] = TaskState.PENDING.value


def _mark_dispatched(snapshot: Snapshot) -> None:
    snapshot["state"] = TaskState.RUNNING.value
