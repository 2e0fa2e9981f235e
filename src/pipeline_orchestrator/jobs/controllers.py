"""Controllers for job and worker CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pipeline_orchestrator.config import Settings
from pipeline_orchestrator.jobs.lifecycle import JobLifecycleManager
from pipeline_orchestrator.jobs.models import OperationResult, ResidencyError, StatusStoreError
from pipeline_orchestrator.jobs.status_files import load_json
from pipeline_orchestrator.pipeline.definition import PipelineDefinitionError
from pipeline_orchestrator.worker.runner import JobRunner


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    root: Path | None
    pipeline: str
    seed_path: Path
    name: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobStatusCommand:
    """CLI input for job status inspection."""

    root: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class JobRestartCommand:
    """CLI input for restart (clean slate, partial, or single task)."""

    root: Path | None
    job_id: str
    from_task: str | None = None
    single_task: bool = False
    keep_token_usage: bool = False


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for stop/rescan operations."""

    root: Path | None
    job_id: str


@dataclass(slots=True)
class JobStartTaskCommand:
    """CLI input for starting one pending task."""

    root: Path | None
    job_id: str
    task_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for running a worker in the foreground."""

    root: Path | None
    job_id: str
    from_task: str | None = None
    single_task: bool = False


@dataclass(slots=True)
class JobsCliResult:
    """Rendered operation result for CLI output."""

    lines: list[str]
    success: bool


class JobsCliController:
    """Coordinates lifecycle operations and renders their results."""

    def submit(self, command: JobSubmitCommand) -> JobsCliResult:
        try:
            seed = load_json(command.seed_path)
        except (OSError, ValueError, TypeError) as error:
            return JobsCliResult(
                lines=[f"Error [bad_request]: invalid seed file: {error}"],
                success=False,
            )
        result = _manager(command.root).submit(
            pipeline=command.pipeline,
            seed=seed,
            name=command.name,
            job_id=command.job_id,
        )
        if not result.ok:
            return _failure(result)
        return JobsCliResult(
            lines=[
                f"Job submitted: job_id={result.details['jobId']} "
                f"location={result.details['location']}",
                f"Tasks: {', '.join(result.details['tasks']) or '-'}",
            ],
            success=True,
        )

    def status(self, command: JobStatusCommand) -> JobsCliResult:
        result = _manager(command.root).status(command.job_id)
        if not result.ok:
            return _failure(result)
        snapshot: dict[str, Any] = result.details["snapshot"]
        if command.output_format == "json":
            return JobsCliResult(
                lines=[json.dumps(result.to_dict(), ensure_ascii=False, indent=2)],
                success=True,
            )
        lines = [
            f"Job {command.job_id}: location={result.details['location']} "
            f"state={snapshot.get('state')} current={snapshot.get('current') or '-'} "
            f"stage={snapshot.get('currentStage') or '-'}",
        ]
        for task_name, task in snapshot["tasks"].items():
            line = (
                f"  {task_name}: state={task.get('state')} attempts={task.get('attempts', 0)} "
                f"refinements={task.get('refinementAttempts', 0)} "
                f"stage={task.get('currentStage') or '-'}"
            )
            if task.get("failedStage"):
                line += f" failed_stage={task['failedStage']}"
            lines.append(line)
        return JobsCliResult(lines=lines, success=True)

    def restart(self, command: JobRestartCommand) -> JobsCliResult:
        result = _manager(command.root).restart(
            command.job_id,
            from_task=command.from_task,
            single_task=command.single_task,
            clear_token_usage=not command.keep_token_usage,
        )
        if not result.ok:
            return _failure(result)
        return JobsCliResult(
            lines=[
                f"Job restarted: job_id={command.job_id} mode={result.details['mode']} "
                f"worker_pid={result.details['pid']}",
            ],
            success=True,
        )

    def stop(self, command: JobMutateCommand) -> JobsCliResult:
        result = _manager(command.root).stop(command.job_id)
        if not result.ok:
            return _failure(result)
        details = result.details
        return JobsCliResult(
            lines=[
                f"Job stopped: job_id={command.job_id} stopped={details['stopped']} "
                f"signal={details['signal'] or '-'} reset_task={details['resetTask'] or '-'}",
            ],
            success=True,
        )

    def start_task(self, command: JobStartTaskCommand) -> JobsCliResult:
        result = _manager(command.root).start_task(command.job_id, command.task_id)
        if not result.ok:
            return _failure(result)
        return JobsCliResult(
            lines=[
                f"Task started: job_id={command.job_id} task={command.task_id} "
                f"worker_pid={result.details['pid']}",
            ],
            success=True,
        )

    def rescan(self, command: JobMutateCommand) -> JobsCliResult:
        result = _manager(command.root).rescan(command.job_id)
        if not result.ok:
            return _failure(result)
        added = result.details["added"]
        removed = result.details["removed"]
        if not added and not removed:
            return JobsCliResult(lines=[f"Job {command.job_id}: pipeline unchanged"], success=True)
        return JobsCliResult(
            lines=[
                f"Job {command.job_id} rescanned: "
                f"added={','.join(added) or '-'} removed={','.join(removed) or '-'}",
            ],
            success=True,
        )

    def run_worker(self, command: WorkerRunCommand) -> JobsCliResult:
        settings = _settings(command.root)
        try:
            summary = JobRunner(settings).run(
                command.job_id,
                start_from_task=command.from_task,
                single_task=command.single_task,
            )
        except (ResidencyError, StatusStoreError, PipelineDefinitionError) as error:
            return JobsCliResult(lines=[f"Error: {error}"], success=False)

        lines = [
            f"Worker summary: job_id={summary.job_id} location={summary.location.value} "
            f"completed={len(summary.completed_tasks)} skipped={len(summary.skipped_tasks)}",
        ]
        if summary.failed_task:
            lines.append(f"Failed task: {summary.failed_task} stage={summary.failed_stage or '-'}")
        return JobsCliResult(lines=lines, success=summary.failed_task is None)


def _settings(root: Path | None) -> Settings:
    settings = Settings.from_env(root=root)
    settings.validate()
    return settings


def _manager(root: Path | None) -> JobLifecycleManager:
    return JobLifecycleManager(_settings(root))


def _failure(result: OperationResult) -> JobsCliResult:
    code = result.code.value if result.code else "error"
    lines = [f"Error [{code}]: {result.message or 'operation failed'}"]
    missing = result.details.get("missing")
    if missing:
        lines.append(f"Missing upstream tasks: {', '.join(missing)}")
    return JobsCliResult(lines=lines, success=False)
