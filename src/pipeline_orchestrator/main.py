"""CLI entrypoint for pipeline-orchestrator."""

import logging
from pathlib import Path

import rich_click as click

from pipeline_orchestrator import __version__
from pipeline_orchestrator.jobs.controllers import (
    JobMutateCommand,
    JobRestartCommand,
    JobsCliController,
    JobsCliResult,
    JobStartTaskCommand,
    JobStatusCommand,
    JobSubmitCommand,
    WorkerRunCommand,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

_ROOT_OPTION = click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root holding pipeline-data/ and pipeline-config/.",
)


@click.group()
@click.version_option(version=__version__, prog_name="pipeline-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def pipeline_orchestrator(log_level: str) -> None:
    """Pipeline job orchestration CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@pipeline_orchestrator.group()
def jobs() -> None:
    """Job lifecycle commands."""


@jobs.command("submit")
@_ROOT_OPTION
@click.option("--pipeline", required=True, help="Pipeline slug under pipeline-config/.")
@click.option(
    "--seed",
    "seed_path",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    required=True,
    help="Seed JSON file.",
)
@click.option("--name", default=None, help="Human-readable job name.")
@click.option("--job-id", default=None, help="Explicit job id (generated when omitted).")
def jobs_submit(
    root: Path | None,
    pipeline: str,
    seed_path: Path,
    name: str | None,
    job_id: str | None,
) -> None:
    """Create a pending job from a pipeline and a seed."""

    _emit_result(
        JOBS_CONTROLLER.submit(
            JobSubmitCommand(
                root=root,
                pipeline=pipeline,
                seed_path=seed_path,
                name=name,
                job_id=job_id,
            ),
        ),
    )


@jobs.command("status")
@_ROOT_OPTION
@click.argument("job_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_status(root: Path | None, job_id: str, output_format: str) -> None:
    """Show the task status snapshot of a job."""

    _emit_result(
        JOBS_CONTROLLER.status(
            JobStatusCommand(root=root, job_id=job_id, output_format=output_format.lower()),
        ),
    )


@jobs.command("restart")
@_ROOT_OPTION
@click.argument("job_id")
@click.option("--from-task", default=None, help="Reset this task and everything after it.")
@click.option(
    "--single-task",
    is_flag=True,
    default=False,
    help="Reset and run only --from-task.",
)
@click.option(
    "--keep-token-usage",
    is_flag=True,
    default=False,
    help="Keep accumulated token usage of reset tasks.",
)
def jobs_restart(
    root: Path | None,
    job_id: str,
    from_task: str | None,
    single_task: bool,
    keep_token_usage: bool,
) -> None:
    """Reset a job and spawn a worker for it."""

    _emit_result(
        JOBS_CONTROLLER.restart(
            JobRestartCommand(
                root=root,
                job_id=job_id,
                from_task=from_task,
                single_task=single_task,
                keep_token_usage=keep_token_usage,
            ),
        ),
    )


@jobs.command("stop")
@_ROOT_OPTION
@click.argument("job_id")
def jobs_stop(root: Path | None, job_id: str) -> None:
    """Terminate a job's worker and reset its running task."""

    _emit_result(JOBS_CONTROLLER.stop(JobMutateCommand(root=root, job_id=job_id)))


@jobs.command("start-task")
@_ROOT_OPTION
@click.argument("job_id")
@click.argument("task_id")
def jobs_start_task(root: Path | None, job_id: str, task_id: str) -> None:
    """Run one pending task whose upstream tasks are all done."""

    _emit_result(
        JOBS_CONTROLLER.start_task(
            JobStartTaskCommand(root=root, job_id=job_id, task_id=task_id),
        ),
    )


@jobs.command("rescan")
@_ROOT_OPTION
@click.argument("job_id")
def jobs_rescan(root: Path | None, job_id: str) -> None:
    """Sync a job's pinned pipeline with its source definition."""

    _emit_result(JOBS_CONTROLLER.rescan(JobMutateCommand(root=root, job_id=job_id)))


@pipeline_orchestrator.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@_ROOT_OPTION
@click.argument("job_id")
@click.option("--from-task", default=None, help="Start from this task.")
@click.option("--single-task", is_flag=True, default=False, help="Run only --from-task.")
def worker_run(
    root: Path | None,
    job_id: str,
    from_task: str | None,
    single_task: bool,
) -> None:
    """Run a job's worker in the foreground."""

    if single_task and not from_task:
        raise click.UsageError("--single-task requires --from-task.")
    _emit_result(
        JOBS_CONTROLLER.run_worker(
            WorkerRunCommand(
                root=root,
                job_id=job_id,
                from_task=from_task,
                single_task=single_task,
            ),
        ),
    )


def _emit_result(result: JobsCliResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Job operation failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pipeline_orchestrator()
