"""Directory layout of job residency locations and per-job files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pipeline_orchestrator.jobs.models import (
    LOCATION_PRECEDENCE,
    JobLocation,
    ResidencyError,
)

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "tasks-status.json"
PID_FILE_NAME = "runner.pid"
PIPELINE_FILE_NAME = "pipeline.json"
JOB_FILE_NAME = "job.json"
SEED_FILE_NAME = "seed.json"
TASKS_DIR_NAME = "tasks"
RUNS_LOG_NAME = "runs.jsonl"


@dataclass(slots=True)
class JobPaths:
    """Resolved file paths for one job directory."""

    job_id: str
    location: JobLocation
    job_dir: Path

    @property
    def status_path(self) -> Path:
        return self.job_dir / STATUS_FILE_NAME

    @property
    def pid_path(self) -> Path:
        return self.job_dir / PID_FILE_NAME

    @property
    def pipeline_path(self) -> Path:
        return self.job_dir / PIPELINE_FILE_NAME

    @property
    def job_meta_path(self) -> Path:
        return self.job_dir / JOB_FILE_NAME

    @property
    def seed_path(self) -> Path:
        return self.job_dir / SEED_FILE_NAME

    @property
    def tasks_dir(self) -> Path:
        return self.job_dir / TASKS_DIR_NAME

    def task_dir(self, task_name: str) -> Path:
        return self.tasks_dir / task_name


class JobLayout:
    """Maps job ids to residency directories under the data root."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir

    def location_dir(self, location: JobLocation) -> Path:
        return self.data_dir / location.value

    def job_dir(self, job_id: str, location: JobLocation) -> Path:
        return self.location_dir(location) / job_id

    @property
    def staging_dir(self) -> Path:
        """Scratch area where new jobs are assembled before appearing in pending."""

        return self.data_dir / ".staging"

    def resolve(self, job_id: str) -> JobPaths | None:
        """Find the single residency directory holding the job, if any."""

        for location in LOCATION_PRECEDENCE:
            candidate = self.job_dir(job_id, location)
            if candidate.is_dir():
                return JobPaths(job_id=job_id, location=location, job_dir=candidate)
        return None

    def move(self, paths: JobPaths, target: JobLocation) -> JobPaths:
        """Atomically rename the job directory into another residency location."""

        if paths.location == target:
            return paths
        destination = self.job_dir(paths.job_id, target)
        if destination.exists():
            raise ResidencyError(
                f"Cannot move job {paths.job_id} to {target.value}: destination exists.",
            )
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(paths.job_dir, destination)
        except OSError as error:
            raise ResidencyError(
                f"Cannot move job {paths.job_id} from {paths.location.value} "
                f"to {target.value}: {error}",
            ) from error
        logger.info(
            "Moved job %s from %s to %s",
            paths.job_id,
            paths.location.value,
            target.value,
        )
        return JobPaths(job_id=paths.job_id, location=target, job_dir=destination)

    def runs_log_path(self) -> Path:
        return self.location_dir(JobLocation.COMPLETE) / RUNS_LOG_NAME
