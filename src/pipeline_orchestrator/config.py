"""Runtime configuration for the job orchestration engine."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "PIPELINE_ORCHESTRATOR_"
ROOT_ENV = f"{ENV_PREFIX}ROOT"
DATA_DIR_ENV = f"{ENV_PREFIX}DATA_DIR"
PIPELINES_DIR_ENV = f"{ENV_PREFIX}PIPELINES_DIR"
START_FROM_TASK_ENV = f"{ENV_PREFIX}START_FROM_TASK"
RUN_SINGLE_TASK_ENV = f"{ENV_PREFIX}RUN_SINGLE_TASK"

MAX_STATUS_READ_ATTEMPTS = 5
MAX_STATUS_READ_DELAY_SECONDS = 0.05


@dataclass(slots=True)
class PathSettings:
    """Filesystem roots for job data and pipeline definitions."""

    root: Path = Path(".")
    data_dir: Path = Path("pipeline-data")
    pipelines_dir: Path = Path("pipeline-config")


@dataclass(slots=True)
class StatusSettings:
    """Status snapshot read settings."""

    max_file_bytes: int = 5 * 1024 * 1024
    read_max_attempts: int = 3
    read_retry_delay_seconds: float = 0.05


@dataclass(slots=True)
class TaskRunnerSettings:
    """Stage pipeline executor settings."""

    max_refinement_attempts: int = 2


@dataclass(slots=True)
class WorkerSettings:
    """Worker process spawning and termination settings."""

    stop_grace_seconds: float = 1.5
    python_executable: str = sys.executable


@dataclass(slots=True)
class ModelSettings:
    """Model invocation settings exposed to stage code."""

    default_provider: str = "echo"
    default_model: str = "default"
    cli_command_template: str = ""
    cli_timeout_seconds: int = 600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    status: StatusSettings = field(default_factory=StatusSettings)
    task_runner: TaskRunnerSettings = field(default_factory=TaskRunnerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    model: ModelSettings = field(default_factory=ModelSettings)

    @classmethod
    def from_env(cls, root: Path | None = None) -> Settings:
        """Load settings from environment with defaults relative to the project root."""

        resolved_root = root or Path(os.getenv(ROOT_ENV, "."))
        data_dir = os.getenv(DATA_DIR_ENV)
        pipelines_dir = os.getenv(PIPELINES_DIR_ENV)
        return cls(
            paths=PathSettings(
                root=resolved_root,
                data_dir=Path(data_dir) if data_dir else resolved_root / "pipeline-data",
                pipelines_dir=(
                    Path(pipelines_dir) if pipelines_dir else resolved_root / "pipeline-config"
                ),
            ),
            status=StatusSettings(
                max_file_bytes=_env_int(f"{ENV_PREFIX}STATUS_MAX_FILE_BYTES", 5 * 1024 * 1024),
                read_max_attempts=min(
                    MAX_STATUS_READ_ATTEMPTS,
                    _env_int(f"{ENV_PREFIX}STATUS_READ_MAX_ATTEMPTS", 3),
                ),
                read_retry_delay_seconds=min(
                    MAX_STATUS_READ_DELAY_SECONDS,
                    _env_float(f"{ENV_PREFIX}STATUS_READ_RETRY_DELAY_SECONDS", 0.05),
                ),
            ),
            task_runner=TaskRunnerSettings(
                max_refinement_attempts=_env_int(f"{ENV_PREFIX}MAX_REFINEMENT_ATTEMPTS", 2),
            ),
            worker=WorkerSettings(
                stop_grace_seconds=_env_float(f"{ENV_PREFIX}STOP_GRACE_SECONDS", 1.5),
                python_executable=os.getenv(f"{ENV_PREFIX}PYTHON", sys.executable),
            ),
            model=ModelSettings(
                default_provider=os.getenv(f"{ENV_PREFIX}MODEL_PROVIDER", "echo").strip().lower(),
                default_model=os.getenv(f"{ENV_PREFIX}MODEL", "default"),
                cli_command_template=os.getenv(f"{ENV_PREFIX}MODEL_COMMAND_TEMPLATE", ""),
                cli_timeout_seconds=_env_int(f"{ENV_PREFIX}MODEL_TIMEOUT_SECONDS", 600),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.status.max_file_bytes <= 0:
            raise ValueError(f"{ENV_PREFIX}STATUS_MAX_FILE_BYTES must be > 0.")
        if not 1 <= self.status.read_max_attempts <= MAX_STATUS_READ_ATTEMPTS:
            raise ValueError(
                f"{ENV_PREFIX}STATUS_READ_MAX_ATTEMPTS must be between 1 and "
                f"{MAX_STATUS_READ_ATTEMPTS}.",
            )
        if self.status.read_retry_delay_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}STATUS_READ_RETRY_DELAY_SECONDS must be >= 0.")
        if self.task_runner.max_refinement_attempts < 0:
            raise ValueError(f"{ENV_PREFIX}MAX_REFINEMENT_ATTEMPTS must be >= 0.")
        if self.worker.stop_grace_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}STOP_GRACE_SECONDS must be >= 0.")
        if self.model.default_provider not in {"echo", "cli"}:
            raise ValueError(
                f"{ENV_PREFIX}MODEL_PROVIDER must be one of: echo, cli "
                f"(got {self.model.default_provider!r}).",
            )
        if self.model.default_provider == "cli" and "{prompt" not in (
            self.model.cli_command_template
        ):
            raise ValueError(
                f"{ENV_PREFIX}MODEL_COMMAND_TEMPLATE must include {{prompt}} or {{prompt_file}} "
                "when the cli provider is selected.",
            )

    def worker_env(
        self,
        *,
        start_from_task: str | None = None,
        single_task: bool = False,
    ) -> dict[str, str]:
        """Environment overrides handed to a spawned worker process."""

        env = {
            ROOT_ENV: str(self.paths.root),
            DATA_DIR_ENV: str(self.paths.data_dir),
            PIPELINES_DIR_ENV: str(self.paths.pipelines_dir),
        }
        if start_from_task:
            env[START_FROM_TASK_ENV] = start_from_task
        if single_task:
            env[RUN_SINGLE_TASK_ENV] = "true"
        return env


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid {name} value: {raw!r} (expected an integer)") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid {name} value: {raw!r} (expected a number)") from error


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def worker_scope_from_env() -> tuple[str | None, bool]:
    """Read the start-task and single-task hints a worker was launched with."""

    start_from_task = os.getenv(START_FROM_TASK_ENV) or None
    return start_from_task, _env_bool(RUN_SINGLE_TASK_ENV, default=False)
