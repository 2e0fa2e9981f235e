"""Execution context handed to every stage of one task run."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pipeline_orchestrator.pipeline.stages import SEED_KEY

if TYPE_CHECKING:
    from pipeline_orchestrator.backend.invoker import ModelInvoker


@dataclass(slots=True)
class ExecutionContext:
    """Shared state of one task run.

    `data` holds every executed stage's output keyed by stage name plus the
    seed echo under `"seed"`. `output` is a read view of
    `data[previous_stage]`, so both accessors always agree.
    """

    job_id: str
    task_name: str
    seed: Any = None
    data: dict[str, Any] = field(default_factory=dict)
    flags: dict[str, Any] = field(default_factory=dict)
    previous_stage: str = SEED_KEY
    current_stage: str | None = None
    refinement_attempts: int = 0
    task_config: dict[str, Any] = field(default_factory=dict)
    artifacts: dict[str, Any] = field(default_factory=dict)
    task_dir: Path | None = None
    llm: ModelInvoker | None = None

    @property
    def output(self) -> Any:
        """Output of the nearest previously executed stage (or the seed)."""

        return self.data.get(self.previous_stage)

    def stage_output(self, stage: str) -> Any:
        return self.data.get(stage)
