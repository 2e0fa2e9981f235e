"""Stage pipeline executor: runs one task's canonical stage sequence."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pipeline_orchestrator.pipeline.context import ExecutionContext
from pipeline_orchestrator.pipeline.loader import ModuleRef, StageFn, resolve_stages
from pipeline_orchestrator.pipeline.stages import (
    REFINE_CYCLE_STAGES,
    REFINE_STAGE,
    SEED_KEY,
    STAGE_ORDER,
    VALIDATION_FAILED_FLAG,
    StageOutcome,
    coerce_stage_result,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StageLogEntry:
    """One ordered entry of a task run log."""

    stage: str
    outcome: StageOutcome
    timestamp: str
    duration_ms: float = 0.0
    refinement_cycle: int = 0
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return self.outcome == StageOutcome.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp,
            "durationMs": round(self.duration_ms, 3),
            "refinementCycle": self.refinement_cycle,
        }
        if self.skipped:
            payload["skipped"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class PipelineRunResult:
    """Outcome of one task run."""

    ok: bool
    context: ExecutionContext
    logs: list[StageLogEntry]
    failed_stage: str | None = None
    error: Exception | None = None

    @property
    def refinement_attempts(self) -> int:
        return self.context.refinement_attempts

    def log_dicts(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.logs]


class StageExecutionError(RuntimeError):
    """A stage raised; carries the stage name and the original error."""

    def __init__(self, stage: str, cause: Exception) -> None:
        super().__init__(f"Stage {stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


class StagePipelineExecutor:
    """Walks the canonical stage order for one task.

    Unimplemented stages are logged as skipped and leave the chaining pointer
    where it was. At the refine slot a bounded refine/re-validate loop runs
    while `flags["validationFailed"]` is truthy.
    """

    def __init__(
        self,
        *,
        max_refinement_attempts: int = 2,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.max_refinement_attempts = max(0, max_refinement_attempts)
        self._clock = clock

    def run(
        self,
        module_ref: ModuleRef,
        context: ExecutionContext,
        *,
        stages: Mapping[str, StageFn] | None = None,
        on_stage_start: Callable[[str], None] | None = None,
    ) -> PipelineRunResult:
        """Run every canonical stage against `context`.

        Args:
            module_ref: Task module (object, dotted path, or file path).
            context: Context to populate; its seed is echoed under `data["seed"]`.
            stages: Optional override of the implemented stages, bypassing resolution.
            on_stage_start: Called with the stage name before each invocation.
        """

        implemented = (
            {name: fn for name, fn in stages.items() if name in STAGE_ORDER and callable(fn)}
            if stages is not None
            else resolve_stages(module_ref)
        )
        context.data[SEED_KEY] = context.seed
        context.previous_stage = SEED_KEY
        context.refinement_attempts = 0
        logs: list[StageLogEntry] = []
        runner = _StageRunner(
            implemented=implemented,
            context=context,
            logs=logs,
            clock=self._clock,
            on_stage_start=on_stage_start,
        )

        try:
            for stage in STAGE_ORDER:
                if stage == REFINE_STAGE:
                    self._run_refine_slot(runner)
                elif stage in implemented:
                    runner.invoke(stage)
                else:
                    runner.skip(stage)
        except StageExecutionError as failure:
            logger.warning(
                "Task %s/%s failed at stage %s: %s",
                context.job_id,
                context.task_name,
                failure.stage,
                failure.cause,
            )
            return PipelineRunResult(
                ok=False,
                context=context,
                logs=logs,
                failed_stage=failure.stage,
                error=failure.cause,
            )
        finally:
            context.current_stage = None

        return PipelineRunResult(ok=True, context=context, logs=logs)

    def _run_refine_slot(self, runner: _StageRunner) -> None:
        context = runner.context
        if REFINE_STAGE not in runner.implemented:
            runner.skip(REFINE_STAGE)
            return
        if not _needs_refinement(context):
            runner.invoke(REFINE_STAGE)
            return

        while _needs_refinement(context):
            if context.refinement_attempts >= self.max_refinement_attempts:
                logger.warning(
                    "Task %s/%s still failing validation after %d refinement attempts",
                    context.job_id,
                    context.task_name,
                    context.refinement_attempts,
                )
                runner.record(REFINE_STAGE, StageOutcome.REFINEMENT_EXHAUSTED)
                return
            context.refinement_attempts += 1
            runner.invoke(REFINE_STAGE)
            # Validators re-run against the refined output and set the flag again if needed.
            context.flags[VALIDATION_FAILED_FLAG] = False
            for stage in REFINE_CYCLE_STAGES:
                if stage in runner.implemented:
                    runner.invoke(stage)


def _needs_refinement(context: ExecutionContext) -> bool:
    return bool(context.flags.get(VALIDATION_FAILED_FLAG))


class _StageRunner:
    def __init__(  # noqa: PLR0913
        self,
        *,
        implemented: Mapping[str, StageFn],
        context: ExecutionContext,
        logs: list[StageLogEntry],
        clock: Callable[[], float],
        on_stage_start: Callable[[str], None] | None,
    ) -> None:
        self.implemented = implemented
        self.context = context
        self.logs = logs
        self._clock = clock
        self._on_stage_start = on_stage_start

    def skip(self, stage: str) -> None:
        self.record(stage, StageOutcome.SKIPPED)

    def record(
        self,
        stage: str,
        outcome: StageOutcome,
        *,
        duration_ms: float = 0.0,
        error: str | None = None,
    ) -> None:
        self.logs.append(
            StageLogEntry(
                stage=stage,
                outcome=outcome,
                timestamp=datetime.now(tz=UTC).isoformat(),
                duration_ms=duration_ms,
                refinement_cycle=self.context.refinement_attempts,
                error=error,
            ),
        )

    def invoke(self, stage: str) -> None:
        context = self.context
        context.current_stage = stage
        if self._on_stage_start is not None:
            self._on_stage_start(stage)

        started = self._clock()
        try:
            result = coerce_stage_result(stage, self.implemented[stage](context))
        except Exception as error:  # noqa: BLE001
            self.record(
                stage,
                StageOutcome.ERROR,
                duration_ms=(self._clock() - started) * 1000,
                error=f"{type(error).__name__}: {error}",
            )
            raise StageExecutionError(stage, error) from error

        context.flags.update(result.flags)
        context.data[stage] = result.output
        context.previous_stage = stage
        self.record(stage, StageOutcome.OK, duration_ms=(self._clock() - started) * 1000)
