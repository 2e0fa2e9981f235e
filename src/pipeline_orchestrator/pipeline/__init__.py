"""Stage pipeline execution for a single task."""

from pipeline_orchestrator.pipeline.context import ExecutionContext
from pipeline_orchestrator.pipeline.executor import (
    PipelineRunResult,
    StageLogEntry,
    StagePipelineExecutor,
)
from pipeline_orchestrator.pipeline.stages import STAGE_ORDER, StageOutcome, StageResult

__all__ = [
    "STAGE_ORDER",
    "ExecutionContext",
    "PipelineRunResult",
    "StageLogEntry",
    "StageOutcome",
    "StagePipelineExecutor",
    "StageResult",
]
