"""Canonical stage order and stage result contract."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

STAGE_ORDER: tuple[str, ...] = (
    "ingestion",
    "preProcessing",
    "promptTemplating",
    "inference",
    "parsing",
    "validateStructure",
    "validateQuality",
    "critique",
    "refine",
    "finalValidation",
    "integration",
)

SEED_KEY = "seed"
REFINE_STAGE = "refine"
# Stages repeated after every refine pass.
REFINE_CYCLE_STAGES: tuple[str, ...] = ("validateStructure", "validateQuality", "critique")
VALIDATION_FAILED_FLAG = "validationFailed"


class StageOutcome(str, Enum):
    """Per-stage log outcome."""

    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"
    REFINEMENT_EXHAUSTED = "refinement_exhausted"


@dataclass(slots=True)
class StageResult:
    """Value returned by a stage: its output and flags to merge into the shared bag."""

    output: Any = None
    flags: dict[str, Any] = field(default_factory=dict)


def coerce_stage_result(stage: str, value: Any) -> StageResult:
    """Accept `StageResult`, `{"output": ..., "flags": {...}}`, or a bare output value."""

    if isinstance(value, StageResult):
        result = value
    elif isinstance(value, Mapping) and "output" in value and set(value) <= {"output", "flags"}:
        result = StageResult(output=value["output"], flags=dict(value.get("flags") or {}))
    else:
        return StageResult(output=value)

    if not isinstance(result.flags, Mapping):
        raise TypeError(
            f"Stage {stage} returned flags of type {type(result.flags).__name__}, "
            "expected a mapping.",
        )
    return result
