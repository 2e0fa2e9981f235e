"""Resolve the stage callables a pipeline task module implements."""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
from collections.abc import Callable, Mapping
from pathlib import Path
from types import ModuleType
from typing import Any

from pipeline_orchestrator.pipeline.definition import PipelineDefinitionError
from pipeline_orchestrator.pipeline.stages import STAGE_ORDER

StageFn = Callable[[Any], Any]
ModuleRef = ModuleType | str | Path | Mapping[str, StageFn]


def resolve_stages(module_ref: ModuleRef) -> dict[str, StageFn]:
    """Return the canonical stages implemented by `module_ref`, keyed by stage name.

    `module_ref` may be an imported module, a dotted import path, a `.py` file
    path, or a mapping of stage names to callables.
    """

    if isinstance(module_ref, Mapping):
        source: Mapping[str, Any] | ModuleType = module_ref
    elif isinstance(module_ref, ModuleType):
        source = module_ref
    else:
        source = load_task_module(module_ref)

    stages: dict[str, StageFn] = {}
    for stage in STAGE_ORDER:
        candidate = (
            source.get(stage) if isinstance(source, Mapping) else getattr(source, stage, None)
        )
        if callable(candidate):
            stages[stage] = candidate
    return stages


def load_task_module(ref: str | Path) -> ModuleType:
    path = Path(ref)
    if isinstance(ref, Path) or path.suffix == ".py":
        return _load_from_file(path)
    try:
        return importlib.import_module(str(ref))
    except ImportError as error:
        raise PipelineDefinitionError(f"Cannot import task module {ref}: {error}") from error
    except Exception as error:  # noqa: BLE001
        raise PipelineDefinitionError(f"Task module {ref} failed to load: {error}") from error


def _load_from_file(path: Path) -> ModuleType:
    resolved = path.resolve()
    if not resolved.is_file():
        raise PipelineDefinitionError(f"Task module not found: {path}")
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:12]  # noqa: S324
    module_name = f"_pipeline_task_{resolved.stem}_{digest}"
    spec = importlib.util.spec_from_file_location(module_name, resolved)
    if spec is None or spec.loader is None:
        raise PipelineDefinitionError(f"Cannot load task module: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as error:  # noqa: BLE001
        raise PipelineDefinitionError(f"Task module {path} failed to load: {error}") from error
    return module
