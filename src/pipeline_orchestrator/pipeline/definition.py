"""Pipeline definitions: normalized task descriptors and the source catalog."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pipeline_orchestrator.jobs.layout import PIPELINE_FILE_NAME
from pipeline_orchestrator.jobs.status_files import load_json

TASKS_DIR_NAME = "tasks"


class PipelineDefinitionError(ValueError):
    """Pipeline definition is missing or malformed."""


@dataclass(slots=True, frozen=True)
class TaskDescriptor:
    """Canonical form of one pipeline task entry."""

    name: str
    module: str | None = None
    config: Mapping[str, Any] = field(default_factory=dict)


def normalize_task_entry(entry: object) -> TaskDescriptor:
    """Normalize a bare task name or a `{name, ...}` descriptor."""

    if isinstance(entry, str):
        name = entry.strip()
        if not name:
            raise PipelineDefinitionError("Task name must be a non-empty string.")
        return TaskDescriptor(name=name)
    if isinstance(entry, Mapping):
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise PipelineDefinitionError(f"Task descriptor is missing a name: {entry!r}")
        module = entry.get("module")
        if module is not None and not isinstance(module, str):
            raise PipelineDefinitionError(f"Task {name} module must be a string.")
        config = entry.get("config") or {}
        if not isinstance(config, Mapping):
            raise PipelineDefinitionError(f"Task {name} config must be an object.")
        return TaskDescriptor(name=name.strip(), module=module, config=dict(config))
    raise PipelineDefinitionError(f"Unsupported task entry: {entry!r}")


@dataclass(slots=True)
class PipelineDefinition:
    """Ordered task list pinned to a job."""

    tasks: list[TaskDescriptor]
    name: str | None = None
    task_config: dict[str, dict[str, Any]] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> PipelineDefinition:
        entries = payload.get("tasks")
        if not isinstance(entries, list):
            raise PipelineDefinitionError("Pipeline definition must contain a 'tasks' list.")
        tasks = [normalize_task_entry(entry) for entry in entries]
        names = [task.name for task in tasks]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise PipelineDefinitionError(f"Duplicate task names: {', '.join(duplicates)}")

        task_config = payload.get("taskConfig") or {}
        if not isinstance(task_config, Mapping):
            raise PipelineDefinitionError("'taskConfig' must be an object.")
        name = payload.get("name")
        return cls(
            tasks=tasks,
            name=name if isinstance(name, str) else None,
            task_config={key: dict(value) for key, value in task_config.items()},
            raw=dict(payload),
        )

    @property
    def task_names(self) -> list[str]:
        return [task.name for task in self.tasks]

    def index_of(self, task_name: str) -> int | None:
        for index, task in enumerate(self.tasks):
            if task.name == task_name:
                return index
        return None

    def upstream_of(self, task_name: str) -> list[str]:
        """Names of every task ordered before `task_name`."""

        index = self.index_of(task_name)
        if index is None:
            return []
        return [task.name for task in self.tasks[:index]]

    def config_for(self, task: TaskDescriptor) -> dict[str, Any]:
        merged = dict(self.task_config.get(task.name, {}))
        merged.update(task.config)
        return merged


def load_pipeline_definition(path: Path) -> PipelineDefinition:
    try:
        payload = load_json(path)
    except FileNotFoundError as error:
        raise PipelineDefinitionError(f"Pipeline definition not found: {path}") from error
    except (OSError, ValueError, TypeError) as error:
        raise PipelineDefinitionError(f"Cannot load pipeline definition {path}: {error}") from error
    return PipelineDefinition.from_payload(payload)


class PipelineCatalog:
    """Authoritative pipeline sources: `<pipelines_dir>/<slug>/pipeline.json`."""

    def __init__(self, pipelines_dir: Path) -> None:
        self.pipelines_dir = pipelines_dir

    def pipeline_dir(self, slug: str) -> Path:
        return self.pipelines_dir / slug

    def definition_path(self, slug: str) -> Path:
        return self.pipeline_dir(slug) / PIPELINE_FILE_NAME

    def load(self, slug: str) -> PipelineDefinition:
        return load_pipeline_definition(self.definition_path(slug))

    def task_module_path(self, slug: str, task_name: str) -> Path:
        return self.pipeline_dir(slug) / TASKS_DIR_NAME / f"{task_name}.py"
