from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from pipeline_orchestrator.pipeline.definition import (
    PipelineCatalog,
    PipelineDefinition,
    PipelineDefinitionError,
    TaskDescriptor,
    normalize_task_entry,
)
from pipeline_orchestrator.pipeline.loader import load_task_module, resolve_stages

pytestmark = [
    allure.epic("Stage Pipeline"),
    allure.feature("Pipeline Definitions & Task Modules"),
]


def test_normalize_accepts_names_and_descriptors() -> None:
    assert normalize_task_entry(" research ") == TaskDescriptor(name="research")

    descriptor = normalize_task_entry(
        {"name": "draft", "module": "tasks/draft.py", "config": {"tone": "dry"}},
    )

    assert descriptor.name == "draft"
    assert descriptor.module == "tasks/draft.py"
    assert descriptor.config == {"tone": "dry"}


@pytest.mark.parametrize("entry", ["", {"module": "x"}, 42, {"name": "a", "config": ["x"]}])
def test_normalize_rejects_malformed_entries(entry: object) -> None:
    with pytest.raises(PipelineDefinitionError):
        normalize_task_entry(entry)


def test_definition_rejects_duplicate_task_names() -> None:
    with pytest.raises(PipelineDefinitionError, match="Duplicate task names: a"):
        PipelineDefinition.from_payload({"tasks": ["a", {"name": "a"}]})


def test_definition_requires_task_list() -> None:
    with pytest.raises(PipelineDefinitionError, match="'tasks' list"):
        PipelineDefinition.from_payload({"tasks": "a,b"})


def test_definition_orders_upstream_and_merges_config() -> None:
    definition = PipelineDefinition.from_payload(
        {
            "name": "report",
            "tasks": ["research", {"name": "draft", "config": {"words": 300}}, "review"],
            "taskConfig": {"draft": {"words": 100, "tone": "plain"}},
        },
    )

    assert definition.task_names == ["research", "draft", "review"]
    assert definition.upstream_of("review") == ["research", "draft"]
    assert definition.upstream_of("research") == []
    assert definition.upstream_of("ghost") == []
    assert definition.index_of("draft") == 1
    draft = definition.tasks[1]
    assert definition.config_for(draft) == {"words": 300, "tone": "plain"}


def test_catalog_reports_missing_pipeline(tmp_path: Path) -> None:
    catalog = PipelineCatalog(tmp_path)

    with pytest.raises(PipelineDefinitionError, match="not found"):
        catalog.load("absent")


def test_catalog_rejects_non_object_definition(tmp_path: Path) -> None:
    (tmp_path / "broken").mkdir()
    (tmp_path / "broken" / "pipeline.json").write_text("[]", "utf-8")

    with pytest.raises(PipelineDefinitionError, match="Cannot load"):
        PipelineCatalog(tmp_path).load("broken")


def test_catalog_loads_definition_and_keeps_raw_payload(tmp_path: Path) -> None:
    payload = {"name": "report", "tasks": ["a", "b"], "owner": "ops"}
    (tmp_path / "report").mkdir()
    (tmp_path / "report" / "pipeline.json").write_text(json.dumps(payload), "utf-8")

    definition = PipelineCatalog(tmp_path).load("report")

    assert definition.raw == payload
    assert definition.name == "report"


def test_task_module_loaded_from_file_exposes_canonical_stages(tmp_path: Path) -> None:
    module_path = tmp_path / "draft.py"
    module_path.write_text(
        "def inference(context):\n"
        "    return 'text'\n"
        "\n"
        "def helper(context):\n"
        "    return None\n"
        "\n"
        "critique = 'not callable'\n",
        "utf-8",
    )

    stages = resolve_stages(module_path)

    assert list(stages) == ["inference"]


def test_task_module_import_failures_are_definition_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.py"
    broken.write_text("raise RuntimeError('boom')\n", "utf-8")

    with pytest.raises(PipelineDefinitionError, match="failed to load"):
        load_task_module(broken)
    with pytest.raises(PipelineDefinitionError, match="not found"):
        load_task_module(tmp_path / "missing.py")
    with pytest.raises(PipelineDefinitionError, match="Cannot import"):
        load_task_module("pipeline_orchestrator.no_such_module")


def test_task_module_can_be_a_dotted_import_path() -> None:
    stages = resolve_stages("pipeline_orchestrator.pipeline.stages")

    assert stages == {}
