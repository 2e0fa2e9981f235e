from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import allure
import pytest

from pipeline_orchestrator.backend import (
    CliModelBackend,
    EchoModelBackend,
    ModelBackendError,
    ModelInvoker,
    ModelRequest,
)
from pipeline_orchestrator.backend.cli_backend import _build_run_args
from pipeline_orchestrator.backend.echo_model import main as echo_main
from pipeline_orchestrator.backend.usage import extract_usage
from pipeline_orchestrator.config import ModelSettings

pytestmark = [
    allure.epic("Model Runtime"),
    allure.feature("Backends & Usage Accounting"),
]

ECHO_COMMAND = (
    f"{sys.executable} -m pipeline_orchestrator.backend.echo_model --prompt-file {{prompt_file}}"
)
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def echo_command(monkeypatch) -> str:
    inherited = os.environ.get("PYTHONPATH")
    paths = [str(SRC_DIR), inherited] if inherited else [str(SRC_DIR)]
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))
    return ECHO_COMMAND


def test_build_run_args_quotes_placeholder_values() -> None:
    argv = _build_run_args(
        command_template="runner --model {model} --prompt {prompt}",
        model="small",
        prompt="hello 'world'",
        prompt_file=Path("prompt.txt"),
    )

    assert argv == ["runner", "--model", "small", "--prompt", "hello 'world'"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("runner --fast", "must include"),
        ("runner {prompt} {unknown}", "Unsupported"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ModelBackendError, match=message) as error:
        _build_run_args(
            command_template=template,
            model="m",
            prompt="p",
            prompt_file=Path("prompt.txt"),
        )

    assert error.value.transient is False


def test_extract_usage_prefers_json_markers() -> None:
    usage = extract_usage(
        stdout='{"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42}',
        stderr="input tokens: 1",
    )

    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (12, 30, 42)
    assert usage.status == "reported"
    assert usage.source == "stdout"


def test_extract_usage_estimates_total_from_text_markers() -> None:
    usage = extract_usage(stdout="answer", stderr="input tokens: 1,200\noutput tokens: 300")

    assert usage.total_tokens == 1500
    assert usage.status == "estimated"
    assert usage.source == "stderr"


def test_extract_usage_without_markers_is_unknown() -> None:
    usage = extract_usage(stdout="plain answer", stderr="")

    assert usage.total_tokens is None
    assert usage.status == "unknown"


def test_echo_backend_returns_prompt_with_usage() -> None:
    response = EchoModelBackend().invoke(ModelRequest(prompt="one two three", model="m"))

    assert response.text == "one two three"
    assert response.usage.total_tokens == 6
    assert response.provider == "echo"


def test_echo_command_writes_usage_to_stderr(tmp_path: Path, capsys) -> None:
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("alpha beta", "utf-8")

    assert echo_main(["--prompt-file", str(prompt_file)]) == 0

    captured = capsys.readouterr()
    assert captured.out == "alpha beta"
    assert json.loads(captured.err)["total_tokens"] == 4


def test_cli_backend_runs_command_and_extracts_usage(tmp_path: Path, echo_command: str) -> None:
    backend = CliModelBackend(echo_command)

    response = backend.invoke(
        ModelRequest(prompt="summarize the river report", model="m", workdir=tmp_path),
    )

    assert response.text == "summarize the river report"
    assert response.usage.total_tokens == 8
    assert response.provider == "cli"
    assert (tmp_path / "prompt.txt").read_text("utf-8") == "summarize the river report"


def test_cli_backend_nonzero_exit_is_error() -> None:
    backend = CliModelBackend(f"{sys.executable} -c 'import sys; sys.exit(3)' {{prompt}}")

    with pytest.raises(ModelBackendError, match="exited with 3") as error:
        backend.invoke(ModelRequest(prompt="x", model="m"))

    assert error.value.transient is False


def test_cli_backend_missing_binary_is_permanent_error() -> None:
    backend = CliModelBackend("definitely-not-a-real-binary-xyz {prompt}")

    with pytest.raises(ModelBackendError, match="not found") as error:
        backend.invoke(ModelRequest(prompt="x", model="m"))

    assert error.value.transient is False


def test_invoker_records_usage_per_call_and_drains(tmp_path: Path, echo_command: str) -> None:
    invoker = ModelInvoker.from_settings(
        ModelSettings(default_provider="echo", cli_command_template=echo_command),
        workdir=tmp_path,
    )

    invoker.invoke("a b")
    invoker.invoke("c d e", provider="cli", model="large")

    usage = invoker.drain_usage()
    assert [(entry["provider"], entry["model"]) for entry in usage] == [
        ("echo", "default"),
        ("cli", "large"),
    ]
    assert [entry["totalTokens"] for entry in usage] == [4, 6]
    assert set(usage[0]) == {
        "provider",
        "model",
        "promptTokens",
        "completionTokens",
        "totalTokens",
        "status",
        "source",
        "recordedAt",
    }
    assert usage[1]["source"] == "stderr"
    assert invoker.drain_usage() == []


def test_invoker_rejects_unknown_provider() -> None:
    invoker = ModelInvoker.from_settings(ModelSettings())

    with pytest.raises(ModelBackendError, match="Unknown model provider"):
        invoker.invoke("hi", provider="cli")
