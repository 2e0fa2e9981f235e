"""Subprocess-based model backend driven by a shell command template."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from pipeline_orchestrator.backend.base import (
    ModelBackendError,
    ModelRequest,
    ModelResponse,
)
from pipeline_orchestrator.backend.usage import extract_usage

# Exit codes of processes killed by SIGKILL/SIGTERM.
TRANSIENT_EXIT_CODES = (137, 143)


class CliModelBackend:
    """Render `{prompt}`/`{prompt_file}`/`{model}` into a command and run it."""

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def invoke(self, request: ModelRequest) -> ModelResponse:
        with tempfile.TemporaryDirectory(prefix="pipeline-prompt-") as scratch:
            prompt_dir = request.workdir or Path(scratch)
            prompt_dir.mkdir(parents=True, exist_ok=True)
            prompt_file = prompt_dir / "prompt.txt"
            prompt_file.write_text(request.prompt, "utf-8")

            argv = _build_run_args(
                command_template=self.command_template,
                model=request.model,
                prompt=request.prompt,
                prompt_file=prompt_file,
            )
            env = os.environ.copy()
            env["PIPELINE_ORCHESTRATOR_MODEL"] = request.model

            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except FileNotFoundError as error:
                raise ModelBackendError(
                    f"Model command not found: {argv[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise ModelBackendError(
                    f"Model command failed to start: {error}",
                    transient=True,
                ) from error

            try:
                stdout, stderr = process.communicate(timeout=request.timeout_seconds)
            except subprocess.TimeoutExpired as error:
                _terminate_process(process)
                raise ModelBackendError(
                    f"Model command timed out after {request.timeout_seconds}s",
                    transient=True,
                ) from error

        if process.returncode != 0:
            raise ModelBackendError(
                f"Model command exited with {process.returncode}: {stderr.strip()[:500]}",
                transient=process.returncode in TRANSIENT_EXIT_CODES,
            )
        return ModelResponse(
            text=stdout.strip(),
            usage=extract_usage(stdout=stdout, stderr=stderr),
            provider="cli",
            model=request.model,
        )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ModelBackendError("Model command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ModelBackendError(
            "Model command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise ModelBackendError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ModelBackendError("Model command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.communicate(timeout=2)
