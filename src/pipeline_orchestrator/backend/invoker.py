"""Provider routing and usage accounting for stage-level model calls."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pipeline_orchestrator.backend.base import (
    ModelBackend,
    ModelBackendError,
    ModelRequest,
    ModelResponse,
)
from pipeline_orchestrator.backend.cli_backend import CliModelBackend
from pipeline_orchestrator.backend.echo_model import EchoModelBackend
from pipeline_orchestrator.config import ModelSettings

logger = logging.getLogger(__name__)


class ModelInvoker:
    """Exposed to stages as `context.llm`; records usage for the task's `tokenUsage`."""

    def __init__(
        self,
        *,
        backends: Mapping[str, ModelBackend],
        default_provider: str,
        default_model: str = "default",
        timeout_seconds: int = 600,
        workdir: Path | None = None,
    ) -> None:
        if default_provider not in backends:
            raise ValueError(f"Unknown default model provider: {default_provider}")
        self.backends = dict(backends)
        self.default_provider = default_provider
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.workdir = workdir
        self._usage: list[dict[str, Any]] = []

    @classmethod
    def from_settings(cls, settings: ModelSettings, *, workdir: Path | None = None) -> ModelInvoker:
        backends: dict[str, ModelBackend] = {"echo": EchoModelBackend()}
        if settings.cli_command_template:
            backends["cli"] = CliModelBackend(settings.cli_command_template)
        return cls(
            backends=backends,
            default_provider=settings.default_provider,
            default_model=settings.default_model,
            timeout_seconds=settings.cli_timeout_seconds,
            workdir=workdir,
        )

    def invoke(self, prompt: str, *, provider: str | None = None, **options: Any) -> ModelResponse:
        provider_name = provider or self.default_provider
        backend = self.backends.get(provider_name)
        if backend is None:
            raise ModelBackendError(f"Unknown model provider: {provider_name}", transient=False)

        model = str(options.pop("model", self.default_model))
        request = ModelRequest(
            prompt=prompt,
            model=model,
            timeout_seconds=int(options.pop("timeout_seconds", self.timeout_seconds)),
            workdir=self.workdir,
            options=options,
        )
        response = backend.invoke(request)
        self._usage.append(
            {
                "provider": provider_name,
                "model": model,
                "promptTokens": response.usage.prompt_tokens,
                "completionTokens": response.usage.completion_tokens,
                "totalTokens": response.usage.total_tokens,
                "status": response.usage.status,
                "source": response.usage.source,
                "recordedAt": datetime.now(tz=UTC).isoformat(),
            },
        )
        logger.debug(
            "Model call provider=%s model=%s total_tokens=%s",
            provider_name,
            model,
            response.usage.total_tokens,
        )
        return response

    def drain_usage(self) -> list[dict[str, Any]]:
        """Return and forget usage entries recorded since the last drain."""

        entries, self._usage = self._usage, []
        return entries
