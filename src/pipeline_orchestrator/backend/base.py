"""Model invocation interface consumed by stage code."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol


class ModelBackendError(RuntimeError):
    """Backend invocation error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class ModelUsage:
    """Best-effort token usage of one invocation."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    status: str = "unknown"
    source: str = "none"


@dataclass(slots=True)
class ModelRequest:
    """Inputs required for one model invocation."""

    prompt: str
    model: str
    timeout_seconds: int = 600
    workdir: Path | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelResponse:
    """Model text plus usage metadata."""

    text: str
    usage: ModelUsage = field(default_factory=ModelUsage)
    provider: str = ""
    model: str = ""


class ModelBackend(Protocol):
    """Protocol implemented by model backends."""

    def invoke(self, request: ModelRequest) -> ModelResponse:
        """Run one prompt and return the response text with usage."""
