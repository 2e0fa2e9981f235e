"""Model invocation backends exposed to stage code."""

from pipeline_orchestrator.backend.base import (
    ModelBackend,
    ModelBackendError,
    ModelRequest,
    ModelResponse,
    ModelUsage,
)
from pipeline_orchestrator.backend.cli_backend import CliModelBackend
from pipeline_orchestrator.backend.echo_model import EchoModelBackend
from pipeline_orchestrator.backend.invoker import ModelInvoker

__all__ = [
    "CliModelBackend",
    "EchoModelBackend",
    "ModelBackend",
    "ModelBackendError",
    "ModelInvoker",
    "ModelRequest",
    "ModelResponse",
    "ModelUsage",
]
