"""Deterministic offline model, usable in-process or as a command for the cli backend."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from pipeline_orchestrator.backend.base import ModelRequest, ModelResponse, ModelUsage


def _count_tokens(text: str) -> int:
    return len(text.split())


class EchoModelBackend:
    """Return the prompt unchanged with whitespace-token usage counts."""

    def invoke(self, request: ModelRequest) -> ModelResponse:
        prompt_tokens = _count_tokens(request.prompt)
        return ModelResponse(
            text=request.prompt,
            usage=ModelUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=prompt_tokens,
                total_tokens=prompt_tokens * 2,
                status="reported",
                source="echo",
            ),
            provider="echo",
            model=request.model,
        )


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt file to stdout followed by a usage line on stderr."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    tokens = _count_tokens(prompt)
    sys.stdout.write(prompt)
    usage = {"prompt_tokens": tokens, "completion_tokens": tokens, "total_tokens": tokens * 2}
    sys.stderr.write(json.dumps(usage) + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
