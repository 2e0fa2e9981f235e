"""Token usage extraction from model command output streams."""

from __future__ import annotations

import re

from pipeline_orchestrator.backend.base import ModelUsage

_JSON_PROMPT_TOKENS = re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COMPLETION_TOKENS = re.compile(
    r'"(?:completion|output)_tokens"\s*:\s*(\d+)',
    re.IGNORECASE,
)
_JSON_TOTAL_TOKENS = re.compile(r'"total_tokens"\s*:\s*(\d+)', re.IGNORECASE)

_INPUT_TOKENS = re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOTAL_TOKENS = re.compile(r"(?:total[_ ]tokens?|tokens used)\s*[:=]?\s*([\d,]+)", re.IGNORECASE)


def extract_usage(*, stdout: str, stderr: str) -> ModelUsage:
    """Extract token usage from JSON-ish or `key: value` markers, stdout first."""

    for source, text in (("stdout", stdout), ("stderr", stderr)):
        usage = _extract_from(
            text,
            source=source,
            patterns=(_JSON_PROMPT_TOKENS, _JSON_COMPLETION_TOKENS, _JSON_TOTAL_TOKENS),
        )
        if usage is not None:
            return usage
    for source, text in (("stderr", stderr), ("stdout", stdout)):
        usage = _extract_from(
            text,
            source=source,
            patterns=(_INPUT_TOKENS, _OUTPUT_TOKENS, _TOTAL_TOKENS),
        )
        if usage is not None:
            return usage
    return ModelUsage()


def _extract_from(
    text: str,
    *,
    source: str,
    patterns: tuple[re.Pattern[str], re.Pattern[str], re.Pattern[str]],
) -> ModelUsage | None:
    prompt_pattern, completion_pattern, total_pattern = patterns
    prompt = _extract_int(prompt_pattern, text)
    completion = _extract_int(completion_pattern, text)
    total = _extract_int(total_pattern, text)
    if prompt is None and completion is None and total is None:
        return None

    status = "reported"
    if total is None:
        status = "estimated"
        total = sum(value for value in (prompt, completion) if value is not None)
    return ModelUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        status=status,
        source=source,
    )


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None
