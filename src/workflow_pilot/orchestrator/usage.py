"""Token usage extraction for provider responses that only expose text streams."""

from __future__ import annotations

import re
from dataclasses import dataclass

USAGE_PARSER_VERSION = "v1"

_STRUCTURED_PATTERNS: dict[str, re.Pattern[str]] = {
    "prompt": re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE),
    "completion": re.compile(r'"(?:completion|output)_tokens"\s*:\s*(\d+)', re.IGNORECASE),
    "total": re.compile(r'"total_tokens"\s*:\s*(\d+)', re.IGNORECASE),
}
_TEXTUAL_PATTERNS: dict[str, re.Pattern[str]] = {
    "prompt": re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),
    "completion": re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),
    "total": re.compile(r"(?:total[_ ]tokens?\s*[:=]|tokens used\s*[\r\n :]+)\s*([\d,]+)", re.IGNORECASE),
}


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    usage_status: str
    usage_source: str
    parser_version: str = USAGE_PARSER_VERSION

    @property
    def known(self) -> bool:
        return self.usage_status != "unknown"


def extract_usage(*, stdout: str, stderr: str) -> UsageExtraction:
    """Extract token usage from structured (JSON) or textual markers.

    Structured markers win over free text. A total that was not printed is estimated from
    the prompt and completion counts.
    """

    for patterns, style in ((_STRUCTURED_PATTERNS, "json"), (_TEXTUAL_PATTERNS, "text")):
        for source_name, text in (("stdout", stdout), ("stderr", stderr)):
            counts = {key: _extract_int(pattern, text) for key, pattern in patterns.items()}
            if all(value is None for value in counts.values()):
                continue
            total = counts["total"]
            status = "reported"
            if total is None:
                known = [
                    value
                    for value in (counts["prompt"], counts["completion"])
                    if value is not None
                ]
                total = sum(known) if known else None
                status = "estimated"
            return UsageExtraction(
                prompt_tokens=counts["prompt"],
                completion_tokens=counts["completion"],
                total_tokens=total,
                usage_status=status,
                usage_source=f"{source_name}_{style}",
            )

    return UsageExtraction(
        prompt_tokens=None,
        completion_tokens=None,
        total_tokens=None,
        usage_status="unknown",
        usage_source="none",
    )


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
