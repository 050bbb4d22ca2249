"""Redaction applied to task output and error previews before they reach run state."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

PREVIEW_LIMIT = 2_000


@dataclass(slots=True, frozen=True)
class RedactionRule:
    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


REDACTION_RULES: tuple[RedactionRule, ...] = (
    RedactionRule(
        "bearer-token",
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"),
        r"\1 [redacted-token]",
    ),
    RedactionRule("secret-key", re.compile(r"(?i)\bsk-[a-z0-9_\-]{8,}"), "[redacted-token]"),
    RedactionRule(
        "env-assignment",
        re.compile(r"(?i)\b[a-z0-9_]*_(?:api_key|token|secret)\s*[:=]\s*['\"]?[^'\"\s]+['\"]?"),
        "[redacted-secret]",
    ),
    RedactionRule(
        "query-credential",
        re.compile(r"(?i)([?&](?:token|key|signature|auth|access_token)=)[^&\s#]+"),
        r"\1[redacted]",
    ),
    RedactionRule(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def redact(text: str, rules: Iterable[RedactionRule] = REDACTION_RULES) -> str:
    for rule in rules:
        text = rule.apply(text)
    return text


def sanitize_preview(text: str, *, max_chars: int = PREVIEW_LIMIT) -> str:
    """Redacted, length-capped copy of `text` for task activity entries."""

    compact = text.strip()
    if not compact:
        return ""
    return redact(compact)[:max_chars]
