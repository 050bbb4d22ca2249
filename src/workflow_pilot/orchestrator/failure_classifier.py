"""Deterministic failure classification and backoff schedule for step retries."""

from __future__ import annotations

import random
from dataclasses import dataclass

from workflow_pilot.orchestrator.backend.base import ProviderError, ProviderErrorCategory
from workflow_pilot.orchestrator.models import Disposition, ErrorCategory

FAILURE_CLASSIFIER_VERSION = 1
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_SECONDS = 1.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_SECONDS = 32.0
JITTER_RATIO = 0.2

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_TRANSPORT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "econnreset",
    "network error",
    "could not resolve host",
    "service unavailable",
    "bad gateway",
)

_PROVIDER_CATEGORY_MAP: dict[ProviderErrorCategory, tuple[Disposition, ErrorCategory]] = {
    ProviderErrorCategory.TRANSIENT: (Disposition.RETRYABLE, ErrorCategory.TRANSPORT),
    ProviderErrorCategory.RATE_LIMIT: (Disposition.RETRYABLE, ErrorCategory.RATE_LIMIT),
    ProviderErrorCategory.TIMEOUT: (Disposition.RETRYABLE, ErrorCategory.TIMEOUT),
    ProviderErrorCategory.AUTH: (Disposition.ESCALATE, ErrorCategory.AUTH),
    ProviderErrorCategory.CONFIG: (Disposition.ESCALATE, ErrorCategory.CONFIG),
}


class HandledError(RuntimeError):
    """Failure the caller has already logged and handled; the run continues."""


@dataclass(slots=True)
class ErrorClassification:
    """Normalized classification result with the rule that produced it."""

    disposition: Disposition
    category: ErrorCategory
    matched_rule: str
    matched_pattern: str | None = None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and activity entries."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "disposition": self.disposition.value,
            "category": self.category.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify(
    error: BaseException,
    *,
    attempt: int = 1,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ErrorClassification:
    """Classify a failure as recoverable, retryable or escalate.

    A retryable failure on the last allowed attempt is reclassified as escalate.
    """

    classification = _classify_error(error)
    if classification.disposition is Disposition.RETRYABLE and attempt >= max_attempts:
        return ErrorClassification(
            disposition=Disposition.ESCALATE,
            category=classification.category,
            matched_rule="retries_exhausted",
            matched_pattern=classification.matched_pattern,
        )
    return classification


def backoff_schedule(
    attempt: int,
    *,
    base_seconds: float = DEFAULT_BASE_SECONDS,
    multiplier: float = DEFAULT_MULTIPLIER,
    max_seconds: float = DEFAULT_MAX_SECONDS,
    jitter: bool = False,
    rng: random.Random | None = None,
) -> float:
    """Delay before retrying after failed attempt number `attempt` (1-based): 1s, 2s, 4s..."""

    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    delay = min(max_seconds, base_seconds * multiplier ** (attempt - 1))
    if jitter:
        spread = delay * JITTER_RATIO
        delay = (rng or random).uniform(delay - spread, delay + spread)
    return max(0.0, delay)


def _classify_error(error: BaseException) -> ErrorClassification:  # noqa: PLR0911
    if isinstance(error, HandledError):
        return ErrorClassification(
            disposition=Disposition.RECOVERABLE,
            category=ErrorCategory.HANDLED,
            matched_rule="handled_by_caller",
        )

    if isinstance(error, ProviderError):
        mapped = _PROVIDER_CATEGORY_MAP.get(error.category)
        if mapped is not None:
            by_text = _classify_text(str(error))
            if mapped[0] is Disposition.RETRYABLE and by_text is not None:
                if by_text.disposition is Disposition.ESCALATE:
                    return by_text
            return ErrorClassification(
                disposition=mapped[0],
                category=mapped[1],
                matched_rule=f"provider_{error.category.value}",
            )

    if isinstance(error, TimeoutError):
        return ErrorClassification(
            disposition=Disposition.RETRYABLE,
            category=ErrorCategory.TIMEOUT,
            matched_rule="timeout_error",
        )
    if isinstance(error, ConnectionError):
        return ErrorClassification(
            disposition=Disposition.RETRYABLE,
            category=ErrorCategory.TRANSPORT,
            matched_rule="connection_error",
        )

    by_text = _classify_text(str(error))
    if by_text is not None:
        return by_text

    if isinstance(error, ValueError | TypeError | KeyError):
        return ErrorClassification(
            disposition=Disposition.ESCALATE,
            category=ErrorCategory.MALFORMED_INPUT,
            matched_rule="malformed_input",
        )
    return ErrorClassification(
        disposition=Disposition.ESCALATE,
        category=ErrorCategory.UNKNOWN,
        matched_rule="fallback_escalate",
    )


def _classify_text(message: str) -> ErrorClassification | None:
    haystack = message.lower()
    rules: tuple[tuple[str, tuple[str, ...], Disposition, ErrorCategory], ...] = (
        (
            "billing_or_quota",
            _BILLING_OR_QUOTA_PATTERNS,
            Disposition.ESCALATE,
            ErrorCategory.BILLING_OR_QUOTA,
        ),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, Disposition.ESCALATE, ErrorCategory.AUTH),
        (
            "model_not_available",
            _MODEL_NOT_AVAILABLE_PATTERNS,
            Disposition.ESCALATE,
            ErrorCategory.CONFIG,
        ),
        ("rate_limit", _RATE_LIMIT_PATTERNS, Disposition.RETRYABLE, ErrorCategory.RATE_LIMIT),
        ("timeout", _TIMEOUT_PATTERNS, Disposition.RETRYABLE, ErrorCategory.TIMEOUT),
        ("transport", _TRANSPORT_PATTERNS, Disposition.RETRYABLE, ErrorCategory.TRANSPORT),
    )
    for rule, patterns, disposition, category in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                disposition=disposition,
                category=category,
                matched_rule=rule,
                matched_pattern=pattern,
            )
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
