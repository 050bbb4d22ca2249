"""Provider backend interface consumed by the provider factory."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class ProviderErrorCategory(str, Enum):
    """Failure categories a backend reports."""

    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH = "auth"
    CONFIG = "config"
    PERMANENT = "permanent"


_TRANSIENT_CATEGORIES = {
    ProviderErrorCategory.TRANSIENT,
    ProviderErrorCategory.RATE_LIMIT,
    ProviderErrorCategory.TIMEOUT,
}


class ProviderError(RuntimeError):
    """Backend failure with a category the retry classifier understands."""

    def __init__(
        self,
        message: str,
        *,
        category: ProviderErrorCategory,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.provider = provider

    @property
    def transient(self) -> bool:
        return self.category in _TRANSIENT_CATEGORIES


@dataclass(slots=True)
class ProviderCredentials:
    """Authentication material handed to a backend at client creation."""

    api_key: str | None = None
    base_url: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CompletionRequest:
    """Inputs for one completion call."""

    prompt: str
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    system: str | None = None
    timeout_seconds: float | None = None
    cwd: Path | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CompletionResult:
    """Completion text with whatever usage the backend reported."""

    text: str
    model: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    finish_reason: str | None = None


class ProviderBackend(Protocol):
    """Capability interface implemented by LLM backends."""

    def complete(self, request: CompletionRequest) -> CompletionResult:
        """Return the full completion for a prompt."""

    def stream(self, request: CompletionRequest) -> Iterator[str]:
        """Yield completion text chunks as they arrive."""

    def estimate_cost(self, result: CompletionResult) -> float | None:
        """Estimate USD cost of a completed call, or None when unknown."""
