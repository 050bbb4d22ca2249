"""Provider registry producing uniform clients for provider/model pairs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderBackend,
    ProviderCredentials,
    ProviderError,
    ProviderErrorCategory,
)
from workflow_pilot.orchestrator.pricing import PricingTable, estimate_cost_usd

logger = logging.getLogger(__name__)

BackendBuilder = Callable[[str, ProviderCredentials], ProviderBackend]
ANY_MODEL = "*"


@dataclass(slots=True, frozen=True)
class ProviderRegistration:
    """Registered backend builder with the models it accepts."""

    name: str
    builder: BackendBuilder
    models: tuple[str, ...]

    def accepts(self, model: str) -> bool:
        return ANY_MODEL in self.models or model in self.models


@dataclass(slots=True)
class ClientUsage:
    """Cumulative usage of one client."""

    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LlmClient:
    """Uniform client bound to one provider/model pair."""

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        backend: ProviderBackend,
        pricing: PricingTable | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self._backend = backend
        self._pricing = pricing or {}
        self._usage = ClientUsage()
        self._lock = threading.Lock()

    def complete(  # noqa: PLR0913
        self,
        prompt: str,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system: str | None = None,
        timeout_seconds: float | None = None,
        request: CompletionRequest | None = None,
    ) -> CompletionResult:
        """Run one completion and record its token usage."""

        resolved = request or CompletionRequest(
            prompt=prompt,
            model=self.model,
            temperature=temperature,
            max_tokens=max_tokens,
            system=system,
            timeout_seconds=timeout_seconds,
        )
        result = self._backend.complete(resolved)
        with self._lock:
            self._usage.calls += 1
            self._usage.prompt_tokens += result.prompt_tokens or 0
            self._usage.completion_tokens += result.completion_tokens or 0
            self._usage.total_tokens += result.total_tokens or 0
        return result

    def stream(
        self,
        prompt: str,
        *,
        temperature: float | None = None,
        system: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Iterator[str]:
        """Yield completion chunks from the backend."""

        with self._lock:
            self._usage.calls += 1
        yield from self._backend.stream(
            CompletionRequest(
                prompt=prompt,
                model=self.model,
                temperature=temperature,
                system=system,
                timeout_seconds=timeout_seconds,
            ),
        )

    def estimate_cost(self, result: CompletionResult) -> float | None:
        """Backend estimate first, configured pricing table second."""

        estimate = self._backend.estimate_cost(result)
        if estimate is not None:
            return estimate
        return estimate_cost_usd(
            self._pricing,
            provider=self.provider,
            model=self.model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            total_tokens=result.total_tokens,
        )

    def usage(self) -> ClientUsage:
        """Snapshot of cumulative token usage."""

        with self._lock:
            return ClientUsage(
                calls=self._usage.calls,
                prompt_tokens=self._usage.prompt_tokens,
                completion_tokens=self._usage.completion_tokens,
                total_tokens=self._usage.total_tokens,
            )


class ProviderFactory:
    """Registry of provider backends; validates names when a client is created."""

    def __init__(self, *, pricing: PricingTable | None = None) -> None:
        self._providers: dict[str, ProviderRegistration] = {}
        self._pricing = pricing or {}
        self._lock = threading.Lock()

    def register_provider(
        self,
        name: str,
        builder: BackendBuilder,
        *,
        models: tuple[str, ...] = (ANY_MODEL,),
    ) -> None:
        """Register (or replace) a backend builder under a case-insensitive name."""

        normalized = name.strip().lower()
        if not normalized:
            raise ValueError("Provider name must not be empty.")
        if not models:
            raise ValueError(f"Provider {normalized!r} must accept at least one model.")
        with self._lock:
            if normalized in self._providers:
                logger.info("Replacing provider registration %s", normalized)
            self._providers[normalized] = ProviderRegistration(
                name=normalized,
                builder=builder,
                models=tuple(models),
            )

    def providers(self) -> list[str]:
        with self._lock:
            return sorted(self._providers)

    def models(self, provider: str) -> tuple[str, ...]:
        return self._registration(provider).models

    def create_client(
        self,
        provider: str,
        model: str,
        credentials: ProviderCredentials | None = None,
    ) -> LlmClient:
        """Build a client, failing fast on unknown provider or model."""

        registration = self._registration(provider)
        model_name = model.strip()
        if not model_name or not registration.accepts(model_name):
            raise ProviderError(
                f"Unsupported model {model!r} for provider {registration.name!r}. "
                f"Valid models: {', '.join(registration.models)}",
                category=ProviderErrorCategory.CONFIG,
                provider=registration.name,
            )
        try:
            backend = registration.builder(model_name, credentials or ProviderCredentials())
        except ProviderError:
            raise
        except (TypeError, ValueError, OSError) as error:
            raise ProviderError(
                f"Failed to create {registration.name!r} client for model {model_name!r}: {error}",
                category=ProviderErrorCategory.CONFIG,
                provider=registration.name,
            ) from error
        return LlmClient(
            provider=registration.name,
            model=model_name,
            backend=backend,
            pricing=self._pricing,
        )

    def _registration(self, provider: str) -> ProviderRegistration:
        normalized = provider.strip().lower()
        with self._lock:
            registration = self._providers.get(normalized)
            known = sorted(self._providers)
        if registration is None:
            raise ProviderError(
                f"Unknown provider {provider!r}. Registered providers: {', '.join(known) or '-'}",
                category=ProviderErrorCategory.CONFIG,
                provider=normalized,
            )
        return registration
