"""OpenAI-compatible chat completions backend over httpx."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

import httpx

from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderCredentials,
    ProviderError,
    ProviderErrorCategory,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
_STREAM_DONE = "[DONE]"


class HttpChatBackend:
    """Chat completions client for any endpoint speaking the OpenAI wire format."""

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.provider = provider
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def complete(self, request: CompletionRequest) -> CompletionResult:
        payload = self._payload(request, stream=False)
        try:
            response = self._client.post(
                "/chat/completions",
                json=payload,
                timeout=request.timeout_seconds or httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as error:
            raise self._error(f"Request timed out: {error}", ProviderErrorCategory.TIMEOUT) from error
        except httpx.TransportError as error:
            raise self._error(f"Network error: {error}", ProviderErrorCategory.TRANSIENT) from error
        self._raise_for_status(response)

        try:
            body = response.json()
            choice = body["choices"][0]
            text = choice["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise self._error(
                f"Malformed completion response: {response.text[:200]}",
                ProviderErrorCategory.PERMANENT,
            ) from error
        usage = body.get("usage") or {}
        return CompletionResult(
            text=text,
            model=str(body.get("model") or request.model),
            prompt_tokens=_optional_int(usage.get("prompt_tokens")),
            completion_tokens=_optional_int(usage.get("completion_tokens")),
            total_tokens=_optional_int(usage.get("total_tokens")),
            finish_reason=choice.get("finish_reason"),
        )

    def stream(self, request: CompletionRequest) -> Iterator[str]:
        payload = self._payload(request, stream=True)
        try:
            with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.is_error:
                    response.read()
                    self._raise_for_status(response)
                for line in response.iter_lines():
                    chunk = _parse_stream_line(line)
                    if chunk is None:
                        continue
                    if chunk == _STREAM_DONE:
                        return
                    yield chunk
        except httpx.TimeoutException as error:
            raise self._error(f"Stream timed out: {error}", ProviderErrorCategory.TIMEOUT) from error
        except httpx.TransportError as error:
            raise self._error(f"Network error: {error}", ProviderErrorCategory.TRANSIENT) from error

    def estimate_cost(self, result: CompletionResult) -> float | None:
        return None

    def close(self) -> None:
        self._client.close()

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        payload: dict[str, Any] = {"model": request.model, "messages": messages, "stream": stream}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        status = response.status_code
        detail = response.text[:300]
        if status == 429:
            category = ProviderErrorCategory.RATE_LIMIT
        elif status in {401, 403}:
            category = ProviderErrorCategory.AUTH
        elif status in {408, 504}:
            category = ProviderErrorCategory.TIMEOUT
        elif status >= 500:
            category = ProviderErrorCategory.TRANSIENT
        else:
            category = ProviderErrorCategory.PERMANENT
        logger.warning("Provider %s returned HTTP %s", self.provider, status)
        raise self._error(f"HTTP {status}: {detail}", category)

    def _error(self, message: str, category: ProviderErrorCategory) -> ProviderError:
        return ProviderError(message, category=category, provider=self.provider)


def http_backend_builder(
    *,
    provider: str,
    base_url: str | None,
    api_key: str | None,
    transport: httpx.BaseTransport | None = None,
):
    """Provider factory builder; explicit credentials override configured defaults."""

    def _build(model: str, credentials: ProviderCredentials) -> HttpChatBackend:
        resolved_url = credentials.base_url or base_url
        if not resolved_url:
            raise ValueError(f"Provider {provider!r} requires a base URL.")
        return HttpChatBackend(
            provider=provider,
            base_url=resolved_url,
            api_key=credentials.api_key or api_key,
            transport=transport,
        )

    return _build


def _parse_stream_line(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    data = stripped[len("data:") :].strip()
    if data == _STREAM_DONE:
        return _STREAM_DONE
    try:
        event = json.loads(data)
        delta = event["choices"][0].get("delta") or {}
    except (json.JSONDecodeError, KeyError, IndexError, TypeError):
        logger.debug("Skipping unparseable stream line %r", stripped[:120])
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


def _optional_int(value: object) -> int | None:
    return value if isinstance(value, int) else None
