"""LLM provider backends and the provider factory."""

from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderBackend,
    ProviderCredentials,
    ProviderError,
    ProviderErrorCategory,
)
from workflow_pilot.orchestrator.backend.cli_backend import CliAgentBackend, cli_backend_builder
from workflow_pilot.orchestrator.backend.echo_agent import EchoBackend, build_echo_backend
from workflow_pilot.orchestrator.backend.factory import LlmClient, ProviderFactory
from workflow_pilot.orchestrator.backend.http_backend import HttpChatBackend, http_backend_builder

__all__ = [
    "CliAgentBackend",
    "CompletionRequest",
    "CompletionResult",
    "EchoBackend",
    "HttpChatBackend",
    "LlmClient",
    "ProviderBackend",
    "ProviderCredentials",
    "ProviderError",
    "ProviderErrorCategory",
    "ProviderFactory",
    "build_echo_backend",
    "cli_backend_builder",
    "http_backend_builder",
]
