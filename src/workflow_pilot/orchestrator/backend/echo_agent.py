"""Deterministic echo backend and CLI demo agent for local runs and tests."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Iterator, Mapping
from pathlib import Path

from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderCredentials,
)

ECHO_MODELS: tuple[str, ...] = ("echo-1",)


class EchoBackend:
    """In-process backend that answers from canned replies or echoes the prompt."""

    def __init__(self, model: str, *, replies: Mapping[str, str] | None = None) -> None:
        self.model = model
        self._replies = dict(replies or {})

    def complete(self, request: CompletionRequest) -> CompletionResult:
        text = self._reply_for(request.prompt)
        prompt_tokens = len(request.prompt.split())
        completion_tokens = len(text.split())
        return CompletionResult(
            text=text,
            model=request.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason="stop",
        )

    def stream(self, request: CompletionRequest) -> Iterator[str]:
        for word in self._reply_for(request.prompt).split(" "):
            yield word + " "

    def estimate_cost(self, result: CompletionResult) -> float | None:
        return 0.0

    def _reply_for(self, prompt: str) -> str:
        for marker, reply in self._replies.items():
            if marker in prompt:
                return reply
        return prompt.strip()


def build_echo_backend(model: str, credentials: ProviderCredentials) -> EchoBackend:
    """Provider factory builder for the echo backend."""

    return EchoBackend(model)


def main(argv: list[str] | None = None) -> int:
    """Print the prompt back with usage markers, like a real CLI agent would."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--model", default="echo-1")
    parser.add_argument("--fail-with", default=None, help="Write message to stderr and exit 1.")
    args = parser.parse_args(argv)

    if args.fail_with:
        sys.stderr.write(f"{args.fail_with}\n")
        return 1

    prompt = Path(args.prompt_file).read_text("utf-8").strip()
    sys.stdout.write(f"{prompt}\n")
    sys.stderr.write(
        f"model={args.model} input_tokens={len(prompt.split())} "
        f"output_tokens={len(prompt.split())}\n",
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
