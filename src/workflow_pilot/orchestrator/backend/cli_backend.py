"""Subprocess-based backend for CLI coding agents (claude, codex, gemini)."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderCredentials,
    ProviderError,
    ProviderErrorCategory,
)
from workflow_pilot.orchestrator.usage import extract_usage

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)
_POLL_INTERVAL_SECONDS = 0.1


class CliAgentBackend:
    """Run one completion as a CLI agent process rendered from a command template.

    The template may reference `{model}`, `{prompt}` and `{prompt_file}`; values are
    shell-quoted before the template is split into argv.
    """

    def __init__(
        self,
        *,
        agent: str,
        model: str,
        command_template: str,
        default_timeout_seconds: float = 600.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self.agent = agent
        self.model = model
        self.command_template = command_template
        self.default_timeout_seconds = default_timeout_seconds
        self._env = env or {}

    def complete(self, request: CompletionRequest) -> CompletionResult:
        timeout_seconds = request.timeout_seconds or self.default_timeout_seconds
        with tempfile.TemporaryDirectory(prefix=f"workflow-pilot-{self.agent}-") as scratch:
            scratch_dir = Path(scratch)
            prompt = _compose_prompt(request)
            prompt_file = scratch_dir / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args = build_run_args(
                command_template=self.command_template,
                model=request.model,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            stdout_path = scratch_dir / "stdout.txt"
            stderr_path = scratch_dir / "stderr.txt"
            env = os.environ.copy()
            env.update(self._env)
            env["WORKFLOW_PILOT_AGENT"] = self.agent
            env["WORKFLOW_PILOT_MODEL"] = request.model

            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code = run_with_timeout(
                        run_args=run_args,
                        env=env,
                        cwd=request.cwd,
                        timeout_seconds=timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                    )
            except FileNotFoundError as error:
                raise ProviderError(
                    f"CLI agent command not found: {run_args[0]}",
                    category=ProviderErrorCategory.CONFIG,
                    provider=self.agent,
                ) from error
            except OSError as error:
                raise ProviderError(
                    f"CLI agent failed to start: {error}",
                    category=ProviderErrorCategory.TRANSIENT,
                    provider=self.agent,
                ) from error

            stdout = stdout_path.read_text("utf-8", errors="replace")
            stderr = stderr_path.read_text("utf-8", errors="replace")

        if exit_code == TIMEOUT_EXIT_CODE:
            raise ProviderError(
                f"CLI agent {self.agent} timed out after {timeout_seconds:g}s",
                category=ProviderErrorCategory.TIMEOUT,
                provider=self.agent,
            )
        if exit_code != 0:
            category = (
                ProviderErrorCategory.TRANSIENT
                if exit_code in TRANSIENT_EXIT_CODES
                else ProviderErrorCategory.PERMANENT
            )
            detail = (stderr.strip() or stdout.strip())[-500:]
            raise ProviderError(
                f"CLI agent {self.agent} exited with code {exit_code}: {detail}",
                category=category,
                provider=self.agent,
            )

        usage = extract_usage(stdout=stdout, stderr=stderr)
        logger.debug(
            "CLI agent %s finished (usage=%s via %s)",
            self.agent,
            usage.usage_status,
            usage.usage_source,
        )
        return CompletionResult(
            text=stdout.strip(),
            model=request.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            finish_reason="exit_0",
        )

    def stream(self, request: CompletionRequest) -> Iterator[str]:
        # CLI agents print the final answer at exit; stream it line by line.
        for line in self.complete(request).text.splitlines(keepends=True):
            yield line

    def estimate_cost(self, result: CompletionResult) -> float | None:
        return None


def cli_backend_builder(
    *,
    agent: str,
    command_template: str,
    default_timeout_seconds: float = 600.0,
):
    """Provider factory builder bound to one agent command template."""

    def _build(model: str, credentials: ProviderCredentials) -> CliAgentBackend:
        env = dict(credentials.extra)
        if credentials.api_key:
            env[f"{agent.upper()}_API_KEY"] = credentials.api_key
        build_run_args(
            command_template=command_template,
            model=model,
            prompt="",
            prompt_file=Path("prompt.txt"),
        )
        return CliAgentBackend(
            agent=agent,
            model=model,
            command_template=command_template,
            default_timeout_seconds=default_timeout_seconds,
            env=env,
        )

    return _build


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render the command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise ProviderError(
            "CLI agent command template is empty.",
            category=ProviderErrorCategory.CONFIG,
        )
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ProviderError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            category=ProviderErrorCategory.CONFIG,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise ProviderError(
            f"Unsupported command template placeholder: {error}",
            category=ProviderErrorCategory.CONFIG,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProviderError(
            "CLI agent command template rendered empty command.",
            category=ProviderErrorCategory.CONFIG,
        )
    return argv


def run_with_timeout(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: float,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> int:
    """Run a process to completion, terminating it and returning 124 on timeout."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    started = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode
        if time.monotonic() - started >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE
        time.sleep(_POLL_INTERVAL_SECONDS)


def _compose_prompt(request: CompletionRequest) -> str:
    if request.system:
        return f"{request.system.strip()}\n\n{request.prompt}"
    return request.prompt


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
