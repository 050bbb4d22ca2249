"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from workflow_pilot.config import (
    DecisionSettings,
    PoolSettings,
    RetrySettings,
    Settings,
    WorkspaceSettings,
)
from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderCredentials,
)
from workflow_pilot.orchestrator.backend.echo_agent import ECHO_MODELS, build_echo_backend
from workflow_pilot.orchestrator.backend.factory import ProviderFactory
from workflow_pilot.orchestrator.services import Orchestrator, OrchestratorContext, build_context
from workflow_pilot.orchestrator.workspace import WorkspaceCommandError

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m workflow_pilot.orchestrator.backend.echo_agent "
    "--model {model} --prompt-file {prompt_file}"
)

CONFIDENT_REPLY = (
    '{"decision": "Use PostgreSQL", "reasoning": "We definitely need relational integrity '
    'and the team already operates PostgreSQL in production."}'
)


class ScriptedBackend:
    """Backend that plays back queued replies or errors, then falls back to echo."""

    def __init__(self) -> None:
        self.outcomes: list[str | BaseException] = []
        self.replies: dict[str, str] = {}
        self.requests: list[CompletionRequest] = []
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def complete(self, request: CompletionRequest) -> CompletionResult:
        with self._lock:
            self.requests.append(request)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            outcome = next(
                (reply for marker, reply in self.replies.items() if marker in request.prompt),
                request.prompt,
            )
        return CompletionResult(
            text=outcome,
            model=request.model,
            prompt_tokens=10,
            completion_tokens=5,
            total_tokens=15,
        )

    def stream(self, request: CompletionRequest) -> Iterator[str]:
        yield self.complete(request).text

    def estimate_cost(self, result: CompletionResult) -> float | None:
        return 0.001


@dataclass
class FakeVcsBackend:
    """In-memory stand-in for git worktrees."""

    copies: dict[Path, str] = field(default_factory=dict)
    pushed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    fail_push: bool = False
    fail_remove: bool = False

    def create_isolated_copy(self, path: Path, *, branch: str, base_ref: str) -> None:
        path.mkdir(parents=True, exist_ok=True)
        self.copies[path.resolve()] = branch

    def push(self, path: Path, *, branch: str, remote: str) -> None:
        if self.fail_push:
            raise WorkspaceCommandError(
                "git push exited with 1: rejected",
                command=["git", "push", remote, branch],
                output="rejected",
            )
        self.pushed.append(branch)

    def remove(self, path: Path, *, branch: str) -> None:
        if self.fail_remove:
            raise WorkspaceCommandError(
                "git worktree remove exited with 128",
                command=["git", "worktree", "remove", str(path)],
                output="locked",
            )
        self.copies.pop(path.resolve(), None)
        self.removed.append(branch)

    def list_copies(self) -> list[tuple[Path, str | None]]:
        return list(self.copies.items())


class FakeClock:
    """Deterministic clock advancing by a fixed step on every read."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            current = self.now
            self.now = current + self.step
            return current


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "orchestrator.db",
        state_dir=tmp_path / "state",
        workflows_dir=tmp_path / "workflows",
        pool=PoolSettings(max_concurrent=2, default_timeout_seconds=5.0),
        retry=RetrySettings(max_attempts=3, base_seconds=1.0, multiplier=2.0),
        decision=DecisionSettings(provider="scripted", model="scripted-1"),
        workspace=WorkspaceSettings(repo_path=tmp_path / "repo", root=tmp_path / "worktrees"),
    )


@pytest.fixture()
def scripted_backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture()
def provider_factory(scripted_backend: ScriptedBackend) -> ProviderFactory:
    factory = ProviderFactory()
    factory.register_provider("echo", build_echo_backend, models=ECHO_MODELS)

    def _build(model: str, credentials: ProviderCredentials) -> ScriptedBackend:
        return scripted_backend

    factory.register_provider("scripted", _build, models=("scripted-1",))
    return factory


@pytest.fixture()
def fake_vcs() -> FakeVcsBackend:
    return FakeVcsBackend()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def orchestrator_context(
    settings: Settings,
    provider_factory: ProviderFactory,
    fake_vcs: FakeVcsBackend,
) -> Iterator[OrchestratorContext]:
    context = build_context(settings, factory=provider_factory, vcs_backend=fake_vcs)
    yield context
    context.close()


@pytest.fixture()
def make_orchestrator(
    orchestrator_context: OrchestratorContext,
    sleeps: list[float],
) -> Iterator[Callable[[], Orchestrator]]:
    created: list[Orchestrator] = []

    def _make() -> Orchestrator:
        orchestrator = Orchestrator(orchestrator_context, sleep=sleeps.append)
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        with orchestrator._lock:
            handles = list(orchestrator._runs.values())
        for handle in handles:
            handle.cancel_event.set()
            if handle.thread is not None:
                handle.thread.join(5)


@pytest.fixture()
def echo_agent_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Point the CLI at a temp data dir with the echo agent wired as the `codex` backend."""

    monkeypatch.setenv("WORKFLOW_PILOT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("WORKFLOW_PILOT_WORKFLOWS_DIR", str(tmp_path / "workflows"))
    monkeypatch.setenv("WORKFLOW_PILOT_CODEX_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("WORKFLOW_PILOT_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("WORKFLOW_PILOT_REPO_PATH", str(tmp_path / "repo"))
    return tmp_path / "data"
