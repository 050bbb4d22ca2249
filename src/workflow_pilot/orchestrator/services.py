"""Dependency bundle and the multi-run orchestrator service."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from workflow_pilot.config import Settings
from workflow_pilot.orchestrator.backend.base import ProviderCredentials
from workflow_pilot.orchestrator.backend.cli_backend import cli_backend_builder
from workflow_pilot.orchestrator.backend.echo_agent import ECHO_MODELS, build_echo_backend
from workflow_pilot.orchestrator.backend.factory import ANY_MODEL, ProviderFactory
from workflow_pilot.orchestrator.backend.http_backend import http_backend_builder
from workflow_pilot.orchestrator.decision import DecisionEngine, KnowledgeSource, MarkdownKnowledgeBase
from workflow_pilot.orchestrator.definition import DefinitionCatalog, WorkflowDefinition
from workflow_pilot.orchestrator.engine import EngineContext, WorkflowEngine
from workflow_pilot.orchestrator.errors import ResumeError
from workflow_pilot.orchestrator.escalation import EscalationQueue
from workflow_pilot.orchestrator.models import (
    Escalation,
    EscalationFilter,
    EscalationStatus,
    RunStatus,
    WorkflowState,
)
from workflow_pilot.orchestrator.pool import ExecutorPool
from workflow_pilot.orchestrator.pricing import parse_pricing_table
from workflow_pilot.orchestrator.repository import OrchestratorRepository
from workflow_pilot.orchestrator.retry import RetryPolicy
from workflow_pilot.orchestrator.state_store import StateCorruptionError, StateStore
from workflow_pilot.orchestrator.steps import StepRegistry
from workflow_pilot.orchestrator.workspace import GitWorktreeBackend, VcsBackend, WorkspaceManager
from workflow_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

HTTP_PROVIDER_NAME = "http"


@dataclass(slots=True)
class OrchestratorContext:
    """Every long-lived collaborator of the orchestrator, built once per process."""

    settings: Settings
    factory: ProviderFactory
    pool: ExecutorPool
    store: StateStore
    catalog: DefinitionCatalog
    repository: OrchestratorRepository
    escalations: EscalationQueue
    decisions: DecisionEngine
    workspaces: WorkspaceManager
    retry_policy: RetryPolicy

    def engine_context(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> EngineContext:
        return EngineContext(
            pool=self.pool,
            store=self.store,
            catalog=self.catalog,
            retry_policy=self.retry_policy,
            decisions=self.decisions,
            escalations=self.escalations,
            workspaces=self.workspaces,
            default_provider=self.settings.providers.default_provider,
            default_model=self.settings.providers.default_model,
            default_timeout_seconds=self.settings.pool.default_timeout_seconds,
            sleep=sleep,
            clock=clock,
        )

    def close(self) -> None:
        self.pool.close()
        self.repository.close()


def register_default_providers(factory: ProviderFactory, settings: Settings) -> None:
    """Register echo, configured CLI agents and the OpenAI-compatible HTTP endpoint."""

    factory.register_provider("echo", build_echo_backend, models=ECHO_MODELS)
    providers = settings.providers
    for agent, template in providers.command_templates.items():
        factory.register_provider(
            agent,
            cli_backend_builder(
                agent=agent,
                command_template=template,
                default_timeout_seconds=settings.pool.default_timeout_seconds,
            ),
            models=providers.cli_models.get(agent) or (ANY_MODEL,),
        )
    if providers.http_base_url:
        factory.register_provider(
            HTTP_PROVIDER_NAME,
            http_backend_builder(
                provider=HTTP_PROVIDER_NAME,
                base_url=providers.http_base_url,
                api_key=providers.http_api_key,
            ),
            models=providers.http_models or (ANY_MODEL,),
        )


def build_context(  # noqa: PLR0913
    settings: Settings,
    *,
    factory: ProviderFactory | None = None,
    vcs_backend: VcsBackend | None = None,
    knowledge: list[KnowledgeSource] | None = None,
    credentials: Mapping[str, ProviderCredentials] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> OrchestratorContext:
    """Validate settings and wire the orchestrator components together."""

    settings.validate()
    if factory is None:
        factory = ProviderFactory(pricing=parse_pricing_table(settings.providers.pricing))
        register_default_providers(factory, settings)

    repository = OrchestratorRepository(settings.db_path)
    repository.init_schema()
    escalations = EscalationQueue(repository, clock=clock)

    sources: list[KnowledgeSource] = list(knowledge or [])
    if settings.decision.knowledge_dir is not None:
        sources.append(MarkdownKnowledgeBase(settings.decision.knowledge_dir))
    resolved_credentials = dict(credentials or {})
    decision_provider = settings.decision.provider or settings.providers.default_provider
    decisions = DecisionEngine(
        factory,
        provider=decision_provider,
        model=settings.decision.model or settings.providers.default_model,
        escalations=escalations,
        repository=repository,
        credentials=resolved_credentials.get(decision_provider),
        knowledge=sources,
        threshold=settings.decision.threshold,
        temperature=settings.decision.temperature,
        prior_knowledge_confidence=settings.decision.prior_knowledge_confidence,
        timeout_seconds=settings.pool.default_timeout_seconds,
        clock=clock,
    )

    catalog = DefinitionCatalog()
    if settings.workflows_dir.is_dir():
        catalog.load_directory(settings.workflows_dir)

    workspace_settings = settings.workspace
    return OrchestratorContext(
        settings=settings,
        factory=factory,
        pool=ExecutorPool(
            factory,
            max_concurrent=settings.pool.max_concurrent,
            credentials=resolved_credentials,
            default_timeout_seconds=settings.pool.default_timeout_seconds,
            acquire_timeout_seconds=settings.pool.acquire_timeout_seconds,
            clock=clock,
        ),
        store=StateStore(settings.state_dir),
        catalog=catalog,
        repository=repository,
        escalations=escalations,
        decisions=decisions,
        workspaces=WorkspaceManager(
            vcs_backend or GitWorktreeBackend(workspace_settings.repo_path),
            root=workspace_settings.root,
            base_ref=workspace_settings.base_ref,
            branch_prefix=workspace_settings.branch_prefix,
            remote=workspace_settings.remote,
            clock=clock,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            base_seconds=settings.retry.base_seconds,
            multiplier=settings.retry.multiplier,
            max_seconds=settings.retry.max_seconds,
            jitter=settings.retry.jitter,
        ),
    )


@dataclass(slots=True)
class _RunHandle:
    run_id: str
    cancel_event: threading.Event
    thread: threading.Thread | None = None
    status: RunStatus | None = None
    error: BaseException | None = None


@dataclass(slots=True)
class RecoveryReport:
    """What `Orchestrator.recover` restarted and what it could not."""

    resumed: list[str] = field(default_factory=list)
    replayed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class Orchestrator:
    """Runs many workflows concurrently, one thread per run.

    Runs share only the executor pool. A paused run holds no thread; a human answer
    delivered through `respond` starts a new thread for exactly that run.
    """

    def __init__(
        self,
        context: OrchestratorContext,
        *,
        registry: StepRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.context = context
        self.engine = WorkflowEngine(context.engine_context(sleep=sleep, clock=clock), registry)
        self._runs: dict[str, _RunHandle] = {}
        self._lock = threading.Lock()
        context.escalations.subscribe(self._on_escalation_response)

    def start(
        self,
        definition: WorkflowDefinition,
        variables: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> str:
        """Persist a new run and execute it in the background."""

        state = self.engine.create_state(definition, variables, run_id=run_id)
        self._spawn(state)
        return state.run_id

    def run(
        self,
        definition: WorkflowDefinition,
        variables: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> tuple[str, RunStatus]:
        """Start a run and block until it completes, fails or pauses."""

        started = self.start(definition, variables, run_id=run_id)
        return started, self.wait(started)

    def wait(self, run_id: str, *, timeout: float | None = None) -> RunStatus:
        """Block until the run's current execution stops; re-raises unexpected failures."""

        with self._lock:
            handle = self._runs.get(run_id)
        if handle is None or handle.thread is None:
            state = self.load_state(run_id)
            return state.status
        handle.thread.join(timeout)
        if handle.thread.is_alive():
            raise TimeoutError(f"Run {run_id} is still executing after {timeout}s")
        if handle.error is not None:
            raise handle.error
        if handle.status is None:
            raise RuntimeError(f"Run {run_id} stopped without a status")
        return handle.status

    def cancel(self, run_id: str) -> bool:
        """Ask a run to stop before its next step boundary."""

        with self._lock:
            handle = self._runs.get(run_id)
        if handle is None or handle.thread is None or not handle.thread.is_alive():
            return False
        handle.cancel_event.set()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def respond(self, escalation_id: str, answer: str) -> Escalation:
        """Answer an escalation; the paused run resumes in the background."""

        return self.context.escalations.respond(escalation_id, answer)

    def resume(self, run_id: str, *, answer: str | None = None) -> str:
        """Resume a saved, non-terminal run in the background."""

        self._join_previous(run_id)
        state = self.load_state(run_id)
        self.engine.prepare_resume(state, answer=answer)
        self._spawn(state)
        return run_id

    def recover(self) -> RecoveryReport:
        """Resume runs interrupted mid-flight and replay unfinished escalation hand-offs."""

        report = RecoveryReport()
        for run_id in self.context.store.list_active():
            if self._is_live(run_id):
                continue
            try:
                state = self.load_state(run_id)
                if state.status is not RunStatus.RUNNING:
                    continue
                self.engine.prepare_resume(state)
                self._spawn(state)
            except (ResumeError, StateCorruptionError) as error:
                logger.error("Cannot recover run %s: %s", run_id, error)
                report.failed[run_id] = str(error)
                continue
            report.resumed.append(run_id)

        responded = self.context.escalations.list(EscalationFilter(status=EscalationStatus.RESPONDED))
        for escalation in responded:
            try:
                self.context.escalations.deliver(escalation.id)
            except (ResumeError, StateCorruptionError) as error:
                logger.error("Cannot replay escalation %s: %s", escalation.id, error)
                report.failed[escalation.run_id] = str(error)
                continue
            report.replayed.append(escalation.id)
        return report

    def load_state(self, run_id: str) -> WorkflowState:
        """Active state first, then the archive."""

        store = self.context.store
        state = store.load(run_id) or store.load_archived(run_id)
        if state is None:
            raise ResumeError(f"Run {run_id} not found")
        return state

    def close(self, *, timeout: float | None = None) -> None:
        """Cancel live runs, wait for them, then release shared resources."""

        with self._lock:
            handles = list(self._runs.values())
        for handle in handles:
            handle.cancel_event.set()
        for handle in handles:
            if handle.thread is not None:
                handle.thread.join(timeout)
        self.context.close()

    def _on_escalation_response(self, escalation: Escalation) -> None:
        self._join_previous(escalation.run_id)
        state = self.load_state(escalation.run_id)
        if state.pending_escalation_id != escalation.id:
            logger.warning(
                "Run %s is no longer waiting for escalation %s; nothing to resume",
                escalation.run_id,
                escalation.id,
            )
            return
        self.engine.prepare_resume(state, answer=escalation.response)
        self._spawn(state)

    def _spawn(self, state: WorkflowState) -> None:
        handle = _RunHandle(run_id=state.run_id, cancel_event=threading.Event())

        def _target() -> None:
            try:
                handle.status = self.engine.execute(state, cancel_event=handle.cancel_event)
            except Exception as error:
                logger.exception("Run %s stopped unexpectedly", state.run_id)
                handle.error = error

        handle.thread = threading.Thread(target=_target, name=f"run-{state.run_id}", daemon=True)
        with self._lock:
            self._runs[state.run_id] = handle
        handle.thread.start()

    def _join_previous(self, run_id: str) -> None:
        with self._lock:
            handle = self._runs.get(run_id)
        if (
            handle is not None
            and handle.thread is not None
            and handle.thread is not threading.current_thread()
        ):
            handle.thread.join()

    def _is_live(self, run_id: str) -> bool:
        with self._lock:
            handle = self._runs.get(run_id)
        return handle is not None and handle.thread is not None and handle.thread.is_alive()
