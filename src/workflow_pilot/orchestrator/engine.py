"""Workflow interpreter: walks a step program and checkpoints after every step.

Progress bookkeeping in `WorkflowState`:

* `current_step` is the index of the last completed step of the executing workflow
  (-1 before the first one);
* `next_step` is the index that runs next; resume starts there and never re-runs a
  completed step;
* `call_stack` holds the parent positions of invoked sub-workflows; `active_workflow`
  names the definition that is executing when it differs from the root.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from workflow_pilot.orchestrator.decision import DecisionEngine
from workflow_pilot.orchestrator.definition import (
    DecisionStep,
    DefinitionCatalog,
    WorkflowDefinition,
)
from workflow_pilot.orchestrator.errors import (
    ResumeError,
    StepFailure,
    UnknownWorkflowError,
    WorkflowCycleError,
    WorkflowError,
)
from workflow_pilot.orchestrator.escalation import EscalationQueue
from workflow_pilot.orchestrator.failure_classifier import classify
from workflow_pilot.orchestrator.models import (
    CallFrame,
    Disposition,
    RunStatus,
    WorkflowState,
)
from workflow_pilot.orchestrator.pool import ExecutorPool
from workflow_pilot.orchestrator.retry import RetryPolicy
from workflow_pilot.orchestrator.state_store import StateStore
from workflow_pilot.orchestrator.steps import (
    InvokeRequest,
    StepInvocation,
    StepRegistry,
    StepResult,
    default_registry,
)
from workflow_pilot.orchestrator.workspace import WorkspaceManager
from workflow_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

STOP_CANCELLED = "cancelled"
STOP_ESCALATION = "escalation"
STOP_FAILED = "failed"


@dataclass(slots=True)
class EngineContext:
    """Explicit dependency bundle handed to every engine instance."""

    pool: ExecutorPool
    store: StateStore
    catalog: DefinitionCatalog
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    decisions: DecisionEngine | None = None
    escalations: EscalationQueue | None = None
    workspaces: WorkspaceManager | None = None
    default_provider: str = "echo"
    default_model: str = "echo-1"
    default_timeout_seconds: float | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], datetime] = utc_now


class WorkflowEngine:
    """Runs one workflow at a time per call; steps of a run are strictly sequential."""

    def __init__(self, context: EngineContext, registry: StepRegistry | None = None) -> None:
        self.context = context
        self.registry = registry or default_registry()

    def run(
        self,
        definition: WorkflowDefinition,
        initial_variables: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunStatus:
        """Start a new run and drive it to a terminal or paused status."""

        state = self.create_state(definition, initial_variables, run_id=run_id)
        return self.execute(state, cancel_event=cancel_event)

    def create_state(
        self,
        definition: WorkflowDefinition,
        initial_variables: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> WorkflowState:
        """Register the definition, check its sub-workflows and persist the initial state."""

        catalog = self.context.catalog
        if definition.name not in catalog or catalog.get(definition.name) is not definition:
            catalog.register(definition)
        catalog.validate_references(definition.name)
        now = self.context.clock()
        variables = dict(definition.variables)
        variables.update(initial_variables or {})
        state = WorkflowState(
            run_id=run_id or new_run_id(now),
            workflow_name=definition.name,
            current_step=-1,
            status=RunStatus.RUNNING,
            variables=variables,
            task_activity=[],
            start_time=now,
            last_update=now,
            next_step=0,
        )
        if self.context.store.load(state.run_id) is not None:
            raise ResumeError(f"Run {state.run_id} already exists")
        self.context.store.save(state)
        logger.info("Started run %s of workflow %s", state.run_id, definition.name)
        return state

    def resume(
        self,
        state: WorkflowState,
        *,
        answer: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunStatus:
        """Continue a saved run from its next step, optionally injecting an escalation answer."""

        self.prepare_resume(state, answer=answer)
        return self.execute(state, cancel_event=cancel_event)

    def prepare_resume(self, state: WorkflowState, *, answer: str | None = None) -> None:
        """Validate the saved state and apply the human answer it is waiting for."""

        if state.status.is_terminal:
            raise ResumeError(f"Run {state.run_id} is {state.status.value} and cannot be resumed")
        definition = self._resolve_definitions(state)
        index = state.resume_step
        if not 0 <= index <= len(definition.steps):
            raise ResumeError(
                f"Run {state.run_id} resumes at step {index}, outside 0..{len(definition.steps)}",
            )
        if state.pending_escalation_id is not None:
            if answer is None:
                raise ResumeError(
                    f"Run {state.run_id} is waiting for escalation {state.pending_escalation_id}",
                )
            self._inject_answer(state, definition, index, answer)
        elif answer is not None:
            raise ResumeError(f"Run {state.run_id} is not waiting for an escalation answer")
        state.status = RunStatus.RUNNING
        state.stop_reason = None
        state.last_update = self.context.clock()
        logger.info("Resuming run %s at step %d of %s", state.run_id, state.resume_step, state.executing_workflow)

    def execute(self, state: WorkflowState, *, cancel_event: threading.Event | None = None) -> RunStatus:
        """Drive a prepared state; the caller's engine is the run's only writer meanwhile."""

        owner = object()
        store = self.context.store
        store.claim(state.run_id, owner)
        try:
            store.save(state, owner=owner)
            return self._loop(state, owner, cancel_event or threading.Event())
        finally:
            store.release(state.run_id, owner)

    def _loop(self, state: WorkflowState, owner: object, cancel_event: threading.Event) -> RunStatus:
        while True:
            if cancel_event.is_set():
                return self._pause(state, owner, reason=STOP_CANCELLED)
            definition = self.context.catalog.get(state.executing_workflow)
            index = state.resume_step
            if index >= len(definition.steps):
                if not state.call_stack:
                    return self._complete(state, owner)
                self._return_from_sub_workflow(state, owner)
                continue

            step = definition.steps[index]
            invocation = StepInvocation(
                context=self.context,
                state=state,
                definition=definition,
                step=step,
                cancel_event=cancel_event,
            )
            logger.debug("Run %s executing %s step %d (%s)", state.run_id, step.kind.value, index, step.name)
            try:
                result = self.registry.get(step.kind)(invocation)
            except Exception as error:  # noqa: BLE001
                state.task_activity.extend(invocation.activity)
                classification = (
                    error.classification if isinstance(error, StepFailure) else classify(error)
                )
                if classification.disposition is not Disposition.RECOVERABLE:
                    return self._fail(state, owner, error)
                logger.warning(
                    "Run %s step %d (%s) failed recoverably: %s",
                    state.run_id,
                    index,
                    step.name,
                    error,
                )
                result = StepResult()
            else:
                state.task_activity.extend(invocation.activity)

            if result.discarded:
                return self._pause(state, owner, reason=STOP_CANCELLED)
            if result.escalation_id is not None:
                state.status = RunStatus.PAUSED
                state.stop_reason = STOP_ESCALATION
                state.pending_escalation_id = result.escalation_id
                state.next_step = index
                self._save(state, owner)
                logger.info(
                    "Run %s paused at step %d on escalation %s",
                    state.run_id,
                    index,
                    result.escalation_id,
                )
                return RunStatus.PAUSED
            if result.invoke is not None:
                try:
                    self._enter_sub_workflow(state, index, result.invoke)
                except (WorkflowCycleError, UnknownWorkflowError) as error:
                    return self._fail(state, owner, error)
                self._save(state, owner)
                continue

            state.variables.update(result.outputs)
            state.current_step = index
            state.next_step = result.next_index if result.next_index is not None else index + 1
            self._save(state, owner)
            if result.checkpoint:
                path = self.context.store.write_checkpoint(state, label=f"{index}-{step.name}")
                logger.info("Run %s checkpoint at step %d written to %s", state.run_id, index, path)

    def _enter_sub_workflow(self, state: WorkflowState, index: int, request: InvokeRequest) -> None:
        on_stack = [frame.workflow_name for frame in state.call_stack]
        on_stack.append(state.executing_workflow)
        if request.workflow in on_stack:
            raise WorkflowCycleError(request.workflow, [*on_stack, request.workflow])
        child = self.context.catalog.get(request.workflow)
        for name, default in child.variables.items():
            state.variables.setdefault(name, default)
        state.variables.update(request.inputs)
        state.call_stack.append(CallFrame(workflow_name=state.executing_workflow, return_step=index + 1))
        state.active_workflow = child.name
        state.current_step = -1
        state.next_step = 0
        logger.info("Run %s entered sub-workflow %s from step %d", state.run_id, child.name, index)

    def _return_from_sub_workflow(self, state: WorkflowState, owner: object) -> None:
        finished = state.executing_workflow
        frame = state.call_stack.pop()
        state.active_workflow = frame.workflow_name if state.call_stack else None
        state.current_step = frame.return_step - 1
        state.next_step = frame.return_step
        self._save(state, owner)
        logger.info("Run %s returned from %s to %s", state.run_id, finished, frame.workflow_name)

    def _inject_answer(
        self,
        state: WorkflowState,
        definition: WorkflowDefinition,
        index: int,
        answer: str,
    ) -> None:
        step = definition.steps[index] if index < len(definition.steps) else None
        if not isinstance(step, DecisionStep):
            raise ResumeError(f"Run {state.run_id} step {index} is not a decision step")
        escalation_id = state.pending_escalation_id
        escalations = self.context.escalations
        decisions = self.context.decisions
        if escalations is not None and decisions is not None and escalation_id is not None:
            escalation = escalations.get(escalation_id)
            if escalation.response is not None:
                decisions.record_human_response(escalation)
        state.variables[step.output] = answer
        state.pending_escalation_id = None
        state.current_step = index
        state.next_step = index + 1
        logger.info("Run %s received answer for escalation %s", state.run_id, escalation_id)

    def _resolve_definitions(self, state: WorkflowState) -> WorkflowDefinition:
        names = [state.workflow_name, *(frame.workflow_name for frame in state.call_stack)]
        names.append(state.executing_workflow)
        try:
            definitions = [self.context.catalog.get(name) for name in names]
        except UnknownWorkflowError as error:
            raise ResumeError(f"Run {state.run_id} refers to an unknown workflow: {error}") from error
        return definitions[-1]

    def _pause(self, state: WorkflowState, owner: object, *, reason: str) -> RunStatus:
        state.status = RunStatus.PAUSED
        state.stop_reason = reason
        self._save(state, owner)
        logger.info("Run %s paused (%s) before step %d", state.run_id, reason, state.resume_step)
        return RunStatus.PAUSED

    def _complete(self, state: WorkflowState, owner: object) -> RunStatus:
        state.status = RunStatus.COMPLETED
        state.stop_reason = None
        self._save(state, owner)
        self.context.store.archive(state.run_id)
        logger.info("Run %s completed", state.run_id)
        return RunStatus.COMPLETED

    def _fail(self, state: WorkflowState, owner: object, error: Exception) -> RunStatus:
        state.status = RunStatus.ERROR
        state.stop_reason = STOP_FAILED
        state.error = f"{type(error).__name__}: {error}"
        self._save(state, owner)
        self.context.store.archive(state.run_id)
        logger.error(
            "Run %s failed at step %d: %s",
            state.run_id,
            state.resume_step,
            state.error,
            exc_info=None if isinstance(error, WorkflowError) else error,
        )
        return RunStatus.ERROR

    def _save(self, state: WorkflowState, owner: object) -> None:
        state.last_update = self.context.clock()
        self.context.store.save(state, owner=owner)


def new_run_id(now: datetime) -> str:
    return f"run-{now:%Y%m%d%H%M%S}-{uuid4().hex[:8]}"
