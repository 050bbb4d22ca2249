"""Step handlers keyed by step type.

A handler gets one `StepInvocation` and returns a `StepResult` describing what the
engine should apply to the run state. Handlers never persist state themselves.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from workflow_pilot.orchestrator.decision import DecisionContext
from workflow_pilot.orchestrator.definition import (
    ActionStep,
    CheckpointStep,
    ConditionalStep,
    DecisionStep,
    GotoStep,
    InvokeWorkflowStep,
    Step,
    WorkflowDefinition,
    WorkspaceStep,
)
from workflow_pilot.orchestrator.errors import StepFailure, WorkflowError
from workflow_pilot.orchestrator.expressions import render_template
from workflow_pilot.orchestrator.models import (
    ActivityStatus,
    EscalationFilter,
    EscalationStatus,
    StepType,
    Task,
    TaskActivity,
    TaskSpec,
    Workspace,
    WorkflowState,
)
from workflow_pilot.orchestrator.retry import call_with_retry
from workflow_pilot.orchestrator.sanitization import sanitize_preview

if TYPE_CHECKING:
    from workflow_pilot.orchestrator.engine import EngineContext

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepInvocation:
    """Everything a handler may read while executing one step."""

    context: EngineContext
    state: WorkflowState
    definition: WorkflowDefinition
    step: Step
    cancel_event: threading.Event
    activity: list[TaskActivity] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def render(self, template: str) -> str:
        return render_template(template, self.state.variables)


@dataclass(slots=True)
class InvokeRequest:
    workflow: str
    inputs: dict[str, str]


@dataclass(slots=True)
class StepResult:
    """Effect of one step on the run."""

    next_index: int | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    escalation_id: str | None = None
    invoke: InvokeRequest | None = None
    checkpoint: bool = False
    discarded: bool = False


StepHandler = Callable[[StepInvocation], StepResult]


class StepRegistry:
    """Closed set of step handlers; new step types extend the registry."""

    def __init__(self, handlers: Mapping[StepType, StepHandler] | None = None) -> None:
        self._handlers: dict[StepType, StepHandler] = dict(handlers or {})

    def register(self, kind: StepType, handler: StepHandler) -> None:
        self._handlers[kind] = handler

    def get(self, kind: StepType) -> StepHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise WorkflowError(f"No handler registered for step type {kind.value!r}")
        return handler


def run_action(invocation: StepInvocation) -> StepResult:
    """Invoke a fresh task per attempt; results arriving after cancellation are discarded."""

    step = invocation.step
    if not isinstance(step, ActionStep):
        raise TypeError(f"Expected action step, got {type(step).__name__}")
    context = invocation.context
    state = invocation.state
    prompt = invocation.render(step.prompt)
    system = invocation.render(step.system) if step.system else None
    cwd = _workspace_path(invocation, step.workspace) if step.workspace else None
    provider = step.provider or context.default_provider
    model = step.model or context.default_model
    spec = TaskSpec(
        provider=provider,
        model=model,
        grouping={
            "run": state.run_id,
            "workflow": invocation.definition.name,
            "provider": provider,
        },
        timeout_seconds=step.timeout_seconds or context.default_timeout_seconds,
    )

    def attempt(number: int) -> str:
        task = context.pool.acquire(spec)
        started_at = context.clock()
        started = time.monotonic()
        try:
            result = context.pool.invoke(
                task,
                prompt,
                timeout_seconds=spec.timeout_seconds,
                system=system,
                cwd=cwd,
            )
        except Exception as error:
            invocation.activity.append(
                _activity(invocation, task, started_at, started, ActivityStatus.FAILED, number, error=error),
            )
            raise
        finally:
            context.pool.release(task)
        invocation.activity.append(
            _activity(
                invocation,
                task,
                started_at,
                started,
                ActivityStatus.COMPLETED,
                number,
                output=result.text,
            ),
        )
        return result.text

    try:
        text = call_with_retry(
            attempt,
            policy=context.retry_policy,
            sleep=context.sleep,
            should_stop=invocation.cancel_event.is_set,
            description=f"{invocation.definition.name} step {step.index} ({step.name})",
        )
    except StepFailure:
        if invocation.cancelled:
            return StepResult(discarded=True)
        raise
    if invocation.cancelled:
        if invocation.activity:
            invocation.activity[-1].status = ActivityStatus.DISCARDED
        logger.info("Run %s cancelled; discarded result of step %d", state.run_id, step.index)
        return StepResult(discarded=True)
    return StepResult(outputs={step.output: text} if step.output else {})


def run_conditional(invocation: StepInvocation) -> StepResult:
    step = invocation.step
    if not isinstance(step, ConditionalStep):
        raise TypeError(f"Expected conditional step, got {type(step).__name__}")
    matched = step.condition.evaluate(invocation.state.variables)
    logger.debug("Condition %r at step %d evaluated to %s", step.condition.source, step.index, matched)
    return StepResult(next_index=step.then_step if matched else step.else_step)


def run_goto(invocation: StepInvocation) -> StepResult:
    step = invocation.step
    if not isinstance(step, GotoStep):
        raise TypeError(f"Expected goto step, got {type(step).__name__}")
    return StepResult(next_index=step.target)


def run_invoke_workflow(invocation: StepInvocation) -> StepResult:
    step = invocation.step
    if not isinstance(step, InvokeWorkflowStep):
        raise TypeError(f"Expected invoke-workflow step, got {type(step).__name__}")
    inputs = {name: invocation.render(template) for name, template in step.inputs.items()}
    return StepResult(invoke=InvokeRequest(workflow=step.workflow, inputs=inputs))


def run_checkpoint(invocation: StepInvocation) -> StepResult:
    if not isinstance(invocation.step, CheckpointStep):
        raise TypeError(f"Expected checkpoint step, got {type(invocation.step).__name__}")
    return StepResult(checkpoint=True)


def run_decision(invocation: StepInvocation) -> StepResult:
    """Ask the decision engine; a pending escalation parks the run."""

    step = invocation.step
    if not isinstance(step, DecisionStep):
        raise TypeError(f"Expected decision step, got {type(step).__name__}")
    context = invocation.context
    engine = context.decisions
    if engine is None:
        raise WorkflowError(f"Step {step.index} needs a decision engine but none is configured")
    orphaned = _pending_escalation(invocation)
    if orphaned is not None:
        logger.info(
            "Run %s step %d already has pending escalation %s; not asking again",
            invocation.state.run_id,
            step.index,
            orphaned,
        )
        return StepResult(escalation_id=orphaned)
    question = invocation.render(step.question)
    decision_context = DecisionContext(
        run_id=invocation.state.run_id,
        workflow_name=invocation.definition.name,
        step=step.index,
        text=invocation.render(step.context) if step.context else "",
        state=invocation.state,
    )
    try:
        outcome = call_with_retry(
            lambda _: engine.decide(question, decision_context),
            policy=context.retry_policy,
            sleep=context.sleep,
            should_stop=invocation.cancel_event.is_set,
            description=f"{invocation.definition.name} decision {step.index} ({step.name})",
        )
    except StepFailure:
        if invocation.cancelled:
            return StepResult(discarded=True)
        raise
    if outcome.pending:
        return StepResult(escalation_id=outcome.escalation_id)
    return StepResult(outputs={step.output: outcome.decision.answer})


def _pending_escalation(invocation: StepInvocation) -> str | None:
    """Escalation raised at this step whose paused snapshot never got saved."""

    queue = invocation.context.escalations
    if queue is None:
        return None
    pending = queue.list(
        EscalationFilter(
            status=EscalationStatus.PENDING,
            run_id=invocation.state.run_id,
            workflow_name=invocation.definition.name,
        ),
    )
    matches = [escalation for escalation in pending if escalation.step == invocation.step.index]
    return matches[0].id if matches else None


def run_workspace(invocation: StepInvocation) -> StepResult:
    step = invocation.step
    if not isinstance(step, WorkspaceStep):
        raise TypeError(f"Expected workspace step, got {type(step).__name__}")
    manager = invocation.context.workspaces
    if manager is None:
        raise WorkflowError(f"Step {step.index} needs a workspace manager but none is configured")
    unit_id = invocation.render(step.unit)
    workspace: Workspace | None
    if step.operation == "create":
        workspace = manager.create(unit_id)
    elif step.operation == "push":
        workspace = manager.push(unit_id)
    elif step.operation == "finalize":
        workspace = manager.finalize(unit_id)
    else:
        workspace = manager.destroy(unit_id)
    if not step.output or workspace is None:
        return StepResult()
    return StepResult(
        outputs={
            step.output: {
                "unit_id": workspace.unit_id,
                "path": workspace.path,
                "branch": workspace.branch,
                "status": workspace.status.value,
            },
        },
    )


def default_registry() -> StepRegistry:
    return StepRegistry(
        {
            StepType.ACTION: run_action,
            StepType.CONDITIONAL: run_conditional,
            StepType.GOTO: run_goto,
            StepType.INVOKE_WORKFLOW: run_invoke_workflow,
            StepType.CHECKPOINT: run_checkpoint,
            StepType.DECISION: run_decision,
            StepType.WORKSPACE: run_workspace,
        },
    )


def _workspace_path(invocation: StepInvocation, unit_template: str) -> Path:
    manager = invocation.context.workspaces
    if manager is None:
        raise WorkflowError("Action step names a workspace but no workspace manager is configured")
    return Path(manager.active(invocation.render(unit_template), operation="action").path)


def _activity(  # noqa: PLR0913
    invocation: StepInvocation,
    task: Task,
    started_at: datetime,
    started: float,
    status: ActivityStatus,
    attempt: int,
    *,
    output: str = "",
    error: BaseException | None = None,
) -> TaskActivity:
    return TaskActivity(
        task_id=task.task_id,
        step=invocation.step.index,
        step_name=invocation.step.name,
        workflow_name=invocation.definition.name,
        provider=task.provider,
        model=task.model,
        started_at=started_at,
        duration_ms=int((time.monotonic() - started) * 1000),
        status=status,
        attempts=attempt,
        output_preview=sanitize_preview(output),
        error=sanitize_preview(f"{type(error).__name__}: {error}") if error is not None else None,
        estimated_cost_usd=task.usage.estimated_cost_usd if not task.usage.unknown_usage else None,
    )
