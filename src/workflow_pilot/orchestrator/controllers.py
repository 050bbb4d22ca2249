"""Controllers for workflow-pilot CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from workflow_pilot.config import Settings
from workflow_pilot.orchestrator.contracts import escalation_to_record
from workflow_pilot.orchestrator.definition import DefinitionCatalog, load_definition
from workflow_pilot.orchestrator.escalation import EscalationQueue
from workflow_pilot.orchestrator.models import (
    EscalationFilter,
    EscalationStatus,
    RunStatus,
    WorkflowState,
    Workspace,
)
from workflow_pilot.orchestrator.repository import OrchestratorRepository
from workflow_pilot.orchestrator.services import Orchestrator, build_context
from workflow_pilot.orchestrator.state_store import StateStore
from workflow_pilot.orchestrator.workspace import GitWorktreeBackend, WorkspaceManager


@dataclass(slots=True)
class ValidateCommand:
    """CLI input for definition validation."""

    path: Path
    catalog_dir: Path | None = None


@dataclass(slots=True)
class RunCommand:
    """CLI input for starting a run and waiting for it to stop."""

    data_dir: Path | None
    path: Path
    variables: tuple[str, ...] = ()
    catalog_dir: Path | None = None
    run_id: str | None = None


@dataclass(slots=True)
class ResumeCommand:
    data_dir: Path | None
    run_id: str
    catalog_dir: Path | None = None


@dataclass(slots=True)
class RunsListCommand:
    data_dir: Path | None
    include_archived: bool = False


@dataclass(slots=True)
class RunsShowCommand:
    data_dir: Path | None
    run_id: str


@dataclass(slots=True)
class EscalationsListCommand:
    """CLI input for escalation listing."""

    data_dir: Path | None
    status: str | None = None
    run_id: str | None = None
    output_format: str = "table"


@dataclass(slots=True)
class EscalationsRespondCommand:
    """CLI input for answering an escalation; the paused run resumes in-process."""

    data_dir: Path | None
    escalation_id: str
    answer: str
    catalog_dir: Path | None = None


@dataclass(slots=True)
class EscalationsMetricsCommand:
    data_dir: Path | None


@dataclass(slots=True)
class WorkspaceCommand:
    """CLI input for workspace operations."""

    data_dir: Path | None
    unit_id: str | None = None
    active_only: bool = False


class WorkflowCliController:
    """Thin adapters from CLI input to orchestrator services; every method returns lines."""

    def validate(self, command: ValidateCommand) -> list[str]:
        definition = load_definition(command.path)
        if command.catalog_dir is not None:
            catalog = DefinitionCatalog()
            catalog.load_directory(command.catalog_dir)
            catalog.register(definition)
            catalog.validate_references(definition.name)
        lines = [f"Workflow valid: {definition.name} ({len(definition.steps)} steps)"]
        for step in definition.steps:
            lines.append(f"  {step.index:>3} {step.kind.value:<16} {step.name}")
        if definition.sub_workflows:
            lines.append(f"Invokes: {', '.join(definition.sub_workflows)}")
        return lines

    def run(self, command: RunCommand) -> list[str]:
        definition = load_definition(command.path)
        variables = parse_variables(command.variables)
        settings = Settings.from_env(data_dir=command.data_dir)
        with _orchestrator(settings, command.catalog_dir) as orchestrator:
            run_id, status = orchestrator.run(definition, variables, run_id=command.run_id)
            return _run_summary(orchestrator.load_state(run_id), status)

    def resume(self, command: ResumeCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        with _orchestrator(settings, command.catalog_dir) as orchestrator:
            orchestrator.resume(command.run_id)
            status = orchestrator.wait(command.run_id)
            return _run_summary(orchestrator.load_state(command.run_id), status)

    def list_runs(self, command: RunsListCommand) -> list[str]:
        store = StateStore(Settings.from_env(data_dir=command.data_dir).state_dir)
        states = [state for run_id in store.list_active() if (state := store.load(run_id))]
        if command.include_archived:
            states.extend(
                state for run_id in store.list_archived() if (state := store.load_archived(run_id))
            )
        lines = [f"Runs: {len(states)}"]
        for state in sorted(states, key=lambda item: item.start_time):
            lines.append(
                f"  {state.run_id} workflow={state.workflow_name} status={state.status.value} "
                f"next_step={state.resume_step} updated={state.last_update.isoformat()}",
            )
        return lines

    def show_run(self, command: RunsShowCommand) -> list[str]:
        store = StateStore(Settings.from_env(data_dir=command.data_dir).state_dir)
        state = store.load(command.run_id) or store.load_archived(command.run_id)
        if state is None:
            return [f"Run not found: {command.run_id}"]
        lines = _run_summary(state, state.status)
        lines.extend(
            [
                f"Workflow: {state.workflow_name}",
                f"Executing: {state.executing_workflow}",
                f"Current step: {state.current_step}",
                f"Started: {state.start_time.isoformat()}",
                f"Updated: {state.last_update.isoformat()}",
                f"Variables: {json.dumps(state.variables, ensure_ascii=False, sort_keys=True, default=str)}",
                f"Task activity: {len(state.task_activity)}",
            ],
        )
        for entry in state.task_activity:
            cost = f"{entry.estimated_cost_usd:.6f}" if entry.estimated_cost_usd is not None else "-"
            lines.append(
                f"  step={entry.step} {entry.step_name} {entry.provider}/{entry.model} "
                f"status={entry.status.value} attempt={entry.attempts} "
                f"duration_ms={entry.duration_ms} cost_usd={cost}",
            )
        return lines

    def list_escalations(self, command: EscalationsListCommand) -> list[str]:
        query = EscalationFilter(
            status=EscalationStatus(command.status) if command.status else None,
            run_id=command.run_id,
        )
        with _escalation_queue(Settings.from_env(data_dir=command.data_dir)) as queue:
            escalations = queue.list(query)
        if command.output_format == "json":
            payload = [escalation_to_record(item) for item in escalations]
            return [json.dumps(payload, ensure_ascii=False, indent=2)]
        lines = [f"Escalations: {len(escalations)}"]
        for item in escalations:
            lines.append(
                f"  {item.id} run={item.run_id} step={item.step} status={item.status.value} "
                f"confidence={item.ai_confidence:.2f} question={item.question}",
            )
        return lines

    def respond(self, command: EscalationsRespondCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        with _orchestrator(settings, command.catalog_dir) as orchestrator:
            escalation = orchestrator.respond(command.escalation_id, command.answer)
            status = orchestrator.wait(escalation.run_id)
            lines = [f"Escalation {escalation.id}: {escalation.status.value}"]
            lines.extend(_run_summary(orchestrator.load_state(escalation.run_id), status))
            return lines

    def escalation_metrics(self, command: EscalationsMetricsCommand) -> list[str]:
        with _escalation_queue(Settings.from_env(data_dir=command.data_dir)) as queue:
            metrics = queue.metrics()
        average = (
            f"{metrics.average_resolution_seconds:.1f}s"
            if metrics.average_resolution_seconds is not None
            else "-"
        )
        lines = [
            f"Escalations: {metrics.total}",
            f"Pending: {metrics.pending}",
            f"Responded: {metrics.responded}",
            f"Resolved: {metrics.resolved}",
            f"Average time to response: {average}",
        ]
        for workflow_name, count in metrics.by_workflow.items():
            lines.append(f"  {workflow_name}: {count}")
        return lines

    def list_workspaces(self, command: WorkspaceCommand) -> list[str]:
        workspaces = _workspace_manager(Settings.from_env(data_dir=command.data_dir)).list(
            active_only=command.active_only,
        )
        return [f"Workspaces: {len(workspaces)}", *(_workspace_line(item) for item in workspaces)]

    def create_workspace(self, command: WorkspaceCommand) -> list[str]:
        manager = _workspace_manager(Settings.from_env(data_dir=command.data_dir))
        return [f"Created {_workspace_line(manager.create(_require_unit(command)))}"]

    def destroy_workspace(self, command: WorkspaceCommand) -> list[str]:
        manager = _workspace_manager(Settings.from_env(data_dir=command.data_dir))
        unit_id = _require_unit(command)
        workspace = manager.destroy(unit_id)
        if workspace is None:
            return [f"No workspace for {unit_id}"]
        return [f"Destroyed {_workspace_line(workspace)}"]

    def push_workspace(self, command: WorkspaceCommand) -> list[str]:
        manager = _workspace_manager(Settings.from_env(data_dir=command.data_dir))
        return [f"Pushed {_workspace_line(manager.push(_require_unit(command)))}"]


def parse_variables(raw: tuple[str, ...]) -> dict[str, Any]:
    """Parse repeated `key=value` options; JSON values are decoded when possible."""

    variables: dict[str, Any] = {}
    for item in raw:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid variable {item!r}; expected key=value")
        try:
            variables[key.strip()] = json.loads(value)
        except json.JSONDecodeError:
            variables[key.strip()] = value
    return variables


def _run_summary(state: WorkflowState, status: RunStatus) -> list[str]:
    lines = [f"Run: {state.run_id}", f"Status: {status.value}"]
    if state.stop_reason:
        lines.append(f"Stop reason: {state.stop_reason}")
    if state.pending_escalation_id:
        lines.append(f"Pending escalation: {state.pending_escalation_id}")
    if state.error:
        lines.append(f"Error: {state.error}")
    return lines


def _workspace_line(workspace: Workspace) -> str:
    return (
        f"  {workspace.unit_id} status={workspace.status.value} "
        f"branch={workspace.branch} path={workspace.path}"
    )


def _require_unit(command: WorkspaceCommand) -> str:
    if not command.unit_id:
        raise ValueError("A unit id is required.")
    return command.unit_id


def _workspace_manager(settings: Settings) -> WorkspaceManager:
    workspace = settings.workspace
    return WorkspaceManager(
        GitWorktreeBackend(workspace.repo_path),
        root=workspace.root,
        base_ref=workspace.base_ref,
        branch_prefix=workspace.branch_prefix,
        remote=workspace.remote,
    )


@contextmanager
def _escalation_queue(settings: Settings) -> Iterator[EscalationQueue]:
    repository = OrchestratorRepository(settings.db_path)
    repository.init_schema()
    try:
        yield EscalationQueue(repository)
    finally:
        repository.close()


@contextmanager
def _orchestrator(settings: Settings, catalog_dir: Path | None) -> Iterator[Orchestrator]:
    context = build_context(settings)
    if catalog_dir is not None:
        context.catalog.load_directory(catalog_dir)
    orchestrator = Orchestrator(context)
    try:
        yield orchestrator
    finally:
        orchestrator.close()
