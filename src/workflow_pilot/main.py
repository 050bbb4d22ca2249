"""CLI entrypoint for workflow-pilot."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from workflow_pilot import __version__
from workflow_pilot.config import Settings
from workflow_pilot.orchestrator.backend.base import ProviderError
from workflow_pilot.orchestrator.controllers import (
    EscalationsListCommand,
    EscalationsMetricsCommand,
    EscalationsRespondCommand,
    ResumeCommand,
    RunCommand,
    RunsListCommand,
    RunsShowCommand,
    ValidateCommand,
    WorkflowCliController,
    WorkspaceCommand,
)
from workflow_pilot.orchestrator.errors import WorkflowError
from workflow_pilot.orchestrator.escalation import EscalationError
from workflow_pilot.orchestrator.models import EscalationStatus
from workflow_pilot.orchestrator.state_store import StateCorruptionError, StateOwnershipError
from workflow_pilot.orchestrator.workspace import WorkspaceError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkflowCliController()

_DOMAIN_ERRORS = (
    WorkflowError,
    ProviderError,
    EscalationError,
    WorkspaceError,
    StateCorruptionError,
    StateOwnershipError,
    ValueError,
)

F = TypeVar("F", bound=Callable[..., Any])


def _domain_errors(func: F) -> F:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except _DOMAIN_ERRORS as error:
            raise click.ClickException(str(error)) from error

    return wrapper  # type: ignore[return-value]


def _data_dir_option(func: F) -> F:
    return click.option(
        "--data-dir",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="State, database and worktree root. Defaults to WORKFLOW_PILOT_DATA_DIR.",
    )(func)


def _catalog_option(func: F) -> F:
    return click.option(
        "--catalog",
        "catalog_dir",
        type=click.Path(path_type=Path, exists=True, file_okay=False),
        default=None,
        help="Directory with workflow definitions that can be invoked as sub-workflows.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="workflow-pilot")
@click.option(
    "--log-level",
    type=click.Choice(["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to WORKFLOW_PILOT_LOG_LEVEL or WARNING.",
)
def workflow_pilot(log_level: str | None) -> None:
    """Crash-safe orchestrator for LLM-backed multi-step workflows.

    Runs persist after every step, pause on low-confidence decisions and resume
    once a human answers the escalation.
    """

    level = (log_level or Settings.from_env().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@workflow_pilot.command("validate")
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@_catalog_option
@_domain_errors
def validate(path: Path, catalog_dir: Path | None) -> None:
    """Parse a workflow definition and check its references."""

    _emit_lines(CONTROLLER.validate(ValidateCommand(path=path, catalog_dir=catalog_dir)))


@workflow_pilot.command("run")
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--var",
    "variables",
    multiple=True,
    help="Initial variable as key=value. JSON values are decoded. Can be repeated.",
)
@click.option("--run-id", default=None, help="Explicit run id instead of a generated one.")
@_catalog_option
@_data_dir_option
@_domain_errors
def run(
    path: Path,
    variables: tuple[str, ...],
    run_id: str | None,
    catalog_dir: Path | None,
    data_dir: Path | None,
) -> None:
    """Start a workflow run and wait until it completes, fails or pauses."""

    _emit_lines(
        CONTROLLER.run(
            RunCommand(
                data_dir=data_dir,
                path=path,
                variables=variables,
                catalog_dir=catalog_dir,
                run_id=run_id,
            ),
        ),
    )


@workflow_pilot.command("resume")
@click.argument("run_id")
@_catalog_option
@_data_dir_option
@_domain_errors
def resume(run_id: str, catalog_dir: Path | None, data_dir: Path | None) -> None:
    """Resume a paused or interrupted run from its next step."""

    _emit_lines(
        CONTROLLER.resume(ResumeCommand(data_dir=data_dir, run_id=run_id, catalog_dir=catalog_dir)),
    )


@workflow_pilot.group()
def runs() -> None:
    """Inspect saved runs."""


@runs.command("list")
@click.option("--all", "include_archived", is_flag=True, help="Include completed and failed runs.")
@_data_dir_option
@_domain_errors
def runs_list(include_archived: bool, data_dir: Path | None) -> None:
    """List active runs."""

    _emit_lines(
        CONTROLLER.list_runs(RunsListCommand(data_dir=data_dir, include_archived=include_archived)),
    )


@runs.command("show")
@click.argument("run_id")
@_data_dir_option
@_domain_errors
def runs_show(run_id: str, data_dir: Path | None) -> None:
    """Show state and task activity of one run."""

    _emit_lines(CONTROLLER.show_run(RunsShowCommand(data_dir=data_dir, run_id=run_id)))


@workflow_pilot.group()
def escalations() -> None:
    """Human escalation queue."""


@escalations.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in EscalationStatus]),
    default=None,
    help="Only escalations in this status.",
)
@click.option("--run-id", default=None, help="Only escalations raised by this run.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
@_data_dir_option
@_domain_errors
def escalations_list(
    status: str | None,
    run_id: str | None,
    output_format: str,
    data_dir: Path | None,
) -> None:
    """List escalations, oldest first."""

    _emit_lines(
        CONTROLLER.list_escalations(
            EscalationsListCommand(
                data_dir=data_dir,
                status=status,
                run_id=run_id,
                output_format=output_format,
            ),
        ),
    )


@escalations.command("respond")
@click.argument("escalation_id")
@click.argument("answer")
@_catalog_option
@_data_dir_option
@_domain_errors
def escalations_respond(
    escalation_id: str,
    answer: str,
    catalog_dir: Path | None,
    data_dir: Path | None,
) -> None:
    """Answer a pending escalation and resume its run."""

    _emit_lines(
        CONTROLLER.respond(
            EscalationsRespondCommand(
                data_dir=data_dir,
                escalation_id=escalation_id,
                answer=answer,
                catalog_dir=catalog_dir,
            ),
        ),
    )


@escalations.command("metrics")
@_data_dir_option
@_domain_errors
def escalations_metrics(data_dir: Path | None) -> None:
    """Show escalation counts and average time to response."""

    _emit_lines(CONTROLLER.escalation_metrics(EscalationsMetricsCommand(data_dir=data_dir)))


@workflow_pilot.group()
def workspaces() -> None:
    """Isolated working copies per unit of work."""


@workspaces.command("list")
@click.option("--active", "active_only", is_flag=True, help="Only active workspaces.")
@_data_dir_option
@_domain_errors
def workspaces_list(active_only: bool, data_dir: Path | None) -> None:
    """List registered workspaces."""

    _emit_lines(
        CONTROLLER.list_workspaces(WorkspaceCommand(data_dir=data_dir, active_only=active_only)),
    )


@workspaces.command("create")
@click.argument("unit_id")
@_data_dir_option
@_domain_errors
def workspaces_create(unit_id: str, data_dir: Path | None) -> None:
    """Create a working copy on a fresh branch for UNIT_ID."""

    _emit_lines(CONTROLLER.create_workspace(WorkspaceCommand(data_dir=data_dir, unit_id=unit_id)))


@workspaces.command("destroy")
@click.argument("unit_id")
@_data_dir_option
@_domain_errors
def workspaces_destroy(unit_id: str, data_dir: Path | None) -> None:
    """Remove the working copy of UNIT_ID."""

    _emit_lines(CONTROLLER.destroy_workspace(WorkspaceCommand(data_dir=data_dir, unit_id=unit_id)))


@workspaces.command("push")
@click.argument("unit_id")
@_data_dir_option
@_domain_errors
def workspaces_push(unit_id: str, data_dir: Path | None) -> None:
    """Push the branch of UNIT_ID to the configured remote."""

    _emit_lines(CONTROLLER.push_workspace(WorkspaceCommand(data_dir=data_dir, unit_id=unit_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    workflow_pilot()
