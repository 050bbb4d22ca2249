"""Errors raised while loading and running workflows."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from workflow_pilot.orchestrator.failure_classifier import ErrorClassification


class WorkflowError(Exception):
    """Base error for workflow definition and run failures."""


class WorkflowParseError(WorkflowError, ValueError):
    """Invalid workflow definition; never retried."""

    def __init__(self, message: str, *, field: str | None = None, source: str | None = None) -> None:
        location = f" ({source})" if source else ""
        prefix = f"{field}: " if field else ""
        super().__init__(f"{prefix}{message}{location}")
        self.field = field
        self.source = source


class UnknownWorkflowError(WorkflowError, LookupError):
    """Workflow name not present in the catalog."""

    def __init__(self, name: str, known: list[str]) -> None:
        super().__init__(
            f"Unknown workflow {name!r}. Known workflows: {', '.join(known) or '-'}",
        )
        self.name = name


class WorkflowCycleError(WorkflowError):
    """Sub-workflow invocation would re-enter a workflow already on the call stack."""

    def __init__(self, name: str, stack: list[str]) -> None:
        super().__init__(
            f"Workflow {name!r} is already on the call stack: {' -> '.join(stack)}",
        )
        self.name = name
        self.stack = stack


class ResumeError(WorkflowError):
    """Saved state cannot be resumed."""


class TemplateError(WorkflowError):
    """Template could not be rendered against the variable bindings."""


class UndefinedVariableError(TemplateError, LookupError):
    """Template or expression references an unbound variable."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Undefined variable: {name}")
        self.name = name


class StepFailure(WorkflowError):
    """Step work failed and will not be retried further."""

    def __init__(
        self,
        error: BaseException,
        *,
        classification: ErrorClassification,
        attempts: int,
    ) -> None:
        super().__init__(
            f"{type(error).__name__}: {error} "
            f"({classification.disposition.value} after {attempts} attempt(s))",
        )
        self.error = error
        self.classification = classification
        self.attempts = attempts
