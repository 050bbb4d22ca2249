"""Workflow definitions: parsing, parse-time validation and the catalog.

A definition document (YAML or JSON) looks like::

    name: story-flow
    variables:
      story_id: "7"
      plan: null
    steps:
      - type: action
        name: draft
        prompt: "Draft a plan for story {{story_id}}"
        output: plan
      - type: conditional
        if: "empty(plan)"
        then: draft
      - type: checkpoint

Jump targets (`then`, `else`, `to`) accept a step index or a step name.
Every variable a template or condition reads must be declared in `variables`
or bound by an earlier-or-later step output; references with a `|fallback`
are exempt.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

import yaml

from workflow_pilot.orchestrator.errors import UnknownWorkflowError, WorkflowParseError
from workflow_pilot.orchestrator.expressions import Condition, ExpressionError, template_references
from workflow_pilot.orchestrator.models import StepType

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")
WORKSPACE_OPERATIONS = ("create", "destroy", "push", "finalize")


@dataclass(slots=True, frozen=True)
class ActionStep:
    """Invoke an executor with a rendered prompt."""

    kind: ClassVar[StepType] = StepType.ACTION

    index: int
    name: str
    prompt: str
    output: str | None = None
    provider: str | None = None
    model: str | None = None
    system: str | None = None
    timeout_seconds: float | None = None
    workspace: str | None = None


@dataclass(slots=True, frozen=True)
class ConditionalStep:
    """Branch on a boolean condition; a missing target falls through to the next step."""

    kind: ClassVar[StepType] = StepType.CONDITIONAL

    index: int
    name: str
    condition: Condition
    then_step: int | None = None
    else_step: int | None = None


@dataclass(slots=True, frozen=True)
class GotoStep:
    kind: ClassVar[StepType] = StepType.GOTO

    index: int
    name: str
    target: int


@dataclass(slots=True, frozen=True)
class InvokeWorkflowStep:
    """Push another definition onto the call stack, binding rendered inputs first."""

    kind: ClassVar[StepType] = StepType.INVOKE_WORKFLOW

    index: int
    name: str
    workflow: str
    inputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CheckpointStep:
    kind: ClassVar[StepType] = StepType.CHECKPOINT

    index: int
    name: str


@dataclass(slots=True, frozen=True)
class DecisionStep:
    """Ask the decision engine; low confidence parks the run on an escalation."""

    kind: ClassVar[StepType] = StepType.DECISION

    index: int
    name: str
    question: str
    output: str
    context: str = ""


@dataclass(slots=True, frozen=True)
class WorkspaceStep:
    """Create, push, finalize or destroy an isolated working copy."""

    kind: ClassVar[StepType] = StepType.WORKSPACE

    index: int
    name: str
    operation: str
    unit: str
    output: str | None = None


Step = (
    ActionStep
    | ConditionalStep
    | GotoStep
    | InvokeWorkflowStep
    | CheckpointStep
    | DecisionStep
    | WorkspaceStep
)


@dataclass(slots=True, frozen=True)
class WorkflowDefinition:
    """Immutable workflow program loaded once per run."""

    name: str
    steps: tuple[Step, ...]
    variables: Mapping[str, Any]
    description: str = ""
    source: str | None = None

    @property
    def sub_workflows(self) -> tuple[str, ...]:
        """Names of definitions this program may invoke."""

        names: list[str] = []
        for step in self.steps:
            if isinstance(step, InvokeWorkflowStep) and step.workflow not in names:
                names.append(step.workflow)
        return tuple(names)


@dataclass(slots=True)
class _StepContext:
    raw: Mapping[str, Any]
    index: int
    name: str
    field_prefix: str
    source: str | None
    step_names: Mapping[str, int]
    step_count: int

    def require_str(self, key: str, *aliases: str) -> str:
        value = self.optional_str(key, *aliases)
        if value is None or not value.strip():
            raise WorkflowParseError(
                "must be a non-empty string",
                field=f"{self.field_prefix}.{key}",
                source=self.source,
            )
        return value

    def optional_str(self, key: str, *aliases: str) -> str | None:
        for candidate in (key, *aliases):
            if candidate in self.raw:
                value = self.raw[candidate]
                if value is None:
                    return None
                if not isinstance(value, str):
                    raise WorkflowParseError(
                        "must be a string",
                        field=f"{self.field_prefix}.{candidate}",
                        source=self.source,
                    )
                return value
        return None

    def target(self, key: str, *aliases: str) -> int | None:
        for candidate in (key, *aliases):
            if candidate not in self.raw or self.raw[candidate] is None:
                continue
            value = self.raw[candidate]
            field_name = f"{self.field_prefix}.{candidate}"
            if isinstance(value, bool):
                raise WorkflowParseError("must be a step index or name", field=field_name, source=self.source)
            if isinstance(value, int):
                index = value
            elif isinstance(value, str) and value in self.step_names:
                index = self.step_names[value]
            else:
                raise WorkflowParseError(
                    f"unknown jump target {value!r}",
                    field=field_name,
                    source=self.source,
                )
            if not 0 <= index < self.step_count:
                raise WorkflowParseError(
                    f"jump target {index} is outside 0..{self.step_count - 1}",
                    field=field_name,
                    source=self.source,
                )
            return index
        return None


StepParser = Callable[[_StepContext], Step]


def _parse_action(ctx: _StepContext) -> ActionStep:
    timeout = ctx.raw.get("timeout_seconds", ctx.raw.get("timeout"))
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0
    ):
        raise WorkflowParseError(
            "must be a positive number",
            field=f"{ctx.field_prefix}.timeout_seconds",
            source=ctx.source,
        )
    return ActionStep(
        index=ctx.index,
        name=ctx.name,
        prompt=ctx.require_str("prompt"),
        output=ctx.optional_str("output"),
        provider=ctx.optional_str("provider"),
        model=ctx.optional_str("model"),
        system=ctx.optional_str("system"),
        timeout_seconds=float(timeout) if timeout is not None else None,
        workspace=ctx.optional_str("workspace"),
    )


def _parse_conditional(ctx: _StepContext) -> ConditionalStep:
    source = ctx.require_str("if", "condition")
    try:
        condition = Condition(source)
    except ExpressionError as error:
        raise WorkflowParseError(str(error), field=f"{ctx.field_prefix}.if", source=ctx.source) from error
    return ConditionalStep(
        index=ctx.index,
        name=ctx.name,
        condition=condition,
        then_step=ctx.target("then"),
        else_step=ctx.target("else"),
    )


def _parse_goto(ctx: _StepContext) -> GotoStep:
    target = ctx.target("to", "target")
    if target is None:
        raise WorkflowParseError("jump target is required", field=f"{ctx.field_prefix}.to", source=ctx.source)
    return GotoStep(index=ctx.index, name=ctx.name, target=target)


def _parse_invoke(ctx: _StepContext) -> InvokeWorkflowStep:
    inputs = ctx.raw.get("with", ctx.raw.get("inputs", {})) or {}
    if not isinstance(inputs, Mapping) or not all(
        isinstance(key, str) and isinstance(value, str | int | float | bool)
        for key, value in inputs.items()
    ):
        raise WorkflowParseError(
            "must map variable names to scalar templates",
            field=f"{ctx.field_prefix}.with",
            source=ctx.source,
        )
    return InvokeWorkflowStep(
        index=ctx.index,
        name=ctx.name,
        workflow=ctx.require_str("workflow"),
        inputs={key: str(value) for key, value in inputs.items()},
    )


def _parse_checkpoint(ctx: _StepContext) -> CheckpointStep:
    return CheckpointStep(index=ctx.index, name=ctx.name)


def _parse_decision(ctx: _StepContext) -> DecisionStep:
    return DecisionStep(
        index=ctx.index,
        name=ctx.name,
        question=ctx.require_str("question"),
        output=ctx.require_str("output"),
        context=ctx.optional_str("context") or "",
    )


def _parse_workspace(ctx: _StepContext) -> WorkspaceStep:
    operation = ctx.require_str("operation").strip().lower()
    if operation not in WORKSPACE_OPERATIONS:
        raise WorkflowParseError(
            f"must be one of {', '.join(WORKSPACE_OPERATIONS)}",
            field=f"{ctx.field_prefix}.operation",
            source=ctx.source,
        )
    return WorkspaceStep(
        index=ctx.index,
        name=ctx.name,
        operation=operation,
        unit=ctx.require_str("unit"),
        output=ctx.optional_str("output"),
    )


STEP_PARSERS: dict[str, StepParser] = {
    StepType.ACTION.value: _parse_action,
    StepType.CONDITIONAL.value: _parse_conditional,
    StepType.GOTO.value: _parse_goto,
    StepType.INVOKE_WORKFLOW.value: _parse_invoke,
    StepType.CHECKPOINT.value: _parse_checkpoint,
    StepType.DECISION.value: _parse_decision,
    StepType.WORKSPACE.value: _parse_workspace,
}


def load_definition(path: Path) -> WorkflowDefinition:
    """Read a YAML or JSON workflow document from disk."""

    source = str(path)
    try:
        text = path.read_text("utf-8")
    except OSError as error:
        raise WorkflowParseError(f"cannot read file: {error}", source=source) from error
    try:
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as error:
        raise WorkflowParseError(f"invalid document: {error}", source=source) from error
    if not isinstance(raw, Mapping):
        raise WorkflowParseError("top level must be a mapping", source=source)
    return parse_definition(raw, source=source)


def parse_definition(raw: Mapping[str, Any], *, source: str | None = None) -> WorkflowDefinition:
    """Build a definition and reject anything that would fail at run time."""

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkflowParseError("must be a non-empty string", field="name", source=source)
    description = raw.get("description") or ""
    if not isinstance(description, str):
        raise WorkflowParseError("must be a string", field="description", source=source)

    variables = raw.get("variables") or {}
    if not isinstance(variables, Mapping) or not all(isinstance(key, str) for key in variables):
        raise WorkflowParseError("must map names to default values", field="variables", source=source)

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise WorkflowParseError("must be a non-empty list", field="steps", source=source)

    step_names = _collect_step_names(raw_steps, source=source)
    steps: list[Step] = []
    for index, raw_step in enumerate(raw_steps):
        field_prefix = f"steps[{index}]"
        tag = raw_step.get("type")
        parser = STEP_PARSERS.get(tag) if isinstance(tag, str) else None
        if parser is None:
            raise WorkflowParseError(
                f"unknown step type {tag!r}; expected one of {', '.join(STEP_PARSERS)}",
                field=f"{field_prefix}.type",
                source=source,
            )
        steps.append(
            parser(
                _StepContext(
                    raw=raw_step,
                    index=index,
                    name=str(raw_step.get("name") or f"{tag}-{index}"),
                    field_prefix=field_prefix,
                    source=source,
                    step_names=step_names,
                    step_count=len(raw_steps),
                ),
            ),
        )

    definition = WorkflowDefinition(
        name=name.strip(),
        steps=tuple(steps),
        variables=dict(variables),
        description=description,
        source=source,
    )
    _check_variable_references(definition)
    return definition


def bound_names(definition: WorkflowDefinition) -> set[str]:
    """Variables a run of this definition can ever have bound."""

    names = set(definition.variables)
    for step in definition.steps:
        if isinstance(step, ActionStep | DecisionStep | WorkspaceStep) and step.output:
            names.add(step.output)
        if isinstance(step, InvokeWorkflowStep):
            names.update(step.inputs)
    return names


def _collect_step_names(raw_steps: list[Any], *, source: str | None) -> dict[str, int]:
    names: dict[str, int] = {}
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, Mapping):
            raise WorkflowParseError("must be a mapping", field=f"steps[{index}]", source=source)
        step_name = raw_step.get("name")
        if step_name is None:
            continue
        if not isinstance(step_name, str) or not step_name.strip():
            raise WorkflowParseError("must be a non-empty string", field=f"steps[{index}].name", source=source)
        if step_name in names:
            raise WorkflowParseError(
                f"duplicate step name {step_name!r}",
                field=f"steps[{index}].name",
                source=source,
            )
        names[step_name] = index
    return names


def _check_variable_references(definition: WorkflowDefinition) -> None:
    known = bound_names(definition)
    for step in definition.steps:
        for field_name, template in _step_templates(step):
            for reference in template_references(template):
                if reference.default is None and reference.root not in known:
                    raise WorkflowParseError(
                        f"undefined variable {reference.root!r}",
                        field=f"steps[{step.index}].{field_name}",
                        source=definition.source,
                    )
        if isinstance(step, ConditionalStep):
            missing = sorted(step.condition.names - known)
            if missing:
                raise WorkflowParseError(
                    f"undefined variable(s) in condition: {', '.join(missing)}",
                    field=f"steps[{step.index}].if",
                    source=definition.source,
                )


def _step_templates(step: Step) -> list[tuple[str, str]]:
    if isinstance(step, ActionStep):
        fields = [("prompt", step.prompt), ("system", step.system), ("workspace", step.workspace)]
        return [(name, value) for name, value in fields if value]
    if isinstance(step, DecisionStep):
        return [("question", step.question), ("context", step.context)]
    if isinstance(step, WorkspaceStep):
        return [("unit", step.unit)]
    if isinstance(step, InvokeWorkflowStep):
        return [(f"with.{key}", value) for key, value in step.inputs.items()]
    return []


class DefinitionCatalog:
    """Named workflow definitions available to runs and sub-workflow invocations."""

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()
        for definition in definitions:
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            existing = self._definitions.get(definition.name)
            if existing is not None and existing is not definition:
                logger.info("Replacing workflow definition %s", definition.name)
            self._definitions[definition.name] = definition

    def get(self, name: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                raise UnknownWorkflowError(name, sorted(self._definitions))
            return definition

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._definitions

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._definitions)

    def load_directory(self, directory: Path) -> list[WorkflowDefinition]:
        """Load every definition document in a directory (non-recursive)."""

        loaded: list[WorkflowDefinition] = []
        for path in sorted(directory.iterdir()):
            if path.is_file() and path.suffix in DEFINITION_SUFFIXES:
                definition = load_definition(path)
                self.register(definition)
                loaded.append(definition)
        logger.info("Loaded %d workflow definition(s) from %s", len(loaded), directory)
        return loaded

    def validate_references(self, name: str) -> None:
        """Ensure every transitively invoked workflow is registered."""

        pending = [name]
        seen: set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.get(current).sub_workflows)
