from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from workflow_pilot.orchestrator.definition import (
    ActionStep,
    ConditionalStep,
    DefinitionCatalog,
    GotoStep,
    InvokeWorkflowStep,
    WorkspaceStep,
    load_definition,
    parse_definition,
)
from workflow_pilot.orchestrator.errors import UnknownWorkflowError, WorkflowParseError

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Definitions & Catalog"),
]

STORY_FLOW = """
name: story-flow
description: Plan and review one story
variables:
  story_id: "7"
  plan: null
steps:
  - type: action
    name: draft
    prompt: "Draft a plan for story {{story_id}}"
    output: plan
    timeout_seconds: 30
  - type: conditional
    name: check
    if: "empty(plan)"
    then: draft
    else: review
  - type: invoke-workflow
    name: review
    workflow: review-flow
    with:
      document: "{{plan}}"
  - type: workspace
    operation: Create
    unit: "story-{{story_id}}"
    output: workspace
  - type: checkpoint
"""


def test_load_definition_parses_yaml_steps_and_targets(tmp_path: Path) -> None:
    path = tmp_path / "story.yaml"
    path.write_text(STORY_FLOW, "utf-8")

    definition = load_definition(path)

    assert definition.name == "story-flow"
    assert definition.variables == {"story_id": "7", "plan": None}
    assert [step.kind.value for step in definition.steps] == [
        "action",
        "conditional",
        "invoke-workflow",
        "workspace",
        "checkpoint",
    ]
    action, conditional, invoke, workspace, checkpoint = definition.steps
    assert isinstance(action, ActionStep)
    assert action.timeout_seconds == 30.0
    assert isinstance(conditional, ConditionalStep)
    assert (conditional.then_step, conditional.else_step) == (0, 2)
    assert isinstance(invoke, InvokeWorkflowStep)
    assert invoke.inputs == {"document": "{{plan}}"}
    assert isinstance(workspace, WorkspaceStep)
    assert workspace.operation == "create"
    assert checkpoint.name == "checkpoint-4"
    assert definition.sub_workflows == ("review-flow",)
    assert definition.source == str(path)


def test_load_definition_accepts_json(tmp_path: Path) -> None:
    path = tmp_path / "tiny.json"
    path.write_text(
        json.dumps({"name": "tiny", "steps": [{"type": "goto", "to": 0}]}),
        "utf-8",
    )

    definition = load_definition(path)

    assert isinstance(definition.steps[0], GotoStep)
    assert definition.steps[0].target == 0


def test_undefined_template_variable_fails_at_parse_time() -> None:
    with pytest.raises(WorkflowParseError, match="undefined variable 'ticket'") as raised:
        parse_definition(
            {
                "name": "bad",
                "steps": [{"type": "action", "prompt": "Fix {{ticket}}"}],
            },
            source="bad.yaml",
        )

    assert raised.value.field == "steps[0].prompt"
    assert raised.value.source == "bad.yaml"


def test_undefined_condition_variable_fails_at_parse_time() -> None:
    with pytest.raises(WorkflowParseError, match="approved"):
        parse_definition(
            {
                "name": "bad",
                "steps": [{"type": "conditional", "if": "approved == True", "then": 0}],
            },
        )


def test_fallback_and_later_outputs_count_as_declared() -> None:
    definition = parse_definition(
        {
            "name": "ok",
            "steps": [
                {"type": "conditional", "if": "not empty(answer)", "then": "done"},
                {"type": "action", "prompt": "Hello {{who|world}}", "output": "answer"},
                {"type": "checkpoint", "name": "done"},
            ],
        },
    )

    assert len(definition.steps) == 3


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"steps": [{"type": "checkpoint"}]}, "name"),
        ({"name": "x", "steps": []}, "non-empty list"),
        ({"name": "x", "steps": [{"type": "teleport"}]}, "unknown step type"),
        ({"name": "x", "steps": [{"type": "goto"}]}, "jump target is required"),
        ({"name": "x", "steps": [{"type": "goto", "to": 5}]}, "outside"),
        ({"name": "x", "steps": [{"type": "goto", "to": "nowhere"}]}, "unknown jump target"),
        (
            {"name": "x", "steps": [{"type": "checkpoint", "name": "a"}, {"type": "checkpoint", "name": "a"}]},
            "duplicate step name",
        ),
        ({"name": "x", "steps": [{"type": "conditional", "if": "__import__('os')"}]}, "may be called"),
        ({"name": "x", "steps": [{"type": "action", "prompt": "hi", "timeout": -1}]}, "positive"),
        (
            {"name": "x", "steps": [{"type": "workspace", "operation": "merge", "unit": "u"}]},
            "must be one of",
        ),
        ({"name": "x", "steps": [{"type": "decision", "question": "Which?"}]}, "output"),
    ],
)
def test_parse_definition_rejects_invalid_documents(raw: dict, message: str) -> None:
    with pytest.raises(WorkflowParseError, match=message):
        parse_definition(raw)


def test_load_definition_wraps_yaml_errors(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("name: [unclosed", "utf-8")

    with pytest.raises(WorkflowParseError, match="invalid document"):
        load_definition(path)


def test_catalog_loads_directory_and_validates_references(tmp_path: Path) -> None:
    (tmp_path / "parent.yaml").write_text(
        "name: parent\nsteps:\n  - type: invoke-workflow\n    workflow: child\n",
        "utf-8",
    )
    (tmp_path / "notes.txt").write_text("ignored", "utf-8")
    catalog = DefinitionCatalog()

    loaded = catalog.load_directory(tmp_path)

    assert [definition.name for definition in loaded] == ["parent"]
    assert "parent" in catalog
    with pytest.raises(UnknownWorkflowError, match="child"):
        catalog.validate_references("parent")

    catalog.register(parse_definition({"name": "child", "steps": [{"type": "checkpoint"}]}))
    catalog.validate_references("parent")
    assert catalog.names() == ["child", "parent"]
