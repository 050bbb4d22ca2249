from __future__ import annotations

import allure
import pytest

from workflow_pilot.orchestrator.errors import UndefinedVariableError
from workflow_pilot.orchestrator.expressions import (
    Condition,
    ExpressionEvaluationError,
    ExpressionSecurityError,
    ExpressionSyntaxError,
    render_template,
    template_references,
)

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Templates & Conditions"),
]


def test_render_template_substitutes_paths_and_fallbacks() -> None:
    variables = {
        "story": {"id": 7, "tags": ["api", "db"]},
        "owner": None,
        "plan": {"steps": 2},
    }

    rendered = render_template(
        "Story {{story.id}} ({{ story.tags.1 }}) by {{owner|nobody}}, {{missing|n/a}}: {{plan}}",
        variables,
    )

    assert rendered == 'Story 7 (db) by nobody, n/a: {"steps": 2}'


def test_render_template_raises_for_unbound_reference() -> None:
    with pytest.raises(UndefinedVariableError, match="ticket.id"):
        render_template("Fix {{ticket.id}}", {"ticket": {}})


def test_template_references_report_roots_and_defaults() -> None:
    references = template_references("{{a.b}} and {{c|x}}")

    assert [(item.root, item.default) for item in references] == [("a", None), ("c", "x")]


@pytest.mark.parametrize(
    ("source", "variables", "expected"),
    [
        ("score >= 0.75 and status == 'ready'", {"score": 0.8, "status": "ready"}, True),
        ("not empty(plan)", {"plan": "  "}, False),
        ("len(items) > 1", {"items": [1, 2]}, True),
        ("lower(name) in ['alice', 'bob']", {"name": "ALICE"}, True),
        ("result.ok is True", {"result": {"ok": True}}, True),
        ("items[0] + 1 == 3", {"items": [2]}, True),
        ("approved or fallback", {"approved": False, "fallback": ""}, False),
    ],
)
def test_condition_evaluates_whitelisted_expressions(
    source: str,
    variables: dict,
    expected: bool,
) -> None:
    assert Condition(source).evaluate(variables) is expected


def test_condition_collects_variable_names_but_not_helpers() -> None:
    condition = Condition("len(items) > limit and not empty(plan.text)")

    assert condition.names == frozenset({"items", "limit", "plan"})


@pytest.mark.parametrize(
    "source",
    [
        "__import__('os').system('id')",
        "items.__class__",
        "[x for x in items]",
        "lambda: 1",
        "items[1:2]",
        "open('secrets')",
        "len",
    ],
)
def test_condition_rejects_constructs_outside_whitelist(source: str) -> None:
    with pytest.raises(ExpressionSecurityError):
        Condition(source)


def test_condition_syntax_and_runtime_errors_are_distinct() -> None:
    with pytest.raises(ExpressionSyntaxError):
        Condition("a ==")
    with pytest.raises(ExpressionSyntaxError):
        Condition("   ")

    with pytest.raises(ExpressionEvaluationError) as raised:
        Condition("count > 'x'").evaluate({"count": 1})
    assert isinstance(raised.value.__cause__, TypeError)

    with pytest.raises(ExpressionEvaluationError, match="missing"):
        Condition("missing == 1").evaluate({})
