"""Template rendering and safe boolean conditions over run variables.

Templates use `{{name}}`, dotted paths (`{{plan.steps.0}}`) and fallbacks
(`{{name|default text}}`).

Conditions are a whitelisted subset of Python expressions parsed with `ast`:
boolean operators, comparisons, arithmetic, literals, dotted or subscript access
into bound values, and the helpers `len()`, `empty()` and `lower()`. Names are
collected at parse time so a definition can reject references to variables it
never declares; nothing is ever passed to `eval()`.
"""

from __future__ import annotations

import ast
import json
import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from workflow_pilot.orchestrator.errors import UndefinedVariableError

_TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.\-]*)\s*(?:\|\s*(.*?)\s*)?\}\}")
_MISSING = object()


class ExpressionError(ValueError):
    """Base error for condition expressions."""


class ExpressionSyntaxError(ExpressionError):
    """Condition is not valid expression syntax."""


class ExpressionSecurityError(ExpressionError):
    """Condition uses a construct outside the whitelist."""


class ExpressionEvaluationError(ExpressionError):
    """Valid condition failed against the current bindings; cause is chained."""


@dataclass(slots=True, frozen=True)
class TemplateReference:
    """One `{{...}}` placeholder."""

    path: str
    default: str | None

    @property
    def root(self) -> str:
        return self.path.split(".", 1)[0]


def template_references(text: str) -> list[TemplateReference]:
    """All placeholders in a template, in order of appearance."""

    return [
        TemplateReference(path=match.group(1), default=match.group(2))
        for match in _TEMPLATE_PATTERN.finditer(text)
    ]


def render_template(text: str, variables: Mapping[str, Any]) -> str:
    """Substitute placeholders; an unresolved placeholder without fallback raises."""

    def _replace(match: re.Match[str]) -> str:
        path, default = match.group(1), match.group(2)
        value = resolve_path(variables, path)
        if value is _MISSING or value is None:
            if default is not None:
                return default
            if value is None:
                return ""
            raise UndefinedVariableError(path)
        return _to_text(value)

    return _TEMPLATE_PATTERN.sub(_replace, text)


def resolve_path(variables: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through mappings and sequences; `_MISSING` when absent."""

    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, list | tuple) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
    return str(value)


def _empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, dict | list | tuple | set):
        return len(value) == 0
    return False


_HELPERS: dict[str, Callable[[Any], Any]] = {
    "len": len,
    "empty": _empty,
    "lower": lambda value: str(value).lower(),
}
_CONSTANT_NAMES = {"True": True, "False": False, "None": None}

_COMPARISONS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}
_BINARY: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}
_UNARY: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}
_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.Call,
    ast.List,
    ast.Tuple,
    *_COMPARISONS,
    *_BINARY,
    *_UNARY,
)


class Condition:
    """Parsed, validated boolean condition."""

    __slots__ = ("_tree", "names", "source")

    def __init__(self, source: str) -> None:
        self.source = source.strip()
        if not self.source:
            raise ExpressionSyntaxError("Condition must not be empty")
        try:
            self._tree = ast.parse(self.source, mode="eval")
        except SyntaxError as error:
            raise ExpressionSyntaxError(f"Invalid condition {self.source!r}: {error.msg}") from error
        self.names = frozenset(_validate(self._tree))

    def evaluate(self, variables: Mapping[str, Any]) -> bool:
        """Evaluate against bindings; missing names raise ExpressionEvaluationError."""

        return bool(_evaluate(self._tree.body, variables))

    def __repr__(self) -> str:
        return f"Condition({self.source!r})"


def _validate(tree: ast.Expression) -> set[str]:
    names: set[str] = set()
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionSecurityError(f"Forbidden construct: {type(node).__name__}")
        if isinstance(node, ast.Constant) and not isinstance(
            node.value,
            str | int | float | bool | type(None),
        ):
            raise ExpressionSecurityError(f"Forbidden constant type: {type(node.value).__name__}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionSecurityError(f"Forbidden attribute: {node.attr!r}")
        if isinstance(node, ast.Subscript) and isinstance(node.slice, ast.Slice):
            raise ExpressionSecurityError("Slice syntax is forbidden")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _HELPERS:
                raise ExpressionSecurityError("Only len(), empty() and lower() may be called")
            if len(node.args) != 1 or node.keywords:
                raise ExpressionSecurityError(f"{node.func.id}() takes exactly one argument")
        if isinstance(node, ast.Name) and node.id not in _CONSTANT_NAMES:
            names.add(node.id)
    called = {
        node.func.id
        for node in ast.walk(tree)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
    }
    bare_helpers = {name for name in names if name in _HELPERS} - called
    if bare_helpers:
        raise ExpressionSecurityError(f"Helper used without call: {sorted(bare_helpers)}")
    return names - called


def _evaluate(node: ast.AST, variables: Mapping[str, Any]) -> Any:  # noqa: C901, PLR0911, PLR0912
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        if node.id not in variables:
            raise ExpressionEvaluationError(f"Undefined variable in condition: {node.id}")
        return variables[node.id]
    if isinstance(node, ast.Attribute):
        container = _evaluate(node.value, variables)
        if isinstance(container, Mapping) and node.attr in container:
            return container[node.attr]
        raise ExpressionEvaluationError(f"Field {node.attr!r} not found")
    if isinstance(node, ast.Subscript):
        container = _evaluate(node.value, variables)
        key = _evaluate(node.slice, variables)
        try:
            return container[key]
        except (KeyError, IndexError, TypeError) as error:
            raise ExpressionEvaluationError(f"Cannot access {key!r}: {error}") from error
    if isinstance(node, ast.Call):
        helper = _HELPERS[node.func.id]  # type: ignore[attr-defined]
        argument = _evaluate(node.args[0], variables)
        try:
            return helper(argument)
        except TypeError as error:
            raise ExpressionEvaluationError(f"{node.func.id}() failed: {error}") from error  # type: ignore[attr-defined]
    if isinstance(node, ast.BoolOp):
        is_and = isinstance(node.op, ast.And)
        result: Any = is_and
        for value in node.values:
            result = _evaluate(value, variables)
            if bool(result) != is_and:
                return result
        return result
    if isinstance(node, ast.UnaryOp):
        return _apply(_UNARY[type(node.op)], _evaluate(node.operand, variables))
    if isinstance(node, ast.BinOp):
        return _apply(
            _BINARY[type(node.op)],
            _evaluate(node.left, variables),
            _evaluate(node.right, variables),
        )
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, variables)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = _evaluate(comparator, variables)
            if not _apply(_COMPARISONS[type(op)], left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.List | ast.Tuple):
        return [_evaluate(item, variables) for item in node.elts]
    raise ExpressionSecurityError(f"Forbidden construct: {type(node).__name__}")


def _apply(function: Callable[..., Any], *args: Any) -> Any:
    try:
        return function(*args)
    except (TypeError, ZeroDivisionError) as error:
        raise ExpressionEvaluationError(str(error)) from error
