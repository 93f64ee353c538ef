# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Convoflow expression evaluation.

Two operations over a run's context:
- Template interpolation (``"Hello {{variables.name}}"``)
- Condition evaluation (``variables.choice == "2" and input.message contains "yes, ok"``)

Conditions are parsed into an AST once and interpreted here; evaluation can
only read the context.
"""

import json
import re
from typing import Any

from ..ast import (
    AnyOf,
    BoolOp,
    Compare,
    EmptyCheck,
    Expr,
    ListLiteral,
    Literal,
    Not,
    PathRef,
    Predicate,
    Truthy,
)
from ..parser import ConditionParser, ParseError
from .context import MISSING, Context
from .errors import EvaluationError

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def _to_number(value: Any) -> int | float | None:
    """Numeric view of a value, or None if it has none."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _render(value: Any) -> str:
    """String form of a resolved value for template output."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _truthy(value: Any) -> bool:
    if value is MISSING or value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "null")
    return bool(value)


def loose_equals(left: Any, right: Any) -> bool:
    """Equality with numeric coercion.

    ``"2" == 2`` holds, ``"true" == true`` holds, missing equals null.
    """
    if left is MISSING:
        left = None
    if right is MISSING:
        right = None
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        if isinstance(left, bool) and isinstance(right, bool):
            return left == right
        other, flag = (right, left) if isinstance(left, bool) else (left, right)
        if isinstance(other, str):
            return other.strip().lower() == ("true" if flag else "false")
        return False
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        a, b = _to_number(left), _to_number(right)
        if a is None or b is None:
            return False
        return a == b
    return left == right


def _order(op: str, left: Any, right: Any) -> bool:
    if left in (MISSING, None) or right in (MISSING, None):
        return False
    a, b = _to_number(left), _to_number(right)
    if a is not None and b is not None:
        left, right = a, b
    elif isinstance(left, str) and isinstance(right, str):
        pass
    else:
        return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


class ExpressionEvaluator:
    """Evaluates condition expressions and templates against a Context."""

    def __init__(self, parser: ConditionParser | None = None):
        self._parser = parser or ConditionParser()

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def interpolate(self, template: str, context: Context) -> str:
        """Substitute every ``{{path}}`` placeholder.

        Placeholders that resolve to nothing (or to null) are left intact, so
        interpolating the result again is a no-op.
        """
        if not isinstance(template, str) or "{{" not in template:
            return template

        def replace(match: re.Match) -> str:
            value = context.resolve(match.group(1))
            if value is MISSING or value is None:
                return match.group(0)
            return _render(value)

        return PLACEHOLDER_RE.sub(replace, template)

    def resolve_value(self, template: Any, context: Context) -> Any:
        """Resolve a config value that may be a template.

        A string that is exactly one placeholder yields the raw value (so a
        list stays a list). Other strings are interpolated; dicts and lists
        are resolved element by element.
        """
        if isinstance(template, str):
            match = PLACEHOLDER_RE.fullmatch(template.strip())
            if match:
                value = context.resolve(match.group(1))
                if value is MISSING or value is None:
                    return template
                return value
            return self.interpolate(template, context)
        if isinstance(template, dict):
            return {k: self.resolve_value(v, context) for k, v in template.items()}
        if isinstance(template, list):
            return [self.resolve_value(v, context) for v in template]
        return template

    # -------------------------------------------------------------------------
    # Conditions
    # -------------------------------------------------------------------------

    def compile(self, expression: str) -> Expr:
        """Parse an expression (cached).

        Raises:
            EvaluationError: If the expression does not parse
        """
        try:
            return self._parser.parse(expression)
        except ParseError as e:
            raise EvaluationError(expression, str(e)) from e

    def evaluate(self, expression: str, context: Context) -> bool:
        """Evaluate a condition expression to a boolean.

        Raises:
            EvaluationError: If the expression does not parse
        """
        if isinstance(expression, bool):
            return expression
        return self.eval_node(self.compile(str(expression)), context)

    def eval_node(self, node: Expr, context: Context) -> bool:
        if isinstance(node, BoolOp):
            if node.op == "and":
                return all(self.eval_node(n, context) for n in node.operands)
            return any(self.eval_node(n, context) for n in node.operands)
        if isinstance(node, Not):
            return not self.eval_node(node.operand, context)
        if isinstance(node, Truthy):
            return _truthy(self._value(node.operand, context))
        if isinstance(node, Compare):
            return self._eval_compare(node, context)
        if isinstance(node, Predicate):
            return self._eval_predicate(node, context)
        if isinstance(node, EmptyCheck):
            empty = _is_empty(self._value(node.operand, context))
            return not empty if node.negated else empty
        raise EvaluationError(repr(node), f"Unknown expression node: {type(node).__name__}")

    def _value(self, operand: Any, context: Context) -> Any:
        if isinstance(operand, Literal):
            return operand.value
        if isinstance(operand, PathRef):
            return context.resolve(operand.path)
        if isinstance(operand, ListLiteral):
            values = [self._value(item, context) for item in operand.items]
            return [None if v is MISSING else v for v in values]
        if isinstance(operand, AnyOf):
            return list(operand.options)
        return operand

    def _eval_compare(self, node: Compare, context: Context) -> bool:
        left = self._value(node.left, context)
        right = self._value(node.right, context)
        if node.op == "==":
            return loose_equals(left, right)
        if node.op == "!=":
            return not loose_equals(left, right)
        return _order(node.op, left, right)

    def _eval_predicate(self, node: Predicate, context: Context) -> bool:
        subject = self._value(node.subject, context)
        if subject is MISSING or subject is None:
            return False
        if isinstance(node.argument, AnyOf):
            alternatives = list(node.argument.options)
        else:
            argument = self._value(node.argument, context)
            if argument is MISSING:
                return False
            alternatives = None

        if node.name in ("starts_with", "ends_with"):
            text = _render(subject).lower()
            options = alternatives if alternatives is not None else [argument]
            check = str.startswith if node.name == "starts_with" else str.endswith
            return any(check(text, _render(opt).lower()) for opt in options if opt is not None)

        if node.name == "contains":
            options = alternatives if alternatives is not None else [argument]
            return any(self._contains(subject, opt) for opt in options)

        # contains_any / contains_all take a list (or a comma list) of needles
        if alternatives is None:
            if isinstance(argument, (list, tuple)):
                alternatives = list(argument)
            elif isinstance(argument, str) and "," in argument:
                alternatives = [p.strip() for p in argument.split(",") if p.strip()]
            else:
                alternatives = [argument]
        if node.name == "contains_any":
            return any(self._contains(subject, opt) for opt in alternatives)
        return bool(alternatives) and all(self._contains(subject, opt) for opt in alternatives)

    @staticmethod
    def _contains(subject: Any, needle: Any) -> bool:
        if needle is None:
            return False
        if isinstance(subject, (list, tuple, set)):
            return any(loose_equals(item, needle) for item in subject)
        if isinstance(subject, dict):
            return str(needle) in subject
        return _render(needle).lower() in _render(subject).lower()


_default_evaluator: ExpressionEvaluator | None = None


def default_evaluator() -> ExpressionEvaluator:
    """Shared evaluator used by the module-level helpers."""
    global _default_evaluator
    if _default_evaluator is None:
        _default_evaluator = ExpressionEvaluator()
    return _default_evaluator


def interpolate(template: str, context: Context) -> str:
    """Substitute ``{{path}}`` placeholders in a template."""
    return default_evaluator().interpolate(template, context)


def resolve_value(template: Any, context: Context) -> Any:
    """Resolve a possibly-templated config value."""
    return default_evaluator().resolve_value(template, context)


def evaluate(expression: str, context: Context) -> bool:
    """Evaluate a condition expression against a context."""
    return default_evaluator().evaluate(expression, context)
