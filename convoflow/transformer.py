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

"""Lark Transformer to convert a condition parse tree to the expression AST."""

import re

from lark import Token, Transformer, v_args

from .ast import (
    AnyOf,
    BoolOp,
    Compare,
    EmptyCheck,
    ListLiteral,
    Literal,
    Not,
    PathRef,
    Predicate,
    Truthy,
)

# Predicates whose string argument may list alternatives separated by commas
_ANY_OF_PREDICATES = frozenset({"contains", "starts_with", "ends_with"})

_ESCAPE_RE = re.compile(r"\\(.)")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


def _unquote(raw: str) -> str:
    """Strip the surrounding quotes and process escapes."""
    body = raw[1:-1]
    if "\\" not in body:
        return body
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _split_alternatives(literal: Literal) -> Literal | AnyOf:
    """Turn ``"a, b, c"`` into an AnyOf.

    Other literals, and ones with fewer than two non-blank options (``","``,
    ``"hi,"``), pass through unchanged.
    """
    if literal.kind != "string" or "," not in str(literal.value):
        return literal
    options = tuple(part.strip() for part in str(literal.value).split(",") if part.strip())
    if len(options) < 2:
        return literal
    return AnyOf(options=options, source=str(literal.value))


class ConditionTransformer(Transformer):
    """Transform a Lark parse tree into condition AST nodes."""

    # Terminals
    def STRING(self, token: Token) -> str:
        return _unquote(str(token))

    def SIGNED_NUMBER(self, token: Token) -> int | float:
        text = str(token)
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)

    def PATH(self, token: Token) -> str:
        return str(token)

    def TEMPLATE_REF(self, token: Token) -> str:
        # {{ variables.x }} -> variables.x
        return str(token)[2:-2].strip()

    # Operands
    @v_args(inline=True)
    def path(self, value: str) -> PathRef:
        return PathRef(path=value)

    @v_args(inline=True)
    def template_ref(self, value: str) -> PathRef:
        return PathRef(path=value)

    @v_args(inline=True)
    def string(self, value: str) -> Literal:
        return Literal(value=value, kind="string")

    @v_args(inline=True)
    def number(self, value: int | float) -> Literal:
        return Literal(value=value, kind="number")

    def true(self, items: list) -> Literal:
        return Literal(value=True, kind="boolean")

    def false(self, items: list) -> Literal:
        return Literal(value=False, kind="boolean")

    def null(self, items: list) -> Literal:
        return Literal(value=None, kind="null")

    def list_literal(self, items: list) -> ListLiteral:
        return ListLiteral(items=tuple(i for i in items if i is not None))

    # Comparisons
    @v_args(inline=True)
    def truthy(self, operand) -> Truthy:
        return Truthy(operand=operand)

    @v_args(inline=True)
    def eq(self, left, right) -> Compare:
        return Compare(op="==", left=left, right=right)

    @v_args(inline=True)
    def ne(self, left, right) -> Compare:
        return Compare(op="!=", left=left, right=right)

    @v_args(inline=True)
    def lt(self, left, right) -> Compare:
        return Compare(op="<", left=left, right=right)

    @v_args(inline=True)
    def le(self, left, right) -> Compare:
        return Compare(op="<=", left=left, right=right)

    @v_args(inline=True)
    def gt(self, left, right) -> Compare:
        return Compare(op=">", left=left, right=right)

    @v_args(inline=True)
    def ge(self, left, right) -> Compare:
        return Compare(op=">=", left=left, right=right)

    # Predicates
    def _predicate(self, name: str, subject, argument) -> Predicate:
        if name in _ANY_OF_PREDICATES and isinstance(argument, Literal):
            argument = _split_alternatives(argument)
        return Predicate(name=name, subject=subject, argument=argument)

    @v_args(inline=True)
    def contains(self, subject, argument) -> Predicate:
        return self._predicate("contains", subject, argument)

    @v_args(inline=True)
    def contains_any(self, subject, argument) -> Predicate:
        return self._predicate("contains_any", subject, argument)

    @v_args(inline=True)
    def contains_all(self, subject, argument) -> Predicate:
        return self._predicate("contains_all", subject, argument)

    @v_args(inline=True)
    def starts_with(self, subject, argument) -> Predicate:
        return self._predicate("starts_with", subject, argument)

    @v_args(inline=True)
    def ends_with(self, subject, argument) -> Predicate:
        return self._predicate("ends_with", subject, argument)

    @v_args(inline=True)
    def is_empty(self, operand) -> EmptyCheck:
        return EmptyCheck(operand=operand)

    @v_args(inline=True)
    def is_not_empty(self, operand) -> EmptyCheck:
        return EmptyCheck(operand=operand, negated=True)

    # Boolean connectives
    @v_args(inline=True)
    def not_expr(self, operand) -> Not:
        return Not(operand=operand)

    def and_expr(self, items: list) -> BoolOp:
        return self._flatten("and", items)

    def or_expr(self, items: list) -> BoolOp:
        return self._flatten("or", items)

    def _flatten(self, op: str, items: list) -> BoolOp:
        # a and b and c parses left-deep; keep it as one n-ary node
        operands = []
        for item in items:
            if isinstance(item, BoolOp) and item.op == op:
                operands.extend(item.operands)
            else:
                operands.append(item)
        return BoolOp(op=op, operands=tuple(operands))
