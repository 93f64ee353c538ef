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

"""Condition expression AST node definitions using dataclasses."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ASTNode:
    """Base class for all expression AST nodes."""


# Operands
@dataclass(frozen=True)
class Literal(ASTNode):
    """Literal value (string, number, bool, null)."""

    value: object
    kind: str  # "string", "number", "boolean", "null"


@dataclass(frozen=True)
class PathRef(ASTNode):
    """Dotted path into the context: variables.user.name, items[0]."""

    path: str


@dataclass(frozen=True)
class ListLiteral(ASTNode):
    """List literal: [a, 'b', 3]."""

    items: tuple["Operand", ...] = ()


@dataclass(frozen=True)
class AnyOf(ASTNode):
    """Alternatives written as one comma-separated string literal.

    ``message contains "yes, sim, ok"`` holds when any alternative matches.
    """

    options: tuple[str, ...]
    source: str = field(default="", compare=False)


Operand = Literal | PathRef | ListLiteral | AnyOf


# Expressions
@dataclass(frozen=True)
class Truthy(ASTNode):
    """Bare operand used as a condition."""

    operand: Operand


@dataclass(frozen=True)
class Compare(ASTNode):
    """Binary comparison: ==, !=, <, <=, >, >=."""

    op: str
    left: Operand
    right: Operand


@dataclass(frozen=True)
class Predicate(ASTNode):
    """Named predicate: contains, contains_any, contains_all, starts_with, ends_with."""

    name: str
    subject: Operand
    argument: Operand


@dataclass(frozen=True)
class EmptyCheck(ASTNode):
    """Postfix is_empty / is_not_empty."""

    operand: Operand
    negated: bool = False


@dataclass(frozen=True)
class Not(ASTNode):
    """Logical negation."""

    operand: "Expr"


@dataclass(frozen=True)
class BoolOp(ASTNode):
    """Logical and/or over two or more operands."""

    op: str  # "and" | "or"
    operands: tuple["Expr", ...]


Expr = Truthy | Compare | Predicate | EmptyCheck | Not | BoolOp
