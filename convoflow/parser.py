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

"""Condition expression parser using Lark."""

from __future__ import annotations

import threading
from pathlib import Path

from lark import Lark
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken

from .ast import Expr
from .transformer import ConditionTransformer


class ParseError(Exception):
    """Condition parse error with location information."""

    def __init__(
        self,
        message: str,
        expression: str = "",
        column: int | None = None,
    ):
        self.message = message
        self.expression = expression
        self.column = column
        location = f" at column {column}" if column is not None else ""
        super().__init__(f"{message}{location}")


_GRAMMAR_PATH = Path(__file__).parent / "grammar" / "condition.lark"


class ConditionParser:
    """Condition expression parser.

    Uses Lark with LALR mode. The Lark instance is shared across all
    ConditionParser instances since the grammar is immutable at runtime,
    and parsed expressions are cached by source text.
    """

    _lark: Lark | None = None
    _cache: dict[str, Expr] = {}
    _cache_lock = threading.Lock()
    cache_size = 512

    @classmethod
    def _get_lark(cls) -> Lark:
        """Return the shared Lark parser, creating it on first use."""
        if cls._lark is None:
            with open(_GRAMMAR_PATH) as f:
                grammar = f.read()
            cls._lark = Lark(
                grammar,
                parser="lalr",
                maybe_placeholders=False,
            )
        return cls._lark

    def __init__(self) -> None:
        self._parser = self._get_lark()

    def parse(self, expression: str) -> Expr:
        """Parse a condition expression and return its AST.

        Args:
            expression: Condition source text

        Returns:
            Expression AST node

        Raises:
            ParseError: If the expression contains syntax errors
        """
        source = expression.strip()
        cached = self._cache.get(source)
        if cached is not None:
            return cached
        if not source:
            raise ParseError("Empty expression", expression=expression)

        try:
            tree = self._parser.parse(source)
            result = ConditionTransformer().transform(tree)
        except UnexpectedCharacters as e:
            raise ParseError(
                f"Unexpected character '{e.char}'",
                expression=expression,
                column=e.column,
            ) from e
        except UnexpectedEOF as e:
            raise ParseError("Unexpected end of expression", expression=expression) from e
        except UnexpectedToken as e:
            expected = ", ".join(sorted(e.expected)) if e.expected else "unknown"
            raise ParseError(
                f"Unexpected token '{e.token}'. Expected one of: {expected}",
                expression=expression,
                column=e.column,
            ) from e
        except UnexpectedInput as e:
            raise ParseError(
                "Syntax error",
                expression=expression,
                column=getattr(e, "column", None),
            ) from e

        with self._cache_lock:
            if len(self._cache) >= self.cache_size:
                self._cache.clear()
            self._cache[source] = result
        return result

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._cache.clear()


def parse(expression: str) -> Expr:
    """Parse a condition expression.

    Args:
        expression: Condition source text

    Returns:
        Expression AST node
    """
    parser = ConditionParser()
    return parser.parse(expression)
