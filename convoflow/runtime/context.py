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

"""Per-run context model.

The context is the mutable state every node sees: ``globals`` (tenant-wide
settings), ``input`` (the event that last entered the run), ``output`` (what
the last node produced) and ``variables`` (everything the graph has stored).
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any

# Reserved variable names; user graphs must not write these
RESERVED_PREFIX = "__"
LOOP_STACK_KEY = "__loop_stack"

SCOPES = ("variables", "globals", "input", "output")

# Order tried when a path does not name a scope explicitly
FALLBACK_SCOPES = ("variables", "output", "input", "globals")

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\-?\d+)\]")


class _Missing:
    """Sentinel for a path that resolves to nothing."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def split_path(path: str) -> list[str | int]:
    """Split a dotted path with optional ``[n]`` indices into segments.

    ``"variables.items[0].name"`` -> ``["variables", "items", 0, "name"]``
    """
    segments: list[str | int] = []
    for name, index in _SEGMENT_RE.findall(path.strip()):
        if index:
            segments.append(int(index))
        else:
            segments.append(name)
    return segments


def walk(value: Any, segments: list[str | int]) -> Any:
    """Follow segments into nested dicts/lists, returning MISSING on any miss."""
    current = value
    for segment in segments:
        if isinstance(segment, int):
            if not isinstance(current, (list, tuple)):
                return MISSING
            try:
                current = current[segment]
            except IndexError:
                return MISSING
        elif isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            idx = int(segment)
            if idx >= len(current):
                return MISSING
            current = current[idx]
        elif isinstance(current, (list, tuple, str)) and segment == "length":
            current = len(current)
        else:
            return MISSING
    return current


@dataclass
class Context:
    """Mutable per-run state passed to every node handler."""

    globals: dict = field(default_factory=dict)
    input: dict = field(default_factory=dict)
    output: dict = field(default_factory=dict)
    variables: dict = field(default_factory=dict)

    def scope(self, name: str) -> dict:
        """Return one of the four scope maps by name."""
        if name not in SCOPES:
            raise KeyError(name)
        return getattr(self, name)

    def resolve(self, path: str) -> Any:
        """Resolve a dotted path against the context.

        Paths that start with a scope name are resolved inside that scope.
        Otherwise the first segment is looked up in variables, output, input
        and globals, in that order.

        Returns:
            The value, or MISSING if nothing matches
        """
        segments = split_path(path)
        if not segments:
            return MISSING
        head = segments[0]
        if isinstance(head, str) and head in SCOPES:
            return walk(self.scope(head), segments[1:])
        for name in FALLBACK_SCOPES:
            value = walk(self.scope(name), segments)
            if value is not MISSING:
                return value
        return MISSING

    def set_variable(self, name: str, value: Any) -> None:
        """Set a variable, accepting dotted names for nested maps."""
        segments = [s for s in split_path(name) if isinstance(s, str)]
        if segments and segments[0] == "variables":
            segments = segments[1:]
        if not segments:
            raise ValueError(f"Invalid variable name: {name!r}")
        target = self.variables
        for segment in segments[:-1]:
            nested = target.get(segment)
            if not isinstance(nested, dict):
                nested = {}
                target[segment] = nested
            target = nested
        target[segments[-1]] = value

    def user_variables(self) -> dict:
        """Variables without engine-private keys."""
        return {k: v for k, v in self.variables.items() if not k.startswith(RESERVED_PREFIX)}

    def snapshot(self) -> dict:
        """Deep-copied view for read-only consumers (scripts, events)."""
        return {
            "globals": copy.deepcopy(self.globals),
            "input": copy.deepcopy(self.input),
            "output": copy.deepcopy(self.output),
            "variables": copy.deepcopy(self.user_variables()),
        }

    def clone(self) -> "Context":
        """Create a deep copy of this context."""
        return Context(
            globals=copy.deepcopy(self.globals),
            input=copy.deepcopy(self.input),
            output=copy.deepcopy(self.output),
            variables=copy.deepcopy(self.variables),
        )

    def to_dict(self) -> dict:
        """Convert to a storable dictionary."""
        return {
            "globals": self.globals,
            "input": self.input,
            "output": self.output,
            "variables": self.variables,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "Context":
        """Create a context from a stored dictionary."""
        data = data or {}
        return cls(
            globals=dict(data.get("globals") or {}),
            input=dict(data.get("input") or {}),
            output=dict(data.get("output") or {}),
            variables=dict(data.get("variables") or {}),
        )
