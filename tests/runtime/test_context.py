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

"""Tests for the per-run context model."""

import pytest

from convoflow.runtime import Context
from convoflow.runtime.context import LOOP_STACK_KEY, MISSING, split_path


class TestPaths:
    def test_split_path(self):
        assert split_path("variables.items[0].name") == ["variables", "items", 0, "name"]
        assert split_path("a.b") == ["a", "b"]

    def test_resolve_scoped(self):
        ctx = Context(variables={"user": {"name": "Ana"}})
        assert ctx.resolve("variables.user.name") == "Ana"
        assert ctx.resolve("input.user") is MISSING

    def test_resolve_unscoped_order(self):
        """variables win over output, output over input, input over globals."""
        ctx = Context(
            globals={"a": "g", "b": "g", "c": "g", "d": "g"},
            input={"a": "i", "b": "i", "c": "i"},
            output={"a": "o", "b": "o"},
            variables={"a": "v"},
        )
        assert [ctx.resolve(k) for k in "abcd"] == ["v", "o", "i", "g"]

    def test_resolve_numeric_segment_on_list(self):
        ctx = Context(variables={"items": ["x", "y"]})
        assert ctx.resolve("items.1") == "y"
        assert ctx.resolve("items[5]") is MISSING

    def test_missing_is_falsy(self):
        assert not MISSING


class TestMutation:
    def test_set_variable(self):
        ctx = Context()
        ctx.set_variable("name", "Ana")
        assert ctx.variables == {"name": "Ana"}

    def test_set_nested_variable(self):
        ctx = Context(variables={"user": "flat"})
        ctx.set_variable("variables.user.address.city", "Recife")
        assert ctx.variables == {"user": {"address": {"city": "Recife"}}}

    def test_invalid_name(self):
        with pytest.raises(ValueError):
            Context().set_variable("variables", 1)

    def test_user_variables_hide_engine_keys(self):
        ctx = Context(variables={"a": 1, LOOP_STACK_KEY: []})
        assert ctx.user_variables() == {"a": 1}
        assert LOOP_STACK_KEY not in ctx.snapshot()["variables"]


class TestCopies:
    def test_clone_is_deep(self):
        ctx = Context(variables={"items": [1]})
        copy = ctx.clone()
        copy.variables["items"].append(2)
        assert ctx.variables["items"] == [1]

    def test_dict_roundtrip(self):
        ctx = Context(globals={"g": 1}, input={"message": "hi"}, output={}, variables={"v": 2})
        assert Context.from_dict(ctx.to_dict()) == ctx

    def test_from_empty(self):
        assert Context.from_dict(None) == Context()
