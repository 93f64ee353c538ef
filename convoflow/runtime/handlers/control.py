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

"""Control-flow node handlers: CONDITION, SWITCH and LOOP.

These compute the next node from the context and never suspend. Errors
(a malformed expression, for instance) propagate and fail the run.
"""

import json
import logging
from typing import Any

from ..context import MISSING
from ..errors import GraphError
from ..loops import enter_loop
from ..result import StepResult
from ..types import EdgeLabel
from .base import NodeHandler

logger = logging.getLogger(__name__)


class ConditionHandler(NodeHandler):
    """Evaluate ``expression`` and follow the ``true`` or ``false`` edge.

    Falls back to a ``default`` edge; with neither, the run has no next node.
    """

    def execute(self) -> StepResult:
        expression = self.config("expression", "condition")
        if expression is None or str(expression).strip() == "":
            raise GraphError(self.env.graph.id, "condition has no expression", node_id=self.node.id)

        result = self.env.evaluator.evaluate(expression, self.context)
        label = EdgeLabel.TRUE if result else EdgeLabel.FALSE
        target = self.next_node(label)
        if target is None:
            target = self.env.graph.next_target(self.node.id, EdgeLabel.DEFAULT)
        logger.debug(
            "Condition evaluated: node_id=%s result=%s next=%s", self.node.id, result, target
        )
        return StepResult.advance(target, output={"conditionResult": result})


class SwitchHandler(NodeHandler):
    """Multi-way branch.

    Either ``cases: [{label, expression}]`` (first true expression wins) or
    ``value`` (an interpolated value naming the edge label). Unmatched
    values follow the ``default`` edge.
    """

    def execute(self) -> StepResult:
        cases = self.config("cases", default=None)
        selected: str | None = None

        if cases:
            for case in cases:
                expression = case.get("expression") or case.get("condition")
                if expression and self.env.evaluator.evaluate(expression, self.context):
                    selected = str(case.get("label") or case.get("value") or case.get("id"))
                    break
        else:
            value = self.resolved("value", "expression")
            if value is not None and value is not MISSING:
                selected = str(value)

        target = self.next_node(selected) if selected is not None else None
        if target is None:
            target = self.env.graph.next_target(self.node.id, EdgeLabel.DEFAULT)
        return StepResult.advance(target, output={"switchValue": selected})


class LoopHandler(NodeHandler):
    """First visit to a LOOP node: start iterating over ``items``.

    Later arrivals at the same node are handled by the orchestrator, which
    advances the active frame instead of dispatching here again.
    """

    def execute(self) -> StepResult:
        items = self._items()
        item_var = self.config("itemVar", "item_var", default="item")
        index_var = self.config("indexVar", "index_var", default="index")
        target = enter_loop(
            self.env.graph,
            self.context,
            self.node.id,
            items,
            item_var=item_var,
            index_var=index_var,
        )
        return StepResult.advance(target)

    def _items(self) -> list[Any]:
        raw = self.config("items", "list", "source", default=None)
        value: Any
        if isinstance(raw, str):
            text = raw.strip()
            if "{{" in text:
                value = self.env.evaluator.resolve_value(text, self.context)
                if value == text:
                    # unresolved placeholder
                    value = None
            elif text.startswith("["):
                try:
                    value = json.loads(text)
                except json.JSONDecodeError as e:
                    raise GraphError(
                        self.env.graph.id,
                        f"loop items are not valid JSON: {e}",
                        node_id=self.node.id,
                    ) from e
            else:
                value = self.context.resolve(text)
        else:
            value = raw

        if value is MISSING or value is None:
            return []
        if isinstance(value, str):
            # A template that resolved to a JSON array string
            if value.strip().startswith("["):
                try:
                    parsed = json.loads(value)
                except json.JSONDecodeError:
                    return [value]
                return parsed if isinstance(parsed, list) else [parsed]
            return [value]
        if isinstance(value, dict):
            return list(value.values())
        if isinstance(value, (list, tuple)):
            return list(value)
        return [value]
