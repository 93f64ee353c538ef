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

"""Suspend node handlers: WAIT (timer) and WAIT_REPLY (inbound reply)."""

import logging
from typing import Any

from ..context import Context
from ..errors import GraphError
from ..graph import Node
from ..result import Effect, EffectKind, StepResult
from ..states import TimeoutPolicy, WaitKind
from .base import NodeHandler, addressed

logger = logging.getLogger(__name__)


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class WaitHandler(NodeHandler):
    """Pause for a fixed time, then continue with the next node.

    Config: ``seconds``, ``minutes`` or ``hours`` (summed).
    """

    def execute(self) -> StepResult:
        seconds = (
            _number(self.resolved("seconds", "delaySeconds", "delay_seconds"))
            + _number(self.resolved("minutes")) * 60
            + _number(self.resolved("hours")) * 3600
        )
        if seconds < 0:
            raise GraphError(self.env.graph.id, "wait duration is negative", node_id=self.node.id)
        return StepResult(
            next_node_id=self.next_node(),
            suspend=True,
            suspend_seconds=seconds,
            wait_kind=WaitKind.TIMER,
            output={"waitedSeconds": seconds},
        )


class WaitReplyHandler(NodeHandler):
    """Wait for the contact's next message.

    Config:
        saveAs: variable that receives the reply (default ``reply``)
        timeoutSeconds: how long to wait (engine default when absent)
        onTimeout: END or GOTO_NODE
        timeoutTargetNodeId: node to jump to for GOTO_NODE
        mapping: reply -> stored value, e.g. ``{"2": "optionB"}``
        message: optional prompt sent before waiting
    """

    def execute(self) -> StepResult:
        timeout = _number(
            self.config("timeoutSeconds", "timeout_seconds"),
            default=float(self.env.config.wait_reply_timeout_seconds),
        )
        on_timeout = str(self.config("onTimeout", "on_timeout", default=TimeoutPolicy.END)).upper()
        target = self.config("timeoutTargetNodeId", "timeout_target_node_id", "timeoutTarget")
        if on_timeout == TimeoutPolicy.GOTO_NODE:
            if not target or not self.env.graph.has_node(target):
                raise GraphError(
                    self.env.graph.id,
                    f"timeout target '{target}' does not exist",
                    node_id=self.node.id,
                )
        elif on_timeout != TimeoutPolicy.END:
            raise GraphError(
                self.env.graph.id, f"unknown onTimeout policy '{on_timeout}'", node_id=self.node.id
            )

        effects = []
        prompt = self.text("message", "prompt")
        if prompt:
            effects.append(
                Effect(
                    kind=EffectKind.SEND_MESSAGE,
                    payload=addressed(self.env.run, {"message": prompt}),
                )
            )

        return StepResult(
            next_node_id=self.next_node(),
            suspend=True,
            suspend_seconds=timeout,
            wait_kind=WaitKind.REPLY,
            on_timeout=on_timeout,
            timeout_target=target if on_timeout == TimeoutPolicy.GOTO_NODE else None,
            effects=effects,
        )


def map_reply(mapping: dict | None, text: str) -> Any:
    """Translate a reply through a WAIT_REPLY mapping.

    Lookup is exact first, then trimmed and case-insensitive. Unmapped
    replies come back unchanged.
    """
    if not mapping:
        return text
    if text in mapping:
        return mapping[text]
    wanted = text.strip().lower()
    for key, value in mapping.items():
        if str(key).strip().lower() == wanted:
            return value
    return text


def process_reply(node: Node, text: str, context: Context) -> Any:
    """Store an inbound reply for the WAIT_REPLY node the run is parked on.

    Returns:
        The stored value
    """
    save_as = node.get("saveAs", "save_as", "variable", default="reply")
    value = map_reply(node.get("mapping"), text)
    context.set_variable(save_as, value)
    logger.debug("Reply stored: node_id=%s variable=%s mapped=%s", node.id, save_as, value != text)
    return value
