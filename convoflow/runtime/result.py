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

"""Handler -> orchestrator contract."""

from dataclasses import dataclass, field
from typing import Any

from .types import NodeId


class EffectKind:
    """Outbound effect kinds delivered through registered sinks."""

    SEND_MESSAGE = "send_message"
    SEND_MEDIA = "send_media"
    SEND_INTERACTIVE = "send_interactive"


@dataclass
class Effect:
    """A side effect requested by a handler, applied by the dispatcher."""

    kind: str
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "payload": self.payload}


@dataclass
class StepResult:
    """What a handler tells the orchestrator after executing one node.

    Attributes:
        next_node_id: The node to move to, None when there is no next edge
        suspend: Whether the run must wait before continuing
        suspend_seconds: Timer length for a suspension
        wait_kind: WaitKind.TIMER or WaitKind.REPLY when suspending
        on_timeout: TimeoutPolicy applied when a reply wait times out
        timeout_target: Node to jump to for the GOTO_NODE policy
        output: Replaces context.output when not None
        effects: Outbound side effects to apply
        reason: Why the run finished, set by terminal nodes
    """

    next_node_id: NodeId | None = None
    suspend: bool = False
    suspend_seconds: float | None = None
    wait_kind: str | None = None
    on_timeout: str | None = None
    timeout_target: NodeId | None = None
    output: dict | None = None
    effects: list[Effect] = field(default_factory=list)
    reason: str | None = None
    terminal: bool = False

    @classmethod
    def advance(
        cls, next_node_id: NodeId | None, output: dict | None = None, **kwargs: Any
    ) -> "StepResult":
        """Move on to ``next_node_id``."""
        return cls(next_node_id=next_node_id, output=output, **kwargs)

    @classmethod
    def finish(cls, output: dict | None = None, reason: str | None = None) -> "StepResult":
        """End the run here."""
        return cls(next_node_id=None, output=output, reason=reason, terminal=True)
