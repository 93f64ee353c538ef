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

"""Convoflow runtime core type definitions."""

import time
import uuid
from dataclasses import dataclass
from typing import NewType

# Type aliases for IDs
RunId = NewType("RunId", str)
GraphId = NewType("GraphId", str)
NodeId = NewType("NodeId", str)


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def run_id() -> RunId:
    """Generate a new RunId."""
    return RunId(generate_id())


def current_time_ms() -> int:
    """Get current time in milliseconds."""
    return int(time.time() * 1000)


class NodeKind:
    """Node kind constants, grouped by handler family.

    - Trigger: entry points, no-op when executed
    - Control: compute the next node from context, never suspend
    - Suspend: always suspend the run
    - Action: compose outbound effects or call external systems
    """

    # Triggers
    TRIGGER_MESSAGE = "TRIGGER_MESSAGE"
    TRIGGER_SCHEDULE = "TRIGGER_SCHEDULE"
    TRIGGER_MANUAL = "TRIGGER_MANUAL"

    # Control flow
    CONDITION = "CONDITION"
    SWITCH = "SWITCH"
    LOOP = "LOOP"

    # Suspend points
    WAIT = "WAIT"
    WAIT_REPLY = "WAIT_REPLY"

    # Actions
    SEND_MESSAGE = "SEND_MESSAGE"
    SEND_MEDIA = "SEND_MEDIA"
    SEND_BUTTONS = "SEND_BUTTONS"
    SET_VARIABLE = "SET_VARIABLE"
    HTTP_REQUEST = "HTTP_REQUEST"
    RUN_SCRIPT = "RUN_SCRIPT"
    END = "END"

    @classmethod
    def is_trigger(cls, kind: str) -> bool:
        """Check if kind is an entry point."""
        return kind in (cls.TRIGGER_MESSAGE, cls.TRIGGER_SCHEDULE, cls.TRIGGER_MANUAL)

    @classmethod
    def is_control(cls, kind: str) -> bool:
        """Check if kind is a control-flow node."""
        return kind in (cls.CONDITION, cls.SWITCH, cls.LOOP)

    @classmethod
    def is_suspend(cls, kind: str) -> bool:
        """Check if kind is a suspend point."""
        return kind in (cls.WAIT, cls.WAIT_REPLY)


class EdgeLabel:
    """Well-known edge labels used by control-flow nodes."""

    TRUE = "true"
    FALSE = "false"
    DEFAULT = "default"
    LOOP_BODY = ("loop", "body")
    LOOP_DONE = ("done", "exit")


@dataclass(frozen=True)
class ConversationKey:
    """Identity of one stream of interaction (tenant + channel session + contact).

    The mutex and the single-active-run check are keyed on this value.
    """

    tenant_id: str
    session_id: str
    contact_id: str

    @property
    def key(self) -> str:
        """Flat string form, stable across processes."""
        return f"{self.tenant_id}:{self.session_id}:{self.contact_id}"

    @property
    def lock_key(self) -> str:
        """Mutex key for this conversation."""
        return f"execution:lock:{self.key}"

    @classmethod
    def parse(cls, value: str) -> "ConversationKey":
        """Parse ``tenant:session:contact``.

        Raises:
            ValueError: If the value does not have exactly three parts
        """
        parts = value.split(":")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid conversation key '{value}', expected TENANT:SESSION:CONTACT")
        return cls(tenant_id=parts[0], session_id=parts[1], contact_id=parts[2])

    def __str__(self) -> str:
        return self.key
