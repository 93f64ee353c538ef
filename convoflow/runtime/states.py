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

"""Run status state machine.

RUNNING --(suspend)--> WAITING --(resume / timer)--> RUNNING
RUNNING --(no next node)--> COMPLETED
RUNNING --(ceiling / fault)--> ERROR
RUNNING, WAITING --(expiresAt passed)--> EXPIRED
"""


class RunStatus:
    """Run status constants."""

    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """Check if status is terminal (Completed, Expired or Error)."""
        return status in (cls.COMPLETED, cls.EXPIRED, cls.ERROR)

    @classmethod
    def is_active(cls, status: str) -> bool:
        """Check if status counts against the one-active-run rule."""
        return status in (cls.RUNNING, cls.WAITING)


ACTIVE_STATUSES: tuple[str, ...] = (RunStatus.RUNNING, RunStatus.WAITING)


# Allowed transitions; terminal states have no outgoing edges
RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    RunStatus.RUNNING: frozenset(
        {RunStatus.WAITING, RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.EXPIRED}
    ),
    RunStatus.WAITING: frozenset(
        {RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.EXPIRED}
    ),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.EXPIRED: frozenset(),
    RunStatus.ERROR: frozenset(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    """Check whether a status change is allowed.

    Args:
        from_status: The current status
        to_status: The requested status

    Returns:
        True if the transition is in the table
    """
    return to_status in RUN_TRANSITIONS.get(from_status, frozenset())


class WaitKind:
    """Kinds of suspension."""

    TIMER = "timer"
    REPLY = "reply"


class TimeoutPolicy:
    """What happens when a reply wait times out."""

    END = "END"
    GOTO_NODE = "GOTO_NODE"
