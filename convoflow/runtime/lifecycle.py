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

"""Run lifecycle events.

Fire-and-forget notifications for observability and UI layers.
Publishing MUST NOT affect execution semantics: failures are logged and
swallowed by the orchestrator.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .run import Run

logger = logging.getLogger(__name__)


class EventType:
    """Lifecycle event type constants."""

    STARTED = "execution.started"
    RESUMED = "execution.resumed"
    WAITING = "execution.waiting"
    COMPLETED = "execution.completed"
    EXPIRED = "execution.expired"
    ERROR = "execution.error"
    NODE_EXECUTED = "node.executed"

    ALL = (STARTED, RESUMED, WAITING, COMPLETED, EXPIRED, ERROR, NODE_EXECUTED)


@dataclass
class LifecycleEvent:
    """A single lifecycle event."""

    event_type: str
    run_id: str
    graph_id: str
    tenant_id: str
    session_id: str
    contact_id: str
    node_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    payload: dict = field(default_factory=dict)

    @classmethod
    def for_run(
        cls,
        event_type: str,
        run: "Run",
        node_id: str | None = None,
        **payload,
    ) -> "LifecycleEvent":
        """Build an event carrying a run's identity and pointer."""
        return cls(
            event_type=event_type,
            run_id=run.id,
            graph_id=run.graph_id,
            tenant_id=run.conversation.tenant_id,
            session_id=run.conversation.session_id,
            contact_id=run.conversation.contact_id,
            node_id=node_id if node_id is not None else run.pointer,
            payload=payload,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {
            "type": self.event_type,
            "executionId": self.run_id,
            "workflowId": self.graph_id,
            "tenantId": self.tenant_id,
            "sessionId": self.session_id,
            "contactId": self.contact_id,
            "timestamp": self.timestamp,
        }
        if self.node_id:
            result["nodeId"] = self.node_id
        if self.payload:
            result.update(self.payload)
        return result


@runtime_checkable
class LifecyclePublisher(Protocol):
    """Event sink for lifecycle events."""

    def publish(self, event: LifecycleEvent) -> None:
        ...


class NullPublisher:
    """Discards every event."""

    def publish(self, event: LifecycleEvent) -> None:
        pass


Subscriber = Callable[[LifecycleEvent], None]


class LocalEventBus:
    """In-process publisher with per-type and wildcard subscribers.

    Subscribers are called synchronously on the publishing thread. A
    subscriber that raises is logged and skipped.
    """

    WILDCARD = "*"

    def __init__(self, keep_history: bool = True, max_history: int = 1000):
        """Initialize the bus.

        Args:
            keep_history: Whether to remember published events
            max_history: Oldest events are dropped beyond this many
        """
        self.keep_history = keep_history
        self.max_history = max_history
        self.events: list[LifecycleEvent] = []
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Subscribe to one event type, or ``"*"`` for all."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: LifecycleEvent) -> None:
        with self._lock:
            if self.keep_history:
                self.events.append(event)
                if len(self.events) > self.max_history:
                    del self.events[: len(self.events) - self.max_history]
            callbacks = list(self._subscribers.get(event.event_type, []))
            callbacks += self._subscribers.get(self.WILDCARD, [])
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.warning(
                    "Event subscriber failed: event_type=%s run_id=%s",
                    event.event_type,
                    event.run_id,
                    exc_info=True,
                )

    def of_type(self, event_type: str) -> list[LifecycleEvent]:
        """History filtered by type."""
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def types(self) -> list[str]:
        """Event types in publication order."""
        with self._lock:
            return [e.event_type for e in self.events]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
