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

"""Durable run record."""

import copy
from dataclasses import dataclass, field

from .context import Context
from .states import RunStatus
from .types import ConversationKey, GraphId, NodeId, RunId


@dataclass
class WaitState:
    """Bookkeeping for a suspended run.

    ``token`` changes on every suspension so that a timer armed for an
    earlier wait can recognize it is stale.
    """

    kind: str
    node_id: NodeId
    token: str
    timeout_seconds: float | None = None
    resume_at: int | None = None
    on_timeout: str | None = None
    timeout_target: NodeId | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "nodeId": self.node_id,
            "token": self.token,
            "timeoutSeconds": self.timeout_seconds,
            "resumeAt": self.resume_at,
            "onTimeout": self.on_timeout,
            "timeoutTarget": self.timeout_target,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "WaitState | None":
        if not data:
            return None
        return cls(
            kind=data["kind"],
            node_id=NodeId(data["nodeId"]),
            token=data["token"],
            timeout_seconds=data.get("timeoutSeconds"),
            resume_at=data.get("resumeAt"),
            on_timeout=data.get("onTimeout"),
            timeout_target=data.get("timeoutTarget"),
        )


@dataclass
class Run:
    """One execution of a graph for one conversation.

    Attributes:
        id: Unique run identifier
        conversation: Owning tenant + session + contact identity
        graph_id: The graph being executed
        pointer: Node positioned for execution, None once finished
        status: One of RunStatus
        context: Mutable per-run state
        interaction_count: Inbound replies consumed so far
        started_at: Creation time in ms
        expires_at: Deadline in ms after which the sweep expires the run
        completed_at: Terminal transition time in ms
        error: Message recorded when status is ERROR
        wait: Suspension bookkeeping while WAITING
    """

    id: RunId
    conversation: ConversationKey
    graph_id: GraphId
    pointer: NodeId | None
    status: str
    context: Context
    interaction_count: int = 0
    started_at: int = 0
    expires_at: int = 0
    updated_at: int = 0
    completed_at: int | None = None
    error: str | None = None
    wait: WaitState | None = None
    steps_executed: int = 0
    history: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return RunStatus.is_terminal(self.status)

    @property
    def is_active(self) -> bool:
        return RunStatus.is_active(self.status)

    def is_expired(self, now_ms: int) -> bool:
        """Check whether the run's deadline has passed."""
        return bool(self.expires_at) and self.expires_at <= now_ms

    def clone(self) -> "Run":
        """Create a deep copy of this run."""
        return Run(
            id=self.id,
            conversation=self.conversation,
            graph_id=self.graph_id,
            pointer=self.pointer,
            status=self.status,
            context=self.context.clone(),
            interaction_count=self.interaction_count,
            started_at=self.started_at,
            expires_at=self.expires_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            error=self.error,
            wait=copy.copy(self.wait),
            steps_executed=self.steps_executed,
            history=list(self.history),
        )

    def to_dict(self) -> dict:
        """Convert to the persisted record shape."""
        return {
            "id": self.id,
            "tenantId": self.conversation.tenant_id,
            "sessionId": self.conversation.session_id,
            "contactId": self.conversation.contact_id,
            "conversationKey": self.conversation.key,
            "graphId": self.graph_id,
            "currentNodeId": self.pointer,
            "status": self.status,
            "active": self.is_active,
            "context": copy.deepcopy(self.context.to_dict()),
            "interactionCount": self.interaction_count,
            "startedAt": self.started_at,
            "expiresAt": self.expires_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "error": self.error,
            "wait": self.wait.to_dict() if self.wait else None,
            "stepsExecuted": self.steps_executed,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Run":
        """Create from the persisted record shape."""
        return cls(
            id=RunId(data["id"]),
            conversation=ConversationKey(
                tenant_id=data["tenantId"],
                session_id=data["sessionId"],
                contact_id=data["contactId"],
            ),
            graph_id=GraphId(data["graphId"]),
            pointer=data.get("currentNodeId"),
            status=data["status"],
            context=Context.from_dict(copy.deepcopy(data.get("context"))),
            interaction_count=data.get("interactionCount", 0),
            started_at=data.get("startedAt", 0),
            expires_at=data.get("expiresAt", 0),
            updated_at=data.get("updatedAt", 0),
            completed_at=data.get("completedAt"),
            error=data.get("error"),
            wait=WaitState.from_dict(data.get("wait")),
            steps_executed=data.get("stepsExecuted", 0),
            history=list(data.get("history") or []),
        )
