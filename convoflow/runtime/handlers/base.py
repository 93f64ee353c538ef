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

"""Base classes for node handlers."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import HandlerFault
from ..result import StepResult
from ..types import NodeId, current_time_ms

if TYPE_CHECKING:
    import requests

    from ...config import EngineConfig
    from ..context import Context
    from ..expression import ExpressionEvaluator
    from ..graph import Graph, Node
    from ..run import Run
    from ..script_executor import ScriptExecutor

logger = logging.getLogger(__name__)


@dataclass
class HandlerEnv:
    """Services and state a handler may use while executing one node."""

    graph: "Graph"
    run: "Run"
    config: "EngineConfig"
    evaluator: "ExpressionEvaluator"
    http: "requests.Session | None" = None
    scripts: "ScriptExecutor | None" = None
    clock: Callable[[], int] = field(default=current_time_ms)

    @property
    def context(self) -> "Context":
        return self.run.context


def addressed(run: "Run", payload: dict) -> dict:
    """Attach the conversation address to an effect payload."""
    conversation = run.conversation
    return {
        "tenantId": conversation.tenant_id,
        "sessionId": conversation.session_id,
        "contactId": conversation.contact_id,
        "runId": run.id,
        **payload,
    }


class NodeHandler(ABC):
    """Abstract base for node handlers.

    Each node kind has a handler that:
    - Reads its configuration and the run context
    - Returns a StepResult describing where the run goes next
    - Never touches persistence, the mutex or lifecycle events
    """

    def __init__(self, node: "Node", env: HandlerEnv):
        """Initialize handler.

        Args:
            node: The node being executed
            env: Graph, run and services for this execution
        """
        self.node = node
        self.env = env

    def process(self) -> StepResult:
        """Execute this node.

        Control-flow and suspend handlers let errors propagate; the
        orchestrator treats them as fatal for the run.
        """
        logger.debug(
            "Node dispatch: run_id=%s node_id=%s kind=%s",
            self.env.run.id,
            self.node.id,
            self.node.kind,
        )
        return self.execute()

    @abstractmethod
    def execute(self) -> StepResult:
        """Node-specific behavior.

        Returns:
            StepResult for the orchestrator
        """
        ...

    @property
    def context(self) -> "Context":
        return self.env.context

    def config(self, *keys: str, default: Any = None) -> Any:
        """Raw config value under the first key present."""
        return self.node.get(*keys, default=default)

    def text(self, *keys: str, default: str = "") -> str:
        """Config value with ``{{placeholders}}`` interpolated."""
        value = self.node.get(*keys, default=default)
        if value is None:
            return default
        return self.env.evaluator.interpolate(str(value), self.context)

    def resolved(self, *keys: str, default: Any = None) -> Any:
        """Config value resolved as a template (raw value for a lone placeholder)."""
        value = self.node.get(*keys, default=default)
        return self.env.evaluator.resolve_value(value, self.context)

    def next_node(self, *labels: str | None) -> NodeId | None:
        """Follow this node's outgoing edge."""
        return self.env.graph.next_target(self.node.id, *labels)


class ActionHandler(NodeHandler):
    """Base for action nodes.

    An action's own failure never aborts the run: it is folded into the
    node output as ``{"error", "errorType"}`` and the run follows the
    node's outgoing edge so downstream nodes can branch on it.
    """

    def process(self) -> StepResult:
        try:
            return super().process()
        except HandlerFault as fault:
            return self._recover(fault)
        except Exception as e:
            fault = HandlerFault(self.node.id, str(e) or type(e).__name__)
            fault.__cause__ = e
            return self._recover(fault)

    def _recover(self, fault: HandlerFault) -> StepResult:
        logger.warning(
            "Action failed, continuing: run_id=%s node_id=%s kind=%s error=%s",
            self.env.run.id,
            self.node.id,
            self.node.kind,
            fault.message,
        )
        return StepResult.advance(self.next_node(), output=fault.to_output())

    def fail(self, message: str) -> HandlerFault:
        """Build a fault for this node, for ``raise self.fail(...)``."""
        return HandlerFault(self.node.id, message)
