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

"""Inbound event routing.

Channel adapters hand every inbound message to ``InboundRouter``. A message
for a conversation with an active run resumes that run; otherwise the
tenant's graphs are searched for a TRIGGER_MESSAGE that matches the text.
"""

import logging
from typing import Any

from .errors import ConflictError
from .graph import Graph
from .handlers import message_matches
from .orchestrator import Orchestrator, as_input
from .run import Run
from .types import ConversationKey, NodeKind

logger = logging.getLogger(__name__)


class InboundRouter:
    """Routes inbound messages to ``resume`` or ``start``."""

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator

    def match_graph(self, tenant_id: str, text: str) -> Graph | None:
        """First active graph of the tenant whose message trigger fires on ``text``."""
        for graph in self.orchestrator.graphs.list_graphs(tenant_id, active_only=True):
            for node in graph.nodes:
                if node.kind == NodeKind.TRIGGER_MESSAGE and message_matches(node, text):
                    return graph
        return None

    def handle_message(
        self, conversation: ConversationKey, text: str, payload: dict | None = None
    ) -> Run | None:
        """Deliver an inbound message.

        Args:
            conversation: Who sent it
            text: The message text
            payload: Full inbound payload (defaults to ``{"message": text}``)

        Returns:
            The resumed or started run, or None if nothing matched

        Raises:
            LockedError: If the conversation's run is being driven right now
        """
        inbound = dict(payload) if payload else as_input(text)
        inbound.setdefault("message", text)

        active = self.orchestrator.store.find_active(conversation.key)
        if active is not None:
            if not active.is_expired(self.orchestrator.clock()):
                logger.debug("Inbound resumes run: run_id=%s", active.id)
                return self.orchestrator.resume(active, inbound)
            self.orchestrator.expire(active)

        graph = self.match_graph(conversation.tenant_id, text)
        if graph is None:
            logger.debug("No trigger matched: conversation=%s", conversation.key)
            return None
        logger.info(
            "Trigger matched: graph_id=%s conversation=%s", graph.id, conversation.key
        )
        return self.trigger(graph.id, conversation, inbound)

    def trigger(self, graph_id: str, conversation: ConversationKey, seed: Any = None) -> Run | None:
        """Start a graph for a conversation (manual and scheduled callers).

        A start that loses the race to a concurrent one returns the winner's run.
        """
        try:
            return self.orchestrator.start(graph_id, conversation, seed)
        except ConflictError as e:
            logger.info(
                "Start lost to an active run: conversation=%s run_id=%s",
                e.conversation_key,
                e.run_id,
            )
            return self.orchestrator.store.find_active(conversation.key)
