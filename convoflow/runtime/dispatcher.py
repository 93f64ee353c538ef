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

"""Effect dispatcher.

Two registries:
- node kind -> handler class, used to execute nodes
- effect kind -> sink callable, used to deliver outbound effects
  (messages, media, buttons) through channel adapters
"""

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from .errors import GraphError
from .handlers import NODE_HANDLERS, HandlerEnv, NodeHandler
from .result import Effect, StepResult

if TYPE_CHECKING:
    from .graph import Node
    from .run import Run

logger = logging.getLogger(__name__)

# sink(effect, run) -> None
EffectSink = Callable[[Effect, "Run"], None]


class EffectDispatcher:
    """Registry of node handlers and effect sinks."""

    def __init__(self, handlers: dict[str, type[NodeHandler]] | None = None) -> None:
        self._handlers: dict[str, type[NodeHandler]] = dict(
            NODE_HANDLERS if handlers is None else handlers
        )
        self._sinks: dict[str, list[EffectSink]] = {}

    def register(self, kind: str, handler_class: type[NodeHandler]) -> None:
        """Register (or replace) the handler for a node kind.

        Args:
            kind: The node kind, e.g. "SEND_EMAIL"
            handler_class: NodeHandler subclass
        """
        self._handlers[kind.upper()] = handler_class

    def unregister(self, kind: str) -> None:
        self._handlers.pop(kind.upper(), None)

    def can_dispatch(self, kind: str) -> bool:
        """Check if a handler is registered for the node kind."""
        return kind in self._handlers

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, node: "Node", env: HandlerEnv) -> StepResult:
        """Execute a node with its registered handler.

        Raises:
            GraphError: If no handler is registered for the node kind
        """
        handler_class = self._handlers.get(node.kind)
        if handler_class is None:
            raise GraphError(
                env.graph.id, f"no handler for node kind '{node.kind}'", node_id=node.id
            )
        return handler_class(node, env).process()

    def register_sink(self, effect_kind: str, sink: EffectSink) -> None:
        """Register a delivery callable for an effect kind.

        Args:
            effect_kind: e.g. EffectKind.SEND_MESSAGE
            sink: Function (effect, run) -> None
        """
        self._sinks.setdefault(effect_kind, []).append(sink)

    def has_sink(self, effect_kind: str) -> bool:
        return bool(self._sinks.get(effect_kind))

    def apply_effects(self, run: "Run", effects: Sequence[Effect]) -> int:
        """Deliver effects through their sinks.

        Failures are logged and swallowed; the run always advances.

        Returns:
            Number of effects delivered by at least one sink
        """
        delivered = 0
        for effect in effects:
            sinks = self._sinks.get(effect.kind)
            if not sinks:
                logger.warning(
                    "Effect dropped, no sink registered: run_id=%s kind=%s", run.id, effect.kind
                )
                continue
            ok = False
            for sink in sinks:
                try:
                    sink(effect, run)
                    ok = True
                except Exception:
                    logger.warning(
                        "Effect sink failed: run_id=%s kind=%s",
                        run.id,
                        effect.kind,
                        exc_info=True,
                    )
            if ok:
                delivered += 1
        return delivered
