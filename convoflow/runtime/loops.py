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

"""Loop emulation over a graph.

A LOOP node owns a frame on a stack kept under ``variables["__loop_stack"]``.
The first visit pushes the frame and enters the body. Every later arrival at
the LOOP node (a back-edge) or at a dead end inside the body advances the
frame instead of re-running the node. Exhausting the items pops the frame and
follows the ``done`` edge.

Frames are stored as plain dicts so the run record stays serializable.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .context import LOOP_STACK_KEY, Context
from .graph import Graph
from .types import EdgeLabel, NodeId

logger = logging.getLogger(__name__)


@dataclass
class LoopFrame:
    """Iteration state for one active LOOP node."""

    loop_node_id: NodeId
    items: list[Any] = field(default_factory=list)
    current_index: int | None = None
    item_var: str = "item"
    index_var: str = "index"
    iterations_executed: int = 0

    @property
    def initialized(self) -> bool:
        return self.current_index is not None

    @property
    def exhausted(self) -> bool:
        return self.current_index is not None and self.current_index >= len(self.items)

    def to_dict(self) -> dict:
        return {
            "loopNodeId": self.loop_node_id,
            "items": self.items,
            "currentIndex": self.current_index,
            "itemVar": self.item_var,
            "indexVar": self.index_var,
            "iterationsExecuted": self.iterations_executed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LoopFrame":
        return cls(
            loop_node_id=NodeId(data["loopNodeId"]),
            items=list(data.get("items") or []),
            current_index=data.get("currentIndex"),
            item_var=data.get("itemVar", "item"),
            index_var=data.get("indexVar", "index"),
            iterations_executed=data.get("iterationsExecuted", 0),
        )


def load_stack(context: Context) -> list[LoopFrame]:
    """Read the frame stack, innermost frame last."""
    raw = context.variables.get(LOOP_STACK_KEY) or []
    return [LoopFrame.from_dict(f) for f in raw]


def save_stack(context: Context, frames: list[LoopFrame]) -> None:
    """Write the frame stack back, removing the key when empty."""
    if frames:
        context.variables[LOOP_STACK_KEY] = [f.to_dict() for f in frames]
    else:
        context.variables.pop(LOOP_STACK_KEY, None)


def top_frame(context: Context) -> LoopFrame | None:
    frames = load_stack(context)
    return frames[-1] if frames else None


def find_frame(context: Context, loop_node_id: str) -> LoopFrame | None:
    """The frame owned by ``loop_node_id``, if that loop is active."""
    for frame in load_stack(context):
        if frame.loop_node_id == loop_node_id:
            return frame
    return None


def in_loop(context: Context) -> bool:
    return bool(context.variables.get(LOOP_STACK_KEY))


def body_target(graph: Graph, loop_node_id: str) -> NodeId | None:
    """Target of the loop's body edge (``loop``/``body``, else an unlabelled edge)."""
    target = graph.next_target(loop_node_id, *EdgeLabel.LOOP_BODY)
    if target is not None:
        return target
    for edge in graph.outgoing(loop_node_id):
        if edge.label is None:
            return edge.target
    return None


def done_target(graph: Graph, loop_node_id: str) -> NodeId | None:
    """Target of the loop's exhaustion edge (``done``/``exit``)."""
    return graph.next_target(loop_node_id, *EdgeLabel.LOOP_DONE)


def _bind(context: Context, frame: LoopFrame) -> None:
    context.variables[frame.item_var] = frame.items[frame.current_index]
    context.variables[frame.index_var] = frame.current_index


def enter_loop(
    graph: Graph,
    context: Context,
    loop_node_id: NodeId,
    items: list[Any],
    item_var: str = "item",
    index_var: str = "index",
) -> NodeId | None:
    """First visit to a LOOP node: push a frame and enter the body.

    An empty item list (or a loop with no body edge) never pushes a frame and
    goes straight to the exhaustion edge.

    Returns:
        The next node id
    """
    body = body_target(graph, loop_node_id)
    if not items or body is None:
        logger.debug("Loop skipped: loop_node_id=%s items=%d", loop_node_id, len(items))
        return _after_exhaustion(graph, context, loop_node_id)

    frames = load_stack(context)
    # Re-entering an outer loop from scratch drops anything it left behind
    frames = [f for f in frames if f.loop_node_id != loop_node_id]
    frame = LoopFrame(
        loop_node_id=loop_node_id,
        items=list(items),
        current_index=0,
        item_var=item_var,
        index_var=index_var,
        iterations_executed=1,
    )
    frames.append(frame)
    save_stack(context, frames)
    _bind(context, frame)
    logger.debug(
        "Loop entered: loop_node_id=%s items=%d depth=%d",
        loop_node_id,
        len(items),
        len(frames),
    )
    return body


def advance_loop(graph: Graph, context: Context, loop_node_id: str | None = None) -> NodeId | None:
    """Advance an active loop after one pass of its body.

    Args:
        graph: The run's graph
        context: The run's context
        loop_node_id: The loop reached through a back-edge; when None the
            innermost frame is advanced (the body ran into a dead end)

    Returns:
        The body target for the next item, the exhaustion target, or None
        when there is nothing left to run
    """
    frames = load_stack(context)
    if not frames:
        return None

    if loop_node_id is None:
        index = len(frames) - 1
    else:
        index = next((i for i, f in enumerate(frames) if f.loop_node_id == loop_node_id), None)
        if index is None:
            return None
        if index < len(frames) - 1:
            logger.debug(
                "Loop back-edge discards inner frames: loop_node_id=%s discarded=%d",
                loop_node_id,
                len(frames) - 1 - index,
            )
        del frames[index + 1 :]

    frame = frames[index]
    frame.current_index = (frame.current_index or 0) + 1
    if frame.current_index < len(frame.items):
        frame.iterations_executed += 1
        save_stack(context, frames)
        _bind(context, frame)
        return body_target(graph, frame.loop_node_id)

    frames.pop()
    save_stack(context, frames)
    logger.debug(
        "Loop exhausted: loop_node_id=%s iterations=%d",
        frame.loop_node_id,
        frame.iterations_executed,
    )
    return _after_exhaustion(graph, context, frame.loop_node_id)


def _after_exhaustion(graph: Graph, context: Context, loop_node_id: str) -> NodeId | None:
    target = done_target(graph, loop_node_id)
    if target is not None:
        return target
    # No exhaustion edge: an enclosing loop moves on to its next item
    if in_loop(context):
        return advance_loop(graph, context)
    return None
