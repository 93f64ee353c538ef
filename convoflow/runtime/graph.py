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

"""Graph model: nodes, edges and the immutable graph loaded for a run."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import GraphError
from .types import GraphId, NodeId, NodeKind


@dataclass(frozen=True)
class Node:
    """A typed node with free-form configuration."""

    id: NodeId
    kind: str
    config: dict = field(default_factory=dict, hash=False, compare=False)

    def get(self, *keys: str, default: Any = None) -> Any:
        """Return the first config value present under any of the keys.

        Lets authors write either ``timeoutSeconds`` or ``timeout_seconds``.
        """
        for key in keys:
            if key in self.config and self.config[key] is not None:
                return self.config[key]
        return default

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"id": self.id, "type": self.kind, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, data: dict) -> "Node":
        """Create from a dictionary (``type`` or ``kind``; ``config`` or ``data``)."""
        kind = data.get("type") or data.get("kind")
        if not data.get("id") or not kind:
            raise ValueError(f"Node requires 'id' and 'type': {data!r}")
        config = data.get("config")
        if config is None:
            config = data.get("data") or {}
        return cls(id=NodeId(str(data["id"])), kind=str(kind).upper(), config=dict(config))


@dataclass(frozen=True)
class Edge:
    """A directed edge, optionally labelled for branching nodes."""

    source: NodeId
    target: NodeId
    label: str | None = None
    id: str | None = None

    def matches(self, label: str | None) -> bool:
        """Case-insensitive label comparison."""
        if label is None:
            return self.label is None
        return self.label is not None and self.label.strip().lower() == label.strip().lower()

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result: dict = {"source": self.source, "target": self.target}
        if self.label is not None:
            result["label"] = self.label
        if self.id:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Edge":
        """Create from a dictionary; ``sourceHandle`` is accepted as the label."""
        if not data.get("source") or not data.get("target"):
            raise ValueError(f"Edge requires 'source' and 'target': {data!r}")
        label = data.get("label")
        if label is None:
            label = data.get("sourceHandle")
        return cls(
            source=NodeId(str(data["source"])),
            target=NodeId(str(data["target"])),
            label=str(label) if label not in (None, "") else None,
            id=data.get("id"),
        )


@dataclass
class Graph:
    """A directed graph of typed nodes, immutable once loaded for a run."""

    id: GraphId
    nodes: list[Node]
    edges: list[Edge]
    tenant_id: str = ""
    name: str = ""
    description: str = ""
    active: bool = True
    version: int = 1
    _nodes_by_id: dict[str, Node] = field(default_factory=dict, init=False, repr=False)
    _outgoing: dict[str, list[Edge]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for node in self.nodes:
            self._nodes_by_id[node.id] = node
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)

    def get_node(self, node_id: str) -> Node | None:
        """Look up a node by id."""
        return self._nodes_by_id.get(node_id)

    def require_node(self, node_id: str) -> Node:
        """Look up a node by id.

        Raises:
            GraphError: If no such node exists
        """
        node = self._nodes_by_id.get(node_id)
        if node is None:
            raise GraphError(self.id, "node not found", node_id=node_id)
        return node

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes_by_id

    def outgoing(self, node_id: str) -> Sequence[Edge]:
        """All edges leaving a node, in authoring order."""
        return self._outgoing.get(node_id, [])

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def next_target(self, node_id: str, *labels: str | None) -> NodeId | None:
        """Target of the first edge leaving ``node_id`` that carries one of ``labels``.

        With no labels, the first unlabelled edge wins, then any edge at all,
        which is how single-exit nodes are authored in practice.
        """
        edges = self.outgoing(node_id)
        if not labels:
            for edge in edges:
                if edge.label is None:
                    return edge.target
            return edges[0].target if edges else None
        for label in labels:
            for edge in edges:
                if edge.matches(label):
                    return edge.target
        return None

    def default_target(self, node_id: str) -> NodeId | None:
        """Target of the ``default`` fallback edge, or an unlabelled edge."""
        target = self.next_target(node_id, "default")
        if target is not None:
            return target
        for edge in self.outgoing(node_id):
            if edge.label is None:
                return edge.target
        return None

    def trigger_node(self) -> Node | None:
        """The first trigger node, if the graph has one."""
        for node in self.nodes:
            if NodeKind.is_trigger(node.kind):
                return node
        return None

    def entry_node(self) -> Node | None:
        """First node with no incoming edges, used when there is no trigger."""
        targets = {e.target for e in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node
        return self.nodes[0] if self.nodes else None

    def start_pointer(self) -> NodeId | None:
        """Where a new run is positioned: the edge following the trigger node.

        Raises:
            GraphError: If the graph has no nodes
        """
        trigger = self.trigger_node()
        if trigger is not None:
            return self.next_target(trigger.id)
        entry = self.entry_node()
        if entry is None:
            raise GraphError(self.id, "graph has no nodes")
        return entry.id

    def validate(self) -> list[str]:
        """Check structural invariants.

        Returns:
            A list of problems; empty when the graph is valid
        """
        problems: list[str] = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                problems.append(f"duplicate node id '{node.id}'")
            seen.add(node.id)
        for edge in self.edges:
            if edge.source not in self._nodes_by_id:
                problems.append(f"edge source '{edge.source}' does not exist")
            if edge.target not in self._nodes_by_id:
                problems.append(f"edge target '{edge.target}' does not exist")
        if not self.nodes:
            problems.append("graph has no nodes")
        for node in self.nodes:
            if node.kind == NodeKind.WAIT_REPLY:
                target = node.get("timeoutTargetNodeId", "timeout_target_node_id")
                if target and target not in self._nodes_by_id:
                    problems.append(f"node '{node.id}' timeout target '{target}' does not exist")
        return problems

    def ensure_valid(self) -> None:
        """Raise GraphError on the first structural problem."""
        problems = self.validate()
        if problems:
            raise GraphError(self.id, "; ".join(problems))

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "isActive": self.active,
            "version": self.version,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Graph":
        """Create from a dictionary, accepting camelCase or snake_case keys."""
        graph_id = data.get("id") or data.get("_id") or data.get("uuid")
        if not graph_id:
            raise ValueError("Graph requires an 'id'")
        active = data.get("isActive", data.get("is_active", data.get("active", True)))
        return cls(
            id=GraphId(str(graph_id)),
            nodes=[Node.from_dict(n) for n in data.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in data.get("edges", [])],
            tenant_id=str(data.get("tenantId", data.get("tenant_id", "")) or ""),
            name=data.get("name", "") or "",
            description=data.get("description", "") or "",
            active=bool(active),
            version=int(data.get("version", 1) or 1),
        )
