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

"""Shared builders for graph and orchestrator tests."""

from dataclasses import dataclass, field

from convoflow.config import EngineConfig
from convoflow.runtime.context import Context
from convoflow.runtime.dispatcher import EffectDispatcher
from convoflow.runtime.expression import ExpressionEvaluator
from convoflow.runtime.graph import Graph
from convoflow.runtime.handlers import HandlerEnv
from convoflow.runtime.lifecycle import LocalEventBus
from convoflow.runtime.memory_store import MemoryStore
from convoflow.runtime.orchestrator import Orchestrator
from convoflow.runtime.result import Effect, EffectKind
from convoflow.runtime.run import Run
from convoflow.runtime.states import RunStatus
from convoflow.runtime.timers import ManualScheduler
from convoflow.runtime.types import ConversationKey, run_id

START_MS = 1_700_000_000_000


def node(node_id: str, kind: str, **config) -> dict:
    return {"id": node_id, "type": kind, "config": config}


def edge(source: str, target: str, label: str | None = None) -> dict:
    data = {"source": source, "target": target}
    if label is not None:
        data["label"] = label
    return data


def chain(*node_ids: str) -> list[dict]:
    """Unlabelled edges linking the ids in order."""
    return [edge(a, b) for a, b in zip(node_ids, node_ids[1:])]


def make_graph(
    nodes: list[dict],
    edges: list[dict],
    graph_id: str = "g1",
    tenant_id: str = "t1",
    name: str = "",
    active: bool = True,
) -> Graph:
    return Graph.from_dict(
        {
            "id": graph_id,
            "tenantId": tenant_id,
            "name": name or graph_id,
            "isActive": active,
            "nodes": nodes,
            "edges": edges,
        }
    )


def conversation(contact: str = "5511999", tenant: str = "t1") -> ConversationKey:
    return ConversationKey(tenant_id=tenant, session_id="whatsapp", contact_id=contact)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start_ms: int = START_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@dataclass
class Harness:
    """An orchestrator wired to in-memory collaborators."""

    orchestrator: Orchestrator
    store: MemoryStore
    bus: LocalEventBus
    scheduler: ManualScheduler
    clock: FakeClock
    outbox: list[Effect] = field(default_factory=list)

    def messages(self) -> list[str]:
        return [e.payload.get("message") for e in self.outbox if e.kind == EffectKind.SEND_MESSAGE]

    def event_types(self) -> list[str]:
        return self.bus.types()

    def reload(self, run: Run) -> Run:
        return self.store.get_run(run.id)


def make_harness(*graphs: Graph, config: EngineConfig | None = None, **kwargs) -> Harness:
    store = MemoryStore()
    for graph in graphs:
        store.save_graph(graph)
    bus = LocalEventBus()
    scheduler = ManualScheduler()
    clock = FakeClock()
    harness = Harness(
        orchestrator=None,  # type: ignore[arg-type]
        store=store,
        bus=bus,
        scheduler=scheduler,
        clock=clock,
    )
    dispatcher = kwargs.pop("dispatcher", None) or EffectDispatcher()
    for kind in (EffectKind.SEND_MESSAGE, EffectKind.SEND_MEDIA, EffectKind.SEND_INTERACTIVE):
        dispatcher.register_sink(kind, lambda effect, run: harness.outbox.append(effect))
    harness.orchestrator = Orchestrator(
        store,
        store,
        store,
        dispatcher=dispatcher,
        publisher=kwargs.pop("publisher", bus),
        scheduler=scheduler,
        config=config or EngineConfig(),
        clock=clock,
        sleep=lambda seconds: None,
        **kwargs,
    )
    return harness


def make_env(graph: Graph, context: Context | None = None, **kwargs) -> HandlerEnv:
    """A HandlerEnv around a fresh RUNNING run of ``graph``."""
    run = Run(
        id=run_id(),
        conversation=conversation(),
        graph_id=graph.id,
        pointer=None,
        status=RunStatus.RUNNING,
        context=context or Context(),
    )
    return HandlerEnv(
        graph=graph,
        run=run,
        config=kwargs.pop("config", EngineConfig()),
        evaluator=ExpressionEvaluator(),
        **kwargs,
    )


def make_run(
    contact: str = "5511999",
    status: str = RunStatus.WAITING,
    graph_id: str = "g1",
    started_at: int = START_MS,
    expires_at: int = START_MS + 3_600_000,
) -> Run:
    """A stored-shape run for persistence tests."""
    return Run(
        id=run_id(),
        conversation=conversation(contact),
        graph_id=graph_id,
        pointer="ask",
        status=status,
        context=Context(variables={"name": "Ana"}),
        started_at=started_at,
        expires_at=expires_at,
        updated_at=started_at,
    )
