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

"""In-memory implementation of the persistence protocols for testing."""

import threading
from collections.abc import Sequence

from .errors import ConflictError
from .graph import Graph
from .persistence import GraphRepository, LockInfo, MutexAPI, RunStore
from .run import Run
from .types import current_time_ms


class MemoryStore(RunStore, GraphRepository, MutexAPI):
    """In-memory runs, graphs and locks.

    Used for tests, the CLI simulator and single-process deployments.
    Everything is guarded by one lock and callers always get copies.
    """

    def __init__(self):
        """Initialize empty stores."""
        self._runs: dict[str, Run] = {}
        self._active_by_conversation: dict[str, str] = {}
        self._graphs: dict[str, Graph] = {}
        self._locks: dict[str, LockInfo] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # Runs
    # =========================================================================

    def get_run(self, run_id: str) -> Run | None:
        """Fetch a run by ID."""
        with self._lock:
            run = self._runs.get(run_id)
            return run.clone() if run else None

    def create_run(self, run: Run) -> None:
        """Insert a run, enforcing one active run per conversation."""
        with self._lock:
            key = run.conversation.key
            if run.is_active:
                existing = self._active_by_conversation.get(key)
                if existing and existing != run.id:
                    raise ConflictError(key, existing)
                self._active_by_conversation[key] = run.id
            self._runs[run.id] = run.clone()

    def update_run(self, run: Run) -> None:
        """Replace the stored run."""
        with self._lock:
            key = run.conversation.key
            if run.is_active:
                self._active_by_conversation[key] = run.id
            elif self._active_by_conversation.get(key) == run.id:
                del self._active_by_conversation[key]
            self._runs[run.id] = run.clone()

    def find_active(self, conversation_key: str) -> Run | None:
        """The conversation's active run."""
        with self._lock:
            run_id = self._active_by_conversation.get(conversation_key)
            if run_id is None:
                return None
            run = self._runs.get(run_id)
            return run.clone() if run else None

    def find_expired(self, now_ms: int) -> Sequence[Run]:
        """Active runs past their deadline."""
        with self._lock:
            return [
                r.clone() for r in self._runs.values() if r.is_active and r.is_expired(now_ms)
            ]

    def get_runs_by_graph(self, graph_id: str) -> Sequence[Run]:
        """Runs of a graph, newest first."""
        with self._lock:
            runs = [r.clone() for r in self._runs.values() if r.graph_id == graph_id]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    def get_all_runs(self) -> list[Run]:
        with self._lock:
            return [r.clone() for r in self._runs.values()]

    # =========================================================================
    # Graphs
    # =========================================================================

    def get_graph(self, graph_id: str) -> Graph | None:
        # Graphs are immutable once loaded; sharing the instance is safe
        with self._lock:
            return self._graphs.get(graph_id)

    def save_graph(self, graph: Graph) -> None:
        with self._lock:
            self._graphs[graph.id] = Graph.from_dict(graph.to_dict())

    def list_graphs(self, tenant_id: str, active_only: bool = True) -> Sequence[Graph]:
        with self._lock:
            graphs = [
                g
                for g in self._graphs.values()
                if g.tenant_id == tenant_id and (g.active or not active_only)
            ]
        return sorted(graphs, key=lambda g: (g.name, g.id))

    # =========================================================================
    # Lock Operations
    # =========================================================================

    def acquire_lock(self, key: str, duration_ms: int, owner: str | None = None) -> bool:
        """Acquire a lock if free or expired."""
        now = current_time_ms()
        with self._lock:
            existing = self._locks.get(key)
            if existing and existing.expires_at > now:
                return False
            self._locks[key] = LockInfo(
                key=key, acquired_at=now, expires_at=now + duration_ms, owner=owner
            )
            return True

    def release_lock(self, key: str, owner: str | None = None) -> bool:
        with self._lock:
            existing = self._locks.get(key)
            if existing is None:
                return False
            if owner is not None and existing.owner != owner:
                return False
            del self._locks[key]
            return True

    def check_lock(self, key: str) -> LockInfo | None:
        """Check if a lock exists and is valid."""
        now = current_time_ms()
        with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                return None
            if lock.expires_at <= now:
                # Lock expired, clean it up
                del self._locks[key]
                return None
            return lock

    def clear(self) -> None:
        """Clear all data."""
        with self._lock:
            self._runs.clear()
            self._active_by_conversation.clear()
            self._graphs.clear()
            self._locks.clear()
