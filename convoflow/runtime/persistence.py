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

"""Convoflow persistence abstraction.

The Orchestrator MUST NOT directly access the database.
Runs, graphs and the conversation mutex are reached through these protocols.
"""

from abc import abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .graph import Graph
from .run import Run


@dataclass
class LockInfo:
    """A held mutex."""

    key: str
    acquired_at: int
    expires_at: int
    owner: str | None = None


@runtime_checkable
class RunStore(Protocol):
    """Durable record of runs."""

    @abstractmethod
    def get_run(self, run_id: str) -> Run | None:
        """Fetch a run by id."""
        ...

    @abstractmethod
    def create_run(self, run: Run) -> None:
        """Insert a new run.

        Raises:
            ConflictError: If the store enforces one active run per
                conversation and another one exists
        """
        ...

    @abstractmethod
    def update_run(self, run: Run) -> None:
        """Replace the stored record of an existing run."""
        ...

    @abstractmethod
    def find_active(self, conversation_key: str) -> Run | None:
        """The RUNNING or WAITING run of a conversation, if any."""
        ...

    @abstractmethod
    def find_expired(self, now_ms: int) -> Sequence[Run]:
        """Active runs whose ``expires_at`` is at or before ``now_ms``."""
        ...

    @abstractmethod
    def get_runs_by_graph(self, graph_id: str) -> Sequence[Run]:
        """All runs of a graph, newest first."""
        ...


@runtime_checkable
class GraphRepository(Protocol):
    """Source of graph definitions."""

    @abstractmethod
    def get_graph(self, graph_id: str) -> Graph | None:
        ...

    @abstractmethod
    def save_graph(self, graph: Graph) -> None:
        ...

    @abstractmethod
    def list_graphs(self, tenant_id: str, active_only: bool = True) -> Sequence[Graph]:
        """Graphs of a tenant in a stable order."""
        ...


@runtime_checkable
class MutexAPI(Protocol):
    """Short-TTL distributed lock."""

    @abstractmethod
    def acquire_lock(self, key: str, duration_ms: int, owner: str | None = None) -> bool:
        """Atomically take the lock if it is free or expired.

        Returns:
            True if the lock was acquired
        """
        ...

    @abstractmethod
    def release_lock(self, key: str, owner: str | None = None) -> bool:
        """Drop the lock.

        With ``owner``, only a lock still held by that owner is removed, so a
        caller whose lock expired cannot release its successor's.

        Returns:
            True if a lock was removed
        """
        ...

    @abstractmethod
    def check_lock(self, key: str) -> LockInfo | None:
        """The lock if it is currently held."""
        ...
