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

"""MongoDB implementation of the persistence protocols.

Collections:
- ``runs``: one document per run; ``activeKey`` carries the conversation key
  while the run is active (unique), and a per-run value once it is terminal
- ``graphs``: graph definitions
- ``locks``: conversation mutex rows with a unique ``key``
"""

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

if TYPE_CHECKING:
    from ..config import MongoDBConfig

from .errors import ConflictError
from .graph import Graph
from .persistence import GraphRepository, LockInfo, MutexAPI, RunStore
from .run import Run
from .types import current_time_ms

logger = logging.getLogger(__name__)


def _active_key(run: Run) -> str:
    if run.is_active:
        return run.conversation.key
    return f"closed:{run.id}"


class MongoStore(RunStore, GraphRepository, MutexAPI):
    """MongoDB implementation of the persistence protocols.

    Usage:
        store = MongoStore("mongodb://localhost:27017", "convoflow")
        store.get_run(run_id)

        # Or create from a ConvoflowConfig / MongoDBConfig:
        from convoflow.config import load_config
        config = load_config()
        store = MongoStore.from_config(config.mongodb)
    """

    def __init__(
        self,
        connection_string: str = "",
        database_name: str = "convoflow",
        create_indexes: bool = True,
        client: Any = None,
    ):
        """Initialize the MongoDB store.

        Args:
            connection_string: MongoDB connection string
            database_name: Database name (default: "convoflow")
            create_indexes: Whether to create indexes on initialization
            client: Optional pre-built client (e.g. mongomock.MongoClient for testing)
        """
        if client is not None:
            self._client = client
        else:
            self._client = MongoClient(connection_string)

        self._db: Database = self._client[database_name]

        if create_indexes:
            self._ensure_indexes()

    @classmethod
    def from_config(
        cls,
        config: "MongoDBConfig",
        create_indexes: bool = True,
    ) -> "MongoStore":
        """Create a MongoStore from a MongoDBConfig instance."""
        return cls(
            connection_string=config.connection_string(),
            database_name=config.database,
            create_indexes=create_indexes,
        )

    def _ensure_indexes(self) -> None:
        """Create indexes on all collections."""
        runs = self._db.runs
        runs.create_index("id", unique=True, name="run_id_index")
        runs.create_index("activeKey", unique=True, name="run_active_key_index")
        runs.create_index("graphId", name="run_graph_id_index")
        runs.create_index(
            [("active", ASCENDING), ("expiresAt", ASCENDING)], name="run_expiry_index"
        )

        graphs = self._db.graphs
        graphs.create_index("id", unique=True, name="graph_id_index")
        graphs.create_index("tenantId", name="graph_tenant_index")

        locks = self._db.locks
        locks.create_index("key", unique=True, name="lock_key_index")

    def drop_database(self) -> None:
        """Drop the whole database (tests only)."""
        self._client.drop_database(self._db.name)

    def close(self) -> None:
        self._client.close()

    # =========================================================================
    # Runs
    # =========================================================================

    def _run_to_doc(self, run: Run) -> dict:
        doc = run.to_dict()
        doc["activeKey"] = _active_key(run)
        return doc

    def _doc_to_run(self, doc: dict) -> Run:
        doc = dict(doc)
        doc.pop("_id", None)
        doc.pop("activeKey", None)
        return Run.from_dict(doc)

    def get_run(self, run_id: str) -> Run | None:
        doc = self._db.runs.find_one({"id": run_id})
        return self._doc_to_run(doc) if doc else None

    def create_run(self, run: Run) -> None:
        try:
            self._db.runs.insert_one(self._run_to_doc(run))
        except DuplicateKeyError as e:
            existing = self.find_active(run.conversation.key)
            raise ConflictError(run.conversation.key, existing.id if existing else None) from e

    def update_run(self, run: Run) -> None:
        try:
            self._db.runs.replace_one({"id": run.id}, self._run_to_doc(run), upsert=True)
        except DuplicateKeyError as e:
            existing = self.find_active(run.conversation.key)
            raise ConflictError(run.conversation.key, existing.id if existing else None) from e

    def find_active(self, conversation_key: str) -> Run | None:
        doc = self._db.runs.find_one({"activeKey": conversation_key, "active": True})
        return self._doc_to_run(doc) if doc else None

    def find_expired(self, now_ms: int) -> Sequence[Run]:
        cursor = self._db.runs.find(
            {"active": True, "expiresAt": {"$gt": 0, "$lte": now_ms}}
        ).sort("expiresAt", ASCENDING)
        return [self._doc_to_run(doc) for doc in cursor]

    def get_runs_by_graph(self, graph_id: str) -> Sequence[Run]:
        cursor = self._db.runs.find({"graphId": graph_id}).sort("startedAt", DESCENDING)
        return [self._doc_to_run(doc) for doc in cursor]

    # =========================================================================
    # Graphs
    # =========================================================================

    def get_graph(self, graph_id: str) -> Graph | None:
        doc = self._db.graphs.find_one({"id": graph_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return Graph.from_dict(doc)

    def save_graph(self, graph: Graph) -> None:
        self._db.graphs.replace_one({"id": graph.id}, graph.to_dict(), upsert=True)

    def list_graphs(self, tenant_id: str, active_only: bool = True) -> Sequence[Graph]:
        query: dict[str, Any] = {"tenantId": tenant_id}
        if active_only:
            query["isActive"] = True
        graphs = []
        for doc in self._db.graphs.find(query).sort([("name", ASCENDING), ("id", ASCENDING)]):
            doc.pop("_id", None)
            graphs.append(Graph.from_dict(doc))
        return graphs

    # =========================================================================
    # Lock Operations
    # =========================================================================

    def acquire_lock(self, key: str, duration_ms: int, owner: str | None = None) -> bool:
        """Acquire a distributed lock."""
        now = current_time_ms()

        # First, try to remove any expired lock
        self._db.locks.delete_one({"key": key, "expires_at": {"$lte": now}})

        doc = {
            "key": key,
            "acquired_at": now,
            "expires_at": now + duration_ms,
            "owner": owner,
        }
        try:
            self._db.locks.insert_one(doc)
            return True
        except DuplicateKeyError:
            logger.debug("Lock contention: key=%s", key)
            return False

    def release_lock(self, key: str, owner: str | None = None) -> bool:
        query = {"key": key}
        if owner is not None:
            query["owner"] = owner
        result = self._db.locks.delete_one(query)
        return result.deleted_count > 0

    def check_lock(self, key: str) -> LockInfo | None:
        now = current_time_ms()
        doc = self._db.locks.find_one({"key": key, "expires_at": {"$gt": now}})
        if not doc:
            return None
        return LockInfo(
            key=doc["key"],
            acquired_at=doc["acquired_at"],
            expires_at=doc["expires_at"],
            owner=doc.get("owner"),
        )
