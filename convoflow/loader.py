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

"""Graph loaders for different origins.

Provides loading functionality for:
- JSON files holding one graph, a list of graphs, or ``{"graphs": [...]}``
- Directories of such files
- Graph repositories (memory or MongoDB)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .runtime.graph import Graph

if TYPE_CHECKING:
    from .runtime.persistence import GraphRepository

logger = logging.getLogger(__name__)


def _graph_documents(data: Any, origin: str) -> list[dict]:
    if isinstance(data, dict) and isinstance(data.get("graphs"), list):
        data = data["graphs"]
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and all(isinstance(d, dict) for d in data):
        return data
    raise ValueError(f"{origin}: expected a graph object or a list of graphs")


class GraphLoader:
    """Loads graph definitions from various origins."""

    @staticmethod
    def load_text(text: str, origin: str = "<string>") -> list[Graph]:
        """Parse graphs from JSON text.

        Raises:
            ValueError: If the text is not JSON or not graph-shaped
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"{origin}: invalid JSON: {e}") from e
        graphs = []
        for doc in _graph_documents(data, origin):
            try:
                graphs.append(Graph.from_dict(doc))
            except ValueError as e:
                raise ValueError(f"{origin}: {e}") from e
        return graphs

    @staticmethod
    def load_file(path: str | Path) -> list[Graph]:
        """Load graphs from a JSON file.

        Args:
            path: Path to the file

        Returns:
            Graphs in file order

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the content is not graph-shaped
        """
        file_path = Path(path)
        return GraphLoader.load_text(file_path.read_text(), origin=str(file_path))

    @staticmethod
    def load_directory(path: str | Path, pattern: str = "*.json") -> list[Graph]:
        """Load every matching file in a directory, sorted by name."""
        graphs: list[Graph] = []
        for file_path in sorted(Path(path).glob(pattern)):
            graphs.extend(GraphLoader.load_file(file_path))
        return graphs

    @staticmethod
    def load_paths(paths: Iterable[str | Path]) -> list[Graph]:
        """Load files and directories in the order given."""
        graphs: list[Graph] = []
        for p in paths:
            path = Path(p)
            if path.is_dir():
                graphs.extend(GraphLoader.load_directory(path))
            else:
                graphs.extend(GraphLoader.load_file(path))
        return graphs

    @staticmethod
    def load_repository(repository: GraphRepository, graph_id: str) -> Graph:
        """Load one graph from a repository.

        Raises:
            ValueError: If the graph is not found
        """
        graph = repository.get_graph(graph_id)
        if graph is None:
            raise ValueError(f"Graph not found: {graph_id}")
        return graph

    @staticmethod
    def publish(graphs: Iterable[Graph], repository: GraphRepository, validate: bool = True) -> int:
        """Save graphs into a repository.

        Args:
            graphs: Graphs to save
            repository: Target repository
            validate: Reject structurally invalid graphs

        Returns:
            Number of graphs saved

        Raises:
            GraphError: If ``validate`` and a graph is invalid
        """
        count = 0
        for graph in graphs:
            if validate:
                graph.ensure_valid()
            repository.save_graph(graph)
            logger.info("Graph published: graph_id=%s tenant_id=%s", graph.id, graph.tenant_id)
            count += 1
        return count
