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

"""Convoflow runtime error types."""

from dataclasses import dataclass


class EngineError(Exception):
    """Base class for all convoflow runtime errors."""

    pass


@dataclass
class ConflictError(EngineError):
    """Raised when a conversation already has an active run."""

    conversation_key: str
    run_id: str | None = None

    def __str__(self) -> str:
        if self.run_id:
            return (
                f"Active run {self.run_id} already exists for conversation {self.conversation_key}"
            )
        return f"Another run is being started for conversation {self.conversation_key}"


@dataclass
class LockedError(EngineError):
    """Raised when the conversation mutex is held by someone else."""

    conversation_key: str

    def __str__(self) -> str:
        return f"Conversation {self.conversation_key} is locked"


@dataclass
class GraphError(EngineError):
    """Raised when a graph is malformed or a node/edge reference is missing."""

    graph_id: str
    message: str
    node_id: str | None = None

    def __str__(self) -> str:
        loc = f" at node {self.node_id}" if self.node_id else ""
        return f"Graph {self.graph_id}{loc}: {self.message}"


@dataclass
class IterationLimitError(EngineError):
    """Raised when a single invocation of the step loop exceeds its ceiling."""

    run_id: str
    limit: int

    def __str__(self) -> str:
        return f"Run {self.run_id} exceeded {self.limit} steps without suspending"


@dataclass
class EvaluationError(EngineError):
    """Raised when an expression cannot be parsed or evaluated."""

    expression: str
    message: str

    def __str__(self) -> str:
        return f"Evaluation error: {self.message} (expression: {self.expression})"


@dataclass
class HandlerFault(EngineError):
    """An action handler's own failure.

    Never terminal: the orchestrator folds it into the node output.
    """

    node_id: str
    message: str

    def __str__(self) -> str:
        return f"Node {self.node_id} failed: {self.message}"

    def to_output(self) -> dict:
        """Render as an error-shaped node output."""
        cause = self.__cause__
        return {
            "error": self.message,
            "errorType": type(cause).__name__ if cause else type(self).__name__,
        }


@dataclass
class ExpiryError(EngineError):
    """Raised by callers that treat an expired run as an error.

    The engine itself models expiry as a lifecycle transition.
    """

    run_id: str

    def __str__(self) -> str:
        return f"Run {self.run_id} has expired"


@dataclass
class RunNotFoundError(EngineError):
    """Raised when a run cannot be found."""

    run_id: str

    def __str__(self) -> str:
        return f"Run not found: {self.run_id}"
