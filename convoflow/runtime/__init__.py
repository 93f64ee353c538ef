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

"""Convoflow runtime package.

Executes conversational graphs: one run per conversation, driven node by
node and suspended while waiting for timers or replies.
"""

from .context import MISSING, Context
from .dispatcher import EffectDispatcher, EffectSink
from .errors import (
    ConflictError,
    EngineError,
    EvaluationError,
    ExpiryError,
    GraphError,
    HandlerFault,
    IterationLimitError,
    LockedError,
    RunNotFoundError,
)
from .expression import ExpressionEvaluator, evaluate, interpolate, resolve_value
from .graph import Edge, Graph, Node
from .handlers import NODE_HANDLERS, ActionHandler, HandlerEnv, NodeHandler, get_handler
from .intake import InboundRouter
from .lifecycle import EventType, LifecycleEvent, LifecyclePublisher, LocalEventBus, NullPublisher
from .loops import LoopFrame
from .memory_store import MemoryStore
from .mongo_store import MongoStore
from .orchestrator import Orchestrator
from .persistence import GraphRepository, LockInfo, MutexAPI, RunStore
from .result import Effect, EffectKind, StepResult
from .run import Run, WaitState
from .script_executor import ScriptExecutor, ScriptResult
from .states import RunStatus, TimeoutPolicy, WaitKind
from .sweeper import ExpirySweeper
from .timers import ManualScheduler, Scheduler, TimerScheduler
from .types import ConversationKey, EdgeLabel, NodeKind, current_time_ms, generate_id

__all__ = [
    # Types
    "ConversationKey",
    "NodeKind",
    "EdgeLabel",
    "generate_id",
    "current_time_ms",
    # States
    "RunStatus",
    "WaitKind",
    "TimeoutPolicy",
    # Errors
    "EngineError",
    "ConflictError",
    "LockedError",
    "GraphError",
    "IterationLimitError",
    "EvaluationError",
    "HandlerFault",
    "ExpiryError",
    "RunNotFoundError",
    # Model
    "Context",
    "MISSING",
    "Graph",
    "Node",
    "Edge",
    "Run",
    "WaitState",
    "LoopFrame",
    "StepResult",
    "Effect",
    "EffectKind",
    # Expressions
    "ExpressionEvaluator",
    "interpolate",
    "resolve_value",
    "evaluate",
    # Handlers
    "NodeHandler",
    "ActionHandler",
    "HandlerEnv",
    "NODE_HANDLERS",
    "get_handler",
    "EffectDispatcher",
    "EffectSink",
    "ScriptExecutor",
    "ScriptResult",
    # Persistence
    "RunStore",
    "GraphRepository",
    "MutexAPI",
    "LockInfo",
    "MemoryStore",
    "MongoStore",
    # Lifecycle
    "EventType",
    "LifecycleEvent",
    "LifecyclePublisher",
    "LocalEventBus",
    "NullPublisher",
    # Scheduling
    "Scheduler",
    "TimerScheduler",
    "ManualScheduler",
    "ExpirySweeper",
    # Orchestration
    "Orchestrator",
    "InboundRouter",
]
