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

"""Convoflow orchestrator.

The Orchestrator drives runs through their graph:
- ``start`` creates a run after the graph's trigger and drives it
- ``resume`` feeds an inbound reply to a waiting run and drives it
- timer callbacks resume runs parked on WAIT nodes or time out reply waits
- ``expire`` / ``expire_due`` close runs whose deadline has passed

Every call that moves a run holds the conversation mutex. The step loop
persists after every node and stops at a suspend point, at the end of the
graph, at the step ceiling, or on an error.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

import requests

from ..config import EngineConfig
from .context import Context
from .dispatcher import EffectDispatcher
from .errors import (
    ConflictError,
    EngineError,
    GraphError,
    IterationLimitError,
    LockedError,
    RunNotFoundError,
)
from .expression import ExpressionEvaluator
from .graph import Graph, Node
from .handlers import HandlerEnv, process_reply
from .lifecycle import EventType, LifecycleEvent, LifecyclePublisher, NullPublisher
from .loops import advance_loop, find_frame, in_loop
from .persistence import GraphRepository, MutexAPI, RunStore
from .result import StepResult
from .run import Run, WaitState
from .script_executor import ScriptExecutor
from .states import RunStatus, TimeoutPolicy, WaitKind
from .timers import Scheduler, TimerScheduler
from .types import ConversationKey, NodeId, NodeKind, current_time_ms, generate_id, run_id

logger = logging.getLogger(__name__)

# Node ids remembered on the run record for diagnostics
HISTORY_LIMIT = 100


def as_input(value: Any) -> dict:
    """Normalize an inbound payload into the ``input`` scope."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    return {"message": str(value)}


def message_text(value: Any) -> str:
    """The text of an inbound payload."""
    if value is None:
        return ""
    if isinstance(value, dict):
        for key in ("message", "text", "body"):
            if value.get(key) is not None:
                return str(value[key])
        return ""
    return str(value)


def timer_key(run_id: str) -> str:
    return f"run:{run_id}"


class Orchestrator:
    """Starts, resumes, drives and expires runs.

    Usage:
        store = MemoryStore()
        orchestrator = Orchestrator(store, store, store)
        run = orchestrator.start("welcome", ConversationKey("t1", "s1", "5511999"), "hi")
        if run.status == RunStatus.WAITING:
            orchestrator.resume(run.id, "2")
    """

    def __init__(
        self,
        store: RunStore,
        graphs: GraphRepository,
        mutex: MutexAPI,
        dispatcher: EffectDispatcher | None = None,
        publisher: LifecyclePublisher | None = None,
        scheduler: Scheduler | None = None,
        config: EngineConfig | None = None,
        evaluator: ExpressionEvaluator | None = None,
        http: requests.Session | None = None,
        scripts: ScriptExecutor | None = None,
        clock: Callable[[], int] = current_time_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            store: Run persistence
            graphs: Graph lookup
            mutex: Conversation lock service
            dispatcher: Node handlers and effect sinks (defaults registered)
            publisher: Lifecycle event sink (events discarded when None)
            scheduler: Timer service for WAIT nodes and reply timeouts
            config: Engine limits
            evaluator: Expression evaluator shared by handlers
            http: Session used by HTTP_REQUEST nodes
            scripts: Sandbox used by RUN_SCRIPT nodes
            clock: Current time in milliseconds
            sleep: Used between timer lock retries
        """
        self.store = store
        self.graphs = graphs
        self.mutex = mutex
        self.dispatcher = dispatcher or EffectDispatcher()
        self.publisher = publisher or NullPublisher()
        self.scheduler = scheduler or TimerScheduler()
        self.config = config or EngineConfig()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.http = http or requests.Session()
        self.scripts = scripts or ScriptExecutor(timeout=self.config.script_timeout_seconds)
        self.clock = clock
        self._sleep = sleep

    # =========================================================================
    # Public API
    # =========================================================================

    def start(
        self,
        graph_id: str,
        conversation: ConversationKey,
        seed: Any = None,
        variables: dict | None = None,
        globals: dict | None = None,
    ) -> Run:
        """Create a run for a conversation and drive it.

        Args:
            graph_id: The graph to execute
            conversation: Tenant, session and contact identity
            seed: Triggering payload (text or dict), becomes ``input``
            variables: Initial variables
            globals: Tenant-wide values exposed as ``globals``

        Returns:
            The run after its first drive (WAITING, COMPLETED or ERROR)

        Raises:
            ConflictError: If the conversation already has an active run, or
                another start holds the conversation mutex
            GraphError: If the graph does not exist or is malformed
        """
        owner = generate_id()
        if not self.mutex.acquire_lock(conversation.lock_key, self.config.lock_ttl_ms, owner):
            logger.warning("Start rejected, conversation locked: conversation=%s", conversation.key)
            raise ConflictError(conversation.key)
        try:
            existing = self.store.find_active(conversation.key)
            if existing is not None:
                if existing.is_expired(self.clock()):
                    self._expire_run(existing)
                else:
                    raise ConflictError(conversation.key, existing.id)

            graph = self._load_graph(graph_id)
            now = self.clock()
            inbound = as_input(seed)
            context = Context(
                globals=dict(globals or {}),
                input=inbound,
                output={},
                variables=dict(variables or {}),
            )
            text = message_text(seed)
            if text:
                context.variables.setdefault("triggerMessage", text)

            run = Run(
                id=run_id(),
                conversation=conversation,
                graph_id=graph.id,
                pointer=graph.start_pointer(),
                status=RunStatus.RUNNING,
                context=context,
                started_at=now,
                expires_at=now + self.config.run_ttl_ms,
                updated_at=now,
            )
            self.store.create_run(run)
            logger.info(
                "Run started: run_id=%s graph_id=%s conversation=%s pointer=%s",
                run.id,
                graph.id,
                conversation.key,
                run.pointer,
            )
            self._publish(LifecycleEvent.for_run(EventType.STARTED, run))
            self._drive(run, graph)
            return run
        finally:
            self._release(conversation.lock_key, owner)

    def resume(self, run: Run | str, external_input: Any = None) -> Run:
        """Feed an inbound event to a run and drive it.

        Args:
            run: The run or its id
            external_input: Reply text or payload dict

        Returns:
            The run after the drive

        Raises:
            RunNotFoundError: If the run does not exist
            LockedError: If the conversation mutex is held
        """
        current = self._get_run(run if isinstance(run, str) else run.id)
        lock_key = current.conversation.lock_key
        owner = generate_id()
        if not self.mutex.acquire_lock(lock_key, self.config.lock_ttl_ms, owner):
            logger.warning(
                "Resume rejected, conversation locked: run_id=%s conversation=%s",
                current.id,
                current.conversation.key,
            )
            raise LockedError(current.conversation.key)
        try:
            return self._resume_locked(current.id, external_input)
        finally:
            self._release(lock_key, owner)

    def expire(self, run: Run | str) -> Run | None:
        """Expire a run whose deadline has passed.

        Skips runs whose mutex is held (the next sweep retries them).

        Returns:
            The expired run, or None if nothing was done
        """
        current = self.store.get_run(run if isinstance(run, str) else run.id)
        if current is None or not current.is_active:
            return None
        lock_key = current.conversation.lock_key
        owner = generate_id()
        if not self.mutex.acquire_lock(lock_key, self.config.lock_ttl_ms, owner):
            logger.debug("Expiry skipped, conversation locked: run_id=%s", current.id)
            return None
        try:
            current = self.store.get_run(current.id)
            if current is None or not current.is_active or not current.is_expired(self.clock()):
                return None
            return self._expire_run(current)
        finally:
            self._release(lock_key, owner)

    def expire_due(self, now_ms: int | None = None) -> list[Run]:
        """Expire every active run past its deadline.

        Returns:
            Runs transitioned to EXPIRED
        """
        now = self.clock() if now_ms is None else now_ms
        expired = []
        for candidate in self.store.find_expired(now):
            result = self.expire(candidate)
            if result is not None:
                expired.append(result)
        if expired:
            logger.info("Expiry sweep: expired=%d", len(expired))
        return expired

    def get_run(self, run_id: str) -> Run:
        """Fetch a run.

        Raises:
            RunNotFoundError: If it does not exist
        """
        return self._get_run(run_id)

    # =========================================================================
    # Resume paths
    # =========================================================================

    def _resume_locked(self, rid: str, external_input: Any) -> Run:
        run = self._get_run(rid)
        if run.is_terminal:
            logger.info("Resume ignored, run finished: run_id=%s status=%s", run.id, run.status)
            return run
        if run.is_expired(self.clock()):
            return self._expire_run(run)

        try:
            graph = self._load_graph(run.graph_id)
        except GraphError as e:
            self._fail(run, e)
            return run

        previous = run.status
        run.interaction_count += 1
        run.context.input = as_input(external_input)

        if run.interaction_count >= self.config.max_interactions:
            logger.info(
                "Interaction limit reached: run_id=%s interactions=%d",
                run.id,
                run.interaction_count,
            )
            self._complete(run, reason="interaction limit reached")
            return run

        wait = run.wait
        if previous == RunStatus.WAITING and wait is not None and wait.kind == WaitKind.TIMER:
            # Replies during a timed pause are recorded; the timer resumes the run
            run.updated_at = self.clock()
            self.store.update_run(run)
            logger.info("Reply during timer wait recorded: run_id=%s", run.id)
            return run

        if previous == RunStatus.WAITING and wait is not None and wait.kind == WaitKind.REPLY:
            node = graph.get_node(wait.node_id)
            if node is not None and node.kind == NodeKind.WAIT_REPLY:
                process_reply(node, message_text(external_input), run.context)
                run.context.output = {"reply": message_text(external_input)}
                run.pointer = self._next_after(graph, run, node.id, graph.next_target(node.id))

        self.scheduler.cancel(timer_key(run.id))
        run.wait = None
        run.status = RunStatus.RUNNING
        run.updated_at = self.clock()
        self.store.update_run(run)
        logger.info(
            "Run resumed: run_id=%s pointer=%s interactions=%d",
            run.id,
            run.pointer,
            run.interaction_count,
        )
        self._publish(LifecycleEvent.for_run(EventType.RESUMED, run, previousStatus=previous))
        if run.pointer is None:
            self._complete(run)
        else:
            self._drive(run, graph)
        return run

    def _on_timer(self, rid: str, conversation: ConversationKey, token: str) -> None:
        """Timer callback: re-acquire the mutex, then resume or time out."""
        owner = generate_id()
        for attempt in range(max(1, self.config.timer_lock_retries)):
            if self.mutex.acquire_lock(conversation.lock_key, self.config.lock_ttl_ms, owner):
                break
            logger.debug("Timer waiting for lock: run_id=%s attempt=%d", rid, attempt + 1)
            self._sleep(self.config.timer_lock_retry_seconds)
        else:
            logger.warning("Timer gave up, conversation locked: run_id=%s", rid)
            return

        try:
            run = self.store.get_run(rid)
            if run is None:
                logger.warning("Timer fired for unknown run: run_id=%s", rid)
                return
            if run.status != RunStatus.WAITING or run.wait is None or run.wait.token != token:
                logger.debug("Stale timer ignored: run_id=%s status=%s", rid, run.status)
                return
            if run.is_expired(self.clock()):
                self._expire_run(run)
                return
            try:
                graph = self._load_graph(run.graph_id)
            except GraphError as e:
                self._fail(run, e)
                return

            wait = run.wait
            if wait.kind == WaitKind.REPLY:
                if wait.on_timeout == TimeoutPolicy.GOTO_NODE and wait.timeout_target:
                    logger.info(
                        "Reply timeout, jumping: run_id=%s target=%s", run.id, wait.timeout_target
                    )
                    run.pointer = wait.timeout_target
                else:
                    logger.info("Reply timeout, ending: run_id=%s", run.id)
                    self._complete(run, reason="timeout")
                    return

            run.wait = None
            run.status = RunStatus.RUNNING
            run.updated_at = self.clock()
            self.store.update_run(run)
            self._publish(
                LifecycleEvent.for_run(
                    EventType.RESUMED,
                    run,
                    previousStatus=RunStatus.WAITING,
                    trigger="timeout" if wait.kind == WaitKind.REPLY else "timer",
                )
            )
            if run.pointer is None:
                self._complete(run)
            else:
                self._drive(run, graph)
        finally:
            self._release(conversation.lock_key, owner)

    # =========================================================================
    # Step loop
    # =========================================================================

    def _drive(self, run: Run, graph: Graph) -> None:
        """Run the step loop; any error fails the run instead of escaping."""
        try:
            self._step_loop(run, graph)
        except Exception as e:
            self._fail(run, e)

    def _step_loop(self, run: Run, graph: Graph) -> None:
        if run.pointer is None:
            self._complete(run)
            return

        steps = 0
        while True:
            steps += 1
            if steps > self.config.max_steps:
                raise IterationLimitError(run.id, self.config.max_steps)

            node = graph.require_node(run.pointer)
            started = time.perf_counter()

            frame = find_frame(run.context, node.id) if node.kind == NodeKind.LOOP else None
            if frame is not None and frame.initialized:
                # Back at an active loop: advance it instead of re-running setup
                result = StepResult.advance(advance_loop(graph, run.context, node.id))
            else:
                result = self.dispatcher.dispatch(node, self._env(graph, run))
                if result.output is not None:
                    run.context.output = result.output
                if result.effects:
                    self.dispatcher.apply_effects(run, result.effects)

            run.steps_executed += 1
            run.history.append(node.id)
            del run.history[:-HISTORY_LIMIT]
            duration_ms = int((time.perf_counter() - started) * 1000)

            if result.suspend:
                self._suspend(run, graph, node, result, duration_ms)
                return

            next_id = result.next_node_id
            if next_id is None and node.kind != NodeKind.LOOP:
                next_id = self._next_after(graph, run, node.id, None)
            if next_id is not None and not graph.has_node(next_id):
                raise GraphError(
                    graph.id, f"edge target '{next_id}' does not exist", node_id=node.id
                )

            run.pointer = next_id
            run.updated_at = self.clock()
            self.store.update_run(run)
            self._publish_node_executed(run, node, duration_ms)

            if next_id is None:
                self._complete(run, reason=result.reason)
                return

    def _next_after(
        self, graph: Graph, run: Run, node_id: str, next_id: NodeId | None
    ) -> NodeId | None:
        """``next_id``, or the loop continuation when a body dead-ends."""
        if next_id is None and in_loop(run.context):
            next_id = advance_loop(graph, run.context)
            logger.debug("Loop continued: run_id=%s from=%s next=%s", run.id, node_id, next_id)
        return next_id

    def _suspend(
        self, run: Run, graph: Graph, node: Node, result: StepResult, duration_ms: int
    ) -> None:
        now = self.clock()
        seconds = float(result.suspend_seconds or 0)
        token = generate_id()
        kind = result.wait_kind or WaitKind.TIMER

        if kind == WaitKind.REPLY:
            # Stay on the waiting node; the reply resumes exactly here
            run.pointer = node.id
            run.wait = WaitState(
                kind=WaitKind.REPLY,
                node_id=node.id,
                token=token,
                timeout_seconds=seconds or None,
                resume_at=now + int(seconds * 1000) if seconds > 0 else None,
                on_timeout=result.on_timeout or TimeoutPolicy.END,
                timeout_target=result.timeout_target,
            )
        else:
            run.pointer = self._next_after(graph, run, node.id, result.next_node_id)
            run.wait = WaitState(
                kind=WaitKind.TIMER,
                node_id=node.id,
                token=token,
                timeout_seconds=seconds,
                resume_at=now + int(seconds * 1000),
            )

        run.status = RunStatus.WAITING
        run.updated_at = now
        self.store.update_run(run)
        self._publish_node_executed(run, node, duration_ms)
        logger.info(
            "Run waiting: run_id=%s node_id=%s kind=%s seconds=%s",
            run.id,
            node.id,
            kind,
            seconds,
        )
        self._publish(
            LifecycleEvent.for_run(
                EventType.WAITING,
                run,
                node_id=node.id,
                timeoutSeconds=seconds,
                waitKind=kind,
            )
        )

        if kind == WaitKind.TIMER or seconds > 0:
            conversation = run.conversation
            rid = run.id
            self.scheduler.schedule(
                timer_key(rid), seconds, lambda: self._on_timer(rid, conversation, token)
            )

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _complete(self, run: Run, reason: str | None = None) -> None:
        now = self.clock()
        run.status = RunStatus.COMPLETED
        run.pointer = None
        run.wait = None
        run.completed_at = now
        run.updated_at = now
        self.scheduler.cancel(timer_key(run.id))
        self.store.update_run(run)
        logger.info("Run completed: run_id=%s reason=%s", run.id, reason or "end")
        payload: dict[str, Any] = {"output": run.context.output}
        if reason:
            payload["reason"] = reason
        self._publish(LifecycleEvent.for_run(EventType.COMPLETED, run, **payload))

    def _fail(self, run: Run, error: Exception) -> None:
        if isinstance(error, EngineError):
            logger.error("Run failed: run_id=%s error=%s", run.id, error)
        else:
            logger.exception("Run failed unexpectedly: run_id=%s", run.id)
        now = self.clock()
        run.status = RunStatus.ERROR
        run.error = str(error) or type(error).__name__
        run.wait = None
        run.completed_at = now
        run.updated_at = now
        if run.pointer is not None and not self._pointer_valid(run):
            run.pointer = None
        self.scheduler.cancel(timer_key(run.id))
        try:
            self.store.update_run(run)
        except Exception:
            logger.exception("Could not persist failed run: run_id=%s", run.id)
        self._publish(
            LifecycleEvent.for_run(
                EventType.ERROR, run, error=run.error, errorType=type(error).__name__
            )
        )

    def _expire_run(self, run: Run) -> Run:
        now = self.clock()
        run.status = RunStatus.EXPIRED
        run.wait = None
        run.completed_at = now
        run.updated_at = now
        self.scheduler.cancel(timer_key(run.id))
        self.store.update_run(run)
        logger.info("Run expired: run_id=%s", run.id)
        self._publish(LifecycleEvent.for_run(EventType.EXPIRED, run))
        return run

    # =========================================================================
    # Helpers
    # =========================================================================

    def _release(self, lock_key: str, owner: str) -> None:
        if not self.mutex.release_lock(lock_key, owner):
            logger.warning("Lock expired before release: key=%s", lock_key)

    def _get_run(self, rid: str) -> Run:
        run = self.store.get_run(rid)
        if run is None:
            raise RunNotFoundError(rid)
        return run

    def _load_graph(self, graph_id: str) -> Graph:
        graph = self.graphs.get_graph(graph_id)
        if graph is None:
            raise GraphError(graph_id, "graph not found")
        graph.ensure_valid()
        return graph

    def _pointer_valid(self, run: Run) -> bool:
        graph = self.graphs.get_graph(run.graph_id)
        return graph is not None and graph.has_node(run.pointer)

    def _env(self, graph: Graph, run: Run) -> HandlerEnv:
        return HandlerEnv(
            graph=graph,
            run=run,
            config=self.config,
            evaluator=self.evaluator,
            http=self.http,
            scripts=self.scripts,
            clock=self.clock,
        )

    def _publish_node_executed(self, run: Run, node: Node, duration_ms: int) -> None:
        self._publish(
            LifecycleEvent.for_run(
                EventType.NODE_EXECUTED,
                run,
                node_id=node.id,
                nodeType=node.kind,
                duration=duration_ms,
                output=run.context.output,
                variables=run.context.user_variables(),
            )
        )

    def _publish(self, event: LifecycleEvent) -> None:
        try:
            self.publisher.publish(event)
        except Exception:
            logger.warning(
                "Lifecycle publish failed: event_type=%s run_id=%s",
                event.event_type,
                event.run_id,
                exc_info=True,
            )
