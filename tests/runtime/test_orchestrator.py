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

"""Tests for the orchestrator step loop, suspension and resumption."""

import threading

import pytest
import requests

from convoflow.config import EngineConfig
from convoflow.runtime import (
    ConflictError,
    EffectDispatcher,
    EventType,
    GraphError,
    LockedError,
    NodeHandler,
    RunNotFoundError,
    RunStatus,
    StepResult,
    WaitKind,
)
from convoflow.runtime.orchestrator import timer_key
from tests.graph_helpers import chain, conversation, edge, make_graph, make_harness, node


def linear_graph():
    return make_graph(
        [
            node("trigger", "TRIGGER_MESSAGE", pattern="hi"),
            node("a", "SET_VARIABLE", name="x", value="1"),
            node("b", "SEND_MESSAGE", message="hello {{variables.x}}"),
            node("end", "END"),
        ],
        chain("trigger", "a", "b", "end"),
    )


def choice_graph(**wait_config):
    config = {"saveAs": "choice", "mapping": {"1": "optionA", "2": "optionB"}, "message": "1 or 2?"}
    config.update(wait_config)
    return make_graph(
        [
            node("trigger", "TRIGGER_MESSAGE"),
            node("ask", "WAIT_REPLY", **config),
            node("done", "END", outputVariables=["choice"]),
            node("bye", "SEND_MESSAGE", message="bye"),
        ],
        chain("trigger", "ask", "done"),
    )


def loop_graph(items):
    return make_graph(
        [
            node("trigger", "TRIGGER_MANUAL"),
            node("loop", "LOOP", items=items),
            node("add", "SET_VARIABLE", name="seen", mode="append", value="{{item}}"),
            node("end", "END", outputVariables="seen"),
        ],
        [
            edge("trigger", "loop"),
            edge("loop", "add", "loop"),
            edge("add", "loop"),
            edge("loop", "end", "done"),
        ],
    )


class TestLinearRuns:
    """Runs that never suspend."""

    def test_linear_graph_completes_with_last_output(self):
        """A -> B -> END completes with B's output."""
        h = make_harness(linear_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert run.status == RunStatus.COMPLETED
        assert run.pointer is None
        assert run.context.output == {"message": "hello 1"}
        assert run.completed_at == h.clock.now
        assert h.messages() == ["hello 1"]

    def test_run_is_persisted(self):
        """The stored record matches the returned run."""
        h = make_harness(linear_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")

        stored = h.reload(run)
        assert stored.status == RunStatus.COMPLETED
        assert stored.steps_executed == 3
        assert stored.history == ["a", "b", "end"]
        assert h.store.find_active(conversation().key) is None

    def test_seed_populates_input_and_trigger_message(self):
        """A text seed becomes input.message and variables.triggerMessage."""
        h = make_harness(linear_graph())
        run = h.orchestrator.start("g1", conversation(), "hi there")

        assert run.context.input == {"message": "hi there"}
        assert run.context.variables["triggerMessage"] == "hi there"

    def test_initial_variables_and_globals(self):
        """Variables and globals passed to start are visible to nodes."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("greet", "SEND_MESSAGE", message="{{name}} from {{globals.company}}"),
            ],
            chain("trigger", "greet"),
        )
        h = make_harness(graph)
        h.orchestrator.start(
            "g1", conversation(), variables={"name": "Ana"}, globals={"company": "Acme"}
        )

        assert h.messages() == ["Ana from Acme"]

    def test_lifecycle_events_in_order(self):
        """started, one node.executed per node, completed."""
        h = make_harness(linear_graph())
        h.orchestrator.start("g1", conversation(), "hi")

        assert h.event_types() == [
            EventType.STARTED,
            EventType.NODE_EXECUTED,
            EventType.NODE_EXECUTED,
            EventType.NODE_EXECUTED,
            EventType.COMPLETED,
        ]
        executed = h.bus.of_type(EventType.NODE_EXECUTED)
        assert [e.node_id for e in executed] == ["a", "b", "end"]
        assert executed[0].payload["nodeType"] == "SET_VARIABLE"
        assert executed[0].payload["variables"]["x"] == "1"
        assert "duration" in executed[0].payload
        completed = h.bus.of_type(EventType.COMPLETED)[0]
        assert completed.payload["output"] == {"message": "hello 1"}

    def test_trigger_without_edge_completes_immediately(self):
        """A graph whose trigger leads nowhere completes at once."""
        graph = make_graph([node("trigger", "TRIGGER_MANUAL")], [])
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert run.steps_executed == 0

    def test_graph_without_trigger_starts_at_entry_node(self):
        """Without a trigger the first node with no incoming edge runs first."""
        graph = make_graph(
            [node("first", "SET_VARIABLE", name="x", value=1), node("end", "END")],
            chain("first", "end"),
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.history == ["first", "end"]
        assert run.context.variables["x"] == 1


class TestBranching:
    """CONDITION and SWITCH inside runs."""

    def branch_graph(self):
        return make_graph(
            [
                node("trigger", "TRIGGER_MESSAGE"),
                node("check", "CONDITION", expression='input.message contains "sure"'),
                node("ok", "SEND_MESSAGE", message="great"),
                node("no", "SEND_MESSAGE", message="maybe later"),
            ],
            [
                edge("trigger", "check"),
                edge("check", "ok", "true"),
                edge("check", "no", "false"),
            ],
        )

    def test_true_branch(self):
        h = make_harness(self.branch_graph())
        h.orchestrator.start("g1", conversation(), "Sure thing")
        assert h.messages() == ["great"]

    def test_false_branch(self):
        h = make_harness(self.branch_graph())
        h.orchestrator.start("g1", conversation(), "no thanks")
        assert h.messages() == ["maybe later"]

    def test_unmatched_branch_without_default_completes(self):
        """A CONDITION with no edge for its result ends the run."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("check", "CONDITION", expression="variables.flag"),
                node("ok", "SEND_MESSAGE", message="flagged"),
            ],
            [edge("trigger", "check"), edge("check", "ok", "true")],
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert run.context.output == {"conditionResult": False}
        assert h.messages() == []

    def test_switch_on_value(self):
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MESSAGE"),
                node("route", "SWITCH", value="{{input.message}}"),
                node("sales", "SEND_MESSAGE", message="sales"),
                node("support", "SEND_MESSAGE", message="support"),
                node("other", "SEND_MESSAGE", message="other"),
            ],
            [
                edge("trigger", "route"),
                edge("route", "sales", "1"),
                edge("route", "support", "2"),
                edge("route", "other", "default"),
            ],
        )
        h = make_harness(graph)
        h.orchestrator.start("g1", conversation("a"), "2")
        h.orchestrator.start("g1", conversation("b"), "9")

        assert h.messages() == ["support", "other"]

    def test_invalid_expression_fails_run(self):
        """A condition that does not parse puts the run in ERROR."""
        graph = make_graph(
            [node("trigger", "TRIGGER_MANUAL"), node("check", "CONDITION", expression="a ==")],
            chain("trigger", "check"),
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.ERROR
        assert "Evaluation error" in run.error
        assert h.reload(run).status == RunStatus.ERROR
        error = h.bus.of_type(EventType.ERROR)[0]
        assert error.payload["errorType"] == "EvaluationError"


class TestReplyWaits:
    """WAIT_REPLY suspension and resumption."""

    def test_start_waits_on_reply_node(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert run.status == RunStatus.WAITING
        assert run.pointer == "ask"
        assert run.wait.kind == WaitKind.REPLY
        assert run.wait.node_id == "ask"
        assert h.messages() == ["1 or 2?"]
        waiting = h.bus.of_type(EventType.WAITING)[0]
        assert waiting.payload == {"timeoutSeconds": 300.0, "waitKind": WaitKind.REPLY}

    def test_reply_mapping(self):
        """Replying "2" with mapping {"2": "optionB"} stores optionB."""
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        run = h.orchestrator.resume(run.id, "2")

        assert run.status == RunStatus.COMPLETED
        assert run.context.variables["choice"] == "optionB"
        assert run.context.output == {"choice": "optionB"}
        assert run.context.input == {"message": "2"}
        assert run.interaction_count == 1

    def test_unmapped_reply_stored_verbatim(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        run = h.orchestrator.resume(run, " Three ")

        assert run.context.variables["choice"] == " Three "

    def test_resume_publishes_previous_status(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.orchestrator.resume(run.id, "1")

        resumed = h.bus.of_type(EventType.RESUMED)[0]
        assert resumed.payload["previousStatus"] == RunStatus.WAITING

    def test_resume_cancels_reply_timeout(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        assert h.scheduler.delay_of(timer_key(run.id)) == 300.0

        h.orchestrator.resume(run.id, "1")
        assert h.scheduler.pending() == []

    def test_reply_timeout_ends_run(self):
        h = make_harness(choice_graph(timeoutSeconds=60))
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert h.scheduler.advance(60) == 1
        stored = h.reload(run)
        assert stored.status == RunStatus.COMPLETED
        assert h.bus.of_type(EventType.COMPLETED)[0].payload["reason"] == "timeout"

    def test_reply_timeout_goto_node(self):
        h = make_harness(
            choice_graph(timeoutSeconds=60, onTimeout="GOTO_NODE", timeoutTargetNodeId="bye")
        )
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.scheduler.advance(60)

        stored = h.reload(run)
        assert stored.status == RunStatus.COMPLETED
        assert h.messages() == ["1 or 2?", "bye"]
        resumed = h.bus.of_type(EventType.RESUMED)[0]
        assert resumed.payload["trigger"] == "timeout"

    def test_goto_node_with_missing_target_fails(self):
        h = make_harness(choice_graph(onTimeout="GOTO_NODE"))
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert run.status == RunStatus.ERROR
        assert "timeout target" in run.error

    def test_stale_timer_is_ignored(self):
        """A timeout armed for an earlier wait does nothing after the reply."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MESSAGE"),
                node("ask", "WAIT_REPLY", saveAs="a", timeoutSeconds=30),
                node("ask2", "WAIT_REPLY", saveAs="b", timeoutSeconds=30),
            ],
            chain("trigger", "ask", "ask2"),
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation(), "hi")
        token = h.reload(run).wait.token
        h.orchestrator.resume(run.id, "first")

        # Fire the first wait's callback by hand
        h.orchestrator._on_timer(run.id, run.conversation, token)
        stored = h.reload(run)
        assert stored.status == RunStatus.WAITING
        assert stored.pointer == "ask2"

    def test_interaction_limit_forces_completion(self):
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MESSAGE"),
                node("ask", "WAIT_REPLY", saveAs="a"),
                node("ask2", "WAIT_REPLY", saveAs="b"),
                node("ask3", "WAIT_REPLY", saveAs="c"),
            ],
            chain("trigger", "ask", "ask2", "ask3"),
        )
        h = make_harness(graph, config=EngineConfig(max_interactions=2))
        run = h.orchestrator.start("g1", conversation(), "hi")
        run = h.orchestrator.resume(run.id, "one")
        assert run.status == RunStatus.WAITING

        run = h.orchestrator.resume(run.id, "two")
        assert run.status == RunStatus.COMPLETED
        assert "b" not in run.context.variables
        completed = h.bus.of_type(EventType.COMPLETED)[0]
        assert completed.payload["reason"] == "interaction limit reached"

    def test_resume_finished_run_is_noop(self):
        h = make_harness(linear_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        again = h.orchestrator.resume(run.id, "more")

        assert again.status == RunStatus.COMPLETED
        assert again.interaction_count == 0

    def test_resume_unknown_run(self):
        h = make_harness(linear_graph())
        with pytest.raises(RunNotFoundError):
            h.orchestrator.resume("missing", "x")


class TestTimerWaits:
    """WAIT suspension and auto-resume."""

    def wait_graph(self, **config):
        return make_graph(
            [
                node("trigger", "TRIGGER_MESSAGE"),
                node("pause", "WAIT", **config),
                node("later", "SEND_MESSAGE", message="later"),
            ],
            chain("trigger", "pause", "later"),
        )

    def test_timer_wait_advances_pointer(self):
        """A timer suspend parks the pointer on the node after the wait."""
        h = make_harness(self.wait_graph(seconds=5))
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert run.status == RunStatus.WAITING
        assert run.pointer == "later"
        assert run.wait.kind == WaitKind.TIMER
        assert run.wait.resume_at == h.clock.now + 5000
        assert h.scheduler.delay_of(timer_key(run.id)) == 5.0

    def test_timer_fires_and_run_completes(self):
        h = make_harness(self.wait_graph(minutes=1, seconds=30))
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert h.scheduler.advance(89) == 0
        assert h.scheduler.advance(1) == 1
        assert h.reload(run).status == RunStatus.COMPLETED
        assert h.messages() == ["later"]
        resumed = h.bus.of_type(EventType.RESUMED)[0]
        assert resumed.payload["trigger"] == "timer"

    def test_timer_does_not_count_as_interaction(self):
        h = make_harness(self.wait_graph(seconds=1))
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.scheduler.advance(1)

        assert h.reload(run).interaction_count == 0

    def test_reply_during_timer_wait_is_recorded(self):
        """An inbound message during a pause is stored but does not skip it."""
        h = make_harness(self.wait_graph(seconds=10))
        run = h.orchestrator.start("g1", conversation(), "hi")
        run = h.orchestrator.resume(run.id, "are you there?")

        assert run.status == RunStatus.WAITING
        assert run.context.input == {"message": "are you there?"}
        assert h.messages() == []
        h.scheduler.advance(10)
        assert h.messages() == ["later"]

    def test_timer_gives_up_when_locked(self):
        h = make_harness(self.wait_graph(seconds=1))
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.store.acquire_lock(run.conversation.lock_key, 60_000)

        h.scheduler.advance(1)
        assert h.reload(run).status == RunStatus.WAITING

    def test_negative_wait_fails_run(self):
        h = make_harness(self.wait_graph(seconds=-5))
        run = h.orchestrator.start("g1", conversation(), "hi")
        assert run.status == RunStatus.ERROR


class TestLoops:
    """LOOP iteration through the step loop."""

    def test_loop_appends_items_in_order(self):
        """LOOP over [a, b, c] appending item yields [a, b, c]."""
        h = make_harness(loop_graph(["a", "b", "c"]))
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert run.context.variables["seen"] == ["a", "b", "c"]
        assert run.context.output == {"seen": ["a", "b", "c"]}
        assert "__loop_stack" not in run.context.variables

    def test_loop_over_variable_path(self):
        h = make_harness(loop_graph("variables.names"))
        run = h.orchestrator.start("g1", conversation(), variables={"names": ["x", "y"]})
        assert run.context.variables["seen"] == ["x", "y"]

    def test_empty_loop_takes_done_edge(self):
        h = make_harness(loop_graph([]))
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert run.history == ["loop", "end"]
        assert run.context.output == {"seen": None}

    def test_body_traversals_match_item_count(self):
        """Control-flow nodes inside the body do not change the traversal count."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("loop", "LOOP", items=[1, 2, 3, 4]),
                node("count", "SET_VARIABLE", name="passes", mode="increment"),
                node("even", "CONDITION", expression="variables.index == 1 or index == 3"),
                node("mark", "SET_VARIABLE", name="evens", mode="append", value="{{item}}"),
                node("end", "END", outputVariables=["passes", "evens"]),
            ],
            [
                edge("trigger", "loop"),
                edge("loop", "count", "loop"),
                edge("count", "even"),
                edge("even", "mark", "true"),
                edge("mark", "loop"),
                edge("loop", "end", "done"),
            ],
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert run.context.output == {"passes": 4, "evens": [2, 4]}

    def test_loop_without_done_edge_completes(self):
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("loop", "LOOP", items=["a", "b"]),
                node("say", "SEND_MESSAGE", message="item {{item}}"),
            ],
            [edge("trigger", "loop"), edge("loop", "say", "loop")],
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert h.messages() == ["item a", "item b"]

    def test_nested_loops(self):
        """An inner loop with no done edge hands control back to the outer loop."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("outer", "LOOP", items=[1, 2], itemVar="o"),
                node("inner", "LOOP", items=["x", "y"], itemVar="i"),
                node("pair", "SET_VARIABLE", name="pairs", mode="append", value="{{o}}{{i}}"),
                node("end", "END", outputVariables="pairs"),
            ],
            [
                edge("trigger", "outer"),
                edge("outer", "inner", "loop"),
                edge("inner", "pair", "body"),
                edge("pair", "inner"),
                edge("outer", "end", "done"),
            ],
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert run.context.variables["pairs"] == ["1x", "1y", "2x", "2y"]

    def test_wait_reply_inside_loop(self):
        """A reply wait in a loop body resumes into the next iteration."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("loop", "LOOP", items=["name", "email"], itemVar="field"),
                node("ask", "WAIT_REPLY", saveAs="answer", message="Your {{field}}?"),
                node("keep", "SET_VARIABLE", name="answers", mode="append", value="{{answer}}"),
                node("end", "END", outputVariables="answers"),
            ],
            [
                edge("trigger", "loop"),
                edge("loop", "ask", "loop"),
                edge("ask", "keep"),
                edge("keep", "loop"),
                edge("loop", "end", "done"),
            ],
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())
        run = h.orchestrator.resume(run.id, "Ana")
        assert run.status == RunStatus.WAITING
        run = h.orchestrator.resume(run.id, "ana@example.com")

        assert run.status == RunStatus.COMPLETED
        assert run.context.output == {"answers": ["Ana", "ana@example.com"]}
        assert h.messages() == ["Your name?", "Your email?"]


class TestFailures:
    """Errors that end a run, and errors that do not."""

    def test_iteration_ceiling(self):
        """A cycle without a suspend point errors at the ceiling instead of hanging."""
        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("a", "SET_VARIABLE", name="n", mode="increment"),
                node("b", "SET_VARIABLE", name="m", mode="increment"),
            ],
            [edge("trigger", "a"), edge("a", "b"), edge("b", "a")],
        )
        h = make_harness(graph, config=EngineConfig(max_steps=10))
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.ERROR
        assert "exceeded 10 steps" in run.error
        assert run.steps_executed == 10
        assert h.store.find_active(conversation().key) is None

    def test_action_failure_does_not_abort(self):
        """A failing HTTP call is folded into output and the run continues."""

        class BrokenSession:
            def request(self, method, url, **kwargs):
                raise requests.ConnectionError("connection refused")

        graph = make_graph(
            [
                node("trigger", "TRIGGER_MANUAL"),
                node("call", "HTTP_REQUEST", url="http://crm.invalid/contacts"),
                node("check", "CONDITION", expression="output.error is_not_empty"),
                node("sorry", "SEND_MESSAGE", message="try again later"),
            ],
            [edge("trigger", "call"), edge("call", "check"), edge("check", "sorry", "true")],
        )
        h = make_harness(graph, http=BrokenSession())
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        assert h.messages() == ["try again later"]

    def test_unknown_node_kind_fails_run(self):
        graph = make_graph(
            [node("trigger", "TRIGGER_MANUAL"), node("x", "TELEPORT")], chain("trigger", "x")
        )
        h = make_harness(graph)
        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.ERROR
        assert "TELEPORT" in run.error

    def test_custom_handler(self):
        """Custom node kinds registered on the dispatcher are executed."""

        class ShoutHandler(NodeHandler):
            def execute(self):
                text = self.text("text").upper()
                return StepResult.advance(self.next_node(), output={"shout": text})

        dispatcher = EffectDispatcher()
        dispatcher.register("shout", ShoutHandler)
        graph = make_graph(
            [node("trigger", "TRIGGER_MANUAL"), node("s", "SHOUT", text="hey {{who}}")],
            chain("trigger", "s"),
        )
        h = make_harness(graph, dispatcher=dispatcher)
        run = h.orchestrator.start("g1", conversation(), variables={"who": "you"})

        assert run.context.output == {"shout": "HEY YOU"}

    def test_missing_graph(self):
        h = make_harness()
        with pytest.raises(GraphError):
            h.orchestrator.start("nope", conversation())
        assert h.store.get_all_runs() == []

    def test_invalid_graph_is_rejected_before_run(self):
        graph = make_graph(
            [node("trigger", "TRIGGER_MANUAL")], [edge("trigger", "ghost")]
        )
        h = make_harness(graph)
        with pytest.raises(GraphError, match="ghost"):
            h.orchestrator.start("g1", conversation())

    def test_publisher_failure_is_swallowed(self):
        class BrokenPublisher:
            def publish(self, event):
                raise RuntimeError("bus down")

        h = make_harness(linear_graph(), publisher=BrokenPublisher())
        run = h.orchestrator.start("g1", conversation(), "hi")
        assert run.status == RunStatus.COMPLETED

    def test_effect_sink_failure_is_swallowed(self):
        dispatcher = EffectDispatcher()

        def broken(effect, run):
            raise RuntimeError("channel down")

        dispatcher.register_sink("send_message", broken)
        h = make_harness(linear_graph(), dispatcher=dispatcher)
        run = h.orchestrator.start("g1", conversation(), "hi")

        assert run.status == RunStatus.COMPLETED


class TestMutualExclusion:
    """One active run per conversation."""

    def test_second_start_conflicts(self):
        h = make_harness(choice_graph())
        first = h.orchestrator.start("g1", conversation(), "hi")

        with pytest.raises(ConflictError) as exc:
            h.orchestrator.start("g1", conversation(), "hi again")
        assert exc.value.run_id == first.id
        assert len(h.store.get_all_runs()) == 1

    def test_other_conversation_is_independent(self):
        h = make_harness(choice_graph())
        h.orchestrator.start("g1", conversation("a"), "hi")
        run = h.orchestrator.start("g1", conversation("b"), "hi")
        assert run.status == RunStatus.WAITING

    def test_start_after_completion(self):
        h = make_harness(linear_graph())
        h.orchestrator.start("g1", conversation(), "hi")
        run = h.orchestrator.start("g1", conversation(), "hi")
        assert run.status == RunStatus.COMPLETED

    def test_start_while_locked_conflicts(self):
        h = make_harness(linear_graph())
        h.store.acquire_lock(conversation().lock_key, 60_000)

        with pytest.raises(ConflictError):
            h.orchestrator.start("g1", conversation(), "hi")

    def test_resume_while_locked(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.store.acquire_lock(run.conversation.lock_key, 60_000)

        with pytest.raises(LockedError):
            h.orchestrator.resume(run.id, "1")
        assert h.reload(run).status == RunStatus.WAITING

    def test_lock_released_after_calls(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        assert h.store.check_lock(run.conversation.lock_key) is None
        h.orchestrator.resume(run.id, "1")
        assert h.store.check_lock(run.conversation.lock_key) is None

    def test_overrun_does_not_release_successor_lock(self):
        """A drive that outlives its lock leaves the next holder's lock alone."""
        key = conversation().lock_key
        holder = {}

        class SlowHandler(NodeHandler):
            def execute(self):
                store = holder["store"]
                # The TTL lapses mid-node and another worker takes the mutex
                store.release_lock(key)
                assert store.acquire_lock(key, 60_000, owner="other-worker")
                return StepResult.advance(self.next_node())

        dispatcher = EffectDispatcher()
        dispatcher.register("slow", SlowHandler)
        graph = make_graph(
            [node("trigger", "TRIGGER_MANUAL"), node("s", "SLOW"), node("end", "END")],
            chain("trigger", "s", "end"),
        )
        h = make_harness(graph, dispatcher=dispatcher)
        holder["store"] = h.store

        run = h.orchestrator.start("g1", conversation())

        assert run.status == RunStatus.COMPLETED
        lock = h.store.check_lock(key)
        assert lock is not None
        assert lock.owner == "other-worker"

    def test_concurrent_starts_admit_one(self):
        h = make_harness(choice_graph())
        workers = 8
        barrier = threading.Barrier(workers)
        started, conflicts = [], []

        def attempt():
            barrier.wait()
            try:
                started.append(h.orchestrator.start("g1", conversation(), "hi"))
            except ConflictError as e:
                conflicts.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(started) == 1
        assert len(conflicts) == workers - 1
        assert [r.id for r in h.store.get_all_runs()] == [started[0].id]

    def test_expired_active_run_does_not_block_start(self):
        h = make_harness(choice_graph())
        old = h.orchestrator.start("g1", conversation(), "hi")
        h.clock.advance(25 * 3600)

        new = h.orchestrator.start("g1", conversation(), "hi")
        assert new.id != old.id
        assert h.reload(old).status == RunStatus.EXPIRED


class TestExpiry:
    """Deadline handling."""

    def test_resume_after_deadline_expires(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.clock.advance(24 * 3600)

        run = h.orchestrator.resume(run.id, "1")
        assert run.status == RunStatus.EXPIRED
        assert "choice" not in run.context.variables
        assert EventType.EXPIRED in h.event_types()

    def test_expire_due(self):
        h = make_harness(choice_graph())
        stale = h.orchestrator.start("g1", conversation("a"), "hi")
        h.clock.advance(23 * 3600)
        fresh = h.orchestrator.start("g1", conversation("b"), "hi")
        h.clock.advance(2 * 3600)

        expired = h.orchestrator.expire_due()
        assert [r.id for r in expired] == [stale.id]
        assert h.reload(stale).status == RunStatus.EXPIRED
        assert h.reload(fresh).status == RunStatus.WAITING
        assert h.scheduler.pending() == [timer_key(fresh.id)]

    def test_expire_skips_locked_run(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        h.clock.advance(25 * 3600)
        h.store.acquire_lock(run.conversation.lock_key, 60_000)

        assert h.orchestrator.expire_due() == []
        assert h.reload(run).status == RunStatus.WAITING

    def test_expire_ignores_live_run(self):
        h = make_harness(choice_graph())
        run = h.orchestrator.start("g1", conversation(), "hi")
        assert h.orchestrator.expire(run) is None
