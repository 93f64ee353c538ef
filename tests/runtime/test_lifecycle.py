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

"""Tests for lifecycle events and the in-process event bus."""

from convoflow.runtime import EventType, LifecycleEvent, LocalEventBus, NullPublisher
from convoflow.runtime.lifecycle import LifecyclePublisher
from tests.graph_helpers import make_run


class TestLifecycleEvent:
    def test_for_run_carries_identity(self):
        run = make_run()
        event = LifecycleEvent.for_run(EventType.WAITING, run, timeoutSeconds=30)

        assert event.run_id == run.id
        assert event.tenant_id == "t1"
        assert event.session_id == "whatsapp"
        assert event.contact_id == "5511999"
        assert event.node_id == "ask"
        assert event.payload == {"timeoutSeconds": 30}

    def test_to_dict(self):
        event = LifecycleEvent.for_run(EventType.COMPLETED, make_run(), node_id="end", reason="end")
        data = event.to_dict()
        assert data["type"] == "execution.completed"
        assert data["workflowId"] == "g1"
        assert data["nodeId"] == "end"
        assert data["reason"] == "end"
        assert "timestamp" in data

    def test_to_dict_omits_empty_node(self):
        run = make_run()
        run.pointer = None
        assert "nodeId" not in LifecycleEvent.for_run(EventType.EXPIRED, run).to_dict()


class TestLocalEventBus:
    def test_subscribers_by_type_and_wildcard(self):
        bus = LocalEventBus()
        typed, everything = [], []
        bus.subscribe(EventType.STARTED, typed.append)
        bus.subscribe("*", everything.append)

        run = make_run()
        bus.publish(LifecycleEvent.for_run(EventType.STARTED, run))
        bus.publish(LifecycleEvent.for_run(EventType.COMPLETED, run))

        assert [e.event_type for e in typed] == [EventType.STARTED]
        assert len(everything) == 2
        assert bus.types() == [EventType.STARTED, EventType.COMPLETED]

    def test_failing_subscriber_is_isolated(self):
        bus = LocalEventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe("*", broken)
        bus.subscribe("*", seen.append)
        bus.publish(LifecycleEvent.for_run(EventType.ERROR, make_run()))
        assert len(seen) == 1

    def test_unsubscribe(self):
        bus = LocalEventBus()
        seen = []
        bus.subscribe(EventType.ERROR, seen.append)
        bus.unsubscribe(EventType.ERROR, seen.append)
        bus.publish(LifecycleEvent.for_run(EventType.ERROR, make_run()))
        assert seen == []

    def test_history_is_bounded(self):
        bus = LocalEventBus(max_history=2)
        run = make_run()
        for event_type in (EventType.STARTED, EventType.WAITING, EventType.RESUMED):
            bus.publish(LifecycleEvent.for_run(event_type, run))
        assert bus.types() == [EventType.WAITING, EventType.RESUMED]
        assert bus.of_type(EventType.STARTED) == []

    def test_without_history(self):
        bus = LocalEventBus(keep_history=False)
        bus.publish(LifecycleEvent.for_run(EventType.STARTED, make_run()))
        assert bus.events == []

    def test_publishers_satisfy_protocol(self):
        assert isinstance(LocalEventBus(), LifecyclePublisher)
        assert isinstance(NullPublisher(), LifecyclePublisher)
