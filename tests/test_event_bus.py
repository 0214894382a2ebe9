"""
Tests for the event bus and the events the engine publishes.
"""

import pytest

from granite_sim.state.event_bus import EventBus, EventType, SimEvent
from granite_sim.systems import ActionRejectedError

from conftest import join_depositor


class TestEventBus:
    def test_emit_reaches_subscriber(self):
        bus = EventBus()
        received = []
        bus.on(EventType.PHASE_CHANGED, received.append)

        event = bus.emit(EventType.PHASE_CHANGED, session_id="s1", before="lobby", after="phase1")

        assert received == [event]
        assert event.data == {"before": "lobby", "after": "phase1"}
        assert event.session_id == "s1"
        assert str(event) == "[phase.changed] {'before': 'lobby', 'after': 'phase1'}"

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        received = []
        bus.on(EventType.TICK, received.append)
        bus.on(EventType.TICK, received.append)
        bus.emit(EventType.TICK)
        assert len(received) == 1
        assert bus.listener_count(EventType.TICK) == 1

    def test_off_and_clear(self):
        bus = EventBus()
        received = []
        bus.on(EventType.TICK, received.append)
        bus.off(EventType.TICK, received.append)
        bus.emit(EventType.TICK)
        assert received == []

        bus.on_all(received.append)
        bus.clear()
        bus.emit(EventType.TICK)
        assert received == []

    def test_failing_listener_isolated(self):
        """One broken listener does not stop the others or the emitter."""
        bus = EventBus()
        received = []

        def broken(event: SimEvent):
            raise RuntimeError("boom")

        bus.on(EventType.TICK, broken)
        bus.on(EventType.TICK, received.append)
        bus.emit(EventType.TICK)
        assert len(received) == 1

    def test_history_limited(self):
        bus = EventBus(history_limit=3)
        for i in range(5):
            bus.emit(EventType.TICK, n=i)
        history = bus.get_history()
        assert [e.data["n"] for e in history] == [2, 3, 4]
        assert bus.get_history(EventType.PHASE_CHANGED) == []


class TestEngineEvents:
    def test_join_and_action_events(self, engine):
        received = []
        engine.bus.on_all(received.append)

        depositor = join_depositor(engine)
        engine.set_phase("phase1")
        engine.submit_action(depositor.id, "select_product", {"product": "fixed_1y"})

        types = [e.type for e in received]
        assert EventType.PARTICIPANT_JOINED in types
        assert EventType.PHASE_CHANGED in types
        assert types[-1] == EventType.ACTION_APPLIED
        assert received[-1].data["action_type"] == "select_product"
        assert all(e.session_id == engine.state.session.id for e in received)

    def test_rejected_action_emits_nothing(self, engine, depositor):
        received = []
        engine.set_phase("phase1")
        engine.bus.on_all(received.append)
        with pytest.raises(ActionRejectedError):
            engine.submit_action(depositor.id, "withdraw_now")
        assert received == []

    def test_tick_events(self, engine, depositor):
        engine.set_phase("phase1")
        engine.tick()
        tick = engine.bus.get_history(EventType.TICK)[-1]
        assert tick.data["ticks"] == engine.state.ticks
