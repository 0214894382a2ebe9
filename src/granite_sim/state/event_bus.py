"""
Event bus for Granite Bank state changes.

Provides decoupled communication between the engine and its observers
(WebSocket broadcaster, facilitator console, tests).

Usage:
    from .event_bus import EventBus, EventType

    bus = EventBus()
    bus.on(EventType.PHASE_CHANGED, my_handler)

    # Emit (in the engine when state changes)
    bus.emit(EventType.PHASE_CHANGED, before="phase1", after="phase2")

    # Handler receives event
    def my_handler(event: SimEvent):
        print(f"Now in {event.data['after']}")

The engine owns one bus per instance; there is no global singleton.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Simulation events that can be published."""

    # Session lifecycle
    PHASE_CHANGED = "phase.changed"
    SCENARIO_TRIGGERED = "scenario.triggered"
    RESOLUTION_DECIDED = "resolution.decided"
    BANK_COLLAPSED = "bank.collapsed"
    SESSION_RESET = "session.reset"

    # Participants
    PARTICIPANT_JOINED = "participant.joined"
    ACTION_APPLIED = "action.applied"

    # Shared state
    FEED_POSTED = "feed.posted"
    METRICS_UPDATED = "metrics.updated"
    TICK = "tick"
    STATE_SAVED = "state.saved"


@dataclass
class SimEvent:
    """
    Event payload for the event bus.

    Attributes:
        type: The event type (from EventType enum)
        data: Event-specific payload as dict
        session_id: ID of the session this event belongs to
        timestamp: When the event was emitted
    """

    type: EventType
    data: dict = field(default_factory=dict)
    session_id: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def __str__(self) -> str:
        return f"[{self.type.value}] {self.data}"


# Type alias for event handlers
EventHandler = Callable[[SimEvent], None]


class EventBus:
    """
    Synchronous event bus.

    Listeners are called immediately on emit().
    For async work, listeners should schedule a task on the running loop.
    """

    def __init__(self, history_limit: int = 100):
        self._listeners: dict[EventType, list[EventHandler]] = {}
        self._history: list[SimEvent] = []
        self._history_limit = history_limit

    def on(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to an event type. Duplicate subscriptions are ignored."""
        if event_type not in self._listeners:
            self._listeners[event_type] = []
        if handler not in self._listeners[event_type]:
            self._listeners[event_type].append(handler)

    def on_all(self, handler: EventHandler) -> None:
        """Subscribe to every event type."""
        for event_type in EventType:
            self.on(event_type, handler)

    def off(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe from an event type."""
        if event_type in self._listeners and handler in self._listeners[event_type]:
            self._listeners[event_type].remove(handler)

    def emit(self, event_type: EventType, session_id: str = "", **data) -> SimEvent:
        """
        Emit an event to all subscribers.

        Args:
            event_type: The type of event
            session_id: Session context (optional)
            **data: Event-specific data

        Returns:
            The emitted SimEvent (for chaining/testing)
        """
        event = SimEvent(type=event_type, data=data, session_id=session_id)

        self._history.append(event)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit :]

        for handler in list(self._listeners.get(event_type, [])):
            try:
                handler(event)
            except Exception:
                # Listener failures stay isolated from the emitter
                logger.exception("Error in handler for %s", event_type.value)

        return event

    def clear(self) -> None:
        """Clear all listeners. Useful for testing."""
        self._listeners.clear()

    def get_history(self, event_type: EventType | None = None) -> list[SimEvent]:
        """Recent events, optionally filtered by type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.type == event_type]

    def listener_count(self, event_type: EventType) -> int:
        """Get number of listeners for an event type."""
        return len(self._listeners.get(event_type, []))
