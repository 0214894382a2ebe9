"""State management for the Granite Bank simulation."""

from .schema import (
    FACILITIES,
    PRODUCTS,
    BankStatus,
    BoeStatus,
    Bucket,
    Commitment,
    DepositorAccount,
    FeedEvent,
    FeedType,
    GameState,
    Metrics,
    Participant,
    Phase,
    QueueMode,
    QueueState,
    Role,
    Scenario,
    SelectionStage,
    Session,
    WholesaleAccount,
    WithdrawalQueue,
)
from .store import StateStore, JsonStateStore, MemoryStateStore
from .event_bus import EventBus, EventType, SimEvent

__all__ = [
    "FACILITIES",
    "PRODUCTS",
    "BankStatus",
    "BoeStatus",
    "Bucket",
    "Commitment",
    "DepositorAccount",
    "FeedEvent",
    "FeedType",
    "GameState",
    "Metrics",
    "Participant",
    "Phase",
    "QueueMode",
    "QueueState",
    "Role",
    "Scenario",
    "SelectionStage",
    "Session",
    "WholesaleAccount",
    "WithdrawalQueue",
    "StateStore",
    "JsonStateStore",
    "MemoryStateStore",
    "EventBus",
    "EventType",
    "SimEvent",
]
