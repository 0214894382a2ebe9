"""
Granite Bank API Server.

FastAPI-based REST/WebSocket adapter over the simulation engine. Phones and
projector screens poll or subscribe; the facilitator drives phases through
the /api/gm routes.
"""

from .server import create_app, SimulationAPI, ConnectionManager
from .schemas import (
    ActionRequest,
    DecisionRequest,
    ErrorResponse,
    EventRequest,
    JoinRequest,
    JoinResponse,
    NotifyRequest,
    PhaseRequest,
    SnapshotResponse,
)

__all__ = [
    "create_app",
    "SimulationAPI",
    "ConnectionManager",
    "ActionRequest",
    "DecisionRequest",
    "ErrorResponse",
    "EventRequest",
    "JoinRequest",
    "JoinResponse",
    "NotifyRequest",
    "PhaseRequest",
    "SnapshotResponse",
]
