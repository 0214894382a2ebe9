"""Simulation systems. Each takes the owning GameEngine and works on its state."""

from .accrual import AccrualScheduler
from .actions import ActionProcessor
from .enrollment import Enrollment, JOIN_QUIZ
from .errors import (
    SimulationError,
    ActionRejectedError,
    UnknownEventError,
    EventWrongPhaseError,
    InvalidDecisionError,
    InvalidNameError,
    InvalidMessageError,
    InvalidCodeError,
    InvalidImageError,
    StateConflictError,
    InvalidTransitionError,
    EventAlreadyFiredError,
    DecisionAlreadyMadeError,
    DuplicateNameError,
    CredentialExpiredError,
    ParticipantNotFoundError,
    IdentityUnavailableError,
)
from .events import SCENARIO_EVENTS, ScenarioEvent
from .identity import (
    IdentityCapture,
    NameExtraction,
    TextNameExtractor,
    decode_image_data_url,
    extract_name,
)
from .liquidity import LiquidityModel
from .scoring import OutcomeEngine
from .session import PhaseController

__all__ = [
    "AccrualScheduler",
    "ActionProcessor",
    "Enrollment",
    "JOIN_QUIZ",
    "SimulationError",
    "ActionRejectedError",
    "UnknownEventError",
    "EventWrongPhaseError",
    "InvalidDecisionError",
    "InvalidNameError",
    "InvalidMessageError",
    "InvalidCodeError",
    "InvalidImageError",
    "StateConflictError",
    "InvalidTransitionError",
    "EventAlreadyFiredError",
    "DecisionAlreadyMadeError",
    "DuplicateNameError",
    "CredentialExpiredError",
    "ParticipantNotFoundError",
    "IdentityUnavailableError",
    "SCENARIO_EVENTS",
    "ScenarioEvent",
    "IdentityCapture",
    "NameExtraction",
    "TextNameExtractor",
    "decode_image_data_url",
    "extract_name",
    "LiquidityModel",
    "OutcomeEngine",
    "PhaseController",
]
