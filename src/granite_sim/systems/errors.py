"""
Error types raised by the simulation.

Every rejection is raised before any state is touched, so callers can
rely on "error means nothing changed". Each error carries a `kind`
(how an adapter should classify it) and a stable `code`.
"""

from __future__ import annotations


class SimulationError(Exception):
    """Base class for all rule rejections."""
    kind = "validation"
    code = "INVALID"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ─── Validation ─────────────────────────────────────────────

class ActionRejectedError(SimulationError):
    """Action not allowed for this participant right now."""
    code = "ACTION_REJECTED"


class UnknownEventError(SimulationError):
    code = "UNKNOWN_EVENT"

    def __init__(self, key: str):
        self.key = key
        super().__init__("Unknown event trigger")


class EventWrongPhaseError(SimulationError):
    code = "EVENT_WRONG_PHASE"

    def __init__(self, key: str, phase: str):
        self.key = key
        self.phase = phase
        super().__init__(f"Event {key} is not available in {phase}.")


class InvalidDecisionError(SimulationError):
    code = "INVALID_DECISION"

    def __init__(self, decision: str):
        self.decision = decision
        super().__init__("Invalid BoE decision")


class InvalidNameError(SimulationError):
    code = "INVALID_NAME"


class InvalidMessageError(SimulationError):
    code = "INVALID_MESSAGE"


class InvalidCodeError(SimulationError):
    code = "INVALID_CODE"

    def __init__(self):
        super().__init__("Invalid session code.")


class InvalidImageError(SimulationError):
    code = "INVALID_IMAGE"

    def __init__(self):
        super().__init__("Invalid image payload.")


# ─── Conflicts ──────────────────────────────────────────────

class StateConflictError(SimulationError):
    """Request is well-formed but conflicts with current state."""
    kind = "conflict"
    code = "CONFLICT"


class InvalidTransitionError(StateConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Phase transition blocked. Move sequentially from {current} to the next phase."
        )


class EventAlreadyFiredError(StateConflictError):
    code = "EVENT_ALREADY_FIRED"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Event {key} already triggered.")


class DecisionAlreadyMadeError(StateConflictError):
    code = "DECISION_ALREADY_MADE"

    def __init__(self, bank_status: str):
        self.bank_status = bank_status
        super().__init__(f"Resolution already decided: bank is {bank_status}.")


class DuplicateNameError(StateConflictError):
    code = "DUPLICATE_NAME"

    def __init__(self, name: str):
        self.name = name
        super().__init__("This name has already joined. Use resume on your original device.")


# ─── Credentials / lookup ───────────────────────────────────

class CredentialExpiredError(SimulationError):
    kind = "credential"
    code = "QR_EXPIRED"

    def __init__(self):
        super().__init__("Join code expired. Scan the latest QR code.")


class ParticipantNotFoundError(SimulationError):
    kind = "not_found"
    code = "NOT_FOUND"

    def __init__(self, what: str = "Participant"):
        super().__init__(f"{what} not found")


# ─── Collaborators ──────────────────────────────────────────

class IdentityUnavailableError(SimulationError):
    kind = "unavailable"
    code = "OCR_UNAVAILABLE"

    def __init__(self):
        super().__init__("OCR service not configured on server.")
