"""
Pydantic schemas for the Granite Bank API.

Request bodies are validated here; responses are the engine's snapshot
dictionaries wrapped in a small envelope so clients can always check `ok`.
"""

from typing import Any

from pydantic import BaseModel, Field


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------

class JoinRequest(BaseModel):
    """Scan of the room QR plus the joiner's name and quiz answers."""
    name: str = Field(min_length=1, max_length=200)
    token: str
    code: str = ""
    quiz_answers: dict[str, str] = Field(default_factory=dict)


class ResumeRequest(BaseModel):
    resume_token: str


class ActionRequest(BaseModel):
    """
    One participant action.

    `payload` keys depend on the action (product, additional, amount,
    level, pct, facility, confirm_step).
    """
    participant_id: str
    action_type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class PhaseRequest(BaseModel):
    phase: str


class EventRequest(BaseModel):
    event_key: str


class DecisionRequest(BaseModel):
    decision: str


class NotifyRequest(BaseModel):
    message: str


class NameCaptureRequest(BaseModel):
    """Photo of a student ID as a browser data URL."""
    image_data_url: str


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------

class SnapshotResponse(BaseModel):
    ok: bool = True
    snapshot: dict[str, Any]


class SessionResponse(BaseModel):
    """Facilitator session view. Carries the live join token."""
    ok: bool = True
    session: dict[str, Any]


class JoinResponse(BaseModel):
    ok: bool = True
    participant_id: str
    name: str
    role: str
    quiz_score: int = 0
    resume_token: str | None = None
    snapshot: dict[str, Any]


class NameCaptureResponse(BaseModel):
    ok: bool = True
    full_name: str
    fallback_name: str = ""
    confidence: float = 0.0


class QuizResponse(BaseModel):
    ok: bool = True
    threshold: int
    questions: list[dict[str, Any]]


class ErrorResponse(BaseModel):
    """Standard error response."""
    ok: bool = False
    error: str
    code: str | None = None
