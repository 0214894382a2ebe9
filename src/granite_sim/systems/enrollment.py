"""
Joining and resuming.

A participant joins by scanning the room's rotating QR (session code plus
join token), supplying a display name (usually read off their student ID)
and answering a three-question quiz. The quiz score, balanced against role
quotas, decides who lends wholesale and who deposits.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..state.event_bus import EventType
from ..state.schema import DepositorAccount, Participant, Role, WholesaleAccount
from .errors import (
    CredentialExpiredError,
    DuplicateNameError,
    InvalidCodeError,
    InvalidNameError,
    ParticipantNotFoundError,
)

if TYPE_CHECKING:
    from ..engine import GameEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuizQuestion:
    id: str
    prompt: str
    options: tuple[tuple[str, str], ...]
    correct: str

    def public(self) -> dict:
        """Question as shown to joiners; the answer stays server-side."""
        return {
            "id": self.id,
            "prompt": self.prompt,
            "options": [{"id": oid, "text": text} for oid, text in self.options],
        }


JOIN_QUIZ: tuple[QuizQuestion, ...] = (
    QuizQuestion(
        id="q1",
        prompt="If all lenders demand repayment at once, what risk is most immediate?",
        options=(("a", "Liquidity risk"), ("b", "FX translation risk"), ("c", "Tax accounting risk")),
        correct="a",
    ),
    QuizQuestion(
        id="q2",
        prompt="LCR below 100% signals that:",
        options=(
            ("a", "The bank has enough high-quality liquid assets for stressed outflows"),
            ("b", "The bank may not have enough liquid assets for stressed outflows"),
            ("c", "The bank is automatically insolvent"),
        ),
        correct="b",
    ),
    QuizQuestion(
        id="q3",
        prompt="In a bank run, which usually leaves faster?",
        options=(
            ("a", "Long-term insured retail deposits"),
            ("b", "Short-term wholesale funding"),
            ("c", "Core equity capital"),
        ),
        correct="b",
    ),
)


def clean_display_name(raw: str, max_length: int = 40) -> str:
    """Trim, collapse whitespace, truncate."""
    return re.sub(r"\s+", " ", str(raw or "")).strip()[:max_length].strip()


def normalize_name(raw: str) -> str:
    """Comparison key for duplicate detection: lowercase letters and single spaces."""
    letters = re.sub(r"[^a-z\s]", " ", str(raw or "").lower())
    return re.sub(r"\s+", " ", letters).strip()


def score_quiz(answers: dict | None) -> int:
    if not isinstance(answers, dict):
        return 0
    return sum(1 for q in JOIN_QUIZ if str(answers.get(q.id) or "") == q.correct)


class Enrollment:
    """Join, resume and role assignment."""

    def __init__(self, engine: "GameEngine"):
        self._engine = engine

    @property
    def _state(self):
        return self._engine.state

    def quiz(self) -> dict:
        return {
            "threshold": self._engine.config.wholesale_quiz_threshold,
            "questions": [q.public() for q in JOIN_QUIZ],
        }

    def assign_role(self, quiz_score: int) -> Role:
        """
        Qualification threshold, steered by role quotas.

        A full wholesale desk sends everyone to deposits; a full deposit
        book sends everyone who can still fit to wholesale.
        """
        cfg = self._engine.config
        depositors = len(self._state.depositors)
        lenders = len(self._state.wholesale)

        if lenders >= cfg.wholesale_target:
            return Role.DEPOSITOR
        if quiz_score >= cfg.wholesale_quiz_threshold:
            return Role.WHOLESALE
        if depositors >= cfg.depositor_target:
            return Role.WHOLESALE
        return Role.DEPOSITOR

    def join(
        self,
        display_name: str,
        token: str,
        code: str = "",
        quiz_answers: dict | None = None,
    ) -> Participant:
        """
        Admit a new participant.

        Raises:
            InvalidNameError: Name shorter than the minimum after cleaning.
            InvalidCodeError: Session code supplied and wrong.
            CredentialExpiredError: Join token wrong or expired.
            DuplicateNameError: Someone with the same normalized name is in.
        """
        cfg = self._engine.config
        session = self._state.session

        name = clean_display_name(display_name, cfg.max_name_length)
        if len(name) < cfg.min_name_length:
            raise InvalidNameError("ID name extraction failed. Capture a clearer ID photo.")

        if code and str(code).upper() != session.code:
            raise InvalidCodeError()

        if not session.join.is_valid(str(token or ""), self._engine.now()):
            raise CredentialExpiredError()

        key = normalize_name(name)
        if any(normalize_name(p.name) == key for p in self._state.participants.values()):
            raise DuplicateNameError(name)

        quiz_score = score_quiz(quiz_answers)
        role = self.assign_role(quiz_score)
        participant = self._new_participant(name, role, quiz_score)
        self._state.participants[participant.id] = participant

        logger.info("%s joined as %s (quiz %d/%d)", name, role.value, quiz_score, len(JOIN_QUIZ))
        self._engine.post_feed(f"{name} joined as {role.value} (quiz {quiz_score}/{len(JOIN_QUIZ)}).")
        self._engine.emit(
            EventType.PARTICIPANT_JOINED,
            participant_id=participant.id,
            role=role.value,
            quiz_score=quiz_score,
        )
        return participant

    def _new_participant(self, name: str, role: Role, quiz_score: int) -> Participant:
        cfg = self._engine.config
        now = self._engine.now()
        if role == Role.DEPOSITOR:
            base = cfg.depositor_base_balance
            account = DepositorAccount()
        else:
            base = cfg.wholesale_base_balance
            account = WholesaleAccount()
        return Participant(
            name=name,
            joined_at=now,
            balance=base,
            principal=base,
            quiz_score=quiz_score,
            verified_name=True,
            account=account,
        )

    def resume(self, resume_token: str) -> Participant:
        if not resume_token:
            raise ParticipantNotFoundError("Resume token")
        for p in self._state.participants.values():
            if p.resume_token == resume_token:
                return p
        raise ParticipantNotFoundError("Player session")
