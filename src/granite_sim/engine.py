"""
Granite Bank simulation engine.

The single writer. GameEngine owns the GameState and hands itself to every
system, so all mutations go through one object and run to completion before
the next request or tick is looked at. Adapters (HTTP, console, tests) talk
to the public operations below and never touch the systems directly.

    engine = GameEngine(store=JsonStateStore("data"))
    participant = engine.join("Ada Lovelace", engine.session_info()["join_token"])
    engine.set_phase("phase1")
    engine.submit_action(participant["id"], "select_product", {"product": "fixed_1y"})
    engine.submit_action(participant["id"], "phase1_confirm")
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Callable

from .config import SimulationConfig
from .state.event_bus import EventBus, EventType
from .state.schema import (
    FeedEvent,
    FeedType,
    GameState,
    Participant,
    Phase,
    Session,
)
from .state.store import MemoryStateStore, StateStore
from .systems.accrual import AccrualScheduler
from .systems.actions import ActionProcessor
from .systems.enrollment import Enrollment
from .systems.errors import InvalidMessageError, ParticipantNotFoundError, SimulationError
from .systems.liquidity import LiquidityModel
from .systems.scoring import OutcomeEngine
from .systems.session import PhaseController

logger = logging.getLogger(__name__)

MAX_BROADCAST_LENGTH = 200
SNAPSHOT_FEED_ITEMS = 12


class GameEngine:
    """
    Owns one classroom session.

    Args:
        store: Where state is persisted; defaults to in-memory.
        config: Tunables; defaults to SimulationConfig().
        rng: Source of randomness for codes, tokens and queue refs.
        clock: Callable returning the current time.
    """

    def __init__(
        self,
        store: StateStore | None = None,
        config: SimulationConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store: StateStore = store if store is not None else MemoryStateStore()
        self.config = config or SimulationConfig()
        self.rng = rng or random.Random()
        self._clock = clock or datetime.now
        self.bus = EventBus()

        self.liquidity = LiquidityModel(self)
        self.phases = PhaseController(self)
        self.actions = ActionProcessor(self)
        self.outcomes = OutcomeEngine(self)
        self.accrual = AccrualScheduler(self)
        self.enrollment = Enrollment(self)

        restored = self.store.load()
        if restored is not None:
            logger.info(
                "Restored session %s in %s with %d participants",
                restored.session.code,
                restored.session.phase.value,
                len(restored.participants),
            )
            self.state = restored
        else:
            self.state = self._fresh_state()

    # -------------------------------------------------------------------------
    # Plumbing shared with the systems
    # -------------------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def _fresh_state(self) -> GameState:
        now = self.now()
        return GameState(
            session=Session(
                code=f"{self.rng.getrandbits(24):06X}",
                phase_started_at=now,
                created_at=now,
                join=self.phases.new_join_credential(),
            )
        )

    def post_feed(self, text: str, type: FeedType = FeedType.INFO) -> FeedEvent:
        """Push a line onto the shared event feed, newest first."""
        feed = self.state.session.event_feed
        entry = FeedEvent(type=type, text=text, at=self.now())
        feed.insert(0, entry)
        del feed[self.config.feed_limit:]
        self.emit(EventType.FEED_POSTED, feed_type=type.value, text=text)
        return entry

    def emit(self, event_type: EventType, **data):
        return self.bus.emit(event_type, session_id=self.state.session.id, **data)

    def persist(self) -> bool:
        """Save the whole state. Failures are logged, never raised."""
        try:
            self.store.save(self.state)
        except OSError as e:
            logger.error("Could not persist state: %s", e)
            return False
        self.emit(EventType.STATE_SAVED, ticks=self.state.ticks)
        return True

    def _participant(self, participant_id: str) -> Participant:
        participant = self.state.participants.get(participant_id or "")
        if participant is None:
            raise ParticipantNotFoundError()
        return participant

    def _commit(self) -> None:
        """Refresh derived metrics, announce them, save."""
        self.liquidity.recompute()
        self.emit(EventType.METRICS_UPDATED, buffer=self.state.metrics.liquidity_buffer)
        self.persist()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_snapshot(self, participant_id: str | None = None) -> dict:
        """
        Everything a screen needs in one consistent read.

        The participant block is included only when the id resolves; the
        join token is never part of a snapshot.
        """
        state = self.state
        session = state.session
        outcomes = self.outcomes

        snapshot = {
            "server_time": self.now().isoformat(),
            "session": {
                "id": session.id,
                "code": session.code,
                "phase": session.phase.value,
                "phase_started_at": session.phase_started_at.isoformat(),
                "bank_status": session.bank_status.value,
                "boe_status": session.boe_status.value,
                "active_events": list(session.active_events),
                "reveal_names": outcomes.revealed,
                "resolution_pending": session.resolution_pending,
                "join_expires_at": session.join.expires_at.isoformat(),
            },
            "counts": {
                "participants": len(state.participants),
                "depositors": len(state.depositors),
                "wholesale": len(state.wholesale),
                "depositor_target": self.config.depositor_target,
                "wholesale_target": self.config.wholesale_target,
            },
            "metrics": state.metrics.model_dump(mode="json"),
            "gap_table": self.liquidity.gap_table(),
            "cohorts": outcomes.cohort_breakdown(),
            "reports": {
                "retail": outcomes.retail_report(),
                "wholesale": outcomes.wholesale_report(),
            },
            "leaderboard": outcomes.leaderboard(),
            "event_feed": [
                e.model_dump(mode="json") for e in session.event_feed[:SNAPSHOT_FEED_ITEMS]
            ],
            "ticks": state.ticks,
            "participant": None,
        }

        if participant_id:
            participant = state.participants.get(participant_id)
            if participant is not None:
                snapshot["participant"] = outcomes.participant_view(participant)
        return snapshot

    def session_info(self) -> dict:
        """Facilitator view of the session, including the live join token."""
        session = self.state.session
        return {
            "id": session.id,
            "code": session.code,
            "phase": session.phase.value,
            "bank_status": session.bank_status.value,
            "join_token": session.join.token,
            "join_expires_at": session.join.expires_at.isoformat(),
            "participants": len(self.state.participants),
        }

    def quiz(self) -> dict:
        return self.enrollment.quiz()

    # -------------------------------------------------------------------------
    # Participant operations
    # -------------------------------------------------------------------------

    def join(
        self,
        display_name: str,
        token: str,
        code: str = "",
        quiz_answers: dict | None = None,
    ) -> dict:
        participant = self.enrollment.join(display_name, token, code, quiz_answers)
        self._commit()
        return {
            "id": participant.id,
            "name": participant.name,
            "role": participant.role.value,
            "quiz_score": participant.quiz_score,
            "resume_token": participant.resume_token,
            "snapshot": self.get_snapshot(participant.id),
        }

    def resume(self, resume_token: str) -> dict:
        participant = self.enrollment.resume(resume_token)
        return {
            "id": participant.id,
            "name": participant.name,
            "role": participant.role.value,
            "snapshot": self.get_snapshot(participant.id),
        }

    def submit_action(self, participant_id: str, action_type: str, payload: dict | None = None) -> dict:
        """
        Apply one participant action and return their fresh snapshot.

        Raises:
            ParticipantNotFoundError: Unknown participant id.
            ActionRejectedError: The action is not allowed right now.
        """
        participant = self._participant(participant_id)
        try:
            self.actions.submit(participant, action_type, payload or {})
        except SimulationError as e:
            logger.debug("Rejected %s from %s: %s", action_type, participant_id, e.message)
            raise

        self._commit()
        self.emit(
            EventType.ACTION_APPLIED,
            participant_id=participant.id,
            action_type=action_type,
            phase=self.state.session.phase.value,
        )
        return self.get_snapshot(participant.id)

    # -------------------------------------------------------------------------
    # Facilitator operations
    # -------------------------------------------------------------------------

    def set_phase(self, target: str | Phase) -> dict:
        self.phases.set_phase(target)
        self.persist()
        return self.get_snapshot()

    def trigger_event(self, key: str) -> dict:
        self.phases.trigger_event(key)
        self._commit()
        return self.get_snapshot()

    def apply_resolution_decision(self, decision: str) -> dict:
        self.phases.apply_resolution_decision(decision)
        self._commit()
        return self.get_snapshot()

    def reveal_names(self) -> dict:
        self.phases.reveal_names()
        self.persist()
        return self.get_snapshot()

    def rotate_join_token(self) -> dict:
        self.phases.rotate_join_token()
        self.persist()
        return self.session_info()

    def ensure_join_token_fresh(self) -> dict:
        before = self.state.session.join.token
        self.phases.ensure_join_token_fresh()
        if self.state.session.join.token != before:
            self.persist()
        return self.session_info()

    def broadcast(self, message: str) -> FeedEvent:
        text = " ".join(str(message or "").split())
        if not text:
            raise InvalidMessageError("Message is required.")
        if len(text) > MAX_BROADCAST_LENGTH:
            raise InvalidMessageError(f"Message must be {MAX_BROADCAST_LENGTH} characters or fewer.")
        entry = self.post_feed(f"GM: {text}", FeedType.BROADCAST)
        self.persist()
        return entry

    def reset_session(self) -> dict:
        """Throw away the current session and start a fresh lobby."""
        previous = self.state.session
        self.state = self._fresh_state()
        logger.info("Session %s reset; new code %s", previous.code, self.state.session.code)
        self.emit(EventType.SESSION_RESET, previous_session_id=previous.id)
        self.persist()
        return self.session_info()

    # -------------------------------------------------------------------------
    # Clock
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """One accrual step, then announce and save."""
        credited = self.accrual.accrue()
        self.emit(EventType.TICK, ticks=self.state.ticks, credited=credited)
        if credited:
            self.emit(EventType.METRICS_UPDATED, buffer=self.state.metrics.liquidity_buffer)
        self.persist()
        return credited

