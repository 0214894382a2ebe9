"""
Session / phase controller.

Owns the facilitator-side state machine:

    lobby → phase1 → phase2 → phase3 → phase4 → end

Design invariants:
- Phase only ever moves to its immediate successor.
- Scenario events are phase-gated and fire at most once each.
- The terminal bank status is decided exactly once, either by the
  facilitator's resolution decision or by the liquidity model's organic
  collapse, whichever comes first.
- Every check runs before any mutation.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from ..state.event_bus import EventType
from ..state.schema import (
    BankStatus,
    BoeStatus,
    FeedType,
    JoinCredential,
    Phase,
    QueueMode,
    QueueState,
    Role,
    Scenario,
    WithdrawalQueue,
    next_phase,
    round_money,
)
from .errors import (
    DecisionAlreadyMadeError,
    EventAlreadyFiredError,
    EventWrongPhaseError,
    InvalidDecisionError,
    InvalidTransitionError,
    UnknownEventError,
)
from .events import SCENARIO_EVENTS

if TYPE_CHECKING:
    from ..engine import GameEngine

logger = logging.getLogger(__name__)


RESOLUTION_DECISIONS = ("rescue", "collapse")

RESCUE_CONFIG = {
    "gap_weight": 0.55,
    "per_refusal": 220_000_000,
    "per_withdrawal": 7_500_000,
    "floor": 220_000_000,
    "cap": 1_600_000_000,
}


class PhaseController:
    """Facilitator commands: phase changes, scenario events, resolution."""

    def __init__(self, engine: "GameEngine"):
        self._engine = engine

    @property
    def _state(self):
        return self._engine.state

    @property
    def _session(self):
        return self._engine.state.session

    # -------------------------------------------------------------------------
    # Phase transitions
    # -------------------------------------------------------------------------

    def set_phase(self, target: str | Phase) -> Phase:
        """
        Advance to the immediate successor phase.

        Raises:
            InvalidTransitionError: Unknown phase, or anything but the next one.
        """
        current = self._session.phase
        try:
            target_phase = Phase(target)
        except ValueError:
            raise InvalidTransitionError(current.value, str(target))

        if target_phase != next_phase(current):
            raise InvalidTransitionError(current.value, target_phase.value)

        session = self._session
        session.phase = target_phase
        session.phase_started_at = self._engine.now()
        self._engine.post_feed(f"Phase changed to {target_phase.value.upper()}.", FeedType.PHASE)

        entry = {
            Phase.PHASE1: self._enter_phase1,
            Phase.PHASE2: self._enter_phase2,
            Phase.PHASE3: self._enter_phase3,
            Phase.PHASE4: self._enter_phase4,
            Phase.END: self._enter_end,
        }[target_phase]
        entry()

        logger.info("Phase %s -> %s", current.value, target_phase.value)
        self._engine.emit(EventType.PHASE_CHANGED, before=current.value, after=target_phase.value)
        return target_phase

    def _enter_phase1(self) -> None:
        self._session.bank_status = BankStatus.STABLE
        self._session.event_triggered_at = {}

    def _enter_phase2(self) -> None:
        actions = self._engine.actions
        for p in self._state.participants.values():
            if p.role == Role.DEPOSITOR:
                actions.finalize_depositor(p)
            else:
                actions.finalize_wholesale(p)
        self._state.metrics.scenario = Scenario.BASE

    def _enter_phase3(self) -> None:
        metrics = self._state.metrics
        metrics.stress_types.market_wide = True
        metrics.cfp_stage.stage2 = "ACTIVE"
        now = self._engine.now()
        for p in self._state.depositors:
            p.account.switched_to_instant = False
            p.account.queue = WithdrawalQueue(state=QueueState.NONE, mode=QueueMode.FULL, updated_at=now)

    def _enter_phase4(self) -> None:
        self._state.metrics.cfp_stage.stage3 = "PENDING"
        self._session.resolution_pending = True

    def _enter_end(self) -> None:
        self._session.resolution_pending = False
        self._session.reveal_names = True

    # -------------------------------------------------------------------------
    # Scenario events
    # -------------------------------------------------------------------------

    def trigger_event(self, key: str) -> None:
        """
        Fire a one-shot scenario event.

        Raises:
            UnknownEventError: No such key.
            EventWrongPhaseError: Not allowed in the current phase.
            EventAlreadyFiredError: Key already fired this session.
        """
        event = SCENARIO_EVENTS.get(key)
        if event is None:
            raise UnknownEventError(key)
        session = self._session
        if session.phase not in event.allowed_phases:
            raise EventWrongPhaseError(key, session.phase.value)
        if key in session.active_events:
            raise EventAlreadyFiredError(key)

        self._state.metrics = event.apply(self._state.metrics)
        session.active_events.append(key)
        session.event_triggered_at[key] = self._engine.now()
        self._engine.post_feed(event.feed_text(self._engine.config), FeedType.ALERT)

        logger.info("Scenario event %s fired in %s", key, session.phase.value)
        self._engine.emit(EventType.SCENARIO_TRIGGERED, key=key, phase=session.phase.value)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def apply_resolution_decision(self, decision: str) -> BankStatus:
        """
        Record the central bank's terminal decision.

        Rescue injects emergency liquidity sized from the short-term funding
        gap and outstanding stress. Collapse zeroes the buffer and caps every
        still-invested depositor at the protection limit.

        Raises:
            InvalidDecisionError: Not "rescue" or "collapse".
            DecisionAlreadyMadeError: Bank status is already terminal.
        """
        if decision not in RESOLUTION_DECISIONS:
            raise InvalidDecisionError(decision)
        session = self._session
        if session.bank_status != BankStatus.STABLE:
            raise DecisionAlreadyMadeError(session.bank_status.value)

        metrics = self._state.metrics
        if decision == "rescue":
            injection = self.rescue_injection()
            session.boe_status = BoeStatus.APPROVED
            session.bank_status = BankStatus.RESCUED
            metrics.outcomes.boe_injected = True
            metrics.outcomes.rescue_injection_amount = injection
            metrics.liquidity_buffer = round_money(metrics.liquidity_buffer + injection)
            self._engine.post_feed(
                f"BoE rescue approved. Emergency funding injected: {injection:,.0f}.",
                FeedType.CRITICAL,
            )
        else:
            session.boe_status = BoeStatus.REJECTED
            session.bank_status = BankStatus.COLLAPSED
            metrics.liquidity_buffer = 0.0
            self._engine.post_feed("BoE rescue denied/late. Granite Bank collapsed.", FeedType.CRITICAL)

        previous = session.phase
        session.phase = Phase.END
        session.phase_started_at = self._engine.now()
        session.resolution_pending = False
        session.reveal_names = True
        self._settle_participants()

        logger.info("Resolution decided in %s: %s", previous.value, session.bank_status.value)
        self._engine.emit(
            EventType.RESOLUTION_DECIDED,
            decision=decision,
            bank_status=session.bank_status.value,
            previous_phase=previous.value,
        )
        return session.bank_status

    def rescue_injection(self) -> float:
        """Emergency funding a rescue would inject right now."""
        sheet = self._engine.liquidity.balance_sheet()
        refusals = sum(1 for p in self._state.wholesale if p.account.refused)
        withdrawals = sum(1 for p in self._state.depositors if p.account.withdrew)
        raw = (
            sheet.short_term_gap * RESCUE_CONFIG["gap_weight"]
            + refusals * RESCUE_CONFIG["per_refusal"]
            + withdrawals * RESCUE_CONFIG["per_withdrawal"]
        )
        return round_money(min(RESCUE_CONFIG["cap"], max(RESCUE_CONFIG["floor"], raw)))

    def _settle_participants(self) -> None:
        limit = self._engine.config.protection_limit
        collapsed = self._session.bank_status == BankStatus.COLLAPSED
        now = self._engine.now()

        for p in self._state.participants.values():
            acct = p.account
            if p.role == Role.WHOLESALE:
                if not acct.refused:
                    acct.held_through_resolution = True
            elif collapsed and not acct.withdrew and p.balance > limit:
                loss = round_money(p.balance - limit)
                p.balance = limit
                p.record(
                    "forced_loss",
                    Phase.END,
                    now,
                    limit=self._engine.config.action_log_limit,
                    amount=loss,
                )

    # -------------------------------------------------------------------------
    # Facilitator extras
    # -------------------------------------------------------------------------

    def reveal_names(self) -> None:
        self._session.reveal_names = True

    def new_join_credential(self) -> JoinCredential:
        rng = self._engine.rng
        ttl = self._engine.config.join_token_ttl_seconds
        return JoinCredential(
            token=f"{rng.getrandbits(64):016x}",
            expires_at=self._engine.now() + timedelta(seconds=ttl),
        )

    def rotate_join_token(self) -> JoinCredential:
        self._session.join = self.new_join_credential()
        self._engine.post_feed("Join QR refreshed by game master.")
        return self._session.join

    def ensure_join_token_fresh(self) -> JoinCredential:
        """Silently replace an expired join token."""
        if self._session.join.expires_at < self._engine.now():
            self._session.join = self.new_join_credential()
        return self._session.join
