"""
Outcome and scoring engine.

Everything here is derived on read from a consistent state and never
mutates it: scores, reveal labels, the leaderboard, phase-4 outcomes,
the classroom reports and the cohort breakdowns shown to the room.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..state.schema import (
    FACILITIES,
    PRODUCTS,
    BankStatus,
    Participant,
    Phase,
    QueueMode,
    QueueState,
    Role,
    round_money,
)

if TYPE_CHECKING:
    from ..engine import GameEngine


SCORE_CONFIG = {
    "depositor": {
        "hedged": 800,
        "per_panic_signal": 200,
        "early_exit": -1200,        # Exited in phase1/phase2
        "stress_exit": 500,         # Exited in phase3
        "final_exit": 350,          # Exited in phase4
        "caught_above_limit": -4000,
    },
    "wholesale": {
        "refused_phase3": 300,
        "refused_phase4": 200,
        "held_rescued": 900,
        "held_collapsed": -1200,
        "scale": 100,
    },
}

PHASE3_FAILURE_THRESHOLD_PCT = 50
PHASE3_DECISION_SECONDS = 300

# (seconds into phase 3, stage) upper bounds
PHASE3_STAGES = ((120, "denial"), (300, "realization"), (420, "panic"))


def _money(value: float) -> str:
    return f"£{round(value):,}"


class OutcomeEngine:
    """Read-only projections over the session state."""

    def __init__(self, engine: "GameEngine"):
        self._engine = engine

    @property
    def _state(self):
        return self._engine.state

    @property
    def _limit(self) -> float:
        return self._engine.config.protection_limit

    @property
    def revealed(self) -> bool:
        session = self._state.session
        return session.reveal_names or session.phase == Phase.END

    # -------------------------------------------------------------------------
    # Scores and labels
    # -------------------------------------------------------------------------

    def score(self, participant: Participant) -> int:
        status = self._state.session.bank_status
        acct = participant.account

        if participant.role == Role.DEPOSITOR:
            cfg = SCORE_CONFIG["depositor"]
            score = participant.balance
            if acct.hedged:
                score += cfg["hedged"]
            score += acct.panic_signals * cfg["per_panic_signal"]
            if acct.withdrawn_at_phase in (Phase.PHASE1, Phase.PHASE2):
                score += cfg["early_exit"]
            elif acct.withdrawn_at_phase == Phase.PHASE3:
                score += cfg["stress_exit"]
            elif acct.withdrawn_at_phase == Phase.PHASE4:
                score += cfg["final_exit"]
            if status == BankStatus.COLLAPSED and participant.balance > self._limit and not acct.withdrew:
                score += cfg["caught_above_limit"]
            return max(0, round(score))

        cfg = SCORE_CONFIG["wholesale"]
        score = participant.balance / 1_000_000
        if acct.refused_at_phase == Phase.PHASE3:
            score += cfg["refused_phase3"]
        elif acct.refused_at_phase == Phase.PHASE4:
            score += cfg["refused_phase4"]
        if acct.held_through_resolution:
            if status == BankStatus.RESCUED:
                score += cfg["held_rescued"]
            elif status == BankStatus.COLLAPSED:
                score += cfg["held_collapsed"]
        return round(score * cfg["scale"])

    def label(self, participant: Participant) -> str:
        """Behaviour label, hidden as "Active" until identities are revealed."""
        if not self.revealed:
            return "Active"

        status = self._state.session.bank_status
        acct = participant.account

        if participant.role == Role.DEPOSITOR:
            if acct.withdrawn_at_phase == Phase.PHASE3:
                return "Shrewd Exit"
            if acct.withdrawn_at_phase in (Phase.PHASE1, Phase.PHASE2):
                return "Panicked Early"
            if not acct.withdrew and status == BankStatus.RESCUED:
                return "Brave Hold"
            if not acct.withdrew and status == BankStatus.COLLAPSED:
                return "Gone" if participant.balance > self._limit else "Safe but Low"
            if acct.panic_signals > 1:
                return "Greedy"
            return "Active"

        if acct.refused_at_phase == Phase.PHASE3:
            return "Shrewd Exit"
        if acct.held_through_resolution and status == BankStatus.RESCUED:
            return "Hero Hold"
        if acct.held_through_resolution and status == BankStatus.COLLAPSED:
            return "Trapped"
        return "Strategic"

    def display_name(self, participant: Participant) -> str:
        if self.revealed:
            return participant.name
        return participant.pseudonym(self._engine.config.pseudonym_prefix)

    def leaderboard(self, limit: int | None = None) -> list[dict]:
        rows = [
            {
                "id": p.id,
                "role": p.role.value,
                "display_name": self.display_name(p),
                "score": self.score(p),
                "label": self.label(p),
            }
            for p in self._state.participants.values()
        ]
        rows.sort(key=lambda r: r["score"], reverse=True)
        return rows[:limit] if limit else rows

    def rank(self, participant: Participant) -> int:
        for idx, row in enumerate(self.leaderboard(), start=1):
            if row["id"] == participant.id:
                return idx
        return 0

    # -------------------------------------------------------------------------
    # Phase-4 outcomes
    # -------------------------------------------------------------------------

    def depositor_outcome(self, participant: Participant) -> dict:
        acct = participant.account
        balance = round_money(max(0.0, participant.balance))
        guaranteed = round_money(min(balance, self._limit))
        loss = round_money(max(0.0, balance - self._limit))

        if acct.withdrew and acct.withdrawn_at_phase in (Phase.PHASE2, Phase.PHASE3, Phase.PHASE4):
            return {
                "type": "secured_exit",
                "status": "CLEARED",
                "account_type": "Exited Position",
                "total_balance": balance,
                "guaranteed": guaranteed,
                "loss": 0.0,
                "immediate_cash": balance,
                "timeline_primary": f"{_money(balance)} available immediately",
                "timeline_secondary": None,
                "lesson": "Liquidity decisions were executed before final halt.",
                "label": "THE SURVIVOR",
            }

        if acct.switched_to_instant and acct.queue.mode == QueueMode.PROTECTED:
            return {
                "type": "cynic",
                "status": "CLEARED",
                "account_type": "Instant Access",
                "total_balance": balance,
                "guaranteed": guaranteed,
                "loss": 0.0,
                "immediate_cash": balance,
                "timeline_primary": f"{_money(balance)} available immediately",
                "timeline_secondary": None,
                "lesson": "You prioritized liquidity over yield when stress escalated.",
                "label": "THE SURVIVOR",
            }

        if acct.queue.state == QueueState.PROCESSING and acct.queue.mode == QueueMode.FULL:
            return {
                "type": "panic_runner",
                "status": "TRANSACTION FAILED",
                "account_type": "Premier Bond",
                "total_balance": balance,
                "guaranteed": guaranteed,
                "loss": loss,
                "immediate_cash": guaranteed,
                "timeline_primary": f"{_money(guaranteed)} in 7-10 days",
                "timeline_secondary": f"{_money(loss)} pending administration",
                "lesson": "Operational risk: queue congestion prevented full execution.",
                "label": "TOO LATE",
            }

        product = PRODUCTS.get(acct.product or "")
        return {
            "type": "bag_holder",
            "status": "FROZEN",
            "account_type": product.label if product else "Premier Bond",
            "total_balance": balance,
            "guaranteed": guaranteed,
            "loss": loss,
            "immediate_cash": guaranteed,
            "timeline_primary": f"{_money(guaranteed)} in 7-10 days",
            "timeline_secondary": f"{_money(loss)} likely unrecovered",
            "lesson": "Contractual maturity did not protect against a behavioral run.",
            "label": "THE VICTIM",
        }

    def wholesale_outcome(self, participant: Participant) -> dict:
        acct = participant.account
        gross = round_money(max(0.0, participant.principal * acct.exposure_pct / 100))
        defaulted = self._state.session.bank_status != BankStatus.RESCUED

        if acct.refused:
            libor = max(0.0, self._state.metrics.libor_pct)
            return {
                "type": "raider",
                "status": "DEFAULTED / NATIONALIZED" if defaulted else "STABILIZED / GUARANTEED",
                "action": "RECALLED FUNDS",
                "exposure": 0.0,
                "preserved_principal": gross,
                "missed_yield": round_money(gross * (libor + 2.0) / 100 / 365),
                "recovery_rate": "N/A",
                "timeline": "Immediate",
                "reputation": "RUTHLESS BUT PRUDENT",
                "final_label": "BONUS MAXIMIZED",
            }

        if defaulted:
            return {
                "type": "greedy",
                "status": "DEFAULTED / NATIONALIZED",
                "action": "ROLLED OVER",
                "exposure": gross,
                "preserved_principal": 0.0,
                "missed_yield": 0.0,
                "recovery_rate": "80-100%",
                "timeline": "6-12 months",
                "reputation": "BAG HOLDER",
                "final_label": "RISK NEGLIGENCE",
            }

        return {
            "type": "supported_hold",
            "status": "RESCUED / BACKSTOPPED",
            "action": "MAINTAINED EXPOSURE",
            "exposure": gross,
            "preserved_principal": gross,
            "missed_yield": 0.0,
            "recovery_rate": "100%",
            "timeline": "Normal settlement",
            "reputation": "HIGH RISK TOLERANCE",
            "final_label": "SURVIVED WITH SUPPORT",
        }

    def outcome(self, participant: Participant) -> dict:
        if participant.role == Role.DEPOSITOR:
            return self.depositor_outcome(participant)
        return self.wholesale_outcome(participant)

    # -------------------------------------------------------------------------
    # Classroom reports
    # -------------------------------------------------------------------------

    def retail_report(self) -> dict:
        depositors = self._state.depositors
        losses = [self.depositor_outcome(p)["loss"] for p in depositors]
        rescued = self._state.session.bank_status == BankStatus.RESCUED
        return {
            "total_depositors": len(depositors),
            "fully_protected": sum(1 for loss in losses if loss <= 0),
            "suffered_haircut": sum(1 for loss in losses if loss > 0),
            "lost_over_10k": sum(1 for loss in losses if loss > 10_000),
            "bank_status_text": "NATIONALIZED / STABILIZED" if rescued else "NATIONALIZED / COLLAPSED",
        }

    def wholesale_report(self) -> dict:
        lenders = self._state.wholesale
        refused = [p for p in lenders if p.account.refused]
        drained = sum(p.principal * p.account.exposure_pct / 100 for p in refused)
        rescued = self._state.session.bank_status == BankStatus.RESCUED
        return {
            "total_wholesale": len(lenders),
            "refused_count": len(refused),
            "refusal_rate_pct": round_money(len(refused) / len(lenders) * 100) if lenders else 0.0,
            "liquidity_drained": round_money(drained),
            "status_text": "STABILIZED BY PUBLIC SUPPORT" if rescued else "NATIONALIZED AFTER FUNDING RUN",
        }

    # -------------------------------------------------------------------------
    # Cohort breakdowns
    # -------------------------------------------------------------------------

    def cohort_breakdown(self) -> dict:
        state = self._state
        depositors = state.depositors
        lenders = state.wholesale

        deployed = [p for p in lenders if p.account.commitment.confirmed]
        confirmed = [p for p in depositors if p.account.commitment.confirmed]
        live = [p for p in lenders if not p.account.refused]

        phase2_actions = [a for p in depositors for a in p.actions if a.phase == Phase.PHASE2]

        def phase2_count(action_type: str) -> int:
            return sum(1 for a in phase2_actions if a.type == action_type)

        split = {"rolling": 0, "hesitating": 0, "refused": 0}
        for p in lenders:
            split[self._phase3_stance(p)] += 1

        return {
            "wholesale_deployment": {
                "deployed_count": len(deployed),
                "total_count": len(lenders),
                "by_facility": {
                    fid: sum(1 for p in deployed if p.account.facility == fid) for fid in FACILITIES
                },
            },
            "phase1_retail": {
                "confirmed_count": len(confirmed),
                "total_count": len(depositors),
                "by_product": {
                    pid: sum(1 for p in confirmed if p.account.product == pid)
                    for pid, product in PRODUCTS.items()
                    if product.phase1_selectable
                },
            },
            "phase2_wholesale": {
                "live_count": len(live),
                "total_count": len(lenders),
                "base_count": sum(1 for p in live if p.account.spread_bps_override <= 0),
                "demanding_count": sum(1 for p in live if p.account.spread_bps_override > 0),
                "reduced_count": sum(1 for p in live if p.account.exposure_pct < 100),
                "added_count": sum(
                    1 for p in live if p.principal > self._engine.config.wholesale_base_balance
                ),
                "rollover_rate_pct": round_money(len(live) / len(lenders) * 100) if lenders else 100.0,
            },
            "phase2_depositor": {
                "upgraded": phase2_count("upgrade_premier"),
                "added_more": phase2_count("add_money"),
                "exited": phase2_count("early_exit"),
                "hedged": phase2_count("buy_hedge"),
                "confidence_pct": round_money(max(0.0, 100 - state.metrics.panic_meter)),
            },
            "phase3_wholesale": {
                "total_count": len(lenders),
                **split,
                "refusal_rate_pct": round_money(split["refused"] / len(lenders) * 100) if lenders else 0.0,
                "failure_threshold_pct": PHASE3_FAILURE_THRESHOLD_PCT,
            },
        }

    # -------------------------------------------------------------------------
    # Participant view
    # -------------------------------------------------------------------------

    def phase3_stage(self) -> str | None:
        """Narrative beat of the run, from time spent in phase 3."""
        session = self._state.session
        if session.phase != Phase.PHASE3:
            return None
        elapsed = self._phase_elapsed_seconds()
        for bound, stage in PHASE3_STAGES:
            if elapsed < bound:
                return stage
        return "bridge"

    def _phase_elapsed_seconds(self) -> int:
        started = self._state.session.phase_started_at
        return max(0, int((self._engine.now() - started).total_seconds()))

    def participant_view(self, participant: Participant) -> dict:
        """Everything one participant's screen needs, with exact banked/ticking splits."""
        commitment = participant.account.commitment

        view = {
            "id": participant.id,
            "name": participant.name,
            "role": participant.role.value,
            "balance": round_money(participant.balance),
            "principal": round_money(participant.principal),
            "quiz_score": participant.quiz_score,
            "spectator": participant.is_spectator,
            "available_actions": self._engine.actions.available_actions(participant),
            "effective_rate": round(self._engine.accrual.rate(participant), 4),
            "commitment": {
                "stage": commitment.stage.value,
                "draft": commitment.draft,
                "pending": commitment.pending,
                "banked": commitment.banked,
                "ticking": commitment.ticking(participant.balance) if commitment.confirmed else 0.0,
                "cycle_started_at": commitment.cycle_started_at.isoformat() if commitment.cycle_started_at else None,
            },
            "score": self.score(participant),
            "label": self.label(participant),
            "rank": self.rank(participant),
            "outcome": self.outcome(participant),
            "recent_actions": [a.model_dump(mode="json") for a in participant.actions[:6]],
        }
        view["can_act"] = bool(view["available_actions"]) and not participant.is_spectator

        if participant.role == Role.DEPOSITOR:
            view.update(self._depositor_view(participant))
        else:
            view.update(self._wholesale_view(participant))
        return view

    def _depositor_view(self, participant: Participant) -> dict:
        acct = participant.account
        cfg = self._engine.config
        product = PRODUCTS.get(acct.product or "")
        draft_id = acct.commitment.resolve_choice(acct.product)
        draft = PRODUCTS.get(draft_id or "")

        if acct.commitment.confirmed:
            preview_total = round_money(participant.principal)
        else:
            preview_total = round_money(cfg.depositor_base_balance + acct.draft_additional)
        if acct.withdrew:
            accrued = acct.exit_interest
        else:
            accrued = max(0.0, round_money(participant.balance - participant.principal))

        exit_loss = round_money(participant.principal * cfg.phase2_exit_penalty)
        switch_fee = round_money(participant.balance * cfg.convert_fee)

        return {
            "product": acct.product,
            "product_label": product.label if product else "Not selected",
            "product_rate": product.rate if product else None,
            "draft_product": draft_id,
            "draft_product_label": draft.label if draft else None,
            "draft_additional": acct.draft_additional,
            "preview_total": preview_total,
            "preview_rate": draft.rate if draft else (product.rate if product else 0.0),
            "protection_limit": cfg.protection_limit,
            "unprotected_amount": round_money(max(0.0, participant.balance - cfg.protection_limit)),
            "total_interest_accrued": accrued,
            "upgrade_banked_interest": acct.upgrade_banked_interest,
            "hedged": acct.hedged,
            "hedge_type": acct.hedge_type,
            "withdrew": acct.withdrew,
            "withdrawn_at_phase": acct.withdrawn_at_phase.value if acct.withdrawn_at_phase else None,
            "exit": {
                "payout": acct.exit_payout,
                "loss": acct.exit_loss,
                "principal": acct.exit_principal,
                "interest": acct.exit_interest,
            },
            "phase2_exit_estimate": {
                "penalty_pct": round(cfg.phase2_exit_penalty * 100),
                "loss": exit_loss,
                "payout": round_money(participant.balance - exit_loss),
            },
            "premier_peers": sum(
                1 for p in self._state.depositors
                if not p.account.withdrew and p.account.product == "premier_142"
            ),
            "phase3": {
                "stage": self.phase3_stage(),
                "switch_fee_pct": round(cfg.convert_fee * 100),
                "switch_fee_amount": switch_fee,
                "switch_payout": round_money(participant.balance - switch_fee),
                "decision_seconds_left": max(0, PHASE3_DECISION_SECONDS - self._phase_elapsed_seconds()),
                "switched_to_instant": acct.switched_to_instant,
            },
            "queue": acct.queue.model_dump(mode="json"),
            "panic_signals": acct.panic_signals,
        }

    def _wholesale_view(self, participant: Participant) -> dict:
        acct = participant.account
        libor = self._state.metrics.libor_pct
        facility = FACILITIES.get(acct.facility or "")
        draft_id = acct.commitment.resolve_choice(acct.facility)
        draft = FACILITIES.get(draft_id or "")
        preview_rate = libor + (draft.spread_bps if draft else FACILITIES["overnight"].spread_bps) / 100
        live_exposure = round_money(participant.principal * acct.exposure_pct / 100)
        offer_rate = round_money(libor + 2.0)

        return {
            "facility": acct.facility,
            "facility_label": facility.label if facility else "Not selected",
            "draft_facility": draft_id,
            "spread_bps_override": acct.spread_bps_override,
            "exposure_pct": acct.exposure_pct,
            "preview_rate": round(preview_rate, 4),
            "daily_preview": round_money(participant.principal * preview_rate / 100 / 365),
            "live_exposure": live_exposure,
            "offer_rate": offer_rate,
            "one_day_offer_profit": round_money(live_exposure * offer_rate / 100 / 365),
            "refused": acct.refused,
            "refused_at_phase": acct.refused_at_phase.value if acct.refused_at_phase else None,
            "held_through_resolution": acct.held_through_resolution,
        }

    @staticmethod
    def _phase3_stance(participant: Participant) -> str:
        if participant.account.refused:
            return "refused"
        for action in participant.actions:
            if action.phase == Phase.PHASE3:
                if action.type in ("rollover", "punitive_spread"):
                    return "rolling"
                break
        return "hesitating"
