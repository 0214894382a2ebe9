"""
Participant action processor.

Single entry point for everything a participant can do. Each handler
validates first and only then mutates, so a rejected action leaves state
untouched. Handlers are looked up by (role, phase, action type); anything
not in the table is rejected.

The processor only touches aggregate metrics for the bounded, localized
side effects some actions carry (exit debits, exposure reduction, panic,
the shared reference rate). The liquidity recompute that follows every
accepted action is the engine's job.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable

from ..state.schema import (
    FACILITIES,
    PRODUCTS,
    DEFAULT_FACILITY,
    DEFAULT_PRODUCT,
    PREMIER_PRODUCT,
    FeedType,
    Participant,
    Phase,
    QueueMode,
    QueueState,
    Role,
    round_money,
)
from .errors import ActionRejectedError

if TYPE_CHECKING:
    from ..engine import GameEngine

logger = logging.getLogger(__name__)

Handler = Callable[[Participant, dict], None]

SPECTATOR_ACTIONS = frozenset({"hold", "noop"})
CLOSED_PHASES = frozenset({Phase.LOBBY, Phase.END})


def _number(payload: dict, key: str, default: float = 0.0) -> float:
    raw = payload.get(key, default)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ActionRejectedError(f"{key} must be a number")
    if not math.isfinite(value):
        raise ActionRejectedError(f"{key} must be a number")
    return value


class ActionProcessor:
    """Validates and applies participant actions by role and phase."""

    def __init__(self, engine: "GameEngine"):
        self._engine = engine
        self._current_action = ""
        self._handlers: dict[tuple[Role, Phase], dict[str, Handler]] = {
            (Role.DEPOSITOR, Phase.PHASE1): {
                "select_product": self._select_product,
                "phase1_set_additional": self._set_additional,
                "add_money": self._add_money_phase1,
                "phase1_confirm": self._confirm_product,
                "hold": self._confirm_product,
            },
            (Role.DEPOSITOR, Phase.PHASE2): {
                "upgrade_premier": self._upgrade_premier,
                "add_money": self._add_money,
                "early_exit": self._early_exit_phase2,
                "buy_hedge": self._buy_hedge,
                "hold": self._record_only,
            },
            (Role.DEPOSITOR, Phase.PHASE3): {
                "hold": self._hold_in_queue,
                "early_exit": self._early_exit_phase3,
                "partial_withdraw_unprotected": self._withdraw_unprotected,
                "convert_current": self._convert_current,
                "phase3_cancel_request": self._cancel_request,
                "phase3_prioritize_protected": self._prioritize_protected,
                "phase3_keep_full_request": self._keep_full_request,
            },
            (Role.DEPOSITOR, Phase.PHASE4): {
                "hold": self._record_only,
                "withdraw_now": self._withdraw_now,
                "withdraw_unprotected": self._withdraw_unprotected,
                "spread_panic": self._spread_panic,
            },
            (Role.WHOLESALE, Phase.PHASE1): {
                "select_facility": self._select_facility,
                "phase1_deploy": self._deploy_facility,
                "maintain": self._deploy_facility,
                "phase1_change_cancel": self._cancel_facility_change,
            },
            (Role.WHOLESALE, Phase.PHASE2): {
                "maintain": self._record_only,
                "demand_spread": self._demand_spread,
                "reduce_exposure": self._reduce_exposure,
                "add_more": self._add_capital,
            },
            (Role.WHOLESALE, Phase.PHASE3): {
                "rollover": self._record_only,
                "punitive_spread": self._punitive_spread,
                "refuse_rollover": self._refuse,
                "partial_rollover": self._partial_rollover,
            },
            (Role.WHOLESALE, Phase.PHASE4): {
                "final_hold": self._final_hold,
                "final_refuse": self._refuse,
            },
        }

    @property
    def _state(self):
        return self._engine.state

    @property
    def _config(self):
        return self._engine.config

    @property
    def _phase(self) -> Phase:
        return self._state.session.phase

    def available_actions(self, participant: Participant) -> list[str]:
        """Action types this participant may submit right now."""
        if self._phase in CLOSED_PHASES:
            return []
        if participant.is_spectator:
            return sorted(SPECTATOR_ACTIONS)
        return sorted(self._handlers.get((participant.role, self._phase), {}))

    def submit(self, participant: Participant, action_type: str, payload: dict | None = None) -> None:
        """
        Validate and apply one action.

        Raises:
            ActionRejectedError: If the action is not allowed; nothing changes.
        """
        payload = payload or {}
        if self._phase in CLOSED_PHASES:
            raise ActionRejectedError("Actions disabled in current phase")

        if participant.is_spectator:
            if action_type in SPECTATOR_ACTIONS:
                self._record(participant, action_type)
                return
            if participant.role == Role.DEPOSITOR:
                raise ActionRejectedError("You already exited. You are now a spectator.")
            raise ActionRejectedError("You already recalled your funding. You are now a spectator.")

        handler = self._handlers.get((participant.role, self._phase), {}).get(action_type)
        if handler is None:
            raise ActionRejectedError(
                f"Action not available for {participant.role.value} in this phase"
            )
        # Handlers shared by several action types record under the submitted name
        self._current_action = action_type
        handler(participant, payload)

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def _record(self, participant: Participant, action_type: str, **details) -> None:
        participant.record(
            action_type,
            self._phase,
            self._engine.now(),
            limit=self._config.action_log_limit,
            **details,
        )

    def _record_only(self, participant: Participant, payload: dict) -> None:
        self._record(participant, self._current_action)

    def _feed(self, text: str, type: FeedType = FeedType.INFO) -> None:
        self._engine.post_feed(text, type)

    def _debit_buffer(self, amount: float) -> None:
        metrics = self._state.metrics
        metrics.liquidity_buffer = round_money(max(0.0, metrics.liquidity_buffer - amount))

    def _raise_panic(self, amount: float, cap: float) -> None:
        metrics = self._state.metrics
        metrics.panic_meter = min(cap, metrics.panic_meter + amount)

    def _mark_withdrawn(self, participant: Participant) -> None:
        participant.account.withdrew = True
        participant.account.withdrawn_at_phase = self._phase

    # -------------------------------------------------------------------------
    # Phase-1 commitment (shared with phase-2 entry finalization)
    # -------------------------------------------------------------------------

    def finalize_depositor(self, participant: Participant, product: str | None = None) -> float:
        """
        Commit a depositor's product choice. Returns the interest banked.

        First commit fixes balance = principal = base + capped top-up.
        Later commits bank the ticking interest and re-base the cycle.
        """
        acct = participant.account
        cfg = self._config
        chosen = product or acct.commitment.resolve_choice(acct.product) or DEFAULT_PRODUCT

        if not acct.commitment.confirmed:
            additional = min(max(acct.draft_additional, 0.0), cfg.max_additional_deposit)
            total = round_money(cfg.depositor_base_balance + additional)
            participant.balance = total
            participant.principal = total
            acct.draft_additional = additional
        else:
            acct.draft_additional = max(0.0, round_money(participant.principal - cfg.depositor_base_balance))

        acct.product = chosen
        return acct.commitment.commit(chosen, participant.balance, self._engine.now())

    def finalize_wholesale(self, participant: Participant, facility: str | None = None) -> float:
        """Commit a lender's facility choice. Returns the spread banked."""
        acct = participant.account
        chosen = facility or acct.commitment.resolve_choice(acct.facility) or DEFAULT_FACILITY
        acct.facility = chosen
        return acct.commitment.commit(chosen, participant.balance, self._engine.now())

    # -------------------------------------------------------------------------
    # Depositor: phase 1
    # -------------------------------------------------------------------------

    def _select_product(self, participant: Participant, payload: dict) -> None:
        product_id = str(payload.get("product") or "")
        product = PRODUCTS.get(product_id)
        if product is None or not product.phase1_selectable:
            raise ActionRejectedError("Invalid product")

        participant.account.commitment.choose(product_id)
        self._record(participant, "select_product", product=product_id)
        self._feed(f"{participant.name} shortlisted {product.label}.")

    def _set_additional(self, participant: Participant, payload: dict) -> None:
        if participant.account.commitment.confirmed:
            raise ActionRejectedError("You can only use the setup slider before first confirm.")
        additional = min(max(_number(payload, "additional"), 0.0), self._config.max_additional_deposit)
        participant.account.draft_additional = additional
        self._record(participant, "phase1_set_additional", additional=additional)

    def _capped_top_up(self, participant: Participant, payload: dict) -> float:
        amount = max(0.0, _number(payload, "amount"))
        room = max(0.0, self._config.max_principal - participant.principal)
        capped = round_money(min(room, amount))
        if capped <= 0:
            raise ActionRejectedError("Amount must be positive")
        return capped

    def _add_money_phase1(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        if not acct.commitment.confirmed:
            raise ActionRejectedError("Confirm your deposit first.")
        capped = self._capped_top_up(participant, payload)

        participant.balance = round_money(participant.balance + capped)
        participant.principal = round_money(participant.principal + capped)
        # New money is not interest; keep it out of the ticking cycle
        acct.commitment.cycle_base = round_money(acct.commitment.cycle_base + capped)
        acct.draft_additional = max(0.0, round_money(participant.principal - self._config.depositor_base_balance))
        self._record(participant, "add_money", amount=capped)
        self._feed(f"{participant.name} added more savings.")

    def _confirm_product(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        chosen = acct.commitment.resolve_choice(acct.product)
        if not chosen:
            raise ActionRejectedError("Choose a product first.")

        banked = self.finalize_depositor(participant, chosen)
        self._record(participant, self._current_action, product=chosen, banked=banked)
        self._feed(f"{participant.name} confirmed Phase 1 deposit plan.")

    # -------------------------------------------------------------------------
    # Depositor: phase 2
    # -------------------------------------------------------------------------

    def _upgrade_premier(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        if acct.product == PREMIER_PRODUCT:
            raise ActionRejectedError("Already in Premier Bond.")

        accrued = max(0.0, round_money(participant.balance - participant.principal))
        acct.upgrade_banked_interest = round_money(acct.upgrade_banked_interest + accrued)
        acct.product = PREMIER_PRODUCT
        acct.upgraded_at = self._engine.now()
        participant.principal = round_money(participant.balance)
        self._record(participant, "upgrade_premier", banked=accrued)
        self._feed(f"{participant.name} upgraded to {PRODUCTS[PREMIER_PRODUCT].label}.", FeedType.ALERT)

    def _add_money(self, participant: Participant, payload: dict) -> None:
        capped = self._capped_top_up(participant, payload)
        participant.balance = round_money(participant.balance + capped)
        participant.principal = round_money(participant.principal + capped)
        self._record(participant, "add_money", amount=capped)

    def _early_exit_phase2(self, participant: Participant, payload: dict) -> None:
        if str(payload.get("confirm_step") or "") != "double":
            raise ActionRejectedError("Early exit needs final confirmation.")

        acct = participant.account
        penalty_pct = self._config.phase2_exit_penalty
        principal = max(0.0, participant.principal)
        interest = max(0.0, round_money(participant.balance - principal))
        penalty = round_money(principal * penalty_pct)
        payout = max(0.0, round_money(principal - penalty + interest))

        participant.balance = payout
        participant.principal = 0.0
        acct.product = None
        self._mark_withdrawn(participant)
        acct.exit_payout = payout
        acct.exit_loss = penalty
        acct.exit_principal = round_money(principal)
        acct.exit_interest = interest

        self._debit_buffer(payout * 0.15)
        self._raise_panic(3, cap=95)
        self._record(
            participant,
            "early_exit",
            penalty_pct=round(penalty_pct * 100),
            principal=round_money(principal),
            interest_earned=interest,
            penalty_amount=penalty,
            payout=payout,
        )
        self._feed(
            f"{participant.name} exited early with a {round(penalty_pct * 100)}% penalty.",
            FeedType.ALERT,
        )

    def _buy_hedge(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        if acct.hedged:
            raise ActionRejectedError("Hedge already active")

        level = "full" if str(payload.get("level") or "basic") == "full" else "basic"
        premium = round_money(participant.principal * self._config.hedge_rates[level])
        accrued = max(0.0, round_money(participant.balance - participant.principal))
        if premium > accrued:
            raise ActionRejectedError(f"Need {premium:.2f} earned interest to buy this hedge.")

        participant.balance = round_money(participant.balance - premium)
        acct.hedged = True
        acct.hedge_type = level
        self._record(participant, "buy_hedge", premium=premium, hedge_type=level)

    # -------------------------------------------------------------------------
    # Depositor: phase 3
    # -------------------------------------------------------------------------

    def _hold_in_queue(self, participant: Participant, payload: dict) -> None:
        queue = participant.account.queue
        if queue.is_open:
            drift = self._engine.rng.randint(20, 79)
            queue.position = max(1, queue.position - drift)
            queue.eta_hours = round_money(max(1.5, queue.eta_hours + 0.2))
            queue.updated_at = self._engine.now()
        self._record(participant, "hold")

    def _early_exit_phase3(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        before = participant.balance
        haircut = self._config.phase3_exit_haircut
        participant.balance = round_money(before * (1 - haircut))
        self._mark_withdrawn(participant)
        acct.exit_payout = participant.balance
        acct.exit_loss = round_money(before - participant.balance)
        self._record(participant, "early_exit", penalty_pct=round(haircut * 100))
        self._feed(
            f"{participant.name} exited under stress with {round(haircut * 100)}% penalty.",
            FeedType.ALERT,
        )

    def _withdraw_unprotected(self, participant: Participant, payload: dict) -> None:
        unprotected = max(0.0, participant.balance - self._config.protection_limit)
        if unprotected <= 0:
            raise ActionRejectedError("No unprotected amount to withdraw")

        participant.balance = round_money(participant.balance - unprotected)
        self._mark_withdrawn(participant)
        self._record(participant, self._current_action, amount=round_money(unprotected))
        if self._phase == Phase.PHASE3:
            self._feed(f"{participant.name} withdrew only unprotected amount.")

    def _convert_current(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        if acct.queue.state != QueueState.NONE:
            raise ActionRejectedError("A withdrawal request is already on file.")

        rng = self._engine.rng
        fee_pct = self._config.convert_fee
        acct.product = DEFAULT_PRODUCT
        acct.switched_to_instant = True
        participant.balance = round_money(participant.balance * (1 - fee_pct))
        participant.principal = participant.balance

        queue = acct.queue
        queue.state = QueueState.PROCESSING
        queue.mode = QueueMode.FULL
        queue.ref = f"#{rng.randint(100000, 999999)}"
        queue.requested_amount = participant.balance
        queue.eta_hours = 4.0
        queue.position = 1800 + rng.randrange(900)
        queue.updated_at = self._engine.now()

        self._record(participant, "convert_current", fee_pct=round(fee_pct * 100), queue_ref=queue.ref)
        self._feed(f"{participant.name} paid break fee and switched to instant access.", FeedType.ALERT)

    def _open_queue(self, participant: Participant, target: QueueState):
        queue = participant.account.queue
        if not queue.is_open or not queue.can_move_to(target):
            raise ActionRejectedError("No active request.")
        return queue

    def _cancel_request(self, participant: Participant, payload: dict) -> None:
        queue = self._open_queue(participant, QueueState.CANCELLED)
        queue.state = QueueState.CANCELLED
        queue.updated_at = self._engine.now()
        self._record(participant, "phase3_cancel_request")

    def _prioritize_protected(self, participant: Participant, payload: dict) -> None:
        queue = self._open_queue(participant, QueueState.PARTIAL)
        queue.mode = QueueMode.PROTECTED
        queue.state = QueueState.PARTIAL
        queue.requested_amount = round_money(min(participant.balance, self._config.protection_limit))
        queue.eta_hours = round_money(max(1.2, queue.eta_hours - 1.8))
        queue.position = max(1, int(queue.position * 0.55))
        queue.updated_at = self._engine.now()
        self._record(participant, "phase3_prioritize_protected", amount=queue.requested_amount)

    def _keep_full_request(self, participant: Participant, payload: dict) -> None:
        queue = self._open_queue(participant, QueueState.PROCESSING)
        queue.mode = QueueMode.FULL
        queue.state = QueueState.PROCESSING
        queue.requested_amount = round_money(participant.balance)
        queue.eta_hours = round_money(min(8.0, max(3.5, queue.eta_hours + 0.8)))
        queue.position = max(1, queue.position + 120)
        queue.updated_at = self._engine.now()
        self._record(participant, "phase3_keep_full_request", amount=queue.requested_amount)

    # -------------------------------------------------------------------------
    # Depositor: phase 4
    # -------------------------------------------------------------------------

    def _withdraw_now(self, participant: Participant, payload: dict) -> None:
        self._mark_withdrawn(participant)
        self._record(participant, "withdraw_now")
        self._feed(f"{participant.name} withdrew immediately after leak.", FeedType.ALERT)

    def _spread_panic(self, participant: Participant, payload: dict) -> None:
        participant.account.panic_signals += 1
        self._raise_panic(4, cap=95)
        self._record(participant, "spread_panic")
        self._feed(f"{participant.name} spread panic signals.", FeedType.ALERT)

    # -------------------------------------------------------------------------
    # Wholesale: phase 1
    # -------------------------------------------------------------------------

    def _select_facility(self, participant: Participant, payload: dict) -> None:
        facility_id = str(payload.get("facility") or "")
        facility = FACILITIES.get(facility_id)
        if facility is None:
            raise ActionRejectedError("Invalid facility")

        participant.account.commitment.choose(facility_id)
        self._record(participant, "select_facility", facility=facility_id)
        self._feed(f"{participant.name} shortlisted {facility.label}.")

    def _deploy_facility(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        chosen = acct.commitment.resolve_choice(acct.facility)
        if not chosen:
            raise ActionRejectedError("Choose a facility first.")

        banked = self.finalize_wholesale(participant, chosen)
        self._record(participant, self._current_action, facility=chosen, banked=banked)
        self._feed(f"{participant.name} deployed via {FACILITIES[chosen].label}.")

    def _cancel_facility_change(self, participant: Participant, payload: dict) -> None:
        participant.account.commitment.cancel_change()
        self._record(participant, "phase1_change_cancel")

    # -------------------------------------------------------------------------
    # Wholesale: phase 2
    # -------------------------------------------------------------------------

    def _demand_spread(self, participant: Participant, payload: dict) -> None:
        levels = self._config.spread_levels
        bps = int(_number(payload, "level", levels[0]))
        if bps not in levels:
            raise ActionRejectedError(f"Spread must be one of {levels} bps")

        participant.account.spread_bps_override = bps
        # Shared reference rate moves for everyone
        metrics = self._state.metrics
        metrics.libor_pct = round_money(metrics.libor_pct + bps / 600)
        self._record(participant, "demand_spread", bps=bps)
        self._feed(f"{participant.name} demanded +{bps}bps spread.", FeedType.ALERT)

    def _reduce_exposure(self, participant: Participant, payload: dict) -> None:
        levels = self._config.reduce_levels
        pct = int(_number(payload, "pct", levels[0]))
        if pct not in levels:
            raise ActionRejectedError(f"Reduction must be one of {levels} percent")

        acct = participant.account
        acct.exposure_pct = max(10.0, acct.exposure_pct - pct)
        self._debit_buffer(participant.principal * (pct / 100) * 0.1)
        self._record(participant, "reduce_exposure", pct=pct)
        self._feed(f"{participant.name} reduced exposure by {pct}%.", FeedType.ALERT)

    def _add_capital(self, participant: Participant, payload: dict) -> None:
        amount = round_money(min(self._config.max_add_more, max(0.0, _number(payload, "amount"))))
        if amount <= 0:
            raise ActionRejectedError("Amount must be positive")

        participant.balance = round_money(participant.balance + amount)
        participant.principal = round_money(participant.principal + amount)
        self._record(participant, "add_more", amount=amount)
        self._feed(f"{participant.name} added {round_money(amount / 1_000_000)}m capital.")

    # -------------------------------------------------------------------------
    # Wholesale: phases 3-4
    # -------------------------------------------------------------------------

    def _punitive_spread(self, participant: Participant, payload: dict) -> None:
        bps = self._config.punitive_spread_bps
        participant.account.spread_bps_override = bps
        metrics = self._state.metrics
        metrics.libor_pct = round_money(metrics.libor_pct + 0.25)
        self._record(participant, "punitive_spread", bps=bps)
        self._feed(f"{participant.name} demanded punitive spread +{bps}bps.", FeedType.ALERT)

    def _partial_rollover(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        acct.exposure_pct = max(20.0, acct.exposure_pct - 25)
        self._record(participant, "partial_rollover", pct=25)

    def _refuse(self, participant: Participant, payload: dict) -> None:
        acct = participant.account
        acct.refused = True
        acct.refused_at_phase = self._phase
        self._record(participant, self._current_action)
        if self._phase == Phase.PHASE3:
            self._feed(f"{participant.name} refused rollover.", FeedType.CRITICAL)
        else:
            self._feed(f"{participant.name} refused in final window.", FeedType.CRITICAL)

    def _final_hold(self, participant: Participant, payload: dict) -> None:
        participant.account.held_through_resolution = True
        self._record(participant, "final_hold")
