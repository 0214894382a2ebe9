"""
Macro liquidity model.

Recomputes the bank's shared metrics from participant state after every
accepted action and every accrual tick:

    liabilities (by maturity bucket)
        -> synthetic asset book (by bucket, stress-haircut)
        -> LCR / NSFR / concentration / maturity
        -> buffer drain, rescue support, survival horizon
        -> market liquidity labels
        -> terminal collapse rule

The model owns no state; it reads and writes the engine's GameState.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..state.event_bus import EventType
from ..state.schema import (
    FACILITIES,
    PRODUCTS,
    BankStatus,
    BoeStatus,
    Bucket,
    BucketTotals,
    FeedType,
    Phase,
    Scenario,
    DEFAULT_FACILITY,
    DEFAULT_PRODUCT,
    round_money,
)

if TYPE_CHECKING:
    from ..engine import GameEngine

logger = logging.getLogger(__name__)


# ─── Configuration ───────────────────────────────────────────

LIQUIDITY_CONFIG = {
    "balance_sheet": {
        "mortgage_share": 0.82,     # Mortgage book as share of total liabilities
        "trading_share": 0.06,
        "prepay_min": 0.02,
        "prepay_max": 0.16,
    },
    # Share of each asset class maturing in each bucket
    "asset_profile": {
        Bucket.SHORT: {"hqla": 0.55, "mortgage": 0.22, "trading": 0.18},   # mortgage share scaled by prepay
        Bucket.MEDIUM: {"hqla": 0.18, "mortgage": 0.09, "trading": 0.22},
        Bucket.LONG: {"hqla": 0.07, "mortgage": 0.24, "trading": 0.16},
    },
    "haircuts": {
        "scenario": {Scenario.BASE: 1.0, Scenario.MODERATE: 0.96, Scenario.SEVERE: 0.9},
        "market": 0.82,             # Applied in phase3/phase4
    },
    "runoff": {
        "retail_stable": 0.04,
        "retail_unstable": 0.10,
        "retail_bounds": (0.03, 0.22),
        "wholesale_stable": 0.25,
        "wholesale_unstable": 0.45,
        "wholesale_stress": 0.35,
        "wholesale_calm": 0.10,
        "wholesale_refusal_weight": 0.4,
        "wholesale_bounds": (0.2, 1.0),
        "retail_medium": 0.02,
    },
    "nsfr": {
        "asf_retail": {Bucket.LONG: 0.95, Bucket.MEDIUM: 0.9, Bucket.SHORT: 0.5},
        "asf_wholesale": {Bucket.LONG: 1.0, Bucket.MEDIUM: 0.5},
        "asf_total": 0.08,
        "rsf": {Bucket.SHORT: 0.1, Bucket.MEDIUM: 0.5, Bucket.LONG: 0.85, Bucket.OTHER: 1.0},
    },
    "drain": {
        "base_calm": 220_000,
        "base_stress": 2_800_000,
        "per_withdrawal": 800_000,
        "per_refusal": 5_200_000,
        "scenario_multiplier": {Scenario.BASE: 1.0, Scenario.MODERATE: 1.5, Scenario.SEVERE: 2.4},
    },
    "rescue_support": {
        "drip": 3_100_000,
        "cap": 1_400_000_000,
    },
    "survival": {
        "min_hourly_outflow": 120_000,
        "alert_hours": 48,
    },
    "market_liquidity": {
        "spread_step": 0.02,
        "spread_per_refusal": 0.005,
        "spread_cap": 4.5,
        "thin_above": 1.0,
        "very_thin_above": 2.2,
    },
}

STRESS_PHASES = frozenset({Phase.PHASE3, Phase.PHASE4})
LIVE_PHASES = frozenset({Phase.PHASE1, Phase.PHASE2, Phase.PHASE3, Phase.PHASE4})


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class BalanceSheet:
    """One consistent view of liabilities and assets by bucket."""
    retail: BucketTotals
    wholesale: BucketTotals
    assets: BucketTotals

    @property
    def total_liabilities(self) -> float:
        return self.retail.total + self.wholesale.total + 1

    @property
    def short_term_gap(self) -> float:
        """Short-term liabilities not covered by 0-3m assets."""
        return max(0.0, self.retail.short + self.wholesale.short - self.assets.short)


class LiquidityModel:
    """Derives shared bank metrics from participant state."""

    def __init__(self, engine: "GameEngine"):
        self._engine = engine

    @property
    def _state(self):
        return self._engine.state

    # -------------------------------------------------------------------------
    # Balance sheet
    # -------------------------------------------------------------------------

    def liability_buckets(self) -> tuple[BucketTotals, BucketTotals]:
        """Retail and wholesale funding by tenor, excluding exits and undecided phase-1 money."""
        phase = self._state.session.phase
        retail = BucketTotals()
        wholesale = BucketTotals()

        for p in self._state.depositors:
            acct = p.account
            if acct.withdrew:
                continue
            if phase == Phase.PHASE1 and not acct.commitment.confirmed:
                continue
            product = PRODUCTS.get(acct.product or "", PRODUCTS[DEFAULT_PRODUCT])
            retail.add(product.bucket, p.balance)

        for p in self._state.wholesale:
            acct = p.account
            if acct.refused:
                continue
            if phase == Phase.PHASE1 and not acct.commitment.confirmed:
                continue
            facility = FACILITIES.get(acct.facility or "", FACILITIES[DEFAULT_FACILITY])
            wholesale.add(facility.bucket, p.balance * acct.exposure_pct / 100)

        return retail, wholesale

    def asset_buckets(self, retail: BucketTotals, wholesale: BucketTotals) -> BucketTotals:
        """Synthetic asset book sized from liabilities, haircut for stress."""
        metrics = self._state.metrics
        sheet_cfg = LIQUIDITY_CONFIG["balance_sheet"]
        haircut_cfg = LIQUIDITY_CONFIG["haircuts"]

        total_liabilities = retail.total + wholesale.total + 1
        mortgage = total_liabilities * sheet_cfg["mortgage_share"]
        trading = total_liabilities * sheet_cfg["trading_share"]
        hqla = max(0.0, metrics.liquidity_buffer)
        prepay = clamp(
            metrics.assumptions.prepayment_rate_pct / 100,
            sheet_cfg["prepay_min"],
            sheet_cfg["prepay_max"],
        )

        haircut = haircut_cfg["scenario"][metrics.scenario]
        if self._state.session.phase in STRESS_PHASES:
            haircut *= haircut_cfg["market"]

        assets = BucketTotals()
        allocated = 0.0
        for bucket, profile in LIQUIDITY_CONFIG["asset_profile"].items():
            mortgage_share = profile["mortgage"] * (prepay if bucket == Bucket.SHORT else 1)
            amount = (
                hqla * profile["hqla"] + mortgage * mortgage_share + trading * profile["trading"]
            ) * haircut
            assets.add(bucket, round_money(amount))
            allocated += amount

        total_assets = (hqla + mortgage + trading) * haircut
        assets.other = round_money(max(0.0, total_assets - allocated))
        return assets

    def balance_sheet(self) -> BalanceSheet:
        retail, wholesale = self.liability_buckets()
        return BalanceSheet(retail=retail, wholesale=wholesale, assets=self.asset_buckets(retail, wholesale))

    def gap_table(self, sheet: BalanceSheet | None = None) -> list[dict]:
        """Assets, liabilities and net gap per bucket, plus running cumulative gap."""
        sheet = sheet or self.balance_sheet()
        rows = []
        cumulative = 0.0
        for bucket in Bucket:
            assets = sheet.assets.get(bucket)
            liabilities = round_money(sheet.retail.get(bucket) + sheet.wholesale.get(bucket))
            net_gap = round_money(assets - liabilities)
            cumulative = round_money(cumulative + net_gap)
            rows.append({
                "bucket": bucket.value,
                "assets": assets,
                "liabilities": liabilities,
                "net_gap": net_gap,
                "cumulative_gap": cumulative,
            })
        return rows

    # -------------------------------------------------------------------------
    # Ratios
    # -------------------------------------------------------------------------

    def net_outflows(self, sheet: BalanceSheet, refusal_rate: float) -> float:
        """Stressed 30-day net cash outflows."""
        metrics = self._state.metrics
        cfg = LIQUIDITY_CONFIG["runoff"]
        stressed = self._state.session.phase in STRESS_PHASES

        retail_runoff = clamp(
            (cfg["retail_stable"] if metrics.assumptions.deposit_stability else cfg["retail_unstable"])
            + metrics.panic_meter / 1000,
            *cfg["retail_bounds"],
        )
        wholesale_runoff = clamp(
            (cfg["wholesale_stable"] if metrics.assumptions.funding_cost_stable else cfg["wholesale_unstable"])
            + (cfg["wholesale_stress"] if stressed else cfg["wholesale_calm"])
            + refusal_rate * cfg["wholesale_refusal_weight"],
            *cfg["wholesale_bounds"],
        )
        return (
            sheet.retail.short * retail_runoff
            + sheet.wholesale.short * wholesale_runoff
            + sheet.retail.medium * cfg["retail_medium"]
            + 1
        )

    @staticmethod
    def lcr(sheet: BalanceSheet, outflows: float) -> float:
        hqla = max(1.0, sheet.assets.short * 0.9)
        return clamp(hqla / outflows * 100, 0, 300)

    @staticmethod
    def nsfr(sheet: BalanceSheet) -> float:
        cfg = LIQUIDITY_CONFIG["nsfr"]
        asf = sum(sheet.retail.get(b) * w for b, w in cfg["asf_retail"].items())
        asf += sum(sheet.wholesale.get(b) * w for b, w in cfg["asf_wholesale"].items())
        asf += sheet.total_liabilities * cfg["asf_total"]
        rsf = sum(sheet.assets.get(b) * w for b, w in cfg["rsf"].items())
        return clamp(asf / (rsf + 1) * 100, 0, 250)

    # -------------------------------------------------------------------------
    # Full recompute
    # -------------------------------------------------------------------------

    def recompute(self) -> None:
        """Refresh every derived metric. Runs after each action and tick."""
        state = self._state
        session = state.session
        metrics = state.metrics

        sheet = self.balance_sheet()
        depositors = state.depositors
        wholesale = state.wholesale
        withdrawals = sum(1 for p in depositors if p.account.withdrew)
        refusals = sum(1 for p in wholesale if p.account.refused)
        refusal_rate = refusals / len(wholesale) if wholesale else 0.0

        total_liabilities = sheet.total_liabilities
        metrics.wholesale_dependency_pct = round_money(
            clamp(sheet.wholesale.total / total_liabilities * 100, 8, 95)
        )
        metrics.funding_concentration_pct = round_money(
            clamp((sheet.wholesale.short + sheet.retail.short) / total_liabilities * 100, 8, 95)
        )

        outflows = self.net_outflows(sheet, refusal_rate)
        metrics.lcr = round_money(self.lcr(sheet, outflows))
        metrics.nsfr = round_money(self.nsfr(sheet))

        headcount = len(depositors) or 1
        locked = sum(1 for p in depositors if not p.account.withdrew)
        behaved = sum(
            1 for p in depositors
            if not p.account.withdrew and p.account.withdrawn_at_phase is None
        )
        metrics.contractual_maturity_pct = round_money(clamp(locked / headcount * 100, 0, 100))
        metrics.behavioral_maturity_pct = round_money(
            clamp(behaved / headcount * 100 - metrics.panic_meter, 0, 100)
        )

        self._drain_buffer(withdrawals, refusals)

        floor = LIQUIDITY_CONFIG["survival"]["min_hourly_outflow"]
        metrics.survival_hours = max(0, math.floor(metrics.liquidity_buffer / max(floor, outflows / 30)))

        if session.phase in STRESS_PHASES:
            self._widen_market_spread(refusals)

        metrics.asset_buckets = sheet.assets
        metrics.liability_buckets = BucketTotals(
            **{name: round_money(getattr(sheet.retail, name) + getattr(sheet.wholesale, name))
               for name in ("short", "medium", "long", "other")}
        )
        metrics.wholesale_refusals = refusals
        metrics.depositor_withdrawals = withdrawals

        self._check_survival_alert()
        self._check_collapse()

    def _drain_buffer(self, withdrawals: int, refusals: int) -> None:
        state = self._state
        metrics = state.metrics
        cfg = LIQUIDITY_CONFIG["drain"]

        if state.session.phase in LIVE_PHASES:
            base = cfg["base_stress"] if state.session.phase in STRESS_PHASES else cfg["base_calm"]
            drain = (
                base + withdrawals * cfg["per_withdrawal"] + refusals * cfg["per_refusal"]
            ) * cfg["scenario_multiplier"][metrics.scenario]
            metrics.liquidity_buffer = round_money(max(0.0, metrics.liquidity_buffer - drain))

        support = LIQUIDITY_CONFIG["rescue_support"]
        if (
            metrics.outcomes.boe_injected
            and state.session.bank_status != BankStatus.COLLAPSED
            and metrics.liquidity_buffer < support["cap"]
        ):
            metrics.liquidity_buffer = round_money(
                min(support["cap"], metrics.liquidity_buffer + support["drip"])
            )

    def _widen_market_spread(self, refusals: int) -> None:
        cfg = LIQUIDITY_CONFIG["market_liquidity"]
        market = self._state.metrics.asset_liquidity
        market.bid_offer_spread_pct = round(min(
            cfg["spread_cap"],
            market.bid_offer_spread_pct + cfg["spread_step"] + refusals * cfg["spread_per_refusal"],
        ), 4)

        if market.bid_offer_spread_pct > cfg["very_thin_above"]:
            market.market_depth, market.immediacy, market.resilience = "Very Thin", "Days", "Absent"
        elif market.bid_offer_spread_pct > cfg["thin_above"]:
            market.market_depth, market.immediacy, market.resilience = "Thin", "Hours", "Weak"

    def _check_survival_alert(self) -> None:
        session = self._state.session
        threshold = LIQUIDITY_CONFIG["survival"]["alert_hours"]
        if (
            session.phase == Phase.PHASE3
            and not session.survival_alert_sent
            and self._state.metrics.survival_hours <= threshold
        ):
            session.survival_alert_sent = True
            self._engine.post_feed(f"Survival horizon dropped below {threshold} hours.", FeedType.ALERT)

    def _check_collapse(self) -> None:
        """Exhausted buffer collapses an unrescued bank. Fires once."""
        session = self._state.session
        if self._state.metrics.liquidity_buffer > 0 or session.bank_status != BankStatus.STABLE:
            return

        previous = session.phase
        session.bank_status = BankStatus.COLLAPSED
        session.boe_status = BoeStatus.REJECTED
        session.phase = Phase.END
        session.phase_started_at = self._engine.now()
        session.resolution_pending = False
        session.reveal_names = True
        logger.info("Liquidity buffer exhausted in %s; bank collapsed", previous.value)
        self._engine.post_feed("Liquidity buffer exhausted. Granite Bank collapsed.", FeedType.CRITICAL)
        self._engine.emit(EventType.BANK_COLLAPSED, previous_phase=previous.value)
