"""
Scenario events the facilitator can fire.

Each event is a data record: key, the phases it may fire in, the feed
message, and a pure transform over Metrics. Adding an event means adding
a record here; the controller never needs to change.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from ..state.schema import Metrics, Phase, Scenario, round_money

if TYPE_CHECKING:
    from ..config import SimulationConfig


MetricsTransform = Callable[[Metrics], Metrics]


@dataclass(frozen=True)
class ScenarioEvent:
    key: str
    allowed_phases: frozenset[Phase]
    message: str
    transform: MetricsTransform

    def apply(self, metrics: Metrics) -> Metrics:
        """Return transformed metrics; the input is left untouched."""
        return self.transform(metrics.model_copy(deep=True))

    def feed_text(self, config: "SimulationConfig") -> str:
        """Feed message with configured amounts filled in."""
        return self.message.format(protection_limit=config.protection_limit)


# ─── Transforms ─────────────────────────────────────────────

def _libor_rise(m: Metrics) -> Metrics:
    m.libor_pct = round_money(m.libor_pct + 0.85)
    m.assumptions.funding_cost_stable = False
    m.scenario = Scenario.MODERATE
    return m


def _prepay_slow(m: Metrics) -> Metrics:
    m.assumptions.prepayment_rate_pct = 3
    m.scenario = Scenario.MODERATE
    m.liquidity_buffer = max(0.0, m.liquidity_buffer - 35_000_000)
    return m


def _competitor_15(m: Metrics) -> Metrics:
    m.assumptions.deposit_stability = False
    m.scenario = Scenario.SEVERE
    m.panic_meter = min(70, m.panic_meter + 14)
    return m


def _bbc_leak(m: Metrics) -> Metrics:
    m.scenario = Scenario.SEVERE
    m.panic_meter = min(90, m.panic_meter + 25)
    return m


SCENARIO_EVENTS: dict[str, ScenarioEvent] = {
    e.key: e for e in [
        ScenarioEvent(
            key="LIBOR_RISE",
            allowed_phases=frozenset({Phase.PHASE2}),
            message="LIBOR rising globally. Funding cost assumptions broken.",
            transform=_libor_rise,
        ),
        ScenarioEvent(
            key="PREPAY_SLOW",
            allowed_phases=frozenset({Phase.PHASE2}),
            message="US mortgage prepayments slowed: expected inflows not arriving.",
            transform=_prepay_slow,
        ),
        ScenarioEvent(
            key="COMPETITOR_15",
            allowed_phases=frozenset({Phase.PHASE2}),
            message="Competitor launched 15% bond. Behavioral maturity diverging now.",
            transform=_competitor_15,
        ),
        ScenarioEvent(
            key="BBC_LEAK",
            allowed_phases=frozenset({Phase.PHASE3, Phase.PHASE4}),
            message=(
                "BREAKING: BoE emergency funding talks leaked. "
                "FSCS protection up to {protection_limit:,.0f} is highlighted to all participants."
            ),
            transform=_bbc_leak,
        ),
    ]
}
