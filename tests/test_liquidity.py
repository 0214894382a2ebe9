"""
Tests for the macro liquidity model.

The buffer only ever drains unless a rescue injects money, collapse fires
once, and the derived ratios stay within their published bounds.
"""

import pytest

from granite_sim.state import BankStatus, Phase
from granite_sim.state.event_bus import EventType
from granite_sim.systems import DecisionAlreadyMadeError
from granite_sim.systems.liquidity import LIQUIDITY_CONFIG

from conftest import advance_to, join_depositor, join_wholesale


@pytest.fixture
def crowd(engine):
    """A small room: three depositors and two lenders, all confirmed."""
    depositors = [join_depositor(engine, f"Saver Number {i}") for i in range(3)]
    lenders = [join_wholesale(engine, f"Lender Number {i}") for i in range(2)]
    engine.set_phase("phase1")
    for i, p in enumerate(depositors):
        engine.submit_action(p.id, "phase1_set_additional", {"additional": 10_000 * i})
        engine.submit_action(p.id, "select_product", {"product": ["current", "fixed_1y", "bond_3y"][i]})
        engine.submit_action(p.id, "phase1_confirm")
    for p, facility in zip(lenders, ["overnight", "year_1"]):
        engine.submit_action(p.id, "select_facility", {"facility": facility})
        engine.submit_action(p.id, "phase1_deploy")
    return depositors, lenders


class TestBufferInvariant:
    def test_buffer_never_rises_without_rescue(self, engine, crowd):
        """Across ticks, events and actions the buffer only goes down."""
        depositors, lenders = crowd
        history = [engine.state.metrics.liquidity_buffer]

        def step(fn, *args):
            fn(*args)
            history.append(engine.state.metrics.liquidity_buffer)

        step(engine.tick)
        step(engine.set_phase, "phase2")
        step(engine.trigger_event, "PREPAY_SLOW")
        step(engine.submit_action, lenders[0].id, "reduce_exposure", {"pct": 25})
        step(engine.submit_action, depositors[0].id, "early_exit", {"confirm_step": "double"})
        step(engine.tick)
        step(engine.set_phase, "phase3")
        step(engine.submit_action, lenders[1].id, "refuse_rollover")
        step(engine.tick)
        step(engine.trigger_event, "BBC_LEAK")
        step(engine.tick)

        assert all(later <= earlier for earlier, later in zip(history, history[1:]))
        assert history[-1] < history[0]

    def test_stress_drains_faster(self, engine, crowd):
        """Phase-3 ticks drain more than phase-1 ticks."""
        before = engine.state.metrics.liquidity_buffer
        engine.tick()
        calm = before - engine.state.metrics.liquidity_buffer

        advance_to(engine, "phase3")
        before = engine.state.metrics.liquidity_buffer
        engine.tick()
        stressed = before - engine.state.metrics.liquidity_buffer
        assert stressed > calm > 0

    def test_lobby_does_not_drain(self, engine):
        """Nothing drains before the game starts."""
        before = engine.state.metrics.liquidity_buffer
        join_depositor(engine)
        engine.tick()
        assert engine.state.metrics.liquidity_buffer == before

    def test_rescue_drip_only_below_cap(self, engine):
        """After a rescue, support tops the buffer up toward the cap."""
        advance_to(engine, "phase4")
        engine.apply_resolution_decision("rescue")
        support = LIQUIDITY_CONFIG["rescue_support"]

        engine.state.metrics.liquidity_buffer = 1_000_000_000
        engine.liquidity.recompute()
        assert engine.state.metrics.liquidity_buffer == 1_000_000_000 + support["drip"]

        engine.state.metrics.liquidity_buffer = support["cap"] + 50_000_000
        engine.liquidity.recompute()
        assert engine.state.metrics.liquidity_buffer == support["cap"] + 50_000_000


class TestCollapse:
    def test_organic_collapse_fires_once(self, engine, crowd):
        """An exhausted buffer collapses the bank exactly once."""
        engine.set_phase("phase2")
        engine.state.metrics.liquidity_buffer = 1_000
        engine.tick()

        session = engine.state.session
        assert session.bank_status == BankStatus.COLLAPSED
        assert session.phase == Phase.END
        assert session.reveal_names is True
        assert engine.state.metrics.liquidity_buffer == 0

        engine.tick()
        engine.liquidity.recompute()
        assert len(engine.bus.get_history(EventType.BANK_COLLAPSED)) == 1
        critical = [e for e in session.event_feed if "buffer exhausted" in e.text]
        assert len(critical) == 1

    def test_decision_after_collapse_rejected(self, engine, crowd):
        """Organic collapse wins; a later decision is a conflict."""
        engine.set_phase("phase2")
        engine.state.metrics.liquidity_buffer = 1_000
        engine.tick()
        with pytest.raises(DecisionAlreadyMadeError):
            engine.apply_resolution_decision("rescue")

    def test_rescued_bank_does_not_collapse(self, engine):
        """A zero buffer after a rescue is not a second terminal event."""
        advance_to(engine, "phase4")
        engine.apply_resolution_decision("rescue")
        engine.state.metrics.liquidity_buffer = 0
        engine.liquidity.recompute()
        assert engine.state.session.bank_status == BankStatus.RESCUED


class TestDerivedMetrics:
    def test_gap_table_shape(self, engine, crowd):
        """Four buckets in order with a running cumulative gap."""
        rows = engine.liquidity.gap_table()
        assert [r["bucket"] for r in rows] == ["0-3m", "3-12m", "12-36m", "36m+"]
        running = 0.0
        for row in rows:
            assert row["net_gap"] == pytest.approx(row["assets"] - row["liabilities"], abs=0.01)
            running += row["net_gap"]
            assert row["cumulative_gap"] == pytest.approx(running, abs=0.05)

    def test_unconfirmed_money_excluded_in_phase1(self, engine):
        """Phase-1 drafts are not funding yet."""
        depositor = join_depositor(engine)
        engine.set_phase("phase1")
        retail, wholesale = engine.liquidity.liability_buckets()
        assert retail.total == 0

        engine.submit_action(depositor.id, "select_product", {"product": "fixed_1y"})
        engine.submit_action(depositor.id, "phase1_confirm")
        retail, _ = engine.liquidity.liability_buckets()
        assert retail.medium == 10_000

    def test_ratios_within_bounds(self, engine, crowd):
        metrics = engine.state.metrics
        assert 0 <= metrics.lcr <= 300
        assert 0 <= metrics.nsfr <= 250
        assert 8 <= metrics.wholesale_dependency_pct <= 95
        assert 8 <= metrics.funding_concentration_pct <= 95
        assert metrics.survival_hours >= 0

    def test_counts_track_exits(self, engine, crowd):
        depositors, lenders = crowd
        advance_to(engine, "phase3")
        engine.submit_action(depositors[1].id, "early_exit")
        engine.submit_action(lenders[0].id, "refuse_rollover")
        assert engine.state.metrics.depositor_withdrawals == 1
        assert engine.state.metrics.wholesale_refusals == 1

    def test_market_spread_widens_under_stress(self, engine, crowd):
        advance_to(engine, "phase3")
        spread = engine.state.metrics.asset_liquidity.bid_offer_spread_pct
        engine.tick()
        assert engine.state.metrics.asset_liquidity.bid_offer_spread_pct > spread

    def test_survival_alert_once(self, engine, crowd):
        """The survival alert is posted once per session."""
        advance_to(engine, "phase3")
        engine.state.metrics.liquidity_buffer = 200_000_000
        engine.tick()
        engine.tick()
        alerts = [e for e in engine.state.session.event_feed if "Survival horizon" in e.text]
        assert len(alerts) == 1
        assert engine.state.session.survival_alert_sent is True
