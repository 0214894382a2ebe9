"""
Tests for scores, labels, outcomes and classroom reports.
"""

from granite_sim.state import Phase

from conftest import advance_to, join_depositor, join_wholesale


class TestLabels:
    def test_hidden_until_reveal(self, engine, depositor):
        """Labels and names stay masked before the reveal."""
        engine.set_phase("phase1")
        assert engine.outcomes.label(depositor) == "Active"
        assert engine.outcomes.display_name(depositor) == f"User_{depositor.id[-4:]}"

    def test_reveal_shows_names(self, engine, depositor):
        engine.reveal_names()
        assert engine.outcomes.display_name(depositor) == "Ada Lovelace"

    def test_panicked_early(self, engine, depositor):
        advance_to(engine, "phase2")
        engine.submit_action(depositor.id, "early_exit", {"confirm_step": "double"})
        engine.reveal_names()
        assert engine.outcomes.label(depositor) == "Panicked Early"

    def test_shrewd_exit(self, engine, depositor, lender):
        advance_to(engine, "phase3")
        engine.submit_action(depositor.id, "early_exit")
        engine.submit_action(lender.id, "refuse_rollover")
        engine.reveal_names()
        assert engine.outcomes.label(depositor) == "Shrewd Exit"
        assert engine.outcomes.label(lender) == "Shrewd Exit"

    def test_rescue_labels(self, engine, depositor, lender):
        advance_to(engine, "phase4")
        engine.apply_resolution_decision("rescue")
        assert engine.outcomes.label(depositor) == "Brave Hold"
        assert engine.outcomes.label(lender) == "Hero Hold"

    def test_collapse_labels(self, engine, depositor, lender):
        advance_to(engine, "phase4")
        engine.apply_resolution_decision("collapse")
        assert engine.outcomes.label(depositor) == "Safe but Low"
        assert engine.outcomes.label(lender) == "Trapped"


class TestScores:
    def test_depositor_score_tracks_balance(self, engine, depositor):
        assert engine.outcomes.score(depositor) == 10_000

    def test_early_exit_penalized(self, engine, depositor):
        """Exiting before the run costs points on top of the penalty."""
        advance_to(engine, "phase2")
        engine.submit_action(depositor.id, "early_exit", {"confirm_step": "double"})
        assert engine.outcomes.score(depositor) == round(depositor.balance) - 1200

    def test_wholesale_score_scaled(self, engine, lender):
        """Lender scores are balance in millions times 100."""
        assert engine.outcomes.score(lender) == 50_000

    def test_leaderboard_sorted_and_complete(self, engine):
        saver = join_depositor(engine, "Saver One")
        lender = join_wholesale(engine, "Lender One")
        board = engine.outcomes.leaderboard()
        assert [row["id"] for row in board] == [lender.id, saver.id]
        assert engine.outcomes.rank(saver) == 2
        assert engine.outcomes.leaderboard(limit=1)[0]["id"] == lender.id


class TestOutcomes:
    def test_bag_holder_above_limit(self, engine, depositor):
        """A holder above the guarantee is frozen with the excess at risk."""
        engine.set_phase("phase1")
        engine.submit_action(depositor.id, "phase1_set_additional", {"additional": 40_000})
        engine.submit_action(depositor.id, "select_product", {"product": "current"})
        engine.submit_action(depositor.id, "phase1_confirm")
        advance_to(engine, "phase4")

        outcome = engine.outcomes.outcome(depositor)
        assert outcome["type"] == "bag_holder"
        assert outcome["guaranteed"] == 35_000
        assert outcome["loss"] == round(depositor.balance - 35_000, 2)

    def test_secured_exit(self, engine, depositor):
        advance_to(engine, "phase3")
        engine.submit_action(depositor.id, "early_exit")
        outcome = engine.outcomes.outcome(depositor)
        assert outcome["type"] == "secured_exit"
        assert outcome["loss"] == 0.0

    def test_panic_runner(self, engine, depositor):
        """A full withdrawal still processing when the bank halts fails."""
        advance_to(engine, "phase3")
        engine.submit_action(depositor.id, "convert_current")
        assert engine.outcomes.outcome(depositor)["type"] == "panic_runner"

    def test_cynic(self, engine, depositor):
        advance_to(engine, "phase3")
        engine.submit_action(depositor.id, "convert_current")
        engine.submit_action(depositor.id, "phase3_prioritize_protected")
        assert engine.outcomes.outcome(depositor)["type"] == "cynic"

    def test_raider_and_greedy(self, engine):
        raider = join_wholesale(engine, "Raider Lender")
        greedy = join_wholesale(engine, "Greedy Lender")
        advance_to(engine, "phase3")
        engine.submit_action(raider.id, "refuse_rollover")
        advance_to(engine, "phase4")
        engine.apply_resolution_decision("collapse")

        assert engine.outcomes.outcome(raider)["type"] == "raider"
        assert engine.outcomes.outcome(raider)["status"] == "DEFAULTED / NATIONALIZED"
        assert engine.outcomes.outcome(greedy)["type"] == "greedy"

    def test_supported_hold(self, engine, lender):
        advance_to(engine, "phase4")
        engine.apply_resolution_decision("rescue")
        outcome = engine.outcomes.outcome(lender)
        assert outcome["type"] == "supported_hold"
        assert outcome["recovery_rate"] == "100%"


class TestReports:
    def test_retail_report_counts(self, engine):
        rich = join_depositor(engine, "Rich Saver")
        join_depositor(engine, "Modest Saver")
        engine.set_phase("phase1")
        engine.submit_action(rich.id, "phase1_set_additional", {"additional": 40_000})
        engine.submit_action(rich.id, "select_product", {"product": "current"})
        engine.submit_action(rich.id, "phase1_confirm")
        advance_to(engine, "phase4")

        report = engine.outcomes.retail_report()
        assert report["total_depositors"] == 2
        assert report["fully_protected"] == 1
        assert report["suffered_haircut"] == 1
        assert report["lost_over_10k"] == 1

    def test_wholesale_report(self, engine):
        first = join_wholesale(engine, "First Lender")
        join_wholesale(engine, "Second Lender")
        advance_to(engine, "phase3")
        engine.submit_action(first.id, "refuse_rollover")

        report = engine.outcomes.wholesale_report()
        assert report["total_wholesale"] == 2
        assert report["refused_count"] == 1
        assert report["refusal_rate_pct"] == 50.0
        assert report["liquidity_drained"] == first.principal

    def test_cohorts(self, engine, depositor, lender):
        engine.set_phase("phase1")
        engine.submit_action(depositor.id, "select_product", {"product": "bond_3y"})
        engine.submit_action(depositor.id, "phase1_confirm")
        engine.submit_action(lender.id, "select_facility", {"facility": "month_3"})
        engine.submit_action(lender.id, "phase1_deploy")

        cohorts = engine.outcomes.cohort_breakdown()
        assert cohorts["phase1_retail"]["by_product"]["bond_3y"] == 1
        assert "premier_142" not in cohorts["phase1_retail"]["by_product"]
        assert cohorts["wholesale_deployment"]["by_facility"]["month_3"] == 1

        advance_to(engine, "phase3")
        engine.submit_action(lender.id, "rollover")
        stances = engine.outcomes.cohort_breakdown()["phase3_wholesale"]
        assert stances["rolling"] == 1
        assert stances["refused"] == 0


class TestParticipantView:
    def test_depositor_view(self, engine, depositor):
        """A depositor's view carries their commitment split and phase-3 beat."""
        engine.set_phase("phase1")
        engine.submit_action(depositor.id, "select_product", {"product": "notice_3m"})
        view = engine.outcomes.participant_view(depositor)
        assert view["role"] == "depositor"
        assert view["draft_product"] == "notice_3m"
        assert view["preview_rate"] == 5.4
        assert view["commitment"]["ticking"] == 0.0
        assert view["can_act"] is True

    def test_phase3_stage_advances(self, engine, clock, depositor):
        advance_to(engine, "phase3")
        assert engine.outcomes.phase3_stage() == "denial"
        clock.advance(200)
        assert engine.outcomes.phase3_stage() == "realization"
        clock.advance(300)
        assert engine.outcomes.phase3_stage() == "bridge"
        view = engine.outcomes.participant_view(depositor)
        assert view["phase3"]["decision_seconds_left"] == 0

    def test_wholesale_view(self, engine, lender):
        view = engine.outcomes.participant_view(lender)
        libor = engine.state.metrics.libor_pct
        assert view["offer_rate"] == round(libor + 2.0, 2)
        assert view["live_exposure"] == 500_000_000
        assert view["refused"] is False

    def test_snapshot_includes_own_view(self, engine, depositor):
        snapshot = engine.get_snapshot(depositor.id)
        assert snapshot["participant"]["id"] == depositor.id
        assert engine.get_snapshot("nobody")["participant"] is None
        assert engine.get_snapshot()["session"]["phase"] == Phase.LOBBY.value
