"""Tests for services/repository.py against an in-memory SQLite database."""

import pytest
from dataclasses import replace
from datetime import date, datetime

from edge_engine.core.errors import AlreadySettledError
from edge_engine.core.records import Outcome, PickCandidate, SettlementRecord
from edge_engine.core.scoring_config import PenaltyRule, ScoringConfig
from edge_engine.models import ConfigChange, PenaltyRuleRow, SettlementRow, TierThresholdRow
from edge_engine.services import repository
from edge_engine.services.backtest import filter_picks, run_backtest
from edge_engine.services.recalibration import run_recalibration
from edge_engine.services.settlement import settle_candidate, void_pick

NOW = datetime(2024, 11, 3, 2, 0)


def _candidate(pick_id, category="points", day=1, score=70.0):
    return PickCandidate(
        pick_id=pick_id,
        subject_id=f"player-{pick_id}",
        prop_type="points",
        line=20.5,
        recommended_side="over",
        engine_scores={"sharp": score, "trap": None},
        category=category,
        american_odds=-110,
        projection=22.0,
        analysis_date=date(2024, 11, day),
        composite_score=score,
        confidence_tier="STRONG",
        contributing_engines=1,
    )


def _settle(db, candidate, actual):
    record = settle_candidate(
        candidate, repository.get_settlement(db, candidate.pick_id),
        actual_value=actual, settled_at=NOW,
    )
    return repository.record_settlement(db, record)


# ---------------------------------------------------------------------------
# Scoring configuration
# ---------------------------------------------------------------------------

class TestScoringConfig:

    def test_empty_tables_give_default(self, db_session):
        assert repository.load_scoring_config(db_session) == ScoringConfig.default()

    def test_seed_is_idempotent(self, db_session):
        assert repository.seed_default_config(db_session) == 4
        assert repository.seed_default_config(db_session) == 0
        assert db_session.query(TierThresholdRow).count() == 3

    def test_weight_change_is_audited(self, db_session):
        repository.seed_default_config(db_session)
        cfg = repository.load_scoring_config(db_session).with_weight("sharp", 1.25)

        assert repository.save_scoring_config(db_session, cfg, changed_by="tester") == 1

        change = (
            db_session.query(ConfigChange)
            .filter(ConfigChange.changed_by == "tester")
            .one()
        )
        assert change.parameter_name == "weight:sharp"
        assert change.old_value == 1.0
        assert change.new_value == 1.25
        assert repository.load_scoring_config(db_session).weight_for("sharp").weight == 1.25

    def test_rules_round_trip_in_order(self, db_session):
        cfg = ScoringConfig.default().with_rules(
            PenaltyRule("category", "threes", severity="block", reason="cold"),
            PenaltyRule("side", "under", penalty_amount=0.1),
        )
        repository.save_scoring_config(db_session, cfg)
        loaded = repository.load_scoring_config(db_session)
        assert loaded.penalty_rules == cfg.penalty_rules

    def test_existing_rule_not_duplicated(self, db_session):
        cfg = ScoringConfig.default().with_rules(PenaltyRule("category", "threes", severity="block"))
        repository.save_scoring_config(db_session, cfg)
        repository.save_scoring_config(db_session, cfg)
        assert db_session.query(PenaltyRuleRow).count() == 1

    def test_environment_applied_over_tables(self, db_session, monkeypatch):
        repository.seed_default_config(db_session)
        monkeypatch.setenv("ENGINE_WEIGHTS", "trap=0")
        assert repository.load_scoring_config(db_session).weight_for("trap").weight == 0.0

    def test_custom_tier_row_kept_on_load(self, db_session, monkeypatch):
        repository.seed_default_config(db_session)
        db_session.add(TierThresholdRow(tier="LOCK", min_score=90.0))
        db_session.commit()
        monkeypatch.setenv("TIER_STRONG_MIN", "60")

        cfg = repository.load_scoring_config(db_session)

        assert cfg.tier_for(95.0) == "LOCK"
        assert cfg.tier_for(85.0) == "ELITE"
        assert cfg.tier_for(61.0) == "STRONG"

    def test_stored_config_ignores_environment(self, db_session, monkeypatch):
        repository.seed_default_config(db_session)
        monkeypatch.setenv("ENGINE_WEIGHTS", "trap=0")
        assert repository.load_stored_config(db_session).weight_for("trap").weight == 1.0

    def test_recalibration_does_not_persist_environment_weights(self, db_session, monkeypatch):
        repository.seed_default_config(db_session)
        picks = [_candidate(f"r{i}", day=1 + i % 28) for i in range(20)]
        repository.save_candidates(db_session, picks)
        for i, candidate in enumerate(picks):
            _settle(db_session, candidate, 25 if i < 15 else 10)
        monkeypatch.setenv("ENGINE_WEIGHTS", "hitrate=1.4")

        result = run_recalibration(db_session, min_picks=10)

        assert [c["parameter"] for c in result["changes"]] == ["weight:sharp"]
        stored = repository.load_stored_config(db_session)
        assert stored.weight_for("sharp").weight == pytest.approx(1.2)
        assert stored.weight_for("hitrate").weight == 1.0
        audits = (
            db_session.query(ConfigChange.parameter_name)
            .filter(ConfigChange.changed_by == "auto")
            .all()
        )
        assert [name for (name,) in audits] == ["weight:sharp"]
        live = repository.load_scoring_config(db_session)
        assert live.weight_for("hitrate").weight == 1.4
        assert live.weight_for("sharp").weight == pytest.approx(1.2)


# ---------------------------------------------------------------------------
# Picks and settlements
# ---------------------------------------------------------------------------

class TestPicks:

    def test_save_and_load_candidate(self, db_session):
        candidate = _candidate("a")
        assert repository.save_candidates(db_session, [candidate]) == 1
        assert repository.get_candidate(db_session, "a") == candidate

    def test_save_opens_pending_settlement(self, db_session):
        repository.save_candidates(db_session, [_candidate("a")])
        record = repository.get_settlement(db_session, "a")
        assert record.outcome is Outcome.PENDING

    def test_unknown_pick(self, db_session):
        assert repository.get_candidate(db_session, "nope") is None
        assert repository.get_settlement(db_session, "nope") is None

    def test_rescoring_pending_pick_updates(self, db_session):
        repository.save_candidates(db_session, [_candidate("a", score=60.0)])
        repository.save_candidates(db_session, [_candidate("a", score=75.0)])
        assert repository.get_candidate(db_session, "a").composite_score == 75.0

    def test_settled_pick_not_rescored(self, db_session):
        repository.save_candidates(db_session, [_candidate("a", score=60.0)])
        _settle(db_session, _candidate("a"), 25)
        assert repository.save_candidates(db_session, [_candidate("a", score=90.0)]) == 0
        assert repository.get_candidate(db_session, "a").composite_score == 60.0


class TestRecordSettlement:

    def test_pending_to_terminal(self, db_session):
        repository.save_candidates(db_session, [_candidate("a")])
        _settle(db_session, _candidate("a"), 25)

        stored = repository.get_settlement(db_session, "a")
        assert stored.outcome is Outcome.HIT
        assert stored.profit_units == pytest.approx(0.9091)
        assert stored.settled_at == NOW

    def test_second_writer_loses(self, db_session):
        repository.save_candidates(db_session, [_candidate("a")])
        pending = repository.get_settlement(db_session, "a")

        first = settle_candidate(_candidate("a"), pending, actual_value=25, settled_at=NOW)
        second = void_pick(pending, reason="late scratch", settled_at=NOW)
        repository.record_settlement(db_session, first)

        with pytest.raises(AlreadySettledError) as excinfo:
            repository.record_settlement(db_session, second)
        assert excinfo.value.outcome == "hit"
        assert repository.get_settlement(db_session, "a").outcome is Outcome.HIT

    def test_pending_record_refused(self, db_session):
        with pytest.raises(ValueError):
            repository.record_settlement(db_session, SettlementRecord.pending("a"))

    def test_missing_row_is_inserted(self, db_session):
        repository.save_candidates(db_session, [_candidate("a")])
        db_session.query(SettlementRow).delete()
        db_session.commit()

        record = void_pick(SettlementRecord.pending("a"), reason="postponed", settled_at=NOW)
        repository.record_settlement(db_session, record)
        assert repository.get_settlement(db_session, "a").outcome is Outcome.VOID

    def test_unknown_pick_rejected(self, db_session):
        record = void_pick(SettlementRecord.pending("ghost"), reason="x", settled_at=NOW)
        with pytest.raises(LookupError):
            repository.record_settlement(db_session, record)


class TestFetchSettledPicks:

    @pytest.fixture
    def history(self, db_session):
        picks = [
            _candidate("d1", day=1),
            _candidate("d2", day=2, category="threes"),
            _candidate("d3", day=3),
            _candidate("d4", day=4),
        ]
        repository.save_candidates(db_session, picks)
        for candidate, actual in zip(picks[:3], (25, 10, 30)):
            _settle(db_session, candidate, actual)
        return db_session

    def test_pending_excluded(self, history):
        picks = repository.fetch_settled_picks(history)
        assert [sp.pick.pick_id for sp in picks] == ["d1", "d2", "d3"]
        assert picks[1].outcome is Outcome.MISS

    def test_filters(self, history):
        assert len(repository.fetch_settled_picks(history, category="threes")) == 1
        in_range = repository.fetch_settled_picks(
            history, start_date=date(2024, 11, 2), end_date=date(2024, 11, 3),
        )
        assert [sp.pick.pick_id for sp in in_range] == ["d2", "d3"]

    def test_category_match_ignores_case(self, history):
        picks = repository.fetch_settled_picks(history, category="THREES")
        assert [sp.pick.pick_id for sp in picks] == ["d2"]

    def test_undated_pick_uses_settlement_date(self, history):
        undated = replace(_candidate("u1"), analysis_date=None)
        repository.save_candidates(history, [undated])
        _settle(history, undated, 25)

        picks = repository.fetch_settled_picks(
            history, start_date=date(2024, 11, 3), end_date=date(2024, 11, 3),
        )

        assert [sp.pick.pick_id for sp in picks] == ["d3", "u1"]
        everything = repository.fetch_settled_picks(history)
        assert filter_picks(everything, date(2024, 11, 3), date(2024, 11, 3)) == picks

    def test_limit_keeps_most_recent(self, history):
        picks = repository.fetch_settled_picks(history, limit=2)
        assert [sp.pick.pick_id for sp in picks] == ["d2", "d3"]


# ---------------------------------------------------------------------------
# Backtest runs
# ---------------------------------------------------------------------------

def test_backtest_run_storage(db_session):
    repository.save_candidates(db_session, [_candidate("a")])
    _settle(db_session, _candidate("a"), 25)
    run = run_backtest(
        repository.fetch_settled_picks(db_session),
        run_id="run-1",
        group_by=("category",),
        start_date=date(2024, 11, 1),
    )
    repository.save_backtest_run(db_session, run)

    assert repository.get_backtest_run(db_session, "run-1") == run
    assert repository.get_backtest_run(db_session, "run-2") is None
    assert list(repository.load_backtest_runs(db_session, ["run-1", "run-2"])) == ["run-1"]
    assert repository.load_backtest_runs(db_session, []) == {}
