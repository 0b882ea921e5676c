"""
Tests for services/backtest.py

Run with: pytest tests/test_backtest.py -v
"""

import pytest
from dataclasses import replace
from datetime import date, datetime

from edge_engine.core.errors import UnknownBaselineError
from edge_engine.core.records import (
    BacktestRun,
    GroupStats,
    Outcome,
    PickCandidate,
    SettledPick,
    SettlementRecord,
)
from edge_engine.core.scoring_config import PenaltyRule, ScoringConfig
from edge_engine.services.backtest import (
    aggregate,
    calibration_table,
    compare_runs,
    compare_to_baseline,
    filter_picks,
    group_stats,
    group_value,
    run_backtest,
)
from edge_engine.services.signals import score_candidate


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_counter = iter(range(10_000))


def _sp(outcome, category="points", side="over", odds=-110, projection=None,
        line=10.5, composite=None, analysis_date=date(2024, 11, 4), scores=None,
        subject="tatum"):
    """Build a synthetic settled pick."""
    pick_id = f"p{next(_counter)}"
    pick = PickCandidate(
        pick_id=pick_id,
        subject_id=subject,
        prop_type=category,
        line=line,
        recommended_side=side,
        engine_scores=scores or {},
        category=category,
        american_odds=odds,
        projection=projection,
        analysis_date=analysis_date,
        composite_score=composite,
    )
    settlement = SettlementRecord(
        pick_id=pick_id,
        outcome=outcome,
        settled_at=datetime(2024, 11, 5) if outcome is not Outcome.PENDING else None,
    )
    return SettledPick(pick, settlement)


def _record(hits, misses, pushes=0, **kwargs):
    return (
        [_sp(Outcome.HIT, **kwargs) for _ in range(hits)]
        + [_sp(Outcome.MISS, **kwargs) for _ in range(misses)]
        + [_sp(Outcome.PUSH, **kwargs) for _ in range(pushes)]
    )


# ---------------------------------------------------------------------------
# group_stats / aggregate
# ---------------------------------------------------------------------------

class TestGroupStats:

    def test_hit_rate_excludes_pushes(self):
        stats = group_stats(_record(3, 2, 1))
        assert stats.total_picks == 6
        assert stats.hits == 3
        assert stats.misses == 2
        assert stats.pushes == 1
        assert stats.hit_rate == pytest.approx(0.6)

    def test_all_pushes_has_no_hit_rate(self):
        stats = group_stats(_record(0, 0, 2))
        assert stats.total_picks == 2
        assert stats.hit_rate is None

    def test_pending_ignored(self):
        stats = group_stats(_record(1, 1) + [_sp(Outcome.PENDING)])
        assert stats.total_picks == 2

    def test_voids_counted_separately(self):
        stats = group_stats(_record(1, 1) + [_sp(Outcome.VOID)])
        assert stats.total_picks == 2
        assert stats.voids == 1
        assert stats.hit_rate == pytest.approx(0.5)

    def test_roi(self):
        # two wins at -110 (+0.9091 each), one loss
        stats = group_stats(_record(2, 1))
        assert stats.roi == pytest.approx(0.2727, abs=1e-4)

    def test_roi_none_without_prices(self):
        assert group_stats(_record(2, 1, odds=None)).roi is None

    def test_avg_edge_is_side_oriented(self):
        picks = [
            _sp(Outcome.HIT, side="over", line=10.5, projection=12.5),
            _sp(Outcome.MISS, side="under", line=10.5, projection=9.5),
        ]
        assert group_stats(picks).avg_edge == pytest.approx(1.5)

    def test_avg_composite(self):
        picks = [_sp(Outcome.HIT, composite=80.0), _sp(Outcome.MISS, composite=60.0)]
        assert group_stats(picks).avg_composite == pytest.approx(70.0)


class TestAggregate:

    def test_empty_input_one_overall_group(self):
        groups = aggregate([], ())
        assert len(groups) == 1
        assert groups[0].group_key == ()
        assert groups[0].total_picks == 0
        assert groups[0].hit_rate is None
        assert groups[0].label == "overall"

    def test_empty_input_with_grouping(self):
        assert aggregate([], ("category",)) == []

    def test_groups_sorted_by_key(self):
        picks = _record(2, 1, category="points") + _record(1, 3, category="assists")
        groups = aggregate(picks, ("category",))
        assert [g.group_key for g in groups] == [
            (("category", "assists"),),
            (("category", "points"),),
        ]
        assert groups[0].hit_rate == pytest.approx(0.25)

    def test_multi_field_grouping(self):
        picks = _record(1, 0, side="over") + _record(0, 1, side="under")
        groups = aggregate(picks, ("category", "recommended_side"))
        assert [g.label for g in groups] == [
            "category=points, recommended_side=over",
            "category=points, recommended_side=under",
        ]

    def test_deterministic(self):
        picks = _record(2, 1, category="points") + _record(1, 3, category="assists")
        assert aggregate(picks, ("category",)) == aggregate(list(reversed(picks)), ("category",))

    def test_unknown_field(self):
        with pytest.raises(ValueError):
            aggregate(_record(1, 0), ("colour",))


class TestTimeBuckets:

    def test_day_week_month(self):
        sp = _sp(Outcome.HIT, analysis_date=date(2024, 11, 4))
        assert group_value(sp, "day") == "2024-11-04"
        assert group_value(sp, "week") == "2024-W45"
        assert group_value(sp, "month") == "2024-11"

    def test_iso_week_crosses_year(self):
        sp = _sp(Outcome.HIT, analysis_date=date(2024, 12, 30))
        assert group_value(sp, "week") == "2025-W01"

    def test_falls_back_to_settled_at(self):
        sp = _sp(Outcome.HIT, analysis_date=None)
        assert group_value(sp, "day") == "2024-11-05"


def test_filter_picks_inclusive_range():
    picks = [
        _sp(Outcome.HIT, analysis_date=date(2024, 11, 1)),
        _sp(Outcome.HIT, analysis_date=date(2024, 11, 5)),
        _sp(Outcome.HIT, analysis_date=date(2024, 11, 10)),
    ]
    kept = filter_picks(picks, date(2024, 11, 1), date(2024, 11, 5))
    assert len(kept) == 2


def test_filter_picks_by_category():
    picks = _record(1, 0, category="points") + _record(1, 0, category="threes")
    assert len(filter_picks(picks, category="Threes")) == 1


# ---------------------------------------------------------------------------
# run_backtest
# ---------------------------------------------------------------------------

class TestRunBacktest:

    def test_plain_run(self):
        run = run_backtest(_record(3, 2, 1), run_id="r1")
        assert run.overall.hit_rate == pytest.approx(0.6)
        assert run.legs_hit == 3
        assert run.legs_missed == 2
        assert run.legs_pushed == 1
        assert run.groups == ()
        assert run.picks_blocked == 0
        assert run.config_snapshot == {}

    def test_replay_with_block_rule(self):
        picks = (
            _record(1, 4, category="threes", scores={"sharp": 70})
            + _record(3, 1, category="points", scores={"sharp": 70})
        )
        cfg = ScoringConfig.default().with_rules(
            PenaltyRule("category", "threes", severity="block")
        )
        run = run_backtest(picks, run_id="r2", config=cfg)

        assert run.picks_considered == 9
        assert run.picks_blocked == 5
        assert run.blocked_that_missed == 4
        assert run.blocked_that_hit == 1
        assert run.blocking_effectiveness == pytest.approx(0.8)
        assert run.overall.hit_rate == pytest.approx(0.75)
        # config.group_by defaults to category
        assert run.group_by == ("category",)
        assert run.config_snapshot["penalty_rules"][0]["pattern_key"] == "threes"

    def test_recorded_blocks_excluded_without_replay(self):
        cfg = ScoringConfig.default().with_rules(
            PenaltyRule("subject", "curry", severity="block")
        )
        blocked = [
            replace(sp, pick=score_candidate(sp.pick, cfg))
            for sp in _record(0, 4, scores={"sharp": 70}, subject="curry")
        ]
        kept = _record(1, 0, scores={"sharp": 70})

        run = run_backtest(blocked + kept, run_id="r-blocked")

        assert run.picks_considered == 5
        assert run.picks_blocked == 4
        assert run.blocked_that_missed == 4
        assert run.blocked_that_hit == 0
        assert run.overall.total_picks == 1
        assert run.overall.hit_rate == 1.0

    def test_replay_can_lift_a_recorded_block(self):
        cfg = ScoringConfig.default().with_rules(
            PenaltyRule("subject", "curry", severity="block")
        )
        picks = [
            replace(sp, pick=score_candidate(sp.pick, cfg))
            for sp in _record(2, 1, scores={"sharp": 70}, subject="curry")
        ]
        run = run_backtest(picks, run_id="r-lifted", config=ScoringConfig.default())
        assert run.picks_blocked == 0
        assert run.overall.total_picks == 3

    def test_replay_rescored_composite(self):
        run = run_backtest(_record(1, 1, scores={"sharp": 90, "hitrate": 70}),
                           run_id="r3", config=ScoringConfig.default())
        assert run.overall.avg_composite == pytest.approx(80.0)

    def test_date_and_category_filters(self):
        picks = (
            _record(1, 0, category="points", analysis_date=date(2024, 11, 1))
            + _record(0, 1, category="points", analysis_date=date(2024, 12, 1))
            + _record(0, 1, category="threes", analysis_date=date(2024, 11, 1))
        )
        run = run_backtest(
            picks, run_id="r4",
            start_date=date(2024, 11, 1), end_date=date(2024, 11, 30), category="points",
        )
        assert run.picks_considered == 1
        assert run.overall.hit_rate == 1.0

    def test_run_survives_serialisation(self):
        run = run_backtest(_record(2, 1), run_id="r5", group_by=("category", "week"),
                           start_date=date(2024, 11, 1))
        assert BacktestRun.from_dict(run.to_dict()) == run


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

class TestCompare:

    def test_signed_deltas(self):
        baseline = run_backtest(_record(1, 1), run_id="base", group_by=("category",))
        current = run_backtest(_record(3, 1), run_id="cur", group_by=("category",),
                               baseline_run_id="base")
        diff = compare_to_baseline(current, {"base": baseline})
        assert diff["overall"]["hit_rate"] == pytest.approx(0.25)
        assert diff["overall"]["hits"] == 2
        assert diff["groups"][0]["deltas"]["hit_rate"] == pytest.approx(0.25)
        assert diff["unmatched_groups"] == []

    def test_none_when_either_side_undecided(self):
        baseline = run_backtest(_record(0, 0, 1), run_id="base")
        current = run_backtest(_record(1, 0), run_id="cur")
        assert compare_runs(current, baseline)["overall"]["hit_rate"] is None

    def test_unmatched_groups(self):
        baseline = run_backtest(_record(1, 0, category="points"), run_id="b", group_by=("category",))
        current = run_backtest(_record(1, 0, category="threes"), run_id="c", group_by=("category",))
        diff = compare_runs(current, baseline)
        assert diff["groups"] == []
        assert {"category": "points"} in diff["unmatched_groups"]
        assert {"category": "threes"} in diff["unmatched_groups"]

    def test_unknown_baseline(self):
        current = run_backtest(_record(1, 0), run_id="cur", baseline_run_id="missing")
        with pytest.raises(UnknownBaselineError):
            compare_to_baseline(current, {})

    def test_no_baseline_named(self):
        current = run_backtest(_record(1, 0), run_id="cur")
        with pytest.raises(LookupError):
            compare_to_baseline(current, {"other": current})


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

def test_calibration_table():
    picks = [
        _sp(Outcome.HIT, composite=85.0),
        _sp(Outcome.HIT, composite=90.0),
        _sp(Outcome.MISS, composite=55.0),
        _sp(Outcome.PUSH, composite=55.0),
    ]
    table = calibration_table(picks)
    rows = {row["bin"]: row for row in table["calibration_buckets"]}
    assert rows["80+"]["count"] == 2
    assert rows["80+"]["actual_hit_rate"] == 1.0
    assert rows["50-65"]["count"] == 1
    assert "0-50" not in rows
    # ((0.15)^2 + (0.10)^2 + (0.55)^2) / 3
    assert table["brier_score"] == pytest.approx(0.1117, abs=1e-4)


def test_calibration_empty():
    table = calibration_table([])
    assert table["calibration_buckets"] == []
    assert table["brier_score"] is None


def test_group_stats_from_dict():
    stats = GroupStats(group_key=(("category", "points"),), total_picks=3, hits=2, misses=1,
                       hit_rate=0.6667)
    assert GroupStats.from_dict(stats.to_dict()) == stats
