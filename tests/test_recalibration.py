"""Tests for recalibration.py: engine weight and category block recalibration."""

import pytest
from datetime import date, datetime
from unittest.mock import MagicMock, patch

from edge_engine.core.records import Outcome, PickCandidate, SettledPick, SettlementRecord
from edge_engine.core.scoring_config import PenaltyRule, ScoringConfig
from edge_engine.services.recalibration import (
    category_hit_rates,
    engine_hit_rates,
    recalibrate,
    run_recalibration,
    target_weight,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sp(i, hit, scores=None, category="points"):
    """Build a synthetic decided pick."""
    pick_id = f"p{i}"
    return SettledPick(
        PickCandidate(
            pick_id=pick_id,
            subject_id=f"player{i}",
            prop_type="points",
            line=20.5,
            recommended_side="over",
            engine_scores=scores if scores is not None else {"sharp": 70},
            category=category,
            american_odds=-110,
            analysis_date=date(2024, 11, 1),
        ),
        SettlementRecord(
            pick_id=pick_id,
            outcome=Outcome.HIT if hit else Outcome.MISS,
            settled_at=datetime(2024, 11, 2),
        ),
    )


def _picks(hits, misses, start=0, **kwargs):
    out = [_sp(start + i, True, **kwargs) for i in range(hits)]
    out += [_sp(start + hits + i, False, **kwargs) for i in range(misses)]
    return out


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

def test_engine_hit_rates_only_counts_contributors():
    picks = _picks(3, 1, scores={"sharp": 70}) + _picks(0, 2, start=10, scores={"sharp": 60, "trap": 40})
    rates = engine_hit_rates(picks)
    assert rates["sharp"]["samples"] == 6
    assert rates["sharp"]["hit_rate"] == pytest.approx(0.5)
    assert rates["trap"]["samples"] == 2
    assert rates["trap"]["hit_rate"] == 0.0


def test_engine_hit_rates_skips_none_scores():
    rates = engine_hit_rates(_picks(2, 0, scores={"sharp": 70, "trap": None}))
    assert "trap" not in rates


def test_pushes_are_not_decided():
    push = SettledPick(_sp(0, True).pick, SettlementRecord("p0", outcome=Outcome.PUSH))
    assert engine_hit_rates([push]) == {}


def test_category_hit_rates():
    rates = category_hit_rates(_picks(1, 3, category="threes"))
    assert rates["threes"] == {"samples": 4, "hits": 1, "hit_rate": 0.25}


@pytest.mark.parametrize("hit_rate,samples,expected", [
    (0.50, 10, 1.00),
    (0.75, 10, 1.20),
    (0.75, 50, 1.25),
    (0.75, 100, 1.30),
    (0.25, 10, 0.80),
    (1.00, 100, 1.50),   # clamped at the ceiling
])
def test_target_weight(hit_rate, samples, expected):
    assert target_weight(hit_rate, samples) == pytest.approx(expected)


def test_target_weight_bounds():
    assert 0.5 <= target_weight(0.0, 500) <= 1.5
    assert target_weight(1.0, 500) == pytest.approx(1.5)


# ---------------------------------------------------------------------------
# recalibrate
# ---------------------------------------------------------------------------

class TestRecalibrate:

    def test_insufficient_data(self):
        cfg = ScoringConfig.default()
        new_cfg, result = recalibrate(_picks(3, 2), cfg, min_picks=30)
        assert result["status"] == "insufficient_data"
        assert result["picks_analyzed"] == 5
        assert new_cfg is cfg

    def test_raises_weight_of_winning_engine(self):
        new_cfg, result = recalibrate(_picks(15, 5), ScoringConfig.default(), min_picks=10)
        assert result["status"] == "ok"
        assert new_cfg.weight_for("sharp").weight == pytest.approx(1.2)
        assert result["changes"][0]["parameter"] == "weight:sharp"
        assert result["changes"][0]["old"] == 1.0

    def test_change_bounded_per_run(self):
        new_cfg, _ = recalibrate(_picks(100, 0), ScoringConfig.default(), min_picks=10)
        assert new_cfg.weight_for("sharp").weight == pytest.approx(1.25)

    def test_small_engine_sample_left_alone(self):
        picks = _picks(15, 5) + _picks(5, 0, start=100, scores={"hitrate": 90})
        new_cfg, _ = recalibrate(picks, ScoringConfig.default(), min_picks=10)
        assert new_cfg.weight_for("hitrate").weight == 1.0

    def test_unconfigured_engine_not_enabled(self):
        picks = _picks(20, 0, scores={"mystery": 90, "sharp": 70})
        new_cfg, _ = recalibrate(picks, ScoringConfig.default(), min_picks=10)
        assert "mystery" not in new_cfg.engine_weights
        assert new_cfg.weight_for("mystery").weight == 0.0

    def test_no_changes(self):
        _, result = recalibrate(_picks(10, 10), ScoringConfig.default(), min_picks=10)
        assert result["status"] == "no_changes"
        assert result["changes"] == []

    def test_proposes_category_block(self):
        picks = _picks(3, 9, category="threes") + _picks(10, 10, start=100, category="points")
        new_cfg, result = recalibrate(picks, ScoringConfig.default(), min_picks=10)
        assert [r["pattern_key"] for r in result["proposed_rules"]] == ["threes"]
        rule = new_cfg.penalty_rules[-1]
        assert rule.pattern_type == "category"
        assert rule.severity == "block"

    def test_existing_block_not_duplicated(self):
        cfg = ScoringConfig.default().with_rules(
            PenaltyRule("category", "Threes", severity="block")
        )
        picks = _picks(3, 9, category="threes")
        new_cfg, result = recalibrate(picks, cfg, min_picks=10)
        assert result["proposed_rules"] == []
        assert len(new_cfg.penalty_rules) == 1

    def test_block_needs_enough_samples(self):
        picks = _picks(1, 8, category="threes") + _picks(10, 10, start=100)
        _, result = recalibrate(picks, ScoringConfig.default(), min_picks=10)
        assert result["proposed_rules"] == []


# ---------------------------------------------------------------------------
# run_recalibration: repository mocked
# ---------------------------------------------------------------------------

@patch("edge_engine.services.recalibration.repository")
def test_run_recalibration_persists(mock_repo):
    mock_repo.load_stored_config.return_value = ScoringConfig.default()
    mock_repo.fetch_settled_picks.return_value = _picks(15, 5)
    db = MagicMock()

    result = run_recalibration(db, changed_by="tester", min_picks=10)

    assert result["applied"] is True
    assert "timestamp" in result
    mock_repo.fetch_settled_picks.assert_called_once_with(db, limit=1000)
    saved_cfg = mock_repo.save_scoring_config.call_args[0][1]
    assert saved_cfg.weight_for("sharp").weight == pytest.approx(1.2)
    assert mock_repo.save_scoring_config.call_args[1]["changed_by"] == "tester"


@patch("edge_engine.services.recalibration.repository")
def test_run_recalibration_dry_run(mock_repo):
    mock_repo.load_stored_config.return_value = ScoringConfig.default()
    mock_repo.fetch_settled_picks.return_value = _picks(15, 5)

    result = run_recalibration(MagicMock(), min_picks=10, apply_changes=False)

    assert result["status"] == "ok"
    assert result["applied"] is False
    mock_repo.save_scoring_config.assert_not_called()


@patch("edge_engine.services.recalibration.repository")
def test_run_recalibration_insufficient_data_writes_nothing(mock_repo):
    mock_repo.load_stored_config.return_value = ScoringConfig.default()
    mock_repo.fetch_settled_picks.return_value = []

    result = run_recalibration(MagicMock())

    assert result["status"] == "insufficient_data"
    assert result["applied"] is False
    mock_repo.save_scoring_config.assert_not_called()
