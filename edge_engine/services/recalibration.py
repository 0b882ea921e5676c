"""
Engine weight recalibration: the feedback loop from settled picks back into
the signal aggregator.

Two things are recalibrated:

    engine weights
        For each engine, the hit rate over decided picks the engine scored.
        weight = clamp(0.5, 1.5, 1.0 + (hit_rate - 0.50) * 0.8 + sample_bonus)
        sample_bonus is +0.05 at 50 decided picks and +0.10 at 100.

    category blocks
        A category hitting below 40% over at least 10 decided picks gets a
        ``block`` penalty rule proposed.

All changes are:
    - Bounded to prevent over-correction in a single run
    - Returned as a change list so the caller can audit or dry-run them
    - Persisted by run_recalibration() into the engine_weights and
      penalty_rules tables, taking effect on the next scoring call

Minimum sample requirement: MIN_PICKS_FOR_RECALIBRATION (env var, default 30).
"""

import logging
import os
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from edge_engine.core.records import Outcome, SettledPick
from edge_engine.core.scoring_config import PenaltyRule, ScoringConfig
from edge_engine.services import repository

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------

# Minimum decided picks across the whole sample before anything changes
_MIN_PICKS = int(os.getenv("MIN_PICKS_FOR_RECALIBRATION", "30"))

# Minimum decided picks for a single engine before its weight moves
_MIN_ENGINE_SAMPLES = 10

_BASE_WEIGHT = 1.0
_WEIGHT_SENSITIVITY = 0.8
_HIT_RATE_BASELINE = 0.50
_MIN_WEIGHT, _MAX_WEIGHT = 0.5, 1.5

_MEDIUM_SAMPLE, _MEDIUM_BONUS = 50, 0.05
_LARGE_SAMPLE, _LARGE_BONUS = 100, 0.10

# Maximum weight change per run (prevents over-shooting)
_MAX_WEIGHT_ADJ_PER_RUN = 0.25

_BLOCK_HIT_RATE = 0.40
_BLOCK_MIN_SAMPLES = 10


# ---------------------------------------------------------------------------
# Diagnostic functions
# ---------------------------------------------------------------------------

def _decided(picks: Iterable[SettledPick]) -> List[SettledPick]:
    return [sp for sp in picks if sp.outcome in (Outcome.HIT, Outcome.MISS)]


def engine_hit_rates(picks: Iterable[SettledPick]) -> Dict[str, Dict]:
    """
    Per-engine {samples, hits, hit_rate} over decided picks the engine scored.
    """
    tallies: Dict[str, List[int]] = {}
    for sp in _decided(picks):
        hit = 1 if sp.outcome is Outcome.HIT else 0
        for engine, score in sp.pick.engine_scores.items():
            if score is None:
                continue
            tallies.setdefault(engine, []).append(hit)

    return {
        engine: {
            "samples": len(results),
            "hits": sum(results),
            "hit_rate": round(sum(results) / len(results), 4),
        }
        for engine, results in sorted(tallies.items())
    }


def category_hit_rates(picks: Iterable[SettledPick]) -> Dict[str, Dict]:
    """Per-category {samples, hits, hit_rate} over decided picks."""
    tallies: Dict[str, List[int]] = {}
    for sp in _decided(picks):
        category = sp.pick.category or "unknown"
        tallies.setdefault(category, []).append(1 if sp.outcome is Outcome.HIT else 0)

    return {
        category: {
            "samples": len(results),
            "hits": sum(results),
            "hit_rate": round(sum(results) / len(results), 4),
        }
        for category, results in sorted(tallies.items())
    }


def target_weight(hit_rate: float, samples: int) -> float:
    """Weight an engine would get from its record alone (unbounded per run)."""
    bonus = 0.0
    if samples >= _LARGE_SAMPLE:
        bonus = _LARGE_BONUS
    elif samples >= _MEDIUM_SAMPLE:
        bonus = _MEDIUM_BONUS
    raw = _BASE_WEIGHT + (hit_rate - _HIT_RATE_BASELINE) * _WEIGHT_SENSITIVITY + bonus
    return max(_MIN_WEIGHT, min(_MAX_WEIGHT, raw))


def _has_category_block(config: ScoringConfig, category: str) -> bool:
    return any(
        r.is_active
        and r.severity == "block"
        and r.pattern_type == "category"
        and r.pattern_key.lower() == category.lower()
        for r in config.penalty_rules
    )


# ---------------------------------------------------------------------------
# Pure recalibration
# ---------------------------------------------------------------------------

def recalibrate(
    settled_picks: Iterable[SettledPick],
    config: ScoringConfig,
    min_picks: Optional[int] = None,
) -> Tuple[ScoringConfig, Dict]:
    """
    Compute new engine weights and category blocks from settled picks.

    Returns:
        (new config, result dict).  The result dict has keys:
            status            "ok" | "insufficient_data" | "no_changes"
            picks_analyzed    int
            changes           list of {parameter, old, new, reason}
            proposed_rules    list of block rules added
            diagnostics       per-engine and per-category hit rates
    """
    required = min_picks if min_picks is not None else _MIN_PICKS
    picks = list(settled_picks)
    decided = _decided(picks)

    if len(decided) < required:
        logger.info(
            "Recalibration skipped: %d decided picks available, %d required",
            len(decided), required,
        )
        return config, {
            "status": "insufficient_data",
            "message": f"Need {required} decided picks; have {len(decided)}.",
            "picks_analyzed": len(decided),
            "min_required": required,
            "changes": [],
            "proposed_rules": [],
        }

    engines = engine_hit_rates(decided)
    categories = category_hit_rates(decided)
    changes: List[Dict] = []
    new_config = config

    # ---- 1. Engine weights --------------------------------------------------
    for engine, stats in engines.items():
        # Unconfigured engines stay off until someone adds them deliberately
        if engine not in config.engine_weights or stats["samples"] < _MIN_ENGINE_SAMPLES:
            continue
        current = config.engine_weights[engine].weight
        target = target_weight(stats["hit_rate"], stats["samples"])
        adj = max(-_MAX_WEIGHT_ADJ_PER_RUN, min(_MAX_WEIGHT_ADJ_PER_RUN, target - current))
        new_weight = round(current + adj, 4)

        if abs(new_weight - current) > 0.001:
            reason = f"hit_rate={stats['hit_rate']:.3f} (n={stats['samples']})"
            new_config = new_config.with_weight(engine, new_weight)
            changes.append({
                "parameter": f"weight:{engine}",
                "old": current,
                "new": new_weight,
                "reason": reason,
            })
            logger.info("weight[%s]: %.3f → %.3f (%s)", engine, current, new_weight, reason)

    # ---- 2. Category blocks -------------------------------------------------
    proposed: List[PenaltyRule] = []
    for category, stats in categories.items():
        if category == "unknown":
            continue
        if stats["samples"] < _BLOCK_MIN_SAMPLES or stats["hit_rate"] >= _BLOCK_HIT_RATE:
            continue
        if _has_category_block(config, category):
            continue
        rule = PenaltyRule(
            pattern_type="category",
            pattern_key=category,
            severity="block",
            reason=(
                f"hit rate {stats['hit_rate']:.1%} below "
                f"{_BLOCK_HIT_RATE:.0%} over {stats['samples']} picks"
            ),
        )
        proposed.append(rule)
        logger.warning("Proposing block for category %s: %s", category, rule.reason)

    if proposed:
        new_config = new_config.with_rules(*proposed)

    return new_config, {
        "status": "ok" if changes or proposed else "no_changes",
        "picks_analyzed": len(decided),
        "changes": changes,
        "proposed_rules": [
            {
                "pattern_type": r.pattern_type,
                "pattern_key": r.pattern_key,
                "severity": r.severity,
                "reason": r.reason,
            }
            for r in proposed
        ],
        "diagnostics": {"engines": engines, "categories": categories},
    }


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def run_recalibration(
    db: Session,
    changed_by: str = "auto",
    min_picks: Optional[int] = None,
    apply_changes: bool = True,
    lookback_limit: int = 1000,
) -> Dict:
    """
    Load recent settled picks and the stored config, recalibrate, and persist.

    Environment overrides are left out so they are never written back to
    the config tables.

    Args:
        db:             SQLAlchemy session.
        changed_by:     Who triggered the run ("auto" or user identifier).
        min_picks:      Override minimum decided picks required.
        apply_changes:  If False, return diagnostics without writing (dry run).
        lookback_limit: Most recent settled picks to consider.
    """
    config = repository.load_stored_config(db)
    picks = repository.fetch_settled_picks(db, limit=lookback_limit)

    new_config, result = recalibrate(picks, config, min_picks=min_picks)

    if apply_changes and result["status"] == "ok":
        repository.save_scoring_config(db, new_config, changed_by=changed_by)
        logger.info(
            "Recalibration applied by %s: %d weight changes, %d new rules",
            changed_by, len(result["changes"]), len(result["proposed_rules"]),
        )

    result["applied"] = apply_changes and result["status"] == "ok"
    result["timestamp"] = datetime.utcnow().isoformat()
    return result
