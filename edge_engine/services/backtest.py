"""
Backtest aggregation: settled picks in, grouped accuracy statistics out.

All public functions are pure and deterministic.  Given the same picks and
the same grouping they return identical output: groups are sorted by key,
floats are rounded, and nothing reads the wall clock.  Time buckets come from
dates already recorded on the picks.

Hit rate excludes pushes from the denominator and is None (never 0) when a
group has no decided picks.  Voided picks are counted separately and are not
part of ``total_picks``.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from edge_engine.core.errors import NoSignalsError, UnknownBaselineError
from edge_engine.core.records import (
    BacktestRun,
    GroupStats,
    Outcome,
    SettledPick,
)
from edge_engine.core.scoring_config import ScoringConfig
from edge_engine.services.settlement import profit_units
from edge_engine.services.signals import projection_edge, score_candidate

logger = logging.getLogger(__name__)

#: Time-bucket grouping fields derived from the pick's analysis date.
TIME_BUCKETS = ("day", "week", "month")

#: Pick attributes usable as grouping fields.
PICK_FIELDS = (
    "category",
    "prop_type",
    "recommended_side",
    "confidence_tier",
    "subject_id",
)

#: Metrics reported when two runs are compared.
COMPARED_METRICS = (
    "total_picks",
    "hits",
    "misses",
    "pushes",
    "hit_rate",
    "roi",
    "avg_edge",
    "avg_composite",
)

_DEFAULT_CALIBRATION_BINS: Tuple[Tuple[float, float, str], ...] = (
    (0.0, 50.0, "0-50"),
    (50.0, 65.0, "50-65"),
    (65.0, 80.0, "65-80"),
    (80.0, 100.01, "80+"),
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _rounded(value: Optional[float], places: int = 4) -> Optional[float]:
    return round(value, places) if value is not None else None


def _hit_rate(hits: int, misses: int) -> Optional[float]:
    decided = hits + misses
    return round(hits / decided, 4) if decided > 0 else None


def _pick_date(sp: SettledPick) -> Optional[date]:
    if sp.pick.analysis_date is not None:
        return sp.pick.analysis_date
    if sp.settlement.settled_at is not None:
        return sp.settlement.settled_at.date()
    return None


def group_value(sp: SettledPick, field: str) -> str:
    """String value of grouping ``field`` for one settled pick."""
    if field in TIME_BUCKETS:
        d = _pick_date(sp)
        if d is None:
            return "unknown"
        if field == "day":
            return d.isoformat()
        if field == "week":
            iso_year, iso_week, _ = d.isocalendar()
            return f"{iso_year}-W{iso_week:02d}"
        return f"{d.year}-{d.month:02d}"

    if field not in PICK_FIELDS:
        raise ValueError(
            f"Unknown group_by field {field!r}; "
            f"expected one of {PICK_FIELDS + TIME_BUCKETS}"
        )
    value = getattr(sp.pick, field)
    return str(value) if value is not None else "unknown"


def group_stats(picks: Sequence[SettledPick], key: Tuple[Tuple[str, str], ...] = ()) -> GroupStats:
    """Roll one group of settled picks into a GroupStats."""
    hits = misses = pushes = voids = 0
    edges: List[float] = []
    composites: List[float] = []
    profit = 0.0
    risked = 0

    for sp in picks:
        outcome = sp.outcome
        if outcome is Outcome.PENDING:
            continue
        if outcome is Outcome.VOID:
            voids += 1
            continue

        if outcome is Outcome.HIT:
            hits += 1
        elif outcome is Outcome.MISS:
            misses += 1
        else:
            pushes += 1

        pick = sp.pick
        edge = projection_edge(pick.line, pick.projection, pick.recommended_side)
        if edge is not None:
            edges.append(edge)
        if pick.composite_score is not None and not pick.is_blocked:
            composites.append(pick.composite_score)
        if pick.american_odds is not None:
            risked += 1
            profit += profit_units(outcome, pick.american_odds)

    return GroupStats(
        group_key=key,
        total_picks=hits + misses + pushes,
        hits=hits,
        misses=misses,
        pushes=pushes,
        voids=voids,
        hit_rate=_hit_rate(hits, misses),
        avg_edge=_rounded(_mean(edges)),
        roi=round(profit / risked, 4) if risked > 0 else None,
        avg_composite=_rounded(_mean(composites), 2),
    )


# ---------------------------------------------------------------------------
# aggregate
# ---------------------------------------------------------------------------

def aggregate(
    settled_picks: Iterable[SettledPick],
    group_by: Sequence[str] = (),
) -> List[GroupStats]:
    """
    Group settled picks and compute stats per group.

    With an empty ``group_by`` a single overall group is returned, even for
    an empty input (total_picks=0, hit_rate=None).  Otherwise one GroupStats
    per distinct key, sorted by key.
    """
    picks = list(settled_picks)
    fields = tuple(group_by)

    if not fields:
        return [group_stats(picks)]

    buckets: Dict[Tuple[str, ...], List[SettledPick]] = {}
    for sp in picks:
        values = tuple(group_value(sp, f) for f in fields)
        buckets.setdefault(values, []).append(sp)

    return [
        group_stats(buckets[values], tuple(zip(fields, values)))
        for values in sorted(buckets)
    ]


def filter_picks(
    settled_picks: Iterable[SettledPick],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
) -> List[SettledPick]:
    """Inclusive date-range and optional category filter."""
    selected = []
    for sp in settled_picks:
        d = _pick_date(sp)
        if start_date is not None and (d is None or d < start_date):
            continue
        if end_date is not None and (d is None or d > end_date):
            continue
        if category is not None and (sp.pick.category or "").lower() != category.lower():
            continue
        selected.append(sp)
    return selected


# ---------------------------------------------------------------------------
# run_backtest
# ---------------------------------------------------------------------------

def _replay(
    picks: List[SettledPick],
    config: ScoringConfig,
) -> Tuple[List[SettledPick], int, int, int]:
    """
    Re-score picks under ``config``.  Blocked picks are dropped and tallied
    by what they actually did, so a block rule can be judged on results.

    Returns (kept, blocked, blocked_that_missed, blocked_that_hit).
    """
    kept: List[SettledPick] = []
    blocked: List[SettledPick] = []

    for sp in picks:
        try:
            rescored = score_candidate(sp.pick, config)
        except NoSignalsError:
            logger.debug("Pick %s has no engine scores; kept as recorded", sp.pick.pick_id)
            (blocked if sp.pick.is_blocked else kept).append(sp)
            continue

        if rescored.is_blocked:
            blocked.append(sp)
            continue
        kept.append(replace(sp, pick=rescored))

    return (kept,) + _blocked_tally(blocked)


def _drop_recorded_blocks(
    picks: List[SettledPick],
) -> Tuple[List[SettledPick], int, int, int]:
    """Without a replay config, honour the block recorded when the pick was scored."""
    kept = [sp for sp in picks if not sp.pick.is_blocked]
    blocked = [sp for sp in picks if sp.pick.is_blocked]
    return (kept,) + _blocked_tally(blocked)


def _blocked_tally(blocked: List[SettledPick]) -> Tuple[int, int, int]:
    """(blocked, blocked_that_missed, blocked_that_hit)"""
    missed = sum(1 for sp in blocked if sp.outcome is Outcome.MISS)
    hit = sum(1 for sp in blocked if sp.outcome is Outcome.HIT)
    return len(blocked), missed, hit


def run_backtest(
    settled_picks: Iterable[SettledPick],
    *,
    run_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    group_by: Optional[Sequence[str]] = None,
    config: Optional[ScoringConfig] = None,
    baseline_run_id: Optional[str] = None,
) -> BacktestRun:
    """
    Replay a set of settled picks and produce a BacktestRun.

    Args:
        settled_picks:   Picks joined with their settlements.
        run_id:          Identifier assigned by the caller.
        start_date / end_date: Inclusive filter on the pick's analysis date.
        category:        Optional category filter.
        group_by:        Grouping fields; defaults to ``config.group_by``
                         when a config is given, else no grouping.
        config:          When given, every pick is re-scored with it first
                         (what-if replay of new weights or rules).  Without
                         it, picks recorded as blocked are dropped and
                         counted the same way.
        baseline_run_id: Weak reference to a prior run for comparison.
    """
    picks = filter_picks(settled_picks, start_date, end_date, category)
    considered = len(picks)

    if config is not None:
        picks, blocked, blocked_missed, blocked_hit = _replay(picks, config)
    else:
        picks, blocked, blocked_missed, blocked_hit = _drop_recorded_blocks(picks)

    fields = tuple(group_by) if group_by is not None else (
        config.group_by if config is not None else ()
    )

    overall = group_stats(picks)
    groups = tuple(aggregate(picks, fields)) if fields else ()

    logger.info(
        "Backtest %s: %d picks considered, %d blocked, W%d-L%d-P%d, hit rate %s",
        run_id, considered, blocked, overall.hits, overall.misses, overall.pushes,
        f"{overall.hit_rate:.1%}" if overall.hit_rate is not None else "n/a",
    )

    return BacktestRun(
        run_id=run_id,
        start_date=start_date,
        end_date=end_date,
        category=category,
        group_by=fields,
        config_snapshot=config.snapshot() if config is not None else {},
        overall=overall,
        groups=groups,
        picks_considered=considered,
        picks_blocked=blocked,
        blocked_that_missed=blocked_missed,
        blocked_that_hit=blocked_hit,
        baseline_run_id=baseline_run_id,
    )


# ---------------------------------------------------------------------------
# Run comparison
# ---------------------------------------------------------------------------

def _delta(current: Optional[float], baseline: Optional[float]) -> Optional[float]:
    if current is None or baseline is None:
        return None
    return round(current - baseline, 4)


def _stats_deltas(current: GroupStats, baseline: GroupStats) -> Dict[str, Optional[float]]:
    return {
        metric: _delta(getattr(current, metric), getattr(baseline, metric))
        for metric in COMPARED_METRICS
    }


def compare_runs(current: BacktestRun, baseline: BacktestRun) -> Dict:
    """
    Signed deltas (current - baseline) per metric, overall and per group.

    Groups present in only one run are listed under ``unmatched_groups``.
    A delta is None when either side's metric is None.
    """
    base_groups = {g.group_key: g for g in baseline.groups}
    cur_groups = {g.group_key: g for g in current.groups}

    group_deltas = []
    for key in sorted(cur_groups.keys() & base_groups.keys()):
        group_deltas.append({
            "group": {k: v for k, v in key},
            "deltas": _stats_deltas(cur_groups[key], base_groups[key]),
        })

    unmatched = sorted(cur_groups.keys() ^ base_groups.keys())

    return {
        "run_id": current.run_id,
        "baseline_run_id": baseline.run_id,
        "overall": _stats_deltas(current.overall, baseline.overall),
        "picks_blocked": current.picks_blocked - baseline.picks_blocked,
        "groups": group_deltas,
        "unmatched_groups": [{k: v for k, v in key} for key in unmatched],
    }


def compare_to_baseline(
    current: BacktestRun,
    runs: Mapping[str, BacktestRun],
    baseline_run_id: Optional[str] = None,
) -> Dict:
    """
    Look up the baseline by id (argument, else ``current.baseline_run_id``)
    and compare.

    Raises:
        UnknownBaselineError: if no id is given or the id is not in ``runs``.
    """
    run_id = baseline_run_id or current.baseline_run_id
    if run_id is None or run_id not in runs:
        raise UnknownBaselineError(str(run_id))
    return compare_runs(current, runs[run_id])


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

def calibration_table(
    settled_picks: Iterable[SettledPick],
    bins: Sequence[Tuple[float, float, str]] = _DEFAULT_CALIBRATION_BINS,
) -> Dict:
    """
    Composite score (read as a probability: score / 100) vs actual hit rate.

    Only decided, unblocked, scored picks are used.  Also reports the mean
    calibration error across populated bins and the Brier score.
    """
    buckets: Dict[str, List[int]] = {label: [] for _, _, label in bins}
    brier_components: List[float] = []

    for sp in settled_picks:
        pick = sp.pick
        if sp.outcome not in (Outcome.HIT, Outcome.MISS):
            continue
        if pick.composite_score is None or pick.is_blocked:
            continue
        hit = 1 if sp.outcome is Outcome.HIT else 0
        brier_components.append((pick.composite_score / 100.0 - hit) ** 2)
        for lo, hi, label in bins:
            if lo <= pick.composite_score < hi:
                buckets[label].append(hit)
                break

    rows = []
    errors = []
    for lo, hi, label in bins:
        outcomes = buckets[label]
        if not outcomes:
            continue
        predicted = (lo + min(hi, 100.0)) / 200.0
        actual = sum(outcomes) / len(outcomes)
        err = abs(predicted - actual)
        errors.append(err)
        rows.append({
            "bin": label,
            "predicted_prob": round(predicted, 3),
            "actual_hit_rate": round(actual, 4),
            "count": len(outcomes),
            "error": round(err, 4),
        })

    mean_error = _mean(errors)
    brier = _mean(brier_components)
    return {
        "calibration_buckets": rows,
        "mean_calibration_error": _rounded(mean_error),
        "brier_score": _rounded(brier),
    }
