"""
Signal aggregation: many engine scores in, one composite score out.

Each engine (sharp money, historical hit rate, fatigue, trap detection, …)
scores a pick independently.  The aggregator:

    1. normalises every raw score to 0–100 using the engine's scale
    2. takes the weighted average over engines that actually reported
       (a missing engine is excluded from numerator AND denominator)
    3. applies penalty rules in table order
         - first matching ``block`` rule  → composite = BLOCKED_SCORE
         - every matching ``penalize``    → composite -= amount × 100
    4. maps the composite to a confidence tier

Scoring is a pure function of (scores, config).  Persisting the result is
the caller's job.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from edge_engine.core.errors import NoSignalsError
from edge_engine.core.records import SIDE_OVER, SIDE_UNDER, PickCandidate
from edge_engine.core.scoring_config import (
    BLOCKED_SCORE,
    BLOCKED_TIER,
    SCORE_SCALE,
    PenaltyRule,
    ScoringConfig,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompositeScore:
    """Result of aggregating one pick's engine scores."""

    score: float
    tier: str
    contributing_engines: int
    blocked_by: Optional[str] = None
    penalties_applied: Tuple[str, ...] = ()

    @property
    def is_blocked(self) -> bool:
        return self.blocked_by is not None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _normalise(raw: float, scale: float) -> float:
    return max(0.0, min(SCORE_SCALE, raw / scale * SCORE_SCALE))


def _weighted_average(
    engine_scores: Mapping[str, Optional[float]],
    config: ScoringConfig,
) -> Tuple[float, int]:
    """Return (weighted mean, contributing engine count)."""
    numerator = 0.0
    denominator = 0.0
    contributing = 0

    # Sorted so float accumulation order (and therefore the result) never
    # depends on dict insertion order.
    for engine in sorted(engine_scores):
        raw = engine_scores[engine]
        if raw is None:
            continue
        ew = config.weight_for(engine)
        if ew.weight <= 0:
            continue
        numerator += _normalise(float(raw), ew.scale) * ew.weight
        denominator += ew.weight
        contributing += 1

    if contributing == 0:
        raise NoSignalsError(
            f"No engine contributed a score (engines seen: {sorted(engine_scores)})"
        )
    return numerator / denominator, contributing


def rule_matches(rule: PenaltyRule, candidate: PickCandidate) -> bool:
    """True when an active ``rule`` applies to ``candidate``."""
    if not rule.is_active:
        return False
    key = rule.pattern_key.strip().lower()
    kind = rule.pattern_type

    if kind == "subject":
        return candidate.subject_id.lower() == key
    if kind == "prop_type":
        return candidate.prop_type.lower() == key
    if kind == "side":
        return candidate.recommended_side.lower() == key
    if kind == "category":
        return (candidate.category or "").lower() == key
    if kind == "subject_prop":
        return f"{candidate.subject_id}|{candidate.prop_type}".lower() == key
    if kind == "engine":
        return any(
            name.lower() == key and score is not None
            for name, score in candidate.engine_scores.items()
        )
    return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def aggregate_scores(
    candidate: PickCandidate,
    config: ScoringConfig,
) -> CompositeScore:
    """
    Compute the composite score and tier for one candidate.

    Raises:
        NoSignalsError: if no engine with a positive weight reported.
    """
    composite, contributing = _weighted_average(candidate.engine_scores, config)

    penalties: List[str] = []
    for rule in config.penalty_rules:
        if not rule_matches(rule, candidate):
            continue
        if rule.severity == "block":
            logger.debug("Pick %s blocked by %s", candidate.pick_id, rule.description)
            return CompositeScore(
                score=BLOCKED_SCORE,
                tier=BLOCKED_TIER,
                contributing_engines=contributing,
                blocked_by=rule.description,
                penalties_applied=tuple(penalties),
            )
        composite -= rule.penalty_amount * SCORE_SCALE
        penalties.append(rule.description)

    composite = round(max(0.0, composite), 4)
    return CompositeScore(
        score=composite,
        tier=config.tier_for(composite),
        contributing_engines=contributing,
        penalties_applied=tuple(penalties),
    )


def score_candidate(candidate: PickCandidate, config: ScoringConfig) -> PickCandidate:
    """Return a copy of ``candidate`` with composite score and tier set."""
    result = aggregate_scores(candidate, config)
    return replace(
        candidate,
        composite_score=result.score,
        confidence_tier=result.tier,
        contributing_engines=result.contributing_engines,
        blocked_by=result.blocked_by,
        penalties_applied=result.penalties_applied,
    )


def score_batch(
    candidates: Iterable[PickCandidate],
    config: ScoringConfig,
) -> Tuple[List[PickCandidate], List[Dict]]:
    """
    Score a batch.  Candidates with no signals are reported, not raised,
    so one empty pick does not sink the rest of the slate.

    Returns:
        (scored candidates in input order, list of {pick_id, error})
    """
    scored: List[PickCandidate] = []
    rejected: List[Dict] = []
    for candidate in candidates:
        try:
            scored.append(score_candidate(candidate, config))
        except NoSignalsError as exc:
            rejected.append({"pick_id": candidate.pick_id, "error": str(exc)})

    blocked = sum(1 for c in scored if c.is_blocked)
    logger.info(
        "Scored %d candidates (%d blocked, %d without signals)",
        len(scored), blocked, len(rejected),
    )
    return scored, rejected


def ranking_key(candidate: PickCandidate) -> Tuple[float, int, str]:
    """
    Sort key, best first when used with ``sorted(...)``.

    Higher composite wins; on equal composites the candidate corroborated by
    more engines wins; pick_id makes the order total.
    """
    score = candidate.composite_score if candidate.composite_score is not None else BLOCKED_SCORE
    return (-score, -candidate.contributing_engines, candidate.pick_id)


def rank_candidates(candidates: Iterable[PickCandidate]) -> List[PickCandidate]:
    """All candidates ordered best first (see :func:`ranking_key`)."""
    return sorted(candidates, key=ranking_key)


def best_per_market(candidates: Iterable[PickCandidate]) -> List[PickCandidate]:
    """
    Keep one candidate per subject + prop_type + side, ranked best first.

    When two engines propose the same market the higher composite survives,
    and on a tie the one with more contributing engines.
    """
    best: Dict[Tuple[str, str, str], PickCandidate] = {}
    for candidate in rank_candidates(candidates):
        best.setdefault(candidate.market_key, candidate)
    return rank_candidates(best.values())


def projection_edge(line: float, projection: Optional[float], side: str) -> Optional[float]:
    """
    Edge of a projection over the line, oriented to the side taken.

        over  → projection - line
        under → line - projection
    """
    if projection is None:
        return None
    side = side.lower()
    if side == SIDE_OVER:
        return projection - line
    if side == SIDE_UNDER:
        return line - projection
    raise ValueError(f"Unknown side {side!r}; expected 'over' or 'under'")
