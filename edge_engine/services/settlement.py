"""
Pick settlement: outcome classification and the pending → terminal transition.

State machine per pick::

    pending ──► hit | miss | push      (value comparison)
    pending ──► void                   (external cancellation only)

Terminal states never change.  Any attempt raises AlreadySettledError; the
caller's persistence layer is responsible for enforcing the same rule across
concurrent writers (see repository.record_settlement).
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from edge_engine.core.errors import AlreadySettledError
from edge_engine.core.odds_math import american_to_decimal
from edge_engine.core.records import (
    SIDE_OVER,
    SIDE_UNDER,
    Outcome,
    PickCandidate,
    SettlementRecord,
)
from edge_engine.services.clv import CLVResult, closing_line_value

logger = logging.getLogger(__name__)

# Stat lines are published to one decimal place; anything closer is a tie.
_PUSH_TOL = 1e-9


# ---------------------------------------------------------------------------
# Classification (pure functions)
# ---------------------------------------------------------------------------

def classify(line: float, actual_value: float, side: str) -> Outcome:
    """
    Grade an over/under pick against the observed value.

        actual == line                       →  push
        over  and actual > line              →  hit
        under and actual < line              →  hit
        otherwise                            →  miss

    Never returns VOID; cancellations are declared, not derived.
    """
    side = side.lower()
    if side not in (SIDE_OVER, SIDE_UNDER):
        raise ValueError(f"Unknown side {side!r}; expected 'over' or 'under'")

    if abs(actual_value - line) < _PUSH_TOL:
        return Outcome.PUSH
    if side == SIDE_OVER:
        return Outcome.HIT if actual_value > line else Outcome.MISS
    return Outcome.HIT if actual_value < line else Outcome.MISS


def profit_units(outcome: Outcome, american_odds: Optional[int]) -> Optional[float]:
    """
    Profit per unit staked.

        hit   →  decimal_odds - 1
        miss  →  -1
        push / void → 0 (stake returned)

    None for a hit or miss with no recorded price, or a pending pick.
    """
    if outcome in (Outcome.PUSH, Outcome.VOID):
        return 0.0
    if outcome is Outcome.PENDING or american_odds is None:
        return None
    if outcome is Outcome.MISS:
        return -1.0
    return round(american_to_decimal(american_odds) - 1.0, 4)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def _require_pending(record: SettlementRecord) -> None:
    if record.is_terminal:
        raise AlreadySettledError(record.pick_id, record.outcome.value)


def settle_pick(
    record: SettlementRecord,
    *,
    line: float,
    side: str,
    actual_value: float,
    settled_at: datetime,
    american_odds: Optional[int] = None,
    clv: Optional[CLVResult] = None,
) -> SettlementRecord:
    """
    Move a pending record to hit / miss / push.

    Raises:
        AlreadySettledError: if ``record`` is already terminal.
    """
    _require_pending(record)
    outcome = classify(line, actual_value, side)
    settled = replace(
        record,
        outcome=outcome,
        actual_value=actual_value,
        settled_at=settled_at,
        profit_units=profit_units(outcome, american_odds),
        clv_direction=clv.direction if clv else None,
        clv_magnitude=round(clv.magnitude, 5) if clv else None,
    )
    logger.info(
        "Pick %s settled: %s (line %.1f %s, actual %.1f)",
        record.pick_id, outcome.value, line, side, actual_value,
    )
    return settled


def void_pick(
    record: SettlementRecord,
    *,
    reason: str,
    settled_at: datetime,
) -> SettlementRecord:
    """
    Declare a pending pick void (postponed game, player scratched, …).

    Raises:
        AlreadySettledError: if ``record`` is already terminal.
    """
    _require_pending(record)
    logger.info("Pick %s voided: %s", record.pick_id, reason)
    return replace(
        record,
        outcome=Outcome.VOID,
        settled_at=settled_at,
        profit_units=0.0,
        void_reason=reason,
    )


def settle_candidate(
    candidate: PickCandidate,
    record: SettlementRecord,
    *,
    actual_value: Optional[float],
    settled_at: datetime,
    closing_odds: Optional[int] = None,
    closing_odds_other_side: Optional[int] = None,
    opening_odds_other_side: Optional[int] = None,
    void_reason: Optional[str] = None,
) -> SettlementRecord:
    """
    Settle using the candidate's own line, side and price.

    A ``void_reason`` (or a missing ``actual_value``) voids the pick.  CLV is
    computed when the pick carries a price and a ``closing_odds`` is given.
    """
    if record.pick_id != candidate.pick_id:
        raise ValueError(
            f"Settlement for {record.pick_id!r} does not belong to pick {candidate.pick_id!r}"
        )
    _require_pending(record)
    if void_reason is not None or actual_value is None:
        return void_pick(
            record,
            reason=void_reason or "no result reported",
            settled_at=settled_at,
        )

    outcome = classify(candidate.line, actual_value, candidate.recommended_side)
    clv = None
    if closing_odds is not None and candidate.american_odds is not None:
        clv = closing_line_value(
            candidate.american_odds,
            closing_odds,
            side_won=outcome is Outcome.HIT,
            opening_odds_other_side=opening_odds_other_side,
            closing_odds_other_side=closing_odds_other_side,
        )

    return settle_pick(
        record,
        line=candidate.line,
        side=candidate.recommended_side,
        actual_value=actual_value,
        settled_at=settled_at,
        american_odds=candidate.american_odds,
        clv=clv,
    )
