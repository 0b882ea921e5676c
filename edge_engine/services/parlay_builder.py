"""
Parlay suggestion builder.

Assembles one parlay ticket from a slate of scored pick candidates.
Parlays compound variance: only the strongest, uncorrelated legs qualify.

Leg selection:
    1. drop blocked and below-tier candidates
    2. keep the best candidate per market (subject + prop + side)
    3. walk the ranking best first; skip a leg whose subject is already on
       the ticket (same-player legs are correlated, opposite sides conflict)
    4. stop at max_legs
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from edge_engine.core.odds_math import (
    DEFAULT_LEG_ODDS,
    combine_parlay_odds,
    implied_prob,
    parlay_decimal_odds,
)
from edge_engine.core.records import PickCandidate
from edge_engine.core.scoring_config import ScoringConfig
from edge_engine.services.signals import best_per_market

logger = logging.getLogger(__name__)

# Fewer legs than this is a straight bet, not a parlay
MIN_LEGS = 2


@dataclass(frozen=True)
class ParlayTicket:
    legs: Tuple[PickCandidate, ...]
    american_odds: int
    decimal_odds: float
    stake: float
    payout: float
    implied_prob: float     # product of leg implied probs (independence assumed)

    @property
    def num_legs(self) -> int:
        return len(self.legs)

    @property
    def leg_summary(self) -> str:
        return " + ".join(
            f"{leg.subject_id} {leg.recommended_side} {leg.line:g} {leg.prop_type}"
            for leg in self.legs
        )

    def to_dict(self) -> Dict:
        return {
            "legs": [leg.to_dict() for leg in self.legs],
            "num_legs": self.num_legs,
            "american_odds": self.american_odds,
            "decimal_odds": round(self.decimal_odds, 4),
            "stake": self.stake,
            "payout": round(self.payout, 2),
            "implied_prob": round(self.implied_prob, 5),
            "leg_summary": self.leg_summary,
        }


def _leg_odds(candidate: PickCandidate) -> int:
    return candidate.american_odds if candidate.american_odds is not None else DEFAULT_LEG_ODDS


def select_legs(
    candidates: Iterable[PickCandidate],
    config: ScoringConfig,
    max_legs: int = 3,
    min_tier: str = "STANDARD",
) -> List[PickCandidate]:
    """Pick up to ``max_legs`` qualifying legs, best first."""
    floor = config.tier_rank(min_tier)
    if floor < 0:
        known = [t for t, _ in config.tier_thresholds] + [config.floor_tier]
        raise ValueError(f"Unknown min_tier {min_tier!r}; expected one of {known}")
    qualified = [
        c for c in candidates
        if c.is_scored and not c.is_blocked and config.tier_rank(c.confidence_tier) >= floor
    ]

    legs: List[PickCandidate] = []
    used_subjects: set = set()
    for candidate in best_per_market(qualified):
        subject = candidate.subject_id.lower()
        if subject in used_subjects:
            continue
        legs.append(candidate)
        used_subjects.add(subject)
        if len(legs) >= max_legs:
            break
    return legs


def price_ticket(legs: List[PickCandidate], stake: float = 1.0) -> ParlayTicket:
    """Price an explicit set of legs.  Raises EmptyParlayError on no legs."""
    prices = [_leg_odds(leg) for leg in legs]
    decimal_odds = parlay_decimal_odds(prices)
    joint = 1.0
    for price in prices:
        joint *= implied_prob(price)
    return ParlayTicket(
        legs=tuple(legs),
        american_odds=combine_parlay_odds(prices),
        decimal_odds=decimal_odds,
        stake=stake,
        # Priced off the exact product, not the rounded American figure
        payout=stake * decimal_odds,
        implied_prob=joint,
    )


def build_parlay(
    candidates: Iterable[PickCandidate],
    config: ScoringConfig,
    max_legs: int = 3,
    min_tier: str = "STANDARD",
    stake: float = 1.0,
) -> Optional[ParlayTicket]:
    """
    Build the best parlay from a scored slate.

    Returns None when fewer than two legs qualify.
    """
    if max_legs < MIN_LEGS:
        raise ValueError(f"max_legs must be at least {MIN_LEGS}, got {max_legs}")

    candidates = list(candidates)
    legs = select_legs(candidates, config, max_legs=max_legs, min_tier=min_tier)
    if len(legs) < MIN_LEGS:
        logger.info(
            "Not enough qualified legs for a parlay (need %d, have %d of %d candidates)",
            MIN_LEGS, len(legs), len(candidates),
        )
        return None

    ticket = price_ticket(legs, stake=stake)
    logger.info(
        "Built %d-leg parlay @ %+d: %s",
        ticket.num_legs, ticket.american_odds, ticket.leg_summary,
    )
    return ticket
