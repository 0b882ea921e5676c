"""
Closing Line Value (CLV) calculation service.

CLV is the primary edge-validation metric in sports betting.
Positive CLV means the price taken at pick time was better than where the
market settled (the closing line).  It is correlated with long-term
profitability and is measured independently of whether the bet won.

The comparison is made in implied-probability space on the side taken:

    clv_prob = closing_implied - opening_implied

A pick taken at +120 (45.5%) that closes at -105 (51.2%) has clv_prob of
+5.7 points: the market moved toward our side after we bet it.

When both sides of the market are known at open and close, the vig is
removed proportionally first so that a juice change on the other side does
not register as movement on ours.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from edge_engine.core.odds_math import implied_prob, remove_vig_proportional

logger = logging.getLogger(__name__)

DIRECTION_POSITIVE = "positive"
DIRECTION_NEGATIVE = "negative"
DIRECTION_NEUTRAL = "neutral"

# Float noise floor; two identical prices must read as neutral.
_EPS = 1e-9


# ---------------------------------------------------------------------------
# Data container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CLVResult:
    """All CLV metrics for a single pick."""

    direction: str          # positive | negative | neutral
    magnitude: float        # |clv_prob|
    clv_prob: float         # closing - opening implied prob (positive = good)

    opening_prob: float     # implied prob of our side at pick time
    closing_prob: float     # implied prob of our side at close
    opening_odds: int
    closing_odds: int
    no_vig: bool            # True when both market sides were used
    side_won: Optional[bool] = None

    def is_positive(self) -> bool:
        """True when we beat the closing line."""
        return self.direction == DIRECTION_POSITIVE

    def grade(self) -> str:
        """Human-readable CLV grade for display."""
        if self.clv_prob >= 0.03:
            return "STRONG+"
        elif self.clv_prob >= 0.01:
            return "POSITIVE"
        elif self.clv_prob >= -0.01:
            return "NEUTRAL"
        elif self.clv_prob >= -0.03:
            return "NEGATIVE"
        return "STRONG-"

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "magnitude": round(self.magnitude, 5),
            "clv_prob": round(self.clv_prob, 5),
            "opening_prob": round(self.opening_prob, 5),
            "closing_prob": round(self.closing_prob, 5),
            "opening_odds": self.opening_odds,
            "closing_odds": self.closing_odds,
            "no_vig": self.no_vig,
            "side_won": self.side_won,
            "grade": self.grade(),
        }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def closing_line_value(
    opening_odds: int,
    closing_odds: int,
    side_won: Optional[bool] = None,
    *,
    opening_odds_other_side: Optional[int] = None,
    closing_odds_other_side: Optional[int] = None,
    neutral_band: float = 0.0,
) -> CLVResult:
    """
    Compare the price taken against the closing price on the same side.

    Args:
        opening_odds:  American odds on our side when the pick was made.
        closing_odds:  American odds on our side at close.
        side_won:      Recorded for reporting only.  It never changes the
                       direction; CLV is independent of the result.
        opening_odds_other_side / closing_odds_other_side:
                       When both are given, probabilities are de-vigged
                       before comparison.
        neutral_band:  Absolute probability shift treated as no movement.

    Raises:
        InvalidOddsError: if any price is 0 or |price| < 100.
    """
    no_vig = opening_odds_other_side is not None and closing_odds_other_side is not None

    if no_vig:
        opening_prob = remove_vig_proportional(opening_odds, opening_odds_other_side)[0]
        closing_prob = remove_vig_proportional(closing_odds, closing_odds_other_side)[0]
    else:
        opening_prob = implied_prob(opening_odds)
        closing_prob = implied_prob(closing_odds)

    clv_prob = closing_prob - opening_prob
    threshold = max(neutral_band, _EPS)

    if clv_prob > threshold:
        direction = DIRECTION_POSITIVE
    elif clv_prob < -threshold:
        direction = DIRECTION_NEGATIVE
    else:
        direction = DIRECTION_NEUTRAL

    logger.debug(
        "CLV %+d → %+d: %.4f → %.4f (%s, no_vig=%s)",
        opening_odds, closing_odds, opening_prob, closing_prob, direction, no_vig,
    )

    return CLVResult(
        direction=direction,
        magnitude=abs(clv_prob),
        clv_prob=clv_prob,
        opening_prob=opening_prob,
        closing_prob=closing_prob,
        opening_odds=int(opening_odds),
        closing_odds=int(closing_odds),
        no_vig=no_vig,
        side_won=side_won,
    )
