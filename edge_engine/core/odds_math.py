"""Fundamental odds mathematics: the single source of truth.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services or models.

The pillars exposed are:

1. **Odds conversion**: American ↔ decimal ↔ implied probability.
2. **Parlay pricing**: combine leg prices and compute the total return.
3. **Vig removal**: proportional normalisation across an N-way market.

Design decisions
----------------
* All functions accept ``int`` American odds because sportsbook feeds
  return integers.  Floats are tolerated so callers holding a DB ``Float``
  column do not need to cast.
* Values with ``|odds| < 100`` are rejected.  They are not representable
  American prices and would break the decimal → American round trip
  (``+50`` would come back as ``-200``).
* ``-100`` and ``+100`` are the same price (even money); the round trip
  normalises both to ``+100``.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

from typing import Final, Iterable, Sequence

from edge_engine.core.errors import EmptyParlayError, InvalidOddsError

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: American-odds magnitude floor.  Feeds never return |odds| < 100;
#: values below this indicate a data error.
_MIN_ODDS_MAGNITUDE: Final[int] = 100

#: Price assumed for a leg with no quoted odds (standard pick'em juice).
DEFAULT_LEG_ODDS: Final[int] = -110


# ---------------------------------------------------------------------------
# Odds conversion
# ---------------------------------------------------------------------------


def validate_american(odds: int | float) -> None:
    """Raise :class:`InvalidOddsError` unless ``odds`` is a real American price."""
    if odds == 0:
        raise InvalidOddsError("American odds cannot be 0")
    if abs(odds) < _MIN_ODDS_MAGNITUDE:
        raise InvalidOddsError(
            f"Invalid American odds {odds!r}: magnitude must be ≥ 100. "
            "Check upstream odds parsing for data errors."
        )


def american_to_decimal(odds: int | float) -> float:
    """Convert American odds to decimal (European) format.

    Decimal odds represent the total payout per unit staked, **including**
    the return of the stake itself.  Examples::

        american_to_decimal(-110) → 1.9091   (risk 110 to win 100)
        american_to_decimal(+150) → 2.5000   (risk 100 to win 150)

    Raises:
        InvalidOddsError: If ``odds`` is 0 or ``|odds| < 100``.
    """
    validate_american(odds)
    if odds > 0:
        return odds / 100.0 + 1.0
    return 100.0 / abs(odds) + 1.0


def decimal_to_american(decimal_odds: float) -> int:
    """Convert decimal odds to the nearest American integer.

    Inverse of :func:`american_to_decimal`.  Values ≥ 2.0 come back positive
    (underdog); values below 2.0 come back negative (favourite).

    Raises:
        InvalidOddsError: If ``decimal_odds ≤ 1.0`` (no payout above stake).
    """
    if decimal_odds <= 1.0:
        raise InvalidOddsError(
            f"Decimal odds {decimal_odds!r} must be > 1.0 (probability < 1)."
        )
    if decimal_odds >= 2.0:
        return round((decimal_odds - 1.0) * 100)
    return round(-100.0 / (decimal_odds - 1.0))


def implied_prob(odds: int | float) -> float:
    """Raw implied probability from American odds (vig-inclusive).

    This is the bookmaker's *stated* single-side probability.  Two-outcome
    markets sum to > 1.0 because of the margin; use
    :func:`remove_vig_proportional` for fair probabilities.

    Examples::

        implied_prob(-110) → 0.5238
        implied_prob(+150) → 0.4000
    """
    return 1.0 / american_to_decimal(odds)


# ---------------------------------------------------------------------------
# Parlay pricing
# ---------------------------------------------------------------------------


def parlay_decimal_odds(legs: Sequence[int | float]) -> float:
    """Product of every leg's decimal odds.

    Raises:
        EmptyParlayError: If ``legs`` is empty.
    """
    if not legs:
        raise EmptyParlayError("Cannot price a parlay with zero legs")
    product = 1.0
    for leg in legs:
        product *= american_to_decimal(leg)
    return product


def combine_parlay_odds(legs: Sequence[int | float]) -> int:
    """Combine leg prices into a single American price.

    Multiplication is commutative, so leg order never changes the result::

        combine_parlay_odds([-110, -110]) → +264
    """
    return decimal_to_american(parlay_decimal_odds(legs))


def compute_payout(stake: float, american_odds: int | float) -> float:
    """Total return (stake included) of a winning bet.

    Examples::

        compute_payout(100, +150) → 250.0
        compute_payout(100, -150) → 166.67
    """
    return stake * american_to_decimal(american_odds)


# ---------------------------------------------------------------------------
# Vig removal
# ---------------------------------------------------------------------------


def remove_vig_proportional(*odds: int | float) -> tuple[float, ...]:
    """Fair probabilities by dividing each raw implied probability by the overround.

    Works for any number of mutually exclusive outcomes (two-way props,
    three-way soccer lines).  Proportional normalisation leaves the
    favourite-longshot bias intact; it is adequate for closing-line
    comparisons where both prices are treated the same way.

    Raises:
        ValueError: When fewer than two prices are given, since a single
            side has no overround.
    """
    if len(odds) < 2:
        raise ValueError("Vig removal needs at least two sides of a market")
    raw = [implied_prob(o) for o in odds]
    overround = sum(raw)
    return tuple(p / overround for p in raw)


def overround(odds: Iterable[int | float]) -> float:
    """Sum of raw implied probabilities (1.0 = no margin)."""
    return sum(implied_prob(o) for o in odds)
