"""Validation errors raised by the scoring core.

All of these are local, synchronous failures.  Nothing in the core retries;
callers decide whether a failure is worth retrying.
"""

from __future__ import annotations


class EdgeEngineError(Exception):
    """Base class for every error raised by the scoring core."""


class InvalidOddsError(EdgeEngineError, ValueError):
    """Odds value cannot be represented (zero, |american| < 100, decimal ≤ 1)."""


class EmptyParlayError(EdgeEngineError, ValueError):
    """A parlay was priced with no legs."""


class NoSignalsError(EdgeEngineError, ValueError):
    """No engine contributed a score to a pick candidate."""


class AlreadySettledError(EdgeEngineError):
    """Settlement attempted on a pick whose outcome is already terminal."""

    def __init__(self, pick_id: str, outcome: str) -> None:
        self.pick_id = pick_id
        self.outcome = outcome
        super().__init__(
            f"Pick {pick_id!r} is already settled as {outcome!r}; "
            "terminal outcomes cannot be changed."
        )


class UnknownBaselineError(EdgeEngineError, LookupError):
    """A backtest comparison named a baseline run that does not exist."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Baseline backtest run {run_id!r} not found")
