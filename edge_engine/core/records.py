"""Data-transfer objects flowing between the scoring services.

Every record here is a frozen dataclass.  Services never mutate a record in
place; they return a new copy via :func:`dataclasses.replace`.  This keeps the
core free of shared mutable state, so independent batches can be processed
concurrently without locks.

Ownership
---------
* :class:`PickCandidate` belongs to the engine that proposed it.
* :class:`SettlementRecord` and :class:`BacktestRun` point at picks by
  ``pick_id`` only.  A run may name a ``baseline_run_id``; that is a weak
  reference resolved by the caller.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping

from edge_engine.core.odds_math import implied_prob, validate_american


class Outcome(str, Enum):
    """Settlement state of a pick.  Only ``PENDING`` is non-terminal."""

    PENDING = "pending"
    HIT = "hit"
    MISS = "miss"
    PUSH = "push"
    VOID = "void"

    @property
    def is_terminal(self) -> bool:
        return self is not Outcome.PENDING


#: Sides a prop pick can take.
SIDE_OVER = "over"
SIDE_UNDER = "under"


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OddsQuote:
    """A single bookmaker price for one side of a market."""

    side: str
    american_odds: int
    bookmaker: str = ""
    observed_at: datetime | None = None

    def __post_init__(self) -> None:
        validate_american(self.american_odds)

    @property
    def implied_probability(self) -> float:
        return implied_prob(self.american_odds)


# ---------------------------------------------------------------------------
# Picks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PickCandidate:
    """A proposed pick and, once scored, its composite score.

    Attributes:
        pick_id: Stable identifier assigned by the proposing engine.
        subject_id: Player, team or event the pick is about.
        prop_type: Market, e.g. ``"points"`` or ``"rebounds"``.
        line: The number the pick is graded against.
        recommended_side: ``"over"`` or ``"under"``.
        engine_scores: Raw score per engine.  ``None`` means the engine ran
            but had no opinion; it is treated exactly like a missing engine.
        category: Grouping label used by backtests and penalty rules.
        american_odds: Price taken.  Used for ROI and parlay pricing.
        projection: Projected stat value, used to derive the edge.
        analysis_date: Date the pick was generated (time buckets).
        composite_score: Set by the signal aggregator.
        confidence_tier: Set by the signal aggregator.
        contributing_engines: Engines that actually supplied a score.
        blocked_by: Description of the first block rule that matched.
        penalties_applied: Descriptions of every penalize rule that matched.
    """

    pick_id: str
    subject_id: str
    prop_type: str
    line: float
    recommended_side: str
    engine_scores: Mapping[str, float | None] = field(default_factory=dict)
    category: str | None = None
    american_odds: int | None = None
    projection: float | None = None
    analysis_date: date | None = None
    composite_score: float | None = None
    confidence_tier: str | None = None
    contributing_engines: int = 0
    blocked_by: str | None = None
    penalties_applied: tuple[str, ...] = ()

    @property
    def is_scored(self) -> bool:
        return self.composite_score is not None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_by is not None

    @property
    def market_key(self) -> tuple[str, str, str]:
        """(subject, prop_type, side): candidates sharing this key compete."""
        return (
            self.subject_id.lower(),
            self.prop_type.lower(),
            self.recommended_side.lower(),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["engine_scores"] = dict(self.engine_scores)
        data["penalties_applied"] = list(self.penalties_applied)
        data["analysis_date"] = (
            self.analysis_date.isoformat() if self.analysis_date else None
        )
        return data


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SettlementRecord:
    """Outcome of a single pick.  Moves from pending to a terminal state once."""

    pick_id: str
    outcome: Outcome = Outcome.PENDING
    actual_value: float | None = None
    settled_at: datetime | None = None
    profit_units: float | None = None
    clv_direction: str | None = None
    clv_magnitude: float | None = None
    void_reason: str | None = None

    @classmethod
    def pending(cls, pick_id: str) -> SettlementRecord:
        return cls(pick_id=pick_id)

    @property
    def is_terminal(self) -> bool:
        return self.outcome.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "pick_id": self.pick_id,
            "outcome": self.outcome.value,
            "actual_value": self.actual_value,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
            "profit_units": self.profit_units,
            "clv_direction": self.clv_direction,
            "clv_magnitude": self.clv_magnitude,
            "void_reason": self.void_reason,
        }


@dataclass(frozen=True)
class SettledPick:
    """A pick joined with its settlement, the unit a backtest consumes."""

    pick: PickCandidate
    settlement: SettlementRecord

    @property
    def outcome(self) -> Outcome:
        return self.settlement.outcome


# ---------------------------------------------------------------------------
# Backtest output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GroupStats:
    """Aggregate accuracy for one group of settled picks.

    ``hit_rate`` excludes pushes from the denominator and is ``None`` when
    the group has no decided (hit or miss) picks.  ``roi`` is ``None`` when
    nothing in the group carried a price.
    """

    group_key: tuple[tuple[str, str], ...]
    total_picks: int = 0
    hits: int = 0
    misses: int = 0
    pushes: int = 0
    voids: int = 0
    hit_rate: float | None = None
    avg_edge: float | None = None
    roi: float | None = None
    avg_composite: float | None = None

    @property
    def label(self) -> str:
        if not self.group_key:
            return "overall"
        return ", ".join(f"{k}={v}" for k, v in self.group_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": {k: v for k, v in self.group_key},
            "total_picks": self.total_picks,
            "hits": self.hits,
            "misses": self.misses,
            "pushes": self.pushes,
            "voids": self.voids,
            "hit_rate": self.hit_rate,
            "avg_edge": self.avg_edge,
            "roi": self.roi,
            "avg_composite": self.avg_composite,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GroupStats:
        return cls(
            group_key=tuple((k, v) for k, v in (data.get("group") or {}).items()),
            total_picks=data.get("total_picks", 0),
            hits=data.get("hits", 0),
            misses=data.get("misses", 0),
            pushes=data.get("pushes", 0),
            voids=data.get("voids", 0),
            hit_rate=data.get("hit_rate"),
            avg_edge=data.get("avg_edge"),
            roi=data.get("roi"),
            avg_composite=data.get("avg_composite"),
        )


@dataclass(frozen=True)
class BacktestRun:
    """Immutable result of one backtest invocation."""

    run_id: str
    start_date: date | None
    end_date: date | None
    overall: GroupStats
    groups: tuple[GroupStats, ...] = ()
    group_by: tuple[str, ...] = ()
    category: str | None = None
    config_snapshot: Mapping[str, Any] = field(default_factory=dict)
    picks_considered: int = 0
    picks_blocked: int = 0
    blocked_that_missed: int = 0
    blocked_that_hit: int = 0
    baseline_run_id: str | None = None

    @property
    def legs_hit(self) -> int:
        return self.overall.hits

    @property
    def legs_missed(self) -> int:
        return self.overall.misses

    @property
    def legs_pushed(self) -> int:
        return self.overall.pushes

    @property
    def win_rate(self) -> float | None:
        return self.overall.hit_rate

    @property
    def blocking_effectiveness(self) -> float | None:
        """Share of blocked, decided picks that would have missed."""
        decided = self.blocked_that_missed + self.blocked_that_hit
        return round(self.blocked_that_missed / decided, 4) if decided else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "category": self.category,
            "group_by": list(self.group_by),
            "config_snapshot": dict(self.config_snapshot),
            "overall": self.overall.to_dict(),
            "groups": [g.to_dict() for g in self.groups],
            "picks_considered": self.picks_considered,
            "picks_blocked": self.picks_blocked,
            "blocked_that_missed": self.blocked_that_missed,
            "blocked_that_hit": self.blocked_that_hit,
            "blocking_effectiveness": self.blocking_effectiveness,
            "baseline_run_id": self.baseline_run_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BacktestRun:
        def _date(value: str | None) -> date | None:
            return date.fromisoformat(value) if value else None

        return cls(
            run_id=data["run_id"],
            start_date=_date(data.get("start_date")),
            end_date=_date(data.get("end_date")),
            category=data.get("category"),
            group_by=tuple(data.get("group_by") or ()),
            config_snapshot=data.get("config_snapshot") or {},
            overall=GroupStats.from_dict(data.get("overall") or {}),
            groups=tuple(GroupStats.from_dict(g) for g in data.get("groups") or ()),
            picks_considered=data.get("picks_considered", 0),
            picks_blocked=data.get("picks_blocked", 0),
            blocked_that_missed=data.get("blocked_that_missed", 0),
            blocked_that_hit=data.get("blocked_that_hit", 0),
            baseline_run_id=data.get("baseline_run_id"),
        )
