"""
Pydantic request/response schemas for the edge scoring API.

Request models validate at the boundary and convert into the frozen core
records; the core never sees a pydantic object.
"""

from __future__ import annotations

import math
from typing import Literal, Optional
from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

from edge_engine.core.records import PickCandidate


def _check_american(v: Optional[int]) -> Optional[int]:
    if v is None:
        return v
    if v == 0:
        raise ValueError("American odds cannot be 0")
    if -100 < v < 100:
        raise ValueError(
            f"odds={v} is not valid American odds. Must be >= +100 or <= -100."
        )
    return v


# ---------------------------------------------------------------------------
# Odds
# ---------------------------------------------------------------------------

class OddsConvertRequest(BaseModel):
    """Payload for POST /api/odds/convert.  Exactly one of the two is required."""

    american_odds: Optional[int] = Field(None, description="e.g. -110 or +150")
    decimal_odds: Optional[float] = Field(None, gt=1.0, description="e.g. 1.909")
    stake: float = Field(100.0, gt=0, description="Stake for the payout figure")

    @field_validator("american_odds")
    @classmethod
    def validate_american_odds(cls, v: Optional[int]) -> Optional[int]:
        return _check_american(v)


class OddsConvertResponse(BaseModel):
    american_odds: int
    decimal_odds: float
    implied_prob: float
    payout: float


class ParlayPriceRequest(BaseModel):
    """Payload for POST /api/parlay/price."""

    legs: list[int] = Field(..., description="American odds per leg")
    stake: float = Field(1.0, gt=0)

    @field_validator("legs")
    @classmethod
    def validate_legs(cls, v: list[int]) -> list[int]:
        for leg in v:
            _check_american(leg)
        return v

    model_config = {
        "json_schema_extra": {"example": {"legs": [-110, -110], "stake": 100}}
    }


class ParlayPriceResponse(BaseModel):
    num_legs: int
    american_odds: int
    decimal_odds: float
    implied_prob: float
    stake: float
    payout: float


# ---------------------------------------------------------------------------
# Picks
# ---------------------------------------------------------------------------

class PickCandidateIn(BaseModel):
    """One candidate as proposed by an upstream engine."""

    pick_id: str = Field(..., min_length=1, max_length=120)
    subject_id: str = Field(..., min_length=1, max_length=120)
    prop_type: str = Field(..., min_length=1, max_length=60)
    line: float
    recommended_side: Literal["over", "under"]
    engine_scores: dict[str, Optional[float]] = Field(default_factory=dict)
    category: Optional[str] = Field(None, max_length=60)
    american_odds: Optional[int] = None
    projection: Optional[float] = None
    analysis_date: Optional[date] = None

    @field_validator("engine_scores")
    @classmethod
    def validate_engine_scores(cls, v: dict[str, Optional[float]]) -> dict[str, Optional[float]]:
        for engine, score in v.items():
            if score is not None and not math.isfinite(score):
                raise ValueError(f"engine score for {engine!r} must be finite, got {score}")
        return v

    @field_validator("american_odds")
    @classmethod
    def validate_american_odds(cls, v: Optional[int]) -> Optional[int]:
        return _check_american(v)

    def to_candidate(self) -> PickCandidate:
        return PickCandidate(
            pick_id=self.pick_id,
            subject_id=self.subject_id,
            prop_type=self.prop_type,
            line=self.line,
            recommended_side=self.recommended_side,
            engine_scores=dict(self.engine_scores),
            category=self.category,
            american_odds=self.american_odds,
            projection=self.projection,
            analysis_date=self.analysis_date,
        )

    model_config = {
        "json_schema_extra": {
            "example": {
                "pick_id": "2024-11-02:jokic:rebounds:over",
                "subject_id": "jokic",
                "prop_type": "rebounds",
                "line": 11.5,
                "recommended_side": "over",
                "engine_scores": {"sharp": 80, "hitrate": 60},
                "category": "big_rebounds",
                "american_odds": -115,
                "projection": 13.1,
                "analysis_date": "2024-11-02",
            }
        }
    }


class ScoreBatchRequest(BaseModel):
    """Payload for POST /api/picks/score."""

    candidates: list[PickCandidateIn] = Field(..., min_length=1)
    persist: bool = Field(False, description="Store scored picks with a pending settlement")


class ScoredPick(BaseModel):
    pick_id: str
    subject_id: str
    prop_type: str
    line: float
    recommended_side: str
    category: Optional[str]
    american_odds: Optional[int]
    composite_score: Optional[float]
    confidence_tier: Optional[str]
    contributing_engines: int
    blocked_by: Optional[str]
    penalties_applied: list[str]
    edge: Optional[float] = None


class RejectedPick(BaseModel):
    pick_id: str
    error: str


class ScoreBatchResponse(BaseModel):
    scored: list[ScoredPick]
    rejected: list[RejectedPick]
    blocked: int
    persisted: int


class ParlayBuildRequest(BaseModel):
    """Payload for POST /api/parlay/build."""

    candidates: list[PickCandidateIn] = Field(..., min_length=1)
    max_legs: int = Field(3, ge=2, le=10)
    min_tier: str = Field("STANDARD")
    stake: float = Field(1.0, gt=0)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

class SettleRequest(BaseModel):
    """
    Payload for POST /api/picks/{pick_id}/settle.

    Omit actual_value (or give void_reason) to void the pick.  Supplying
    closing_odds_other_side together with opening_odds_other_side switches
    CLV to no-vig probabilities.
    """

    actual_value: Optional[float] = None
    void_reason: Optional[str] = Field(None, max_length=500)
    settled_at: Optional[datetime] = None

    closing_odds: Optional[int] = Field(None, description="Closing American odds for our side")
    closing_odds_other_side: Optional[int] = None
    opening_odds_other_side: Optional[int] = None

    @field_validator("closing_odds", "closing_odds_other_side", "opening_odds_other_side")
    @classmethod
    def validate_closing_odds(cls, v: Optional[int]) -> Optional[int]:
        return _check_american(v)

    model_config = {
        "json_schema_extra": {
            "example": {"actual_value": 13, "closing_odds": -130}
        }
    }


class SettleResponse(BaseModel):
    pick_id: str
    outcome: str
    actual_value: Optional[float]
    settled_at: Optional[datetime]
    profit_units: Optional[float]
    clv_direction: Optional[str]
    clv_magnitude: Optional[float]
    void_reason: Optional[str]


# ---------------------------------------------------------------------------
# Backtests
# ---------------------------------------------------------------------------

class BacktestRequest(BaseModel):
    """Payload for POST /api/backtest."""

    run_id: Optional[str] = Field(None, max_length=120, description="Generated when omitted")
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = None
    group_by: Optional[list[str]] = Field(
        None, description="Grouping fields; the configured default when omitted"
    )
    replay: bool = Field(
        False, description="Re-score every pick with the live config before aggregating"
    )
    baseline_run_id: Optional[str] = None

    @field_validator("end_date")
    @classmethod
    def validate_range(cls, v: Optional[date], info) -> Optional[date]:
        start = info.data.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v


class GroupStatsOut(BaseModel):
    group: dict[str, str]
    total_picks: int
    hits: int
    misses: int
    pushes: int
    voids: int
    hit_rate: Optional[float]
    avg_edge: Optional[float]
    roi: Optional[float]
    avg_composite: Optional[float]


class BacktestResponse(BaseModel):
    run_id: str
    start_date: Optional[date]
    end_date: Optional[date]
    category: Optional[str]
    group_by: list[str]
    overall: GroupStatsOut
    groups: list[GroupStatsOut]
    picks_considered: int
    picks_blocked: int
    blocked_that_missed: int
    blocked_that_hit: int
    blocking_effectiveness: Optional[float]
    baseline_run_id: Optional[str]
    config_snapshot: dict
    comparison: Optional[dict] = None
