"""Scoring configuration: every tunable of the signal aggregator in one place.

This module is the **registry** for engine weights, penalty rules, confidence
tier thresholds and backtest grouping keys.  Nowhere else in the codebase
should an engine weight or a tier cut-off be hard-coded.

Architecture
------------
:class:`ScoringConfig` is a frozen dataclass.  The caller loads it once
(from the database via :mod:`edge_engine.services.repository`, from the
environment via :meth:`ScoringConfig.from_env`, or the canned
:meth:`ScoringConfig.default`) and passes it into each scoring call.  There
is no module-level mutable state.

Typical usage::

    from edge_engine.core.scoring_config import ScoringConfig

    cfg = ScoringConfig.default()

    # Override a single weight for an A/B run:
    cfg = cfg.with_weight("sharp", 1.4)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Final, Literal, Mapping

#: Composite assigned to a pick matched by a ``block`` rule.  Below every
#: tier threshold and outside the [0, 100] score range.
BLOCKED_SCORE: Final[float] = -1.0

#: Tier label reported for blocked picks.
BLOCKED_TIER: Final[str] = "BLOCKED"

#: Upper end of the normalised score range.
SCORE_SCALE: Final[float] = 100.0

Severity = Literal["block", "penalize"]

#: Attributes a penalty rule may match on.
PATTERN_TYPES: Final[frozenset[str]] = frozenset(
    {"subject", "prop_type", "side", "category", "subject_prop", "engine"}
)

#: Engines shipped with the platform.  Equal weights until recalibrated.
DEFAULT_ENGINES: Final[tuple[str, ...]] = ("sharp", "hitrate", "fatigue", "trap")

#: Confidence tiers as ``(tier, minimum composite)``, highest first.
DEFAULT_TIERS: Final[tuple[tuple[str, float], ...]] = (
    ("ELITE", 80.0),
    ("STRONG", 65.0),
    ("STANDARD", 50.0),
)


@dataclass(frozen=True)
class EngineWeight:
    """Weight and raw-score scale for one engine.

    Attributes:
        name: Engine identifier as it appears in ``engine_scores``.
        weight: Relative weight in the composite.  0 disables the engine.
        scale: Maximum raw score.  100 for engines reporting on a 0–100
            scale, 1.0 for engines reporting a probability.
    """

    name: str
    weight: float = 1.0
    scale: float = SCORE_SCALE

    def __post_init__(self) -> None:
        if self.weight < 0:
            raise ValueError(f"Engine {self.name!r} weight must be ≥ 0, got {self.weight}")
        if self.scale <= 0:
            raise ValueError(f"Engine {self.name!r} scale must be > 0, got {self.scale}")


@dataclass(frozen=True)
class PenaltyRule:
    """A pattern that blocks or penalises matching picks.

    Attributes:
        pattern_type: Which pick attribute to match (see :data:`PATTERN_TYPES`).
        pattern_key: Value to match, case-insensitive.  For ``subject_prop``
            the key is ``"<subject>|<prop_type>"``.
        severity: ``"block"`` disqualifies the pick; ``"penalize"`` subtracts
            ``penalty_amount`` of the score range.
        penalty_amount: Fraction of the score range in [0, 1].  Ignored for
            block rules.
        reason: Free text carried into the pick for audit.
        is_active: Inactive rules are kept for history but never match.
    """

    pattern_type: str
    pattern_key: str
    severity: Severity = "penalize"
    penalty_amount: float = 0.0
    reason: str = ""
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.pattern_type not in PATTERN_TYPES:
            raise ValueError(
                f"Unknown pattern_type {self.pattern_type!r}; "
                f"expected one of {sorted(PATTERN_TYPES)}"
            )
        if self.severity not in ("block", "penalize"):
            raise ValueError(f"Unknown severity {self.severity!r}")
        if not 0.0 <= self.penalty_amount <= 1.0:
            raise ValueError(
                f"penalty_amount must be within [0, 1], got {self.penalty_amount}"
            )

    @property
    def description(self) -> str:
        text = f"{self.severity}:{self.pattern_type}={self.pattern_key}"
        return f"{text} ({self.reason})" if self.reason else text


@dataclass(frozen=True)
class ScoringConfig:
    """Immutable configuration bundle for the signal aggregator.

    Attributes:
        engine_weights: Weight table keyed by engine name.
        default_weight: Weight for engines missing from the table.  Default
            0.0: an unknown engine does not move the composite.
        penalty_rules: Evaluated in order.  The first matching block rule
            wins; every matching penalize rule is applied.
        tier_thresholds: ``(tier, minimum composite)`` pairs, highest first.
        floor_tier: Tier for composites below every threshold.
        group_by: Default backtest grouping keys.
    """

    engine_weights: Mapping[str, EngineWeight] = field(default_factory=dict)
    default_weight: float = 0.0
    penalty_rules: tuple[PenaltyRule, ...] = ()
    tier_thresholds: tuple[tuple[str, float], ...] = DEFAULT_TIERS
    floor_tier: str = "WEAK"
    group_by: tuple[str, ...] = ("category",)

    def __post_init__(self) -> None:
        cut_offs = [t for _, t in self.tier_thresholds]
        if cut_offs != sorted(cut_offs, reverse=True):
            raise ValueError("tier_thresholds must be ordered highest first")

    # ------------------------------------------------------------------ #
    #  Named constructors                                                  #
    # ------------------------------------------------------------------ #

    @classmethod
    def default(cls) -> ScoringConfig:
        """Equal weights on a 0–100 scale for the shipped engines, no rules."""
        return cls(engine_weights={name: EngineWeight(name) for name in DEFAULT_ENGINES})

    @classmethod
    def from_env(cls, base: ScoringConfig | None = None) -> ScoringConfig:
        """Apply environment overrides on top of ``base`` (default config).

        ``ENGINE_WEIGHTS``      ``"sharp=1.2,hitrate=0.8"``
        ``TIER_ELITE_MIN``      float, default 80
        ``TIER_STRONG_MIN``     float, default 65
        ``TIER_STANDARD_MIN``   float, default 50
        ``BACKTEST_GROUP_BY``   ``"category,recommended_side"``
        """
        cfg = base or cls.default()

        raw_weights = os.getenv("ENGINE_WEIGHTS", "")
        for name, weight in parse_weight_string(raw_weights).items():
            cfg = cfg.with_weight(name, weight)

        thresholds = dict(cfg.tier_thresholds)
        for tier in ("ELITE", "STRONG", "STANDARD"):
            value = os.getenv(f"TIER_{tier}_MIN")
            if value is not None:
                thresholds[tier] = float(value)
        # Tiers without an env variable (e.g. stored custom tiers) are kept
        ordered = sorted(thresholds.items(), key=lambda item: item[1], reverse=True)
        cfg = replace(cfg, tier_thresholds=tuple(ordered))

        group_by = os.getenv("BACKTEST_GROUP_BY")
        if group_by:
            cfg = replace(
                cfg, group_by=tuple(k.strip() for k in group_by.split(",") if k.strip())
            )
        return cfg

    # ------------------------------------------------------------------ #
    #  Accessors                                                           #
    # ------------------------------------------------------------------ #

    def weight_for(self, engine: str) -> EngineWeight:
        ew = self.engine_weights.get(engine)
        if ew is None:
            return EngineWeight(engine, weight=self.default_weight)
        return ew

    def tier_for(self, composite: float) -> str:
        """Map a composite score to its confidence tier."""
        if composite == BLOCKED_SCORE:
            return BLOCKED_TIER
        for tier, minimum in self.tier_thresholds:
            if composite >= minimum:
                return tier
        return self.floor_tier

    def tier_rank(self, tier: str | None) -> int:
        """Higher is better.  Unknown and blocked tiers rank lowest."""
        order = [t for t, _ in self.tier_thresholds] + [self.floor_tier]
        if tier not in order:
            return -1
        return len(order) - order.index(tier)

    def with_weight(self, engine: str, weight: float) -> ScoringConfig:
        """Return a copy with ``engine``'s weight replaced (scale kept)."""
        weights = dict(self.engine_weights)
        current = weights.get(engine)
        scale = current.scale if current else SCORE_SCALE
        weights[engine] = EngineWeight(engine, weight=weight, scale=scale)
        return replace(self, engine_weights=weights)

    def with_rules(self, *rules: PenaltyRule) -> ScoringConfig:
        """Return a copy with ``rules`` appended to the penalty table."""
        return replace(self, penalty_rules=self.penalty_rules + tuple(rules))

    def snapshot(self) -> dict[str, Any]:
        """JSON-serialisable view, stored with each backtest run."""
        return {
            "engine_weights": {
                name: {"weight": ew.weight, "scale": ew.scale}
                for name, ew in sorted(self.engine_weights.items())
            },
            "default_weight": self.default_weight,
            "penalty_rules": [
                {
                    "pattern_type": r.pattern_type,
                    "pattern_key": r.pattern_key,
                    "severity": r.severity,
                    "penalty_amount": r.penalty_amount,
                    "reason": r.reason,
                    "is_active": r.is_active,
                }
                for r in self.penalty_rules
            ],
            "tier_thresholds": [[t, m] for t, m in self.tier_thresholds],
            "floor_tier": self.floor_tier,
            "group_by": list(self.group_by),
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> ScoringConfig:
        """Inverse of :meth:`snapshot`."""
        return cls(
            engine_weights={
                name: EngineWeight(name, weight=w["weight"], scale=w.get("scale", SCORE_SCALE))
                for name, w in (data.get("engine_weights") or {}).items()
            },
            default_weight=data.get("default_weight", 0.0),
            penalty_rules=tuple(PenaltyRule(**r) for r in data.get("penalty_rules") or ()),
            tier_thresholds=tuple(
                (t, float(m)) for t, m in data.get("tier_thresholds") or ()
            ) or DEFAULT_TIERS,
            floor_tier=data.get("floor_tier", "WEAK"),
            group_by=tuple(data.get("group_by") or ("category",)),
        )

    def __repr__(self) -> str:
        weights = ", ".join(
            f"{n}={ew.weight:g}" for n, ew in sorted(self.engine_weights.items())
        )
        return (
            f"ScoringConfig(weights=[{weights}], "
            f"rules={len(self.penalty_rules)}, "
            f"tiers={list(self.tier_thresholds)})"
        )


def parse_weight_string(raw: str) -> dict[str, float]:
    """Parse ``"sharp=1.2, hitrate=0.8"`` into a weight mapping.

    Raises:
        ValueError: On an entry without ``=`` or a non-numeric weight.
    """
    weights: dict[str, float] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, value = entry.partition("=")
        if not sep:
            raise ValueError(f"Malformed engine weight entry {entry!r}")
        weights[name.strip()] = float(value)
    return weights
