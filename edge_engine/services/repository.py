"""
Persistence layer: the only place ORM rows and core records meet.

All public functions receive a SQLAlchemy Session and return frozen records
from edge_engine.core.records (or a ScoringConfig), so the scoring services
can be called from FastAPI endpoints, scheduled jobs or scripts without
knowing about tables.

Settlement writes use an optimistic state check: the UPDATE only matches a
row still in 'pending', so two concurrent settlement calls cannot both win.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from edge_engine.core.errors import AlreadySettledError
from edge_engine.core.records import (
    BacktestRun,
    Outcome,
    PickCandidate,
    SettledPick,
    SettlementRecord,
)
from edge_engine.core.scoring_config import (
    EngineWeight,
    PenaltyRule,
    ScoringConfig,
)
from edge_engine.models import (
    BacktestRunRow,
    ConfigChange,
    EngineWeightRow,
    PenaltyRuleRow,
    PickRecord,
    SettlementRow,
    TierThresholdRow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row ↔ record conversion
# ---------------------------------------------------------------------------

def _to_candidate(row: PickRecord) -> PickCandidate:
    return PickCandidate(
        pick_id=row.pick_id,
        subject_id=row.subject_id,
        prop_type=row.prop_type,
        line=row.line,
        recommended_side=row.recommended_side,
        engine_scores=dict(row.engine_scores or {}),
        category=row.category,
        american_odds=row.american_odds,
        projection=row.projection,
        analysis_date=row.analysis_date,
        composite_score=row.composite_score,
        confidence_tier=row.confidence_tier,
        contributing_engines=row.contributing_engines or 0,
        blocked_by=row.blocked_by,
        penalties_applied=tuple(row.penalties_applied or ()),
    )


def _to_settlement(row: SettlementRow) -> SettlementRecord:
    return SettlementRecord(
        pick_id=row.pick_id,
        outcome=Outcome(row.outcome),
        actual_value=row.actual_value,
        settled_at=row.settled_at,
        profit_units=row.profit_units,
        clv_direction=row.clv_direction,
        clv_magnitude=row.clv_magnitude,
        void_reason=row.void_reason,
    )


# ---------------------------------------------------------------------------
# Scoring configuration
# ---------------------------------------------------------------------------

def load_stored_config(db: Session) -> ScoringConfig:
    """
    ScoringConfig.default() overridden by the engine_weights / penalty_rules /
    tier_thresholds rows, without environment overrides.

    Recalibration reads and writes this view only.
    """
    config = ScoringConfig.default()

    weight_rows = db.query(EngineWeightRow).order_by(EngineWeightRow.engine_name).all()
    if weight_rows:
        weights = dict(config.engine_weights)
        for row in weight_rows:
            weights[row.engine_name] = EngineWeight(row.engine_name, weight=row.weight, scale=row.scale)
        config = replace(config, engine_weights=weights)

    rule_rows = db.query(PenaltyRuleRow).order_by(PenaltyRuleRow.id).all()
    if rule_rows:
        config = replace(config, penalty_rules=tuple(
            PenaltyRule(
                pattern_type=row.pattern_type,
                pattern_key=row.pattern_key,
                severity=row.severity,
                penalty_amount=row.penalty_amount or 0.0,
                reason=row.reason or "",
                is_active=bool(row.is_active),
            )
            for row in rule_rows
        ))

    tier_rows = db.query(TierThresholdRow).order_by(TierThresholdRow.min_score.desc()).all()
    if tier_rows:
        config = replace(
            config,
            tier_thresholds=tuple((row.tier, row.min_score) for row in tier_rows),
        )
    return config


def load_scoring_config(db: Session) -> ScoringConfig:
    """
    Build the live ScoringConfig: stored rows first, environment variables
    (ScoringConfig.from_env) last.  Loaded once per request or job and
    passed into the scoring calls.
    """
    config = ScoringConfig.from_env(base=load_stored_config(db))
    logger.debug("Loaded %r", config)
    return config


def save_scoring_config(db: Session, config: ScoringConfig, changed_by: str = "auto") -> int:
    """
    Upsert engine weights and append any new penalty rules.

    Every change is written to config_changes.  Returns the number of changes.
    """
    changes = 0
    existing = {row.engine_name: row for row in db.query(EngineWeightRow).all()}

    for name, ew in sorted(config.engine_weights.items()):
        row = existing.get(name)
        if row is None:
            db.add(EngineWeightRow(engine_name=name, weight=ew.weight, scale=ew.scale))
            old = None
        elif abs(row.weight - ew.weight) > 1e-9 or abs(row.scale - ew.scale) > 1e-9:
            old = row.weight
            row.weight = ew.weight
            row.scale = ew.scale
        else:
            continue
        db.add(ConfigChange(
            parameter_name=f"weight:{name}",
            old_value=old,
            new_value=ew.weight,
            detail={"scale": ew.scale},
            changed_by=changed_by,
        ))
        changes += 1

    known_rules = {
        (row.pattern_type, row.pattern_key.lower())
        for row in db.query(PenaltyRuleRow).all()
    }
    for rule in config.penalty_rules:
        if (rule.pattern_type, rule.pattern_key.lower()) in known_rules:
            continue
        db.add(PenaltyRuleRow(
            pattern_type=rule.pattern_type,
            pattern_key=rule.pattern_key,
            severity=rule.severity,
            penalty_amount=rule.penalty_amount,
            reason=rule.reason,
            is_active=rule.is_active,
        ))
        db.add(ConfigChange(
            parameter_name=f"rule:{rule.pattern_type}={rule.pattern_key}",
            detail={"severity": rule.severity, "reason": rule.reason},
            changed_by=changed_by,
        ))
        changes += 1

    db.commit()
    logger.info("Saved scoring config (%d changes by %s)", changes, changed_by)
    return changes


def seed_default_config(db: Session) -> int:
    """Populate empty config tables with ScoringConfig.default() values."""
    if db.query(EngineWeightRow).count():
        return 0
    config = ScoringConfig.default()
    for tier, minimum in config.tier_thresholds:
        db.add(TierThresholdRow(tier=tier, min_score=minimum))
    return save_scoring_config(db, config, changed_by="seed")


# ---------------------------------------------------------------------------
# Picks
# ---------------------------------------------------------------------------

def save_candidates(db: Session, candidates: Iterable[PickCandidate]) -> int:
    """
    Insert or update scored candidates and open a pending settlement for any
    pick that does not have one yet.  Settled picks are left untouched.
    """
    saved = 0
    for candidate in candidates:
        row = db.get(PickRecord, candidate.pick_id)
        if row is not None and row.settlement is not None and row.settlement.outcome != Outcome.PENDING.value:
            logger.warning("Pick %s already settled; score not overwritten", candidate.pick_id)
            continue
        if row is None:
            row = PickRecord(pick_id=candidate.pick_id)
            db.add(row)

        row.subject_id = candidate.subject_id
        row.prop_type = candidate.prop_type
        row.category = candidate.category
        row.line = candidate.line
        row.recommended_side = candidate.recommended_side
        row.american_odds = candidate.american_odds
        row.projection = candidate.projection
        row.analysis_date = candidate.analysis_date
        row.engine_scores = dict(candidate.engine_scores)
        row.composite_score = candidate.composite_score
        row.confidence_tier = candidate.confidence_tier
        row.contributing_engines = candidate.contributing_engines
        row.blocked_by = candidate.blocked_by
        row.penalties_applied = list(candidate.penalties_applied)

        if row.settlement is None:
            row.settlement = SettlementRow(pick_id=candidate.pick_id, outcome=Outcome.PENDING.value)
        saved += 1

    db.commit()
    return saved


def get_candidate(db: Session, pick_id: str) -> Optional[PickCandidate]:
    row = db.get(PickRecord, pick_id)
    return _to_candidate(row) if row is not None else None


def get_settlement(db: Session, pick_id: str) -> Optional[SettlementRecord]:
    row = db.query(SettlementRow).filter(SettlementRow.pick_id == pick_id).first()
    return _to_settlement(row) if row is not None else None


def record_settlement(db: Session, record: SettlementRecord) -> SettlementRecord:
    """
    Persist a terminal settlement.

    Raises:
        AlreadySettledError: if the stored row is no longer pending (another
            writer got there first).
        ValueError: if ``record`` is itself still pending.
    """
    if not record.is_terminal:
        raise ValueError(f"Refusing to record pending settlement for {record.pick_id!r}")

    updated = (
        db.query(SettlementRow)
        .filter(
            SettlementRow.pick_id == record.pick_id,
            SettlementRow.outcome == Outcome.PENDING.value,
        )
        .update(
            {
                SettlementRow.outcome: record.outcome.value,
                SettlementRow.actual_value: record.actual_value,
                SettlementRow.settled_at: record.settled_at,
                SettlementRow.profit_units: record.profit_units,
                SettlementRow.clv_direction: record.clv_direction,
                SettlementRow.clv_magnitude: record.clv_magnitude,
                SettlementRow.void_reason: record.void_reason,
            },
            synchronize_session=False,
        )
    )

    if updated == 0:
        db.rollback()
        current = get_settlement(db, record.pick_id)
        if current is not None:
            raise AlreadySettledError(record.pick_id, current.outcome.value)
        # No row yet: the pick was scored elsewhere and never persisted pending
        if db.get(PickRecord, record.pick_id) is None:
            raise LookupError(f"Unknown pick {record.pick_id!r}")
        db.add(SettlementRow(
            pick_id=record.pick_id,
            outcome=record.outcome.value,
            actual_value=record.actual_value,
            settled_at=record.settled_at,
            profit_units=record.profit_units,
            clv_direction=record.clv_direction,
            clv_magnitude=record.clv_magnitude,
            void_reason=record.void_reason,
        ))

    db.commit()
    logger.info("Settlement stored for %s: %s", record.pick_id, record.outcome.value)
    return record


def fetch_settled_picks(
    db: Session,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[SettledPick]:
    """
    Return terminal picks joined with their settlements, oldest first.

    Selection matches backtest.filter_picks: a pick without an analysis_date
    is dated by its settlement, and the category match ignores case.
    """
    pick_date = func.coalesce(PickRecord.analysis_date, func.date(SettlementRow.settled_at))
    q = (
        db.query(PickRecord)
        .join(SettlementRow)
        .options(joinedload(PickRecord.settlement))
        .filter(SettlementRow.outcome != Outcome.PENDING.value)
    )
    if start_date:
        q = q.filter(pick_date >= start_date)
    if end_date:
        q = q.filter(pick_date <= end_date)
    if category:
        q = q.filter(func.lower(PickRecord.category) == category.lower())

    if limit:
        # Most recent `limit` picks, still returned oldest first
        rows = (
            q.order_by(pick_date.desc(), PickRecord.pick_id.desc())
            .limit(limit)
            .all()
        )
        rows.reverse()
    else:
        rows = q.order_by(pick_date.asc(), PickRecord.pick_id.asc()).all()

    return [SettledPick(_to_candidate(r), _to_settlement(r.settlement)) for r in rows]


# ---------------------------------------------------------------------------
# Backtest runs
# ---------------------------------------------------------------------------

def save_backtest_run(db: Session, run: BacktestRun) -> None:
    db.add(BacktestRunRow(
        run_id=run.run_id,
        baseline_run_id=run.baseline_run_id,
        start_date=run.start_date,
        end_date=run.end_date,
        category=run.category,
        total_picks=run.overall.total_picks,
        hit_rate=run.overall.hit_rate,
        roi=run.overall.roi,
        payload=run.to_dict(),
    ))
    db.commit()
    logger.info("Backtest run %s stored", run.run_id)


def get_backtest_run(db: Session, run_id: str) -> Optional[BacktestRun]:
    row = db.get(BacktestRunRow, run_id)
    return BacktestRun.from_dict(row.payload) if row is not None else None


def load_backtest_runs(db: Session, run_ids: Iterable[str]) -> Dict[str, BacktestRun]:
    """Mapping of run_id → BacktestRun for every id that exists."""
    ids = [r for r in run_ids if r]
    if not ids:
        return {}
    rows = db.query(BacktestRunRow).filter(BacktestRunRow.run_id.in_(ids)).all()
    return {row.run_id: BacktestRun.from_dict(row.payload) for row in rows}
