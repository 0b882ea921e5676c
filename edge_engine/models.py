"""
Database models for the edge scoring engine
SQLAlchemy ORM with PostgreSQL

The scoring core never imports this module.  Rows are converted to and from
the frozen records in edge_engine.core.records by services/repository.py.
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    JSON,
    Text,
    ForeignKey,
    Date,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://postgres@127.0.0.1:5432/edge_engine")

# pool_pre_ping keeps long-idle scheduler connections from going stale
engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Scoring configuration tables
# ---------------------------------------------------------------------------

class EngineWeightRow(Base):
    """Per-engine weight in the composite score"""

    __tablename__ = "engine_weights"

    id = Column(Integer, primary_key=True, index=True)
    engine_name = Column(String, unique=True, nullable=False, index=True)
    weight = Column(Float, nullable=False, default=1.0)
    scale = Column(Float, nullable=False, default=100.0)  # max raw score (1.0 = probability)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PenaltyRuleRow(Base):
    """Block / penalize patterns applied after weighting"""

    __tablename__ = "penalty_rules"

    id = Column(Integer, primary_key=True, index=True)  # evaluation order
    pattern_type = Column(String, nullable=False)  # subject | prop_type | side | category | subject_prop | engine
    pattern_key = Column(String, nullable=False)
    severity = Column(String, nullable=False, default="penalize")  # "block" or "penalize"
    penalty_amount = Column(Float, default=0.0)  # fraction of the 0-100 range
    reason = Column(Text)
    is_active = Column(Boolean, default=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint('pattern_type', 'pattern_key', name='_pattern_type_key_uc'),)


class TierThresholdRow(Base):
    """Minimum composite score for each confidence tier"""

    __tablename__ = "tier_thresholds"

    id = Column(Integer, primary_key=True, index=True)
    tier = Column(String, unique=True, nullable=False)  # ELITE, STRONG, STANDARD
    min_score = Column(Float, nullable=False)


class ConfigChange(Base):
    """Audit trail of configuration changes (recalibration or manual)"""

    __tablename__ = "config_changes"

    id = Column(Integer, primary_key=True, index=True)
    effective_date = Column(DateTime, default=datetime.utcnow, index=True)
    parameter_name = Column(String, nullable=False)  # "weight:sharp", "rule:category=threes"
    old_value = Column(Float)
    new_value = Column(Float)
    detail = Column(JSON)
    changed_by = Column(String)  # "auto" or user identifier


# ---------------------------------------------------------------------------
# Picks and settlements
# ---------------------------------------------------------------------------

class PickRecord(Base):
    """A scored pick candidate"""

    __tablename__ = "pick_candidates"

    pick_id = Column(String, primary_key=True)
    subject_id = Column(String, nullable=False, index=True)  # player / team / event
    prop_type = Column(String, nullable=False)
    category = Column(String, index=True)
    line = Column(Float, nullable=False)
    recommended_side = Column(String, nullable=False)  # "over" or "under"
    american_odds = Column(Integer)  # price taken
    projection = Column(Float)
    analysis_date = Column(Date, index=True)

    # Aggregator output
    engine_scores = Column(JSON)  # {engine: raw score}
    composite_score = Column(Float)
    confidence_tier = Column(String, index=True)
    contributing_engines = Column(Integer, default=0)
    blocked_by = Column(String)
    penalties_applied = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    settlement = relationship("SettlementRow", back_populates="pick", uselist=False)


class SettlementRow(Base):
    """Outcome of a pick: pending until settled, then immutable"""

    __tablename__ = "settlements"

    id = Column(Integer, primary_key=True, index=True)
    pick_id = Column(String, ForeignKey("pick_candidates.pick_id"), unique=True, nullable=False)
    outcome = Column(String, nullable=False, default="pending", index=True)  # pending|hit|miss|push|void
    actual_value = Column(Float)
    settled_at = Column(DateTime)
    profit_units = Column(Float)

    # CLV tracking
    clv_direction = Column(String)  # positive | negative | neutral
    clv_magnitude = Column(Float)

    void_reason = Column(Text)

    pick = relationship("PickRecord", back_populates="settlement")


# ---------------------------------------------------------------------------
# Backtests
# ---------------------------------------------------------------------------

class BacktestRunRow(Base):
    """Stored backtest result; payload holds the full BacktestRun dict"""

    __tablename__ = "backtest_runs"

    run_id = Column(String, primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    baseline_run_id = Column(String)  # weak reference, no FK
    start_date = Column(Date)
    end_date = Column(Date)
    category = Column(String)

    # Headline numbers duplicated out of payload for querying
    total_picks = Column(Integer)
    hit_rate = Column(Float)
    roi = Column(Float)

    payload = Column(JSON, nullable=False)
