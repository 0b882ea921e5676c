"""
FastAPI application for the edge scoring engine
Batch scoring, settlement, backtests and the nightly recalibration job
"""

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from contextlib import asynccontextmanager
from datetime import datetime
import logging
import os
import uuid

from edge_engine.core.errors import (
    AlreadySettledError,
    EdgeEngineError,
    UnknownBaselineError,
)
from edge_engine.core.odds_math import (
    american_to_decimal,
    combine_parlay_odds,
    compute_payout,
    decimal_to_american,
    implied_prob,
    parlay_decimal_odds,
)
from edge_engine.core.records import PickCandidate, SettlementRecord
from edge_engine.models import get_db, SessionLocal
from edge_engine.services import repository
from edge_engine.services.backtest import compare_to_baseline, run_backtest
from edge_engine.services.parlay_builder import build_parlay
from edge_engine.services.recalibration import run_recalibration
from edge_engine.services.settlement import settle_candidate
from edge_engine.services.signals import projection_edge, score_batch
from edge_engine.schemas import (
    BacktestRequest,
    BacktestResponse,
    OddsConvertRequest,
    OddsConvertResponse,
    ParlayBuildRequest,
    ParlayPriceRequest,
    ParlayPriceResponse,
    ScoreBatchRequest,
    ScoreBatchResponse,
    ScoredPick,
    SettleRequest,
    SettleResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting edge scoring engine")

    cron_hour = int(os.getenv("RECALIBRATION_CRON_HOUR", "5"))
    timezone = os.getenv("RECALIBRATION_CRON_TIMEZONE", "America/New_York")

    scheduler.add_job(
        recalibration_job,
        CronTrigger(hour=cron_hour, minute=0, timezone=timezone),
        id="nightly_recalibration",
        name="Nightly Engine Weight Recalibration",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started: recalibration@%02d:00 %s", cron_hour, timezone)

    yield

    logger.info("Shutting down edge scoring engine")
    scheduler.shutdown()


app = FastAPI(
    title="Edge Scoring Engine",
    description="Odds math, composite pick scoring, settlement and backtesting",
    version="1.0",
    lifespan=lifespan,
)


# ============================================================================
# SCHEDULED JOB
# ============================================================================

def recalibration_job():
    """Re-weight engines from recent settled picks: runs nightly."""
    db = SessionLocal()
    try:
        result = run_recalibration(db, changed_by="auto")
        logger.info(
            "Nightly recalibration: status=%s picks=%s changes=%d",
            result["status"], result["picks_analyzed"], len(result["changes"]),
        )
    except Exception as exc:
        db.rollback()
        logger.error("Recalibration job failed: %s", exc, exc_info=True)
    finally:
        db.close()


# ============================================================================
# HELPERS
# ============================================================================

def _scored_pick(candidate: PickCandidate) -> ScoredPick:
    return ScoredPick(
        pick_id=candidate.pick_id,
        subject_id=candidate.subject_id,
        prop_type=candidate.prop_type,
        line=candidate.line,
        recommended_side=candidate.recommended_side,
        category=candidate.category,
        american_odds=candidate.american_odds,
        composite_score=candidate.composite_score,
        confidence_tier=candidate.confidence_tier,
        contributing_engines=candidate.contributing_engines,
        blocked_by=candidate.blocked_by,
        penalties_applied=list(candidate.penalties_applied),
        edge=projection_edge(candidate.line, candidate.projection, candidate.recommended_side),
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "Edge Scoring Engine",
        "version": "1.0",
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "scheduler": "running"}

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"

    if not scheduler.running:
        health["status"] = "degraded"
        health["scheduler"] = "stopped"

    return health


# ============================================================================
# ODDS
# ============================================================================

@app.post("/api/odds/convert", response_model=OddsConvertResponse)
async def convert_odds(payload: OddsConvertRequest):
    """Convert between American and decimal odds and report implied probability."""
    if (payload.american_odds is None) == (payload.decimal_odds is None):
        raise HTTPException(
            status_code=422, detail="Provide exactly one of american_odds or decimal_odds"
        )

    american = payload.american_odds
    if american is None:
        american = decimal_to_american(payload.decimal_odds)
        decimal_odds = payload.decimal_odds
    else:
        decimal_odds = american_to_decimal(american)

    return OddsConvertResponse(
        american_odds=american,
        decimal_odds=round(decimal_odds, 6),
        implied_prob=round(1.0 / decimal_odds, 6),
        payout=round(payload.stake * decimal_odds, 2),
    )


@app.post("/api/parlay/price", response_model=ParlayPriceResponse)
async def price_parlay(payload: ParlayPriceRequest):
    """Combined price and total return for explicit legs."""
    decimal_odds = parlay_decimal_odds(payload.legs)
    american = combine_parlay_odds(payload.legs)
    joint = 1.0
    for leg in payload.legs:
        joint *= implied_prob(leg)
    return ParlayPriceResponse(
        num_legs=len(payload.legs),
        american_odds=american,
        decimal_odds=round(decimal_odds, 6),
        implied_prob=round(joint, 6),
        stake=payload.stake,
        payout=round(compute_payout(payload.stake, american), 2),
    )


# ============================================================================
# PICKS
# ============================================================================

@app.post("/api/picks/score", response_model=ScoreBatchResponse)
async def score_picks(payload: ScoreBatchRequest, db: Session = Depends(get_db)):
    """
    Score a batch of candidates with the live configuration.

    Candidates with no engine signal are returned under ``rejected``; the
    rest of the batch is still scored.  ``persist=true`` stores the scored
    picks with a pending settlement.
    """
    config = repository.load_scoring_config(db)
    scored, rejected = score_batch([c.to_candidate() for c in payload.candidates], config)

    persisted = repository.save_candidates(db, scored) if payload.persist else 0

    return ScoreBatchResponse(
        scored=[_scored_pick(c) for c in scored],
        rejected=rejected,
        blocked=sum(1 for c in scored if c.is_blocked),
        persisted=persisted,
    )


@app.post("/api/picks/{pick_id}/settle", response_model=SettleResponse)
async def settle(pick_id: str, payload: SettleRequest, db: Session = Depends(get_db)):
    """
    Settle a stored pick against its result.

    Returns 404 for an unknown pick and 409 when the pick is already settled.
    """
    candidate = repository.get_candidate(db, pick_id)
    if candidate is None:
        raise HTTPException(status_code=404, detail="Pick not found")

    current = repository.get_settlement(db, pick_id) or SettlementRecord.pending(pick_id)
    record = settle_candidate(
        candidate,
        current,
        actual_value=payload.actual_value,
        settled_at=payload.settled_at or datetime.utcnow(),
        closing_odds=payload.closing_odds,
        closing_odds_other_side=payload.closing_odds_other_side,
        opening_odds_other_side=payload.opening_odds_other_side,
        void_reason=payload.void_reason,
    )
    repository.record_settlement(db, record)
    return SettleResponse(**record.to_dict())


@app.post("/api/parlay/build")
async def build_parlay_suggestion(payload: ParlayBuildRequest, db: Session = Depends(get_db)):
    """Score a slate and assemble the best parlay from it."""
    config = repository.load_scoring_config(db)
    scored, rejected = score_batch([c.to_candidate() for c in payload.candidates], config)

    ticket = build_parlay(
        scored,
        config,
        max_legs=payload.max_legs,
        min_tier=payload.min_tier,
        stake=payload.stake,
    )
    if ticket is None:
        return {
            "parlay": None,
            "message": "Not enough qualifying legs",
            "candidates_scored": len(scored),
            "rejected": rejected,
        }
    return {
        "parlay": ticket.to_dict(),
        "candidates_scored": len(scored),
        "rejected": rejected,
    }


# ============================================================================
# BACKTESTS
# ============================================================================

@app.post("/api/backtest", response_model=BacktestResponse)
async def create_backtest(payload: BacktestRequest, db: Session = Depends(get_db)):
    """
    Aggregate settled picks in a date range into hit rate / ROI per group.

    ``replay=true`` re-scores every pick with the live configuration first,
    so blocked picks drop out and are counted.  With ``baseline_run_id`` the
    response carries signed deltas against that stored run.
    """
    run_id = payload.run_id or uuid.uuid4().hex[:12]
    if repository.get_backtest_run(db, run_id) is not None:
        raise HTTPException(status_code=409, detail=f"Backtest run {run_id} already exists")

    config = repository.load_scoring_config(db)
    picks = repository.fetch_settled_picks(
        db,
        start_date=payload.start_date,
        end_date=payload.end_date,
        category=payload.category,
    )

    run = run_backtest(
        picks,
        run_id=run_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        category=payload.category,
        group_by=payload.group_by if payload.group_by is not None else config.group_by,
        config=config if payload.replay else None,
        baseline_run_id=payload.baseline_run_id,
    )

    comparison = None
    if payload.baseline_run_id:
        runs = repository.load_backtest_runs(db, [payload.baseline_run_id])
        comparison = compare_to_baseline(run, runs)

    repository.save_backtest_run(db, run)
    return BacktestResponse(**run.to_dict(), comparison=comparison)


@app.get("/api/backtest/{run_id}", response_model=BacktestResponse)
async def get_backtest(run_id: str, db: Session = Depends(get_db)):
    run = repository.get_backtest_run(db, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Backtest run not found")
    return BacktestResponse(**run.to_dict())


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/recalibrate")
async def manual_recalibration(
    dry_run: bool = False,
    changed_by: str = "admin",
    db: Session = Depends(get_db),
):
    """
    Manually trigger engine weight recalibration.

    Analyses settled picks and adjusts:
      - per-engine weights   (hit rate of picks each engine scored)
      - category block rules (categories hitting below 40%)

    Query params:
        dry_run=true: compute and return diagnostics without writing changes.
    """
    logger.info("Recalibration triggered by %s (dry_run=%s)", changed_by, dry_run)
    try:
        return run_recalibration(db, changed_by=changed_by, apply_changes=not dry_run)
    except Exception as exc:
        logger.error("Recalibration failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/admin/scheduler/status")
async def get_scheduler_status():
    """Get scheduler job status"""
    jobs = []
    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": next_run.isoformat() if next_run else None,
        })

    return {
        "running": scheduler.running,
        "jobs": jobs,
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(AlreadySettledError)
async def already_settled_handler(request: Request, exc: AlreadySettledError):
    logger.warning("Settlement conflict: %s", exc)
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "type": type(exc).__name__, "outcome": exc.outcome},
    )


@app.exception_handler(UnknownBaselineError)
async def unknown_baseline_handler(request: Request, exc: UnknownBaselineError):
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


@app.exception_handler(EdgeEngineError)
async def edge_engine_error_handler(request: Request, exc: EdgeEngineError):
    """InvalidOdds / EmptyParlay / NoSignals: the request itself is unusable."""
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
