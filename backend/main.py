"""
FastAPI application for the Match Edge Engine
Includes REST API, scheduled jobs, and monitoring
"""

from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional
import logging
import os

from backend.models import get_db, init_db, OddsSnapshot, Prediction
from backend.auth import verify_api_key, verify_admin_api_key
from backend.core.errors import InvalidOdds, NoMarketData, RateLimitExceeded, StatsUnavailable
from backend.core.odds_math import MatchOdds
from backend.services.analysis import analyze_match, ledger_match_id, record_analysis, run_pre_analysis_job
from backend.services.cache import MatchCache, get_match_cache
from backend.services.injuries import InjuryReport, InjuryService, get_injury_service
from backend.services.ledger import previous_odds, settle_prediction, snapshot_to_dict
from backend.services.narrative import NarrativeOracle
from backend.services.odds_monitor import get_odds_monitor
from backend.services.stats import StatsProvider, get_stats_provider
from backend.schemas import (
    InjuryOverride,
    OddsSnapshotResponse,
    PreAnalysisResponse,
    PredictionResponse,
    PredictionsResponse,
    PreviewRequest,
    PreviewResponse,
    SettleRequest,
    SettleResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

APP_VERSION = "2.0"

# Scheduler instance
scheduler = BackgroundScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Match Edge Engine")
    init_db()

    if os.getenv("ENABLE_SCHEDULER", "true").lower() == "true":
        cron_hour = int(os.getenv("PRE_ANALYZE_CRON_HOUR", "6"))
        timezone = os.getenv("PRE_ANALYZE_TIMEZONE", "UTC")
        scheduler.add_job(
            pre_analysis_job,
            CronTrigger(hour=cron_hour, minute=0, timezone=timezone),
            id="pre_analysis",
            name="Daily Match Pre-Analysis",
            replace_existing=True,
        )

        monitor_interval = int(os.getenv("ODDS_MONITOR_INTERVAL_MINUTES", "15"))
        scheduler.add_job(
            _odds_monitor_job,
            IntervalTrigger(minutes=monitor_interval),
            id="odds_monitor",
            name="Consensus Odds Steam Monitor",
            replace_existing=True,
        )

        scheduler.start()
        logger.info(
            "Scheduler started: pre-analysis@%02d:00 %s, odds monitor every %dmin",
            cron_hour, timezone, monitor_interval,
        )
    else:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    logger.info("Shutting down Match Edge Engine")
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Match Edge Engine",
    description="Multi-sport model-vs-market edge analysis",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# SCHEDULED JOBS
# ============================================================================

def pre_analysis_job():
    """Daily pre-analysis sweep: runs at PRE_ANALYZE_CRON_HOUR."""
    logger.info("Starting pre-analysis job")
    try:
        results = run_pre_analysis_job()
        logger.info(
            "Pre-analysis job complete: %d analysed, %d predictions, %d errors",
            results.get("matches_analyzed", 0),
            results.get("predictions_created", 0),
            len(results.get("errors", [])),
        )
    except Exception as exc:
        logger.error("Pre-analysis job failed: %s", exc, exc_info=True)


def _odds_monitor_job():
    """Poll consensus prices for steam moves."""
    try:
        result = get_odds_monitor().poll()
        if result.get("significant_movements", 0) > 0:
            logger.info(
                "Odds monitor: %d significant movements detected",
                result["significant_movements"],
            )
    except Exception as exc:
        logger.error("Odds monitor job failed: %s", exc, exc_info=True)


# ============================================================================
# PROVIDER DEPENDENCIES
# ============================================================================

def get_cache() -> MatchCache:
    return get_match_cache()


def get_stats() -> StatsProvider:
    try:
        return get_stats_provider()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=f"Stats provider unavailable: {exc}")


def get_injuries() -> InjuryService:
    return get_injury_service()


def get_oracle() -> Optional[NarrativeOracle]:
    """No generator is configured by default; previews use the stats narrative."""
    return None


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "Match Edge Engine",
        "version": APP_VERSION,
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
        health["scheduler"] = "stopped"

    return health


# ============================================================================
# AUTHENTICATED ENDPOINTS
# ============================================================================

@app.post("/api/preview", response_model=PreviewResponse)
async def match_preview(
    request: PreviewRequest,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
    cache: MatchCache = Depends(get_cache),
    stats_provider: StatsProvider = Depends(get_stats),
    injury_service: InjuryService = Depends(get_injuries),
    oracle: Optional[NarrativeOracle] = Depends(get_oracle),
):
    """
    On-demand match analysis through the preview cache.

    Same-day requests share one cache entry; inside 30 minutes of kickoff
    the entry is recomputed.  A fresh priced analysis is written to the
    ledger under the same keys the sweep uses.
    """
    odds = None
    if request.home_odds is not None:
        odds = MatchOdds(home=request.home_odds, away=request.away_odds, draw=request.draw_odds)
    match_date = (request.kickoff or datetime.utcnow()).date()
    match_id = request.match_id or ledger_match_id(request.home_team, request.away_team)

    async def compute(prior):
        analysis = await analyze_match(
            request.sport,
            request.home_team,
            request.away_team,
            odds,
            stats_provider=stats_provider,
            injury_service=injury_service,
            oracle=oracle,
            kickoff=request.kickoff,
            league=request.league,
            has_draw=request.has_draw,
            match_id=match_id,
            previous=previous_odds(db, match_id, request.sport) if odds else None,
            prior=prior,
        )
        if analysis.intel is not None:
            try:
                record_analysis(
                    db, analysis,
                    match_id=match_id,
                    kickoff=request.kickoff or datetime.utcnow(),
                    league=analysis.payload["match"]["league"],
                    source="ON_DEMAND",
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        return analysis.payload

    entry = await cache.get_or_compute(
        request.home_team,
        request.away_team,
        request.sport,
        match_date,
        compute,
        kickoff=request.kickoff,
    )
    return PreviewResponse(
        cache_key=entry.key,
        from_cache=entry.from_cache,
        ttl_class=entry.ttl_class,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
        payload=entry.payload,
    )


@app.get("/api/predictions", response_model=PredictionsResponse)
async def list_predictions(
    sport: Optional[str] = None,
    outcome: Optional[str] = Query(default=None, pattern="^(PENDING|HIT|MISS|VOID)$"),
    value_only: bool = False,
    days: int = Query(default=7, ge=1, le=90),
    limit: int = Query(default=100, ge=1, le=500),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Recorded predictions from the last N days, newest kickoff first."""
    cutoff = datetime.utcnow() - timedelta(days=days)
    query = db.query(Prediction).filter(Prediction.created_at >= cutoff)
    if sport:
        query = query.filter(Prediction.sport == sport)
    if outcome:
        query = query.filter(Prediction.outcome == outcome)
    if value_only:
        query = query.filter(Prediction.value_bet_side.isnot(None))
    predictions = query.order_by(Prediction.kickoff.desc()).limit(limit).all()
    return PredictionsResponse(
        total=len(predictions),
        predictions=[PredictionResponse.model_validate(p) for p in predictions],
    )


@app.get("/api/odds-snapshots", response_model=list[OddsSnapshotResponse])
async def list_odds_snapshots(
    sport: Optional[str] = None,
    alert_level: Optional[str] = Query(default=None, pattern="^(HIGH|MEDIUM|LOW)$"),
    steam_only: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Current consensus snapshots with model edges, most recently updated first."""
    query = db.query(OddsSnapshot)
    if sport:
        query = query.filter(OddsSnapshot.sport == sport)
    if alert_level:
        query = query.filter(OddsSnapshot.alert_level == alert_level)
    if steam_only:
        query = query.filter(OddsSnapshot.has_steam_move.is_(True))
    snaps = query.order_by(OddsSnapshot.updated_at.desc()).limit(limit).all()
    return [snapshot_to_dict(s) for s in snaps]


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/run-pre-analysis", response_model=PreAnalysisResponse)
def trigger_pre_analysis(user: str = Depends(verify_admin_api_key)):
    """Manually trigger the pre-analysis sweep (admin only). Runs synchronously and returns results."""
    logger.info("Manual pre-analysis triggered by %s", user)
    try:
        results = run_pre_analysis_job()
    except Exception as exc:
        logger.error("Manual pre-analysis failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))
    return PreAnalysisResponse(
        message="Pre-analysis complete",
        status=results.get("status", "ok"),
        sports_processed=results.get("sports_processed", 0),
        matches_found=results.get("matches_found", 0),
        matches_analyzed=results.get("matches_analyzed", 0),
        cache_writes=results.get("cache_writes", 0),
        odds_snapshot_updates=results.get("odds_snapshot_updates", 0),
        predictions_created=results.get("predictions_created", 0),
        predictions_updated=results.get("predictions_updated", 0),
        predictions_skipped=results.get("predictions_skipped", 0),
        halted=results.get("halted", False),
        errors=results.get("errors", []),
        analyzed_matches=results.get("analyzed_matches", []),
        duration_seconds=results.get("duration_seconds", 0.0),
    )


@app.post("/admin/predictions/{prediction_id}/settle", response_model=SettleResponse)
async def settle(
    prediction_id: str,
    body: SettleRequest,
    user: str = Depends(verify_admin_api_key),
    db: Session = Depends(get_db),
):
    """Record the result of a prediction (admin only)."""
    row = settle_prediction(db, prediction_id, body.outcome, body.actual_result)
    if row is None:
        raise HTTPException(status_code=404, detail="Prediction not found")
    db.commit()
    logger.info("Prediction %s settled as %s by %s", prediction_id, body.outcome, user)
    return SettleResponse(
        message="Prediction settled",
        prediction_id=prediction_id,
        outcome=row.outcome,
        actual_result=row.actual_result,
    )


@app.post("/admin/injuries/override")
async def add_injury_override(
    body: InjuryOverride,
    user: str = Depends(verify_admin_api_key),
    injury_service: InjuryService = Depends(get_injuries),
):
    """Add or replace a manual injury entry; overrides scraped data (admin only)."""
    report = InjuryReport(
        team=body.team,
        player=body.player,
        status=body.status,
        position=body.position,
        impact_tier=body.impact_tier,
        reason=body.reason,
        updated_at=datetime.utcnow(),
    )
    injury_service.add_manual_override(report)
    return {"message": "Override stored", "team": body.team, "player": body.player}


@app.get("/admin/scheduler/status")
async def get_scheduler_status(user: str = Depends(verify_admin_api_key)):
    """Get scheduler job status"""
    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        })

    return {
        "running": scheduler.running,
        "jobs": jobs,
    }


@app.get("/admin/odds-monitor/status")
async def get_odds_monitor_status(user: str = Depends(verify_admin_api_key)):
    """Return odds monitor status: tracked matches, last poll, recent steam moves."""
    try:
        monitor = get_odds_monitor()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return monitor.get_status()


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(InvalidOdds)
async def invalid_odds_handler(request, exc):
    return JSONResponse(status_code=422, content={"detail": str(exc), "type": "InvalidOdds"})


@app.exception_handler(StatsUnavailable)
async def stats_unavailable_handler(request, exc):
    logger.warning("Stats unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc), "type": "StatsUnavailable"})


@app.exception_handler(NoMarketData)
async def no_market_handler(request, exc):
    return JSONResponse(status_code=503, content={"detail": str(exc), "type": "NoMarketData"})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request, exc):
    logger.warning("Provider rate limit: %s", exc)
    return JSONResponse(status_code=429, content={"detail": str(exc), "type": "RateLimitExceeded"})


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
