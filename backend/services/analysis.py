"""
Match analysis orchestration: on-demand previews and the pre-analysis sweep.

Per match:
    1. Core stats (critical; ``StatsUnavailable`` aborts the match)
    2. Optional context fetched concurrently under a semaphore:
       injuries, provider absences, referee, roster.  Each degrades to
       "unavailable" on failure; only ``RateLimitExceeded`` propagates.
    3. normalize -> compute_edge -> qualify (pure, synchronous)
    4. Narrative oracle, with the deterministic stats fallback

Pre-analysis sweep (called by APScheduler and /admin/run-pre-analysis):
    1. For each configured sport, fetch events kicking off within 48 h
       (at most 10 per sport) with consensus h2h prices
    2. Analyse each match inside a SAVEPOINT so one bad match never aborts
       the batch; matches run sequentially with a short delay between them
    3. Upsert the consensus odds snapshot and record a prediction when the
       winner clears the league gate and both teams have enough form data
       (``record_analysis``, shared with on-demand previews)
    4. Single commit at the end; DataFetch rows record provider health
    5. Write the pre-analyzed cache entries for every analysed match

The sweep stops issuing provider calls on ``RateLimitExceeded`` and stops
starting new matches once the wall-clock budget is spent.  A sport whose
odds feed fails (``OddsUnavailable``) is recorded as an error and skipped.
"""

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from backend.core.conviction import Qualification, qualify
from backend.core.errors import NoMarketData, OddsUnavailable, RateLimitExceeded
from backend.core.market_intel import MarketIntel, compute_edge
from backend.core.odds_math import MatchOdds
from backend.core.signals import (
    MIN_FORM_RESULTS,
    Absence,
    HeadToHead,
    RawMatchInput,
    UniversalSignals,
    form_results,
    normalize,
)
from backend.core.sport_config import DEFAULT_CONFIG, EngineConfig
from backend.models import DataFetch, Prediction, SessionLocal
from backend.services.cache import PRE_ANALYZED, CachedResponse, MatchCache, cache_key, is_valid_form
from backend.services.injuries import InjuryService
from backend.services.ledger import prediction_id, previous_odds, record_prediction, upsert_odds_snapshot
from backend.services.narrative import NarrativeOracle, build_prompt, resolve_narrative
from backend.services.odds import OddsAPIClient, consensus_odds, parse_commence_time
from backend.services.stats import MatchStats, StatsProvider

logger = logging.getLogger(__name__)

PAYLOAD_SCHEMA_VERSION = 2

SWEEP_HORIZON = timedelta(hours=48)
MAX_EVENTS_PER_SPORT = 10
INTER_MATCH_DELAY = 0.5
DEFAULT_BUDGET_SECONDS = float(os.getenv("PRE_ANALYZE_BUDGET_SECONDS", "240"))
MAX_OPTIONAL_CONCURRENCY = 3


@dataclass(frozen=True)
class SweepTarget:
    key: str
    title: str
    league: str
    has_draw: bool


PRE_ANALYZE_SPORTS: List[SweepTarget] = [
    SweepTarget("soccer_epl", "Premier League", "Premier League", True),
    SweepTarget("soccer_spain_la_liga", "La Liga", "La Liga", True),
    SweepTarget("soccer_germany_bundesliga", "Bundesliga", "Bundesliga", True),
    SweepTarget("soccer_italy_serie_a", "Serie A", "Serie A", True),
    SweepTarget("soccer_france_ligue_one", "Ligue 1", "Ligue 1", True),
    SweepTarget("soccer_portugal_primeira_liga", "Primeira Liga", "Primeira Liga", True),
    SweepTarget("soccer_netherlands_eredivisie", "Eredivisie", "Eredivisie", True),
    SweepTarget("soccer_turkey_super_league", "Super Lig", "Super Lig", True),
    SweepTarget("soccer_belgium_first_div", "Belgian Pro League", "Belgian Pro League", True),
    SweepTarget("soccer_spl", "Scottish Premiership", "Scottish Premiership", True),
    SweepTarget("soccer_uefa_champs_league", "Champions League", "Champions League", True),
    SweepTarget("soccer_uefa_europa_league", "Europa League", "Europa League", True),
    SweepTarget("basketball_nba", "NBA", "NBA", False),
    SweepTarget("basketball_euroleague", "EuroLeague", "EuroLeague", False),
    SweepTarget("americanfootball_nfl", "NFL", "NFL", False),
    SweepTarget("americanfootball_ncaaf", "NCAA Football", "NCAA Football", False),
    SweepTarget("icehockey_nhl", "NHL", "NHL", False),
]

_TARGETS_BY_KEY = {t.key: t for t in PRE_ANALYZE_SPORTS}


def sweep_target(sport_key: str, config: EngineConfig = DEFAULT_CONFIG) -> SweepTarget:
    """Configured target for ``sport_key``, or one derived from the sport family."""
    target = _TARGETS_BY_KEY.get(sport_key)
    if target is not None:
        return target
    league = config.league(sport_key)
    name = league.name if league.key != "default" else sport_key
    return SweepTarget(sport_key, name, name, config.sport(sport_key).has_draw)


def ledger_match_id(home_team: str, away_team: str) -> str:
    """Fallback ledger key for a match with no provider event id."""
    return f"{home_team}-{away_team}"


@dataclass
class MatchAnalysis:
    """Result of :func:`analyze_match`; ``payload`` is what gets cached."""

    raw: RawMatchInput
    signals: UniversalSignals
    intel: Optional[MarketIntel]
    qualification: Optional[Qualification]
    payload: Dict[str, Any]
    unavailable: List[str] = field(default_factory=list)

    @property
    def has_min_form(self) -> bool:
        return (
            len(form_results(self.raw.home_form)) >= MIN_FORM_RESULTS
            and len(form_results(self.raw.away_form)) >= MIN_FORM_RESULTS
        )


# ---------------------------------------------------------------------------
# Data gathering
# ---------------------------------------------------------------------------

async def _optional(name: str, semaphore: asyncio.Semaphore, fn: Callable, *args):
    """Run a non-critical fetch; failures (other than rate limits) yield None."""
    async with semaphore:
        try:
            return await asyncio.to_thread(fn, *args)
        except RateLimitExceeded:
            raise
        except Exception as exc:
            logger.warning("Optional fetch %s unavailable: %s", name, exc)
            return None


async def _nothing():
    return None


def _merge_absences(*sources) -> Tuple[Tuple[Absence, ...], Tuple[Absence, ...]]:
    home: Dict[str, Absence] = {}
    away: Dict[str, Absence] = {}
    for source in sources:
        if not source:
            continue
        home_list, away_list = source
        for absence in home_list:
            home.setdefault(absence.player.lower(), absence)
        for absence in away_list:
            away.setdefault(absence.player.lower(), absence)
    return tuple(home.values()), tuple(away.values())


def build_raw_input(
    sport_key: str,
    home_team: str,
    away_team: str,
    stats: MatchStats,
    *,
    league: Optional[str] = None,
    absences: Tuple[Tuple[Absence, ...], Tuple[Absence, ...]] = ((), ()),
    prior: Optional[CachedResponse] = None,
) -> RawMatchInput:
    """
    Assemble the normaliser input.

    Live providers often stop serving historical form and head-to-head once
    a match starts, so those fall back to the prior cached entry.
    """
    home_form = stats.home_form
    away_form = stats.away_form
    h2h = stats.h2h

    if prior is not None:
        fallback = prior.fallback_inputs()
        if not is_valid_form(home_form) and "home_form" in fallback:
            home_form = fallback["home_form"]
            logger.info("Using cached form for %s", home_team)
        if not is_valid_form(away_form) and "away_form" in fallback:
            away_form = fallback["away_form"]
            logger.info("Using cached form for %s", away_team)
        if (h2h is None or h2h.total == 0) and "h2h" in fallback:
            h2h = HeadToHead(**fallback["h2h"])
            logger.info("Using cached H2H for %s vs %s", home_team, away_team)

    return RawMatchInput(
        sport=sport_key,
        home_team=home_team,
        away_team=away_team,
        league=league,
        home_form=home_form,
        away_form=away_form,
        home_record=stats.home_record,
        away_record=stats.away_record,
        home_venue_record=stats.home_venue_record,
        away_venue_record=stats.away_venue_record,
        h2h=h2h,
        home_absences=absences[0],
        away_absences=absences[1],
    )


def _inputs_dict(raw: RawMatchInput) -> Dict[str, Any]:
    def record(r):
        return asdict(r) if r is not None else None

    return {
        "home_form": raw.home_form,
        "away_form": raw.away_form,
        "home_record": record(raw.home_record),
        "away_record": record(raw.away_record),
        "home_venue_record": record(raw.home_venue_record),
        "away_venue_record": record(raw.away_venue_record),
        "h2h": record(raw.h2h),
    }


def _qualification_dict(q: Optional[Qualification]) -> Optional[Dict[str, Any]]:
    if q is None:
        return None
    vb = q.value_bet
    return {
        "winner": q.winner,
        "winner_probability": round(q.winner_probability, 4),
        "conviction": q.conviction,
        "emit": q.emit,
        "value_bet": asdict(vb) if vb else None,
        "rejection": q.rejection,
    }


def market_status(intel: Optional[MarketIntel]) -> str:
    """"unavailable" when no market intel exists, "no_edge" when it found none."""
    if intel is None:
        return "unavailable"
    if intel.value_edge.strength == "none":
        return "no_edge"
    return "priced"


# ---------------------------------------------------------------------------
# Single match
# ---------------------------------------------------------------------------

async def analyze_match(
    sport_key: str,
    home_team: str,
    away_team: str,
    odds: Optional[MatchOdds],
    *,
    stats_provider: StatsProvider,
    injury_service: Optional[InjuryService] = None,
    oracle: Optional[NarrativeOracle] = None,
    kickoff: Optional[datetime] = None,
    league: Optional[str] = None,
    has_draw: Optional[bool] = None,
    match_id: Optional[str] = None,
    previous: Optional[MatchOdds] = None,
    prior: Optional[CachedResponse] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    semaphore: Optional[asyncio.Semaphore] = None,
) -> MatchAnalysis:
    """
    Full pipeline for one match.

    A match without prices still gets signals and a narrative; its market
    status is "unavailable".

    Raises:
        StatsUnavailable: Core stats could not be fetched.
        InvalidOdds: A supplied price is <= 1.0 or non-finite.
        RateLimitExceeded: A provider refused service.
    """
    target = sweep_target(sport_key, config)
    has_draw = target.has_draw if has_draw is None else has_draw
    league = league or target.league
    semaphore = semaphore or asyncio.Semaphore(MAX_OPTIONAL_CONCURRENCY)

    stats = await asyncio.to_thread(stats_provider.get_match_stats, sport_key, home_team, away_team)

    injuries, provider_absences, referee, roster = await asyncio.gather(
        _optional("injuries", semaphore, injury_service.get_match_absences,
                  sport_key, home_team, away_team) if injury_service else _nothing(),
        _optional("absences", semaphore, stats_provider.get_absences, sport_key, home_team, away_team),
        _optional("referee", semaphore, stats_provider.get_referee, sport_key, home_team, away_team),
        _optional("roster", semaphore, stats_provider.get_roster_context, sport_key, home_team, away_team),
    )
    unavailable = [
        name for name, value in (("availability", injuries or provider_absences),
                                 ("referee", referee), ("roster", roster))
        if value is None
    ]

    raw = build_raw_input(
        sport_key, home_team, away_team, stats,
        league=league,
        absences=_merge_absences(injuries, provider_absences),
        prior=prior,
    )
    signals = normalize(raw, config)

    intel = None
    qualification = None
    if odds is not None:
        try:
            intel = compute_edge(signals, odds, has_draw, league_key=sport_key,
                                 previous_odds=previous, config=config)
        except NoMarketData as exc:
            logger.info("No market for %s vs %s: %s", home_team, away_team, exc)
        if intel is not None:
            qualification = qualify(intel, sport_key, config=config)

    prompt = build_prompt(
        raw, signals, has_draw,
        kickoff=kickoff.isoformat() if kickoff else "",
        market_summary=intel.summary if intel else "",
        config=config,
    )
    narrative = await asyncio.to_thread(resolve_narrative, oracle, prompt)

    payload = {
        "schema_version": PAYLOAD_SCHEMA_VERSION,
        "status": "ok",
        "match": {
            "match_id": match_id,
            "sport": sport_key,
            "league": league,
            "home_team": home_team,
            "away_team": away_team,
            "kickoff": kickoff.isoformat() if kickoff else None,
            "has_draw": has_draw,
        },
        "inputs": _inputs_dict(raw),
        "signals": signals.to_dict(),
        "market": intel.to_dict() if intel else None,
        "market_status": market_status(intel),
        "qualification": _qualification_dict(qualification),
        "narrative": narrative,
        "context": {"referee": referee, "roster": roster, "unavailable": unavailable},
        "generated_at": datetime.utcnow().isoformat(),
    }
    return MatchAnalysis(raw, signals, intel, qualification, payload, unavailable)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

def _new_stats() -> Dict[str, Any]:
    return {
        "sports_processed": 0,
        "matches_found": 0,
        "matches_analyzed": 0,
        "cache_writes": 0,
        "odds_snapshot_updates": 0,
        "predictions_created": 0,
        "predictions_updated": 0,
        "predictions_skipped": 0,
        "errors": [],
        "analyzed_matches": [],
        "halted": False,
        "budget_exhausted": False,
    }


@dataclass
class LedgerWrite:
    """What :func:`record_analysis` wrote for one match."""

    snapshot_updated: bool = False
    prediction_created: bool = False
    prediction_updated: bool = False

    @property
    def recorded(self) -> bool:
        return self.prediction_created or self.prediction_updated


def record_analysis(
    db: Session,
    analysis: MatchAnalysis,
    *,
    match_id: str,
    kickoff: datetime,
    league: Optional[str] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    source: str = "PRE_ANALYZE",
) -> LedgerWrite:
    """
    Write a completed analysis to the ledger.

    The consensus snapshot is upserted whenever market intel exists; a
    prediction is recorded only when the winner clears the league gate and
    both teams have enough form.  Flushes only; the caller commits.
    """
    write = LedgerWrite()
    intel = analysis.intel
    if intel is None:
        return write

    raw = analysis.raw
    upsert_odds_snapshot(
        db,
        match_ref=match_id,
        sport=raw.sport,
        home_team=raw.home_team,
        away_team=raw.away_team,
        match_date=kickoff,
        odds=intel.odds,
        intel=intel,
        league=league,
        thresholds=config.edges,
    )
    write.snapshot_updated = True

    qualification = analysis.qualification
    if not (qualification.emit and analysis.has_min_form):
        logger.debug(
            "SKIP prediction %s vs %s: emit=%s min_form=%s",
            raw.home_team, raw.away_team, qualification.emit, analysis.has_min_form,
        )
        return write

    analysis_date = datetime.utcnow().date()
    created = db.get(Prediction, prediction_id(raw.sport, match_id, analysis_date)) is None
    row = record_prediction(
        db,
        sport_key=raw.sport,
        match_id=match_id,
        home_team=raw.home_team,
        away_team=raw.away_team,
        kickoff=kickoff,
        intel=intel,
        qualification=qualification,
        league=league,
        analysis_date=analysis_date,
        source=source,
    )
    write.prediction_created = created
    write.prediction_updated = not created and not row.is_resolved
    return write


async def _pre_analyze_event(
    db: Session,
    target: SweepTarget,
    event: Dict,
    *,
    stats_provider: StatsProvider,
    oracle: Optional[NarrativeOracle],
    cache: Optional[MatchCache],
    injury_service: Optional[InjuryService],
    config: EngineConfig,
    semaphore: asyncio.Semaphore,
) -> Tuple[MatchAnalysis, LedgerWrite]:
    home_team = event["home_team"]
    away_team = event["away_team"]
    match_id = event.get("id") or ledger_match_id(home_team, away_team)
    kickoff = parse_commence_time(event.get("commence_time")) or datetime.utcnow()

    odds = consensus_odds(event)
    previous = previous_odds(db, match_id, target.key)

    prior = None
    if cache is not None:
        prior = await cache.get(cache_key(home_team, away_team, target.key, kickoff))

    analysis = await analyze_match(
        target.key, home_team, away_team, odds,
        stats_provider=stats_provider,
        injury_service=injury_service,
        oracle=oracle,
        kickoff=kickoff,
        league=target.league,
        has_draw=target.has_draw,
        match_id=match_id,
        previous=previous,
        prior=prior,
        config=config,
        semaphore=semaphore,
    )
    if analysis.intel is None:
        raise NoMarketData(f"no market intel for {home_team} vs {away_team}")
    write = record_analysis(db, analysis, match_id=match_id, kickoff=kickoff,
                            league=target.league, config=config)
    return analysis, write


def _match_summary(target: SweepTarget, analysis: MatchAnalysis, write: LedgerWrite) -> Dict[str, Any]:
    match = analysis.payload["match"]
    qualification = analysis.qualification
    vb = qualification.value_bet
    return {
        "match_id": match["match_id"],
        "sport": target.key,
        "match": f"{match['home_team']} vs {match['away_team']}",
        "winner": qualification.winner,
        "conviction": qualification.conviction,
        "value_edge": analysis.intel.value_edge.label,
        "value_bet": vb.side if vb else None,
        "recorded": write.recorded,
    }


async def run_pre_analysis(
    db: Session,
    *,
    odds_client: OddsAPIClient,
    stats_provider: StatsProvider,
    oracle: Optional[NarrativeOracle] = None,
    cache: Optional[MatchCache] = None,
    injury_service: Optional[InjuryService] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    sports: Optional[List[SweepTarget]] = None,
    now: Optional[datetime] = None,
    budget_seconds: Optional[float] = None,
    inter_match_delay: float = INTER_MATCH_DELAY,
    max_concurrency: int = MAX_OPTIONAL_CONCURRENCY,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    """
    Pre-analyse every upcoming match in the configured sports.

    Returns a summary dict with the sweep statistics plus ``status``,
    ``timestamp`` and ``duration_seconds``.
    """
    sports = PRE_ANALYZE_SPORTS if sports is None else sports
    budget = DEFAULT_BUDGET_SECONDS if budget_seconds is None else budget_seconds
    start_time = datetime.utcnow()
    started = clock()
    semaphore = asyncio.Semaphore(max_concurrency)
    stats = _new_stats()
    first_match = True
    pending_cache: List[Tuple[SweepTarget, MatchAnalysis]] = []

    def over_budget() -> bool:
        return clock() - started >= budget

    logger.info("Starting pre-analysis sweep over %d sports", len(sports))

    for target in sports:
        if stats["halted"] or stats["budget_exhausted"]:
            break

        try:
            events = await asyncio.to_thread(
                odds_client.get_upcoming, target.key,
                now=now, horizon=SWEEP_HORIZON, limit=MAX_EVENTS_PER_SPORT,
            )
        except RateLimitExceeded as exc:
            logger.warning("Odds provider rate limit hit at %s; halting sweep", target.key)
            db.add(DataFetch(data_source="the_odds_api", sport=target.key, success=False,
                             records_fetched=0, error_message=str(exc)[:500]))
            stats["errors"].append(f"{target.key}: {exc}")
            stats["halted"] = True
            break
        except OddsUnavailable as exc:
            logger.error("Odds feed unavailable for %s: %s", target.key, exc)
            db.add(DataFetch(data_source="the_odds_api", sport=target.key, success=False,
                             records_fetched=0, error_message=str(exc)[:500]))
            stats["errors"].append(f"{target.key}: {exc}")
            continue

        db.add(DataFetch(data_source="the_odds_api", sport=target.key, success=True,
                         records_fetched=len(events)))
        stats["sports_processed"] += 1
        stats["matches_found"] += len(events)

        for event in events:
            if over_budget():
                logger.warning("Pre-analysis budget of %.0fs spent; stopping", budget)
                stats["budget_exhausted"] = True
                break
            if not first_match and inter_match_delay > 0:
                await asyncio.sleep(inter_match_delay)
            first_match = False

            label = f"{event.get('home_team')} vs {event.get('away_team')}"
            try:
                with db.begin_nested():  # Savepoint: rolls back only this match on error
                    analysis, write = await _pre_analyze_event(
                        db, target, event,
                        stats_provider=stats_provider,
                        oracle=oracle,
                        cache=cache,
                        injury_service=injury_service,
                        config=config,
                        semaphore=semaphore,
                    )
                stats["matches_analyzed"] += 1
                stats["odds_snapshot_updates"] += int(write.snapshot_updated)
                if write.prediction_created:
                    stats["predictions_created"] += 1
                elif write.prediction_updated:
                    stats["predictions_updated"] += 1
                else:
                    stats["predictions_skipped"] += 1
                stats["analyzed_matches"].append(_match_summary(target, analysis, write))
                pending_cache.append((target, analysis))
            except RateLimitExceeded as exc:
                logger.warning("Rate limit during %s; halting sweep: %s", label, exc)
                stats["errors"].append(f"{label}: {exc}")
                stats["halted"] = True
                break
            except Exception as exc:
                logger.error("Error pre-analysing %s: %s", label, exc, exc_info=True)
                stats["errors"].append(f"{label}: {str(exc)[:100]}")
                continue

    db.commit()

    # Cache writes go through their own sessions, after the sweep transaction.
    if cache is not None:
        for target, analysis in pending_cache:
            match = analysis.payload["match"]
            kickoff = parse_commence_time(match["kickoff"])
            try:
                await cache.put(match["home_team"], match["away_team"], target.key, kickoff,
                                analysis.payload, ttl_class=PRE_ANALYZED, kickoff=kickoff)
                stats["cache_writes"] += 1
            except Exception as exc:
                logger.error("Cache write failed for %s vs %s: %s",
                             match["home_team"], match["away_team"], exc, exc_info=True)
                stats["errors"].append(f"cache {match['home_team']} vs {match['away_team']}: {exc}")

    return _summary(start_time, stats)


def run_pre_analysis_job() -> Dict[str, Any]:
    """Synchronous entry point for the scheduler and the admin endpoint."""
    from backend.services.cache import get_match_cache
    from backend.services.injuries import get_injury_service
    from backend.services.odds import get_odds_client
    from backend.services.stats import get_stats_provider

    start_time = datetime.utcnow()
    db = SessionLocal()
    try:
        return asyncio.run(run_pre_analysis(
            db,
            odds_client=get_odds_client(),
            stats_provider=get_stats_provider(),
            cache=get_match_cache(),
            injury_service=get_injury_service(),
        ))
    except Exception as exc:
        logger.error("Fatal error in pre-analysis: %s", exc, exc_info=True)
        db.rollback()
        stats = _new_stats()
        stats["errors"].append(f"Fatal: {exc}")
        return _summary(start_time, stats, status="failed")
    finally:
        db.close()


def _summary(start_time: datetime, stats: Dict[str, Any], status: str = "ok") -> Dict[str, Any]:
    duration = (datetime.utcnow() - start_time).total_seconds()
    if status == "ok" and stats["halted"]:
        status = "halted"
    result = dict(stats)
    result.update({
        "status": status,
        "timestamp": datetime.utcnow().isoformat(),
        "duration_seconds": round(duration, 2),
    })
    logger.info(
        "Pre-analysis complete in %.1fs: %d sports, %d/%d matches, %d predictions, %d errors",
        duration,
        stats["sports_processed"],
        stats["matches_analyzed"],
        stats["matches_found"],
        stats["predictions_created"],
        len(stats["errors"]),
    )
    return result
