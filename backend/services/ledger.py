"""
Prediction ledger: idempotent prediction records and consensus odds snapshots.

Both tables are written by the scheduled sweep and by on-demand analysis,
possibly at the same moment, so every write is a keyed upsert:

    predictions     primary key  pre_{sport}_{match}_{YYYY-MM-DD}
    odds_snapshots  unique       (match_ref, sport, bookmaker="consensus")

Outputs are deterministic functions of the same inputs, so last-write-wins
on mutable fields is safe.  An insert that loses a race against a concurrent
writer is retried as an update.  A prediction whose outcome has been settled
is never modified again except through ``settle_prediction``.

Functions here flush but never commit; the caller owns the transaction.
"""

import logging
from datetime import date, datetime
from typing import Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.conviction import Qualification
from backend.core.errors import PersistenceConflict
from backend.core.market_intel import MarketIntel
from backend.core.odds_math import DRAW, HOME, MatchOdds
from backend.core.sport_config import DEFAULT_CONFIG, EdgeThresholds
from backend.models import OddsSnapshot, Prediction

logger = logging.getLogger(__name__)

CONSENSUS_BOOKMAKER = "consensus"
SETTLED_OUTCOMES = ("HIT", "MISS", "VOID")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Keys and text
# ---------------------------------------------------------------------------

def prediction_id(sport_key: str, match_id: str, analysis_date: date) -> str:
    """Deterministic prediction key; date-grained so same-day reruns collide."""
    if isinstance(analysis_date, datetime):
        analysis_date = analysis_date.date()
    return f"pre_{sport_key}_{match_id}_{analysis_date.isoformat()}"


def prediction_text(side: str, home_team: str, away_team: str) -> str:
    if side == HOME:
        return f"Home Win - {home_team}"
    if side == DRAW:
        return "Draw"
    return f"Away Win - {away_team}"


def _side_name(side: str, home_team: str, away_team: str) -> str:
    return {HOME: home_team, DRAW: "Draw"}.get(side, away_team)


def build_reasoning(
    intel: MarketIntel,
    qualification: Qualification,
    home_team: str,
    away_team: str,
) -> str:
    side = qualification.winner
    model_p = intel.model_probability.get(side)
    market_p = intel.implied_probability.get(side)
    vb = qualification.value_bet
    if vb is not None:
        return (
            f"VALUE BET: {_side_name(vb.side, home_team, away_team)} at {vb.odds:.2f} odds "
            f"(+{vb.edge:.1f}% edge). Model: {model_p:.0%} vs Market: {market_p:.0%}"
        )
    return (
        f"{prediction_text(side, home_team, away_team)}. "
        f"Model: {model_p:.0%} vs Market: {market_p:.0%}. {intel.summary}"
    )


def alert_level(best_edge: float, thresholds: EdgeThresholds = DEFAULT_CONFIG.edges) -> Optional[str]:
    """Coarse alert tier from the best edge magnitude (points)."""
    if best_edge > thresholds.alert_high:
        return "HIGH"
    if best_edge > thresholds.alert_medium:
        return "MEDIUM"
    if best_edge > thresholds.alert_low:
        return "LOW"
    return None


# ---------------------------------------------------------------------------
# Upsert helper
# ---------------------------------------------------------------------------

def _insert(db: Session, row: T) -> T:
    """Insert ``row`` inside a SAVEPOINT.

    Raises:
        PersistenceConflict: If a concurrent writer already holds the key.
    """
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError as exc:
        raise PersistenceConflict(str(exc.orig)) from exc
    return row


def _upsert(db: Session, load: Callable[[], Optional[T]], create: Callable[[], T]) -> tuple:
    """Return ``(row, created)``; a lost insert race falls back to the stored row."""
    existing = load()
    if existing is not None:
        return existing, False
    try:
        return _insert(db, create()), True
    except PersistenceConflict as exc:
        logger.info("Upsert conflict resolved as update: %s", exc)
        existing = load()
        if existing is None:
            raise
        return existing, False


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------

def record_prediction(
    db: Session,
    *,
    sport_key: str,
    match_id: str,
    home_team: str,
    away_team: str,
    kickoff: datetime,
    intel: MarketIntel,
    qualification: Qualification,
    league: Optional[str] = None,
    analysis_date: Optional[date] = None,
    reasoning: Optional[str] = None,
    source: str = "PRE_ANALYZE",
) -> Prediction:
    """Create or refresh the prediction for (sport, match, analysis date).

    On a key hit the mutable fields (odds, probabilities, conviction,
    reasoning, value-bet fields) are refreshed.  A settled prediction is
    returned untouched.
    """
    analysis_date = analysis_date or datetime.utcnow().date()
    pid = prediction_id(sport_key, match_id, analysis_date)
    side = qualification.winner
    odds = intel.odds.get(side)
    reasoning = reasoning or build_reasoning(intel, qualification, home_team, away_team)

    def create() -> Prediction:
        return Prediction(
            id=pid,
            match_id=match_id,
            match_name=f"{home_team} vs {away_team}",
            sport=sport_key,
            league=league,
            kickoff=kickoff,
            type="MATCH_RESULT",
            prediction=prediction_text(side, home_team, away_team),
            predicted_side=side,
            conviction=qualification.conviction,
            source=source,
            outcome="PENDING",
            opening_odds=odds,
        )

    row, created = _upsert(db, lambda: db.get(Prediction, pid), create)

    if row.is_resolved:
        logger.info("Prediction %s already settled (%s); not updating", pid, row.outcome)
        return row

    row.prediction = prediction_text(side, home_team, away_team)
    row.predicted_side = side
    row.reasoning = reasoning
    row.conviction = qualification.conviction
    row.odds = odds
    row.implied_prob = intel.implied_probability.get(side)
    row.home_win_prob = intel.model_probability.home
    row.away_win_prob = intel.model_probability.away
    row.draw_prob = intel.model_probability.draw

    vb = qualification.value_bet
    row.value_bet_side = vb.side if vb else None
    row.value_bet_odds = vb.odds if vb else None
    row.value_bet_edge = vb.edge if vb else None
    row.edge_bucket = vb.bucket if vb else None
    if not created:
        row.updated_at = datetime.utcnow()

    db.flush()
    logger.debug("%s prediction %s", "Created" if created else "Updated", pid)
    return row


def settle_prediction(
    db: Session,
    prediction_id_: str,
    outcome: str,
    actual_result: Optional[str] = None,
) -> Optional[Prediction]:
    """Record the result of a prediction; the only path that writes ``outcome``.

    Returns ``None`` when the prediction does not exist.

    Raises:
        ValueError: If ``outcome`` is not HIT, MISS or VOID.
    """
    if outcome not in SETTLED_OUTCOMES:
        raise ValueError(f"outcome must be one of {SETTLED_OUTCOMES}, got {outcome!r}")
    row = db.get(Prediction, prediction_id_)
    if row is None:
        return None
    row.outcome = outcome
    row.actual_result = actual_result
    row.validated_at = datetime.utcnow()
    if row.value_bet_side:
        row.value_bet_outcome = outcome
    db.flush()
    return row


# ---------------------------------------------------------------------------
# Odds snapshots
# ---------------------------------------------------------------------------

def get_odds_snapshot(db: Session, match_ref: str, sport: str) -> Optional[OddsSnapshot]:
    return (
        db.query(OddsSnapshot)
        .filter(
            OddsSnapshot.match_ref == match_ref,
            OddsSnapshot.sport == sport,
            OddsSnapshot.bookmaker == CONSENSUS_BOOKMAKER,
        )
        .one_or_none()
    )


def previous_odds(db: Session, match_ref: str, sport: str) -> Optional[MatchOdds]:
    """Prices from the stored snapshot, for line-movement detection."""
    snap = get_odds_snapshot(db, match_ref, sport)
    if snap is None:
        return None
    return MatchOdds(home=snap.home_odds, away=snap.away_odds, draw=snap.draw_odds)


def _change(new: Optional[float], old: Optional[float]) -> Optional[float]:
    if new is None or old is None:
        return None
    return round(new - old, 4)


def upsert_odds_snapshot(
    db: Session,
    *,
    match_ref: str,
    sport: str,
    home_team: str,
    away_team: str,
    match_date: datetime,
    odds: MatchOdds,
    intel: Optional[MarketIntel] = None,
    league: Optional[str] = None,
    thresholds: EdgeThresholds = DEFAULT_CONFIG.edges,
    now: Optional[datetime] = None,
) -> OddsSnapshot:
    """Overwrite the consensus snapshot for a match with the latest view.

    The previous prices shift into ``prev_*`` and ``*_change``; opening
    prices are written once.  ``updated_at`` is refreshed on every call,
    even when nothing else changed.
    """
    now = now or datetime.utcnow()

    def create() -> OddsSnapshot:
        return OddsSnapshot(
            match_ref=match_ref,
            sport=sport,
            bookmaker=CONSENSUS_BOOKMAKER,
            home_team=home_team,
            away_team=away_team,
            match_date=match_date,
            home_odds=odds.home,
            away_odds=odds.away,
            draw_odds=odds.draw,
            opening_home_odds=odds.home,
            opening_away_odds=odds.away,
            opening_draw_odds=odds.draw,
            created_at=now,
        )

    snap, created = _upsert(db, lambda: get_odds_snapshot(db, match_ref, sport), create)

    if not created:
        snap.prev_home_odds = snap.home_odds
        snap.prev_away_odds = snap.away_odds
        snap.prev_draw_odds = snap.draw_odds
        snap.home_change = _change(odds.home, snap.home_odds)
        snap.away_change = _change(odds.away, snap.away_odds)
        snap.draw_change = _change(odds.draw, snap.draw_odds)
        snap.home_odds = odds.home
        snap.away_odds = odds.away
        snap.draw_odds = odds.draw

    snap.league = league
    snap.home_team = home_team
    snap.away_team = away_team
    snap.match_date = match_date

    if intel is not None:
        model = intel.model_probability
        snap.model_home_prob = model.home
        snap.model_away_prob = model.away
        snap.model_draw_prob = model.draw
        snap.home_edge = round(intel.edges.get("home", 0.0), 2)
        snap.away_edge = round(intel.edges.get("away", 0.0), 2)
        snap.draw_edge = round(intel.edges["draw"], 2) if "draw" in intel.edges else None
        snap.has_steam_move = bool(intel.line_movement and intel.line_movement.steam_move)

        best_edge = max(intel.edges.values())
        level = alert_level(best_edge, thresholds)
        snap.has_value_edge = best_edge >= thresholds.value_flag
        snap.alert_level = level
        snap.alert_note = intel.value_edge.label if level else None

    snap.updated_at = now
    db.flush()
    return snap


def snapshot_to_dict(snap: OddsSnapshot) -> Dict:
    """Shape consumed by downstream alerting."""
    return {
        "match_ref": snap.match_ref,
        "sport": snap.sport,
        "league": snap.league,
        "home_team": snap.home_team,
        "away_team": snap.away_team,
        "match_date": snap.match_date.isoformat() if snap.match_date else None,
        "odds": {"home": snap.home_odds, "away": snap.away_odds, "draw": snap.draw_odds},
        "model_prob": {
            "home": snap.model_home_prob,
            "away": snap.model_away_prob,
            "draw": snap.model_draw_prob,
        },
        "edge": {"home": snap.home_edge, "away": snap.away_edge, "draw": snap.draw_edge},
        "has_steam_move": bool(snap.has_steam_move),
        "has_value_edge": bool(snap.has_value_edge),
        "alert_level": snap.alert_level,
        "alert_note": snap.alert_note,
        "updated_at": snap.updated_at.isoformat() if snap.updated_at else None,
    }
