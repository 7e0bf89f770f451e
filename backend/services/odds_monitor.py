"""
Event-driven odds monitor for steam detection between polls.

Complements the daily pre-analysis sweep by polling The Odds API at a
configurable interval and flagging a match when:

    1. The consensus home price moves sharply since the last poll
       (a steam move: informed money has entered the market).
    2. The move is large enough to look suspicious (> 0.20 in price).
    3. Any directional move lands inside the golden window (< 2 hours to
       kickoff), where late team news is priced in.

Design:
    - Runs as an APScheduler interval job (default: every 15 minutes).
    - Keeps an in-memory rolling history of consensus prices per match.
    - Emits ``PriceMove`` events to registered callbacks; the shared
      monitor writes them into the consensus odds snapshot.
    - A sport whose fetch fails keeps its history for the next poll.
    - Stops polling once the provider quota drops below the reserve.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from backend.core.errors import NoMarketData, OddsUnavailable, RateLimitExceeded
from backend.core.market_intel import LineMovement, detect_line_movement
from backend.core.odds_math import MatchOdds
from backend.core.sport_config import DEFAULT_CONFIG, MovementThresholds
from backend.models import SessionLocal
from backend.services.ledger import upsert_odds_snapshot
from backend.services.odds import (
    MIN_API_QUOTA_RESERVE,
    OddsAPIClient,
    consensus_odds,
    parse_commence_time,
    upcoming_events,
)

logger = logging.getLogger(__name__)

DEFAULT_MONITOR_SPORTS = ("soccer_epl", "basketball_nba", "americanfootball_nfl", "icehockey_nhl")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class PriceSnapshot:
    """Point-in-time consensus price for one match."""

    match_id: str
    sport: str
    home_team: str
    away_team: str
    odds: MatchOdds
    kickoff: Optional[datetime] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PriceMove:
    """Detected change between two consecutive polls."""

    match_id: str
    sport: str
    home_team: str
    away_team: str
    old_odds: MatchOdds
    new_odds: MatchOdds
    movement: LineMovement
    timestamp: datetime = field(default_factory=datetime.utcnow)
    is_significant: bool = False
    minutes_to_kickoff: Optional[float] = None
    kickoff: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "match_id": self.match_id,
            "sport": self.sport,
            "match": f"{self.home_team} vs {self.away_team}",
            "old_odds": self.old_odds.as_dict(),
            "new_odds": self.new_odds.as_dict(),
            "direction": self.movement.direction,
            "magnitude": self.movement.magnitude,
            "steam_move": self.movement.steam_move,
            "suspicious": self.movement.suspicious,
            "significant": self.is_significant,
            "minutes_to_kickoff": self.minutes_to_kickoff,
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Core monitor
# ---------------------------------------------------------------------------

class OddsMonitor:
    """
    Polls consensus prices and detects steam moves.

    Usage::

        monitor = OddsMonitor(client, sports=["soccer_epl"])
        monitor.on_significant_move(my_callback)
        monitor.poll()   # call from APScheduler
    """

    GOLDEN_WINDOW_MINUTES = 120
    HISTORY_LENGTH = 50
    HORIZON = timedelta(hours=48)

    def __init__(
        self,
        client: Optional[OddsAPIClient] = None,
        sports: Iterable[str] = DEFAULT_MONITOR_SPORTS,
        thresholds: MovementThresholds = DEFAULT_CONFIG.movement,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._client = client or OddsAPIClient()
        self.sports = list(sports)
        self.thresholds = thresholds
        self._clock = clock
        self._history: Dict[str, List[PriceSnapshot]] = {}
        self._callbacks: List[Callable[[PriceMove], None]] = []
        self._last_poll: Optional[datetime] = None
        self._recent: List[PriceMove] = []

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    def on_significant_move(self, callback: Callable[[PriceMove], None]) -> None:
        """Register a callback fired when a significant price move is detected."""
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _quota_low(self) -> bool:
        remaining = self._client.requests_remaining
        return remaining is not None and remaining < MIN_API_QUOTA_RESERVE

    def poll(self) -> Dict:
        """
        Fetch current prices, detect moves, and fire callbacks.

        Returns a summary dict for logging / the admin status endpoint.
        """
        now = self._clock()

        if self._quota_low():
            logger.warning(
                "Odds monitor paused: API quota low (%d remaining)",
                self._client.requests_remaining,
            )
            return {"status": "quota_paused", "remaining": self._client.requests_remaining}

        moves: List[PriceMove] = []
        seen: set = set()
        refreshed: set = set()
        for sport in self.sports:
            try:
                events = upcoming_events(self._client.fetch_odds(sport), now=now, horizon=self.HORIZON)
            except RateLimitExceeded as exc:
                logger.warning("Odds monitor stopped at %s: %s", sport, exc)
                break
            except OddsUnavailable as exc:
                logger.warning("Odds monitor skipped %s: %s", sport, exc)
                continue
            if events:
                refreshed.add(sport)

            for event in events:
                try:
                    odds = consensus_odds(event)
                except NoMarketData:
                    continue
                snap = PriceSnapshot(
                    match_id=event.get("id", ""),
                    sport=sport,
                    home_team=event.get("home_team", ""),
                    away_team=event.get("away_team", ""),
                    odds=odds,
                    kickoff=parse_commence_time(event.get("commence_time")),
                    timestamp=now,
                )
                seen.add(snap.match_id)
                history = self._history.get(snap.match_id, [])
                if history:
                    move = self._detect_move(history[-1], snap, now)
                    if move is not None:
                        moves.append(move)
                history.append(snap)
                self._history[snap.match_id] = history[-self.HISTORY_LENGTH:]

        significant = [m for m in moves if m.is_significant]
        for move in significant:
            for cb in self._callbacks:
                try:
                    cb(move)
                except Exception as exc:
                    logger.error("Odds monitor callback error: %s", exc)

        self._last_poll = now
        self._recent = (self._recent + significant)[-self.HISTORY_LENGTH:]
        self._prune(seen, refreshed, now)

        logger.info(
            "Odds monitor: %d matches, %d moves (%d significant)",
            len(self._history), len(moves), len(significant),
        )
        return {
            "status": "ok",
            "matches_tracked": len(self._history),
            "movements_detected": len(moves),
            "significant_movements": len(significant),
            "timestamp": now.isoformat(),
        }

    def _prune(self, seen: set, refreshed: set, now: datetime) -> None:
        """Drop matches that kicked off, or that a non-empty feed for their sport no longer lists.

        A sport whose fetch failed, hit the rate limit or came back empty
        keeps its history so the next good poll still sees the move.
        """
        for match_id, history in list(self._history.items()):
            last = history[-1]
            started = last.kickoff is not None and last.kickoff <= now
            dropped = last.sport in refreshed and match_id not in seen
            if started or dropped:
                del self._history[match_id]

    # ------------------------------------------------------------------
    # Movement detection
    # ------------------------------------------------------------------

    def _detect_move(self, prev: PriceSnapshot, curr: PriceSnapshot, now: datetime) -> Optional[PriceMove]:
        movement = detect_line_movement(curr.odds, prev.odds, self.thresholds)
        if movement.direction == "stable" and not movement.suspicious:
            return None

        minutes_to_kickoff = None
        if curr.kickoff is not None:
            minutes_to_kickoff = (curr.kickoff - now).total_seconds() / 60.0

        significant = movement.steam_move or movement.suspicious
        if minutes_to_kickoff is not None and 0 < minutes_to_kickoff <= self.GOLDEN_WINDOW_MINUTES:
            significant = significant or movement.direction != "stable"

        return PriceMove(
            match_id=curr.match_id,
            sport=curr.sport,
            home_team=curr.home_team,
            away_team=curr.away_team,
            old_odds=prev.odds,
            new_odds=curr.odds,
            movement=movement,
            timestamp=curr.timestamp,
            is_significant=significant,
            minutes_to_kickoff=minutes_to_kickoff,
            kickoff=curr.kickoff,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_price_history(self, match_id: str) -> List[PriceSnapshot]:
        """Return all captured snapshots for a match."""
        return list(self._history.get(match_id, []))

    def get_status(self) -> Dict:
        """Return monitor status for the admin endpoint."""
        return {
            "active": True,
            "sports": self.sports,
            "matches_tracked": len(self._history),
            "last_poll": self._last_poll.isoformat() if self._last_poll else None,
            "requests_remaining": self._client.requests_remaining,
            "recent_moves": [m.to_dict() for m in self._recent[-10:]],
        }


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def record_move(move: PriceMove, session_factory: Callable[[], Session] = SessionLocal) -> None:
    """Write a significant move into the consensus odds snapshot.

    The new prices go through the usual snapshot upsert (previous prices
    shift into ``prev_*``); the steam flag comes from the detected movement.
    """
    db = session_factory()
    try:
        snap = upsert_odds_snapshot(
            db,
            match_ref=move.match_id,
            sport=move.sport,
            home_team=move.home_team,
            away_team=move.away_team,
            match_date=move.kickoff or move.timestamp,
            odds=move.new_odds,
            now=move.timestamp,
        )
        snap.has_steam_move = move.movement.steam_move
        db.commit()
        logger.info("Recorded %s move for %s", move.movement.direction, move.match_id)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_odds_monitor: Optional[OddsMonitor] = None


def get_odds_monitor() -> OddsMonitor:
    global _odds_monitor
    if _odds_monitor is None:
        _odds_monitor = OddsMonitor()
        _odds_monitor.on_significant_move(record_move)
    return _odds_monitor
