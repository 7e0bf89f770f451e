"""
The Odds API integration for multi-sport head-to-head prices.
https://the-odds-api.com/

Prices are requested in decimal format for the h2h (match result) market.
The engine works from a single consensus price per outcome: the mean of
every bookmaker's quote, matched to the outcome by team name (or "Draw").

Quota
-----
Every response carries ``x-requests-remaining``.  Once the remaining quota
drops below ``MIN_API_QUOTA_RESERVE`` (or the API answers 429) the client
raises ``RateLimitExceeded`` so the sweep stops issuing provider calls for
the rest of the run instead of burning the reserve.
"""

import requests
import os
import logging
from typing import List, Dict, Optional
from datetime import datetime, timedelta, timezone

from backend.core.errors import NoMarketData, OddsUnavailable, RateLimitExceeded
from backend.core.odds_math import MatchOdds, average_price

logger = logging.getLogger(__name__)

API_KEY = os.getenv("THE_ODDS_API_KEY")
BASE_URL = "https://api.the-odds-api.com/v4"

MIN_API_QUOTA_RESERVE = int(os.getenv("ODDS_API_QUOTA_RESERVE", "10"))
DRAW_NAMES = frozenset({"draw", "the draw", "tie"})


def parse_commence_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 ``commence_time`` into a naive UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable commence_time: %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def consensus_odds(event: Dict, market_key: str = "h2h") -> MatchOdds:
    """
    Average each outcome's decimal price across all bookmakers.

    Outcome names are matched against the event's home/away team names;
    "Draw" / "The Draw" map to the draw.  The draw is ``None`` when no
    bookmaker quotes one.

    Raises:
        NoMarketData: If no bookmaker prices the home or the away side.
    """
    home_team = (event.get("home_team") or "").strip().lower()
    away_team = (event.get("away_team") or "").strip().lower()

    prices: Dict[str, List[float]] = {"home": [], "away": [], "draw": []}
    for book in event.get("bookmakers", []):
        for market in book.get("markets", []):
            if market.get("key") != market_key:
                continue
            for outcome in market.get("outcomes", []):
                name = (outcome.get("name") or "").strip().lower()
                price = outcome.get("price")
                if price is None:
                    continue
                if name == home_team:
                    prices["home"].append(float(price))
                elif name == away_team:
                    prices["away"].append(float(price))
                elif name in DRAW_NAMES:
                    prices["draw"].append(float(price))

    home = average_price(prices["home"])
    away = average_price(prices["away"])
    if home is None or away is None:
        raise NoMarketData(
            f"No consensus h2h price for {event.get('home_team')} vs {event.get('away_team')}"
        )
    draw = average_price(prices["draw"])
    return MatchOdds(
        home=round(home, 3),
        away=round(away, 3),
        draw=round(draw, 3) if draw is not None else None,
    )


def upcoming_events(
    events: List[Dict],
    now: Optional[datetime] = None,
    horizon: timedelta = timedelta(hours=48),
    limit: int = 10,
) -> List[Dict]:
    """Events kicking off within ``horizon`` of ``now``, soonest first."""
    now = now or datetime.utcnow()
    window = []
    for event in events:
        kickoff = parse_commence_time(event.get("commence_time"))
        if kickoff is not None and now < kickoff <= now + horizon:
            window.append((kickoff, event))
    window.sort(key=lambda pair: pair[0])
    return [event for _, event in window[:limit]]


class OddsAPIClient:
    """Client for The Odds API"""

    def __init__(self, api_key: Optional[str] = None, timeout: int = 10):
        self.api_key = api_key or API_KEY
        if not self.api_key:
            raise ValueError("THE_ODDS_API_KEY not set in environment")
        self.timeout = timeout
        self.requests_remaining: Optional[int] = None

    def _guard_quota(self) -> None:
        if self.requests_remaining is not None and self.requests_remaining < MIN_API_QUOTA_RESERVE:
            raise RateLimitExceeded("odds_api", self.requests_remaining)

    def fetch_odds(
        self,
        sport_key: str,
        markets: str = "h2h",
        regions: str = os.getenv("ODDS_API_REGIONS", "uk,eu,us"),
        odds_format: str = "decimal",
    ) -> List[Dict]:
        """
        Fetch current events and bookmaker quotes for one sport.

        Raises:
            RateLimitExceeded: On HTTP 429 or when the quota reserve is reached.
            OddsUnavailable: On transport or HTTP errors.
        """
        self._guard_quota()
        url = f"{BASE_URL}/sports/{sport_key}/odds"

        params = {
            "apiKey": self.api_key,
            "regions": regions,
            "markets": markets,
            "oddsFormat": odds_format,
        }

        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            if response.status_code == 429:
                raise RateLimitExceeded("odds_api", 0)
            response.raise_for_status()

            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Odds API error for %s: %s", sport_key, e)
            raise OddsUnavailable(f"{sport_key}: {e}") from e

        remaining = response.headers.get("x-requests-remaining")
        used = response.headers.get("x-requests-used")
        if remaining is not None:
            try:
                self.requests_remaining = int(float(remaining))
            except ValueError:
                pass
        logger.info(
            "Odds API %s: %d events fetched. Quota: %s used, %s remaining",
            sport_key, len(data), used, remaining,
        )
        return data

    def get_odds(self, sport_key: str, **kwargs) -> List[Dict]:
        """Like :meth:`fetch_odds`, but transport errors yield an empty list."""
        try:
            return self.fetch_odds(sport_key, **kwargs)
        except OddsUnavailable:
            return []

    def get_upcoming(
        self,
        sport_key: str,
        now: Optional[datetime] = None,
        horizon: timedelta = timedelta(hours=48),
        limit: int = 10,
    ) -> List[Dict]:
        """Events for ``sport_key`` kicking off within the horizon.

        Raises:
            RateLimitExceeded: As :meth:`fetch_odds`.
            OddsUnavailable: As :meth:`fetch_odds`.
        """
        return upcoming_events(self.fetch_odds(sport_key), now=now, horizon=horizon, limit=limit)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_odds_client: Optional[OddsAPIClient] = None


def get_odds_client() -> OddsAPIClient:
    global _odds_client
    if _odds_client is None:
        _odds_client = OddsAPIClient()
    return _odds_client
