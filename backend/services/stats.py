"""
Stats provider contract and HTTP adapter.

The engine consumes per-match form, season records, venue splits and
head-to-head from an external stats service.  ``StatsProvider`` is the
contract; ``HttpStatsProvider`` talks to a JSON service configured by
``STATS_API_URL`` / ``STATS_API_KEY``:

    GET {base}/match-stats?sport=&home=&away=   -> core stats (critical)
    GET {base}/referee?sport=&home=&away=       -> referee context (optional)
    GET {base}/roster?sport=&home=&away=        -> roster context (optional)
    GET {base}/absences?sport=&home=&away=      -> structured absences (optional)

Core stats failing raises ``StatsUnavailable`` (the match is aborted);
optional context returns ``None`` when the service has nothing.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests

from backend.core.errors import RateLimitExceeded, StatsUnavailable
from backend.core.signals import Absence, HeadToHead, SeasonRecord

logger = logging.getLogger(__name__)

STATS_API_URL = os.getenv("STATS_API_URL")
STATS_API_KEY = os.getenv("STATS_API_KEY")


@dataclass(frozen=True)
class MatchStats:
    """Core statistical inputs for one fixture."""

    home_form: str = ""
    away_form: str = ""
    home_record: Optional[SeasonRecord] = None
    away_record: Optional[SeasonRecord] = None
    home_venue_record: Optional[SeasonRecord] = None
    away_venue_record: Optional[SeasonRecord] = None
    h2h: Optional[HeadToHead] = None


def _record(data: Optional[Dict[str, Any]]) -> Optional[SeasonRecord]:
    if not data:
        return None
    return SeasonRecord(
        played=int(data.get("played", 0)),
        won=int(data.get("won", 0)),
        drawn=int(data.get("drawn", 0)),
        lost=int(data.get("lost", 0)),
        scored=float(data.get("scored", 0)),
        conceded=float(data.get("conceded", 0)),
    )


def match_stats_from_dict(data: Dict[str, Any]) -> MatchStats:
    h2h = data.get("h2h")
    return MatchStats(
        home_form=data.get("home_form") or "",
        away_form=data.get("away_form") or "",
        home_record=_record(data.get("home_record")),
        away_record=_record(data.get("away_record")),
        home_venue_record=_record(data.get("home_venue_record")),
        away_venue_record=_record(data.get("away_venue_record")),
        h2h=HeadToHead(
            total=int(h2h.get("total", 0)),
            home_wins=int(h2h.get("home_wins", 0)),
            away_wins=int(h2h.get("away_wins", 0)),
            draws=int(h2h.get("draws", 0)),
        ) if h2h else None,
    )


class StatsProvider(ABC):
    """Source of per-match statistics.  Only ``get_match_stats`` is required."""

    @abstractmethod
    def get_match_stats(self, sport_key: str, home_team: str, away_team: str) -> MatchStats:
        """Core stats; raise ``StatsUnavailable`` when they cannot be fetched."""

    def get_referee(self, sport_key: str, home_team: str, away_team: str) -> Optional[Dict]:
        return None

    def get_roster_context(self, sport_key: str, home_team: str, away_team: str) -> Optional[Dict]:
        return None

    def get_absences(
        self, sport_key: str, home_team: str, away_team: str
    ) -> Optional[Tuple[Tuple[Absence, ...], Tuple[Absence, ...]]]:
        return None


class HttpStatsProvider(StatsProvider):
    """JSON-over-HTTP stats service adapter."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: int = 10):
        self.base_url = (base_url or STATS_API_URL or "").rstrip("/")
        if not self.base_url:
            raise ValueError("STATS_API_URL not set in environment")
        self.api_key = api_key or STATS_API_KEY
        self.timeout = timeout

    def _get(self, path: str, sport_key: str, home_team: str, away_team: str) -> Optional[Dict]:
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        params = {"sport": sport_key, "home": home_team, "away": away_team}
        response = requests.get(f"{self.base_url}/{path}", params=params,
                                headers=headers, timeout=self.timeout)
        if response.status_code == 429:
            raise RateLimitExceeded("stats_api")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def get_match_stats(self, sport_key: str, home_team: str, away_team: str) -> MatchStats:
        try:
            data = self._get("match-stats", sport_key, home_team, away_team)
        except requests.exceptions.RequestException as e:
            raise StatsUnavailable(f"stats fetch failed for {home_team} vs {away_team}: {e}") from e
        if not data:
            raise StatsUnavailable(f"no stats for {home_team} vs {away_team}")
        return match_stats_from_dict(data)

    def get_referee(self, sport_key: str, home_team: str, away_team: str) -> Optional[Dict]:
        return self._get("referee", sport_key, home_team, away_team)

    def get_roster_context(self, sport_key: str, home_team: str, away_team: str) -> Optional[Dict]:
        return self._get("roster", sport_key, home_team, away_team)

    def get_absences(self, sport_key: str, home_team: str, away_team: str):
        data = self._get("absences", sport_key, home_team, away_team)
        if not data:
            return None

        def side(items):
            return tuple(
                Absence(
                    player=item["player"],
                    position=item.get("position", ""),
                    reason=item.get("reason", "injury"),
                    key=bool(item.get("key", False)),
                )
                for item in items or []
            )

        return side(data.get("home")), side(data.get("away"))


_stats_provider: Optional[StatsProvider] = None


def get_stats_provider() -> StatsProvider:
    global _stats_provider
    if _stats_provider is None:
        _stats_provider = HttpStatsProvider()
    return _stats_provider
