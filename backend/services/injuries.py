"""
Injury scraping and availability service.

Feeds the availability signal so the engine never prices a match blind to
a key absence that the market has already absorbed.

Sources (in priority order):
    1. Manual overrides via API
    2. ESPN injury reports per league (public, scraped)

Scraped entries carry a position; an absence counts as *key* when the
position is pivotal for the sport (quarterback, goalie, ...) or the entry
is tagged with a star/starter tier.  Availability is non-critical: a failed
scrape yields an empty list and the signal degrades to "low".
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from backend.core.signals import Absence
from backend.core.sport_config import (
    FAMILY_BASKETBALL,
    FAMILY_FOOTBALL,
    FAMILY_HOCKEY,
    detect_sport,
)

logger = logging.getLogger(__name__)

ESPN_INJURY_PAGES: Dict[str, str] = {
    FAMILY_BASKETBALL: "https://www.espn.com/nba/injuries",
    FAMILY_FOOTBALL: "https://www.espn.com/nfl/injuries",
    FAMILY_HOCKEY: "https://www.espn.com/nhl/injuries",
}

ABSENT_STATUSES = ("Out", "Doubtful")

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class InjuryReport:
    """Single player injury entry."""

    team: str
    player: str
    status: str  # "Out", "Doubtful", "Questionable", "Probable"
    position: str = ""
    impact_tier: Optional[str] = None  # "star", "starter", "role", "bench"
    reason: str = "injury"
    source: str = "manual"
    updated_at: Optional[datetime] = None

    def to_absence(self) -> Absence:
        return Absence(
            player=self.player,
            position=self.position,
            reason=self.reason,
            tier=self.impact_tier,
        )


def normalize_status(raw: str) -> str:
    lowered = raw.lower()
    if "out" in lowered or "suspen" in lowered or "injured reserve" in lowered:
        return "Out"
    if "doubtful" in lowered:
        return "Doubtful"
    if "probable" in lowered:
        return "Probable"
    return "Questionable"


def classify_tier(usage_rate: Optional[float] = None) -> Optional[str]:
    """Auto-classify a tier from a usage-style percentage (0-100)."""
    if usage_rate is None:
        return None
    if usage_rate >= 28:
        return "star"
    if usage_rate >= 18:
        return "starter"
    if usage_rate >= 10:
        return "role"
    return "bench"


# ---------------------------------------------------------------------------
# Scrapers
# ---------------------------------------------------------------------------

def parse_espn_injuries(html: str) -> List[InjuryReport]:
    """Parse an ESPN injuries page (one table per team)."""
    injuries: List[InjuryReport] = []
    soup = BeautifulSoup(html, "lxml")

    for table in soup.select("div.ResponsiveTable"):
        team_header = table.select_one("div.Table__Title")
        if not team_header:
            continue
        team_name = team_header.get_text(strip=True)

        for row in table.select("tbody tr"):
            cols = [c.get_text(strip=True) for c in row.select("td")]
            if len(cols) < 3:
                continue

            # NAME | POS | EST. RETURN DATE | STATUS | COMMENT
            if len(cols) >= 4:
                position, status_raw = cols[1], cols[3]
                comment = cols[4] if len(cols) > 4 else ""
            else:
                position, status_raw, comment = "", cols[1], cols[2]

            reason = "suspension" if "suspen" in (status_raw + comment).lower() else "injury"
            injuries.append(
                InjuryReport(
                    team=team_name,
                    player=cols[0],
                    status=normalize_status(status_raw),
                    position=position,
                    reason=reason,
                    source="espn",
                    updated_at=datetime.utcnow(),
                )
            )

    return injuries


def scrape_espn_injuries(family: str, timeout: int = 15) -> List[InjuryReport]:
    """
    Scrape ESPN injury reports for a sport family.

    Returns an empty list when the family has no ESPN page or the scrape
    fails; the caller treats that as "availability unknown".
    """
    url = ESPN_INJURY_PAGES.get(family)
    if url is None:
        return []

    try:
        resp = requests.get(url, headers={"User-Agent": _USER_AGENT}, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("ESPN injury scrape failed for %s: %s", family, exc)
        return []

    injuries = parse_espn_injuries(resp.text)
    logger.info("ESPN injury scrape (%s): %d entries across teams", family, len(injuries))
    return injuries


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _team_matches(team: str, report_team: str) -> bool:
    a, b = team.lower(), report_team.lower()
    return a in b or b in a


class InjuryService:
    """Aggregates injury data from all sources and builds per-match absence lists."""

    def __init__(self):
        self._cache: Dict[str, List[InjuryReport]] = {}
        self._cache_time: Dict[str, datetime] = {}
        self._manual_overrides: List[InjuryReport] = []

    def add_manual_override(self, report: InjuryReport) -> None:
        """Add or update a manual injury entry (highest priority)."""
        self._manual_overrides = [
            r
            for r in self._manual_overrides
            if not (r.team == report.team and r.player == report.player)
        ]
        report.source = "manual"
        self._manual_overrides.append(report)

    def fetch_injuries(self, family: str, max_age_minutes: int = 30) -> List[InjuryReport]:
        """Return current injury data for a family, refreshing if stale."""
        now = datetime.utcnow()
        fetched = self._cache_time.get(family)
        if fetched and (now - fetched).total_seconds() < max_age_minutes * 60:
            return self._merge_with_overrides(self._cache.get(family, []))

        scraped = scrape_espn_injuries(family)
        if scraped:
            self._cache[family] = scraped
            self._cache_time[family] = now
        elif family in ESPN_INJURY_PAGES:
            logger.warning("Injury cache stale for %s; scrape returned 0 entries", family)

        return self._merge_with_overrides(self._cache.get(family, []))

    def get_match_absences(
        self,
        sport_key: str,
        home_team: str,
        away_team: str,
        max_age_minutes: int = 30,
    ) -> Tuple[Tuple[Absence, ...], Tuple[Absence, ...]]:
        """
        Players expected to miss the match, split by side.

        Only "Out" and "Doubtful" entries count as absences.
        """
        home: List[Absence] = []
        away: List[Absence] = []
        for inj in self.fetch_injuries(detect_sport(sport_key), max_age_minutes):
            if inj.status not in ABSENT_STATUSES:
                continue
            if _team_matches(home_team, inj.team):
                home.append(inj.to_absence())
            elif _team_matches(away_team, inj.team):
                away.append(inj.to_absence())
        return tuple(home), tuple(away)

    def _merge_with_overrides(
        self, base: List[InjuryReport]
    ) -> List[InjuryReport]:
        """Manual overrides take priority over scraped data."""
        override_keys = {
            (r.team.lower(), r.player.lower()) for r in self._manual_overrides
        }
        merged = [
            r
            for r in base
            if (r.team.lower(), r.player.lower()) not in override_keys
        ]
        merged.extend(self._manual_overrides)
        return merged


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_injury_service: Optional[InjuryService] = None


def get_injury_service() -> InjuryService:
    global _injury_service
    if _injury_service is None:
        _injury_service = InjuryService()
    return _injury_service
