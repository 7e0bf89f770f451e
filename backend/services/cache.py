"""
Match preview cache keyed to real-world kickoff timing.

Entries are keyed by (home team, away team, sport, match date), date-grained
so every request during the day of a match maps to the same entry:

    match_preview:{home}:{away}:{sport}:{YYYY-MM-DD}

TTL classes:
    pre_analyzed   written by the scheduled sweep, 24 h
    on_demand      written by a user request, 1 h
Any entry older than 48 h is stale regardless of class.

Freshness override: inside the last 30 minutes before kickoff (or once the
match is underway) the cache is bypassed so late team news is pulled fresh.
The bypassed entry is still handed to the compute callback, because live
providers often stop serving historical form / H2H once a match starts.

Concurrent callers for the same key share one in-flight computation.

Entries written under an older payload schema are upgraded once, on read,
by ``migrate_cached_response`` and written back.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.models import MatchCacheEntry, SessionLocal

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

ON_DEMAND = "on_demand"
PRE_ANALYZED = "pre_analyzed"

TTL_BY_CLASS = {
    ON_DEMAND: timedelta(hours=1),
    PRE_ANALYZED: timedelta(hours=24),
}
STALE_AFTER = timedelta(hours=48)
BYPASS_WINDOW = timedelta(minutes=30)


# ---------------------------------------------------------------------------
# Keys and freshness
# ---------------------------------------------------------------------------

def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")


def _date_str(match_date) -> str:
    if isinstance(match_date, datetime):
        return match_date.date().isoformat()
    if isinstance(match_date, date):
        return match_date.isoformat()
    return str(match_date)[:10]


def cache_key(home_team: str, away_team: str, sport: str, match_date) -> str:
    """Date-grained key: any time on the same day yields the same key."""
    return f"match_preview:{_slug(home_team)}:{_slug(away_team)}:{sport}:{_date_str(match_date)}"


def within_bypass_window(kickoff: Optional[datetime], now: datetime,
                         window: timedelta = BYPASS_WINDOW) -> bool:
    """True when kickoff is less than ``window`` away or already past."""
    if kickoff is None:
        return False
    return kickoff - now < window


def is_valid_form(form: Optional[str]) -> bool:
    """A form string is usable if non-empty, not a placeholder, and has W/D/L."""
    if not form or form == "-----":
        return False
    return any(ch in form.upper() for ch in "WDL")


@dataclass(frozen=True)
class CachedResponse:
    key: str
    payload: Dict[str, Any]
    ttl_class: str
    created_at: datetime
    expires_at: datetime
    kickoff: Optional[datetime] = None
    schema_version: int = SCHEMA_VERSION
    from_cache: bool = False

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at and now - self.created_at < STALE_AFTER

    def fallback_inputs(self) -> Dict[str, Any]:
        """Historical inputs worth reusing when live providers go quiet."""
        inputs = self.payload.get("inputs") or {}
        out: Dict[str, Any] = {}
        for side in ("home_form", "away_form"):
            if is_valid_form(inputs.get(side)):
                out[side] = inputs[side]
        if inputs.get("h2h"):
            out["h2h"] = inputs["h2h"]
        return out


# ---------------------------------------------------------------------------
# Legacy schema migration
# ---------------------------------------------------------------------------

_FAVOR_WORDS = ("favo", "edge", "advantage", "expect", "back ", "should win", "tip")
_HIGH_WORDS = ("strongly", "clear favourite", "clear favorite", "confident", "comfortable")
_LOW_WORDS = ("slight", "marginal", "narrow", "tight", "coin flip", "too close")
_CONFIDENCE_STRENGTH = {"high": "strong", "low": "slight"}


def derive_narrative_fields(text: str, home_team: str, away_team: str,
                            has_draw: bool = True) -> Tuple[str, str]:
    """Re-derive ``(favored, confidence)`` from free narrative text.

    Only sentences that express a lean are scored; exact ties go home.
    """
    lowered = (text or "").lower()
    scores = {"home": 0, "away": 0, "draw": 0}
    for sentence in re.split(r"(?<=[.!?])\s+", lowered):
        if not any(word in sentence for word in _FAVOR_WORDS):
            continue
        if home_team.lower() in sentence:
            scores["home"] += 1
        if away_team.lower() in sentence:
            scores["away"] += 1
        if has_draw and ("draw" in sentence or "neither side" in sentence):
            scores["draw"] += 1

    favored = "home"
    for side in ("away", "draw"):
        if scores[side] > scores[favored]:
            favored = side

    if any(word in lowered for word in _HIGH_WORDS):
        confidence = "high"
    elif any(word in lowered for word in _LOW_WORDS):
        confidence = "low"
    else:
        confidence = "medium"
    return favored, confidence


def migrate_cached_response(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a cached payload to ``SCHEMA_VERSION``.

    v1 payloads carried the narrative as free text (top-level ``narrative``
    string, or ``analysis.narrative`` / ``story.narrative``) without explicit
    favoured side or confidence.  v2 stores a structured ``narrative`` dict.
    """
    version = payload.get("schema_version", 1)
    if version >= SCHEMA_VERSION:
        return payload

    upgraded = dict(payload)
    match = upgraded.get("match") or {}
    home = match.get("home_team") or upgraded.get("home_team", "")
    away = match.get("away_team") or upgraded.get("away_team", "")
    has_draw = bool(match.get("has_draw", upgraded.get("has_draw", True)))

    legacy = upgraded.get("narrative")
    if not isinstance(legacy, str):
        legacy = (
            (upgraded.get("analysis") or {}).get("narrative")
            or (upgraded.get("story") or {}).get("narrative")
            or ""
        )
    favored, confidence = derive_narrative_fields(legacy, home, away, has_draw)
    upgraded["narrative"] = {
        "favored": favored,
        "confidence": confidence,
        "strength": _CONFIDENCE_STRENGTH.get(confidence, "moderate"),
        "game_flow": legacy,
        "snapshot": [],
        "risk_factors": [],
        "probabilities": None,
        "source": "legacy",
    }
    upgraded.pop("analysis", None)
    upgraded.pop("story", None)
    upgraded["schema_version"] = SCHEMA_VERSION
    return upgraded


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class CacheStore(ABC):
    """Synchronous key/value storage for :class:`CachedResponse` entries."""

    @abstractmethod
    def get(self, key: str) -> Optional[CachedResponse]:
        ...

    @abstractmethod
    def put(self, entry: CachedResponse, *, home_team: str, away_team: str,
            sport: str, match_date: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class InMemoryCacheStore(CacheStore):
    """Process-local store; entries vanish on restart and expired ones are dropped on write."""

    def __init__(self):
        self._entries: Dict[str, CachedResponse] = {}

    def get(self, key: str) -> Optional[CachedResponse]:
        return self._entries.get(key)

    def put(self, entry: CachedResponse, **_meta) -> None:
        now = entry.created_at
        for key in [k for k, e in self._entries.items() if not e.is_fresh(now)]:
            del self._entries[key]
        self._entries[entry.key] = entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseCacheStore(CacheStore):
    """Store backed by the ``match_cache`` table; each call uses its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[CachedResponse]:
        db = self._session_factory()
        try:
            row = db.query(MatchCacheEntry).filter(MatchCacheEntry.cache_key == key).one_or_none()
            if row is None:
                return None
            return CachedResponse(
                key=row.cache_key,
                payload=row.payload,
                ttl_class=row.ttl_class,
                created_at=row.updated_at or row.created_at,
                expires_at=row.expires_at,
                kickoff=row.kickoff,
                schema_version=row.schema_version,
            )
        finally:
            db.close()

    @staticmethod
    def _load(db: Session, key: str) -> Optional[MatchCacheEntry]:
        return db.query(MatchCacheEntry).filter(MatchCacheEntry.cache_key == key).one_or_none()

    @staticmethod
    def _fill(row: MatchCacheEntry, entry: CachedResponse, home_team: str, away_team: str,
              sport: str, match_date: str) -> None:
        row.home_team = home_team
        row.away_team = away_team
        row.sport = sport
        row.match_date = match_date
        row.kickoff = entry.kickoff
        row.ttl_class = entry.ttl_class
        row.schema_version = entry.schema_version
        row.payload = entry.payload
        row.expires_at = entry.expires_at
        row.updated_at = entry.created_at

    def put(self, entry: CachedResponse, *, home_team: str, away_team: str,
            sport: str, match_date: str) -> None:
        """Upsert by ``cache_key``; an insert that loses a race becomes an update."""
        meta = (home_team, away_team, sport, match_date)
        db = self._session_factory()
        try:
            row = self._load(db, entry.key)
            if row is None:
                row = MatchCacheEntry(cache_key=entry.key, created_at=entry.created_at)
                db.add(row)
            self._fill(row, entry, *meta)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("Cache write for %s lost an insert race; updating", entry.key)
                row = self._load(db, entry.key)
                if row is None:
                    raise
                self._fill(row, entry, *meta)
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.query(MatchCacheEntry).filter(MatchCacheEntry.cache_key == key).delete()
            db.commit()
        finally:
            db.close()


def stale_entries(db: Session, now: Optional[datetime] = None):
    """Query for ``match_cache`` rows that are expired or older than ``STALE_AFTER``."""
    now = now or datetime.utcnow()
    return db.query(MatchCacheEntry).filter(
        or_(
            MatchCacheEntry.expires_at <= now,
            MatchCacheEntry.updated_at <= now - STALE_AFTER,
        )
    )


def purge_stale_entries(db: Session, now: Optional[datetime] = None) -> int:
    """Delete expired/stale rows; returns the count.  The caller commits."""
    query = stale_entries(db, now)
    count = query.count()
    if count:
        query.delete(synchronize_session=False)
        logger.info("Purged %d stale match_cache row(s)", count)
    return count


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

ComputeFn = Callable[[Optional[CachedResponse]], Awaitable[Dict[str, Any]]]


class MatchCache:
    """
    Wraps the full analysis pipeline with date-grained caching.

    Usage::

        cache = MatchCache(InMemoryCacheStore())
        resp = await cache.get_or_compute(
            "Arsenal", "Chelsea", "soccer_epl", kickoff.date(),
            compute=lambda prior: analyze(..., prior=prior),
            kickoff=kickoff,
        )
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
        bypass_window: timedelta = BYPASS_WINDOW,
    ):
        self.store = store or InMemoryCacheStore()
        self._clock = clock
        self._bypass_window = bypass_window
        self._inflight: Dict[str, "asyncio.Future[CachedResponse]"] = {}

    async def _load(self, key: str) -> Optional[CachedResponse]:
        entry = await asyncio.to_thread(self.store.get, key)
        if entry is None or entry.schema_version >= SCHEMA_VERSION:
            return entry
        logger.info("Migrating cache entry %s from schema v%d", key, entry.schema_version)
        payload = migrate_cached_response(entry.payload)
        upgraded = replace(entry, payload=payload, schema_version=SCHEMA_VERSION)
        match = payload.get("match") or {}
        await asyncio.to_thread(
            self.store.put, upgraded,
            home_team=match.get("home_team", ""), away_team=match.get("away_team", ""),
            sport=match.get("sport", ""), match_date=key.rsplit(":", 1)[-1],
        )
        return upgraded

    async def get(self, key: str) -> Optional[CachedResponse]:
        return await self._load(key)

    async def put(
        self,
        home_team: str,
        away_team: str,
        sport: str,
        match_date,
        payload: Dict[str, Any],
        *,
        ttl_class: str = ON_DEMAND,
        kickoff: Optional[datetime] = None,
    ) -> CachedResponse:
        if ttl_class not in TTL_BY_CLASS:
            raise ValueError(f"Unknown TTL class: {ttl_class!r}")
        now = self._clock()
        payload = dict(payload)
        payload.setdefault("schema_version", SCHEMA_VERSION)
        entry = CachedResponse(
            key=cache_key(home_team, away_team, sport, match_date),
            payload=payload,
            ttl_class=ttl_class,
            created_at=now,
            expires_at=now + TTL_BY_CLASS[ttl_class],
            kickoff=kickoff,
            schema_version=payload["schema_version"],
        )
        await asyncio.to_thread(
            self.store.put, entry,
            home_team=home_team, away_team=away_team, sport=sport,
            match_date=_date_str(match_date),
        )
        return entry

    async def get_or_compute(
        self,
        home_team: str,
        away_team: str,
        sport: str,
        match_date,
        compute: ComputeFn,
        *,
        kickoff: Optional[datetime] = None,
        ttl_class: str = ON_DEMAND,
    ) -> CachedResponse:
        """Return a fresh cached response or compute, store and return one.

        ``compute`` receives the previous entry (fresh, stale or bypassed)
        or ``None``.
        """
        key = cache_key(home_team, away_team, sport, match_date)
        now = self._clock()
        existing = await self._load(key)
        bypass = within_bypass_window(kickoff, now, self._bypass_window)

        if existing is not None and existing.is_fresh(now) and not bypass:
            logger.debug("Cache hit %s (%s)", key, existing.ttl_class)
            return replace(existing, from_cache=True)
        if bypass and existing is not None:
            logger.info("Cache bypass for %s: kickoff %s within %s", key, kickoff, self._bypass_window)

        inflight = self._inflight.get(key)
        if inflight is not None:
            return await asyncio.shield(inflight)

        async def run() -> CachedResponse:
            payload = await compute(existing)
            return await self.put(home_team, away_team, sport, match_date, payload,
                                  ttl_class=ttl_class, kickoff=kickoff)

        task = asyncio.ensure_future(run())
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_match_cache: Optional[MatchCache] = None


def get_match_cache() -> MatchCache:
    global _match_cache
    if _match_cache is None:
        _match_cache = MatchCache(DatabaseCacheStore(SessionLocal))
    return _match_cache
