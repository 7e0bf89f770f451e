"""
Tests for match analysis and the pre-analysis sweep.
Run with: pytest tests/test_analysis.py -v
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from backend.core.errors import OddsUnavailable, RateLimitExceeded, StatsUnavailable
from backend.core.odds_math import MatchOdds
from backend.core.signals import Absence, HeadToHead, SeasonRecord
from backend.models import DataFetch, OddsSnapshot, Prediction
from backend.services.analysis import (
    SweepTarget,
    _merge_absences,
    analyze_match,
    build_raw_input,
    market_status,
    run_pre_analysis,
    sweep_target,
)
from backend.services.cache import PRE_ANALYZED, CachedResponse, InMemoryCacheStore, MatchCache
from backend.services.odds import OddsAPIClient
from backend.services.stats import MatchStats, StatsProvider

NBA = SweepTarget("basketball_nba", "NBA", "NBA", False)

STRONG = MatchStats(
    home_form="WWWWW",
    away_form="LLLLL",
    home_record=SeasonRecord(played=10, won=8, lost=2, scored=1150, conceded=1080),
    away_record=SeasonRecord(played=10, won=3, lost=7, scored=1090, conceded=1130),
)


class FakeStats(StatsProvider):
    """In-process provider; ``fail`` maps a home team to the exception it raises."""

    def __init__(self, stats=STRONG, fail=None, referee=None):
        self.stats = stats
        self.fail = fail or {}
        self.referee = referee
        self.calls = 0

    def get_match_stats(self, sport_key, home_team, away_team):
        self.calls += 1
        if home_team in self.fail:
            raise self.fail[home_team]
        return self.stats

    def get_referee(self, sport_key, home_team, away_team):
        if isinstance(self.referee, Exception):
            raise self.referee
        return self.referee


def _event(event_id="evt1", home="Boston Celtics", away="Miami Heat", prices=(1.75, 2.20)):
    return {
        "id": event_id,
        "home_team": home,
        "away_team": away,
        "commence_time": (datetime.utcnow() + timedelta(hours=5)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "bookmakers": [{
            "key": "book",
            "markets": [{"key": "h2h", "outcomes": [
                {"name": home, "price": prices[0]},
                {"name": away, "price": prices[1]},
            ]}],
        }] if prices else [],
    }


def _odds_client(*events):
    client = MagicMock()
    client.get_upcoming.return_value = list(events)
    return client


def _sweep(db, client, stats_provider=None, cache=None, **kwargs):
    params = dict(
        odds_client=client,
        stats_provider=stats_provider or FakeStats(),
        cache=cache,
        sports=[NBA],
        inter_match_delay=0,
    )
    params.update(kwargs)
    return asyncio.run(run_pre_analysis(db, **params))


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

class TestPreAnalysis:

    def test_clean_sweep(self, db):
        cache = MatchCache(InMemoryCacheStore())
        result = _sweep(db, _odds_client(_event()), cache=cache)

        assert result["status"] == "ok"
        assert result["sports_processed"] == 1
        assert result["matches_found"] == 1
        assert result["matches_analyzed"] == 1
        assert result["odds_snapshot_updates"] == 1
        assert result["predictions_created"] == 1
        assert result["cache_writes"] == 1
        assert result["errors"] == []
        assert result["analyzed_matches"][0]["winner"] == "home"
        assert result["analyzed_matches"][0]["recorded"] is True

        assert db.query(Prediction).count() == 1
        assert db.query(OddsSnapshot).count() == 1
        fetch = db.query(DataFetch).one()
        assert fetch.success is True
        assert fetch.records_fetched == 1

        entry = next(iter(cache.store._entries.values()))
        assert entry.ttl_class == PRE_ANALYZED
        assert entry.payload["match"]["match_id"] == "evt1"

    def test_rerun_is_idempotent(self, db):
        cache = MatchCache(InMemoryCacheStore())
        client = _odds_client(_event())
        _sweep(db, client, cache=cache)
        client.get_upcoming.return_value = [_event(prices=(1.70, 2.30))]
        result = _sweep(db, client, cache=cache)

        assert result["predictions_created"] == 0
        assert result["predictions_updated"] == 1
        assert result["analyzed_matches"][0]["recorded"] is True
        assert db.query(Prediction).count() == 1
        assert db.query(Prediction).one().odds == 1.70
        snap = db.query(OddsSnapshot).one()
        assert snap.prev_home_odds == 1.75

    def test_odds_rate_limit_halts(self, db):
        client = MagicMock()
        client.get_upcoming.side_effect = RateLimitExceeded("odds_api", 0)
        stats_provider = FakeStats()
        result = _sweep(db, client, stats_provider=stats_provider,
                        sports=[NBA, SweepTarget("icehockey_nhl", "NHL", "NHL", False)])

        assert result["status"] == "halted"
        assert result["halted"] is True
        assert client.get_upcoming.call_count == 1
        assert stats_provider.calls == 0
        fetch = db.query(DataFetch).one()
        assert fetch.success is False

    def test_stats_rate_limit_halts_remaining_matches(self, db):
        stats_provider = FakeStats(fail={"Boston Celtics": RateLimitExceeded("stats_api")})
        client = _odds_client(_event("e1"), _event("e2", home="Denver Nuggets", away="Utah Jazz"))
        result = _sweep(db, client, stats_provider=stats_provider)

        assert result["status"] == "halted"
        assert stats_provider.calls == 1
        assert db.query(Prediction).count() == 0

    def test_one_failed_match_does_not_abort_batch(self, db):
        stats_provider = FakeStats(fail={"Boston Celtics": StatsUnavailable("no stats")})
        client = _odds_client(_event("e1"), _event("e2", home="Denver Nuggets", away="Utah Jazz"))
        result = _sweep(db, client, stats_provider=stats_provider)

        assert result["status"] == "ok"
        assert len(result["errors"]) == 1
        assert result["errors"][0].startswith("Boston Celtics vs Miami Heat")
        assert result["predictions_created"] == 1
        assert db.query(Prediction).one().match_id == "e2"

    def test_odds_feed_failure_recorded(self, db):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get",
                   side_effect=requests.exceptions.ConnectionError("feed down")):
            result = _sweep(db, client)

        assert result["sports_processed"] == 0
        assert len(result["errors"]) == 1
        assert result["errors"][0].startswith("basketball_nba")
        fetch = db.query(DataFetch).one()
        assert fetch.success is False
        assert "feed down" in fetch.error_message

    def test_odds_feed_failure_moves_to_next_sport(self, db):
        client = MagicMock()
        client.get_upcoming.side_effect = [OddsUnavailable("basketball_nba: 503"), [_event("e9")]]
        result = _sweep(db, client, sports=[NBA, SweepTarget("basketball_euroleague", "EuroLeague",
                                                             "EuroLeague", False)])

        assert result["halted"] is False
        assert result["sports_processed"] == 1
        assert result["matches_found"] == 1
        assert result["errors"] == ["basketball_nba: basketball_nba: 503"]
        fetches = {f.sport: f.success for f in db.query(DataFetch).all()}
        assert fetches == {"basketball_nba": False, "basketball_euroleague": True}

    def test_failed_ledger_write_not_counted(self, db, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr("backend.services.analysis.record_prediction", boom)
        result = _sweep(db, _odds_client(_event()))

        assert result["matches_analyzed"] == 0
        assert result["odds_snapshot_updates"] == 0
        assert result["predictions_created"] == 0
        assert result["analyzed_matches"] == []
        assert len(result["errors"]) == 1
        assert db.query(OddsSnapshot).count() == 0

    def test_settled_prediction_not_counted_as_update(self, db):
        client = _odds_client(_event())
        _sweep(db, client)
        db.query(Prediction).one().outcome = "HIT"
        db.commit()

        result = _sweep(db, client)
        assert result["predictions_updated"] == 0
        assert result["predictions_skipped"] == 1
        assert db.query(Prediction).one().outcome == "HIT"

    def test_thin_form_skips_prediction(self, db):
        weak = MatchStats(home_form="W", away_form="")
        result = _sweep(db, _odds_client(_event()), stats_provider=FakeStats(stats=weak))

        assert result["predictions_created"] == 0
        assert result["predictions_skipped"] == 1
        assert result["odds_snapshot_updates"] == 1
        assert db.query(Prediction).count() == 0

    def test_budget_exhausted(self, db):
        result = _sweep(db, _odds_client(_event()), budget_seconds=0)
        assert result["budget_exhausted"] is True
        assert result["matches_analyzed"] == 0

    def test_missing_market_recorded_as_error(self, db):
        result = _sweep(db, _odds_client(_event(prices=None)))
        assert result["matches_analyzed"] == 0
        assert len(result["errors"]) == 1
        assert db.query(OddsSnapshot).count() == 0


# ---------------------------------------------------------------------------
# Single match
# ---------------------------------------------------------------------------

class TestAnalyzeMatch:

    def test_without_odds(self):
        analysis = asyncio.run(analyze_match(
            "basketball_nba", "Boston Celtics", "Miami Heat", None, stats_provider=FakeStats()))
        assert analysis.intel is None
        assert analysis.payload["market_status"] == "unavailable"
        assert analysis.payload["market"] is None
        assert analysis.payload["narrative"]["favored"] in ("home", "away")
        assert analysis.payload["match"]["has_draw"] is False

    def test_with_odds(self):
        analysis = asyncio.run(analyze_match(
            "basketball_nba", "Boston Celtics", "Miami Heat", MatchOdds(1.75, 2.20),
            stats_provider=FakeStats(referee={"name": "Scott Foster"})))
        assert analysis.payload["market_status"] == "priced"
        assert analysis.payload["qualification"]["winner"] == "home"
        assert analysis.payload["context"]["referee"] == {"name": "Scott Foster"}
        assert "referee" not in analysis.unavailable
        assert analysis.has_min_form

    def test_optional_failure_degrades(self):
        analysis = asyncio.run(analyze_match(
            "basketball_nba", "Boston Celtics", "Miami Heat", MatchOdds(1.75, 2.20),
            stats_provider=FakeStats(referee=ValueError("referee service down"))))
        assert "referee" in analysis.unavailable
        assert analysis.payload["context"]["referee"] is None

    def test_optional_rate_limit_propagates(self):
        with pytest.raises(RateLimitExceeded):
            asyncio.run(analyze_match(
                "basketball_nba", "Boston Celtics", "Miami Heat", MatchOdds(1.75, 2.20),
                stats_provider=FakeStats(referee=RateLimitExceeded("stats_api"))))

    def test_core_stats_failure_propagates(self):
        provider = FakeStats(fail={"Boston Celtics": StatsUnavailable("down")})
        with pytest.raises(StatsUnavailable):
            asyncio.run(analyze_match("basketball_nba", "Boston Celtics", "Miami Heat",
                                      MatchOdds(1.75, 2.20), stats_provider=provider))

    def test_injuries_feed_availability(self):
        injuries = MagicMock()
        injuries.get_match_absences.return_value = (
            (Absence(player="Jayson Tatum", position="SF", tier="star"),), ())
        analysis = asyncio.run(analyze_match(
            "basketball_nba", "Boston Celtics", "Miami Heat", MatchOdds(1.75, 2.20),
            stats_provider=FakeStats(), injury_service=injuries))
        assert [a.player for a in analysis.raw.home_absences] == ["Jayson Tatum"]
        assert "availability" not in analysis.unavailable


class TestHelpers:

    def test_sweep_target_known_and_derived(self):
        assert sweep_target("soccer_epl").has_draw is True
        derived = sweep_target("icehockey_sweden_hockey_league")
        assert derived.key == "icehockey_sweden_hockey_league"
        assert derived.has_draw is False

    def test_market_status(self):
        assert market_status(None) == "unavailable"

    def test_build_raw_input_uses_prior(self):
        prior = CachedResponse(
            key="k",
            payload={"inputs": {"home_form": "WWDLW", "away_form": "LLDWL",
                                "h2h": {"total": 4, "home_wins": 2, "away_wins": 1, "draws": 1}}},
            ttl_class=PRE_ANALYZED,
            created_at=datetime(2025, 3, 1),
            expires_at=datetime(2025, 3, 2),
        )
        raw = build_raw_input("soccer_epl", "Arsenal", "Chelsea", MatchStats(away_form="WWWWW"),
                              prior=prior)
        assert raw.home_form == "WWDLW"
        assert raw.away_form == "WWWWW"
        assert raw.h2h == HeadToHead(total=4, home_wins=2, away_wins=1, draws=1)

    def test_merge_absences_dedupes_by_player(self):
        scraped = ((Absence(player="Saka", position="RW"),), ())
        provider = ((Absence(player="saka", key=True),), (Absence(player="James"),))
        home, away = _merge_absences(scraped, None, provider)
        assert len(home) == 1
        assert home[0].position == "RW"
        assert [a.player for a in away] == ["James"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
