"""Tests for The Odds API client: consensus pricing, the kickoff window and quota handling."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from backend.core.errors import NoMarketData, OddsUnavailable, RateLimitExceeded
from backend.core.odds_math import MatchOdds
from backend.services.odds import (
    OddsAPIClient,
    consensus_odds,
    parse_commence_time,
    upcoming_events,
)

NOW = datetime(2025, 3, 1, 12, 0)


def _book(key, home, away, draw=None, home_name="Arsenal", away_name="Chelsea"):
    outcomes = [{"name": home_name, "price": home}, {"name": away_name, "price": away}]
    if draw is not None:
        outcomes.append({"name": "Draw", "price": draw})
    return {"key": key, "markets": [{"key": "h2h", "outcomes": outcomes}]}


def _event(event_id="e1", hours_ahead=5, bookmakers=None):
    return {
        "id": event_id,
        "home_team": "Arsenal",
        "away_team": "Chelsea",
        "commence_time": (NOW + timedelta(hours=hours_ahead)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "bookmakers": bookmakers if bookmakers is not None else [_book("b1", 2.0, 3.8, 3.5)],
    }


def _response(status=200, data=None, remaining="450"):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = data if data is not None else []
    resp.headers = {"x-requests-remaining": remaining, "x-requests-used": "50"}
    if status >= 400 and status != 429:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error")
    return resp


# ---------------------------------------------------------------------------
# Consensus prices
# ---------------------------------------------------------------------------

class TestConsensusOdds:

    def test_averages_across_bookmakers(self):
        event = _event(bookmakers=[_book("b1", 2.0, 3.8, 3.5), _book("b2", 2.2, 3.6, 3.3)])
        assert consensus_odds(event) == MatchOdds(home=2.1, away=3.7, draw=3.4)

    def test_two_way_market_has_no_draw(self):
        event = _event(bookmakers=[_book("b1", 1.75, 2.20)])
        assert consensus_odds(event).draw is None

    def test_names_matched_case_insensitively(self):
        event = _event(bookmakers=[_book("b1", 1.9, 4.0, 3.4, home_name="ARSENAL ", away_name="chelsea")])
        assert consensus_odds(event).home == 1.9

    def test_other_markets_ignored(self):
        book = _book("b1", 1.9, 4.0, 3.4)
        book["markets"].append({"key": "spreads", "outcomes": [{"name": "Arsenal", "price": 9.0}]})
        assert consensus_odds(_event(bookmakers=[book])).home == 1.9

    def test_missing_side_raises(self):
        event = _event(bookmakers=[{"key": "b1", "markets": [
            {"key": "h2h", "outcomes": [{"name": "Arsenal", "price": 1.9}]},
        ]}])
        with pytest.raises(NoMarketData):
            consensus_odds(event)

    def test_no_bookmakers_raises(self):
        with pytest.raises(NoMarketData):
            consensus_odds(_event(bookmakers=[]))


# ---------------------------------------------------------------------------
# Kickoff window
# ---------------------------------------------------------------------------

class TestUpcomingEvents:

    def test_parse_commence_time(self):
        assert parse_commence_time("2025-03-01T15:00:00Z") == datetime(2025, 3, 1, 15, 0)
        assert parse_commence_time("2025-03-01T16:00:00+01:00") == datetime(2025, 3, 1, 15, 0)
        assert parse_commence_time("not a date") is None
        assert parse_commence_time(None) is None

    def test_window_and_order(self):
        events = [
            _event("later", hours_ahead=30),
            _event("past", hours_ahead=-1),
            _event("soon", hours_ahead=2),
            _event("too_far", hours_ahead=60),
        ]
        upcoming = upcoming_events(events, now=NOW)
        assert [e["id"] for e in upcoming] == ["soon", "later"]

    def test_limit(self):
        events = [_event(f"e{i}", hours_ahead=i + 1) for i in range(15)]
        assert len(upcoming_events(events, now=NOW, limit=10)) == 10


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class TestOddsAPIClient:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.setattr("backend.services.odds.API_KEY", None)
        with pytest.raises(ValueError):
            OddsAPIClient()

    def test_get_odds_tracks_quota(self):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get", return_value=_response(data=[_event()])) as get:
            events = client.get_odds("soccer_epl")
        assert len(events) == 1
        assert client.requests_remaining == 450
        params = get.call_args.kwargs["params"]
        assert params["oddsFormat"] == "decimal"
        assert params["markets"] == "h2h"

    def test_429_raises_rate_limit(self):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get", return_value=_response(status=429)):
            with pytest.raises(RateLimitExceeded):
                client.get_odds("soccer_epl")

    def test_transport_error_returns_empty(self):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get",
                   side_effect=requests.exceptions.ConnectionError("down")):
            assert client.get_odds("soccer_epl") == []

    def test_http_error_returns_empty(self):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get", return_value=_response(status=500)):
            assert client.get_odds("soccer_epl") == []

    def test_fetch_odds_raises_on_transport_error(self):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get",
                   side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(OddsUnavailable):
                client.fetch_odds("soccer_epl")

    def test_get_upcoming_surfaces_feed_failure(self):
        client = OddsAPIClient(api_key="k")
        with patch("backend.services.odds.requests.get", return_value=_response(status=503)):
            with pytest.raises(OddsUnavailable):
                client.get_upcoming("soccer_epl", now=NOW)

    def test_quota_reserve_stops_calls(self):
        client = OddsAPIClient(api_key="k")
        client.requests_remaining = 2
        with patch("backend.services.odds.requests.get") as get:
            with pytest.raises(RateLimitExceeded) as exc:
                client.get_odds("soccer_epl")
        get.assert_not_called()
        assert exc.value.remaining == 2

    def test_get_upcoming_filters_window(self):
        client = OddsAPIClient(api_key="k")
        data = [_event("soon", hours_ahead=3), _event("far", hours_ahead=72)]
        with patch("backend.services.odds.requests.get", return_value=_response(data=data)):
            upcoming = client.get_upcoming("soccer_epl", now=NOW)
        assert [e["id"] for e in upcoming] == ["soon"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
