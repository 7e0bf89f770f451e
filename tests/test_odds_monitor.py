"""
Tests for the steam-detecting odds monitor.
Run with: pytest tests/test_odds_monitor.py -v
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from backend.core.errors import OddsUnavailable, RateLimitExceeded
from backend.core.odds_math import MatchOdds
from backend.models import OddsSnapshot
from backend.services.ledger import upsert_odds_snapshot
from backend.services.odds_monitor import OddsMonitor, get_odds_monitor, record_move

NOW = datetime(2025, 3, 1, 12, 0)


def _event(home_price, away_price, event_id="evt1", hours_ahead=10.0):
    return {
        "id": event_id,
        "home_team": "Boston Celtics",
        "away_team": "Miami Heat",
        "commence_time": (NOW + timedelta(hours=hours_ahead)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "bookmakers": [{"key": "book", "markets": [{"key": "h2h", "outcomes": [
            {"name": "Boston Celtics", "price": home_price},
            {"name": "Miami Heat", "price": away_price},
        ]}]}],
    }


def _monitor(*events):
    client = MagicMock()
    client.requests_remaining = None
    client.fetch_odds.return_value = list(events)
    return OddsMonitor(client, sports=["basketball_nba"], clock=lambda: NOW), client


class TestOddsMonitor:

    def test_first_poll_only_records(self):
        monitor, _ = _monitor(_event(1.90, 2.05))
        result = monitor.poll()
        assert result["status"] == "ok"
        assert result["matches_tracked"] == 1
        assert result["movements_detected"] == 0
        assert len(monitor.get_price_history("evt1")) == 1

    def test_sharp_move_fires_callback(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        fired = []
        monitor.on_significant_move(fired.append)
        monitor.poll()

        client.fetch_odds.return_value = [_event(1.70, 2.30)]
        result = monitor.poll()

        assert result["significant_movements"] == 1
        assert len(fired) == 1
        move = fired[0]
        assert move.movement.direction == "toward_home"
        assert move.movement.steam_move
        assert move.to_dict()["old_odds"]["home"] == 1.90
        assert monitor.get_status()["recent_moves"][0]["match_id"] == "evt1"

    def test_slight_move_outside_window_not_significant(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        monitor.poll()
        client.fetch_odds.return_value = [_event(1.84, 2.10)]
        result = monitor.poll()
        assert result["movements_detected"] == 1
        assert result["significant_movements"] == 0

    def test_slight_move_in_golden_window_is_significant(self):
        monitor, client = _monitor(_event(1.90, 2.05, hours_ahead=1))
        monitor.poll()
        client.fetch_odds.return_value = [_event(1.84, 2.10, hours_ahead=1)]
        result = monitor.poll()
        assert result["significant_movements"] == 1

    def test_callback_error_does_not_stop_poll(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        monitor.on_significant_move(MagicMock(side_effect=RuntimeError("webhook down")))
        monitor.poll()
        client.fetch_odds.return_value = [_event(1.70, 2.30)]
        assert monitor.poll()["status"] == "ok"

    def test_quota_pause(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        client.requests_remaining = 3
        result = monitor.poll()
        assert result == {"status": "quota_paused", "remaining": 3}
        client.fetch_odds.assert_not_called()

    def test_matches_leaving_window_are_pruned(self):
        monitor, client = _monitor(_event(1.90, 2.05), _event(2.50, 1.55, event_id="evt2"))
        monitor.poll()
        client.fetch_odds.return_value = [_event(1.90, 2.05)]
        result = monitor.poll()
        assert result["matches_tracked"] == 1
        assert monitor.get_price_history("evt2") == []


    def test_empty_feed_keeps_history(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        monitor.poll()
        client.fetch_odds.return_value = []
        assert monitor.poll()["matches_tracked"] == 1

        client.fetch_odds.return_value = [_event(1.60, 2.50)]
        result = monitor.poll()
        assert result["movements_detected"] == 1
        assert result["significant_movements"] == 1

    def test_feed_failure_keeps_history(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        monitor.poll()
        client.fetch_odds.side_effect = OddsUnavailable("basketball_nba: 503")
        assert monitor.poll()["status"] == "ok"
        assert len(monitor.get_price_history("evt1")) == 1

        client.fetch_odds.side_effect = None
        client.fetch_odds.return_value = [_event(1.60, 2.50)]
        assert monitor.poll()["movements_detected"] == 1

    def test_rate_limit_keeps_history(self):
        monitor, client = _monitor(_event(1.90, 2.05))
        monitor.poll()
        client.fetch_odds.side_effect = RateLimitExceeded("odds_api", 0)
        monitor.poll()
        assert len(monitor.get_price_history("evt1")) == 1

    def test_started_match_pruned(self):
        clock = [NOW]
        client = MagicMock()
        client.requests_remaining = None
        client.fetch_odds.return_value = [_event(1.90, 2.05, hours_ahead=1)]
        monitor = OddsMonitor(client, sports=["basketball_nba"], clock=lambda: clock[0])
        monitor.poll()

        clock[0] = NOW + timedelta(hours=2)
        client.fetch_odds.return_value = []
        assert monitor.poll()["matches_tracked"] == 0


class TestRecordMove:

    def _sharp_move(self, monitor, client):
        fired = []
        monitor.on_significant_move(fired.append)
        monitor.poll()
        client.fetch_odds.return_value = [_event(1.70, 2.30)]
        monitor.poll()
        return fired[0]

    def test_creates_snapshot_with_steam_flag(self, session_factory, db):
        monitor, client = _monitor(_event(1.90, 2.05))
        record_move(self._sharp_move(monitor, client), session_factory=session_factory)

        snap = db.query(OddsSnapshot).one()
        assert snap.match_ref == "evt1"
        assert snap.sport == "basketball_nba"
        assert snap.home_odds == 1.70
        assert snap.has_steam_move is True
        assert snap.match_date == NOW + timedelta(hours=10)

    def test_updates_existing_snapshot(self, session_factory, db):
        upsert_odds_snapshot(
            db,
            match_ref="evt1",
            sport="basketball_nba",
            home_team="Boston Celtics",
            away_team="Miami Heat",
            match_date=NOW + timedelta(hours=10),
            odds=MatchOdds(1.90, 2.05),
        )
        db.commit()

        monitor, client = _monitor(_event(1.90, 2.05))
        record_move(self._sharp_move(monitor, client), session_factory=session_factory)

        db.expire_all()
        snap = db.query(OddsSnapshot).one()
        assert snap.prev_home_odds == 1.90
        assert snap.home_odds == 1.70
        assert snap.home_change == -0.2
        assert snap.has_steam_move is True

    def test_shared_monitor_records_moves(self, monkeypatch):
        monkeypatch.setattr("backend.services.odds_monitor._odds_monitor", None)
        monkeypatch.setattr("backend.services.odds_monitor.OddsAPIClient", MagicMock)
        monitor = get_odds_monitor()
        assert record_move in monitor._callbacks
        assert get_odds_monitor() is monitor


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
