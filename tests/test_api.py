"""
Tests for the REST API: previews, predictions, settlement and auth.
Run with: pytest tests/test_api.py -v
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from backend.core.conviction import qualify
from backend.core.market_intel import assess_market
from backend.core.odds_math import MatchOdds, OutcomeProbabilities
from backend.core.signals import SeasonRecord
from backend.main import app, get_cache, get_injuries, get_stats
from backend.models import OddsSnapshot, Prediction, get_db
from backend.services.cache import InMemoryCacheStore, MatchCache
from backend.services.injuries import InjuryService
from backend.services.ledger import prediction_id, record_prediction, upsert_odds_snapshot
from backend.services.stats import MatchStats, StatsProvider

ADMIN = {"X-API-Key": "test-admin-key"}
USER = {"X-API-Key": "test-user-key"}


class FakeStats(StatsProvider):
    def get_match_stats(self, sport_key, home_team, away_team):
        return MatchStats(
            home_form="WWWWW",
            away_form="LLLLL",
            home_record=SeasonRecord(played=10, won=8, lost=2, scored=1150, conceded=1080),
            away_record=SeasonRecord(played=10, won=3, lost=7, scored=1090, conceded=1130),
        )


@pytest.fixture
def injuries(monkeypatch):
    monkeypatch.setattr("backend.services.injuries.scrape_espn_injuries", lambda family: [])
    return InjuryService()


@pytest.fixture
def client(db, injuries):
    cache = MatchCache(InMemoryCacheStore())

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_stats] = lambda: FakeStats()
    app.dependency_overrides[get_injuries] = lambda: injuries
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _seed_prediction(db):
    odds = MatchOdds(1.75, 2.20)
    intel = assess_market(OutcomeProbabilities(0.62, 0.38), odds, model_confidence=70.0,
                          league_key="basketball_nba")
    row = record_prediction(
        db,
        sport_key="basketball_nba",
        match_id="evt1",
        home_team="Boston Celtics",
        away_team="Miami Heat",
        kickoff=datetime.utcnow() + timedelta(hours=5),
        intel=intel,
        qualification=qualify(intel, "basketball_nba"),
        league="NBA",
    )
    upsert_odds_snapshot(
        db,
        match_ref="evt1",
        sport="basketball_nba",
        home_team="Boston Celtics",
        away_team="Miami Heat",
        match_date=row.kickoff,
        odds=odds,
        intel=intel,
        league="NBA",
    )
    db.commit()
    return row.id


PREVIEW = {
    "sport": "basketball_nba",
    "home_team": "Boston Celtics",
    "away_team": "Miami Heat",
    "home_odds": 1.75,
    "away_odds": 2.20,
}


class TestPublic:

    def test_root(self, client):
        assert client.get("/").json()["status"] == "operational"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["database"] == "connected"
        assert data["scheduler"] == "stopped"


class TestPreview:

    def test_requires_key(self, client):
        assert client.post("/api/preview", json=PREVIEW).status_code == 401
        assert client.post("/api/preview", json=PREVIEW,
                           headers={"X-API-Key": "wrong"}).status_code == 401

    def test_second_request_from_cache(self, client):
        first = client.post("/api/preview", json=PREVIEW, headers=USER)
        assert first.status_code == 200
        body = first.json()
        assert body["from_cache"] is False
        assert body["ttl_class"] == "on_demand"
        assert body["cache_key"] == (
            f"match_preview:boston-celtics:miami-heat:basketball_nba:{datetime.utcnow().date().isoformat()}"
        )
        assert body["payload"]["market_status"] == "priced"
        assert body["payload"]["qualification"]["winner"] == "home"

        second = client.post("/api/preview", json=PREVIEW, headers=USER)
        assert second.json()["from_cache"] is True

    def test_without_prices(self, client):
        body = client.post("/api/preview", headers=USER, json={
            "sport": "soccer_epl", "home_team": "Arsenal", "away_team": "Chelsea",
        }).json()
        assert body["payload"]["market_status"] == "unavailable"
        assert body["payload"]["match"]["has_draw"] is True

    def test_priced_preview_written_to_ledger(self, client, db):
        resp = client.post("/api/preview", headers=USER, json={**PREVIEW, "match_id": "evt42"})
        assert resp.status_code == 200

        pid = prediction_id("basketball_nba", "evt42", datetime.utcnow().date())
        row = db.get(Prediction, pid)
        assert row is not None
        assert row.source == "ON_DEMAND"
        assert row.predicted_side == "home"
        assert row.odds == 1.75
        snap = db.query(OddsSnapshot).one()
        assert snap.match_ref == "evt42"
        assert snap.home_odds == 1.75

    def test_cached_preview_does_not_rewrite_ledger(self, client, db):
        client.post("/api/preview", headers=USER, json={**PREVIEW, "match_id": "evt42"})
        client.post("/api/preview", headers=USER, json={**PREVIEW, "match_id": "evt42", "home_odds": 1.60})
        db.expire_all()
        assert db.query(OddsSnapshot).one().home_odds == 1.75
        assert db.query(Prediction).count() == 1

    def test_preview_without_match_id_uses_team_key(self, client, db):
        client.post("/api/preview", headers=USER, json=PREVIEW)
        assert db.query(OddsSnapshot).one().match_ref == "Boston Celtics-Miami Heat"

    def test_unpriced_preview_writes_nothing(self, client, db):
        client.post("/api/preview", headers=USER, json={
            "sport": "soccer_epl", "home_team": "Arsenal", "away_team": "Chelsea",
        })
        assert db.query(OddsSnapshot).count() == 0
        assert db.query(Prediction).count() == 0

    def test_invalid_price(self, client):
        resp = client.post("/api/preview", headers=USER, json={**PREVIEW, "home_odds": 0.9})
        assert resp.status_code == 422
        assert resp.json()["type"] == "InvalidOdds"

    def test_unpaired_prices_rejected(self, client):
        payload = {k: v for k, v in PREVIEW.items() if k != "away_odds"}
        assert client.post("/api/preview", json=payload, headers=USER).status_code == 422

    def test_aware_kickoff_normalized(self, client):
        resp = client.post("/api/preview", headers=USER,
                           json={**PREVIEW, "kickoff": "2030-03-01T20:00:00+01:00"})
        assert resp.status_code == 200
        assert resp.json()["cache_key"].endswith(":2030-03-01")
        assert resp.json()["payload"]["match"]["kickoff"] == "2030-03-01T19:00:00"


class TestPredictions:

    def test_list(self, client, db):
        _seed_prediction(db)
        data = client.get("/api/predictions", headers=USER).json()
        assert data["total"] == 1
        assert data["predictions"][0]["prediction"] == "Home Win - Boston Celtics"
        assert data["predictions"][0]["outcome"] == "PENDING"

    def test_filters(self, client, db):
        _seed_prediction(db)
        assert client.get("/api/predictions?sport=soccer_epl", headers=USER).json()["total"] == 0
        assert client.get("/api/predictions?value_only=true", headers=USER).json()["total"] == 1
        assert client.get("/api/predictions?outcome=WON", headers=USER).status_code == 422

    def test_settle_as_admin(self, client, db):
        pid = _seed_prediction(db)
        resp = client.post(f"/admin/predictions/{pid}/settle", headers=ADMIN,
                           json={"outcome": "hit", "actual_result": "112-104"})
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "HIT"
        db.expire_all()
        assert db.get(Prediction, pid).outcome == "HIT"

    def test_settle_requires_admin(self, client, db):
        pid = _seed_prediction(db)
        resp = client.post(f"/admin/predictions/{pid}/settle", headers=USER, json={"outcome": "HIT"})
        assert resp.status_code == 403

    def test_settle_unknown(self, client):
        resp = client.post("/admin/predictions/pre_missing/settle", headers=ADMIN, json={"outcome": "MISS"})
        assert resp.status_code == 404


class TestOddsSnapshots:

    def test_list(self, client, db):
        _seed_prediction(db)
        snaps = client.get("/api/odds-snapshots", headers=USER).json()
        assert len(snaps) == 1
        assert snaps[0]["odds"]["home"] == 1.75
        assert snaps[0]["alert_level"] == "MEDIUM"

    def test_alert_filter(self, client, db):
        _seed_prediction(db)
        assert client.get("/api/odds-snapshots?alert_level=HIGH", headers=USER).json() == []


class TestInjuryOverride:

    def test_override_stored(self, client, injuries):
        resp = client.post("/admin/injuries/override", headers=ADMIN, json={
            "team": "Boston Celtics", "player": "Jayson Tatum", "status": "Out", "impact_tier": "star",
        })
        assert resp.status_code == 200
        merged = injuries._merge_with_overrides([])
        assert [(r.player, r.source) for r in merged] == [("Jayson Tatum", "manual")]

    def test_override_requires_admin(self, client):
        resp = client.post("/admin/injuries/override", headers=USER, json={
            "team": "Boston Celtics", "player": "Jayson Tatum", "status": "Out",
        })
        assert resp.status_code == 403


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
