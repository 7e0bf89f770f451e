"""
Pydantic request/response schemas for the Match Edge API.

Using explicit schemas instead of raw dicts keeps ORM rows from leaking
columns into responses and generates accurate OpenAPI docs.
"""

from __future__ import annotations

from typing import Any, Literal, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# On-demand preview
# ---------------------------------------------------------------------------

class PreviewRequest(BaseModel):
    """
    Payload for POST /api/preview.

    Prices are decimal odds.  Omit all three to analyse without a market
    (the response then carries ``market_status: "unavailable"``).
    """

    sport: str = Field(..., min_length=2, max_length=80, description='Provider key, e.g. "soccer_epl"')
    home_team: str = Field(..., min_length=1, max_length=120)
    away_team: str = Field(..., min_length=1, max_length=120)
    kickoff: Optional[datetime] = Field(None, description="UTC kickoff; enables the pre-kickoff cache bypass")
    league: Optional[str] = Field(None, max_length=120)
    match_id: Optional[str] = Field(
        None, max_length=120, description="Provider event id; shares ledger rows with the sweep"
    )
    has_draw: Optional[bool] = Field(None, description="Defaults to the sport's market shape")

    home_odds: Optional[float] = None
    away_odds: Optional[float] = None
    draw_odds: Optional[float] = None

    @field_validator("sport")
    @classmethod
    def normalize_sport(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("kickoff")
    @classmethod
    def naive_utc_kickoff(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @model_validator(mode="after")
    def check_price_pair(self) -> "PreviewRequest":
        if (self.home_odds is None) != (self.away_odds is None):
            raise ValueError("home_odds and away_odds must be supplied together")
        if self.draw_odds is not None and self.home_odds is None:
            raise ValueError("draw_odds requires home_odds and away_odds")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "sport": "soccer_epl",
                "home_team": "Arsenal",
                "away_team": "Chelsea",
                "kickoff": "2025-03-01T15:00:00",
                "home_odds": 1.95,
                "draw_odds": 3.6,
                "away_odds": 4.1,
            }
        }
    }


class PreviewResponse(BaseModel):
    """Cached or freshly computed match preview."""
    cache_key: str
    from_cache: bool
    ttl_class: str
    created_at: datetime
    expires_at: datetime
    payload: dict[str, Any]


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------

class PredictionResponse(BaseModel):
    """One recorded prediction."""
    id: str
    match_id: str
    match_name: str
    sport: str
    league: str | None
    kickoff: datetime | None
    prediction: str
    predicted_side: str | None
    reasoning: str | None
    conviction: int | None
    odds: float | None
    implied_prob: float | None
    home_win_prob: float | None
    away_win_prob: float | None
    draw_prob: float | None
    value_bet_side: str | None
    value_bet_odds: float | None
    value_bet_edge: float | None
    edge_bucket: str | None
    outcome: str
    actual_result: str | None
    created_at: datetime | None
    updated_at: datetime | None

    class Config:
        from_attributes = True


class PredictionsResponse(BaseModel):
    """Structure for the /api/predictions endpoint."""
    total: int
    predictions: list[PredictionResponse]


class SettleRequest(BaseModel):
    """Payload for POST /admin/predictions/{id}/settle."""
    outcome: Literal["HIT", "MISS", "VOID"]
    actual_result: Optional[str] = Field(None, max_length=120, description='e.g. "2-1"')

    @field_validator("outcome", mode="before")
    @classmethod
    def upper_outcome(cls, v):
        return v.upper() if isinstance(v, str) else v


class SettleResponse(BaseModel):
    message: str
    prediction_id: str
    outcome: str
    actual_result: Optional[str]


# ---------------------------------------------------------------------------
# Odds snapshots
# ---------------------------------------------------------------------------

class OddsSnapshotResponse(BaseModel):
    """Consensus odds snapshot with model edges and alert tier."""
    match_ref: str
    sport: str
    league: str | None
    home_team: str
    away_team: str
    match_date: str | None
    odds: dict[str, float | None]
    model_prob: dict[str, float | None]
    edge: dict[str, float | None]
    has_steam_move: bool
    has_value_edge: bool
    alert_level: str | None
    alert_note: str | None
    updated_at: str | None


# ---------------------------------------------------------------------------
# Pre-analysis trigger
# ---------------------------------------------------------------------------

class PreAnalysisResponse(BaseModel):
    """Response from /admin/run-pre-analysis."""
    message: str
    status: str
    sports_processed: int
    matches_found: int
    matches_analyzed: int
    cache_writes: int
    odds_snapshot_updates: int
    predictions_created: int
    predictions_updated: int = 0
    predictions_skipped: int
    halted: bool
    errors: list[str]
    analyzed_matches: list[dict[str, Any]]
    duration_seconds: float


# ---------------------------------------------------------------------------
# Injuries
# ---------------------------------------------------------------------------

class InjuryOverride(BaseModel):
    """Payload for POST /admin/injuries/override."""
    team: str = Field(..., min_length=1, max_length=120)
    player: str = Field(..., min_length=1, max_length=120)
    status: Literal["Out", "Doubtful", "Questionable", "Probable"]
    position: str = Field("", max_length=40)
    impact_tier: Optional[Literal["star", "starter", "role", "bench"]] = None
    reason: Literal["injury", "suspension", "other"] = "injury"
