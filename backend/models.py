"""
Database models for the Match Edge Engine
SQLAlchemy ORM (PostgreSQL in production, SQLite by default)
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import os
from dotenv import load_dotenv

# Load .env before reading DATABASE_URL
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./match_edge.db")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# pool_pre_ping keeps long-lived Postgres connections healthy
engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Prediction(Base):
    """One prediction per (sport, match, analysis date).

    The primary key is deterministic (see ``ledger.prediction_id``) so a
    second run on the same day lands on the same row.
    """

    __tablename__ = "predictions"

    id = Column(String, primary_key=True)  # pre_{sport}_{match}_{YYYY-MM-DD}
    match_id = Column(String, nullable=False, index=True)
    match_name = Column(String, nullable=False)  # "Home vs Away"
    sport = Column(String, nullable=False, index=True)
    league = Column(String)
    kickoff = Column(DateTime, nullable=False, index=True)
    type = Column(String, default="MATCH_RESULT", nullable=False)

    # Prediction
    prediction = Column(String, nullable=False)  # "Home Win - X" | "Away Win - X" | "Draw"
    predicted_side = Column(String, nullable=False)  # home | away | draw
    reasoning = Column(Text)
    conviction = Column(Integer, nullable=False)
    odds = Column(Float)
    implied_prob = Column(Float)
    home_win_prob = Column(Float)
    away_win_prob = Column(Float)
    draw_prob = Column(Float)
    source = Column(String, default="PRE_ANALYZE")

    # Value bet (only when all qualification gates pass)
    value_bet_side = Column(String)
    value_bet_odds = Column(Float)
    value_bet_edge = Column(Float)
    edge_bucket = Column(String)  # HIGH | MEDIUM | SMALL
    value_bet_outcome = Column(String)  # HIT | MISS | VOID once settled

    # Odds seen on the first write; never refreshed
    opening_odds = Column(Float)

    # Settlement
    outcome = Column(String, default="PENDING", nullable=False, index=True)
    actual_result = Column(String)
    validated_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_resolved(self) -> bool:
        return self.outcome not in (None, "PENDING")


class OddsSnapshot(Base):
    """Latest consensus odds and model view for a match (no history)."""

    __tablename__ = "odds_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    match_ref = Column(String, nullable=False, index=True)
    sport = Column(String, nullable=False, index=True)
    bookmaker = Column(String, nullable=False, default="consensus")
    league = Column(String)
    home_team = Column(String, nullable=False)
    away_team = Column(String, nullable=False)
    match_date = Column(DateTime, nullable=False, index=True)

    # Current consensus prices
    home_odds = Column(Float, nullable=False)
    away_odds = Column(Float, nullable=False)
    draw_odds = Column(Float)

    # Previous write and the change since
    prev_home_odds = Column(Float)
    prev_away_odds = Column(Float)
    prev_draw_odds = Column(Float)
    home_change = Column(Float)
    away_change = Column(Float)
    draw_change = Column(Float)

    # First write
    opening_home_odds = Column(Float)
    opening_away_odds = Column(Float)
    opening_draw_odds = Column(Float)

    # Model view
    model_home_prob = Column(Float)
    model_away_prob = Column(Float)
    model_draw_prob = Column(Float)
    home_edge = Column(Float)
    away_edge = Column(Float)
    draw_edge = Column(Float)

    has_steam_move = Column(Boolean, default=False)
    has_value_edge = Column(Boolean, default=False, index=True)
    alert_level = Column(String, index=True)  # HIGH | MEDIUM | LOW | NULL
    alert_note = Column(String)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint('match_ref', 'sport', 'bookmaker', name='_match_sport_bookmaker_uc'),)


class MatchCacheEntry(Base):
    """Persisted match preview keyed by teams, sport and match date."""

    __tablename__ = "match_cache"

    id = Column(Integer, primary_key=True, index=True)
    cache_key = Column(String, nullable=False, unique=True, index=True)
    home_team = Column(String, nullable=False)
    away_team = Column(String, nullable=False)
    sport = Column(String, nullable=False)
    match_date = Column(String, nullable=False)  # YYYY-MM-DD
    kickoff = Column(DateTime)
    ttl_class = Column(String, nullable=False)  # pre_analyzed | on_demand
    schema_version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DataFetch(Base):
    """Track provider fetches for monitoring feed health"""

    __tablename__ = "data_fetches"

    id = Column(Integer, primary_key=True, index=True)
    fetch_time = Column(DateTime, default=datetime.utcnow, index=True)
    data_source = Column(String, nullable=False, index=True)  # "odds_api", "stats", etc.
    sport = Column(String, index=True)
    success = Column(Boolean, nullable=False)
    records_fetched = Column(Integer)
    error_message = Column(Text)
    response_time_ms = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)


def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)


if __name__ == "__main__":
    init_db()
    print("✅ Database tables created")
