"""
Shared fixtures: an in-memory SQLite database per test.

pysqlite's own transaction handling breaks SAVEPOINT, so the engine takes
over BEGIN itself (the recipe from the SQLAlchemy SQLite dialect docs).
"""

import os

# Must be set before backend.main / backend.auth are imported
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["API_KEY_USER1"] = "test-admin-key"
os.environ["API_KEY_USER2"] = "test-user-key"
os.environ.pop("ADMIN_API_KEY", None)

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.models import init_db


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
