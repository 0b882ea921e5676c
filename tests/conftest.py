"""Shared fixtures: an in-memory SQLite database standing in for PostgreSQL."""

import os

# Must be set before edge_engine.models builds its engine
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from edge_engine.models import Base


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def _clean_scoring_env(monkeypatch):
    """Scoring config reads the environment; keep tests independent of the shell."""
    for name in (
        "ENGINE_WEIGHTS",
        "TIER_ELITE_MIN",
        "TIER_STRONG_MIN",
        "TIER_STANDARD_MIN",
        "BACKTEST_GROUP_BY",
    ):
        monkeypatch.delenv(name, raising=False)
