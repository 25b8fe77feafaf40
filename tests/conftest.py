"""
Common fixtures for the versioned test suite.

Every test gets a fresh in-memory SQLite database with all tables created, a
repository over it, and a ``Versioned`` store driven by a stepping clock so
that consecutive writes get distinct, predictable timestamps.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from versioned import Repository, Versioned
from tests.models import Base


class SteppingClock:
    """Clock that advances by a fixed step on every call."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc),
                 step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step
        self.calls = 0

    def now(self) -> datetime:
        self.current = self.current + self.step
        self.calls += 1
        return self.current


@pytest.fixture
def engine():
    """In-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def repo(engine):
    return Repository.from_engine(engine)


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def store(repo, clock):
    return Versioned(repo, clock=clock)
