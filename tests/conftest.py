"""
Shared fixtures for ttledger tests.

All stores share one in-memory database and a FakeClock, so version
times are deterministic and as-of reads can straddle known instants.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ttledger.ledger import Ledger
from ttledger.store import LedgerDatabase, ProjectStore, TimeblockStore
from ttledger.tracker import TimeTracker

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; call it to read the time."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock starting at T0."""
    return FakeClock()


@pytest.fixture
def db():
    """Open in-memory ledger database at the latest schema."""
    database = LedgerDatabase(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def projects(db, clock):
    return ProjectStore(db, clock=clock)


@pytest.fixture
def timeblocks(db, projects, clock):
    return TimeblockStore(db, projects, clock=clock)


@pytest.fixture
def tracker(projects, timeblocks, clock):
    return TimeTracker(projects, timeblocks, clock=clock)


@pytest.fixture
def ledger(db, clock):
    """Ledger bundle over the shared database."""
    return Ledger(db, clock=clock)
