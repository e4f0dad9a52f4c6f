"""
Ledger: the explicit handle that ties the components together.

Holds the one database connection and the stores and tracker built on
it. Callers pass this handle around instead of reaching for globals.
"""

from __future__ import annotations

import logging

from .config import StorageConfig
from .store import LedgerDatabase, ProjectStore, TimeblockStore
from .store.versioning import Clock, utcnow
from .tracker import TimeTracker

logger = logging.getLogger(__name__)


class Ledger:
    """Open ledger with its stores.

    Attributes:
        db: Database handle
        projects: Project store
        timeblocks: Time block store
        tracker: Punch-in/punch-out façade

    Example:
        >>> with Ledger.open(StorageConfig(db_path=":memory:")) as ledger:
        ...     ledger.projects.upsert("Acme", "ext-1")
    """

    def __init__(self, db: LedgerDatabase, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock
        self.projects = ProjectStore(db, clock=clock)
        self.timeblocks = TimeblockStore(db, self.projects, clock=clock)
        self.tracker = TimeTracker(self.projects, self.timeblocks, clock=clock)

    @classmethod
    def open(cls, config: StorageConfig, clock: Clock = utcnow) -> Ledger:
        """Connect to the configured database, migrating it if needed."""
        db = LedgerDatabase.from_config(config)
        db.connect()
        logger.debug("Ledger opened", extra={"db_path": config.db_path})
        return cls(db, clock=clock)

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> Ledger:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
