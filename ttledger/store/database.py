"""
SQLite database handle for the ledger.

This module owns the single connection a ledger process uses, the
schema and its migrations, and the translation of sqlite3 failures into
ledger errors.

Invariants:
    - One connection per process, opened once and closed at exit
    - Multi-statement writes run inside BEGIN IMMEDIATE ... COMMIT
    - Every sqlite3.Error leaves this module as a LedgerError
    - Version rows are only ever inserted, never updated or deleted

How to change safely:
    - Add a new numbered step to _MIGRATIONS; never edit an old one
    - Bump SCHEMA_VERSION to the highest step
    - Test upgrades from every earlier version

Table schema:
    metadata:
        - version INTEGER (schema version)
        - teamwork_api_key, teamwork_base_url, teamwork_user_id (all or none)
        - teamwork_synced_at (start of the last completed time entry sync)

    entity:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - kind TEXT ('project' | 'timeblock')

    project_version:
        - entity_id, version_id, version_time
        - external_id, name, parent_entity_id (nullable), alive
        - UNIQUE (entity_id, version_id)

    timeblock_version:
        - entity_id, version_id, version_time
        - external_id (nullable), project_entity_id, start_time,
          end_time (nullable), billable, notes, tags, alive
        - UNIQUE (entity_id, version_id)
        - CHECK (external_id IS NULL OR end_time IS NOT NULL)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ConstraintViolationError, StorageError
from .versioning import decode_optional_timestamp, encode_timestamp

if TYPE_CHECKING:
    from ..config import StorageConfig

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_MIGRATIONS: dict[int, tuple[str, ...]] = {
    0: (
        """
        CREATE TABLE metadata (
            version INTEGER NOT NULL DEFAULT 0,
            teamwork_api_key TEXT,
            teamwork_base_url TEXT,
            teamwork_user_id INTEGER,
            CHECK (
                (teamwork_api_key IS NULL AND teamwork_base_url IS NULL
                    AND teamwork_user_id IS NULL) OR
                (teamwork_api_key IS NOT NULL AND teamwork_base_url IS NOT NULL
                    AND teamwork_user_id IS NOT NULL)
            )
        )
        """,
        "INSERT INTO metadata (version) VALUES (0)",
        """
        CREATE TABLE entity (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL CHECK (kind IN ('project', 'timeblock'))
        )
        """,
        """
        CREATE TABLE project_version (
            entity_id INTEGER NOT NULL REFERENCES entity(id),
            version_id INTEGER NOT NULL,
            version_time TEXT NOT NULL,
            external_id TEXT NOT NULL,
            name TEXT NOT NULL,
            parent_entity_id INTEGER DEFAULT NULL REFERENCES entity(id),
            alive BOOLEAN NOT NULL DEFAULT 1,
            UNIQUE (entity_id, version_id)
        )
        """,
        """
        CREATE TABLE timeblock_version (
            entity_id INTEGER NOT NULL REFERENCES entity(id),
            version_id INTEGER NOT NULL,
            version_time TEXT NOT NULL,
            external_id TEXT DEFAULT NULL,
            project_entity_id INTEGER NOT NULL REFERENCES entity(id),
            start_time TEXT NOT NULL,
            end_time TEXT DEFAULT NULL,
            billable BOOLEAN NOT NULL DEFAULT 0,
            notes TEXT NOT NULL DEFAULT '',
            tags TEXT NOT NULL DEFAULT '',
            alive BOOLEAN NOT NULL DEFAULT 1,
            UNIQUE (entity_id, version_id),
            CHECK (external_id IS NULL OR end_time IS NOT NULL)
        )
        """,
    ),
    1: (
        "CREATE INDEX idx_project_external ON project_version(external_id)",
        "CREATE INDEX idx_project_vtime ON project_version(entity_id, version_time)",
        "CREATE INDEX idx_timeblock_external ON timeblock_version(external_id)",
        "CREATE INDEX idx_timeblock_vtime ON timeblock_version(entity_id, version_time)",
        "CREATE INDEX idx_timeblock_project ON timeblock_version(project_entity_id)",
    ),
    2: ("ALTER TABLE metadata ADD COLUMN teamwork_synced_at TEXT DEFAULT NULL",),
}


@dataclass(frozen=True)
class Credentials:
    """Remote service credentials stored in the metadata row."""

    api_key: str
    base_url: str
    user_id: int


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise sqlite3 failures as ledger errors.

    Args:
        operation: Short name of what was being attempted
    """
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise ConstraintViolationError(f"{operation}: {exc}", constraint=operation) from exc
    except sqlite3.Error as exc:
        raise StorageError(f"{operation} failed: {exc}", operation=operation) from exc


class LedgerDatabase:
    """Single-connection SQLite handle.

    Example:
        >>> with LedgerDatabase("/home/me/.tt.sqlite") as db:
        ...     with db.transaction("example") as conn:
        ...         conn.execute("SELECT 1")
    """

    SCHEMA_VERSION = max(_MIGRATIONS)

    def __init__(
        self,
        path: str = MEMORY_PATH,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = False,
    ) -> None:
        """Initialize the handle without opening it.

        Args:
            path: SQLite file path, or ":memory:"
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL journal mode
        """
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._conn: sqlite3.Connection | None = None

    @classmethod
    def from_config(cls, config: StorageConfig) -> LedgerDatabase:
        return cls(
            path=config.db_path,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )

    def connect(self, upgrade: bool = True) -> sqlite3.Connection:
        """Open the connection and bring the schema up to date.

        Args:
            upgrade: Apply pending migrations after opening

        Returns:
            The open connection
        """
        if self._conn is not None:
            return self._conn

        if self.path != MEMORY_PATH:
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)

        with translate_errors("connect"):
            conn = sqlite3.connect(
                str(Path(self.path).expanduser()) if self.path != MEMORY_PATH else self.path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA foreign_keys = ON")

        self._conn = conn
        logger.debug("Opened ledger database", extra={"path": self.path})

        if upgrade:
            self.upgrade()
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Closed ledger database", extra={"path": self.path})

    def __enter__(self) -> LedgerDatabase:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database is not open", operation="connection")
        return self._conn

    @contextmanager
    def transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically.

        Nested use joins the outer transaction.

        Args:
            operation: Name used in errors and logs

        Yields:
            The connection
        """
        conn = self.connection
        if conn.in_transaction:
            with translate_errors(operation):
                yield conn
            return

        with translate_errors(operation):
            conn.execute("BEGIN IMMEDIATE")
        try:
            with translate_errors(operation):
                yield conn
            with translate_errors(operation):
                conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    @contextmanager
    def reading(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run read-only statements with error translation."""
        with translate_errors(operation):
            yield self.connection

    def schema_version(self) -> int:
        """Current schema version, or -1 for an empty database."""
        with self.reading("schema_version") as conn:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'metadata'"
            ).fetchone()
            if row is None:
                return -1
            row = conn.execute("SELECT version FROM metadata LIMIT 1").fetchone()
            return -1 if row is None else int(row["version"])

    def upgrade(self, target: int | None = None) -> int:
        """Apply pending migrations up to target.

        Args:
            target: Schema version to reach (default: latest)

        Returns:
            The schema version after upgrading
        """
        target = self.SCHEMA_VERSION if target is None else target
        if target not in _MIGRATIONS:
            raise StorageError(f"Unknown schema version: {target}", operation="upgrade")

        current = self.schema_version()
        for version in range(current + 1, target + 1):
            logger.info("Upgrading ledger schema", extra={"from": version - 1, "to": version})
            with self.transaction(f"upgrade to {version}") as conn:
                for statement in _MIGRATIONS[version]:
                    conn.execute(statement)
                conn.execute("UPDATE metadata SET version = ?", (version,))
        return max(current, target)

    def get_credentials(self) -> Credentials | None:
        with self.reading("get_credentials") as conn:
            row = conn.execute(
                """
                SELECT teamwork_api_key, teamwork_base_url, teamwork_user_id
                FROM metadata WHERE teamwork_api_key IS NOT NULL LIMIT 1
                """
            ).fetchone()
        if row is None:
            return None
        return Credentials(
            api_key=row["teamwork_api_key"],
            base_url=row["teamwork_base_url"],
            user_id=int(row["teamwork_user_id"]),
        )

    def set_credentials(self, credentials: Credentials | None) -> None:
        """Store remote credentials, or clear them with None."""
        values = (
            (credentials.api_key, credentials.base_url, credentials.user_id)
            if credentials
            else (None, None, None)
        )
        with self.transaction("set_credentials") as conn:
            conn.execute(
                """
                UPDATE metadata
                SET teamwork_api_key = ?, teamwork_base_url = ?, teamwork_user_id = ?
                """,
                values,
            )
        logger.info("Stored remote credentials", extra={"cleared": credentials is None})

    def get_sync_watermark(self) -> datetime | None:
        """Start time of the last completed remote time entry sync."""
        with self.reading("get_sync_watermark") as conn:
            row = conn.execute("SELECT teamwork_synced_at FROM metadata LIMIT 1").fetchone()
        return decode_optional_timestamp(row["teamwork_synced_at"]) if row else None

    def set_sync_watermark(self, when: datetime | None) -> None:
        """Record where the next remote time entry sync resumes."""
        value = encode_timestamp(when) if when is not None else None
        with self.transaction("set_sync_watermark") as conn:
            conn.execute("UPDATE metadata SET teamwork_synced_at = ?", (value,))
        logger.debug("Stored sync watermark", extra={"watermark": value})
