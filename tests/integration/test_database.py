"""
Integration tests for the SQLite database handle.

Tests cover:
- Schema creation and stepwise upgrades
- Credentials storage and its all-or-none check
- Transaction rollback and nesting
- Error translation
"""

import sqlite3
from datetime import datetime, timezone

import pytest

from ttledger.errors import ConstraintViolationError, StorageError
from ttledger.store import Credentials, LedgerDatabase


class TestSchema:
    """Tests for migrations."""

    def test_fresh_database_is_latest(self, db):
        assert db.schema_version() == LedgerDatabase.SCHEMA_VERSION == 2

    def test_empty_database_reports_minus_one(self):
        database = LedgerDatabase(":memory:")
        database.connect(upgrade=False)
        try:
            assert database.schema_version() == -1
        finally:
            database.close()

    def test_stepwise_upgrade(self):
        """Upgrading to 0 then to latest yields the full schema."""
        database = LedgerDatabase(":memory:")
        database.connect(upgrade=False)
        try:
            assert database.upgrade(0) == 0
            indexes = database.connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'"
            ).fetchall()
            assert indexes == []

            assert database.upgrade(1) == 1
            indexes = database.connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'"
            ).fetchall()
            assert len(indexes) == 5

            assert database.upgrade() == 2
            assert database.schema_version() == 2
            assert database.get_sync_watermark() is None
        finally:
            database.close()

    def test_upgrade_is_idempotent(self, db):
        assert db.upgrade() == 2
        assert db.upgrade() == 2

    def test_unknown_target(self, db):
        with pytest.raises(StorageError):
            db.upgrade(99)

    def test_file_database_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "ledger.sqlite"
        with LedgerDatabase(str(path)) as database:
            database.set_credentials(Credentials("key", "https://acme.teamwork.com", 7))

        assert path.exists()
        with LedgerDatabase(str(path)) as database:
            assert database.schema_version() == 2
            assert database.get_credentials() == Credentials("key", "https://acme.teamwork.com", 7)


class TestCredentials:
    """Tests for the credentials row."""

    def test_absent_by_default(self, db):
        assert db.get_credentials() is None

    def test_set_and_clear(self, db):
        db.set_credentials(Credentials(api_key="k", base_url="https://x", user_id=1))
        assert db.get_credentials() == Credentials(api_key="k", base_url="https://x", user_id=1)

        db.set_credentials(None)
        assert db.get_credentials() is None

    def test_partial_credentials_rejected(self, db):
        """The metadata row enforces all-or-none."""
        with pytest.raises(ConstraintViolationError):
            with db.transaction("partial") as conn:
                conn.execute("UPDATE metadata SET teamwork_api_key = 'only-key'")
        assert db.get_credentials() is None


class TestTransactions:
    """Tests for transaction handling."""

    def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction("doomed") as conn:
                conn.execute("INSERT INTO entity (kind) VALUES ('project')")
                raise RuntimeError("abort")

        count = db.connection.execute("SELECT COUNT(*) FROM entity").fetchone()[0]
        assert count == 0
        assert not db.connection.in_transaction

    def test_nested_transaction_joins_outer(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction("outer") as conn:
                with db.transaction("inner") as inner:
                    assert inner is conn
                    inner.execute("INSERT INTO entity (kind) VALUES ('timeblock')")
                raise RuntimeError("abort")

        count = db.connection.execute("SELECT COUNT(*) FROM entity").fetchone()[0]
        assert count == 0

    def test_timeblock_check_constraint(self, db):
        """A remote block without an end is rejected by the table itself."""
        with pytest.raises(ConstraintViolationError) as exc_info:
            with db.transaction("raw insert") as conn:
                conn.execute("INSERT INTO entity (kind) VALUES ('timeblock')")
                conn.execute(
                    """
                    INSERT INTO timeblock_version (entity_id, version_id, version_time,
                        external_id, project_entity_id, start_time)
                    VALUES (1, 0, '2024-03-01T09:00:00.000000+00:00', 'time:1', 1,
                        '2024-03-01T09:00:00.000000+00:00')
                    """
                )
        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)

    def test_closed_database(self):
        database = LedgerDatabase(":memory:")
        with pytest.raises(StorageError):
            database.get_credentials()

    def test_sql_error_becomes_storage_error(self, db):
        with pytest.raises(StorageError) as exc_info:
            with db.reading("bad query") as conn:
                conn.execute("SELECT * FROM no_such_table")
        assert exc_info.value.operation == "bad query"


class TestSyncWatermark:
    """Tests for the remote sync watermark."""

    def test_set_and_clear(self, db):
        when = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
        db.set_sync_watermark(when)
        assert db.get_sync_watermark() == when

        db.set_sync_watermark(None)
        assert db.get_sync_watermark() is None

    def test_independent_of_credentials(self, db):
        db.set_sync_watermark(datetime(2024, 3, 1, tzinfo=timezone.utc))
        db.set_credentials(None)
        assert db.get_sync_watermark() is not None
        assert db.get_credentials() is None
