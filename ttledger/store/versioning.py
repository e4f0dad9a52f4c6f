"""
Entity identity and version model.

An entity's durable identity (entity_id) is separate from its version
number (version_id) and from the wall-clock time that version became
effective (version_time).

Invariants:
    - entity_id is allocated once from the entity table and never reused
    - version 0 is the first version of every entity
    - appends always use previous.version_id + 1
    - version_time never decreases along one entity's chain

How to change safely:
    - Timestamp encoding is part of the on-disk format; changing it
      requires a migration that rewrites every version_time column
    - Keep the encoding fixed-width so string order equals time order
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from ..errors import InvariantViolationError

Clock = Callable[[], datetime]


class EntityKind(Enum):
    """Kinds of versioned entity sharing the identity table."""

    PROJECT = "project"
    TIMEBLOCK = "timeblock"


@dataclass(frozen=True)
class EntityVersion:
    """One immutable version of one entity.

    Attributes:
        entity_id: Durable entity identifier
        version_id: Version number, starting at 0
        version_time: When this version became effective (UTC)
    """

    entity_id: int
    version_id: int
    version_time: datetime


def utcnow() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


def encode_timestamp(value: datetime) -> str:
    """Encode an aware datetime as fixed-width RFC3339 text in UTC.

    Raises:
        InvariantViolationError: If the datetime is naive
    """
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvariantViolationError(
            f"Timestamp must be timezone-aware: {value!r}", constraint="aware_timestamp"
        )
    # Four-digit year even before 1000; strftime("%Y") does not pad on glibc.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def decode_timestamp(value: str) -> datetime:
    """Parse text written by encode_timestamp."""
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def decode_optional_timestamp(value: str | None) -> datetime | None:
    return None if value is None else decode_timestamp(value)


def allocate_entity(conn: sqlite3.Connection, kind: EntityKind) -> int:
    """Create a new durable identity row and return its id."""
    cursor = conn.execute("INSERT INTO entity (kind) VALUES (?)", (kind.value,))
    return int(cursor.lastrowid)


def first_version(entity_id: int, now: datetime) -> EntityVersion:
    return EntityVersion(entity_id=entity_id, version_id=0, version_time=now)


def next_version(current: EntityVersion, now: datetime) -> EntityVersion:
    """Version that follows current on the same entity.

    version_time is clamped to current.version_time if the clock moved
    backwards.
    """
    return EntityVersion(
        entity_id=current.entity_id,
        version_id=current.version_id + 1,
        version_time=max(now, current.version_time),
    )


def version_from_row(row: sqlite3.Row) -> EntityVersion:
    return EntityVersion(
        entity_id=row["entity_id"],
        version_id=row["version_id"],
        version_time=decode_timestamp(row["version_time"]),
    )


# Version tables. Names are interpolated into SQL, so only these are accepted.
VERSION_TABLES = frozenset({"project_version", "timeblock_version"})
LOOKUP_COLUMNS = frozenset({"entity_id", "external_id"})


def _check_table(table: str, column: str = "entity_id") -> None:
    if table not in VERSION_TABLES or column not in LOOKUP_COLUMNS:
        raise ValueError(f"Not a version table lookup: {table}.{column}")


def latest_version(conn: sqlite3.Connection, table: str, entity_id: int) -> EntityVersion | None:
    """Newest version of an entity regardless of version_time."""
    _check_table(table)
    row = conn.execute(
        f"""
        SELECT entity_id, version_id, version_time FROM {table}
        WHERE entity_id = ?
        ORDER BY version_id DESC
        LIMIT 1
        """,
        (entity_id,),
    ).fetchone()
    return version_from_row(row) if row else None


def select_as_of(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    key: int | str,
    as_of: datetime,
) -> sqlite3.Row | None:
    """Row of the entity matching column = key, as of a point in time.

    Among the entity's versions with version_time <= as_of, the one with
    the highest version_id wins; its column must equal key.

    If several entities match an external id, a live one is preferred,
    then the most recently created.
    """
    _check_table(table, column)
    return conn.execute(
        f"""
        SELECT v.* FROM {table} AS v
        WHERE v.{column} = ?
        AND v.version_id = (
            SELECT MAX(v2.version_id) FROM {table} AS v2
            WHERE v2.entity_id = v.entity_id AND v2.version_time <= ?
        )
        ORDER BY v.alive DESC, v.entity_id DESC
        LIMIT 1
        """,
        (key, encode_timestamp(as_of)),
    ).fetchone()


def select_all_as_of(
    conn: sqlite3.Connection,
    table: str,
    as_of: datetime,
    alive_only: bool = False,
) -> list[sqlite3.Row]:
    """Latest-as-of row of every entity in a table, by entity_id."""
    _check_table(table)
    query = f"""
        SELECT v.* FROM {table} AS v
        WHERE v.version_id = (
            SELECT MAX(v2.version_id) FROM {table} AS v2
            WHERE v2.entity_id = v.entity_id AND v2.version_time <= ?
        )
    """
    if alive_only:
        query += " AND v.alive = 1"
    query += " ORDER BY v.entity_id"
    return conn.execute(query, (encode_timestamp(as_of),)).fetchall()


def select_history(conn: sqlite3.Connection, table: str, entity_id: int) -> list[sqlite3.Row]:
    """Every version of one entity, oldest first."""
    _check_table(table)
    return conn.execute(
        f"SELECT * FROM {table} WHERE entity_id = ? ORDER BY version_id",
        (entity_id,),
    ).fetchall()


def entity_id_for_external(conn: sqlite3.Connection, table: str, external_id: str) -> int | None:
    """Entity that most recently carried an external id, at any time."""
    _check_table(table)
    row = conn.execute(
        f"""
        SELECT entity_id FROM {table}
        WHERE external_id = ?
        ORDER BY version_time DESC, version_id DESC
        LIMIT 1
        """,
        (external_id,),
    ).fetchone()
    return row["entity_id"] if row else None


def resolve_entity_id(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    key: int | str,
) -> int | None:
    """Entity named by a lookup key, at any version_time."""
    if column == "external_id":
        return entity_id_for_external(conn, table, str(key))
    _check_table(table, column)
    row = conn.execute(
        f"SELECT entity_id FROM {table} WHERE entity_id = ? LIMIT 1",
        (key,),
    ).fetchone()
    return row["entity_id"] if row else None


def live_owner_of_external(conn: sqlite3.Connection, table: str, external_id: str) -> int | None:
    """Entity whose latest version is alive and carries external_id."""
    _check_table(table)
    row = conn.execute(
        f"""
        SELECT v.entity_id FROM {table} AS v
        WHERE v.external_id = ?
        AND v.alive = 1
        AND v.version_id = (
            SELECT MAX(v2.version_id) FROM {table} AS v2
            WHERE v2.entity_id = v.entity_id
        )
        ORDER BY v.entity_id
        LIMIT 1
        """,
        (external_id,),
    ).fetchone()
    return row["entity_id"] if row else None
