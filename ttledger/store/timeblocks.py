"""
Append-only store for time blocks.

A time block is an interval of work on one project. While work is in
progress the block is open (no end); closing it appends a new version
with the end set. Blocks imported from the remote service carry an
external id and are always closed.

Invariants:
    - external_id set implies end set (checked here and by the table)
    - One external id is held by at most one live block at a time
    - Tags never contain the tag separator
    - search() sees only the newest version of each block

How to change safely:
    - New filter kinds belong in filters.py and must keep placeholder
      and parameter order aligned
    - upsert is not idempotent; retrying callers must look the block up
      by external id first
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from datetime import datetime

from ..errors import ConstraintViolationError, InvariantViolationError, NotFoundError
from .database import LedgerDatabase
from .filters import TimeblockFilter
from .models import TAG_SEPARATOR, Timeblock, decode_tags, encode_tags
from .projects import ProjectStore
from .refs import ProjectRef, RefKind, TimeblockRef
from .versioning import (
    Clock,
    EntityKind,
    allocate_entity,
    decode_optional_timestamp,
    decode_timestamp,
    encode_timestamp,
    first_version,
    latest_version,
    live_owner_of_external,
    next_version,
    resolve_entity_id,
    select_all_as_of,
    select_as_of,
    select_history,
    utcnow,
    version_from_row,
)

logger = logging.getLogger(__name__)

TABLE = "timeblock_version"

_SEARCH_QUERY = """
    SELECT tb.* FROM timeblock_version AS tb
    INNER JOIN project_version AS p
        ON p.entity_id = tb.project_entity_id
        AND p.version_id = (
            SELECT MAX(p2.version_id) FROM project_version AS p2
            WHERE p2.entity_id = p.entity_id
        )
    WHERE tb.version_id = (
        SELECT MAX(tb2.version_id) FROM timeblock_version AS tb2
        WHERE tb2.entity_id = tb.entity_id
    )
    AND {predicate}
    ORDER BY tb.entity_id
"""


def _row_to_timeblock(row: sqlite3.Row) -> Timeblock:
    return Timeblock(
        external_id=row["external_id"],
        project_entity_id=row["project_entity_id"],
        start=decode_timestamp(row["start_time"]),
        end=decode_optional_timestamp(row["end_time"]),
        billable=bool(row["billable"]),
        notes=row["notes"],
        tags=decode_tags(row["tags"]),
        alive=bool(row["alive"]),
        version=version_from_row(row),
    )


def _validate(
    external_id: str | None,
    start: datetime,
    end: datetime | None,
    tags: Sequence[str],
) -> None:
    if external_id is not None and end is None:
        raise InvariantViolationError(
            f"Time block with external id {external_id!r} must have an end",
            constraint="external_id_requires_end",
        )
    if end is not None and end < start:
        raise InvariantViolationError("Time block ends before it starts", constraint="end_after_start")
    for tag in tags:
        if not tag or TAG_SEPARATOR in tag:
            raise InvariantViolationError(f"Invalid tag: {tag!r}", constraint="tag_format")


class TimeblockStore:
    """Versioned time-block storage.

    Example:
        >>> blocks = TimeblockStore(db, projects)
        >>> tb = blocks.upsert(None, None, ProjectRef.by_external_id("ext-1"), start, None)
        >>> blocks.search(TimeblockFilter.open(True))
        [Timeblock(...)]
    """

    def __init__(
        self,
        db: LedgerDatabase,
        projects: ProjectStore,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the store.

        Args:
            db: Open ledger database
            projects: Project store used to resolve project references
            clock: Source of version times
        """
        self.db = db
        self.projects = projects
        self.clock = clock

    def upsert(
        self,
        ref: TimeblockRef | None,
        external_id: str | None,
        project: ProjectRef,
        start: datetime,
        end: datetime | None,
        billable: bool = False,
        notes: str = "",
        tags: Sequence[str] = (),
        alive: bool = True,
    ) -> Timeblock:
        """Create a time block or append a new version of it.

        If ref resolves to an existing block, the new version goes onto
        that block's chain; otherwise a new entity is allocated.

        Args:
            ref: Block to append to, or None to create
            external_id: Remote identifier (requires end)
            project: Owning project
            start: Start of the interval
            end: End of the interval, None while open
            billable: Billable flag
            notes: Free-form notes
            tags: Ordered tags, none containing a newline
            alive: False to record a deletion

        Returns:
            The version just written

        Raises:
            NotFoundError: If the project does not resolve
            InvariantViolationError: On an external id without end, a bad
                tag, or end before start
            ConstraintViolationError: If another live block holds external_id
        """
        tags = tuple(tags)
        _validate(external_id, start, end, tags)

        now = self.clock()
        with self.db.transaction("timeblock upsert") as conn:
            owner = self.projects.get(project)
            if owner is None:
                raise NotFoundError(
                    f"Project not found: {project.value!r}",
                    resource_type="project",
                    resource_id=project.value,
                )

            entity_id = None
            if ref is not None:
                column, key = ref.lookup_key()
                entity_id = resolve_entity_id(conn, TABLE, column, key)

            if external_id is not None:
                holder = live_owner_of_external(conn, TABLE, external_id)
                if holder is not None and holder != entity_id:
                    raise ConstraintViolationError(
                        f"External id {external_id!r} already belongs to time block {holder}",
                        constraint="timeblock_external_id",
                    )

            previous = latest_version(conn, TABLE, entity_id) if entity_id is not None else None
            if previous is not None:
                version = next_version(previous, now)
            else:
                version = first_version(allocate_entity(conn, EntityKind.TIMEBLOCK), now)

            conn.execute(
                """
                INSERT INTO timeblock_version (entity_id, version_id, version_time,
                                               external_id, project_entity_id,
                                               start_time, end_time, billable,
                                               notes, tags, alive)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.entity_id,
                    version.version_id,
                    encode_timestamp(version.version_time),
                    external_id,
                    owner.entity_id,
                    encode_timestamp(start),
                    encode_timestamp(end) if end is not None else None,
                    billable,
                    notes,
                    encode_tags(tags),
                    alive,
                ),
            )

        logger.debug(
            "Appended timeblock version",
            extra={
                "entity_id": version.entity_id,
                "version_id": version.version_id,
                "project_entity_id": owner.entity_id,
                "open": end is None,
            },
        )

        return Timeblock(
            external_id=external_id,
            project_entity_id=owner.entity_id,
            start=start,
            end=end,
            billable=billable,
            notes=notes,
            tags=tags,
            alive=alive,
            version=version,
        )

    def get(self, ref: TimeblockRef, as_of: datetime | None = None) -> Timeblock | None:
        """Resolve a reference as of a point in time.

        Args:
            ref: Time block reference; OBJECT refs are returned as-is
            as_of: Point in time (default: now)

        Returns:
            Newest version with version_time <= as_of, or None
        """
        if ref.kind == RefKind.OBJECT:
            return ref.value  # type: ignore[return-value]

        column, key = ref.lookup_key()
        with self.db.reading("timeblock get") as conn:
            row = select_as_of(conn, TABLE, column, key, as_of or self.clock())
        return _row_to_timeblock(row) if row else None

    def list(self, as_of: datetime | None = None) -> list[Timeblock]:
        """Latest-as-of version of every time block, ordered by entity id."""
        with self.db.reading("timeblock list") as conn:
            rows = select_all_as_of(conn, TABLE, as_of or self.clock())
        return [_row_to_timeblock(row) for row in rows]

    def search(self, filter: TimeblockFilter | None = None) -> list[Timeblock]:
        """Newest version of every block matching a filter.

        Args:
            filter: Predicate (default: at_time(now))

        Returns:
            Matching blocks ordered by entity id
        """
        if filter is None:
            filter = TimeblockFilter.at_time(self.clock())
        predicate, params = filter.compile()

        with self.db.reading("timeblock search") as conn:
            rows = conn.execute(_SEARCH_QUERY.format(predicate=predicate), params).fetchall()
        return [_row_to_timeblock(row) for row in rows]

    def last_sync_time(self) -> datetime | None:
        """Newest version_time ever written, or None for an empty store."""
        with self.db.reading("timeblock last_sync_time") as conn:
            row = conn.execute("SELECT MAX(version_time) AS latest FROM timeblock_version").fetchone()
        return decode_optional_timestamp(row["latest"])

    def history(self, ref: TimeblockRef) -> list[Timeblock]:
        """All versions of one time block, oldest first."""
        with self.db.reading("timeblock history") as conn:
            column, key = ref.lookup_key()
            entity_id = resolve_entity_id(conn, TABLE, column, key)
            if entity_id is None:
                return []
            rows = select_history(conn, TABLE, entity_id)
        return [_row_to_timeblock(row) for row in rows]
