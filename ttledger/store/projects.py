"""
Append-only store for hierarchical projects.

Every mutation inserts a new project_version row; nothing is updated
or deleted. Projects form a tree through parent_entity_id, which names
the parent's entity (not one of its versions), so a parent can be
renamed without touching its children.

Invariants:
    - One external id maps to at most one entity
    - A parent must resolve to a live project when assigned
    - A parent assignment never closes a cycle
    - parents() terminates even on a malformed (cyclic) database

How to change safely:
    - Keep reads as-of aware; never read a version without a time bound
      except when appending
    - Run every read-then-append sequence inside one transaction
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from ..errors import InvariantViolationError, NotFoundError
from .database import LedgerDatabase
from .models import Project
from .refs import ProjectRef, RefKind
from .versioning import (
    Clock,
    EntityKind,
    allocate_entity,
    encode_timestamp,
    entity_id_for_external,
    first_version,
    latest_version,
    next_version,
    resolve_entity_id,
    select_all_as_of,
    select_as_of,
    select_history,
    utcnow,
    version_from_row,
)

logger = logging.getLogger(__name__)

TABLE = "project_version"
FQN_SEPARATOR = "/"


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        external_id=row["external_id"],
        name=row["name"],
        parent_entity_id=row["parent_entity_id"],
        alive=bool(row["alive"]),
        version=version_from_row(row),
    )


def escape_name(name: str) -> str:
    """Escape the FQN separator inside one project name."""
    return name.replace(FQN_SEPARATOR, "\\" + FQN_SEPARATOR)


class ProjectStore:
    """Versioned project storage.

    Example:
        >>> store = ProjectStore(db)
        >>> acme = store.upsert("Acme", "ext-1")
        >>> site = store.upsert("Website", "ext-2", parent_entity_id=acme.entity_id)
        >>> store.fqn(ProjectRef.of(site))
        'Acme/Website'
    """

    def __init__(self, db: LedgerDatabase, clock: Clock = utcnow) -> None:
        """Initialize the store.

        Args:
            db: Open ledger database
            clock: Source of version times
        """
        self.db = db
        self.clock = clock

    def upsert(
        self,
        name: str,
        external_id: str,
        parent_entity_id: int | None = None,
        alive: bool = True,
    ) -> Project:
        """Create a project or append a new version of it.

        The project is matched by external_id. A match gets a new version
        on the same entity; otherwise a new entity is allocated.

        Args:
            name: Display name
            external_id: Remote identifier, the upsert key
            parent_entity_id: Parent project entity, if any
            alive: False to record a deletion

        Returns:
            The version just written

        Raises:
            NotFoundError: If the parent is missing or dead
            InvariantViolationError: If external_id is empty or the parent
                would form a cycle
        """
        if not external_id:
            raise InvariantViolationError("Project external_id is required", constraint="external_id")

        now = self.clock()
        with self.db.transaction("project upsert") as conn:
            if parent_entity_id is not None:
                parent = self.get(ProjectRef.by_entity_id(parent_entity_id))
                if parent is None or not parent.alive:
                    raise NotFoundError(
                        f"Parent project not found: {parent_entity_id}",
                        resource_type="project",
                        resource_id=parent_entity_id,
                    )

            entity_id = entity_id_for_external(conn, TABLE, external_id)
            previous = latest_version(conn, TABLE, entity_id) if entity_id is not None else None
            if previous is not None:
                if parent_entity_id is not None:
                    self._check_no_cycle(previous.entity_id, parent_entity_id)
                version = next_version(previous, now)
            else:
                version = first_version(allocate_entity(conn, EntityKind.PROJECT), now)

            conn.execute(
                """
                INSERT INTO project_version (entity_id, version_id, version_time,
                                             external_id, name, parent_entity_id, alive)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.entity_id,
                    version.version_id,
                    encode_timestamp(version.version_time),
                    external_id,
                    name,
                    parent_entity_id,
                    alive,
                ),
            )

        logger.debug(
            "Appended project version",
            extra={
                "entity_id": version.entity_id,
                "version_id": version.version_id,
                "external_id": external_id,
            },
        )

        return Project(
            external_id=external_id,
            name=name,
            parent_entity_id=parent_entity_id,
            alive=alive,
            version=version,
        )

    def _check_no_cycle(self, entity_id: int, parent_entity_id: int) -> None:
        chain = self.parents(ProjectRef.by_entity_id(parent_entity_id))
        if any(p.entity_id == entity_id for p in chain):
            raise InvariantViolationError(
                f"Project {entity_id} cannot be its own ancestor",
                constraint="parent_cycle",
            )

    def get(self, ref: ProjectRef, as_of: datetime | None = None) -> Project | None:
        """Resolve a reference as of a point in time.

        Args:
            ref: Project reference; OBJECT refs are returned as-is
            as_of: Point in time (default: now)

        Returns:
            Newest version with version_time <= as_of, or None
        """
        if ref.kind == RefKind.OBJECT:
            return ref.value  # type: ignore[return-value]

        column, key = ref.lookup_key()
        with self.db.reading("project get") as conn:
            row = select_as_of(conn, TABLE, column, key, as_of or self.clock())
        return _row_to_project(row) if row else None

    def list(self, as_of: datetime | None = None, alive_only: bool = False) -> list[Project]:
        """Latest-as-of version of every project, ordered by entity id."""
        with self.db.reading("project list") as conn:
            rows = select_all_as_of(conn, TABLE, as_of or self.clock(), alive_only=alive_only)
        return [_row_to_project(row) for row in rows]

    def parents(self, ref: ProjectRef, as_of: datetime | None = None) -> list[Project]:
        """Ancestor chain of a project, root first, ending with the project.

        Returns an empty list if the reference does not resolve.

        Raises:
            InvariantViolationError: If the stored parent links form a cycle
        """
        as_of = as_of or self.clock()
        chain: list[Project] = []
        seen: set[int] = set()

        current = self.get(ref, as_of)
        while current is not None:
            if current.entity_id in seen:
                raise InvariantViolationError(
                    f"Parent cycle through project {current.entity_id}",
                    constraint="parent_cycle",
                )
            seen.add(current.entity_id)
            chain.append(current)
            if current.parent_entity_id is None:
                break
            current = self.get(ProjectRef.by_entity_id(current.parent_entity_id), as_of)

        chain.reverse()
        return chain

    def fqn(self, ref: ProjectRef, as_of: datetime | None = None) -> str:
        """Fully qualified name, e.g. "Acme/Website/Launch".

        Ancestor names are resolved at the same as_of as the project.
        A '/' inside a name is written as '\\/'.

        Raises:
            NotFoundError: If the reference does not resolve
        """
        chain = self.parents(ref, as_of)
        if not chain:
            raise NotFoundError(f"Project not found: {ref.value!r}", resource_type="project")
        return FQN_SEPARATOR.join(escape_name(p.name) for p in chain)

    def find_by_fqn(self, fqn: str, as_of: datetime | None = None) -> Project:
        """Resolve a fully qualified name to a live project.

        Raises:
            NotFoundError: If no live project has that name
        """
        as_of = as_of or self.clock()
        projects = self.list(as_of)
        by_id = {p.entity_id: p for p in projects}

        for project in projects:
            if project.alive and _fqn_in(by_id, project) == fqn:
                return project
        raise NotFoundError(f"No project named {fqn!r}", resource_type="project", resource_id=fqn)

    def history(self, ref: ProjectRef) -> list[Project]:
        """All versions of one project, oldest first."""
        with self.db.reading("project history") as conn:
            column, key = ref.lookup_key()
            entity_id = resolve_entity_id(conn, TABLE, column, key)
            if entity_id is None:
                return []
            rows = select_history(conn, TABLE, entity_id)
        return [_row_to_project(row) for row in rows]


def _fqn_in(by_id: dict[int, Project], project: Project) -> str | None:
    names: list[str] = []
    seen: set[int] = set()
    current: Project | None = project
    while current is not None:
        if current.entity_id in seen:
            return None
        seen.add(current.entity_id)
        names.append(escape_name(current.name))
        parent_id = current.parent_entity_id
        current = by_id.get(parent_id) if parent_id is not None else None
    return FQN_SEPARATOR.join(reversed(names))
