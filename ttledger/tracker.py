"""
Punch-in / punch-out time tracking on top of the versioned stores.

A project is Active while it has an open, alive time block and Idle
otherwise. The state is never stored; it is read from the blocks.

    Idle   --punch_in(P)-->  Active   (new block, start = now)
    Active --punch_out(P)--> Idle     (new version, end = now)

Invariants:
    - At most one open block per project is created by punch_in
    - punch_out never guesses between several open blocks
    - Errors from the stores are forwarded unchanged
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .errors import (
    AmbiguousTimeblockError,
    InvariantViolationError,
    NoOpenTimeblockError,
    NotFoundError,
)
from .store import (
    Project,
    ProjectRef,
    ProjectStore,
    Timeblock,
    TimeblockFilter,
    TimeblockRef,
    TimeblockStore,
)
from .store.versioning import Clock, utcnow

logger = logging.getLogger(__name__)


def format_elapsed(elapsed: timedelta) -> str:
    """Render a duration as HH:MM:SS (hours may exceed 99)."""
    seconds = max(int(elapsed.total_seconds()), 0)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


@dataclass
class Status:
    """Currently open work.

    Attributes:
        open: (project, elapsed time) for every open block
    """

    open: list[tuple[Project, timedelta]] = field(default_factory=list)

    def to_dict(self, name_of: Callable[[Project], str]) -> dict[str, Any]:
        """JSON-ready form: {"open": [[name, "HH:MM:SS"], ...]}."""
        return {"open": [[name_of(p), format_elapsed(d)] for p, d in self.open]}


class TimeTracker:
    """Time-tracking façade.

    Example:
        >>> tracker = TimeTracker(projects, timeblocks)
        >>> tracker.punch_in(ProjectRef.by_external_id("ext-1"))
        >>> tracker.status().open
        [(Project(name='Acme', ...), datetime.timedelta(seconds=3))]
        >>> tracker.punch_out()
    """

    def __init__(
        self,
        projects: ProjectStore,
        timeblocks: TimeblockStore,
        clock: Clock = utcnow,
    ) -> None:
        self.projects = projects
        self.timeblocks = timeblocks
        self.clock = clock

    def _open_blocks(self, project: Project | None = None) -> list[Timeblock]:
        query = TimeblockFilter.open(True) & TimeblockFilter.alive(True)
        if project is not None:
            query = query & TimeblockFilter.project(ProjectRef.by_entity_id(project.entity_id))
        return self.timeblocks.search(query)

    def _require_project(self, ref: ProjectRef) -> Project:
        project = self.projects.get(ref)
        if project is None:
            raise NotFoundError(
                f"Project not found: {ref.value!r}",
                resource_type="project",
                resource_id=ref.value,
            )
        return project

    def status(self) -> Status:
        """Pair every open block with its project and elapsed time."""
        now = self.clock()
        status = Status()
        for block in self._open_blocks():
            project = self._require_project(ProjectRef.by_entity_id(block.project_entity_id))
            status.open.append((project, now - block.start))
        return status

    def punch_in(self, project: ProjectRef) -> Timeblock:
        """Start work on a project.

        Raises:
            NotFoundError: If the project does not resolve
            InvariantViolationError: If the project already has an open block
        """
        resolved = self._require_project(project)
        if self._open_blocks(resolved):
            raise InvariantViolationError(
                f"Already punched in to project {resolved.entity_id}",
                constraint="single_open_block",
            )

        block = self.timeblocks.upsert(
            None,
            None,
            ProjectRef.by_entity_id(resolved.entity_id),
            start=self.clock(),
            end=None,
            billable=False,
            notes="",
            tags=(),
            alive=True,
        )
        logger.info(
            "Punched in",
            extra={"project_entity_id": resolved.entity_id, "timeblock": block.entity_id},
        )
        return block

    def punch_out(self, project: ProjectRef | None = None) -> Timeblock:
        """Stop work, closing the open block.

        Args:
            project: Project to punch out of; may be omitted when exactly
                one block is open

        Raises:
            NotFoundError: If the project does not resolve
            NoOpenTimeblockError: If nothing is open
            AmbiguousTimeblockError: If project is omitted and several
                blocks are open
        """
        resolved = self._require_project(project) if project is not None else None
        blocks = self._open_blocks(resolved)

        if not blocks:
            raise NoOpenTimeblockError(
                "No open time block",
                project_entity_id=resolved.entity_id if resolved else None,
            )
        if resolved is None and len(blocks) > 1:
            raise AmbiguousTimeblockError(
                f"{len(blocks)} time blocks are open; name a project",
                open_entity_ids=[b.entity_id for b in blocks],
            )

        block = blocks[0]
        closed = self.timeblocks.upsert(
            TimeblockRef.by_entity_id(block.entity_id),
            block.external_id,
            ProjectRef.by_entity_id(block.project_entity_id),
            start=block.start,
            end=self.clock(),
            billable=block.billable,
            notes=block.notes,
            tags=block.tags,
            alive=block.alive,
        )
        logger.info(
            "Punched out",
            extra={"project_entity_id": block.project_entity_id, "timeblock": block.entity_id},
        )
        return closed
