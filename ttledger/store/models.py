"""
Versioned entity records returned by the stores.

Both records are frozen: callers never mutate them and feed them back
to the stores only as references for the next upsert.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .versioning import EntityVersion

TAG_SEPARATOR = "\n"


@dataclass(frozen=True)
class Project:
    """One version of a hierarchical project.

    Attributes:
        external_id: Identifier assigned by the remote system
        name: Display name (may contain '/')
        parent_entity_id: Entity id of the parent project, if any
        alive: False once the project has been deleted
        version: Identity and version of this row
    """

    external_id: str
    name: str
    parent_entity_id: int | None
    alive: bool
    version: EntityVersion

    @property
    def entity_id(self) -> int:
        return self.version.entity_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.version.entity_id,
            "version_id": self.version.version_id,
            "version_time": self.version.version_time.isoformat(),
            "external_id": self.external_id,
            "name": self.name,
            "parent_entity_id": self.parent_entity_id,
            "alive": self.alive,
        }


@dataclass(frozen=True)
class Timeblock:
    """One version of a time interval attached to a project.

    Attributes:
        external_id: Remote identifier; present only on closed blocks
        project_entity_id: Entity id of the owning project
        start: When work started
        end: When work stopped, None while the block is open
        billable: Whether the time is billable
        notes: Free-form notes
        tags: Ordered tags
        alive: False once the block has been deleted
        version: Identity and version of this row
    """

    external_id: str | None
    project_entity_id: int
    start: datetime
    end: datetime | None
    billable: bool
    notes: str
    tags: tuple[str, ...]
    alive: bool
    version: EntityVersion

    @property
    def entity_id(self) -> int:
        return self.version.entity_id

    @property
    def is_open(self) -> bool:
        return self.end is None

    def elapsed(self, now: datetime) -> timedelta:
        """Duration of the block, measured up to now while open."""
        return (self.end or now) - self.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.version.entity_id,
            "version_id": self.version.version_id,
            "version_time": self.version.version_time.isoformat(),
            "external_id": self.external_id,
            "project_entity_id": self.project_entity_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "billable": self.billable,
            "notes": self.notes,
            "tags": list(self.tags),
            "alive": self.alive,
        }


def encode_tags(tags: tuple[str, ...] | list[str]) -> str:
    return TAG_SEPARATOR.join(tags)


def decode_tags(blob: str) -> tuple[str, ...]:
    if not blob:
        return ()
    return tuple(blob.split(TAG_SEPARATOR))
