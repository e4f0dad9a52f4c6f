"""
References to versioned entities.

A reference lets every store operation accept "the thing the caller
already has" while still supporting lookup by any stable handle.
Each reference is one of four variants, discriminated by RefKind:

    VERSION      an EntityVersion (resolves to its entity)
    ENTITY_ID    a bare entity id
    EXTERNAL_ID  the remote system's identifier
    OBJECT       an already-materialized Project or Timeblock

Invariants:
    - The payload type always matches the kind (checked on construction)
    - Every resolution site handles all four kinds and raises
      InvalidReferenceError for anything else
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import InvalidReferenceError
from .models import Project, Timeblock
from .versioning import EntityVersion


class RefKind(Enum):
    """Reference variants."""

    VERSION = "version"
    ENTITY_ID = "entity_id"
    EXTERNAL_ID = "external_id"
    OBJECT = "object"


def _check_payload(kind: RefKind, value: Any, object_type: type) -> None:
    if kind == RefKind.VERSION:
        ok = isinstance(value, EntityVersion)
    elif kind == RefKind.ENTITY_ID:
        ok = isinstance(value, int) and not isinstance(value, bool) and value >= 0
    elif kind == RefKind.EXTERNAL_ID:
        ok = isinstance(value, str) and value != ""
    elif kind == RefKind.OBJECT:
        ok = isinstance(value, object_type)
    else:
        ok = False
    if not ok:
        raise InvalidReferenceError(
            f"Invalid {object_type.__name__} reference: {kind} {value!r}",
            reference=value,
        )


def _lookup_key(kind: RefKind, value: Any) -> tuple[str, int | str]:
    if kind == RefKind.VERSION:
        return "entity_id", value.entity_id
    if kind == RefKind.ENTITY_ID:
        return "entity_id", value
    if kind == RefKind.EXTERNAL_ID:
        return "external_id", value
    if kind == RefKind.OBJECT:
        return "entity_id", value.version.entity_id
    raise InvalidReferenceError(f"Unknown reference kind: {kind!r}", reference=value)


@dataclass(frozen=True)
class ProjectRef:
    """Reference to a project entity."""

    kind: RefKind
    value: EntityVersion | int | str | Project

    def __post_init__(self) -> None:
        _check_payload(self.kind, self.value, Project)

    @classmethod
    def by_version(cls, version: EntityVersion) -> ProjectRef:
        return cls(RefKind.VERSION, version)

    @classmethod
    def by_entity_id(cls, entity_id: int) -> ProjectRef:
        return cls(RefKind.ENTITY_ID, entity_id)

    @classmethod
    def by_external_id(cls, external_id: str) -> ProjectRef:
        return cls(RefKind.EXTERNAL_ID, external_id)

    @classmethod
    def of(cls, project: Project) -> ProjectRef:
        return cls(RefKind.OBJECT, project)

    def lookup_key(self) -> tuple[str, int | str]:
        """Column and value that identify the referenced entity."""
        return _lookup_key(self.kind, self.value)


@dataclass(frozen=True)
class TimeblockRef:
    """Reference to a time-block entity."""

    kind: RefKind
    value: EntityVersion | int | str | Timeblock

    def __post_init__(self) -> None:
        _check_payload(self.kind, self.value, Timeblock)

    @classmethod
    def by_version(cls, version: EntityVersion) -> TimeblockRef:
        return cls(RefKind.VERSION, version)

    @classmethod
    def by_entity_id(cls, entity_id: int) -> TimeblockRef:
        return cls(RefKind.ENTITY_ID, entity_id)

    @classmethod
    def by_external_id(cls, external_id: str) -> TimeblockRef:
        return cls(RefKind.EXTERNAL_ID, external_id)

    @classmethod
    def of(cls, timeblock: Timeblock) -> TimeblockRef:
        return cls(RefKind.OBJECT, timeblock)

    def lookup_key(self) -> tuple[str, int | str]:
        """Column and value that identify the referenced entity."""
        return _lookup_key(self.kind, self.value)
