"""
Versioned entity store for ttledger.

This package handles:
- Entity identity allocation and append-only version chains
- As-of (point in time) reads
- Hierarchical projects with parent chains and fully qualified names
- Time blocks and the filter algebra used to search them

The store never overwrites history: every mutation inserts a new
version row, and deletion is a version with alive = False.

Invariants:
    - (entity_id, version_id) is unique per entity kind
    - Appends use the previous version_id + 1
    - A single process writes the database at a time

How to change safely:
    - Schema changes go through database._MIGRATIONS
    - Keep references and filters exhaustive over their variants
"""

from .database import Credentials, LedgerDatabase
from .filters import FilterOp, TimeblockFilter
from .models import Project, Timeblock
from .projects import ProjectStore
from .refs import ProjectRef, RefKind, TimeblockRef
from .timeblocks import TimeblockStore
from .versioning import EntityKind, EntityVersion

__all__ = [
    "Credentials",
    "EntityKind",
    "EntityVersion",
    "FilterOp",
    "LedgerDatabase",
    "Project",
    "ProjectRef",
    "ProjectStore",
    "RefKind",
    "Timeblock",
    "TimeblockFilter",
    "TimeblockRef",
    "TimeblockStore",
]
