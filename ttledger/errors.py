"""
Error types for ttledger.

This module defines all exception types raised by the ledger:
- LedgerError: Base exception
- NotFoundError: Referenced entity or project is absent
- ConstraintViolationError: Uniqueness or check constraint breach
- InvariantViolationError: Caller broke a documented precondition
- StorageError: Underlying SQLite failure
- NoOpenTimeblockError / AmbiguousTimeblockError: Punch-out failures
- InvalidReferenceError: A reference that cannot be resolved
- SyncError: Remote sync failure

Invariants:
    - All errors inherit from LedgerError
    - Errors carry a stable code for programmatic handling
    - Stores never swallow these; they reach the immediate caller
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base exception for all ledger errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "LEDGER_ERROR"
        self.details = details or {}


class NotFoundError(LedgerError):
    """Referenced entity not found.

    Raised when:
    - A project reference does not resolve
    - A parent project is missing or dead
    - A fully-qualified project name matches nothing
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConstraintViolationError(LedgerError):
    """A uniqueness or check constraint was breached.

    Raised when:
    - An external id is already held by a different entity
    - SQLite rejects a row with an integrity error
    """

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        code: str = "CONSTRAINT_VIOLATION",
    ) -> None:
        super().__init__(message, code=code, details={"constraint": constraint})
        self.constraint = constraint


class InvariantViolationError(ConstraintViolationError):
    """A precondition was rejected at the API boundary.

    Raised when:
    - A time block has an external id but no end
    - A tag contains the tag separator
    - A parent assignment would form a cycle
    """

    def __init__(self, message: str, constraint: str | None = None) -> None:
        super().__init__(message, constraint=constraint, code="INVARIANT_VIOLATION")


class StorageError(LedgerError):
    """The storage engine failed.

    Always chained to the original sqlite3 exception.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, code="STORAGE_ERROR", details={"operation": operation})
        self.operation = operation


class NoOpenTimeblockError(LedgerError):
    """Punch-out found nothing to close."""

    def __init__(self, message: str, project_entity_id: int | None = None) -> None:
        super().__init__(
            message,
            code="NO_OPEN_TIMEBLOCK",
            details={"project_entity_id": project_entity_id},
        )
        self.project_entity_id = project_entity_id


class AmbiguousTimeblockError(LedgerError):
    """Punch-out without a project while several blocks are open."""

    def __init__(self, message: str, open_entity_ids: list[int] | None = None) -> None:
        open_entity_ids = open_entity_ids or []
        super().__init__(
            message,
            code="AMBIGUOUS_TIMEBLOCK",
            details={"open_entity_ids": open_entity_ids},
        )
        self.open_entity_ids = open_entity_ids


class InvalidReferenceError(LedgerError):
    """A reference variant cannot be resolved."""

    def __init__(self, message: str, reference: Any = None) -> None:
        super().__init__(message, code="INVALID_REFERENCE", details={"reference": repr(reference)})
        self.reference = reference


class SyncError(LedgerError):
    """Talking to the remote project-management service failed."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code="SYNC_ERROR",
            details={"url": url, "status_code": status_code},
        )
        self.url = url
        self.status_code = status_code
