"""
Composable predicates over the current time blocks.

A TimeblockFilter is a small expression tree. compile() turns it into
a SQL boolean fragment plus the positional parameters its placeholders
bind to. The fragment refers to two aliases provided by
TimeblockStore.search:

    tb  the latest version row of each time block
    p   the current version row of the block's project

Invariants:
    - compile() is pure structural recursion with no side effects
    - The number of '?' placeholders always equals len(params)
    - Parameters appear in the same left-to-right order as their
      placeholders, under any nesting of AND / OR
    - No caller-supplied value is ever interpolated into the SQL text

Tag matching is exact containment: TAG("x") matches a block whose tag
list contains the element "x" (case-sensitive), not a block tagged
"xy" or "X".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import InvalidReferenceError
from .models import TAG_SEPARATOR
from .refs import ProjectRef, TimeblockRef
from .versioning import encode_timestamp


class FilterOp(Enum):
    """Filter node kinds."""

    REF = "ref"
    PROJECT = "project"
    OPEN = "open"
    TAG = "tag"
    AT_TIME = "at_time"
    ALIVE = "alive"
    AND = "and"
    OR = "or"


@dataclass(frozen=True)
class TimeblockFilter:
    """One node of a filter expression.

    Build nodes with the classmethods and combine them with & and |:

        >>> f = TimeblockFilter.open(True) & TimeblockFilter.project(ref)
        >>> sql, params = f.compile()
    """

    op: FilterOp
    value: Any = None
    left: TimeblockFilter | None = None
    right: TimeblockFilter | None = None

    @classmethod
    def ref(cls, ref: TimeblockRef) -> TimeblockFilter:
        return cls(FilterOp.REF, ref)

    @classmethod
    def project(cls, ref: ProjectRef | None) -> TimeblockFilter:
        return cls(FilterOp.PROJECT, ref)

    @classmethod
    def open(cls, is_open: bool = True) -> TimeblockFilter:
        return cls(FilterOp.OPEN, is_open)

    @classmethod
    def tag(cls, tag: str) -> TimeblockFilter:
        return cls(FilterOp.TAG, tag)

    @classmethod
    def at_time(cls, when: datetime) -> TimeblockFilter:
        return cls(FilterOp.AT_TIME, when)

    @classmethod
    def alive(cls, is_alive: bool = True) -> TimeblockFilter:
        return cls(FilterOp.ALIVE, is_alive)

    @classmethod
    def and_(cls, left: TimeblockFilter, right: TimeblockFilter) -> TimeblockFilter:
        return cls(FilterOp.AND, left=left, right=right)

    @classmethod
    def or_(cls, left: TimeblockFilter, right: TimeblockFilter) -> TimeblockFilter:
        return cls(FilterOp.OR, left=left, right=right)

    def __and__(self, other: TimeblockFilter) -> TimeblockFilter:
        return TimeblockFilter.and_(self, other)

    def __or__(self, other: TimeblockFilter) -> TimeblockFilter:
        return TimeblockFilter.or_(self, other)

    def compile(self) -> tuple[str, list[Any]]:
        """Compile to a parenthesised SQL fragment and its parameters.

        Returns:
            Tuple of (fragment, positional parameters)

        Raises:
            InvalidReferenceError: If a REF/PROJECT node holds an unusable reference
        """
        op = self.op

        if op in (FilterOp.AND, FilterOp.OR):
            if self.left is None or self.right is None:
                raise ValueError(f"{op.name} filter needs two operands")
            left_sql, left_params = self.left.compile()
            right_sql, right_params = self.right.compile()
            return f"({left_sql} {op.name} {right_sql})", left_params + right_params

        if op == FilterOp.REF:
            if not isinstance(self.value, TimeblockRef):
                raise InvalidReferenceError("REF filter needs a TimeblockRef", reference=self.value)
            column, key = self.value.lookup_key()
            return f"(tb.{column} = ?)", [key]

        if op == FilterOp.PROJECT:
            if self.value is None:
                return "(1)", []
            if not isinstance(self.value, ProjectRef):
                raise InvalidReferenceError(
                    "PROJECT filter needs a ProjectRef", reference=self.value
                )
            column, key = self.value.lookup_key()
            return f"(p.{column} = ?)", [key]

        if op == FilterOp.OPEN:
            return ("(tb.end_time IS NULL)" if self.value else "(tb.end_time IS NOT NULL)"), []

        if op == FilterOp.TAG:
            needle = f"{TAG_SEPARATOR}{self.value}{TAG_SEPARATOR}"
            return "(instr(char(10) || tb.tags || char(10), ?) > 0)", [needle]

        if op == FilterOp.AT_TIME:
            return "(tb.version_time <= ?)", [encode_timestamp(self.value)]

        if op == FilterOp.ALIVE:
            return "(tb.alive = ?)", [1 if self.value else 0]

        raise ValueError(f"Unknown filter op: {op!r}")
