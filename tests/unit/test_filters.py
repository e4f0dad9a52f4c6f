"""
Unit tests for the time block filter algebra.

Tests cover:
- Fragments for every node kind
- Parameter/placeholder alignment under nesting
- Tag needle construction
- Operator composition
"""

from datetime import datetime, timezone

import pytest

from ttledger.errors import InvalidReferenceError
from ttledger.store import FilterOp, ProjectRef, TimeblockFilter, TimeblockRef

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeExecutor:
    """Stands in for a query layer that binds positional parameters.

    Checks that placeholders and parameters line up, then renders the
    fragment with each parameter substituted in place.
    """

    def execute(self, sql, params):
        parts = sql.split("?")
        assert len(parts) - 1 == len(params), "placeholder/parameter count mismatch"
        rendered = parts[0]
        for param, rest in zip(params, parts[1:]):
            rendered += repr(param) + rest
        return rendered


@pytest.fixture
def executor():
    return FakeExecutor()


class TestLeafFragments:
    """Tests for single-node filters."""

    def test_ref_by_entity_id(self):
        sql, params = TimeblockFilter.ref(TimeblockRef.by_entity_id(5)).compile()
        assert sql == "(tb.entity_id = ?)"
        assert params == [5]

    def test_ref_by_external_id(self):
        sql, params = TimeblockFilter.ref(TimeblockRef.by_external_id("time:9")).compile()
        assert sql == "(tb.external_id = ?)"
        assert params == ["time:9"]

    def test_project_none_is_always_true(self):
        """PROJECT(None) matches every block and binds nothing."""
        assert TimeblockFilter.project(None).compile() == ("(1)", [])

    def test_project_by_external_id_matches_external_column(self):
        sql, params = TimeblockFilter.project(ProjectRef.by_external_id("ext-1")).compile()
        assert sql == "(p.external_id = ?)"
        assert params == ["ext-1"]

    def test_open_and_closed(self):
        assert TimeblockFilter.open(True).compile() == ("(tb.end_time IS NULL)", [])
        assert TimeblockFilter.open(False).compile() == ("(tb.end_time IS NOT NULL)", [])

    def test_at_time_binds_encoded_time(self):
        sql, params = TimeblockFilter.at_time(T0).compile()
        assert sql == "(tb.version_time <= ?)"
        assert params == ["2024-03-01T09:00:00.000000+00:00"]

    def test_alive(self):
        assert TimeblockFilter.alive(False).compile() == ("(tb.alive = ?)", [0])

    def test_tag_needle_is_delimited(self):
        """Tag match looks for the whole tag between separators."""
        sql, params = TimeblockFilter.tag("billing").compile()
        assert sql == "(instr(char(10) || tb.tags || char(10), ?) > 0)"
        assert params == ["\nbilling\n"]

    def test_tag_wildcards_are_literal(self):
        _, params = TimeblockFilter.tag("100%_done").compile()
        assert params == ["\n100%_done\n"]

    def test_ref_filter_requires_timeblock_ref(self):
        with pytest.raises(InvalidReferenceError):
            TimeblockFilter.ref(ProjectRef.by_entity_id(1)).compile()


class TestComposition:
    """Tests for AND / OR nesting."""

    def test_operators_build_nodes(self):
        a = TimeblockFilter.open(True)
        b = TimeblockFilter.tag("x")
        assert (a & b).op == FilterOp.AND
        assert (a | b).op == FilterOp.OR
        assert (a & b) == TimeblockFilter.and_(a, b)

    def test_parameter_order_matches_placeholders(self, executor):
        """AND(OR(REF r1, REF r2), PROJECT p) binds [r1, r2, p] in place."""
        query = TimeblockFilter.and_(
            TimeblockFilter.or_(
                TimeblockFilter.ref(TimeblockRef.by_entity_id(1)),
                TimeblockFilter.ref(TimeblockRef.by_external_id("r2")),
            ),
            TimeblockFilter.project(ProjectRef.by_entity_id(3)),
        )
        sql, params = query.compile()

        assert params == [1, "r2", 3]
        assert executor.execute(sql, params) == (
            "(((tb.entity_id = 1) OR (tb.external_id = 'r2')) AND (p.entity_id = 3))"
        )

    def test_parameter_free_nodes_do_not_shift_order(self, executor):
        query = (
            TimeblockFilter.open(True)
            & TimeblockFilter.ref(TimeblockRef.by_entity_id(10))
            & TimeblockFilter.project(None)
            & TimeblockFilter.ref(TimeblockRef.by_entity_id(20))
        )
        sql, params = query.compile()

        assert params == [10, 20]
        rendered = executor.execute(sql, params)
        assert rendered.index("= 10") < rendered.index("= 20")

    @pytest.mark.parametrize("depth", [1, 2, 5, 8])
    def test_alignment_at_arbitrary_depth(self, executor, depth):
        """Balanced trees of mixed AND/OR keep left-to-right order."""
        counter = iter(range(2**depth))

        def build(level):
            if level == 0:
                return TimeblockFilter.ref(TimeblockRef.by_entity_id(next(counter)))
            left = build(level - 1)
            right = build(level - 1)
            return left & right if level % 2 else left | right

        sql, params = build(depth).compile()

        assert params == list(range(2**depth))
        rendered = executor.execute(sql, params)
        positions = [rendered.index(f"= {n})") for n in params]
        assert positions == sorted(positions)

    def test_left_deep_and_right_deep_trees_agree(self):
        a, b, c = (TimeblockFilter.ref(TimeblockRef.by_entity_id(n)) for n in (1, 2, 3))
        _, left_params = ((a | b) & c).compile()
        _, right_params = (a | (b & c)).compile()
        assert left_params == right_params == [1, 2, 3]
