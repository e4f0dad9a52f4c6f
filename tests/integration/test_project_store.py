"""
Integration tests for ProjectStore.

Tests cover:
- Identity stability and version monotonicity
- As-of reads across several versions
- Parent chains, fully qualified names and cycle handling
- History and lookups by every reference kind
"""

from datetime import timedelta

import pytest

from ttledger.errors import InvariantViolationError, NotFoundError
from ttledger.store import ProjectRef


class TestUpsert:
    """Tests for creating and appending project versions."""

    def test_create(self, projects, clock):
        acme = projects.upsert("Acme", "ext-1")

        assert acme.name == "Acme"
        assert acme.version.version_id == 0
        assert acme.version.version_time == clock()
        assert acme.alive

    def test_same_external_id_keeps_entity(self, projects, clock):
        first = projects.upsert("Acme", "ext-1")
        clock.advance(minutes=1)
        second = projects.upsert("Acme Corp", "ext-1")

        assert second.entity_id == first.entity_id
        assert second.version.version_id == 1
        assert second.version.version_time > first.version.version_time

    def test_distinct_external_ids_get_distinct_entities(self, projects):
        a = projects.upsert("A", "ext-a")
        b = projects.upsert("B", "ext-b")
        assert a.entity_id != b.entity_id

    def test_empty_external_id_rejected(self, projects):
        with pytest.raises(InvariantViolationError):
            projects.upsert("Nameless", "")

    def test_clock_going_backwards_is_clamped(self, projects, clock):
        first = projects.upsert("Acme", "ext-1")
        clock.advance(minutes=-5)
        second = projects.upsert("Acme", "ext-1")
        assert second.version.version_time == first.version.version_time
        assert second.version.version_id == 1

    def test_missing_parent(self, projects):
        with pytest.raises(NotFoundError):
            projects.upsert("Orphan", "ext-o", parent_entity_id=999)

    def test_dead_parent(self, projects):
        acme = projects.upsert("Acme", "ext-1")
        projects.upsert("Acme", "ext-1", alive=False)
        with pytest.raises(NotFoundError):
            projects.upsert("Website", "ext-2", parent_entity_id=acme.entity_id)

    def test_cycle_rejected(self, projects):
        a = projects.upsert("A", "ext-a")
        b = projects.upsert("B", "ext-b", parent_entity_id=a.entity_id)
        c = projects.upsert("C", "ext-c", parent_entity_id=b.entity_id)

        with pytest.raises(InvariantViolationError):
            projects.upsert("A", "ext-a", parent_entity_id=c.entity_id)
        with pytest.raises(InvariantViolationError):
            projects.upsert("A", "ext-a", parent_entity_id=a.entity_id)

        assert projects.get(ProjectRef.by_entity_id(a.entity_id)).parent_entity_id is None


class TestAsOf:
    """Tests for point-in-time reads."""

    def test_reads_straddle_versions(self, projects, clock):
        t0 = clock()
        projects.upsert("Acme", "ext-1")
        t1 = clock.advance(hours=1)
        projects.upsert("Acme Corp", "ext-1")
        t2 = clock.advance(hours=1)
        projects.upsert("Acme Inc", "ext-1")

        ref = ProjectRef.by_external_id("ext-1")
        assert projects.get(ref, t0 - timedelta(seconds=1)) is None
        assert projects.get(ref, t0).name == "Acme"
        assert projects.get(ref, t1 - timedelta(microseconds=1)).name == "Acme"
        assert projects.get(ref, t1).name == "Acme Corp"
        assert projects.get(ref, t2).name == "Acme Inc"
        assert projects.get(ref).name == "Acme Inc"

    def test_list_is_ordered_and_as_of(self, projects, clock):
        t0 = clock()
        projects.upsert("B", "ext-b")
        t1 = clock.advance(minutes=1)
        projects.upsert("A", "ext-a")
        clock.advance(minutes=1)
        projects.upsert("B", "ext-b", alive=False)

        assert [p.name for p in projects.list(t0)] == ["B"]
        assert [p.name for p in projects.list(t1)] == ["B", "A"]
        assert [(p.name, p.alive) for p in projects.list()] == [("B", False), ("A", True)]
        assert [p.name for p in projects.list(alive_only=True)] == ["A"]

    def test_lookup_by_every_reference_kind(self, projects):
        acme = projects.upsert("Acme", "ext-1")

        assert projects.get(ProjectRef.by_entity_id(acme.entity_id)) == acme
        assert projects.get(ProjectRef.by_external_id("ext-1")) == acme
        assert projects.get(ProjectRef.by_version(acme.version)) == acme
        assert projects.get(ProjectRef.of(acme)) is acme

    def test_unknown_reference(self, projects):
        assert projects.get(ProjectRef.by_external_id("nope")) is None
        assert projects.get(ProjectRef.by_entity_id(42)) is None


class TestHierarchy:
    """Tests for parents, fqn and find_by_fqn."""

    @pytest.fixture
    def tree(self, projects):
        a = projects.upsert("A", "ext-a")
        b = projects.upsert("B", "ext-b", parent_entity_id=a.entity_id)
        c = projects.upsert("C", "ext-c", parent_entity_id=b.entity_id)
        return a, b, c

    def test_parents_root_first(self, projects, tree):
        a, b, c = tree
        chain = projects.parents(ProjectRef.of(c))
        assert [p.entity_id for p in chain] == [a.entity_id, b.entity_id, c.entity_id]

    def test_parents_of_unknown_is_empty(self, projects):
        assert projects.parents(ProjectRef.by_external_id("nope")) == []

    def test_fqn(self, projects, tree):
        assert projects.fqn(ProjectRef.by_external_id("ext-c")) == "A/B/C"

    def test_fqn_escapes_separator(self, projects):
        outer = projects.upsert("x/y", "ext-x")
        projects.upsert("z", "ext-z", parent_entity_id=outer.entity_id)
        assert projects.fqn(ProjectRef.by_external_id("ext-z")) == "x\\/y/z"

    def test_fqn_uses_ancestor_names_as_of(self, projects, clock, tree):
        t0 = clock()
        clock.advance(hours=1)
        projects.upsert("Alpha", "ext-a")

        ref = ProjectRef.by_external_id("ext-c")
        assert projects.fqn(ref, t0) == "A/B/C"
        assert projects.fqn(ref) == "Alpha/B/C"

    def test_fqn_unknown(self, projects):
        with pytest.raises(NotFoundError):
            projects.fqn(ProjectRef.by_entity_id(7))

    def test_find_by_fqn(self, projects, tree):
        _, b, _ = tree
        assert projects.find_by_fqn("A/B").entity_id == b.entity_id
        with pytest.raises(NotFoundError):
            projects.find_by_fqn("A/Z")

    def test_malformed_cycle_detected(self, projects, db, tree):
        """A cycle written behind the store's back does not hang parents()."""
        a, _, c = tree
        with db.transaction("corrupt") as conn:
            conn.execute(
                """
                INSERT INTO project_version (entity_id, version_id, version_time,
                    external_id, name, parent_entity_id, alive)
                VALUES (?, 1, ?, 'ext-a', 'A', ?, 1)
                """,
                (a.entity_id, "2024-03-01T09:00:00.000000+00:00", c.entity_id),
            )

        with pytest.raises(InvariantViolationError):
            projects.parents(ProjectRef.of(c))
        with pytest.raises(NotFoundError):
            projects.find_by_fqn("A/B/C")


class TestHistory:
    """Tests for project history."""

    def test_all_versions_oldest_first(self, projects, clock):
        projects.upsert("Acme", "ext-1")
        clock.advance(minutes=1)
        projects.upsert("Acme Corp", "ext-1")
        clock.advance(minutes=1)
        projects.upsert("Acme Corp", "ext-1", alive=False)

        history = projects.history(ProjectRef.by_external_id("ext-1"))
        assert [p.version.version_id for p in history] == [0, 1, 2]
        assert [p.name for p in history] == ["Acme", "Acme Corp", "Acme Corp"]
        assert history[-1].alive is False

    def test_unknown_is_empty(self, projects):
        assert projects.history(ProjectRef.by_external_id("nope")) == []
