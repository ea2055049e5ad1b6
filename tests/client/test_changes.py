"""Tests for change-set computation."""

from __future__ import annotations

import pytest

from filesync.client.sync.changes import (
    Changes,
    Create,
    Delete,
    Update,
    apply_changes,
    format_changes,
    get_changes,
    get_necessary_changes,
    without_unnecessary_changes,
)
from filesync.core.hashing import Hash, HashMap

H1 = Hash("1")
H2 = Hash("2")
H3 = Hash("3")


class TestGetChanges:
    """Tests for get_changes."""

    @pytest.mark.parametrize(
        "hashes",
        [
            {},
            {"a.txt": H1},
            {"dir/": H1, "dir/a.txt": H2, "b.txt": H3},
        ],
    )
    def test_identical_maps_have_no_changes(self, hashes: HashMap) -> None:
        """Diffing a map against itself yields nothing."""
        assert get_changes(hashes, dict(hashes)) == {}

    def test_create_update_delete(self) -> None:
        """Should emit one change per differing path."""
        changes = get_changes(
            {"kept.txt": H1, "updated.txt": H1, "deleted.txt": H1},
            {"kept.txt": H1, "updated.txt": H2, "created.txt": H3},
        )

        assert changes == {
            "updated.txt": Update(H1, H2),
            "deleted.txt": Delete(H1),
            "created.txt": Create(H3),
        }
        assert changes.created() == ["created.txt"]
        assert changes.updated() == ["updated.txt"]
        assert changes.deleted() == ["deleted.txt"]

    @pytest.mark.parametrize(
        ("a", "b"),
        [
            ({}, {"a.txt": H1}),
            ({"a.txt": H1}, {}),
            ({"a.txt": H1, "b.txt": H2}, {"a.txt": H2, "c/": H3, "c/d.txt": H1}),
            ({"x/": H1, "x/y.txt": H2}, {"z.txt": H3}),
        ],
    )
    def test_applying_changes_reproduces_target(self, a: HashMap, b: HashMap) -> None:
        """Replaying get_changes(a, b) onto a yields b."""
        assert apply_changes(a, get_changes(a, b)) == b

    def test_directory_with_surviving_children_not_deleted(self) -> None:
        """A directory entry missing from `to` is kept alive by its children."""
        changes = get_changes({"dir/": H1, "dir/a.txt": H2}, {"dir/a.txt": H2})

        assert "dir/" not in changes

    def test_empty_directory_deleted(self) -> None:
        """A directory with no surviving children is deleted."""
        changes = get_changes({"dir/": H1, "dir/a.txt": H2}, {})

        assert changes == {"dir/": Delete(H1), "dir/a.txt": Delete(H2)}

    def test_sibling_prefix_does_not_keep_directory_alive(self) -> None:
        """'dir-2/x' isn't beneath 'dir/'."""
        changes = get_changes({"dir/": H1}, {"dir-2/x.txt": H1})

        assert changes["dir/"] == Delete(H1)

    def test_ignore_prefixes(self) -> None:
        """Ignored prefixes are left out on both sides."""
        changes = get_changes(
            {".gadget/a.txt": H1, "b.txt": H1},
            {".gadget/c.txt": H1},
            ignore=[".gadget/"],
        )

        assert changes == {"b.txt": Delete(H1)}

    def test_permission_only_difference_with_wildcard(self) -> None:
        """Missing permissions on one side don't produce an update."""
        assert get_changes({"a.txt": Hash("1", 0o644)}, {"a.txt": Hash("1")}) == {}


class TestWithoutUnnecessaryChanges:
    """Tests for without_unnecessary_changes."""

    def test_drops_changes_existing_already_has(self) -> None:
        changes = Changes({"a.txt": Update(H1, H2), "b.txt": Create(H3), "c.txt": Update(H1, H3)})

        necessary = without_unnecessary_changes(changes, {"a.txt": H2, "b.txt": H3, "c.txt": H2})

        assert necessary == {"c.txt": Update(H1, H3)}

    def test_drops_deletes_already_applied(self) -> None:
        changes = Changes({"a.txt": Delete(H1), "b.txt": Delete(H1)})

        necessary = without_unnecessary_changes(changes, {"b.txt": H1})

        assert necessary == {"b.txt": Delete(H1)}

    def test_get_necessary_changes_without_existing(self) -> None:
        """With no destination map every change is kept."""
        assert get_necessary_changes({}, {"a.txt": H1}) == {"a.txt": Create(H1)}

    def test_get_necessary_changes_converged(self) -> None:
        """Both sides making the same edit needs no change."""
        ancestor = {"a.txt": H1}
        assert get_necessary_changes(ancestor, {"a.txt": H2}, existing={"a.txt": H2}) == {}


class TestFormatChanges:
    """Tests for format_changes."""

    def test_lines_and_totals(self) -> None:
        changes = Changes({"b.txt": Update(H1, H2), "a.txt": Create(H1), "c.txt": Delete(H1)})

        lines = format_changes(changes)

        assert lines[:3] == ["  + a.txt", "  ± b.txt", "  - c.txt"]
        assert lines[-1] == "3 changes in total. 1 created, 1 updated, 1 deleted."

    def test_limit(self) -> None:
        changes = Changes({f"{i}.txt": Create(H1) for i in range(5)})

        lines = format_changes(changes, limit=2)

        assert len(lines) == 4
        assert lines[2] == "  … 3 more"
