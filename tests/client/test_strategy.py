"""Tests for conflict resolvers."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from filesync.client.sync.changes import Changes, Delete, Update
from filesync.client.sync.conflicts import Conflicts, get_conflicts
from filesync.client.sync.strategy import ConflictPreference, interactive_resolver, prefer
from filesync.core.hashing import Hash

BASE = Hash("base")


@pytest.fixture
def conflicts() -> Conflicts:
    return get_conflicts(
        Changes({"a.txt": Update(BASE, Hash("local")), "b.txt": Update(BASE, Hash("local"))}),
        Changes({"a.txt": Update(BASE, Hash("remote")), "b.txt": Delete(BASE)}),
    )


class TestPrefer:
    """Tests for the non-interactive resolver."""

    @pytest.mark.parametrize("preference", list(ConflictPreference))
    def test_returns_preference(self, conflicts: Conflicts, preference: ConflictPreference) -> None:
        assert prefer(preference)(conflicts) is preference

    def test_defaults_to_environment(self, conflicts: Conflicts) -> None:
        assert prefer()(conflicts) is ConflictPreference.GADGET


class TestInteractiveResolver:
    """Tests for the prompting resolver."""

    def test_one_answer_for_all(self, conflicts: Conflicts, capsys: pytest.CaptureFixture[str]) -> None:
        with patch("filesync.client.sync.strategy.click.prompt", return_value=2) as prompt:
            resolution = interactive_resolver()(conflicts)

        assert resolution is ConflictPreference.LOCAL
        prompt.assert_called_once()
        output = capsys.readouterr().out
        assert "a.txt (updated locally, updated remotely)" in output
        assert "b.txt (updated locally, deleted remotely)" in output

    def test_per_path(self, conflicts: Conflicts) -> None:
        with patch("filesync.client.sync.strategy.click.prompt", side_effect=[2, 3]):
            resolution = interactive_resolver(per_path=True)(conflicts)

        assert resolution == {"a.txt": ConflictPreference.LOCAL, "b.txt": ConflictPreference.GADGET}

    def test_per_path_cancel_stops_asking(self, conflicts: Conflicts) -> None:
        prompt = MagicMock(return_value=1)
        with patch("filesync.client.sync.strategy.click.prompt", prompt):
            resolution = interactive_resolver(per_path=True)(conflicts)

        assert resolution is ConflictPreference.CANCEL
        prompt.assert_called_once()
