"""Conflict detection between local and remote change sets.

This module provides:
- Conflict: A path both sides changed in incompatible ways
- Conflicts: Mapping of normalized path -> Conflict
- get_conflicts: Pair two change sets and keep the incompatible paths
- without_conflicting_changes: Remove conflicting paths from a change set
- describe_conflict / format_conflicts: Labels for logs and the CLI
"""

from __future__ import annotations

from dataclasses import dataclass

from filesync.client.sync.changes import Change, Changes, Delete
from filesync.client.sync.directory import CONTROL_DIR
from filesync.core.hashing import hashes_equal

_PAST_TENSE = {"create": "created", "update": "updated", "delete": "deleted"}


@dataclass(frozen=True)
class Conflict:
    """Both sides changed the same path since the last sync.

    Attributes:
        local_change: What happened to the path locally.
        gadget_change: What happened to the path remotely.
    """

    local_change: Change
    gadget_change: Change


class Conflicts(dict[str, Conflict]):
    """Conflicting paths, keyed by normalized path."""


def get_conflicts(local_changes: Changes, gadget_changes: Changes) -> Conflicts:
    """Find paths changed on both sides with different outcomes.

    Two changes with the same resulting hash, or two deletes, agree and are
    not a conflict. Local changes under the control subtree are never
    conflicts; the remote value always wins there.

    Args:
        local_changes: Changes made locally since the last sync.
        gadget_changes: Changes made remotely since the last sync.
    """
    conflicts = Conflicts()

    for path, local_change in local_changes.items():
        if path.startswith(CONTROL_DIR):
            continue

        gadget_change = gadget_changes.get(path)
        if gadget_change is None:
            continue

        if isinstance(local_change, Delete) and isinstance(gadget_change, Delete):
            continue

        if (
            not isinstance(local_change, Delete)
            and not isinstance(gadget_change, Delete)
            and hashes_equal(path, local_change.target_hash, gadget_change.target_hash)
        ):
            continue

        conflicts[path] = Conflict(local_change=local_change, gadget_change=gadget_change)

    return conflicts


def without_conflicting_changes(conflicts: Conflicts, changes: Changes) -> Changes:
    """Return `changes` minus every path that appears in `conflicts`."""
    return Changes((path, change) for path, change in changes.items() if path not in conflicts)


def describe_conflict(conflict: Conflict) -> str:
    """Short "updated locally, deleted remotely" style label."""
    local = _PAST_TENSE[conflict.local_change.type]
    gadget = _PAST_TENSE[conflict.gadget_change.type]
    return f"{local} locally, {gadget} remotely"


def format_conflicts(conflicts: Conflicts) -> list[str]:
    """Render conflicts as sorted "± path (label)" lines."""
    return [f"  ± {path} ({describe_conflict(conflicts[path])})" for path in sorted(conflicts)]
