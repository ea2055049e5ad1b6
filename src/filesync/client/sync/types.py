"""Result types and errors for the sync orchestrator.

This module defines:
- FileSyncHashes: Everything one HASHING pass learned about both trees
- Problem: A server-reported issue with a published file
- SyncResult: Outcome of a sync/push/pull cycle
- TooManySyncAttemptsError, DivergedChangesError, SyncCancelledError
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from filesync.client.errors import FileSyncError
from filesync.client.sync.changes import Changes
from filesync.client.sync.conflicts import Conflicts
from filesync.core.hashing import HashMap


@dataclass
class FileSyncHashes:
    """Hash maps of the ancestor, local and remote trees, and their diffs.

    Attributes:
        in_sync: Local and remote trees are identical.
        files_version_hashes: Remote tree at the last synced version.
        local_hashes: Local tree right now.
        gadget_hashes: Remote tree at gadget_files_version.
        local_changes: Local edits since the ancestor, minus ones the remote has.
        gadget_changes: Remote edits since the ancestor, minus ones we have.
        local_changes_to_push: What pushing would send (remote -> local).
        gadget_changes_to_pull: What pulling would write (local -> remote).
        gadget_files_version: Latest remote files version.
    """

    in_sync: bool
    files_version_hashes: HashMap
    local_hashes: HashMap
    gadget_hashes: HashMap
    local_changes: Changes
    gadget_changes: Changes
    local_changes_to_push: Changes
    gadget_changes_to_pull: Changes
    gadget_files_version: int


@dataclass(frozen=True)
class Problem:
    """An issue the platform found in a published file."""

    level: str
    message: str
    path: str | None = None
    type: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Problem:
        return cls(
            level=str(data.get("level", "")),
            message=str(data.get("message", "")),
            path=data.get("path"),
            type=data.get("type"),
        )

    def __str__(self) -> str:
        where = f"{self.path}: " if self.path else ""
        return f"[{self.level}] {where}{self.message}"


@dataclass
class SyncResult:
    """Outcome of a sync, push or pull.

    Attributes:
        files_version: Files version persisted at the end of the cycle.
        pulled: Changes written to the local tree.
        pushed: Changes published to the remote tree.
        conflicts: Conflicts that were resolved along the way.
        problems: Issues the platform reported for published files.
        attempts: HASHING passes the cycle needed.
    """

    files_version: int
    pulled: Changes = field(default_factory=Changes)
    pushed: Changes = field(default_factory=Changes)
    conflicts: Conflicts = field(default_factory=Conflicts)
    problems: list[Problem] = field(default_factory=list)
    attempts: int = 1

    @property
    def changed(self) -> bool:
        """Whether anything was written on either side."""
        return bool(self.pulled or self.pushed)


class TooManySyncAttemptsError(FileSyncError):
    """The trees kept diverging across every allowed attempt."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            f"Failed to synchronize files after {attempts} attempts. "
            "Make sure no one else is editing files in your environment, and try again."
        )


class DivergedChangesError(FileSyncError):
    """A one-directional sync would discard changes made on the other side.

    Attributes:
        changes: The changes that would be discarded.
        side: "local" or "environment".
    """

    def __init__(self, changes: Changes, side: str) -> None:
        self.changes = changes
        self.side = side
        super().__init__(
            f"Your {side} files have changed since you last synced "
            f"({len(changes)} change{'s' if len(changes) != 1 else ''}). "
            "Re-run with --force to discard them."
        )


class SyncCancelledError(FileSyncError):
    """The conflict resolver chose to cancel; nothing was written."""

    def __init__(self, conflicts: Conflicts) -> None:
        self.conflicts = conflicts
        super().__init__(f"Sync cancelled with {len(conflicts)} unresolved conflicts")
