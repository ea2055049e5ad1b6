"""Change-set computation between hash maps.

This module provides:
- Create, Update, Delete: The three kinds of per-path Change
- Changes: Mapping of normalized path -> Change
- get_changes: Diff two hash maps
- without_unnecessary_changes: Drop changes a destination already has
- get_necessary_changes: The two above, composed
- apply_changes: Replay a change set onto a hash map
- format_changes: Human-readable summary lines

Every function here is pure; none touches the filesystem or the network.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import ClassVar, Literal

from filesync.core.hashing import Hash, HashMap, hashes_equal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Create:
    """The path exists in the target but not the source.

    Attributes:
        target_hash: Hash of the created path.
        old_path: Path the entry was renamed from, when known.
    """

    type: ClassVar[Literal["create"]] = "create"

    target_hash: Hash
    old_path: str | None = None


@dataclass(frozen=True)
class Update:
    """The path exists on both sides with different hashes."""

    type: ClassVar[Literal["update"]] = "update"

    source_hash: Hash
    target_hash: Hash


@dataclass(frozen=True)
class Delete:
    """The path exists in the source but not the target."""

    type: ClassVar[Literal["delete"]] = "delete"

    source_hash: Hash


Change = Create | Update | Delete


class Changes(dict[str, Change]):
    """Per-path changes, keyed by normalized path."""

    def created(self) -> list[str]:
        """Paths with a Create change."""
        return [path for path, change in self.items() if isinstance(change, Create)]

    def updated(self) -> list[str]:
        """Paths with an Update change."""
        return [path for path, change in self.items() if isinstance(change, Update)]

    def deleted(self) -> list[str]:
        """Paths with a Delete change."""
        return [path for path, change in self.items() if isinstance(change, Delete)]

    def __repr__(self) -> str:
        return f"Changes({dict.__repr__(self)})"


def _is_ignored(path: str, ignore: Iterable[str] | None) -> bool:
    return ignore is not None and any(path.startswith(prefix) for prefix in ignore)


def get_changes(
    from_: HashMap,
    to: HashMap,
    ignore: Iterable[str] | None = None,
) -> Changes:
    """Compute the changes that turn `from_` into `to`.

    A directory missing from `to` is only reported as deleted when no path
    in `to` still lives beneath it.

    Args:
        from_: Source hash map.
        to: Target hash map.
        ignore: Path prefixes to leave out of the result.

    Returns:
        The changes, one per differing path.
    """
    ignore = tuple(ignore) if ignore is not None else None
    changes = Changes()

    for path, source_hash in from_.items():
        if _is_ignored(path, ignore):
            continue

        target_hash = to.get(path)
        if target_hash is None:
            if path.endswith("/") and any(target.startswith(path) for target in to):
                # directory kept alive by surviving children
                continue
            changes[path] = Delete(source_hash)
        elif not hashes_equal(path, source_hash, target_hash):
            changes[path] = Update(source_hash, target_hash)

    for path, target_hash in to.items():
        if _is_ignored(path, ignore):
            continue
        if path not in from_:
            changes[path] = Create(target_hash)

    return changes


def without_unnecessary_changes(changes: Changes, existing: HashMap) -> Changes:
    """Drop changes that `existing` already reflects.

    Creates and updates whose target hash `existing` already has are
    dropped, as are deletes of paths `existing` doesn't have.
    """
    necessary = Changes()

    for path, change in changes.items():
        existing_hash = existing.get(path)
        if isinstance(change, Delete):
            if existing_hash is None:
                logger.debug("Already deleted: %s", path)
                continue
        elif existing_hash is not None and hashes_equal(path, change.target_hash, existing_hash):
            logger.debug("Already %sd: %s", change.type, path)
            continue

        necessary[path] = change

    return necessary


def get_necessary_changes(
    from_: HashMap,
    to: HashMap,
    existing: HashMap | None = None,
    ignore: Iterable[str] | None = None,
) -> Changes:
    """Compute the changes from `from_` to `to` that `existing` still needs.

    Args:
        from_: Source hash map.
        to: Target hash map.
        existing: Hash map of the destination; None keeps every change.
        ignore: Path prefixes to leave out of the result.
    """
    changes = get_changes(from_, to, ignore=ignore)
    if existing is None:
        return changes
    return without_unnecessary_changes(changes, existing)


def apply_changes(hashes: HashMap, changes: Changes) -> HashMap:
    """Return a copy of `hashes` with `changes` applied."""
    result = dict(hashes)
    for path, change in changes.items():
        if isinstance(change, Delete):
            result.pop(path, None)
        else:
            result[path] = change.target_hash
    return result


def format_changes(changes: Changes, limit: int | None = None) -> list[str]:
    """Render changes as sorted "± path" lines plus a totals line."""
    symbols = {"create": "+", "update": "±", "delete": "-"}
    paths = sorted(changes)
    shown = paths if limit is None else paths[:limit]

    lines = [f"  {symbols[changes[path].type]} {path}" for path in shown]
    if len(paths) > len(shown):
        lines.append(f"  … {len(paths) - len(shown)} more")

    lines.append(
        f"{len(changes)} change{'s' if len(changes) != 1 else ''} in total. "
        f"{len(changes.created())} created, {len(changes.updated())} updated, "
        f"{len(changes.deleted())} deleted."
    )
    return lines
