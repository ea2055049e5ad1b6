"""A local directory tree being synchronized.

This module provides:
- Directory: Root path + ignore rules + path normalization + hashing
- CONTROL_DIR: The tool's own bookkeeping subtree inside the synced tree
- swallow_enoent: Context manager that drops "file vanished" errors

All paths leaving this module are normalized: relative to the root, "/"
separated, and directories end with exactly one "/".
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
from collections.abc import Iterator
from pathlib import Path

from filesync.client.sync.ignore import IGNORE_FILE_NAME, IgnorePatterns
from filesync.core.hashing import HashMap, compute_hash

logger = logging.getLogger(__name__)

CONTROL_DIR = ".gadget/"

# Paths under the control subtree are never ignored, whatever .ignore says
NEVER_IGNORE_PATHS = (CONTROL_DIR,)

# Bookkeeping written by this tool; excluded from hashing only
HASHING_IGNORE_PATHS = (
    ".gadget/sync.json",
    ".gadget/backup",
    ".gadget/dev-lock.json",
    "yarn-error.log",
)

_REPEATED_SLASHES = re.compile(r"/{2,}")


@contextlib.contextmanager
def swallow_enoent() -> Iterator[None]:
    """Ignore FileNotFoundError raised inside the block; re-raise anything else."""
    try:
        yield
    except FileNotFoundError:
        pass


def normalize_path(path: str, is_directory: bool) -> str:
    """Normalize a relative path to the canonical wire form."""
    path = _REPEATED_SLASHES.sub("/", path.replace("\\", "/")).rstrip("/")
    if is_directory and path:
        path += "/"
    return path


class Directory:
    """A directory tree on the local filesystem.

    Attributes:
        path: Absolute, resolved root of the tree.
    """

    def __init__(self, path: Path | str, load_ignore_file: bool = True) -> None:
        """Initialize the directory.

        Args:
            path: Root of the tree. It doesn't need to exist yet.
            load_ignore_file: Read the root ignore-rule file immediately.
        """
        self.path = Path(path).resolve()
        self._ignore = IgnorePatterns()
        self._hashing = False
        if load_ignore_file:
            self.load_ignore_file()

    def __repr__(self) -> str:
        return f"Directory({str(self.path)!r})"

    def load_ignore_file(self) -> None:
        """(Re)load the root ignore-rule file. A missing file is not an error."""
        self._ignore = IgnorePatterns()
        self._ignore.load_from_file(self.path / IGNORE_FILE_NAME)

    def relative(self, path: Path | str) -> str:
        """Return a path relative to the root. Relative input is returned as is."""
        if not os.path.isabs(path):
            return str(path)
        return os.path.relpath(path, self.path)

    def absolute(self, *segments: str) -> Path:
        """Resolve segments against the root.

        Raises:
            ValueError: If the result escapes the root.
        """
        result = Path(os.path.normpath(self.path.joinpath(*segments)))
        if result != self.path and self.path not in result.parents:
            raise ValueError(f"expected {result} to be within {self.path}")
        return result

    def normalize(self, path: Path | str, is_directory: bool) -> str:
        """Convert a path to its canonical relative form.

        Converts separators to "/", collapses repeated separators, strips
        trailing separators from files and adds exactly one to directories.
        """
        if os.path.isabs(path):
            path = self.relative(path)
        if str(path) == ".":
            path = ""
        return normalize_path(str(path), is_directory)

    def ignores(self, path: Path | str) -> bool:
        """Check whether a path is excluded from synchronization.

        The root itself is never ignored; anything outside the root always
        is. The control subtree is exempt from the ignore-rule file.
        """
        relative = self.relative(path)
        if relative in ("", "."):
            return False

        if relative.startswith(".."):
            return True

        relative = _REPEATED_SLASHES.sub("/", relative.replace("\\", "/"))
        if self._hashing and any(relative.startswith(ignored) for ignored in HASHING_IGNORE_PATHS):
            return True

        if any(relative.startswith(never) for never in NEVER_IGNORE_PATHS):
            return False

        return self._ignore.should_ignore(relative)

    def walk(self) -> Iterator[tuple[str, bool]]:
        """Yield (normalized_path, is_directory) for every non-ignored entry.

        Depth-first. Ignored directories are not descended into, symlinks
        are not followed, and the root itself is not yielded. Each call
        walks the tree afresh.
        """
        yield from self._walk(self.path)

    def _walk(self, directory: Path) -> Iterator[tuple[str, bool]]:
        if directory != self.path:
            yield self.normalize(directory, True), True

        entries: list[os.DirEntry[str]] = []
        with swallow_enoent(), os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            entry_path = Path(entry.path)
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file(follow_symlinks=False)
            except FileNotFoundError:
                continue

            if is_dir:
                if self.ignores(self.normalize(entry_path, True)):
                    continue
                yield from self._walk(entry_path)
            elif is_file:
                if self.ignores(self.normalize(entry_path, False)):
                    continue
                yield self.normalize(entry_path, False), False

    def hashes(self) -> HashMap:
        """Hash every non-ignored file and directory in the tree.

        Bookkeeping paths are skipped. An entry that vanishes between being
        listed and being read is left out rather than failing the walk.
        """
        self._hashing = True
        try:
            result: HashMap = {}
            for normalized, _is_dir in self.walk():
                with swallow_enoent():
                    result[normalized] = compute_hash(self.absolute(normalized))
            logger.debug("Hashed %d entries under %s", len(result), self.path)
            return result
        finally:
            self._hashing = False

    def has_files(self) -> bool:
        """Check whether the tree contains any non-ignored entry.

        This tool's own bookkeeping files don't count.
        """
        self._hashing = True
        try:
            return any(normalized != CONTROL_DIR for normalized, _is_dir in self.walk())
        finally:
            self._hashing = False

    def is_empty_or_nonexistent(self) -> bool:
        """Check whether the root is missing or has no entries at all."""
        try:
            with os.scandir(self.path) as it:
                return next(it, None) is None
        except FileNotFoundError:
            return True
