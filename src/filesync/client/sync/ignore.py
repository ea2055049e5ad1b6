"""Ignore patterns for file synchronization.

This module provides:
- IgnorePatterns: Handles gitignore-style pattern matching
- DEFAULT_IGNORE_PATTERNS: Patterns that are always ignored
- IGNORE_FILE_NAME: Name of the ignore-rule file at the tree root
"""

from __future__ import annotations

import logging
from pathlib import Path

from pathspec import PathSpec

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".ignore"

# OS metadata, dependency caches and version-control directories
DEFAULT_IGNORE_PATTERNS = [
    ".DS_Store",
    "node_modules",
    ".git",
    ".shopify",
]


class IgnorePatterns:
    """Handles ignore pattern matching for normalized relative paths.

    Patterns follow gitignore semantics: a later negated pattern ("!keep.txt")
    re-includes a path an earlier one excluded, and a trailing slash
    ("build/") only matches directories. Directory paths passed to
    should_ignore must carry their trailing slash for the latter to apply.
    """

    def __init__(self, patterns: list[str] | None = None) -> None:
        """Initialize with patterns.

        Args:
            patterns: List of gitignore-style patterns, added after the defaults.
        """
        self._patterns = list(DEFAULT_IGNORE_PATTERNS)
        if patterns:
            self._patterns.extend(patterns)
        self._spec: PathSpec | None = None

    @property
    def patterns(self) -> list[str]:
        """Patterns in evaluation order."""
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        self._patterns.append(pattern)
        self._spec = None

    def load_from_file(self, path: Path) -> int:
        """Load patterns from an ignore-rule file.

        A missing file is not an error.

        Returns:
            Number of patterns loaded.
        """
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return 0

        count = 0
        for line in content.splitlines():
            line = line.rstrip()
            # Skip comments and empty lines
            if line and not line.startswith("#"):
                self._patterns.append(line)
                count += 1

        self._spec = None
        logger.debug("Loaded %d ignore patterns from %s", count, path)
        return count

    def should_ignore(self, path: str) -> bool:
        """Check if a normalized relative path should be ignored.

        Args:
            path: Path relative to the tree root, using "/" separators.

        Returns:
            True if the path should be ignored.
        """
        if self._spec is None:
            self._spec = PathSpec.from_lines("gitwildmatch", self._patterns)
        return self._spec.match_file(path)
