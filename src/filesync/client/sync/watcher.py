"""File system watcher with debouncing for the long-running mode.

This module provides:
- FileWatcher: Watches a Directory for changes using watchdog
- DebouncedEventHandler: Coalesces rapid events into one batch of paths

Batches are lists of absolute paths that changed, plus a map from each moved
destination to its source. FileSync.merge_local_changes turns them into
Changes against the last known local tree. Ignored paths
(per the Directory's ignore rules) never make it into a batch.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from filesync.client.sync.directory import CONTROL_DIR, Directory

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

_HANDLED_EVENTS = (
    FileCreatedEvent,
    FileModifiedEvent,
    FileDeletedEvent,
    FileMovedEvent,
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
)


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class DebouncedEventHandler(FileSystemEventHandler):
    """Event handler that batches events until the directory goes quiet."""

    def __init__(
        self,
        directory: Directory,
        on_changes: Callable[[list[str], dict[str, str]], None],
        delay_s: float = 0.1,
    ) -> None:
        """Initialize the debounced handler.

        Args:
            directory: Directory being watched.
            on_changes: Called with the changed absolute paths and a map of
                moved destination paths to their source paths.
            delay_s: Quiet period after the last event before flushing.
        """
        super().__init__()
        self._directory = directory
        self._on_changes = on_changes
        self._delay_s = delay_s

        # insertion-ordered set of pending paths
        self._pending: dict[str, float] = {}
        self._moves: dict[str, str] = {}
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def _schedule_flush(self) -> None:
        if self._timer:
            self._timer.cancel()

        self._timer = threading.Timer(self._delay_s, self._flush_changes)
        self._timer.daemon = True
        self._timer.start()

    def _flush_changes(self) -> None:
        """Flush pending paths to the callback."""
        with self._lock:
            if not self._pending:
                return

            paths = list(self._pending)
            moves = dict(self._moves)
            self._pending.clear()
            self._moves.clear()
            self._timer = None

        logger.debug("Flushing %d local changes", len(paths))
        try:
            self._on_changes(paths, moves)
        except Exception:
            logger.exception("Failed to handle local changes")

    def _ignored(self, path: str) -> bool:
        relative = self._directory.relative(path).replace(os.sep, "/")
        if relative.startswith(CONTROL_DIR.rstrip("/")):
            return True
        return self._directory.ignores(path)

    def _handle_event(self, event: FileSystemEvent) -> None:
        if not isinstance(event, _HANDLED_EVENTS):
            return

        source = _decode(event.src_path)
        paths = [source]
        moved_to = None
        if isinstance(event, (FileMovedEvent, DirMovedEvent)):
            moved_to = _decode(event.dest_path)
            paths.append(moved_to)

        paths = [path for path in paths if not self._ignored(path)]
        if not paths:
            return

        with self._lock:
            now = time.monotonic()
            if moved_to is not None and len(paths) == 2:
                self._moves[moved_to] = self._moves.pop(source, source)
            for path in paths:
                self._pending.pop(path, None)
                self._pending[path] = now
            self._schedule_flush()

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        self._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        self._handle_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        self._handle_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event."""
        self._handle_event(event)

    def stop(self) -> None:
        """Stop any pending timer, dropping unflushed paths."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()
            self._moves.clear()


class FileWatcher:
    """Watches a Directory for file changes with debouncing.

    Usage:
        with FileWatcher(directory, file_sync.merge_local_changes):
            ...
    """

    def __init__(
        self,
        directory: Directory,
        on_changes: Callable[[list[str], dict[str, str]], None],
        delay_s: float = 0.1,
    ) -> None:
        """Initialize the file watcher.

        Args:
            directory: Directory to watch.
            on_changes: Called with each batch of changed absolute paths and
                its moved destination to source map.
            delay_s: Quiet period after the last event before flushing.
        """
        if not directory.path.is_dir():
            raise ValueError(f"Watch path must be a directory: {directory.path}")

        self._directory = directory
        self._handler = DebouncedEventHandler(directory, on_changes, delay_s=delay_s)
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def directory(self) -> Directory:
        return self._directory

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return

        self._observer.schedule(self._handler, str(self._directory.path), recursive=True)
        self._observer.start()
        self._running = True
        logger.debug("Watching %s", self._directory.path)

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return

        self._handler.stop()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> FileWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
