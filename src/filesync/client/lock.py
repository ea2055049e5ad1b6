"""Single-writer lock for a synced directory.

This module provides:
- DirectoryLock: Context manager holding the lock for a directory
- acquire_lock / release_lock / lock_status: Functional interface
- is_process_alive: PID liveness check
- AlreadyRunningError: Another live process holds the lock

The lock is a JSON file ({"pid": ..., "startedAt": ...}) inside the
control subtree. It is created with O_EXCL so two processes racing for it
can't both win. A lock whose PID is dead (or whose file is unparseable) is
stale and gets reclaimed.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from filesync.client.errors import FileSyncError
from filesync.client.sync.directory import Directory

logger = logging.getLogger(__name__)

LOCK_PATH = ".gadget/dev-lock.json"


class DirectoryLockData(BaseModel):
    """Contents of the lock file."""

    model_config = ConfigDict(populate_by_name=True)

    pid: int
    started_at: str = Field(alias="startedAt")


@dataclass(frozen=True)
class LockStatus:
    """Whether a live process holds a directory's lock."""

    running: bool
    pid: int | None = None
    started_at: str | None = None


class AlreadyRunningError(FileSyncError):
    """Another live process is already syncing the directory."""

    def __init__(self, pid: int, directory: Path) -> None:
        self.pid = pid
        self.directory = directory
        super().__init__(
            f"Another filesync process is already running in {directory} (PID {pid}). "
            "Stop the other process first, or use a different directory."
        )


def lock_path(directory: Directory) -> Path:
    """Return the lock file path for a directory."""
    return directory.absolute(LOCK_PATH)


def is_process_alive(pid: int) -> bool:
    """Check whether a process with the given PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    except OSError:
        return False
    return True


def read_lock(directory: Directory) -> DirectoryLockData | None:
    """Read the lock file. Missing or malformed files read as None."""
    try:
        raw = json.loads(lock_path(directory).read_text(encoding="utf-8"))
        return DirectoryLockData.model_validate(raw)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError) as e:
        logger.debug("Unreadable lock file in %s: %s", directory.path, e)
        return None


def _create_lock_file(path: Path) -> DirectoryLockData:
    data = DirectoryLockData(pid=os.getpid(), started_at=datetime.now(UTC).isoformat())
    with open(path, "x", encoding="utf-8") as f:
        json.dump(data.model_dump(by_alias=True), f, indent=2)
    return data


def acquire_lock(directory: Directory) -> DirectoryLockData:
    """Take the lock for a directory, reclaiming a stale one.

    Returns:
        The lock data written.

    Raises:
        AlreadyRunningError: If a live process holds the lock.
    """
    path = lock_path(directory)
    path.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(2):
        try:
            data = _create_lock_file(path)
            logger.debug("Acquired lock %s (PID %d)", path, data.pid)
            return data
        except FileExistsError:
            existing = read_lock(directory)
            if existing is not None and is_process_alive(existing.pid):
                raise AlreadyRunningError(existing.pid, directory.path) from None

            if attempt == 0:
                logger.info("Removing stale lock in %s", directory.path)
                path.unlink(missing_ok=True)

    # another process reclaimed the stale lock between our unlink and create
    existing = read_lock(directory)
    raise AlreadyRunningError(existing.pid if existing else -1, directory.path)


def release_lock(directory: Directory) -> None:
    """Remove the lock file. A missing file is not an error."""
    try:
        lock_path(directory).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove lock file in %s: %s", directory.path, e)


def lock_status(directory: Directory) -> LockStatus:
    """Report whether a live process holds the lock.

    Removes a stale lock file as a side effect.
    """
    existing = read_lock(directory)
    if existing is None:
        return LockStatus(running=False)

    if not is_process_alive(existing.pid):
        release_lock(directory)
        return LockStatus(running=False)

    return LockStatus(running=True, pid=existing.pid, started_at=existing.started_at)


class DirectoryLock:
    """Holds a directory's lock for the duration of a with-block.

    Usage:
        with DirectoryLock(directory):
            file_sync.sync()
    """

    def __init__(self, directory: Directory) -> None:
        self.directory = directory
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock (no-op if already held by this object)."""
        if not self._held:
            acquire_lock(self.directory)
            self._held = True

    def release(self) -> None:
        """Release the lock if held."""
        if self._held:
            release_lock(self.directory)
            self._held = False

    def __enter__(self) -> DirectoryLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
