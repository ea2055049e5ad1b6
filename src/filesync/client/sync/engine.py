"""Sync orchestrator keeping a local directory and an environment convergent.

This module provides:
- FileSync: Drives hash -> diff -> resolve -> apply -> advance cycles

Architecture:
    A cycle walks SyncPhase states:

        IDLE -> ACQUIRING_LOCK -> HASHING -> DIFFING
             -> CONFLICT_FREE | CONFLICTS_DETECTED -> RESOLVING
             -> APPLYING_LOCAL -> APPLYING_REMOTE -> ADVANCING_VERSION -> IDLE

    and lands in FAILED if anything raises. The ancestor of every diff is
    the remote tree at the persisted files version; it only advances after
    both sides were written. A publish rejected because the remote moved
    restarts the cycle at HASHING.

    Remote pushes (from the subscription) and local watcher batches are
    applied through one SerialQueue so they never interleave.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from pathlib import Path

from filesync.client.errors import ClientError, FilesVersionMismatchError, OperationCancelledError
from filesync.client.lock import DirectoryLock
from filesync.client.remote import ChangedFile, DeletedFile, PublishResult, RemoteFile, RemoteFileEvents, RemoteFiles
from filesync.client.state import VersionState
from filesync.client.subscriptions import ClientSubscription
from filesync.client.sync.changes import (
    Changes,
    Create,
    Delete,
    Update,
    apply_changes,
    format_changes,
    get_necessary_changes,
)
from filesync.client.sync.conflicts import Conflicts, get_conflicts, without_conflicting_changes
from filesync.client.sync.directory import CONTROL_DIR, Directory
from filesync.client.sync.queue import SerialQueue
from filesync.client.sync.retry import retry_with_backoff
from filesync.client.sync.strategy import ConflictPreference, ConflictResolver, prefer
from filesync.client.sync.types import (
    DivergedChangesError,
    FileSyncHashes,
    SyncCancelledError,
    SyncResult,
    TooManySyncAttemptsError,
)
from filesync.core.hashing import SUPPORTS_PERMISSIONS, Hash, HashMap, compute_hash, hash_maps_equal, hashes_equal
from filesync.core.types import SyncPhase

logger = logging.getLogger(__name__)

BACKUP_DIR = ".gadget/backup"

DEFAULT_MAX_SYNC_ATTEMPTS = 10

PhaseListener = Callable[[SyncPhase, SyncPhase], None]


class FileSync:
    """Synchronizes a Directory with an environment's files.

    Usage:
        file_sync = FileSync(directory, state, remote, resolver=prefer(ConflictPreference.LOCAL))
        result = file_sync.sync()
    """

    def __init__(
        self,
        directory: Directory,
        state: VersionState,
        remote: RemoteFiles,
        resolver: ConflictResolver | None = None,
        lock: DirectoryLock | None = None,
        cancel_event: threading.Event | None = None,
        on_phase_change: PhaseListener | None = None,
        backup_attempts: int = 3,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            directory: The local tree.
            state: Persisted files version of the local tree.
            remote: The environment's files.
            resolver: Conflict policy (default: the environment wins).
            lock: Directory lock taken for each cycle unless already held.
            cancel_event: When set, aborts between phases and retries.
            on_phase_change: Called with (old, new) on every phase change.
            backup_attempts: Attempts for moving a deleted file to backup.
        """
        self.directory = directory
        self.state = state
        self.remote = remote
        self._resolver = resolver or prefer(ConflictPreference.GADGET)
        self._lock = lock
        self._cancel_event = cancel_event
        self._on_phase_change = on_phase_change
        self._backup_attempts = backup_attempts
        self._phase = SyncPhase.IDLE
        self._known_local: HashMap = {}
        self._operations = SerialQueue(name="FileSync", on_error=self._operation_failed)
        self._operation_error_handler: Callable[[BaseException], None] | None = None

    @property
    def phase(self) -> SyncPhase:
        """Current phase of the running (or last) cycle."""
        return self._phase

    def _set_phase(self, phase: SyncPhase) -> None:
        old, self._phase = self._phase, phase
        if old is phase:
            return
        logger.info("Sync phase: %s -> %s", old.value, phase.value)
        if self._on_phase_change is not None:
            self._on_phase_change(old, phase)

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise OperationCancelledError("Sync cancelled")

    @contextlib.contextmanager
    def _cycle(self) -> Iterator[None]:
        """Hold the directory lock and track IDLE/FAILED around a cycle."""
        acquired = False
        try:
            if self._lock is not None and not self._lock.held:
                self._set_phase(SyncPhase.ACQUIRING_LOCK)
                self._lock.acquire()
                acquired = True
            yield
        except BaseException:
            self._set_phase(SyncPhase.FAILED)
            raise
        else:
            self._set_phase(SyncPhase.IDLE)
        finally:
            if acquired and self._lock is not None:
                self._lock.release()

    # === Hashing ===

    def hashes(self) -> FileSyncHashes:
        """Hash the local, ancestor and remote trees and diff them."""
        self._check_cancelled()
        self._set_phase(SyncPhase.HASHING)

        local_hashes = self.directory.hashes()
        files_version = self.state.files_version

        if files_version == 0:
            # never synced: there is no ancestor
            latest = self.remote.fetch_hashes()
            files_version_hashes: HashMap = {}
        else:
            comparison = self.remote.fetch_comparison_hashes(files_version)
            latest = comparison.latest_files_version_hashes
            files_version_hashes = comparison.files_version_hashes.hashes

        gadget_hashes = latest.hashes
        if CONTROL_DIR not in gadget_hashes and not any(
            path.startswith(CONTROL_DIR) and path != CONTROL_DIR for path in local_hashes
        ):
            # a control directory holding only bookkeeping isn't part of the tree
            local_hashes.pop(CONTROL_DIR, None)
        self._known_local = dict(local_hashes)

        self._set_phase(SyncPhase.DIFFING)
        in_sync = hash_maps_equal(local_hashes, gadget_hashes)

        local_changes = get_necessary_changes(
            files_version_hashes, local_hashes, existing=gadget_hashes, ignore=[CONTROL_DIR]
        )
        gadget_changes = get_necessary_changes(files_version_hashes, gadget_hashes, existing=local_hashes)

        if not in_sync and not local_changes and not gadget_changes:
            # the local tree is only missing control files
            gadget_changes = Changes(
                (path, change)
                for path, change in get_necessary_changes(local_hashes, gadget_hashes).items()
                if path.startswith(CONTROL_DIR) and path != CONTROL_DIR
            )
            logger.debug("Local tree is missing control files: %s", sorted(gadget_changes))

        hashes = FileSyncHashes(
            in_sync=in_sync,
            files_version_hashes=files_version_hashes,
            local_hashes=local_hashes,
            gadget_hashes=gadget_hashes,
            local_changes=local_changes,
            gadget_changes=gadget_changes,
            local_changes_to_push=get_necessary_changes(gadget_hashes, local_hashes, ignore=[CONTROL_DIR]),
            gadget_changes_to_pull=get_necessary_changes(local_hashes, gadget_hashes),
            gadget_files_version=latest.files_version,
        )
        logger.debug(
            "Hashed: in_sync=%s local_changes=%d gadget_changes=%d gadget_files_version=%d",
            in_sync,
            len(local_changes),
            len(gadget_changes),
            latest.files_version,
        )
        return hashes

    # === Cycles ===

    def sync(self, max_attempts: int = DEFAULT_MAX_SYNC_ATTEMPTS) -> SyncResult:
        """Merge local and remote changes until both trees match.

        Non-conflicting changes are applied to the other side; conflicts go
        to the resolver. A files version mismatch restarts at HASHING.

        Raises:
            SyncCancelledError: The resolver chose to cancel.
            TooManySyncAttemptsError: The trees kept diverging.
        """
        with self._cycle():
            result = SyncResult(files_version=self.state.files_version, attempts=0)

            while True:
                hashes = self.hashes()
                result.attempts += 1

                if hashes.in_sync:
                    logger.info("Filesystem in sync at files version %d", hashes.gadget_files_version)
                    self._advance(hashes.gadget_files_version)
                    result.files_version = self.state.files_version
                    return result

                if result.attempts > max_attempts:
                    raise TooManySyncAttemptsError(max_attempts)

                try:
                    self._merge(hashes, result)
                except FilesVersionMismatchError as e:
                    logger.info("Remote files changed while merging (%s), re-hashing", e)

    def push(self, force: bool = False, max_attempts: int = DEFAULT_MAX_SYNC_ATTEMPTS) -> SyncResult:
        """Make the environment match the local tree.

        Raises:
            DivergedChangesError: The environment has its own changes and
                force is False.
        """
        with self._cycle():
            for attempt in range(1, max_attempts + 1):
                hashes = self.hashes()
                result = SyncResult(files_version=self.state.files_version, attempts=attempt)
                if not hashes.local_changes_to_push:
                    self._set_phase(SyncPhase.CONFLICT_FREE)
                    return result

                user_changes = [path for path in hashes.gadget_changes if not path.startswith(CONTROL_DIR)]
                if user_changes and not force:
                    raise DivergedChangesError(hashes.gadget_changes, "environment")

                self._set_phase(SyncPhase.CONFLICT_FREE)
                try:
                    self._set_phase(SyncPhase.APPLYING_REMOTE)
                    published = self._send_changes_to_gadget(
                        hashes.local_changes_to_push, hashes.gadget_files_version
                    )
                except FilesVersionMismatchError as e:
                    logger.info("Remote files changed while pushing (%s), re-hashing", e)
                    continue

                if published is not None:
                    result.pushed = hashes.local_changes_to_push
                    result.problems = published.problems
                    self._advance(published.files_version)
                result.files_version = self.state.files_version
                return result

            raise TooManySyncAttemptsError(max_attempts)

    def pull(self, force: bool = False) -> SyncResult:
        """Make the local tree match the environment.

        Raises:
            DivergedChangesError: The local tree has its own changes and
                force is False.
        """
        with self._cycle():
            hashes = self.hashes()
            result = SyncResult(files_version=self.state.files_version)
            if not hashes.gadget_changes_to_pull:
                self._set_phase(SyncPhase.CONFLICT_FREE)
                self._advance(hashes.gadget_files_version)
                result.files_version = self.state.files_version
                return result

            if hashes.local_changes and not force:
                raise DivergedChangesError(hashes.local_changes, "local")

            self._set_phase(SyncPhase.CONFLICT_FREE)
            self._set_phase(SyncPhase.APPLYING_LOCAL)
            result.pulled = self._get_changes_from_gadget(hashes.gadget_changes_to_pull, hashes.gadget_files_version)
            self._advance(hashes.gadget_files_version)
            result.files_version = self.state.files_version
            return result

    def _merge(self, hashes: FileSyncHashes, result: SyncResult) -> None:
        local_changes = hashes.local_changes
        gadget_changes = hashes.gadget_changes

        conflicts = get_conflicts(local_changes, gadget_changes)
        if conflicts:
            self._set_phase(SyncPhase.CONFLICTS_DETECTED)
            logger.debug("Conflicts detected: %s", sorted(conflicts))
            self._set_phase(SyncPhase.RESOLVING)

            resolution = self._resolver(conflicts)
            if isinstance(resolution, ConflictPreference):
                resolution = dict.fromkeys(conflicts, resolution)

            if any(resolution.get(path, ConflictPreference.CANCEL) is ConflictPreference.CANCEL for path in conflicts):
                raise SyncCancelledError(conflicts)

            keep_local = {path for path in conflicts if resolution[path] is ConflictPreference.LOCAL}
            gadget_changes = without_conflicting_changes(
                Conflicts((path, conflicts[path]) for path in keep_local), gadget_changes
            )
            local_changes = without_conflicting_changes(
                Conflicts((path, conflict) for path, conflict in conflicts.items() if path not in keep_local), local_changes
            )
            result.conflicts.update(conflicts)
        else:
            self._set_phase(SyncPhase.CONFLICT_FREE)

        files_version = hashes.gadget_files_version

        if gadget_changes:
            self._check_cancelled()
            self._set_phase(SyncPhase.APPLYING_LOCAL)
            result.pulled.update(self._get_changes_from_gadget(gadget_changes, files_version))

        if local_changes:
            self._check_cancelled()
            self._set_phase(SyncPhase.APPLYING_REMOTE)
            published = self._send_changes_to_gadget(local_changes, files_version)
            if published is not None:
                files_version = published.files_version
                result.pushed.update(local_changes)
                result.problems.extend(published.problems)

        self._advance(files_version)
        result.files_version = self.state.files_version

    def _advance(self, files_version: int) -> None:
        if files_version == self.state.files_version:
            return
        self._set_phase(SyncPhase.ADVANCING_VERSION)
        self.state.save(files_version)

    # === Long-running mode ===

    def subscribe_to_remote_changes(
        self,
        on_error: Callable[[BaseException], None],
        before_changes: Callable[[list[str], list[str]], None] | None = None,
        after_changes: Callable[[Changes], None] | None = None,
    ) -> ClientSubscription:
        """Apply remote change batches as they are pushed.

        Batches older than the local files version are skipped, as are
        ignored paths. Batches are applied in arrival order.

        Args:
            on_error: Called with any error applying a batch or from the
                subscription itself.
            before_changes: Called with (changed, deleted) paths before writing.
            after_changes: Called with the changes written.
        """
        self._operation_error_handler = on_error

        def on_events(events: RemoteFileEvents) -> None:
            self._operations.put(lambda: self._apply_remote_events(events, before_changes, after_changes))

        return self.remote.subscribe_to_changes(
            # re-read on every (re)subscribe
            local_version=lambda: self.state.files_version,
            on_events=on_events,
            on_error=on_error,
        )

    def _apply_remote_events(
        self,
        events: RemoteFileEvents,
        before_changes: Callable[[list[str], list[str]], None] | None,
        after_changes: Callable[[Changes], None] | None,
    ) -> None:
        if events.files_version < self.state.files_version:
            logger.warning(
                "Skipping received changes because files version %d is outdated", events.files_version
            )
            return

        logger.debug(
            "Received files version %d: changed=%s deleted=%s",
            events.files_version,
            [file.path for file in events.changed],
            events.deleted,
        )

        changed = [file for file in events.changed if not self._skip_ignored(file.path)]
        deleted = [path for path in events.deleted if not self._skip_ignored(path)]

        if not changed and not deleted:
            self._advance(events.files_version)
            return

        if before_changes is not None:
            before_changes([file.path for file in changed], deleted)

        self._set_phase(SyncPhase.APPLYING_LOCAL)
        changes = self._write_to_local_filesystem(changed, deleted)
        self._advance(events.files_version)
        self._set_phase(SyncPhase.IDLE)
        logger.info("Pulled %d files at files version %d", len(changes), events.files_version)

        if after_changes is not None:
            after_changes(changes)

    def _skip_ignored(self, path: str) -> bool:
        ignored = self.directory.ignores(path)
        if ignored:
            logger.warning("Skipping received change because %s is ignored", path)
        return ignored

    def merge_local_changes(
        self,
        changes: Changes | Iterable[str],
        moves: Mapping[str, str] | None = None,
    ) -> None:
        """Publish a batch of local changes without blocking.

        Args:
            changes: Changes to publish, or paths that changed locally (they
                are diffed against the last known local tree when the batch
                runs, so writes made by this process produce no changes).
            moves: Moved destination paths mapped to their source paths.
                Created destinations carry the source as a rename hint.

        On a files version mismatch the batch falls back to a full sync().
        """
        self._operations.put(lambda: self._merge_local_changes(changes, moves))

    def _merge_local_changes(self, changes: Changes | Iterable[str], moves: Mapping[str, str] | None) -> None:
        if not isinstance(changes, Changes):
            paths = list(changes)
            ignore_file = self.directory.absolute(".ignore")
            if any(self.directory.absolute(self.directory.relative(path)) == ignore_file for path in paths):
                self.directory.load_ignore_file()
            changes = self.local_changes_for(paths, moves)
        if not changes:
            return

        try:
            self._set_phase(SyncPhase.APPLYING_REMOTE)
            published = self._send_changes_to_gadget(changes, self.state.files_version)
            if published is not None:
                self._advance(published.files_version)
                self._known_local = apply_changes(self._known_local, changes)
            self._set_phase(SyncPhase.IDLE)
        except FilesVersionMismatchError as e:
            logger.info("Remote files changed (%s), syncing", e)
            self.sync()

    def local_changes_for(self, paths: Iterable[str], moves: Mapping[str, str] | None = None) -> Changes:
        """Diff the given paths against the last known local tree.

        Paths may be absolute or relative. Ignored paths and the control
        subtree are skipped. A deleted directory also deletes every known
        path beneath it. A created path found in moves records the path it
        was moved from.
        """
        changes = Changes()

        for raw in paths:
            if self.directory.ignores(raw):
                continue
            absolute = self.directory.absolute(self.directory.relative(raw))
            is_dir = absolute.is_dir() and not absolute.is_symlink()
            path = self.directory.normalize(absolute, is_dir)
            if not path or path.startswith(CONTROL_DIR) or self.directory.ignores(path):
                continue

            if absolute.exists() or absolute.is_symlink():
                try:
                    target = compute_hash(absolute)
                except FileNotFoundError:
                    target = None
                if target is not None:
                    source = self._known_local.get(path)
                    if source is None:
                        changes[path] = Create(target, old_path=self._moved_from(raw, is_dir, moves))
                    elif not hashes_equal(path, source, target):
                        changes[path] = Update(source, target)
                    continue

            for candidate in (path, path + "/"):
                source = self._known_local.get(candidate)
                if source is None:
                    continue
                changes[candidate] = Delete(source)
                if candidate.endswith("/"):
                    for known, known_hash in self._known_local.items():
                        if known.startswith(candidate):
                            changes[known] = Delete(known_hash)

        return changes

    def _moved_from(self, raw: str, is_dir: bool, moves: Mapping[str, str] | None) -> str | None:
        if not moves or raw not in moves:
            return None
        old_path = self.directory.normalize(self.directory.relative(moves[raw]), is_dir)
        if not old_path or self.directory.ignores(old_path):
            return None
        return old_path

    def idle(self, timeout: float | None = None) -> bool:
        """Wait for queued remote and local batches to finish."""
        return self._operations.idle(timeout=timeout)

    def close(self) -> None:
        """Stop accepting batches and wait for the running one."""
        self._operations.close()

    def _operation_failed(self, error: BaseException) -> None:
        self._set_phase(SyncPhase.FAILED)
        if self._operation_error_handler is not None:
            self._operation_error_handler(error)
        else:
            logger.error("Sync operation failed: %s", error, exc_info=error)

    # === Applying changes ===

    def _get_changes_from_gadget(self, changes: Changes, files_version: int) -> Changes:
        """Fetch created/updated files at files_version and write them locally."""
        logger.debug("Getting changes from the environment at files version %d: %s", files_version, sorted(changes))
        paths = changes.created() + changes.updated()

        files: list[RemoteFile] = []
        if paths:
            files = self.remote.fetch_files(paths, files_version).files

        return self._write_to_local_filesystem(files, changes.deleted())

    def _send_changes_to_gadget(self, changes: Changes, expected_version: int) -> PublishResult | None:
        """Publish changes, reading current contents from disk.

        Returns:
            The publish result, or None if nothing was left to send.

        Raises:
            FilesVersionMismatchError: The remote moved past expected_version.
        """
        logger.debug("Sending changes at files version %d: %s", expected_version, sorted(changes))
        changed: list[ChangedFile] = []
        deleted: list[DeletedFile] = []

        for path in sorted(changes):
            change = changes[path]
            if isinstance(change, Delete):
                deleted.append(DeletedFile(path))
                continue

            absolute = self.directory.absolute(path)
            try:
                st = absolute.stat()
                content = b"" if absolute.is_dir() else absolute.read_bytes()
            except FileNotFoundError:
                logger.debug("Skipping %s because it no longer exists", path)
                continue

            old_path = change.old_path if isinstance(change, Create) else None
            changed.append(ChangedFile.from_bytes(path, st.st_mode, content, old_path=old_path))

        if not changed and not deleted:
            logger.debug("Skipping publish because there are no changes")
            return None

        self._check_cancelled()
        try:
            result = self.remote.publish_changes(expected_version, changed, deleted)
        except ClientError:
            logger.error("Failed to publish %d changes", len(changed) + len(deleted))
            raise

        for line in format_changes(changes, limit=10):
            logger.info("Pushed %s", line.strip())
        for problem in result.problems:
            logger.warning("Problem reported for published files: %s", problem)
        return result

    def _write_to_local_filesystem(self, files: list[RemoteFile], delete: list[str]) -> Changes:
        """Write remote files locally and move deleted ones to backup.

        Returns:
            The changes made to the local tree.
        """
        changes = Changes()

        # children before their directories
        for path in sorted(delete, reverse=True):
            source = self._current_hash(path)
            self._backup(path)
            self._forget(path)
            if source is not None:
                changes[path] = Delete(source)

        for file in files:
            absolute = self.directory.absolute(file.path)
            source = self._current_hash(file.path)

            self._make_parents(absolute)
            if file.path.endswith("/"):
                absolute.mkdir(exist_ok=True)
            else:
                absolute.write_bytes(file.decode())

            if SUPPORTS_PERMISSIONS and file.mode:
                # umask applies on creation, so set the mode explicitly
                os.chmod(absolute, file.mode & 0o777)

            target = compute_hash(absolute)
            self._known_local[file.path] = target
            changes[file.path] = Create(target) if source is None else Update(source, target)

            if absolute == self.directory.absolute(".ignore"):
                self.directory.load_ignore_file()

        return changes

    def _make_parents(self, absolute: Path) -> None:
        """Create missing parent directories and record them as known."""
        missing: list[Path] = []
        parent = absolute.parent
        while parent != self.directory.path and not parent.exists():
            missing.append(parent)
            parent = parent.parent

        absolute.parent.mkdir(parents=True, exist_ok=True)
        for directory in reversed(missing):
            self._known_local[self.directory.normalize(directory, True)] = compute_hash(directory)

    def _current_hash(self, path: str) -> Hash | None:
        try:
            return compute_hash(self.directory.absolute(path))
        except FileNotFoundError:
            return None

    def _forget(self, path: str) -> None:
        self._known_local.pop(path, None)
        if path.endswith("/"):
            for known in [known for known in self._known_local if known.startswith(path)]:
                del self._known_local[known]

    def _backup(self, path: str) -> None:
        """Move a local path into the backup directory instead of deleting it.

        Any existing backup of a file is replaced. A directory is merged into
        an existing backup directory so backups of its children taken
        earlier are kept. An empty directory is simply removed.
        """
        current = self.directory.absolute(path)
        backup = self.directory.absolute(BACKUP_DIR, path)

        def move() -> None:
            try:
                is_dir = current.is_dir() and not current.is_symlink()
                if is_dir and not any(current.iterdir()):
                    current.rmdir()
                    return
                if is_dir and backup.is_dir() and not backup.is_symlink():
                    shutil.copytree(current, backup, symlinks=True, dirs_exist_ok=True)
                    shutil.rmtree(current)
                    return
                _remove(backup)
                backup.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(current, backup)
            except FileNotFoundError:
                pass

        retry_with_backoff(
            move,
            should_retry=lambda e: isinstance(e, OSError),
            max_attempts=self._backup_attempts,
            backoff_limit_ms=1000,
            cancel_event=self._cancel_event,
        )


def _remove(path: Path) -> None:
    """Remove a file or directory tree, like rm -rf."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)
