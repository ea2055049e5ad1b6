"""Sync primitives for keeping a directory and an environment convergent.

Architecture:
    Directory.hashes() / RemoteFiles.fetch_*_hashes()
        → get_necessary_changes (three-way diff against the ancestor)
        → get_conflicts → ConflictResolver
        → FileSync applies both sides, then advances the files version

Components:
- **Directory**: The local tree, its ignore rules and its hash map
- **Changes**: Per-path Create/Update/Delete between two hash maps
- **Conflicts**: Paths changed differently on both sides
- **SerialQueue**: FIFO single-worker queue for remote and local batches
- **retry_with_backoff**: Bounded exponential backoff with jitter

The orchestrator (FileSync) lives in filesync.client.sync.engine and the
watchdog glue in filesync.client.sync.watcher; both depend on the remote
client and are imported from there directly.
"""

from filesync.client.sync.changes import (
    Change,
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
from filesync.client.sync.conflicts import (
    Conflict,
    Conflicts,
    describe_conflict,
    format_conflicts,
    get_conflicts,
    without_conflicting_changes,
)
from filesync.client.sync.directory import CONTROL_DIR, Directory
from filesync.client.sync.ignore import IgnorePatterns
from filesync.client.sync.queue import SerialQueue
from filesync.client.sync.retry import (
    calculate_backoff_delay,
    is_retryable_error_cause,
    retry_with_backoff,
)
from filesync.client.sync.strategy import (
    ConflictPreference,
    ConflictResolver,
    SyncStrategy,
    interactive_resolver,
    prefer,
)
from filesync.client.sync.types import (
    DivergedChangesError,
    FileSyncHashes,
    Problem,
    SyncCancelledError,
    SyncResult,
    TooManySyncAttemptsError,
)

__all__ = [
    # Changes
    "Change",
    "Changes",
    "Create",
    "Delete",
    "Update",
    "apply_changes",
    "format_changes",
    "get_changes",
    "get_necessary_changes",
    "without_unnecessary_changes",
    # Conflicts
    "Conflict",
    "Conflicts",
    "describe_conflict",
    "format_conflicts",
    "get_conflicts",
    "without_conflicting_changes",
    # Directory
    "CONTROL_DIR",
    "Directory",
    "IgnorePatterns",
    # Queue & retry
    "SerialQueue",
    "calculate_backoff_delay",
    "is_retryable_error_cause",
    "retry_with_backoff",
    # Strategy
    "ConflictPreference",
    "ConflictResolver",
    "SyncStrategy",
    "interactive_resolver",
    "prefer",
    # Types
    "DivergedChangesError",
    "FileSyncHashes",
    "Problem",
    "SyncCancelledError",
    "SyncResult",
    "TooManySyncAttemptsError",
]
