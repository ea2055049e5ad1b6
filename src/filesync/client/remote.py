"""Typed access to the platform's file-sync operations.

This module provides:
- RemoteFiles: current_version, fetch_hashes, fetch_comparison_hashes,
  fetch_files, publish_changes, subscribe_to_changes
- RemoteFile, ChangedFile, DeletedFile: Wire records for file contents
- FilesVersionHashes, ComparisonHashes, PublishResult, RemoteFileEvents

Files versions travel as decimal strings on the wire and are ints here.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from filesync.client.api import GraphQLClient
from filesync.client.errors import ClientError, FilesVersionMismatchError, is_files_version_mismatch_error
from filesync.client.operations import (
    FILE_SYNC_COMPARISON_HASHES_QUERY,
    FILE_SYNC_FILES_QUERY,
    FILE_SYNC_HASHES_QUERY,
    PUBLISH_FILE_SYNC_EVENTS_MUTATION,
    REMOTE_FILE_SYNC_EVENTS_SUBSCRIPTION,
    REMOTE_FILES_VERSION_QUERY,
)
from filesync.client.subscriptions import ClientSubscription, SubscriptionClient
from filesync.client.sync.types import Problem
from filesync.core.hashing import HashMap, hash_map_from_dict

logger = logging.getLogger(__name__)

BASE64 = "base64"


@dataclass(frozen=True)
class RemoteFile:
    """A file (or directory, when path ends in "/") as sent by the platform."""

    path: str
    mode: int
    content: str
    encoding: str = BASE64

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFile:
        """Create from API response dictionary."""
        return cls(
            path=data["path"],
            mode=int(data.get("mode") or 0),
            content=data.get("content") or "",
            encoding=(data.get("encoding") or BASE64).lower(),
        )

    def decode(self) -> bytes:
        """Return the file's raw bytes."""
        if self.encoding == BASE64:
            return base64.b64decode(self.content)
        return self.content.encode("utf-8")


@dataclass(frozen=True)
class ChangedFile:
    """A local file to publish."""

    path: str
    mode: int
    content: str
    encoding: str = BASE64
    old_path: str | None = None

    @classmethod
    def from_bytes(cls, path: str, mode: int, content: bytes, old_path: str | None = None) -> ChangedFile:
        return cls(
            path=path,
            mode=mode,
            content=base64.b64encode(content).decode("ascii"),
            old_path=old_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the publish input representation."""
        data: dict[str, Any] = {
            "path": self.path,
            "mode": self.mode,
            "content": self.content,
            "encoding": self.encoding,
        }
        if self.old_path:
            data["oldPath"] = self.old_path
        return data


@dataclass(frozen=True)
class DeletedFile:
    """A path to delete remotely."""

    path: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path}


@dataclass
class FilesVersionHashes:
    """The remote tree's hashes at one files version."""

    files_version: int
    hashes: HashMap

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FilesVersionHashes:
        return cls(files_version=int(data["filesVersion"]), hashes=hash_map_from_dict(data["hashes"]))


@dataclass
class ComparisonHashes:
    """Hashes at a given files version and at the latest files version."""

    files_version_hashes: FilesVersionHashes
    latest_files_version_hashes: FilesVersionHashes


@dataclass
class RemoteFilesResult:
    """Result of fetch_files."""

    files_version: int
    files: list[RemoteFile]


@dataclass
class PublishResult:
    """Result of a successful publish."""

    files_version: int
    problems: list[Problem] = field(default_factory=list)


@dataclass
class RemoteFileEvents:
    """One batch of remote changes pushed through the subscription."""

    files_version: int
    changed: list[RemoteFile]
    deleted: list[str]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFileEvents:
        return cls(
            files_version=int(data["remoteFilesVersion"]),
            changed=[RemoteFile.from_dict(file) for file in data.get("changed") or []],
            deleted=[file["path"] for file in data.get("deleted") or []],
        )


class RemoteFiles:
    """The remote side of a sync: an application environment's files."""

    def __init__(self, client: GraphQLClient, subscriptions: SubscriptionClient | None = None) -> None:
        """Initialize.

        Args:
            client: Request/response client.
            subscriptions: Subscription client; required for subscribe_to_changes.
        """
        self._client = client
        self._subscriptions = subscriptions

    def close(self) -> None:
        """Close both underlying clients."""
        if self._subscriptions is not None:
            self._subscriptions.close()
        self._client.close()

    def current_version(self) -> int:
        """Return the latest remote files version."""
        data = self._client.query(REMOTE_FILES_VERSION_QUERY)
        return int(data["remoteFilesVersion"])

    def fetch_hashes(self, version: int | None = None) -> FilesVersionHashes:
        """Fetch the remote tree's hashes (latest version if None)."""
        variables = {"filesVersion": str(version)} if version is not None else {}
        data = self._client.query(FILE_SYNC_HASHES_QUERY, variables)
        return FilesVersionHashes.from_dict(data["fileSyncHashes"])

    def fetch_comparison_hashes(self, version: int) -> ComparisonHashes:
        """Fetch hashes at `version` and at the latest version in one request."""
        data = self._client.query(FILE_SYNC_COMPARISON_HASHES_QUERY, {"filesVersion": str(version)})
        comparison = data["fileSyncComparisonHashes"]
        return ComparisonHashes(
            files_version_hashes=FilesVersionHashes.from_dict(comparison["filesVersionHashes"]),
            latest_files_version_hashes=FilesVersionHashes.from_dict(comparison["latestFilesVersionHashes"]),
        )

    def fetch_files(self, paths: list[str], version: int | None = None) -> RemoteFilesResult:
        """Fetch file contents (base64) at a files version."""
        variables: dict[str, Any] = {"paths": paths, "encoding": BASE64}
        if version is not None:
            variables["filesVersion"] = str(version)
        data = self._client.query(FILE_SYNC_FILES_QUERY, variables)
        result = data["fileSyncFiles"]
        return RemoteFilesResult(
            files_version=int(result["filesVersion"]),
            files=[RemoteFile.from_dict(file) for file in result["files"]],
        )

    def publish_changes(
        self,
        expected_version: int,
        changed: list[ChangedFile],
        deleted: list[DeletedFile],
    ) -> PublishResult:
        """Publish local changes, guarded by the expected remote files version.

        Raises:
            FilesVersionMismatchError: The remote moved past expected_version,
                or jumped more than one version (intermediate versions unseen).
            ClientError: Any other failure.
        """
        try:
            data = self._client.mutate(
                PUBLISH_FILE_SYNC_EVENTS_MUTATION,
                {
                    "input": {
                        "expectedRemoteFilesVersion": str(expected_version),
                        "changed": [file.to_dict() for file in changed],
                        "deleted": [file.to_dict() for file in deleted],
                    }
                },
                # expectedRemoteFilesVersion makes the publish idempotent
                retry=True,
            )
        except ClientError as e:
            if is_files_version_mismatch_error(e):
                raise FilesVersionMismatchError(expected_version) from e
            raise

        result = data["publishFileSyncEvents"]
        files_version = int(result["remoteFilesVersion"])
        if files_version > expected_version + 1:
            # intermediate versions were never received
            raise FilesVersionMismatchError(expected_version, files_version)

        problems = [Problem.from_dict(problem) for problem in result.get("problems") or []]
        return PublishResult(files_version=files_version, problems=problems)

    def subscribe_to_changes(
        self,
        local_version: Callable[[], int],
        on_events: Callable[[RemoteFileEvents], None],
        on_error: Callable[[ClientError], None],
        on_complete: Callable[[], None] | None = None,
    ) -> ClientSubscription:
        """Subscribe to remote change batches after `local_version()`.

        local_version is re-read on every (re)subscribe.
        """
        if self._subscriptions is None:
            raise RuntimeError("RemoteFiles was created without a SubscriptionClient")

        return self._subscriptions.subscribe(
            REMOTE_FILE_SYNC_EVENTS_SUBSCRIPTION,
            variables=lambda: {"localFilesVersion": str(local_version())},
            on_data=lambda data: on_events(RemoteFileEvents.from_dict(data["remoteFileSyncEvents"])),
            on_error=on_error,
            on_complete=on_complete,
        )
