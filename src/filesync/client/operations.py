"""GraphQL operations consumed from the remote platform.

Each operation is a small immutable record rather than a bare string, so the
transport can log its name and kind without parsing the document.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OperationKind(str, Enum):
    """Kind of GraphQL operation."""

    QUERY = "query"
    MUTATION = "mutation"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class Operation:
    """A named GraphQL operation.

    Attributes:
        name: Operation name, used in logs and errors.
        kind: Query, mutation or subscription.
        document: GraphQL document text sent to the server.
    """

    name: str
    kind: OperationKind
    document: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name}"


REMOTE_FILES_VERSION_QUERY = Operation(
    name="RemoteFilesVersion",
    kind=OperationKind.QUERY,
    document="""
query RemoteFilesVersion {
  remoteFilesVersion
}
""",
)

FILE_SYNC_HASHES_QUERY = Operation(
    name="FileSyncHashes",
    kind=OperationKind.QUERY,
    document="""
query FileSyncHashes($filesVersion: String) {
  fileSyncHashes(filesVersion: $filesVersion) {
    filesVersion
    hashes
  }
}
""",
)

FILE_SYNC_COMPARISON_HASHES_QUERY = Operation(
    name="FileSyncComparisonHashes",
    kind=OperationKind.QUERY,
    document="""
query FileSyncComparisonHashes($filesVersion: String!) {
  fileSyncComparisonHashes(filesVersion: $filesVersion) {
    filesVersionHashes {
      filesVersion
      hashes
    }
    latestFilesVersionHashes {
      filesVersion
      hashes
    }
  }
}
""",
)

FILE_SYNC_FILES_QUERY = Operation(
    name="FileSyncFiles",
    kind=OperationKind.QUERY,
    document="""
query FileSyncFiles($paths: [String!]!, $filesVersion: String, $encoding: FileSyncEncoding) {
  fileSyncFiles(paths: $paths, filesVersion: $filesVersion, encoding: $encoding) {
    filesVersion
    files {
      path
      mode
      content
      encoding
    }
  }
}
""",
)

PUBLISH_FILE_SYNC_EVENTS_MUTATION = Operation(
    name="PublishFileSyncEvents",
    kind=OperationKind.MUTATION,
    document="""
mutation PublishFileSyncEvents($input: PublishFileSyncEventsInput!) {
  publishFileSyncEvents(input: $input) {
    remoteFilesVersion
    problems {
      level
      message
      path
      type
    }
  }
}
""",
)

REMOTE_FILE_SYNC_EVENTS_SUBSCRIPTION = Operation(
    name="RemoteFileSyncEvents",
    kind=OperationKind.SUBSCRIPTION,
    document="""
subscription RemoteFileSyncEvents($localFilesVersion: String!) {
  remoteFileSyncEvents(localFilesVersion: $localFilesVersion, encoding: base64) {
    remoteFilesVersion
    changed {
      path
      mode
      content
      encoding
    }
    deleted {
      path
    }
  }
}
""",
)
