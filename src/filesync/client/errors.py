"""Exceptions raised by filesync.

This module provides:
- FileSyncError: Base exception for every error filesync raises
- ClientError, AuthenticationError: Failures talking to the platform
- FilesVersionMismatchError: Optimistic-concurrency rejection of a publish
- CloseEvent, ErrorEvent: Transport-level failure shapes carried as causes
- is_files_version_mismatch_error: Classify any error as a version mismatch

Orchestrator and lock errors live next to the code that raises them but
share the FileSyncError base so callers can catch them uniformly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from filesync.client.operations import Operation

FILES_VERSION_MISMATCH = "Files version mismatch"


class FileSyncError(Exception):
    """Base exception for filesync errors."""


@dataclass(frozen=True)
class CloseEvent:
    """The WebSocket connection was closed.

    Attributes:
        code: WebSocket close code (1000 = normal closure).
        reason: Close reason sent by the peer.
        was_clean: Whether the closing handshake completed.
    """

    code: int
    reason: str = ""
    was_clean: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    """The WebSocket connection reported an error.

    Attributes:
        message: Human-readable description.
        error: Underlying exception, if any.
    """

    message: str
    error: BaseException | None = None


def is_graphql_errors(value: Any) -> bool:
    """Check whether a value looks like a list of GraphQL errors."""
    return (
        isinstance(value, list | tuple)
        and len(value) > 0
        and all(isinstance(item, dict) and isinstance(item.get("message"), str) for item in value)
    )


class ClientError(FileSyncError):
    """An error occurred while communicating with the platform.

    Wraps structured GraphQL errors, responses with neither data nor errors,
    transport close/error events and any other exception, keeping the
    original operation and cause for diagnostics.

    Attributes:
        operation: The operation that failed.
        cause: GraphQL error list, message string, CloseEvent, ErrorEvent
            or exception.
    """

    def __init__(self, operation: Operation, cause: Any) -> None:
        super().__init__("An error occurred while communicating with the platform")
        self.operation = operation
        self.cause = cause

    def render(self) -> str:
        """Render a human-readable description of the failure."""
        if is_graphql_errors(self.cause):
            messages = list(dict.fromkeys(error["message"] for error in self.cause))
            noun = "error" if len(messages) == 1 else "errors"
            body = f"The platform responded with the following {noun}:\n\n" + "\n".join(
                f"  • {message}" for message in messages
            )
        elif isinstance(self.cause, CloseEvent):
            body = "The connection to the platform closed unexpectedly."
        elif isinstance(self.cause, ErrorEvent):
            body = self.cause.message
        elif isinstance(self.cause, BaseException):
            body = str(self.cause) or type(self.cause).__name__
        else:
            body = str(self.cause)

        return f"{self.args[0]} ({self.operation})\n\n{body}"

    def __str__(self) -> str:
        return self.render()


class AuthenticationError(ClientError):
    """The session is missing, expired or not allowed to access the app."""

    def render(self) -> str:
        return "You are not logged in, or your session has expired."


class FilesVersionMismatchError(FileSyncError):
    """The remote files version moved since we last synced.

    Attributes:
        expected_version: Version we told the server we were at.
        actual_version: Version the server reported, if known.
    """

    def __init__(self, expected_version: int, actual_version: int | None = None) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        detail = f"expected {expected_version}"
        if actual_version is not None:
            detail += f", server has {actual_version}"
        super().__init__(f"{FILES_VERSION_MISMATCH} ({detail})")


class OperationCancelledError(FileSyncError):
    """A cancellation signal aborted an in-flight operation or retry."""


def is_files_version_mismatch_error(error: Any) -> bool:
    """Check whether an error means the remote files version moved.

    Accepts a FilesVersionMismatchError, a ClientError wrapping GraphQL
    errors, a GraphQL result dict, a GraphQL error list or a single error.
    """
    if isinstance(error, FilesVersionMismatchError):
        return True
    if isinstance(error, ClientError):
        error = error.cause
    if isinstance(error, dict) and "errors" in error:
        error = error["errors"]
    if is_graphql_errors(error):
        error = error[0]
    if isinstance(error, dict):
        message = error.get("message")
        return isinstance(message, str) and FILES_VERSION_MISMATCH in message
    return False
