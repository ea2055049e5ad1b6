"""HTTP client for the platform's GraphQL API.

This module provides:
- GraphQLClient: Request/response GraphQL over httpx, with retry

Every failure is raised as a ClientError (or AuthenticationError) that
carries the operation and the original cause, so callers and the retry
classifier can inspect what actually went wrong.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

import httpx

from filesync.client.errors import (
    AuthenticationError,
    ClientError,
    is_files_version_mismatch_error,
    is_graphql_errors,
)
from filesync.client.operations import Operation, OperationKind
from filesync.client.sync.retry import is_retryable_error_cause, retry_with_backoff
from filesync.core.config import AppConfig

logger = logging.getLogger(__name__)

USER_AGENT = "filesync"


def _is_unauthenticated(errors: list[dict[str, Any]]) -> bool:
    return any("unauthenticated" in error["message"].lower() for error in errors)


class GraphQLClient:
    """HTTP client for an application environment's GraphQL endpoint."""

    def __init__(
        self,
        config: AppConfig,
        transport: httpx.BaseTransport | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Application/environment connection settings.
            transport: Optional httpx transport (tests use MockTransport).
            cancel_event: When set, aborts pending retries.
            sleep: Sleep function used between retries (seconds).
        """
        self._config = config
        self._cancel_event = cancel_event
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
            headers={**config.headers, "user-agent": USER_AGENT},
        )

    @property
    def config(self) -> AppConfig:
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> GraphQLClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def query(self, operation: Operation, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute a query, retrying transient failures.

        Returns:
            The response's "data" object.

        Raises:
            ClientError: If the query failed and wasn't retryable.
        """
        if operation.kind is not OperationKind.QUERY:
            raise ValueError(f"{operation} is not a query")
        return self._execute_with_retry(operation, variables)

    def mutate(
        self,
        operation: Operation,
        variables: dict[str, Any] | None = None,
        retry: bool = False,
    ) -> dict[str, Any]:
        """Execute a mutation.

        Args:
            operation: The mutation.
            variables: Mutation variables.
            retry: Retry transient failures. Only safe for idempotent
                mutations. A files version mismatch is never retried.

        Returns:
            The response's "data" object.
        """
        if operation.kind is not OperationKind.MUTATION:
            raise ValueError(f"{operation} is not a mutation")
        if not retry:
            return self._execute(operation, variables)
        return self._execute_with_retry(operation, variables)

    def _should_retry(self, error: BaseException) -> bool:
        if isinstance(error, AuthenticationError) or is_files_version_mismatch_error(error):
            return False
        return is_retryable_error_cause(error)

    def _execute_with_retry(self, operation: Operation, variables: dict[str, Any] | None) -> dict[str, Any]:
        return retry_with_backoff(
            lambda: self._execute(operation, variables),
            should_retry=self._should_retry,
            max_attempts=self._config.max_request_attempts,
            backoff_limit_ms=self._config.backoff_limit_ms,
            jitter_ms=self._config.jitter_ms,
            cancel_event=self._cancel_event,
            sleep=self._sleep,
        )

    def _execute(self, operation: Operation, variables: dict[str, Any] | None) -> dict[str, Any]:
        """Send one request and unwrap the GraphQL response."""
        logger.debug("Executing %s", operation)
        try:
            response = self._client.post(
                self._config.graphql_url,
                json={"query": operation.document, "variables": variables or {}},
            )
        except httpx.HTTPError as e:
            raise ClientError(operation, e) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(operation, f"{response.status_code} {response.reason_phrase}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and is_graphql_errors(body.get("errors")):
            errors = body["errors"]
            if _is_unauthenticated(errors):
                raise AuthenticationError(operation, errors)
            raise ClientError(operation, errors)

        if response.status_code >= 400:
            raise ClientError(operation, f"{response.status_code} {response.reason_phrase}")

        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            logger.error("Received invalid GraphQL response for %s: %r", operation, body)
            raise ClientError(operation, f"The response for {operation} did not contain data")

        return body["data"]
