"""Tests for the GraphQL HTTP client."""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import MagicMock

import httpx
import pytest

from filesync.client.api import GraphQLClient
from filesync.client.errors import AuthenticationError, ClientError, is_files_version_mismatch_error
from filesync.client.operations import (
    FILE_SYNC_HASHES_QUERY,
    PUBLISH_FILE_SYNC_EVENTS_MUTATION,
    REMOTE_FILE_SYNC_EVENTS_SUBSCRIPTION,
    REMOTE_FILES_VERSION_QUERY,
)
from filesync.core.config import AppConfig

Handler = Callable[[httpx.Request], httpx.Response]


def make_config(max_request_attempts: int = 3) -> AppConfig:
    """Create an AppConfig for testing."""
    return AppConfig(
        application="my-app",
        environment="development",
        session="secret",
        max_request_attempts=max_request_attempts,
    )


def make_client(handler: Handler, **config: int) -> tuple[GraphQLClient, MagicMock]:
    """Create a client backed by a MockTransport and a fake sleep."""
    sleep = MagicMock()
    client = GraphQLClient(make_config(**config), transport=httpx.MockTransport(handler), sleep=sleep)
    return client, sleep


def responses(*items: httpx.Response) -> tuple[Handler, list[httpx.Request]]:
    """Handler returning the given responses in order, recording requests."""
    requests: list[httpx.Request] = []
    remaining = list(items)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return remaining.pop(0)

    return handler, requests


class TestGraphQLClientRequests:
    """Tests for request construction and response unwrapping."""

    def test_query_posts_document_and_variables(self) -> None:
        handler, requests = responses(httpx.Response(200, json={"data": {"remoteFilesVersion": "3"}}))
        client, _ = make_client(handler)

        data = client.query(REMOTE_FILES_VERSION_QUERY, {"a": 1})

        assert data == {"remoteFilesVersion": "3"}
        request = requests[0]
        assert str(request.url) == "https://my-app--development.gadget.app/edit/api/graphql"
        assert request.headers["cookie"] == "session=secret"
        assert request.headers["x-gadget-environment"] == "development"
        assert json.loads(request.content) == {
            "query": REMOTE_FILES_VERSION_QUERY.document,
            "variables": {"a": 1},
        }

    def test_query_rejects_other_operation_kinds(self) -> None:
        client, _ = make_client(responses()[0])

        with pytest.raises(ValueError):
            client.query(PUBLISH_FILE_SYNC_EVENTS_MUTATION)
        with pytest.raises(ValueError):
            client.mutate(REMOTE_FILE_SYNC_EVENTS_SUBSCRIPTION)

    def test_graphql_errors_raise_client_error(self) -> None:
        handler, _ = responses(httpx.Response(200, json={"errors": [{"message": "Invalid path"}]}))
        client, _ = make_client(handler)

        with pytest.raises(ClientError) as exc_info:
            client.query(FILE_SYNC_HASHES_QUERY)

        assert exc_info.value.cause == [{"message": "Invalid path"}]
        assert exc_info.value.operation is FILE_SYNC_HASHES_QUERY
        assert "Invalid path" in str(exc_info.value)

    def test_missing_data(self) -> None:
        """A response with neither data nor errors is an error of its own."""
        handler, _ = responses(httpx.Response(200, json={}))
        client, _ = make_client(handler)

        with pytest.raises(ClientError) as exc_info:
            client.query(FILE_SYNC_HASHES_QUERY)

        assert "did not contain data" in str(exc_info.value)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_status(self, status: int) -> None:
        handler, requests = responses(httpx.Response(status))
        client, _ = make_client(handler)

        with pytest.raises(AuthenticationError):
            client.query(FILE_SYNC_HASHES_QUERY)

        assert len(requests) == 1

    def test_unauthenticated_graphql_error(self) -> None:
        handler, requests = responses(httpx.Response(200, json={"errors": [{"message": "Unauthenticated"}]}))
        client, sleep = make_client(handler)

        with pytest.raises(AuthenticationError):
            client.query(FILE_SYNC_HASHES_QUERY)

        assert len(requests) == 1
        sleep.assert_not_called()


class TestGraphQLClientRetry:
    """Tests for retrying transient failures."""

    def test_retries_service_unavailable(self) -> None:
        handler, requests = responses(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"data": {"ok": True}}),
        )
        client, sleep = make_client(handler)

        assert client.query(FILE_SYNC_HASHES_QUERY) == {"ok": True}
        assert len(requests) == 3
        assert sleep.call_count == 2

    def test_retries_transient_graphql_errors(self) -> None:
        handler, requests = responses(
            httpx.Response(200, json={"errors": [{"message": "Internal Server Error"}]}),
            httpx.Response(200, json={"data": {"ok": True}}),
        )
        client, _ = make_client(handler)

        assert client.query(FILE_SYNC_HASHES_QUERY) == {"ok": True}
        assert len(requests) == 2

    def test_retries_connection_errors(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(200, json={"data": {"ok": True}})

        client, _ = make_client(handler)

        assert client.query(FILE_SYNC_HASHES_QUERY) == {"ok": True}
        assert attempts == 2

    def test_gives_up_at_ceiling(self) -> None:
        handler, requests = responses(*(httpx.Response(503) for _ in range(3)))
        client, _ = make_client(handler, max_request_attempts=3)

        with pytest.raises(ClientError):
            client.query(FILE_SYNC_HASHES_QUERY)

        assert len(requests) == 3

    def test_mutation_not_retried_by_default(self) -> None:
        handler, requests = responses(httpx.Response(503))
        client, _ = make_client(handler)

        with pytest.raises(ClientError):
            client.mutate(PUBLISH_FILE_SYNC_EVENTS_MUTATION, {})

        assert len(requests) == 1

    def test_files_version_mismatch_never_retried(self) -> None:
        handler, requests = responses(
            httpx.Response(200, json={"errors": [{"message": "Files version mismatch, expected 5 got 6"}]})
        )
        client, _ = make_client(handler)

        with pytest.raises(ClientError) as exc_info:
            client.mutate(PUBLISH_FILE_SYNC_EVENTS_MUTATION, {}, retry=True)

        assert is_files_version_mismatch_error(exc_info.value)
        assert len(requests) == 1

    def test_context_manager_closes(self) -> None:
        client, _ = make_client(responses()[0])
        with client as entered:
            assert entered is client
        assert client._client.is_closed
