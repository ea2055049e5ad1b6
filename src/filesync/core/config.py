"""Shared configuration classes for filesync.

This module defines the connection settings used by both the request/response
client (GraphQLClient) and the subscription client (SubscriptionClient).
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_DOMAIN = "gadget.app"
DEFAULT_MAX_REQUEST_ATTEMPTS = 10
DEFAULT_BACKOFF_LIMIT_MS = 5000
DEFAULT_JITTER_MS = 100

GRAPHQL_PATH = "/edit/api/graphql"
GRAPHQL_WS_PATH = "/edit/api/graphql-ws"


@dataclass
class AppConfig:
    """Configuration for connecting to an application's environment.

    Used by both the HTTP client (GraphQLClient) and the WebSocket client
    (SubscriptionClient) to ensure consistent connection settings.

    Attributes:
        application: Application slug (e.g., "my-app").
        environment: Environment name (e.g., "development").
        session: Session cookie value used to authenticate.
        domain: Base domain applications are served from.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        max_request_attempts: Ceiling on attempts for retryable requests.
        backoff_limit_ms: Maximum delay between attempts.
        jitter_ms: Random jitter applied to each delay (+/-).
        multi_environment: Whether the environment gets its own subdomain.
    """

    application: str
    environment: str
    session: str
    domain: str = DEFAULT_DOMAIN
    timeout: float = 30.0
    verify_ssl: bool = True
    max_request_attempts: int = DEFAULT_MAX_REQUEST_ATTEMPTS
    backoff_limit_ms: int = DEFAULT_BACKOFF_LIMIT_MS
    jitter_ms: int = DEFAULT_JITTER_MS
    multi_environment: bool = True

    def __post_init__(self) -> None:
        """Normalize domain."""
        self.domain = self.domain.strip("/")
        if self.max_request_attempts < 1:
            raise ValueError("max_request_attempts must be at least 1")

    @property
    def subdomain(self) -> str:
        """Subdomain the environment is served from."""
        if self.multi_environment:
            return f"{self.application}--{self.environment}"
        return self.application

    @property
    def graphql_url(self) -> str:
        """Get the request/response GraphQL endpoint."""
        return f"https://{self.subdomain}.{self.domain}{GRAPHQL_PATH}"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for subscriptions."""
        return f"wss://{self.subdomain}.{self.domain}{GRAPHQL_WS_PATH}"

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every request and WebSocket handshake."""
        return {
            "cookie": f"session={self.session}",
            "x-gadget-environment": self.environment,
        }
