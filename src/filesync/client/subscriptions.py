"""Reconnecting GraphQL subscription client.

This module provides:
- SubscriptionClient: graphql-transport-ws client over websockets that
  reconnects forever with backoff and re-subscribes after every reconnect
- ClientSubscription: Handle returned by subscribe()
- ConnectionStateMachine: Owner of the connection status

Architecture:
    Caller threads ─subscribe()─► SubscriptionClient ─► asyncio loop thread
                                                          │ (websocket)
    on_data/on_error/on_complete ◄─ per-subscription SerialQueue ◄┘

The websocket lives on one background thread running an asyncio loop.
Messages for a subscription are handed to that subscription's SerialQueue,
so its callbacks run one at a time, in arrival order, off the loop thread.

Variables may be a callable. It is re-evaluated every time the
subscription is (re)sent, so a reconnect subscribes with current values
rather than the ones captured when subscribe() was first called.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import ssl
import threading
from collections.abc import Callable
from typing import Any

from websockets.asyncio.client import connect as websockets_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.typing import Subprotocol

from filesync.client.errors import AuthenticationError, ClientError, CloseEvent, ErrorEvent
from filesync.client.operations import Operation, OperationKind
from filesync.client.sync.queue import SerialQueue
from filesync.client.sync.retry import calculate_backoff_delay, close_event_from, is_retryable_close_event
from filesync.core.config import AppConfig
from filesync.core.types import ConnectionStatus

logger = logging.getLogger(__name__)

GRAPHQL_TRANSPORT_WS = Subprotocol("graphql-transport-ws")

NORMAL_CLOSURE = 1000

Variables = dict[str, Any] | Callable[[], dict[str, Any]] | None
StatusListener = Callable[[ConnectionStatus, ConnectionStatus], None]


class ConnectionStateMachine:
    """Tracks whether the subscription connection is up.

    Only the SubscriptionClient's connection loop calls the transition
    methods; everyone else reads `status` or registers a listener.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status = ConnectionStatus.DISCONNECTED
        self._has_connected = False
        self._listeners: list[StatusListener] = []

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        with self._lock:
            return self._status

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Call listener(old, new) on every status change.

        Returns:
            A function that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock, contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def _transition(self, new: ConnectionStatus) -> ConnectionStatus:
        with self._lock:
            old = self._status
            self._status = new
            listeners = list(self._listeners) if old != new else []
        for listener in listeners:
            try:
                listener(old, new)
            except Exception as e:
                logger.warning("Connection status listener failed: %s", e)
        return old

    def connecting(self) -> None:
        """A connection attempt is starting."""
        status = self.status
        if status is ConnectionStatus.RECONNECTING:
            logger.info("Retrying connection")
        elif self._has_connected:
            logger.info("Reconnecting")
            self._transition(ConnectionStatus.RECONNECTING)
        else:
            logger.debug("Connecting")

    def connected(self) -> bool:
        """The connection is up.

        Returns:
            True if this connection replaced a lost one.
        """
        reconnected = self._has_connected
        self._has_connected = True
        old = self._transition(ConnectionStatus.CONNECTED)
        if old is ConnectionStatus.RECONNECTING:
            logger.info("Reconnected")
        else:
            logger.debug("Connected")
        return reconnected

    def disconnected(self) -> None:
        """The connection was lost or an attempt failed."""
        if self.status is not ConnectionStatus.RECONNECTING:
            self._transition(ConnectionStatus.DISCONNECTED)
        logger.debug("Disconnected")

    def closed(self) -> None:
        """The client was closed for good."""
        self._transition(ConnectionStatus.DISCONNECTED)


class ClientSubscription:
    """A registered subscription.

    Attributes:
        key: Stable identifier for the lifetime of the subscription.
        operation: The subscription operation.
    """

    _keys = itertools.count(1)

    def __init__(
        self,
        client: SubscriptionClient,
        operation: Operation,
        variables: Variables,
        on_data: Callable[[dict[str, Any]], None],
        on_error: Callable[[ClientError], None],
        on_complete: Callable[[], None] | None = None,
    ) -> None:
        self.key = str(next(self._keys))
        self.operation = operation
        self._client = client
        self._variables = variables
        self._on_data = on_data
        self._on_error = on_error
        self._on_complete = on_complete
        self._active = True
        self._lock = threading.Lock()
        self._queue = SerialQueue(name=f"subscription-{operation.name}-{self.key}", on_error=self._callback_failed)

        # loop-thread state
        self.operation_id: str | None = None
        self.generation = -1

    def __repr__(self) -> str:
        return f"ClientSubscription({self.operation.name!r}, key={self.key}, active={self._active})"

    @property
    def active(self) -> bool:
        """Whether the subscription is still registered."""
        return self._active

    def variables(self) -> dict[str, Any]:
        """Evaluate the variables as of now."""
        variables = self._variables() if callable(self._variables) else self._variables
        return dict(variables or {})

    def unsubscribe(self) -> None:
        """Stop the subscription. No further callbacks are scheduled."""
        if self._deactivate():
            self._client._remove(self, notify_server=True)
            self._queue.close(wait=True, timeout=0)
            logger.debug("Unsubscribed from %s", self.operation.name)

    def resubscribe(self) -> None:
        """Tear down and re-send the subscription with fresh variables."""
        if not self._active:
            raise RuntimeError(f"{self!r} is no longer active")
        self._client._resubscribe(self)

    def idle(self, timeout: float | None = None) -> bool:
        """Wait until every callback scheduled so far has run."""
        return self._queue.idle(timeout=timeout)

    def _deactivate(self) -> bool:
        with self._lock:
            was_active = self._active
            self._active = False
            return was_active

    def _deliver(self, data: dict[str, Any]) -> None:
        # held across the put so teardown can't close the queue in between
        with self._lock:
            if self._active:
                self._queue.put(lambda: self._on_data(data))

    def _fail(self, error: ClientError) -> None:
        if self._deactivate():
            self._client._remove(self, notify_server=False)
            self._queue.put(lambda: self._on_error(error))
            self._queue.close(wait=True, timeout=0)

    def _complete(self, timeout: float | None = 0) -> None:
        if self._deactivate():
            self._client._remove(self, notify_server=False)
            if self._on_complete is not None:
                self._queue.put(self._on_complete)
            self._queue.close(wait=True, timeout=timeout)

    def _callback_failed(self, error: BaseException) -> None:
        logger.debug("Subscription callback for %s raised: %s", self.operation.name, error)
        if not isinstance(error, ClientError):
            error = ClientError(self.operation, error)
        try:
            self._on_error(error)
        except Exception as e:
            logger.error("on_error for %s raised: %s", self.operation.name, e, exc_info=True)


class SubscriptionClient:
    """Long-lived graphql-transport-ws connection shared by subscriptions.

    Usage:
        client = SubscriptionClient(config)
        subscription = client.subscribe(
            REMOTE_FILE_SYNC_EVENTS_SUBSCRIPTION,
            variables=lambda: {"localFilesVersion": str(state.files_version)},
            on_data=handle,
            on_error=fail,
        )
        # ...
        client.close()
    """

    def __init__(
        self,
        config: AppConfig,
        url: str | None = None,
        connect: Callable[..., Any] | None = None,
        ack_timeout: float = 10.0,
    ) -> None:
        """Initialize the client. Nothing connects until the first subscribe().

        Args:
            config: Application/environment connection settings.
            url: WebSocket URL override (defaults to config.ws_url).
            connect: websockets-compatible connect function.
            ack_timeout: Seconds to wait for connection_ack.
        """
        self._config = config
        self._url = url or config.ws_url
        self._connect = connect or websockets_connect
        self._ack_timeout = ack_timeout
        self._state = ConnectionStateMachine()

        self._lock = threading.Lock()
        self._subscriptions: dict[str, ClientSubscription] = {}
        self._closed = False

        # Thread and loop
        self._should_run = False
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready = threading.Event()
        self._stop_event: asyncio.Event | None = None

        # loop-thread state
        self._ws: Any = None
        self._generation = 0
        self._operation_ids = itertools.count(1)
        self._by_operation_id: dict[str, ClientSubscription] = {}

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        return self._state.status

    @property
    def url(self) -> str:
        return self._url

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Register listener(old, new); returns a function that removes it."""
        return self._state.add_listener(listener)

    def subscribe(
        self,
        operation: Operation,
        variables: Variables,
        on_data: Callable[[dict[str, Any]], None],
        on_error: Callable[[ClientError], None],
        on_complete: Callable[[], None] | None = None,
    ) -> ClientSubscription:
        """Register a subscription and send it once connected.

        Args:
            operation: A subscription operation.
            variables: Variables, or a callable returning them.
            on_data: Called with each payload's "data" object.
            on_error: Called once if the subscription fails; it is torn
                down afterwards.
            on_complete: Called once if the server or close() ends it.
        """
        if operation.kind is not OperationKind.SUBSCRIPTION:
            raise ValueError(f"{operation} is not a subscription")

        subscription = ClientSubscription(self, operation, variables, on_data, on_error, on_complete)
        with self._lock:
            if self._closed:
                raise RuntimeError("SubscriptionClient is closed")
            self._subscriptions[subscription.key] = subscription

        self._start()
        self._call_soon(self._send_subscribe, subscription)
        logger.debug("Subscribed to %s", operation.name)
        return subscription

    def close(self) -> None:
        """Complete every subscription and stop the connection thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriptions = list(self._subscriptions.values())

        for subscription in subscriptions:
            if subscription.operation_id is not None:
                self._call_soon(self._send_complete, subscription.operation_id)
            subscription._complete(timeout=5.0)

        self._should_run = False
        if self._loop and self._stop_event:
            with contextlib.suppress(RuntimeError):
                asyncio.run_coroutine_threadsafe(self._signal_stop(), self._loop)

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        self._state.closed()
        logger.info("SubscriptionClient closed")

    def __enter__(self) -> SubscriptionClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === Thread management ===

    def _start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._should_run = True
            self._ready.clear()
            self._thread = threading.Thread(target=self._run_loop, name="SubscriptionClient", daemon=True)
            self._thread.start()
        self._ready.wait(timeout=5.0)

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop_event = asyncio.Event()
        self._ready.set()

        try:
            self._loop.run_until_complete(self._connection_loop())
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    def _call_soon(self, func: Callable[..., Any], *args: Any) -> None:
        """Run func(*args) on the loop thread."""
        loop = self._loop
        if loop is None:
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(lambda: asyncio.ensure_future(func(*args)))

    async def _signal_stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()

    # === Connection loop ===

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        attempt = 0

        while self._should_run:
            self._state.connecting()
            failure: Any = None

            try:
                ws = await self._connect(self._url, **self._connect_kwargs())
                try:
                    await self._initialize(ws)
                    self._ws = ws
                    self._generation += 1
                    self._by_operation_id.clear()
                    if self._state.connected():
                        logger.info("Re-subscribing %d subscriptions", len(self._snapshot()))
                    attempt = 0

                    for subscription in self._snapshot():
                        await self._send_subscribe(subscription)

                    await self._listen(ws)
                finally:
                    self._ws = None
                    with contextlib.suppress(WebSocketException, OSError):
                        await ws.close()

            except ConnectionClosed as e:
                failure = close_event_from(e)
            except InvalidStatus as e:
                failure = e
            except (OSError, TimeoutError, WebSocketException) as e:
                failure = ErrorEvent(message=str(e) or type(e).__name__, error=e)
            except Exception as e:
                logger.warning("SubscriptionClient error: %s", e)
                logger.debug("Full traceback:", exc_info=True)
                failure = ErrorEvent(message=str(e) or type(e).__name__, error=e)

            self._state.disconnected()
            if not self._should_run:
                break

            if not self._handle_connection_failure(failure):
                break

            attempt += 1
            delay = calculate_backoff_delay(attempt, self._config.backoff_limit_ms, self._config.jitter_ms) / 1000
            logger.info("SubscriptionClient reconnecting in %.1fs...", delay)

            # Use interruptible sleep - will wake on stop signal
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)  # type: ignore[union-attr]
                break
            except TimeoutError:
                pass

    def _handle_connection_failure(self, failure: Any) -> bool:
        """Decide whether to reconnect after a failure.

        Returns:
            True to reconnect, False to stop the loop.
        """
        if isinstance(failure, CloseEvent):
            if failure.code == NORMAL_CLOSURE:
                logger.info("Server closed the connection")
                for subscription in self._snapshot():
                    subscription._complete()
                return False
            if not is_retryable_close_event(failure):
                logger.error("Connection closed with code %d: %s", failure.code, failure.reason)
                self._fail_all(lambda op: ClientError(op, failure))
                return False
            logger.warning("Connection closed with code %d, will reconnect", failure.code)
            return True

        if isinstance(failure, InvalidStatus):
            status = failure.response.status_code
            if status in (401, 403):
                logger.error("Connection rejected: HTTP %d", status)
                self._fail_all(lambda op: AuthenticationError(op, f"HTTP {status}"))
                return False
            logger.warning("Connection rejected: HTTP %d, will reconnect", status)
            return True

        if isinstance(failure, ErrorEvent):
            if self._state.status is ConnectionStatus.RECONNECTING:
                logger.error("Failed to reconnect: %s", failure.message)
            else:
                logger.error("Connection error: %s", failure.message)
        return True

    def _connect_kwargs(self) -> dict[str, Any]:
        ssl_context: ssl.SSLContext | None = None
        if self._url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        return {
            "additional_headers": self._config.headers,
            "subprotocols": [GRAPHQL_TRANSPORT_WS],
            "ssl": ssl_context,
            "open_timeout": self._config.timeout,
            "close_timeout": 5,
        }

    async def _initialize(self, ws: Any) -> None:
        """Perform the connection_init / connection_ack handshake."""
        await ws.send(
            json.dumps({"type": "connection_init", "payload": {"environment": self._config.environment}})
        )
        while True:
            message = json.loads(await asyncio.wait_for(ws.recv(), timeout=self._ack_timeout))
            msg_type = message.get("type")
            if msg_type == "connection_ack":
                return
            if msg_type == "ping":
                await ws.send(json.dumps({"type": "pong"}))
                continue
            raise WebSocketException(f"Expected connection_ack, received {msg_type!r}")

    async def _listen(self, ws: Any) -> None:
        """Receive messages until the connection closes."""
        while self._should_run:
            message = await ws.recv()
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            await self._handle_message(message)

    async def _handle_message(self, message: str) -> None:
        """Dispatch one graphql-transport-ws message.

        Supported message types:
        - ping: answered with pong
        - next: {"id", "payload": {"data", "errors"}}
        - error: {"id", "payload": [GraphQL errors]}
        - complete: {"id"}
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid message received: %s", message[:100])
            return

        msg_type = data.get("type")

        if msg_type == "ping":
            if self._ws is not None:
                await self._ws.send(json.dumps({"type": "pong"}))
            return

        if msg_type not in ("next", "error", "complete"):
            return

        subscription = self._by_operation_id.get(data.get("id"))
        if subscription is None:
            logger.debug("Ignoring %s for unknown subscription %s", msg_type, data.get("id"))
            return

        if msg_type == "next":
            payload = data.get("payload")
            if not isinstance(payload, dict):
                self._fail(subscription, ClientError(subscription.operation, "The subscription message had no payload"))
            elif payload.get("errors"):
                self._fail(subscription, ClientError(subscription.operation, payload["errors"]))
            elif not isinstance(payload.get("data"), dict):
                self._fail(
                    subscription,
                    ClientError(subscription.operation, f"The response for {subscription.operation} did not contain data"),
                )
            else:
                subscription._deliver(payload["data"])

        elif msg_type == "error":
            self._fail(subscription, ClientError(subscription.operation, data.get("payload")))

        else:
            self._by_operation_id.pop(data["id"], None)
            subscription._complete()

    # === Subscription bookkeeping ===

    def _snapshot(self) -> list[ClientSubscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def _fail(self, subscription: ClientSubscription, error: ClientError) -> None:
        if subscription.operation_id is not None:
            self._by_operation_id.pop(subscription.operation_id, None)
        logger.error("Subscription %s failed: %s", subscription.operation.name, error)
        subscription._fail(error)

    def _fail_all(self, error_for: Callable[[Operation], ClientError]) -> None:
        for subscription in self._snapshot():
            self._fail(subscription, error_for(subscription.operation))

    def _remove(self, subscription: ClientSubscription, notify_server: bool) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.key, None)
        if notify_server and subscription.operation_id is not None:
            self._call_soon(self._send_complete, subscription.operation_id)

    def _resubscribe(self, subscription: ClientSubscription) -> None:
        async def resubscribe() -> None:
            if subscription.operation_id is not None:
                await self._send_complete(subscription.operation_id)
            subscription.generation = -1
            await self._send_subscribe(subscription)

        logger.info("Re-subscribing to %s", subscription.operation.name)
        self._call_soon(resubscribe)

    async def _send_subscribe(self, subscription: ClientSubscription) -> None:
        """Send a subscription on the current connection (once per connection)."""
        if self._ws is None or not subscription.active or subscription.generation == self._generation:
            return

        try:
            variables = subscription.variables()
        except Exception as e:
            self._fail(subscription, ClientError(subscription.operation, e))
            return

        operation_id = str(next(self._operation_ids))
        subscription.operation_id = operation_id
        subscription.generation = self._generation
        self._by_operation_id[operation_id] = subscription

        await self._ws.send(
            json.dumps(
                {
                    "id": operation_id,
                    "type": "subscribe",
                    "payload": {
                        "query": subscription.operation.document,
                        "operationName": subscription.operation.name,
                        "variables": variables,
                    },
                }
            )
        )
        logger.debug("Sent subscribe %s for %s", operation_id, subscription.operation.name)

    async def _send_complete(self, operation_id: str) -> None:
        self._by_operation_id.pop(operation_id, None)
        if self._ws is None:
            return
        with contextlib.suppress(WebSocketException, OSError):
            await self._ws.send(json.dumps({"id": operation_id, "type": "complete"}))
