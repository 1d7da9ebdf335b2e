"""
Broker connection lifecycle manager.

This module owns the single transport connection a `Connection` holds:
- Lazy, idempotent establishment (`connect`, `get_connection`).
- Sticky close: after `close()` nothing reconnects until `connect()`.
- The cached default channel and the channel pool built on the connection.
- Opt-in retry with linear backoff (`ensure_connection`).
- Revival of the default channel and registered consumers after a lost
  connection is re-established.

Responsibilities:
- Invalidate everything derived from a transport connection as soon as the
  transport reports `close`/`error`.

Non-responsibilities:
- Wire protocol, heartbeats (owned by the transport).
- Automatic retry of individual channel operations.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from brokerkit.consumers.consumer import Consumer
from brokerkit.core.config import Settings, get_settings
from brokerkit.core.exceptions import ChannelError, ChannelPoolError, ConnectionClosedError
from brokerkit.schemas.entities import (
    ExchangeSpec,
    PublishOptions,
    QueueInfo,
    QueueOptions,
    QueueSpec,
)
from brokerkit.services.channel import Channel, MessageCallback
from brokerkit.services.pool import ChannelPool
from brokerkit.services.producer import Producer
from brokerkit.transport.base import ConnectionEvent, EventKind, Transport, TransportConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

ReviveHook = Callable[["Connection"], Awaitable[None]]
RetryCallback = Callable[[BaseException, float], Any]
GiveUpCallback = Callable[[BaseException], Any]


async def _sleep(seconds: float) -> None:
    """Async sleep (overridable for tests)."""
    await asyncio.sleep(seconds)


class Connection:
    """
    A logical connection to the broker.

    Args:
        transport: Transport factory used to open the physical connection.
        settings: Connection, retry and pool settings. Defaults to `get_settings()`.

    Notes:
        - Holds at most one live transport connection at a time.
        - Dormant until `connect()`/`get_connection()` is first awaited.
        - Reusable: `connect()` after `close()` opens a new transport connection.
    """

    def __init__(self, transport: Transport, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._connection: TransportConnection | None = None
        self._default_channel: Channel | None = None
        self._pool: ChannelPool | None = None
        self._leases: dict[Channel, ChannelPool] = {}
        self._closed = False
        self._blocked = False
        self._needs_revive = False
        self._lock = asyncio.Lock()
        self._revive_hooks: list[ReviveHook] = []
        self._closing: set[asyncio.Task[None]] = set()
        self.result_queue = self._settings.result_queue

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def uri(self) -> str:
        return self._settings.uri

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def is_blocked(self) -> bool:
        """True while the broker has blocked publishing on this connection."""
        return self._blocked

    def is_connected(self) -> bool:
        """Return True if the connection has been established and not closed."""
        return (
            not self._closed
            and self._connection is not None
            and not self._connection.is_closed
        )

    async def connect(self) -> TransportConnection:
        """
        Establish the connection to the server immediately.

        Clears the closed flag. Safe to call repeatedly: an established
        connection is returned as is.

        Raises:
            ConnectionClosedError: If `close()` ran while connecting.
        """
        logger.debug("connect")
        self._closed = False
        connection = await self.get_connection()
        if connection is None:
            raise ConnectionClosedError("Connection was closed while connecting")
        return connection

    async def get_connection(self) -> TransportConnection | None:
        """
        Return the underlying transport connection, establishing it if needed.

        Returns:
            The transport connection, or None if the manager was explicitly
            closed (no reconnect is attempted until `connect()`).
        """
        if self._closed:
            return None
        if self.is_connected():
            return self._connection

        async with self._lock:
            if self._closed:
                return None
            if self.is_connected():
                return self._connection
            self._default_channel = None
            connection = await self._establish_connection()

        if connection is not None and self._needs_revive:
            self._needs_revive = False
            await self.revive()
        return connection

    async def get_default_channel(self) -> Channel:
        """
        Return the default channel, created upon access.

        The default channel is dropped whenever the transport connection goes
        away; the next call after a reconnect returns a new one.

        Raises:
            ConnectionClosedError: If the manager was explicitly closed.
        """
        connection = await self.get_connection()
        if connection is None:
            raise ConnectionClosedError("Connection is closed; call connect() first")
        if self._default_channel is None:
            self._default_channel = self.channel()
        return self._default_channel

    def channel(self) -> Channel:
        """Create and return a new channel. The transport channel opens on first use."""
        logger.debug("create channel")
        return Channel(self)

    async def get_channel(self) -> Channel:
        """Check a channel out of the channel pool. Pair with `release_channel()`."""
        pool = await self._get_pool()
        channel = await pool.acquire()
        self._leases[channel] = pool
        return channel

    async def release_channel(self, channel: Channel, *, discard: bool = False) -> None:
        """Return a channel obtained from `get_channel()` to its pool."""
        pool = self._leases.pop(channel, None)
        if pool is None:
            raise ChannelPoolError(f"{channel!r} is not checked out from this connection")
        await pool.release(channel, discard=discard)

    @asynccontextmanager
    async def acquire_channel(self) -> AsyncIterator[Channel]:
        """
        Scoped pooled channel.

        The channel is released exactly once on every exit path; it is
        discarded rather than reused when a channel operation failed.
        """
        channel = await self.get_channel()
        discard = False
        try:
            yield channel
        except ChannelError:
            discard = True
            raise
        finally:
            await self.release_channel(channel, discard=discard)

    async def use_channel(self, operation: Callable[[Channel], Awaitable[T]]) -> T:
        """Run `operation` with a pooled channel and release it afterwards."""
        async with self.acquire_channel() as channel:
            return await operation(channel)

    async def check_queue(self, name: str) -> QueueInfo:
        return await self.use_channel(lambda channel: channel.check_queue(name))

    async def declare_exchange(self, exchange: ExchangeSpec) -> None:
        logger.debug("declare_exchange %s", exchange.name)
        await self.use_channel(
            lambda channel: channel.assert_exchange(exchange.name, exchange.type, exchange.options)
        )

    async def declare_queue(self, queue: QueueSpec) -> QueueInfo:
        """Declare a queue. Without options it is exclusive, auto-deleted and transient."""
        options = queue.options or QueueOptions()
        declared = await self.use_channel(
            lambda channel: channel.assert_queue(queue.id, options)
        )
        logger.debug("declare_queue %s", declared)
        return declared

    async def publish_to_queue(
        self,
        queue: QueueSpec | str,
        payload: Any,
        options: PublishOptions | None = None,
    ) -> PublishOptions:
        """
        JSON-encode `payload` and send it to `queue` through the default exchange.

        Without options the message is persistent, replies go to
        `result_queue` and a fresh UUID4 correlation id is attached.

        Returns:
            The options the message was sent with.
        """
        if options is None:
            options = PublishOptions(
                delivery_mode=True,
                reply_to=self.result_queue,
                correlation_id=str(uuid.uuid4()),
            )
        queue_id = queue if isinstance(queue, str) else queue.id
        body = json.dumps(payload).encode("utf-8")
        await self.use_channel(lambda channel: channel.send_to_queue(queue_id, body, options))
        return options

    def producer(
        self,
        channel: Channel | None = None,
        *,
        exchange: str = "",
        routing_key: str | None = None,
    ) -> Producer:
        """Create a `Producer` using this connection."""
        return Producer(channel or self.channel(), exchange=exchange, routing_key=routing_key)

    def consumer(
        self,
        queues: str | Iterable[str],
        channel: Channel | None = None,
        *,
        callbacks: Iterable[MessageCallback] | None = None,
        no_ack: bool = False,
    ) -> Consumer:
        """Create a `Consumer` using this connection."""
        return Consumer(channel or self.channel(), queues, callbacks=callbacks, no_ack=no_ack)

    async def close(self) -> None:
        """Close the connection. Safe to call when already closed."""
        self._closed = True
        self._needs_revive = False
        connection, self._connection = self._connection, None
        pool, self._pool = self._pool, None
        default_channel, self._default_channel = self._default_channel, None
        try:
            if pool is not None:
                await pool.close()
            if default_channel is not None:
                default_channel.invalidate()
            if connection is not None and not connection.is_closed:
                await connection.close()
                logger.info("Broker connection closed")
        finally:
            self._blocked = False

    async def ensure_connection(
        self,
        *,
        max_retries: int | None = None,
        interval_start: float | None = None,
        interval_step: float | None = None,
        interval_max: float | None = None,
        callback: RetryCallback | None = None,
        errback: GiveUpCallback | None = None,
    ) -> Connection:
        """
        Ensure we have a connection to the server, retrying with linear backoff.

        Args:
            max_retries: Maximum number of connection attempts. When exhausted the
                last connection error is re-raised. Falls back to settings;
                None there means retry forever.
            interval_start: Seconds to sleep after the first failure.
            interval_step: Seconds added to the interval for each further retry.
            interval_max: Upper bound of the interval.
            callback: Called as `callback(exc, interval)` before each sleep.
                May be a coroutine function. Defaults to logging a warning.
            errback: Called as `errback(exc)` with the last error once retries
                are exhausted, before it is re-raised. May be a coroutine function.

        Returns:
            This connection.

        Raises:
            Exception: The last transport connection error once retries are exhausted.
        """
        settings = self._settings
        retries = max_retries if max_retries is not None else settings.max_retries
        start = interval_start if interval_start is not None else settings.interval_start
        step = interval_step if interval_step is not None else settings.interval_step
        cap = interval_max if interval_max is not None else settings.interval_max
        notify = callback or self._default_ensure_callback
        retryable = self._retryable_errors()

        attempt = 0
        while True:
            attempt += 1
            try:
                await self.connect()
                return self
            except retryable as exc:
                if retries is not None and attempt >= retries:
                    logger.error("Giving up connecting after %d attempt(s): %r", attempt, exc)
                    if errback is not None:
                        result = errback(exc)
                        if inspect.isawaitable(result):
                            await result
                    raise
                interval = min(start + (attempt - 1) * step, cap)
                result = notify(exc, interval)
                if inspect.isawaitable(result):
                    await result
                await _sleep(interval)

    async def revive(self, new_channel: Channel | None = None) -> list[ReviveHook]:
        """
        Revive after the connection was re-established.

        Installs `new_channel` (or a fresh channel) as the default channel, then
        awaits every registered revive hook. A failing hook is logged and does
        not stop the others.

        Returns:
            The hooks that raised.
        """
        if self._default_channel is not None and self._default_channel is not new_channel:
            self._default_channel.invalidate()
        self._default_channel = new_channel or self.channel()
        logger.info("Reviving connection (%d hook(s))", len(self._revive_hooks))
        failed: list[ReviveHook] = []
        for hook in list(self._revive_hooks):
            try:
                await hook(self)
            except Exception:
                logger.exception("Revive hook %r failed", hook)
                failed.append(hook)
        return failed

    def add_revive_hook(self, hook: ReviveHook) -> None:
        if hook not in self._revive_hooks:
            self._revive_hooks.append(hook)

    def remove_revive_hook(self, hook: ReviveHook) -> None:
        if hook in self._revive_hooks:
            self._revive_hooks.remove(hook)

    def register_event_listeners(self, connection: TransportConnection) -> None:
        """Subscribe to lifecycle notifications of `connection`."""

        def _listener(event: ConnectionEvent) -> None:
            self._on_event(connection, event)

        connection.add_listener(_listener)

    async def __aenter__(self) -> Connection:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _establish_connection(self) -> TransportConnection | None:
        if self._connection is not None:
            # Handle went stale without a close notification.
            self._invalidate()

        settings = self._settings
        logger.debug(
            "establishing connection...",
            extra={"host": settings.host, "port": settings.port, "vhost": settings.vhost},
        )
        connecting = self._transport.connect(
            self.uri, heartbeat=settings.heartbeat, **settings.transport_options
        )
        if settings.connect_timeout is not None:
            connection = await asyncio.wait_for(connecting, timeout=settings.connect_timeout)
        else:
            connection = await connecting

        if self._closed:
            await connection.close()
            return None

        self._connection = connection
        self.register_event_listeners(connection)
        logger.info(
            "Connected to broker",
            extra={"host": settings.host, "port": settings.port, "vhost": settings.vhost},
        )
        return connection

    async def _get_pool(self) -> ChannelPool:
        if self._pool is None or self._pool.closed:
            connection = await self.get_connection()
            if connection is None:
                raise ConnectionClosedError("Connection is closed; call connect() first")
            if self._pool is None or self._pool.closed:
                settings = self._settings
                self._pool = ChannelPool(
                    self._open_channel,
                    min_size=settings.pool_min_size,
                    max_size=settings.pool_max_size,
                    idle_timeout=settings.pool_idle_timeout,
                )
        return self._pool

    async def _open_channel(self) -> Channel:
        channel = self.channel()
        await channel.open()
        return channel

    def _on_event(self, source: TransportConnection, event: ConnectionEvent) -> None:
        if event.kind is EventKind.ERROR:
            logger.warning("Broker connection error: %r", event.error)
        elif event.kind is EventKind.CLOSE:
            logger.info("Broker connection closed by transport (%r)", event.error)
        elif event.kind is EventKind.BLOCKED:
            logger.warning("Broker connection blocked: %s", event.reason)
            if source is self._connection:
                self._blocked = True
            return
        else:
            logger.info("Broker connection unblocked")
            if source is self._connection:
                self._blocked = False
            return

        if source is self._connection:
            self._invalidate()
            if not source.is_closed:
                self._close_dropped(source)

    def _close_dropped(self, connection: TransportConnection) -> None:
        task = asyncio.get_running_loop().create_task(self._close_quietly(connection))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _close_quietly(connection: TransportConnection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            logger.warning("Failed to close dropped broker connection: %r", exc)

    def _invalidate(self) -> None:
        self._connection = None
        self._blocked = False
        if self._default_channel is not None:
            self._default_channel.invalidate()
            self._default_channel = None
        if self._pool is not None:
            self._pool.abandon()
            self._pool = None
        if not self._closed:
            self._needs_revive = True

    def _retryable_errors(self) -> tuple[type[BaseException], ...]:
        return (ConnectionError, OSError, asyncio.TimeoutError, *self._transport.connection_errors)

    @staticmethod
    def _default_ensure_callback(exc: BaseException, interval: float) -> None:
        logger.warning("Ensure: Operation error: %r. Retry in %ss", exc, interval)
