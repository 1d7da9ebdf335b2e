"""
Logical channel bound to a broker connection.

A `Channel` is cheap to create: the transport channel behind it is opened on
first use through the owning connection. Transport failures are wrapped in
`ChannelError` and mark the channel broken, so a pool discards it instead of
handing it out again.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from brokerkit.core.exceptions import ChannelClosedError, ChannelError, ConnectionClosedError
from brokerkit.schemas.entities import ExchangeOptions, PublishOptions, QueueInfo, QueueOptions
from brokerkit.services.message import Message
from brokerkit.transport.base import RawDelivery, TransportChannel

if TYPE_CHECKING:
    from brokerkit.services.connection import Connection

logger = logging.getLogger(__name__)

T = TypeVar("T")

MessageCallback = Callable[[Message], Awaitable[None]]


class Channel:
    """
    Channel handle used to issue broker operations.

    Args:
        connection: Owning connection manager.
        channel: Already opened transport channel, if any.
    """

    def __init__(self, connection: Connection, channel: TransportChannel | None = None) -> None:
        self._connection = connection
        self._channel = channel
        self._closed = False
        self._broken = False
        self.last_used = time.monotonic()

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def is_open(self) -> bool:
        """True while a live transport channel is attached."""
        return self._channel is not None and not self._channel.is_closed and not self._closed

    @property
    def is_closed(self) -> bool:
        """True after `close()` or once the attached transport channel died."""
        if self._closed:
            return True
        return self._channel is not None and self._channel.is_closed

    @property
    def revivable(self) -> bool:
        """False once the channel was closed or invalidated for good."""
        return not self._closed

    @property
    def broken(self) -> bool:
        """True once a transport operation on this channel failed."""
        return self._broken

    async def open(self) -> TransportChannel:
        """
        Return the transport channel, opening it on first use.

        Raises:
            ChannelClosedError: If the channel was closed or its transport channel died.
            ConnectionClosedError: If the owning connection was explicitly closed.
            ChannelError: If the transport fails to open a channel.
        """
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        if self._channel is not None:
            if self._channel.is_closed:
                raise ChannelClosedError("Transport channel is closed; revive() to reopen")
            return self._channel

        connection = await self._connection.get_connection()
        if connection is None:
            raise ConnectionClosedError("Connection is closed; call connect() first")
        try:
            self._channel = await connection.create_channel()
        except Exception as exc:
            raise ChannelError(f"Could not open channel: {exc!r}") from exc
        logger.debug("Opened channel %s", id(self))
        return self._channel

    async def revive(self) -> None:
        """Forget a dead transport channel so the next operation reopens it."""
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        if self._channel is not None and self._channel.is_closed:
            self._channel = None
            self._broken = False

    async def assert_queue(self, name: str, options: QueueOptions | None = None) -> QueueInfo:
        return await self._run(lambda ch: ch.assert_queue(name, options or QueueOptions()))

    async def assert_exchange(
        self, name: str, type: str = "direct", options: ExchangeOptions | None = None
    ) -> None:
        await self._run(lambda ch: ch.assert_exchange(name, type, options or ExchangeOptions()))

    async def check_queue(self, name: str) -> QueueInfo:
        return await self._run(lambda ch: ch.check_queue(name))

    async def send_to_queue(
        self, queue: str, body: bytes, options: PublishOptions | None = None
    ) -> None:
        await self._run(lambda ch: ch.send_to_queue(queue, body, options or PublishOptions()))

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        options: PublishOptions | None = None,
    ) -> None:
        await self._run(
            lambda ch: ch.publish(exchange, routing_key, body, options or PublishOptions())
        )

    async def consume(self, queue: str, callback: MessageCallback, no_ack: bool = False) -> str:
        """
        Subscribe `callback` to `queue`.

        Deliveries are wrapped in `Message` objects owned by this channel.

        Returns:
            Consumer tag, used with `cancel()`.
        """

        async def _on_delivery(raw: RawDelivery) -> None:
            await callback(Message.from_raw(raw, self))

        return await self._run(lambda ch: ch.consume(queue, _on_delivery, no_ack))

    async def cancel(self, consumer_tag: str) -> None:
        await self._run(lambda ch: ch.cancel(consumer_tag))

    async def ack(self, delivery: RawDelivery | None) -> None:
        if delivery is None:
            raise ValueError("Nothing to acknowledge: delivery is missing")
        await self._run(lambda ch: ch.ack(delivery))

    async def reject(self, delivery: RawDelivery | None, requeue: bool = False) -> None:
        if delivery is None:
            raise ValueError("Nothing to reject: delivery is missing")
        await self._run(lambda ch: ch.reject(delivery, requeue))

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        channel, self._channel = self._channel, None
        if channel is None or channel.is_closed:
            return
        try:
            await channel.close()
        except Exception as exc:
            raise ChannelError(f"Could not close channel: {exc!r}") from exc
        logger.debug("Closed channel %s", id(self))

    def invalidate(self) -> None:
        """Mark the channel closed without I/O (its connection is gone)."""
        self._closed = True
        self._channel = None

    async def _run(self, operation: Callable[[TransportChannel], Awaitable[T]]) -> T:
        channel = await self.open()
        self.last_used = time.monotonic()
        try:
            return await operation(channel)
        except Exception as exc:
            self._broken = True
            raise ChannelError(f"Channel operation failed: {exc!r}") from exc
        finally:
            self.last_used = time.monotonic()

    def __repr__(self) -> str:
        state = "closed" if self.is_closed else "open" if self.is_open else "idle"
        return f"<Channel {id(self):#x} {state}>"
