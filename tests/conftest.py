"""Pytest fixtures for the broker client.

This test suite runs against in-memory fakes of the transport collaborators
(transport factory, connection, channel) to keep tests deterministic and fast.
The fakes record every call so tests can assert on transport I/O.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator
from typing import Any

import pytest

from brokerkit.core.config import Settings
from brokerkit.schemas.entities import ExchangeOptions, PublishOptions, QueueInfo, QueueOptions
from brokerkit.services.connection import Connection
from brokerkit.transport.base import (
    ConnectionEvent,
    ConnectionListener,
    DeliveryCallback,
    EventKind,
    RawDelivery,
)

_tags = itertools.count(1)


class FakeChannel:
    """In-memory transport channel recording every call.

    Set `fail_with` to make the next operations raise that exception.
    """

    def __init__(self) -> None:
        self.is_closed = False
        self.calls: list[tuple[Any, ...]] = []
        self.acked: list[RawDelivery] = []
        self.rejected: list[tuple[RawDelivery, bool]] = []
        self.consumers: dict[str, tuple[str, DeliveryCallback]] = {}
        self.fail_with: Exception | None = None
        self.close_calls = 0

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def assert_queue(self, name: str, options: QueueOptions) -> QueueInfo:
        self._check()
        self.calls.append(("assert_queue", name, options))
        return QueueInfo(name=name or "amq.gen-fake")

    async def assert_exchange(self, name: str, type: str, options: ExchangeOptions) -> None:
        self._check()
        self.calls.append(("assert_exchange", name, type, options))

    async def check_queue(self, name: str) -> QueueInfo:
        self._check()
        self.calls.append(("check_queue", name))
        return QueueInfo(name=name, message_count=3, consumer_count=1)

    async def send_to_queue(self, queue: str, body: bytes, options: PublishOptions) -> None:
        self._check()
        self.calls.append(("send_to_queue", queue, body, options))

    async def publish(
        self, exchange: str, routing_key: str, body: bytes, options: PublishOptions
    ) -> None:
        self._check()
        self.calls.append(("publish", exchange, routing_key, body, options))

    async def consume(self, queue: str, on_delivery: DeliveryCallback, no_ack: bool) -> str:
        self._check()
        tag = f"ctag-{next(_tags)}"
        self.consumers[tag] = (queue, on_delivery)
        self.calls.append(("consume", queue, no_ack))
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        self._check()
        self.consumers.pop(consumer_tag, None)
        self.calls.append(("cancel", consumer_tag))

    async def ack(self, delivery: RawDelivery) -> None:
        self._check()
        self.acked.append(delivery)

    async def reject(self, delivery: RawDelivery, requeue: bool) -> None:
        self._check()
        self.rejected.append((delivery, requeue))

    async def close(self) -> None:
        self.close_calls += 1
        self.is_closed = True

    async def deliver(self, queue: str, raw: RawDelivery) -> None:
        """Push `raw` to every consumer of `queue`."""
        for consumer_queue, on_delivery in list(self.consumers.values()):
            if consumer_queue == queue:
                await on_delivery(raw)


class FakeConnection:
    """In-memory transport connection."""

    def __init__(self) -> None:
        self.is_closed = False
        self.listeners: list[ConnectionListener] = []
        self.channels: list[FakeChannel] = []
        self.close_calls = 0
        self.create_channel_error: Exception | None = None

    def add_listener(self, listener: ConnectionListener) -> None:
        self.listeners.append(listener)

    async def create_channel(self) -> FakeChannel:
        if self.create_channel_error is not None:
            raise self.create_channel_error
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.close_calls += 1
        self.is_closed = True
        for channel in self.channels:
            channel.is_closed = True

    def emit(self, event: ConnectionEvent) -> None:
        for listener in list(self.listeners):
            listener(event)

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the broker going away."""
        self.is_closed = True
        for channel in self.channels:
            channel.is_closed = True
        if error is not None:
            self.emit(ConnectionEvent(EventKind.ERROR, error=error))
        self.emit(ConnectionEvent(EventKind.CLOSE, error=error))


class FakeTransport:
    """Transport factory stub.

    Attributes:
        failures: Exceptions raised by the next connect() calls, in order.
        delay: Seconds each connect() takes.
    """

    connection_errors: tuple[type[BaseException], ...] = (ConnectionRefusedError,)

    def __init__(self) -> None:
        self.connect_calls: list[dict[str, Any]] = []
        self.connections: list[FakeConnection] = []
        self.failures: list[Exception] = []
        self.delay: float = 0.0

    async def connect(
        self, uri: str, *, heartbeat: int | None = None, **options: Any
    ) -> FakeConnection:
        self.connect_calls.append({"uri": uri, "heartbeat": heartbeat, **options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        connection = FakeConnection()
        self.connections.append(connection)
        return connection

    @property
    def current(self) -> FakeConnection:
        return self.connections[-1]

    def channel_calls(self, name: str) -> list[tuple[Any, ...]]:
        """All recorded calls named `name` across every channel ever opened."""
        return [
            call
            for connection in self.connections
            for channel in connection.channels
            for call in channel.calls
            if call[0] == name
        ]


@pytest.fixture()
def settings() -> Settings:
    """Settings with a small pool and fast retries."""
    return Settings(
        host="broker.test",
        port=5672,
        username="guest",
        password="guest",
        vhost="/",
        connect_timeout=1.0,
        heartbeat=30,
        interval_start=0.01,
        interval_step=0.01,
        pool_min_size=1,
        pool_max_size=2,
        pool_idle_timeout=30.0,
    )


@pytest.fixture()
def transport() -> FakeTransport:
    """Provide fake transport."""
    return FakeTransport()


@pytest.fixture()
async def connection(transport: FakeTransport, settings: Settings) -> AsyncIterator[Connection]:
    """Connection manager over the fake transport, closed after the test."""
    conn = Connection(transport, settings)
    yield conn
    await conn.close()


def raw_delivery(body: bytes = b"{}", **properties: Any) -> RawDelivery:
    """Build a raw delivery with an incrementing delivery tag."""
    tag = next(_tags)
    return RawDelivery(
        body=body,
        headers={"x-source": "tests"},
        properties={"content_encoding": "utf-8", "delivery_mode": 2, **properties},
        delivery_tag=tag,
        delivery_info={"exchange": "", "routing_key": "jobs", "redelivered": False},
    )
