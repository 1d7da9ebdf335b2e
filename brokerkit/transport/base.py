"""
Transport collaborator interfaces.

This module defines the narrow surface the broker client needs from a
wire-level transport:
- Transport factory (`connect(uri)`).
- Transport connection (channels, close, lifecycle notifications).
- Transport channel (declare, publish, consume, ack/reject).

Responsibilities:
- Keep the connection manager, pool and message code independent of the
  concrete client library (aio_pika, in-memory fakes in tests, ...).

Non-responsibilities:
- Frame encoding, heartbeats, method negotiation (owned by the transport).
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from brokerkit.schemas.entities import (
    ExchangeOptions,
    PublishOptions,
    QueueInfo,
    QueueOptions,
)


class EventKind(str, enum.Enum):
    """Lifecycle notifications emitted by a transport connection."""

    ERROR = "error"
    CLOSE = "close"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"


@dataclass(frozen=True)
class ConnectionEvent:
    """
    One lifecycle notification.

    Attributes:
        kind: Event kind.
        error: Exception attached to ERROR/CLOSE events, if any.
        reason: Free-form detail (e.g. the broker's blocked reason).
    """

    kind: EventKind
    error: BaseException | None = None
    reason: str | None = None


@dataclass
class RawDelivery:
    """
    Inbound delivery as handed over by the transport.

    Attributes:
        body: Message body bytes.
        headers: Application headers.
        properties: Basic properties (correlation_id, reply_to, expiration, ...).
        delivery_tag: Broker-assigned delivery tag.
        delivery_info: Routing metadata (exchange, routing_key, redelivered, consumer_tag).
        handle: Transport-specific object needed to ack/reject this delivery.
    """

    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    delivery_tag: Any = None
    delivery_info: dict[str, Any] = field(default_factory=dict)
    handle: Any = None


ConnectionListener = Callable[[ConnectionEvent], None]
DeliveryCallback = Callable[[RawDelivery], Awaitable[None]]


class TransportChannel(Protocol):
    """A logical channel on a transport connection."""

    @property
    def is_closed(self) -> bool: ...

    async def assert_queue(self, name: str, options: QueueOptions) -> QueueInfo: ...

    async def assert_exchange(self, name: str, type: str, options: ExchangeOptions) -> None: ...

    async def check_queue(self, name: str) -> QueueInfo: ...

    async def send_to_queue(self, queue: str, body: bytes, options: PublishOptions) -> None: ...

    async def publish(
        self, exchange: str, routing_key: str, body: bytes, options: PublishOptions
    ) -> None: ...

    async def consume(self, queue: str, on_delivery: DeliveryCallback, no_ack: bool) -> str: ...

    async def cancel(self, consumer_tag: str) -> None: ...

    async def ack(self, delivery: RawDelivery) -> None: ...

    async def reject(self, delivery: RawDelivery, requeue: bool) -> None: ...

    async def close(self) -> None: ...


class TransportConnection(Protocol):
    """
    A physical connection to the broker.

    Listeners are called synchronously, in registration order, from the
    transport's own callback context. They must not block.
    """

    @property
    def is_closed(self) -> bool: ...

    def add_listener(self, listener: ConnectionListener) -> None: ...

    async def create_channel(self) -> TransportChannel: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    """
    Transport factory.

    Attributes:
        connection_errors: Exception types that denote a transient connection
            failure worth retrying.
    """

    connection_errors: tuple[type[BaseException], ...]

    async def connect(
        self, uri: str, *, heartbeat: int | None = None, **options: Any
    ) -> TransportConnection: ...
