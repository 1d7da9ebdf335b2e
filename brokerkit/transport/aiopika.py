"""
aio_pika-based transport implementation.

Notes:
    - Uses plain `aio_pika.connect`, not `connect_robust`: reconnection and
      channel revival are owned by `brokerkit.services.connection.Connection`.
    - aio_pika reports connection loss through `close_callbacks`; a close
      carrying an exception is emitted as ERROR followed by CLOSE.
    - aio_pika does not expose connection.blocked notifications, so BLOCKED and
      UNBLOCKED are never emitted by this transport.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPConnectionError

from brokerkit.schemas.entities import ExchangeOptions, PublishOptions, QueueInfo, QueueOptions
from brokerkit.transport.base import (
    ConnectionEvent,
    ConnectionListener,
    DeliveryCallback,
    EventKind,
    RawDelivery,
)

if TYPE_CHECKING:
    from aio_pika.abc import (
        AbstractChannel,
        AbstractConnection,
        AbstractExchange,
        AbstractIncomingMessage,
        AbstractQueue,
    )

logger = logging.getLogger(__name__)


def to_raw_delivery(message: AbstractIncomingMessage) -> RawDelivery:
    """Map an aio_pika incoming message onto a transport-neutral delivery."""
    delivery_mode = message.delivery_mode
    return RawDelivery(
        body=message.body,
        headers=dict(message.headers or {}),
        properties={
            "content_type": message.content_type,
            "content_encoding": message.content_encoding,
            "correlation_id": message.correlation_id,
            "reply_to": message.reply_to,
            "expiration": message.expiration,
            "message_id": message.message_id,
            "timestamp": message.timestamp,
            "type": message.type,
            "app_id": message.app_id,
            "priority": message.priority,
            "delivery_mode": int(delivery_mode) if delivery_mode is not None else None,
        },
        delivery_tag=message.delivery_tag,
        delivery_info={
            "exchange": message.exchange,
            "routing_key": message.routing_key,
            "redelivered": message.redelivered,
            "consumer_tag": message.consumer_tag,
        },
        handle=message,
    )


def to_pika_message(body: bytes, options: PublishOptions) -> aio_pika.Message:
    """Build an aio_pika message from a body and publish options."""
    return aio_pika.Message(
        body=body,
        headers=options.headers or None,
        content_type=options.content_type,
        content_encoding=options.content_encoding,
        delivery_mode=(
            aio_pika.DeliveryMode.PERSISTENT
            if options.delivery_mode
            else aio_pika.DeliveryMode.NOT_PERSISTENT
        ),
        priority=options.priority,
        correlation_id=options.correlation_id,
        reply_to=options.reply_to,
        expiration=options.expiration,
        message_id=options.message_id,
    )


def _queue_info(queue: AbstractQueue) -> QueueInfo:
    result = queue.declaration_result
    return QueueInfo(
        name=queue.name,
        message_count=result.message_count or 0,
        consumer_count=result.consumer_count or 0,
    )


class AioPikaChannel:
    """TransportChannel over an `aio_pika` channel."""

    def __init__(self, channel: AbstractChannel) -> None:
        self._channel = channel
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._consumers: dict[str, AbstractQueue] = {}

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed

    async def assert_queue(self, name: str, options: QueueOptions) -> QueueInfo:
        queue = await self._channel.declare_queue(
            name or None,
            durable=options.durable,
            exclusive=options.exclusive,
            auto_delete=options.auto_delete,
            arguments=options.arguments or None,
        )
        self._queues[queue.name] = queue
        return _queue_info(queue)

    async def assert_exchange(self, name: str, type: str, options: ExchangeOptions) -> None:
        exchange = await self._channel.declare_exchange(
            name,
            type,
            durable=options.durable,
            auto_delete=options.auto_delete,
            internal=options.internal,
            arguments=options.arguments or None,
        )
        self._exchanges[name] = exchange

    async def check_queue(self, name: str) -> QueueInfo:
        queue = await self._channel.declare_queue(name, passive=True)
        return _queue_info(queue)

    async def send_to_queue(self, queue: str, body: bytes, options: PublishOptions) -> None:
        await self._channel.default_exchange.publish(
            to_pika_message(body, options),
            routing_key=queue,
        )

    async def publish(
        self, exchange: str, routing_key: str, body: bytes, options: PublishOptions
    ) -> None:
        target = await self._get_exchange(exchange)
        await target.publish(to_pika_message(body, options), routing_key=routing_key)

    async def consume(self, queue: str, on_delivery: DeliveryCallback, no_ack: bool) -> str:
        target = self._queues.get(queue)
        if target is None:
            target = await self._channel.get_queue(queue, ensure=False)
            self._queues[queue] = target

        async def _on_message(message: AbstractIncomingMessage) -> None:
            await on_delivery(to_raw_delivery(message))

        consumer_tag = await target.consume(_on_message, no_ack=no_ack)
        self._consumers[consumer_tag] = target
        return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        queue = self._consumers.pop(consumer_tag, None)
        if queue is not None:
            await queue.cancel(consumer_tag)

    async def ack(self, delivery: RawDelivery) -> None:
        if delivery.handle is not None:
            await delivery.handle.ack()
            return
        # Deliveries rebuilt from a bare tag are acked on the underlying channel.
        underlay = await self._channel.get_underlay_channel()
        await underlay.basic_ack(delivery.delivery_tag)

    async def reject(self, delivery: RawDelivery, requeue: bool) -> None:
        if delivery.handle is not None:
            await delivery.handle.reject(requeue=requeue)
            return
        underlay = await self._channel.get_underlay_channel()
        await underlay.basic_reject(delivery.delivery_tag, requeue=requeue)

    async def close(self) -> None:
        if not self._channel.is_closed:
            await self._channel.close()

    async def _get_exchange(self, name: str) -> AbstractExchange:
        if not name:
            return self._channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._channel.get_exchange(name, ensure=False)
            self._exchanges[name] = exchange
        return exchange


class AioPikaConnection:
    """TransportConnection over an `aio_pika` connection."""

    def __init__(self, connection: AbstractConnection) -> None:
        self._connection = connection
        self._listeners: list[ConnectionListener] = []
        connection.close_callbacks.add(self._on_close)

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    async def create_channel(self) -> AioPikaChannel:
        channel = await self._connection.channel()
        return AioPikaChannel(channel)

    async def close(self) -> None:
        await self._connection.close()

    def _on_close(self, sender: Any, exc: BaseException | None = None) -> None:
        if exc is not None:
            self._emit(ConnectionEvent(EventKind.ERROR, error=exc))
        self._emit(ConnectionEvent(EventKind.CLOSE, error=exc))

    def _emit(self, event: ConnectionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


class AioPikaTransport:
    """Transport factory backed by `aio_pika.connect`."""

    connection_errors: tuple[type[BaseException], ...] = (
        AMQPConnectionError,
        ConnectionError,
        OSError,
    )

    async def connect(
        self, uri: str, *, heartbeat: int | None = None, **options: Any
    ) -> AioPikaConnection:
        kwargs = dict(options)
        if heartbeat is not None:
            kwargs["heartbeat"] = heartbeat
        logger.debug("aio_pika connect", extra={"host_uri": _redact(uri)})
        connection = await aio_pika.connect(uri, **kwargs)
        return AioPikaConnection(connection)


def _redact(uri: str) -> str:
    scheme, sep, rest = uri.partition("://")
    if "@" not in rest:
        return uri
    credentials, _, location = rest.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{scheme}{sep}{user}:***@{location}"
