"""Message producer built on a channel."""

from __future__ import annotations

import json
import uuid
from typing import Any

from brokerkit.schemas.entities import ExchangeOptions, PublishOptions
from brokerkit.services.channel import Channel
from brokerkit.services.message import Message


class Producer:
    """
    Publishes JSON payloads to an exchange.

    Args:
        channel: Channel used for publishing.
        exchange: Exchange name; the empty string is the default exchange,
            where the routing key is the queue name.
        routing_key: Default routing key.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        exchange: str = "",
        routing_key: str | None = None,
    ) -> None:
        self.channel = channel
        self.exchange = exchange
        self.routing_key = routing_key

    async def declare(
        self, type: str = "direct", options: ExchangeOptions | None = None
    ) -> None:
        """Declare the producer's exchange. No-op for the default exchange."""
        if self.exchange:
            await self.channel.assert_exchange(self.exchange, type, options)

    async def publish(
        self,
        payload: Any,
        routing_key: str | None = None,
        options: PublishOptions | None = None,
    ) -> PublishOptions:
        """
        Publish `payload` as JSON.

        Returns:
            The options the message was published with (carrying its
            correlation id).

        Raises:
            ValueError: If no routing key is given and no default is set.
        """
        key = routing_key if routing_key is not None else self.routing_key
        if key is None:
            raise ValueError("routing_key is required")
        if options is None:
            options = PublishOptions(correlation_id=str(uuid.uuid4()))
        body = json.dumps(payload).encode("utf-8")
        await self.channel.publish(self.exchange, key, body, options)
        return options

    async def reply(self, message: Message, payload: Any) -> PublishOptions:
        """Publish `payload` to `message.reply_to` with its correlation id."""
        if not message.reply_to:
            raise ValueError("Message has no reply_to address")
        options = PublishOptions(correlation_id=message.correlation_id)
        body = json.dumps(payload).encode("utf-8")
        await self.channel.send_to_queue(message.reply_to, body, options)
        return options
