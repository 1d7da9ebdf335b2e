"""Message consumer that dispatches deliveries to registered callbacks."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from brokerkit.services.channel import Channel, MessageCallback
from brokerkit.services.message import Message

if TYPE_CHECKING:
    from brokerkit.services.connection import Connection

logger = logging.getLogger(__name__)


class Consumer:
    """
    Consume messages from one or more queues.

    Each delivery is wrapped in a `Message` and passed to every registered
    callback in order. Acknowledging is up to the callbacks unless `no_ack`
    is set.

    While consuming, the consumer registers itself with its connection and
    resubscribes after the connection is revived.
    """

    def __init__(
        self,
        channel: Channel,
        queues: str | Iterable[str],
        *,
        callbacks: Iterable[MessageCallback] | None = None,
        no_ack: bool = False,
    ) -> None:
        self.channel = channel
        self.queues = [queues] if isinstance(queues, str) else list(queues)
        self.callbacks: list[MessageCallback] = list(callbacks or [])
        self.no_ack = no_ack
        self._consumer_tags: dict[str, str] = {}

    @property
    def consuming(self) -> bool:
        return bool(self._consumer_tags)

    def register_callback(self, callback: MessageCallback) -> None:
        self.callbacks.append(callback)

    async def consume(self) -> list[str]:
        """Start consuming from every queue. Already subscribed queues are skipped."""
        for queue in self.queues:
            if queue in self._consumer_tags:
                continue
            self._consumer_tags[queue] = await self.channel.consume(
                queue, self.receive, no_ack=self.no_ack
            )
            logger.debug("Consuming from %s", queue)
        self.channel.connection.add_revive_hook(self._on_revive)
        return list(self._consumer_tags.values())

    async def receive(self, message: Message) -> None:
        """Dispatch `message` to the registered callbacks."""
        if not self.callbacks:
            raise NotImplementedError("Consumer does not have any callbacks")
        for callback in self.callbacks:
            await callback(message)

    async def cancel(self) -> None:
        """Stop consuming from all queues."""
        self.channel.connection.remove_revive_hook(self._on_revive)
        tags, self._consumer_tags = self._consumer_tags, {}
        if self.channel.is_closed:
            return
        for tag in tags.values():
            await self.channel.cancel(tag)

    async def revive(self) -> None:
        """Reopen the channel on the current connection and resubscribe if it was consuming."""
        was_consuming = self.consuming
        if self.channel.revivable:
            await self.channel.revive()
        else:
            self.channel = self.channel.connection.channel()
        self._consumer_tags = {}
        if was_consuming:
            await self.consume()

    async def __aenter__(self) -> Consumer:
        await self.consume()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cancel()

    async def _on_revive(self, connection: Connection) -> None:
        logger.info("Resubscribing consumer to %s", ", ".join(self.queues))
        await self.revive()
