"""
Received message entity and its acknowledgment state machine.

A message starts in RECEIVED and moves, exactly once, to one of the terminal
states ACK, REJECTED or REQUEUED. A second terminal operation raises
`MessageStateError` without touching the transport.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from brokerkit.core.exceptions import MessageStateError, PayloadDecodeError
from brokerkit.schemas.entities import PublishOptions
from brokerkit.transport.base import RawDelivery

if TYPE_CHECKING:
    from brokerkit.services.channel import Channel

logger = logging.getLogger(__name__)


class MessageState(str, enum.Enum):
    """Acknowledgment state of a received message."""

    RECEIVED = "RECEIVED"
    ACK = "ACK"
    REJECTED = "REJECTED"
    REQUEUED = "REQUEUED"


ACK_STATES = frozenset({MessageState.ACK, MessageState.REJECTED, MessageState.REQUEUED})


@dataclass(eq=False)
class Message:
    """
    One inbound delivery.

    Attributes:
        body: Decoded (text) body as received.
        channel: Channel that delivered the message. Referenced, not owned.
        headers: Application headers.
        properties: Basic properties of the delivery.
        delivery_tag: Broker-assigned delivery tag.
        delivery_info: Routing metadata.
        delivery_mode: Delivery mode the message was published with.
        correlation_id: Correlation id, if any.
        reply_to: Reply-to address, if any.
        expiration: Expiration, if any.
        raw: Raw transport delivery used for ack/reject.
    """

    body: Any
    channel: Channel | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    delivery_tag: Any = None
    delivery_info: dict[str, Any] = field(default_factory=dict)
    delivery_mode: int | None = None
    correlation_id: str | None = None
    reply_to: str | None = None
    expiration: Any = None
    raw: RawDelivery | None = None
    _state: MessageState = field(default=MessageState.RECEIVED, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.raw is None:
            self.raw = RawDelivery(body=self.encode(), delivery_tag=self.delivery_tag)

    @classmethod
    def from_raw(cls, raw: RawDelivery, channel: Channel | None = None) -> Message:
        """Build a message from a raw transport delivery."""
        properties = dict(raw.properties)
        return cls(
            body=raw.body.decode(properties.get("content_encoding") or "utf-8"),
            channel=channel,
            headers=dict(raw.headers),
            properties=properties,
            delivery_tag=raw.delivery_tag,
            delivery_info=dict(raw.delivery_info),
            delivery_mode=properties.get("delivery_mode"),
            correlation_id=properties.get("correlation_id"),
            reply_to=properties.get("reply_to"),
            expiration=properties.get("expiration"),
            raw=raw,
        )

    @property
    def state(self) -> MessageState:
        return self._state

    def is_acknowledged(self) -> bool:
        """Return True once the message is acknowledged, rejected or requeued."""
        return self._state in ACK_STATES

    def get_payload(self) -> Any:
        """
        Return the JSON-decoded body.

        Raises:
            PayloadDecodeError: If the body is not valid JSON.
        """
        body = self.body
        if isinstance(body, bytes | bytearray):
            body = body.decode("utf-8")
        if not isinstance(body, str):
            return body
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise PayloadDecodeError(f"Message body is not valid JSON: {exc}") from exc

    def encode(self) -> bytes:
        """Return the body as bytes suitable for re-publishing."""
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body).encode("utf-8")

    def get_publish_options(self) -> PublishOptions:
        """Return publish options carrying this message's metadata."""
        return PublishOptions(
            headers=dict(self.headers),
            correlation_id=self.correlation_id,
            delivery_mode=self.delivery_mode == 2,
            expiration=self.expiration,
            reply_to=self.reply_to,
        )

    async def ack(self, channel: Channel | None = None) -> None:
        """
        Acknowledge this message as processed, removing it from the queue.

        Raises:
            MessageStateError: If already acknowledged, rejected or requeued.
        """
        target = self._resolve_channel(channel)
        await self._transition(MessageState.ACK, lambda: target.ack(self.raw))

    async def reject(self, channel: Channel | None = None, *, requeue: bool = False) -> None:
        """
        Reject this message. Unless `requeue` is set the broker discards it.

        Raises:
            MessageStateError: If already acknowledged, rejected or requeued.
        """
        target = self._resolve_channel(channel)
        await self._transition(MessageState.REJECTED, lambda: target.reject(self.raw, requeue))

    async def requeue(self, channel: Channel | None = None) -> None:
        """
        Reject this message and put it back on the queue.

        Raises:
            MessageStateError: If already acknowledged, rejected or requeued.
        """
        if self.is_acknowledged():
            raise MessageStateError(
                f"Message already acknowledged with state: {self._state.value}", self._state
            )
        target = self._resolve_channel(channel)
        await self._transition(MessageState.REQUEUED, lambda: target.reject(self.raw, True))

    def _resolve_channel(self, channel: Channel | None) -> Channel:
        target = channel if channel is not None else self.channel
        if target is None:
            raise ValueError("No channel given and message has no owning channel")
        return target

    async def _transition(
        self, state: MessageState, operation: Callable[[], Awaitable[None]]
    ) -> None:
        if self.is_acknowledged():
            raise MessageStateError(
                f"Message already acknowledged with state: {self._state.value}", self._state
            )
        # Claimed before awaiting so an interleaved task sees the terminal state.
        self._state = state
        try:
            await operation()
        except BaseException:
            self._state = MessageState.RECEIVED
            raise
        logger.debug("Message %s -> %s", self.delivery_tag, state.value)
