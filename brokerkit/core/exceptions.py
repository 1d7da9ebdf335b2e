"""Exceptions raised by the broker client."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from brokerkit.services.message import MessageState


class BrokerError(Exception):
    """Base class for all broker client errors."""


class BrokerConnectionError(BrokerError):
    """Raised when the broker connection is unusable."""


class ConnectionClosedError(BrokerConnectionError):
    """Raised when a connection is required but the manager was explicitly closed."""


class ChannelError(BrokerError):
    """Raised when an operation on a channel fails."""


class ChannelClosedError(ChannelError):
    """Raised when a channel is used after it was closed or its connection was lost."""


class ChannelPoolError(BrokerError):
    """Raised on channel pool misuse, e.g. releasing a channel twice."""


class PoolClosedError(ChannelPoolError):
    """Raised when acquiring from, or waiting on, a closed pool."""


class MessageStateError(BrokerError):
    """Raised when a message has already been acknowledged, rejected or requeued."""

    def __init__(self, message: str, state: MessageState | None = None) -> None:
        self.state = state
        super().__init__(message)


class PayloadDecodeError(BrokerError):
    """Raised when a message body cannot be decoded."""
