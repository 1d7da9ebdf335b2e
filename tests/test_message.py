"""Tests for the message acknowledgment state machine."""

from __future__ import annotations

import pytest
from faker import Faker

from brokerkit.core.exceptions import ChannelError, MessageStateError, PayloadDecodeError
from brokerkit.services.channel import Channel
from brokerkit.services.connection import Connection
from brokerkit.services.message import Message, MessageState
from tests.conftest import FakeChannel, raw_delivery


@pytest.fixture()
def fake_channel() -> FakeChannel:
    """Provide fake transport channel."""
    return FakeChannel()


@pytest.fixture()
def channel(connection: Connection, fake_channel: FakeChannel) -> Channel:
    """Channel bound to the fake transport channel."""
    return Channel(connection, fake_channel)


def transport_calls(fake: FakeChannel) -> int:
    return len(fake.acked) + len(fake.rejected)


async def test_ack_then_reject_fails_without_transport_call(
    channel: Channel, fake_channel: FakeChannel
) -> None:
    raw = raw_delivery(b'{"x":1}', correlation_id="abc")
    message = Message.from_raw(raw, channel)

    assert message.get_payload() == {"x": 1}
    assert message.correlation_id == "abc"

    await message.ack(channel)
    with pytest.raises(MessageStateError) as excinfo:
        await message.reject(channel, requeue=False)

    assert excinfo.value.state is MessageState.ACK
    assert fake_channel.acked == [raw]
    assert fake_channel.rejected == []


OPERATIONS = {
    "ack": lambda message: message.ack(),
    "reject": lambda message: message.reject(),
    "reject_requeue": lambda message: message.reject(requeue=True),
    "requeue": lambda message: message.requeue(),
}


@pytest.mark.parametrize("first", list(OPERATIONS))
@pytest.mark.parametrize("second", list(OPERATIONS))
async def test_second_terminal_operation_fails(
    first: str, second: str, channel: Channel, fake_channel: FakeChannel
) -> None:
    message = Message.from_raw(raw_delivery(), channel)

    await OPERATIONS[first](message)
    with pytest.raises(MessageStateError):
        await OPERATIONS[second](message)

    assert transport_calls(fake_channel) == 1
    assert message.is_acknowledged()


@pytest.mark.parametrize(
    ("operation", "state", "requeue"),
    [
        ("reject", MessageState.REJECTED, False),
        ("reject_requeue", MessageState.REJECTED, True),
        ("requeue", MessageState.REQUEUED, True),
    ],
)
async def test_reject_variants(
    operation: str,
    state: MessageState,
    requeue: bool,
    channel: Channel,
    fake_channel: FakeChannel,
) -> None:
    message = Message.from_raw(raw_delivery(), channel)

    await OPERATIONS[operation](message)

    assert message.state is state
    assert fake_channel.rejected == [(message.raw, requeue)]


async def test_requeue_after_ack_fails_fast(fake_channel: FakeChannel) -> None:
    class Exploding:
        async def reject(self, delivery: object, requeue: bool = False) -> None:
            raise AssertionError("transport must not be called")

    message = Message(body="{}", channel=None, delivery_tag=1)
    await message.ack(Channel(None, fake_channel))  # type: ignore[arg-type]

    with pytest.raises(MessageStateError):
        await message.requeue(Exploding())  # type: ignore[arg-type]


async def test_failed_transport_call_keeps_message_received(
    channel: Channel, fake_channel: FakeChannel
) -> None:
    message = Message.from_raw(raw_delivery(), channel)
    fake_channel.fail_with = RuntimeError("channel closed by broker")

    with pytest.raises(ChannelError):
        await message.ack()

    assert message.state is MessageState.RECEIVED
    assert not message.is_acknowledged()


async def test_ack_uses_owning_channel(channel: Channel, fake_channel: FakeChannel) -> None:
    message = Message.from_raw(raw_delivery(), channel)
    await message.ack()
    assert fake_channel.acked == [message.raw]
    assert message.state is MessageState.ACK


async def test_ack_without_any_channel() -> None:
    message = Message(body="{}")
    with pytest.raises(ValueError):
        await message.ack()
    assert message.state is MessageState.RECEIVED


async def test_payload_is_readable_after_ack(channel: Channel) -> None:
    message = Message.from_raw(raw_delivery(b'{"items": [1, 2]}'), channel)
    await message.ack()

    assert message.get_payload() == {"items": [1, 2]}
    assert message.get_payload() == {"items": [1, 2]}


def test_invalid_json_payload() -> None:
    message = Message.from_raw(raw_delivery(b"not json"))
    with pytest.raises(PayloadDecodeError):
        message.get_payload()


def test_from_raw_maps_fields(faker: Faker) -> None:
    reply_to = faker.slug()
    raw = raw_delivery(
        b'{"a": 1}', correlation_id="cid-1", reply_to=reply_to, expiration=60
    )

    message = Message.from_raw(raw)

    assert message.body == '{"a": 1}'
    assert message.headers == {"x-source": "tests"}
    assert message.delivery_tag == raw.delivery_tag
    assert message.delivery_info["routing_key"] == "jobs"
    assert message.reply_to == reply_to
    assert message.expiration == 60
    assert message.delivery_mode == 2
    assert message.raw is raw
    assert message.state is MessageState.RECEIVED


def test_encode_and_publish_options() -> None:
    message = Message.from_raw(
        raw_delivery(b'{"a": 1}', correlation_id="cid-2", reply_to="replies", expiration=30)
    )

    assert message.encode() == b'{"a": 1}'
    assert message.encode() == message.encode()

    options = message.get_publish_options()
    assert options.correlation_id == "cid-2"
    assert options.reply_to == "replies"
    assert options.expiration == 30
    assert options.delivery_mode is True
    assert options.headers == {"x-source": "tests"}


def test_encode_structured_body() -> None:
    message = Message(body={"k": "v"})
    assert message.encode() == b'{"k": "v"}'
    assert message.get_payload() == {"k": "v"}
    assert message.raw is not None and message.raw.body == b'{"k": "v"}'
