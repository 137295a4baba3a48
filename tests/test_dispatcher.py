"""Dispatcher tests against an in-memory connection."""

import asyncio

import pytest
import pytest_asyncio

from devicelink import mqtt_codec as codec
from devicelink.dispatcher import Dispatcher, to_payload
from devicelink.errors import PublishError, PublishErrorKind, SubscribeError, SubscribeErrorKind
from devicelink.models import Message
from devicelink.registry import TopicRegistry


class StubConnection:
    """Records every packet written; never fails."""

    def __init__(self):
        self.closed = False
        self.written = []

    async def write_packet(self, data):
        self.written.append(bytes(data))

    def publishes(self):
        out = []
        for packet in self.written:
            if packet[0] >> 4 == codec.PUBLISH:
                ((first_byte, body),) = codec.split_packets(bytearray(packet))
                out.append(codec.parse_publish(first_byte, body))
        return out


@pytest.fixture
def registry():
    return TopicRegistry()


@pytest.fixture
def conn():
    return StubConnection()


@pytest_asyncio.fixture
async def make_dispatcher(registry, cache, conn):
    writers = []

    def _make(online=True, writer=True, **kwargs):
        opts = dict(retry_interval=0.05, max_retries=2, queue_timeout=0.05, request_timeout=0.2)
        opts.update(kwargs)
        dispatcher = Dispatcher(registry, cache, **opts)
        if online:
            dispatcher.attach(conn)
        if writer:
            writers.append(asyncio.create_task(dispatcher.run_writer(conn)))
        return dispatcher

    yield _make
    for task in writers:
        task.cancel()
    await asyncio.gather(*writers, return_exceptions=True)


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(0.005)


def test_to_payload():
    assert to_payload("ON") == b"ON"
    assert to_payload(b"\x00\x01") == b"\x00\x01"
    assert to_payload(None) == b""
    with pytest.raises(TypeError):
        to_payload(42)


class TestPublishQos0:
    @pytest.mark.asyncio
    async def test_returns_once_queued(self, make_dispatcher, conn):
        dispatcher = make_dispatcher()

        ack = await dispatcher.publish("esp8266/led/control", "ON")

        assert ack.qos == 0 and ack.message_id is None
        await wait_until(lambda: conn.written)
        assert conn.publishes() == [("esp8266/led/control", b"ON", 0, False, False, 0)]

    @pytest.mark.asyncio
    async def test_offline(self, make_dispatcher):
        dispatcher = make_dispatcher(online=False)

        with pytest.raises(PublishError) as exc:
            await dispatcher.publish("a/b", "x")
        assert exc.value.kind is PublishErrorKind.NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_wildcard_topic_rejected(self, make_dispatcher):
        dispatcher = make_dispatcher()

        with pytest.raises(PublishError) as exc:
            await dispatcher.publish("a/+", "x")
        assert exc.value.kind is PublishErrorKind.INVALID_TOPIC

    @pytest.mark.asyncio
    async def test_queue_full(self, make_dispatcher):
        dispatcher = make_dispatcher(writer=False, queue_size=1)

        await dispatcher.publish("a/b", "first")
        with pytest.raises(PublishError) as exc:
            await dispatcher.publish("a/b", "second")
        assert exc.value.kind is PublishErrorKind.QUEUE_FULL


class TestPublishQos1:
    @pytest.mark.asyncio
    async def test_acknowledged(self, make_dispatcher, conn):
        dispatcher = make_dispatcher(retry_interval=1.0)

        task = asyncio.create_task(dispatcher.publish("a/b", "x", qos=1))
        await wait_until(lambda: conn.written)
        ((_, _, qos, _, dup, packet_id),) = conn.publishes()
        assert (qos, dup) == (1, False)

        await dispatcher.handle_packet(codec.PUBACK << 4, packet_id.to_bytes(2, "big"))
        ack = await task

        assert ack.message_id == packet_id
        assert ack.attempts == 1
        assert dispatcher.outstanding == 0

    @pytest.mark.asyncio
    async def test_unacknowledged_retries_then_times_out(self, make_dispatcher, conn):
        dispatcher = make_dispatcher(max_retries=2)

        with pytest.raises(PublishError) as exc:
            await dispatcher.publish("a/b", "x", qos=1)

        assert exc.value.kind is PublishErrorKind.DELIVERY_TIMEOUT
        assert exc.value.attempts == 3
        sent = conn.publishes()
        assert len(sent) == 3
        assert [dup for _, _, _, _, dup, _ in sent] == [False, True, True]
        assert len({pid for *_, pid in sent}) == 1
        assert dispatcher.outstanding == 0

    @pytest.mark.asyncio
    async def test_ack_after_retry(self, make_dispatcher, conn):
        dispatcher = make_dispatcher(max_retries=3)

        task = asyncio.create_task(dispatcher.publish("a/b", "x", qos=1))
        await wait_until(lambda: len(conn.written) == 2)
        packet_id = conn.publishes()[0][-1]
        await dispatcher.handle_packet(codec.PUBACK << 4, packet_id.to_bytes(2, "big"))

        ack = await task
        assert ack.attempts == 2

    @pytest.mark.asyncio
    async def test_cancel_stops_retries(self, make_dispatcher, conn):
        dispatcher = make_dispatcher(max_retries=5)

        task = asyncio.create_task(dispatcher.publish("a/b", "x", qos=1))
        await wait_until(lambda: conn.written)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.15)
        assert len(conn.written) == 1
        assert dispatcher.outstanding == 0

    @pytest.mark.asyncio
    async def test_fail_pending_closes_outstanding(self, make_dispatcher, conn):
        dispatcher = make_dispatcher(retry_interval=1.0)

        task = asyncio.create_task(dispatcher.publish("a/b", "x", qos=1))
        await wait_until(lambda: dispatcher.outstanding == 1)
        dispatcher.fail_pending("closing")

        with pytest.raises(PublishError) as exc:
            await task
        assert exc.value.kind is PublishErrorKind.SESSION_CLOSED

    @pytest.mark.asyncio
    async def test_packet_ids_not_reused_while_outstanding(self, make_dispatcher, conn):
        dispatcher = make_dispatcher(retry_interval=1.0)

        tasks = [asyncio.create_task(dispatcher.publish("a/b", str(i), qos=1)) for i in range(3)]
        await wait_until(lambda: dispatcher.outstanding == 3)
        await wait_until(lambda: len(conn.written) == 3)
        ids = [pid for *_, pid in conn.publishes()]
        assert len(set(ids)) == 3

        for pid in ids:
            await dispatcher.handle_packet(codec.PUBACK << 4, pid.to_bytes(2, "big"))
        acks = await asyncio.gather(*tasks)
        assert sorted(a.message_id for a in acks) == sorted(ids)


class TestRequests:
    @pytest.mark.asyncio
    async def test_subscribe_granted(self, make_dispatcher, conn):
        dispatcher = make_dispatcher()

        task = asyncio.create_task(dispatcher.send_subscribe("a/#", 1))
        await wait_until(lambda: conn.written)
        packet_id = int.from_bytes(conn.written[0][2:4], "big")
        await dispatcher.handle_packet(codec.SUBACK << 4, packet_id.to_bytes(2, "big") + b"\x01")

        assert await task == 1

    @pytest.mark.asyncio
    async def test_subscribe_rejected(self, make_dispatcher, conn):
        dispatcher = make_dispatcher()

        task = asyncio.create_task(dispatcher.send_subscribe("a/#", 0))
        await wait_until(lambda: conn.written)
        packet_id = int.from_bytes(conn.written[0][2:4], "big")
        await dispatcher.handle_packet(codec.SUBACK << 4, packet_id.to_bytes(2, "big") + b"\x80")

        with pytest.raises(SubscribeError) as exc:
            await task
        assert exc.value.kind is SubscribeErrorKind.REJECTED

    @pytest.mark.asyncio
    async def test_subscribe_without_suback_times_out(self, make_dispatcher):
        dispatcher = make_dispatcher()

        with pytest.raises(SubscribeError) as exc:
            await dispatcher.send_subscribe("a/#", 0)
        assert exc.value.kind is SubscribeErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_subscribe_offline(self, make_dispatcher):
        dispatcher = make_dispatcher(online=False)

        with pytest.raises(SubscribeError) as exc:
            await dispatcher.send_subscribe("a/#", 0)
        assert exc.value.kind is SubscribeErrorKind.NOT_CONNECTED


class TestInbound:
    @pytest.mark.asyncio
    async def test_each_consumer_called_once(self, make_dispatcher, registry, cache):
        dispatcher = make_dispatcher()
        seen = []
        await registry.subscribe("esp8266/#", seen.append)
        await registry.subscribe("esp8266/led/control", seen.append)

        delivered = await dispatcher.deliver(Message("esp8266/led/control", b"ON"))

        assert delivered == 1
        assert [m.payload for m in seen] == [b"ON"]
        assert cache.get("esp8266/led/control").payload == b"ON"

    @pytest.mark.asyncio
    async def test_failing_consumer_does_not_stop_others(self, make_dispatcher, registry):
        dispatcher = make_dispatcher()
        seen = []

        def broken(message):
            raise RuntimeError("boom")

        async def async_consumer(message):
            seen.append(message.topic)

        await registry.subscribe("a/+", broken)
        await registry.subscribe("a/+", async_consumer)

        await dispatcher.deliver(Message("a/b", b"x"))
        assert seen == ["a/b"]

    @pytest.mark.asyncio
    async def test_unmatched_message_still_cached(self, make_dispatcher, cache):
        dispatcher = make_dispatcher()

        assert await dispatcher.deliver(Message("lamp/state", b"1")) == 0
        assert cache.get("lamp/state").device_id == "lamp"

    @pytest.mark.asyncio
    async def test_qos1_publish_is_acknowledged(self, make_dispatcher, registry, conn):
        dispatcher = make_dispatcher()
        seen = []
        await registry.subscribe("a/b", seen.append, qos=1)

        packet = codec.build_publish("a/b", b"hi", qos=1, packet_id=9)
        ((first_byte, body),) = codec.split_packets(bytearray(packet))
        await dispatcher.handle_packet(first_byte, body)

        assert conn.written == [codec.build_puback(9)]
        assert seen[0].qos == 1

    @pytest.mark.asyncio
    async def test_malformed_publish_raises(self, make_dispatcher):
        dispatcher = make_dispatcher()

        with pytest.raises(ValueError):
            await dispatcher.handle_packet(0x30, b"\x00\x09abc")
