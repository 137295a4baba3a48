"""Routing of inbound packets and serialization of outbound ones.

All outbound packets that callers originate (PUBLISH, SUBSCRIBE,
UNSUBSCRIBE) pass through one bounded queue that a single writer task drains
onto the live connection. QoS 1 publishes wait for their PUBACK in the
outstanding-ack table and are resent with the DUP flag until acknowledged or
out of retries.
"""

import asyncio
import inspect
import logging
from typing import Dict, Optional

from .errors import (
    PublishError, PublishErrorKind, SubscribeError, SubscribeErrorKind,
)
from .metrics import METRICS
from .models import Message, PublishAck, utc_now
from .mqtt_codec import (
    MAX_PACKET_ID, PINGRESP, PUBACK, PUBLISH, SUBACK, SUBACK_FAILURE, UNSUBACK,
    build_puback, build_publish, build_subscribe, build_unsubscribe,
    parse_packet_id, parse_publish, parse_suback,
)
from .registry import TopicRegistry
from .state import DEVICE_STATE, DeviceStateCache
from .topics import validate_topic
from .transport import Connection

logger = logging.getLogger(__name__)


def to_payload(value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"Payload must be bytes or str, not {type(value).__name__}")


class Dispatcher:
    def __init__(self, registry: TopicRegistry, cache: DeviceStateCache = DEVICE_STATE,
                 retry_interval: float = 5.0, max_retries: int = 3,
                 queue_size: int = 100, queue_timeout: float = 1.0,
                 request_timeout: float = 10.0):
        self.registry = registry
        self.cache = cache
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self.queue_timeout = queue_timeout
        self.request_timeout = request_timeout

        self.connection: Optional[Connection] = None
        self.last_delivery = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        # packet id -> future resolved by PUBACK
        self._inflight: Dict[int, asyncio.Future] = {}
        # packet id -> future resolved by SUBACK / UNSUBACK
        self._requests: Dict[int, asyncio.Future] = {}
        self._last_packet_id = 0

    # ---------------- connection lifecycle ----------------

    @property
    def online(self) -> bool:
        return self.connection is not None and not self.connection.closed

    def attach(self, connection: Connection) -> None:
        self.connection = connection

    def detach(self) -> None:
        self.connection = None

    async def run_writer(self, connection: Connection) -> None:
        """Drain the outbound queue onto ``connection`` until it fails."""
        while True:
            packet = await self._queue.get()
            try:
                await connection.write_packet(packet)
            finally:
                self._queue.task_done()

    def fail_pending(self, detail: str) -> None:
        """Fail every outstanding publish and request, and drop queued packets."""
        for packet_id, fut in list(self._inflight.items()):
            if not fut.done():
                fut.set_exception(PublishError(PublishErrorKind.SESSION_CLOSED, detail, packet_id))
        for fut in list(self._requests.values()):
            if not fut.done():
                fut.set_exception(SubscribeError(SubscribeErrorKind.NOT_CONNECTED, detail))
        self._inflight.clear()
        self._requests.clear()

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.info("Dropped %d queued packets: %s", dropped, detail)

    @property
    def outstanding(self) -> int:
        return len(self._inflight)

    def _next_packet_id(self) -> int:
        for _ in range(MAX_PACKET_ID):
            self._last_packet_id = self._last_packet_id % MAX_PACKET_ID + 1
            pid = self._last_packet_id
            if pid not in self._inflight and pid not in self._requests:
                return pid
        raise RuntimeError("No free packet identifiers")

    async def _enqueue(self, packet: bytes) -> bool:
        try:
            await asyncio.wait_for(self._queue.put(packet), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ---------------- outbound ----------------

    async def publish(self, topic: str, payload, qos: int = 0, retained: bool = False) -> PublishAck:
        try:
            validate_topic(topic)
        except ValueError as e:
            raise PublishError(PublishErrorKind.INVALID_TOPIC, str(e))
        if qos not in (0, 1):
            raise PublishError(PublishErrorKind.INVALID_QOS, f"Unsupported QoS {qos} for {topic}")
        payload = to_payload(payload)
        if not self.online:
            raise PublishError(PublishErrorKind.NOT_CONNECTED, f"Cannot publish to {topic}: not connected")

        if qos == 0:
            if not await self._enqueue(build_publish(topic, payload, 0, retained)):
                METRICS.publish_failures_total += 1
                raise PublishError(PublishErrorKind.QUEUE_FULL, f"Outbound queue full for {self.queue_timeout}s")
            METRICS.publishes_total += 1
            return PublishAck(topic=topic, qos=0)

        packet_id = self._next_packet_id()
        acked = asyncio.get_running_loop().create_future()
        self._inflight[packet_id] = acked
        try:
            if not await self._enqueue(build_publish(topic, payload, 1, retained, packet_id)):
                METRICS.publish_failures_total += 1
                raise PublishError(PublishErrorKind.QUEUE_FULL,
                                   f"Outbound queue full for {self.queue_timeout}s", packet_id)
            attempts = 1
            retries = 0
            while True:
                try:
                    await asyncio.wait_for(asyncio.shield(acked), timeout=self.retry_interval)
                    METRICS.publishes_total += 1
                    return PublishAck(topic=topic, qos=1, message_id=packet_id, attempts=attempts)
                except asyncio.TimeoutError:
                    pass

                if retries >= self.max_retries:
                    METRICS.publish_failures_total += 1
                    raise PublishError(
                        PublishErrorKind.DELIVERY_TIMEOUT,
                        f"No PUBACK for message {packet_id} on {topic} after {retries} retries",
                        packet_id, attempts,
                    )
                retries += 1
                METRICS.publish_retries_total += 1
                logger.warning("Resending message %d to %s (retry %d/%d)",
                               packet_id, topic, retries, self.max_retries)
                if await self._enqueue(build_publish(topic, payload, 1, retained, packet_id, dup=True)):
                    attempts += 1
                else:
                    logger.warning("Outbound queue full, retry %d of message %d not sent", retries, packet_id)
        finally:
            self._inflight.pop(packet_id, None)

    async def _request(self, packet_id: int, packet: bytes):
        fut = asyncio.get_running_loop().create_future()
        self._requests[packet_id] = fut
        try:
            if not await self._enqueue(packet):
                raise asyncio.TimeoutError
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        finally:
            self._requests.pop(packet_id, None)

    async def send_subscribe(self, topic_filter: str, qos: int) -> int:
        if not self.online:
            raise SubscribeError(SubscribeErrorKind.NOT_CONNECTED, f"Cannot subscribe to {topic_filter}: not connected")
        packet_id = self._next_packet_id()
        try:
            codes = await self._request(packet_id, build_subscribe(packet_id, [(topic_filter, qos)]))
        except asyncio.TimeoutError:
            raise SubscribeError(SubscribeErrorKind.TIMEOUT, f"No SUBACK for {topic_filter}")
        if not codes or codes[0] == SUBACK_FAILURE:
            raise SubscribeError(SubscribeErrorKind.REJECTED, f"Broker refused subscription to {topic_filter}")
        METRICS.subscribes_total += 1
        return codes[0]

    async def send_unsubscribe(self, topic_filter: str) -> None:
        if not self.online:
            # nothing held upstream while offline; a later reconnect will not reassert it
            logger.debug("Skipping UNSUBSCRIBE for %s while offline", topic_filter)
            return
        packet_id = self._next_packet_id()
        try:
            await self._request(packet_id, build_unsubscribe(packet_id, [topic_filter]))
        except asyncio.TimeoutError:
            raise SubscribeError(SubscribeErrorKind.TIMEOUT, f"No UNSUBACK for {topic_filter}")
        METRICS.unsubscribes_total += 1

    # ---------------- inbound ----------------

    async def handle_packet(self, first_byte: int, body: bytes) -> None:
        """Process one packet from the broker. Raises ``ValueError`` on malformed input."""
        packet_type = first_byte >> 4

        if packet_type == PUBLISH:
            topic, payload, qos, retain, dup, packet_id = parse_publish(first_byte, body)
            if qos == 1:
                await self.connection.write_packet(build_puback(packet_id))
            elif qos == 2:
                logger.warning("Ignoring QoS 2 message on %s: only QoS 0/1 are subscribed", topic)
                return
            await self.deliver(Message(topic=topic, payload=payload, qos=qos, retained=retain, dup=dup))

        elif packet_type == PUBACK:
            packet_id = parse_packet_id(body)
            fut = self._inflight.get(packet_id)
            if fut is None:
                logger.debug("PUBACK for unknown message %d", packet_id)
            elif not fut.done():
                fut.set_result(None)

        elif packet_type == SUBACK:
            packet_id, codes = parse_suback(body)
            self._resolve_request(packet_id, codes)

        elif packet_type == UNSUBACK:
            self._resolve_request(parse_packet_id(body), None)

        elif packet_type == PINGRESP:
            pass

        else:
            logger.warning("Unexpected packet type %d from broker", packet_type)

    def _resolve_request(self, packet_id: int, result) -> None:
        fut = self._requests.get(packet_id)
        if fut is None:
            logger.debug("Acknowledgment for unknown request %d", packet_id)
        elif not fut.done():
            fut.set_result(result)

    async def deliver(self, message: Message) -> int:
        """Update the cache and hand ``message`` to every matching consumer once."""
        consumers = self.registry.match(message.topic)
        self.cache.update(message)
        self.last_delivery = utc_now()
        METRICS.messages_in_total += 1

        for consumer in consumers:
            try:
                result = consumer(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Consumer %r failed on message for %s", consumer, message.topic)
        return len(consumers)
