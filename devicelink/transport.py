"""Broker connection: TCP/TLS stream, CONNECT handshake, framed packet I/O."""

import asyncio
import logging
import random
import ssl
import time
from collections import deque

from .config import LOG_PACKET_TIMES, BrokerConfig
from .errors import ConnectError, ConnectErrorKind, ConnectionLost
from .metrics import METRICS
from .mqtt_codec import (
    CONNACK, CONNACK_CODES, PACKET_NAMES,
    build_connect, build_disconnect, parse_connack, split_packets,
)

logger = logging.getLogger(__name__)

AUTH_RETURN_CODES = (4, 5)
# "server unavailable" is worth another try
TRANSIENT_RETURN_CODES = (3,)


class RetryPolicy:
    """Exponential backoff with full jitter.

    The delay for attempt ``n`` (0-indexed) is drawn uniformly from
    ``[0, min(max_delay, base_delay * 2**n)]``.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0):
        self.base_delay = base_delay
        self.max_delay = max_delay

    def ceiling(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    def get_delay(self, attempt: int) -> float:
        return random.uniform(0, self.ceiling(attempt))

    def __repr__(self) -> str:
        return f"RetryPolicy(base_delay={self.base_delay}s, max_delay={self.max_delay}s)"


class Connection:
    """One live stream to the broker.

    ``write_packet`` holds a lock across write+drain so a packet is never
    interleaved with another writer's bytes. ``read_packet`` must only be
    called from a single task.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")
        self.session_present = False
        self.last_rx = time.monotonic()
        self.closed = False
        self._buf = bytearray()
        self._packets = deque()
        self._write_lock = asyncio.Lock()

    async def write_packet(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionLost("Connection already closed")
        t0 = time.perf_counter()
        async with self._write_lock:
            try:
                self.writer.write(data)
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                raise ConnectionLost(f"Write failed: {e}") from e
        METRICS.bytes_out_total += len(data)
        _log_packet("out", data[0], self.peer, (time.perf_counter() - t0) * 1000)

    async def read_packet(self):
        """Return the next ``(first_byte, body)`` from the broker."""
        while not self._packets:
            try:
                chunk = await self.reader.read(4096)
            except (ConnectionError, OSError) as e:
                raise ConnectionLost(f"Read failed: {e}") from e
            if not chunk:
                raise ConnectionLost("Broker closed the connection")

            METRICS.bytes_in_total += len(chunk)
            self._buf.extend(chunk)
            try:
                self._packets.extend(split_packets(self._buf))
            except ValueError as e:
                raise ConnectionLost(f"Malformed packet from broker: {e}") from e

        self.last_rx = time.monotonic()
        return self._packets.popleft()

    async def close(self, send_disconnect: bool = False) -> None:
        if self.closed:
            return
        if send_disconnect:
            try:
                await self.write_packet(build_disconnect())
            except ConnectionLost as e:
                logger.debug("DISCONNECT not delivered to %s: %s", self.peer, e)
        self.closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error closing connection to %s: %s", self.peer, e)


def _log_packet(direction: str, first_byte: int, peer, ms: float):
    if LOG_PACKET_TIMES:
        name = PACKET_NAMES.get(first_byte >> 4, f"TYPE_{first_byte >> 4}")
        logger.debug("[%s %s] peer=%s cycle_ms=%.3f", direction, name, peer, ms)


async def connect(config: BrokerConfig) -> Connection:
    """Open the stream and complete the CONNECT/CONNACK handshake."""
    ssl_ctx = ssl.create_default_context() if config.tls else None
    target = f"{config.host}:{config.port}"
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(config.host, config.port, ssl=ssl_ctx),
            timeout=config.connect_timeout,
        )
    except asyncio.TimeoutError:
        raise ConnectError(ConnectErrorKind.TIMEOUT, f"Timed out connecting to {target}")
    except OSError as e:
        raise ConnectError(ConnectErrorKind.NETWORK_UNAVAILABLE, f"Cannot reach {target}: {e}")

    conn = Connection(reader, writer)
    t0 = time.perf_counter()
    try:
        await conn.write_packet(build_connect(
            config.client_id, config.keepalive, config.username, config.password,
        ))
        first_byte, body = await asyncio.wait_for(conn.read_packet(), timeout=config.connect_timeout)
    except asyncio.TimeoutError:
        await conn.close()
        raise ConnectError(ConnectErrorKind.TIMEOUT, f"No CONNACK from {target}")
    except ConnectionLost as e:
        await conn.close()
        raise ConnectError(ConnectErrorKind.NETWORK_UNAVAILABLE, f"{target}: {e}")

    if first_byte >> 4 != CONNACK:
        await conn.close()
        raise ConnectError(
            ConnectErrorKind.REFUSED,
            f"Expected CONNACK from {target}, got packet type {first_byte >> 4}",
        )
    try:
        session_present, return_code = parse_connack(body)
    except ValueError as e:
        await conn.close()
        raise ConnectError(ConnectErrorKind.REFUSED, str(e))

    if return_code != 0:
        await conn.close()
        detail = CONNACK_CODES.get(return_code, f"Unknown CONNACK return code {return_code}")
        if return_code in AUTH_RETURN_CODES:
            kind = ConnectErrorKind.AUTH_REJECTED
        elif return_code in TRANSIENT_RETURN_CODES:
            kind = ConnectErrorKind.NETWORK_UNAVAILABLE
        else:
            kind = ConnectErrorKind.REFUSED
        raise ConnectError(kind, detail, return_code=return_code)

    conn.session_present = session_present
    METRICS.observe_packet("CONNECT", (time.perf_counter() - t0) * 1000)
    logger.info("Connected to %s as %s (session_present=%s)", target, config.client_id, session_present)
    return conn


async def connect_with_retry(config: BrokerConfig, attempts: int, policy: RetryPolicy,
                             on_retry=None) -> Connection:
    """Call ``connect`` until it succeeds, a final error occurs, or ``attempts`` run out.

    ``attempts`` of 0 means no limit. ``on_retry(attempt, error)`` is called
    before every backoff sleep.
    """
    attempt = 0
    while True:
        try:
            conn = await connect(config)
            METRICS.connects_total += 1
            return conn
        except ConnectError as e:
            METRICS.connect_failures_total += 1
            if not e.transient:
                logger.error("Broker rejected %s: %s", config.client_id, e)
                raise
            attempt += 1
            if attempts and attempt >= attempts:
                logger.error("Giving up on %s:%s after %d attempts: %s",
                             config.host, config.port, attempt, e)
                raise
            delay = policy.get_delay(attempt - 1)
            logger.warning("Connect attempt %d to %s:%s failed (%s); retrying in %.2fs",
                           attempt, config.host, config.port, e, delay)
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(delay)
