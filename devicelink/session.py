"""Broker sessions and their lifecycle.

A ``Session`` owns one connection to its broker, the registry of filters
subscribed over it, and the dispatcher that moves packets in both
directions. ``SessionManager`` keeps at most one session per id and creates
it on first use.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Dict, List, Optional

from .config import BrokerConfig
from .dispatcher import Dispatcher
from .errors import ConnectError, ConnectionLost
from .metrics import METRICS
from .models import Message, PublishAck, SessionState, utc_now
from .mqtt_codec import PACKET_NAMES, build_pingreq
from .registry import Consumer, TopicRegistry
from .state import DEVICE_STATE, DeviceStateCache
from .transport import Connection, RetryPolicy, connect_with_retry

logger = logging.getLogger(__name__)

# broker silence tolerated before the connection counts as dead, in keepalive periods
KEEPALIVE_GRACE = 1.5


class RecentMessages:
    """Consumer that remembers the last ``maxlen`` messages it was handed."""

    def __init__(self, maxlen: int = 100):
        self.messages = deque(maxlen=maxlen)

    def __call__(self, message: Message) -> None:
        logger.info("Received message on %s: %s", message.topic, message.payload_text())
        self.messages.append(message)

    def recent(self, limit: Optional[int] = None) -> List[Message]:
        items = list(self.messages)
        if limit is None:
            return items
        return items[-limit:] if limit > 0 else []


class Session:
    def __init__(self, session_id: str, config: BrokerConfig,
                 cache: DeviceStateCache = DEVICE_STATE,
                 on_closed: Optional[Callable[["Session"], None]] = None):
        self.id = session_id
        self.config = config
        self.state = SessionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.retry_count = 0
        self.last_update = None

        self.registry = TopicRegistry()
        self.dispatcher = Dispatcher(
            self.registry, cache,
            retry_interval=config.publish_retry_interval,
            max_retries=config.publish_max_retries,
            queue_size=config.publish_queue_size,
            queue_timeout=config.publish_queue_timeout,
            request_timeout=config.subscribe_timeout,
        )
        self.registry.upstream = self.dispatcher
        self.policy = RetryPolicy(config.reconnect_base_delay, config.reconnect_max_delay)
        self.inbox = RecentMessages()

        self._on_closed = on_closed
        self._connection: Optional[Connection] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        # bumped by every disconnect(); a connect() requested before it is dropped
        self._generation = 0

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value}, broker={self.config.host}:{self.config.port})"

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def _set_state(self, state: SessionState, error: Optional[str] = None) -> None:
        if error is not None:
            self.last_error = error
        if state != self.state:
            logger.info("Session %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state
        self.last_update = utc_now()

    def _on_retry(self, attempt: int, error: ConnectError) -> None:
        self.retry_count = attempt
        self.last_error = str(error)
        self.last_update = utc_now()

    # ---------------- lifecycle ----------------

    async def connect(self) -> None:
        """Connect if disconnected. Raises ``ConnectError`` when the broker cannot be reached."""
        generation = self._generation
        async with self._connect_lock:
            if self._closing or generation != self._generation or self.state != SessionState.DISCONNECTED:
                return
            self._set_state(SessionState.CONNECTING)
            try:
                conn = await connect_with_retry(
                    self.config, self.config.connect_attempts, self.policy, on_retry=self._on_retry,
                )
            except ConnectError as e:
                self._set_state(SessionState.DISCONNECTED, str(e))
                raise
            if self._closing:
                # disconnect() arrived during the handshake and is waiting on the lock
                logger.info("Session %s closed while connecting", self.id)
                await conn.close(send_disconnect=True)
                self._set_state(SessionState.DISCONNECTED)
                return
            self._attach(conn)
            self._supervisor = asyncio.create_task(self._supervise(resubscribe=False))

    def _attach(self, conn: Connection) -> None:
        self._connection = conn
        self.retry_count = 0
        self.dispatcher.attach(conn)
        self._set_state(SessionState.CONNECTED)

    async def _supervise(self, resubscribe: bool) -> None:
        while True:
            reason = await self._serve(self._connection, resubscribe)
            self.dispatcher.detach()
            await self._connection.close()
            if self._closing:
                self._teardown(None)
                return

            logger.warning("Session %s lost its connection: %s", self.id, reason)
            self._set_state(SessionState.RECONNECTING, reason)
            try:
                conn = await connect_with_retry(
                    self.config, self.config.max_reconnect_attempts, self.policy, on_retry=self._on_retry,
                )
            except ConnectError as e:
                logger.error("Session %s cannot reconnect: %s", self.id, e)
                self._teardown(str(e))
                return
            METRICS.reconnects_total += 1
            self._attach(conn)
            resubscribe = True

    async def _serve(self, conn: Connection, resubscribe: bool) -> str:
        """Run the reader, writer and keepalive for ``conn``; return why it stopped."""
        tasks = [
            asyncio.create_task(self._read_loop(conn)),
            asyncio.create_task(self.dispatcher.run_writer(conn)),
        ]
        if self.config.keepalive > 0:
            tasks.append(asyncio.create_task(self._keepalive(conn)))
        helpers = [asyncio.create_task(self._resubscribe())] if resubscribe else []

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks + helpers:
                task.cancel()
            await asyncio.gather(*tasks, *helpers, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                return str(task.exception()) or type(task.exception()).__name__
        return "connection closed"

    async def _read_loop(self, conn: Connection) -> None:
        while True:
            first_byte, body = await conn.read_packet()
            t0 = time.perf_counter()
            try:
                await self.dispatcher.handle_packet(first_byte, body)
            except ValueError as e:
                raise ConnectionLost(f"Malformed packet from broker: {e}") from e
            name = PACKET_NAMES.get(first_byte >> 4, f"TYPE_{first_byte >> 4}")
            METRICS.observe_packet(name, (time.perf_counter() - t0) * 1000)

    async def _keepalive(self, conn: Connection) -> None:
        interval = self.config.keepalive
        while True:
            await asyncio.sleep(interval)
            silent_for = time.monotonic() - conn.last_rx
            if silent_for > interval * KEEPALIVE_GRACE:
                raise ConnectionLost(f"No traffic from broker for {silent_for:.1f}s")
            await conn.write_packet(build_pingreq())

    async def _resubscribe(self) -> None:
        failures = await self.registry.reassert()
        if failures:
            self.last_error = "; ".join(str(e) for _, e in failures)
        else:
            logger.info("Session %s reasserted %d subscriptions", self.id, len(self.registry))
        self.last_update = utc_now()

    async def disconnect(self) -> None:
        """Close the session: DISCONNECT, fail pending publishes, forget subscriptions.

        A connect still in progress is abandoned once its handshake ends.
        """
        self._closing = True
        try:
            async with self._connect_lock:
                supervisor, self._supervisor = self._supervisor, None
                if supervisor is not None:
                    supervisor.cancel()
                    await asyncio.gather(supervisor, return_exceptions=True)
                if self._connection is not None:
                    await self._connection.close(send_disconnect=True)
                if self.state != SessionState.DISCONNECTED:
                    METRICS.disconnects_total += 1
                self._teardown(None)
                self._generation += 1
        finally:
            self._closing = False

    def _teardown(self, error: Optional[str]) -> None:
        self.dispatcher.detach()
        self.dispatcher.fail_pending(f"Session {self.id} closed")
        self.registry.clear()
        self._connection = None
        self._set_state(SessionState.DISCONNECTED, error)
        if self._on_closed is not None:
            self._on_closed(self)

    # ---------------- operations ----------------

    async def subscribe(self, topic_filter: str, consumer: Optional[Consumer] = None, qos: int = 0) -> bool:
        created = await self.registry.subscribe(topic_filter, consumer or self.inbox, qos)
        self.last_update = utc_now()
        return created

    async def unsubscribe(self, topic_filter: str, consumer: Optional[Consumer] = None) -> bool:
        removed = await self.registry.unsubscribe(topic_filter, consumer or self.inbox)
        self.last_update = utc_now()
        return removed

    async def publish(self, topic: str, payload, qos: int = 0, retained: bool = False) -> PublishAck:
        return await self.dispatcher.publish(topic, payload, qos, retained)

    def status(self) -> dict:
        last = max((t for t in (self.last_update, self.dispatcher.last_delivery) if t is not None), default=None)
        return {
            "id": self.id,
            "connected": self.connected,
            "state": self.state.value,
            "subscriptions": self.registry.filters(),
            "lastUpdate": last.isoformat() if last else None,
            "lastError": self.last_error,
            "retryCount": self.retry_count,
            "outstanding": self.dispatcher.outstanding,
            "broker": self.config.host,
            "port": self.config.port,
            "clientId": self.config.client_id,
        }


class SessionManager:
    def __init__(self, config_factory: Callable[[str], BrokerConfig] = BrokerConfig.for_session,
                 cache: DeviceStateCache = DEVICE_STATE):
        self._config_factory = config_factory
        self._cache = cache
        self._sessions: Dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def ids(self) -> List[str]:
        return list(self._sessions)

    async def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id, self._config_factory(session_id), self._cache, on_closed=self._forget)
            self._sessions[session_id] = session
        try:
            await session.connect()
        except ConnectError:
            self._forget(session)
            raise
        return session

    def _forget(self, session: Session) -> None:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]

    async def disconnect(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        await session.disconnect()
        return True

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.disconnect()
