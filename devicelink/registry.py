import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .errors import SubscribeError, SubscribeErrorKind
from .models import Message
from .topics import matches, validate_filter

logger = logging.getLogger(__name__)

Consumer = Callable[[Message], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    topic_filter: str
    qos: int = 0
    # insertion-ordered set of consumer handles
    consumers: Dict[Consumer, None] = field(default_factory=dict)


class TopicRegistry:
    """Active subscriptions of one session, one entry per filter.

    ``upstream`` is told about filters as they appear and disappear; it must
    provide ``async send_subscribe(filter, qos)`` and
    ``async send_unsubscribe(filter)``. Every mutation runs under one lock.
    """

    def __init__(self, upstream=None):
        self.upstream = upstream
        self._subs: Dict[str, Subscription] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic_filter: str, consumer: Consumer, qos: int = 0) -> bool:
        """Register ``consumer`` for ``topic_filter``; True if the filter is new."""
        try:
            validate_filter(topic_filter)
        except ValueError as e:
            raise SubscribeError(SubscribeErrorKind.INVALID_FILTER, str(e))
        if qos not in (0, 1):
            raise SubscribeError(SubscribeErrorKind.INVALID_FILTER, f"Unsupported QoS {qos}")

        async with self._lock:
            sub = self._subs.get(topic_filter)
            if sub is None:
                # entry goes in first so messages arriving right after the SUBACK are routed
                sub = Subscription(topic_filter, qos, {consumer: None})
                self._subs[topic_filter] = sub
                try:
                    await self._send_subscribe(topic_filter, qos)
                except BaseException:
                    del self._subs[topic_filter]
                    raise
                logger.info("Subscribed to %s (qos=%d)", topic_filter, qos)
                return True

            if qos > sub.qos:
                await self._send_subscribe(topic_filter, qos)
                sub.qos = qos
            sub.consumers[consumer] = None
            return False

    async def unsubscribe(self, topic_filter: str, consumer: Consumer) -> bool:
        """Drop ``consumer``; True if that removed the filter altogether."""
        async with self._lock:
            sub = self._subs.get(topic_filter)
            if sub is None or consumer not in sub.consumers:
                return False
            del sub.consumers[consumer]
            if sub.consumers:
                return False

            del self._subs[topic_filter]
            logger.info("Unsubscribed from %s", topic_filter)
            if self.upstream is not None:
                await self.upstream.send_unsubscribe(topic_filter)
            return True

    async def reassert(self) -> List[Tuple[str, SubscribeError]]:
        """Send every registered filter upstream again, e.g. after a reconnect."""
        failures = []
        async with self._lock:
            for sub in list(self._subs.values()):
                try:
                    await self._send_subscribe(sub.topic_filter, sub.qos)
                except SubscribeError as e:
                    logger.error("Could not reassert subscription %s: %s", sub.topic_filter, e)
                    failures.append((sub.topic_filter, e))
        return failures

    async def _send_subscribe(self, topic_filter: str, qos: int) -> None:
        if self.upstream is not None:
            await self.upstream.send_subscribe(topic_filter, qos)

    def match(self, topic: str) -> List[Consumer]:
        """Consumers interested in ``topic``; each listed once even if several filters match."""
        found: Dict[Consumer, None] = {}
        for sub in self._subs.values():
            if matches(sub.topic_filter, topic):
                for consumer in sub.consumers:
                    found.setdefault(consumer, None)
        return list(found)

    def get(self, topic_filter: str) -> Optional[Subscription]:
        return self._subs.get(topic_filter)

    def filters(self) -> List[str]:
        return list(self._subs)

    def clear(self) -> None:
        self._subs.clear()

    def __contains__(self, topic_filter: str) -> bool:
        return topic_filter in self._subs

    def __len__(self) -> int:
        return len(self._subs)
