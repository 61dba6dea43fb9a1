"""Topic based pub/sub transport

A Transport moves opaque text messages between processes. Delivery is
at-least-once and unordered across publishers; every message must stay
under the transport ceiling, which is why callers only ever publish
fragments (see livedev.wire.fragment).

Topics are slash separated paths. Subscriptions use MQTT style filters:
`+` matches exactly one level, `#` matches the remainder of the topic.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from livedev.wire.fragment import TRANSPORT_MAX_MESSAGE

logger = logging.getLogger(__name__)


MessageCallback = Callable[[str, str], Any]


class TransportError(Exception):
    """Base error for transports"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MessageTooLargeError(TransportError):
    """Message exceeds the transport ceiling"""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Message too large: {size} > {max_size}")
        self.size = size
        self.max_size = max_size


class TransportClosedError(TransportError):
    """Transport is closed"""

    def __init__(self):
        super().__init__("Transport is closed")


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Check whether a topic matches an MQTT style filter"""
    filter_levels = topic_filter.split("/")
    topic_levels = topic.split("/")
    for i, level in enumerate(filter_levels):
        if level == "#":
            return True
        if i >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[i]:
            return False
    return len(filter_levels) == len(topic_levels)


def check_message_size(payload: str, max_message: int = TRANSPORT_MAX_MESSAGE) -> None:
    """Raise MessageTooLargeError if payload exceeds the ceiling"""
    size = len(payload.encode("utf-8"))
    if size > max_message:
        raise MessageTooLargeError(size, max_message)


class TransportSubscription:
    """Handle for one topic filter subscription"""

    __slots__ = ("topic_filter", "callback")

    def __init__(self, topic_filter: str, callback: MessageCallback):
        self.topic_filter = topic_filter
        self.callback = callback

    def matches(self, topic: str) -> bool:
        return topic_matches(self.topic_filter, topic)


async def deliver(subscription: TransportSubscription, topic: str, payload: str) -> None:
    """Invoke a subscription callback, awaiting it if it is a coroutine"""
    try:
        result = subscription.callback(topic, payload)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Transport subscriber for %s failed", subscription.topic_filter)


class Transport(ABC):
    """Abstract pub/sub transport"""

    max_message: int = TRANSPORT_MAX_MESSAGE

    @abstractmethod
    async def publish(self, topic: str, payload: str) -> None:
        """Publish one message

        Raises:
            MessageTooLargeError: If payload exceeds the ceiling
            TransportClosedError: If the transport is closed
        """

    @abstractmethod
    async def subscribe(self, topic_filter: str, callback: MessageCallback) -> TransportSubscription:
        """Receive every message whose topic matches topic_filter"""

    @abstractmethod
    async def unsubscribe(self, subscription: TransportSubscription) -> None:
        """Stop delivering to a subscription"""

    @abstractmethod
    async def close(self) -> None:
        """Release connections; further publishes fail"""


class MemoryBroker:
    """Shared state of connected MemoryTransport endpoints"""

    def __init__(self):
        self.subscriptions: List[TransportSubscription] = []
        self.pending: set = set()
        self.published: List[tuple] = []

    def route(self, topic: str, payload: str) -> None:
        self.published.append((topic, payload))
        for sub in list(self.subscriptions):
            if sub.matches(topic):
                task = asyncio.create_task(deliver(sub, topic, payload))
                self.pending.add(task)
                task.add_done_callback(self.pending.discard)

    def remove(self, subscription: TransportSubscription) -> None:
        for i, sub in enumerate(self.subscriptions):
            if sub is subscription:
                del self.subscriptions[i]
                return


class MemoryTransport(Transport):
    """In-process broker endpoint

    Endpoints created with connect() share one broker, which lets a cloud
    relay and a local relay talk inside one process. Delivery is scheduled
    on the running loop, never inline.
    """

    def __init__(self, broker: Optional[MemoryBroker] = None, max_message: int = TRANSPORT_MAX_MESSAGE):
        self.broker = broker if broker is not None else MemoryBroker()
        self.max_message = max_message
        self._own: List[TransportSubscription] = []
        self._closed = False

    def connect(self) -> "MemoryTransport":
        """Create another endpoint attached to the same broker"""
        return MemoryTransport(self.broker, self.max_message)

    @property
    def published(self) -> List[tuple]:
        """Every (topic, payload) routed through the broker"""
        return self.broker.published

    async def publish(self, topic: str, payload: str) -> None:
        if self._closed:
            raise TransportClosedError()
        check_message_size(payload, self.max_message)
        self.broker.route(topic, payload)
        # let deliveries start in publish order
        await asyncio.sleep(0)

    async def subscribe(self, topic_filter: str, callback: MessageCallback) -> TransportSubscription:
        if self._closed:
            raise TransportClosedError()
        sub = TransportSubscription(topic_filter, callback)
        self.broker.subscriptions.append(sub)
        self._own.append(sub)
        return sub

    async def unsubscribe(self, subscription: TransportSubscription) -> None:
        self.broker.remove(subscription)
        for i, sub in enumerate(self._own):
            if sub is subscription:
                del self._own[i]
                break

    async def flush(self) -> None:
        """Wait for in-flight deliveries, including ones they trigger"""
        while self.broker.pending:
            await asyncio.gather(*list(self.broker.pending), return_exceptions=True)
            await asyncio.sleep(0)

    async def close(self) -> None:
        for sub in list(self._own):
            await self.unsubscribe(sub)
        self._closed = True
