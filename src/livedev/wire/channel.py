"""Event channel over a fragmenting transport

EventChannel is what the relays talk to. Outbound events are serialized,
offloaded to the payload store when they are very large, fragmented and
published. Inbound fragments are reassembled per subscription, validated
against the event vocabulary and, for pointer events, fetched back from the
payload store before being handed to the caller.

Malformed fragments, undecodable JSON and unknown event types are dropped
with a log line; they never propagate into the caller.
"""

import inspect
import json
import logging
from typing import Any, Callable, List, Optional

from livedev.bus.events import Event, EventError, EventType
from livedev.wire.fragment import (
    DEFAULT_MAX_FRAGMENT,
    FragmentDecoder,
    encode,
    serialize_message,
)
from livedev.wire.payload_store import PayloadStore, PayloadStoreError
from livedev.wire.transport import Transport, TransportSubscription

logger = logging.getLogger(__name__)


# Events whose JSON exceeds this many characters go through the payload store
DEFAULT_OFFLOAD_THRESHOLD = 1_000_000


class EventChannel:
    """Fragmenting, validating event channel on top of a Transport"""

    def __init__(
        self,
        transport: Transport,
        payload_store: Optional[PayloadStore] = None,
        offload_threshold: int = DEFAULT_OFFLOAD_THRESHOLD,
        max_fragment: int = DEFAULT_MAX_FRAGMENT,
    ):
        self.transport = transport
        self.payload_store = payload_store
        self.offload_threshold = offload_threshold
        self.max_fragment = max_fragment
        self._subscriptions: List[TransportSubscription] = []

    async def send(self, topic: str, event: Event) -> int:
        """Publish an event, returns the number of fragments sent"""
        message = event.to_dict()
        text = serialize_message(message)
        if self.payload_store is not None and len(text) > self.offload_threshold:
            bucket, key = await self.payload_store.put(text)
            logger.debug("Offloaded %s (%d chars) to %s/%s", event.type.value, len(text), bucket, key)
            message = Event(EventType.POINTER, {"bucket": bucket, "key": key}).to_dict()

        fragments = encode(message, max_fragment=self.max_fragment, max_message=self.transport.max_message)
        for fragment in fragments:
            await self.transport.publish(topic, fragment.to_json())
        logger.debug("Sent %s to %s in %d fragments", event.type.value, topic, len(fragments))
        return len(fragments)

    async def listen(self, topic_filter: str, on_event: Callable[[Event], Any]) -> TransportSubscription:
        """Deliver every complete, valid event arriving on topic_filter"""
        decoder = FragmentDecoder()

        async def on_message(topic: str, payload: str) -> None:
            message = decoder.feed_raw(payload)
            if message is None:
                return
            event = await self._resolve(message)
            if event is None:
                return
            result = on_event(event)
            if inspect.isawaitable(result):
                await result

        sub = await self.transport.subscribe(topic_filter, on_message)
        self._subscriptions.append(sub)
        return sub

    async def _resolve(self, message: Any) -> Optional[Event]:
        event = _decode_event(message)
        if event is None or event.type != EventType.POINTER:
            return event

        if self.payload_store is None:
            logger.warning("Dropping pointer event: no payload store configured")
            return None
        try:
            body = await self.payload_store.take(event.properties["bucket"], event.properties["key"])
        except PayloadStoreError as e:
            logger.warning("Dropping pointer event: %s", e.message)
            return None

        try:
            message = json.loads(body)
        except ValueError as e:
            logger.warning("Dropping offloaded payload: %s", e)
            return None
        event = _decode_event(message)
        if event is not None and event.type == EventType.POINTER:
            logger.warning("Dropping nested pointer event")
            return None
        return event

    async def close(self) -> None:
        for sub in self._subscriptions:
            await self.transport.unsubscribe(sub)
        self._subscriptions = []


def _decode_event(message: Any) -> Optional[Event]:
    try:
        return Event.from_dict(message)
    except EventError as e:
        logger.warning("Dropping event: %s", e.message)
        return None
