"""Local-side relay

Receives forwarded invocations from `<prefix>/events`, republishes them on
the local EventBus, and sends acks and results for each worker back on
`<prefix>/events/<workerID>`, where only that worker's cloud relay listens.
"""

import logging
from typing import List, Optional

from livedev.bus.event_bus import EventBus, Subscription
from livedev.bus.events import Event, EventType, RESULT_EVENTS
from livedev.wire.channel import EventChannel
from livedev.wire.fragment import FragmentError
from livedev.wire.payload_store import PayloadStoreError
from livedev.wire.transport import TransportError, TransportSubscription

logger = logging.getLogger(__name__)


class LocalRelay:
    """Bridges the transport and the local EventBus"""

    def __init__(self, bus: EventBus, channel: EventChannel, topic_prefix: str):
        self.bus = bus
        self.channel = channel
        self.topic_prefix = topic_prefix
        self._transport_sub: Optional[TransportSubscription] = None
        self._bus_subs: List[Subscription] = []

    @property
    def request_topic(self) -> str:
        return f"{self.topic_prefix}/events"

    def reply_topic(self, worker_id: str) -> str:
        return f"{self.topic_prefix}/events/{worker_id}"

    async def start(self) -> None:
        if self._transport_sub is not None:
            return
        self._transport_sub = await self.channel.listen(self.request_topic, self._on_remote)
        for event_type in RESULT_EVENTS:
            self._bus_subs.append(self.bus.subscribe(event_type, self._forward))
        logger.info("Local relay listening on %s", self.request_topic)

    async def stop(self) -> None:
        for sub in self._bus_subs:
            self.bus.unsubscribe(sub)
        self._bus_subs = []
        if self._transport_sub is not None:
            await self.channel.transport.unsubscribe(self._transport_sub)
            self._transport_sub = None

    def _on_remote(self, event: Event) -> None:
        if event.type != EventType.FUNCTION_INVOKED:
            logger.debug("Ignoring %s on request topic", event.type.value)
            return
        logger.info(
            "Invocation %s for %s (worker %s)",
            event.properties["requestID"], event.properties["functionID"], event.properties["workerID"],
        )
        self.bus.dispatch(event)

    async def _forward(self, event: Event) -> None:
        worker_id = event.properties.get("workerID")
        if not worker_id:
            logger.warning("Not forwarding %s without workerID", event.type.value)
            return
        try:
            await self.channel.send(self.reply_topic(worker_id), event)
        except (TransportError, FragmentError, PayloadStoreError) as e:
            logger.error("Failed to forward %s to worker %s: %s", event.type.value, worker_id, e.message)
