"""In-process publish/subscribe hub

The EventBus decouples every other component of a dev session. Dispatch is
synchronous and ordered: subscribers for a type run in the order they
subscribed, over a snapshot of the subscriber list, so a callback may
subscribe or unsubscribe without disturbing the publish in progress.

Coroutine callbacks are scheduled as tasks on the running loop so that
`publish` never suspends. A failing subscriber is logged and skipped; it
never breaks the publisher or the remaining subscribers.

Usage:
```python
bus = EventBus()
sub = bus.subscribe("function.invoked", lambda event: print(event.properties))
bus.publish("function.invoked", {...})
bus.unsubscribe(sub)
```
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Set

from livedev.bus.events import Event, EventType, UnknownEventTypeError

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by subscribe(); pass it to unsubscribe()"""

    __slots__ = ("type", "callback")

    def __init__(self, event_type: EventType, callback: Callable[[Event], Any]):
        self.type = event_type
        self.callback = callback

    def __repr__(self) -> str:
        return f"Subscription({self.type.value}, {getattr(self.callback, '__name__', self.callback)!r})"


def _parse_type(event_type) -> EventType:
    parsed = EventType.parse(event_type)
    if parsed is None:
        raise UnknownEventTypeError(event_type)
    return parsed


class EventBus:
    """Typed, ordered, single-threaded event hub"""

    def __init__(self):
        self._subscriptions: Dict[EventType, List[Subscription]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _subscribers(self, event_type: EventType) -> List[Subscription]:
        subs = self._subscriptions.get(event_type)
        if subs is None:
            subs = []
            self._subscriptions[event_type] = subs
        return subs

    def subscribe(self, event_type, callback: Callable[[Event], Any]) -> Subscription:
        """Register a callback for one event type

        Raises:
            UnknownEventTypeError: If the type is not in the vocabulary
        """
        sub = Subscription(_parse_type(event_type), callback)
        self._subscribers(sub.type).append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription. Removing it twice is a no-op."""
        subs = self._subscriptions.get(subscription.type)
        if not subs:
            return
        # identity, not equality: the same callback may be subscribed twice
        for i, sub in enumerate(subs):
            if sub is subscription:
                del subs[i]
                return

    def subscriber_count(self, event_type) -> int:
        return len(self._subscriptions.get(_parse_type(event_type), ()))

    def publish(self, event_type, properties: Dict[str, Any]) -> Event:
        """Deliver an event to every subscriber of its type, in order

        Returns:
            The published Event

        Raises:
            UnknownEventTypeError: If the type is not in the vocabulary
        """
        event = Event(type=_parse_type(event_type), properties=properties)
        self.dispatch(event)
        return event

    def dispatch(self, event: Event) -> None:
        """Deliver an already constructed event"""
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Publishing event: %s", _preview(event))

        for sub in list(self._subscriptions.get(event.type, ())):
            try:
                result = sub.callback(event)
            except Exception:
                logger.exception("Subscriber %r failed handling %s", sub, event.type.value)
                continue
            if inspect.isawaitable(result):
                self._schedule(sub, event, result)

    def _schedule(self, sub: Subscription, event: Event, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("Subscriber %r returned a coroutine outside an event loop", sub)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)

        def done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.error(
                    "Subscriber %r failed handling %s",
                    sub, event.type.value, exc_info=error,
                )

        task.add_done_callback(done)

    async def drain(self) -> None:
        """Wait until every scheduled coroutine subscriber has finished"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _preview(event: Event, limit: int = 500) -> str:
    try:
        text = json.dumps(event.to_dict(), default=str)
    except (TypeError, ValueError):
        text = repr(event)
    if len(text) > limit:
        return text[:limit] + "..."
    return text
