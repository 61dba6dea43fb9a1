"""Event vocabulary and the in-process event bus"""

from livedev.bus.events import (
    Event,
    EventType,
    EventError,
    UnknownEventTypeError,
    InvalidEventError,
    RESULT_EVENTS,
)
from livedev.bus.event_bus import EventBus, Subscription
