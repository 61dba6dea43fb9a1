"""Event vocabulary shared by the bus and the wire protocol

Every event is `{"type": str, "properties": object}`. The set of types is
closed: anything arriving from the wire with a type outside EventType, or
with properties that do not match the schema for its type, is rejected at
the decode boundary instead of being passed through untyped.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator


class EventType(str, Enum):
    """Event type discriminator"""
    FUNCTION_INVOKED = "function.invoked"
    FUNCTION_ACK = "function.ack"
    FUNCTION_SUCCESS = "function.success"
    FUNCTION_ERROR = "function.error"
    FUNCTION_BUILD_STARTED = "function.build.started"
    FUNCTION_BUILD_SUCCESS = "function.build.success"
    FUNCTION_BUILD_FAILED = "function.build.failed"
    WORKER_STARTED = "worker.started"
    WORKER_EXITED = "worker.exited"
    WORKER_STDOUT = "worker.stdout"
    FILE_CHANGED = "file.changed"
    LOCAL_PATCHES = "local.patches"
    POINTER = "pointer"  # Wire only: payload was offloaded to the payload store

    @classmethod
    def parse(cls, value: Any) -> Optional["EventType"]:
        """Convert a wire string to EventType, returns None if unknown"""
        if isinstance(value, EventType):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


# Events the local side sends back to the waiting cloud relay
RESULT_EVENTS = (
    EventType.FUNCTION_ACK,
    EventType.FUNCTION_SUCCESS,
    EventType.FUNCTION_ERROR,
)


class EventError(Exception):
    """Base error for event decoding"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnknownEventTypeError(EventError):
    """Event type is not part of the vocabulary"""

    def __init__(self, event_type: Any):
        super().__init__(f"Unknown event type: {event_type!r}")
        self.event_type = event_type


class InvalidEventError(EventError):
    """Event does not match the schema for its type"""

    def __init__(self, event_type: str, details: str):
        super().__init__(f"Invalid {event_type} event: {details}")
        self.event_type = event_type
        self.details = details


_STRING = {"type": "string"}
_NULLABLE_STRING = {"type": ["string", "null"]}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}


def _object(required: Dict[str, Any], optional: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    properties = dict(required)
    properties.update(optional or {})
    return {
        "type": "object",
        "required": sorted(required),
        "properties": properties,
    }


# JSON Schema (Draft-07) per event type
EVENT_SCHEMAS: Dict[EventType, Dict[str, Any]] = {
    EventType.FUNCTION_INVOKED: _object({
        "workerID": _STRING,
        "requestID": _STRING,
        "functionID": _STRING,
        "deadline": {"type": "number"},
        "event": {},
        "context": {"type": "object"},
        "env": {"type": "object", "additionalProperties": _STRING},
    }),
    EventType.FUNCTION_ACK: _object({
        "workerID": _STRING,
        "functionID": _STRING,
    }),
    EventType.FUNCTION_SUCCESS: _object({
        "workerID": _STRING,
        "requestID": _STRING,
        "functionID": _STRING,
        "body": {},
    }),
    EventType.FUNCTION_ERROR: _object(
        {
            "workerID": _STRING,
            "requestID": _STRING,
            "functionID": _STRING,
            "errorType": _STRING,
            "errorMessage": _STRING,
        },
        {"trace": _STRING_LIST},
    ),
    EventType.FUNCTION_BUILD_STARTED: _object({"functionID": _STRING}),
    EventType.FUNCTION_BUILD_SUCCESS: _object({"functionID": _STRING}),
    EventType.FUNCTION_BUILD_FAILED: _object({
        "functionID": _STRING,
        "errors": _STRING_LIST,
    }),
    EventType.WORKER_STARTED: _object({
        "workerID": _STRING,
        "functionID": _STRING,
    }),
    EventType.WORKER_EXITED: _object({
        "workerID": _STRING,
        "functionID": _STRING,
    }),
    EventType.WORKER_STDOUT: _object({
        "workerID": _STRING,
        "functionID": _STRING,
        "requestID": _NULLABLE_STRING,
        "message": _STRING,
    }),
    EventType.FILE_CHANGED: _object({"file": _STRING}),
    EventType.LOCAL_PATCHES: _object({"patches": {"type": "array"}}),
    EventType.POINTER: _object({
        "bucket": _STRING,
        "key": _STRING,
    }),
}

_VALIDATORS: Dict[EventType, Draft7Validator] = {
    event_type: Draft7Validator(schema) for event_type, schema in EVENT_SCHEMAS.items()
}


def validate_properties(event_type: EventType, properties: Any) -> None:
    """Validate event properties against the schema for their type

    Raises:
        InvalidEventError: If the properties do not match
    """
    errors = list(_VALIDATORS[event_type].iter_errors(properties))
    if errors:
        details = "; ".join(e.message for e in errors)
        raise InvalidEventError(event_type.value, details)


@dataclass
class Event:
    """A typed event"""
    type: EventType
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "properties": self.properties}

    @classmethod
    def create(cls, event_type, properties: Dict[str, Any]) -> "Event":
        """Create an event from a type name or EventType

        Raises:
            UnknownEventTypeError: If the type is not in the vocabulary
        """
        parsed = EventType.parse(event_type)
        if parsed is None:
            raise UnknownEventTypeError(event_type)
        return cls(type=parsed, properties=properties)

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        """Decode and validate an event received from the wire

        Raises:
            UnknownEventTypeError: If the type is not in the vocabulary
            InvalidEventError: If the envelope or properties are malformed
        """
        if not isinstance(data, dict):
            raise InvalidEventError("?", f"event must be an object, got {type(data).__name__}")
        event_type = EventType.parse(data.get("type"))
        if event_type is None:
            raise UnknownEventTypeError(data.get("type"))
        properties = data.get("properties")
        validate_properties(event_type, properties)
        return cls(type=event_type, properties=properties)
