"""Fragment codec for the size-limited pub/sub transport

The transport refuses any message above a hard ceiling, so every logical
message is serialized to JSON and sliced into fragments before it is
published. The receiving side collects fragments per message id and
reassembles the message once every slice has arrived.

## Wire Format

Each transport message is one JSON object:
{
  "id": str       (random, shared by every fragment of one message)
  "index": int    (0-based position of this slice)
  "count": int    (total number of slices)
  "data": str     (slice of the JSON serialization)
}

Fragments of one message may arrive in any order and may be delivered
more than once. Fragments of unrelated messages interleave freely.

Usage:
```python
from livedev.wire.fragment import encode, FragmentDecoder

decoder = FragmentDecoder()
for fragment in encode({"type": "function.ack", "properties": {...}}):
    message = decoder.feed(fragment)
```
"""

import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


# Maximum characters of serialized message per fragment
DEFAULT_MAX_FRAGMENT = 100_000

# Hard ceiling of the transport (128 KiB), envelope included
TRANSPORT_MAX_MESSAGE = 131_072

# Bytes reserved for the {"id","index","count","data"} envelope
ENVELOPE_OVERHEAD = 128

# Incomplete messages older than this are discarded
DEFAULT_FRAGMENT_TTL = 60.0

# Upper bound on concurrently incomplete messages
DEFAULT_MAX_PENDING = 1024

# Completed ids remembered to ignore redelivered fragments
DEFAULT_COMPLETED_MEMORY = 1024


class FragmentError(Exception):
    """Base error for the fragment codec"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidFragmentError(FragmentError):
    """A wire message is not a well-formed fragment"""
    pass


class FragmentTooLargeError(FragmentError):
    """A fragment cannot be made to fit the transport ceiling"""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Fragment too large: {size} > {max_size}")
        self.size = size
        self.max_size = max_size


@dataclass
class Fragment:
    """One slice of a serialized message"""
    id: str
    index: int
    count: int
    data: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "count": self.count,
            "data": self.data,
        }

    def to_json(self) -> str:
        """Serialize for the wire. Output is ASCII, so len() equals byte size."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> "Fragment":
        """Parse a fragment from a decoded wire object

        Raises:
            InvalidFragmentError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise InvalidFragmentError(f"Fragment must be an object, got {type(data).__name__}")

        fragment_id = data.get("id")
        index = data.get("index")
        count = data.get("count")
        chunk = data.get("data")

        if not isinstance(fragment_id, str) or not fragment_id:
            raise InvalidFragmentError("Fragment id must be a non-empty string")
        # bool is an int subclass; reject it explicitly
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise InvalidFragmentError(f"Fragment index must be a non-negative integer, got {index!r}")
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise InvalidFragmentError(f"Fragment count must be a positive integer, got {count!r}")
        if index >= count:
            raise InvalidFragmentError(f"Fragment index {index} out of range for count {count}")
        if not isinstance(chunk, str):
            raise InvalidFragmentError("Fragment data must be a string")

        return cls(id=fragment_id, index=index, count=count, data=chunk)

    @classmethod
    def from_json(cls, raw) -> "Fragment":
        """Parse a fragment from raw wire text or bytes"""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidFragmentError(f"Fragment is not valid UTF-8: {e}")
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise InvalidFragmentError(f"Fragment is not valid JSON: {e}")
        return cls.from_dict(data)


def serialize_message(message: Any) -> str:
    """Serialize a message to compact ASCII-only JSON"""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=True)


def _envelope_size(part: str) -> int:
    return len(json.dumps(part)) + ENVELOPE_OVERHEAD


def _split(text: str, max_fragment: int, max_message: int) -> List[str]:
    """Slice text into parts of at most max_fragment characters.

    A part whose escaped form would break the transport ceiling is halved
    until it fits.
    """
    parts = []
    start = 0
    while start < len(text):
        end = min(start + max_fragment, len(text))
        while _envelope_size(text[start:end]) > max_message:
            if end - start <= 1:
                raise FragmentTooLargeError(_envelope_size(text[start:end]), max_message)
            end = start + (end - start) // 2
        parts.append(text[start:end])
        start = end
    return parts


def new_message_id() -> str:
    """Create a random message id"""
    return uuid.uuid4().hex


def encode(
    message: Any,
    max_fragment: int = DEFAULT_MAX_FRAGMENT,
    max_message: int = TRANSPORT_MAX_MESSAGE,
) -> List[Fragment]:
    """Split a message into fragments

    Args:
        message: Any JSON-serializable value
        max_fragment: Maximum characters of serialized message per fragment
        max_message: Transport ceiling each serialized fragment must respect

    Returns:
        Fragments sharing one random id, indexed 0..count-1

    Raises:
        FragmentTooLargeError: If the ceiling is too small for any slice
    """
    if max_fragment < 1:
        raise ValueError("max_fragment must be positive")

    parts = _split(serialize_message(message), max_fragment, max_message)
    message_id = new_message_id()
    return [
        Fragment(id=message_id, index=index, count=len(parts), data=part)
        for index, part in enumerate(parts)
    ]


def decode(fragments: Iterable[Fragment]) -> Optional[Any]:
    """Reassemble one message from the fragments received so far

    Stateless counterpart of FragmentDecoder for a single message id.
    Duplicates are tolerated. Returns None while the set is incomplete or
    if the fragments disagree about their id or count.
    """
    by_index: Dict[int, Fragment] = {}
    first: Optional[Fragment] = None
    for fragment in fragments:
        if first is None:
            first = fragment
        elif fragment.id != first.id or fragment.count != first.count:
            logger.warning("Ignoring mismatched fragment %s/%d", fragment.id, fragment.index)
            continue
        by_index[fragment.index] = fragment

    if first is None or len(by_index) != first.count:
        return None

    return _join(first.id, by_index)


def _join(message_id: str, by_index: Dict[int, Fragment]) -> Optional[Any]:
    text = "".join(by_index[i].data for i in sorted(by_index))
    try:
        return json.loads(text)
    except ValueError as e:
        logger.warning("Dropping undecodable message %s: %s", message_id, e)
        return None


class _Bucket:
    """Fragments received so far for one message id"""

    __slots__ = ("count", "fragments", "created_at")

    def __init__(self, count: int, created_at: float):
        self.count = count
        self.fragments: Dict[int, Fragment] = {}
        self.created_at = created_at


class FragmentDecoder:
    """Stateful reassembly of interleaved fragment streams

    Incomplete messages are kept in per-id buckets. Buckets expire after
    `ttl` seconds and at most `max_pending` buckets are kept (oldest first
    out), so a sender that never finishes a message cannot grow memory
    without bound.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_FRAGMENT_TTL,
        max_pending: int = DEFAULT_MAX_PENDING,
        completed_memory: int = DEFAULT_COMPLETED_MEMORY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_pending = max_pending
        self.completed_memory = completed_memory
        self._clock = clock
        self._buckets: "OrderedDict[str, _Bucket]" = OrderedDict()
        self._completed: "OrderedDict[str, None]" = OrderedDict()

    @property
    def pending_count(self) -> int:
        """Number of incomplete messages currently buffered"""
        return len(self._buckets)

    def feed_raw(self, raw) -> Optional[Any]:
        """Parse a wire message and feed it. Malformed input is dropped."""
        try:
            fragment = Fragment.from_json(raw)
        except InvalidFragmentError as e:
            logger.warning("Dropping malformed fragment: %s", e.message)
            return None
        return self.feed(fragment)

    def feed(self, fragment: Fragment) -> Optional[Any]:
        """Add a fragment; return the reassembled message once complete"""
        self.evict_expired()

        if fragment.id in self._completed:
            logger.debug("Ignoring redelivered fragment %s/%d", fragment.id, fragment.index)
            return None

        bucket = self._buckets.get(fragment.id)
        if bucket is None:
            bucket = _Bucket(fragment.count, self._clock())
            self._buckets[fragment.id] = bucket
            self._enforce_capacity()
        elif bucket.count != fragment.count:
            logger.warning(
                "Dropping fragment %s/%d: count %d does not match %d",
                fragment.id, fragment.index, fragment.count, bucket.count,
            )
            return None

        bucket.fragments[fragment.index] = fragment
        if len(bucket.fragments) < bucket.count:
            return None

        del self._buckets[fragment.id]
        self._remember_completed(fragment.id)
        return _join(fragment.id, bucket.fragments)

    def evict_expired(self) -> int:
        """Discard buckets older than the TTL. Returns how many were dropped."""
        if not self._buckets:
            return 0
        deadline = self._clock() - self.ttl
        expired = [key for key, bucket in self._buckets.items() if bucket.created_at < deadline]
        for key in expired:
            bucket = self._buckets.pop(key)
            logger.warning(
                "Abandoning incomplete message %s (%d/%d fragments)",
                key, len(bucket.fragments), bucket.count,
            )
        return len(expired)

    def _enforce_capacity(self) -> None:
        while len(self._buckets) > self.max_pending:
            key, bucket = self._buckets.popitem(last=False)
            logger.warning(
                "Evicting incomplete message %s (%d/%d fragments): too many pending",
                key, len(bucket.fragments), bucket.count,
            )

    def _remember_completed(self, message_id: str) -> None:
        self._completed[message_id] = None
        while len(self._completed) > self.completed_memory:
            self._completed.popitem(last=False)
