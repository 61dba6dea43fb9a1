"""Wire protocol: fragment codec, transports, payload store and event channel"""

from livedev.wire.fragment import (
    Fragment,
    FragmentDecoder,
    FragmentError,
    InvalidFragmentError,
    FragmentTooLargeError,
    encode,
    decode,
    DEFAULT_MAX_FRAGMENT,
    TRANSPORT_MAX_MESSAGE,
)
from livedev.wire.transport import (
    Transport,
    TransportError,
    TransportClosedError,
    MessageTooLargeError,
    MemoryBroker,
    MemoryTransport,
    topic_matches,
)
from livedev.wire.payload_store import (
    PayloadStore,
    PayloadStoreError,
    MemoryPayloadStore,
    S3PayloadStore,
)
from livedev.wire.channel import EventChannel, DEFAULT_OFFLOAD_THRESHOLD
