"""livedev - Live development for cloud functions

Deployed functions keep receiving real traffic while every invocation is
tunneled to the developer's machine, executed by a local worker built from
the working tree, and answered back to the cloud caller. A local
control-plane server mirrors execution state to browser observers.
"""

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

from livedev.wire.hub import TransportHub, HubTransport

from livedev.wire.payload_store import (
    PayloadStore,
    PayloadStoreError,
    MemoryPayloadStore,
    S3PayloadStore,
)

from livedev.wire.channel import EventChannel

from livedev.bus.events import (
    Event,
    EventType,
    EventError,
    UnknownEventTypeError,
    InvalidEventError,
)

from livedev.bus.event_bus import EventBus, Subscription

from livedev.config import (
    DevConfig,
    CloudRelayConfig,
    ConfigError,
)

from livedev.bridge.cloud_relay import (
    CloudRelay,
    LambdaBridge,
    RelayError,
    RemoteFunctionError,
    degraded_response,
)

from livedev.bridge.local_relay import LocalRelay

from livedev.runtime.functions import (
    DeploymentDescriptor,
    FunctionDefinition,
    DescriptorError,
)

from livedev.runtime.handlers.base import (
    RuntimeHandler,
    HandlerError,
    NoHandlerError,
    BuildSuccess,
    BuildFailure,
)

from livedev.runtime.registry import HandlerRegistry
from livedev.runtime.builder import FunctionBuilder, BuildError
from livedev.runtime.workers import WorkerSupervisor, WorkerError, UnknownWorkerError
from livedev.runtime.server import RuntimeServer

from livedev.console.state import StateStore, apply_patches
from livedev.console.history import InvocationHistory
from livedev.console.server import ConsoleServer

from livedev.session import DevSession
from livedev.log import setup_logging

__version__ = "0.1.0"

__all__ = [
    # Fragment codec
    "Fragment",
    "FragmentDecoder",
    "FragmentError",
    "InvalidFragmentError",
    "FragmentTooLargeError",
    "encode",
    "decode",
    "DEFAULT_MAX_FRAGMENT",
    "TRANSPORT_MAX_MESSAGE",
    # Transport
    "Transport",
    "TransportError",
    "TransportClosedError",
    "MessageTooLargeError",
    "MemoryBroker",
    "MemoryTransport",
    "topic_matches",
    "TransportHub",
    "HubTransport",
    # Payload store
    "PayloadStore",
    "PayloadStoreError",
    "MemoryPayloadStore",
    "S3PayloadStore",
    "EventChannel",
    # Events
    "Event",
    "EventType",
    "EventError",
    "UnknownEventTypeError",
    "InvalidEventError",
    "EventBus",
    "Subscription",
    # Config
    "DevConfig",
    "CloudRelayConfig",
    "ConfigError",
    # Bridge
    "CloudRelay",
    "LambdaBridge",
    "RelayError",
    "RemoteFunctionError",
    "degraded_response",
    "LocalRelay",
    # Runtime
    "DeploymentDescriptor",
    "FunctionDefinition",
    "DescriptorError",
    "RuntimeHandler",
    "HandlerError",
    "NoHandlerError",
    "BuildSuccess",
    "BuildFailure",
    "HandlerRegistry",
    "FunctionBuilder",
    "BuildError",
    "WorkerSupervisor",
    "WorkerError",
    "UnknownWorkerError",
    "RuntimeServer",
    # Console
    "StateStore",
    "apply_patches",
    "InvocationHistory",
    "ConsoleServer",
    # Session
    "DevSession",
    "setup_logging",
]
