"""Transport bridge between the deployed function and the local session"""

from livedev.bridge.cloud_relay import (
    CloudRelay,
    LambdaBridge,
    RelayError,
    RemoteFunctionError,
    degraded_response,
    environment_snapshot,
    handler,
)
from livedev.bridge.local_relay import LocalRelay
