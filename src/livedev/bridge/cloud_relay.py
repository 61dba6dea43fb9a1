"""Cloud-side relay, embedded in the deployed function

Each cloud invocation is turned into a `function.invoked` event and
published on `<prefix>/events`. The relay then waits on its private topic
`<prefix>/events/<workerID>` for the local session's answer:

- `function.ack`      a local session picked the invocation up; the short
                      "no session" timer stops and the invocation deadline
                      bounds the wait from then on
- `function.success`  the body is returned to the cloud caller
- `function.error`    re-raised to the cloud caller as RemoteFunctionError

If nothing answers within the relay timeout, the caller gets a degraded
response instead of a failure so that the endpoint stays available when no
developer is attached.

Usage (deployed handler):
```python
from livedev.bridge.cloud_relay import handler  # configured from LIVEDEV_* env
```
"""

import asyncio
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from livedev.bus.events import Event, EventType
from livedev.config import CloudRelayConfig
from livedev.wire.channel import EventChannel
from livedev.wire.fragment import FragmentError
from livedev.wire.payload_store import PayloadStoreError
from livedev.wire.transport import TransportError, TransportSubscription

logger = logging.getLogger(__name__)


# Keep this much of the invocation deadline to return a response
DEADLINE_MARGIN_MS = 500

DEGRADED_BODY = (
    "This function is in live development mode but did not get a response "
    "from a local session. Start a dev session on your machine and retry. "
    "If a session is running, the transport may still be provisioning."
)

# Runtime bookkeeping that must not leak into the local worker environment
ENVIRONMENT_IGNORE = frozenset({
    "LIVEDEV_HUB_URL",
    "LIVEDEV_RELAY_TIMEOUT",
    "AWS_LAMBDA_FUNCTION_MEMORY_SIZE",
    "AWS_LAMBDA_LOG_GROUP_NAME",
    "AWS_LAMBDA_LOG_STREAM_NAME",
    "AWS_LAMBDA_RUNTIME_API",
    "AWS_LAMBDA_INITIALIZATION_TYPE",
    "AWS_EXECUTION_ENV",
    "AWS_XRAY_DAEMON_ADDRESS",
    "AWS_XRAY_CONTEXT_MISSING",
    "LD_LIBRARY_PATH",
    "LAMBDA_TASK_ROOT",
    "LAMBDA_RUNTIME_DIR",
    "PATH",
    "PWD",
    "LANG",
    "NODE_PATH",
    "PYTHONPATH",
    "TZ",
    "SHLVL",
    "_HANDLER",
    "_AWS_XRAY_DAEMON_ADDRESS",
    "_AWS_XRAY_DAEMON_PORT",
    "_LAMBDA_CONSOLE_SOCKET",
    "_LAMBDA_CONTROL_SOCKET",
    "_LAMBDA_LOG_FD",
    "_LAMBDA_RUNTIME_LOAD_TIME",
    "_LAMBDA_SB_ID",
    "_LAMBDA_SERVER_PORT",
    "_LAMBDA_SHARED_MEM_FD",
})


class RelayError(Exception):
    """Base error for the transport bridge"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RemoteFunctionError(RelayError):
    """The local worker reported an error for this invocation"""

    def __init__(self, error_type: str, error_message: str, trace: Optional[list] = None):
        super().__init__(f"{error_type}: {error_message}")
        self.error_type = error_type
        self.error_message = error_message
        self.trace = list(trace or [])


def environment_snapshot(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment of the deployed function minus runtime internals"""
    environ = os.environ if environ is None else environ
    return {key: value for key, value in environ.items() if key not in ENVIRONMENT_IGNORE}


def new_worker_id() -> str:
    return secrets.token_hex(16)


def context_to_dict(context: Any) -> Dict[str, Any]:
    """Serialize a Lambda context object"""
    if isinstance(context, dict):
        return dict(context)
    fields = {
        "awsRequestId": "aws_request_id",
        "functionName": "function_name",
        "functionVersion": "function_version",
        "invokedFunctionArn": "invoked_function_arn",
        "memoryLimitInMB": "memory_limit_in_mb",
        "logGroupName": "log_group_name",
        "logStreamName": "log_stream_name",
    }
    result = {}
    for key, attr in fields.items():
        value = getattr(context, attr, None)
        if value is not None:
            result[key] = value if isinstance(value, (str, int, float, bool)) else str(value)
    return result


def remaining_millis(context: Any, default: int = 60_000) -> int:
    getter = getattr(context, "get_remaining_time_in_millis", None)
    if callable(getter):
        return int(getter())
    if isinstance(context, dict) and "remainingTimeInMillis" in context:
        return int(context["remainingTimeInMillis"])
    return default


def request_id_of(context: Any) -> str:
    if isinstance(context, dict):
        request_id = context.get("awsRequestId")
    else:
        request_id = getattr(context, "aws_request_id", None)
    return str(request_id) if request_id else secrets.token_hex(16)


@dataclass
class _PendingResult:
    """Watcher for one in-flight invocation"""
    result: asyncio.Future
    acked: asyncio.Event = field(default_factory=asyncio.Event)


class CloudRelay:
    """Forwards cloud invocations to the local session and awaits the result"""

    def __init__(self, config: CloudRelayConfig, channel: EventChannel, worker_id: Optional[str] = None):
        self.config = config
        self.channel = channel
        self.worker_id = worker_id or new_worker_id()
        self._pending: Dict[Tuple[str, str], _PendingResult] = {}
        self._subscription: Optional[TransportSubscription] = None

    @property
    def request_topic(self) -> str:
        return f"{self.config.topic_prefix}/events"

    @property
    def reply_topic(self) -> str:
        return f"{self.config.topic_prefix}/events/{self.worker_id}"

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = await self.channel.listen(self.reply_topic, self._on_event)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self.channel.transport.unsubscribe(self._subscription)
            self._subscription = None
        for pending in self._pending.values():
            if not pending.result.done():
                pending.result.cancel()
        self._pending.clear()

    def _on_event(self, event: Event) -> None:
        props = event.properties
        if props.get("workerID") != self.worker_id:
            return

        if event.type == EventType.FUNCTION_ACK:
            request_id = props.get("requestID")
            for (_, pending_request), pending in self._pending.items():
                if request_id is None or request_id == pending_request:
                    pending.acked.set()
            return

        if event.type in (EventType.FUNCTION_SUCCESS, EventType.FUNCTION_ERROR):
            pending = self._pending.get((self.worker_id, props.get("requestID")))
            if pending is None:
                logger.debug("Ignoring %s for unknown request %s", event.type.value, props.get("requestID"))
                return
            if not pending.result.done():
                pending.result.set_result(event)

    async def invoke(self, event: Any, context: Any) -> Any:
        """Relay one cloud invocation and return the local result

        Returns the degraded response when the request cannot be published
        or no local session answers in time.

        Raises:
            RemoteFunctionError: If the local worker reported an error
        """
        request_id = request_id_of(context)
        remaining = remaining_millis(context)
        key = (self.worker_id, request_id)
        pending = _PendingResult(result=asyncio.get_running_loop().create_future())
        self._pending[key] = pending

        invoked = Event(EventType.FUNCTION_INVOKED, {
            "workerID": self.worker_id,
            "requestID": request_id,
            "functionID": self.config.function_id,
            "deadline": remaining,
            "event": event,
            "context": context_to_dict(context),
            "env": environment_snapshot(),
        })

        started = time.monotonic()
        try:
            try:
                await self.start()
                await self.channel.send(self.request_topic, invoked)
            except (TransportError, FragmentError, PayloadStoreError) as e:
                logger.warning("Could not publish request %s: %s", request_id, e.message)
                return degraded_response()
            result = await self._wait(pending, started, remaining)
        finally:
            self._pending.pop(key, None)

        if result is None:
            logger.warning("No local response for request %s", request_id)
            return degraded_response()

        logger.info("Got result %s for request %s", result.type.value, request_id)
        if result.type == EventType.FUNCTION_ERROR:
            props = result.properties
            raise RemoteFunctionError(props["errorType"], props["errorMessage"], props.get("trace"))
        return result.properties.get("body")

    async def _wait(self, pending: _PendingResult, started: float, remaining_ms: int) -> Optional[Event]:
        ack = asyncio.ensure_future(pending.acked.wait())
        try:
            await asyncio.wait(
                {pending.result, ack},
                timeout=self.config.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ack.cancel()

        if pending.result.done():
            return pending.result.result()
        if not pending.acked.is_set():
            return None

        elapsed_ms = (time.monotonic() - started) * 1000
        budget = (remaining_ms - elapsed_ms - DEADLINE_MARGIN_MS) / 1000
        if budget <= 0:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(pending.result), budget)
        except asyncio.TimeoutError:
            return None


def degraded_response() -> Dict[str, Any]:
    """Response returned when no local session answers in time"""
    return {"statusCode": 500, "body": DEGRADED_BODY}


# =============================================================================
# Lambda entry point
# =============================================================================

class LambdaBridge:
    """Owns the relay, its transport and a private loop for the life of the
    execution environment. Lambda calls the handler synchronously, so the
    loop is driven per invocation and stays parked between invocations.
    """

    def __init__(self, config: CloudRelayConfig):
        self.config = config
        self.loop = asyncio.new_event_loop()
        self.relay: Optional[CloudRelay] = None

    async def _connect(self) -> CloudRelay:
        from livedev.wire.hub import HubTransport
        from livedev.wire.payload_store import S3PayloadStore

        transport = await HubTransport(self.config.hub_url).connect()
        store = S3PayloadStore(self.config.payload_bucket) if self.config.payload_bucket else None
        channel = EventChannel(transport, store, offload_threshold=self.config.offload_threshold)
        relay = CloudRelay(self.config, channel)
        await relay.start()
        return relay

    def invoke(self, event: Any, context: Any) -> Any:
        if self.relay is None:
            self.relay = self.loop.run_until_complete(self._connect())
        return self.loop.run_until_complete(self.relay.invoke(event, context))


_bridge: Optional[LambdaBridge] = None


def handler(event: Any, context: Any) -> Any:
    """Deployed function handler"""
    global _bridge
    if _bridge is None:
        _bridge = LambdaBridge(CloudRelayConfig.from_env())
    return _bridge.invoke(event, context)
