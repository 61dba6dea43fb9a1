"""A local live development session

Wires the pieces together on one event loop:

    transport -> LocalRelay -> EventBus -> WorkerSupervisor -> worker process
                                  |              ^
                                  |        runtime API server
                                  v
                           ConsoleServer (observers)

Usage:
```python
config = DevConfig(app="notes", stage="dev")
async with DevSession(config) as session:
    await session.wait_closed()
```
"""

import asyncio
import logging
from typing import Optional

import httpx

from livedev.bridge.local_relay import LocalRelay
from livedev.bus.event_bus import EventBus
from livedev.config import DevConfig
from livedev.console.server import ConsoleServer
from livedev.runtime.builder import FunctionBuilder
from livedev.runtime.functions import DeploymentDescriptor
from livedev.runtime.registry import HandlerRegistry
from livedev.runtime.server import RuntimeServer
from livedev.runtime.watcher import SourceWatcher
from livedev.runtime.workers import WorkerSupervisor
from livedev.wire.channel import EventChannel
from livedev.wire.payload_store import PayloadStore, S3PayloadStore
from livedev.wire.transport import Transport

logger = logging.getLogger(__name__)


class DevSession:
    """Owns every component of a running dev session"""

    def __init__(
        self,
        config: DevConfig,
        descriptor: Optional[DeploymentDescriptor] = None,
        transport: Optional[Transport] = None,
        payload_store: Optional[PayloadStore] = None,
        registry: Optional[HandlerRegistry] = None,
        watch: bool = True,
        console: bool = True,
        proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            config: Session configuration
            descriptor: Functions to serve; loaded from config.descriptor_path if None
            transport: Pub/sub transport; a HubTransport to config.hub_url if None
            payload_store: Store for offloaded payloads; S3 if config.payload_bucket is set
            registry: Runtime handlers; node, python, go and java if None
            watch: Rebuild on source changes
            console: Serve the control-plane server
            proxy_transport: httpx transport for the console proxy (tests)
        """
        self.config = config
        self.descriptor = descriptor
        self.transport = transport
        self.payload_store = payload_store
        self.registry = registry or HandlerRegistry()
        self.bus = EventBus()
        self.watch = watch
        self.serve_console = console
        self.proxy_transport = proxy_transport

        self.channel: Optional[EventChannel] = None
        self.relay: Optional[LocalRelay] = None
        self.builder: Optional[FunctionBuilder] = None
        self.supervisor: Optional[WorkerSupervisor] = None
        self.runtime_server: Optional[RuntimeServer] = None
        self.console: Optional[ConsoleServer] = None
        self.watcher: Optional[SourceWatcher] = None
        self._owns_transport = transport is None
        self._closed: Optional[asyncio.Event] = None

    async def start(self) -> "DevSession":
        """Start every component

        Raises:
            DescriptorError: If the descriptor cannot be loaded
            TransportError: If the transport cannot connect
            ServerError: If a server cannot bind its port
        """
        self._closed = asyncio.Event()
        if self.descriptor is None:
            self.descriptor = DeploymentDescriptor.load(self.config.descriptor_path)
        logger.info("Session %r with %d functions", self.config, len(self.descriptor))

        if self.transport is None:
            from livedev.wire.hub import HubTransport
            self.transport = await HubTransport(self.config.hub_url).connect()
        if self.payload_store is None and self.config.payload_bucket:
            self.payload_store = S3PayloadStore(self.config.payload_bucket, region_name=self.config.region)

        self.channel = EventChannel(self.transport, self.payload_store, offload_threshold=self.config.offload_threshold)
        self.builder = FunctionBuilder(self.bus, self.registry, self.descriptor, self.config.artifacts_root)
        self.supervisor = WorkerSupervisor(self.bus, self.builder, runtime_api="")
        self.runtime_server = RuntimeServer(self.supervisor, "127.0.0.1", self.config.runtime_port)
        await self.runtime_server.start()
        self.supervisor.runtime_api = self.runtime_server.address

        if self.serve_console:
            self.console = ConsoleServer(self.bus, self.config, proxy_transport=self.proxy_transport)
            await self.console.start()

        self.builder.start()
        self.supervisor.start()
        self.relay = LocalRelay(self.bus, self.channel, self.config.topic_prefix)
        await self.relay.start()

        if self.watch:
            self.watcher = SourceWatcher(self.bus, self.config.watch_root)
            self.watcher.start()
        logger.info("Live development ready on %s", self.config.topic_prefix)
        return self

    async def stop(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        if self.relay is not None:
            await self.relay.stop()
        if self.supervisor is not None:
            await self.supervisor.stop()
        if self.builder is not None:
            await self.builder.stop()
        if self.runtime_server is not None:
            await self.runtime_server.stop()
        if self.console is not None:
            await self.console.stop()
        if self.channel is not None:
            await self.channel.close()
        if self.transport is not None and self._owns_transport:
            await self.transport.close()
        await self.bus.drain()
        if self._closed is not None:
            self._closed.set()
        logger.info("Session stopped")

    async def wait_closed(self) -> None:
        if self._closed is not None:
            await self._closed.wait()

    async def __aenter__(self) -> "DevSession":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
