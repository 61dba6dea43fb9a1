"""Websocket pub/sub hub

TransportHub is a small broker that cloud relays and local sessions connect
to over websockets. HubTransport is the client side Transport.

## Control Frames

Every websocket message is a JSON object with an "action":

- subscribe   {"action": "subscribe", "filter": str}
- unsubscribe {"action": "unsubscribe", "filter": str}
- publish     {"action": "publish", "topic": str, "payload": str}
- message     {"action": "message", "topic": str, "payload": str}  (hub -> client)
- error       {"action": "error", "message": str}                  (hub -> client)

The ceiling applies to "payload"; the hub refuses oversized publishes.

Usage:
```python
hub = TransportHub(host="0.0.0.0", port=8765)
await hub.start()

transport = HubTransport("ws://localhost:8765")
await transport.connect()
await transport.subscribe("/livedev/app/dev/events", on_message)
```
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from livedev.wire.fragment import TRANSPORT_MAX_MESSAGE
from livedev.wire.transport import (
    MessageCallback,
    MessageTooLargeError,
    Transport,
    TransportClosedError,
    TransportError,
    TransportSubscription,
    check_message_size,
    deliver,
    topic_matches,
)

logger = logging.getLogger(__name__)


# Control frame envelope allowance on top of the payload ceiling
FRAME_OVERHEAD = 4096

RECONNECT_INITIAL_DELAY = 0.5
RECONNECT_MAX_DELAY = 10.0


class _HubClient:
    """One connected websocket and its topic filters"""

    def __init__(self, ws):
        self.ws = ws
        self.filters: Set[str] = set()

    def wants(self, topic: str) -> bool:
        return any(topic_matches(f, topic) for f in self.filters)


class TransportHub:
    """Websocket broker server"""

    def __init__(self, host: str = "127.0.0.1", port: int = 0, max_message: int = TRANSPORT_MAX_MESSAGE):
        self.host = host
        self.port = port
        self.max_message = max_message
        self._clients: Set[_HubClient] = set()
        self._server = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> "TransportHub":
        self._server = await websockets.serve(
            self._handle,
            self.host,
            self.port,
            max_size=self.max_message + FRAME_OVERHEAD,
        )
        # port 0 asks the OS for a free port
        sockets = list(self._server.sockets or [])
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info("Transport hub listening on %s", self.url)
        return self

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle(self, ws) -> None:
        client = _HubClient(ws)
        self._clients.add(client)
        try:
            async for raw in ws:
                await self._handle_frame(client, raw)
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(client)

    async def _handle_frame(self, client: _HubClient, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable hub frame")
            return
        if not isinstance(frame, dict):
            logger.warning("Dropping non-object hub frame")
            return

        action = frame.get("action")
        if action == "subscribe" and isinstance(frame.get("filter"), str):
            client.filters.add(frame["filter"])
        elif action == "unsubscribe" and isinstance(frame.get("filter"), str):
            client.filters.discard(frame["filter"])
        elif action == "publish":
            topic = frame.get("topic")
            payload = frame.get("payload")
            if not isinstance(topic, str) or not isinstance(payload, str):
                logger.warning("Dropping malformed publish frame")
                return
            try:
                check_message_size(payload, self.max_message)
            except MessageTooLargeError as e:
                await _send_quietly(client.ws, {"action": "error", "message": e.message})
                return
            await self._route(topic, payload)
        else:
            logger.warning("Dropping hub frame with unknown action %r", action)

    async def _route(self, topic: str, payload: str) -> None:
        message = {"action": "message", "topic": topic, "payload": payload}
        targets = [c for c in list(self._clients) if c.wants(topic)]
        await asyncio.gather(*(_send_quietly(c.ws, message) for c in targets))


async def _send_quietly(ws, frame: Dict) -> None:
    try:
        await ws.send(json.dumps(frame))
    except ConnectionClosed:
        pass


class HubTransport(Transport):
    """Transport client for a TransportHub

    Reconnects with exponential backoff and re-sends its subscriptions after
    every reconnect. Publishes made while disconnected fail with
    TransportError; the relays above treat that like any lost message.
    """

    def __init__(self, url: str, max_message: int = TRANSPORT_MAX_MESSAGE):
        self.url = url
        self.max_message = max_message
        self._subscriptions: List[TransportSubscription] = []
        self._ws = None
        self._connected = asyncio.Event()
        self._closed = False
        self._runner: Optional[asyncio.Task] = None

    async def connect(self, timeout: float = 10.0) -> "HubTransport":
        """Start the connection loop and wait for the first connection"""
        if self._runner is None:
            self._runner = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Could not connect to hub at {self.url}")
        return self

    async def _run(self) -> None:
        delay = RECONNECT_INITIAL_DELAY
        while not self._closed:
            try:
                async with websockets.connect(self.url, max_size=self.max_message + FRAME_OVERHEAD) as ws:
                    self._ws = ws
                    for f in {s.topic_filter for s in self._subscriptions}:
                        await ws.send(json.dumps({"action": "subscribe", "filter": f}))
                    self._connected.set()
                    delay = RECONNECT_INITIAL_DELAY
                    logger.info("Connected to transport hub %s", self.url)
                    async for raw in ws:
                        await self._on_frame(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                if not self._closed:
                    logger.warning("Transport hub connection lost: %s", e)
            finally:
                self._ws = None
                self._connected.clear()
            if self._closed:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, RECONNECT_MAX_DELAY)

    async def _on_frame(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable frame from hub")
            return
        if not isinstance(frame, dict):
            return
        action = frame.get("action")
        if action == "error":
            logger.warning("Hub rejected message: %s", frame.get("message"))
            return
        if action != "message":
            return
        topic = frame.get("topic")
        payload = frame.get("payload")
        if not isinstance(topic, str) or not isinstance(payload, str):
            return
        for sub in list(self._subscriptions):
            if sub.matches(topic):
                await deliver(sub, topic, payload)

    async def _send(self, frame: Dict) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError(f"Not connected to hub at {self.url}")
        try:
            await ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise TransportError(f"Hub connection closed: {e}")

    async def publish(self, topic: str, payload: str) -> None:
        if self._closed:
            raise TransportClosedError()
        check_message_size(payload, self.max_message)
        await self._send({"action": "publish", "topic": topic, "payload": payload})

    async def subscribe(self, topic_filter: str, callback: MessageCallback) -> TransportSubscription:
        if self._closed:
            raise TransportClosedError()
        sub = TransportSubscription(topic_filter, callback)
        self._subscriptions.append(sub)
        if self._ws is not None:
            await self._send({"action": "subscribe", "filter": topic_filter})
        return sub

    async def unsubscribe(self, subscription: TransportSubscription) -> None:
        self._subscriptions = [s for s in self._subscriptions if s is not subscription]
        still_wanted = any(s.topic_filter == subscription.topic_filter for s in self._subscriptions)
        if not still_wanted and self._ws is not None:
            try:
                await self._send({"action": "unsubscribe", "filter": subscription.topic_filter})
            except TransportError as e:
                # the hub forgets filters of dropped connections
                logger.debug("Unsubscribe from %s not sent: %s", subscription.topic_filter, e.message)

    async def close(self) -> None:
        self._closed = True
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._runner is not None:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None
