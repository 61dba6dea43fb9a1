"""Local control-plane server

HTTP and websocket surface the browser console talks to:

- `/ping`                      CORS health check
- `/proxy/<scheme>//<host>...`  forwards any request to the target URL and
                                streams the answer back with CORS headers
- `/socket`                    invocation stream: `cli.dev`, the replayed
                                history, then `invocation` pushes; accepts
                                `log.cleared {source}`
- `/`                          state stream: `state.snapshot`, then
                                `state.patches` batches

Both websockets reject origins outside the allow-list.

Bus events are mirrored two ways: the invocation object is pushed at once
to `/socket` observers for log tailing, and the matching FunctionState is
updated through the StateStore so `/` observers get diffed patches.
"""

import asyncio
import copy
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlsplit

import httpx
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from livedev.bus.event_bus import EventBus, Subscription
from livedev.bus.events import Event, EventType
from livedev.config import DevConfig
from livedev.console.history import Invocation, InvocationHistory
from livedev.console.state import MAX_FUNCTION_INVOCATIONS, StateStore
from livedev.serve import BackgroundServer

logger = logging.getLogger(__name__)

PROXY_PREFIX = "/proxy/"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_METHODS = "GET, PUT, PATCH, POST, DELETE"

# Never forwarded in either direction
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# WebSocket close code for policy violations
POLICY_VIOLATION = 1008


def now_ms() -> int:
    return int(time.time() * 1000)


def origin_allowed(origin: Optional[str], allowed: List[str]) -> bool:
    """True if the origin's host[:port] is an allow-list entry or a subdomain of one"""
    if not origin:
        return False
    netloc = urlsplit(origin).netloc.lower()
    if not netloc:
        return False
    for entry in allowed:
        entry = entry.lower()
        if netloc == entry or netloc.endswith("." + entry):
            return True
    return False


def cors_headers(request: Request) -> Dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": CORS_METHODS,
    }
    requested = request.headers.get("access-control-request-headers")
    if requested:
        headers["Access-Control-Allow-Headers"] = requested
    return headers


def proxy_target(request: Request) -> str:
    """Target URL of a /proxy request, query string included"""
    raw = request.scope.get("raw_path")
    path = raw.decode("latin-1").split("?", 1)[0] if raw else request.url.path
    target = path[len(PROXY_PREFIX):]
    match = re.match(r"^(https?):/+(.*)$", target)
    if match:
        target = f"{match.group(1)}://{match.group(2)}"
    query = request.url.query
    return f"{target}?{query}" if query else target


class ObserverConnection:
    """One websocket observer; messages are sent in push order"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None

    def push(self, message: Dict[str, Any]) -> None:
        self._queue.put_nowait(message)

    def start(self) -> None:
        self._sender = asyncio.ensure_future(self._send_loop())

    async def _send_loop(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Observer went away: %s", e)
                return

    async def close(self) -> None:
        if self._sender is None:
            return
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._sender, 1.0)
        except asyncio.TimeoutError:
            self._sender.cancel()
        self._sender = None


class ConsoleServer:
    """Control-plane HTTP/websocket server for browser observers"""

    def __init__(
        self,
        bus: EventBus,
        config: DevConfig,
        store: Optional[StateStore] = None,
        proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            bus: Local event bus
            config: Session configuration (identity, origins, history size)
            store: State store, created from config if not given
            proxy_transport: httpx transport for proxied requests (tests)
        """
        self.bus = bus
        self.config = config
        self.store = store or StateStore(bus, config.app, config.stage, config.live)
        self.history = InvocationHistory(config.history_limit)
        self.app = self._create_app()
        self._proxy_transport = proxy_transport
        self._client: Optional[httpx.AsyncClient] = None
        self._invocation_observers: Set[ObserverConnection] = set()
        self._state_observers: Set[ObserverConnection] = set()
        self._running_workers: Dict[str, str] = {}
        self._subscriptions: List[Subscription] = []
        self._server: Optional[BackgroundServer] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to the bus"""
        if self._subscriptions:
            return
        handlers = {
            EventType.FUNCTION_INVOKED: self._on_invoked,
            EventType.WORKER_STDOUT: self._on_stdout,
            EventType.FUNCTION_SUCCESS: self._on_success,
            EventType.FUNCTION_ERROR: self._on_error,
            EventType.FUNCTION_BUILD_STARTED: self._on_build_started,
            EventType.FUNCTION_BUILD_SUCCESS: self._on_build_success,
            EventType.FUNCTION_BUILD_FAILED: self._on_build_failed,
            EventType.WORKER_STARTED: self._on_worker_started,
            EventType.WORKER_EXITED: self._on_worker_exited,
            EventType.LOCAL_PATCHES: self._on_patches,
        }
        self._subscriptions = [self.bus.subscribe(t, h) for t, h in handlers.items()]

    def detach(self) -> None:
        for sub in self._subscriptions:
            self.bus.unsubscribe(sub)
        self._subscriptions = []

    async def start(self) -> "ConsoleServer":
        self.attach()
        cert, key = self.config.tls_files or (None, None)
        self._server = BackgroundServer(
            self.app,
            self.config.console_host,
            self.config.console_port,
            name="console",
            ssl_certfile=cert,
            ssl_keyfile=key,
        )
        await self._server.start()
        return self

    @property
    def port(self) -> Optional[int]:
        return self._server.port if self._server is not None else None

    async def stop(self) -> None:
        self.detach()
        for observer in list(self._invocation_observers | self._state_observers):
            await observer.close()
        if self._server is not None:
            await self._server.stop()
            self._server = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _proxy_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._proxy_transport, timeout=None, follow_redirects=False)
        return self._client

    # -------------------------------------------------------------------------
    # HTTP and websocket routes
    # -------------------------------------------------------------------------

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="livedev console", docs_url=None, redoc_url=None, openapi_url=None)

        @app.api_route("/ping", methods=PROXY_METHODS)
        async def ping(request: Request):
            return Response(status_code=200, headers=cors_headers(request))

        @app.api_route(PROXY_PREFIX + "{target:path}", methods=PROXY_METHODS)
        async def proxy(request: Request, target: str):
            return await self._proxy(request)

        @app.websocket("/socket")
        async def invocation_socket(websocket: WebSocket):
            await self._serve_invocations(websocket)

        @app.websocket("/")
        async def state_socket(websocket: WebSocket):
            await self._serve_state(websocket)

        return app

    async def _proxy(self, request: Request) -> Response:
        headers = cors_headers(request)
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=headers)

        url = proxy_target(request)
        forwarded = [
            (key, value) for key, value in request.headers.items()
            if key.lower() not in HOP_BY_HOP and key.lower() not in ("host", "content-length")
        ]
        body = await request.body() if request.method not in ("GET", "HEAD", "DELETE") else None

        client = self._proxy_client()
        try:
            upstream = await client.send(
                client.build_request(request.method, url, headers=forwarded, content=body),
                stream=True,
            )
        except httpx.InvalidURL as e:
            logger.warning("Bad proxy target %s: %s", url, e)
            return JSONResponse(status_code=400, content={"error": str(e)}, headers=headers)
        except httpx.TransportError as e:
            logger.warning("Proxy request to %s failed: %s", url, e)
            return JSONResponse(status_code=502, content={"error": str(e)}, headers=headers)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        for key, value in upstream.headers.multi_items():
            lower = key.lower()
            if lower in HOP_BY_HOP or lower.startswith("access-control-"):
                continue
            response.headers.append(key, value)
        for key, value in headers.items():
            response.headers[key] = value
        return response

    async def _admit(self, websocket: WebSocket) -> bool:
        origin = websocket.headers.get("origin")
        if not origin_allowed(origin, self.config.allowed_origins):
            logger.warning("Rejecting unauthorized connection from %s", origin)
            await websocket.close(code=POLICY_VIOLATION)
            return False
        await websocket.accept()
        return True

    async def _serve_invocations(self, websocket: WebSocket) -> None:
        if not await self._admit(websocket):
            return
        observer = ObserverConnection(websocket)
        observer.push({
            "type": "cli.dev",
            "properties": {
                "app": self.config.app,
                "stage": self.config.stage,
                "region": self.config.region,
            },
        })
        for invocation in self.history:
            observer.push({"type": "invocation", "properties": [copy.deepcopy(invocation)]})
        self._invocation_observers.add(observer)
        observer.start()
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError as e:
                    logger.warning("Ignoring malformed observer message: %s", e)
                    continue
                self._on_observer_message(observer, message)
        except WebSocketDisconnect:
            pass
        finally:
            self._invocation_observers.discard(observer)
            await observer.close()

    def _on_observer_message(self, sender: ObserverConnection, message: Any) -> None:
        if not isinstance(message, dict) or message.get("type") != "log.cleared":
            logger.debug("Ignoring observer message %r", message)
            return
        properties = message.get("properties") or {}
        source = properties.get("source", "all")
        removed = self.history.clear(source)
        logger.info("Cleared %d invocations for %s", removed, source)
        for observer in self._invocation_observers:
            if observer is not sender:
                observer.push({"type": "log.cleared", "properties": {"source": source}})

    async def _serve_state(self, websocket: WebSocket) -> None:
        if not await self._admit(websocket):
            return
        # Patches still pending are already in the snapshot
        self.store.flush()
        observer = ObserverConnection(websocket)
        observer.push({"type": "state.snapshot", "properties": self.store.snapshot()})
        self._state_observers.add(observer)
        observer.start()
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self._state_observers.discard(observer)
            await observer.close()

    # -------------------------------------------------------------------------
    # Bus handlers
    # -------------------------------------------------------------------------

    def _publish_invocation(self, invocation: Invocation) -> None:
        self.history.upsert(invocation)
        message = {"type": "invocation", "properties": [copy.deepcopy(invocation)]}
        for observer in self._invocation_observers:
            observer.push(message)

    def _on_patches(self, event: Event) -> None:
        message = {"type": "state.patches", "properties": event.properties["patches"]}
        for observer in self._state_observers:
            observer.push(message)

    def _on_invoked(self, event: Event) -> None:
        props = event.properties
        start = now_ms()
        cold = props["workerID"] not in self._running_workers
        self._publish_invocation({
            "id": props["requestID"],
            "source": props["functionID"],
            "cold": cold,
            "input": props["event"],
            "errors": [],
            "start": start,
            "logs": [],
        })

        def mutate(function: Dict[str, Any]) -> None:
            if len(function["invocations"]) >= MAX_FUNCTION_INVOCATIONS:
                function["invocations"].pop()
            function["invocations"].insert(0, {
                "id": props["requestID"],
                "request": props["event"],
                "times": {"start": start},
                "logs": [],
            })
            if cold and function["state"] == "idle":
                function["state"] = "starting"

        self.store.update_function(props["functionID"], mutate)

    def _on_stdout(self, event: Event) -> None:
        props = event.properties
        request_id = props.get("requestID")
        timestamp = now_ms()
        invocation = self.history.find(request_id) if request_id else None
        if invocation is not None:
            invocation["logs"].append({
                "id": uuid.uuid4().hex,
                "timestamp": timestamp,
                "message": props["message"],
            })
            self._publish_invocation(invocation)

        def mutate(function: Dict[str, Any]) -> None:
            entry = _find_entry(function, request_id)
            if entry is not None:
                entry["logs"].append({"timestamp": timestamp, "message": props["message"]})

        self.store.update_function(props["functionID"], mutate)

    def _finish_invocation(self, invocation: Invocation) -> None:
        invocation["end"] = now_ms()
        invocation["report"] = {
            "duration": invocation["end"] - invocation["start"],
            "size": 0,
            "memory": 0,
            "xray": "",
        }

    def _on_success(self, event: Event) -> None:
        props = event.properties
        invocation = self.history.find(props["requestID"])
        if invocation is not None:
            invocation["output"] = props.get("body")
            self._finish_invocation(invocation)
            self._publish_invocation(invocation)

        def mutate(function: Dict[str, Any]) -> None:
            entry = _find_entry(function, props["requestID"])
            if entry is None:
                return
            entry["response"] = {"type": "success", "data": props.get("body")}
            entry["times"]["end"] = now_ms()

        self.store.update_function(props["functionID"], mutate)

    def _on_error(self, event: Event) -> None:
        props = event.properties
        trace = props.get("trace") or []
        invocation = self.history.find(props["requestID"])
        if invocation is not None:
            invocation["errors"].append({
                "id": invocation["id"],
                "error": props["errorType"],
                "message": props["errorMessage"],
                "stack": [{"raw": line} for line in trace],
            })
            self._finish_invocation(invocation)
            self._publish_invocation(invocation)

        def mutate(function: Dict[str, Any]) -> None:
            entry = _find_entry(function, props["requestID"])
            if entry is None:
                return
            entry["response"] = {
                "type": "failure",
                "error": {"errorMessage": props["errorMessage"], "stackTrace": list(trace)},
            }
            entry["times"]["end"] = now_ms()

        self.store.update_function(props["functionID"], mutate)

    def _settled_state(self, function_id: str) -> str:
        return "running" if function_id in self._running_workers.values() else "idle"

    def _on_build_started(self, event: Event) -> None:
        def mutate(function: Dict[str, Any]) -> None:
            function["state"] = "building"

        self.store.update_function(event.properties["functionID"], mutate)

    def _on_build_success(self, event: Event) -> None:
        function_id = event.properties["functionID"]

        def mutate(function: Dict[str, Any]) -> None:
            function["issues"].pop("build", None)
            function["state"] = self._settled_state(function_id)

        self.store.update_function(function_id, mutate)

    def _on_build_failed(self, event: Event) -> None:
        function_id = event.properties["functionID"]

        def mutate(function: Dict[str, Any]) -> None:
            function["issues"]["build"] = list(event.properties["errors"])
            function["state"] = self._settled_state(function_id)

        self.store.update_function(function_id, mutate)

    def _on_worker_started(self, event: Event) -> None:
        function_id = event.properties["functionID"]
        self._running_workers[event.properties["workerID"]] = function_id

        def mutate(function: Dict[str, Any]) -> None:
            function["warm"] = True
            function["state"] = "running"

        self.store.update_function(function_id, mutate)

    def _on_worker_exited(self, event: Event) -> None:
        function_id = event.properties["functionID"]
        self._running_workers.pop(event.properties["workerID"], None)
        warm = function_id in self._running_workers.values()

        def mutate(function: Dict[str, Any]) -> None:
            function["warm"] = warm
            if not warm and function["state"] == "running":
                function["state"] = "idle"

        self.store.update_function(function_id, mutate)


def _find_entry(function: Dict[str, Any], request_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if request_id is None:
        return None
    for entry in function["invocations"]:
        if entry["id"] == request_id:
            return entry
    return None
