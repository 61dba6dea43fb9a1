"""Run an ASGI app with uvicorn inside the session's event loop"""

import asyncio
import logging
from typing import Optional

import uvicorn

logger = logging.getLogger(__name__)


class ServerError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackgroundServer:
    """uvicorn.Server started as a task on the running loop"""

    def __init__(self, app, host: str, port: int, name: str = "server",
                 ssl_certfile: Optional[str] = None, ssl_keyfile: Optional[str] = None):
        self.name = name
        self.host = host
        self.port = port
        self.secure = ssl_certfile is not None
        self._server = uvicorn.Server(uvicorn.Config(
            app,
            host=host,
            port=port,
            ssl_certfile=ssl_certfile,
            ssl_keyfile=ssl_keyfile,
            log_level="warning",
            lifespan="off",
            ws="websockets",
            timeout_graceful_shutdown=2,
        ))
        self._task: Optional[asyncio.Task] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def scheme(self) -> str:
        return "https" if self.secure else "http"

    async def start(self, timeout: float = 10.0) -> "BackgroundServer":
        """Start serving and wait until the socket is bound

        Raises:
            ServerError: If the server fails to start in time
        """
        self._task = asyncio.ensure_future(self._server.serve())
        deadline = asyncio.get_running_loop().time() + timeout
        while not self._server.started:
            if self._task.done():
                raise ServerError(f"{self.name} failed to start on {self.address}")
            if asyncio.get_running_loop().time() > deadline:
                raise ServerError(f"{self.name} did not start within {timeout}s")
            await asyncio.sleep(0.01)

        if self.port == 0:
            for server in self._server.servers:
                for sock in server.sockets:
                    self.port = sock.getsockname()[1]
                    break
        logger.info("%s listening on %s://%s", self.name, self.scheme, self.address)
        return self

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._task = None
