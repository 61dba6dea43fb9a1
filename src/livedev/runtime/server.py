"""Local Lambda Runtime API

Workers find this server through AWS_LAMBDA_RUNTIME_API, which is set to
`<host>:<port>/<workerID>`, so every route is scoped to one worker:

    GET  /<workerID>/2018-06-01/runtime/invocation/next
    POST /<workerID>/2018-06-01/runtime/invocation/<requestID>/response
    POST /<workerID>/2018-06-01/runtime/invocation/<requestID>/error
    POST /<workerID>/2018-06-01/runtime/init/error

`next` long-polls until the supervisor queues an invocation for the worker.
A worker that has been stopped gets 410 and is expected to exit.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from livedev.runtime.workers import UnknownWorkerError, WorkerSupervisor
from livedev.serve import BackgroundServer

logger = logging.getLogger(__name__)

API_VERSION = "2018-06-01"
PREFIX = f"/{{worker_id}}/{API_VERSION}/runtime"


class RuntimeErrorPayload(BaseModel):
    """Error body posted by a worker"""

    errorType: str = "Error"
    errorMessage: str = ""
    stackTrace: List[str] = Field(default_factory=list)


def invocation_headers(properties: Dict[str, Any]) -> Dict[str, str]:
    context = properties.get("context") or {}
    deadline_ms = int(time.time() * 1000) + int(properties.get("deadline") or 0)
    headers = {
        "Lambda-Runtime-Aws-Request-Id": properties["requestID"],
        "Lambda-Runtime-Deadline-Ms": str(deadline_ms),
        "Lambda-Runtime-Invoked-Function-Arn": str(context.get("invokedFunctionArn") or ""),
    }
    if context.get("clientContext") is not None:
        headers["Lambda-Runtime-Client-Context"] = json.dumps(context["clientContext"])
    if context.get("identity") is not None:
        headers["Lambda-Runtime-Cognito-Identity"] = json.dumps(context["identity"])
    return headers


def _gone(worker_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=410,
        content={"errorType": "WorkerGone", "errorMessage": f"Worker {worker_id} is not running"},
    )


def _accepted() -> JSONResponse:
    return JSONResponse(status_code=202, content={"status": "OK"})


def create_runtime_app(supervisor: WorkerSupervisor) -> FastAPI:
    app = FastAPI(title="livedev runtime API", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(PREFIX + "/invocation/next")
    async def next_invocation(worker_id: str):
        try:
            event = await supervisor.next_invocation(worker_id)
        except UnknownWorkerError:
            return _gone(worker_id)
        props = event.properties
        logger.debug("Worker %s took request %s", worker_id, props["requestID"])
        return JSONResponse(content=props.get("event"), headers=invocation_headers(props))

    @app.post(PREFIX + "/invocation/{request_id}/response")
    async def invocation_response(worker_id: str, request_id: str, request: Request):
        raw = await request.body()
        body: Optional[Any]
        try:
            body = json.loads(raw) if raw else None
        except ValueError:
            body = raw.decode("utf-8", errors="replace")
        supervisor.complete(worker_id, request_id, body)
        return _accepted()

    @app.post(PREFIX + "/invocation/{request_id}/error")
    async def invocation_error(worker_id: str, request_id: str, payload: RuntimeErrorPayload):
        supervisor.fail(worker_id, request_id, payload.errorType, payload.errorMessage, payload.stackTrace)
        return _accepted()

    @app.post(PREFIX + "/init/error")
    async def init_error(worker_id: str, payload: RuntimeErrorPayload):
        supervisor.init_failed(worker_id, payload.errorType, payload.errorMessage, payload.stackTrace)
        return _accepted()

    return app


class RuntimeServer(BackgroundServer):
    """Runtime API bound to the loopback interface"""

    def __init__(self, supervisor: WorkerSupervisor, host: str = "127.0.0.1", port: int = 0):
        super().__init__(create_runtime_app(supervisor), host, port, name="runtime API")
