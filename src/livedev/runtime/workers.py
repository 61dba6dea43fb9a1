"""Worker supervisor

Owns the local worker for every WorkerID. A cloud worker maps to exactly one
local process, started on its first invocation:

    spawning -> running -> exited | killed

On `function.invoked` the supervisor acks the invocation, starts a worker if
the WorkerID has none, and queues the invocation for the runtime API to hand
out. Results come back through complete()/fail() from the runtime API.

A worker that exits (or is stopped) never leaves an invocation hanging: the
one it was serving and any still queued resolve as `function.error` with
errorType "WorkerExited". Workers are not restarted automatically; a
successful rebuild stops the function's workers and the next invocation for
the WorkerID starts a fresh one.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from livedev.bus.event_bus import EventBus, Subscription
from livedev.bus.events import Event, EventType
from livedev.runtime.builder import BuildError, FunctionBuilder
from livedev.runtime.handlers.base import BuildSuccess, HandlerError, RuntimeHandler, StartWorkerInput

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """Base error for worker supervision"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnknownWorkerError(WorkerError):
    """No live worker with this WorkerID"""

    def __init__(self, worker_id: str):
        super().__init__(f"Unknown worker: {worker_id}")
        self.worker_id = worker_id


class WorkerState(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class Worker:
    """Bookkeeping for one local worker"""

    def __init__(self, worker_id: str, function_id: str):
        self.worker_id = worker_id
        self.function_id = function_id
        self.state = WorkerState.SPAWNING
        self.handler: Optional[RuntimeHandler] = None
        self.artifact: Optional[BuildSuccess] = None
        self.queue: Deque[Event] = deque()
        self.current: Optional[Event] = None
        self._ready = asyncio.Event()
        self._partial = ""

    @property
    def alive(self) -> bool:
        return self.state in (WorkerState.SPAWNING, WorkerState.RUNNING)

    @property
    def request_id(self) -> Optional[str]:
        return self.current.properties["requestID"] if self.current is not None else None

    def enqueue(self, event: Event) -> None:
        self.queue.append(event)
        self._ready.set()

    async def next(self) -> Event:
        while not self.queue:
            if not self.alive:
                raise UnknownWorkerError(self.worker_id)
            self._ready.clear()
            await self._ready.wait()
        self.current = self.queue.popleft()
        return self.current

    def wake(self) -> None:
        self._ready.set()

    def lines(self, text: str) -> List[str]:
        """Split output into complete lines, buffering a trailing fragment"""
        text = self._partial + text
        parts = text.split("\n")
        self._partial = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> List[str]:
        rest, self._partial = self._partial, ""
        return [rest] if rest else []


class WorkerSupervisor:
    """Starts, tracks and stops local workers; implements WorkerListener"""

    def __init__(self, bus: EventBus, builder: FunctionBuilder, runtime_api: str):
        """
        Args:
            bus: Local event bus
            builder: Provides artifacts and handlers per function
            runtime_api: host:port of the local runtime API server
        """
        self.bus = bus
        self.builder = builder
        self.runtime_api = runtime_api
        self._workers: Dict[str, Worker] = {}
        self._subscriptions: List[Subscription] = []
        self._tasks: set = set()

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self.bus.subscribe(EventType.FUNCTION_INVOKED, self._on_invoked),
            self.bus.subscribe(EventType.FUNCTION_BUILD_SUCCESS, self._on_rebuilt),
        ]

    async def stop(self) -> None:
        for sub in self._subscriptions:
            self.bus.unsubscribe(sub)
        self._subscriptions = []
        for worker_id in list(self._workers):
            await self.stop_worker(worker_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get(self, worker_id: str) -> Optional[Worker]:
        return self._workers.get(worker_id)

    def workers(self, function_id: Optional[str] = None) -> List[Worker]:
        return [w for w in self._workers.values() if function_id is None or w.function_id == function_id]

    # -------------------------------------------------------------------------
    # Invocations
    # -------------------------------------------------------------------------

    def _on_invoked(self, event: Event) -> None:
        props = event.properties
        worker_id = props["workerID"]
        self.bus.publish(EventType.FUNCTION_ACK, {
            "workerID": worker_id,
            "functionID": props["functionID"],
            "requestID": props["requestID"],
        })

        worker = self._workers.get(worker_id)
        if worker is None:
            worker = Worker(worker_id, props["functionID"])
            self._workers[worker_id] = worker
            worker.enqueue(event)
            self._spawn(self._start(worker, props.get("env") or {}))
        else:
            worker.enqueue(event)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _start(self, worker: Worker, cloud_env: Dict[str, str]) -> None:
        try:
            artifact = await self.builder.require(worker.function_id)
            handler = self.builder.handler_for(worker.function_id)
            definition = self.builder.definition(worker.function_id)
        except BuildError as e:
            self._abandon(worker, "BuildError", e.message)
            return
        except HandlerError as e:
            self._abandon(worker, "HandlerError", e.message)
            return
        except Exception as e:
            logger.exception("Preparing worker %s failed", worker.worker_id)
            self._abandon(worker, "HandlerError", str(e))
            return

        if not worker.alive:
            return

        worker.artifact = artifact

        environment = dict(definition.environment)
        environment.update(cloud_env)
        try:
            await handler.start_worker(StartWorkerInput(
                worker_id=worker.worker_id,
                function_id=worker.function_id,
                handler=artifact.handler,
                src_path=definition.src_path,
                out=artifact.out,
                runtime=definition.runtime,
                runtime_api=f"{self.runtime_api}/{worker.worker_id}",
                listener=self,
                environment=environment,
                architecture=definition.architecture,
            ))
        except HandlerError as e:
            self._abandon(worker, "HandlerError", e.message)
            return
        except Exception as e:
            logger.exception("Starting worker %s failed", worker.worker_id)
            self._abandon(worker, "HandlerError", str(e))
            return

        worker.handler = handler
        if not worker.alive:
            # Stopped while spawning
            await handler.stop_worker(worker.worker_id)
            return
        worker.state = WorkerState.RUNNING
        logger.info("Worker %s running %s", worker.worker_id, worker.function_id)
        self.bus.publish(EventType.WORKER_STARTED, {
            "workerID": worker.worker_id,
            "functionID": worker.function_id,
        })

    def _abandon(self, worker: Worker, error_type: str, message: str) -> None:
        logger.warning("Worker %s for %s not started: %s", worker.worker_id, worker.function_id, message)
        worker.state = WorkerState.EXITED
        self._workers.pop(worker.worker_id, None)
        self._fail_pending(worker, error_type, message)
        worker.wake()

    async def next_invocation(self, worker_id: str) -> Event:
        """Wait for the next invocation queued for a worker

        Raises:
            UnknownWorkerError: If the worker is unknown or has stopped
        """
        worker = self._workers.get(worker_id)
        if worker is None:
            raise UnknownWorkerError(worker_id)
        return await worker.next()

    def complete(self, worker_id: str, request_id: str, body: Any) -> None:
        worker = self._finish(worker_id, request_id)
        self.bus.publish(EventType.FUNCTION_SUCCESS, {
            "workerID": worker_id,
            "requestID": request_id,
            "functionID": worker.function_id if worker else "",
            "body": body,
        })

    def fail(self, worker_id: str, request_id: str, error_type: str, error_message: str, trace: Optional[List[str]] = None) -> None:
        worker = self._finish(worker_id, request_id)
        self.bus.publish(EventType.FUNCTION_ERROR, {
            "workerID": worker_id,
            "requestID": request_id,
            "functionID": worker.function_id if worker else "",
            "errorType": error_type,
            "errorMessage": error_message,
            "trace": list(trace or []),
        })

    def init_failed(self, worker_id: str, error_type: str, error_message: str, trace: Optional[List[str]] = None) -> None:
        """The worker could not load its handler; fail what it was given"""
        worker = self._workers.get(worker_id)
        if worker is None:
            logger.warning("Init error from unknown worker %s: %s", worker_id, error_message)
            return
        logger.warning("Worker %s failed to initialize: %s", worker_id, error_message)
        self._fail_pending(worker, error_type, error_message, trace)

    def _finish(self, worker_id: str, request_id: str) -> Optional[Worker]:
        worker = self._workers.get(worker_id)
        if worker is not None and worker.request_id == request_id:
            worker.current = None
        return worker

    def _fail_pending(self, worker: Worker, error_type: str, message: str, trace: Optional[List[str]] = None) -> None:
        pending = ([worker.current] if worker.current is not None else []) + list(worker.queue)
        worker.current = None
        worker.queue.clear()
        for event in pending:
            self.bus.publish(EventType.FUNCTION_ERROR, {
                "workerID": worker.worker_id,
                "requestID": event.properties["requestID"],
                "functionID": worker.function_id,
                "errorType": error_type,
                "errorMessage": message,
                "trace": list(trace or []),
            })

    # -------------------------------------------------------------------------
    # WorkerListener
    # -------------------------------------------------------------------------

    def stdout(self, worker_id: str, text: str) -> None:
        worker = self._workers.get(worker_id)
        if worker is None or not worker.alive:
            return
        for line in worker.lines(text):
            self._publish_line(worker, line)

    def _publish_line(self, worker: Worker, line: str) -> None:
        self.bus.publish(EventType.WORKER_STDOUT, {
            "workerID": worker.worker_id,
            "functionID": worker.function_id,
            "requestID": worker.request_id,
            "message": line,
        })

    def exited(self, worker_id: str, returncode: Optional[int]) -> None:
        worker = self._workers.pop(worker_id, None)
        if worker is None:
            return
        for line in worker.flush():
            self._publish_line(worker, line)
        worker.state = WorkerState.EXITED
        if worker.handler is not None:
            worker.handler.forget(worker_id)
        logger.info("Worker %s exited with %s", worker_id, returncode)
        self.bus.publish(EventType.WORKER_EXITED, {
            "workerID": worker_id,
            "functionID": worker.function_id,
        })
        self._fail_pending(worker, "WorkerExited", f"Worker exited with code {returncode}")
        worker.wake()

    async def stop_worker(self, worker_id: str) -> None:
        """Stop a worker; stopping an unknown or stopped worker does nothing"""
        worker = self._workers.pop(worker_id, None)
        if worker is None or not worker.alive:
            return
        worker.state = WorkerState.KILLED
        worker.wake()
        if worker.handler is not None:
            await worker.handler.stop_worker(worker_id)
        logger.info("Worker %s stopped", worker_id)
        self.bus.publish(EventType.WORKER_EXITED, {
            "workerID": worker_id,
            "functionID": worker.function_id,
        })
        self._fail_pending(worker, "WorkerExited", "Worker was stopped")

    async def _on_rebuilt(self, event: Event) -> None:
        function_id = event.properties["functionID"]
        current = self.builder.cached(function_id)
        for worker in self.workers(function_id):
            if worker.artifact is None or worker.artifact is current:
                continue
            await self.stop_worker(worker.worker_id)
