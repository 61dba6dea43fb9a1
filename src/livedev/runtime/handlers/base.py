"""Runtime handler contract

A RuntimeHandler knows how to build one family of runtimes (node, python,
go, java) from the developer's source tree and how to run the result as a
local worker process that talks to the local runtime API.

Workers are plain child processes. Their stdout and stderr lines and their
exit are reported to a WorkerListener (the supervisor) which owns the
worker lifecycle; handlers only own the OS process.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


# Seconds to wait for a worker to exit after SIGTERM before SIGKILL
STOP_GRACE_PERIOD = 2.0

# Bytes read from a worker pipe at a time; lines may be longer
READ_CHUNK_SIZE = 65536


class HandlerError(Exception):
    """Base error for runtime handlers"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoHandlerError(HandlerError):
    """No registered handler accepts the runtime"""

    def __init__(self, runtime: str):
        super().__init__(f"No handler for runtime: {runtime}")
        self.runtime = runtime


class WorkerListener(Protocol):
    """Receives output and exit notifications for worker processes"""

    def stdout(self, worker_id: str, text: str) -> None: ...

    def exited(self, worker_id: str, returncode: Optional[int]) -> None: ...


@dataclass
class BuildInput:
    function_id: str
    handler: str
    src_path: str
    runtime: str
    out: str
    environment: Dict[str, str] = field(default_factory=dict)
    architecture: str = "x86_64"


@dataclass
class BuildSuccess:
    """Built artifact; `handler` is what start_worker needs to run it"""
    handler: str
    out: str
    sources: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True


@dataclass
class BuildFailure:
    errors: List[str]

    @property
    def ok(self) -> bool:
        return False


BuildResult = Union[BuildSuccess, BuildFailure]


@dataclass
class StartWorkerInput:
    worker_id: str
    function_id: str
    handler: str
    src_path: str
    out: str
    runtime: str
    runtime_api: str
    listener: WorkerListener
    environment: Dict[str, str] = field(default_factory=dict)
    architecture: str = "x86_64"


def is_child(parent: str, path: str) -> bool:
    """True if path is parent itself or somewhere below it"""
    parent = os.path.abspath(parent)
    path = os.path.abspath(path)
    try:
        return os.path.commonpath([parent, path]) == parent
    except ValueError:
        return False


def worker_environment(input: StartWorkerInput, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(input.environment)
    env.update({
        "AWS_LAMBDA_RUNTIME_API": input.runtime_api,
        "LIVEDEV_WORKER_ID": input.worker_id,
        "LIVEDEV_FUNCTION_ID": input.function_id,
        "IS_LOCAL": "true",
    })
    env.update(extra or {})
    return env


async def run_command(argv: Sequence[str], cwd: str, env: Optional[Dict[str, str]] = None) -> Tuple[int, List[str]]:
    """Run a build command to completion, returns (returncode, output lines)

    Raises:
        HandlerError: If the command could not be started
    """
    logger.debug("Running %s in %s", " ".join(argv), cwd)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise HandlerError(f"Could not run {argv[0]}: {e}")
    output, _ = await process.communicate()
    lines = output.decode("utf-8", errors="replace").splitlines()
    return process.returncode, lines


class WorkerProcess:
    """A running worker and the tasks pumping its output"""

    def __init__(self, worker_id: str, process: asyncio.subprocess.Process, listener: WorkerListener):
        self.worker_id = worker_id
        self.process = process
        self.listener = listener
        self.stopped = False
        self._pumps = [
            asyncio.ensure_future(self._pump(process.stdout)),
            asyncio.ensure_future(self._pump(process.stderr)),
        ]
        self._waiter = asyncio.ensure_future(self._wait())

    async def _pump(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        # Lines are cut here, per stream, so stdout and stderr never interleave mid-line
        pending = bytearray()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending.extend(chunk)
            end = pending.rfind(b"\n")
            if end < 0:
                continue
            complete = bytes(pending[:end + 1])
            del pending[:end + 1]
            self._emit(complete)
        if pending:
            self._emit(bytes(pending))

    def _emit(self, data: bytes) -> None:
        if not self.stopped:
            self.listener.stdout(self.worker_id, data.decode("utf-8", errors="replace"))

    async def _wait(self) -> None:
        returncode = await self.process.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        if not self.stopped:
            self.listener.exited(self.worker_id, returncode)

    async def stop(self) -> None:
        """Terminate the process; no further output or exit is reported"""
        self.stopped = True
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), STOP_GRACE_PERIOD)
            except asyncio.TimeoutError:
                logger.warning("Worker %s ignored SIGTERM, killing", self.worker_id)
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
                await self.process.wait()
        await asyncio.gather(self._waiter, *self._pumps, return_exceptions=True)


class RuntimeHandler(ABC):
    """Build and run functions of one runtime family"""

    name = "runtime"

    def __init__(self):
        self._workers: Dict[str, WorkerProcess] = {}
        self._sources: Dict[str, str] = {}

    @abstractmethod
    def can_handle(self, runtime: str) -> bool:
        pass

    def should_build(self, function_id: str, file: str) -> bool:
        """True if a change to file affects the last build of function_id"""
        root = self._sources.get(function_id)
        if root is None:
            return False
        return is_child(root, file)

    async def build(self, input: BuildInput) -> BuildResult:
        """Build a function; errors are returned, never raised"""
        try:
            result = await self._build(input)
        except HandlerError as e:
            return BuildFailure(errors=[e.message])
        except OSError as e:
            return BuildFailure(errors=[str(e)])
        except Exception as e:
            logger.exception("Unexpected error building %s", input.function_id)
            return BuildFailure(errors=[f"{type(e).__name__}: {e}"])
        if isinstance(result, BuildSuccess):
            self._sources[input.function_id] = self.source_root(input)
        return result

    def source_root(self, input: BuildInput) -> str:
        return os.path.abspath(input.src_path)

    @abstractmethod
    async def _build(self, input: BuildInput) -> BuildResult:
        pass

    @abstractmethod
    def command(self, input: StartWorkerInput) -> Tuple[List[str], str, Dict[str, str]]:
        """Worker argv, working directory and extra environment"""

    async def start_worker(self, input: StartWorkerInput) -> None:
        """Spawn the worker process for input.worker_id

        Raises:
            HandlerError: If the process could not be started
        """
        argv, cwd, extra = self.command(input)
        env = worker_environment(input, extra)
        logger.info("Starting %s worker %s: %s", self.name, input.worker_id, " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise HandlerError(f"Could not start {argv[0]}: {e}")
        self._workers[input.worker_id] = WorkerProcess(input.worker_id, process, input.listener)

    async def stop_worker(self, worker_id: str) -> None:
        worker = self._workers.pop(worker_id, None)
        if worker is None:
            return
        await worker.stop()

    def forget(self, worker_id: str) -> None:
        """Drop bookkeeping for a worker that exited on its own"""
        self._workers.pop(worker_id, None)
