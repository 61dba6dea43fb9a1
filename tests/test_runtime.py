"""Tests for the descriptor, runtime handlers, builder, supervisor and runtime API (TEST080-TEST118)"""

import asyncio
import json
import os
import sys
import zipfile

import httpx
import pytest

from livedev.bus.event_bus import EventBus
from livedev.bus.events import EventType
from livedev.runtime.builder import BuildError, FunctionBuilder
from livedev.runtime.functions import DeploymentDescriptor, DescriptorError, FunctionDefinition
from livedev.runtime.handlers.base import (
    BuildFailure,
    BuildInput,
    BuildSuccess,
    HandlerError,
    NoHandlerError,
    RuntimeHandler,
    StartWorkerInput,
    is_child,
    worker_environment,
)
from livedev.runtime.handlers.go import GoHandler, find_up
from livedev.runtime.handlers.java import JavaHandler, unpack_distribution
from livedev.runtime.handlers.node import NodeHandler, resolve_entry
from livedev.runtime.handlers.python import PythonHandler, split_handler
from livedev.runtime.registry import HandlerRegistry
from livedev.runtime.server import create_runtime_app, invocation_headers
from livedev.runtime.watcher import is_ignored
from livedev.runtime.workers import UnknownWorkerError, WorkerState, WorkerSupervisor


class FakeHandler(RuntimeHandler):
    """Builds instantly (or when released) and records worker starts"""

    name = "fake"

    def __init__(self, fail=False):
        super().__init__()
        self.fail = fail
        self.builds = 0
        self.gate = None
        self.started = []
        self.stopped = []

    def can_handle(self, runtime):
        return runtime == "fake"

    async def _build(self, input):
        self.builds += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            return BuildFailure(errors=["syntax error on line 1"])
        return BuildSuccess(handler=input.handler, out=input.out)

    def command(self, input):
        return ["true"], ".", {}

    async def start_worker(self, input):
        self.started.append(input)

    async def stop_worker(self, worker_id):
        self.stopped.append(worker_id)


class ScriptHandler(FakeHandler):
    """Runs a real Python child process with the given script"""

    def __init__(self, script):
        super().__init__()
        self.script = script

    def command(self, input):
        return [sys.executable, "-c", self.script], ".", {}

    start_worker = RuntimeHandler.start_worker
    stop_worker = RuntimeHandler.stop_worker


def descriptor_for(runtime="fake", src_path=".", function_id="F1", handler="index.handler"):
    return DeploymentDescriptor("notes", "dev", "us-east-1", {
        function_id: FunctionDefinition(
            function_id=function_id,
            handler=handler,
            runtime=runtime,
            src_path=str(src_path),
            environment={"TABLE": "notes"},
        ),
    })


def record(bus, *event_types):
    events = []
    for event_type in event_types:
        bus.subscribe(event_type, events.append)
    return events


def invoked(request_id="r1", worker_id="w1", function_id="F1", env=None):
    return {
        "workerID": worker_id,
        "requestID": request_id,
        "functionID": function_id,
        "deadline": 3000,
        "event": {"path": "/notes", "n": request_id},
        "context": {"awsRequestId": request_id, "invokedFunctionArn": "arn:aws:lambda:fn"},
        "env": env or {},
    }


async def wait_for(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def make_supervisor(handler, bus=None):
    bus = bus or EventBus()
    builder = FunctionBuilder(bus, HandlerRegistry([handler]), descriptor_for(), "/tmp/livedev-artifacts")
    supervisor = WorkerSupervisor(bus, builder, runtime_api="127.0.0.1:12557")
    return bus, builder, supervisor


# =============================================================================
# Descriptor
# =============================================================================

# TEST080: The descriptor loads functions and resolves relative srcPath against the working directory
def test_descriptor_load(tmp_path, monkeypatch):
    path = tmp_path / "functions.json"
    path.write_text(json.dumps({
        "app": "notes",
        "stage": "dev",
        "functions": [
            {"functionID": "F1", "handler": "src/get.handler", "runtime": "python3.12", "srcPath": "services"},
            {"functionID": "F2", "handler": "main.go", "runtime": "go1.x", "environment": {"N": 1}},
        ],
    }))
    monkeypatch.chdir(tmp_path)

    descriptor = DeploymentDescriptor.load(str(path))
    assert len(descriptor) == 2
    assert descriptor.get("F1").src_path == os.path.join(os.getcwd(), "services")
    assert descriptor.get("F2").environment == {"N": "1"}
    assert descriptor.region == "us-east-1"
    assert descriptor.get("missing") is None


# TEST081: Malformed descriptors raise DescriptorError
def test_descriptor_errors(tmp_path):
    with pytest.raises(DescriptorError):
        DeploymentDescriptor.load(str(tmp_path / "nope.json"))

    bad = tmp_path / "bad.json"
    bad.write_text("{")
    with pytest.raises(DescriptorError):
        DeploymentDescriptor.load(str(bad))

    with pytest.raises(DescriptorError):
        DeploymentDescriptor.from_dict({"functions": [{"functionID": "F1", "runtime": "nodejs20.x"}]})
    with pytest.raises(DescriptorError):
        DeploymentDescriptor.from_dict({"functions": {"F1": {}}})


# TEST082: FunctionDefinition round-trips through its wire form
def test_function_definition_dict():
    data = {
        "functionID": "F1", "handler": "a.b", "runtime": "nodejs20.x",
        "srcPath": "svc", "environment": {"K": "V"}, "architecture": "arm64",
    }
    assert FunctionDefinition.from_dict(data).to_dict() == data


# =============================================================================
# Handlers
# =============================================================================

# TEST083: is_child accepts the directory itself and descendants only
def test_is_child(tmp_path):
    root = str(tmp_path / "svc")
    assert is_child(root, root)
    assert is_child(root, os.path.join(root, "a", "b.py"))
    assert not is_child(root, str(tmp_path / "svc-other" / "b.py"))
    assert not is_child(root, str(tmp_path))


# TEST084: Worker environment carries the runtime API and worker identity
def test_worker_environment():
    env = worker_environment(StartWorkerInput(
        worker_id="w1", function_id="F1", handler="h", src_path=".", out=".",
        runtime="fake", runtime_api="127.0.0.1:1/w1", listener=None,
        environment={"TABLE": "notes"},
    ), {"EXTRA": "1"})
    assert env["AWS_LAMBDA_RUNTIME_API"] == "127.0.0.1:1/w1"
    assert env["LIVEDEV_WORKER_ID"] == "w1"
    assert env["LIVEDEV_FUNCTION_ID"] == "F1"
    assert env["IS_LOCAL"] == "true"
    assert env["TABLE"] == "notes"
    assert env["EXTRA"] == "1"


# TEST085: The registry picks the first handler that accepts a runtime
def test_registry_first_match():
    registry = HandlerRegistry()
    assert isinstance(registry.for_runtime("nodejs20.x"), NodeHandler)
    assert isinstance(registry.for_runtime("python3.12"), PythonHandler)
    assert isinstance(registry.for_runtime("go1.x"), GoHandler)
    assert isinstance(registry.for_runtime("java21"), JavaHandler)

    override = FakeHandler()
    override.can_handle = lambda runtime: runtime.startswith("python")
    registry.register(override, first=True)
    assert registry.for_runtime("python3.12") is override

    with pytest.raises(NoHandlerError) as exc:
        registry.for_runtime("rust")
    assert exc.value.runtime == "rust"
    assert registry.find("rust") is None


# TEST086: Python builds succeed for a compiling module and fail for missing or broken ones
@pytest.mark.asyncio
async def test_python_build(tmp_path):
    src = tmp_path / "svc"
    (src / "src").mkdir(parents=True)
    (src / "src" / "get.py").write_text("def handler(event, context):\n    return 1\n")
    (src / "src" / "bad.py").write_text("def handler(:\n")
    handler = PythonHandler()

    def build_input(name):
        return BuildInput(function_id="F1", handler=name, src_path=str(src), runtime="python3.12", out=str(tmp_path / "out"))

    ok = await handler.build(build_input("src/get.handler"))
    assert ok.ok and ok.handler == "src/get.handler"

    broken = await handler.build(build_input("src/bad.handler"))
    assert not broken.ok
    assert "bad.py:1" in broken.errors[0]

    missing = await handler.build(build_input("src/nope.handler"))
    assert not missing.ok


# TEST087: Python should_build only fires for .py files under the built source root
@pytest.mark.asyncio
async def test_python_should_build(tmp_path):
    (tmp_path / "get.py").write_text("def handler(e, c):\n    return 1\n")
    handler = PythonHandler()
    assert not handler.should_build("F1", str(tmp_path / "get.py"))

    await handler.build(BuildInput(function_id="F1", handler="get.handler", src_path=str(tmp_path), runtime="python3.12", out=""))
    assert handler.should_build("F1", str(tmp_path / "get.py"))
    assert not handler.should_build("F1", str(tmp_path / "README.md"))
    assert not handler.should_build("F1", "/elsewhere/get.py")


# TEST088: split_handler and the worker command for python functions
def test_python_command(tmp_path):
    assert split_handler("src/notes/get.handler") == ("src/notes/get", "handler")
    with pytest.raises(ValueError):
        split_handler("handler")

    argv, cwd, extra = PythonHandler().command(StartWorkerInput(
        worker_id="w1", function_id="F1", handler="src/notes/get.handler", src_path=str(tmp_path),
        out="", runtime="python3.12", runtime_api="x", listener=None,
    ))
    assert argv[1:] == ["-m", "livedev.runtime.shells.python_bootstrap", "src.notes.get", "handler"]
    assert cwd == str(tmp_path)
    assert extra == {"PYTHONUNBUFFERED": "1"}


# TEST089: Node entry resolution tries .mjs, .js and .cjs and node_modules never triggers builds
def test_node_entry_and_should_build(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "get.js").write_text("export const handler = async () => 1\n")
    assert resolve_entry(str(tmp_path), "src/get.handler") == (str(tmp_path / "src" / "get.js"), "handler")
    assert resolve_entry(str(tmp_path), "src/none.handler") == ("", "handler")

    handler = NodeHandler()
    handler._sources["F1"] = str(tmp_path)
    assert handler.should_build("F1", str(tmp_path / "src" / "get.js"))
    assert not handler.should_build("F1", str(tmp_path / "node_modules" / "dep" / "index.js"))


# TEST090: A node function whose handler file is missing fails to build without running node
@pytest.mark.asyncio
async def test_node_missing_entry(tmp_path):
    result = await NodeHandler().build(BuildInput(
        function_id="F1", handler="src/none.handler", src_path=str(tmp_path), runtime="nodejs20.x", out="",
    ))
    assert not result.ok
    assert "src/none.handler" in result.errors[0]


# TEST091: Go builds locate the nearest go.mod and fail cleanly without one
@pytest.mark.asyncio
async def test_go_find_up(tmp_path):
    (tmp_path / "go.mod").write_text("module example.com/notes\n")
    (tmp_path / "cmd" / "api").mkdir(parents=True)
    assert find_up(str(tmp_path / "cmd" / "api"), "go.mod") == str(tmp_path)

    with pytest.raises(HandlerError):
        find_up(str(tmp_path / "cmd" / "api"), "does-not-exist.marker")

    orphan = tmp_path.parent / (tmp_path.name + "-orphan")
    orphan.mkdir()
    result = await GoHandler().build(BuildInput(
        function_id="F1", handler="main.go", src_path=str(orphan), runtime="go1.x", out=str(orphan / "out"),
    ))
    assert not result.ok


# TEST092: Java builds need build.gradle and only .java/.gradle edits trigger rebuilds
@pytest.mark.asyncio
async def test_java_build_checks(tmp_path):
    handler = JavaHandler()
    result = await handler.build(BuildInput(
        function_id="F1", handler="notes.Get::handleRequest", src_path=str(tmp_path), runtime="java21", out="",
    ))
    assert not result.ok
    assert "build.gradle" in result.errors[0]

    handler._sources["F1"] = str(tmp_path)
    assert handler.should_build("F1", str(tmp_path / "src" / "Get.java"))
    assert handler.should_build("F1", str(tmp_path / "build.gradle"))
    assert not handler.should_build("F1", str(tmp_path / "notes.txt"))


# TEST093: The java distribution zip is unpacked without its top-level directory
def test_java_unpack_distribution(tmp_path):
    dist = tmp_path / "distributions"
    dist.mkdir()
    with zipfile.ZipFile(dist / "app-0.0.1.zip", "w") as archive:
        archive.writestr("app-0.0.1/lib/app.jar", "jar")
        archive.writestr("app-0.0.1/bin/app", "#!/bin/sh")
    unpack_distribution(str(dist))
    assert (dist / "lib" / "app.jar").read_text() == "jar"

    with pytest.raises(HandlerError):
        unpack_distribution(str(tmp_path / "empty"))


# TEST094: Watcher ignores tool and dependency directories
def test_watcher_ignores():
    assert is_ignored("/p/node_modules/x/index.js")
    assert is_ignored("/p/.livedev/artifacts/F1/bootstrap")
    assert is_ignored("/p/src/__pycache__/get.cpython-312.pyc")
    assert not is_ignored("/p/src/get.py")


# =============================================================================
# Builder
# =============================================================================

# TEST095: A build publishes started and success and the artifact is cached
@pytest.mark.asyncio
async def test_builder_caches_artifact():
    bus = EventBus()
    handler = FakeHandler()
    builder = FunctionBuilder(bus, HandlerRegistry([handler]), descriptor_for(), "/tmp/artifacts")
    events = record(bus, EventType.FUNCTION_BUILD_STARTED, EventType.FUNCTION_BUILD_SUCCESS)

    first = await builder.artifact("F1")
    second = await builder.artifact("F1")
    assert first is second
    assert handler.builds == 1
    assert first.out == os.path.join("/tmp/artifacts", "F1")
    assert [e.type for e in events] == [EventType.FUNCTION_BUILD_STARTED, EventType.FUNCTION_BUILD_SUCCESS]


# TEST096: Concurrent requests share one in-flight build
@pytest.mark.asyncio
async def test_builder_shares_inflight_build():
    bus = EventBus()
    handler = FakeHandler()
    handler.gate = asyncio.Event()
    builder = FunctionBuilder(bus, HandlerRegistry([handler]), descriptor_for(), "/tmp/artifacts")

    waiters = [asyncio.ensure_future(builder.artifact("F1")) for _ in range(3)]
    await asyncio.sleep(0.01)
    handler.gate.set()
    results = await asyncio.gather(*waiters)

    assert handler.builds == 1
    assert all(r is results[0] for r in results)


# TEST097: Build failures are published and require() raises BuildError
@pytest.mark.asyncio
async def test_builder_failure():
    bus = EventBus()
    builder = FunctionBuilder(bus, HandlerRegistry([FakeHandler(fail=True)]), descriptor_for(), "/tmp/artifacts")
    failed = record(bus, EventType.FUNCTION_BUILD_FAILED)

    with pytest.raises(BuildError) as exc:
        await builder.require("F1")
    assert exc.value.errors == ["syntax error on line 1"]
    assert failed[0].properties == {"functionID": "F1", "errors": ["syntax error on line 1"]}
    assert builder.cached("F1") is None


# TEST098: Unknown functions and runtimes fail the build instead of raising
@pytest.mark.asyncio
async def test_builder_unknown_function_and_runtime():
    bus = EventBus()
    builder = FunctionBuilder(bus, HandlerRegistry([FakeHandler()]), descriptor_for(runtime="cobol"), "/tmp/a")

    unknown = await builder.build("F404")
    assert not unknown.ok and "F404" in unknown.errors[0]
    no_handler = await builder.build("F1")
    assert not no_handler.ok and "cobol" in no_handler.errors[0]


# TEST099: A failed rebuild keeps serving the last good artifact
@pytest.mark.asyncio
async def test_builder_failed_rebuild_keeps_artifact():
    bus = EventBus()
    handler = FakeHandler()
    builder = FunctionBuilder(bus, HandlerRegistry([handler]), descriptor_for(), "/tmp/artifacts")
    good = await builder.artifact("F1")

    handler.fail = True
    result = await builder.build("F1")
    assert not result.ok
    assert await builder.artifact("F1") is good


# TEST100: A source change under the function's root triggers a rebuild
@pytest.mark.asyncio
async def test_builder_rebuilds_on_file_change(tmp_path):
    bus = EventBus()
    handler = FakeHandler()
    builder = FunctionBuilder(bus, HandlerRegistry([handler]), descriptor_for(src_path=tmp_path), "/tmp/a")
    builder.start()
    await builder.artifact("F1")

    bus.publish(EventType.FILE_CHANGED, {"file": str(tmp_path / "index.js")})
    bus.publish(EventType.FILE_CHANGED, {"file": "/somewhere/else.js"})
    await wait_for(lambda: handler.builds == 2 and builder.cached("F1") is not None)
    await asyncio.sleep(0.05)
    assert handler.builds == 2
    await builder.stop()


# TEST101: A change during a build schedules exactly one follow-up build
@pytest.mark.asyncio
async def test_builder_dirty_rebuild(tmp_path):
    bus = EventBus()
    handler = FakeHandler()
    builder = FunctionBuilder(bus, HandlerRegistry([handler]), descriptor_for(src_path=tmp_path), "/tmp/a")
    builder.start()
    await builder.artifact("F1")

    handler.gate = asyncio.Event()
    builder.build("F1")
    await asyncio.sleep(0)
    for _ in range(3):
        bus.publish(EventType.FILE_CHANGED, {"file": str(tmp_path / "index.js")})
    handler.gate.set()

    await wait_for(lambda: handler.builds == 3)
    await asyncio.sleep(0.05)
    assert handler.builds == 3
    await builder.stop()


# =============================================================================
# Supervisor
# =============================================================================

# TEST102: An invocation is acked, starts one worker with the merged environment and is queued
@pytest.mark.asyncio
async def test_supervisor_starts_worker():
    handler = FakeHandler()
    bus, builder, supervisor = make_supervisor(handler)
    events = record(bus, EventType.FUNCTION_ACK, EventType.WORKER_STARTED)
    supervisor.start()

    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1", env={"STAGE": "dev", "TABLE": "cloud"}))
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r2"))
    await wait_for(lambda: supervisor.get("w1").state is WorkerState.RUNNING)

    assert len(handler.started) == 1
    started = handler.started[0]
    assert started.runtime_api == "127.0.0.1:12557/w1"
    assert started.environment == {"TABLE": "cloud", "STAGE": "dev"}
    assert [e.type for e in events] == [EventType.FUNCTION_ACK, EventType.FUNCTION_ACK, EventType.WORKER_STARTED]
    assert events[0].properties["requestID"] == "r1"

    first = await supervisor.next_invocation("w1")
    second = await supervisor.next_invocation("w1")
    assert [first.properties["requestID"], second.properties["requestID"]] == ["r1", "r2"]
    await supervisor.stop()


# TEST103: Results from the runtime API are published with the function id
@pytest.mark.asyncio
async def test_supervisor_complete_and_fail():
    bus, builder, supervisor = make_supervisor(FakeHandler())
    results = record(bus, EventType.FUNCTION_SUCCESS, EventType.FUNCTION_ERROR)
    supervisor.start()
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r2"))

    await supervisor.next_invocation("w1")
    supervisor.complete("w1", "r1", {"ok": True})
    await supervisor.next_invocation("w1")
    supervisor.fail("w1", "r2", "TypeError", "nope", ["line 1"])

    assert results[0].properties == {"workerID": "w1", "requestID": "r1", "functionID": "F1", "body": {"ok": True}}
    assert results[1].properties["errorType"] == "TypeError"
    assert results[1].properties["trace"] == ["line 1"]
    assert supervisor.get("w1").current is None
    await supervisor.stop()


# TEST104: A build failure fails every queued invocation with BuildError
@pytest.mark.asyncio
async def test_supervisor_build_failure():
    bus, builder, supervisor = make_supervisor(FakeHandler(fail=True))
    errors = record(bus, EventType.FUNCTION_ERROR)
    supervisor.start()

    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r2"))
    await wait_for(lambda: len(errors) == 2)

    assert {e.properties["requestID"] for e in errors} == {"r1", "r2"}
    assert all(e.properties["errorType"] == "BuildError" for e in errors)
    assert supervisor.get("w1") is None
    with pytest.raises(UnknownWorkerError):
        await supervisor.next_invocation("w1")


# TEST105: Stopping a worker fails its pending invocations, wakes pollers and is idempotent
@pytest.mark.asyncio
async def test_supervisor_stop_worker():
    handler = FakeHandler()
    bus, builder, supervisor = make_supervisor(handler)
    events = record(bus, EventType.FUNCTION_ERROR, EventType.WORKER_EXITED)
    supervisor.start()
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    await wait_for(lambda: supervisor.get("w1").state is WorkerState.RUNNING)
    await supervisor.next_invocation("w1")

    poll = asyncio.ensure_future(supervisor.next_invocation("w1"))
    await asyncio.sleep(0)
    await supervisor.stop_worker("w1")
    await supervisor.stop_worker("w1")

    with pytest.raises(UnknownWorkerError):
        await poll
    assert handler.stopped == ["w1"]
    assert [e.type for e in events] == [EventType.WORKER_EXITED, EventType.FUNCTION_ERROR]
    assert events[1].properties["errorType"] == "WorkerExited"
    await supervisor.stop()


# TEST106: A rebuild stops workers running the previous artifact, not fresh ones
@pytest.mark.asyncio
async def test_supervisor_rebuild_stops_stale_workers():
    handler = FakeHandler()
    bus, builder, supervisor = make_supervisor(handler)
    supervisor.start()
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    await wait_for(lambda: supervisor.get("w1").state is WorkerState.RUNNING)
    await bus.drain()
    assert handler.stopped == []

    await builder.build("F1")
    await bus.drain()
    assert handler.stopped == ["w1"]
    assert supervisor.get("w1") is None
    await supervisor.stop()


# TEST107: A real worker process reports output lines and its exit fails the pending invocation
@pytest.mark.asyncio
async def test_supervisor_real_process_exit():
    script = "import sys\nprint('hello')\nsys.stdout.write('partial')\nsys.stdout.flush()\nsys.exit(3)\n"
    handler = ScriptHandler(script)
    bus, builder, supervisor = make_supervisor(handler)
    events = record(bus, EventType.WORKER_STDOUT, EventType.WORKER_EXITED, EventType.FUNCTION_ERROR)
    supervisor.start()

    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    await wait_for(lambda: any(e.type is EventType.FUNCTION_ERROR for e in events))

    lines = [e.properties["message"] for e in events if e.type is EventType.WORKER_STDOUT]
    assert lines == ["hello", "partial"]
    error = [e for e in events if e.type is EventType.FUNCTION_ERROR][0]
    assert error.properties["errorType"] == "WorkerExited"
    assert "3" in error.properties["errorMessage"]
    assert supervisor.get("w1") is None
    await supervisor.stop()


# TEST108: Stopping a real worker terminates the process
@pytest.mark.asyncio
async def test_supervisor_real_process_stop():
    handler = ScriptHandler("import time\ntime.sleep(60)\n")
    bus, builder, supervisor = make_supervisor(handler)
    supervisor.start()
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    await wait_for(lambda: supervisor.get("w1") is not None and supervisor.get("w1").state is WorkerState.RUNNING)

    process = handler._workers["w1"].process
    await supervisor.stop()
    assert process.returncode is not None
    assert handler._workers == {}


# =============================================================================
# Runtime API
# =============================================================================

async def runtime_client(supervisor):
    transport = httpx.ASGITransport(app=create_runtime_app(supervisor))
    return httpx.AsyncClient(transport=transport, base_url="http://runtime")


# TEST109: Invocation headers carry the request id, deadline and ARN
def test_invocation_headers():
    headers = invocation_headers(invoked("r1"))
    assert headers["Lambda-Runtime-Aws-Request-Id"] == "r1"
    assert headers["Lambda-Runtime-Invoked-Function-Arn"] == "arn:aws:lambda:fn"
    assert int(headers["Lambda-Runtime-Deadline-Ms"]) > 3000


# TEST110: next returns the event body and the worker answers through response
@pytest.mark.asyncio
async def test_runtime_api_next_and_response():
    bus, builder, supervisor = make_supervisor(FakeHandler())
    results = record(bus, EventType.FUNCTION_SUCCESS)
    supervisor.start()
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))

    async with await runtime_client(supervisor) as client:
        response = await client.get("/w1/2018-06-01/runtime/invocation/next")
        assert response.status_code == 200
        assert response.json() == {"path": "/notes", "n": "r1"}
        assert response.headers["lambda-runtime-aws-request-id"] == "r1"

        posted = await client.post("/w1/2018-06-01/runtime/invocation/r1/response", json={"statusCode": 200})
        assert posted.status_code == 202

        text = await client.post("/w1/2018-06-01/runtime/invocation/r1/response", content=b"plain text")
        assert text.status_code == 202

    assert results[0].properties["body"] == {"statusCode": 200}
    assert results[1].properties["body"] == "plain text"
    await supervisor.stop()


# TEST111: error and init/error routes publish function.error
@pytest.mark.asyncio
async def test_runtime_api_errors():
    bus, builder, supervisor = make_supervisor(FakeHandler())
    errors = record(bus, EventType.FUNCTION_ERROR)
    supervisor.start()
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r2"))

    async with await runtime_client(supervisor) as client:
        await client.get("/w1/2018-06-01/runtime/invocation/next")
        response = await client.post("/w1/2018-06-01/runtime/invocation/r1/error", json={
            "errorType": "ValueError", "errorMessage": "bad", "stackTrace": ["a", "b"],
        })
        assert response.status_code == 202

        response = await client.post("/w1/2018-06-01/runtime/init/error", json={
            "errorType": "ImportModuleError", "errorMessage": "no module",
        })
        assert response.status_code == 202

    assert errors[0].properties["requestID"] == "r1"
    assert errors[0].properties["trace"] == ["a", "b"]
    assert errors[1].properties["requestID"] == "r2"
    assert errors[1].properties["errorType"] == "ImportModuleError"
    await supervisor.stop()


# TEST112: next answers 410 for unknown workers and for workers stopped mid-poll
@pytest.mark.asyncio
async def test_runtime_api_gone():
    bus, builder, supervisor = make_supervisor(FakeHandler())
    supervisor.start()

    async with await runtime_client(supervisor) as client:
        response = await client.get("/nobody/2018-06-01/runtime/invocation/next")
        assert response.status_code == 410

        bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
        await client.get("/w1/2018-06-01/runtime/invocation/next")
        poll = asyncio.ensure_future(client.get("/w1/2018-06-01/runtime/invocation/next"))
        await asyncio.sleep(0.05)
        await supervisor.stop_worker("w1")
        response = await asyncio.wait_for(poll, 5)
        assert response.status_code == 410
        assert response.json()["errorType"] == "WorkerGone"
    await supervisor.stop()


# TEST113: The source watcher publishes file.changed with absolute paths and skips ignored directories
@pytest.mark.asyncio
async def test_source_watcher(tmp_path):
    from livedev.runtime.watcher import SourceWatcher

    bus = EventBus()
    changed = []
    bus.subscribe(EventType.FILE_CHANGED, lambda event: changed.append(event.properties["file"]))
    (tmp_path / "node_modules").mkdir()
    watcher = SourceWatcher(bus, str(tmp_path))
    watcher.start()
    try:
        await asyncio.sleep(0.2)
        (tmp_path / "node_modules" / "dep.js").write_text("ignored")
        (tmp_path / "get.py").write_text("def handler(e, c):\n    return 1\n")
        await wait_for(lambda: str(tmp_path / "get.py") in changed)
    finally:
        watcher.stop()

    assert not any("node_modules" in path for path in changed)
    assert not watcher.running


# =============================================================================
# Failure containment
# =============================================================================

class ExplodingHandler(FakeHandler):
    """Fails in ways no handler anticipates"""

    def __init__(self, build_error=None, start_error=None):
        super().__init__()
        self.build_error = build_error
        self.start_error = start_error

    async def _build(self, input):
        if self.build_error is not None:
            raise self.build_error
        return await super()._build(input)

    async def start_worker(self, input):
        if self.start_error is not None:
            raise self.start_error
        await super().start_worker(input)


# TEST114: A python module that is not valid UTF-8 fails the build instead of raising
@pytest.mark.asyncio
async def test_python_build_non_utf8(tmp_path):
    src = tmp_path / "svc"
    src.mkdir()
    (src / "get.py").write_bytes(b"def handler(event, context):\n    return '\xe9'\n")

    result = await PythonHandler().build(BuildInput(
        function_id="F1", handler="get.handler", src_path=str(src), runtime="python3.12", out=str(tmp_path / "out"),
    ))
    assert not result.ok
    assert "get.py" in result.errors[0]
    assert "UTF-8" in result.errors[0]


# TEST115: An unexpected build exception is published as build.failed and fails the invocation with BuildError
@pytest.mark.asyncio
async def test_unexpected_build_exception_fails_invocation():
    handler = ExplodingHandler(build_error=ValueError("cannot decode source"))
    bus, builder, supervisor = make_supervisor(handler)
    events = record(bus, EventType.FUNCTION_BUILD_FAILED, EventType.FUNCTION_ERROR)
    supervisor.start()

    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    await wait_for(lambda: any(e.type is EventType.FUNCTION_ERROR for e in events))

    failed = [e for e in events if e.type is EventType.FUNCTION_BUILD_FAILED]
    assert failed and "ValueError: cannot decode source" in failed[0].properties["errors"]
    error = [e for e in events if e.type is EventType.FUNCTION_ERROR][0]
    assert error.properties["requestID"] == "r1"
    assert error.properties["errorType"] == "BuildError"
    assert supervisor.get("w1") is None
    await supervisor.stop()


# TEST116: A corrupt java distribution raises HandlerError
def test_java_unpack_corrupt_distribution(tmp_path):
    dist = tmp_path / "distributions"
    dist.mkdir()
    (dist / "app-0.0.1.zip").write_bytes(b"not a zip archive")
    with pytest.raises(HandlerError):
        unpack_distribution(str(dist))


# TEST117: An unexpected start_worker exception fails queued invocations with HandlerError
@pytest.mark.asyncio
async def test_unexpected_start_exception_fails_invocation():
    handler = ExplodingHandler(start_error=RuntimeError("spawn table full"))
    bus, builder, supervisor = make_supervisor(handler)
    errors = record(bus, EventType.FUNCTION_ERROR)
    supervisor.start()

    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    bus.publish(EventType.FUNCTION_INVOKED, invoked("r2"))
    await wait_for(lambda: len(errors) == 2)

    assert {e.properties["requestID"] for e in errors} == {"r1", "r2"}
    assert all(e.properties["errorType"] == "HandlerError" for e in errors)
    assert errors[0].properties["errorMessage"] == "spawn table full"
    assert supervisor.get("w1") is None
    await supervisor.stop()


# TEST118: Output lines longer than the pipe read size are delivered whole, with the lines after them
@pytest.mark.asyncio
async def test_supervisor_long_output_line():
    script = "import sys\nprint('x' * 70000)\nprint('after')\nsys.exit(3)\n"
    handler = ScriptHandler(script)
    bus, builder, supervisor = make_supervisor(handler)
    events = record(bus, EventType.WORKER_STDOUT, EventType.FUNCTION_ERROR)
    supervisor.start()

    bus.publish(EventType.FUNCTION_INVOKED, invoked("r1"))
    await wait_for(lambda: any(e.type is EventType.FUNCTION_ERROR for e in events))

    lines = [e.properties["message"] for e in events if e.type is EventType.WORKER_STDOUT]
    assert lines == ["x" * 70000, "after"]
    await supervisor.stop()
