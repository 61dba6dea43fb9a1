"""Function builder

Builds functions on demand through their runtime handler and caches the
artifact. Concurrent requests for the same function share one build, and
source changes trigger rebuilds of only the functions they affect.

Events published on the bus:
- function.build.started  {functionID}
- function.build.success  {functionID}
- function.build.failed   {functionID, errors}
"""

import asyncio
import logging
import os
from typing import Dict, List, Optional, Set

from livedev.bus.event_bus import EventBus, Subscription
from livedev.bus.events import Event, EventType
from livedev.runtime.functions import DeploymentDescriptor, FunctionDefinition
from livedev.runtime.handlers.base import (
    BuildFailure,
    BuildInput,
    BuildResult,
    BuildSuccess,
    HandlerError,
    RuntimeHandler,
)
from livedev.runtime.registry import HandlerRegistry

logger = logging.getLogger(__name__)


class BuildError(Exception):
    """A function could not be built"""

    def __init__(self, function_id: str, errors: List[str]):
        super().__init__(f"Build of {function_id} failed: {'; '.join(errors)}")
        self.message = str(self)
        self.function_id = function_id
        self.errors = list(errors)


class FunctionBuilder:
    """Cached, deduplicated builds per FunctionID"""

    def __init__(
        self,
        bus: EventBus,
        registry: HandlerRegistry,
        descriptor: DeploymentDescriptor,
        artifacts_root: str,
    ):
        self.bus = bus
        self.registry = registry
        self.descriptor = descriptor
        self.artifacts_root = artifacts_root
        self._artifacts: Dict[str, BuildSuccess] = {}
        self._building: Dict[str, asyncio.Task] = {}
        self._dirty: Set[str] = set()
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.bus.subscribe(EventType.FILE_CHANGED, self._on_file_changed)

    async def stop(self) -> None:
        if self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None
        tasks = list(self._building.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def definition(self, function_id: str) -> FunctionDefinition:
        """Raises BuildError if the function is not in the descriptor"""
        definition = self.descriptor.get(function_id)
        if definition is None:
            raise BuildError(function_id, [f"Unknown function {function_id}"])
        return definition

    def handler_for(self, function_id: str) -> RuntimeHandler:
        """Raises HandlerError (NoHandlerError) or BuildError"""
        return self.registry.for_runtime(self.definition(function_id).runtime)

    def cached(self, function_id: str) -> Optional[BuildSuccess]:
        return self._artifacts.get(function_id)

    async def artifact(self, function_id: str) -> BuildResult:
        """Last successful build, building first if there is none"""
        cached = self._artifacts.get(function_id)
        if cached is not None:
            return cached
        return await self.build(function_id)

    async def require(self, function_id: str) -> BuildSuccess:
        """Like artifact() but raises BuildError on failure"""
        result = await self.artifact(function_id)
        if isinstance(result, BuildFailure):
            raise BuildError(function_id, result.errors)
        return result

    def build(self, function_id: str) -> "asyncio.Future[BuildResult]":
        """Start (or join) a build of function_id"""
        task = self._building.get(function_id)
        if task is None:
            task = asyncio.ensure_future(self._run(function_id))
            self._building[function_id] = task
        return task

    async def _run(self, function_id: str) -> BuildResult:
        try:
            result = await self._build_once(function_id)
        finally:
            self._building.pop(function_id, None)
        if function_id in self._dirty:
            self._dirty.discard(function_id)
            self.build(function_id)
        return result

    async def _build_once(self, function_id: str) -> BuildResult:
        self.bus.publish(EventType.FUNCTION_BUILD_STARTED, {"functionID": function_id})
        logger.info("Building %s", function_id)

        try:
            definition = self.definition(function_id)
            handler = self.registry.for_runtime(definition.runtime)
        except BuildError as e:
            result: BuildResult = BuildFailure(errors=e.errors)
        except HandlerError as e:
            result = BuildFailure(errors=[e.message])
        else:
            result = await handler.build(BuildInput(
                function_id=function_id,
                handler=definition.handler,
                src_path=definition.src_path,
                runtime=definition.runtime,
                out=os.path.join(self.artifacts_root, function_id),
                environment=dict(definition.environment),
                architecture=definition.architecture,
            ))

        if isinstance(result, BuildSuccess):
            self._artifacts[function_id] = result
            logger.info("Built %s", function_id)
            self.bus.publish(EventType.FUNCTION_BUILD_SUCCESS, {"functionID": function_id})
        else:
            logger.warning("Build of %s failed: %s", function_id, "; ".join(result.errors))
            self.bus.publish(EventType.FUNCTION_BUILD_FAILED, {
                "functionID": function_id,
                "errors": list(result.errors),
            })
        return result

    def _on_file_changed(self, event: Event) -> None:
        file = os.path.abspath(event.properties["file"])
        for definition in self.descriptor:
            handler = self.registry.find(definition.runtime)
            if handler is None or not handler.should_build(definition.function_id, file):
                continue
            logger.info("%s changed, rebuilding %s", file, definition.function_id)
            if definition.function_id in self._building:
                self._dirty.add(definition.function_id)
            else:
                self.build(definition.function_id)
