"""Handler registry: picks the runtime handler for a function

Handlers are consulted in registration order; the first whose `can_handle`
accepts the runtime string wins.
"""

from typing import Iterable, List, Optional

from livedev.runtime.handlers.base import NoHandlerError, RuntimeHandler
from livedev.runtime.handlers.go import GoHandler
from livedev.runtime.handlers.java import JavaHandler
from livedev.runtime.handlers.node import NodeHandler
from livedev.runtime.handlers.python import PythonHandler


def default_handlers() -> List[RuntimeHandler]:
    return [NodeHandler(), PythonHandler(), GoHandler(), JavaHandler()]


class HandlerRegistry:
    """Ordered list of runtime handlers"""

    def __init__(self, handlers: Optional[Iterable[RuntimeHandler]] = None):
        self._handlers: List[RuntimeHandler] = list(handlers) if handlers is not None else default_handlers()

    @property
    def handlers(self) -> List[RuntimeHandler]:
        return list(self._handlers)

    def register(self, handler: RuntimeHandler, first: bool = False) -> None:
        """Add a handler; `first` puts it ahead of the existing ones"""
        if first:
            self._handlers.insert(0, handler)
        else:
            self._handlers.append(handler)

    def find(self, runtime: str) -> Optional[RuntimeHandler]:
        for handler in self._handlers:
            if handler.can_handle(runtime):
                return handler
        return None

    def for_runtime(self, runtime: str) -> RuntimeHandler:
        """Handler for a runtime string

        Raises:
            NoHandlerError: If no handler accepts the runtime
        """
        handler = self.find(runtime)
        if handler is None:
            raise NoHandlerError(runtime)
        return handler
