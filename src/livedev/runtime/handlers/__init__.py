"""Runtime handlers: build and run functions per runtime family"""

from livedev.runtime.handlers.base import (
    RuntimeHandler,
    HandlerError,
    NoHandlerError,
    BuildInput,
    BuildSuccess,
    BuildFailure,
    BuildResult,
    StartWorkerInput,
    WorkerListener,
    is_child,
)
from livedev.runtime.handlers.node import NodeHandler
from livedev.runtime.handlers.python import PythonHandler
from livedev.runtime.handlers.go import GoHandler
from livedev.runtime.handlers.java import JavaHandler
