"""Local execution: descriptor, handlers, builds, workers and the runtime API"""

from livedev.runtime.functions import DeploymentDescriptor, FunctionDefinition, DescriptorError
from livedev.runtime.registry import HandlerRegistry, default_handlers
from livedev.runtime.builder import FunctionBuilder, BuildError
from livedev.runtime.workers import (
    WorkerSupervisor,
    Worker,
    WorkerState,
    WorkerError,
    UnknownWorkerError,
)
from livedev.runtime.server import RuntimeServer, create_runtime_app
from livedev.runtime.watcher import SourceWatcher
