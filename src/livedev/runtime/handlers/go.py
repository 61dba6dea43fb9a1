"""Go functions: `go build` into a bootstrap binary

The handler is the path of the main package file (for example
`src/api/main.go`), relative to the function's srcPath. The build runs in the
nearest directory holding a go.mod.
"""

import os
import sys
from typing import Dict, List, Tuple

from livedev.runtime.handlers.base import (
    BuildFailure,
    BuildInput,
    BuildResult,
    BuildSuccess,
    HandlerError,
    RuntimeHandler,
    StartWorkerInput,
    run_command,
)

BOOTSTRAP_NAME = "bootstrap.exe" if sys.platform == "win32" else "bootstrap"


def find_up(start: str, target: str) -> str:
    """Closest directory at or above start containing target

    Raises:
        HandlerError: If no such directory exists
    """
    current = os.path.abspath(start)
    while True:
        if os.path.exists(os.path.join(current, target)):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            raise HandlerError(f"Could not find a {target} file above {start}")
        current = parent


class GoHandler(RuntimeHandler):
    name = "go"

    def can_handle(self, runtime: str) -> bool:
        return runtime.startswith("go")

    def _handler_path(self, input: BuildInput) -> str:
        return os.path.abspath(os.path.join(input.src_path, input.handler))

    def source_root(self, input: BuildInput) -> str:
        return find_up(os.path.dirname(self._handler_path(input)), "go.mod")

    async def _build(self, input: BuildInput) -> BuildResult:
        handler_path = self._handler_path(input)
        project = self.source_root(input)
        package = os.path.relpath(os.path.dirname(handler_path), project)
        os.makedirs(input.out, exist_ok=True)
        target = os.path.join(os.path.abspath(input.out), BOOTSTRAP_NAME)

        returncode, output = await run_command(
            ["go", "build", "-ldflags", "-s -w", "-o", target, "./" + package.replace(os.sep, "/")],
            cwd=project,
        )
        if returncode != 0:
            return BuildFailure(errors=output or [f"go build exited with {returncode}"])
        return BuildSuccess(handler=BOOTSTRAP_NAME, out=os.path.abspath(input.out))

    def command(self, input: StartWorkerInput) -> Tuple[List[str], str, Dict[str, str]]:
        return [os.path.join(input.out, input.handler)], input.out, {}
