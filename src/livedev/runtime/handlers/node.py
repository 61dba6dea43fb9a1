"""Node functions: run from source under a bootstrap that polls the runtime API

The handler is `<file path without extension>.<export>`, for example
`src/notes/get.handler`, relative to the function's srcPath.
"""

import os
from typing import Dict, List, Tuple

from livedev.runtime.handlers.base import (
    BuildFailure,
    BuildInput,
    BuildResult,
    BuildSuccess,
    RuntimeHandler,
    StartWorkerInput,
    run_command,
)

EXTENSIONS = (".mjs", ".js", ".cjs")
BOOTSTRAP = os.path.join(os.path.dirname(os.path.dirname(__file__)), "shells", "node_bootstrap.mjs")


def resolve_entry(src_path: str, handler: str) -> Tuple[str, str]:
    """Returns (entry file, export name); entry is empty if no file matches"""
    stem, _, export = handler.rpartition(".")
    base = os.path.join(os.path.abspath(src_path), *stem.split("/"))
    for ext in EXTENSIONS:
        if os.path.isfile(base + ext):
            return base + ext, export
    return "", export


class NodeHandler(RuntimeHandler):
    name = "node"

    def can_handle(self, runtime: str) -> bool:
        return runtime.startswith("nodejs")

    def should_build(self, function_id: str, file: str) -> bool:
        if "node_modules" in file.split(os.sep):
            return False
        return super().should_build(function_id, file)

    async def _build(self, input: BuildInput) -> BuildResult:
        entry, export = resolve_entry(input.src_path, input.handler)
        if not export:
            return BuildFailure(errors=[f"Handler must look like 'path/to/file.export', got {input.handler!r}"])
        if not entry:
            return BuildFailure(errors=[f"Could not find a {'/'.join(EXTENSIONS)} file for handler {input.handler}"])

        returncode, output = await run_command(["node", "--check", entry], cwd=os.path.dirname(entry))
        if returncode != 0:
            return BuildFailure(errors=output or [f"node --check exited with {returncode}"])
        return BuildSuccess(handler=input.handler, out=os.path.abspath(input.src_path), sources=[entry])

    def command(self, input: StartWorkerInput) -> Tuple[List[str], str, Dict[str, str]]:
        entry, export = resolve_entry(input.src_path, input.handler)
        return ["node", BOOTSTRAP, entry, export], os.path.abspath(input.src_path), {}
