"""Python functions: run from source under a bootstrap that polls the runtime API

The handler is `<module path>.<function>`, for example `src/notes/get.handler`,
relative to the function's srcPath. Building checks that the module exists
and compiles; the worker imports it from the source tree directly so that
edits take effect on the next worker start without copying.
"""

import os
import sys
from typing import Dict, List, Tuple

from livedev.runtime.handlers.base import (
    BuildFailure,
    BuildInput,
    BuildResult,
    BuildSuccess,
    RuntimeHandler,
    StartWorkerInput,
)

BOOTSTRAP_MODULE = "livedev.runtime.shells.python_bootstrap"


def split_handler(handler: str) -> Tuple[str, str]:
    """`src/notes/get.handler` -> (`src/notes/get`, `handler`)"""
    module, _, function = handler.rpartition(".")
    if not module or not function:
        raise ValueError(f"Handler must look like 'path/to/module.function', got {handler!r}")
    return module, function


def module_file(src_path: str, module: str) -> str:
    return os.path.join(os.path.abspath(src_path), *module.split("/")) + ".py"


class PythonHandler(RuntimeHandler):
    name = "python"

    def can_handle(self, runtime: str) -> bool:
        return runtime.startswith("python")

    def should_build(self, function_id: str, file: str) -> bool:
        return file.endswith(".py") and super().should_build(function_id, file)

    async def _build(self, input: BuildInput) -> BuildResult:
        try:
            module, _ = split_handler(input.handler)
        except ValueError as e:
            return BuildFailure(errors=[str(e)])

        path = module_file(input.src_path, module)
        if not os.path.isfile(path):
            return BuildFailure(errors=[f"Could not find handler module {path}"])

        try:
            with open(path, "r", encoding="utf-8") as f:
                source = f.read()
        except UnicodeDecodeError as e:
            return BuildFailure(errors=[f"{path}: not valid UTF-8 ({e.reason} at byte {e.start})"])
        try:
            compile(source, path, "exec")
        except SyntaxError as e:
            return BuildFailure(errors=[f"{e.filename}:{e.lineno}: {e.msg}"])

        return BuildSuccess(handler=input.handler, out=os.path.abspath(input.src_path), sources=[path])

    def command(self, input: StartWorkerInput) -> Tuple[List[str], str, Dict[str, str]]:
        module, function = split_handler(input.handler)
        argv = [sys.executable, "-m", BOOTSTRAP_MODULE, module.replace("/", "."), function]
        return argv, os.path.abspath(input.src_path), {"PYTHONUNBUFFERED": "1"}
