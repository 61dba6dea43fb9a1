"""Worker-side loop for Python functions

Run as `python -m livedev.runtime.shells.python_bootstrap <module> <function>`
from the function's source root, with AWS_LAMBDA_RUNTIME_API pointing at the
local runtime API. Imports the handler once, then serves invocations until
the runtime API says the worker is gone.
"""

import importlib
import json
import os
import sys
import time
import traceback
from typing import Any, Dict

import httpx

API_VERSION = "2018-06-01"


class LambdaContext:
    """The subset of the Lambda context object handlers commonly use"""

    def __init__(self, headers: httpx.Headers, function_name: str):
        self.aws_request_id = headers.get("Lambda-Runtime-Aws-Request-Id", "")
        self.invoked_function_arn = headers.get("Lambda-Runtime-Invoked-Function-Arn", "")
        self.function_name = function_name
        self.function_version = "$LATEST"
        self.memory_limit_in_mb = os.environ.get("AWS_LAMBDA_FUNCTION_MEMORY_SIZE", "1024")
        self.log_group_name = os.environ.get("AWS_LAMBDA_LOG_GROUP_NAME", "")
        self.log_stream_name = os.environ.get("AWS_LAMBDA_LOG_STREAM_NAME", "")
        self._deadline_ms = int(headers.get("Lambda-Runtime-Deadline-Ms", "0") or 0)
        self.client_context = _json_header(headers, "Lambda-Runtime-Client-Context")
        self.identity = _json_header(headers, "Lambda-Runtime-Cognito-Identity")

    def get_remaining_time_in_millis(self) -> int:
        return max(self._deadline_ms - int(time.time() * 1000), 0)


def _json_header(headers: httpx.Headers, name: str) -> Any:
    raw = headers.get(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def error_payload(e: BaseException) -> Dict[str, Any]:
    return {
        "errorType": type(e).__name__,
        "errorMessage": str(e),
        "stackTrace": traceback.format_exception(type(e), e, e.__traceback__),
    }


def main(argv) -> int:
    if len(argv) != 3:
        print("usage: python_bootstrap <module> <function>", file=sys.stderr)
        return 2
    module_name, function_name = argv[1], argv[2]
    base = f"http://{os.environ['AWS_LAMBDA_RUNTIME_API']}/{API_VERSION}/runtime"
    sys.path.insert(0, os.getcwd())

    with httpx.Client(timeout=None) as client:
        try:
            module = importlib.import_module(module_name)
            handler = getattr(module, function_name)
        except Exception as e:
            client.post(f"{base}/init/error", json=error_payload(e))
            return 1

        while True:
            response = client.get(f"{base}/invocation/next")
            if response.status_code in (404, 410):
                return 0
            response.raise_for_status()

            context = LambdaContext(response.headers, os.environ.get("LIVEDEV_FUNCTION_ID", function_name))
            try:
                result = handler(response.json(), context)
            except Exception as e:
                traceback.print_exc()
                client.post(f"{base}/invocation/{context.aws_request_id}/error", json=error_payload(e))
                continue
            client.post(
                f"{base}/invocation/{context.aws_request_id}/response",
                content=json.dumps(result, default=str),
                headers={"content-type": "application/json"},
            )


if __name__ == "__main__":
    sys.exit(main(sys.argv))
