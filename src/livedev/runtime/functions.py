"""Deployment descriptor: the functions a dev session can serve

The descriptor is produced by the infrastructure layer and read here as a
static JSON document:

{
  "app": "my-app",
  "stage": "dev",
  "region": "us-east-1",
  "functions": [
    {
      "functionID": "api-get",
      "handler": "src/get.handler",
      "srcPath": "services",
      "runtime": "python3.12",
      "environment": {"TABLE": "notes"},
      "architecture": "x86_64"
    }
  ]
}
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional


class DescriptorError(Exception):
    """Deployment descriptor is missing or malformed"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass
class FunctionDefinition:
    """One deployed function"""
    function_id: str
    handler: str
    runtime: str
    src_path: str = "."
    environment: Dict[str, str] = field(default_factory=dict)
    architecture: str = "x86_64"

    @classmethod
    def from_dict(cls, data: Any) -> "FunctionDefinition":
        if not isinstance(data, dict):
            raise DescriptorError("Function entry must be an object")
        for key in ("functionID", "handler", "runtime"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise DescriptorError(f"Function entry missing '{key}'")
        environment = data.get("environment") or {}
        if not isinstance(environment, dict):
            raise DescriptorError(f"Function {data['functionID']}: environment must be an object")
        return cls(
            function_id=data["functionID"],
            handler=data["handler"],
            runtime=data["runtime"],
            src_path=data.get("srcPath") or ".",
            environment={str(k): str(v) for k, v in environment.items()},
            architecture=data.get("architecture") or "x86_64",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "functionID": self.function_id,
            "handler": self.handler,
            "runtime": self.runtime,
            "srcPath": self.src_path,
            "environment": dict(self.environment),
            "architecture": self.architecture,
        }


class DeploymentDescriptor:
    """Functions by FunctionID, plus app identity"""

    def __init__(self, app: str, stage: str, region: str, functions: Optional[Dict[str, FunctionDefinition]] = None):
        self.app = app
        self.stage = stage
        self.region = region
        self.functions: Dict[str, FunctionDefinition] = dict(functions or {})

    def get(self, function_id: str) -> Optional[FunctionDefinition]:
        return self.functions.get(function_id)

    def __iter__(self) -> Iterator[FunctionDefinition]:
        return iter(self.functions.values())

    def __len__(self) -> int:
        return len(self.functions)

    @classmethod
    def from_dict(cls, data: Any, base_dir: str = ".") -> "DeploymentDescriptor":
        if not isinstance(data, dict):
            raise DescriptorError("Descriptor must be an object")
        entries = data.get("functions") or []
        if not isinstance(entries, list):
            raise DescriptorError("Descriptor 'functions' must be a list")
        functions = {}
        for entry in entries:
            definition = FunctionDefinition.from_dict(entry)
            if not os.path.isabs(definition.src_path):
                definition.src_path = os.path.normpath(os.path.join(base_dir, definition.src_path))
            functions[definition.function_id] = definition
        return cls(
            app=str(data.get("app") or "app"),
            stage=str(data.get("stage") or "dev"),
            region=str(data.get("region") or "us-east-1"),
            functions=functions,
        )

    @classmethod
    def load(cls, path: str) -> "DeploymentDescriptor":
        """Read a descriptor file; relative srcPath values resolve against
        the current working directory (the project root)."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise DescriptorError(f"Could not read descriptor {path}: {e}")
        except ValueError as e:
            raise DescriptorError(f"Descriptor {path} is not valid JSON: {e}")
        return cls.from_dict(data, base_dir=os.getcwd())
