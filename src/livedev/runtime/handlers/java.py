"""Java functions: `gradle build` run under the Lambda runtime interface client

The function's srcPath must hold a build.gradle. After the build the
artifact directory looks like:

    <out>/
      distributions/app-0.0.1.zip
      libs/app-0.0.1.jar

The distribution zip is unpacked next to itself and its `lib/` joins the
class path together with `libs/`. The project is expected to depend on
`com.amazonaws:aws-lambda-java-runtime-interface-client`.
"""

import os
import zipfile
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

RUNTIME_CLIENT_MAIN = "com.amazonaws.services.lambda.runtime.api.client.AWSLambda"
SOURCE_SUFFIXES = (".java", ".gradle")


class JavaHandler(RuntimeHandler):
    name = "java"

    def can_handle(self, runtime: str) -> bool:
        return runtime.startswith("java")

    def should_build(self, function_id: str, file: str) -> bool:
        return file.endswith(SOURCE_SUFFIXES) and super().should_build(function_id, file)

    async def _build(self, input: BuildInput) -> BuildResult:
        src = os.path.abspath(input.src_path)
        if not os.path.exists(os.path.join(src, "build.gradle")):
            return BuildFailure(errors=[f"Cannot find build.gradle in {src}"])

        target = os.path.abspath(input.out)
        os.makedirs(target, exist_ok=True)
        returncode, output = await run_command(
            ["gradle", "build", f"-Dorg.gradle.project.buildDir={target}"],
            cwd=src,
        )
        if returncode != 0:
            return BuildFailure(errors=output or [f"gradle build exited with {returncode}"])

        unpack_distribution(os.path.join(target, "distributions"))
        return BuildSuccess(handler=input.handler, out=target)

    def command(self, input: StartWorkerInput) -> Tuple[List[str], str, Dict[str, str]]:
        classpath = os.pathsep.join([
            os.path.join(input.out, "libs", "*"),
            os.path.join(input.out, "distributions", "lib", "*"),
        ])
        return ["java", "-cp", classpath, RUNTIME_CLIENT_MAIN, input.handler], input.out, {}


def unpack_distribution(directory: str) -> None:
    """Unzip the first distribution archive in place

    Raises:
        HandlerError: If the build produced no readable distribution zip
    """
    try:
        archives = sorted(name for name in os.listdir(directory) if name.endswith(".zip"))
    except OSError:
        archives = []
    if not archives:
        raise HandlerError(f"No distribution zip in {directory}")
    path = os.path.join(directory, archives[0])
    try:
        archive = zipfile.ZipFile(path)
    except zipfile.BadZipFile as e:
        raise HandlerError(f"Corrupt distribution {path}: {e}")
    with archive:
        for member in archive.namelist():
            # Gradle zips nest everything under <project>-<version>/
            parts = member.split("/", 1)
            if len(parts) < 2 or not parts[1] or member.endswith("/"):
                continue
            destination = os.path.join(directory, *parts[1].split("/"))
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            with archive.open(member) as src, open(destination, "wb") as dst:
                dst.write(src.read())
