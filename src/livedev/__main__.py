"""Command line entry point

    python -m livedev dev  [--app APP] [--stage STAGE] [--descriptor PATH] [--no-watch]
    python -m livedev hub  [--host HOST] [--port PORT]
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from livedev.config import ConfigError, DevConfig
from livedev.log import setup_logging
from livedev.runtime.functions import DescriptorError
from livedev.serve import ServerError
from livedev.session import DevSession
from livedev.wire.hub import TransportHub
from livedev.wire.transport import TransportError

logger = logging.getLogger("livedev")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livedev", description="Live development for cloud functions")
    parser.add_argument("--log-level", default=None, help="Log level (default: LIVEDEV_LOG_LEVEL or INFO)")
    commands = parser.add_subparsers(dest="command", required=True)

    dev = commands.add_parser("dev", help="Serve deployed functions from local source")
    dev.add_argument("--app", default=None, help="Application name (default: LIVEDEV_APP)")
    dev.add_argument("--stage", default=None, help="Stage name (default: LIVEDEV_STAGE)")
    dev.add_argument("--region", default=None, help="Region (default: LIVEDEV_REGION or AWS_REGION)")
    dev.add_argument("--descriptor", default=None, help="Deployment descriptor JSON")
    dev.add_argument("--hub-url", default=None, help="Transport hub URL (default: LIVEDEV_HUB_URL)")
    dev.add_argument("--no-watch", action="store_true", help="Do not rebuild on source changes")
    dev.add_argument("--no-console", action="store_true", help="Do not serve the control-plane server")

    hub = commands.add_parser("hub", help="Run a websocket transport hub")
    hub.add_argument("--host", default="127.0.0.1")
    hub.add_argument("--port", type=int, default=8765)
    return parser


async def _wait_for_signal() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await stop.wait()


async def run_dev(args: argparse.Namespace) -> None:
    config = DevConfig(args.app, args.stage, args.region)
    if args.descriptor:
        config.with_descriptor(args.descriptor)
    if args.hub_url:
        config.with_hub_url(args.hub_url)
    session = DevSession(config, watch=not args.no_watch, console=not args.no_console)
    await session.start()
    try:
        await _wait_for_signal()
    finally:
        await session.stop()


async def run_hub(args: argparse.Namespace) -> None:
    hub = await TransportHub(args.host, args.port).start()
    try:
        await _wait_for_signal()
    finally:
        await hub.stop()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    runner = run_dev if args.command == "dev" else run_hub
    try:
        asyncio.run(runner(args))
    except (ConfigError, DescriptorError, TransportError, ServerError) as e:
        logger.error("%s", e.message)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
