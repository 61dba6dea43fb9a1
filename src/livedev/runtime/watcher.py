"""Source watcher: publishes `file.changed` for edits under the project root

watchdog delivers events on its observer thread; they are handed to the
session loop with call_soon_threadsafe so the bus is only touched from the
loop.
"""

import asyncio
import logging
import os
from typing import Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from livedev.bus.event_bus import EventBus
from livedev.bus.events import EventType

logger = logging.getLogger(__name__)

IGNORED_DIRECTORIES = frozenset({
    ".livedev",
    ".git",
    ".hg",
    "node_modules",
    "__pycache__",
    ".venv",
    ".mypy_cache",
    ".pytest_cache",
    ".gradle",
})


def is_ignored(path: str, ignored: Iterable[str] = IGNORED_DIRECTORIES) -> bool:
    ignored = set(ignored)
    return any(part in ignored for part in os.path.normpath(path).split(os.sep))


class SourceChangeHandler(FileSystemEventHandler):
    """Forwards file modifications to the bus"""

    def __init__(self, bus: EventBus, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.bus = bus
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in ("created", "modified", "moved"):
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if is_ignored(path):
            return
        self.loop.call_soon_threadsafe(self._publish, os.path.abspath(path))

    def _publish(self, path: str) -> None:
        logger.debug("Changed: %s", path)
        self.bus.publish(EventType.FILE_CHANGED, {"file": path})


class SourceWatcher:
    """Recursive watchdog observer over the project root"""

    def __init__(self, bus: EventBus, root: str = "."):
        self.bus = bus
        self.root = os.path.abspath(root)
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            logger.warning("Source watcher already running")
            return
        handler = SourceChangeHandler(self.bus, asyncio.get_running_loop())
        self._observer = Observer()
        self._observer.schedule(handler, self.root, recursive=True)
        self._observer.start()
        logger.info("Watching %s", self.root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        logger.info("Stopped watching %s", self.root)
