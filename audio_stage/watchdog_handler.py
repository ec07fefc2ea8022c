from __future__ import annotations

import asyncio
import logging
import threading
import time
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .fs_utils import PARTIAL_SUFFIX

logger = logging.getLogger(__name__)


class WatchHandler(FileSystemEventHandler):
    """Remembers when audio files last changed under the inbound tree."""

    def __init__(self, exts: Iterable[str], clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__()
        self.exts = {ext.lower() for ext in exts}
        self._clock = clock
        self._lock = threading.Lock()
        self._last_change: Optional[float] = None

    def on_created(self, event: FileSystemEvent) -> None:
        self._maybe_mark(event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._maybe_mark(event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._maybe_mark(getattr(event, "dest_path", event.src_path), event.is_directory)

    def _maybe_mark(self, src: str | bytes, is_directory: bool) -> None:
        if isinstance(src, bytes):
            src = src.decode("utf-8", errors="replace")
        path = Path(src)
        if not is_directory and (path.name.endswith(PARTIAL_SUFFIX) or path.suffix.lower() not in self.exts):
            return
        with self._lock:
            self._last_change = self._clock()
        logger.debug("Inbound change: %s", path)

    def settled(self, quiet_seconds: float) -> bool:
        """True once, after changes were seen and the tree has been quiet long enough."""
        with self._lock:
            if self._last_change is None:
                return False
            if self._clock() - self._last_change < quiet_seconds:
                return False
            self._last_change = None
            return True


async def run_watch(
    root: Path,
    exts: Iterable[str],
    quiet_seconds: float,
    run_cycle: Callable[[], Awaitable[object]],
    stop_event: Optional[threading.Event] = None,
    poll_seconds: float = 1.0,
) -> None:
    """Run ``run_cycle`` once, then again whenever the tree settles after a change."""
    stop_event = stop_event or threading.Event()
    handler = WatchHandler(exts)
    observer = Observer()
    observer.schedule(handler, str(root), recursive=True)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, observer.start)
    logger.info("Watching %s (quiet period %.0fs)", root, quiet_seconds)
    try:
        await run_cycle()
        while not stop_event.is_set():
            await asyncio.sleep(poll_seconds)
            if handler.settled(quiet_seconds):
                logger.info("Inbound tree settled, starting cycle")
                try:
                    await run_cycle()
                except Exception:  # pragma: no cover - logged and ignored
                    logger.exception("Watch cycle failed")
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.debug("Watch stopping")
    finally:
        observer.stop()
        observer.join()
