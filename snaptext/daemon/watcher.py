"""Screenshot directory watcher with an fs-event channel and a polling channel."""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .bus import EventBus
from .capture import DEFAULT_IMAGE_SUFFIXES, is_image_file
from .errors import ConfigurationError


CHANNEL_FS_EVENT = "fs_event"
CHANNEL_POLL = "poll"

# Prefixes and suffixes screenshot tools use for files still being written
TEMP_PREFIXES = (".", "~")
TEMP_SUFFIXES = (".tmp", ".part", ".crdownload", ".download")


@dataclass(frozen=True)
class WatchSignal:
    path: Path
    channel: str
    observed_at: float
    created_at: Optional[float] = None


def _mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


def _size_and_mtime(path: Path) -> Optional[Tuple[int, float]]:
    try:
        st = path.stat()
    except OSError:
        return None
    return st.st_size, st.st_mtime


def is_temporary_name(path: Path) -> bool:
    name = path.name.lower()
    return name.startswith(TEMP_PREFIXES) or name.endswith(TEMP_SUFFIXES)


class _ScreenshotEventHandler(FileSystemEventHandler):
    """Runs on the watchdog observer thread; hands paths back to the loop."""

    def __init__(self, watcher: "ScreenshotWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher._signal_from_thread(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher._signal_from_thread(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Screenshot tools often write a temp file and rename it into place
        if not event.is_directory:
            self.watcher._signal_from_thread(Path(event.dest_path))


class ScreenshotWatcher:
    """
    Watches a directory for new screenshot files.

    Two independent channels feed one queue: watchdog file-system events
    and a periodic directory scan. Both may report the same file, in any
    order; collapsing them is the deduplicator's job, not the watcher's.

    A file is only reported once its size and mtime stay unchanged for
    ``settle_delay`` seconds, so a screenshot that is still being written
    produces a single signal for the finished file. Hidden and temporary
    names are ignored.
    """

    def __init__(
        self,
        directory: Path,
        poll_interval: float = 2.0,
        max_age: float = 10.0,
        suffixes: Iterable[str] = DEFAULT_IMAGE_SUFFIXES,
        event_bus: Optional[EventBus] = None,
        use_fs_events: bool = True,
        maxsize: int = 256,
        settle_delay: float = 0.25,
        settle_attempts: int = 20,
    ):
        self.directory = Path(directory).expanduser()
        self.poll_interval = poll_interval
        self.max_age = max_age
        self.suffixes = tuple(suffixes)
        self.event_bus = event_bus
        self.use_fs_events = use_fs_events
        self.settle_delay = settle_delay
        self.settle_attempts = settle_attempts
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._settling: Dict[Tuple[Path, str], asyncio.Task] = {}
        self._seen: Set[Tuple[Path, float]] = set()
        self._running = False
        self._stats = {"fs_event": 0, "poll": 0, "dropped": 0, "unsettled": 0}

    @property
    def running(self) -> bool:
        return self._running

    def accepts(self, path: Path) -> bool:
        return is_image_file(path, self.suffixes) and not is_temporary_name(path)

    async def start(self) -> None:
        if self._running:
            logger.warning("Screenshot watcher already running")
            return
        if not self.directory.is_dir():
            raise ConfigurationError(f"Screenshot directory does not exist: {self.directory}")

        self._loop = asyncio.get_running_loop()
        self._seen = self._scan_keys()
        self._running = True

        if self.use_fs_events:
            self._observer = Observer()
            self._observer.schedule(_ScreenshotEventHandler(self), str(self.directory), recursive=False)
            self._observer.daemon = True
            self._observer.start()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Watching {self.directory} for screenshots (poll every {self.poll_interval}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 5)
            self._observer = None

        tasks = [t for t in [self._poll_task, *self._settling.values()] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._settling.clear()

        # Wake up any consumer blocked in signals()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)
        logger.info("Screenshot watcher stopped")

    async def signals(self) -> AsyncIterator[WatchSignal]:
        """Yield signals until the watcher is stopped."""
        while True:
            signal = await self._queue.get()
            if signal is None:
                return
            yield signal

    def _scan_keys(self) -> Set[Tuple[Path, float]]:
        keys = set()
        try:
            entries = list(self.directory.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list {self.directory}: {e}")
            return keys
        for path in entries:
            if not self.accepts(path):
                continue
            mtime = _mtime(path)
            if mtime is not None:
                keys.add((path, mtime))
        return keys

    def _collect_new(self, now: Optional[float] = None) -> List[WatchSignal]:
        now = time.time() if now is None else now
        current = self._scan_keys()
        # Forget files that were deleted or rewritten since the last scan
        self._seen &= current
        found = []
        for key in sorted(current - self._seen, key=lambda k: k[1]):
            self._seen.add(key)
            path, mtime = key
            if now - mtime > self.max_age:
                continue
            found.append(WatchSignal(path, CHANNEL_POLL, now, mtime))
        return found

    def scan_once(self, now: Optional[float] = None) -> int:
        """One polling pass on the loop thread; returns the number of new files found."""
        found = self._collect_new(now)
        for signal in found:
            self._settle(signal)
        return len(found)

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval)
            try:
                found = await asyncio.to_thread(self._collect_new)
                for signal in found:
                    self._settle(signal)
            except Exception as e:
                logger.error(f"Screenshot poll failed: {e}")

    def _signal_from_thread(self, path: Path) -> None:
        if not self.accepts(path):
            return
        signal = WatchSignal(path, CHANNEL_FS_EVENT, time.time(), _mtime(path))
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._settle, signal)

    def _settle(self, signal: WatchSignal) -> None:
        """Start waiting for the file to stop changing, once per path and channel."""
        if not self._running:
            return
        key = (signal.path, signal.channel)
        if key in self._settling:
            # The running wait already re-checks the file until it is stable
            return
        task = asyncio.create_task(self._wait_until_stable(signal))
        self._settling[key] = task
        task.add_done_callback(lambda _: self._settling.pop(key, None))

    async def _wait_until_stable(self, signal: WatchSignal) -> None:
        previous = _size_and_mtime(signal.path)
        for _ in range(self.settle_attempts):
            await asyncio.sleep(self.settle_delay)
            current = _size_and_mtime(signal.path)
            if current is None:
                logger.debug(f"Screenshot vanished before it settled: {signal.path.name}")
                return
            if current == previous and current[0] > 0:
                mtime = current[1]
                self._seen.add((signal.path, mtime))
                self._enqueue(WatchSignal(signal.path, signal.channel, signal.observed_at, mtime))
                return
            previous = current
        self._stats["unsettled"] += 1
        logger.warning(f"Screenshot kept changing, ignoring: {signal.path.name}")

    def _enqueue(self, signal: WatchSignal) -> None:
        if not self._running:
            return
        try:
            self._queue.put_nowait(signal)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            logger.warning(f"Watcher queue full, dropping signal for {signal.path.name}")
            return
        self._stats[signal.channel] += 1
        logger.debug(f"Screenshot signal ({signal.channel}): {signal.path.name}")
        if self.event_bus is not None:
            self.event_bus.publish(
                "watcher.signal",
                {"path": str(signal.path), "channel": signal.channel},
                source="watcher",
            )

    def get_stats(self) -> dict:
        return dict(self._stats)
