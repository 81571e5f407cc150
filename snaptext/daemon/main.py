"""Main daemon process for snaptext."""

import asyncio
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import httpx
from loguru import logger

from .. import __version__
from .backends import BackendRegistry
from .bulk import BulkProcessor
from .bus import EventBus
from .capture import ScreenCaptureSource
from .collaborators import BusNotifier, Clipboard, Notifier, PyperclipClipboard
from .config import BackendConfigStore, Config
from .dedup import EventDeduplicator
from .dispatcher import OCRDispatcher
from .errors import ConfigurationError
from .history import HistoryGateway, JsonlHistoryStore
from .orchestrator import CaptureOrchestrator
from .watcher import ScreenshotWatcher


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "snaptext" / "logs"


def setup_logging(level: str = "INFO", to_file: bool = True, log_dir: Optional[Path] = None) -> None:
    """Replace loguru's default sink with stderr plus a rotating file."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)

    if to_file:
        log_dir = Path(log_dir or DEFAULT_LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "snaptext.log",
            rotation="1 day",
            retention="7 days",
            level="DEBUG",
        )


class SnapTextDaemon:
    """Constructs every pipeline service once and owns their lifecycle."""

    def __init__(
        self,
        config: Config,
        clipboard: Optional[Clipboard] = None,
        notifier: Optional[Notifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.start_time = datetime.utcnow()

        # Core services
        self.event_bus = EventBus()
        self.config_store = BackendConfigStore(config)
        self.http_client = http_client or httpx.AsyncClient(timeout=config.ocr.remote_timeout_s)
        self._owns_client = http_client is None
        self.registry = BackendRegistry.from_configs(self.config_store.get_all(), client=self.http_client)
        self.dispatcher = OCRDispatcher(self.registry, self.config_store, config.ocr, event_bus=self.event_bus)

        window = config.history.duplicate_window_s
        self.history_store = JsonlHistoryStore(config.history.path)
        self.gateway = HistoryGateway(
            self.history_store,
            cap=config.history.cap,
            duplicate_window=timedelta(seconds=window) if window is not None else None,
            event_bus=self.event_bus,
        )
        self.deduplicator = EventDeduplicator(
            horizon=config.capture.dedup_horizon_s,
            max_age=config.capture.max_file_age_s,
        )
        self.capture_source = ScreenCaptureSource()
        self.orchestrator = CaptureOrchestrator(
            self.capture_source,
            self.dispatcher,
            self.gateway,
            self.deduplicator,
            clipboard=clipboard or PyperclipClipboard(),
            notifier=notifier or BusNotifier(self.event_bus),
        )
        self.bulk_processor = BulkProcessor(
            self.capture_source,
            self.dispatcher,
            self.gateway,
            config.bulk,
            event_bus=self.event_bus,
        )

        self.watcher: Optional[ScreenshotWatcher] = None
        self._watch_task: Optional[asyncio.Task] = None

        # Statistics
        self.stats = {
            "ocr_completed": 0,
            "ocr_failed": 0,
            "history_inserted": 0,
        }

    async def start(self) -> None:
        """Start all daemon services."""
        logger.info("Starting snaptext daemon...")
        await self.event_bus.start()
        await self.history_store.initialize()

        self.event_bus.subscribe("ocr.completed", self._on_ocr_completed)
        self.event_bus.subscribe("ocr.failed", self._on_ocr_failed)
        self.event_bus.subscribe("history.inserted", self._on_history_inserted)
        logger.info("snaptext daemon started")

    async def start_watching(self, directory: Optional[Path] = None) -> ScreenshotWatcher:
        """Start the screenshot watcher and feed it into the orchestrator."""
        if self.watcher is not None:
            raise ConfigurationError("Screenshot watcher is already running")
        capture = self.config.capture
        self.watcher = ScreenshotWatcher(
            Path(directory) if directory else capture.screenshot_dir,
            poll_interval=capture.poll_interval_s,
            max_age=capture.max_file_age_s,
            suffixes=capture.image_suffixes,
            event_bus=self.event_bus,
        )
        try:
            await self.watcher.start()
        except ConfigurationError:
            self.watcher = None
            raise
        self._watch_task = asyncio.create_task(self.orchestrator.run_watcher(self.watcher))
        return self.watcher

    async def stop(self) -> None:
        """Stop all daemon services."""
        logger.info("Stopping snaptext daemon...")
        if self.watcher is not None:
            await self.watcher.stop()
            self.watcher = None
        if self._watch_task is not None:
            await self._watch_task
            self._watch_task = None

        await self.history_store.close()
        if self._owns_client:
            await self.http_client.aclose()
        await self.event_bus.stop()
        logger.info("snaptext daemon stopped")

    async def _on_ocr_completed(self, event) -> None:
        self.stats["ocr_completed"] += 1

    async def _on_ocr_failed(self, event) -> None:
        self.stats["ocr_failed"] += 1

    async def _on_history_inserted(self, event) -> None:
        self.stats["history_inserted"] += 1

    def get_status(self) -> dict:
        """Get daemon status and statistics."""
        uptime = (datetime.utcnow() - self.start_time).total_seconds()
        return {
            "status": "running" if self.event_bus.running else "stopped",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "stats": {
                **self.stats,
                **self.orchestrator.stats,
                "history_records": len(self.history_store),
            },
            "dedup": self.deduplicator.get_stats(),
            "bus": self.event_bus.get_stats(),
            "watcher": {
                "directory": str(self.watcher.directory),
                **self.watcher.get_stats(),
            } if self.watcher else None,
            "backends": {bid: enabled for bid, enabled in self.dispatcher.available_backends()},
            "config": {
                "default_backend": self.config.ocr.default_backend,
                "history_path": str(self.config.history.path),
                "history_cap": self.config.history.cap,
            },
        }


async def main(config_path: Optional[str] = None, directory: Optional[str] = None) -> None:
    """Run the watcher daemon until interrupted."""
    try:
        config = Config.load(Path(config_path) if config_path else None)
    except (FileNotFoundError, ConfigurationError) as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    setup_logging(config.logging.level, config.logging.to_file)
    daemon = SnapTextDaemon(config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await daemon.start()
        await daemon.start_watching(Path(directory) if directory else None)
        await stop_event.wait()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


if __name__ == "__main__":
    asyncio.run(main())
