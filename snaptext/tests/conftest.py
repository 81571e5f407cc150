"""Shared fixtures and stub collaborators."""

import asyncio
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import pytest
from PIL import Image

from snaptext.daemon.backends import BackendRegistry, OCRBackend, RecognitionOptions
from snaptext.daemon.collaborators import Clipboard, NotificationKind, Notifier
from snaptext.daemon.config import (
    BackendConfig,
    BackendConfigStore,
    CaptureConfig,
    Config,
    HistoryConfig,
    LoggingConfig,
)
from snaptext.daemon.dispatcher import OCRDispatcher
from snaptext.daemon.history import HistoryGateway, InMemoryHistoryStore
from snaptext.daemon.models import OcrOutcome, RawImage


class StubBackend(OCRBackend):
    """Configurable in-process backend that records how it was called."""

    backend_id = "local"
    display_name = "Stub"

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        text: Union[str, Callable[[RawImage], str]] = "Hello",
        confidence: float = 0.9,
        delay: Union[float, Callable[[RawImage], float]] = 0.0,
        error: Optional[Exception] = None,
    ):
        super().__init__(config or BackendConfig(backend_id=self.backend_id))
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def recognize(self, image: RawImage, options: RecognitionOptions) -> OcrOutcome:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delay(image) if callable(self.delay) else self.delay
            if delay:
                await asyncio.sleep(delay)
            if self.error is not None:
                raise self.error
            text = self.text(image) if callable(self.text) else self.text
            return OcrOutcome(text=text, confidence=self.confidence, backend=self.backend_id)
        finally:
            self.in_flight -= 1


class RecordingClipboard(Clipboard):
    def __init__(self, result: bool = True):
        self.result = result
        self.texts: List[str] = []

    def set_text(self, text: str) -> bool:
        self.texts.append(text)
        return self.result


class RecordingNotifier(Notifier):
    def __init__(self):
        self.notifications: List[Tuple[str, str, NotificationKind]] = []

    def notify(self, title: str, body: str, kind: NotificationKind) -> None:
        self.notifications.append((title, body, kind))

    def kinds(self) -> List[NotificationKind]:
        return [kind for _, _, kind in self.notifications]


def write_png(path: Path, color=(255, 255, 255), size=(32, 16)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format="PNG")
    return path


@pytest.fixture
def config(tmp_path):
    """Test configuration rooted in a temporary directory."""
    return Config(
        capture=CaptureConfig(screenshot_dir=tmp_path / "screenshots"),
        history=HistoryConfig(path=tmp_path / "history.jsonl"),
        logging=LoggingConfig(to_file=False),
        source_path=tmp_path / "config.yaml",
    )


@pytest.fixture
def config_store(config):
    return BackendConfigStore(config, persist=False)


@pytest.fixture
def stub_backend():
    return StubBackend()


@pytest.fixture
def dispatcher(stub_backend, config_store, config):
    registry = BackendRegistry({"local": stub_backend})
    return OCRDispatcher(registry, config_store, config.ocr)


@pytest.fixture
def history_store():
    return InMemoryHistoryStore()


@pytest.fixture
def gateway(history_store):
    return HistoryGateway(history_store, cap=100)


@pytest.fixture
def image_files(tmp_path):
    """Factory for distinct PNG files: ``image_files(3)`` -> list of paths."""

    def make(count: int, prefix: str = "shot") -> List[Path]:
        return [
            write_png(tmp_path / "images" / f"{prefix}{i}.png", color=(i * 40 % 256, 10, 200))
            for i in range(count)
        ]

    return make
