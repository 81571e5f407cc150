"""Wires capture, OCR, history and the outward collaborators for live flows."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .capture import ScreenCaptureSource
from .collaborators import Clipboard, NotificationKind, Notifier
from .dedup import EventDeduplicator
from .dispatcher import OCRDispatcher
from .errors import NoTextFound, SnapTextError, StorageError
from .history import HistoryGateway
from .models import CaptureEvent, CaptureKind, CaptureRequest, InsertMetadata, InsertResult, OcrOutcome
from .watcher import ScreenshotWatcher, WatchSignal


@dataclass
class CaptureResult:
    event: CaptureEvent
    outcome: Optional[OcrOutcome] = None
    insert_result: Optional[InsertResult] = None
    error: Optional[SnapTextError] = None
    history_error: Optional[StorageError] = None
    copied: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is not None

    @property
    def no_text(self) -> bool:
        return isinstance(self.error, NoTextFound)


class CaptureOrchestrator:
    """
    Runs the manual and watcher-driven capture flows.

    Pipeline errors never escape ``capture`` or ``handle_signal``: they are
    kept on the returned ``CaptureResult`` and turned into one notification.
    Clipboard and notifier calls are best-effort.
    """

    def __init__(
        self,
        capture_source: ScreenCaptureSource,
        dispatcher: OCRDispatcher,
        gateway: HistoryGateway,
        deduplicator: EventDeduplicator,
        clipboard: Optional[Clipboard] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.capture_source = capture_source
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.deduplicator = deduplicator
        self.clipboard = clipboard
        self.notifier = notifier
        self.stats = {"captures": 0, "succeeded": 0, "failed": 0, "signals_dropped": 0}

    async def capture(
        self,
        request: CaptureRequest,
        backend: Optional[str] = None,
        record_history: bool = True,
    ) -> CaptureResult:
        """Manual flow: one explicit trigger, so no deduplication."""
        event = CaptureEvent(source=request.kind, origin_hint=str(request.path) if request.path else None)
        return await self._run_pipeline(event, request, backend, record_history, source_tag="ocr")

    async def handle_signal(self, signal: WatchSignal) -> Optional[CaptureResult]:
        """
        Watcher flow for one directory signal.

        Returns None when the deduplicator drops the signal.
        """
        decision = await asyncio.to_thread(
            self.deduplicator.admit, signal.path, signal.observed_at, signal.created_at
        )
        if not decision:
            self.stats["signals_dropped"] += 1
            logger.debug(f"Signal for {signal.path.name} via {signal.channel} dropped ({decision.reason.value})")
            return None

        logger.info(f"New screenshot detected: {signal.path.name}")
        event = CaptureEvent(source=CaptureKind.FILE, origin_hint=str(signal.path))
        return await self._run_pipeline(
            event, CaptureRequest.file(signal.path), None, True, source_tag="screenshot"
        )

    async def run_watcher(self, watcher: ScreenshotWatcher) -> None:
        """Consume watcher signals until the watcher stops."""
        async for signal in watcher.signals():
            try:
                await self.handle_signal(signal)
            except Exception as e:
                logger.exception(f"Unexpected error handling {signal.path}: {e}")

    async def _run_pipeline(
        self,
        event: CaptureEvent,
        request: CaptureRequest,
        backend: Optional[str],
        record_history: bool,
        source_tag: str,
    ) -> CaptureResult:
        self.stats["captures"] += 1
        result = CaptureResult(event=event)

        try:
            image = await self.capture_source.capture(request)
            self._notify("Recognizing text", "", NotificationKind.PROGRESS)
            outcome = await self.dispatcher.run(image, backend)
        except SnapTextError as e:
            result.error = e
            self._report_failure(e)
            return result

        result.outcome = outcome
        self.stats["succeeded"] += 1

        if record_history:
            try:
                result.insert_result = await self.gateway.insert(
                    outcome.text,
                    InsertMetadata(
                        source_tag=source_tag,
                        backend_used=outcome.backend,
                        confidence=outcome.confidence,
                    ),
                )
            except StorageError as e:
                result.history_error = e
                logger.error(f"Could not save capture to history: {e}")

        result.copied = self._copy(outcome.text)
        self._notify(
            "Text copied" if result.copied else "Text recognized",
            _preview(outcome.text),
            NotificationKind.SUCCESS,
        )
        return result

    def _report_failure(self, error: SnapTextError) -> None:
        if isinstance(error, NoTextFound):
            logger.info("No text found in capture")
            self._notify("No text found", "The image did not contain any readable text", NotificationKind.SUCCESS)
            return
        self.stats["failed"] += 1
        self._notify("Capture failed", error.user_message, NotificationKind.ERROR)

    def _copy(self, text: str) -> bool:
        if self.clipboard is None:
            return False
        try:
            return bool(self.clipboard.set_text(text))
        except Exception as e:
            logger.warning(f"Clipboard write failed: {e}")
            return False

    def _notify(self, title: str, body: str, kind: NotificationKind) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(title, body, kind)
        except Exception as e:
            logger.warning(f"Notification failed: {e}")


def _preview(text: str, limit: int = 100) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."
