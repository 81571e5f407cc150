"""OCR dispatcher: backend selection, prerequisites, timeout and timing."""

import asyncio
import time
from datetime import datetime
from typing import List, Optional, Tuple

from loguru import logger

from .backends import BackendRegistry, OCRBackend, RecognitionOptions
from .bus import EventBus
from .config import BackendConfigStore, OCRConfig
from .errors import OcrError, Timeout
from .models import OcrOutcome, RawImage
from .retry import RetryPolicy


class OCRDispatcher:
    """
    Runs one recognition on one backend.

    Steps per call:
    1. Resolve the backend (requested id or configured default)
    2. Check prerequisites (credentials) before any network work
    3. Run ``recognize`` under a wall-clock timeout
    4. Stamp processing time and production time on the outcome

    There is no fallback between backends: a failure is returned to the
    caller unchanged, which decides whether to try another backend.
    The dispatcher never touches history.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        config_store: BackendConfigStore,
        ocr_config: OCRConfig,
        event_bus: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.registry = registry
        self.config_store = config_store
        self.ocr_config = ocr_config
        self.event_bus = event_bus
        self.retry_policy = retry_policy or RetryPolicy(max_retries=ocr_config.max_retries)
        self._seen_snapshot = None

    @property
    def default_backend(self) -> str:
        return self.ocr_config.default_backend

    def options(self) -> RecognitionOptions:
        return RecognitionOptions(
            languages=list(self.ocr_config.languages),
            accuracy=self.ocr_config.accuracy,
        )

    def timeout_for(self, backend: OCRBackend) -> float:
        return self.ocr_config.remote_timeout_s if backend.is_remote else self.ocr_config.local_timeout_s

    def resolve(self, requested_backend: Optional[str] = None) -> OCRBackend:
        """Pick the backend and make sure it sees the current configuration."""
        snapshot = self.config_store.get_all()
        if snapshot is not self._seen_snapshot:
            self.registry.reconfigure(snapshot)
            self._seen_snapshot = snapshot
        return self.registry.resolve(requested_backend or self.default_backend)

    def available_backends(self) -> List[Tuple[str, bool]]:
        """(backend id, enabled) pairs in registry order."""
        snapshot = self.config_store.get_all()
        return [(bid, snapshot[bid].enabled if bid in snapshot else False) for bid in self.registry.ids()]

    async def run(self, image: RawImage, requested_backend: Optional[str] = None) -> OcrOutcome:
        backend = self.resolve(requested_backend)

        timeout = self.timeout_for(backend)
        options = self.options()
        start = time.perf_counter()

        async def attempt() -> OcrOutcome:
            try:
                return await asyncio.wait_for(backend.recognize(image, options), timeout=timeout)
            except asyncio.TimeoutError:
                raise Timeout(backend.backend_id, timeout) from None

        try:
            backend.check_prerequisites()
            outcome = await self.retry_policy.execute(attempt)
        except OcrError as e:
            elapsed = time.perf_counter() - start
            logger.log(e.severity.log_level, f"OCR via {backend.backend_id} failed after {elapsed * 1000:.0f}ms: {e}")
            self._emit("ocr.failed", {
                "backend": backend.backend_id,
                "kind": e.kind.value,
                "message": e.user_message,
            })
            raise

        outcome.processing_time = time.perf_counter() - start
        outcome.produced_at = datetime.utcnow()
        outcome.backend = backend.backend_id

        if outcome.processing_time > timeout * 0.8:
            logger.warning(f"OCR via {backend.backend_id} took {outcome.processing_time * 1000:.0f}ms")
        logger.debug(
            f"OCR via {backend.backend_id}: {len(outcome.text)} chars, "
            f"confidence {outcome.confidence:.2f}, {outcome.processing_time * 1000:.0f}ms"
        )
        self._emit("ocr.completed", {
            "backend": outcome.backend,
            "confidence": outcome.confidence,
            "processing_time": outcome.processing_time,
            "chars": len(outcome.text),
        })
        return outcome

    def _emit(self, event_type: str, data: dict) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, data, source="dispatcher")
