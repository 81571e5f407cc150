"""Bulk OCR over a static list of image files."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import aiofiles
from loguru import logger

from .bus import EventBus
from .capture import ScreenCaptureSource
from .config import BulkConfig
from .dispatcher import OCRDispatcher
from .errors import SnapTextError, StorageError
from .history import HistoryGateway
from .models import CaptureRequest, InsertMetadata, InsertResult, OcrOutcome


class CommitPolicy(Enum):
    """When successful outcomes go through the history gateway."""
    NONE = "none"
    END_OF_BATCH = "end_of_batch"
    PER_ITEM = "per_item"


class ItemStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class BulkItemResult:
    index: int
    path: Path
    status: ItemStatus
    outcome: Optional[OcrOutcome] = None
    error: Optional[Exception] = None
    insert_result: Optional[InsertResult] = None

    @property
    def ok(self) -> bool:
        return self.status is ItemStatus.SUCCEEDED


@dataclass(frozen=True)
class BulkProgress:
    completed: int
    total: int

    @property
    def fraction(self) -> float:
        return 1.0 if self.total == 0 else self.completed / self.total

    @property
    def done(self) -> bool:
        return self.completed >= self.total


ProgressCallback = Callable[[BulkProgress], None]


@dataclass
class BulkReport:
    items: List[BulkItemResult] = field(default_factory=list)
    cancelled: bool = False
    committed: int = 0

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> List[BulkItemResult]:
        return [i for i in self.items if i.status is ItemStatus.SUCCEEDED]

    @property
    def failed(self) -> List[BulkItemResult]:
        return [i for i in self.items if i.status is ItemStatus.FAILED]

    @property
    def has_failures(self) -> bool:
        return any(i.status is not ItemStatus.SUCCEEDED for i in self.items)

    def summary(self) -> str:
        text = f"{len(self.succeeded)} of {self.total} processed successfully"
        if self.cancelled:
            text += " (cancelled)"
        return text


class BulkProcessor:
    """
    Drives the dispatcher over an ordered list of files.

    A fixed pool of workers pulls indices from a queue, so at most
    ``concurrency`` recognitions are in flight and results land at their
    input index whatever order they finish in. A failing item is recorded
    and the batch carries on.
    """

    def __init__(
        self,
        capture_source: ScreenCaptureSource,
        dispatcher: OCRDispatcher,
        gateway: Optional[HistoryGateway],
        bulk_config: Optional[BulkConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.capture_source = capture_source
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.bulk_config = bulk_config or BulkConfig()
        self.event_bus = event_bus

    def default_concurrency(self, backend: Optional[str] = None) -> int:
        resolved = self.dispatcher.resolve(backend)
        if resolved.is_remote:
            return self.bulk_config.remote_concurrency
        return self.bulk_config.local_concurrency

    async def run(
        self,
        inputs: Sequence[Path],
        backend: Optional[str] = None,
        concurrency: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
        commit: Optional[CommitPolicy] = None,
    ) -> BulkReport:
        paths = [Path(p) for p in inputs]
        total = len(paths)
        limit = concurrency if concurrency is not None else self.default_concurrency(backend)
        if limit < 1:
            raise ValueError("concurrency must be at least 1")
        commit = commit or CommitPolicy(self.bulk_config.commit)
        if commit is not CommitPolicy.NONE and self.gateway is None:
            commit = CommitPolicy.NONE
        cancel = cancel or asyncio.Event()

        results: List[Optional[BulkItemResult]] = [None] * total
        queue: asyncio.Queue = asyncio.Queue()
        for index in range(total):
            queue.put_nowait(index)

        completed = 0

        def report_progress() -> None:
            snapshot = BulkProgress(completed, total)
            if progress is not None:
                try:
                    progress(snapshot)
                except Exception as e:
                    logger.warning(f"Progress callback failed: {e}")
            self._emit("bulk.progress", {"completed": snapshot.completed, "total": snapshot.total})

        async def worker() -> None:
            nonlocal completed
            while not cancel.is_set():
                try:
                    index = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                item = await self._process(index, paths[index], backend)
                if commit is CommitPolicy.PER_ITEM and item.ok:
                    await self._commit(item)
                results[index] = item
                completed += 1
                report_progress()

        logger.info(f"Bulk OCR: {total} files, concurrency {limit}, backend {backend or self.dispatcher.default_backend}")
        if total == 0:
            report_progress()
        else:
            await asyncio.gather(*(worker() for _ in range(min(limit, total))))

        report = BulkReport(cancelled=cancel.is_set() and completed < total)
        for index, item in enumerate(results):
            if item is None:
                item = BulkItemResult(index=index, path=paths[index], status=ItemStatus.CANCELLED)
            report.items.append(item)

        if commit is CommitPolicy.PER_ITEM:
            report.committed = sum(1 for i in report.items if i.insert_result and i.insert_result.inserted)
        elif commit is CommitPolicy.END_OF_BATCH:
            if report.cancelled:
                logger.info("Bulk batch cancelled, history left untouched")
            else:
                for item in report.succeeded:
                    await self._commit(item)
                report.committed = sum(1 for i in report.items if i.insert_result and i.insert_result.inserted)

        logger.info(f"Bulk OCR finished: {report.summary()}")
        self._emit("bulk.completed", {
            "total": report.total,
            "succeeded": len(report.succeeded),
            "failed": len(report.failed),
            "cancelled": report.cancelled,
        })
        return report

    async def _process(self, index: int, path: Path, backend: Optional[str]) -> BulkItemResult:
        try:
            image = await self.capture_source.capture(CaptureRequest.file(path))
            outcome = await self.dispatcher.run(image, backend)
        except SnapTextError as e:
            logger.log(e.severity.log_level, f"Bulk item {index} ({path.name}) failed: {e}")
            return BulkItemResult(index=index, path=path, status=ItemStatus.FAILED, error=e)
        except Exception as e:
            logger.exception(f"Bulk item {index} ({path.name}) crashed: {e}")
            return BulkItemResult(index=index, path=path, status=ItemStatus.FAILED, error=e)
        return BulkItemResult(index=index, path=path, status=ItemStatus.SUCCEEDED, outcome=outcome)

    async def _commit(self, item: BulkItemResult) -> None:
        try:
            item.insert_result = await self.gateway.insert(
                item.outcome.text,
                InsertMetadata(
                    source_tag="bulk",
                    backend_used=item.outcome.backend,
                    confidence=item.outcome.confidence,
                ),
            )
        except StorageError as e:
            logger.error(f"Could not store bulk result for {item.path.name}: {e}")

    def _emit(self, event_type: str, data: dict) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, data, source="bulk_processor")


async def export_results(report: BulkReport, path: Path) -> None:
    """Write a plain-text report with one block per input image."""
    blocks = []
    for item in report.items:
        header = f"=== Image {item.index + 1}: {item.path.name} ==="
        if item.ok:
            body = item.outcome.text
        elif item.status is ItemStatus.CANCELLED:
            body = "[cancelled]"
        else:
            message = item.error.user_message if isinstance(item.error, SnapTextError) else str(item.error)
            body = f"[error] {message}"
        blocks.append(f"{header}\n{body}\n")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write("\n".join(blocks))
    logger.info(f"Exported {len(report.items)} results to {path}")
