"""
Clipboard history: persistence collaborators and the single insert gateway.

``HistoryGateway.insert`` is the only path allowed to add OCR-derived text
to history. It serializes the duplicate check and the insert behind one
lock, so the watcher and manual-capture paths cannot both insert the same
text when they fire close together.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
from loguru import logger

from .bus import EventBus
from .errors import StorageError
from .models import HistoryRecord, InsertMetadata, InsertResult


class HistoryStore(ABC):
    """Operations the pipeline needs from a persistence engine."""

    async def initialize(self) -> None:
        """Prepare the store (open files, replay logs)."""

    async def close(self) -> None:
        """Release resources."""

    @abstractmethod
    async def insert(self, record: HistoryRecord) -> None:
        ...

    @abstractmethod
    async def query_duplicate(self, text: str, window: Optional[timedelta]) -> Optional[HistoryRecord]:
        """Most recent record with exactly ``text`` created within ``window``."""

    @abstractmethod
    async def list_recent(self, limit: int) -> List[HistoryRecord]:
        """Newest first."""

    @abstractmethod
    async def evict_oldest_beyond(self, cap: int) -> List[str]:
        """Drop oldest unpinned records until at most ``cap`` remain; return evicted ids."""

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def set_pinned(self, record_id: str, pinned: bool) -> bool:
        ...

    async def search(self, query: str, limit: int = 20) -> List[HistoryRecord]:
        needle = query.casefold()
        matches = [r for r in await self.list_recent(limit=0) if needle in r.text.casefold()]
        return matches[:limit] if limit else matches


class InMemoryHistoryStore(HistoryStore):
    """Records kept in creation order in a list; nothing survives a restart."""

    def __init__(self):
        self._records: List[HistoryRecord] = []

    async def insert(self, record: HistoryRecord) -> None:
        self._records.append(record)

    async def query_duplicate(self, text: str, window: Optional[timedelta]) -> Optional[HistoryRecord]:
        cutoff = datetime.utcnow() - window if window is not None else None
        for record in reversed(self._records):
            if cutoff is not None and record.created_at < cutoff:
                break
            if record.text == text:
                return record
        return None

    async def list_recent(self, limit: int) -> List[HistoryRecord]:
        newest_first = list(reversed(self._records))
        return newest_first[:limit] if limit else newest_first

    async def evict_oldest_beyond(self, cap: int) -> List[str]:
        evicted = []
        unpinned = [r for r in self._records if not r.pinned]
        excess = len(self._records) - cap
        for record in unpinned[:max(excess, 0)]:
            self._records.remove(record)
            evicted.append(record.id)
        return evicted

    async def delete(self, record_id: str) -> bool:
        for record in self._records:
            if record.id == record_id:
                self._records.remove(record)
                return True
        return False

    async def set_pinned(self, record_id: str, pinned: bool) -> bool:
        for record in self._records:
            if record.id == record_id:
                record.pinned = pinned
                return True
        return False

    def __len__(self) -> int:
        return len(self._records)


class JsonlHistoryStore(InMemoryHistoryStore):
    """
    Append-only log of history operations, one JSON object per line.

    Write path:
    1. Append the operation record (insert / delete / pin)
    2. Flush + fsync for durability
    3. Apply it to the in-memory view

    The log is replayed on ``initialize`` and compacted when the number of
    dead lines grows past the live record count.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._file = None
        self._log_lines = 0

    async def initialize(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                await self._replay()
            self._file = await aiofiles.open(self.path, "a")
        except OSError as e:
            raise StorageError(f"Cannot open history log {self.path}: {e}") from e
        logger.info(f"History store loaded {len(self)} records from {self.path}")

    async def _replay(self) -> None:
        async with aiofiles.open(self.path, "r") as f:
            async for line in f:
                if not line.strip():
                    continue
                self._log_lines += 1
                try:
                    self._apply(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.error(f"Invalid history log line: {e}")

    def _apply(self, op: Dict[str, Any]) -> None:
        kind = op["op"]
        if kind == "insert":
            self._records.append(HistoryRecord.from_dict(op["record"]))
        elif kind == "delete":
            self._records = [r for r in self._records if r.id != op["id"]]
        elif kind == "pin":
            for record in self._records:
                if record.id == op["id"]:
                    record.pinned = bool(op["pinned"])

    async def _append(self, op: Dict[str, Any]) -> None:
        if self._file is None:
            raise StorageError("History store is not initialized")
        try:
            await self._file.write(json.dumps(op) + "\n")
            await self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            raise StorageError(f"Failed to write history log: {e}") from e
        self._log_lines += 1

    async def insert(self, record: HistoryRecord) -> None:
        await self._append({"op": "insert", "record": record.to_dict()})
        await super().insert(record)

    async def evict_oldest_beyond(self, cap: int) -> List[str]:
        evicted = await super().evict_oldest_beyond(cap)
        for record_id in evicted:
            await self._append({"op": "delete", "id": record_id})
        if evicted and self._log_lines > 2 * max(len(self), 1) + 50:
            await self._compact()
        return evicted

    async def delete(self, record_id: str) -> bool:
        if not any(r.id == record_id for r in self._records):
            return False
        await self._append({"op": "delete", "id": record_id})
        return await super().delete(record_id)

    async def set_pinned(self, record_id: str, pinned: bool) -> bool:
        if not any(r.id == record_id for r in self._records):
            return False
        await self._append({"op": "pin", "id": record_id, "pinned": pinned})
        return await super().set_pinned(record_id, pinned)

    async def _compact(self) -> None:
        """Rewrite the log with only live records."""
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                for record in self._records:
                    await f.write(json.dumps({"op": "insert", "record": record.to_dict()}) + "\n")
                await f.flush()
                os.fsync(f.fileno())
            await self._file.close()
            os.replace(tmp_path, self.path)
            self._file = await aiofiles.open(self.path, "a")
        except OSError as e:
            raise StorageError(f"Failed to compact history log: {e}") from e
        self._log_lines = len(self._records)
        logger.debug(f"Compacted history log to {self._log_lines} lines")

    async def close(self) -> None:
        if self._file:
            await self._file.close()
            self._file = None


class HistoryGateway:
    """Single point of entry for OCR-derived text into history."""

    def __init__(
        self,
        store: HistoryStore,
        cap: int = 100,
        duplicate_window: Optional[timedelta] = timedelta(hours=24),
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.cap = cap
        self.duplicate_window = duplicate_window
        self.event_bus = event_bus
        self._insert_lock = asyncio.Lock()

    async def insert(self, text: str, metadata: Optional[InsertMetadata] = None) -> InsertResult:
        """
        Insert recognized text unless it is blank or a recent duplicate.

        Rejections are successful no-ops. Only genuine storage failures raise
        (``StorageError``).
        """
        metadata = metadata or InsertMetadata()
        trimmed = text.strip() if text else ""
        if not trimmed:
            logger.debug("Skipping blank text")
            return InsertResult.blank()

        async with self._insert_lock:
            existing = await self.store.query_duplicate(trimmed, self.duplicate_window)
            if existing is not None:
                logger.debug(f"Duplicate blocked: '{trimmed[:50]}'")
                return InsertResult.duplicate(existing.id)

            record = HistoryRecord(
                text=trimmed,
                source_tag=metadata.source_tag,
                backend_used=metadata.backend_used,
                confidence=metadata.confidence,
            )
            await self.store.insert(record)
            evicted = await self.store.evict_oldest_beyond(self.cap)

        if evicted:
            logger.debug(f"Evicted {len(evicted)} records beyond cap {self.cap}")
        logger.info(f"Added to history: '{trimmed[:50]}'")
        if self.event_bus is not None:
            self.event_bus.publish(
                "history.inserted",
                {"id": record.id, "source_tag": record.source_tag, "backend": record.backend_used},
                source="history_gateway",
            )
        return InsertResult.inserted_as(record.id)

    async def recent(self, limit: int = 20) -> List[HistoryRecord]:
        return await self.store.list_recent(limit)

    async def search(self, query: str, limit: int = 20) -> List[HistoryRecord]:
        return await self.store.search(query, limit)

    async def statistics(self) -> Dict[str, Any]:
        records = await self.store.list_recent(limit=0)
        confidences = [r.confidence for r in records if r.confidence is not None]
        return {
            "total": len(records),
            "average_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
            "backend_usage": dict(Counter(r.backend_used for r in records if r.backend_used)),
            "pinned": sum(1 for r in records if r.pinned),
        }
