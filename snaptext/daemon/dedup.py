"""Collapse bursts of duplicate capture signals into one logical event."""

import hashlib
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

from loguru import logger


class DedupState(Enum):
    IDLE = "idle"
    RECENTLY_ADMITTED = "recently_admitted"


class RejectReason(Enum):
    DUPLICATE = "duplicate"
    TOO_OLD = "too_old"


@dataclass(frozen=True)
class AdmitDecision:
    admitted: bool
    fingerprint: str
    reason: Optional[RejectReason] = None

    def __bool__(self) -> bool:
        return self.admitted


def fingerprint_file(path: Path, chunk_size: int = 1 << 16) -> str:
    """
    Content hash of a file.

    Falls back to path + mtime + size when the file cannot be read, e.g. it
    is still being written or was already moved away.
    """
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                digest.update(chunk)
        return f"sha256:{digest.hexdigest()}"
    except OSError:
        try:
            stat = path.stat()
            return f"stat:{path.resolve()}:{stat.st_mtime_ns}:{stat.st_size}"
        except OSError:
            return f"path:{path.resolve()}"


class EventDeduplicator:
    """
    Identity/rate filter upstream of OCR.

    Keeps a window of ``fingerprint -> admitted_at`` entries. Entries older
    than ``horizon`` seconds are swept before every admission check, so the
    window never grows past the signals seen within one horizon.
    """

    def __init__(self, horizon: float = 10.0, max_age: Optional[float] = 10.0, clock=time.time):
        self.horizon = horizon
        self.max_age = max_age
        self.clock = clock
        self._window: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stats = {"admitted": 0, "duplicate": 0, "too_old": 0}

    @property
    def state(self) -> DedupState:
        with self._lock:
            self._sweep(self.clock())
            return DedupState.RECENTLY_ADMITTED if self._window else DedupState.IDLE

    def admit(
        self,
        candidate: Union[Path, str],
        observed_at: Optional[float] = None,
        created_at: Optional[float] = None,
    ) -> AdmitDecision:
        """
        Decide whether a capture signal is a new logical event.

        ``candidate`` is either a file path (fingerprinted by content) or a
        ready-made fingerprint string. ``created_at`` is the file's creation
        or modification time when known.
        """
        observed_at = self.clock() if observed_at is None else observed_at
        fingerprint = fingerprint_file(candidate) if isinstance(candidate, Path) else str(candidate)

        with self._lock:
            self._sweep(observed_at)

            if self.max_age is not None and created_at is not None and observed_at - created_at > self.max_age:
                self._stats["too_old"] += 1
                return AdmitDecision(False, fingerprint, RejectReason.TOO_OLD)

            admitted_at = self._window.get(fingerprint)
            if admitted_at is not None and observed_at - admitted_at < self.horizon:
                self._stats["duplicate"] += 1
                logger.debug(f"Duplicate capture signal dropped: {fingerprint[:24]}")
                return AdmitDecision(False, fingerprint, RejectReason.DUPLICATE)

            self._window[fingerprint] = observed_at
            self._stats["admitted"] += 1
            return AdmitDecision(True, fingerprint)

    def _sweep(self, now: float) -> None:
        expired = [fp for fp, admitted_at in self._window.items() if now - admitted_at >= self.horizon]
        for fp in expired:
            del self._window[fp]

    def __len__(self) -> int:
        with self._lock:
            return len(self._window)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)
