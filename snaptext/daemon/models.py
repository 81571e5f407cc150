"""Data models shared by the capture/OCR pipeline."""

import base64
import io
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import ulid
from PIL import Image


class CaptureKind(Enum):
    """Where a raw image comes from."""
    FULL = "full"
    REGION = "region"
    ACTIVE_WINDOW = "window"
    FILE = "file"


@dataclass(frozen=True)
class Rect:
    left: int
    top: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def as_monitor(self) -> dict:
        """mss-style bounding dictionary."""
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}

    @classmethod
    def parse(cls, value: str) -> "Rect":
        """Parse ``"left,top,width,height"``."""
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 4:
            raise ValueError(f"Expected left,top,width,height, got: {value!r}")
        left, top, width, height = (int(p) for p in parts)
        return cls(left, top, width, height)


@dataclass(frozen=True)
class CaptureRequest:
    """What to capture; build with the classmethod constructors."""
    kind: CaptureKind
    rect: Optional[Rect] = None
    path: Optional[Path] = None

    @classmethod
    def full(cls) -> "CaptureRequest":
        return cls(CaptureKind.FULL)

    @classmethod
    def region(cls, rect: Rect) -> "CaptureRequest":
        return cls(CaptureKind.REGION, rect=rect)

    @classmethod
    def active_window(cls) -> "CaptureRequest":
        return cls(CaptureKind.ACTIVE_WINDOW)

    @classmethod
    def file(cls, path) -> "CaptureRequest":
        return cls(CaptureKind.FILE, path=Path(path))


@dataclass(frozen=True)
class CaptureEvent:
    """A single observed capture, immutable once created."""
    source: CaptureKind
    origin_hint: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RawImage:
    """A decoded image buffer plus where it came from."""
    image: Image.Image
    origin: CaptureKind
    origin_hint: Optional[str] = None

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    def to_png_bytes(self) -> bytes:
        buffer = io.BytesIO()
        image = self.image
        if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            image = image.convert("RGB")
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    def to_base64_png(self) -> str:
        return base64.b64encode(self.to_png_bytes()).decode("ascii")


@dataclass(frozen=True)
class TextRegion:
    text: str
    confidence: float
    bounding_box: Tuple[int, int, int, int]  # left, top, width, height
    language: Optional[str] = None


@dataclass
class OcrOutcome:
    """Normalized result of one recognition call, whatever the backend."""
    text: str
    confidence: float
    backend: str
    regions: List[TextRegion] = field(default_factory=list)
    processing_time: float = 0.0
    produced_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_regions(
        cls,
        regions: List[TextRegion],
        backend: str,
        separator: str = "\n",
    ) -> "OcrOutcome":
        """
        Build an outcome from recognized regions.

        Text is the non-empty region texts joined by ``separator``; confidence
        is the arithmetic mean of region confidences.
        """
        kept = [r for r in regions if r.text.strip()]
        text = separator.join(r.text for r in kept)
        confidence = sum(r.confidence for r in kept) / len(kept) if kept else 0.0
        return cls(text=text, confidence=confidence, backend=backend, regions=kept)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "confidence": round(self.confidence, 4),
            "backend": self.backend,
            "regions": [
                {
                    "text": r.text,
                    "confidence": round(r.confidence, 4),
                    "bounding_box": list(r.bounding_box),
                    "language": r.language,
                }
                for r in self.regions
            ],
            "processing_time": round(self.processing_time, 4),
            "produced_at": self.produced_at.isoformat() + "Z",
        }


@dataclass
class HistoryRecord:
    """
    One persisted history entry.

    Created only by ``HistoryGateway.insert``; afterwards only ``pinned`` and
    ``tags`` may change.
    """
    text: str
    source_tag: str = "ocr"
    backend_used: Optional[str] = None
    confidence: Optional[float] = None
    id: str = ""
    created_at: datetime = None
    pinned: bool = False
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.utcnow()
        if not self.id:
            self.id = str(ulid.ULID())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "source_tag": self.source_tag,
            "backend_used": self.backend_used,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat() + "Z",
            "pinned": self.pinned,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryRecord":
        return cls(
            id=data["id"],
            text=data["text"],
            source_tag=data.get("source_tag", "ocr"),
            backend_used=data.get("backend_used"),
            confidence=data.get("confidence"),
            created_at=datetime.fromisoformat(data["created_at"].rstrip("Z")),
            pinned=data.get("pinned", False),
            tags=list(data.get("tags", [])),
        )


@dataclass(frozen=True)
class InsertMetadata:
    source_tag: str = "ocr"
    backend_used: Optional[str] = None
    confidence: Optional[float] = None


class InsertStatus(Enum):
    INSERTED = "inserted"
    REJECTED_BLANK = "rejected_blank"
    REJECTED_DUPLICATE = "rejected_duplicate"


@dataclass(frozen=True)
class InsertResult:
    """Outcome of a history insert; rejections are successful no-ops."""
    status: InsertStatus
    record_id: Optional[str] = None

    @property
    def inserted(self) -> bool:
        return self.status is InsertStatus.INSERTED

    @classmethod
    def inserted_as(cls, record_id: str) -> "InsertResult":
        return cls(InsertStatus.INSERTED, record_id)

    @classmethod
    def blank(cls) -> "InsertResult":
        return cls(InsertStatus.REJECTED_BLANK)

    @classmethod
    def duplicate(cls, existing_id: Optional[str] = None) -> "InsertResult":
        return cls(InsertStatus.REJECTED_DUPLICATE, existing_id)
