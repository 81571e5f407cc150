"""OCR backend capability contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from ..config import BackendConfig
from ..errors import MissingCredential
from ..models import OcrOutcome, RawImage


EXTRACTION_PROMPT = (
    "Extract all text from this image. Return only the extracted text, "
    "maintaining the original formatting and structure. Do not add any "
    "explanations or additional text."
)


@dataclass(frozen=True)
class RecognitionOptions:
    languages: List[str] = field(default_factory=lambda: ["en-US"])
    accuracy: Literal["fast", "accurate"] = "accurate"
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class OCRBackend(ABC):
    """
    One interchangeable OCR engine.

    Implementations never retry; a failed call raises an ``OcrError``
    subclass and the caller decides what to do next.
    """

    backend_id: str = ""
    display_name: str = ""
    requires_credential: bool = False
    is_remote: bool = False

    def __init__(self, config: BackendConfig):
        self.config = config

    def configure(self, config: BackendConfig) -> None:
        """Swap in a freshly loaded configuration snapshot."""
        self.config = config

    def check_prerequisites(self) -> None:
        """Raise before any work is attempted if the backend cannot run."""
        if self.requires_credential and not self.config.has_credential:
            raise MissingCredential(self.backend_id, self.display_name)

    @abstractmethod
    async def recognize(self, image: RawImage, options: RecognitionOptions) -> OcrOutcome:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(backend_id={self.backend_id!r})"
