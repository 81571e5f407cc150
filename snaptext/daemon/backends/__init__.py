"""OCR backends: one local engine and several remote vision APIs."""

from typing import Dict, List, Mapping, Optional, Type

import httpx

from ..config import BackendConfig
from ..errors import ConfigurationError
from .base import EXTRACTION_PROMPT, OCRBackend, RecognitionOptions
from .local import LocalVisionBackend
from .remote import (
    REMOTE_FALLBACK_CONFIDENCE,
    AnthropicBackend,
    DeepSeekBackend,
    GeminiBackend,
    GrokBackend,
    OpenAIBackend,
    RemoteHttpBackend,
)

BACKEND_CLASSES: Dict[str, Type[OCRBackend]] = {
    cls.backend_id: cls
    for cls in (
        LocalVisionBackend,
        OpenAIBackend,
        AnthropicBackend,
        GeminiBackend,
        GrokBackend,
        DeepSeekBackend,
    )
}


class BackendRegistry:
    """
    Holds one backend instance per id.

    This is the only place that maps a backend id to an implementation.
    """

    def __init__(self, backends: Dict[str, OCRBackend]):
        self._backends = dict(backends)

    @classmethod
    def from_configs(
        cls,
        configs: Mapping[str, BackendConfig],
        client: Optional[httpx.AsyncClient] = None,
    ) -> "BackendRegistry":
        backends: Dict[str, OCRBackend] = {}
        for backend_id, backend_cls in BACKEND_CLASSES.items():
            config = configs.get(backend_id) or BackendConfig(backend_id=backend_id)
            if issubclass(backend_cls, RemoteHttpBackend):
                backends[backend_id] = backend_cls(config, client=client)
            else:
                backends[backend_id] = backend_cls(config)
        return cls(backends)

    def resolve(self, backend_id: str) -> OCRBackend:
        try:
            return self._backends[backend_id]
        except KeyError:
            raise ConfigurationError(
                f"Unknown backend '{backend_id}'. Choose from: {', '.join(self.ids())}"
            ) from None

    def reconfigure(self, configs: Mapping[str, BackendConfig]) -> None:
        for backend_id, backend in self._backends.items():
            if backend_id in configs:
                backend.configure(configs[backend_id])

    def ids(self) -> List[str]:
        return list(self._backends)

    def __iter__(self):
        return iter(self._backends.values())


__all__ = [
    "BACKEND_CLASSES",
    "BackendRegistry",
    "EXTRACTION_PROMPT",
    "OCRBackend",
    "RecognitionOptions",
    "LocalVisionBackend",
    "RemoteHttpBackend",
    "OpenAIBackend",
    "AnthropicBackend",
    "GeminiBackend",
    "GrokBackend",
    "DeepSeekBackend",
    "REMOTE_FALLBACK_CONFIDENCE",
]
