"""
Remote vision-model OCR backends over HTTP.

Every provider follows the same call shape: check the key, encode the image
as base64 PNG, POST one request with a fixed extraction prompt and parse the
provider's JSON into plain text. None of them report regions or confidence,
so outcomes carry no regions and ``REMOTE_FALLBACK_CONFIDENCE``.
"""

from abc import abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx
from loguru import logger

from ..config import BackendConfig
from ..errors import MalformedResponse, NoTextFound, NotAvailable, ProviderError, Timeout
from ..models import OcrOutcome, RawImage
from .base import EXTRACTION_PROMPT, OCRBackend, RecognitionOptions


# Providers give no confidence score; this is a fixed stand-in, not a measurement
REMOTE_FALLBACK_CONFIDENCE = 0.95

MAX_ERROR_BODY = 2000

RequestParts = Tuple[str, Dict[str, str], Dict[str, Any]]


class RemoteHttpBackend(OCRBackend):
    """Base class for HTTP vision APIs."""

    requires_credential = True
    is_remote = True
    default_model: str = ""

    def __init__(self, config: BackendConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self._client = client

    @property
    def model(self) -> str:
        return self.config.model or self.default_model

    async def recognize(self, image: RawImage, options: RecognitionOptions) -> OcrOutcome:
        # Checked here as well as in the dispatcher: no key, no request
        self.check_prerequisites()

        url, headers, body = self.build_request(image.to_base64_png(), options)
        response = await self._post(url, headers, body)

        if not 200 <= response.status_code < 300:
            logger.warning(f"{self.display_name} returned HTTP {response.status_code}")
            raise ProviderError(self.backend_id, response.status_code, response.text[:MAX_ERROR_BODY])

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponse(self.backend_id, f"invalid JSON: {e}") from e

        try:
            text = self.parse_response(payload)
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponse(self.backend_id, f"unexpected shape: {e!r}") from e
        if not isinstance(text, str):
            raise MalformedResponse(self.backend_id, "text is not a string")

        text = text.strip()
        if not text:
            raise NoTextFound(backend=self.backend_id)

        return OcrOutcome(text=text, confidence=REMOTE_FALLBACK_CONFIDENCE, backend=self.backend_id)

    async def _post(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.post(url, headers=headers, json=body)
            async with httpx.AsyncClient() as client:
                return await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as e:
            raise Timeout(self.backend_id) from e
        except httpx.HTTPError as e:
            raise ProviderError(self.backend_id, None, str(e)) from e

    def _limits(self, options: RecognitionOptions) -> Tuple[int, float]:
        max_tokens = options.max_tokens or self.config.max_tokens
        temperature = options.temperature if options.temperature is not None else self.config.temperature
        return max_tokens, temperature

    @abstractmethod
    def build_request(self, image_b64: str, options: RecognitionOptions) -> RequestParts:
        ...

    @abstractmethod
    def parse_response(self, payload: Dict[str, Any]) -> str:
        ...


class OpenAIBackend(RemoteHttpBackend):
    backend_id = "openai"
    display_name = "OpenAI"
    default_model = "gpt-4o"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def build_request(self, image_b64: str, options: RecognitionOptions) -> RequestParts:
        max_tokens, temperature = self._limits(options)
        body = {
            "model": self.model,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": EXTRACTION_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_b64}"}},
                ],
            }],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        return self.endpoint, headers, body

    def parse_response(self, payload: Dict[str, Any]) -> str:
        return payload["choices"][0]["message"]["content"]


class AnthropicBackend(RemoteHttpBackend):
    backend_id = "anthropic"
    display_name = "Anthropic Claude"
    default_model = "claude-3-5-sonnet-latest"
    endpoint = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def build_request(self, image_b64: str, options: RecognitionOptions) -> RequestParts:
        max_tokens, temperature = self._limits(options)
        body = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": EXTRACTION_PROMPT},
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": "image/png", "data": image_b64},
                    },
                ],
            }],
        }
        headers = {"x-api-key": self.config.api_key, "anthropic-version": self.api_version}
        return self.endpoint, headers, body

    def parse_response(self, payload: Dict[str, Any]) -> str:
        blocks = payload["content"]
        texts = [b["text"] for b in blocks if b.get("type", "text") == "text"]
        if not texts:
            raise KeyError("text")
        return "".join(texts)


class GeminiBackend(RemoteHttpBackend):
    backend_id = "gemini"
    display_name = "Google Gemini"
    default_model = "gemini-1.5-flash"
    endpoint = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def build_request(self, image_b64: str, options: RecognitionOptions) -> RequestParts:
        max_tokens, temperature = self._limits(options)
        body = {
            "contents": [{
                "parts": [
                    {"text": EXTRACTION_PROMPT},
                    {"inline_data": {"mime_type": "image/png", "data": image_b64}},
                ],
            }],
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
        }
        url = self.endpoint.format(model=self.model)
        headers = {"x-goog-api-key": self.config.api_key}
        return url, headers, body

    def parse_response(self, payload: Dict[str, Any]) -> str:
        parts = payload["candidates"][0]["content"]["parts"]
        return "".join(p["text"] for p in parts if "text" in p)


class ReservedBackend(OCRBackend):
    """A provider slot with no public vision API yet; always unavailable."""

    requires_credential = True
    is_remote = True

    def check_prerequisites(self) -> None:
        raise NotAvailable(self.backend_id, self.display_name)

    async def recognize(self, image: RawImage, options: RecognitionOptions) -> OcrOutcome:
        raise NotAvailable(self.backend_id, self.display_name)


class GrokBackend(ReservedBackend):
    backend_id = "grok"
    display_name = "xAI Grok"


class DeepSeekBackend(ReservedBackend):
    backend_id = "deepseek"
    display_name = "DeepSeek"
