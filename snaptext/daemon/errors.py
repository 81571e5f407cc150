"""Typed error taxonomy for the capture/OCR pipeline.

Errors propagate unmodified from capture sources, OCR backends and the
dispatcher up to the orchestrator or bulk processor, so callers can branch
on ``kind`` instead of parsing strings.
"""

from enum import Enum
from typing import Optional


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def log_level(self) -> str:
        return {
            ErrorSeverity.LOW: "INFO",
            ErrorSeverity.MEDIUM: "WARNING",
            ErrorSeverity.HIGH: "ERROR",
            ErrorSeverity.CRITICAL: "CRITICAL",
        }[self]


class ErrorKind(Enum):
    """Every failure the pipeline can surface."""
    INVALID_REGION = "invalid_region"
    UNREADABLE_IMAGE = "unreadable_image"
    PERMISSION_DENIED = "permission_denied"
    MISSING_CREDENTIAL = "missing_credential"
    NOT_AVAILABLE = "not_available"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_RESPONSE = "malformed_response"
    NO_TEXT_FOUND = "no_text_found"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


class SnapTextError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION
    severity: ErrorSeverity = ErrorSeverity.HIGH

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    def default_message(self) -> str:
        return self.kind.value.replace("_", " ").capitalize()

    @property
    def user_message(self) -> str:
        """Short human-readable text for notifications."""
        return self.message


# --- Capture -----------------------------------------------------------------

class CaptureError(SnapTextError):
    """Producing a raw image failed."""


class InvalidRegion(CaptureError):
    kind = ErrorKind.INVALID_REGION
    severity = ErrorSeverity.MEDIUM

    def default_message(self) -> str:
        return "Selected region is empty"


class UnreadableImage(CaptureError):
    kind = ErrorKind.UNREADABLE_IMAGE
    severity = ErrorSeverity.MEDIUM

    def __init__(self, path: Optional[str] = None, reason: str = ""):
        self.path = path
        self.reason = reason
        detail = f"Could not read image {path}" if path else "Could not read image"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)


class PermissionDenied(CaptureError):
    kind = ErrorKind.PERMISSION_DENIED

    def default_message(self) -> str:
        return "Screen recording permission is missing"


# --- OCR ---------------------------------------------------------------------

class OcrError(SnapTextError):
    """Text recognition failed."""

    def __init__(self, message: str = "", backend: Optional[str] = None):
        self.backend = backend
        super().__init__(message)


class MissingCredential(OcrError):
    kind = ErrorKind.MISSING_CREDENTIAL
    severity = ErrorSeverity.MEDIUM

    def __init__(self, backend: str, display_name: Optional[str] = None):
        self.display_name = display_name or backend
        super().__init__(f"API key missing for {self.display_name}", backend=backend)


class NotAvailable(OcrError):
    kind = ErrorKind.NOT_AVAILABLE
    severity = ErrorSeverity.MEDIUM

    def __init__(self, backend: str, display_name: Optional[str] = None, reason: Optional[str] = None):
        self.display_name = display_name or backend
        super().__init__(reason or f"{self.display_name} is not available yet", backend=backend)


class Timeout(OcrError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, backend: Optional[str] = None, seconds: Optional[float] = None):
        self.seconds = seconds
        super().__init__("Request timed out", backend=backend)


class ProviderError(OcrError):
    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, backend: str, status: Optional[int], body: str = ""):
        self.status = status
        self.body = body
        if status is None:
            message = f"{backend} failed: {body}"
        else:
            message = f"{backend} returned HTTP {status}"
        super().__init__(message, backend=backend)

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class MalformedResponse(OcrError):
    kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(self, backend: str, detail: str = ""):
        self.detail = detail
        super().__init__(f"Unexpected response from {backend}", backend=backend)


class NoTextFound(OcrError):
    """Normal outcome: the image simply has no readable text."""
    kind = ErrorKind.NO_TEXT_FOUND
    severity = ErrorSeverity.LOW

    def default_message(self) -> str:
        return "No text found"


# --- Storage / configuration ---------------------------------------------------

class StorageError(SnapTextError):
    """The persistence collaborator failed with a genuine I/O error."""
    kind = ErrorKind.STORAGE
    severity = ErrorSeverity.CRITICAL


class ConfigurationError(SnapTextError):
    kind = ErrorKind.CONFIGURATION
