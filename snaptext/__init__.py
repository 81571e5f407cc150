"""snaptext - screenshot capture to clipboard OCR pipeline."""

__version__ = "0.1.0"
