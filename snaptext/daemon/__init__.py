"""Capture, OCR and history services."""
