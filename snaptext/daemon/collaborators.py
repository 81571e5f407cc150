"""
Outward-facing collaborators: clipboard writes and user notifications.

Both are best-effort. Neither may block or fail the pipeline, so callers
treat their return values as advisory only.
"""

from abc import ABC, abstractmethod
from enum import Enum

import pyperclip
from loguru import logger

from .bus import EventBus


class NotificationKind(Enum):
    PROGRESS = "progress"
    SUCCESS = "success"
    ERROR = "error"


class Notifier(ABC):
    """Consumes ``notify(title, body, kind)``; must return promptly."""

    @abstractmethod
    def notify(self, title: str, body: str, kind: NotificationKind) -> None:
        ...


class BusNotifier(Notifier):
    """Publishes notifications as ``notify.<kind>`` events without waiting."""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus

    def notify(self, title: str, body: str, kind: NotificationKind) -> None:
        self.event_bus.publish(
            f"notify.{kind.value}",
            {"title": title, "body": body},
            source="notifier",
        )


class Clipboard(ABC):
    @abstractmethod
    def set_text(self, text: str) -> bool:
        ...


class PyperclipClipboard(Clipboard):
    """System clipboard through pyperclip."""

    def set_text(self, text: str) -> bool:
        try:
            pyperclip.copy(text)
            logger.debug(f"Copied {len(text)} chars to clipboard")
            return True
        except pyperclip.PyperclipException as e:
            # Headless systems or Linux without xclip/xsel
            logger.warning(f"Failed to copy text to clipboard: {e}")
            return False
