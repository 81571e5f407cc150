"""Capture sources: turn a capture request into a decoded raw image."""

import asyncio
import sys
from pathlib import Path
from typing import Callable, Iterable, Optional

import mss
import mss.exception
from loguru import logger
from PIL import Image, UnidentifiedImageError

from .errors import InvalidRegion, PermissionDenied, UnreadableImage
from .models import CaptureKind, CaptureRequest, RawImage, Rect


DEFAULT_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".tiff", ".tif", ".bmp", ".gif", ".heic", ".webp")

WindowLocator = Callable[[], Optional[Rect]]


def is_image_file(path: Path, suffixes: Iterable[str] = DEFAULT_IMAGE_SUFFIXES) -> bool:
    return path.suffix.lower() in {s.lower() for s in suffixes}


def load_image_file(path: Path) -> RawImage:
    """Decode an image file fully, raising ``UnreadableImage`` on any failure."""
    try:
        with Image.open(path) as img:
            img.load()
            image = img.copy()
    except (FileNotFoundError, IsADirectoryError) as e:
        raise UnreadableImage(str(path), "file not found") from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise UnreadableImage(str(path), str(e)) from e
    return RawImage(image=image, origin=CaptureKind.FILE, origin_hint=str(path))


def foreground_window_bounds() -> Optional[Rect]:
    """Bounds of the foreground window where the platform exposes them."""
    if sys.platform != "win32":
        return None
    try:
        import ctypes
        from ctypes import wintypes

        user32 = ctypes.windll.user32
        hwnd = user32.GetForegroundWindow()
        if not hwnd:
            return None
        rect = wintypes.RECT()
        if not user32.GetWindowRect(hwnd, ctypes.byref(rect)):
            return None
        return Rect(rect.left, rect.top, rect.right - rect.left, rect.bottom - rect.top)
    except (AttributeError, OSError) as e:
        logger.debug(f"Could not read foreground window bounds: {e}")
        return None


class ScreenCaptureSource:
    """
    Produces raw images from the screen (via mss) or from image files.

    Screen grabs run in a worker thread; mss handles are not shared across
    threads so each grab opens its own.
    """

    def __init__(self, window_locator: WindowLocator = foreground_window_bounds, monitor: int = 1):
        self.window_locator = window_locator
        self.monitor = monitor

    async def capture(self, request: CaptureRequest) -> RawImage:
        if request.kind is CaptureKind.FILE:
            if request.path is None:
                raise UnreadableImage(None, "no path given")
            return await asyncio.to_thread(load_image_file, request.path)

        if request.kind is CaptureKind.REGION:
            if request.rect is None or request.rect.is_empty:
                raise InvalidRegion()
            bounds = request.rect
        elif request.kind is CaptureKind.ACTIVE_WINDOW:
            bounds = self.window_locator()
            if bounds is not None and bounds.is_empty:
                bounds = None
            if bounds is None:
                logger.debug("Active window bounds unavailable, capturing primary monitor")
        else:
            bounds = None

        image = await asyncio.to_thread(self._grab, bounds)
        hint = f"{bounds.left},{bounds.top},{bounds.width},{bounds.height}" if bounds else None
        return RawImage(image=image, origin=request.kind, origin_hint=hint)

    def _grab(self, bounds: Optional[Rect]) -> Image.Image:
        try:
            with mss.mss() as sct:
                if bounds is None:
                    monitors = sct.monitors
                    index = self.monitor if self.monitor < len(monitors) else 0
                    target = monitors[index]
                else:
                    target = bounds.as_monitor()
                shot = sct.grab(target)
                return Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
        except mss.exception.ScreenShotError as e:
            logger.error(f"Screen capture failed: {e}")
            raise PermissionDenied(f"Screen capture failed: {e}") from e
