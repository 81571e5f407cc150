"""Offline OCR through the Tesseract engine."""

import asyncio
from collections import OrderedDict
from typing import Dict, List, Tuple

import pytesseract
from loguru import logger
from PIL import Image

from ..errors import NoTextFound, NotAvailable, ProviderError
from ..models import OcrOutcome, RawImage, TextRegion
from .base import OCRBackend, RecognitionOptions


# BCP-47 style hints to Tesseract traineddata names
LANGUAGE_CODES: Dict[str, str] = {
    "en": "eng",
    "es": "spa",
    "fr": "fra",
    "de": "deu",
    "it": "ita",
    "pt": "por",
    "ja": "jpn",
    "ko": "kor",
    "ru": "rus",
    "zh-cn": "chi_sim",
    "zh-hans": "chi_sim",
    "zh-tw": "chi_tra",
    "zh-hant": "chi_tra",
}

ACCURACY_CONFIGS = {
    # full page segmentation with layout analysis
    "accurate": "--oem 1 --psm 3",
    # single uniform block, no layout analysis
    "fast": "--oem 1 --psm 6",
}

MIN_WIDTH = 400
MIN_HEIGHT = 120


def tesseract_languages(hints: List[str]) -> str:
    """Map language hints like ``en-US`` or ``zh-TW`` to ``eng+chi_tra``."""
    codes = []
    for hint in hints:
        key = hint.lower().replace("_", "-")
        code = LANGUAGE_CODES.get(key) or LANGUAGE_CODES.get(key.split("-")[0])
        if code is None:
            # Already a tesseract code, or unknown; pass through
            code = hint
        if code not in codes:
            codes.append(code)
    return "+".join(codes) or "eng"


def upscale_factor(size: Tuple[int, int]) -> int:
    """Integer factor (1-4) bringing small captures up to readable size."""
    w, h = size
    scale = 1
    if w < MIN_WIDTH:
        scale = max(scale, (MIN_WIDTH + w - 1) // max(w, 1))
    if h < MIN_HEIGHT:
        scale = max(scale, (MIN_HEIGHT + h - 1) // max(h, 1))
    return min(scale, 4)


def regions_from_data(data: Dict[str, list], scale: int = 1) -> List[TextRegion]:
    """
    Group Tesseract word boxes into line regions.

    Words sharing (block, paragraph, line) form one region. The region's
    confidence is the mean word confidence scaled to 0..1 and its box is the
    union of the word boxes, mapped back to original image coordinates.
    """
    lines: "OrderedDict[tuple, dict]" = OrderedDict()
    count = len(data.get("text", []))
    for i in range(count):
        word = (data["text"][i] or "").strip()
        try:
            conf = float(data["conf"][i])
        except (TypeError, ValueError):
            continue
        if not word or conf < 0:
            continue

        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        left, top = int(data["left"][i]), int(data["top"][i])
        right, bottom = left + int(data["width"][i]), top + int(data["height"][i])

        line = lines.setdefault(key, {"words": [], "confs": [], "box": [left, top, right, bottom]})
        line["words"].append(word)
        line["confs"].append(conf)
        box = line["box"]
        box[0], box[1] = min(box[0], left), min(box[1], top)
        box[2], box[3] = max(box[2], right), max(box[3], bottom)

    regions = []
    for line in lines.values():
        left, top, right, bottom = (v // scale for v in line["box"])
        regions.append(TextRegion(
            text=" ".join(line["words"]),
            confidence=sum(line["confs"]) / len(line["confs"]) / 100.0,
            bounding_box=(left, top, right - left, bottom - top),
        ))
    return regions


class LocalVisionBackend(OCRBackend):
    """Runs entirely offline; reports per-line confidence and bounding boxes."""

    backend_id = "local"
    display_name = "Tesseract (local)"

    async def recognize(self, image: RawImage, options: RecognitionOptions) -> OcrOutcome:
        regions = await asyncio.to_thread(self._detect_regions, image.image, options)
        if not regions:
            raise NoTextFound(backend=self.backend_id)

        outcome = OcrOutcome.from_regions(regions, backend=self.backend_id)
        logger.debug(f"Local OCR found {len(outcome.regions)} regions (confidence {outcome.confidence:.2f})")
        return outcome

    def _detect_regions(self, image: Image.Image, options: RecognitionOptions) -> List[TextRegion]:
        scale = 1
        if options.accuracy == "accurate":
            scale = upscale_factor(image.size)
            if scale > 1:
                w, h = image.size
                image = image.resize((w * scale, h * scale), Image.Resampling.LANCZOS)

        try:
            data = pytesseract.image_to_data(
                image,
                lang=tesseract_languages(options.languages),
                config=ACCURACY_CONFIGS.get(options.accuracy, ACCURACY_CONFIGS["accurate"]),
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractNotFoundError as e:
            raise NotAvailable(self.backend_id, self.display_name, "Tesseract is not installed") from e
        except pytesseract.TesseractError as e:
            raise ProviderError(self.backend_id, None, str(e.message)) from e

        return regions_from_data(data, scale)
