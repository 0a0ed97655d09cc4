"""
Collector-number OCR for binarized corner strips.

TesseractCornerReader.read_corners(left_jpeg, right_jpeg) runs Tesseract on
both bottom corners with a few page segmentation modes and returns the
reading that looks most like a collector number, with the mean word
confidence scaled to 0..1.
"""

import asyncio
import logging
import re
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np
import pytesseract
from PIL import Image
from pytesseract import Output

from . import regions
from .config import OcrConfig
from .types import OcrReading

LOG = logging.getLogger("cardmatch.ocr")

CORNER_HINTS = ("Bottom-Left Corner", "Bottom-Right Corner")
COLLECTOR_WHITELIST = "0123456789/-ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# digits with an optional letter prefix and optional "/total"; O, I and | may
# stand in for digits as long as the run holds one real digit
_DIGITS = r"[0-9OI|]*\d[0-9OI|]*"
ID_CANDIDATE_RE = re.compile(rf"[A-Z]{{0,5}}-?{_DIGITS}[A-Z]?(?:/[A-Z]{{0,3}}{_DIGITS}[A-Z]?)?")
YEAR_RE = re.compile(r"^(19|20)\d{2}$")


def preprocess_for_ocr(binary: np.ndarray, upscale: int = 3) -> np.ndarray:
    # - upscale to help tesseract read small print
    # - median blur to remove salt-and-pepper left by binarization
    # - white margin so glyphs touching the crop edge are still segmented
    h, w = binary.shape[:2]
    img_up = cv2.resize(binary, (w * upscale, h * upscale), interpolation=cv2.INTER_CUBIC)
    img_med = cv2.medianBlur(img_up, 3)
    return cv2.copyMakeBorder(img_med, 10, 10, 10, 10, cv2.BORDER_CONSTANT, value=255)


def ocr_image_full(img_gray: np.ndarray, psm: int = 7) -> Tuple[str, float]:
    pil = Image.fromarray(img_gray)
    config = f"--psm {psm} --oem 3 -c tessedit_char_whitelist={COLLECTOR_WHITELIST}"
    data = pytesseract.image_to_data(pil, lang="eng", config=config, output_type=Output.DICT)

    words = [t.strip() for t in data.get("text", []) if t and t.strip()]
    text = " ".join(words).strip()

    confs = []
    for c in data.get("conf", []):
        try:
            ci = float(c)
        except (TypeError, ValueError):
            continue
        if ci >= 0:
            confs.append(ci)
    avg_conf = float(sum(confs)) / len(confs) if confs else 0.0
    return text, avg_conf


def best_collector_id(text: str) -> Optional[str]:
    """Pick the most collector-number-like token out of OCR text."""
    if not text:
        return None
    compact = re.sub(r"\s*/\s*", "/", text.upper())
    found = [m.group(0) for m in ID_CANDIDATE_RE.finditer(compact)]
    found = [f for f in found if not YEAR_RE.match(f)]
    if not found:
        return None
    # fractions beat bare numbers, then longer beats shorter
    return max(found, key=lambda f: ("/" in f, len(f)))


class TesseractCornerReader:
    def __init__(self, cfg: Optional[OcrConfig] = None):
        self.cfg = cfg or OcrConfig()
        if self.cfg.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.cfg.tesseract_cmd

    def _read_one(self, jpeg: bytes, hint: str) -> Tuple[Optional[str], str, float]:
        image = regions.decode_image(jpeg)
        if image is None:
            LOG.warning("OCR input for %s could not be decoded", hint)
            return None, "", 0.0
        prep = preprocess_for_ocr(regions.to_gray(image), self.cfg.upscale)
        best: Tuple[Optional[str], str, float] = (None, "", 0.0)
        for psm in self.cfg.psm_modes:
            try:
                text, conf = ocr_image_full(prep, psm=psm)
            except pytesseract.TesseractError as exc:
                LOG.warning("Tesseract psm=%s failed on %s: %s", psm, hint, exc)
                continue
            candidate = best_collector_id(text)
            LOG.debug("OCR %s psm=%s text=%r conf=%.1f -> %s", hint, psm, text, conf, candidate)
            if candidate is None:
                continue
            if best[0] is None or ("/" in candidate, conf) > ("/" in best[0], best[2]):
                best = (candidate, text, conf)
        return best

    def read_corners_sync(self, left_jpeg: bytes, right_jpeg: bytes,
                          hints: Sequence[str] = CORNER_HINTS) -> OcrReading:
        readings = [self._read_one(left_jpeg, hints[0]), self._read_one(right_jpeg, hints[1])]
        readings = [r for r in readings if r[0]]
        if not readings:
            return OcrReading(normalized_id=None, raw="", confidence=0.0)
        normalized, raw, conf = max(readings, key=lambda r: ("/" in r[0], r[2]))
        return OcrReading(normalized_id=normalized, raw=raw, confidence=max(0.0, min(1.0, conf / 100.0)))

    async def read_corners(self, left_jpeg: bytes, right_jpeg: bytes,
                           hints: Sequence[str] = CORNER_HINTS) -> OcrReading:
        return await asyncio.to_thread(self.read_corners_sync, left_jpeg, right_jpeg, hints)
