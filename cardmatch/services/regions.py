"""
Corner-strip extraction and binarization for a rectified card.

extract_corners() cuts the bottom-left / bottom-right regions where collector
numbers are printed and binarizes them for OCR. extract_identity_strips()
produces small fixed-size binarized strips for fingerprinting; every image
being compared must go through it so the strips share identical dimensions.
"""

import logging
from typing import Optional

import cv2
import numpy as np

from .config import RegionConfig
from .types import CornerStrips, IdentityStrips

LOG = logging.getLogger("cardmatch.regions")


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def integral_image(gray: np.ndarray) -> np.ndarray:
    """Summed-area table padded with a leading zero row/column."""
    h, w = gray.shape[:2]
    table = np.zeros((h + 1, w + 1), dtype=np.float64)
    table[1:, 1:] = gray.astype(np.float64).cumsum(axis=0).cumsum(axis=1)
    return table


def binarize(image: np.ndarray, window: int = 25, bias: float = 10.0) -> np.ndarray:
    """
    Local-adaptive threshold. Each pixel is compared with the mean of the
    window centred on it (clamped at the borders) minus `bias`; pixels at or
    below that threshold become 0, all others 255.
    """
    gray = to_gray(image)
    h, w = gray.shape[:2]
    if h == 0 or w == 0:
        return np.zeros((h, w), dtype=np.uint8)
    table = integral_image(gray)
    half = window // 2

    ys = np.arange(h)
    xs = np.arange(w)
    y1 = np.clip(ys - half, 0, h - 1)[:, None]
    y2 = np.clip(ys + half, 0, h - 1)[:, None]
    x1 = np.clip(xs - half, 0, w - 1)[None, :]
    x2 = np.clip(xs + half, 0, w - 1)[None, :]

    window_sum = table[y2 + 1, x2 + 1] - table[y1, x2 + 1] - table[y2 + 1, x1] + table[y1, x1]
    count = (y2 - y1 + 1) * (x2 - x1 + 1)
    mean = window_sum / count
    return np.where(gray.astype(np.float64) <= mean - bias, 0, 255).astype(np.uint8)


def _bottom_strip(image: np.ndarray, width_fraction: float, height_fraction: float, right: bool) -> Optional[np.ndarray]:
    h, w = image.shape[:2]
    crop_w = int(w * width_fraction)
    crop_h = int(h * height_fraction)
    if crop_w <= 0 or crop_h <= 0:
        return None
    x0 = w - crop_w if right else 0
    return image[h - crop_h:h, x0:x0 + crop_w].copy()


def extract_corners(card: np.ndarray, cfg: Optional[RegionConfig] = None) -> Optional[CornerStrips]:
    """Bottom-left and bottom-right OCR strips plus their binarized versions."""
    cfg = cfg or RegionConfig()
    if card is None or card.size == 0:
        return None
    left = _bottom_strip(card, cfg.corner_width_fraction, cfg.corner_height_fraction, right=False)
    right = _bottom_strip(card, cfg.corner_width_fraction, cfg.corner_height_fraction, right=True)
    if left is None or right is None:
        LOG.warning("Corner strips have zero area for card of shape %s", card.shape[:2])
        return None
    return CornerStrips(
        bottom_left=left,
        bottom_right=right,
        bottom_left_binary=binarize(left, cfg.ocr_window, cfg.ocr_bias),
        bottom_right_binary=binarize(right, cfg.ocr_window, cfg.ocr_bias),
    )


def extract_identity_strips(image: np.ndarray, cfg: Optional[RegionConfig] = None) -> Optional[IdentityStrips]:
    """
    Normalize to a fixed height, cut the bottom corner strips, resize them to
    the fingerprint size and binarize with a small window.
    """
    cfg = cfg or RegionConfig()
    if image is None or image.size == 0:
        return None
    h, w = image.shape[:2]
    scale = float(cfg.identity_height) / float(h)
    norm_w = max(1, int(round(w * scale)))
    normalized = cv2.resize(image, (norm_w, cfg.identity_height), interpolation=cv2.INTER_AREA)

    strips = []
    for right in (False, True):
        strip = _bottom_strip(normalized, cfg.identity_strip_width_fraction,
                              cfg.identity_strip_height_fraction, right=right)
        if strip is None:
            return None
        small = cv2.resize(strip, cfg.identity_size, interpolation=cv2.INTER_AREA)
        strips.append(binarize(small, cfg.identity_window, cfg.identity_bias))
    return IdentityStrips(bottom_left=strips[0], bottom_right=strips[1])


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode image bytes to a BGR array; None when the bytes are not an image."""
    if not data:
        return None
    buffer = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(buffer, cv2.IMREAD_COLOR)
