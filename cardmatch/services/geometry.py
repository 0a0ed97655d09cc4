"""
Card boundary detection and perspective correction.

rectify(photo) finds the card quadrilateral in a raw photo and warps it to an
axis-aligned image. When no acceptable quad is found a GeometryFailure is
returned and the caller can ask the user for four corners, which go through
rectify_from_quadrilateral() and the same warp math.

Detection:
 - downscale to a bounded working size
 - gray -> gaussian blur -> canny -> close + dilate
 - external contours above a minimum area
 - 4-point polygon approximation, else min-area rectangle corners
 - score by aspect ratio (hard band), area and fill ratio; keep the best
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .config import GeometryConfig
from .types import GeometryFailure, Quadrilateral, RectifiedCard

LOG = logging.getLogger("cardmatch.geometry")

RectifyOutcome = Union[RectifiedCard, GeometryFailure]

# ------ helpers ------

def _to_bgr(photo: np.ndarray) -> np.ndarray:
    if photo.ndim == 2:
        return cv2.cvtColor(photo, cv2.COLOR_GRAY2BGR)
    if photo.shape[2] == 4:
        return cv2.cvtColor(photo, cv2.COLOR_BGRA2BGR)
    return photo

def _aspect(w: float, h: float) -> float:
    """Short side over long side, so portrait and landscape cards compare alike."""
    if w <= 0 or h <= 0:
        return 0.0
    return min(w, h) / max(w, h)

def _within_band(ratio: float, cfg: GeometryConfig) -> bool:
    return abs(ratio - cfg.card_aspect) <= cfg.aspect_tolerance

def order_points(points) -> np.ndarray:
    """
    Order four points as top-left, top-right, bottom-right, bottom-left:
    split into top and bottom pairs by Y, then sort each pair by X.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(4, 2)
    by_y = pts[np.argsort(pts[:, 1], kind="stable")]
    top = by_y[:2][np.argsort(by_y[:2, 0], kind="stable")]
    bottom = by_y[2:][np.argsort(by_y[2:, 0], kind="stable")]
    tl, tr = top
    bl, br = bottom
    return np.array([tl, tr, br, bl], dtype=np.float32)

def _edge_lengths(quad: np.ndarray) -> Tuple[float, float]:
    tl, tr, br, bl = quad
    width = max(np.linalg.norm(tr - tl), np.linalg.norm(br - bl))
    height = max(np.linalg.norm(bl - tl), np.linalg.norm(br - tr))
    return float(width), float(height)

def _is_convex(quad: np.ndarray) -> bool:
    return bool(cv2.isContourConvex(quad.reshape(-1, 1, 2).astype(np.float32)))

def _warp(photo: np.ndarray, quad: np.ndarray, border_mode: int) -> Optional[np.ndarray]:
    width, height = _edge_lengths(quad)
    out_w, out_h = int(round(width)), int(round(height))
    if out_w < 2 or out_h < 2:
        return None
    dst = np.array([[0, 0], [out_w - 1, 0], [out_w - 1, out_h - 1], [0, out_h - 1]], dtype=np.float32)
    matrix = cv2.getPerspectiveTransform(quad.astype(np.float32), dst)
    return cv2.warpPerspective(photo, matrix, (out_w, out_h),
                               flags=cv2.INTER_LINEAR,
                               borderMode=border_mode,
                               borderValue=(0, 0, 0))

def _portrait(quad: np.ndarray) -> np.ndarray:
    """Rotate an ordered quad by one corner when its top edge is the long side."""
    width, height = _edge_lengths(quad)
    if width > height:
        return np.roll(quad, -1, axis=0)
    return quad

def _as_quadrilateral(quad: np.ndarray) -> Quadrilateral:
    return Quadrilateral(points=tuple((float(x), float(y)) for x, y in quad))

# ------ detection ------

def _working_image(photo: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    h, w = photo.shape[:2]
    scale = min(1.0, float(max_side) / float(max(h, w)))
    if scale < 1.0:
        work = cv2.resize(photo, (max(1, int(w * scale)), max(1, int(h * scale))), interpolation=cv2.INTER_AREA)
    else:
        work = photo
    return work, scale

def _edge_map(work_bgr: np.ndarray) -> np.ndarray:
    gray = cv2.cvtColor(work_bgr, cv2.COLOR_BGR2GRAY)
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    edges = cv2.Canny(blurred, 75, 200)
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5))
    closed = cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel)
    return cv2.dilate(closed, kernel, iterations=1)

def _quad_from_contour(contour: np.ndarray, epsilon: float) -> np.ndarray:
    peri = cv2.arcLength(contour, True)
    approx = cv2.approxPolyDP(contour, epsilon * peri, True)
    if len(approx) == 4 and cv2.isContourConvex(approx):
        return approx.reshape(4, 2).astype(np.float32)
    box = cv2.boxPoints(cv2.minAreaRect(contour))
    return np.asarray(box, dtype=np.float32)

def score_quad(quad: np.ndarray, contour_area: float, image_area: float,
               cfg: GeometryConfig) -> Optional[float]:
    """
    Score an ordered quad. Returns None when the aspect ratio falls outside the
    tolerance band; otherwise a weighted sum of aspect closeness, normalized
    area and fill ratio (contour area over quad area).
    """
    width, height = _edge_lengths(quad)
    ratio = _aspect(width, height)
    if not _within_band(ratio, cfg):
        return None
    quad_area = float(cv2.contourArea(quad.reshape(-1, 1, 2)))
    if quad_area <= 0 or image_area <= 0:
        return None
    aspect_score = 1.0 - abs(ratio - cfg.card_aspect) / cfg.aspect_tolerance
    area_score = min(1.0, quad_area / image_area)
    fill_score = min(1.0, contour_area / quad_area)
    return (cfg.weight_aspect * aspect_score
            + cfg.weight_area * area_score
            + cfg.weight_fill * fill_score)

def detect_quad(photo: np.ndarray, cfg: GeometryConfig) -> Optional[np.ndarray]:
    """Return the best card quad (ordered, photo coordinates) or None."""
    bgr = _to_bgr(photo)
    work, scale = _working_image(bgr, cfg.working_max_side)
    work_area = float(work.shape[0] * work.shape[1])
    edges = _edge_map(work)
    contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    best: Optional[np.ndarray] = None
    best_score = float("-inf")
    considered = 0
    for cnt in contours:
        area = float(cv2.contourArea(cnt))
        if area < cfg.min_contour_area_fraction * work_area:
            continue
        considered += 1
        quad = order_points(_quad_from_contour(cnt, cfg.approx_epsilon))
        score = score_quad(quad, area, work_area, cfg)
        if score is None:
            continue
        LOG.debug("Quad candidate score=%.3f area=%.0f", score, area)
        if score > best_score:
            best, best_score = quad, score

    LOG.debug("Geometry: %d contours, %d above area floor", len(contours), considered)
    if best is None:
        return None
    return order_points(best / scale)

# ------ public API ------

def rectify(photo: np.ndarray, cfg: Optional[GeometryConfig] = None) -> RectifyOutcome:
    """
    Detect the card and warp it upright. Output is always portrait; a card
    lying sideways is turned a quarter turn. GeometryFailure is an expected
    outcome.
    """
    cfg = cfg or GeometryConfig()
    if photo is None or photo.size == 0:
        return GeometryFailure("empty photo")
    quad = detect_quad(photo, cfg)
    if quad is None:
        return GeometryFailure("no card-shaped contour found")

    quad = _portrait(quad)
    width, height = _edge_lengths(quad)
    ratio = width / height if height > 0 else 0.0
    photo_area = float(photo.shape[0] * photo.shape[1])
    if not _within_band(ratio, cfg):
        return GeometryFailure(f"rectified aspect {ratio:.3f} outside tolerance")
    if width * height < cfg.min_output_area_fraction * photo_area:
        return GeometryFailure("rectified card too small")

    warped = _warp(_to_bgr(photo), quad, cv2.BORDER_REPLICATE)
    if warped is None:
        return GeometryFailure("degenerate quadrilateral")
    LOG.info("Rectified card %dx%d (aspect %.3f)", warped.shape[1], warped.shape[0], ratio)
    return RectifiedCard(image=warped, quad=_as_quadrilateral(quad))

def rectify_from_quadrilateral(photo: np.ndarray,
                               points: Sequence[Sequence[float]],
                               normalized: bool = False) -> RectifyOutcome:
    """
    Manual fallback: warp using four user-supplied corners. Points may be in
    pixels or, with normalized=True, fractions of width/height. Sampling
    outside the photo is filled black.
    """
    if photo is None or photo.size == 0:
        return GeometryFailure("empty photo")
    try:
        pts = np.asarray(points, dtype=np.float32)
    except (TypeError, ValueError):
        return GeometryFailure("points must be numeric [x, y] pairs")
    if pts.shape != (4, 2) or not np.all(np.isfinite(pts)):
        return GeometryFailure("exactly four [x, y] points are required")
    if normalized:
        h, w = photo.shape[:2]
        pts = pts * np.array([w, h], dtype=np.float32)

    quad = order_points(pts)
    if not _is_convex(quad):
        return GeometryFailure("quadrilateral is not convex")
    quad = _portrait(quad)
    warped = _warp(_to_bgr(photo), quad, cv2.BORDER_CONSTANT)
    if warped is None:
        return GeometryFailure("degenerate quadrilateral")
    return RectifiedCard(image=warped, quad=_as_quadrilateral(quad), manual=True)
