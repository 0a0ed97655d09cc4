"""
Visual tie-break between ambiguous candidates.

A difference hash (dHash) of the bottom-left and bottom-right identity strips
of the user's card is compared with the same hashes of every candidate's
reference image. Distances are combined with the left corner weighted higher
(it usually carries the collector number) and folded into each candidate's
confidence. Candidates are re-ordered, never removed.
"""

import asyncio
import logging
from dataclasses import replace
from typing import List, Optional, Tuple

import numpy as np

from . import regions
from .calls import guarded
from .config import RegionConfig, TieBreakConfig
from .types import IdentityStrips, VariantCandidate

LOG = logging.getLogger("cardmatch.tiebreak")

MAX_DISTANCE = 1000
MATCH_SOURCE = "id_strip_signature"

Fingerprints = Tuple[str, str]


def compute_fingerprint(strip: np.ndarray) -> str:
    """
    Row-major dHash: for each row, one bit per adjacent horizontal pixel pair,
    '1' when the left pixel is darker than the right. Uses the green channel
    of colour input.
    """
    arr = np.asarray(strip)
    if arr.ndim == 3:
        arr = arr[:, :, 1]
    arr = arr.astype(np.int16)
    bits = arr[:, :-1] < arr[:, 1:]
    return "".join("1" if b else "0" for b in bits.ravel())


def hamming_distance(a: str, b: str) -> int:
    if len(a) != len(b):
        return MAX_DISTANCE
    return sum(1 for x, y in zip(a, b) if x != y)


def fingerprints(strips: IdentityStrips) -> Fingerprints:
    return compute_fingerprint(strips.bottom_left), compute_fingerprint(strips.bottom_right)


def combined_distance(user: Fingerprints, ref: Optional[Fingerprints], cfg: TieBreakConfig) -> float:
    if ref is None:
        return float(MAX_DISTANCE)
    dist_bl = hamming_distance(user[0], ref[0])
    dist_br = hamming_distance(user[1], ref[1])
    return dist_bl * cfg.left_weight + dist_br * cfg.right_weight


def similarity_from_distance(distance: float, cfg: TieBreakConfig) -> float:
    return max(0.0, 1.0 - distance / cfg.distance_ceiling)


def similarity(user: Fingerprints, ref: Optional[Fingerprints], cfg: TieBreakConfig) -> Tuple[float, float]:
    """(combined distance, similarity in [0, 1]) of a user/reference fingerprint pair."""
    distance = combined_distance(user, ref, cfg)
    return distance, similarity_from_distance(distance, cfg)


class TieBreaker:
    """
    image_source: object with fetch_image(url) -> bytes | None (the catalog client)
    """

    def __init__(self, image_source, cfg: Optional[TieBreakConfig] = None,
                 region_cfg: Optional[RegionConfig] = None):
        self.image_source = image_source
        self.cfg = cfg or TieBreakConfig()
        self.region_cfg = region_cfg or RegionConfig()

    async def _reference_fingerprints(self, url: Optional[str]) -> Optional[Fingerprints]:
        if not url:
            return None
        data = await guarded(self.image_source.fetch_image(url), None,
                             f"reference image {url}", self.cfg.timeout_s)
        image = regions.decode_image(data) if data else None
        if image is None:
            return None
        strips = regions.extract_identity_strips(image, self.region_cfg)
        return fingerprints(strips) if strips else None

    async def tie_break(self, user_image: np.ndarray,
                        candidates: List[VariantCandidate]) -> List[VariantCandidate]:
        if len(candidates) <= 1:
            return list(candidates)
        user_strips = regions.extract_identity_strips(user_image, self.region_cfg)
        if user_strips is None:
            LOG.warning("Could not extract identity strips from user image; keeping catalog order")
            return list(candidates)
        user = fingerprints(user_strips)

        # variants of one card share a reference image; fetch each URL once
        urls = []
        for c in candidates:
            if c.image_url and c.image_url not in urls:
                urls.append(c.image_url)
        refs = await asyncio.gather(*(self._reference_fingerprints(u) for u in urls))
        by_url = dict(zip(urls, refs))

        scored = []
        for c in candidates:
            ref = by_url.get(c.image_url) if c.image_url else None
            distance, sim = similarity(user, ref, self.cfg)
            source = MATCH_SOURCE if ref is not None else c.match_source
            LOG.debug("Tie-break %s [%s]: distance=%.2f similarity=%.4f",
                      c.card_name, c.variant, distance, sim)
            scored.append(replace(c, visual_similarity=sim, match_source=source))

        scored.sort(key=lambda c: c.visual_similarity or 0.0, reverse=True)
        if any(c.visual_similarity is not None for c in scored):
            scored = [replace(c, confidence=(self.cfg.prior_confidence + (c.visual_similarity or 0.0)) / 2.0)
                      for c in scored]
            scored.sort(key=lambda c: c.confidence, reverse=True)
        return scored
