"""
Card identification pipeline.

 1. Geometry: detect and rectify the card (or use the photo as-is and flag
    that a manual crop would help).
 2. Regions + OCR: binarized bottom corners -> OCR collaborator.
 3. Parse the collector id.
 4. Catalog lookup by id; visual identification when that comes up empty.
 5. Expand price variants.
 6. Visual tie-break when more than one candidate remains.
 7. Chase flags (finalist or every candidate, per config).

identify() never raises for a "not found" case; the feedback string says
which stage came up empty.
"""

import logging
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from . import geometry, id_parser, regions
from .calls import guarded
from .catalog import CandidateRetriever, PokemonTcgClient, expand_variants
from .chase import ChaseEvaluator
from .config import Config
from .ocr import CORNER_HINTS, TesseractCornerReader
from .tiebreak import TieBreaker
from .types import (ChaseVerdict, CollectorIdentifier, Exhausted, Fallback, Found,
                    IdentificationResult, OcrReading, RectifiedCard, VariantCandidate)

LOG = logging.getLogger("cardmatch.pipeline")

NO_READING = OcrReading(normalized_id=None, raw="", confidence=0.0)


def _sanitize_reading(reading) -> OcrReading:
    """Anything that is not a well-formed reading counts as confidence 0."""
    if not isinstance(reading, OcrReading):
        return NO_READING
    try:
        confidence = float(reading.confidence)
    except (TypeError, ValueError):
        return replace(reading, confidence=0.0)
    if not 0.0 <= confidence <= 1.0:
        confidence = 0.0
    return replace(reading, confidence=confidence, raw=reading.raw or "")


def feedback_for(candidates: List[VariantCandidate], identifier: Optional[CollectorIdentifier]) -> str:
    if candidates:
        return f"Found {len(candidates)} matches"
    if identifier:
        return f"No card found for ID {identifier.token}"
    return "Could not read card number."


class CardIdentifier:
    """
    catalog: search_by_number / get_price / get_set_chase_card / fetch_image
    ocr:     read_corners(left_jpeg, right_jpeg, hints) -> OcrReading
    vision:  identify(jpeg) -> VisualGuess | None, optional
    """

    def __init__(self, cfg: Config, catalog, ocr, vision=None):
        self.cfg = cfg
        self.catalog = catalog
        self.ocr = ocr
        self.retriever = CandidateRetriever(catalog, vision,
                                            catalog_timeout_s=cfg.catalog.timeout_s,
                                            vision_timeout_s=cfg.vision.timeout_s)
        self.tiebreaker = TieBreaker(catalog, cfg.tiebreak, cfg.regions)
        self.chase = ChaseEvaluator(catalog, timeout_s=cfg.catalog.timeout_s)

    @classmethod
    def from_config(cls, cfg: Config) -> "CardIdentifier":
        vision = None
        if cfg.vision.index_dir:
            # torch is only imported when a reference index is configured
            from .vision import EmbeddingVisualIdentifier
            vision = EmbeddingVisualIdentifier(cfg.vision)
        return cls(cfg, PokemonTcgClient(cfg.catalog), TesseractCornerReader(cfg.ocr), vision)

    async def aclose(self) -> None:
        close = getattr(self.catalog, "aclose", None)
        if close is not None:
            await close()

    # ------ stages ------

    async def read_identifier(self, card: np.ndarray) -> Tuple[Optional[CollectorIdentifier], OcrReading]:
        strips = regions.extract_corners(card, self.cfg.regions)
        if strips is None:
            return None, NO_READING
        quality = self.cfg.regions.jpeg_quality
        left = regions.encode_jpeg(strips.bottom_left_binary, quality)
        right = regions.encode_jpeg(strips.bottom_right_binary, quality)
        reading = await guarded(self.ocr.read_corners(left, right, CORNER_HINTS), NO_READING,
                                "corner OCR", self.cfg.ocr.timeout_s)
        reading = _sanitize_reading(reading)
        LOG.info("OCR reading: %r (confidence %.2f)", reading.normalized_id, reading.confidence)
        identifier = id_parser.parse(reading.normalized_id or reading.raw, reading.confidence)
        return identifier, reading

    async def find_candidates(self, card: np.ndarray,
                              identifier: Optional[CollectorIdentifier]) -> List[VariantCandidate]:
        if identifier is not None:
            stage = await self.retriever.retrieve(identifier)
            if isinstance(stage, Found):
                stage = Found([v for entry in stage.value for v in expand_variants(entry)])
        else:
            stage = Fallback("no collector id read")

        if isinstance(stage, Fallback):
            LOG.info("Catalog lookup fell back (%s); trying visual identification", stage.reason)
            jpeg = regions.encode_jpeg(card, self.cfg.regions.jpeg_quality)
            stage = await self.retriever.visual_fallback(jpeg)

        if isinstance(stage, Found):
            return list(stage.value)
        if isinstance(stage, Exhausted):
            LOG.info("No candidates: %s", stage.reason)
            return []
        raise TypeError(f"unexpected stage outcome {stage!r}")

    async def apply_chase(self, candidates: List[VariantCandidate]) -> List[VariantCandidate]:
        mode = self.cfg.chase_mode
        if not candidates or mode == "none":
            return candidates
        if mode == "all":
            return await self.chase.evaluate_all(candidates)
        finalist = await self.chase.evaluate_all(candidates[:1])
        return finalist + candidates[1:]

    # ------ public API ------

    async def identify(self, photo_bytes: bytes, mime_type: str = "image/jpeg",
                       rectified: bool = False) -> IdentificationResult:
        """
        Identify the card in an encoded photo. Pass rectified=True for images
        produced by rectify_image_bytes() to skip boundary detection.
        """
        photo = regions.decode_image(photo_bytes)
        if photo is None:
            LOG.warning("Could not decode %s upload (%d bytes)", mime_type, len(photo_bytes or b""))
            return IdentificationResult(candidates=[], feedback="Could not decode image.")

        needs_manual_crop = False
        card = photo
        if not rectified:
            outcome = geometry.rectify(photo, self.cfg.geometry)
            if isinstance(outcome, RectifiedCard):
                card = outcome.image
            else:
                LOG.info("Auto-crop failed (%s); using the full photo", outcome.reason)
                needs_manual_crop = True

        identifier, reading = await self.read_identifier(card)
        candidates = await self.find_candidates(card, identifier)
        if identifier is not None:
            candidates = [replace(c, collector_id_normalized=identifier.token) for c in candidates]

        if len(candidates) > 1:
            LOG.info("%d candidates; running visual tie-break", len(candidates))
            candidates = await self.tiebreaker.tie_break(card, candidates)

        candidates = await self.apply_chase(candidates)

        return IdentificationResult(
            candidates=candidates,
            feedback=feedback_for(candidates, identifier),
            collector_id_normalized=identifier.token if identifier else None,
            collector_id_raw=reading.raw,
            collector_id_confidence=reading.confidence,
            id_shape=identifier.shape if identifier else None,
            needs_manual_crop=needs_manual_crop,
        )

    def rectify_image_bytes(self, photo_bytes: bytes, points: Sequence[Sequence[float]],
                            normalized: bool = False) -> Optional[bytes]:
        """Manual crop: warp through user-supplied corners; None for invalid input."""
        photo = regions.decode_image(photo_bytes)
        if photo is None:
            return None
        outcome = geometry.rectify_from_quadrilateral(photo, points, normalized=normalized)
        if not isinstance(outcome, RectifiedCard):
            LOG.info("Manual crop rejected: %s", outcome.reason)
            return None
        return regions.encode_jpeg(outcome.image, self.cfg.regions.jpeg_quality)

    async def evaluate_chase(self, candidate: VariantCandidate) -> ChaseVerdict:
        return await self.chase.evaluate(candidate)
