# services/types.py
from __future__ import annotations
import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar, Union

import numpy as np

Point = Tuple[float, float]

# ---------- Geometry ----------
@dataclass(frozen=True)
class Quadrilateral:
    # ordered top-left, top-right, bottom-right, bottom-left
    points: Tuple[Point, Point, Point, Point]

@dataclass(frozen=True)
class RectifiedCard:
    image: np.ndarray
    quad: Quadrilateral
    manual: bool = False

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

@dataclass(frozen=True)
class GeometryFailure:
    reason: str

# ---------- Regions ----------
@dataclass(frozen=True)
class CornerStrips:
    bottom_left: np.ndarray
    bottom_right: np.ndarray
    bottom_left_binary: np.ndarray
    bottom_right_binary: np.ndarray

@dataclass(frozen=True)
class IdentityStrips:
    bottom_left: np.ndarray
    bottom_right: np.ndarray

# ---------- Identifiers ----------
class IdShape(str, enum.Enum):
    SUBSET_LETTERED = "subset_lettered"
    SUBSET_BARE = "subset_bare"
    STANDARD_FRACTION = "standard_fraction"
    PROMO = "promo"
    OPAQUE = "opaque"

@dataclass(frozen=True)
class CollectorIdentifier:
    token: str
    shape: IdShape
    number: str
    raw: str
    cleaned: str
    confidence: float
    denominator: Optional[str] = None
    total: Optional[str] = None
    prefix: Optional[str] = None

@dataclass(frozen=True)
class OcrReading:
    normalized_id: Optional[str]
    raw: str = ""
    confidence: float = 0.0

@dataclass(frozen=True)
class VisualGuess:
    card_name: str
    set_name: Optional[str] = None
    number: Optional[str] = None
    rarity: Optional[str] = None

# ---------- Catalog ----------
@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    number: str
    rarity: str = "Common"
    supertype: Optional[str] = None
    subtypes: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()
    set_id: Optional[str] = None
    set_name: Optional[str] = None
    printed_total: Optional[int] = None
    release_date: Optional[str] = None
    image_url: Optional[str] = None
    prices: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @classmethod
    def from_api(cls, card: Dict[str, Any]) -> "CatalogEntry":
        """Build an entry from a pokemontcg.io v2 card payload."""
        card_set = card.get("set") or {}
        images = card.get("images") or {}
        prices = (card.get("tcgplayer") or {}).get("prices") or {}
        printed_total = card_set.get("printedTotal")
        try:
            printed_total = int(printed_total) if printed_total is not None else None
        except (TypeError, ValueError):
            printed_total = None
        return cls(
            id=str(card.get("id") or ""),
            name=str(card.get("name") or ""),
            number=str(card.get("number") or ""),
            rarity=card.get("rarity") or "Common",
            supertype=card.get("supertype"),
            subtypes=tuple(card.get("subtypes") or ()),
            types=tuple(card.get("types") or ()),
            set_id=card_set.get("id"),
            set_name=card_set.get("name"),
            printed_total=printed_total,
            release_date=card_set.get("releaseDate"),
            image_url=images.get("small") or images.get("large"),
            prices={k: dict(v) for k, v in prices.items() if isinstance(v, dict)},
        )

@dataclass(frozen=True)
class PriceQuote:
    market: float
    low: float = 0.0
    high: float = 0.0
    currency: str = "USD"

@dataclass(frozen=True)
class VariantCandidate:
    card_name: str
    variant: str
    confidence: float
    match_source: str
    catalog_id: Optional[str] = None
    set_id: Optional[str] = None
    set_name: Optional[str] = None
    number: Optional[str] = None
    rarity: Optional[str] = None
    price_estimate: Optional[float] = None
    image_url: Optional[str] = None
    release_year: Optional[str] = None
    supertype: Optional[str] = None
    visual_similarity: Optional[float] = None
    is_chase: Optional[bool] = None
    collector_id_normalized: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass(frozen=True)
class ChaseVerdict:
    is_chase: bool
    price: float

# ---------- Stage outcomes ----------
T = TypeVar("T")

@dataclass(frozen=True)
class Found(Generic[T]):
    value: T

@dataclass(frozen=True)
class Fallback:
    reason: str

@dataclass(frozen=True)
class Exhausted:
    reason: str

StageOutcome = Union[Found, Fallback, Exhausted]

# ---------- Result ----------
@dataclass(frozen=True)
class IdentificationResult:
    candidates: List[VariantCandidate]
    feedback: str
    collector_id_normalized: Optional[str] = None
    collector_id_raw: str = ""
    collector_id_confidence: float = 0.0
    id_shape: Optional[IdShape] = None
    needs_manual_crop: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collector_id_normalized": self.collector_id_normalized,
            "collector_id_raw": self.collector_id_raw,
            "collector_id_confidence": self.collector_id_confidence,
            "id_shape": self.id_shape.value if self.id_shape else None,
            "needs_manual_crop": self.needs_manual_crop,
            "feedback": self.feedback,
            "candidates": [c.to_dict() for c in self.candidates],
        }
