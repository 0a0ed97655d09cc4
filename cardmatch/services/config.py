# services/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

CHASE_MODES = ("none", "finalist", "all")

# ---------- Data types ----------
@dataclass
class GeometryConfig:
    working_max_side: int = 900
    card_aspect: float = 2.5 / 3.5
    aspect_tolerance: float = 0.22
    min_contour_area_fraction: float = 0.05
    min_output_area_fraction: float = 0.05
    approx_epsilon: float = 0.02
    weight_aspect: float = 0.40
    weight_area: float = 0.35
    weight_fill: float = 0.25

@dataclass
class RegionConfig:
    corner_width_fraction: float = 0.35
    corner_height_fraction: float = 0.20
    ocr_window: int = 25
    ocr_bias: float = 10.0
    identity_height: int = 800
    identity_strip_height_fraction: float = 0.12
    identity_strip_width_fraction: float = 0.35
    identity_size: Tuple[int, int] = (33, 32)   # (width, height)
    identity_window: int = 7
    identity_bias: float = 2.0
    jpeg_quality: int = 90

@dataclass
class TieBreakConfig:
    left_weight: float = 0.6
    right_weight: float = 0.4
    distance_ceiling: float = 40.0
    prior_confidence: float = 0.9
    timeout_s: float = 10.0

@dataclass
class CatalogConfig:
    base_url: str = "https://api.pokemontcg.io/v2"
    api_key: Optional[str] = None
    timeout_s: float = 10.0
    cache_ttl_s: float = 3600.0

@dataclass
class OcrConfig:
    tesseract_cmd: Optional[str] = None
    psm_modes: Tuple[int, ...] = (7, 6, 11)
    upscale: int = 3
    timeout_s: float = 20.0

@dataclass
class VisionConfig:
    index_dir: Optional[str] = None
    max_distance: float = 0.35
    device: str = "cpu"
    timeout_s: float = 30.0

@dataclass
class Config:
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    regions: RegionConfig = field(default_factory=RegionConfig)
    tiebreak: TieBreakConfig = field(default_factory=TieBreakConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    ocr: OcrConfig = field(default_factory=OcrConfig)
    vision: VisionConfig = field(default_factory=VisionConfig)
    chase_mode: str = "finalist"

# ---------- Helpers ----------
def _positive(section: str, key: str, value: Any) -> float:
    v = float(value)
    if v <= 0:
        raise ValueError(f"{section}.{key} must be > 0 (got {value!r})")
    return v

def _fraction(section: str, key: str, value: Any) -> float:
    v = float(value)
    if not 0.0 < v <= 1.0:
        raise ValueError(f"{section}.{key} must be in (0, 1] (got {value!r})")
    return v

def _odd_window(section: str, key: str, value: Any) -> int:
    v = int(value)
    if v < 3 or v % 2 == 0:
        raise ValueError(f"{section}.{key} must be an odd integer >= 3 (got {value!r})")
    return v

# ---------- Loader ----------
def load_config(yaml_dict: Optional[dict]) -> Config:
    yaml_dict = yaml_dict or {}

    g = yaml_dict.get("geometry", {}) or {}
    geometry = GeometryConfig(
        working_max_side=int(_positive("geometry", "working_max_side", g.get("working_max_side", 900))),
        card_aspect=_fraction("geometry", "card_aspect", g.get("card_aspect", 2.5 / 3.5)),
        aspect_tolerance=_fraction("geometry", "aspect_tolerance", g.get("aspect_tolerance", 0.22)),
        min_contour_area_fraction=_fraction("geometry", "min_contour_area_fraction",
                                            g.get("min_contour_area_fraction", 0.05)),
        min_output_area_fraction=_fraction("geometry", "min_output_area_fraction",
                                           g.get("min_output_area_fraction", 0.05)),
        approx_epsilon=_fraction("geometry", "approx_epsilon", g.get("approx_epsilon", 0.02)),
        weight_aspect=float(g.get("weights", {}).get("aspect", 0.40)),
        weight_area=float(g.get("weights", {}).get("area", 0.35)),
        weight_fill=float(g.get("weights", {}).get("fill", 0.25)),
    )

    r = yaml_dict.get("regions", {}) or {}
    identity_size = r.get("identity_size", [33, 32])
    if len(identity_size) != 2:
        raise ValueError("regions.identity_size must be [width, height]")
    regions = RegionConfig(
        corner_width_fraction=_fraction("regions", "corner_width_fraction", r.get("corner_width_fraction", 0.35)),
        corner_height_fraction=_fraction("regions", "corner_height_fraction", r.get("corner_height_fraction", 0.20)),
        ocr_window=_odd_window("regions", "ocr_window", r.get("ocr_window", 25)),
        ocr_bias=float(r.get("ocr_bias", 10)),
        identity_height=int(_positive("regions", "identity_height", r.get("identity_height", 800))),
        identity_strip_height_fraction=_fraction("regions", "identity_strip_height_fraction",
                                                 r.get("identity_strip_height_fraction", 0.12)),
        identity_strip_width_fraction=_fraction("regions", "identity_strip_width_fraction",
                                                r.get("identity_strip_width_fraction", 0.35)),
        identity_size=(int(identity_size[0]), int(identity_size[1])),
        identity_window=_odd_window("regions", "identity_window", r.get("identity_window", 7)),
        identity_bias=float(r.get("identity_bias", 2)),
        jpeg_quality=int(r.get("jpeg_quality", 90)),
    )

    t = yaml_dict.get("tiebreak", {}) or {}
    tiebreak = TieBreakConfig(
        left_weight=float(t.get("left_weight", 0.6)),
        right_weight=float(t.get("right_weight", 0.4)),
        distance_ceiling=_positive("tiebreak", "distance_ceiling", t.get("distance_ceiling", 40)),
        prior_confidence=_fraction("tiebreak", "prior_confidence", t.get("prior_confidence", 0.9)),
        timeout_s=_positive("tiebreak", "timeout_s", t.get("timeout_s", 10)),
    )

    c = yaml_dict.get("catalog", {}) or {}
    catalog = CatalogConfig(
        base_url=str(c.get("base_url", "https://api.pokemontcg.io/v2")).rstrip("/"),
        api_key=(os.environ.get("POKEMONTCG_API_KEY") or c.get("api_key") or None),
        timeout_s=_positive("catalog", "timeout_s", c.get("timeout_s", 10)),
        cache_ttl_s=_positive("catalog", "cache_ttl_s", c.get("cache_ttl_s", 3600)),
    )

    o = yaml_dict.get("ocr", {}) or {}
    ocr = OcrConfig(
        tesseract_cmd=os.environ.get("TESSERACT_CMD") or o.get("tesseract_cmd") or None,
        psm_modes=tuple(int(p) for p in o.get("psm_modes", [7, 6, 11])),
        upscale=int(_positive("ocr", "upscale", o.get("upscale", 3))),
        timeout_s=_positive("ocr", "timeout_s", o.get("timeout_s", 20)),
    )
    if not ocr.psm_modes:
        raise ValueError("ocr.psm_modes must list at least one page segmentation mode")

    v = yaml_dict.get("vision", {}) or {}
    vision = VisionConfig(
        index_dir=os.environ.get("CARDMATCH_INDEX_DIR") or v.get("index_dir") or None,
        max_distance=_positive("vision", "max_distance", v.get("max_distance", 0.35)),
        device=str(v.get("device", "cpu")),
        timeout_s=_positive("vision", "timeout_s", v.get("timeout_s", 30)),
    )

    chase_mode = str((yaml_dict.get("pipeline", {}) or {}).get("chase_mode", "finalist")).lower()
    if chase_mode not in CHASE_MODES:
        raise ValueError(f"pipeline.chase_mode must be one of {CHASE_MODES} (got {chase_mode!r})")

    return Config(
        geometry=geometry,
        regions=regions,
        tiebreak=tiebreak,
        catalog=catalog,
        ocr=ocr,
        vision=vision,
        chase_mode=chase_mode,
    )

def load_config_file(path: Optional[str] = None) -> Config:
    """Read config.yaml (or $CARDMATCH_CONFIG); a missing file yields defaults."""
    path = path or os.environ.get("CARDMATCH_CONFIG") or "config.yaml"
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        return load_config({})
    with open(path, "r", encoding="utf8") as fh:
        return load_config(yaml.safe_load(fh))
