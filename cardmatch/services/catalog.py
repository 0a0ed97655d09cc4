"""
Catalog lookup, candidate retrieval and variant expansion.

PokemonTcgClient talks to api.pokemontcg.io (v2). Every network problem is
turned into an empty result so the pipeline can keep going in degraded mode.

CandidateRetriever turns a CollectorIdentifier into catalog entries:
 - scoped query (number + set total / promo prefix), then unscoped
 - exact number matches first, then matching printed total
 - visual fallback when the identifier is missing or nothing matched

expand_variants() fans one catalog entry out into one VariantCandidate per
populated TCGplayer price bucket.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from rapidfuzz import fuzz

from . import id_parser
from .cache import TTLCache
from .calls import guarded
from .config import CatalogConfig
from .types import (CatalogEntry, CollectorIdentifier, Exhausted, Fallback, Found, IdShape,
                    PriceQuote, StageOutcome, VariantCandidate)

LOG = logging.getLogger("cardmatch.catalog")

CATALOG_CONFIDENCE = 0.9
SYNTHESIZED_CONFIDENCE = 0.7
NAME_MATCH_THRESHOLD = 60.0

# TCGplayer bucket key -> variant label, in expansion order
PRICE_BUCKETS = [
    ("normal", "Normal"),
    ("holofoil", "Holofoil"),
    ("reverseHolofoil", "Reverse Holofoil"),
    ("1stEditionHolofoil", "1st Edition Holo"),
    ("1stEdition", "1st Edition"),
    ("unlimitedHolofoil", "Unlimited Holo"),
    ("unlimited", "Unlimited"),
]
VARIANT_TO_BUCKET = {label: key for key, label in PRICE_BUCKETS}
PRICE_FALLBACK_ORDER = ["holofoil", "1stEditionHolofoil", "reverseHolofoil", "normal", "1stEdition", "unlimited"]

# rarities that are plain prints; anything else gets its own holofoil label
GENERIC_RARITIES = {"common", "uncommon", "rare", "rare holo", "promo"}

PROMO_SETS = {
    "svp": "svp",
    "swsh": "swshp",
    "sm": "smp",
    "xy": "xyp",
    "bw": "bwp",
    "hgss": "hsp",
    "pop": "pop",
    "vp": "svp",
    "sv": "sv",
}

# ------ helpers ------

def resolve_promo_set(prefix: str) -> Optional[str]:
    """Map a promo prefix (SWSH, SVP, SM...) to a catalog set id."""
    p = "".join(ch for ch in prefix.lower() if ch.isalnum())
    if p in PROMO_SETS:
        return PROMO_SETS[p]
    for start, set_id in (("swsh", "swshp"), ("xy", "xyp"), ("sm", "smp")):
        if p.startswith(start):
            return set_id
    return p if len(p) >= 3 else None

def strip_zeros(number: str) -> str:
    return number.lstrip("0") or number

def _unique(items: List[str]) -> List[str]:
    out: List[str] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out

def build_queries(number: str, total: Optional[str] = None, set_prefix: Optional[str] = None) -> List[str]:
    """
    Query cascade for a collector number. With hints (total / promo prefix)
    only scoped queries are produced; without hints, number-only queries.
    """
    clean = strip_zeros(number)
    numbers = _unique([number, clean])
    queries: List[str] = []
    if set_prefix:
        promo_set = resolve_promo_set(set_prefix)
        if promo_set:
            queries += [f'number:"{n}" set.id:{promo_set}' for n in numbers]
        else:
            p = set_prefix.lower()
            queries.append(f'number:"{set_prefix}{clean}"')
            queries.append(f'number:"{clean}" (id:{p}* OR set.id:{p}*)')
    if total:
        queries += [f'number:"{n}" set.printedTotal:{strip_zeros(total)}' for n in numbers]
    if not set_prefix and not total:
        queries += [f'number:"{n}"' for n in numbers]
    return queries

def _market(bucket: Dict[str, Any]) -> Optional[float]:
    value = bucket.get("market")
    if value is None:
        value = bucket.get("mid")
    return float(value) if value is not None else None

def _variant_label(bucket_key: str, default_label: str, rarity: str) -> str:
    if bucket_key == "holofoil" and rarity and rarity.lower() not in GENERIC_RARITIES:
        return rarity
    return default_label

# ------ variant expansion ------

def expand_variants(entry: CatalogEntry,
                    match_source: str = "id_lookup",
                    confidence: float = CATALOG_CONFIDENCE) -> List[VariantCandidate]:
    """One VariantCandidate per populated price bucket; one rarity-labeled row when none are."""
    release_year = (entry.release_date or "").split("/")[0] or None
    base = dict(
        card_name=entry.name,
        catalog_id=entry.id or None,
        set_id=entry.set_id,
        set_name=entry.set_name or "Unknown Set",
        number=entry.number,
        rarity=entry.rarity,
        image_url=entry.image_url,
        release_year=release_year,
        supertype=entry.supertype,
        confidence=confidence if entry.id else SYNTHESIZED_CONFIDENCE,
        match_source=match_source,
    )
    variants = [
        VariantCandidate(variant=_variant_label(key, label, entry.rarity),
                         price_estimate=_market(entry.prices[key]), **base)
        for key, label in PRICE_BUCKETS
        if key in entry.prices
    ]
    if not variants:
        label = "Normal" if entry.rarity == "Common" else entry.rarity
        variants.append(VariantCandidate(variant=label, price_estimate=None, **base))
    return variants

def rank_entries(entries: List[CatalogEntry], number: str,
                 total: Optional[str] = None, prefix: Optional[str] = None) -> List[CatalogEntry]:
    """Exact number matches first; among those prefer the parsed printed total."""
    clean = strip_zeros(number)
    wanted = {number.lower(), clean.lower(), f"{prefix or ''}{clean}".lower()}
    exact = [e for e in entries if e.number.lower() in wanted]
    if not exact:
        return entries
    if total and total.isdigit():
        by_total = [e for e in exact if e.printed_total == int(total)]
        if by_total:
            return by_total
    return exact

# ------ catalog client ------

class PokemonTcgClient:
    """Async client for the pokemontcg.io catalog and TCGplayer price data."""

    def __init__(self, cfg: Optional[CatalogConfig] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[TTLCache] = None):
        self.cfg = cfg or CatalogConfig()
        headers = {"X-Api-Key": self.cfg.api_key} if self.cfg.api_key else {}
        self._client = client or httpx.AsyncClient(timeout=self.cfg.timeout_s, headers=headers)
        self.cache = cache or TTLCache(self.cfg.cache_ttl_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PokemonTcgClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        url = f"{self.cfg.base_url}{path}"
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            LOG.warning("Catalog request %s failed: %s", path, exc)
            return None
        if response.status_code != 200:
            LOG.warning("Catalog request %s returned HTTP %s", path, response.status_code)
            return None
        try:
            return response.json()
        except ValueError as exc:
            LOG.warning("Catalog response for %s was not JSON: %s", path, exc)
            return None

    async def _query_cards(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        payload = await self._get_json("/cards", params={"q": query, **params})
        data = (payload or {}).get("data") or []
        return [c for c in data if isinstance(c, dict)]

    async def search_by_number(self, number: str, total: Optional[str] = None,
                               set_prefix: Optional[str] = None) -> List[CatalogEntry]:
        """Run the query cascade; stop at the first query that returns cards."""
        for query in build_queries(number, total, set_prefix):
            LOG.debug("Catalog search: %s", query)
            cards = await self._query_cards(query)
            if cards:
                seen = set()
                entries = []
                for card in cards:
                    entry = CatalogEntry.from_api(card)
                    if entry.id and entry.id not in seen:
                        seen.add(entry.id)
                        entries.append(entry)
                LOG.info("Catalog search %r -> %d cards", query, len(entries))
                return entries
        return []

    async def get_card(self, card_id: str) -> Optional[CatalogEntry]:
        key = f"card:{card_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        payload = await self._get_json(f"/cards/{card_id}")
        data = (payload or {}).get("data")
        if not isinstance(data, dict):
            return None
        entry = CatalogEntry.from_api(data)
        self.cache.set(key, entry)
        return entry

    async def get_price(self, card_id: str, variant: Optional[str] = None) -> Optional[PriceQuote]:
        entry = await self.get_card(card_id)
        if entry is None or not entry.prices:
            return None
        prices = entry.prices
        bucket = None
        if variant:
            key = VARIANT_TO_BUCKET.get(variant)
            if key and key in prices:
                bucket = prices[key]
            elif variant != "Normal" and "holofoil" in prices:
                # special rarities (SIR, IR...) are priced in the holofoil bucket
                bucket = prices["holofoil"]
            elif variant == "Normal" and "normal" in prices:
                bucket = prices["normal"]
        if bucket is None:
            bucket = next((prices[k] for k in PRICE_FALLBACK_ORDER if k in prices), None)
        if bucket is None:
            return None
        return PriceQuote(
            market=_market(bucket) or 0.0,
            low=float(bucket.get("low") or 0.0),
            high=float(bucket.get("high") or 0.0),
        )

    async def get_set_chase_card(self, set_id: str) -> Optional[CatalogEntry]:
        """Highest-priced card in a set, holofoil-style buckets first."""
        key = f"chase:{set_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        cards = await self._query_cards(
            f"set.id:{set_id}",
            orderBy="-tcgplayer.prices.holofoil.market,"
                    "-tcgplayer.prices.1stEditionHolofoil.market,"
                    "-tcgplayer.prices.normal.market",
            pageSize=1,
        )
        if not cards:
            return None
        entry = CatalogEntry.from_api(cards[0])
        self.cache.set(key, entry)
        return entry

    async def cards_in_set(self, set_id: str, page_size: int = 250) -> List[CatalogEntry]:
        """Every card of a set, following pagination."""
        entries: List[CatalogEntry] = []
        page = 1
        while True:
            cards = await self._query_cards(f"set.id:{set_id}", page=page, pageSize=page_size)
            entries += [CatalogEntry.from_api(c) for c in cards]
            if len(cards) < page_size:
                return entries
            page += 1

    async def fetch_image(self, url: str) -> Optional[bytes]:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            LOG.warning("Reference image %s failed: %s", url, exc)
            return None
        if response.status_code != 200 or not response.content:
            return None
        return response.content

# ------ retrieval ------

class CandidateRetriever:
    """
    catalog: object with search_by_number(number, total=None, set_prefix=None)
    vision:  object with identify(jpeg_bytes) -> VisualGuess | None, or None
    """

    def __init__(self, catalog, vision=None, catalog_timeout_s: float = 10.0,
                 vision_timeout_s: float = 30.0):
        self.catalog = catalog
        self.vision = vision
        self.catalog_timeout_s = catalog_timeout_s
        self.vision_timeout_s = vision_timeout_s

    async def _search(self, number: str, total: Optional[str] = None,
                      set_prefix: Optional[str] = None) -> List[CatalogEntry]:
        return await guarded(self.catalog.search_by_number(number, total, set_prefix), [],
                             f"catalog search {number!r}", self.catalog_timeout_s)

    async def retrieve(self, identifier: CollectorIdentifier) -> StageOutcome:
        """Found(list[CatalogEntry]) or Fallback when nothing matched."""
        set_prefix = identifier.prefix if identifier.shape == IdShape.PROMO else None
        results: List[CatalogEntry] = []
        if identifier.total or set_prefix:
            results = await self._search(identifier.number, identifier.total, set_prefix)
        if not results:
            # a total/prefix mismatch must not be a hard failure
            results = await self._search(identifier.number)
        if not results:
            return Fallback(f"no catalog match for {identifier.token}")
        ranked = rank_entries(results, identifier.number, identifier.total, identifier.prefix)
        return Found(ranked)

    async def visual_fallback(self, photo_jpeg: bytes) -> StageOutcome:
        """Found(list[VariantCandidate]) from the visual guess, or Exhausted."""
        if self.vision is None:
            return Exhausted("visual identification not configured")
        guess = await guarded(self.vision.identify(photo_jpeg), None,
                              "visual identification", self.vision_timeout_s)
        if guess is None or not guess.card_name:
            return Exhausted("visual identification returned nothing")
        LOG.info("Visual guess: %s (%s) #%s", guess.card_name, guess.set_name, guess.number)

        if guess.number:
            cleaned = id_parser.clean_text(guess.number)
            ident = id_parser.classify(cleaned, raw=guess.number, confidence=SYNTHESIZED_CONFIDENCE)
            outcome = await self.retrieve(ident)
            if isinstance(outcome, Found):
                entries = self._by_name(outcome.value, guess.card_name)
                variants = [v for e in entries for v in expand_variants(e, match_source="visual_lookup")]
                return Found(variants)

        return Found([VariantCandidate(
            card_name=guess.card_name,
            variant=guess.rarity or "Normal",
            confidence=SYNTHESIZED_CONFIDENCE,
            match_source="visual_guess",
            set_name=guess.set_name,
            number=guess.number,
            rarity=guess.rarity,
        )])

    @staticmethod
    def _by_name(entries: List[CatalogEntry], name: str) -> List[CatalogEntry]:
        scored = [(fuzz.WRatio(name.lower(), e.name.lower()), e) for e in entries]
        close = [(s, e) for s, e in scored if s >= NAME_MATCH_THRESHOLD]
        if not close:
            return entries
        close.sort(key=lambda item: item[0], reverse=True)
        return [e for _, e in close]
