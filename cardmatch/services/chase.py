# services/chase.py
import asyncio
import logging
from dataclasses import replace
from typing import List

from .calls import guarded
from .types import ChaseVerdict, VariantCandidate

LOG = logging.getLogger("cardmatch.chase")


class ChaseEvaluator:
    """
    A candidate is the chase card of its set iff the catalog's single
    highest-priced card in that set has the same id. No price threshold.

    catalog: object with get_price(card_id, variant) and get_set_chase_card(set_id)
    """

    def __init__(self, catalog, timeout_s: float = 10.0):
        self.catalog = catalog
        self.timeout_s = timeout_s

    async def evaluate(self, candidate: VariantCandidate) -> ChaseVerdict:
        if not candidate.catalog_id and not candidate.set_id:
            return ChaseVerdict(is_chase=False, price=0.0)

        price = candidate.price_estimate or 0.0
        if not price and candidate.catalog_id:
            quote = await guarded(self.catalog.get_price(candidate.catalog_id, candidate.variant), None,
                                  f"price {candidate.catalog_id}", self.timeout_s)
            price = quote.market if quote else 0.0

        if not candidate.set_id or not candidate.catalog_id:
            return ChaseVerdict(is_chase=False, price=price)

        top = await guarded(self.catalog.get_set_chase_card(candidate.set_id), None,
                            f"chase card {candidate.set_id}", self.timeout_s)
        is_chase = top is not None and top.id == candidate.catalog_id
        if is_chase:
            LOG.info("%s is the chase card of set %s", candidate.catalog_id, candidate.set_id)
        return ChaseVerdict(is_chase=is_chase, price=price)

    async def evaluate_all(self, candidates: List[VariantCandidate]) -> List[VariantCandidate]:
        """New candidates with is_chase set; order is preserved."""
        verdicts = await asyncio.gather(*(self.evaluate(c) for c in candidates))
        return [replace(c, is_chase=v.is_chase) for c, v in zip(candidates, verdicts)]
