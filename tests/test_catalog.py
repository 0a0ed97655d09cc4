import asyncio

import httpx

from cardmatch.services import catalog
from cardmatch.services.cache import TTLCache
from cardmatch.services.catalog import CandidateRetriever, PokemonTcgClient, expand_variants
from cardmatch.services.config import CatalogConfig
from cardmatch.services.id_parser import parse
from cardmatch.services.types import CatalogEntry, Exhausted, Fallback, Found, VisualGuess

from conftest import FakeCatalog, api_card


def make_client(handler, cache=None):
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(transport=transport)
    return PokemonTcgClient(CatalogConfig(base_url="https://api.test/v2"), client=http, cache=cache)


def run(coro):
    return asyncio.run(coro)


# ------ entries and variants ------

def test_entry_from_api():
    entry = CatalogEntry.from_api(api_card())
    assert entry.id == "sv3pt5-151"
    assert entry.set_id == "sv3pt5"
    assert entry.printed_total == 165
    assert entry.image_url.endswith("sv3pt5-151.png")
    assert set(entry.prices) == {"normal", "holofoil"}


def test_entry_from_api_tolerates_missing_fields():
    entry = CatalogEntry.from_api({"id": "x-1", "name": "X", "set": {"printedTotal": "abc"}})
    assert entry.rarity == "Common"
    assert entry.printed_total is None
    assert entry.prices == {}
    assert entry.image_url is None


def test_two_buckets_yield_two_variants(mew_entry):
    variants = expand_variants(mew_entry)
    assert [(v.variant, v.price_estimate) for v in variants] == [("Normal", 2.0), ("Holofoil", 15.0)]
    assert all(v.confidence == 0.9 for v in variants)
    assert all(v.catalog_id == "sv3pt5-151" for v in variants)
    assert variants[0].release_year == "2023"


def test_special_rarity_labels_holofoil_bucket():
    entry = CatalogEntry.from_api(api_card(rarity="Special Illustration Rare",
                                           prices={"holofoil": {"market": 120.0}}))
    variants = expand_variants(entry)
    assert [v.variant for v in variants] == ["Special Illustration Rare"]


def test_market_falls_back_to_mid():
    entry = CatalogEntry.from_api(api_card(prices={"reverseHolofoil": {"mid": 3.5}}))
    variants = expand_variants(entry)
    assert variants[0].variant == "Reverse Holofoil"
    assert variants[0].price_estimate == 3.5


def test_no_buckets_single_rarity_row():
    entry = CatalogEntry.from_api(api_card(rarity="Rare", prices={}))
    variants = expand_variants(entry)
    assert len(variants) == 1
    assert variants[0].variant == "Rare"
    assert variants[0].price_estimate is None

    common = CatalogEntry.from_api(api_card(rarity=None, prices={}))
    assert [v.variant for v in expand_variants(common)] == ["Normal"]


def test_entry_without_id_gets_synthesized_confidence():
    entry = CatalogEntry(id="", name="Mystery", number="1")
    assert expand_variants(entry)[0].confidence == 0.7


def test_rank_entries_prefers_printed_total():
    a = CatalogEntry(id="a", name="A", number="58", printed_total=102)
    b = CatalogEntry(id="b", name="B", number="58", printed_total=130)
    c = CatalogEntry(id="c", name="C", number="158", printed_total=102)
    assert [e.id for e in catalog.rank_entries([c, b, a], "058", "102")] == ["a"]
    # no total match: keep every exact number match
    assert [e.id for e in catalog.rank_entries([c, b, a], "058", "999")] == ["b", "a"]
    # no exact match at all: leave the catalog order
    assert [e.id for e in catalog.rank_entries([c], "7")] == ["c"]


def test_build_queries():
    assert catalog.build_queries("058", "102") == [
        'number:"058" set.printedTotal:102',
        'number:"58" set.printedTotal:102',
    ]
    assert catalog.build_queries("151") == ['number:"151"']
    assert catalog.build_queries("SWSH123", set_prefix="SWSH") == ['number:"SWSH123" set.id:swshp']


def test_resolve_promo_set():
    assert catalog.resolve_promo_set("SWSH") == "swshp"
    assert catalog.resolve_promo_set("SVP") == "svp"
    assert catalog.resolve_promo_set("XY12") == "xyp"
    assert catalog.resolve_promo_set("A") is None


# ------ HTTP client ------

def test_search_stops_at_first_non_empty_query():
    seen = []

    def handler(request):
        q = request.url.params["q"]
        seen.append(q)
        if q == 'number:"58" set.printedTotal:102':
            return httpx.Response(200, json={"data": [api_card("base1-58", "Pikachu", "58", 102)] * 2})
        return httpx.Response(200, json={"data": []})

    client = make_client(handler)
    entries = run(client.search_by_number("058", "102"))
    assert [e.id for e in entries] == ["base1-58"]
    assert seen == ['number:"058" set.printedTotal:102', 'number:"58" set.printedTotal:102']


def test_search_degrades_on_http_errors():
    def server_error(request):
        return httpx.Response(500, json={"error": "boom"})

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    def not_json(request):
        return httpx.Response(200, content=b"<html>")

    for handler in (server_error, unreachable, not_json):
        assert run(make_client(handler).search_by_number("151", "165")) == []


def test_api_key_header_sent():
    seen = {}

    def handler(request):
        seen["key"] = request.headers.get("X-Api-Key")
        return httpx.Response(200, json={"data": []})

    cfg = CatalogConfig(base_url="https://api.test/v2", api_key="secret")
    client = PokemonTcgClient(cfg, client=httpx.AsyncClient(
        transport=httpx.MockTransport(handler), headers={"X-Api-Key": cfg.api_key}))
    run(client.search_by_number("1"))
    assert seen["key"] == "secret"


def test_get_price_by_variant_and_cache():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"data": api_card()})

    client = make_client(handler)
    assert run(client.get_price("sv3pt5-151", "Normal")).market == 2.0
    assert run(client.get_price("sv3pt5-151", "Holofoil")).market == 15.0
    quote = run(client.get_price("sv3pt5-151", "Special Illustration Rare"))
    assert (quote.market, quote.low, quote.high) == (15.0, 10.0, 25.0)
    assert run(client.get_price("sv3pt5-151")).market == 15.0
    assert calls == ["/v2/cards/sv3pt5-151"]


def test_get_price_missing_card():
    client = make_client(lambda request: httpx.Response(404))
    assert run(client.get_price("nope")) is None


def test_set_chase_card_query_and_cache():
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return httpx.Response(200, json={"data": [api_card("sv3pt5-199", "Charizard ex", "199")]})

    client = make_client(handler)
    top = run(client.get_set_chase_card("sv3pt5"))
    again = run(client.get_set_chase_card("sv3pt5"))
    assert top.id == again.id == "sv3pt5-199"
    assert len(seen) == 1
    assert seen[0]["q"] == "set.id:sv3pt5"
    assert seen[0]["pageSize"] == "1"
    assert seen[0]["orderBy"].startswith("-tcgplayer.prices.holofoil.market")


def test_cards_in_set_follows_pages():
    def handler(request):
        page = int(request.url.params["page"])
        cards = [api_card(f"s-{i}", number=str(i)) for i in range(2)] if page == 1 else [api_card("s-2", number="2")]
        return httpx.Response(200, json={"data": cards})

    entries = run(make_client(handler).cards_in_set("s", page_size=2))
    assert [e.id for e in entries] == ["s-0", "s-1", "s-2"]


def test_fetch_image():
    def handler(request):
        if request.url.path.endswith("ok.png"):
            return httpx.Response(200, content=b"PNGDATA")
        return httpx.Response(404)

    client = make_client(handler)
    assert run(client.fetch_image("https://images.test/ok.png")) == b"PNGDATA"
    assert run(client.fetch_image("https://images.test/missing.png")) is None


def test_ttl_cache_expiry():
    now = [0.0]
    cache = TTLCache(ttl_s=10, clock=lambda: now[0])
    cache.set("card:a", 1)
    assert cache.get("card:a") == 1
    now[0] = 9.9
    assert cache.get("card:a") == 1
    now[0] = 10.0
    assert cache.get("card:a") is None
    assert len(cache) == 0


# ------ retrieval ------

def test_retrieve_scoped_then_unscoped(mew_entry):
    class ScopedMiss(FakeCatalog):
        async def search_by_number(self, number, total=None, set_prefix=None):
            self.searches.append((number, total, set_prefix))
            return [] if total else list(self.entries)

    fake = ScopedMiss([mew_entry])
    outcome = run(CandidateRetriever(fake).retrieve(parse("151/165", 0.9)))
    assert isinstance(outcome, Found)
    assert [e.id for e in outcome.value] == ["sv3pt5-151"]
    assert fake.searches == [("151", "165", None), ("151", None, None)]


def test_retrieve_promo_passes_prefix():
    fake = FakeCatalog([])
    outcome = run(CandidateRetriever(fake).retrieve(parse("SWSH123", 0.9)))
    assert isinstance(outcome, Fallback)
    assert fake.searches[0] == ("SWSH123", None, "SWSH")


def test_retrieve_survives_catalog_errors():
    class Broken(FakeCatalog):
        async def search_by_number(self, number, total=None, set_prefix=None):
            raise RuntimeError("catalog down")

    outcome = run(CandidateRetriever(Broken()).retrieve(parse("151/165", 0.9)))
    assert isinstance(outcome, Fallback)


class FakeVision:
    def __init__(self, guess):
        self.guess = guess

    async def identify(self, jpeg):
        return self.guess


def test_visual_fallback_without_vision():
    assert isinstance(run(CandidateRetriever(FakeCatalog()).visual_fallback(b"jpeg")), Exhausted)


def test_visual_fallback_no_guess():
    retriever = CandidateRetriever(FakeCatalog(), FakeVision(None))
    assert isinstance(run(retriever.visual_fallback(b"jpeg")), Exhausted)


def test_visual_fallback_synthesizes_candidate():
    guess = VisualGuess(card_name="Mew", set_name="151", rarity="Rare Holo")
    outcome = run(CandidateRetriever(FakeCatalog(), FakeVision(guess)).visual_fallback(b"jpeg"))
    assert isinstance(outcome, Found)
    [candidate] = outcome.value
    assert candidate.confidence == 0.7
    assert candidate.match_source == "visual_guess"
    assert candidate.price_estimate is None
    assert candidate.catalog_id is None


def test_visual_fallback_requeries_catalog_and_matches_name():
    pikachu = CatalogEntry.from_api(api_card("base1-25", "Pikachu", "25", 102))
    charizard = CatalogEntry.from_api(api_card("xy-25", "Charizard", "25", 102))
    guess = VisualGuess(card_name="Charizard", number="25/102")
    retriever = CandidateRetriever(FakeCatalog([pikachu, charizard]), FakeVision(guess))
    outcome = run(retriever.visual_fallback(b"jpeg"))
    assert isinstance(outcome, Found)
    assert {c.card_name for c in outcome.value} == {"Charizard"}
    assert all(c.match_source == "visual_lookup" for c in outcome.value)
    assert all(c.confidence == 0.9 for c in outcome.value)


def test_retrieve_treats_catalog_timeout_as_empty(mew_entry):
    class Slow(FakeCatalog):
        async def search_by_number(self, number, total=None, set_prefix=None):
            self.searches.append((number, total, set_prefix))
            await asyncio.sleep(5)
            return list(self.entries)

    fake = Slow([mew_entry])
    retriever = CandidateRetriever(fake, catalog_timeout_s=0.05)
    outcome = run(asyncio.wait_for(retriever.retrieve(parse("151/165", 0.9)), timeout=3))
    assert isinstance(outcome, Fallback)
    assert fake.searches == [("151", "165", None), ("151", None, None)]


def test_ttl_cache_prunes_expired_entries_on_write():
    now = [0.0]
    cache = TTLCache(ttl_s=10, clock=lambda: now[0])
    for i in range(5):
        cache.set(f"card:{i}", i)
    now[0] = 11.0
    cache.set("chase:sv1", "fresh")
    assert len(cache) == 1
    assert cache.get("chase:sv1") == "fresh"
