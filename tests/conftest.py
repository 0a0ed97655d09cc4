import cv2
import numpy as np
import pytest

from cardmatch.services.types import CatalogEntry, PriceQuote

# 250 x 350 card at (150, 200) in a 600 x 800 frame
CARD_BOX = (150, 200, 400, 550)


def draw_card(width=600, height=800, box=CARD_BOX):
    photo = np.full((height, width, 3), 40, dtype=np.uint8)
    x0, y0, x1, y1 = box
    cv2.rectangle(photo, (x0, y0), (x1, y1), (235, 235, 235), thickness=-1)
    # artwork window and a collector number in the bottom-left corner
    cv2.rectangle(photo, (x0 + 20, y0 + 40), (x1 - 20, y0 + 180), (90, 120, 160), thickness=-1)
    cv2.putText(photo, "151/165", (x0 + 12, y1 - 18), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (20, 20, 20), 1)
    return photo


@pytest.fixture
def card_photo():
    return draw_card()


@pytest.fixture
def card_jpeg(card_photo):
    ok, buf = cv2.imencode(".jpg", card_photo)
    assert ok
    return buf.tobytes()


def api_card(card_id="sv3pt5-151", name="Mew", number="151", printed_total=165,
             rarity="Rare Holo", prices=None, set_id="sv3pt5"):
    """A pokemontcg.io v2 card payload."""
    return {
        "id": card_id,
        "name": name,
        "number": number,
        "rarity": rarity,
        "supertype": "Pokémon",
        "subtypes": ["Basic"],
        "types": ["Psychic"],
        "set": {
            "id": set_id,
            "name": "151",
            "printedTotal": printed_total,
            "releaseDate": "2023/09/22",
        },
        "images": {
            "small": f"https://images.example/{card_id}.png",
            "large": f"https://images.example/{card_id}_hires.png",
        },
        "tcgplayer": {"prices": prices if prices is not None else {
            "normal": {"low": 1.0, "mid": 2.5, "high": 4.0, "market": 2.0},
            "holofoil": {"low": 10.0, "mid": 16.0, "high": 25.0, "market": 15.0},
        }},
    }


@pytest.fixture
def mew_entry():
    return CatalogEntry.from_api(api_card())


class FakeCatalog:
    """In-memory stand-in for PokemonTcgClient."""

    def __init__(self, entries=None, chase_card=None, prices=None, images=None):
        self.entries = list(entries or [])
        self.chase_card = chase_card
        self.prices = prices or {}
        self.images = images or {}
        self.searches = []
        self.chase_queries = []
        self.closed = False

    async def search_by_number(self, number, total=None, set_prefix=None):
        self.searches.append((number, total, set_prefix))
        return list(self.entries)

    async def get_price(self, card_id, variant=None):
        market = self.prices.get(card_id)
        return PriceQuote(market=market) if market is not None else None

    async def get_set_chase_card(self, set_id):
        self.chase_queries.append(set_id)
        return self.chase_card

    async def fetch_image(self, url):
        return self.images.get(url)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_catalog_cls():
    return FakeCatalog
