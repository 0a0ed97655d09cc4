import asyncio

import numpy as np

from cardmatch.services import regions, tiebreak
from cardmatch.services.config import TieBreakConfig
from cardmatch.services.tiebreak import TieBreaker
from cardmatch.services.types import VariantCandidate

from conftest import FakeCatalog


def candidate(name, variant="Normal", url=None):
    return VariantCandidate(card_name=name, variant=variant, confidence=0.9,
                            match_source="id_lookup", catalog_id=name, image_url=url)


def test_fingerprint_deterministic_and_fixed_length():
    rng = np.random.default_rng(7)
    strip = rng.integers(0, 256, size=(32, 33), dtype=np.uint8)
    first = tiebreak.compute_fingerprint(strip)
    assert first == tiebreak.compute_fingerprint(strip.copy())
    assert len(first) == 32 * 32
    assert set(first) <= {"0", "1"}


def test_fingerprint_uses_green_channel():
    strip = np.zeros((2, 3, 3), dtype=np.uint8)
    strip[:, :, 1] = [[0, 10, 5], [7, 7, 9]]
    assert tiebreak.compute_fingerprint(strip) == "1001"


def test_hamming_symmetric_and_zero_on_identity():
    a, b = "10110", "00111"
    assert tiebreak.hamming_distance(a, b) == tiebreak.hamming_distance(b, a) == 2
    assert tiebreak.hamming_distance(a, a) == 0
    assert tiebreak.hamming_distance(a, "1") == tiebreak.MAX_DISTANCE


def test_combined_distance_and_similarity():
    cfg = TieBreakConfig()
    user = ("0000", "0000")
    ref = ("1100", "1111")
    assert tiebreak.combined_distance(user, ref, cfg) == 0.6 * 2 + 0.4 * 4
    assert tiebreak.combined_distance(user, None, cfg) == tiebreak.MAX_DISTANCE
    assert tiebreak.similarity_from_distance(0, cfg) == 1.0
    assert tiebreak.similarity_from_distance(20, cfg) == 0.5
    assert tiebreak.similarity_from_distance(400, cfg) == 0.0


def test_single_candidate_untouched(card_photo):
    only = [candidate("a")]
    out = asyncio.run(TieBreaker(FakeCatalog()).tie_break(card_photo, only))
    assert out == only


def test_reorders_by_visual_match(card_photo):
    same = regions.encode_jpeg(card_photo, 95)
    other = np.random.default_rng(3).integers(0, 256, size=card_photo.shape, dtype=np.uint8)
    images = {"https://img/match.png": same, "https://img/other.png": regions.encode_jpeg(other, 95)}
    candidates = [
        candidate("missing", url=None),
        candidate("other", url="https://img/other.png"),
        candidate("match", url="https://img/match.png"),
    ]
    out = asyncio.run(TieBreaker(FakeCatalog(images=images)).tie_break(card_photo, candidates))

    assert len(out) == len(candidates)
    assert out[0].card_name == "match"
    assert out[0].match_source == "id_strip_signature"
    assert out[0].visual_similarity > out[1].visual_similarity
    missing = next(c for c in out if c.card_name == "missing")
    assert missing.visual_similarity == 0.0
    assert missing.match_source == "id_lookup"
    for c in out:
        assert c.confidence == (0.9 + c.visual_similarity) / 2
    assert [c.confidence for c in out] == sorted((c.confidence for c in out), reverse=True)


def test_variants_share_one_reference_fetch(card_photo):
    class CountingCatalog(FakeCatalog):
        fetched = 0

        async def fetch_image(self, url):
            self.fetched += 1
            return regions.encode_jpeg(card_photo)

    fake = CountingCatalog()
    url = "https://img/one.png"
    candidates = [candidate("a", "Normal", url), candidate("a", "Holofoil", url)]
    out = asyncio.run(TieBreaker(fake).tie_break(card_photo, candidates))
    assert fake.fetched == 1
    assert [c.variant for c in out] == ["Normal", "Holofoil"]


def test_reference_fetch_errors_score_as_no_match(card_photo):
    class Failing(FakeCatalog):
        async def fetch_image(self, url):
            raise OSError("network down")

    candidates = [candidate("a", url="https://img/a.png"), candidate("b", url="https://img/b.png")]
    out = asyncio.run(TieBreaker(Failing()).tie_break(card_photo, candidates))
    assert [c.card_name for c in out] == ["a", "b"]
    assert all(c.visual_similarity == 0.0 for c in out)
    assert all(c.confidence == 0.45 for c in out)


def test_similarity_pairs_distance_and_score():
    cfg = TieBreakConfig()
    assert tiebreak.similarity(("0101", "11"), ("0101", "11"), cfg) == (0.0, 1.0)
    assert tiebreak.similarity(("0101", "11"), None, cfg) == (tiebreak.MAX_DISTANCE, 0.0)
