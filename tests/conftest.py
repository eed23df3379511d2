"""Shared test fixtures for hash search tests."""

import numpy as np
import pytest

from phash_search.cache import IndexCache
from phash_search.config import SearchSettings
from phash_search.engine import SimilaritySearchEngine
from phash_search.sources import InMemoryFingerprintSource
from phash_search.vptree import IndexedPoint


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_fingerprints():
    """Generate n random fingerprints of a given bit width."""
    def _make(n, bits=64, seed=42):
        rng = np.random.RandomState(seed)
        raw = rng.bytes(n * bits // 8)
        step = bits // 8
        return [int.from_bytes(raw[i:i + step], "big") for i in range(0, len(raw), step)]
    return _make


@pytest.fixture
def make_points():
    """Wrap fingerprints as IndexedPoints with ids item-0, item-1, ..."""
    def _make(fingerprints):
        return [
            IndexedPoint(fingerprint=f, item_id=f"item-{i}", title=f"Artwork {i}")
            for i, f in enumerate(fingerprints)
        ]
    return _make


@pytest.fixture
def artwork_source():
    """Three artworks: an exact match, a one-bit neighbour, and the bitwise opposite."""
    source = InMemoryFingerprintSource()
    source.add("exact", {"perceptual_hash": "0x0000000000000000"},
               title="Exact", artist="A. Painter", tags=["oil"])
    source.add("near", {"perceptual_hash": "0x0000000000000001"},
               title="Near", artist="B. Sketcher")
    source.add("opposite", {"perceptual_hash": "0xffffffffffffffff"},
               title="Opposite")
    return source


@pytest.fixture
def settings():
    return SearchSettings()


@pytest.fixture
def make_engine(clock, settings):
    """Build an engine over a source with a fake-clock cache."""
    def _make(source, **overrides):
        engine_settings = SearchSettings(**{**settings.__dict__, **overrides})
        cache = IndexCache.from_settings(engine_settings, fetch=source.fetch_fingerprints,
                                         clock=clock)
        return SimilaritySearchEngine(cache, source, engine_settings)
    return _make
