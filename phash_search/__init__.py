"""
phash_search — Perceptual-hash similarity search.

Finds stored images whose fingerprints (perceptual, average, difference,
wavelet, color and block hashes) lie within a similarity threshold of a
query, ranked by a weighted fusion of per-hash similarities.

Modules:
    engine         SimilaritySearchEngine, query and batch pipeline
    cache          Per-hash-type index cache with single-flight rebuilds
    vptree         Vantage-point tree over Hamming space
    index_builder  IndexedPoint construction and tree builds
    distance       Hamming distance evaluators and similarity
    scoring        Weighted fusion and ranking
    codec          Hash-type registry and hex codec
    sources        Data-source contract and in-memory source
    config         Environment-driven settings
    errors         Exception types
"""

from .cache import IndexCache
from .config import SearchSettings
from .engine import SimilaritySearchEngine
from .errors import FormatError, IndexBuildError, InvalidQueryError
from .sources import InMemoryFingerprintSource
from .vptree import IndexedPoint, VPTree

__version__ = "1.0.0"

__all__ = [
    "IndexCache",
    "SearchSettings",
    "SimilaritySearchEngine",
    "FormatError",
    "IndexBuildError",
    "InvalidQueryError",
    "InMemoryFingerprintSource",
    "IndexedPoint",
    "VPTree",
]
