"""
Multi-hash similarity search engine.

Orchestrates the search pipeline for one query:
    1. Normalize the query's hex fingerprints (malformed input is an error)
    2. Range-query the cached VP-tree of every hash type present, with
       max_distance = floor((1 - threshold) * bits)
    3. Merge candidates by item id across hash types
    4. Score each candidate with the weighted mean of its per-hash
       similarities, keep those at or above threshold
    5. Rank and truncate to the result limit

Each hash type is searched independently. If a tree cannot be built or
searched, that hash type falls back to a linear scan over the data source
and the query still returns a correct, if slower, result.
"""

import math
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import IndexCache
from .codec import HASH_BIT_LENGTHS, HASH_TYPES, decode_hash
from .config import SearchSettings
from .distance import distance_to_similarity, hamming_distances, threshold_to_distance
from .errors import FormatError, InvalidQueryError
from .index_builder import validate_points
from .scoring import merge_weights, rank_results, round_score, weighted_similarity
from .sources import FingerprintSource
from .vptree import IndexedPoint, SearchHit

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    item_id: str
    metadata: Dict[str, Any]
    hash_distances: Dict[str, int] = field(default_factory=dict)
    hash_similarities: Dict[str, float] = field(default_factory=dict)
    overall_similarity: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "item_id": self.item_id,
            "similarity_score": round_score(self.overall_similarity),
            "hash_distances": dict(self.hash_distances),
            "hash_similarities": {
                k: round_score(v) for k, v in self.hash_similarities.items()
            },
        }
        result.update(self.metadata)
        return result


def prepare_query_hashes(fingerprints: Mapping[str, Any]) -> Dict[str, int]:
    """
    Decode the recognized hash types of a query, in registry order.

    Unknown hash types and empty values are skipped.

    Raises:
        InvalidQueryError: If fingerprints is not a mapping.
        FormatError: If a recognized hash type holds a malformed value.
    """
    if not isinstance(fingerprints, Mapping):
        raise InvalidQueryError("fingerprints must be a mapping of hash type to hex string")

    query = {}
    for hash_type in HASH_TYPES:
        value = fingerprints.get(hash_type)
        if value is None or value == "":
            continue
        query[hash_type] = decode_hash(value, hash_type)

    unknown = [key for key in fingerprints if key not in HASH_BIT_LENGTHS]
    if unknown:
        logger.debug(f"Ignoring unrecognized hash types in query: {unknown}")
    return query


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class SimilaritySearchEngine:
    """
    Perceptual-hash similarity search over a fingerprint data source.

    Args:
        cache: Index cache shared by every query of this engine.
        source: Data source the indexes and linear scans read from.
        settings: Thresholds, limits and default weights.
    """

    def __init__(self,
                 cache: IndexCache,
                 source: FingerprintSource,
                 settings: Optional[SearchSettings] = None):
        self.cache = cache
        self.source = source
        self.settings = settings or SearchSettings()

    @classmethod
    def from_settings(cls, source: FingerprintSource,
                      settings: Optional[SearchSettings] = None) -> "SimilaritySearchEngine":
        """Wire an engine and its cache from settings."""
        settings = settings or SearchSettings.from_env()
        cache = IndexCache.from_settings(settings, fetch=source.fetch_fingerprints)
        return cls(cache, source, settings)

    def _resolve_options(self,
                         threshold: Optional[float],
                         limit: Optional[int],
                         weights: Optional[Mapping[str, float]],
                         default_threshold: float,
                         default_limit: int) -> Tuple[float, int, Dict[str, float]]:
        threshold = default_threshold if threshold is None else threshold
        if not _is_number(threshold) or not 0.0 <= threshold <= 1.0:
            raise InvalidQueryError(f"threshold must be between 0 and 1, got {threshold!r}")

        limit = default_limit if limit is None else limit
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise InvalidQueryError(f"limit must be a positive integer, got {limit!r}")
        effective_limit = min(limit, self.settings.max_limit)

        overrides = {}
        if weights:
            if not isinstance(weights, Mapping):
                raise InvalidQueryError("weights must be a mapping of hash type to weight")
            for hash_type, weight in weights.items():
                if hash_type not in HASH_BIT_LENGTHS:
                    logger.debug(f"Ignoring weight for unrecognized hash type {hash_type!r}")
                    continue
                if not _is_number(weight) or weight < 0 or not math.isfinite(weight):
                    raise InvalidQueryError(
                        f"weight for {hash_type} must be a non-negative number, got {weight!r}")
                overrides[hash_type] = float(weight)

        return threshold, effective_limit, merge_weights(self.settings.hash_weights, overrides)

    async def _fetch_candidates(self, hash_type: str) -> Tuple[List[IndexedPoint], int]:
        """Fetch linear-scan candidates, capped; also returns the uncapped count."""
        fetch = self.source.fetch_fingerprints(hash_type)
        if self.settings.fetch_timeout is not None:
            points = await asyncio.wait_for(fetch, self.settings.fetch_timeout)
        else:
            points = await fetch

        points = validate_points(points or (), hash_type)
        total = len(points)
        max_candidates = self.settings.max_linear_candidates
        if total > max_candidates:
            logger.warning(
                f"Linear scan for {hash_type} capped at {max_candidates} of "
                f"{total} candidates"
            )
            points = points[:max_candidates]
        return points, total

    async def _linear_scan(self, hash_type: str, query: int,
                           max_distance: int) -> Tuple[List[SearchHit], int, int]:
        points, total = await self._fetch_candidates(hash_type)
        distances = hamming_distances(
            query, [p.fingerprint for p in points], HASH_BIT_LENGTHS[hash_type])
        hits = [
            SearchHit(point, int(d))
            for point, d in zip(points, distances)
            if d <= max_distance
        ]
        return hits, len(points), total

    async def linear_search(self, hash_type: str, query: int,
                            max_distance: int) -> List[SearchHit]:
        """Exhaustive scan of the data source for one hash type, up to the candidate cap."""
        hits, _, _ = await self._linear_scan(hash_type, query, max_distance)
        return hits

    async def _search_hash_type(self, hash_type: str, query: int,
                                max_distance: int, use_index: bool
                                ) -> Tuple[List[SearchHit], str, Optional[Dict[str, int]]]:
        """Returns hits, the strategy used and, when the scan was capped, its counts."""
        strategy = "linear"
        if use_index:
            try:
                tree = await self.cache.get_or_build(hash_type, self.source.fetch_fingerprints)
                return tree.search(query, max_distance), "vptree", None
            except Exception as e:
                logger.warning(
                    f"VP-tree search failed for {hash_type}, falling back to linear scan: {e}"
                )
                strategy = "linear-fallback"

        try:
            hits, scanned, total = await self._linear_scan(hash_type, query, max_distance)
        except Exception as e:
            logger.error(f"Linear scan failed for {hash_type}, skipping hash type: {e}")
            return [], "failed", None

        truncation = None
        if scanned < total:
            truncation = {"scanned": scanned, "total": total}
        return hits, strategy, truncation

    async def _run_query(self,
                         query_hashes: Dict[str, int],
                         threshold: float,
                         limit: int,
                         weights: Dict[str, float],
                         use_index: bool) -> Dict[str, Any]:
        hash_types = list(query_hashes)
        search_params = {
            "threshold": threshold,
            "limit": limit,
            "hash_types_used": hash_types,
            "weights": {t: weights.get(t, 0.0) for t in hash_types},
            "optimization": "none",
            "search_strategies": {},
            "no_usable_hash_types": not hash_types,
            "failed_hash_types": [],
            "truncated_hash_types": {},
        }

        if not hash_types:
            return {"matches": [], "total_matches": 0, "search_params": search_params}

        searches = []
        for hash_type in hash_types:
            max_distance = threshold_to_distance(threshold, HASH_BIT_LENGTHS[hash_type])
            searches.append(self._search_hash_type(
                hash_type, query_hashes[hash_type], max_distance, use_index))
        outcomes = await asyncio.gather(*searches)

        candidates: Dict[str, SearchResult] = {}
        strategies = {}
        truncated = {}
        for hash_type, (hits, strategy, truncation) in zip(hash_types, outcomes):
            strategies[hash_type] = strategy
            if truncation is not None:
                truncated[hash_type] = truncation
            bits = HASH_BIT_LENGTHS[hash_type]
            for hit in hits:
                result = candidates.get(hit.point.item_id)
                if result is None:
                    result = SearchResult(hit.point.item_id, hit.point.display_metadata())
                    candidates[hit.point.item_id] = result
                result.hash_distances[hash_type] = hit.distance
                result.hash_similarities[hash_type] = distance_to_similarity(hit.distance, bits)

        matches = []
        for result in candidates.values():
            result.overall_similarity = weighted_similarity(result.hash_similarities, weights)
            if result.overall_similarity >= threshold:
                matches.append(result)

        ranked = rank_results(matches)

        used = set(strategies.values())
        if not use_index:
            optimization = "linear"
        elif used <= {"vptree"}:
            optimization = "vptree"
        else:
            optimization = "linear-fallback"

        search_params["optimization"] = optimization
        search_params["search_strategies"] = strategies
        search_params["failed_hash_types"] = [
            t for t, s in strategies.items() if s == "failed"]
        search_params["truncated_hash_types"] = truncated

        logger.info(
            f"Search complete: {len(hash_types)} hash types, {len(candidates)} "
            f"candidates, {len(matches)} matches ({optimization})"
        )

        return {
            "matches": [r.to_dict() for r in ranked[:limit]],
            "total_matches": len(matches),
            "search_params": search_params,
        }

    async def find_similar(self,
                           fingerprints: Mapping[str, str],
                           threshold: Optional[float] = None,
                           limit: Optional[int] = None,
                           weights: Optional[Mapping[str, float]] = None,
                           use_index: bool = True) -> Dict[str, Any]:
        """
        Find stored items similar to a set of query fingerprints.

        Args:
            fingerprints: Hash type -> hex fingerprint (0x prefix optional).
            threshold: Minimum overall similarity in [0, 1].
            limit: Maximum matches returned, capped at settings.max_limit.
            weights: Per-request weight overrides by hash type.
            use_index: False forces a linear scan for every hash type.

        Returns:
            Dict with 'matches' (ranked result dicts), 'total_matches'
            (matches before truncation) and 'search_params'. A query with
            no usable hash type returns no matches and sets
            search_params['no_usable_hash_types']. Linear scans cut short by
            max_linear_candidates are listed in
            search_params['truncated_hash_types'] with scanned and total counts.

        Raises:
            FormatError: If a fingerprint is malformed; names the hash type.
            InvalidQueryError: If threshold, limit or weights are invalid.
        """
        threshold, limit, weights = self._resolve_options(
            threshold, limit, weights,
            self.settings.default_threshold, self.settings.default_limit)
        query_hashes = prepare_query_hashes(fingerprints)
        return await self._run_query(query_hashes, threshold, limit, weights, use_index)

    async def find_similar_batch(self,
                                 queries: Sequence[Mapping[str, Any]],
                                 threshold: Optional[float] = None,
                                 limit: Optional[int] = None,
                                 weights: Optional[Mapping[str, float]] = None,
                                 use_index: bool = True) -> Dict[str, Any]:
        """
        Run several independent queries with shared options.

        Every query is a mapping with an 'id' and its 'fingerprints' (or
        'hashes'). All queries are validated before any search runs.

        Returns:
            {'results': [{'query_id', 'matches', 'match_count'}, ...]} in
            query order.

        Raises:
            FormatError: If a fingerprint is malformed; details name the query.
            InvalidQueryError: If the batch or its options are invalid.
        """
        if not queries:
            raise InvalidQueryError("batch must contain at least one query")
        if len(queries) > self.settings.max_batch_queries:
            raise InvalidQueryError(
                f"batch holds {len(queries)} queries, maximum is "
                f"{self.settings.max_batch_queries}"
            )

        threshold, limit, weights = self._resolve_options(
            threshold, limit, weights,
            self.settings.batch_default_threshold, self.settings.batch_default_limit)

        prepared = []
        for query in queries:
            if not isinstance(query, Mapping):
                raise InvalidQueryError("each batch query must be a mapping")
            query_id = query.get("id")
            if query_id is None or query_id == "":
                raise InvalidQueryError("each batch query needs a non-empty id")
            fingerprints = query.get("fingerprints", query.get("hashes"))
            try:
                prepared.append((query_id, prepare_query_hashes(fingerprints)))
            except FormatError as e:
                e.details["query_id"] = query_id
                raise

        outcomes = await asyncio.gather(*(
            self._run_query(query_hashes, threshold, limit, weights, use_index)
            for _, query_hashes in prepared
        ))

        return {
            "results": [
                {
                    "query_id": query_id,
                    "matches": outcome["matches"],
                    "match_count": outcome["total_matches"],
                }
                for (query_id, _), outcome in zip(prepared, outcomes)
            ]
        }

    def invalidate_cache(self, hash_type: Optional[str] = None) -> Dict[str, Any]:
        """Drop cached indexes, e.g. after a bulk upload."""
        if hash_type is not None and hash_type not in HASH_BIT_LENGTHS:
            raise InvalidQueryError(f"Unknown hash type: {hash_type!r}")

        dropped = self.cache.invalidate(hash_type)
        message = (f"Cache invalidated for {hash_type}" if hash_type
                   else "All caches invalidated")
        return {"success": True, "message": message, "invalidated": dropped}

    def cache_stats(self) -> Dict[str, Any]:
        return {"stats": self.cache.stats()}

    async def warm_up(self, hash_types: Optional[Sequence[str]] = None) -> Dict[str, Optional[int]]:
        """
        Build indexes ahead of the first query.

        Returns:
            Hash type -> indexed point count, or None where the build failed.
        """
        hash_types = list(hash_types or HASH_TYPES)
        sizes = {}
        for hash_type in hash_types:
            try:
                tree = await self.cache.get_or_build(hash_type, self.source.fetch_fingerprints)
                sizes[hash_type] = tree.size
            except Exception as e:
                logger.warning(f"Warm-up failed for {hash_type}: {e}")
                sizes[hash_type] = None
        return sizes
