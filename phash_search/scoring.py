"""
Multi-hash similarity fusion and result ranking.

Hash types differ in discriminative power: a perceptual hash is a much
stronger signal than a coarse color hash. The overall similarity of a
candidate is therefore a weighted mean of its per-hash similarities rather
than a plain average.

DEFAULT_HASH_WEIGHTS only seeds the configuration. Deployments override it
through SearchSettings (see config.py) and callers may override it again
per request.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_HASH_WEIGHTS = {
    "perceptual_hash": 1.0,
    "average_hash": 0.8,
    "blockhash16": 0.7,
    "difference_hash": 0.6,
    "wavelet_hash": 0.5,
    "blockhash8": 0.4,
    "color_hash": 0.3,
}

# Decimal places kept in reported scores
SCORE_PRECISION = 4


def weighted_similarity(similarities: Mapping[str, float],
                        weights: Mapping[str, float]) -> float:
    """
    Weighted arithmetic mean of per-hash similarities.

    Only hash types present in both mappings with a positive weight
    contribute.

    Args:
        similarities: Hash type -> similarity in [0, 1].
        weights: Hash type -> weight.

    Returns:
        Weighted mean, or 0.0 when no weighted hash type overlaps.
    """
    total_weight = 0.0
    weighted_sum = 0.0

    for hash_type, similarity in similarities.items():
        weight = weights.get(hash_type, 0.0) or 0.0
        if weight > 0:
            weighted_sum += similarity * weight
            total_weight += weight

    if total_weight <= 0:
        return 0.0
    return weighted_sum / total_weight


def merge_weights(defaults: Mapping[str, float],
                  overrides: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
    """Overlay per-request weights on the configured defaults."""
    merged = dict(defaults)
    if overrides:
        merged.update(overrides)
    return merged


def round_score(value: float) -> float:
    return round(value, SCORE_PRECISION)


def rank_results(results: List[Any]) -> List[Any]:
    """
    Sort results by overall similarity (descending), then by item id.

    The item id tie-break makes the order independent of candidate
    discovery order, which varies with tree shape and vantage selection.

    Args:
        results: Objects with 'overall_similarity' and 'item_id' attributes.

    Returns:
        New sorted list (most similar first).
    """
    return sorted(
        results,
        key=lambda r: (-r.overall_similarity, str(r.item_id))
    )
