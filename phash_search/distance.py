"""
Hamming distance and similarity between fingerprints.

Two scalar evaluators are provided and must always agree:
    hamming_distance       reference, one bit per step
    hamming_distance_fast  byte-table lookup, eight bits per step

hamming_distances() applies the same byte table to a whole candidate set
with numpy, which is what the linear-scan path uses.
"""

import math
import logging
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)


def _build_popcount_table() -> np.ndarray:
    table = np.zeros(256, dtype=np.uint8)
    for i in range(1, 256):
        table[i] = (i & 1) + table[i >> 1]
    return table


# Bit counts of every 8-bit value
POPCOUNT_TABLE = _build_popcount_table()
_POPCOUNT = tuple(int(c) for c in POPCOUNT_TABLE)


def hamming_distance(hash1: int, hash2: int) -> int:
    """Count differing bits one bit at a time."""
    xor = hash1 ^ hash2
    distance = 0
    while xor:
        distance += xor & 1
        xor >>= 1
    return distance


def hamming_distance_fast(hash1: int, hash2: int) -> int:
    """Count differing bits eight at a time using POPCOUNT_TABLE."""
    xor = hash1 ^ hash2
    distance = 0
    while xor:
        distance += _POPCOUNT[xor & 0xFF]
        xor >>= 8
    return distance


def hamming_distances(query: int,
                      fingerprints: Sequence[int],
                      bits: int) -> np.ndarray:
    """
    Compute the Hamming distance from one query to many fingerprints.

    Each fingerprint is laid out as bits/8 big-endian bytes, XORed with the
    query bytes and counted through POPCOUNT_TABLE.

    Args:
        query: Query fingerprint.
        fingerprints: Candidate fingerprints of the same hash type.
        bits: Bit width of the hash type (multiple of 8).

    Returns:
        Int64 array of distances, aligned with fingerprints.

    Raises:
        OverflowError: If a fingerprint does not fit in bits.
    """
    n_bytes = bits // 8
    if len(fingerprints) == 0:
        return np.zeros(0, dtype=np.int64)

    packed = b"".join(f.to_bytes(n_bytes, "big") for f in fingerprints)
    candidates = np.frombuffer(packed, dtype=np.uint8).reshape(-1, n_bytes)
    query_bytes = np.frombuffer(query.to_bytes(n_bytes, "big"), dtype=np.uint8)

    xor = np.bitwise_xor(candidates, query_bytes)
    return POPCOUNT_TABLE[xor].sum(axis=1, dtype=np.int64)


def distance_to_similarity(distance: int, bits: int) -> float:
    """Convert a Hamming distance to a similarity in [0, 1]."""
    return 1.0 - distance / bits


def threshold_to_distance(threshold: float, bits: int) -> int:
    """
    Largest Hamming distance whose similarity still reaches threshold.

    floor((1 - threshold) * bits), with a small tolerance so that float
    error cannot drop an exact boundary (0.75 on 64 bits is 16, not 15).
    Clamped to [0, bits].
    """
    max_distance = math.floor((1.0 - threshold) * bits + 1e-9)
    return max(0, min(bits, max_distance))
