"""
Index construction from system-of-record data.

Turns stored documents into IndexedPoints and IndexedPoints into a
VP-tree:
    - points_from_records() maps stored documents to IndexedPoints
    - validate_points() rejects anything that cannot be indexed
    - build_index() validates, builds and logs the tree

Stored documents follow the artwork metadata layout: '_id', 'title',
'artist', 'tags', 'uploadedAt', 'createdAt' and a 'hashes' sub-document
holding '<type>_int' (int or decimal string) and/or '<type>' (hex). 'tags' may be a
list or a single string.
"""

import time
import logging
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .codec import bit_length, decode_hash
from .errors import FormatError, IndexBuildError
from .vptree import IndexedPoint, VPTree, VantageSelector

logger = logging.getLogger(__name__)


def normalize_tags(value: Any) -> Tuple[str, ...]:
    """Tags as a tuple; a single stored string is one tag, not a sequence of characters."""
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _fingerprint_from_hashes(hashes: Mapping[str, Any], hash_type: str) -> Optional[int]:
    int_value = hashes.get(f"{hash_type}_int")
    if int_value is not None and int_value != "":
        if isinstance(int_value, bool):
            raise ValueError(f"boolean {hash_type}_int")
        if isinstance(int_value, str):
            return int(int_value, 10)
        return int(int_value)

    hex_value = hashes.get(hash_type)
    if hex_value:
        return decode_hash(hex_value, hash_type)
    return None


def points_from_records(records: Iterable[Mapping[str, Any]],
                        hash_type: str) -> List[IndexedPoint]:
    """
    Map stored documents to IndexedPoints for one hash type.

    Documents without a fingerprint of that type are skipped.

    Args:
        records: Stored artwork documents.
        hash_type: Hash type to extract.

    Returns:
        List of IndexedPoints in record order.

    Raises:
        IndexBuildError: If a document holds an unparseable fingerprint.
    """
    points = []
    skipped = 0

    for record in records:
        hashes = record.get("hashes") or {}
        try:
            fingerprint = _fingerprint_from_hashes(hashes, hash_type)
        except (ValueError, TypeError, FormatError) as e:
            raise IndexBuildError(
                f"Malformed {hash_type} on record {record.get('_id')!r}: {e}",
                hash_type=hash_type,
            ) from e

        if fingerprint is None:
            skipped += 1
            continue

        points.append(IndexedPoint(
            fingerprint=fingerprint,
            item_id=str(record.get("_id")),
            title=record.get("title"),
            artist=record.get("artist"),
            tags=normalize_tags(record.get("tags")),
            uploaded_at=record.get("uploadedAt"),
            created_at=record.get("createdAt"),
        ))

    if skipped:
        logger.debug(f"Skipped {skipped} records without {hash_type}")
    return points


def validate_points(points: Iterable[Any], hash_type: str) -> List[IndexedPoint]:
    """Check that every point is an IndexedPoint whose fingerprint fits the hash type."""
    bits = bit_length(hash_type)
    checked = []

    for point in points:
        if not isinstance(point, IndexedPoint):
            raise IndexBuildError(
                f"Data source returned {type(point).__name__} for {hash_type}, "
                f"expected IndexedPoint",
                hash_type=hash_type,
            )
        value = point.fingerprint
        if (isinstance(value, bool) or not isinstance(value, int)
                or value < 0 or value.bit_length() > bits):
            raise IndexBuildError(
                f"Fingerprint of item {point.item_id!r} is not a {bits}-bit "
                f"unsigned integer",
                hash_type=hash_type,
            )
        checked.append(point)

    return checked


def build_index(points: Iterable[Any],
                hash_type: str,
                selector: Optional[VantageSelector] = None) -> VPTree:
    """
    Validate points and build a VP-tree over them.

    Args:
        points: Points fetched for hash_type.
        hash_type: Hash type the points belong to.
        selector: Optional vantage-point policy.

    Returns:
        Freshly built VPTree.

    Raises:
        IndexBuildError: If any point is malformed.
    """
    started = time.perf_counter()
    checked = validate_points(points, hash_type)
    tree = VPTree(checked, selector=selector, hash_type=hash_type)
    elapsed = time.perf_counter() - started

    logger.info(
        f"Built VP-tree for {hash_type}: {tree.size} points, "
        f"height {tree.height}, {elapsed * 1000:.1f} ms"
    )
    return tree
