"""
Data sources the index is rebuilt from.

The engine only needs fetch_fingerprints(hash_type): every stored item that
has a fingerprint of that type, with enough metadata to render a result.
Implementations must be side-effect free and safe to call repeatedly.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Protocol

from .codec import HASH_TYPES, parse_hashes
from .index_builder import normalize_tags, points_from_records
from .vptree import IndexedPoint

logger = logging.getLogger(__name__)


class FingerprintSource(Protocol):
    async def fetch_fingerprints(self, hash_type: str) -> List[IndexedPoint]:
        ...


class InMemoryFingerprintSource:
    """
    Fingerprint store held in process memory.

    Hex fingerprints are validated when items are added, so a malformed
    hash is rejected at ingestion and never reaches an index.
    """

    def __init__(self):
        self._items: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._items)

    def add(self, item_id: str, hashes: Mapping[str, str], **metadata) -> Dict[str, int]:
        """
        Store or replace an item.

        Args:
            item_id: Unique item id.
            hashes: Hash type -> hex fingerprint.
            **metadata: title, artist, tags, uploaded_at, created_at.

        Returns:
            The decoded fingerprints that were stored.

        Raises:
            FormatError: If any recognized fingerprint is malformed.
        """
        fingerprints = parse_hashes(hashes)
        self._items[str(item_id)] = {
            "fingerprints": fingerprints,
            "title": metadata.get("title"),
            "artist": metadata.get("artist"),
            "tags": normalize_tags(metadata.get("tags")),
            "uploaded_at": metadata.get("uploaded_at"),
            "created_at": metadata.get("created_at"),
        }
        return fingerprints

    def remove(self, item_id: str) -> bool:
        return self._items.pop(str(item_id), None) is not None

    def hash_types(self) -> List[str]:
        """Hash types held by at least one stored item, in registry order."""
        present = set()
        for item in self._items.values():
            present.update(item["fingerprints"])
        return [t for t in HASH_TYPES if t in present]

    async def fetch_fingerprints(self, hash_type: str) -> List[IndexedPoint]:
        points = []
        for item_id, item in self._items.items():
            fingerprint = item["fingerprints"].get(hash_type)
            if fingerprint is None:
                continue
            points.append(IndexedPoint(
                fingerprint=fingerprint,
                item_id=item_id,
                title=item["title"],
                artist=item["artist"],
                tags=item["tags"],
                uploaded_at=item["uploaded_at"],
                created_at=item["created_at"],
            ))
        return points


class RecordFingerprintSource:
    """
    Adapter over a document store.

    Args:
        load_records: Async callable returning the stored documents that
            hold hash_type, e.g. a projection query on the metadata
            collection.
    """

    def __init__(self, load_records: Callable[[str], Awaitable[Iterable[Mapping[str, Any]]]]):
        self.load_records = load_records

    async def fetch_fingerprints(self, hash_type: str) -> List[IndexedPoint]:
        records = await self.load_records(hash_type)
        return points_from_records(records or (), hash_type)
