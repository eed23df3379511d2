"""
Vantage-point tree over Hamming space.

A VP-tree recursively partitions points by their distance to a chosen
vantage point. Each node keeps the median distance (radius) from its
vantage point to the points below it: points at or inside the radius go
to the near subtree, points outside go to the far subtree. Range queries
use the triangle inequality to skip subtrees that cannot hold a match,
and return exactly what a linear scan would (no false negatives, no false
positives).

Trees are immutable once built. An updated point set means a new tree.
"""

import logging
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .distance import hamming_distance_fast

logger = logging.getLogger(__name__)

DistanceFunc = Callable[[int, int], int]
VantageSelector = Callable[[Sequence["IndexedPoint"]], int]


@dataclass(frozen=True)
class IndexedPoint:
    """One stored item's fingerprint plus the metadata needed to render a result."""

    fingerprint: int
    item_id: str
    title: Optional[str] = None
    artist: Optional[str] = None
    tags: Tuple[str, ...] = ()
    uploaded_at: Any = None
    created_at: Any = None

    def display_metadata(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "artist": self.artist,
            "tags": list(self.tags),
            "uploaded_at": self.uploaded_at,
            "created_at": self.created_at,
        }


class SearchHit(NamedTuple):
    point: IndexedPoint
    distance: int


class VPNode:
    """
    One vantage point and its partition.

    Points in near are within radius of the vantage point and points in far
    are beyond it, except when every distance in the partition was equal:
    then the split is by position and far holds points at exactly radius.
    The search visits far whenever d + max_distance >= radius, so those
    points are still found.
    """

    __slots__ = ("point", "radius", "near", "far")

    def __init__(self, point: IndexedPoint, radius: int = 0,
                 near: "Optional[VPNode]" = None,
                 far: "Optional[VPNode]" = None):
        self.point = point
        self.radius = radius
        self.near = near
        self.far = far


def first_point(points: Sequence[IndexedPoint]) -> int:
    """Always use the first point as vantage point."""
    return 0


class RandomVantageSelector:
    """
    Pick vantage points with a seeded generator.

    Sorted or adversarial input orders degrade first_point() toward a
    linked list; a random pick keeps the expected depth logarithmic. The
    same seed and input order always produce the same tree.
    """

    def __init__(self, seed: Optional[int] = 0):
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def __call__(self, points: Sequence[IndexedPoint]) -> int:
        return int(self._rng.integers(len(points)))


class VPTree:
    """
    Read-only VP-tree for one hash type.

    Args:
        points: Indexed points, all of the same hash type.
        selector: Vantage-point policy, a callable returning an index into
            the points it is given. Defaults to first_point().
        distance: Metric between two fingerprints.
        hash_type: Optional label used in logs and stats.
    """

    def __init__(self,
                 points: Iterable[IndexedPoint] = (),
                 selector: Optional[VantageSelector] = None,
                 distance: DistanceFunc = hamming_distance_fast,
                 hash_type: Optional[str] = None):
        self.selector = selector or first_point
        self.distance = distance
        self.hash_type = hash_type

        points = list(points)
        self.size = len(points)
        self.height = 0
        self.root = self._build(points)

    def __len__(self) -> int:
        return self.size

    @property
    def is_empty(self) -> bool:
        return self.root is None

    def _split(self, points: List[IndexedPoint]
               ) -> Tuple[VPNode, List[IndexedPoint], List[IndexedPoint]]:
        """Make the node for a point set and return its near and far sets."""
        idx = self.selector(points)
        vantage = points[idx]
        others = points[:idx] + points[idx + 1:]
        if not others:
            return VPNode(vantage), [], []

        measured = sorted(
            ((self.distance(vantage.fingerprint, p.fingerprint), p) for p in others),
            key=lambda pair: pair[0],
        )
        distances = [d for d, _ in measured]

        median = len(distances) // 2
        radius = distances[median]
        cut = bisect_right(distances, radius)

        if cut == len(distances):
            below = bisect_left(distances, radius)
            if below > 0:
                # Median is the maximum: move the split below it so far is non-empty
                radius = distances[below - 1]
                cut = below
            else:
                # Every distance is equal, no value split exists; far gets points at radius
                cut = median + 1

        near = [p for _, p in measured[:cut]]
        far = [p for _, p in measured[cut:]]
        return VPNode(vantage, radius), near, far

    def _build(self, points: List[IndexedPoint]) -> Optional[VPNode]:
        if not points:
            return None

        root, near, far = self._split(points)
        stack = [(near, root, "near", 2), (far, root, "far", 2)]
        self.height = 1

        while stack:
            subset, parent, side, depth = stack.pop()
            if not subset:
                continue
            node, near, far = self._split(subset)
            setattr(parent, side, node)
            self.height = max(self.height, depth)
            stack.append((near, node, "near", depth + 1))
            stack.append((far, node, "far", depth + 1))

        return root

    def search(self, query: int, max_distance: int) -> List[SearchHit]:
        """
        Find every point within max_distance of query.

        Args:
            query: Query fingerprint.
            max_distance: Inclusive Hamming distance bound.

        Returns:
            List of SearchHit(point, distance), in traversal order.
        """
        results = []
        if self.root is None or max_distance < 0:
            return results

        stack = [self.root]
        while stack:
            node = stack.pop()
            d = self.distance(query, node.point.fingerprint)
            if d <= max_distance:
                results.append(SearchHit(node.point, d))

            # Pushed far first so near is visited first
            if node.far is not None and d + max_distance >= node.radius:
                stack.append(node.far)
            if node.near is not None and d - max_distance <= node.radius:
                stack.append(node.near)

        return results
