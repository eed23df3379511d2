"""
Per-hash-type VP-tree cache with single-flight rebuilds.

One tree is cached per hash type. A tree older than the TTL, or one that
was invalidated, is rebuilt from the data source on the next request.
Concurrent requests for the same hash type share a single in-flight build
task instead of each fetching and building their own copy; waiters give up
after build_timeout and see an IndexBuildError.

A finished tree is published with a single dict assignment, so readers
only ever see complete trees. Trees are never mutated after publication.
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .codec import bit_length
from .errors import FormatError, IndexBuildError
from .index_builder import build_index
from .vptree import IndexedPoint, RandomVantageSelector, VantageSelector, VPTree

logger = logging.getLogger(__name__)

FetchFunc = Callable[[str], Awaitable[Iterable[IndexedPoint]]]

DEFAULT_TTL = 10 * 60.0


@dataclass(frozen=True)
class CacheEntry:
    hash_type: str
    index: VPTree
    built_at: float


class IndexCache:
    """
    Cache of VP-trees keyed by hash type.

    Args:
        fetch: Default async data source, fetch(hash_type) -> points.
        ttl: Seconds a built tree stays fresh.
        build_timeout: Seconds a caller waits for a build (own or peer's)
            before giving up. None waits indefinitely.
        fetch_timeout: Seconds the data source may take. None means no bound.
        selector_factory: Returns a fresh vantage selector for every build.
        clock: Wall-clock source for built_at and TTL checks.
    """

    def __init__(self,
                 fetch: Optional[FetchFunc] = None,
                 ttl: float = DEFAULT_TTL,
                 build_timeout: Optional[float] = 30.0,
                 fetch_timeout: Optional[float] = None,
                 selector_factory: Optional[Callable[[], VantageSelector]] = None,
                 clock: Callable[[], float] = time.time):
        self.fetch = fetch
        self.ttl = ttl
        self.build_timeout = build_timeout
        self.fetch_timeout = fetch_timeout
        self.selector_factory = selector_factory
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._generations: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings, fetch: Optional[FetchFunc] = None, **kwargs) -> "IndexCache":
        """Build a cache from SearchSettings."""
        seed = settings.vantage_seed
        selector_factory = None
        if seed is not None:
            selector_factory = partial(RandomVantageSelector, seed)
        return cls(
            fetch=fetch,
            ttl=settings.cache_ttl,
            build_timeout=settings.build_timeout,
            fetch_timeout=settings.fetch_timeout,
            selector_factory=selector_factory,
            **kwargs,
        )

    def is_building(self, hash_type: str) -> bool:
        return hash_type in self._inflight

    async def get_or_build(self,
                           hash_type: str,
                           fetch: Optional[FetchFunc] = None,
                           ttl: Optional[float] = None) -> VPTree:
        """
        Return a fresh tree for hash_type, building it if needed.

        Args:
            hash_type: Hash type to look up.
            fetch: Data source for this call, overriding the default.
            ttl: Freshness window for this call, overriding the default.

        Returns:
            The cached or newly built VPTree.

        Raises:
            IndexBuildError: If the build fails or the wait times out.
        """
        ttl = self.ttl if ttl is None else ttl
        entry = self._entries.get(hash_type)
        if entry is not None and self._clock() - entry.built_at < ttl:
            return entry.index

        task = self._inflight.get(hash_type)
        if task is None:
            fetch = fetch or self.fetch
            if fetch is None:
                raise IndexBuildError(
                    f"No data source configured for {hash_type}", hash_type=hash_type)
            generation = self._generations.get(hash_type, 0)
            task = asyncio.ensure_future(self._rebuild(hash_type, fetch, generation))
            self._inflight[hash_type] = task
            task.add_done_callback(partial(self._build_done, hash_type))
        else:
            logger.debug(f"Waiting for in-flight {hash_type} build")

        try:
            return await asyncio.wait_for(asyncio.shield(task), self.build_timeout)
        except asyncio.TimeoutError:
            raise IndexBuildError(
                f"Timed out after {self.build_timeout}s waiting for the "
                f"{hash_type} index build",
                hash_type=hash_type,
            ) from None

    def _build_done(self, hash_type: str, task: asyncio.Task) -> None:
        if self._inflight.get(hash_type) is task:
            del self._inflight[hash_type]
        # Mark the exception as retrieved when every waiter has timed out
        if not task.cancelled():
            task.exception()

    async def _fetch_points(self, hash_type: str, fetch: FetchFunc) -> List[Any]:
        try:
            if self.fetch_timeout is not None:
                points = await asyncio.wait_for(fetch(hash_type), self.fetch_timeout)
            else:
                points = await fetch(hash_type)
        except asyncio.TimeoutError:
            raise IndexBuildError(
                f"Data source timed out after {self.fetch_timeout}s for {hash_type}",
                hash_type=hash_type,
            ) from None
        except IndexBuildError:
            raise
        except Exception as e:
            raise IndexBuildError(
                f"Data source failed for {hash_type}: {e}", hash_type=hash_type
            ) from e

        if points is None:
            raise IndexBuildError(
                f"Data source returned nothing for {hash_type}", hash_type=hash_type)
        return list(points)

    async def _rebuild(self, hash_type: str, fetch: FetchFunc, generation: int) -> VPTree:
        try:
            bit_length(hash_type)
        except FormatError as e:
            raise IndexBuildError(str(e), hash_type=hash_type) from e

        started = self._clock()
        points = await self._fetch_points(hash_type, fetch)
        selector = self.selector_factory() if self.selector_factory else None

        try:
            tree = await asyncio.to_thread(build_index, points, hash_type, selector)
        except IndexBuildError:
            raise
        except Exception as e:
            raise IndexBuildError(
                f"Building the {hash_type} index failed: {e}", hash_type=hash_type
            ) from e

        if self._generations.get(hash_type, 0) != generation:
            logger.info(f"{hash_type} was invalidated during its build, not caching")
            return tree

        self._entries[hash_type] = CacheEntry(hash_type, tree, started)
        return tree

    def invalidate(self, hash_type: Optional[str] = None) -> List[str]:
        """
        Drop the cached tree for one hash type, or for all of them.

        A build already in flight still completes for its waiters but is
        not cached; the next request starts a fresh build.

        Returns:
            Hash types whose cached tree was dropped.
        """
        if hash_type is not None:
            targets = [hash_type]
        else:
            targets = list(dict.fromkeys([*self._entries, *self._inflight]))

        dropped = []
        for target in targets:
            if self._entries.pop(target, None) is not None:
                dropped.append(target)
            self._inflight.pop(target, None)
            self._generations[target] = self._generations.get(target, 0) + 1

        logger.info(
            f"Invalidated index cache for {hash_type or 'all hash types'}"
            f" ({len(dropped)} dropped)"
        )
        return dropped

    def stats(self) -> Dict[str, Dict[str, Any]]:
        """Size, build time and age of every cached tree."""
        now = self._clock()
        return {
            hash_type: {
                "size": entry.index.size,
                "height": entry.index.height,
                "built_at": entry.built_at,
                "age": now - entry.built_at,
            }
            for hash_type, entry in self._entries.items()
        }
