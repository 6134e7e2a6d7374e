"""Permission cache for ACL resolutions.

Bounded LRU keyed by (resource, principal, required mask). Every entry
remembers the chain of ACL nodes its resolution walked and the generation
of each node at read time. Invalidating a node bumps its generation, which
makes every entry that walked through it stale (the node's whole subtree),
and a value computed against an old generation is refused on ``put``.

Generation records are bounded too. Nodes without a record report the
current floor generation; dropping records (a deleted node, or the whole
map once it reaches the bound) raises the floor, so stamps taken before the
drop can never match again.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import OrderedDict
from typing import Sequence

from pydantic import BaseModel

from aclguard.acl.models import ResourceIdentity
from aclguard.auth.models import Principal

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, int]
ChainStamp = tuple[tuple[str, int], ...]


class CacheStats(BaseModel):
    """Cache statistics."""

    size: int = 0
    max_entries: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    stale_rejections: int = 0
    invalidations: int = 0
    hit_rate: float = 0.0


class _CacheEntry:
    __slots__ = ("granted", "chain")

    def __init__(self, granted: bool, chain: ChainStamp):
        self.granted = granted
        self.chain = chain


class PermissionCache:
    """Thread-safe bounded LRU cache of ACL decisions."""

    def __init__(self, max_entries: int = 10000, max_tracked_nodes: int | None = None):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.max_tracked_nodes = max_tracked_nodes or max_entries
        self._lock = threading.Lock()
        self._data: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        # node key -> cache keys whose chain passes through the node
        self._by_node: dict[str, set[CacheKey]] = {}
        self._generations: dict[str, int] = {}
        self._floor = 0
        self._clock = itertools.count(1)

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._stale = 0
        self._invalidations = 0

    @staticmethod
    def make_key(resource: ResourceIdentity, principal: Principal, required: int) -> CacheKey:
        return (resource.key, principal.cache_key, int(required))

    def generation(self, resource_key: str) -> int:
        """Current generation of a node (the floor if it has no record)."""
        with self._lock:
            return self._generations.get(resource_key, self._floor)

    def _is_current_unlocked(self, chain: ChainStamp) -> bool:
        return all(self._generations.get(node, self._floor) == gen for node, gen in chain)

    def _drop_unlocked(self, key: CacheKey) -> None:
        entry = self._data.pop(key, None)
        if entry is None:
            return
        for node, _ in entry.chain:
            keys = self._by_node.get(node)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_node[node]

    def get(
        self,
        resource: ResourceIdentity,
        principal: Principal,
        required: int,
    ) -> bool | None:
        """Return the cached decision, or None on a miss or stale entry."""
        key = self.make_key(resource, principal, required)
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self._misses += 1
                return None
            if not self._is_current_unlocked(entry.chain):
                self._drop_unlocked(key)
                self._stale += 1
                self._misses += 1
                return None
            self._data.move_to_end(key, last=True)
            self._hits += 1
            return entry.granted

    def put(
        self,
        resource: ResourceIdentity,
        principal: Principal,
        required: int,
        granted: bool,
        chain: Sequence[tuple[str, int]],
    ) -> bool:
        """Store a decision computed against ``chain`` generations.

        Returns:
            False if any node was invalidated since it was read
        """
        key = self.make_key(resource, principal, required)
        stamp: ChainStamp = tuple(chain)
        with self._lock:
            if not self._is_current_unlocked(stamp):
                self._stale += 1
                logger.debug("Refused stale cache put for %s", resource.key)
                return False

            self._drop_unlocked(key)
            self._data[key] = _CacheEntry(granted, stamp)
            for node, _ in stamp:
                self._by_node.setdefault(node, set()).add(key)

            while len(self._data) > self.max_entries:
                oldest, _ = next(iter(self._data.items()))
                self._drop_unlocked(oldest)
                self._evictions += 1
            return True

    def invalidate(self, resource: ResourceIdentity | str) -> int:
        """Invalidate a node and every cached resolution that walked through it.

        Returns:
            Number of entries purged
        """
        node = resource if isinstance(resource, str) else resource.key
        with self._lock:
            keys = self._purge_node_unlocked(node)
            if len(self._generations) > self.max_tracked_nodes:
                self._reset_unlocked()
                logger.debug("Generation map reached %d nodes; reset", self.max_tracked_nodes)
        if keys:
            logger.debug("Invalidated %d cached decision(s) through %s", len(keys), node)
        return len(keys)

    def forget(self, resource: ResourceIdentity | str) -> int:
        """Invalidate a deleted node and drop its generation record.

        Raising the floor keeps stamps taken before the drop stale, so a
        resource re-created under the same key never sees old decisions.
        """
        node = resource if isinstance(resource, str) else resource.key
        with self._lock:
            keys = self._purge_node_unlocked(node)
            self._generations.pop(node, None)
            self._floor = next(self._clock)
        return len(keys)

    def _purge_node_unlocked(self, node: str) -> list[CacheKey]:
        self._generations[node] = next(self._clock)
        self._invalidations += 1
        keys = list(self._by_node.get(node, ()))
        for key in keys:
            self._drop_unlocked(key)
        return keys

    def _reset_unlocked(self) -> None:
        # Every record goes, so every stamp is stale and every entry with it
        self._floor = next(self._clock)
        self._generations.clear()
        self._data.clear()
        self._by_node.clear()

    def clear(self) -> None:
        """Drop every entry; generations are bumped so in-flight puts are refused."""
        with self._lock:
            self._reset_unlocked()

    @property
    def tracked_nodes(self) -> int:
        """Number of nodes with a generation record."""
        return len(self._generations)

    def __len__(self) -> int:
        return len(self._data)

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                size=len(self._data),
                max_entries=self.max_entries,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                stale_rejections=self._stale,
                invalidations=self._invalidations,
                hit_rate=self._hits / total if total else 0.0,
            )
