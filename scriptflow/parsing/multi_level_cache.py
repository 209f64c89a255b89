"""
Scriptflow Multi-Level Cache

Read-through, write-through cache over three tiers, fastest first:

* L1 - in-process ordered map, short TTL, small capacity, evicts the
  least recently hit entry
* L2 - persistent local Cache Store, longer TTL, larger capacity
* L3 - remote Cache Store, longest TTL, largest capacity

A hit in a slower tier is promoted into every faster tier. Entries expire
lazily: an expired entry reads as absent and is only removed by
:meth:`MultiLevelCache.sweep`.
"""

import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from scriptflow.core.config import CacheConfig
from scriptflow.core.constants import CACHE_TIERS, CacheTier
from scriptflow.core.logging_config import get_logger
from scriptflow.storage.stores import CacheStore
from scriptflow.utils.text_utils import content_fingerprint

logger = get_logger("parsing.cache")


def estimate_size(value: Any) -> int:
    """UTF-8 byte length of the value's JSON form."""
    return len(json.dumps(value, ensure_ascii=False, default=str).encode("utf-8"))


@dataclass
class CacheEntry:
    """A cached value in one tier."""
    key: str
    value: Any
    timestamp: float
    ttl: float
    tier: CacheTier
    hit_count: int = 0
    size: int = 0

    def is_expired(self, now: float) -> bool:
        """Check if entry has outlived its TTL."""
        return now - self.timestamp > self.ttl

    def remaining(self, now: float) -> float:
        return max(0.0, self.ttl - (now - self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "timestamp": self.timestamp,
            "ttl": self.ttl,
            "tier": self.tier.value,
            "hitCount": self.hit_count,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntry':
        return cls(
            key=data["key"],
            value=data["value"],
            timestamp=float(data["timestamp"]),
            ttl=float(data["ttl"]),
            tier=CacheTier(data.get("tier", CacheTier.L2.value)),
            hit_count=int(data.get("hitCount", 0)),
            size=int(data.get("size", 0)),
        )


@dataclass
class CacheStats:
    """Statistics for cache performance."""
    hits: int = 0
    misses: int = 0
    l1_hits: int = 0
    l2_hits: int = 0
    l3_hits: int = 0
    evictions: int = 0
    sets: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def record_hit(self, tier: CacheTier) -> None:
        self.hits += 1
        setattr(self, f"{tier.value}_hits", getattr(self, f"{tier.value}_hits") + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "l1_hits": self.l1_hits,
            "l2_hits": self.l2_hits,
            "l3_hits": self.l3_hits,
            "evictions": self.evictions,
            "sets": self.sets,
            "hit_rate": round(self.hit_rate, 4),
        }


# =============================================================================
# TIERS
# =============================================================================

class MemoryTier:
    """In-process tier. Hits move an entry to the back; overflow evicts the front."""

    tier = CacheTier.L1

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def touch(self, key: str) -> None:
        self._entries.move_to_end(key)

    def put(self, entry: CacheEntry) -> int:
        """Store ``entry``; returns the number of evictions."""
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        evicted = 0
        while len(self._entries) > self.max_size:
            old_key, _ = self._entries.popitem(last=False)
            evicted += 1
            logger.debug(f"L1 evicted {old_key}")
        return evicted

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def keys(self) -> List[str]:
        return list(self._entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


class StoreTier:
    """
    Tier backed by a Cache Store.

    Entries live under ``{namespace}{key}``. An index entry keeps keys in
    write order so capacity overflow evicts the oldest write.
    """

    def __init__(self, store: CacheStore, tier: CacheTier, max_size: int, namespace: str):
        self.store = store
        self.tier = tier
        self.max_size = max_size
        self.namespace = namespace
        self.index_key = f"{namespace}__index__"
        self._lock = asyncio.Lock()

    def _store_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def _load_index(self) -> List[str]:
        index = await self.store.get(self.index_key)
        return list(index) if isinstance(index, list) else []

    async def get(self, key: str, now: float) -> Optional[CacheEntry]:
        raw = await self.store.get(self._store_key(key))
        if not isinstance(raw, dict):
            return None
        entry = CacheEntry.from_dict(raw)
        if entry.is_expired(now):
            return None
        return entry

    async def put(self, entry: CacheEntry) -> int:
        async with self._lock:
            index = await self._load_index()
            if entry.key in index:
                index.remove(entry.key)
            index.append(entry.key)

            evicted = 0
            while len(index) > self.max_size:
                old_key = index.pop(0)
                await self.store.set(self._store_key(old_key), None)
                evicted += 1

            await self.store.set(self._store_key(entry.key), entry.to_dict())
            await self.store.set(self.index_key, index)
            return evicted

    async def delete(self, key: str) -> bool:
        async with self._lock:
            index = await self._load_index()
            await self.store.set(self._store_key(key), None)
            if key not in index:
                return False
            index.remove(key)
            await self.store.set(self.index_key, index)
            return True

    async def clear(self) -> None:
        async with self._lock:
            for key in await self._load_index():
                await self.store.set(self._store_key(key), None)
            await self.store.set(self.index_key, [])

    async def sweep(self, now: float) -> int:
        async with self._lock:
            index = await self._load_index()
            kept = []
            for key in index:
                raw = await self.store.get(self._store_key(key))
                if isinstance(raw, dict) and not CacheEntry.from_dict(raw).is_expired(now):
                    kept.append(key)
                else:
                    await self.store.set(self._store_key(key), None)
            if len(kept) != len(index):
                await self.store.set(self.index_key, kept)
            return len(index) - len(kept)


# =============================================================================
# CACHE
# =============================================================================

class MultiLevelCache:
    """
    Tiered cache keyed by normalized content fingerprints.

    Usage:
        cache = MultiLevelCache(l2_store=JSONFileCacheStore(root))
        key = cache.generate_key("character", {"name": name, "fingerprint": fp})
        value = await cache.get(key)
        if value is None:
            value = await extract()
            await cache.set(key, value)
    """

    def __init__(
        self,
        l2_store: Optional[CacheStore] = None,
        l3_store: Optional[CacheStore] = None,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
        namespace: str = "mlc"
    ):
        """
        Initialize the cache.

        Args:
            l2_store: Persistent local store; L2 is disabled without one
            l3_store: Remote store; L3 is disabled without one
            config: TTLs, capacities and sweep interval
            clock: Time source in seconds
            namespace: Key prefix separating cache keys from other data
        """
        self.config = config or CacheConfig()
        self._clock = clock
        self._l1 = MemoryTier(self.config.max_l1_size)
        self._store_tiers: Dict[CacheTier, StoreTier] = {}
        if l2_store is not None:
            self._store_tiers[CacheTier.L2] = StoreTier(
                l2_store, CacheTier.L2, self.config.max_l2_size, f"{namespace}:l2:"
            )
        if l3_store is not None:
            self._store_tiers[CacheTier.L3] = StoreTier(
                l3_store, CacheTier.L3, self.config.max_l3_size, f"{namespace}:l3:"
            )
        self._default_ttl = {
            CacheTier.L1: self.config.l1_ttl,
            CacheTier.L2: self.config.l2_ttl,
            CacheTier.L3: self.config.l3_ttl,
        }
        self._stats = CacheStats()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def tiers(self) -> List[CacheTier]:
        """Enabled tiers, fastest first."""
        return [CacheTier.L1] + [tier for tier in CACHE_TIERS if tier in self._store_tiers]

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    @staticmethod
    def generate_key(prefix: str, params: Mapping[str, Any]) -> str:
        """
        Deterministic key from a prefix and parameters.

        Parameter names are sorted, and nested objects are serialized with
        sorted keys, so enumeration order never changes the key.
        """
        parts = [
            f"{name}={json.dumps(params[name], sort_keys=True, ensure_ascii=False, default=str)}"
            for name in sorted(params)
        ]
        return f"{prefix}:{'&'.join(parts)}"

    @staticmethod
    def fingerprint(text: str) -> str:
        """Hash of normalized text for use inside keys."""
        return content_fingerprint(text)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        """Look up ``key`` through the tiers. Returns None on a miss."""
        return await self._lookup(key, record_stats=True)

    async def peek(self, key: str) -> Any:
        """Like :meth:`get` but leaves hit/miss statistics untouched."""
        return await self._lookup(key, record_stats=False)

    async def has(self, key: str) -> bool:
        return await self.peek(key) is not None

    async def _lookup(self, key: str, record_stats: bool) -> Any:
        now = self._clock()

        entry = self._l1.get(key, now)
        if entry is not None:
            if record_stats:
                entry.hit_count += 1
                self._l1.touch(key)
                self._stats.record_hit(CacheTier.L1)
            return entry.value

        for tier in (CacheTier.L2, CacheTier.L3):
            store_tier = self._store_tiers.get(tier)
            if store_tier is None:
                continue
            try:
                entry = await store_tier.get(key, now)
            except Exception as e:
                logger.warning(f"{tier.name} read failed for {key}: {e}")
                continue
            if entry is None:
                continue

            if record_stats:
                self._stats.record_hit(tier)
            logger.debug(f"{tier.name} hit for {key}, promoting")
            await self._promote(entry, now)
            return entry.value

        if record_stats:
            self._stats.misses += 1
        return None

    async def _promote(self, entry: CacheEntry, now: float) -> None:
        for tier in self.tiers:
            if tier == entry.tier:
                break
            ttl = min(self._default_ttl[tier], entry.remaining(now))
            await self._write(tier, CacheEntry(
                key=entry.key,
                value=entry.value,
                timestamp=now,
                ttl=ttl,
                tier=tier,
                hit_count=entry.hit_count if tier == CacheTier.L1 else 0,
                size=entry.size,
            ))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _write(self, tier: CacheTier, entry: CacheEntry) -> None:
        if tier == CacheTier.L1:
            self._stats.evictions += self._l1.put(entry)
            return
        try:
            self._stats.evictions += await self._store_tiers[tier].put(entry)
        except Exception as e:
            logger.warning(f"{tier.name} write failed for {entry.key}: {e}")

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tiers: Optional[Sequence[Union[CacheTier, str]]] = None
    ) -> None:
        """
        Write ``value`` to the given tiers (all enabled tiers by default).

        Args:
            key: Cache key
            value: JSON-serializable value; None deletes the key instead
            ttl: TTL in seconds for every tier; defaults to each tier's own TTL
            tiers: Subset of tiers to write
        """
        if value is None:
            await self.delete(key)
            return

        now = self._clock()
        size = estimate_size(value)
        targets = [CacheTier(t) for t in tiers] if tiers else self.tiers
        for tier in targets:
            if tier != CacheTier.L1 and tier not in self._store_tiers:
                continue
            await self._write(tier, CacheEntry(
                key=key,
                value=value,
                timestamp=now,
                ttl=ttl if ttl is not None else self._default_ttl[tier],
                tier=tier,
                size=size,
            ))
        self._stats.sets += 1

    async def delete(self, key: str) -> bool:
        """Remove ``key`` from every tier."""
        removed = self._l1.delete(key)
        for tier, store_tier in self._store_tiers.items():
            try:
                removed = await store_tier.delete(key) or removed
            except Exception as e:
                logger.warning(f"{tier.name} delete failed for {key}: {e}")
        return removed

    async def clear(self) -> None:
        """Empty every tier."""
        self._l1.clear()
        for tier, store_tier in self._store_tiers.items():
            try:
                await store_tier.clear()
            except Exception as e:
                logger.warning(f"{tier.name} clear failed: {e}")
        logger.info("Cache cleared")

    async def warmup(self, entries: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> int:
        """Preload entries into L1 and L2. Returns the number written."""
        items = entries.items() if isinstance(entries, Mapping) else entries
        count = 0
        for key, value in items:
            await self.set(key, value, tiers=[CacheTier.L1, CacheTier.L2])
            count += 1
        logger.info(f"Cache warmed with {count} entries")
        return count

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def sweep(self) -> Dict[str, int]:
        """Remove expired entries from every tier."""
        now = self._clock()
        removed = {CacheTier.L1.value: self._l1.sweep(now)}
        for tier, store_tier in self._store_tiers.items():
            try:
                removed[tier.value] = await store_tier.sweep(now)
            except Exception as e:
                logger.warning(f"{tier.name} sweep failed: {e}")
                removed[tier.value] = 0
        if any(removed.values()):
            logger.debug(f"Cache sweep removed {removed}")
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            await self.sweep()

    def start_sweeper(self) -> None:
        """Start the periodic sweep task on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        """Stop the periodic sweep task."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats = self._stats.to_dict()
        stats.update({
            "tiers": [tier.value for tier in self.tiers],
            "l1_size": len(self._l1),
            "l1_bytes": self._l1.total_size,
        })
        return stats
