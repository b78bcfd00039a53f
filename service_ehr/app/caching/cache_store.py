"""
In-process multi-namespace TTL cache.

Every namespace is an independent ``cachetools.TLRUCache`` bounded by the
namespace's ``max_entries``. Entries carry their own TTL so callers may
override the namespace default per ``set``; once a namespace is full,
expired entries go first, then the least recently used.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Pattern, Union

from cachetools import TLRUCache

from shared.errors import CacheError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .namespaces import DEFAULT_NAMESPACE_CONFIG, CacheNamespace, NamespaceConfig

NamespaceRef = Union[CacheNamespace, str]


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _entry_expiry(key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class NamespaceStore(TLRUCache):
    """TLRU cache that reports capacity evictions."""

    def __init__(self, namespace: CacheNamespace, config: NamespaceConfig,
                 timer: Callable[[], float], on_evict: Callable[[CacheNamespace, str], None]):
        super().__init__(maxsize=config.max_entries, ttu=_entry_expiry, timer=timer)
        self.namespace = namespace
        self._on_evict = on_evict

    def popitem(self):
        key, entry = super().popitem()
        self._on_evict(self.namespace, key)
        return key, entry


@dataclass
class NamespaceStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class NamespacedCache:
    """TTL-bounded key/value stores partitioned by ``CacheNamespace``."""

    def __init__(self,
                 configs: Optional[Mapping[CacheNamespace, NamespaceConfig]] = None,
                 *,
                 timer: Callable[[], float] = time.monotonic,
                 metrics: Optional[MetricsCollector] = None):
        self.configs: Dict[CacheNamespace, NamespaceConfig] = dict(DEFAULT_NAMESPACE_CONFIG)
        if configs:
            self.configs.update(configs)
        self.metrics = metrics
        self.logger = get_logger("ehr.cache")
        self._timer = timer
        self._stats: Dict[CacheNamespace, NamespaceStats] = {ns: NamespaceStats() for ns in CacheNamespace}
        self._stores: Dict[CacheNamespace, NamespaceStore] = {ns: self._new_store(ns) for ns in CacheNamespace}

    def _new_store(self, namespace: CacheNamespace) -> NamespaceStore:
        return NamespaceStore(namespace, self.configs[namespace], self._timer, self._record_eviction)

    def _resolve(self, namespace: NamespaceRef) -> CacheNamespace:
        try:
            return CacheNamespace(namespace)
        except ValueError as exc:
            raise CacheError(f"Unknown cache namespace: {namespace}", details={"namespace": str(namespace)}) from exc

    def _record_eviction(self, namespace: CacheNamespace, key: str):
        self._stats[namespace].evictions += 1
        if self.metrics:
            self.metrics.record_cache_eviction(namespace.value)
        self.logger.debug("Evicted cache entry", namespace=namespace.value, key=key)

    def _record_access(self, namespace: CacheNamespace, hit: bool):
        stats = self._stats[namespace]
        if hit:
            stats.hits += 1
        else:
            stats.misses += 1
        if self.metrics:
            self.metrics.record_cache_access(namespace.value, hit)

    def _record_invalidation(self, namespace: CacheNamespace, count: int):
        self._stats[namespace].invalidations += count
        if self.metrics:
            self.metrics.record_cache_invalidation(namespace.value, count)

    def get(self, namespace: NamespaceRef, key: str, default: Any = None) -> Any:
        """Return the live value for ``key`` or ``default`` when missing or expired."""
        ns = self._resolve(namespace)
        entry = self._stores[ns].get(key)
        if entry is None:
            self._record_access(ns, hit=False)
            return default

        self._record_access(ns, hit=True)
        return entry.value

    def set(self, namespace: NamespaceRef, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` unconditionally, restarting its TTL clock."""
        ns = self._resolve(namespace)
        effective_ttl = self.configs[ns].ttl_seconds if ttl is None else ttl
        store = self._stores[ns]
        if effective_ttl <= 0:
            store.pop(key, None)
            return False

        store[key] = _Entry(value, float(effective_ttl))
        return True

    def delete(self, namespace: NamespaceRef, key: str) -> int:
        """Remove one key. Returns the number of entries removed."""
        ns = self._resolve(namespace)
        removed = 1 if self._stores[ns].pop(key, None) is not None else 0
        self._record_invalidation(ns, removed)
        return removed

    def delete_pattern(self, namespace: NamespaceRef, pattern: Union[str, Pattern[str]]) -> int:
        """Remove every live key in the namespace matched by ``pattern`` (``re.search``)."""
        ns = self._resolve(namespace)
        regex = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)
        store = self._stores[ns]
        store.expire()

        deleted = 0
        for key in [k for k in list(store) if regex.search(k)]:
            if store.pop(key, None) is not None:
                deleted += 1

        self._record_invalidation(ns, deleted)
        if deleted:
            self.logger.debug("Deleted cache entries by pattern", namespace=ns.value,
                              pattern=regex.pattern, count=deleted)
        return deleted

    def flush(self, namespace: NamespaceRef) -> bool:
        """Drop every entry of one namespace."""
        ns = self._resolve(namespace)
        self._stores[ns] = self._new_store(ns)
        self.logger.info("Flushed cache namespace", namespace=ns.value)
        return True

    def flush_all(self) -> None:
        """Drop every entry of every namespace."""
        for ns in CacheNamespace:
            self._stores[ns] = self._new_store(ns)
        self.logger.info("Flushed all cache namespaces")

    def keys(self, namespace: NamespaceRef) -> List[str]:
        """Live keys of a namespace."""
        ns = self._resolve(namespace)
        store = self._stores[ns]
        store.expire()
        return list(store)

    def get_stats(self) -> Dict[str, Any]:
        """Per-namespace size, capacity and hit statistics."""
        stats = {}
        for ns, store in self._stores.items():
            store.expire()
            counters = self._stats[ns]
            stats[ns.value] = {
                "size": len(store),
                "max_entries": self.configs[ns].max_entries,
                "ttl_seconds": self.configs[ns].ttl_seconds,
                "hits": counters.hits,
                "misses": counters.misses,
                "evictions": counters.evictions,
                "invalidations": counters.invalidations,
                "hit_rate": counters.hit_rate,
            }
        return stats

    def close(self) -> None:
        """Release all cached state at shutdown."""
        self.flush_all()
