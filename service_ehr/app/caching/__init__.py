"""
EHR caching package.

One TTL/LRU store per namespace, typed helpers that own the key layout,
and the coordinator that evicts stale views after writes. The cache is
best-effort; the origin is always authoritative.
"""

from .cache_manager import BulkLookup, EHRCacheManager
from .cache_store import NamespacedCache
from .invalidation import InvalidationCoordinator
from .namespaces import CacheNamespace, NamespaceConfig

__all__ = [
    "BulkLookup",
    "CacheNamespace",
    "EHRCacheManager",
    "InvalidationCoordinator",
    "NamespaceConfig",
    "NamespacedCache",
]
