"""
Cache namespaces and their TTL / capacity configuration.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Mapping, Optional


class CacheNamespace(str, Enum):
    """Cache regions, one per kind of cached entity."""
    IDENTITY = "users"
    PATIENT_PAGE = "patients"
    ROLE = "roles"
    DIAGNOSTIC = "diagnostics"
    RELATION = "relations"
    DOCUMENT = "documents"
    MEDICAL_HISTORY = "medical_histories"
    TIMELINE = "timelines"


@dataclass(frozen=True)
class NamespaceConfig:
    """TTL and capacity for one namespace."""
    ttl_seconds: float
    max_entries: int


DEFAULT_NAMESPACE_CONFIG: Dict[CacheNamespace, NamespaceConfig] = {
    CacheNamespace.IDENTITY: NamespaceConfig(ttl_seconds=300, max_entries=1000),
    CacheNamespace.PATIENT_PAGE: NamespaceConfig(ttl_seconds=120, max_entries=100),
    CacheNamespace.ROLE: NamespaceConfig(ttl_seconds=600, max_entries=500),
    CacheNamespace.DIAGNOSTIC: NamespaceConfig(ttl_seconds=180, max_entries=200),
    CacheNamespace.RELATION: NamespaceConfig(ttl_seconds=240, max_entries=300),
    CacheNamespace.DOCUMENT: NamespaceConfig(ttl_seconds=600, max_entries=1000),
    CacheNamespace.MEDICAL_HISTORY: NamespaceConfig(ttl_seconds=300, max_entries=500),
    CacheNamespace.TIMELINE: NamespaceConfig(ttl_seconds=180, max_entries=500),
}


def build_namespace_configs(
    ttl_overrides: Optional[Mapping[str, float]] = None,
    max_entries_overrides: Optional[Mapping[str, int]] = None,
) -> Dict[CacheNamespace, NamespaceConfig]:
    """Apply configured overrides (keyed by namespace value) to the defaults."""
    configs = dict(DEFAULT_NAMESPACE_CONFIG)

    for name, ttl in (ttl_overrides or {}).items():
        namespace = CacheNamespace(name)
        configs[namespace] = replace(configs[namespace], ttl_seconds=float(ttl))

    for name, max_entries in (max_entries_overrides or {}).items():
        namespace = CacheNamespace(name)
        configs[namespace] = replace(configs[namespace], max_entries=int(max_entries))

    return configs
