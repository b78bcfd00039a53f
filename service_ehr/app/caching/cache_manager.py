"""
Typed cache helpers for EHR entities.

``EHRCacheManager`` owns the key layout of every namespace and wraps the raw
``NamespacedCache`` so that a cache failure is logged and treated as a miss
instead of failing the request.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from shared.logging import get_logger
from .cache_store import NamespacedCache
from .namespaces import CacheNamespace


def _token(value: Any) -> str:
    """Render a filter value for use inside a key; missing filters become ``null``."""
    if value is None or value == "":
        return "null"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


# Key builders

def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def role_key(user_id: str) -> str:
    return f"role:{user_id}"


def patient_page_key(page: int, limit: int) -> str:
    return f"patients:page:{page}:limit:{limit}"


def diagnostic_key(diagnostic_id: str) -> str:
    return f"diagnostic:{diagnostic_id}"


def patient_diagnostics_page_key(patient_id: str, page: int, limit: int, state: Any = None,
                                 date_from: Any = None, date_to: Any = None) -> str:
    return (f"patient:{patient_id}:diags:page:{page}:limit:{limit}"
            f":state:{_token(state)}:from:{_token(date_from)}:to:{_token(date_to)}")


def medical_history_key(medical_history_id: str) -> str:
    return f"mh:{medical_history_id}"


def patient_medical_history_key(patient_id: str, page: int, limit: int) -> str:
    return f"mh:patient:{patient_id}:page:{page}:limit:{limit}"


def all_medical_histories_key(page: int, limit: int) -> str:
    return f"mh:all:page:{page}:limit:{limit}"


def timeline_key(patient_id: str, page: int, limit: int) -> str:
    return f"timeline:{patient_id}:page:{page}:limit:{limit}"


def document_key(document_id: str) -> str:
    return f"doc:{document_id}"


def document_versions_key(document_id: str) -> str:
    return f"doc:{document_id}:versions"


def document_version_key(document_id: str, version: int) -> str:
    return f"doc:{document_id}:ver:{version}"


def patient_documents_key(patient_id: str) -> str:
    return f"patient:{patient_id}:documents"


def patient_relation_key(patient_id: str, relation: str) -> str:
    return f"patient:{patient_id}:{relation}"


@dataclass
class BulkLookup:
    """Result of a multi-user cache lookup."""
    found: List[Dict[str, Any]] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


class EHRCacheManager:
    """Entity-level view over the namespaced cache."""

    def __init__(self, cache: NamespacedCache):
        self.cache = cache
        self.logger = get_logger("ehr.cache_manager")

    def _safe_get(self, namespace: CacheNamespace, key: str) -> Any:
        try:
            return self.cache.get(namespace, key)
        except Exception as e:
            self.logger.warning("Cache read failed", namespace=namespace.value, key=key, error=str(e))
            return None

    def _safe_set(self, namespace: CacheNamespace, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        try:
            return self.cache.set(namespace, key, value, ttl)
        except Exception as e:
            self.logger.warning("Cache write failed", namespace=namespace.value, key=key, error=str(e))
            return False

    # Identity

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.IDENTITY, user_key(user_id))

    def set_user(self, user_id: str, user: Dict[str, Any], ttl: Optional[float] = None) -> bool:
        return self._safe_set(CacheNamespace.IDENTITY, user_key(user_id), user, ttl)

    def get_user_role(self, user_id: str) -> Optional[str]:
        return self._safe_get(CacheNamespace.ROLE, role_key(user_id))

    def set_user_role(self, user_id: str, role: str) -> bool:
        return self._safe_set(CacheNamespace.ROLE, role_key(user_id), role)

    def get_patient_page(self, page: int, limit: int) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.PATIENT_PAGE, patient_page_key(page, limit))

    def set_patient_page(self, page: int, limit: int, data: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.PATIENT_PAGE, patient_page_key(page, limit), data)

    def set_multiple_users(self, users: Iterable[Dict[str, Any]]) -> int:
        """Store each user (and its role) under its id. Users without an id are skipped."""
        count = 0
        for user in users:
            user_id = user.get("id")
            if not user_id:
                continue
            self.set_user(user_id, user)
            if user.get("role"):
                self.set_user_role(user_id, user["role"])
            count += 1
        return count

    def get_multiple_users(self, user_ids: Iterable[str]) -> BulkLookup:
        """Partition ``user_ids`` into cached users and ids still to fetch."""
        result = BulkLookup()
        for user_id in user_ids:
            user = self.get_user(user_id)
            if user is not None:
                result.found.append(user)
            else:
                result.missing.append(user_id)
        return result

    # Diagnostics

    def get_diagnostic(self, diagnostic_id: str) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.DIAGNOSTIC, diagnostic_key(diagnostic_id))

    def set_diagnostic(self, diagnostic_id: str, diagnostic: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.DIAGNOSTIC, diagnostic_key(diagnostic_id), diagnostic)

    def get_patient_diagnostics_page(self, patient_id: str, page: int, limit: int, state: Any = None,
                                     date_from: Any = None, date_to: Any = None) -> Optional[Dict[str, Any]]:
        key = patient_diagnostics_page_key(patient_id, page, limit, state, date_from, date_to)
        return self._safe_get(CacheNamespace.DIAGNOSTIC, key)

    def set_patient_diagnostics_page(self, patient_id: str, page: int, limit: int, data: Dict[str, Any],
                                     state: Any = None, date_from: Any = None, date_to: Any = None) -> bool:
        key = patient_diagnostics_page_key(patient_id, page, limit, state, date_from, date_to)
        return self._safe_set(CacheNamespace.DIAGNOSTIC, key, data)

    # Medical histories and timelines

    def get_medical_history(self, medical_history_id: str) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.MEDICAL_HISTORY, medical_history_key(medical_history_id))

    def set_medical_history(self, medical_history_id: str, data: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.MEDICAL_HISTORY, medical_history_key(medical_history_id), data)

    def get_patient_medical_history(self, patient_id: str, page: int, limit: int) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.MEDICAL_HISTORY, patient_medical_history_key(patient_id, page, limit))

    def set_patient_medical_history(self, patient_id: str, page: int, limit: int, data: Dict[str, Any]) -> bool:
        key = patient_medical_history_key(patient_id, page, limit)
        return self._safe_set(CacheNamespace.MEDICAL_HISTORY, key, data)

    def get_all_medical_histories_page(self, page: int, limit: int) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.MEDICAL_HISTORY, all_medical_histories_key(page, limit))

    def set_all_medical_histories_page(self, page: int, limit: int, data: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.MEDICAL_HISTORY, all_medical_histories_key(page, limit), data)

    def get_patient_timeline(self, patient_id: str, page: int, limit: int) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.TIMELINE, timeline_key(patient_id, page, limit))

    def set_patient_timeline(self, patient_id: str, page: int, limit: int, data: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.TIMELINE, timeline_key(patient_id, page, limit), data)

    # Documents

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.DOCUMENT, document_key(document_id))

    def set_document(self, document_id: str, document: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.DOCUMENT, document_key(document_id), document)

    def get_document_versions(self, document_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._safe_get(CacheNamespace.DOCUMENT, document_versions_key(document_id))

    def set_document_versions(self, document_id: str, versions: List[Dict[str, Any]]) -> bool:
        return self._safe_set(CacheNamespace.DOCUMENT, document_versions_key(document_id), versions)

    def get_document_version(self, document_id: str, version: int) -> Optional[Dict[str, Any]]:
        return self._safe_get(CacheNamespace.DOCUMENT, document_version_key(document_id, version))

    def set_document_version(self, document_id: str, version: int, data: Dict[str, Any]) -> bool:
        return self._safe_set(CacheNamespace.DOCUMENT, document_version_key(document_id, version), data)

    def get_patient_documents(self, patient_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._safe_get(CacheNamespace.DOCUMENT, patient_documents_key(patient_id))

    def set_patient_documents(self, patient_id: str, documents: List[Dict[str, Any]]) -> bool:
        return self._safe_set(CacheNamespace.DOCUMENT, patient_documents_key(patient_id), documents)

    # Relations

    def get_patient_relation(self, patient_id: str, relation: str) -> Any:
        return self._safe_get(CacheNamespace.RELATION, patient_relation_key(patient_id, relation))

    def set_patient_relation(self, patient_id: str, relation: str, data: Any) -> bool:
        return self._safe_set(CacheNamespace.RELATION, patient_relation_key(patient_id, relation), data)
