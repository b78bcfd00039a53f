"""
Invalidation coordinator.

Repositories call into this module after a write has been committed. Each
mutation fans out to the entity's own entry, every paginated or filtered
view of the owning patient's related collections, and the patient's
timeline. Invalidation never raises: a failure is logged and the write
stands, stale entries age out at TTL.
"""

import re
from typing import Callable, Optional

from shared.logging import get_logger
from .cache_manager import (
    EHRCacheManager,
    diagnostic_key,
    document_key,
    medical_history_key,
    patient_documents_key,
    role_key,
    user_key,
)
from .namespaces import CacheNamespace


class InvalidationCoordinator:
    """Evicts cached views made stale by local and remote writes."""

    def __init__(self, cache_manager: EHRCacheManager):
        self.cache = cache_manager.cache
        self.logger = get_logger("ehr.invalidation")

    def _soft(self, operation: str, fn: Callable[[], int], **fields) -> int:
        try:
            count = fn()
        except Exception as e:
            self.logger.warning("Cache invalidation failed", operation=operation, error=str(e), **fields)
            return 0

        self.logger.debug("Cache invalidated", operation=operation, count=count, **fields)
        return count

    # Primitives

    def invalidate_all_patient_diagnostics(self, patient_id: str) -> int:
        """Evict every cached diagnostics page of the patient, whatever its filters."""
        pattern = f"^patient:{re.escape(patient_id)}:diags:"
        return self._soft("patient_diagnostics",
                          lambda: self.cache.delete_pattern(CacheNamespace.DIAGNOSTIC, pattern),
                          patient_id=patient_id)

    def invalidate_diagnostic(self, diagnostic_id: str) -> int:
        return self._soft("diagnostic",
                          lambda: self.cache.delete(CacheNamespace.DIAGNOSTIC, diagnostic_key(diagnostic_id)),
                          diagnostic_id=diagnostic_id)

    def invalidate_patient_medical_history(self, patient_id: str) -> int:
        pattern = f"^mh:patient:{re.escape(patient_id)}:page:"
        return self._soft("patient_medical_history",
                          lambda: self.cache.delete_pattern(CacheNamespace.MEDICAL_HISTORY, pattern),
                          patient_id=patient_id)

    def invalidate_all_medical_histories_pages(self) -> int:
        return self._soft("medical_history_pages",
                          lambda: self.cache.delete_pattern(CacheNamespace.MEDICAL_HISTORY, "^mh:all:page:"))

    def invalidate_medical_history(self, medical_history_id: str) -> int:
        key = medical_history_key(medical_history_id)
        return self._soft("medical_history",
                          lambda: self.cache.delete(CacheNamespace.MEDICAL_HISTORY, key),
                          medical_history_id=medical_history_id)

    def invalidate_patient_timeline(self, patient_id: str) -> int:
        pattern = f"^timeline:{re.escape(patient_id)}:page:"
        return self._soft("patient_timeline",
                          lambda: self.cache.delete_pattern(CacheNamespace.TIMELINE, pattern),
                          patient_id=patient_id)

    def invalidate_document(self, document_id: str) -> int:
        """Evict the document, its version list and every cached version."""
        escaped = re.escape(document_id)

        def evict() -> int:
            deleted = self.cache.delete(CacheNamespace.DOCUMENT, document_key(document_id))
            deleted += self.cache.delete_pattern(CacheNamespace.DOCUMENT, f"^doc:{escaped}:(versions$|ver:)")
            return deleted

        return self._soft("document", evict, document_id=document_id)

    def invalidate_patient_documents(self, patient_id: str) -> int:
        return self._soft("patient_documents",
                          lambda: self.cache.delete(CacheNamespace.DOCUMENT, patient_documents_key(patient_id)),
                          patient_id=patient_id)

    def invalidate_patient_relations(self, patient_id: str) -> int:
        pattern = f"^patient:{re.escape(patient_id)}:"
        return self._soft("patient_relations",
                          lambda: self.cache.delete_pattern(CacheNamespace.RELATION, pattern),
                          patient_id=patient_id)

    def invalidate_user_data(self, user_id: str) -> int:
        """Evict a user's identity and role entries and every cached patient page."""
        def evict() -> int:
            deleted = self.cache.delete(CacheNamespace.IDENTITY, user_key(user_id))
            deleted += self.cache.delete(CacheNamespace.ROLE, role_key(user_id))
            deleted += self.cache.delete_pattern(CacheNamespace.PATIENT_PAGE, "^patients:page:")
            return deleted

        return self._soft("user_data", evict, user_id=user_id)

    # Fan-out events

    def diagnostic_changed(self, patient_id: str, diagnostic_id: Optional[str] = None,
                           medical_history_id: Optional[str] = None) -> int:
        """A diagnostic of ``patient_id`` was created, updated or changed state."""
        count = 0
        if diagnostic_id:
            count += self.invalidate_diagnostic(diagnostic_id)
        if medical_history_id:
            count += self.invalidate_medical_history(medical_history_id)
        count += self.invalidate_all_patient_diagnostics(patient_id)
        count += self.invalidate_patient_medical_history(patient_id)
        count += self.invalidate_all_medical_histories_pages()
        # patient documents embed a summary of their diagnostic
        count += self.invalidate_patient_documents(patient_id)
        count += self.invalidate_patient_relations(patient_id)
        count += self.invalidate_patient_timeline(patient_id)
        return count

    def document_changed(self, patient_id: str, document_id: Optional[str] = None,
                         diagnostic_id: Optional[str] = None,
                         medical_history_id: Optional[str] = None) -> int:
        """A document of ``patient_id`` was uploaded, versioned or deleted.

        ``medical_history_id`` is the history owning the document's diagnostic;
        its cached entry embeds the document list.
        """
        count = 0
        if document_id:
            count += self.invalidate_document(document_id)
        if diagnostic_id:
            count += self.invalidate_diagnostic(diagnostic_id)
        if medical_history_id:
            count += self.invalidate_medical_history(medical_history_id)
        count += self.invalidate_patient_documents(patient_id)
        count += self.invalidate_all_patient_diagnostics(patient_id)
        count += self.invalidate_patient_medical_history(patient_id)
        count += self.invalidate_patient_relations(patient_id)
        count += self.invalidate_patient_timeline(patient_id)
        return count

    def medical_history_changed(self, patient_id: str, medical_history_id: Optional[str] = None) -> int:
        """The medical history of ``patient_id`` was created or touched."""
        count = 0
        if medical_history_id:
            count += self.invalidate_medical_history(medical_history_id)
        count += self.invalidate_patient_medical_history(patient_id)
        count += self.invalidate_all_medical_histories_pages()
        count += self.invalidate_all_patient_diagnostics(patient_id)
        count += self.invalidate_patient_timeline(patient_id)
        return count
