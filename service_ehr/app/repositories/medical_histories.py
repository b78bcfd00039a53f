"""
Medical history repository, including the patient timeline.
"""

from typing import Any, Dict, List, Optional

from shared.errors import EHRServiceException, NotFoundError
from shared.logging import get_logger
from ..adapters.security_client import SecurityClient
from ..caching.cache_manager import EHRCacheManager
from ..caching.invalidation import InvalidationCoordinator
from ..models import DiagnosticState
from ..persistence.store import RecordStore, utcnow_iso
from .common import newest_first, page_slice, paginate, total_pages

MEDICAL_HISTORIES = "medical_histories"
DIAGNOSTICS = "diagnostics"
DOCUMENTS = "documents"


class MedicalHistoryRepository:
    """Reads and writes medical history records."""

    def __init__(self, store: RecordStore, cache_manager: EHRCacheManager,
                 invalidation: InvalidationCoordinator, security_client: SecurityClient):
        self.store = store
        self.cache = cache_manager
        self.invalidation = invalidation
        self.security = security_client
        self.logger = get_logger("ehr.medical_histories")

    async def _doctor_summary(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        try:
            doctor = await self.security.get_user_by_id(user_id)
        except EHRServiceException as e:
            self.logger.warning("Could not resolve doctor", user_id=user_id, error=e.message)
            return None
        return {"id": doctor.get("id", user_id), "fullname": doctor.get("fullname"), "email": doctor.get("email")}

    async def _active_diagnostics(self, medical_history_id: str) -> List[Dict[str, Any]]:
        rows = await self.store.find(DIAGNOSTICS, medical_history_id=medical_history_id)
        rows = [row for row in rows if row.get("state") != DiagnosticState.DELETED.value]
        return newest_first(rows, "consult_date")

    async def _with_documents(self, diagnostics: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for diagnostic in diagnostics:
            diagnostic["documents"] = newest_first(
                await self.store.find(DOCUMENTS, diagnostic_id=diagnostic["id"]), "created_at"
            )
        return diagnostics

    async def find_by_patient(self, patient_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.find(MEDICAL_HISTORIES, patient_id=patient_id)
        return rows[0] if rows else None

    async def get_medical_history_by_id(self, medical_history_id: str) -> Dict[str, Any]:
        cached = self.cache.get_medical_history(medical_history_id)
        if cached is not None:
            return cached

        medical_history = await self.store.get(MEDICAL_HISTORIES, medical_history_id)
        if medical_history is None:
            raise NotFoundError("Medical history not found", details={"id": medical_history_id})

        diagnostics = await self._active_diagnostics(medical_history_id)
        result = {
            **medical_history,
            "diagnostics": await self._with_documents(diagnostics),
            "doctor": await self._doctor_summary(medical_history.get("created_by")),
        }
        self.cache.set_medical_history(medical_history_id, result)
        return result

    async def get_patient_medical_history(self, patient_id: str, page: int = 1,
                                          limit: int = 10) -> Optional[Dict[str, Any]]:
        """The patient's history with one page of diagnostics, or ``None``."""
        cached = self.cache.get_patient_medical_history(patient_id, page, limit)
        if cached is not None:
            return cached

        medical_history = await self.find_by_patient(patient_id)
        if medical_history is None:
            return None

        diagnostics = await self._active_diagnostics(medical_history["id"])
        result = {
            **medical_history,
            "diagnostics": await self._with_documents(page_slice(diagnostics, page, limit)),
            "doctor": await self._doctor_summary(medical_history.get("created_by")),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(diagnostics),
                "total_pages": total_pages(len(diagnostics), limit),
            },
        }
        self.cache.set_patient_medical_history(patient_id, page, limit, result)
        return result

    async def get_all_medical_histories(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        cached = self.cache.get_all_medical_histories_page(page, limit)
        if cached is not None:
            return cached

        histories = newest_first(await self.store.find(MEDICAL_HISTORIES), "created_at")
        result = paginate(histories, page, limit)
        for history in result["data"]:
            history["diagnostic_count"] = len(await self._active_diagnostics(history["id"]))

        self.cache.set_all_medical_histories_page(page, limit, result)
        return result

    async def create_medical_history(self, patient_id: str, created_by: str) -> Dict[str, Any]:
        """Create the patient's history, or return the existing one."""
        existing = await self.find_by_patient(patient_id)
        if existing is not None:
            return existing

        medical_history = await self.store.insert(MEDICAL_HISTORIES, {
            "patient_id": patient_id,
            "created_by": created_by,
        })
        self.invalidation.medical_history_changed(patient_id, medical_history["id"])
        self.logger.info("Medical history created", patient_id=patient_id, medical_history_id=medical_history["id"])
        return medical_history

    async def update_medical_history(self, medical_history_id: str) -> Dict[str, Any]:
        """Touch the history so listings reflect a change in its contents."""
        medical_history = await self.store.update(MEDICAL_HISTORIES, medical_history_id,
                                                  {"updated_at": utcnow_iso()})
        if medical_history is None:
            raise NotFoundError("Medical history not found", details={"id": medical_history_id})

        self.invalidation.medical_history_changed(medical_history["patient_id"], medical_history_id)
        return medical_history

    async def get_patient_timeline(self, patient_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Diagnostics and documents of the patient as events, newest first."""
        cached = self.cache.get_patient_timeline(patient_id, page, limit)
        if cached is not None:
            return cached

        events: List[Dict[str, Any]] = []
        diagnostics = [
            row for row in await self.store.find(DIAGNOSTICS, patient_id=patient_id)
            if row.get("state") != DiagnosticState.DELETED.value
        ]
        for diagnostic in diagnostics:
            events.append({
                "type": "diagnostic",
                "id": diagnostic["id"],
                "diagnostic_id": diagnostic["id"],
                "title": diagnostic.get("title"),
                "timestamp": diagnostic.get("consult_date") or diagnostic.get("created_at"),
                "meta": {"state": diagnostic.get("state"), "doctor_id": diagnostic.get("doctor_id")},
            })
            for document in await self.store.find(DOCUMENTS, diagnostic_id=diagnostic["id"]):
                events.append({
                    "type": "document",
                    "id": document["id"],
                    "diagnostic_id": diagnostic["id"],
                    "filename": document.get("filename"),
                    "timestamp": document.get("created_at"),
                })

        events = newest_first(events, "timestamp")
        result = {
            "data": page_slice(events, page, limit),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(events),
                "total_pages": total_pages(len(events), limit),
            },
        }
        self.cache.set_patient_timeline(patient_id, page, limit, result)
        return result
