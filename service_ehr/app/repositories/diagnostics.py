"""
Diagnostic repository.

Every write fires ``diagnostic_changed`` once the store accepted it, so
cached diagnostic pages, histories and the patient timeline are rebuilt on
the next read.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.errors import NotFoundError
from shared.logging import get_logger
from ..caching.cache_manager import EHRCacheManager
from ..caching.invalidation import InvalidationCoordinator
from ..models import DiagnosticState
from ..persistence.store import RecordStore
from .common import DateLike, isoformat, newest_first, paginate, within
from .medical_histories import MedicalHistoryRepository

DIAGNOSTICS = "diagnostics"
PATIENTS = "patients"


def _state_value(state: Any) -> Optional[str]:
    if state is None or state == "":
        return None
    return DiagnosticState(state).value


class DiagnosticRepository:
    """Reads and writes diagnostics."""

    def __init__(self, store: RecordStore, cache_manager: EHRCacheManager,
                 invalidation: InvalidationCoordinator, medical_histories: MedicalHistoryRepository):
        self.store = store
        self.cache = cache_manager
        self.invalidation = invalidation
        self.medical_histories = medical_histories
        self.logger = get_logger("ehr.diagnostics")

    async def _load(self, diagnostic_id: str) -> Dict[str, Any]:
        diagnostic = await self.store.get(DIAGNOSTICS, diagnostic_id)
        if diagnostic is None or diagnostic.get("state") == DiagnosticState.DELETED.value:
            raise NotFoundError("Diagnostic not found", details={"id": diagnostic_id})
        return diagnostic

    async def get_diagnostic_by_id(self, diagnostic_id: str) -> Dict[str, Any]:
        cached = self.cache.get_diagnostic(diagnostic_id)
        if cached is not None:
            return cached

        diagnostic = await self._load(diagnostic_id)
        self.cache.set_diagnostic(diagnostic_id, diagnostic)
        return diagnostic

    async def list_diagnostics_by_patient(self, patient_id: str, page: int = 1, limit: int = 20,
                                          state: Any = None, date_from: DateLike = None,
                                          date_to: DateLike = None) -> Dict[str, Any]:
        """One page of the patient's diagnostics, newest consultation first.

        Soft-deleted diagnostics only show up when ``state`` asks for them.
        """
        state = _state_value(state)
        cached = self.cache.get_patient_diagnostics_page(patient_id, page, limit, state, date_from, date_to)
        if cached is not None:
            return cached

        medical_history = await self.medical_histories.find_by_patient(patient_id)
        if medical_history is None:
            raise NotFoundError("Medical history not found", details={"patient_id": patient_id})

        rows = await self.store.find(DIAGNOSTICS, medical_history_id=medical_history["id"])
        if state is not None:
            rows = [row for row in rows if row.get("state") == state]
        else:
            rows = [row for row in rows if row.get("state") != DiagnosticState.DELETED.value]
        if date_from or date_to:
            rows = [row for row in rows if within(row.get("consult_date"), date_from, date_to)]

        payload = paginate(newest_first(rows, "consult_date"), page, limit)
        self.cache.set_patient_diagnostics_page(patient_id, page, limit, payload, state, date_from, date_to)
        return payload

    async def create_diagnostic(self, patient_id: str, data: Dict[str, Any], doctor_id: str) -> Dict[str, Any]:
        """Record a consultation, opening the patient's medical history on first use."""
        if await self.store.get(PATIENTS, patient_id) is None:
            raise NotFoundError("Patient not found", details={"patient_id": patient_id})

        medical_history = await self.medical_histories.create_medical_history(patient_id, doctor_id)
        record = {
            **data,
            "medical_history_id": medical_history["id"],
            "patient_id": patient_id,
            "doctor_id": doctor_id,
            "state": DiagnosticState.ACTIVE.value,
            "consult_date": isoformat(data.get("consult_date")) or datetime.now(timezone.utc).isoformat(),
            "next_visit_date": isoformat(data.get("next_visit_date")),
        }
        diagnostic = await self.store.insert(DIAGNOSTICS, record)

        self.invalidation.diagnostic_changed(patient_id, diagnostic["id"], medical_history["id"])
        self.logger.info("Diagnostic created", patient_id=patient_id, diagnostic_id=diagnostic["id"])
        return diagnostic

    async def update_diagnostic(self, diagnostic_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        current = await self._load(diagnostic_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        if "next_visit_date" in changes:
            changes["next_visit_date"] = isoformat(changes["next_visit_date"])

        diagnostic = await self.store.update(DIAGNOSTICS, diagnostic_id, changes)
        self.invalidation.diagnostic_changed(current["patient_id"], diagnostic_id, current["medical_history_id"])
        return diagnostic

    async def update_diagnostic_state(self, diagnostic_id: str, state: Any) -> Dict[str, Any]:
        """Archive, reactivate or soft-delete a diagnostic."""
        current = await self._load(diagnostic_id)
        diagnostic = await self.store.update(DIAGNOSTICS, diagnostic_id, {"state": _state_value(state)})

        self.invalidation.diagnostic_changed(current["patient_id"], diagnostic_id, current["medical_history_id"])
        self.logger.info("Diagnostic state changed", diagnostic_id=diagnostic_id, state=diagnostic["state"])
        return diagnostic
