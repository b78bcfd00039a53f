"""
Patient repository.

A patient is a security-service user with the ``PACIENTE`` role plus a local
EHR record keyed by the same id. Reads merge both; identity fields come from
the security service, local fields win on conflict.
"""

import secrets
from typing import Any, Dict, List, Optional

from shared.errors import ConflictError, NotFoundError
from shared.logging import get_logger
from ..adapters.security_client import SecurityClient
from ..caching.invalidation import InvalidationCoordinator
from ..models import DiagnosticState, UserRole
from ..persistence.store import RecordStore
from .common import DateLike, page_slice, total_pages, within

PATIENTS = "patients"
DIAGNOSTICS = "diagnostics"


def _temporary_password() -> str:
    return secrets.token_urlsafe(6) + "Aa1!"


class PatientRepository:
    """Reads and writes patients across the security service and the local store."""

    def __init__(self, store: RecordStore, security_client: SecurityClient, invalidation: InvalidationCoordinator):
        self.store = store
        self.security = security_client
        self.invalidation = invalidation
        self.logger = get_logger("ehr.patients")

    async def _upsert_local(self, patient_id: str) -> Dict[str, Any]:
        local = await self.store.get(PATIENTS, patient_id)
        if local is None:
            return await self.store.insert(PATIENTS, {"id": patient_id})
        return await self.store.update(PATIENTS, patient_id, {})

    async def get_all_patients(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        remote = await self.security.get_all_patients(page, limit)
        users: List[Dict[str, Any]] = remote.get("data") or []
        total = remote.get("total") or 0

        merged = []
        for user in users:
            local = await self.store.get(PATIENTS, user["id"]) if user.get("id") else None
            merged.append({**user, **(local or {})})

        return {"total": total, "page": page, "pages": total_pages(total, limit), "data": merged}

    async def get_patient_by_id(self, patient_id: str) -> Dict[str, Any]:
        user = await self.security.get_user_by_id(patient_id)
        if user.get("role") and user["role"] != UserRole.PACIENTE.value:
            raise NotFoundError("User is not a patient", details={"id": patient_id})

        local = await self.store.get(PATIENTS, patient_id)
        if local is None:
            raise NotFoundError("Patient EHR record not found", details={"id": patient_id})

        return {**user, **local}

    async def search_patients(self, diagnosis: Optional[str] = None, date_from: DateLike = None,
                              date_to: DateLike = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Patients with a diagnostic matching ``diagnosis`` within the consult date range."""
        needle = diagnosis.lower() if diagnosis else None
        patient_ids: List[str] = []
        for row in await self.store.find(DIAGNOSTICS):
            if row.get("state") == DiagnosticState.DELETED.value:
                continue
            if needle and needle not in (row.get("diagnosis") or "").lower():
                continue
            if (date_from or date_to) and not within(row.get("consult_date"), date_from, date_to):
                continue
            if row["patient_id"] not in patient_ids:
                patient_ids.append(row["patient_id"])

        page_ids = page_slice(patient_ids, page, limit)
        users = await self.security.get_users_by_ids(page_ids)

        data = []
        for patient_id in page_ids:
            local = await self.store.get(PATIENTS, patient_id)
            if local is None:
                continue
            data.append({**users.get(patient_id, {}), **local})

        return {"total": len(patient_ids), "page": page, "pages": total_pages(len(patient_ids), limit), "data": data}

    async def create_patient(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Register a patient for an existing user, or create the user first."""
        user_id = data.get("user_id")
        if user_id:
            user = await self.security.get_user_by_id(user_id)
        else:
            user = await self.security.create_patient({
                "email": data.get("email"),
                "fullname": data.get("fullname"),
                "identificacion": data.get("identificacion"),
                "current_password": data.get("current_password") or _temporary_password(),
                "phone": data.get("phone"),
                "date_of_birth": data.get("date_of_birth"),
            })

        patient_id = user["id"]
        if await self.store.get(PATIENTS, patient_id) is not None:
            raise ConflictError("Patient already exists in the EHR", details={"id": patient_id})

        local = await self.store.insert(PATIENTS, {"id": patient_id})
        self.invalidation.invalidate_patient_relations(patient_id)
        self.logger.info("Patient created", patient_id=patient_id)
        return {**user, **local}

    async def update_patient(self, patient_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.security.update_patient(patient_id, data)
        local = await self._upsert_local(patient_id)
        return {
            "message": response.get("message"),
            "patient": {**(response.get("patient") or {}), **local},
        }

    async def update_patient_state(self, patient_id: str, status: str) -> Dict[str, Any]:
        response = await self.security.update_patient_state(patient_id, status)
        return {
            "message": response.get("message"),
            "patient": {**(response.get("patient") or {}), "id": patient_id},
        }
