"""
Patient EHR service.
"""

import time
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import Depends, Query, Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthorizationError, NotFoundError
from shared.retry import RetryConfig
from .adapters.http_client import ResilientHTTPClient
from .adapters.security_client import SecurityClient
from .caching.cache_manager import EHRCacheManager
from .caching.cache_store import NamespacedCache
from .caching.invalidation import InvalidationCoordinator
from .caching.namespaces import CacheNamespace, build_namespace_configs
from .domain.auth_middleware import AuthMiddleware
from .domain.request_context import RequestContextMiddleware
from .models import (
    CLINICAL_STAFF,
    PHYSICIANS,
    DiagnosticCreateRequest,
    DiagnosticState,
    DiagnosticStateRequest,
    DiagnosticUpdateRequest,
    DocumentUploadRequest,
    DocumentVersionRequest,
    PatientCreateRequest,
    PatientStateRequest,
    PatientUpdateRequest,
    UserRole,
)
from .persistence.store import InMemoryRecordStore, RecordStore
from .repositories.diagnostics import DiagnosticRepository
from .repositories.documents import DocumentRepository
from .repositories.medical_histories import MedicalHistoryRepository
from .repositories.patients import PatientRepository


class EHRService(BaseService):
    """Patient EHR service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 *,
                 store: Optional[RecordStore] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timer: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        super().__init__("ehr", 3000, config=config or get_config("ehr", 3000))

        self.cache = NamespacedCache(
            build_namespace_configs(self.config.cache_ttl_overrides, self.config.cache_max_entries_overrides),
            timer=timer,
            metrics=self.metrics,
        )
        self.cache_manager = EHRCacheManager(self.cache)
        self.invalidation = InvalidationCoordinator(self.cache_manager)

        http_options: Dict[str, Any] = {}
        if sleep is not None:
            http_options["sleep"] = sleep
        self.http_client = ResilientHTTPClient(
            timeout=self.config.http_timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=self.config.http_max_attempts,
                base_delay=self.config.http_retry_base_delay,
                backoff_strategy="linear",
            ),
            cache=self.cache,
            cached_get_ttl=self.config.cached_get_ttl_seconds,
            metrics=self.metrics,
            transport=transport,
            **http_options,
        )
        self.security_client = SecurityClient(
            self.config.security_service_url, self.http_client, self.cache_manager, self.invalidation
        )

        self.store = store or InMemoryRecordStore()
        self.medical_histories = MedicalHistoryRepository(
            self.store, self.cache_manager, self.invalidation, self.security_client
        )
        self.diagnostics = DiagnosticRepository(
            self.store, self.cache_manager, self.invalidation, self.medical_histories
        )
        self.documents = DocumentRepository(self.store, self.cache_manager, self.invalidation)
        self.patients = PatientRepository(self.store, self.security_client, self.invalidation)

        self.auth_middleware = AuthMiddleware(
            self.config.jwt_secret, self.security_client, jwt_algorithm=self.config.jwt_algorithm
        )

        # Outermost, so every layer below shares the request's context record
        self.app.add_middleware(RequestContextMiddleware)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.http_client.close()
            self.cache.close()

        self._setup_patient_routes()
        self._setup_diagnostic_routes()
        self._setup_medical_history_routes()
        self._setup_document_routes()
        self._setup_cache_routes()

        self.app.state.ehr_service = self

    def _setup_patient_routes(self):
        staff = self.auth_middleware.require_roles(CLINICAL_STAFF)
        staff_or_patient = self.auth_middleware.require_roles(CLINICAL_STAFF + (UserRole.PACIENTE,))
        admin = self.auth_middleware.require_roles([UserRole.ADMINISTRADOR])

        @self.app.get("/api/patients")
        async def list_patients(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                                caller: Dict[str, Any] = Depends(staff)):
            return await self.patients.get_all_patients(page, limit)

        @self.app.get("/api/patients/search/advanced")
        async def search_patients(diagnosis: Optional[str] = Query(None),
                                  date_from: Optional[date] = Query(None),
                                  date_to: Optional[date] = Query(None),
                                  page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                                  caller: Dict[str, Any] = Depends(staff)):
            return await self.patients.search_patients(diagnosis, date_from, date_to, page, limit)

        @self.app.get("/api/patients/{patient_id}")
        async def get_patient(patient_id: str, caller: Dict[str, Any] = Depends(staff_or_patient)):
            if caller.get("role") == UserRole.PACIENTE.value and caller.get("id") != patient_id:
                raise AuthorizationError("Patients may only read their own record")
            return await self.patients.get_patient_by_id(patient_id)

        @self.app.post("/api/patients", status_code=201)
        async def create_patient(body: PatientCreateRequest, caller: Dict[str, Any] = Depends(admin)):
            patient = await self.patients.create_patient(body.model_dump(mode="json"))
            return {"message": "Patient created", "data": patient}

        @self.app.put("/api/patients/{patient_id}")
        async def update_patient(patient_id: str, body: PatientUpdateRequest,
                                 caller: Dict[str, Any] = Depends(admin)):
            return await self.patients.update_patient(patient_id, body.model_dump(mode="json", exclude_none=True))

        @self.app.patch("/api/patients/state/{patient_id}")
        async def update_patient_state(patient_id: str, body: PatientStateRequest,
                                       caller: Dict[str, Any] = Depends(admin)):
            return await self.patients.update_patient_state(patient_id, body.status.value)

    def _setup_diagnostic_routes(self):
        physicians = self.auth_middleware.require_roles(PHYSICIANS)

        @self.app.post("/api/diagnostics/patient/{patient_id}", status_code=201)
        async def create_diagnostic(patient_id: str, body: DiagnosticCreateRequest,
                                    caller: Dict[str, Any] = Depends(physicians)):
            diagnostic = await self.diagnostics.create_diagnostic(patient_id, body.model_dump(), caller["id"])
            return {"message": "Diagnostic created", "data": diagnostic}

        @self.app.get("/api/diagnostics/patient/{patient_id}")
        async def list_patient_diagnostics(patient_id: str,
                                           page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                                           state: Optional[DiagnosticState] = Query(None),
                                           date_from: Optional[date] = Query(None),
                                           date_to: Optional[date] = Query(None),
                                           caller: Dict[str, Any] = Depends(physicians)):
            return await self.diagnostics.list_diagnostics_by_patient(
                patient_id, page=page, limit=limit, state=state, date_from=date_from, date_to=date_to
            )

        @self.app.get("/api/diagnostics/{diagnostic_id}")
        async def get_diagnostic(diagnostic_id: str, caller: Dict[str, Any] = Depends(physicians)):
            return await self.diagnostics.get_diagnostic_by_id(diagnostic_id)

        @self.app.put("/api/diagnostics/{diagnostic_id}")
        async def update_diagnostic(diagnostic_id: str, body: DiagnosticUpdateRequest,
                                    caller: Dict[str, Any] = Depends(physicians)):
            return await self.diagnostics.update_diagnostic(diagnostic_id, body.model_dump(exclude_none=True))

        @self.app.patch("/api/diagnostics/{diagnostic_id}/state")
        async def update_diagnostic_state(diagnostic_id: str, body: DiagnosticStateRequest,
                                          caller: Dict[str, Any] = Depends(physicians)):
            return await self.diagnostics.update_diagnostic_state(diagnostic_id, body.state)

    def _setup_medical_history_routes(self):
        physicians = self.auth_middleware.require_roles(PHYSICIANS)
        patient = self.auth_middleware.require_roles([UserRole.PACIENTE])

        async def patient_history(patient_id: str, page: int, limit: int) -> Dict[str, Any]:
            history = await self.medical_histories.get_patient_medical_history(patient_id, page, limit)
            if history is None:
                raise NotFoundError("Medical history not found", details={"patient_id": patient_id})
            return history

        @self.app.get("/api/medical-histories")
        async def list_medical_histories(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                                         caller: Dict[str, Any] = Depends(physicians)):
            return await self.medical_histories.get_all_medical_histories(page, limit)

        @self.app.get("/api/medical-histories/me")
        async def my_medical_history(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                                     caller: Dict[str, Any] = Depends(patient)):
            return await patient_history(caller["id"], page, limit)

        @self.app.get("/api/medical-histories/me/timeline")
        async def my_timeline(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                              caller: Dict[str, Any] = Depends(patient)):
            return await self.medical_histories.get_patient_timeline(caller["id"], page, limit)

        @self.app.get("/api/medical-histories/patient/{patient_id}")
        async def get_patient_medical_history(patient_id: str,
                                              page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                                              caller: Dict[str, Any] = Depends(physicians)):
            return await patient_history(patient_id, page, limit)

        @self.app.get("/api/medical-histories/patient/{patient_id}/timeline")
        async def get_patient_timeline(patient_id: str,
                                       page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                                       caller: Dict[str, Any] = Depends(physicians)):
            return await self.medical_histories.get_patient_timeline(patient_id, page, limit)

        @self.app.post("/api/medical-histories/patient/{patient_id}", status_code=201)
        async def create_medical_history(patient_id: str, caller: Dict[str, Any] = Depends(physicians)):
            if await self.store.get("patients", patient_id) is None:
                raise NotFoundError("Patient not found", details={"patient_id": patient_id})
            return await self.medical_histories.create_medical_history(patient_id, caller["id"])

        @self.app.patch("/api/medical-histories/{medical_history_id}")
        async def update_medical_history(medical_history_id: str, caller: Dict[str, Any] = Depends(physicians)):
            return await self.medical_histories.update_medical_history(medical_history_id)

        @self.app.get("/api/medical-histories/{medical_history_id}")
        async def get_medical_history(medical_history_id: str, caller: Dict[str, Any] = Depends(physicians)):
            return await self.medical_histories.get_medical_history_by_id(medical_history_id)

    def _setup_document_routes(self):
        staff = self.auth_middleware.require_roles(CLINICAL_STAFF)

        @self.app.post("/api/documents/upload", status_code=201)
        async def upload_documents(body: DocumentUploadRequest, caller: Dict[str, Any] = Depends(staff)):
            documents = await self.documents.upload_documents(
                body.patient_id, body.diagnostic_id, body.files, caller["id"]
            )
            return {"message": "Documents uploaded", "data": documents}

        @self.app.get("/api/documents/patient/{patient_id}")
        async def get_patient_documents(patient_id: str, caller: Dict[str, Any] = Depends(staff)):
            return {"data": await self.documents.get_documents_by_patient_id(patient_id)}

        @self.app.get("/api/documents/{document_id}")
        async def get_document(document_id: str, caller: Dict[str, Any] = Depends(staff)):
            return await self.documents.get_document_by_id(document_id)

        @self.app.get("/api/documents/{document_id}/versions")
        async def list_document_versions(document_id: str, caller: Dict[str, Any] = Depends(staff)):
            return {"data": await self.documents.list_document_versions(document_id)}

        @self.app.get("/api/documents/{document_id}/versions/{version}")
        async def get_document_version(document_id: str, version: int, caller: Dict[str, Any] = Depends(staff)):
            return await self.documents.get_document_version(document_id, version)

        @self.app.post("/api/documents/{document_id}/versions", status_code=201)
        async def create_document_version(document_id: str, body: DocumentVersionRequest,
                                          caller: Dict[str, Any] = Depends(staff)):
            version = await self.documents.create_document_version(
                document_id, body.file, caller["id"], body.reason
            )
            return {"message": "Document version created", "data": version}

        @self.app.delete("/api/documents/{document_id}")
        async def delete_document(document_id: str, caller: Dict[str, Any] = Depends(staff)):
            if not await self.documents.delete_document(document_id):
                raise NotFoundError("Document not found", details={"id": document_id})
            return {"message": "Document deleted"}

    def _setup_cache_routes(self):
        admin = self.auth_middleware.require_roles([UserRole.ADMINISTRADOR])

        @self.app.get("/api/cache/stats")
        async def cache_stats(caller: Dict[str, Any] = Depends(admin)):
            return {
                "namespaces": self.cache.get_stats(),
                "pending_requests": self.http_client.pending_count,
            }

        @self.app.delete("/api/cache")
        async def flush_cache(namespace: Optional[CacheNamespace] = Query(None),
                              caller: Dict[str, Any] = Depends(admin)):
            if namespace is None:
                self.cache.flush_all()
                return {"flushed": [ns.value for ns in CacheNamespace]}
            self.cache.flush(namespace)
            return {"flushed": [namespace.value]}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies."""
        return {
            "cache": "ok",
            "security_service": self.config.security_service_url,
        }


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = EHRService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = EHRService()
    service.run()
