"""
Diagnostic document repository.

Only metadata is kept here; file contents live in external storage.
"""

from typing import Any, Dict, List, Optional, Sequence

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from ..caching.cache_manager import EHRCacheManager
from ..caching.invalidation import InvalidationCoordinator
from ..models import DiagnosticState, DocumentFile
from ..persistence.store import RecordStore
from .common import newest_first

PATIENTS = "patients"
DIAGNOSTICS = "diagnostics"
DOCUMENTS = "documents"
DOCUMENT_VERSIONS = "document_versions"


def _file_fields(file: DocumentFile) -> Dict[str, Any]:
    return {
        "filename": file.filename,
        "stored_filename": file.stored_filename or file.filename,
        "file_path": file.file_path,
        "file_type": file.file_type,
        "mime_type": file.mime_type,
        "file_size": file.file_size,
        "description": file.description,
    }


class DocumentRepository:
    """Reads and writes document metadata and versions."""

    def __init__(self, store: RecordStore, cache_manager: EHRCacheManager, invalidation: InvalidationCoordinator):
        self.store = store
        self.cache = cache_manager
        self.invalidation = invalidation
        self.logger = get_logger("ehr.documents")

    async def _load(self, document_id: str) -> Dict[str, Any]:
        document = await self.store.get(DOCUMENTS, document_id)
        if document is None:
            raise NotFoundError("Document not found", details={"id": document_id})
        return document

    async def _document_changed(self, document: Dict[str, Any]) -> None:
        diagnostic = await self.store.get(DIAGNOSTICS, document["diagnostic_id"]) or {}
        self.invalidation.document_changed(document["patient_id"], document["id"], document["diagnostic_id"],
                                           diagnostic.get("medical_history_id"))

    async def upload_documents(self, patient_id: str, diagnostic_id: str, files: Sequence[DocumentFile],
                               uploaded_by: str) -> List[Dict[str, Any]]:
        """Attach files to one of the patient's diagnostics."""
        if await self.store.get(PATIENTS, patient_id) is None:
            raise NotFoundError("Patient not found", details={"patient_id": patient_id})

        diagnostic = await self.store.get(DIAGNOSTICS, diagnostic_id)
        if (diagnostic is None or diagnostic.get("patient_id") != patient_id
                or diagnostic.get("state") == DiagnosticState.DELETED.value):
            raise NotFoundError("Diagnostic does not exist or does not belong to the patient",
                                details={"patient_id": patient_id, "diagnostic_id": diagnostic_id})

        if not files:
            raise ValidationError("At least one file is required")

        documents = []
        for file in files:
            document = await self.store.insert(DOCUMENTS, {
                **_file_fields(file),
                "diagnostic_id": diagnostic_id,
                "patient_id": patient_id,
                "uploaded_by": uploaded_by,
                "version": 1,
            })
            await self.store.insert(DOCUMENT_VERSIONS, {
                **_file_fields(file),
                "document_id": document["id"],
                "version": 1,
                "uploaded_by": uploaded_by,
                "reason": None,
            })
            documents.append(document)

        self.invalidation.document_changed(patient_id, diagnostic_id=diagnostic_id,
                                           medical_history_id=diagnostic.get("medical_history_id"))
        self.logger.info("Documents uploaded", patient_id=patient_id, diagnostic_id=diagnostic_id,
                         count=len(documents))
        return newest_first(documents, "created_at")

    async def get_document_by_id(self, document_id: str) -> Dict[str, Any]:
        cached = self.cache.get_document(document_id)
        if cached is not None:
            return cached

        document = await self._load(document_id)
        self.cache.set_document(document_id, document)
        return document

    async def get_documents_by_patient_id(self, patient_id: str) -> List[Dict[str, Any]]:
        cached = self.cache.get_patient_documents(patient_id)
        if cached is not None:
            return cached

        documents = newest_first(await self.store.find(DOCUMENTS, patient_id=patient_id), "created_at")
        for document in documents:
            diagnostic = await self.store.get(DIAGNOSTICS, document["diagnostic_id"]) or {}
            document["diagnostic"] = {
                "id": document["diagnostic_id"],
                "title": diagnostic.get("title"),
                "consult_date": diagnostic.get("consult_date"),
                "doctor_id": diagnostic.get("doctor_id"),
            }

        self.cache.set_patient_documents(patient_id, documents)
        return documents

    async def list_document_versions(self, document_id: str) -> List[Dict[str, Any]]:
        """All versions of a document, latest first."""
        cached = self.cache.get_document_versions(document_id)
        if cached is not None:
            return cached

        await self._load(document_id)
        versions = sorted(await self.store.find(DOCUMENT_VERSIONS, document_id=document_id),
                          key=lambda v: v["version"], reverse=True)
        self.cache.set_document_versions(document_id, versions)
        return versions

    async def get_document_version(self, document_id: str, version: int) -> Dict[str, Any]:
        cached = self.cache.get_document_version(document_id, version)
        if cached is not None:
            return cached

        rows = await self.store.find(DOCUMENT_VERSIONS, document_id=document_id, version=version)
        if not rows:
            raise NotFoundError("Document version not found", details={"id": document_id, "version": version})

        self.cache.set_document_version(document_id, version, rows[0])
        return rows[0]

    async def create_document_version(self, document_id: str, file: DocumentFile, uploaded_by: str,
                                      reason: Optional[str] = None) -> Dict[str, Any]:
        """Store a new revision and make it the document's current content."""
        document = await self._load(document_id)
        next_version = int(document.get("version", 1)) + 1

        version = await self.store.insert(DOCUMENT_VERSIONS, {
            **_file_fields(file),
            "document_id": document_id,
            "version": next_version,
            "uploaded_by": uploaded_by,
            "reason": reason,
        })
        await self.store.update(DOCUMENTS, document_id, {**_file_fields(file), "version": next_version})

        await self._document_changed(document)
        self.logger.info("Document version created", document_id=document_id, version=next_version)
        return version

    async def delete_document(self, document_id: str) -> bool:
        """Remove a document and its versions. ``False`` when it does not exist."""
        document = await self.store.get(DOCUMENTS, document_id)
        if document is None:
            return False

        for version in await self.store.find(DOCUMENT_VERSIONS, document_id=document_id):
            await self.store.delete(DOCUMENT_VERSIONS, version["id"])
        await self.store.delete(DOCUMENTS, document_id)

        await self._document_changed(document)
        return True
