"""
Data models for the EHR service.
"""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class UserRole(str, Enum):
    """Roles assigned by the security service."""
    ADMINISTRADOR = "ADMINISTRADOR"
    MEDICO = "MEDICO"
    ENFERMERO = "ENFERMERO"
    PACIENTE = "PACIENTE"


CLINICAL_STAFF = (UserRole.ADMINISTRADOR, UserRole.MEDICO, UserRole.ENFERMERO)
PHYSICIANS = (UserRole.MEDICO, UserRole.ADMINISTRADOR)


class PatientStatus(str, Enum):
    """Account status of a patient in the security service."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class DiagnosticState(str, Enum):
    """Lifecycle state of a diagnostic. DELETED is a soft delete."""
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


class PatientCreateRequest(BaseModel):
    """Register a patient, either for an existing user or a new one."""
    user_id: Optional[str] = Field(None, description="Existing security-service user")
    email: Optional[str] = Field(None, description="Email for a new user")
    fullname: Optional[str] = Field(None, description="Full name for a new user")
    identificacion: Optional[str] = Field(None, description="National identification number")
    current_password: Optional[str] = Field(None, description="Initial password; generated when absent")
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None

    @model_validator(mode="after")
    def require_identity(self):
        if not self.user_id and not (self.email and self.fullname and self.identificacion):
            raise ValueError("user_id or email, fullname and identificacion are required")
        return self


class PatientUpdateRequest(BaseModel):
    """Profile fields forwarded to the security service."""
    email: Optional[str] = None
    fullname: Optional[str] = None
    identificacion: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None


class PatientStateRequest(BaseModel):
    status: PatientStatus


class DiagnosticCreateRequest(BaseModel):
    """New consultation for a patient."""
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    symptoms: str = Field(..., min_length=1)
    diagnosis: str = Field(..., min_length=1)
    treatment: str = Field(..., min_length=1)
    observations: Optional[str] = None
    next_visit_date: Optional[datetime] = None
    consult_date: Optional[datetime] = Field(None, description="Defaults to now")


class DiagnosticUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    observations: Optional[str] = None
    next_visit_date: Optional[datetime] = None


class DiagnosticStateRequest(BaseModel):
    state: DiagnosticState


class DocumentFile(BaseModel):
    """Metadata of an uploaded file. File bytes live in external storage."""
    filename: str = Field(..., min_length=1)
    mime_type: str = "application/octet-stream"
    file_size: int = Field(0, ge=0)
    stored_filename: Optional[str] = None
    file_path: Optional[str] = None
    description: Optional[str] = None

    @property
    def file_type(self) -> str:
        return self.filename.rsplit(".", 1)[-1].lower() if "." in self.filename else ""


class DocumentUploadRequest(BaseModel):
    patient_id: str
    diagnostic_id: str
    files: List[DocumentFile] = Field(..., min_length=1)


class DocumentVersionRequest(BaseModel):
    file: DocumentFile
    reason: Optional[str] = None
