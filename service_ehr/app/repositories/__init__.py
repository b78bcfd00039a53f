"""
Repositories for clinical records.

Repositories read through the cache and, after every committed write,
call the invalidation coordinator.
"""

from .diagnostics import DiagnosticRepository
from .documents import DocumentRepository
from .medical_histories import MedicalHistoryRepository
from .patients import PatientRepository

__all__ = [
    "DiagnosticRepository",
    "DocumentRepository",
    "MedicalHistoryRepository",
    "PatientRepository",
]
