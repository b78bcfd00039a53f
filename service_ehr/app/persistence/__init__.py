"""
Record storage for the EHR Service.
"""

from .store import InMemoryRecordStore, RecordStore

__all__ = [
    "InMemoryRecordStore",
    "RecordStore",
]
