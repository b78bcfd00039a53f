"""
Record store used by the repositories.

``RecordStore`` is the async contract the repositories depend on; the
in-memory implementation backs local runs and tests.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from shared.errors import ConflictError
from shared.logging import get_logger


class RecordStore(Protocol):
    """Async document store addressed by collection name and record id."""

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]: ...

    async def update(self, collection: str, record_id: str,
                     changes: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def delete(self, collection: str, record_id: str) -> bool: ...

    async def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]: ...


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryRecordStore:
    """Dictionary-backed ``RecordStore``. Records are copied in and out."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.logger = get_logger("ehr.store")

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        records = self._collection(collection)
        record = copy.deepcopy(record)
        record_id = record.get("id") or str(uuid.uuid4())
        if record_id in records:
            raise ConflictError(f"Record already exists in {collection}", details={"id": record_id})

        now = utcnow_iso()
        record["id"] = record_id
        record.setdefault("created_at", now)
        record["updated_at"] = now
        records[record_id] = record
        return copy.deepcopy(record)

    async def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._collection(collection).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, collection: str, record_id: str,
                     changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self._collection(collection).get(record_id)
        if record is None:
            return None

        record.update(copy.deepcopy({k: v for k, v in changes.items() if k != "id"}))
        record["updated_at"] = utcnow_iso()
        return copy.deepcopy(record)

    async def delete(self, collection: str, record_id: str) -> bool:
        return self._collection(collection).pop(record_id, None) is not None

    async def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter, in insertion order."""
        return [
            copy.deepcopy(record)
            for record in self._collection(collection).values()
            if all(record.get(field) == value for field, value in filters.items())
        ]
