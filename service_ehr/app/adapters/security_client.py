"""
Cache-aware client for the security service.

The security service owns users, roles and the patient directory. Reads go
through the identity and role namespaces first; writes go to the service
first and then invalidate every cached view of the affected user.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import httpx

from shared.errors import IdentityServiceError, NotFoundError
from shared.logging import get_logger
from .http_client import ResilientHTTPClient
from ..caching.cache_manager import EHRCacheManager
from ..caching.invalidation import InvalidationCoordinator

PATIENT_ROLE = "PACIENTE"


class SecurityClient:
    """Client for communicating with the security service."""

    def __init__(self, base_url: str, http_client: ResilientHTTPClient,
                 cache_manager: EHRCacheManager, invalidation: InvalidationCoordinator):
        self.base_url = base_url.rstrip("/")
        self.http = http_client
        self.cache = cache_manager
        self.invalidation = invalidation
        self.logger = get_logger("ehr.security_client")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _translate(self, exc: httpx.HTTPError, operation: str, **details) -> Exception:
        """Map an httpx failure to the service error taxonomy."""
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status == 404:
                return NotFoundError("User not found", details=details)

            self.logger.warning("Security service rejected request", operation=operation, status_code=status, **details)
            return IdentityServiceError(
                f"{operation} failed with status {status}",
                upstream_status=status,
                details=details,
            )

        self.logger.error("Security service unreachable", operation=operation, error=str(exc), **details)
        return IdentityServiceError(f"{operation} failed: security service unavailable", details=details)

    async def get_user_by_id(self, user_id: str) -> Dict[str, Any]:
        """Fetch a user, serving from the identity cache when possible."""
        cached = self.cache.get_user(user_id)
        if cached is not None:
            return cached

        try:
            response = await self.http.get(self._url(f"/users/{user_id}"))
        except httpx.HTTPError as e:
            raise self._translate(e, "get_user_by_id", user_id=user_id) from e

        user = response.json()
        if not user:
            raise NotFoundError("User not found", details={"user_id": user_id})

        self.cache.set_user(user_id, user)
        if user.get("role"):
            self.cache.set_user_role(user_id, user["role"])
        return user

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Resolve many users, fetching only the ids missing from the cache.

        Ids the security service cannot resolve are left out of the result.
        """
        unique_ids = list(dict.fromkeys(user_ids))
        lookup = self.cache.get_multiple_users(unique_ids)
        users = {user["id"]: user for user in lookup.found if user.get("id")}

        if lookup.missing:
            results = await asyncio.gather(
                *(self.get_user_by_id(user_id) for user_id in lookup.missing),
                return_exceptions=True,
            )
            for user_id, result in zip(lookup.missing, results):
                if isinstance(result, BaseException):
                    self.logger.warning("Could not resolve user", user_id=user_id, error=str(result))
                    continue
                users[user_id] = result

        return users

    async def get_all_patients(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """One page of the patient directory: ``{"data": [...], "total": n}``."""
        cached = self.cache.get_patient_page(page, limit)
        if cached is not None:
            return cached

        try:
            response = await self.http.get(
                self._url("/users"),
                params={"role": PATIENT_ROLE, "page": page, "limit": limit},
            )
        except httpx.HTTPError as e:
            raise self._translate(e, "get_all_patients", page=page, limit=limit) from e

        result = response.json() or {}
        self.cache.set_patient_page(page, limit, result)
        self.cache.set_multiple_users(result.get("data") or [])
        return result

    async def create_patient(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a user with the patient role."""
        payload = {**data, "role": PATIENT_ROLE}
        try:
            response = await self.http.post(self._url("/users"), json=payload)
        except httpx.HTTPError as e:
            raise self._translate(e, "create_patient", email=data.get("email")) from e

        user = response.json()
        if user.get("id"):
            self.invalidation.invalidate_user_data(user["id"])
        self.logger.info("Patient created in security service", user_id=user.get("id"))
        return user

    async def update_patient(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http.put(self._url(f"/users/{user_id}"), json=data)
        except httpx.HTTPError as e:
            raise self._translate(e, "update_patient", user_id=user_id) from e

        self.invalidation.invalidate_user_data(user_id)
        return response.json() if response.content else {}

    async def update_patient_state(self, user_id: str, status: str) -> Dict[str, Any]:
        try:
            response = await self.http.patch(self._url(f"/users/{user_id}/status"), json={"status": status})
        except httpx.HTTPError as e:
            raise self._translate(e, "update_patient_state", user_id=user_id) from e

        self.invalidation.invalidate_user_data(user_id)
        return response.json() if response.content else {}

    async def validate_user_role(self, user_id: str, role: str) -> bool:
        """Whether ``user_id`` holds ``role``. A cached role answers without a call."""
        cached_role: Optional[str] = self.cache.get_user_role(user_id)
        if cached_role is not None:
            return cached_role == role

        try:
            response = await self.http.get(self._url(f"/users/{user_id}/roles"))
        except httpx.HTTPError as e:
            raise self._translate(e, "validate_user_role", user_id=user_id) from e

        roles: List[str] = response.json() or []
        if len(roles) == 1:
            self.cache.set_user_role(user_id, roles[0])
        return role in roles
