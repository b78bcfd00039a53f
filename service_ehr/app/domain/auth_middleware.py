"""
Authentication middleware for the EHR service.
"""

from typing import Any, Callable, Dict, Iterable

import jwt
from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError, NotFoundError
from shared.logging import get_logger, set_user_context
from ..adapters.security_client import SecurityClient
from ..models import UserRole
from .request_context import set_token, set_user


class AuthMiddleware:
    """JWT authentication and role checks against the security service."""

    def __init__(self, jwt_secret: str, security_client: SecurityClient, jwt_algorithm: str = "HS256"):
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.security = security_client
        self.logger = get_logger("ehr.auth_middleware")

    async def authenticate_request(self, request: Request) -> Dict[str, Any]:
        """Verify the bearer token and publish the caller to the request context."""
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            raise AuthenticationError("Bearer token required")

        token = auth_header[7:]
        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.PyJWTError as e:
            self.logger.warning("JWT authentication failed", error=str(e))
            raise AuthenticationError("Invalid or expired token") from e

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthenticationError("Token carries no user id")

        user = {**claims, "id": str(user_id)}
        set_token(token)
        set_user(user)
        set_user_context(user["id"], claims.get("role"))
        request.state.user = user
        return user

    def require_roles(self, roles: Iterable[UserRole] = ()) -> Callable:
        """FastAPI dependency admitting callers whose security-service role is in ``roles``.

        The security-service record of the caller is returned and stored on
        ``request.state.security_user``.
        """
        allowed = {UserRole(role).value for role in roles}

        async def dependency(request: Request) -> Dict[str, Any]:
            user = await self.authenticate_request(request)
            try:
                security_user = await self.security.get_user_by_id(user["id"])
            except NotFoundError as e:
                raise AuthenticationError("Unknown user", details={"user_id": user["id"]}) from e

            request.state.security_user = security_user
            if allowed and security_user.get("role") not in allowed:
                self.logger.warning("Role check failed", user_id=user["id"], role=security_user.get("role"))
                raise AuthorizationError("Insufficient permissions", details={"required": sorted(allowed)})

            return security_user

        return dependency
