"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from elms.services.auth_service import (
    AuthService,
    Capability,
    CapabilityDeniedError,
    InvalidTokenError,
    Role,
)
from elms.services.timetable_service import TimetableService


bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Auth service is not initialized",
        )
    return service


def get_timetable_service(request: Request) -> TimetableService:
    service = getattr(request.app.state, "timetable_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Timetable service is not initialized",
        )
    return service


def require_capability(capability: Capability) -> Callable[..., Awaitable[Role]]:
    """Build a dependency that resolves the caller's role and checks `capability`."""

    async def dependency(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
        auth_service: AuthService = Depends(get_auth_service),
    ) -> Role:
        if not auth_service.auth_enabled:
            return Role.ADMIN
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authorization header with Bearer token is required",
            )
        try:
            role = auth_service.validate_bearer_token(credentials.credentials)
        except InvalidTokenError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=str(exc),
            ) from exc
        try:
            auth_service.require(role, capability)
        except CapabilityDeniedError as exc:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=str(exc),
            ) from exc
        return role

    return dependency
