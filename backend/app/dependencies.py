"""FastAPI dependency injection functions."""

import logging
from typing import Optional

from fastapi import Depends, Query, Request
from fastapi.security import APIKeyHeader, APIKeyQuery, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.rbac import Principal, Role, authorize, check_permission
from db import database
from services.access_gate import AccessGate
from services.api_key_service import ApiKeyManager
from services.auth_service import AuthService
from services.speedtest_service import SpeedtestScheduler, SpeedtestRunner

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)
api_key_query = APIKeyQuery(name="apiKey", auto_error=False)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with database.AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise


def get_access_gate(request: Request) -> AccessGate:
    return request.app.state.access_gate


def get_key_manager(request: Request) -> ApiKeyManager:
    return request.app.state.key_manager


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_speedtest_runner(request: Request) -> SpeedtestRunner:
    return request.app.state.speedtest_runner


def get_scheduler(request: Request) -> SpeedtestScheduler:
    return request.app.state.scheduler


async def get_current_principal(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    header_key: Optional[str] = Depends(api_key_header),
    query_key: Optional[str] = Depends(api_key_query),
    token: Optional[str] = Query(None, include_in_schema=False),
    gate: AccessGate = Depends(get_access_gate),
) -> Principal:
    """
    Authenticate the request with a bearer token or an API key.

    Headers take precedence; ``?token=`` and ``?apiKey=`` are accepted as a
    fallback for clients that cannot set headers.

    Raises:
        UnauthenticatedError: If no credential was supplied
        InvalidCredentialError: If the credential failed verification
    """
    bearer_token = bearer.credentials if bearer else token
    principal = await gate.authenticate(
        bearer_token=bearer_token,
        api_key=header_key or query_key,
    )
    request.state.principal = principal
    return principal


def require_roles(*roles: Role):
    """Dependency factory: the principal's role must be one of ``roles``.

    Usage:
        @router.post("/keys", dependencies=[Depends(require_roles(Role.ADMIN))])
    """

    async def _check(principal: Principal = Depends(get_current_principal)) -> Principal:
        return authorize(principal, *roles)

    return _check


def require_permission(permission: str):
    """Dependency factory: the principal must hold ``permission`` (admins always do)."""

    async def _check(principal: Principal = Depends(get_current_principal)) -> Principal:
        return check_permission(principal, permission)

    return _check
