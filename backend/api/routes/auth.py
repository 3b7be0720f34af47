"""Authentication endpoints: login."""

from typing import Optional

from fastapi import APIRouter, Depends

from api.schemas.auth import LoginRequest, LoginResponse
from app.dependencies import get_auth_service
from services.auth_service import AuthService

router = APIRouter(tags=["authentication"])


@router.post("/login", response_model=LoginResponse)
async def login(
    request: Optional[LoginRequest] = None,
    auth_svc: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """
    Authenticate with username and password.

    Returns a bearer token valid for ACCESS_TOKEN_EXPIRE_MINUTES. Unknown
    users and wrong passwords get the same 401 response.
    """
    request = request or LoginRequest()
    result = await auth_svc.login(request.username, request.password)
    return LoginResponse(**result)
