"""API Key management endpoints.

Create, list, revoke API keys for programmatic access.
"""

from fastapi import APIRouter, Depends, status

from api.schemas.api_keys import ApiKeyCreatedResponse, ApiKeyInfo, CreateApiKeyRequest
from app.dependencies import get_current_principal, get_key_manager, require_roles
from core.rbac import Principal, Role
from services.api_key_service import ApiKeyManager

router = APIRouter()


@router.get("", response_model=list[ApiKeyInfo], summary="List API keys")
async def list_api_keys(
    principal: Principal = Depends(get_current_principal),
    manager: ApiKeyManager = Depends(get_key_manager),
):
    """List the caller's own API keys (active and revoked)."""
    keys = await manager.list_for_user(principal.id)
    return [ApiKeyInfo.model_validate(k) for k in keys]


@router.post("", response_model=ApiKeyCreatedResponse, summary="Create API key")
async def create_api_key(
    request: CreateApiKeyRequest,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    manager: ApiKeyManager = Depends(get_key_manager),
):
    """Create a new API key for the caller. The raw key is shown ONCE."""
    issued = await manager.issue(
        user_id=principal.id,
        name=request.name,
        permissions=request.permissions,
        expires_in_days=request.expires_in,
    )
    return ApiKeyCreatedResponse(
        api_key=issued.api_key,
        message=issued.message,
        id=issued.id,
        name=issued.name,
        prefix=issued.prefix,
        expires_at=issued.expires_at,
    )


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Revoke API key")
async def revoke_api_key(
    key_id: str,
    principal: Principal = Depends(get_current_principal),
    manager: ApiKeyManager = Depends(get_key_manager),
):
    """Revoke an API key. Admins may revoke any key; others only their own."""
    await manager.revoke(key_id, principal)
