"""API key schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateApiKeyRequest(BaseModel):
    """API key creation request. ``expiresIn`` is a number of days."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, max_length=255, description="Human label")
    permissions: Optional[dict[str, bool]] = Field(
        default=None, description="Permission name -> enabled"
    )
    expires_in: Optional[int] = Field(
        default=None, alias="expiresIn", gt=0, description="Lifetime in days"
    )


class ApiKeyCreatedResponse(BaseModel):
    """Issued key. The plaintext is returned exactly once."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(serialization_alias="apiKey")
    message: str
    id: str
    name: str
    prefix: str
    expires_at: Optional[datetime] = Field(default=None, serialization_alias="expiresAt")


class ApiKeyInfo(BaseModel):
    """Stored key metadata; never includes the hash."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    prefix: str
    permissions: dict[str, bool]
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
