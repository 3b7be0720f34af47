"""Authentication schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """User login request. Missing fields are reported as 400 by the service."""

    username: Optional[str] = Field(default=None, description="Account username")
    password: Optional[str] = Field(default=None, description="Account password")


class UserInfo(BaseModel):
    """Public user information."""

    id: str = Field(description="User ID")
    username: str = Field(description="Username")
    email: str = Field(description="User email address")
    role: str = Field(description="Role: admin or viewer")


class LoginResponse(BaseModel):
    """Session token and the user it was issued for."""

    token: str = Field(description="Signed bearer token")
    user: UserInfo
