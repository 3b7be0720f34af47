"""Role-Based Access Control (RBAC) enforcement.

A request's identity is an explicit ``Principal`` built once at
authentication time. Authorization is a pure function of it:

    authorize(principal, Role.ADMIN)            # coarse, by role
    check_permission(principal, "results:read") # fine, by key permission map

FastAPI wiring lives in ``app.dependencies`` (``require_roles`` /
``require_permission``).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from core.exceptions import ForbiddenError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Coarse authorization roles."""
    ADMIN = "admin"
    VIEWER = "viewer"


class AuthMethod(str, Enum):
    TOKEN = "token"
    API_KEY = "api_key"


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request."""
    id: str
    username: str
    role: Role
    email: str
    auth_method: AuthMethod
    permissions: Mapping[str, bool] = field(default_factory=dict)
    api_key_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "permissions", MappingProxyType(dict(self.permissions or {})))

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def authorize(principal: Principal, *allowed_roles: Role) -> Principal:
    """Pass the principal through if its role is allowed.

    Raises:
        ForbiddenError: If the role is not in ``allowed_roles``
    """
    if principal.role not in allowed_roles:
        logger.warning(
            "RBAC denied: user=%s role=%s allowed=%s",
            principal.username,
            principal.role.value,
            [r.value for r in allowed_roles],
        )
        raise ForbiddenError("Insufficient permissions")
    return principal


def _check_permission(permissions: Mapping[str, bool], required: str) -> bool:
    """Check whether a permission map has ``required`` enabled."""
    return bool(permissions.get(required, False))


def check_permission(principal: Principal, permission: str) -> Principal:
    """Fine-grained permission gate.

    Admins have all permissions; everyone else needs the permission enabled
    in their map.

    Raises:
        ForbiddenError: If the permission is missing or disabled
    """
    if principal.is_admin:
        return principal

    if not _check_permission(principal.permissions, permission):
        logger.warning(
            "RBAC denied: user=%s permission=%s",
            principal.username,
            permission,
        )
        raise ForbiddenError(f"Missing permission: {permission}")

    return principal
