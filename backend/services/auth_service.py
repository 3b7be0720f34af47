"""Authentication service: login and administrator bootstrap."""

import asyncio
from typing import Optional

import structlog

from core.exceptions import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidCredentialsError,
    StoreUnavailableError,
)
from core.rbac import Role
from core.security import TokenIssuer, get_token_issuer, hash_password, verify_password
from services.credential_store import CredentialStore

logger = structlog.get_logger(__name__)


class AuthService:
    """Handles username/password login and token issuance."""

    def __init__(self, store: CredentialStore, token_issuer: Optional[TokenIssuer] = None):
        self.store = store
        self.token_issuer = token_issuer or get_token_issuer()

    async def login(self, username: Optional[str], password: Optional[str]) -> dict:
        """Authenticate a user and return a session token.

        Args:
            username: Account username
            password: Plain text password

        Returns:
            Dict with token and public user info

        Raises:
            BadRequestError: If either field is missing
            InvalidCredentialsError: If the user is unknown, inactive, or the
                password does not match
            AuthenticationError: If the credential store is unavailable
        """
        if not username or not password:
            raise BadRequestError("Username and password required")

        try:
            user = await self.store.find_user_by_username(username)
        except StoreUnavailableError as e:
            raise AuthenticationError() from e

        if user is None:
            logger.info("Login failed", username=username, reason="unknown_user")
            raise InvalidCredentialsError()

        password_ok = await asyncio.to_thread(verify_password, password, user.password_hash)
        if not password_ok:
            logger.info("Login failed", username=username, reason="bad_password")
            raise InvalidCredentialsError()

        try:
            await self.store.touch_last_login(user.id)
        except StoreUnavailableError as e:
            logger.warning("Could not update last login", user_id=user.id, error=str(e))

        logger.info("User logged in", username=user.username, role=user.role)

        return {
            "token": self.token_issuer.issue(user),
            "user": {
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "role": user.role,
            },
        }

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        role: Role = Role.VIEWER,
    ):
        """Create a user account with a bcrypt-hashed password.

        Raises:
            ConflictError: If the username or email is taken
        """
        password_hash = await asyncio.to_thread(hash_password, password)
        user = await self.store.insert_user(
            username=username,
            email=email,
            password_hash=password_hash,
            role=role.value,
        )
        logger.info("User created", username=username, role=role.value)
        return user

    async def bootstrap_admin(self, username: str, email: str, password: str) -> bool:
        """Create the default administrator if no active admin exists yet.

        Returns:
            True if an administrator was created
        """
        if await self.store.admin_exists():
            return False
        try:
            await self.create_user(username, email, password, role=Role.ADMIN)
        except ConflictError:
            logger.warning("Default admin not created; username or email in use", username=username)
            return False
        logger.warning("Default admin user created. Change the password immediately.", username=username)
        return True
