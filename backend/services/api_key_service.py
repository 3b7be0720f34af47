"""API key service: issuance, verification, revocation.

Keys are hashed with salted bcrypt, so a stored hash cannot be looked up by
recomputing it. Verification therefore loads every active, unexpired key and
checks the supplied key against each hash until one matches. This is linear
in the number of active keys; a deterministic HMAC index would remove the
scan but changes the security model.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import structlog

from core.api_keys import api_key_matches, generate_api_key, hash_api_key, mask_api_key
from core.exceptions import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    InvalidApiKeyError,
    NotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
)
from core.rbac import AuthMethod, Principal, Role
from db.base import utc_now
from db.models.api_key import APIKey
from services.credential_store import ApiKeyRecord, CredentialStore

logger = structlog.get_logger(__name__)

API_KEY_WARNING = "API key generated successfully. Store it securely as it cannot be retrieved again."
BCRYPT_MAX_BYTES = 72
PREFIX_DISPLAY_LEN = 7


@dataclass(frozen=True)
class IssuedApiKey:
    """A freshly issued key. ``api_key`` is the only copy of the plaintext."""
    id: str
    api_key: str
    name: str
    prefix: str
    permissions: dict
    expires_at: Optional[datetime]
    message: str = API_KEY_WARNING


class ApiKeyManager:
    """Generates, stores and verifies long-lived API keys."""

    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], datetime] = utc_now,
        key_prefix: Optional[str] = None,
    ):
        self.store = store
        self.clock = clock
        self.key_prefix = key_prefix

    def generate(self) -> str:
        """Generate a new plaintext key."""
        key = generate_api_key(self.key_prefix)
        if len(key.encode()) > BCRYPT_MAX_BYTES:
            # bcrypt ignores everything past 72 bytes; two keys could share a hash
            raise ValueError("API_KEY_PREFIX is too long for bcrypt-hashed keys")
        return key

    async def issue(
        self,
        user_id: str,
        name: Optional[str] = None,
        permissions: Optional[dict] = None,
        expires_in_days: Optional[int] = None,
    ) -> IssuedApiKey:
        """Create and store a new key for a user.

        Raises:
            NotFoundError: If the user does not exist
            BadRequestError: If expires_in_days is not positive
        """
        if expires_in_days is not None and expires_in_days <= 0:
            raise BadRequestError("expiresIn must be a positive number of days")

        user = await self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")

        plaintext = self.generate()
        key_hash = await asyncio.to_thread(hash_api_key, plaintext)

        expires_at = None
        if expires_in_days:
            expires_at = self.clock() + timedelta(days=expires_in_days)

        permissions = {str(k): bool(v) for k, v in (permissions or {}).items()}
        record = await self.store.insert_api_key(
            user_id=user.id,
            key_hash=key_hash,
            prefix=plaintext[:PREFIX_DISPLAY_LEN],
            name=name or "API Key",
            permissions=permissions,
            expires_at=expires_at,
        )

        logger.info(
            "API key issued",
            key_id=record.id,
            user=user.username,
            key=mask_api_key(plaintext),
            expires_at=expires_at.isoformat() if expires_at else None,
        )

        return IssuedApiKey(
            id=record.id,
            api_key=plaintext,
            name=record.name,
            prefix=record.prefix,
            permissions=permissions,
            expires_at=expires_at,
        )

    async def verify(self, plaintext: Optional[str]) -> Principal:
        """Resolve a plaintext key to the principal of its owner.

        Raises:
            UnauthenticatedError: If no key was supplied
            InvalidApiKeyError: If no active, unexpired key matches
            AuthenticationError: If the credential store is unavailable
        """
        if not plaintext:
            raise UnauthenticatedError("No API key provided")
        if len(plaintext.encode()) > BCRYPT_MAX_BYTES:
            raise InvalidApiKeyError()

        now = self.clock()
        try:
            candidates = await self.store.find_active_api_keys(now=now)
        except StoreUnavailableError as e:
            raise AuthenticationError() from e

        match = await asyncio.to_thread(self._find_match, plaintext, candidates)
        if match is None:
            raise InvalidApiKeyError()

        try:
            role = Role(match.role)
        except ValueError:
            logger.error("API key owner has unknown role", key_id=match.id, role=match.role)
            raise InvalidApiKeyError()

        try:
            await self.store.touch_last_used(match.id, now=now)
        except StoreUnavailableError as e:
            logger.warning("Could not update API key last_used", key_id=match.id, error=str(e))

        return Principal(
            id=match.user_id,
            username=match.username,
            role=role,
            email=match.email,
            auth_method=AuthMethod.API_KEY,
            permissions=match.permissions,
            api_key_id=match.id,
        )

    @staticmethod
    def _find_match(plaintext: str, candidates: Sequence[ApiKeyRecord]) -> Optional[ApiKeyRecord]:
        for candidate in candidates:
            if api_key_matches(plaintext, candidate.key_hash):
                return candidate
        return None

    async def revoke(self, key_id: str, actor: Principal) -> None:
        """Deactivate a key. Admins may revoke any key, others only their own.

        Raises:
            NotFoundError: If the key does not exist (or is not visible to actor)
        """
        api_key = await self.store.get_api_key(key_id)
        if api_key is None:
            raise NotFoundError("API key not found")
        if not actor.is_admin and api_key.user_id != actor.id:
            raise ForbiddenError("Insufficient permissions")

        await self.store.deactivate_api_key(key_id)
        logger.info("API key revoked", key_id=key_id, by=actor.username)

    async def list_for_user(self, user_id: str) -> list[APIKey]:
        return await self.store.list_api_keys(user_id)
