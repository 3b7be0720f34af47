"""Access gate: resolves a request's credential to a Principal.

Two credential kinds are accepted, checked in this order:

1. Bearer token: a signed, self-contained session token. Verified with the
   server secret only; no database access.
2. API key: an opaque long-lived secret. Verified against the credential
   store (see ``ApiKeyManager``).

A request that presents a bearer token is judged on the token alone; an
invalid token is not rescued by an API key sent alongside it.
"""

from typing import Optional

import structlog

from core.exceptions import (
    InvalidCredentialError,
    InvalidTokenError,
    StoreUnavailableError,
    UnauthenticatedError,
)
from core.metrics import MonitorMetrics
from core.rbac import AuthMethod, Principal, Role
from core.security import TokenIssuer
from services.api_key_service import ApiKeyManager

logger = structlog.get_logger(__name__)

# metrics label for requests that carry neither credential
NO_CREDENTIAL = "none"


class AccessGate:
    """Dual-mode authentication: bearer token first, then API key."""

    def __init__(
        self,
        token_issuer: TokenIssuer,
        key_manager: ApiKeyManager,
        metrics: Optional[MonitorMetrics] = None,
    ):
        self.token_issuer = token_issuer
        self.key_manager = key_manager
        self.metrics = metrics

    async def authenticate(
        self,
        bearer_token: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> Principal:
        """Resolve credentials to a principal.

        Raises:
            UnauthenticatedError: If neither credential was supplied
            InvalidCredentialError: If the supplied credential failed
            AuthenticationError: If the credential store is unavailable
        """
        if bearer_token:
            method = AuthMethod.TOKEN
        elif api_key:
            method = AuthMethod.API_KEY
        else:
            self._record(NO_CREDENTIAL, False)
            raise UnauthenticatedError("Authentication required")

        try:
            if method is AuthMethod.TOKEN:
                principal = self._from_token(bearer_token)
            else:
                principal = await self.key_manager.verify(api_key)
        except (InvalidCredentialError, StoreUnavailableError):
            self._record(method.value, False)
            raise

        self._record(method.value, True)
        return principal

    def _from_token(self, token: str) -> Principal:
        claims = self.token_issuer.verify(token)
        try:
            role = Role(claims.role)
        except ValueError:
            logger.warning("Token carries unknown role", user=claims.username, role=claims.role)
            raise InvalidTokenError()
        return Principal(
            id=claims.sub,
            username=claims.username,
            role=role,
            email=claims.email,
            auth_method=AuthMethod.TOKEN,
        )

    def _record(self, method: str, success: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_auth(method, success)
