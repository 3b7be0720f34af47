"""
Security utilities for the speed monitor.

Includes:
- Password hashing with bcrypt
- Bearer token (JWT) issuing and verification
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Optional

import jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from app.config import get_settings
from core.exceptions import InvalidTokenError, TokenExpiredError

settings = get_settings()

# Password (and API key) hashing context
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)

# JWT configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES


class SessionClaims(BaseModel):
    """Identity claims carried inside a bearer token. Never persisted."""
    sub: str  # user_id
    username: str
    role: str
    email: str
    iat: datetime
    exp: datetime


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password

    Returns:
        Hashed password
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a hash.

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password to verify against

    Returns:
        True if password matches, False otherwise
    """
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unrecognized or corrupt hash
        return False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Signs and verifies bearer tokens with a server-held secret.

    Tokens are self-contained: verification needs only the secret and the
    clock, never the database.
    """

    def __init__(
        self,
        secret: str,
        lifetime: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        algorithm: str = ALGORITHM,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.secret = secret
        self.lifetime = lifetime
        self.algorithm = algorithm
        self.clock = clock

    def claims_for(self, user: Any, now: Optional[datetime] = None) -> SessionClaims:
        """Build the claims for a user (anything with id/username/role/email)."""
        # JWT timestamps have one-second resolution
        now = (now or self.clock()).replace(microsecond=0)
        return SessionClaims(
            sub=str(user.id),
            username=user.username,
            role=str(getattr(user.role, "value", user.role)),
            email=user.email,
            iat=now,
            exp=now + self.lifetime,
        )

    def encode(self, claims: SessionClaims) -> str:
        """Sign a set of claims."""
        return jwt.encode(claims.model_dump(), self.secret, algorithm=self.algorithm)

    def issue(self, user: Any) -> str:
        """Issue a signed token for a user."""
        return self.encode(self.claims_for(user))

    def verify(self, token: str) -> SessionClaims:
        """
        Verify and decode a bearer token.

        Expiry is checked before the signature, so a token past its expiry is
        reported as expired whatever its signature.

        Raises:
            TokenExpiredError: If the token's expiry has passed
            InvalidTokenError: If the signature or structure is invalid
        """
        try:
            unverified = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": False},
                algorithms=[self.algorithm],
            )
        except jwt.InvalidTokenError:
            raise InvalidTokenError()

        exp = unverified.get("exp")
        if not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        if datetime.fromtimestamp(exp, tz=timezone.utc) <= self.clock():
            raise TokenExpiredError()

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                # Expiry was already checked against our own clock
                options={"require": ["sub", "exp", "iat"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError()
        except jwt.InvalidTokenError:
            raise InvalidTokenError()

        try:
            return SessionClaims(
                sub=payload["sub"],
                username=payload["username"],
                role=payload["role"],
                email=payload["email"],
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()


@lru_cache()
def get_token_issuer() -> TokenIssuer:
    """Token issuer configured from application settings."""
    current = get_settings()
    return TokenIssuer(
        secret=current.SECRET_KEY,
        lifetime=timedelta(minutes=current.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_access_token(user: Any) -> str:
    """Create a bearer token for a user with the configured issuer."""
    return get_token_issuer().issue(user)


def decode_access_token(token: str) -> SessionClaims:
    """Verify a bearer token with the configured issuer."""
    return get_token_issuer().verify(token)
