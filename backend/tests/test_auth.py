"""Tests for authentication and security utilities."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest

from core.exceptions import BadRequestError, InvalidCredentialsError, InvalidTokenError, TokenExpiredError
from core.security import (
    TokenIssuer,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from services.auth_service import AuthService

ADMIN_PASSWORD = "AdminPassword123!"
SECRET = "unit-test-secret"
USER = SimpleNamespace(id="user-123", username="alice", role="viewer", email="alice@example.com")


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.unit
class TestPasswordHashing:
    """Password hash/verify tests."""

    def test_hash_and_verify(self):
        raw = "SuperSecret123!"
        hashed = hash_password(raw)
        assert hashed != raw
        assert verify_password(raw, hashed) is True

    def test_wrong_password_rejected(self):
        hashed = hash_password("correct")
        assert verify_password("wrong", hashed) is False

    def test_different_hashes_for_same_password(self):
        """Each call should produce a different hash (salt)."""
        h1 = hash_password("same")
        h2 = hash_password("same")
        assert h1 != h2

    def test_corrupt_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


@pytest.mark.unit
class TestTokenIssuer:
    """Bearer token issuing and verification."""

    def test_issue_and_verify(self):
        issuer = TokenIssuer(SECRET)
        claims = issuer.verify(issuer.issue(USER))
        assert claims.sub == "user-123"
        assert claims.username == "alice"
        assert claims.role == "viewer"
        assert claims.email == "alice@example.com"
        assert claims.exp - claims.iat == timedelta(hours=24)

    def test_role_enum_is_flattened(self):
        from core.rbac import Role

        user = SimpleNamespace(id="u1", username="bob", role=Role.ADMIN, email="bob@example.com")
        issuer = TokenIssuer(SECRET)
        assert issuer.verify(issuer.issue(user)).role == "admin"

    def test_expired_token(self):
        issued_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        clock = FixedClock(issued_at)
        issuer = TokenIssuer(SECRET, lifetime=timedelta(minutes=5), clock=clock)
        token = issuer.issue(USER)

        clock.now = issued_at + timedelta(minutes=5, seconds=1)
        with pytest.raises(TokenExpiredError) as exc_info:
            issuer.verify(token)
        assert exc_info.value.status_code == 401

    def test_still_valid_just_before_expiry(self):
        issued_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        clock = FixedClock(issued_at)
        issuer = TokenIssuer(SECRET, lifetime=timedelta(minutes=5), clock=clock)
        token = issuer.issue(USER)

        clock.now = issued_at + timedelta(minutes=4, seconds=59)
        assert issuer.verify(token).sub == "user-123"

    def test_wrong_secret_is_invalid(self):
        token = TokenIssuer("other-secret").issue(USER)
        with pytest.raises(InvalidTokenError) as exc_info:
            TokenIssuer(SECRET).verify(token)
        assert exc_info.value.status_code == 403

    def test_tampered_payload_is_invalid(self):
        issuer = TokenIssuer(SECRET)
        header, _, signature = issuer.issue(USER).split(".")
        forged_payload = jwt.encode(
            {"sub": "user-123", "username": "alice", "role": "admin", "email": "a@x",
             "iat": 1, "exp": 4102444800},
            "attacker",
            algorithm="HS256",
        ).split(".")[1]
        with pytest.raises(InvalidTokenError):
            issuer.verify(f"{header}.{forged_payload}.{signature}")

    def test_expired_wins_over_bad_signature(self):
        issued_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        forger = TokenIssuer("attacker", lifetime=timedelta(minutes=1), clock=FixedClock(issued_at))
        token = forger.issue(USER)

        issuer = TokenIssuer(SECRET, clock=FixedClock(issued_at + timedelta(hours=1)))
        with pytest.raises(TokenExpiredError):
            issuer.verify(token)

    def test_garbage_is_invalid(self):
        with pytest.raises(InvalidTokenError):
            TokenIssuer(SECRET).verify("not.a.valid.token")

    def test_missing_claims_are_invalid(self):
        token = jwt.encode({"sub": "user-123", "exp": 4102444800}, SECRET, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            TokenIssuer(SECRET).verify(token)

    def test_module_helpers_use_configured_secret(self):
        token = create_access_token(USER)
        assert decode_access_token(token).username == "alice"


@pytest.mark.integration
class TestAuthService:
    """Login through the credential store."""

    async def test_login_returns_token_and_user(self, store, admin_user):
        issuer = TokenIssuer(SECRET)
        result = await AuthService(store, issuer).login("admin-test", ADMIN_PASSWORD)

        assert result["user"] == {
            "id": admin_user.id,
            "username": "admin-test",
            "email": "admin-test@example.com",
            "role": "admin",
        }
        assert issuer.verify(result["token"]).sub == admin_user.id

        refreshed = await store.find_user_by_id(admin_user.id)
        assert refreshed.last_login_at is not None

    async def test_unknown_user_and_wrong_password_look_the_same(self, store, admin_user):
        service = AuthService(store, TokenIssuer(SECRET))

        with pytest.raises(InvalidCredentialsError) as unknown:
            await service.login("nobody", ADMIN_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await service.login("admin-test", "wrong-password")

        assert unknown.value.message == wrong.value.message == "Invalid credentials"
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_inactive_user_cannot_login(self, store, admin_user):
        await store.set_user_active(admin_user.id, False)
        with pytest.raises(InvalidCredentialsError):
            await AuthService(store, TokenIssuer(SECRET)).login("admin-test", ADMIN_PASSWORD)

    @pytest.mark.parametrize("username,password", [(None, "x"), ("admin-test", None), ("", "")])
    async def test_missing_fields(self, store, username, password):
        with pytest.raises(BadRequestError) as exc_info:
            await AuthService(store, TokenIssuer(SECRET)).login(username, password)
        assert exc_info.value.message == "Username and password required"

    async def test_bootstrap_admin_runs_once(self, store):
        service = AuthService(store, TokenIssuer(SECRET))
        assert await service.bootstrap_admin("root", "root@example.com", "RootPassword1!") is True
        assert await service.bootstrap_admin("root", "root@example.com", "RootPassword1!") is False
        assert await store.admin_exists() is True
