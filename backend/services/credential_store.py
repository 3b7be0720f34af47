"""Credential store: users and API keys table access.

Plain queries only, no authentication logic. Every operation runs in its own
short session with a bounded timeout so that a best-effort write (last-used,
last-login) can never poison the caller's transaction. Database failures and
timeouts surface as ``StoreUnavailableError``.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.exceptions import ConflictError, StoreUnavailableError
from db import database
from db.base import utc_now
from db.models.api_key import APIKey
from db.models.user import User

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ApiKeyRecord:
    """An active API key joined with its owner, as needed for verification."""
    id: str
    user_id: str
    key_hash: str
    name: str
    permissions: dict
    username: str
    role: str
    email: str


class CredentialStore:
    """Users and API keys persistence."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        timeout: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.timeout = timeout if timeout is not None else get_settings().CREDENTIAL_STORE_TIMEOUT_SECONDS

    def _new_session(self) -> AsyncSession:
        # Resolved per call so a swapped engine (tests, reconfiguration) is picked up
        factory = self._session_factory or database.AsyncSessionLocal
        return factory()

    async def _run(self, operation: str, work: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        try:
            async with self._new_session() as session:
                return await asyncio.wait_for(work(session), timeout=self.timeout)
        except IntegrityError as e:
            logger.warning("Credential store conflict", operation=operation, error=str(e.orig))
            raise ConflictError("Username or email already exists") from e
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.error(
                "Credential store unavailable",
                operation=operation,
                error=str(e) or type(e).__name__,
            )
            raise StoreUnavailableError("Credential store unavailable") from e

    # ─── Users ─────────────────────────────────────────────

    async def find_user_by_username(self, username: str, active_only: bool = True) -> Optional[User]:
        async def work(session: AsyncSession):
            query = select(User).where(User.username == username)
            if active_only:
                query = query.where(User.is_active == True)  # noqa: E712
            result = await session.execute(query)
            return result.scalar_one_or_none()

        return await self._run("find_user_by_username", work)

    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        async def work(session: AsyncSession):
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

        return await self._run("find_user_by_id", work)

    async def admin_exists(self) -> bool:
        async def work(session: AsyncSession):
            result = await session.execute(
                select(User.id).where(User.role == "admin", User.is_active == True).limit(1)  # noqa: E712
            )
            return result.first() is not None

        return await self._run("admin_exists", work)

    async def insert_user(self, username: str, email: str, password_hash: str, role: str = "viewer") -> User:
        async def work(session: AsyncSession):
            user = User(
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
            )
            session.add(user)
            await session.commit()
            return user

        return await self._run("insert_user", work)

    async def set_user_active(self, user_id: str, is_active: bool) -> bool:
        async def work(session: AsyncSession):
            result = await session.execute(
                update(User).where(User.id == user_id).values(is_active=is_active)
            )
            await session.commit()
            return result.rowcount > 0

        return await self._run("set_user_active", work)

    async def touch_last_login(self, user_id: str, now: Optional[datetime] = None) -> None:
        async def work(session: AsyncSession):
            await session.execute(
                update(User).where(User.id == user_id).values(last_login_at=now or utc_now())
            )
            await session.commit()

        await self._run("touch_last_login", work)

    # ─── API keys ──────────────────────────────────────────

    async def find_active_api_keys(self, now: Optional[datetime] = None) -> list[ApiKeyRecord]:
        """Active, unexpired keys whose owner is active."""
        now = now or utc_now()

        async def work(session: AsyncSession):
            result = await session.execute(
                select(
                    APIKey.id,
                    APIKey.user_id,
                    APIKey.key_hash,
                    APIKey.name,
                    APIKey.permissions,
                    User.username,
                    User.role,
                    User.email,
                )
                .join(User, APIKey.user_id == User.id)
                .where(
                    APIKey.is_active == True,  # noqa: E712
                    User.is_active == True,  # noqa: E712
                    or_(APIKey.expires_at.is_(None), APIKey.expires_at > now),
                )
                .order_by(APIKey.created_at.desc())
            )
            return [
                ApiKeyRecord(
                    id=row.id,
                    user_id=row.user_id,
                    key_hash=row.key_hash,
                    name=row.name,
                    permissions=dict(row.permissions or {}),
                    username=row.username,
                    role=row.role,
                    email=row.email,
                )
                for row in result.all()
            ]

        return await self._run("find_active_api_keys", work)

    async def insert_api_key(
        self,
        user_id: str,
        key_hash: str,
        prefix: str,
        name: str,
        permissions: dict,
        expires_at: Optional[datetime],
    ) -> APIKey:
        async def work(session: AsyncSession):
            api_key = APIKey(
                user_id=user_id,
                key_hash=key_hash,
                prefix=prefix,
                name=name,
                permissions=permissions,
                expires_at=expires_at,
            )
            session.add(api_key)
            await session.commit()
            return api_key

        return await self._run("insert_api_key", work)

    async def get_api_key(self, key_id: str) -> Optional[APIKey]:
        async def work(session: AsyncSession):
            result = await session.execute(select(APIKey).where(APIKey.id == key_id))
            return result.scalar_one_or_none()

        return await self._run("get_api_key", work)

    async def list_api_keys(self, user_id: str) -> list[APIKey]:
        async def work(session: AsyncSession):
            result = await session.execute(
                select(APIKey)
                .where(APIKey.user_id == user_id)
                .order_by(APIKey.created_at.desc())
            )
            return list(result.scalars().all())

        return await self._run("list_api_keys", work)

    async def deactivate_api_key(self, key_id: str) -> bool:
        async def work(session: AsyncSession):
            result = await session.execute(
                update(APIKey).where(APIKey.id == key_id).values(is_active=False)
            )
            await session.commit()
            return result.rowcount > 0

        return await self._run("deactivate_api_key", work)

    async def touch_last_used(self, api_key_id: str, now: Optional[datetime] = None) -> None:
        async def work(session: AsyncSession):
            await session.execute(
                update(APIKey).where(APIKey.id == api_key_id).values(last_used_at=now or utc_now())
            )
            await session.commit()

        await self._run("touch_last_used", work)
