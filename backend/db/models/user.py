"""User model for the speed monitor."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class User(BaseModel):
    """User model representing an account that can log in or own API keys.

    Attributes:
        id: Unique identifier (UUID string)
        username: Login handle (unique)
        email: User email address (unique)
        password_hash: Bcrypt hashed password
        role: Coarse authorization role ("admin", "viewer", ...)
        is_active: Whether the account may authenticate
        last_login_at: Timestamp of last successful password login
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="viewer")
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    api_keys: Mapped[list["APIKey"]] = relationship(
        "APIKey",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )
