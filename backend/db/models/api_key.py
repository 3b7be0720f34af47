"""API Key model for programmatic access.

Each API key belongs to one user, stores only a salted bcrypt hash of the
raw key, and carries a permission map (permission name -> enabled).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class APIKey(BaseModel):
    """Persisted API key.

    Attributes:
        id: UUID primary key
        user_id: Owning user (cascade on user deletion)
        name: Human-readable label (e.g. "Grafana scraper")
        key_hash: Bcrypt hash of the raw key (raw key shown once at creation)
        prefix: Leading characters of the raw key for identification
        permissions: Permission map, e.g. {"results:read": true}
        is_active: False once revoked
        expires_at: Optional expiration datetime
        last_used_at: Timestamp of last successful verification
    """

    __tablename__ = "api_keys"

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="API Key")
    key_hash: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    permissions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User", back_populates="api_keys", lazy="selectin"
    )
