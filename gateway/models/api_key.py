"""
API key model.

Opaque bearer credentials for programmatic access. Only the SHA-256
digest of the key is stored; the plaintext is shown to the owner once.
"""
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from gateway.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ApiKey(UUIDPrimaryKeyMixin, Base, TimestampMixin):
    """
    API key issued to a marketplace user.

    key_prefix is the first 8 characters of the plaintext, used for display
    and to narrow verification to a small candidate set.
    """
    __tablename__ = "api_keys"

    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ApiKey(id={self.id}, owner_id={self.owner_id}, prefix={self.key_prefix})>"
