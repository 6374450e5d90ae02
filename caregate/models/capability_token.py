"""Capability token (provider magic link) model.

Only the SHA-256 of the bearer string is stored; the raw token is handed to
the issuer once. State moves forward only: active -> expired | exhausted |
revoked.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from caregate.models.base import Base, UTCDateTime, utcnow


class CapabilityToken(Base):
    """Bearer credential scoped to one child and a permission subset."""

    __tablename__ = "capability_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    child_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("children.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    provider_name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)

    prefix: Mapped[str] = mapped_column(String(12), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )

    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    max_access_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_accessed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    def invalid_reason(self, now: datetime) -> str | None:
        """Why the token is unusable at ``now``, or None if it is valid."""
        if not self.is_active:
            return "revoked"
        if now >= self.expires_at:
            return "expired"
        if (
            self.max_access_count is not None
            and self.access_count >= self.max_access_count
        ):
            return "exhausted"
        return None

    def __repr__(self) -> str:
        return f"<CapabilityToken(prefix={self.prefix}, child={self.child_id})>"
