"""Device-bound user session model."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from caregate.models.base import Base, UTCDateTime, utcnow


class SessionStatus(str, enum.Enum):
    """Session states.

    ACTIVE <-> ELEVATED (elevation is one-shot and short-lived);
    ACTIVE | ELEVATED -> INVALIDATED (terminal).
    """

    ACTIVE = "active"
    ELEVATED = "elevated"
    INVALIDATED = "invalidated"


class UserSession(Base):
    """An authenticated actor bound to the device it signed in from."""

    __tablename__ = "user_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    device_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    status: Mapped[SessionStatus] = mapped_column(
        Enum(
            SessionStatus,
            name="session_status",
            native_enum=False,
            length=20,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=SessionStatus.ACTIVE,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    last_validated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    elevated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    invalidated_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def is_invalidated(self) -> bool:
        return self.status == SessionStatus.INVALIDATED

    def __repr__(self) -> str:
        return f"<UserSession(id={self.id}, user={self.user_id}, {self.status.value})>"
