"""Append-only access log.

Rows are written by the engine and never updated or deleted by it; retention
is applied by a separate purge process.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from caregate.models.base import Base, UTCDateTime, utcnow


class AccessOutcome(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"


class ActorType(str, enum.Enum):
    OWNER = "owner"
    FAMILY_MEMBER = "family_member"
    HEALTHCARE_PROVIDER = "healthcare_provider"
    SYSTEM = "system"


class AccessLogEntry(Base):
    """One decision or lifecycle event."""

    __tablename__ = "access_log_entries"
    __table_args__ = (
        Index("ix_access_log_entries_owner_created", "owner_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Family partition; null only for probes with tokens that match nothing
    owner_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # User id, or "token:<id>" for capability token holders
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_type: Mapped[ActorType] = mapped_column(
        Enum(
            ActorType,
            name="actor_type",
            native_enum=False,
            length=32,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    child_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    outcome: Mapped[AccessOutcome] = mapped_column(
        Enum(
            AccessOutcome,
            name="access_outcome",
            native_enum=False,
            length=16,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(Text(), nullable=False)

    session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<AccessLogEntry(action={self.action}, actor={self.actor_id}, "
            f"outcome={self.outcome.value})>"
        )
