"""Family access grant model.

Links a non-owner user to an owner's family with a role. Revocation is
one-way: once revoked_at is set the row is never reactivated; access is
restored only by creating a new grant.
"""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from caregate.core.permissions import Role
from caregate.models.base import Base, UTCDateTime, utcnow


class FamilyAccessGrant(Base):
    """A role held by ``user_id`` inside ``owner_id``'s family."""

    __tablename__ = "family_access_grants"
    __table_args__ = (
        CheckConstraint("owner_id != user_id", name="no_self_grant"),
        CheckConstraint("role != 'owner'", name="owner_not_grantable"),
        Index("ix_family_access_grants_owner_user", "owner_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[Role] = mapped_column(
        Enum(
            Role,
            name="family_role",
            native_enum=False,
            length=20,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    granted_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def __repr__(self) -> str:
        return (
            f"<FamilyAccessGrant(owner={self.owner_id}, user={self.user_id}, "
            f"role={self.role.value}, active={self.is_active})>"
        )
