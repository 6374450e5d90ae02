"""User accounts and the children they own.

Identity itself belongs to the account collaborator; the engine only needs
enough of it to authenticate a session and to know which family a child
belongs to.
"""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from caregate.models.base import Base, TimestampMixin, UTCDateTime


class User(Base, TimestampMixin):
    """User account.

    Attributes:
        id: Unique user identifier (UUID)
        email: Login email (unique, stored lowercased)
        hashed_password: Bcrypt hash
        display_name: Name shown to other family members
        is_active: Disabled accounts cannot open sessions
        last_login_at: Timestamp of last successful login
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    children = relationship(
        "Child",
        back_populates="owner",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Child(Base, TimestampMixin):
    """A child whose records are tracked by the owning family."""

    __tablename__ = "children"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)

    owner = relationship("User", back_populates="children")

    def __repr__(self) -> str:
        return f"<Child(id={self.id}, owner={self.owner_id})>"
