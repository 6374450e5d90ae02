"""Family-wide and child-specific privacy settings.

One FamilyPrivacySettings row per owner. Zero or one ChildPrivacySettings row
per child, created the first time access is narrowed for that child.
"""

import uuid
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from caregate.models.base import Base, TimestampMixin

DEFAULT_RETENTION_PERIOD_MONTHS = 84  # 7 years
DEFAULT_INACTIVITY_PERIOD_MONTHS = 24


def default_data_sharing() -> dict[str, Any]:
    return {
        "research_participation": False,
        "anonymized_data_sharing": False,
        "marketing_consent": False,
        "third_party_integrations": {},
    }


def default_communications() -> dict[str, bool]:
    return {
        "email_notifications": True,
        "sms_notifications": False,
        "marketing_emails": False,
        "security_alerts": True,
        "medical_reminders": True,
        "third_party_marketing": False,
    }


def default_data_retention() -> dict[str, Any]:
    return {
        "automatic_deletion": False,
        "retention_period_months": DEFAULT_RETENTION_PERIOD_MONTHS,
        "delete_after_inactivity": False,
        "inactivity_period_months": DEFAULT_INACTIVITY_PERIOD_MONTHS,
    }


class FamilyPrivacySettings(Base, TimestampMixin):
    """Family-wide privacy document, mutated only by the owner or a
    delegate holding manage-access."""

    __tablename__ = "family_privacy_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    data_sharing: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=default_data_sharing
    )
    communications: Mapped[dict[str, bool]] = mapped_column(
        JSON, nullable=False, default=default_communications
    )
    data_retention: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=default_data_retention
    )

    # Bumped on every write; writers pass the version they read
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<FamilyPrivacySettings(owner={self.owner_id}, v{self.version})>"


class ChildPrivacySettings(Base, TimestampMixin):
    """Per-child override.

    When ``inherit_from_parent`` is true the child narrows nothing. When false
    its own fields fully replace the family-wide role permissions for that
    child. If ``restricted_access`` is true only ``allowed_users`` can be
    granted anything for the child, whatever their role.
    """

    __tablename__ = "child_privacy_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    child_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("children.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    inherit_from_parent: Mapped[bool] = mapped_column(default=True)
    restricted_access: Mapped[bool] = mapped_column(default=False)
    # User ids (as strings)
    allowed_users: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # User id -> permission values
    custom_permissions: Mapped[dict[str, list[str]]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    communication_restrictions: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    data_retention_override: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<ChildPrivacySettings(child={self.child_id}, "
            f"inherit={self.inherit_from_parent}, restricted={self.restricted_access})>"
        )
