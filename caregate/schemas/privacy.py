"""Privacy settings schemas."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from caregate.core.permissions import Permission
from caregate.models.privacy_settings import (
    DEFAULT_INACTIVITY_PERIOD_MONTHS,
    DEFAULT_RETENTION_PERIOD_MONTHS,
)


class CommunicationType(StrEnum):
    email_notifications = "email_notifications"
    sms_notifications = "sms_notifications"
    marketing_emails = "marketing_emails"
    security_alerts = "security_alerts"
    medical_reminders = "medical_reminders"
    third_party_marketing = "third_party_marketing"


class RetentionPolicy(BaseModel):
    """Family-wide data retention policy. Periods are in months."""

    model_config = ConfigDict(frozen=True)

    automatic_deletion: bool = False
    retention_period_months: int = Field(
        default=DEFAULT_RETENTION_PERIOD_MONTHS, ge=1, le=1200
    )
    delete_after_inactivity: bool = False
    inactivity_period_months: int = Field(
        default=DEFAULT_INACTIVITY_PERIOD_MONTHS, ge=1, le=1200
    )


class RetentionOverride(BaseModel):
    """Partial retention policy set on a single child.

    Omitted fields fall back to the family policy.
    """

    model_config = ConfigDict(extra="forbid")

    automatic_deletion: bool | None = None
    retention_period_months: int | None = Field(default=None, ge=1, le=1200)
    delete_after_inactivity: bool | None = None
    inactivity_period_months: int | None = Field(default=None, ge=1, le=1200)


class DataSharingPreferences(BaseModel):
    research_participation: bool = False
    anonymized_data_sharing: bool = False
    marketing_consent: bool = False
    third_party_integrations: dict[str, bool] = Field(default_factory=dict)


class CommunicationPreferences(BaseModel):
    email_notifications: bool = True
    sms_notifications: bool = False
    marketing_emails: bool = False
    security_alerts: bool = True
    medical_reminders: bool = True
    third_party_marketing: bool = False


class FamilyPrivacySettingsResponse(BaseModel):
    owner_id: uuid.UUID
    data_sharing: DataSharingPreferences
    communications: CommunicationPreferences
    data_retention: RetentionPolicy
    version: int
    updated_at: datetime


class FamilyPrivacySettingsUpdate(BaseModel):
    """Partial update; omitted sections are left unchanged.

    ``expected_version`` is the version the caller last read. A mismatch means
    someone else wrote in between and the update is rejected.
    """

    model_config = ConfigDict(extra="forbid")

    expected_version: int | None = Field(default=None, ge=1)
    data_sharing: DataSharingPreferences | None = None
    communications: CommunicationPreferences | None = None
    data_retention: RetentionPolicy | None = None


class ChildPrivacySettingsResponse(BaseModel):
    child_id: uuid.UUID
    inherit_from_parent: bool
    restricted_access: bool
    allowed_users: list[uuid.UUID]
    custom_permissions: dict[uuid.UUID, list[Permission]]
    communication_restrictions: list[CommunicationType]
    data_retention_override: RetentionOverride | None = None
    version: int
    updated_at: datetime | None = None


class ChildPrivacySettingsUpdate(BaseModel):
    """Partial update of a child's override. Omitted fields are unchanged.

    A child without an override reads as version 0.
    """

    model_config = ConfigDict(extra="forbid")

    expected_version: int | None = Field(default=None, ge=0)
    inherit_from_parent: bool | None = None
    restricted_access: bool | None = None
    allowed_users: list[uuid.UUID] | None = Field(default=None, max_length=100)
    custom_permissions: dict[uuid.UUID, list[Permission]] | None = None
    communication_restrictions: list[CommunicationType] | None = None
    data_retention_override: RetentionOverride | None = None
