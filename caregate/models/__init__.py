# Database Models
from caregate.models.access_log import AccessLogEntry, AccessOutcome, ActorType
from caregate.models.base import Base, TimestampMixin, UTCDateTime
from caregate.models.capability_token import CapabilityToken
from caregate.models.family_access_grant import FamilyAccessGrant
from caregate.models.privacy_settings import (
    ChildPrivacySettings,
    FamilyPrivacySettings,
)
from caregate.models.user import Child, User
from caregate.models.user_session import SessionStatus, UserSession

__all__ = [
    "AccessLogEntry",
    "AccessOutcome",
    "ActorType",
    "Base",
    "CapabilityToken",
    "Child",
    "ChildPrivacySettings",
    "FamilyAccessGrant",
    "FamilyPrivacySettings",
    "SessionStatus",
    "TimestampMixin",
    "UTCDateTime",
    "User",
    "UserSession",
]
