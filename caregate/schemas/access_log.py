"""Audit log query and summary schemas."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from caregate.models.access_log import AccessOutcome, ActorType


class SuspiciousActivityType(StrEnum):
    multiple_failed_attempts = "multiple_failed_attempts"
    off_hours_access = "off_hours_access"
    bulk_data_access = "bulk_data_access"
    unusual_access_pattern = "unusual_access_pattern"
    token_probing = "token_probing"


class Severity(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


class AccessLogFilters(BaseModel):
    """Filters for an access log query. All are optional and combine with AND."""

    start: datetime | None = None
    end: datetime | None = None
    actor_id: str | None = Field(default=None, max_length=64)
    resource_type: str | None = Field(default=None, max_length=64)
    child_id: uuid.UUID | None = None
    outcome: AccessOutcome | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_range(self) -> "AccessLogFilters":
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must not be after end")
        return self


class AccessLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    actor_id: str
    actor_type: ActorType
    action: str
    resource_type: str
    resource_id: str | None = None
    child_id: uuid.UUID | None = None
    outcome: AccessOutcome
    reason: str
    ip_address: str | None = None
    created_at: datetime


class AccessLogListResponse(BaseModel):
    entries: list[AccessLogEntryResponse]
    total: int
    limit: int
    offset: int


class SuspiciousActivity(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SuspiciousActivityType
    severity: Severity
    description: str
    count: int
    related_entry_ids: list[uuid.UUID] = Field(default_factory=list)


class AccessLogSummary(BaseModel):
    total_entries: int
    granted: int
    denied: int
    unique_actors: int
    by_action: dict[str, int]
    most_accessed_resource: str | None = None
    suspicious_activity: list[SuspiciousActivity] = Field(default_factory=list)
