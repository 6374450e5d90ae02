"""Provider access link schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from caregate.core.permissions import Permission


class AccessLinkCreateRequest(BaseModel):
    provider_name: str = Field(..., min_length=1, max_length=200)
    provider_email: EmailStr | None = None
    permissions: list[Permission] = Field(..., min_length=1, max_length=len(Permission))
    expires_in_hours: int = Field(
        ..., ge=1, le=24 * 365, description="Lifetime of the link in hours"
    )
    max_access_count: int | None = Field(default=None, ge=1, le=1000)
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("provider_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Provider name must not be blank")
        return v


class AccessLinkResponse(BaseModel):
    """A link as shown to the family. Never includes the raw token."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    child_id: uuid.UUID
    prefix: str
    provider_name: str
    provider_email: str | None = None
    notes: str | None = None
    permissions: list[Permission]
    expires_at: datetime
    max_access_count: int | None = None
    access_count: int
    is_active: bool
    last_accessed_at: datetime | None = None
    revoked_at: datetime | None = None
    created_at: datetime


class AccessLinkCreateResponse(AccessLinkResponse):
    access_url_token: str = Field(..., description="Raw token; only returned once")
    access_url: str | None = None


class AccessLinkListResponse(BaseModel):
    links: list[AccessLinkResponse]


class ProviderScope(BaseModel):
    child_id: uuid.UUID
    permissions: list[Permission]
    provider_label: str
    expires_at: datetime
    remaining_uses: int | None = None


class ProviderAccessResponse(BaseModel):
    valid: bool
    scope: ProviderScope
