"""Family access grant schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from caregate.core.permissions import GRANTABLE_ROLES, Role


class GrantCreateRequest(BaseModel):
    user_id: uuid.UUID
    role: Role

    @field_validator("role")
    @classmethod
    def grantable(cls, v: Role) -> Role:
        if v not in GRANTABLE_ROLES:
            raise ValueError(f"Role {v.value} cannot be granted")
        return v


class GrantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: uuid.UUID
    user_id: uuid.UUID
    role: Role
    granted_by: uuid.UUID
    granted_at: datetime
    revoked_at: datetime | None = None
    revoked_by: uuid.UUID | None = None


class GrantListResponse(BaseModel):
    grants: list[GrantResponse]
