"""Access check schemas."""

import uuid

from pydantic import BaseModel, Field

from caregate.core.permissions import Action, DataCategory, Permission


class AccessCheckRequest(BaseModel):
    owner_id: uuid.UUID
    child_id: uuid.UUID | None = None
    data_category: DataCategory
    action: Action
    dry_run: bool = Field(
        default=False, description="Record the check as simulated in the audit log"
    )


class AccessCheckResponse(BaseModel):
    granted: bool
    reason: str
    required_permission: Permission | None = None


class HeldPermissionsResponse(BaseModel):
    owner_id: uuid.UUID
    child_id: uuid.UUID | None = None
    permissions: list[Permission]
