"""Family-wide and child-specific privacy settings endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.auth import CurrentActor
from caregate.database import get_db, keep_denials
from caregate.models.privacy_settings import ChildPrivacySettings, FamilyPrivacySettings
from caregate.schemas.privacy import (
    ChildPrivacySettingsResponse,
    ChildPrivacySettingsUpdate,
    FamilyPrivacySettingsResponse,
    FamilyPrivacySettingsUpdate,
)
from caregate.services import privacy_settings

router = APIRouter(prefix="/api", tags=["privacy"])


def _family_response(row: FamilyPrivacySettings) -> FamilyPrivacySettingsResponse:
    return FamilyPrivacySettingsResponse(
        owner_id=row.owner_id,
        data_sharing=row.data_sharing,
        communications=row.communications,
        data_retention=row.data_retention,
        version=row.version,
        updated_at=row.updated_at,
    )


def _child_response(
    child_id: uuid.UUID, row: ChildPrivacySettings | None
) -> ChildPrivacySettingsResponse:
    if row is None:
        # No override: the child inherits everything
        return ChildPrivacySettingsResponse(
            child_id=child_id,
            inherit_from_parent=True,
            restricted_access=False,
            allowed_users=[],
            custom_permissions={},
            communication_restrictions=[],
            version=0,
        )
    return ChildPrivacySettingsResponse(
        child_id=row.child_id,
        inherit_from_parent=row.inherit_from_parent,
        restricted_access=row.restricted_access,
        allowed_users=row.allowed_users or [],
        custom_permissions=row.custom_permissions or {},
        communication_restrictions=row.communication_restrictions or [],
        data_retention_override=row.data_retention_override,
        version=row.version,
        updated_at=row.updated_at,
    )


@router.get("/families/{owner_id}/privacy", response_model=FamilyPrivacySettingsResponse)
async def get_family_privacy(
    owner_id: uuid.UUID,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> FamilyPrivacySettingsResponse:
    async with keep_denials(db):
        row = await privacy_settings.get_family_settings(
            db, actor.user_id, owner_id, session=actor.session, ip_address=actor.ip_address
        )
    await db.commit()
    return _family_response(row)


@router.put("/families/{owner_id}/privacy", response_model=FamilyPrivacySettingsResponse)
async def update_family_privacy(
    owner_id: uuid.UUID,
    body: FamilyPrivacySettingsUpdate,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> FamilyPrivacySettingsResponse:
    """Update family-wide settings. Send ``expected_version`` to detect lost updates."""
    async with keep_denials(db):
        row = await privacy_settings.update_family_settings(
            db,
            actor.user_id,
            owner_id,
            body,
            session=actor.session,
            ip_address=actor.ip_address,
        )
    await db.commit()
    return _family_response(row)


@router.get("/children/{child_id}/privacy", response_model=ChildPrivacySettingsResponse)
async def get_child_privacy(
    child_id: uuid.UUID,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> ChildPrivacySettingsResponse:
    async with keep_denials(db):
        row = await privacy_settings.get_child_settings(
            db, actor.user_id, child_id, session=actor.session, ip_address=actor.ip_address
        )
    await db.commit()
    return _child_response(child_id, row)


@router.put("/children/{child_id}/privacy", response_model=ChildPrivacySettingsResponse)
async def update_child_privacy(
    child_id: uuid.UUID,
    body: ChildPrivacySettingsUpdate,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> ChildPrivacySettingsResponse:
    """Create or change the child's override.

    Conflicting writes (stale version, inheritance combined with restrictions,
    custom permissions outside a user's role) are rejected with 409.
    """
    async with keep_denials(db):
        row = await privacy_settings.update_child_settings(
            db,
            actor.user_id,
            child_id,
            body,
            session=actor.session,
            ip_address=actor.ip_address,
        )
    await db.commit()
    return _child_response(child_id, row)


@router.delete("/children/{child_id}/privacy", status_code=status.HTTP_204_NO_CONTENT)
async def remove_child_privacy(
    child_id: uuid.UUID,
    actor: CurrentActor,
    expected_version: int | None = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Remove the override; the child inherits the family settings again."""
    async with keep_denials(db):
        await privacy_settings.remove_child_override(
            db,
            actor.user_id,
            child_id,
            expected_version=expected_version,
            session=actor.session,
            ip_address=actor.ip_address,
        )
    await db.commit()
