"""Family access grant endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.auth import CurrentActor
from caregate.database import get_db, keep_denials
from caregate.schemas.family_access import (
    GrantCreateRequest,
    GrantListResponse,
    GrantResponse,
)
from caregate.services import family_access

router = APIRouter(prefix="/api/families/{owner_id}/grants", tags=["family-access"])


@router.get("", response_model=GrantListResponse)
async def list_grants(
    owner_id: uuid.UUID,
    actor: CurrentActor,
    include_revoked: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> GrantListResponse:
    async with keep_denials(db):
        grants = await family_access.list_grants(
            db,
            actor.user_id,
            owner_id,
            include_revoked=include_revoked,
            session=actor.session,
            ip_address=actor.ip_address,
        )
    await db.commit()
    return GrantListResponse(grants=[GrantResponse.model_validate(g) for g in grants])


@router.post("", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def create_grant(
    owner_id: uuid.UUID,
    body: GrantCreateRequest,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> GrantResponse:
    """Give a user a role in the family. Needs an elevated session."""
    try:
        async with keep_denials(db):
            grant = await family_access.create_grant(
                db,
                actor.user_id,
                owner_id,
                body.user_id,
                body.role,
                session=actor.session,
                ip_address=actor.ip_address,
            )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    await db.commit()
    return GrantResponse.model_validate(grant)


@router.delete("/{grant_id}", response_model=GrantResponse)
async def revoke_grant(
    owner_id: uuid.UUID,
    grant_id: uuid.UUID,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> GrantResponse:
    """Revoke a grant for good. Needs an elevated session."""
    try:
        async with keep_denials(db):
            grant = await family_access.revoke_grant(
                db,
                actor.user_id,
                owner_id,
                grant_id,
                session=actor.session,
                ip_address=actor.ip_address,
            )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    await db.commit()
    return GrantResponse.model_validate(grant)
