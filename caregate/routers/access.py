"""Access check endpoints for collaborators deciding a single request."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.auth import CurrentActor
from caregate.database import get_db, keep_denials
from caregate.schemas.access import (
    AccessCheckRequest,
    AccessCheckResponse,
    HeldPermissionsResponse,
)
from caregate.services.permission_resolver import held_permissions, resolve

router = APIRouter(prefix="/api/access", tags=["access"])


@router.post("/check", response_model=AccessCheckResponse)
async def check_access(
    body: AccessCheckRequest,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> AccessCheckResponse:
    """Decide whether the caller may perform an operation.

    Denials are answered with ``granted: false`` rather than an error status;
    both outcomes are recorded in the family's audit log.
    """
    async with keep_denials(db):
        decision = await resolve(
            db,
            actor.user_id,
            body.owner_id,
            body.child_id,
            body.data_category,
            body.action,
            session=actor.session,
            dry_run=body.dry_run,
            ip_address=actor.ip_address,
        )
    await db.commit()
    return AccessCheckResponse(
        granted=decision.granted,
        reason=decision.reason,
        required_permission=decision.required_permission,
    )


@router.get("/permissions", response_model=HeldPermissionsResponse)
async def get_held_permissions(
    actor: CurrentActor,
    owner_id: uuid.UUID = Query(...),
    child_id: uuid.UUID | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> HeldPermissionsResponse:
    """The caller's own effective permissions in a family."""
    held = await held_permissions(db, actor.user_id, owner_id, child_id)
    return HeldPermissionsResponse(
        owner_id=owner_id,
        child_id=child_id,
        permissions=sorted(held, key=lambda p: p.value),
    )
