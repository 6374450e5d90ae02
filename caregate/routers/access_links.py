"""Provider access link management for a child."""

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.config import settings
from caregate.core.auth import CurrentActor
from caregate.database import get_db, keep_denials
from caregate.middleware.rate_limit import limiter
from caregate.schemas.capability_token import (
    AccessLinkCreateRequest,
    AccessLinkCreateResponse,
    AccessLinkListResponse,
    AccessLinkResponse,
)
from caregate.services.capability_tokens import issue_token, list_tokens, revoke_token

router = APIRouter(prefix="/api", tags=["access-links"])


def _access_url(raw_token: str) -> str | None:
    if not settings.provider_access_base_url:
        return None
    return f"{settings.provider_access_base_url.rstrip('/')}/provider-access/{raw_token}"


@router.post(
    "/children/{child_id}/access-links",
    response_model=AccessLinkCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("10/minute")
async def create_access_link(
    child_id: uuid.UUID,
    body: AccessLinkCreateRequest,
    request: Request,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> AccessLinkCreateResponse:
    """Issue a provider link. The raw token is returned only once.

    Links that include export-data, live longer than the broad-link threshold,
    or allow unlimited visits for more than a day need an elevated session.
    """
    try:
        async with keep_denials(db):
            token, raw_token = await issue_token(
                db,
                actor.user_id,
                child_id,
                body.permissions,
                timedelta(hours=body.expires_in_hours),
                body.max_access_count,
                provider_name=body.provider_name,
                provider_email=body.provider_email,
                notes=body.notes,
                session=actor.session,
                ip_address=actor.ip_address,
            )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    await db.commit()
    return AccessLinkCreateResponse(
        **AccessLinkResponse.model_validate(token).model_dump(),
        access_url_token=raw_token,
        access_url=_access_url(raw_token),
    )


@router.get("/children/{child_id}/access-links", response_model=AccessLinkListResponse)
async def list_access_links(
    child_id: uuid.UUID,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> AccessLinkListResponse:
    """List a child's links (never includes raw tokens or hashes)."""
    async with keep_denials(db):
        tokens = await list_tokens(
            db, actor.user_id, child_id, session=actor.session, ip_address=actor.ip_address
        )
    await db.commit()
    return AccessLinkListResponse(
        links=[AccessLinkResponse.model_validate(t) for t in tokens]
    )


@router.delete("/access-links/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_access_link(
    token_id: uuid.UUID,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Revoke a link. Revoking an already revoked link succeeds."""
    try:
        async with keep_denials(db):
            await revoke_token(
                db, token_id, actor.user_id, session=actor.session, ip_address=actor.ip_address
            )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    await db.commit()
