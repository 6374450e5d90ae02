"""Audit log endpoints for the family owner and access managers."""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.auth import CurrentActor
from caregate.database import get_db, keep_denials
from caregate.models.access_log import AccessOutcome
from caregate.schemas.access_log import (
    AccessLogEntryResponse,
    AccessLogFilters,
    AccessLogListResponse,
    AccessLogSummary,
)
from caregate.services.audit_service import query_access_log, summarize_access_log

router = APIRouter(prefix="/api/families/{owner_id}/audit", tags=["audit"])


@router.get("", response_model=AccessLogListResponse)
async def get_access_log(
    owner_id: uuid.UUID,
    actor: CurrentActor,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    actor_id: str | None = Query(default=None, max_length=64),
    resource_type: str | None = Query(default=None, max_length=64),
    child_id: uuid.UUID | None = Query(default=None),
    outcome: AccessOutcome | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> AccessLogListResponse:
    """Newest-first entries of the family's access log."""
    try:
        filters = AccessLogFilters(
            start=start,
            end=end,
            actor_id=actor_id,
            resource_type=resource_type,
            child_id=child_id,
            outcome=outcome,
            limit=limit,
            offset=offset,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=e.errors()[0]["msg"]
        )

    async with keep_denials(db):
        entries, total = await query_access_log(
            db, actor.user_id, owner_id, filters, session=actor.session
        )
    await db.commit()
    return AccessLogListResponse(
        entries=[AccessLogEntryResponse.model_validate(e) for e in entries],
        total=total,
        limit=filters.limit,
        offset=filters.offset,
    )


@router.get("/summary", response_model=AccessLogSummary)
async def get_access_log_summary(
    owner_id: uuid.UUID,
    actor: CurrentActor,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> AccessLogSummary:
    """Counts over a date range plus suspicious activity of the last week."""
    async with keep_denials(db):
        summary = await summarize_access_log(
            db, actor.user_id, owner_id, start, end, session=actor.session
        )
    await db.commit()
    return summary
