"""Device-bound sessions with one-shot elevation.

State machine:
    active -> elevated   (password re-entry)
    elevated -> active   (elevation consumed, or window expired)
    active | elevated -> invalidated   (logout, fingerprint mismatch,
                                        staleness, concurrent session cap)

Every transition is a single conditional UPDATE on the session row, so two
requests racing on the same session see exactly one winner.
"""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.config import settings
from caregate.logging_config import get_logger
from caregate.models.access_log import AccessOutcome, ActorType
from caregate.models.user_session import SessionStatus, UserSession
from caregate.services.audit_service import append_entry

logger = get_logger(__name__)

_LIVE = (SessionStatus.ACTIVE, SessionStatus.ELEVATED)


def _freshness() -> timedelta:
    return timedelta(minutes=settings.session_freshness_minutes)


def _elevation_window() -> timedelta:
    return timedelta(minutes=settings.elevation_window_minutes)


def is_live(session: UserSession, now: datetime | None = None) -> bool:
    """True if the session is not invalidated and was validated recently."""
    now = now or datetime.now(UTC)
    return (
        session.status in _LIVE
        and now - session.last_validated_at <= _freshness()
    )


async def _audit(
    db: AsyncSession,
    session: UserSession,
    action: str,
    outcome: AccessOutcome,
    reason: str,
    now: datetime,
    actor_type: ActorType = ActorType.OWNER,
) -> None:
    # Session events are partitioned under the user's own family log
    await append_entry(
        db,
        owner_id=session.user_id,
        actor_id=session.user_id if actor_type != ActorType.SYSTEM else "system",
        actor_type=actor_type,
        action=action,
        resource_type="session",
        resource_id=str(session.id),
        outcome=outcome,
        reason=reason,
        session_id=session.id,
        ip_address=session.ip_address,
        now=now,
    )


async def get_session(db: AsyncSession, session_id: uuid.UUID) -> UserSession | None:
    """Load a session, bypassing any stale copy in the identity map."""
    result = await db.execute(
        select(UserSession)
        .where(UserSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_session(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_fingerprint: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    *,
    now: datetime | None = None,
) -> UserSession:
    """Open a session bound to ``device_fingerprint``.

    Sessions beyond ``max_concurrent_sessions`` for the user are invalidated,
    oldest first.

    Raises:
        ValueError: If the fingerprint is empty.
    """
    if not device_fingerprint or not device_fingerprint.strip():
        raise ValueError("Device fingerprint is required")

    now = now or datetime.now(UTC)
    session = UserSession(
        user_id=user_id,
        device_fingerprint=device_fingerprint,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
        status=SessionStatus.ACTIVE,
        created_at=now,
        last_validated_at=now,
    )
    db.add(session)
    await db.flush()
    await _audit(db, session, "session.create", AccessOutcome.GRANTED, "signed in", now)

    result = await db.execute(
        select(UserSession)
        .where(
            UserSession.user_id == user_id,
            UserSession.status.in_(_LIVE),
        )
        .order_by(UserSession.created_at.desc(), UserSession.id)
    )
    live = result.scalars().all()
    for stale in live[settings.max_concurrent_sessions :]:
        if stale.id != session.id:
            await invalidate(db, stale.id, "concurrent session limit", now=now)

    logger.info(
        "Session created",
        user_id=str(user_id),
        session_id=str(session.id),
    )
    return session


async def validate_session(
    db: AsyncSession,
    session_id: uuid.UUID,
    device_fingerprint: str,
    *,
    now: datetime | None = None,
) -> bool:
    """Check a presented session and refresh its freshness timestamp.

    A fingerprint mismatch or a stale session invalidates the session before
    returning False.
    """
    now = now or datetime.now(UTC)
    session = await get_session(db, session_id)
    if session is None or session.is_invalidated:
        return False

    if session.device_fingerprint != device_fingerprint:
        logger.warning(
            "Session presented from a different device",
            session_id=str(session_id),
            user_id=str(session.user_id),
        )
        await invalidate(db, session_id, "fingerprint mismatch", now=now)
        return False

    if now - session.last_validated_at > _freshness():
        await invalidate(db, session_id, "stale", now=now)
        return False

    if (
        session.status == SessionStatus.ELEVATED
        and session.elevated_at is not None
        and now - session.elevated_at > _elevation_window()
    ):
        result = await db.execute(
            update(UserSession)
            .where(
                UserSession.id == session_id,
                UserSession.status == SessionStatus.ELEVATED,
                UserSession.elevated_at == session.elevated_at,
            )
            .values(status=SessionStatus.ACTIVE, elevated_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await _audit(
                db,
                session,
                "session.elevation_expired",
                AccessOutcome.GRANTED,
                "elevation window elapsed",
                now,
                actor_type=ActorType.SYSTEM,
            )

    result = await db.execute(
        update(UserSession)
        .where(
            UserSession.id == session_id,
            UserSession.status.in_(_LIVE),
            UserSession.last_validated_at >= now - _freshness(),
        )
        .values(last_validated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def elevate(
    db: AsyncSession,
    session_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> bool:
    """Mark a live session as elevated for the elevation window.

    The caller is responsible for verifying the re-entered credentials first.
    """
    now = now or datetime.now(UTC)
    result = await db.execute(
        update(UserSession)
        .where(
            UserSession.id == session_id,
            UserSession.status.in_(_LIVE),
            UserSession.last_validated_at >= now - _freshness(),
        )
        .values(status=SessionStatus.ELEVATED, elevated_at=now, last_validated_at=now)
        .execution_options(synchronize_session=False)
    )
    elevated = result.rowcount == 1

    session = await get_session(db, session_id)
    if session is not None:
        await _audit(
            db,
            session,
            "session.elevate",
            AccessOutcome.GRANTED if elevated else AccessOutcome.DENIED,
            "elevated" if elevated else "session not live",
            now,
        )
    return elevated


async def consume_elevation(
    db: AsyncSession,
    session_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> bool:
    """Use up an elevation. Returns False if there was none in the window.

    Exactly one of several concurrent callers can succeed.
    """
    now = now or datetime.now(UTC)
    result = await db.execute(
        update(UserSession)
        .where(
            UserSession.id == session_id,
            UserSession.status == SessionStatus.ELEVATED,
            UserSession.elevated_at >= now - _elevation_window(),
        )
        .values(status=SessionStatus.ACTIVE, elevated_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    session = await get_session(db, session_id)
    await _audit(
        db, session, "session.elevation_consumed", AccessOutcome.GRANTED, "elevation used", now
    )
    return True


async def invalidate(
    db: AsyncSession,
    session_id: uuid.UUID,
    reason: str,
    *,
    now: datetime | None = None,
    actor_type: ActorType = ActorType.OWNER,
) -> bool:
    """Terminally invalidate a session. Returns False if it already was."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.status.in_(_LIVE))
        .values(
            status=SessionStatus.INVALIDATED,
            elevated_at=None,
            invalidated_at=now,
            invalidated_reason=reason[:100],
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    session = await get_session(db, session_id)
    await _audit(
        db,
        session,
        "session.invalidate",
        AccessOutcome.GRANTED,
        reason,
        now,
        actor_type=actor_type,
    )
    logger.info("Session invalidated", session_id=str(session_id), reason=reason)
    return True


async def invalidate_all_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    reason: str,
    *,
    except_session_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> int:
    """Invalidate every live session of a user, optionally keeping one."""
    query = select(UserSession.id).where(
        UserSession.user_id == user_id, UserSession.status.in_(_LIVE)
    )
    if except_session_id is not None:
        query = query.where(UserSession.id != except_session_id)
    result = await db.execute(query)

    count = 0
    for session_id in result.scalars().all():
        if await invalidate(db, session_id, reason, now=now):
            count += 1
    return count


async def cleanup_stale_sessions(
    db: AsyncSession, *, now: datetime | None = None
) -> int:
    """Invalidate live sessions that outlived the freshness window."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(UserSession.id).where(
            UserSession.status.in_(_LIVE),
            UserSession.last_validated_at < now - _freshness(),
        )
    )

    count = 0
    for session_id in result.scalars().all():
        if await invalidate(
            db, session_id, "stale", now=now, actor_type=ActorType.SYSTEM
        ):
            count += 1
    return count
