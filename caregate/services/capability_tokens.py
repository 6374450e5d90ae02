"""Capability tokens ("provider access links").

A token lets a healthcare provider see one child's data without an account.
Only the SHA-256 of the bearer string is stored. Issuance is bounded by what
the issuer holds; consumption is a single conditional UPDATE so a token with
N remaining uses admits at most N visits however many arrive at once.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.config import settings
from caregate.core.errors import ElevationRequired, ExcessScope, Unauthorized
from caregate.core.permissions import (
    TOKEN_GRANTABLE,
    Action,
    DataCategory,
    Permission,
)
from caregate.core.security import (
    display_prefix,
    generate_capability_secret,
    hash_capability_secret,
)
from caregate.logging_config import get_logger
from caregate.models.access_log import AccessOutcome, ActorType
from caregate.models.capability_token import CapabilityToken
from caregate.models.user import Child
from caregate.models.user_session import UserSession
from caregate.services.audit_service import append_entry, token_actor
from caregate.services.permission_resolver import (
    authorize,
    held_permissions,
    token_permissions,
)
from caregate.services.session_manager import consume_elevation

logger = get_logger(__name__)

UNLIMITED_USE_BROAD_AFTER = timedelta(hours=24)


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    reason: str | None = None
    token: CapabilityToken | None = None


@dataclass(frozen=True)
class TokenConsumption:
    valid: bool
    reason: str | None = None
    token: CapabilityToken | None = None
    permissions: frozenset[Permission] = frozenset()


def is_broad(
    permissions: frozenset[Permission], ttl: timedelta, max_uses: int | None
) -> bool:
    """Tokens that need a freshly elevated session to issue."""
    return (
        Permission.EXPORT_DATA in permissions
        or ttl > timedelta(hours=settings.broad_token_ttl_hours)
        or (max_uses is None and ttl > UNLIMITED_USE_BROAD_AFTER)
    )


async def _find_by_raw(db: AsyncSession, raw_token: str) -> CapabilityToken | None:
    result = await db.execute(
        select(CapabilityToken)
        .where(CapabilityToken.token_hash == hash_capability_secret(raw_token))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _audit_issue_denied(
    db: AsyncSession,
    requester_id: uuid.UUID,
    child: Child,
    reason: str,
    session: UserSession | None,
    ip_address: str | None,
    now: datetime,
) -> None:
    await append_entry(
        db,
        owner_id=child.owner_id,
        actor_id=requester_id,
        actor_type=(
            ActorType.OWNER if requester_id == child.owner_id else ActorType.FAMILY_MEMBER
        ),
        action="token.issue",
        resource_type="capability_token",
        child_id=child.id,
        outcome=AccessOutcome.DENIED,
        reason=reason,
        session_id=session.id if session is not None else None,
        ip_address=ip_address,
        now=now,
    )


async def issue_token(
    db: AsyncSession,
    requester_id: uuid.UUID,
    child_id: uuid.UUID,
    permissions: list[Permission] | frozenset[Permission],
    ttl: timedelta,
    max_uses: int | None = None,
    *,
    provider_name: str,
    provider_email: str | None = None,
    notes: str | None = None,
    session: UserSession | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> tuple[CapabilityToken, str]:
    """Issue a token for one child. The raw token is returned only here.

    Raises:
        ValueError: If the request itself is malformed.
        Unauthorized: If the requester may not manage access for the child.
        ExcessScope: If the permissions exceed what the requester holds or
            include permissions that cannot be delegated to a provider.
        ElevationRequired: If the token is broad and the session has no
            unused elevation.
    """
    now = now or datetime.now(UTC)
    requested = frozenset(permissions)

    if not requested:
        raise ValueError("At least one permission is required")
    if ttl <= timedelta(0):
        raise ValueError("Expiry must be in the future")
    if ttl > timedelta(hours=settings.token_max_ttl_hours):
        raise ValueError(
            f"Expiry cannot exceed {settings.token_max_ttl_hours} hours"
        )
    if max_uses is not None and max_uses < 1:
        raise ValueError("max_uses must be at least 1")

    child = await db.get(Child, child_id)
    if child is None:
        raise Unauthorized("unknown child")

    await authorize(
        db,
        requester_id,
        child.owner_id,
        child_id,
        DataCategory.ACCESS,
        Action.MANAGE,
        session=session,
        ip_address=ip_address,
        now=now,
    )

    not_delegable = requested - TOKEN_GRANTABLE
    held = await held_permissions(db, requester_id, child.owner_id, child_id)
    excess = requested - held
    if not_delegable or excess:
        await _audit_issue_denied(
            db, requester_id, child, "excess scope", session, ip_address, now
        )
        raise ExcessScope(
            details={
                "not_delegable": sorted(p.value for p in not_delegable),
                "not_held": sorted(p.value for p in excess),
            }
        )

    if is_broad(requested, ttl, max_uses):
        if session is None or not await consume_elevation(db, session.id, now=now):
            await _audit_issue_denied(
                db, requester_id, child, "elevation required", session, ip_address, now
            )
            raise ElevationRequired()

    raw_token = generate_capability_secret()
    token = CapabilityToken(
        owner_id=child.owner_id,
        child_id=child_id,
        created_by=requester_id,
        provider_name=provider_name,
        provider_email=provider_email,
        notes=notes,
        prefix=display_prefix(raw_token),
        token_hash=hash_capability_secret(raw_token),
        permissions=sorted(p.value for p in requested),
        expires_at=now + ttl,
        max_access_count=max_uses,
        access_count=0,
        is_active=True,
        created_at=now,
    )
    db.add(token)
    await db.flush()

    await append_entry(
        db,
        owner_id=child.owner_id,
        actor_id=requester_id,
        actor_type=(
            ActorType.OWNER if requester_id == child.owner_id else ActorType.FAMILY_MEMBER
        ),
        action="token.issue",
        resource_type="capability_token",
        resource_id=str(token.id),
        child_id=child_id,
        outcome=AccessOutcome.GRANTED,
        reason=f"issued to {provider_name}",
        session_id=session.id if session is not None else None,
        ip_address=ip_address,
        now=now,
    )

    logger.info(
        "Provider access link issued",
        token_id=str(token.id),
        child_id=str(child_id),
        permissions=token.permissions,
        expires_at=token.expires_at.isoformat(),
    )
    return token, raw_token


async def validate_token(
    db: AsyncSession, raw_token: str, *, now: datetime | None = None
) -> TokenValidation:
    """Check a token without consuming a use."""
    now = now or datetime.now(UTC)
    token = await _find_by_raw(db, raw_token)
    if token is None:
        return TokenValidation(valid=False, reason="unknown token")

    reason = token.invalid_reason(now)
    if reason is not None:
        return TokenValidation(valid=False, reason=reason, token=token)
    return TokenValidation(valid=True, token=token)


async def consume_token(
    db: AsyncSession,
    raw_token: str,
    *,
    now: datetime | None = None,
    ip_address: str | None = None,
) -> TokenConsumption:
    """Use one access of a token. Audited whether or not it succeeds.

    A token whose issuer no longer holds any of its permissions is refused
    without using up an access.
    """
    now = now or datetime.now(UTC)
    token = await _find_by_raw(db, raw_token)

    if token is None:
        await append_entry(
            db,
            owner_id=None,
            actor_id=token_actor(None),
            actor_type=ActorType.HEALTHCARE_PROVIDER,
            action="token.consume",
            resource_type="capability_token",
            outcome=AccessOutcome.DENIED,
            reason="unknown token",
            ip_address=ip_address,
            now=now,
        )
        logger.warning("Provider access with unknown token", ip_address=ip_address)
        return TokenConsumption(valid=False, reason="unknown token")

    # A link never outlives its issuer's own access
    permissions = await token_permissions(db, token)
    if not permissions and token.invalid_reason(now) is None:
        reason = "issuer no longer holds access"
        await append_entry(
            db,
            owner_id=token.owner_id,
            actor_id=token_actor(token.id),
            actor_type=ActorType.HEALTHCARE_PROVIDER,
            action="token.consume",
            resource_type="capability_token",
            resource_id=str(token.id),
            child_id=token.child_id,
            outcome=AccessOutcome.DENIED,
            reason=reason,
            ip_address=ip_address,
            now=now,
        )
        logger.info("Provider access denied", token_id=str(token.id), reason=reason)
        return TokenConsumption(valid=False, reason=reason, token=token)

    result = await db.execute(
        update(CapabilityToken)
        .where(
            CapabilityToken.id == token.id,
            CapabilityToken.is_active.is_(True),
            CapabilityToken.expires_at > now,
            or_(
                CapabilityToken.max_access_count.is_(None),
                CapabilityToken.access_count < CapabilityToken.max_access_count,
            ),
        )
        .values(
            access_count=CapabilityToken.access_count + 1,
            last_accessed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    consumed = result.rowcount == 1
    await db.refresh(token)

    reason = None if consumed else (token.invalid_reason(now) or "token invalid")
    await append_entry(
        db,
        owner_id=token.owner_id,
        actor_id=token_actor(token.id),
        actor_type=ActorType.HEALTHCARE_PROVIDER,
        action="token.consume",
        resource_type="capability_token",
        resource_id=str(token.id),
        child_id=token.child_id,
        outcome=AccessOutcome.GRANTED if consumed else AccessOutcome.DENIED,
        reason="access granted" if consumed else reason,
        ip_address=ip_address,
        now=now,
    )

    if not consumed:
        logger.info("Provider access denied", token_id=str(token.id), reason=reason)
        return TokenConsumption(valid=False, reason=reason, token=token)
    return TokenConsumption(valid=True, token=token, permissions=permissions)


async def revoke_token(
    db: AsyncSession,
    token_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> CapabilityToken:
    """Deactivate a token for good. Revoking twice is a no-op.

    Raises:
        ValueError: If the token does not exist.
        Unauthorized: If the actor may not manage access for the child.
    """
    now = now or datetime.now(UTC)
    token = await db.get(CapabilityToken, token_id)
    if token is None:
        raise ValueError("Access link not found")

    await authorize(
        db,
        actor_id,
        token.owner_id,
        token.child_id,
        DataCategory.ACCESS,
        Action.MANAGE,
        session=session,
        ip_address=ip_address,
        now=now,
    )

    result = await db.execute(
        update(CapabilityToken)
        .where(CapabilityToken.id == token_id, CapabilityToken.is_active.is_(True))
        .values(is_active=False, revoked_at=now, revoked_by=actor_id)
        .execution_options(synchronize_session=False)
    )
    revoked = result.rowcount == 1
    await db.refresh(token)

    await append_entry(
        db,
        owner_id=token.owner_id,
        actor_id=actor_id,
        actor_type=(
            ActorType.OWNER if actor_id == token.owner_id else ActorType.FAMILY_MEMBER
        ),
        action="token.revoke",
        resource_type="capability_token",
        resource_id=str(token.id),
        child_id=token.child_id,
        outcome=AccessOutcome.GRANTED,
        reason="revoked" if revoked else "already revoked",
        session_id=session.id if session is not None else None,
        ip_address=ip_address,
        now=now,
    )
    if revoked:
        logger.info("Provider access link revoked", token_id=str(token_id))
    return token


async def list_tokens(
    db: AsyncSession,
    requester_id: uuid.UUID,
    child_id: uuid.UUID,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> list[CapabilityToken]:
    """All tokens issued for a child, newest first."""
    child = await db.get(Child, child_id)
    if child is None:
        raise Unauthorized("unknown child")

    await authorize(
        db,
        requester_id,
        child.owner_id,
        child_id,
        DataCategory.ACCESS,
        Action.VIEW,
        session=session,
        ip_address=ip_address,
    )
    result = await db.execute(
        select(CapabilityToken)
        .where(CapabilityToken.child_id == child_id)
        .order_by(CapabilityToken.created_at.desc())
    )
    return list(result.scalars().all())
