"""Family access grants.

A grant gives a user a role inside an owner's family. Grants are never
reactivated: revoking sets ``revoked_at`` once, and restoring access means
creating a new grant. Creating or revoking a grant needs an elevated session
when called on behalf of an HTTP request.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core import permission_cache
from caregate.core.errors import ConfigurationConflict, ElevationRequired, ExcessScope
from caregate.core.permissions import GRANTABLE_ROLES, Action, DataCategory, Role, role_permissions
from caregate.logging_config import get_logger
from caregate.models.access_log import AccessOutcome, ActorType
from caregate.models.family_access_grant import FamilyAccessGrant
from caregate.models.user import User
from caregate.models.user_session import UserSession
from caregate.services.audit_service import append_entry
from caregate.services.permission_resolver import (
    authorize,
    get_active_grant,
    held_permissions,
)
from caregate.services.privacy_settings import purge_user_from_overrides
from caregate.services.session_manager import consume_elevation

logger = get_logger(__name__)


async def _authorize_role_change(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    role: Role,
    session: UserSession | None,
    ip_address: str | None,
    now: datetime,
) -> None:
    """Manage-access plus: a delegate cannot hand out more than it holds."""
    await authorize(
        db,
        requester_id,
        owner_id,
        None,
        DataCategory.ACCESS,
        Action.MANAGE,
        session=session,
        ip_address=ip_address,
        now=now,
    )
    if requester_id != owner_id:
        held = await held_permissions(db, requester_id, owner_id)
        if not role_permissions(role) <= held:
            raise ExcessScope()

    if session is not None and not await consume_elevation(db, session.id, now=now):
        raise ElevationRequired()


async def _audit(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    action: str,
    grant: FamilyAccessGrant,
    reason: str,
    session: UserSession | None,
    ip_address: str | None,
    now: datetime,
) -> None:
    await append_entry(
        db,
        owner_id=owner_id,
        actor_id=requester_id,
        actor_type=ActorType.OWNER if requester_id == owner_id else ActorType.FAMILY_MEMBER,
        action=action,
        resource_type=DataCategory.ACCESS.value,
        resource_id=str(grant.id),
        outcome=AccessOutcome.GRANTED,
        reason=reason,
        session_id=session.id if session is not None else None,
        ip_address=ip_address,
        now=now,
    )


async def create_grant(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    user_id: uuid.UUID,
    role: Role,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> FamilyAccessGrant:
    """Give ``user_id`` a role in the owner's family.

    Raises:
        ValueError: If the role is not grantable, the user is the owner, or
            the user does not exist.
        Unauthorized: If the requester may not manage access.
        ExcessScope: If a delegate grants a role broader than its own.
        ElevationRequired: If the session has no unused elevation.
        ConfigurationConflict: If the user already has an active grant.
    """
    now = now or datetime.now(UTC)
    if role not in GRANTABLE_ROLES:
        raise ValueError(f"Role {role.value} cannot be granted")
    if user_id == owner_id:
        raise ValueError("The family owner cannot be granted a role")

    await _authorize_role_change(db, requester_id, owner_id, role, session, ip_address, now)

    if await db.get(User, user_id) is None:
        raise ValueError("User not found")
    if await get_active_grant(db, owner_id, user_id) is not None:
        raise ConfigurationConflict("User already has access; revoke it first")

    grant = FamilyAccessGrant(
        owner_id=owner_id,
        user_id=user_id,
        role=role,
        granted_by=requester_id,
        granted_at=now,
    )
    db.add(grant)
    await db.flush()

    await permission_cache.invalidate_family(owner_id, db)
    await _audit(
        db,
        requester_id,
        owner_id,
        "grant.create",
        grant,
        f"granted role {role.value}",
        session,
        ip_address,
        now,
    )
    logger.info(
        "Family access granted",
        owner_id=str(owner_id),
        user_id=str(user_id),
        role=role.value,
    )
    return grant


async def revoke_grant(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    grant_id: uuid.UUID,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> FamilyAccessGrant:
    """Revoke a grant for good and purge the user from child overrides.

    Revoking an already revoked grant changes nothing.

    Raises:
        ValueError: If the grant does not belong to the family.
    """
    now = now or datetime.now(UTC)
    grant = await db.get(FamilyAccessGrant, grant_id)
    if grant is None or grant.owner_id != owner_id:
        raise ValueError("Grant not found")

    await _authorize_role_change(
        db, requester_id, owner_id, grant.role, session, ip_address, now
    )

    result = await db.execute(
        update(FamilyAccessGrant)
        .where(FamilyAccessGrant.id == grant_id, FamilyAccessGrant.revoked_at.is_(None))
        .values(revoked_at=now, revoked_by=requester_id)
        .execution_options(synchronize_session=False)
    )
    revoked = result.rowcount == 1
    await db.refresh(grant)

    if revoked:
        await purge_user_from_overrides(db, owner_id, grant.user_id)
        await permission_cache.invalidate_family(owner_id, db)
        logger.info(
            "Family access revoked",
            owner_id=str(owner_id),
            user_id=str(grant.user_id),
        )

    await _audit(
        db,
        requester_id,
        owner_id,
        "grant.revoke",
        grant,
        "revoked" if revoked else "already revoked",
        session,
        ip_address,
        now,
    )
    return grant


async def list_grants(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    *,
    include_revoked: bool = False,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> list[FamilyAccessGrant]:
    await authorize(
        db,
        requester_id,
        owner_id,
        None,
        DataCategory.ACCESS,
        Action.VIEW,
        session=session,
        ip_address=ip_address,
    )
    query = select(FamilyAccessGrant).where(FamilyAccessGrant.owner_id == owner_id)
    if not include_revoked:
        query = query.where(FamilyAccessGrant.revoked_at.is_(None))
    result = await db.execute(query.order_by(FamilyAccessGrant.granted_at))
    return list(result.scalars().all())
