"""Central grant/deny decision for identity- and token-based requests.

A decision is a function of its explicit inputs plus the settings store:
who is asking, in which family, for which child, to do what. Every call to
``resolve`` or ``resolve_token_request`` appends exactly one audit entry
before returning, granted or denied. If that write fails the call raises
AuditWriteError and nothing is granted.

Resolution order for an identity-based request:
1. The presented session must still be live.
2. A child must belong to the family being asked about.
3. The family owner is always granted.
4. Anyone else needs an active grant whose role includes the required
   permission.
5. The child's privacy override may narrow that role set further.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core import permission_cache
from caregate.core.errors import Unauthenticated, Unauthorized
from caregate.core.permissions import (
    ALL_PERMISSIONS,
    Action,
    DataCategory,
    Permission,
    Role,
    required_permission,
    role_permissions,
)
from caregate.core.security import hash_capability_secret
from caregate.logging_config import get_logger
from caregate.models.access_log import AccessOutcome, ActorType
from caregate.models.capability_token import CapabilityToken
from caregate.models.family_access_grant import FamilyAccessGrant
from caregate.models.privacy_settings import ChildPrivacySettings
from caregate.models.user import Child
from caregate.models.user_session import UserSession
from caregate.services.audit_service import append_entry, token_actor
from caregate.services.conflict_resolver import effective_permissions
from caregate.services.session_manager import is_live

logger = get_logger(__name__)


@dataclass(frozen=True)
class Decision:
    granted: bool
    reason: str
    required_permission: Permission | None = None
    restrictive_child_id: uuid.UUID | None = None


async def get_active_grant(
    db: AsyncSession, owner_id: uuid.UUID, user_id: uuid.UUID
) -> FamilyAccessGrant | None:
    result = await db.execute(
        select(FamilyAccessGrant).where(
            FamilyAccessGrant.owner_id == owner_id,
            FamilyAccessGrant.user_id == user_id,
            FamilyAccessGrant.revoked_at.is_(None),
        )
    )
    return result.scalars().first()


async def _load_snapshot(
    db: AsyncSession,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None,
) -> dict:
    """Role, held permissions and the narrowing child, cached per family.

    Snapshot layout:
        role: role value, or None without an active grant
        child_known: False if child_id is not in this family
        held: permission values after child narrowing
        restrictive_child_id: child that narrowed the set, if any
    """
    generation = await permission_cache.current_generation(owner_id)
    cached = await permission_cache.get_snapshot(generation, actor_id, owner_id, child_id)
    if cached is not None:
        return cached

    child_known = True
    if child_id is not None:
        child = await db.get(Child, child_id)
        child_known = child is not None and child.owner_id == owner_id

    if actor_id == owner_id:
        role: Role | None = Role.OWNER
    else:
        grant = await get_active_grant(db, owner_id, actor_id)
        role = grant.role if grant else None

    held = role_permissions(role) if role else frozenset()
    restrictive_child_id = None
    if role is not None and role != Role.OWNER and child_id is not None and child_known:
        result = await db.execute(
            select(ChildPrivacySettings).where(ChildPrivacySettings.child_id == child_id)
        )
        override = result.scalar_one_or_none()
        resolution = effective_permissions(
            actor_id,
            [child_id],
            held,
            {child_id: override} if override is not None else {},
        )
        held = resolution.permissions
        restrictive_child_id = resolution.restrictive_child_id

    snapshot = {
        "role": role.value if role else None,
        "child_known": child_known,
        "held": sorted(p.value for p in held),
        "restrictive_child_id": str(restrictive_child_id) if restrictive_child_id else None,
    }
    await permission_cache.put_snapshot(generation, actor_id, owner_id, child_id, snapshot)
    return snapshot


async def held_permissions(
    db: AsyncSession,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None = None,
) -> frozenset[Permission]:
    """Everything ``actor_id`` may currently do in the family (or for the child)."""
    snapshot = await _load_snapshot(db, actor_id, owner_id, child_id)
    if not snapshot["child_known"]:
        return frozenset()
    if snapshot["role"] == Role.OWNER.value:
        return ALL_PERMISSIONS
    return frozenset(Permission(value) for value in snapshot["held"])


async def resolve(
    db: AsyncSession,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None,
    data_category: DataCategory,
    action: Action,
    *,
    session: UserSession | None = None,
    dry_run: bool = False,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> Decision:
    """Decide whether ``actor_id`` may perform ``action`` on ``data_category``.

    Args:
        db: Database session; the audit entry is flushed into it
        actor_id: Authenticated user making the request
        owner_id: Family the request is answered in
        child_id: Child the data belongs to, or None for family-level data
        data_category: Kind of resource
        action: Operation on it
        session: Session the actor authenticated with, checked for liveness
        dry_run: Marks the audit entry as a simulated check
        ip_address: Client address recorded in the audit entry
        now: Evaluation time (defaults to the current UTC time)

    Returns:
        The decision with a human-readable reason.

    Raises:
        Unauthenticated: If the supplied session is no longer live.
        AuditWriteError: If the audit entry could not be written.
    """
    now = now or datetime.now(UTC)
    action_name = f"{data_category.value}.{action.value}"
    if dry_run:
        action_name = f"{action_name}.dry_run"
    actor_type = ActorType.OWNER if actor_id == owner_id else ActorType.FAMILY_MEMBER

    async def audit(decision: Decision) -> Decision:
        await append_entry(
            db,
            owner_id=owner_id,
            actor_id=actor_id,
            actor_type=actor_type,
            action=action_name,
            resource_type=data_category.value,
            resource_id=str(child_id) if child_id else None,
            child_id=child_id,
            outcome=AccessOutcome.GRANTED if decision.granted else AccessOutcome.DENIED,
            reason=decision.reason,
            session_id=session.id if session is not None else None,
            ip_address=ip_address,
            now=now,
        )
        return decision

    if session is not None and (session.user_id != actor_id or not is_live(session, now)):
        await audit(Decision(granted=False, reason="session expired or invalid"))
        raise Unauthenticated("Session expired or invalid")

    needed = required_permission(data_category, action)
    snapshot = await _load_snapshot(db, actor_id, owner_id, child_id)

    if not snapshot["child_known"]:
        return await audit(Decision(False, "unknown child", needed))

    if actor_id == owner_id:
        return await audit(Decision(True, "owner", needed))

    role = snapshot["role"]
    if role is None:
        return await audit(Decision(False, "no grant", needed))

    if needed is None:
        return await audit(Decision(False, "unsupported operation"))

    if needed not in role_permissions(Role(role)):
        return await audit(
            Decision(False, f"role does not include {needed.value}", needed)
        )

    if needed.value not in snapshot["held"]:
        restrictive = snapshot["restrictive_child_id"]
        return await audit(
            Decision(
                False,
                "restricted by child privacy settings",
                needed,
                uuid.UUID(restrictive) if restrictive else child_id,
            )
        )

    return await audit(Decision(True, f"granted by role {role}", needed))


async def authorize(
    db: AsyncSession,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None,
    data_category: DataCategory,
    action: Action,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> Decision:
    """``resolve`` that raises Unauthorized on denial."""
    decision = await resolve(
        db,
        actor_id,
        owner_id,
        child_id,
        data_category,
        action,
        session=session,
        ip_address=ip_address,
        now=now,
    )
    if not decision.granted:
        raise Unauthorized(decision.reason)
    return decision


async def token_permissions(
    db: AsyncSession, token: CapabilityToken
) -> frozenset[Permission]:
    """The token's permissions, bounded by what its issuer still holds."""
    issuer_held = await held_permissions(db, token.created_by, token.owner_id, token.child_id)
    return frozenset(Permission(value) for value in token.permissions) & issuer_held


async def resolve_token_request(
    db: AsyncSession,
    raw_token: str,
    child_id: uuid.UUID,
    data_category: DataCategory,
    action: Action,
    *,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> Decision:
    """Decide a request made with a capability token.

    The token is checked but not consumed. Consumption happens once per
    provider visit through the capability token service.
    """
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(CapabilityToken).where(
            CapabilityToken.token_hash == hash_capability_secret(raw_token)
        )
    )
    token = result.scalar_one_or_none()
    needed = required_permission(data_category, action)

    async def audit(decision: Decision) -> Decision:
        await append_entry(
            db,
            owner_id=token.owner_id if token else None,
            actor_id=token_actor(token.id if token else None),
            actor_type=ActorType.HEALTHCARE_PROVIDER,
            action=f"{data_category.value}.{action.value}",
            resource_type=data_category.value,
            resource_id=str(child_id),
            child_id=child_id,
            outcome=AccessOutcome.GRANTED if decision.granted else AccessOutcome.DENIED,
            reason=decision.reason,
            ip_address=ip_address,
            now=now,
        )
        return decision

    if token is None:
        return await audit(Decision(False, "token invalid: unknown token", needed))

    invalid = token.invalid_reason(now)
    if invalid is not None:
        return await audit(Decision(False, f"token invalid: {invalid}", needed))

    if token.child_id != child_id:
        return await audit(Decision(False, "token not valid for this child", needed))

    if needed is None:
        return await audit(Decision(False, "unsupported operation"))

    if needed not in await token_permissions(db, token):
        return await audit(
            Decision(False, f"token does not include {needed.value}", needed)
        )

    return await audit(Decision(True, "granted by provider link", needed))
