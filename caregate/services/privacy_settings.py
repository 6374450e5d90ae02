"""Family and child privacy settings.

Reads and writes are authorised through the permission resolver. Every write
bumps the row's version with a conditional UPDATE, rejects stale writers with
ConfigurationConflict, and invalidates the family's cached permissions before
returning.
"""

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core import permission_cache
from caregate.core.errors import ConfigurationConflict, Unauthorized
from caregate.core.permissions import Action, DataCategory, Permission, role_permissions
from caregate.logging_config import get_logger
from caregate.models.access_log import AccessOutcome, ActorType
from caregate.models.privacy_settings import (
    ChildPrivacySettings,
    FamilyPrivacySettings,
    default_communications,
)
from caregate.models.user import Child
from caregate.models.user_session import UserSession
from caregate.schemas.privacy import (
    ChildPrivacySettingsUpdate,
    FamilyPrivacySettingsUpdate,
    RetentionPolicy,
)
from caregate.services.audit_service import append_entry
from caregate.services.conflict_resolver import (
    CommunicationResolution,
    RetentionResolution,
    resolve_communication,
    resolve_retention,
)
from caregate.services.permission_resolver import authorize, get_active_grant

logger = get_logger(__name__)

_NARROWING_FIELDS = (
    "restricted_access",
    "allowed_users",
    "custom_permissions",
    "communication_restrictions",
    "data_retention_override",
)


async def _audit_write(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    action: str,
    reason: str,
    *,
    child_id: uuid.UUID | None = None,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> None:
    await append_entry(
        db,
        owner_id=owner_id,
        actor_id=requester_id,
        actor_type=ActorType.OWNER if requester_id == owner_id else ActorType.FAMILY_MEMBER,
        action=action,
        resource_type=DataCategory.PRIVACY_SETTINGS.value,
        resource_id=str(child_id) if child_id else str(owner_id),
        child_id=child_id,
        outcome=AccessOutcome.GRANTED,
        reason=reason,
        session_id=session.id if session is not None else None,
        ip_address=ip_address,
    )


async def _get_child(db: AsyncSession, child_id: uuid.UUID) -> Child:
    child = await db.get(Child, child_id)
    if child is None:
        raise Unauthorized("unknown child")
    return child


async def _load_family(db: AsyncSession, owner_id: uuid.UUID) -> FamilyPrivacySettings:
    """Family settings row, created with defaults on first access."""
    result = await db.execute(
        select(FamilyPrivacySettings)
        .where(FamilyPrivacySettings.owner_id == owner_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = FamilyPrivacySettings(owner_id=owner_id, version=1)
        db.add(row)
        await db.flush()
    return row


async def load_child_settings(
    db: AsyncSession, child_ids: Iterable[uuid.UUID]
) -> dict[uuid.UUID, ChildPrivacySettings]:
    child_ids = list(child_ids)
    if not child_ids:
        return {}
    result = await db.execute(
        select(ChildPrivacySettings)
        .where(ChildPrivacySettings.child_id.in_(child_ids))
        .execution_options(populate_existing=True)
    )
    return {row.child_id: row for row in result.scalars().all()}


async def get_family_settings(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> FamilyPrivacySettings:
    await authorize(
        db,
        requester_id,
        owner_id,
        None,
        DataCategory.PRIVACY_SETTINGS,
        Action.VIEW,
        session=session,
        ip_address=ip_address,
    )
    return await _load_family(db, owner_id)


async def update_family_settings(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    changes: FamilyPrivacySettingsUpdate,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> FamilyPrivacySettings:
    """Apply a partial update to the family document.

    Raises:
        Unauthorized: If the requester may not edit privacy settings.
        ConfigurationConflict: If ``expected_version`` is stale.
    """
    await authorize(
        db,
        requester_id,
        owner_id,
        None,
        DataCategory.PRIVACY_SETTINGS,
        Action.EDIT,
        session=session,
        ip_address=ip_address,
    )
    row = await _load_family(db, owner_id)
    if changes.expected_version is not None and changes.expected_version != row.version:
        raise ConfigurationConflict("Privacy settings were changed by someone else")

    values: dict[str, Any] = {}
    if changes.data_sharing is not None:
        values["data_sharing"] = changes.data_sharing.model_dump()
    if changes.communications is not None:
        values["communications"] = changes.communications.model_dump()
    if changes.data_retention is not None:
        values["data_retention"] = changes.data_retention.model_dump()

    result = await db.execute(
        update(FamilyPrivacySettings)
        .where(
            FamilyPrivacySettings.id == row.id,
            FamilyPrivacySettings.version == row.version,
        )
        .values(**values, version=row.version + 1, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConfigurationConflict("Privacy settings were changed by someone else")
    await db.refresh(row)

    await permission_cache.invalidate_family(owner_id, db)
    await _audit_write(
        db,
        requester_id,
        owner_id,
        "privacy_settings.family_update",
        f"updated {', '.join(sorted(values)) or 'nothing'}",
        session=session,
        ip_address=ip_address,
    )
    logger.info(
        "Family privacy settings updated",
        owner_id=str(owner_id),
        version=row.version,
    )
    return row


async def get_child_settings(
    db: AsyncSession,
    requester_id: uuid.UUID,
    child_id: uuid.UUID,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> ChildPrivacySettings | None:
    """The child's override, or None if it inherits everything."""
    child = await _get_child(db, child_id)
    await authorize(
        db,
        requester_id,
        child.owner_id,
        child_id,
        DataCategory.PRIVACY_SETTINGS,
        Action.VIEW,
        session=session,
        ip_address=ip_address,
    )
    return (await load_child_settings(db, [child_id])).get(child_id)


async def _check_child_update(
    db: AsyncSession,
    owner_id: uuid.UUID,
    current: ChildPrivacySettings | None,
    changes: ChildPrivacySettingsUpdate,
) -> dict[str, Any]:
    """Validate a child update and return the full resulting field values."""
    current_version = current.version if current is not None else 0
    if changes.expected_version is not None and changes.expected_version != current_version:
        raise ConfigurationConflict("Privacy settings were changed by someone else")

    provided = changes.model_fields_set
    narrowing = [name for name in _NARROWING_FIELDS if name in provided]

    if changes.inherit_from_parent is True:
        restricting = (
            changes.restricted_access
            or changes.allowed_users
            or changes.custom_permissions
            or changes.communication_restrictions
            or changes.data_retention_override is not None
        )
        if restricting:
            raise ConfigurationConflict(
                "A child that inherits family settings cannot also set its own restrictions"
            )

    state: dict[str, Any] = {
        "inherit_from_parent": current.inherit_from_parent if current else True,
        "restricted_access": current.restricted_access if current else False,
        "allowed_users": list(current.allowed_users or []) if current else [],
        "custom_permissions": dict(current.custom_permissions or {}) if current else {},
        "communication_restrictions": (
            list(current.communication_restrictions or []) if current else []
        ),
        "data_retention_override": current.data_retention_override if current else None,
    }

    if changes.inherit_from_parent is not None:
        state["inherit_from_parent"] = changes.inherit_from_parent
    elif narrowing:
        state["inherit_from_parent"] = False

    if changes.inherit_from_parent is True:
        # Inheriting clears every child-specific restriction
        state.update(
            restricted_access=False,
            allowed_users=[],
            custom_permissions={},
            communication_restrictions=[],
            data_retention_override=None,
        )

    if changes.restricted_access is not None:
        state["restricted_access"] = changes.restricted_access
    if changes.allowed_users is not None:
        state["allowed_users"] = sorted({str(u) for u in changes.allowed_users})
    if changes.custom_permissions is not None:
        state["custom_permissions"] = {
            str(user_id): sorted({p.value for p in perms})
            for user_id, perms in changes.custom_permissions.items()
        }
    if changes.communication_restrictions is not None:
        state["communication_restrictions"] = sorted(
            {c.value for c in changes.communication_restrictions}
        )
    if "data_retention_override" in provided:
        override = changes.data_retention_override
        state["data_retention_override"] = (
            override.model_dump(exclude_none=True) if override is not None else None
        )

    for user_key, perms in state["custom_permissions"].items():
        user_id = uuid.UUID(user_key)
        if user_id == owner_id:
            raise ConfigurationConflict("The family owner cannot be given custom permissions")
        grant = await get_active_grant(db, owner_id, user_id)
        if grant is None:
            raise ConfigurationConflict(
                "Custom permissions reference a user without family access"
            )
        if not {Permission(p) for p in perms} <= role_permissions(grant.role):
            raise ConfigurationConflict("Custom permissions exceed the user's role")
        if state["restricted_access"] and user_key not in state["allowed_users"]:
            raise ConfigurationConflict(
                "Custom permissions given to a user excluded by restricted access"
            )

    return state


async def update_child_settings(
    db: AsyncSession,
    requester_id: uuid.UUID,
    child_id: uuid.UUID,
    changes: ChildPrivacySettingsUpdate,
    *,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> ChildPrivacySettings:
    """Create or update a child's override.

    Setting any restriction without ``inherit_from_parent`` turns inheritance
    off for the child.

    Raises:
        Unauthorized: If the requester may not edit settings for the child.
        ConfigurationConflict: If the write is stale or self-contradictory.
    """
    child = await _get_child(db, child_id)
    await authorize(
        db,
        requester_id,
        child.owner_id,
        child_id,
        DataCategory.PRIVACY_SETTINGS,
        Action.EDIT,
        session=session,
        ip_address=ip_address,
    )

    current = (await load_child_settings(db, [child_id])).get(child_id)
    state = await _check_child_update(db, child.owner_id, current, changes)

    if current is None:
        current = ChildPrivacySettings(
            child_id=child_id, owner_id=child.owner_id, version=1, **state
        )
        db.add(current)
        await db.flush()
    else:
        result = await db.execute(
            update(ChildPrivacySettings)
            .where(
                ChildPrivacySettings.id == current.id,
                ChildPrivacySettings.version == current.version,
            )
            .values(**state, version=current.version + 1, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConfigurationConflict("Privacy settings were changed by someone else")
        await db.refresh(current)

    await permission_cache.invalidate_family(child.owner_id, db)
    await _audit_write(
        db,
        requester_id,
        child.owner_id,
        "privacy_settings.child_update",
        "child override updated",
        child_id=child_id,
        session=session,
        ip_address=ip_address,
    )
    logger.info(
        "Child privacy settings updated",
        child_id=str(child_id),
        inherit_from_parent=current.inherit_from_parent,
        restricted_access=current.restricted_access,
        version=current.version,
    )
    return current


async def remove_child_override(
    db: AsyncSession,
    requester_id: uuid.UUID,
    child_id: uuid.UUID,
    *,
    expected_version: int | None = None,
    session: UserSession | None = None,
    ip_address: str | None = None,
) -> bool:
    """Drop a child's override so it inherits the family settings again.

    Returns False if the child had no override.
    """
    child = await _get_child(db, child_id)
    await authorize(
        db,
        requester_id,
        child.owner_id,
        child_id,
        DataCategory.PRIVACY_SETTINGS,
        Action.EDIT,
        session=session,
        ip_address=ip_address,
    )

    query = delete(ChildPrivacySettings).where(ChildPrivacySettings.child_id == child_id)
    if expected_version is not None:
        query = query.where(ChildPrivacySettings.version == expected_version)
    result = await db.execute(query.execution_options(synchronize_session=False))
    removed = result.rowcount == 1

    if not removed and expected_version is not None:
        if (await load_child_settings(db, [child_id])).get(child_id) is not None:
            raise ConfigurationConflict("Privacy settings were changed by someone else")

    if removed:
        await permission_cache.invalidate_family(child.owner_id, db)
        await _audit_write(
            db,
            requester_id,
            child.owner_id,
            "privacy_settings.child_remove",
            "child override removed",
            child_id=child_id,
            session=session,
            ip_address=ip_address,
        )
    return removed


async def purge_user_from_overrides(
    db: AsyncSession, owner_id: uuid.UUID, user_id: uuid.UUID
) -> int:
    """Remove a user from every child override in the family.

    Called when the user's grant is revoked so a later grant starts clean.
    Returns the number of overrides changed.
    """
    result = await db.execute(
        select(ChildPrivacySettings)
        .where(ChildPrivacySettings.owner_id == owner_id)
        .execution_options(populate_existing=True)
    )
    user_key = str(user_id)
    changed = 0
    for row in result.scalars().all():
        allowed = [u for u in (row.allowed_users or []) if u != user_key]
        custom = {
            k: v for k, v in (row.custom_permissions or {}).items() if k != user_key
        }
        if allowed == (row.allowed_users or []) and custom == (row.custom_permissions or {}):
            continue
        row.allowed_users = allowed
        row.custom_permissions = custom
        row.version = row.version + 1
        changed += 1

    if changed:
        await db.flush()
        logger.info(
            "Purged revoked user from child overrides",
            owner_id=str(owner_id),
            user_id=user_key,
            overrides=changed,
        )
    return changed


async def _family_policy(db: AsyncSession, owner_id: uuid.UUID) -> RetentionPolicy:
    result = await db.execute(
        select(FamilyPrivacySettings).where(FamilyPrivacySettings.owner_id == owner_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return RetentionPolicy()
    return RetentionPolicy.model_validate(row.data_retention)


async def effective_retention(
    db: AsyncSession, owner_id: uuid.UUID, child_ids: Iterable[uuid.UUID]
) -> RetentionResolution:
    """Strictest retention policy applying to an operation over ``child_ids``."""
    child_ids = list(child_ids)
    return resolve_retention(
        await _family_policy(db, owner_id),
        child_ids,
        await load_child_settings(db, child_ids),
    )


async def communication_allowed(
    db: AsyncSession,
    owner_id: uuid.UUID,
    child_ids: Iterable[uuid.UUID],
    communication_type: str,
) -> CommunicationResolution:
    """Whether a communication about ``child_ids`` may be sent.

    The family preference must allow the type and no overriding child may
    block it.
    """
    child_ids = list(child_ids)
    result = await db.execute(
        select(FamilyPrivacySettings).where(FamilyPrivacySettings.owner_id == owner_id)
    )
    family = result.scalar_one_or_none()
    preferences = family.communications if family is not None else default_communications()
    if not preferences.get(communication_type, False):
        return CommunicationResolution(allowed=False)

    return resolve_communication(
        child_ids, await load_child_settings(db, child_ids), communication_type
    )
