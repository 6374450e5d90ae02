"""Most-restrictive-wins resolution of privacy settings across children.

Pure functions over already-loaded child overrides. Nothing here touches the
database or the clock, so results depend only on the arguments.

Rules:
1. A child without an override, or one that inherits from the family,
   contributes the requested set unchanged.
2. A non-inheriting, restricted child contributes nothing to an actor not in
   its allowed users.
3. A non-inheriting child with custom permissions for the actor contributes
   those permissions intersected with the requested set.
4. Any other non-inheriting child leaves the requested set as is.
5. Several children combine by intersection; the child with the smallest
   contribution is reported as the most restrictive.
"""

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from caregate.core.permissions import Permission
from caregate.models.privacy_settings import ChildPrivacySettings
from caregate.schemas.privacy import RetentionPolicy

ChildSettingsMap = Mapping[uuid.UUID, ChildPrivacySettings]


@dataclass(frozen=True)
class PermissionResolution:
    """Effective permissions after child overrides are applied."""

    permissions: frozenset[Permission]
    restrictive_child_id: uuid.UUID | None = None


@dataclass(frozen=True)
class CommunicationResolution:
    allowed: bool
    blocking_child_ids: tuple[uuid.UUID, ...] = ()


@dataclass(frozen=True)
class RetentionResolution:
    policy: RetentionPolicy
    source_child_id: uuid.UUID | None = None


def _overriding(
    child_ids: Iterable[uuid.UUID], child_settings: ChildSettingsMap
) -> list[tuple[uuid.UUID, ChildPrivacySettings]]:
    """Children whose override replaces the family defaults."""
    result = []
    for child_id in child_ids:
        override = child_settings.get(child_id)
        if override is not None and not override.inherit_from_parent:
            result.append((child_id, override))
    return result


def child_contribution(
    actor_id: uuid.UUID,
    requested: frozenset[Permission],
    override: ChildPrivacySettings | None,
) -> frozenset[Permission]:
    """What a single child lets ``actor_id`` keep out of ``requested``."""
    if override is None or override.inherit_from_parent:
        return requested

    actor = str(actor_id)
    if override.restricted_access and actor not in (override.allowed_users or []):
        return frozenset()

    custom = (override.custom_permissions or {}).get(actor)
    if custom is not None:
        return requested & {Permission(value) for value in custom}

    return requested


def effective_permissions(
    actor_id: uuid.UUID,
    child_ids: Iterable[uuid.UUID],
    requested: frozenset[Permission],
    child_settings: ChildSettingsMap,
) -> PermissionResolution:
    """Intersect ``requested`` with every child's contribution.

    With no children the requested set is returned unchanged.
    """
    effective = requested
    restrictive_child_id: uuid.UUID | None = None
    smallest: int | None = None

    for child_id in child_ids:
        contribution = child_contribution(
            actor_id, requested, child_settings.get(child_id)
        )
        effective = effective & contribution
        if contribution != requested and (smallest is None or len(contribution) < smallest):
            smallest = len(contribution)
            restrictive_child_id = child_id

    return PermissionResolution(
        permissions=effective, restrictive_child_id=restrictive_child_id
    )


def resolve_communication(
    child_ids: Iterable[uuid.UUID],
    child_settings: ChildSettingsMap,
    communication_type: str,
) -> CommunicationResolution:
    """Block a communication type if any overriding child restricts it."""
    blocking = tuple(
        child_id
        for child_id, override in _overriding(child_ids, child_settings)
        if communication_type in (override.communication_restrictions or [])
    )
    return CommunicationResolution(allowed=not blocking, blocking_child_ids=blocking)


def resolve_retention(
    family_policy: RetentionPolicy,
    child_ids: Iterable[uuid.UUID],
    child_settings: ChildSettingsMap,
) -> RetentionResolution:
    """Strictest retention across the family policy and child overrides.

    Shorter periods win, and a deletion requirement on any child applies to
    the whole operation.
    """
    policy = family_policy
    source: uuid.UUID | None = None

    for child_id, override in _overriding(child_ids, child_settings):
        retention = override.data_retention_override
        if not retention:
            continue

        merged = policy.model_copy(
            update={
                "automatic_deletion": policy.automatic_deletion
                or bool(retention.get("automatic_deletion")),
                "delete_after_inactivity": policy.delete_after_inactivity
                or bool(retention.get("delete_after_inactivity")),
                "retention_period_months": min(
                    policy.retention_period_months,
                    retention.get("retention_period_months")
                    or policy.retention_period_months,
                ),
                "inactivity_period_months": min(
                    policy.inactivity_period_months,
                    retention.get("inactivity_period_months")
                    or policy.inactivity_period_months,
                ),
            }
        )
        if merged != policy:
            policy = merged
            source = child_id

    return RetentionResolution(policy=policy, source_child_id=source)


def has_privacy_conflict(
    child_ids: Iterable[uuid.UUID], child_settings: ChildSettingsMap
) -> bool:
    """True if the selected children's overrides disagree with each other.

    Used to warn before a multi-child operation silently narrows to the
    strictest child.
    """
    child_ids = list(child_ids)
    if len(child_ids) < 2:
        return False

    overrides = [child_settings.get(child_id) for child_id in child_ids]
    overriding = [o for o in overrides if o is not None and not o.inherit_from_parent]
    if not overriding:
        return False

    restricted = {bool(o and not o.inherit_from_parent and o.restricted_access) for o in overrides}
    if len(restricted) > 1:
        return True

    restrictions = {
        frozenset(o.communication_restrictions or [])
        if o is not None and not o.inherit_from_parent
        else frozenset()
        for o in overrides
    }
    if len(restrictions) > 1:
        return True

    retention = {
        bool(o is not None and not o.inherit_from_parent and o.data_retention_override)
        for o in overrides
    }
    return len(retention) > 1
