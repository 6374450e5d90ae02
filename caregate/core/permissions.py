"""Permission catalog: roles, the permission vocabulary, and lookup tables.

Permissions are atomic. Nothing is inferred between them (edit does not imply
view); every implication is spelled out in the role default sets below.
"""

import enum
from types import MappingProxyType


class Role(str, enum.Enum):
    """Family roles.

    - OWNER: the account that owns the family; implicit, never granted
    - GUARDIAN: co-parent level, may manage access
    - CAREGIVER: full read/write on medical data, cannot manage access
    - VIEWER: read-only
    """

    OWNER = "owner"
    GUARDIAN = "guardian"
    CAREGIVER = "caregiver"
    VIEWER = "viewer"


class Permission(str, enum.Enum):
    VIEW_SYMPTOMS = "view-symptoms"
    EDIT_SYMPTOMS = "edit-symptoms"
    VIEW_TREATMENTS = "view-treatments"
    EDIT_TREATMENTS = "edit-treatments"
    VIEW_VITALS = "view-vitals"
    EDIT_VITALS = "edit-vitals"
    VIEW_NOTES = "view-notes"
    EDIT_NOTES = "edit-notes"
    VIEW_FILES = "view-files"
    UPLOAD_FILES = "upload-files"
    VIEW_ANALYTICS = "view-analytics"
    EXPORT_DATA = "export-data"
    MANAGE_ACCESS = "manage-access"


class DataCategory(str, enum.Enum):
    """Kinds of resource a request can target."""

    SYMPTOMS = "symptoms"
    TREATMENTS = "treatments"
    VITALS = "vitals"
    NOTES = "notes"
    FILES = "files"
    ANALYTICS = "analytics"
    ACCESS = "access"
    PRIVACY_SETTINGS = "privacy_settings"
    AUDIT_LOG = "audit_log"


class Action(str, enum.Enum):
    VIEW = "view"
    EDIT = "edit"
    EXPORT = "export"
    MANAGE = "manage"


VIEW_ONLY: frozenset[Permission] = frozenset(
    {
        Permission.VIEW_SYMPTOMS,
        Permission.VIEW_TREATMENTS,
        Permission.VIEW_VITALS,
        Permission.VIEW_NOTES,
        Permission.VIEW_FILES,
        Permission.VIEW_ANALYTICS,
    }
)

FULL_ACCESS: frozenset[Permission] = VIEW_ONLY | {
    Permission.EDIT_SYMPTOMS,
    Permission.EDIT_TREATMENTS,
    Permission.EDIT_VITALS,
    Permission.EDIT_NOTES,
    Permission.UPLOAD_FILES,
    Permission.EXPORT_DATA,
}

ALL_PERMISSIONS: frozenset[Permission] = frozenset(Permission)

ROLE_PERMISSIONS: MappingProxyType[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.OWNER: ALL_PERMISSIONS,
        Role.GUARDIAN: FULL_ACCESS | {Permission.MANAGE_ACCESS},
        Role.CAREGIVER: FULL_ACCESS,
        Role.VIEWER: VIEW_ONLY,
    }
)

# Roles that can be handed out through a family access grant
GRANTABLE_ROLES: frozenset[Role] = frozenset(ROLE_PERMISSIONS) - {Role.OWNER}

# Permissions a capability token may carry: providers read and export, never write
TOKEN_GRANTABLE: frozenset[Permission] = VIEW_ONLY | {Permission.EXPORT_DATA}

REQUIRED_PERMISSION: MappingProxyType[tuple[DataCategory, Action], Permission] = (
    MappingProxyType(
        {
            (DataCategory.SYMPTOMS, Action.VIEW): Permission.VIEW_SYMPTOMS,
            (DataCategory.SYMPTOMS, Action.EDIT): Permission.EDIT_SYMPTOMS,
            (DataCategory.SYMPTOMS, Action.EXPORT): Permission.EXPORT_DATA,
            (DataCategory.TREATMENTS, Action.VIEW): Permission.VIEW_TREATMENTS,
            (DataCategory.TREATMENTS, Action.EDIT): Permission.EDIT_TREATMENTS,
            (DataCategory.TREATMENTS, Action.EXPORT): Permission.EXPORT_DATA,
            (DataCategory.VITALS, Action.VIEW): Permission.VIEW_VITALS,
            (DataCategory.VITALS, Action.EDIT): Permission.EDIT_VITALS,
            (DataCategory.VITALS, Action.EXPORT): Permission.EXPORT_DATA,
            (DataCategory.NOTES, Action.VIEW): Permission.VIEW_NOTES,
            (DataCategory.NOTES, Action.EDIT): Permission.EDIT_NOTES,
            (DataCategory.NOTES, Action.EXPORT): Permission.EXPORT_DATA,
            (DataCategory.FILES, Action.VIEW): Permission.VIEW_FILES,
            (DataCategory.FILES, Action.EDIT): Permission.UPLOAD_FILES,
            (DataCategory.FILES, Action.EXPORT): Permission.EXPORT_DATA,
            (DataCategory.ANALYTICS, Action.VIEW): Permission.VIEW_ANALYTICS,
            (DataCategory.ANALYTICS, Action.EXPORT): Permission.EXPORT_DATA,
            (DataCategory.ACCESS, Action.VIEW): Permission.MANAGE_ACCESS,
            (DataCategory.ACCESS, Action.MANAGE): Permission.MANAGE_ACCESS,
            (DataCategory.PRIVACY_SETTINGS, Action.VIEW): Permission.MANAGE_ACCESS,
            (DataCategory.PRIVACY_SETTINGS, Action.EDIT): Permission.MANAGE_ACCESS,
            (DataCategory.AUDIT_LOG, Action.VIEW): Permission.MANAGE_ACCESS,
            (DataCategory.AUDIT_LOG, Action.EXPORT): Permission.MANAGE_ACCESS,
        }
    )
)


def required_permission(category: DataCategory, action: Action) -> Permission | None:
    """Look up the permission an operation needs, or None if unsupported."""
    return REQUIRED_PERMISSION.get((category, action))


def role_permissions(role: Role) -> frozenset[Permission]:
    return ROLE_PERMISSIONS[role]


def _check_catalog() -> None:
    """Fail at import if the tables fall out of step with the enums."""
    missing_roles = set(Role) - set(ROLE_PERMISSIONS)
    if missing_roles:
        raise RuntimeError(f"Roles without a default permission set: {missing_roles}")

    unreachable = ALL_PERMISSIONS - set(REQUIRED_PERMISSION.values())
    if unreachable:
        raise RuntimeError(f"Permissions no operation requires: {unreachable}")

    no_view = {
        category
        for category in DataCategory
        if (category, Action.VIEW) not in REQUIRED_PERMISSION
    }
    if no_view:
        raise RuntimeError(f"Data categories without a view mapping: {no_view}")

    for role, perms in ROLE_PERMISSIONS.items():
        if not perms <= ALL_PERMISSIONS:
            raise RuntimeError(f"Role {role.value} references unknown permissions")


_check_catalog()
