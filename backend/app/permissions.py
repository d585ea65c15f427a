"""
Permission Constants and Role Mappings

WHY: Centralized permission definitions ensure consistency across routes.
Roles are assigned by the external auth provider; this module only answers
"may this role do X".

DESIGN PRINCIPLES:
- Permissions are "<action>:<resource>" strings
- Pharmacists can run the counter (stock reads, reservations, sales)
- Admin has every pharmacist permission plus destructive and management ones
"""

from __future__ import annotations

from .models import UserRole


# =============================================================================
# PERMISSION CODES
# =============================================================================

READ_INVENTORY = "read:inventory"
UPDATE_INVENTORY = "update:inventory"
MANAGE_STOCK = "manage:stock"
READ_SALES = "read:sales"
CREATE_SALES = "create:sales"
UPDATE_SALES = "update:sales"
READ_REPORTS = "read:reports"


# =============================================================================
# ROLE MAPPINGS
# =============================================================================

_PHARMACIST_PERMISSIONS = frozenset({
    "read:profile",
    "update:profile",
    "read:prescriptions",
    "create:prescriptions",
    "update:prescriptions",
    READ_INVENTORY,
    UPDATE_INVENTORY,
    "create:products",
    "update:products",
    READ_REPORTS,
    "create:reports",
    READ_SALES,
    CREATE_SALES,
    UPDATE_SALES,
})

_ADMIN_PERMISSIONS = _PHARMACIST_PERMISSIONS | frozenset({
    "delete:prescriptions",
    "delete:products",
    "update:reports",
    "delete:reports",
    "read:users",
    "create:users",
    "update:users",
    "read:suppliers",
    "create:suppliers",
    "update:suppliers",
    "delete:suppliers",
    MANAGE_STOCK,
})

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    UserRole.PHARMACIST.value: _PHARMACIST_PERMISSIONS,
    UserRole.ADMIN.value: _ADMIN_PERMISSIONS,
}


def get_role_permissions(role: str | None) -> frozenset[str]:
    return ROLE_PERMISSIONS.get(role or "", frozenset())


def has_permission(role: str | None, permission_code: str) -> bool:
    return permission_code in get_role_permissions(role)
