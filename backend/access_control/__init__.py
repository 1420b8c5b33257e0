"""
Access control layer: roles, permissions and region scoping.

Routes resolve a Principal from the request and pass it through
require_permission / require_region_access before touching data.
"""

from access_control.permissions import (
    PERMISSIONS,
    AccessDenied,
    Forbidden,
    Permission,
    Principal,
    Role,
    Unauthorized,
    can_access_region,
    has_permission,
    normalize_role,
    require_permission,
    require_region_access,
)

__all__ = [
    "PERMISSIONS",
    "AccessDenied",
    "Forbidden",
    "Permission",
    "Principal",
    "Role",
    "Unauthorized",
    "can_access_region",
    "has_permission",
    "normalize_role",
    "require_permission",
    "require_region_access",
]
