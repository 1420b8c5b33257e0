"""
Role-based permissions and region scoping for API callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable, Optional


class Role(StrEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    VIEWER = "VIEWER"


class Permission(StrEnum):
    VIEW_DASHBOARD = "VIEW_DASHBOARD"
    VIEW_DEAL_DETAILS = "VIEW_DEAL_DETAILS"
    VIEW_TARGETS = "VIEW_TARGETS"
    EDIT_TARGETS = "EDIT_TARGETS"
    TRIGGER_SYNC = "TRIGGER_SYNC"
    VIEW_SYNC_LOGS = "VIEW_SYNC_LOGS"
    MANAGE_USERS = "MANAGE_USERS"
    MANAGE_REGIONS = "MANAGE_REGIONS"


_ALL_ROLES = frozenset(Role)
_MANAGERS = frozenset({Role.ADMIN, Role.MANAGER})
_ADMINS = frozenset({Role.ADMIN})

PERMISSIONS: dict[Permission, frozenset[Role]] = {
    Permission.VIEW_DASHBOARD: _ALL_ROLES,
    Permission.VIEW_DEAL_DETAILS: _ALL_ROLES,
    Permission.VIEW_TARGETS: _MANAGERS,
    Permission.EDIT_TARGETS: _MANAGERS,
    Permission.TRIGGER_SYNC: _MANAGERS,
    Permission.VIEW_SYNC_LOGS: _MANAGERS,
    Permission.MANAGE_USERS: _ADMINS,
    Permission.MANAGE_REGIONS: _ADMINS,
}


class AccessDenied(Exception):
    """Base class for permission failures."""


class Unauthorized(AccessDenied):
    """No authenticated caller."""


class Forbidden(AccessDenied):
    """Caller lacks the permission or region."""


@dataclass(frozen=True)
class Principal:
    """Verified identity of an API caller."""

    user_id: str
    email: str
    role: Role
    regions: tuple[str, ...] = field(default_factory=tuple)


def normalize_role(role: Optional[str]) -> Role:
    """Unknown or missing roles get the least privilege."""
    try:
        return Role((role or "").upper())
    except ValueError:
        return Role.VIEWER


def has_permission(role: Role | str, permission: Permission | str) -> bool:
    allowed = PERMISSIONS.get(Permission(permission), frozenset())
    return normalize_role(role) in allowed


def can_access_region(role: Role | str, regions: Iterable[str], region_code: str) -> bool:
    if normalize_role(role) == Role.ADMIN:
        return True
    return region_code in set(regions)


def require_permission(
    principal: Optional[Principal], permission: Permission | str
) -> Principal:
    if principal is None:
        raise Unauthorized("Authentication required")
    if not has_permission(principal.role, permission):
        raise Forbidden(f"Permission denied: {permission}")
    return principal


def require_region_access(principal: Optional[Principal], region_code: str) -> Principal:
    if principal is None:
        raise Unauthorized("Authentication required")
    if not can_access_region(principal.role, principal.regions, region_code):
        raise Forbidden(f"Access denied for region: {region_code}")
    return principal
