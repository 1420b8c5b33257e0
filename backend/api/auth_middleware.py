"""
Authentication dependency for JWT verification.

Tokens are HS256-signed with SECRET_KEY and carry:
    sub     user id
    email
    role    ADMIN | MANAGER | VIEWER
    regions list of region codes the user may see

A missing or invalid token yields no principal; routes then fail with 401
through require_permission / require_region_access.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Header
from jose import JWTError, jwt

from access_control import Principal, normalize_role
from config import settings

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


def _extract_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from a "Bearer <token>" header value."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def decode_principal(token: str) -> Optional[Principal]:
    """Verify a JWT and build the principal it describes."""
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None

    sub = payload.get("sub")
    if not sub:
        logger.warning("JWT missing subject claim")
        return None

    regions = payload.get("regions") or []
    if isinstance(regions, str):
        regions = [regions]
    return Principal(
        user_id=str(sub),
        email=payload.get("email") or "",
        role=normalize_role(payload.get("role")),
        regions=tuple(str(code) for code in regions),
    )


def create_access_token(principal: Principal) -> str:
    """Sign a token for a principal (used by tooling and tests)."""
    return jwt.encode(
        {
            "sub": principal.user_id,
            "email": principal.email,
            "role": principal.role.value,
            "regions": list(principal.regions),
        },
        settings.SECRET_KEY,
        algorithm=JWT_ALGORITHM,
    )


async def get_current_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[Principal]:
    """
    FastAPI dependency returning the verified caller, or None.

    Usage:
        @router.get("/protected")
        async def route(principal: Optional[Principal] = Depends(get_current_principal)):
            require_permission(principal, Permission.VIEW_DASHBOARD)
    """
    token = _extract_token(authorization)
    if token is None:
        return None
    return decode_principal(token)
