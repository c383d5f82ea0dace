"""
Role-Based Access Control (RBAC) dependencies.
"""
from enum import Enum
from fastapi import HTTPException, status, Depends

from procura.core.security import get_token_payload


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


# Role hierarchy: higher index = more permissions
ROLE_HIERARCHY = {
    Role.VIEWER: 0,
    Role.OPERATOR: 1,
    Role.ADMIN: 2,
    Role.OWNER: 3,
}


def has_permission(user_role: Role, required_role: Role) -> bool:
    """Check if user role has sufficient permissions."""
    return ROLE_HIERARCHY.get(user_role, 0) >= ROLE_HIERARCHY.get(required_role, 0)


def _build_context(payload: dict) -> dict:
    user_id_raw = payload.get("sub") or payload.get("user_id")
    if user_id_raw is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user identifier (sub)",
        )
    org_id = payload.get("org_id")
    if org_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing tenant (org_id)",
        )
    try:
        role = Role(payload.get("role", "viewer"))
    except ValueError:
        role = Role.VIEWER

    return {
        "sub": str(user_id_raw),
        "user_id": int(user_id_raw),
        "email": payload.get("email"),
        "role": role,
        "org_id": int(org_id),
    }


async def get_current_user_context(payload: dict = Depends(get_token_payload)) -> dict:
    """Get current user context including the tenant (org_id)."""
    return _build_context(payload)


class RBACChecker:
    """Dependency for checking role-based access."""

    def __init__(self, required_role: Role):
        self.required_role = required_role

    async def __call__(self, payload: dict = Depends(get_token_payload)) -> dict:
        context = _build_context(payload)

        if not has_permission(context["role"], self.required_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {self.required_role.value}",
            )

        return context


# Convenience dependencies for common role checks
require_viewer = RBACChecker(Role.VIEWER)
require_operator = RBACChecker(Role.OPERATOR)
require_admin = RBACChecker(Role.ADMIN)
