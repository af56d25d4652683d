"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Getting the authenticated member id from the JWT
- Building the AuthContext (member + one acting role) every gateway call needs
- Role-based access control on top of that context

There is no ambient "current user": routers receive an AuthContext and pass
it explicitly into every service call.
"""
from dataclasses import dataclass
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from core.database import get_db
from core.exceptions import UnauthorizedError, ForbiddenError
from core.security import decode_access_token
from services.role_resolver import Role, parse_role, resolve_roles

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Caller identity for one call: who, and which single role they act in."""

    member_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def get_current_member_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Get the authenticated member id from the JWT `sub` claim.

    Raises UnauthorizedError if the token is missing or invalid.
    """
    # Check if credentials are missing (return 401, not 403)
    if not credentials:
        raise UnauthorizedError("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")

    member_id = payload.get("sub")
    if not member_id:
        raise UnauthorizedError("Invalid token payload")
    return str(member_id)


def get_auth_context(
    member_id: str = Depends(get_current_member_id),
    x_acting_role: Optional[str] = Header(default=None, alias="X-Acting-Role"),
    db: Session = Depends(get_db),
) -> AuthContext:
    """
    Resolve the acting role for this request.

    - X-Acting-Role, when sent, must be a role the member currently holds.
    - Without the header, a member holding exactly one role acts in it.
    - A member holding several roles must choose.
    """
    held = resolve_roles(db, member_id)
    if not held:
        raise UnauthorizedError("No active role for this member")

    if x_acting_role:
        role = parse_role(x_acting_role)
        if role is None or role not in held:
            raise UnauthorizedError("Acting role not held by this member")
        return AuthContext(member_id=member_id, role=role)

    if len(held) > 1:
        raise UnauthorizedError("Multiple roles held; send X-Acting-Role to choose one")
    return AuthContext(member_id=member_id, role=next(iter(held)))


def require_role(allowed_roles: list):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/reminders")
        def reminders(ctx: AuthContext = Depends(require_role([Role.TRAINER]))):
            ...
    """
    allowed = {parse_role(r) for r in allowed_roles}

    def role_checker(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if ctx.role not in allowed:
            raise ForbiddenError(
                f"Access denied. Required roles: {sorted(r.value for r in allowed if r)}"
            )
        return ctx

    return role_checker


def require_admin(
    ctx: AuthContext = Depends(require_role([Role.ADMIN]))
) -> AuthContext:
    """Require the admin acting role."""
    return ctx


def require_trainer(
    ctx: AuthContext = Depends(require_role([Role.TRAINER]))
) -> AuthContext:
    """Require the trainer acting role."""
    return ctx
