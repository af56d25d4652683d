"""
Roles API Router

- POST /v1/roles/bootstrap: self-service, idempotent client role on signup
- GET  /v1/roles/me: the caller's role record
- PUT  /v1/roles/{member_id}: admin-only role changes
"""

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session
from typing import Optional

from core.auth import AuthContext, get_current_member_id, require_admin
from core.database import get_db
from core.exceptions import NotFoundError
from schemas import MemberRoleResponse, RoleBootstrapRequest, RoleUpdateRequest
from services.role_resolver import (
    bootstrap_client_role,
    deactivate_member,
    get_role_record,
    set_member_roles,
)

router = APIRouter(prefix="/v1/roles", tags=["Roles"])


@router.post("/bootstrap", response_model=MemberRoleResponse)
def bootstrap_role(
    request: Optional[RoleBootstrapRequest] = Body(None),
    member_id: str = Depends(get_current_member_id),
    db: Session = Depends(get_db),
):
    """
    Give a freshly signed-up member the client role.

    Safe to retry: an existing record is returned unchanged.
    """
    record = bootstrap_client_role(db, member_id, email=request.email if request else None)
    return MemberRoleResponse.from_record(record)


@router.get("/me", response_model=MemberRoleResponse)
def get_my_roles(
    member_id: str = Depends(get_current_member_id),
    db: Session = Depends(get_db),
):
    record = get_role_record(db, member_id)
    if record is None:
        raise NotFoundError("Role record")
    return MemberRoleResponse.from_record(record)


@router.put("/{member_id}", response_model=MemberRoleResponse)
def update_member_roles(
    member_id: str,
    request: RoleUpdateRequest,
    ctx: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    record = set_member_roles(db, ctx.member_id, member_id, request.roles)
    return MemberRoleResponse.from_record(record)


@router.post("/{member_id}/deactivate", response_model=MemberRoleResponse)
def deactivate(
    member_id: str,
    ctx: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    record = deactivate_member(db, ctx.member_id, member_id)
    return MemberRoleResponse.from_record(record)
