"""
Client Profiles API Router

Display-name lookups are served from the profile cache; writes go through
the gateway, which invalidates the cached name before returning.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Any, Dict

from core.auth import AuthContext, get_auth_context
from core.database import get_db
from schemas import DisplayNameResponse, ProfileUpdate
from services.access_gateway import ScopedAccessGateway
from services.profile_cache import ProfileCache

router = APIRouter(prefix="/v1/profiles", tags=["Profiles"])


@router.get("/{client_id}/display-name", response_model=DisplayNameResponse)
def get_display_name(
    client_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    name = ProfileCache(ScopedAccessGateway(db)).get_display_name(ctx, client_id)
    return DisplayNameResponse(client_id=client_id, display_name=name)


@router.put("/{client_id}")
def update_profile(
    client_id: str,
    request: ProfileUpdate,
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return ProfileCache(ScopedAccessGateway(db)).save_profile(
        ctx, client_id, request.model_dump(exclude_unset=True)
    )
