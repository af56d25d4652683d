"""
Coach Check-ins API Router
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional

from core.auth import AuthContext, get_auth_context, require_role, require_trainer
from core.database import get_db
from schemas import CheckInCreate, CheckInMetricsResponse, CheckInTemplateResponse
from services.access_gateway import ScopedAccessGateway
from services.check_ins import CheckInService, get_follow_up_templates, get_message_template
from services.profile_cache import ProfileCache
from services.role_resolver import Role

router = APIRouter(prefix="/v1/check-ins", tags=["Check-ins"])


@router.post("", status_code=status.HTTP_201_CREATED)
def send_check_in(
    request: CheckInCreate,
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return CheckInService(ScopedAccessGateway(db)).send_check_in(
        ctx, request.client_id, request.message, reason=request.reason
    )


@router.get("")
def list_check_ins(
    client_id: Optional[str] = Query(None),
    days: int = Query(30, ge=1, le=365),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    return CheckInService(ScopedAccessGateway(db)).recent_check_ins(ctx, client_id=client_id, days=days)


@router.post("/{check_in_id}/respond")
def respond_to_check_in(
    check_in_id: str,
    ctx: AuthContext = Depends(require_role([Role.CLIENT])),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return CheckInService(ScopedAccessGateway(db)).mark_responded(ctx, check_in_id)


@router.post("/{check_in_id}/reengagement")
def refresh_reengagement(
    check_in_id: str,
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    reengaged = CheckInService(ScopedAccessGateway(db)).track_reengagement(ctx, check_in_id)
    return {"check_in_id": check_in_id, "reengaged_within_72h": reengaged}


@router.get("/metrics", response_model=CheckInMetricsResponse)
def get_effectiveness_metrics(
    days: int = Query(30, ge=1, le=365),
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    return CheckInService(ScopedAccessGateway(db)).effectiveness_metrics(ctx, days=days)


@router.get("/template", response_model=CheckInTemplateResponse)
def get_template(
    status_name: str = Query(..., alias="status"),
    client_id: Optional[str] = Query(None),
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    name = None
    if client_id:
        name = ProfileCache(ScopedAccessGateway(db)).get_display_name(ctx, client_id)
    return CheckInTemplateResponse(
        status=status_name,
        message=get_message_template(status_name, name),
        follow_ups=get_follow_up_templates(status_name),
    )
