"""
Protected Records API Router

Generic read/write access to every protected collection, always through the
scoped access gateway. Admin-unscoped reads live under /v1/admin/records.
"""

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional

from core.auth import AuthContext, get_auth_context
from core.database import get_db
from core.exceptions import NotFoundError
from schemas import RecordPage
from services.access_gateway import ScopedAccessGateway, RecordQuery, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT

router = APIRouter(prefix="/v1/records", tags=["Records"])
admin_router = APIRouter(prefix="/v1/admin/records", tags=["Admin Records"])


def _gateway(db: Session, collection: str) -> ScopedAccessGateway:
    gateway = ScopedAccessGateway(db)
    # Unknown names from the outside are a 404, not a server misconfiguration.
    if not gateway.is_protected(collection):
        raise NotFoundError("Collection")
    return gateway


def _filters(client_id: Optional[str], trainer_id: Optional[str]) -> Dict[str, Any]:
    filters = {}
    if client_id:
        filters["client_id"] = client_id
    if trainer_id:
        filters["trainer_id"] = trainer_id
    return filters


@router.get("/{collection}", response_model=RecordPage)
def list_records(
    collection: str,
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    skip: int = Query(0, ge=0),
    client_id: Optional[str] = Query(None),
    trainer_id: Optional[str] = Query(None),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    page = _gateway(db, collection).read(
        collection, ctx, RecordQuery(filters=_filters(client_id, trainer_id), limit=limit, skip=skip)
    )
    return RecordPage(items=page.items, total_count=page.total_count, has_next=page.has_next)


@router.get("/{collection}/{record_id}")
def get_record(
    collection: str,
    record_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return _gateway(db, collection).read_one(collection, record_id, ctx)


@router.post("/{collection}", status_code=status.HTTP_201_CREATED)
def write_record(
    collection: str,
    payload: Dict[str, Any] = Body(...),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create (no `id` in body) or update (with `id`) one record."""
    return _gateway(db, collection).write(collection, ctx, payload)


@admin_router.get("/{collection}", response_model=RecordPage)
def admin_list_records(
    collection: str,
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    skip: int = Query(0, ge=0),
    client_id: Optional[str] = Query(None),
    trainer_id: Optional[str] = Query(None),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    page = _gateway(db, collection).admin_read(
        collection, ctx, RecordQuery(filters=_filters(client_id, trainer_id), limit=limit, skip=skip)
    )
    return RecordPage(items=page.items, total_count=page.total_count, has_next=page.has_next)


@admin_router.get("/{collection}/{record_id}")
def admin_get_record(
    collection: str,
    record_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return _gateway(db, collection).admin_read_one(collection, record_id, ctx)
