"""
Adherence Signals API Router

Per-client status, the trainer's whole roster, and coaching opportunities.
All reads run through the access gateway under the caller's context.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from core.auth import AuthContext, get_auth_context, require_trainer
from core.database import get_db
from schemas import (
    ActivitySummaryResponse,
    AdherenceSignalResponse,
    CoachingOpportunityResponse,
    WorkoutFeedbackResponse,
)
from services.access_gateway import ScopedAccessGateway
from services.adherence_signals import AdherenceSignalService

router = APIRouter(prefix="/v1/signals", tags=["Adherence Signals"])


@router.get("/clients/{client_id}", response_model=AdherenceSignalResponse)
def get_client_signal(
    client_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    service = AdherenceSignalService(ScopedAccessGateway(db))
    service.require_visible_client(ctx, client_id)
    return service.classify_client(ctx, client_id).to_dict()


@router.get("/clients/{client_id}/summary", response_model=ActivitySummaryResponse)
def get_activity_summary(
    client_id: str,
    days: int = Query(7, ge=1, le=90),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    service = AdherenceSignalService(ScopedAccessGateway(db))
    service.require_visible_client(ctx, client_id)
    return service.activity_summary(ctx, client_id, days=days)


@router.get("/clients/{client_id}/feedback", response_model=List[WorkoutFeedbackResponse])
def get_recent_feedback(
    client_id: str,
    days: int = Query(7, ge=1, le=90),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    """Difficulty ratings submitted in the last `days`, newest first."""
    service = AdherenceSignalService(ScopedAccessGateway(db))
    service.require_visible_client(ctx, client_id)
    return service.recent_feedback(ctx, client_id, days=days)


@router.get("/trainer", response_model=List[AdherenceSignalResponse])
def get_trainer_signals(
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    """Every actively assigned client, most urgent first."""
    signals = AdherenceSignalService(ScopedAccessGateway(db)).for_trainer(ctx)
    return [s.to_dict() for s in signals]


@router.get("/coaching-opportunities", response_model=List[CoachingOpportunityResponse])
def get_coaching_opportunities(
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    return AdherenceSignalService(ScopedAccessGateway(db)).coaching_opportunities(ctx)
