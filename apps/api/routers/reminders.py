"""
Follow-Up Reminders API Router
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from core.auth import AuthContext, require_trainer
from core.database import get_db
from schemas import DismissalResponse, ReminderResponse
from services.access_gateway import ScopedAccessGateway
from services.follow_up_reminders import ReminderScheduler

router = APIRouter(prefix="/v1/reminders", tags=["Reminders"])


@router.get("", response_model=List[ReminderResponse])
def get_reminders(
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    prompts = ReminderScheduler(ScopedAccessGateway(db)).get_reminders(ctx)
    return [p.to_dict() for p in prompts]


@router.post("/{client_id}/dismiss", response_model=DismissalResponse)
def dismiss_reminder(
    client_id: str,
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    """Snooze this client's reminder for 7 days."""
    return ReminderScheduler(ScopedAccessGateway(db)).dismiss(ctx, client_id)
