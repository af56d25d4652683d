"""
Workout Logging API Router

Clients append workouts (completed or missed) and difficulty feedback.
Both logs are append-only.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Any, Dict

from core.auth import AuthContext, require_role
from core.database import get_db
from schemas import WorkoutCreate, WorkoutFeedbackCreate
from services.access_gateway import ScopedAccessGateway
from services.adherence_signals import AdherenceSignalService
from services.role_resolver import Role

router = APIRouter(prefix="/v1/workouts", tags=["Workouts"])

require_client = require_role([Role.CLIENT])


@router.post("", status_code=status.HTTP_201_CREATED)
def log_workout(
    request: WorkoutCreate,
    ctx: AuthContext = Depends(require_client),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return AdherenceSignalService(ScopedAccessGateway(db)).record_workout(
        ctx,
        completed=request.completed,
        program_id=request.program_id,
        workout_day_id=request.workout_day_id,
        occurred_at=request.occurred_at,
        notes=request.notes,
    )


@router.post("/feedback", status_code=status.HTTP_201_CREATED)
def log_feedback(
    request: WorkoutFeedbackCreate,
    ctx: AuthContext = Depends(require_client),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return AdherenceSignalService(ScopedAccessGateway(db)).record_feedback(
        ctx,
        difficulty_rating=request.difficulty_rating,
        activity_id=request.activity_id,
        program_id=request.program_id,
        note=request.note,
    )
