"""
Trainer-Client Assignments API Router

Edges are managed by admins; trainers can list their own active clients.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from core.auth import AuthContext, require_admin, require_trainer
from core.database import get_db
from core.exceptions import ValidationError
from schemas import AssignmentCreate, AssignmentResponse, AssignmentStatusUpdate
from services.access_gateway import ScopedAccessGateway
from services.adherence_signals import AdherenceSignalService
from services.relationship_registry import assign_client, set_assignment_status
from services.role_resolver import Role, has_role

router = APIRouter(prefix="/v1/assignments", tags=["Assignments"])


@router.post("", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
def create_assignment(
    request: AssignmentCreate,
    ctx: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if not has_role(db, request.trainer_id, Role.TRAINER):
        raise ValidationError("trainer_id does not hold the trainer role", field="trainer_id")
    if not has_role(db, request.client_id, Role.CLIENT):
        raise ValidationError("client_id does not hold the client role", field="client_id")
    return assign_client(db, request.trainer_id, request.client_id, notes=request.notes)


@router.patch("/{assignment_id}", response_model=AssignmentResponse)
def update_assignment_status(
    assignment_id: str,
    request: AssignmentStatusUpdate,
    ctx: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return set_assignment_status(db, assignment_id, request.status)


@router.get("/clients", response_model=List[AssignmentResponse])
def list_my_clients(
    ctx: AuthContext = Depends(require_trainer),
    db: Session = Depends(get_db),
):
    """The calling trainer's active assignments."""
    return AdherenceSignalService(ScopedAccessGateway(db)).active_assignments(ctx)
