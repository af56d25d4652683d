"""
Relationship Registry

Trainer <-> client assignment edges. Status transitions only; an edge is
never physically removed, so the history stays auditable.

Every query here hits the store. Callers (the access gateway in particular)
must not cache the answers: revoking an edge takes effect on the next call.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.events import subscribe, EVENT_CLIENT_ONBOARDED
from core.exceptions import NotFoundError, ValidationError
from models import TrainerClientAssignment

logger = logging.getLogger(__name__)

ASSIGNMENT_STATUSES = ("active", "inactive", "paused")


def is_active_assignment(db: Session, trainer_id: str, client_id: str) -> bool:
    if not trainer_id or not client_id:
        return False
    return (
        db.query(TrainerClientAssignment.id)
        .filter(
            TrainerClientAssignment.trainer_id == trainer_id,
            TrainerClientAssignment.client_id == client_id,
            TrainerClientAssignment.status == "active",
        )
        .first()
        is not None
    )


def active_clients_of(db: Session, trainer_id: str) -> List[str]:
    rows = (
        db.query(TrainerClientAssignment.client_id)
        .filter(
            TrainerClientAssignment.trainer_id == trainer_id,
            TrainerClientAssignment.status == "active",
        )
        .order_by(TrainerClientAssignment.client_id)
        .all()
    )
    return [r[0] for r in rows]


def active_trainers_of(db: Session, client_id: str) -> List[str]:
    rows = (
        db.query(TrainerClientAssignment.trainer_id)
        .filter(
            TrainerClientAssignment.client_id == client_id,
            TrainerClientAssignment.status == "active",
        )
        .order_by(TrainerClientAssignment.trainer_id)
        .all()
    )
    return [r[0] for r in rows]


def get_active_assignment(db: Session, trainer_id: str, client_id: str) -> Optional[TrainerClientAssignment]:
    return (
        db.query(TrainerClientAssignment)
        .filter(
            TrainerClientAssignment.trainer_id == trainer_id,
            TrainerClientAssignment.client_id == client_id,
            TrainerClientAssignment.status == "active",
        )
        .first()
    )


def assign_client(
    db: Session,
    trainer_id: str,
    client_id: str,
    notes: Optional[str] = None,
) -> TrainerClientAssignment:
    """
    Create an active edge. Idempotent: an existing active edge is returned
    as-is (notes are only filled in when the edge had none).
    """
    if not trainer_id or not client_id:
        raise ValidationError("trainer_id and client_id are required")
    if trainer_id == client_id:
        raise ValidationError("A member cannot be assigned to themselves", field="client_id")

    existing = get_active_assignment(db, trainer_id, client_id)
    if existing:
        if notes and not existing.notes:
            existing.notes = notes
            db.flush()
        return existing

    assignment = TrainerClientAssignment(
        trainer_id=trainer_id,
        client_id=client_id,
        status="active",
        notes=notes,
    )
    db.add(assignment)
    db.flush()  # ensures assignment.id
    logger.info(f"Assigned client {client_id} to trainer {trainer_id}")
    return assignment


def set_assignment_status(db: Session, assignment_id: str, status: str) -> TrainerClientAssignment:
    """
    Move an edge between active/inactive/paused.

    Reactivating an edge while another active edge exists for the same pair
    is rejected rather than creating a duplicate.
    """
    if status not in ASSIGNMENT_STATUSES:
        raise ValidationError(f"Invalid assignment status '{status}'", field="status")

    assignment = db.query(TrainerClientAssignment).filter(TrainerClientAssignment.id == assignment_id).first()
    if assignment is None:
        raise NotFoundError("Assignment")

    if assignment.status == status:
        return assignment

    if status == "active":
        other = get_active_assignment(db, assignment.trainer_id, assignment.client_id)
        if other is not None and other.id != assignment.id:
            raise ValidationError("An active assignment already exists for this pair", field="status")

    previous = assignment.status
    assignment.status = status
    db.flush()
    logger.info(
        f"Assignment {assignment_id} ({assignment.trainer_id} -> {assignment.client_id}) "
        f"moved {previous} -> {status}"
    )
    return assignment


def auto_assign_new_client(db: Session, client_id: str) -> Optional[TrainerClientAssignment]:
    """
    Onboarding hook: attach a new client to the configured default trainer.

    Non-blocking. Returns None when no default trainer is configured or the
    assignment could not be made; signup must not fail because of it.
    """
    trainer_id = settings.DEFAULT_TRAINER_ID
    if not trainer_id:
        return None
    if trainer_id == client_id:
        return None
    try:
        return assign_client(db, trainer_id, client_id, notes="Auto-assigned on signup")
    except Exception as e:
        logger.warning(f"Auto-assignment of client {client_id} to {trainer_id} failed: {e}")
        return None


def _on_client_onboarded(db: Session, client_id: str, **_):
    auto_assign_new_client(db, client_id)


subscribe(EVENT_CLIENT_ONBOARDED, _on_client_onboarded)
