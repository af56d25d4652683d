"""
Scheduled Digest Tasks

Weekly trainer digests: adherence counts and who needs a check-in.
Runs via Celery Beat scheduler.
"""

from typing import Dict
from celery import Task
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from models import MemberRoleAssignment
from services.email_service import email_service
from services.role_resolver import Role, get_role_record
from services.weekly_digest import build_trainer_digest
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.send_trainer_digest", bind=True)
def send_trainer_digest_task(self: Task, trainer_id: str) -> Dict:
    """
    Send the weekly digest email to a single trainer.
    """
    db: Session = get_db_sync()

    try:
        record = get_role_record(db, trainer_id)
        if record is None or record.status != "active" or Role.TRAINER.value not in record.role_names:
            return {"status": "error", "message": "Trainer not found"}

        if not record.email:
            return {"status": "skipped", "message": "No email address"}

        metrics, digest = build_trainer_digest(db, trainer_id)
        success = email_service.send_trainer_digest(record.email, digest)
        if success:
            return {
                "status": "success",
                "trainer_id": trainer_id,
                "email": record.email,
                "active_clients": metrics.active_clients,
                "clients_needing_check_in": metrics.clients_needing_check_in,
            }
        return {"status": "error", "message": "Failed to send email"}

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error in send_trainer_digest_task for {trainer_id}: {str(e)}")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.send_all_trainer_digests")
def send_all_trainer_digests_task() -> Dict:
    """
    Enqueue a digest for every active trainer with an email address.

    This task is called by Celery Beat every Monday.
    """
    db: Session = get_db_sync()

    try:
        records = db.query(MemberRoleAssignment).filter(
            MemberRoleAssignment.status == "active",
            MemberRoleAssignment.email.isnot(None),
            MemberRoleAssignment.email != ""
        ).all()
        trainers = [r for r in records if Role.TRAINER.value in r.role_names]

        logger.info(f"Sending weekly digests to {len(trainers)} trainers")

        results = []
        for record in trainers:
            task_result = send_trainer_digest_task.delay(record.member_id)
            results.append({
                "trainer_id": record.member_id,
                "email": record.email,
                "task_id": task_result.id
            })

        return {
            "status": "success",
            "total_trainers": len(trainers),
            "tasks_enqueued": len(results),
            "results": results
        }

    except SQLAlchemyError as e:
        logger.error(f"Error in send_all_trainer_digests_task: {str(e)}")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
