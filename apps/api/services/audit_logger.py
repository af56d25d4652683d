"""
Audit Logger

Structured logging for access-control decisions.
Every denial made by the access gateway (or the role endpoints) lands here,
even when the caller only ever sees a generic NotFound/Unauthorized.

Format: JSON structured logs with:
- timestamp
- action (e.g. "read_one.denied", "read.leak", "write.denied")
- actor (member id hash) and acting role
- collection / record id / target client where known
- reason

Each event is also appended as an AccessAuditEvent row (best-effort).
"""

import logging
import json
import hashlib
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from core.database import SessionLocal
from models import AccessAuditEvent

logger = logging.getLogger(__name__)

# Configure structured logger
audit_logger = logging.getLogger("coachline.audit")
audit_logger.setLevel(logging.INFO)

# Add handler if not already configured
if not audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(message)s'))
    audit_logger.addHandler(handler)


def _anonymize_id(member_id: Optional[str]) -> Optional[str]:
    """Hash member ID for privacy in logs."""
    if not member_id:
        return None
    return hashlib.sha256(str(member_id).encode()).hexdigest()[:12]


def log_audit(
    action: str,
    actor_member_id: Optional[str],
    success: bool = True,
    metadata: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None
) -> None:
    """
    Log an audit event.

    Args:
        action: Action type (e.g., "read_one.denied", "roles.changed")
        actor_member_id: Member id of the caller (will be anonymized)
        success: Whether the action succeeded
        metadata: Additional context (ids only, never record contents)
        error: Error message if failed
    """
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "actor_hash": _anonymize_id(actor_member_id),
        "success": success,
    }

    if metadata:
        event["metadata"] = metadata

    if error:
        event["error"] = error

    # Log as JSON for structured parsing
    audit_logger.info(json.dumps(event, default=str))


def record_access_denial(
    *,
    action: str,
    actor_member_id: Optional[str],
    acting_role: Optional[str] = None,
    collection: Optional[str] = None,
    record_id: Optional[str] = None,
    target_client_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """
    Audit one access denial.

    The JSON log line is unconditional. The AccessAuditEvent row is written in
    its own short-lived session so it survives the caller's request rollback
    (denials usually end the request with an error).

    Safety:
    - Never throws (does not change the outcome the caller sees).
    - Payload is bounded: ids and a short reason.
    """
    log_audit(
        action=action,
        actor_member_id=actor_member_id,
        success=False,
        metadata={
            "acting_role": acting_role,
            "collection": collection,
            "record_id": record_id,
            "target_client_hash": _anonymize_id(target_client_id),
            "reason": reason,
        },
    )

    db = SessionLocal()
    try:
        db.add(
            AccessAuditEvent(
                actor_member_id=actor_member_id,
                acting_role=acting_role,
                action=action,
                collection=collection,
                record_id=record_id,
                target_client_id=target_client_id,
                reason=(reason or "")[:500] or None,
            )
        )
        db.commit()
    except Exception as e:
        # Never block the access decision on audit persistence, but do emit a server log.
        db.rollback()
        logger.exception("Access audit persistence failed: %s", str(e))
    finally:
        db.close()


def log_role_change(actor_member_id: str, member_id: str, roles: list) -> None:
    """Log an admin role change."""
    log_audit(
        action="roles.changed",
        actor_member_id=actor_member_id,
        success=True,
        metadata={"member_hash": _anonymize_id(member_id), "roles": sorted(roles)},
    )
