"""
Role Resolver

Member -> role set, backed by the member_role table (one row per member).

Roles form a closed set: client, trainer, admin. A member may hold several,
but every call acts under exactly one of them (see core.auth.AuthContext).

Self-service is limited to the initial client bootstrap; everything else
requires an admin actor.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Iterable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.events import emit, EVENT_CLIENT_ONBOARDED
from core.exceptions import ForbiddenError, NotFoundError, ValidationError
from models import MemberRoleAssignment
from services.audit_logger import log_role_change, record_access_denial

logger = logging.getLogger(__name__)


class Role(str, Enum):
    CLIENT = "client"
    TRAINER = "trainer"
    ADMIN = "admin"


VALID_ROLES = {r.value for r in Role}


def parse_role(value: Optional[str]) -> Optional[Role]:
    """Map a string onto the closed role set. Unknown values -> None."""
    if isinstance(value, Role):
        return value
    if not value:
        return None
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        return None


def _serialize_roles(roles: Iterable[Role]) -> str:
    return ",".join(sorted(r.value for r in roles))


def get_role_record(db: Session, member_id: str) -> Optional[MemberRoleAssignment]:
    if not member_id:
        return None
    return db.query(MemberRoleAssignment).filter(MemberRoleAssignment.member_id == member_id).first()


def resolve_roles(db: Session, member_id: str) -> Set[Role]:
    """
    Current role set for a member. Empty when the member has no active record.

    Always reads the store: role changes take effect on the next call.
    """
    record = get_role_record(db, member_id)
    if record is None or record.status != "active":
        return set()
    roles = set()
    for name in record.role_names:
        role = parse_role(name)
        if role is None:
            logger.warning(f"Ignoring unknown role '{name}' stored for member {member_id}")
            continue
        roles.add(role)
    return roles


def has_role(db: Session, member_id: str, role: Role) -> bool:
    return parse_role(role) in resolve_roles(db, member_id)


def bootstrap_client_role(
    db: Session,
    member_id: str,
    email: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> MemberRoleAssignment:
    """
    Idempotently create the initial client role record for a new member.

    Returns the existing record when one is already present (whatever roles
    it carries). Transient storage failures are retried with exponential
    backoff; a concurrent creator losing the unique-constraint race simply
    finds the winner's row on the next attempt.
    """
    if not member_id:
        raise ValidationError("member_id is required", field="member_id")

    attempts = max_attempts or settings.ROLE_BOOTSTRAP_MAX_ATTEMPTS
    backoff = settings.ROLE_BOOTSTRAP_BACKOFF_S

    for attempt in range(attempts):
        try:
            existing = get_role_record(db, member_id)
            if existing is not None:
                return existing

            record = MemberRoleAssignment(
                member_id=member_id,
                roles=Role.CLIENT.value,
                status="active",
                email=(email or "").strip().lower() or None,
            )
            db.add(record)
            db.flush()
            logger.info(f"Bootstrapped client role for member {member_id}")
            emit(EVENT_CLIENT_ONBOARDED, db=db, client_id=member_id)
            return record
        except SQLAlchemyError as e:
            db.rollback()
            if attempt == attempts - 1:
                logger.error(f"Client role bootstrap failed after {attempts} attempts for {member_id}: {e}")
                raise
            delay = backoff * (2 ** attempt)
            logger.warning(
                f"Client role bootstrap attempt {attempt + 1} failed for {member_id}, retrying in {delay:.2f}s"
            )
            time.sleep(delay)


def _require_admin(db: Session, actor_id: str, action: str, member_id: str) -> None:
    if not has_role(db, actor_id, Role.ADMIN):
        record_access_denial(
            action=action,
            actor_member_id=actor_id,
            target_client_id=member_id,
            reason="actor does not hold admin",
        )
        raise ForbiddenError("Admin role required")


def set_member_roles(db: Session, actor_id: str, member_id: str, roles: Iterable[str]) -> MemberRoleAssignment:
    """
    Replace a member's role set. Admin only.

    Creates the record when the member has none yet.
    """
    _require_admin(db, actor_id, "roles.change.denied", member_id)

    names = list(roles or [])
    if not names:
        raise ValidationError("At least one role is required", field="roles")
    parsed = set()
    for name in names:
        role = parse_role(name)
        if role is None:
            raise ValidationError(f"Unknown role '{name}'", field="roles")
        parsed.add(role)

    record = get_role_record(db, member_id)
    if record is None:
        record = MemberRoleAssignment(member_id=member_id, roles=_serialize_roles(parsed), status="active")
        db.add(record)
    else:
        record.roles = _serialize_roles(parsed)
        record.status = "active"
    db.flush()

    log_role_change(actor_id, member_id, [r.value for r in parsed])
    return record


def deactivate_member(db: Session, actor_id: str, member_id: str) -> MemberRoleAssignment:
    """Soft-deactivate a member: the record stays, resolve_roles returns nothing."""
    _require_admin(db, actor_id, "roles.deactivate.denied", member_id)

    record = get_role_record(db, member_id)
    if record is None:
        raise NotFoundError("Member")
    record.status = "inactive"
    db.flush()
    logger.info(f"Member {member_id} deactivated by {actor_id}")
    return record
