from sqlalchemy import Column, Integer, Boolean, CheckConstraint, DateTime, Text, String, Index, UniqueConstraint, ForeignKey, JSON
from sqlalchemy.sql import func
from core.database import Base
import uuid
from datetime import datetime, timezone
from typing import Any, Dict


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Interpret naive datetimes (e.g. read back from sqlite) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RecordMixin:
    """Columns shared by every protected collection table."""

    def to_record(self) -> Dict[str, Any]:
        record = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = as_utc(value)
            record[column.key] = value
        return record


class MemberRoleAssignment(Base):
    """
    One row per member holding the member's role set.

    Never hard-deleted: deactivation moves status to 'inactive'.
    """

    __tablename__ = "member_role"

    id = Column(String(36), primary_key=True, default=_new_id)
    member_id = Column(Text, nullable=False, unique=True, index=True)
    roles = Column(Text, nullable=False)  # comma-separated, sorted: "admin,trainer"
    status = Column(Text, nullable=False, default="active")  # 'active' | 'inactive'
    email = Column(Text, nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive')", name="ck_member_role_status"),
        CheckConstraint("roles <> ''", name="ck_member_role_roles_non_empty"),
    )

    @property
    def role_names(self) -> list:
        return [r for r in (self.roles or "").split(",") if r]


class TrainerClientAssignment(RecordMixin, Base):
    """
    Trainer <-> client responsibility edge.

    Status transitions only (active/inactive/paused); rows are kept for audit
    history. At most one active edge per (trainer, client) pair.
    """

    __tablename__ = "trainer_client_assignment"

    id = Column(String(36), primary_key=True, default=_new_id)
    trainer_id = Column(Text, nullable=False, index=True)
    client_id = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, default="active")
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    notes = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'paused')", name="ck_assignment_status"),
        Index(
            "uq_assignment_active_pair",
            "trainer_id",
            "client_id",
            unique=True,
            postgresql_where=(status == "active"),
            sqlite_where=(status == "active"),
        ),
    )


class ProtectedRecord(RecordMixin, Base):
    """
    Generic document row for protected collections without a dedicated table
    (programs, notes, weekly summaries, ...).
    """

    __tablename__ = "protected_record"

    id = Column(String(36), primary_key=True, default=_new_id)
    collection = Column(Text, nullable=False, index=True)
    client_id = Column(Text, nullable=True, index=True)
    trainer_id = Column(Text, nullable=True, index=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_protected_record_collection_client", "collection", "client_id"),
    )

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.data or {})
        record.update({
            "id": self.id,
            "client_id": self.client_id,
            "trainer_id": self.trainer_id,
            "created_at": as_utc(self.created_at),
            "updated_at": as_utc(self.updated_at),
        })
        return record


class WorkoutActivity(RecordMixin, Base):
    """
    A single workout occurrence: completed, or explicitly logged as missed.

    Append-only; the owning client may apply a soft correction.
    """

    __tablename__ = "workout_activity"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(Text, nullable=False, index=True)
    program_id = Column(Text, nullable=True)
    workout_day_id = Column(Text, nullable=True)
    completed = Column(Boolean, nullable=False, default=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    corrected_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_workout_activity_client_occurred", "client_id", "occurred_at"),
    )


class WorkoutFeedback(RecordMixin, Base):
    """Difficulty rating (1-5) for one activity. Append-only."""

    __tablename__ = "workout_feedback"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(Text, nullable=False, index=True)
    program_id = Column(Text, nullable=True)
    activity_id = Column(String(36), ForeignKey("workout_activity.id"), nullable=True, index=True)
    difficulty_rating = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("difficulty_rating BETWEEN 1 AND 5", name="ck_feedback_difficulty_range"),
    )


class CheckInMessage(RecordMixin, Base):
    """Trainer-authored outreach. Never deleted."""

    __tablename__ = "check_in_message"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(Text, nullable=False, index=True)
    trainer_id = Column(Text, nullable=False, index=True)
    message = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)  # adherence status that prompted it
    sent_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    responded = Column(Boolean, nullable=False, default=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    reengaged_within_72h = Column(Boolean, nullable=False, default=False)


class ReminderDismissal(Base):
    """
    Trainer snooze for one client's follow-up reminder.

    Time-bounded: stops applying at dismissed_until, or earlier once the
    client re-engages (cleared_at).
    """

    __tablename__ = "reminder_dismissal"

    id = Column(String(36), primary_key=True, default=_new_id)
    trainer_id = Column(Text, nullable=False)
    client_id = Column(Text, nullable=False)
    dismissed_at = Column(DateTime(timezone=True), nullable=False)
    dismissed_until = Column(DateTime(timezone=True), nullable=False)
    cleared_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("trainer_id", "client_id", name="uq_reminder_dismissal_pair"),
    )


class ClientProfile(RecordMixin, Base):
    __tablename__ = "client_profile"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(Text, nullable=False, unique=True, index=True)
    display_name = Column(Text, nullable=True)
    first_name = Column(Text, nullable=True)
    last_name = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class AccessAuditEvent(Base):
    """
    Append-only audit log of access denials.

    Non-negotiable invariants:
    - write-only from the application (no update/delete in code paths)
    - bounded payload (ids and a short reason, no record contents)
    """

    __tablename__ = "access_audit_event"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    actor_member_id = Column(Text, nullable=True, index=True)
    acting_role = Column(Text, nullable=True)
    action = Column(Text, nullable=False, index=True)  # e.g. read.leak | read_one.denied | write.denied
    collection = Column(Text, nullable=True)
    record_id = Column(Text, nullable=True)
    target_client_id = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
