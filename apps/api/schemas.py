from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Optional, List, Dict


class RecordPage(BaseModel):
    items: List[Dict[str, Any]]
    total_count: int
    has_next: bool


class RoleBootstrapRequest(BaseModel):
    email: Optional[str] = None


class RoleUpdateRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1)


class MemberRoleResponse(BaseModel):
    member_id: str
    roles: List[str]
    status: str
    email: Optional[str] = None
    assigned_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record) -> "MemberRoleResponse":
        return cls(
            member_id=record.member_id,
            roles=record.role_names,
            status=record.status,
            email=record.email,
            assigned_at=record.assigned_at,
            updated_at=record.updated_at,
        )


class AssignmentCreate(BaseModel):
    trainer_id: str
    client_id: str
    notes: Optional[str] = None


class AssignmentStatusUpdate(BaseModel):
    status: str


class AssignmentResponse(BaseModel):
    id: str
    trainer_id: str
    client_id: str
    status: str
    assigned_at: datetime
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AdherenceSignalResponse(BaseModel):
    client_id: str
    status: str
    reason: str
    last_workout_date: Optional[datetime] = None
    avg_difficulty: Optional[float] = None
    missed_count_7d: int = 0
    completed_count_7d: int = 0
    days_since_last_activity: Optional[int] = None


class CoachingOpportunityResponse(AdherenceSignalResponse):
    suggestion: str


class ActivitySummaryResponse(BaseModel):
    client_id: str
    completed: int
    missed: int
    total: int
    completion_rate: int
    period: str


class WorkoutFeedbackResponse(BaseModel):
    id: str
    client_id: str
    activity_id: Optional[str] = None
    program_id: Optional[str] = None
    difficulty_rating: int
    note: Optional[str] = None
    submitted_at: datetime


class ReminderResponse(BaseModel):
    client_id: str
    status: str
    kind: str
    label: str
    reason: str
    days_since_last_interaction: int
    days_since_last_activity: Optional[int] = None
    last_workout_date: Optional[datetime] = None
    missed_count_7d: int = 0
    avg_difficulty: Optional[float] = None
    check_in_id: Optional[str] = None


class DismissalResponse(BaseModel):
    trainer_id: str
    client_id: str
    dismissed_at: datetime
    dismissed_until: datetime

    model_config = ConfigDict(from_attributes=True)


class WorkoutCreate(BaseModel):
    completed: bool = True
    program_id: Optional[str] = None
    workout_day_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = None


class WorkoutFeedbackCreate(BaseModel):
    # Range is enforced by the service so the error type stays consistent.
    difficulty_rating: int
    activity_id: Optional[str] = None
    program_id: Optional[str] = None
    note: Optional[str] = None


class CheckInCreate(BaseModel):
    client_id: str
    message: str
    reason: Optional[str] = None


class CheckInMetricsResponse(BaseModel):
    total_check_ins_sent: int
    clients_reengaged_within_72h: int
    responses: int
    effectiveness_rate: float
    period_days: int


class CheckInTemplateResponse(BaseModel):
    status: str
    message: str
    follow_ups: List[Dict[str, str]] = []


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class DisplayNameResponse(BaseModel):
    client_id: str
    display_name: str
