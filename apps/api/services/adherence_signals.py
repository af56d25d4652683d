"""
Adherence Signal Engine

Classifies each client's recent training behaviour into one status over a
trailing 7-day window (now - 7d, now]. Rules are evaluated in a fixed order
and the first match wins:

1. Inactive  - no completed workout in the window (client has history)
2. At Risk   - 2 or more explicitly missed workouts in the window
3. Too Hard  - average difficulty rating in the window >= 4.5
4. Too Easy  - average difficulty rating in the window <= 2.0
5. On Track  - everything else, including "no data yet"

classify() is pure: same events + same `now` -> same signal. The service
class below only fetches events through the access gateway and feeds them in.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from core.auth import AuthContext
from core.exceptions import NotFoundError, ValidationError
from models import as_utc
from services.audit_logger import record_access_denial
from services.relationship_registry import is_active_assignment
from services.role_resolver import Role, parse_role

logger = logging.getLogger(__name__)


class AdherenceStatus(str, Enum):
    """Client adherence status, most urgent first."""
    INACTIVE = "Inactive"
    AT_RISK = "At Risk"
    TOO_HARD = "Too Hard"
    TOO_EASY = "Too Easy"
    ON_TRACK = "On Track"


# Urgency ranking (lower = more urgent). Used by digests and trainer views.
URGENCY_RANK = {
    AdherenceStatus.INACTIVE: 0,
    AdherenceStatus.AT_RISK: 1,
    AdherenceStatus.TOO_HARD: 2,
    AdherenceStatus.TOO_EASY: 3,
    AdherenceStatus.ON_TRACK: 4,
}

WINDOW_DAYS = 7
MISSED_WORKOUTS_THRESHOLD = 2
TOO_HARD_THRESHOLD = 4.5
TOO_EASY_THRESHOLD = 2.0
MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 5


@dataclass
class AdherenceSignal:
    """Derived per-client status. Never persisted."""
    client_id: str
    status: AdherenceStatus
    reason: str
    last_workout_date: Optional[datetime] = None
    avg_difficulty: Optional[float] = None     # None when there is no feedback in the window
    missed_count_7d: int = 0
    completed_count_7d: int = 0
    days_since_last_activity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    return as_utc(value)


def is_valid_difficulty(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_DIFFICULTY <= value <= MAX_DIFFICULTY
    )


def classify(
    client_id: str,
    activities: Iterable[Dict[str, Any]],
    feedback: Iterable[Dict[str, Any]],
    now: datetime,
) -> AdherenceSignal:
    """
    Classify one client from their activity and feedback events.

    Events after `now` are ignored. Ratings outside 1-5 are skipped with a
    warning rather than poisoning the average.
    """
    now = as_utc(now)
    window_start = now - timedelta(days=WINDOW_DAYS)

    def in_window(ts: datetime) -> bool:
        return window_start < ts <= now

    has_history = False
    completed_7d = 0
    missed_7d = 0
    last_completed: Optional[datetime] = None

    for activity in activities:
        ts = _timestamp(activity.get("occurred_at"))
        if ts is None or ts > now:
            continue
        has_history = True
        completed = bool(activity.get("completed"))
        if completed and (last_completed is None or ts > last_completed):
            last_completed = ts
        if in_window(ts):
            if completed:
                completed_7d += 1
            else:
                missed_7d += 1

    ratings: List[int] = []
    for item in feedback:
        ts = _timestamp(item.get("submitted_at"))
        if ts is None or not in_window(ts):
            continue
        rating = item.get("difficulty_rating")
        if not is_valid_difficulty(rating):
            logger.warning(f"Ignoring out-of-range difficulty rating {rating!r} for client {client_id}")
            continue
        ratings.append(rating)

    avg_difficulty = sum(ratings) / len(ratings) if ratings else None
    days_since = (now - last_completed).days if last_completed else None

    def signal(status: AdherenceStatus, reason: str) -> AdherenceSignal:
        return AdherenceSignal(
            client_id=client_id,
            status=status,
            reason=reason,
            last_workout_date=last_completed,
            avg_difficulty=round(avg_difficulty, 2) if avg_difficulty is not None else None,
            missed_count_7d=missed_7d,
            completed_count_7d=completed_7d,
            days_since_last_activity=days_since,
        )

    if not has_history and not ratings:
        return signal(AdherenceStatus.ON_TRACK, "No workout data yet")

    if has_history and completed_7d == 0:
        if days_since is not None:
            return signal(
                AdherenceStatus.INACTIVE,
                f"No completed workouts in the last {WINDOW_DAYS} days (last one {days_since} days ago)",
            )
        return signal(AdherenceStatus.INACTIVE, "No completed workouts on record")

    if missed_7d >= MISSED_WORKOUTS_THRESHOLD:
        return signal(AdherenceStatus.AT_RISK, f"Missed {missed_7d} workouts in the last {WINDOW_DAYS} days")

    if avg_difficulty is not None and avg_difficulty >= TOO_HARD_THRESHOLD:
        return signal(
            AdherenceStatus.TOO_HARD,
            f"Average difficulty {avg_difficulty:.1f}/5 across {len(ratings)} ratings",
        )

    if avg_difficulty is not None and avg_difficulty <= TOO_EASY_THRESHOLD:
        return signal(
            AdherenceStatus.TOO_EASY,
            f"Average difficulty {avg_difficulty:.1f}/5 across {len(ratings)} ratings",
        )

    return signal(
        AdherenceStatus.ON_TRACK,
        f"{completed_7d} workouts completed in the last {WINDOW_DAYS} days",
    )


def sort_by_urgency(signals: Iterable[AdherenceSignal]) -> List[AdherenceSignal]:
    return sorted(signals, key=lambda s: (URGENCY_RANK[s.status], s.client_id))


COACHING_SUGGESTIONS = {
    AdherenceStatus.TOO_HARD: "Programme may be too intense: consider scaling volume or intensity back",
    AdherenceStatus.TOO_EASY: "Client is ready for more: consider progressing load or complexity",
}


class AdherenceSignalService:
    """
    Gateway-backed entry points for signals and workout logging.

    All reads run under the caller's AuthContext, so a trainer only ever
    classifies clients the gateway lets them see.
    """

    def __init__(self, gateway):
        self.gateway = gateway

    def _client_events(self, ctx: AuthContext, client_id: str):
        activities = self.gateway.read_all("clientworkoutactivity", ctx, {"client_id": client_id})
        feedback = self.gateway.read_all("clientworkoutfeedback", ctx, {"client_id": client_id})
        return activities, feedback

    def active_assignments(self, ctx: AuthContext) -> List[Dict[str, Any]]:
        """The caller's active assignment edges (as a trainer)."""
        return self.gateway.read_all(
            "trainerclientassignments", ctx, {"trainer_id": ctx.member_id, "status": "active"}
        )

    def require_visible_client(self, ctx: AuthContext, client_id: str) -> None:
        """
        Clients see themselves; trainers see actively assigned clients.
        Anyone else gets the same NotFound as an unknown client.
        """
        role = parse_role(ctx.role)
        if role == Role.CLIENT and ctx.member_id == client_id:
            return
        if role == Role.TRAINER and is_active_assignment(self.gateway.db, ctx.member_id, client_id):
            return
        record_access_denial(
            action="signals.denied",
            actor_member_id=ctx.member_id,
            acting_role=role.value if role else None,
            target_client_id=client_id,
            reason="client not visible to caller",
        )
        raise NotFoundError("Client")

    def classify_client(self, ctx: AuthContext, client_id: str, now: Optional[datetime] = None) -> AdherenceSignal:
        activities, feedback = self._client_events(ctx, client_id)
        return classify(client_id, activities, feedback, now or _utcnow())

    def for_trainer(self, ctx: AuthContext, now: Optional[datetime] = None) -> List[AdherenceSignal]:
        """Signals for every actively assigned client, most urgent first."""
        now = now or _utcnow()
        client_ids = sorted({a["client_id"] for a in self.active_assignments(ctx)})
        if not client_ids:
            return []

        activities = self.gateway.read_all("clientworkoutactivity", ctx, {"client_id": client_ids})
        feedback = self.gateway.read_all("clientworkoutfeedback", ctx, {"client_id": client_ids})

        by_client_activity: Dict[str, List[Dict[str, Any]]] = {cid: [] for cid in client_ids}
        by_client_feedback: Dict[str, List[Dict[str, Any]]] = {cid: [] for cid in client_ids}
        for a in activities:
            by_client_activity.setdefault(a["client_id"], []).append(a)
        for f in feedback:
            by_client_feedback.setdefault(f["client_id"], []).append(f)

        signals = [
            classify(cid, by_client_activity[cid], by_client_feedback[cid], now)
            for cid in client_ids
        ]
        return sort_by_urgency(signals)

    def coaching_opportunities(self, ctx: AuthContext, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Clients whose programme difficulty looks miscalibrated."""
        opportunities = []
        for s in self.for_trainer(ctx, now):
            if s.status in COACHING_SUGGESTIONS:
                entry = s.to_dict()
                entry["suggestion"] = COACHING_SUGGESTIONS[s.status]
                opportunities.append(entry)
        return opportunities

    def activity_summary(
        self,
        ctx: AuthContext,
        client_id: str,
        days: int = WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if days < 1:
            raise ValidationError("days must be >= 1", field="days")
        now = as_utc(now or _utcnow())
        start = now - timedelta(days=days)

        completed = 0
        missed = 0
        for a in self.gateway.read_all("clientworkoutactivity", ctx, {"client_id": client_id}):
            ts = _timestamp(a.get("occurred_at"))
            if ts is None or not (start < ts <= now):
                continue
            if a.get("completed"):
                completed += 1
            else:
                missed += 1

        total = completed + missed
        return {
            "client_id": client_id,
            "completed": completed,
            "missed": missed,
            "total": total,
            "completion_rate": round(completed / total * 100) if total else 0,
            "period": f"Last {days} days",
        }

    def recent_feedback(
        self,
        ctx: AuthContext,
        client_id: str,
        days: int = WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        now = as_utc(now or _utcnow())
        start = now - timedelta(days=days)
        items = [
            f for f in self.gateway.read_all("clientworkoutfeedback", ctx, {"client_id": client_id})
            if (_timestamp(f.get("submitted_at")) or start) > start
        ]
        return sorted(items, key=lambda f: _timestamp(f["submitted_at"]), reverse=True)

    def record_workout(
        self,
        ctx: AuthContext,
        completed: bool = True,
        program_id: Optional[str] = None,
        workout_day_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one completed (or missed) workout for the calling client."""
        return self.gateway.write(
            "clientworkoutactivity",
            ctx,
            {
                "client_id": ctx.member_id,
                "program_id": program_id,
                "workout_day_id": workout_day_id,
                "completed": bool(completed),
                "occurred_at": occurred_at or _utcnow(),
                "notes": notes,
            },
        )

    def record_feedback(
        self,
        ctx: AuthContext,
        difficulty_rating: int,
        activity_id: Optional[str] = None,
        program_id: Optional[str] = None,
        note: Optional[str] = None,
        submitted_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if not is_valid_difficulty(difficulty_rating):
            raise ValidationError(
                f"Difficulty rating must be between {MIN_DIFFICULTY} and {MAX_DIFFICULTY}",
                field="difficulty_rating",
            )
        if activity_id is not None:
            # Ownership check: rating someone else's workout looks like a missing id.
            activity = self.gateway.read_one("clientworkoutactivity", activity_id, ctx)
            program_id = program_id or activity.get("program_id")

        return self.gateway.write(
            "clientworkoutfeedback",
            ctx,
            {
                "client_id": ctx.member_id,
                "activity_id": activity_id,
                "program_id": program_id,
                "difficulty_rating": difficulty_rating,
                "note": note,
                "submitted_at": submitted_at or _utcnow(),
            },
        )
