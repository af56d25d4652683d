"""
Follow-Up Reminder Scheduler

Quiet nudges for a trainer: which At Risk / Inactive clients have gone too
long without contact, or left a check-in unanswered.

Everything is recomputed per call from the event logs; nothing here is
cached. A dismissal is a time-bounded row (7 days) that stops applying early
once the client trains or answers a check-in after it was issued.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.auth import AuthContext
from core.events import subscribe, EVENT_CHECKIN_RESPONDED, EVENT_WORKOUT_LOGGED
from core.exceptions import NotFoundError, UnauthorizedError
from models import ReminderDismissal, as_utc
from services.adherence_signals import AdherenceSignal, AdherenceSignalService, AdherenceStatus
from services.audit_logger import record_access_denial
from services.relationship_registry import is_active_assignment
from services.role_resolver import Role, has_role, parse_role

logger = logging.getLogger(__name__)

DISMISSAL_DAYS = 7
NO_RESPONSE_MIN_DAYS = 3
NO_RESPONSE_MAX_DAYS = 5
INTERACTION_GAP_MIN_DAYS = 5
INTERACTION_GAP_MAX_DAYS = 14

REMINDER_STATUSES = (AdherenceStatus.INACTIVE, AdherenceStatus.AT_RISK)

KIND_NO_RESPONSE = "no_response"
KIND_INTERACTION_GAP = "interaction_gap"


@dataclass
class ReminderPrompt:
    client_id: str
    status: AdherenceStatus
    kind: str                           # no_response | interaction_gap
    label: str
    reason: str                         # adherence reason from the signal
    days_since_last_interaction: int
    days_since_last_activity: Optional[int] = None
    last_workout_date: Optional[datetime] = None
    missed_count_7d: int = 0
    avg_difficulty: Optional[float] = None
    check_in_id: Optional[str] = None   # set for no_response

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _whole_days(later: datetime, earlier: datetime) -> int:
    return (later - earlier).days


def reminder_sort_key(prompt: ReminderPrompt):
    """Inactive first, then longest since last activity (never active first), then id."""
    status_rank = 0 if prompt.status == AdherenceStatus.INACTIVE else 1
    days = prompt.days_since_last_activity
    activity_rank = (0, 0) if days is None else (1, -days)
    return (status_rank, activity_rank, prompt.client_id)


def is_dismissal_active(
    dismissal: Optional[ReminderDismissal],
    now: datetime,
    last_completed_at: Optional[datetime] = None,
    last_response_at: Optional[datetime] = None,
) -> bool:
    """
    A dismissal suppresses reminders only while it is unexpired, uncleared and
    the client has not re-engaged since it was issued.
    """
    if dismissal is None:
        return False
    dismissed_at = as_utc(dismissal.dismissed_at)
    if not (dismissed_at <= now < as_utc(dismissal.dismissed_until)):
        return False
    if dismissal.cleared_at is not None and as_utc(dismissal.cleared_at) <= now:
        return False
    if last_completed_at is not None and dismissed_at < last_completed_at <= now:
        return False
    if last_response_at is not None and dismissed_at < last_response_at <= now:
        return False
    return True


class ReminderScheduler:
    def __init__(self, gateway):
        self.gateway = gateway
        self.db: Session = gateway.db
        self.signals = AdherenceSignalService(gateway)

    def _require_trainer(self, ctx: AuthContext, action: str) -> None:
        role = parse_role(getattr(ctx, "role", None)) if ctx is not None else None
        member_id = getattr(ctx, "member_id", None) if ctx is not None else None
        if role != Role.TRAINER or not member_id or not has_role(self.db, member_id, Role.TRAINER):
            record_access_denial(
                action=f"{action}.unauthorized",
                actor_member_id=member_id,
                acting_role=role.value if role else None,
                reason="trainer role required",
            )
            raise UnauthorizedError()

    def _dismissals(self, trainer_id: str, client_ids: List[str]) -> Dict[str, ReminderDismissal]:
        rows = (
            self.db.query(ReminderDismissal)
            .filter(
                ReminderDismissal.trainer_id == trainer_id,
                ReminderDismissal.client_id.in_(client_ids),
            )
            .all()
        )
        return {r.client_id: r for r in rows}

    def get_reminders(self, ctx: AuthContext, now: Optional[datetime] = None) -> List[ReminderPrompt]:
        self._require_trainer(ctx, "reminders")
        now = as_utc(now or _utcnow())

        assigned_at = {
            a["client_id"]: as_utc(a["assigned_at"])
            for a in self.signals.active_assignments(ctx)
        }
        candidates: Dict[str, AdherenceSignal] = {
            s.client_id: s
            for s in self.signals.for_trainer(ctx, now)
            if s.status in REMINDER_STATUSES and s.client_id in assigned_at
        }
        if not candidates:
            return []
        client_ids = sorted(candidates)

        check_ins: Dict[str, List[Dict[str, Any]]] = {cid: [] for cid in client_ids}
        for m in self.gateway.read_all(
            "clientcoachmessages", ctx, {"trainer_id": ctx.member_id, "client_id": client_ids}
        ):
            if m.get("sent_at") and as_utc(m["sent_at"]) <= now:
                check_ins[m["client_id"]].append(m)

        completed_at: Dict[str, List[datetime]] = {cid: [] for cid in client_ids}
        for a in self.gateway.read_all("clientworkoutactivity", ctx, {"client_id": client_ids}):
            if a.get("completed") and a.get("occurred_at"):
                ts = as_utc(a["occurred_at"])
                if ts <= now:
                    completed_at[a["client_id"]].append(ts)

        profile_created = {
            p["client_id"]: as_utc(p["created_at"])
            for p in self.gateway.read_all("clientprofiles", ctx, {"client_id": client_ids})
            if p.get("created_at")
        }
        dismissals = self._dismissals(ctx.member_id, client_ids)

        prompts: List[ReminderPrompt] = []
        for client_id in client_ids:
            signal = candidates[client_id]
            messages = sorted(check_ins[client_id], key=lambda m: as_utc(m["sent_at"]))
            latest = messages[-1] if messages else None
            last_completed = max(completed_at[client_id]) if completed_at[client_id] else None
            responses = [
                as_utc(m["responded_at"]) for m in messages
                if m.get("responded") and m.get("responded_at")
            ]
            last_response = max(responses) if responses else None

            if is_dismissal_active(dismissals.get(client_id), now, last_completed, last_response):
                continue

            prompt = self._no_response_prompt(signal, latest, last_completed, now)
            if prompt is None:
                if latest is not None:
                    last_interaction = as_utc(latest["sent_at"])
                elif client_id in profile_created:
                    last_interaction = profile_created[client_id]
                else:
                    last_interaction = assigned_at[client_id]
                days = _whole_days(now, last_interaction)
                if INTERACTION_GAP_MIN_DAYS <= days <= INTERACTION_GAP_MAX_DAYS:
                    prompt = self._prompt(
                        signal,
                        KIND_INTERACTION_GAP,
                        f"Consider checking in ({days} days since last contact)",
                        days,
                    )

            if prompt is not None:
                prompts.append(prompt)

        return sorted(prompts, key=reminder_sort_key)

    def _no_response_prompt(
        self,
        signal: AdherenceSignal,
        latest: Optional[Dict[str, Any]],
        last_completed: Optional[datetime],
        now: datetime,
    ) -> Optional[ReminderPrompt]:
        if latest is None or latest.get("responded"):
            return None
        sent_at = as_utc(latest["sent_at"])
        days = _whole_days(now, sent_at)
        if not (NO_RESPONSE_MIN_DAYS <= days <= NO_RESPONSE_MAX_DAYS):
            return None
        if last_completed is not None and last_completed >= sent_at:
            return None
        return self._prompt(
            signal,
            KIND_NO_RESPONSE,
            f"No response after check-in ({days} days)",
            days,
            check_in_id=latest.get("id"),
        )

    @staticmethod
    def _prompt(
        signal: AdherenceSignal,
        kind: str,
        label: str,
        days: int,
        check_in_id: Optional[str] = None,
    ) -> ReminderPrompt:
        return ReminderPrompt(
            client_id=signal.client_id,
            status=signal.status,
            kind=kind,
            label=label,
            reason=signal.reason,
            days_since_last_interaction=days,
            days_since_last_activity=signal.days_since_last_activity,
            last_workout_date=signal.last_workout_date,
            missed_count_7d=signal.missed_count_7d,
            avg_difficulty=signal.avg_difficulty,
            check_in_id=check_in_id,
        )

    def dismiss(self, ctx: AuthContext, client_id: str, now: Optional[datetime] = None) -> ReminderDismissal:
        """Snooze one client's reminder for 7 days. Refreshing an existing dismissal wins."""
        self._require_trainer(ctx, "reminders.dismiss")
        if not is_active_assignment(self.db, ctx.member_id, client_id):
            record_access_denial(
                action="reminders.dismiss.denied",
                actor_member_id=ctx.member_id,
                acting_role=Role.TRAINER.value,
                target_client_id=client_id,
                reason="client not actively assigned",
            )
            raise NotFoundError("Client")

        now = as_utc(now or _utcnow())
        dismissal = (
            self.db.query(ReminderDismissal)
            .filter(ReminderDismissal.trainer_id == ctx.member_id, ReminderDismissal.client_id == client_id)
            .first()
        )
        if dismissal is None:
            dismissal = ReminderDismissal(trainer_id=ctx.member_id, client_id=client_id)
            self.db.add(dismissal)
        dismissal.dismissed_at = now
        dismissal.dismissed_until = now + timedelta(days=DISMISSAL_DAYS)
        dismissal.cleared_at = None
        self.db.flush()
        logger.info(f"Trainer {ctx.member_id} dismissed reminder for client {client_id} until {dismissal.dismissed_until}")
        return dismissal


def clear_dismissal(
    db: Session,
    trainer_id: Optional[str],
    client_id: str,
    now: Optional[datetime] = None,
) -> int:
    """
    Mark open dismissals for a client as cleared. trainer_id=None clears the
    client's dismissals for every trainer. Returns the number cleared.
    """
    now = as_utc(now) if now else _utcnow()
    q = db.query(ReminderDismissal).filter(
        ReminderDismissal.client_id == client_id,
        ReminderDismissal.cleared_at.is_(None),
    )
    if trainer_id is not None:
        q = q.filter(ReminderDismissal.trainer_id == trainer_id)
    cleared = 0
    for dismissal in q.all():
        # Re-engagement that predates the dismissal does not lift it.
        if as_utc(dismissal.dismissed_at) >= now:
            continue
        dismissal.cleared_at = now
        cleared += 1
    if cleared:
        db.flush()
        logger.info(f"Cleared {cleared} reminder dismissal(s) for client {client_id}")
    return cleared


def _on_workout_logged(db: Session, client_id: str, occurred_at: Optional[datetime] = None, **_):
    clear_dismissal(db, None, client_id, occurred_at)


def _on_checkin_responded(db: Session, client_id: str, trainer_id: str, responded_at: Optional[datetime] = None, **_):
    clear_dismissal(db, trainer_id, client_id, responded_at)


subscribe(EVENT_WORKOUT_LOGGED, _on_workout_logged)
subscribe(EVENT_CHECKIN_RESPONDED, _on_checkin_responded)
