"""
Coach check-in messages.

Trainers send short outreach messages to clients flagged by the adherence
engine. Each message records whether the client answered and whether they
came back to training within 72 hours, which feeds the effectiveness metrics.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.auth import AuthContext
from core.events import emit, subscribe, EVENT_CHECKIN_RESPONDED, EVENT_WORKOUT_LOGGED
from core.exceptions import ConflictError, ValidationError
from models import CheckInMessage, as_utc
from services.adherence_signals import AdherenceStatus

logger = logging.getLogger(__name__)

COLLECTION = "clientcoachmessages"
DUPLICATE_WINDOW_HOURS = 24
REENGAGEMENT_WINDOW_HOURS = 72
EFFECTIVENESS_WINDOW_DAYS = 30
MAX_MESSAGE_LENGTH = 4000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


CHECK_IN_TEMPLATES = {
    AdherenceStatus.AT_RISK: (
        "Hi{name},\n\n"
        "I noticed a couple of sessions slipped this week. How are things going?\n\n"
        "If the schedule or the programme is getting in the way, tell me and we will adjust it."
    ),
    AdherenceStatus.INACTIVE: (
        "Hi{name},\n\n"
        "I haven't seen a session from you in a while and wanted to check in.\n\n"
        "Whatever is getting in the way, let's talk it through and find a plan that fits."
    ),
    AdherenceStatus.TOO_HARD: (
        "Hi{name},\n\n"
        "Your recent ratings suggest the programme is feeling very demanding.\n\n"
        "We can dial the intensity back so you keep progressing without burning out. Thoughts?"
    ),
    AdherenceStatus.TOO_EASY: (
        "Hi{name},\n\n"
        "You're handling the current programme comfortably, nice work.\n\n"
        "I think you're ready for a step up. When suits you to talk about progressing?"
    ),
    AdherenceStatus.ON_TRACK: (
        "Hi{name},\n\n"
        "Just checking in to see how training is going. Anything I can help with?"
    ),
}

FOLLOW_UP_TEMPLATES = {
    AdherenceStatus.AT_RISK: [
        {"label": "Gentle re-engagement", "text": "Hi,\n\nChecking in again. Is there anything I can change so training fits your week better?"},
        {"label": "Problem-solving", "text": "Hi,\n\nA few sessions have been missed lately. What's getting in the way? Let's work around it together."},
    ],
    AdherenceStatus.INACTIVE: [
        {"label": "Reconnection", "text": "Hi,\n\nI've missed seeing you in the app. Is the programme still working for you?"},
        {"label": "Support", "text": "Hi,\n\nIt's been a while. No judgement here: if something changed, we can adjust the plan."},
    ],
    AdherenceStatus.TOO_HARD: [
        {"label": "Scale back", "text": "Hi,\n\nIf the programme has felt too intense, we can scale it back. Consistency matters more."},
    ],
    AdherenceStatus.TOO_EASY: [
        {"label": "Progression", "text": "Hi,\n\nYou're ready for more. Shall we progress your training next week?"},
    ],
}


def get_message_template(status: str, client_name: Optional[str] = None) -> str:
    """Pre-filled check-in message for an adherence status."""
    try:
        key = AdherenceStatus(status)
    except ValueError:
        key = AdherenceStatus.ON_TRACK
    name = f" {client_name}" if client_name else ""
    return CHECK_IN_TEMPLATES[key].format(name=name)


def get_follow_up_templates(status: str) -> List[Dict[str, str]]:
    try:
        key = AdherenceStatus(status)
    except ValueError:
        return []
    return list(FOLLOW_UP_TEMPLATES.get(key, []))


class CheckInService:
    def __init__(self, gateway):
        self.gateway = gateway

    def recent_check_ins(
        self,
        ctx: AuthContext,
        client_id: Optional[str] = None,
        days: int = EFFECTIVENESS_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Check-ins visible to the caller sent in the last `days`, newest first."""
        now = as_utc(now or _utcnow())
        cutoff = now - timedelta(days=days)
        filters = {"client_id": client_id} if client_id else {}
        items = [
            m for m in self.gateway.read_all(COLLECTION, ctx, filters)
            if m.get("sent_at") and cutoff <= as_utc(m["sent_at"]) <= now
        ]
        return sorted(items, key=lambda m: as_utc(m["sent_at"]), reverse=True)

    def has_recent_check_in(
        self,
        ctx: AuthContext,
        client_id: str,
        hours: int = DUPLICATE_WINDOW_HOURS,
        now: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now or _utcnow())
        cutoff = now - timedelta(hours=hours)
        for m in self.gateway.read_all(COLLECTION, ctx, {"client_id": client_id, "trainer_id": ctx.member_id}):
            sent_at = m.get("sent_at")
            if sent_at and as_utc(sent_at) >= cutoff:
                return True
        return False

    def send_check_in(
        self,
        ctx: AuthContext,
        client_id: str,
        message: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Send a check-in from the calling trainer.

        The gateway enforces the active assignment at write time. A second
        check-in to the same client within 24 hours is rejected.
        """
        now = as_utc(now or _utcnow())
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message is required", field="message")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters", field="message")
        if reason is not None:
            try:
                reason = AdherenceStatus(reason).value
            except ValueError:
                raise ValidationError(f"Unknown check-in reason '{reason}'", field="reason")

        if self.has_recent_check_in(ctx, client_id, now=now):
            raise ConflictError("A check-in was already sent to this client in the last 24 hours")

        record = self.gateway.write(
            COLLECTION,
            ctx,
            {
                "client_id": client_id,
                "trainer_id": ctx.member_id,
                "message": message,
                "reason": reason,
                "sent_at": now,
                "responded": False,
                "reengaged_within_72h": False,
            },
        )
        logger.info(f"Check-in {record['id']} sent by trainer {ctx.member_id} to client {client_id}")
        return record

    def mark_responded(self, ctx: AuthContext, check_in_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Client acknowledges a check-in. Idempotent."""
        check_in = self.gateway.read_one(COLLECTION, check_in_id, ctx)
        if check_in.get("responded"):
            return check_in

        now = as_utc(now or _utcnow())
        record = self.gateway.write(
            COLLECTION,
            ctx,
            {"id": check_in_id, "responded": True, "responded_at": now},
        )
        emit(
            EVENT_CHECKIN_RESPONDED,
            db=self.gateway.db,
            client_id=record["client_id"],
            trainer_id=record["trainer_id"],
            responded_at=now,
        )
        return record

    def track_reengagement(
        self,
        ctx: AuthContext,
        check_in_id: str,
        hours: int = REENGAGEMENT_WINDOW_HOURS,
    ) -> bool:
        """Recompute whether the client trained within `hours` of the check-in."""
        check_in = self.gateway.read_one(COLLECTION, check_in_id, ctx)
        sent_at = as_utc(check_in["sent_at"])
        deadline = sent_at + timedelta(hours=hours)

        reengaged = any(
            a.get("completed") and sent_at <= as_utc(a["occurred_at"]) <= deadline
            for a in self.gateway.read_all("clientworkoutactivity", ctx, {"client_id": check_in["client_id"]})
        )
        if bool(check_in.get("reengaged_within_72h")) != reengaged:
            self.gateway.write(COLLECTION, ctx, {"id": check_in_id, "reengaged_within_72h": reengaged})
        return reengaged

    def effectiveness_metrics(
        self,
        ctx: AuthContext,
        days: int = EFFECTIVENESS_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Share of the caller's recent check-ins followed by a workout within 72h."""
        now = as_utc(now or _utcnow())
        cutoff = now - timedelta(days=days)
        sent = [
            m for m in self.gateway.read_all(COLLECTION, ctx, {"trainer_id": ctx.member_id})
            if m.get("sent_at") and as_utc(m["sent_at"]) >= cutoff
        ]
        reengaged = sum(1 for m in sent if m.get("reengaged_within_72h"))
        responded = sum(1 for m in sent if m.get("responded"))
        return {
            "total_check_ins_sent": len(sent),
            "clients_reengaged_within_72h": reengaged,
            "responses": responded,
            "effectiveness_rate": round(reengaged / len(sent) * 100, 1) if sent else 0.0,
            "period_days": days,
        }


def _on_workout_logged(db: Session, client_id: str, occurred_at: Optional[datetime] = None, **_):
    """Flag check-ins answered by a workout inside the re-engagement window."""
    occurred_at = as_utc(occurred_at) if occurred_at else _utcnow()
    window_start = occurred_at - timedelta(hours=REENGAGEMENT_WINDOW_HOURS)
    updated = (
        db.query(CheckInMessage)
        .filter(
            CheckInMessage.client_id == client_id,
            CheckInMessage.reengaged_within_72h.is_(False),
            CheckInMessage.sent_at >= window_start,
            CheckInMessage.sent_at <= occurred_at,
        )
        .update({CheckInMessage.reengaged_within_72h: True}, synchronize_session="fetch")
    )
    if updated:
        logger.info(f"Marked {updated} check-in(s) re-engaged for client {client_id}")


subscribe(EVENT_WORKOUT_LOGGED, _on_workout_logged)
