"""
Weekly Trainer Digest

Monday summary for each trainer: how their clients are doing, who needs a
check-in first. Computed through the access gateway with the trainer's own
AuthContext, so the digest can never include a client the trainer could not
see in the app.
"""

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.auth import AuthContext
from models import as_utc
from services.access_gateway import ScopedAccessGateway
from services.adherence_signals import AdherenceSignalService, AdherenceStatus, URGENCY_RANK
from services.follow_up_reminders import ReminderScheduler
from services.profile_cache import ProfileCache
from services.role_resolver import Role, get_role_record

logger = logging.getLogger(__name__)

TOP_CLIENTS = 3


@dataclass
class WeeklyDigestMetrics:
    active_clients: int = 0
    on_track_count: int = 0
    at_risk_count: int = 0
    inactive_count: int = 0
    too_hard_count: int = 0
    too_easy_count: int = 0
    avg_completion_rate: int = 0              # percent, over clients with any activity this week
    avg_difficulty_rating: Optional[float] = None
    clients_needing_check_in: int = 0
    follow_up_reminders: int = 0
    top_clients: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DigestEmail:
    subject: str
    html_content: str
    text_content: str


def calculate_weekly_metrics(gateway: ScopedAccessGateway, ctx: AuthContext, now: Optional[datetime] = None) -> WeeklyDigestMetrics:
    now = as_utc(now or datetime.now(timezone.utc))
    signals_service = AdherenceSignalService(gateway)
    signals = signals_service.for_trainer(ctx, now)

    metrics = WeeklyDigestMetrics(active_clients=len(signals))
    if not signals:
        return metrics

    counts = {status: 0 for status in AdherenceStatus}
    for s in signals:
        counts[s.status] += 1
    metrics.on_track_count = counts[AdherenceStatus.ON_TRACK]
    metrics.at_risk_count = counts[AdherenceStatus.AT_RISK]
    metrics.inactive_count = counts[AdherenceStatus.INACTIVE]
    metrics.too_hard_count = counts[AdherenceStatus.TOO_HARD]
    metrics.too_easy_count = counts[AdherenceStatus.TOO_EASY]

    rates = []
    for s in signals:
        summary = signals_service.activity_summary(ctx, s.client_id, now=now)
        if summary["total"] > 0:
            rates.append(summary["completion_rate"])
    metrics.avg_completion_rate = round(sum(rates) / len(rates)) if rates else 0

    difficulties = [s.avg_difficulty for s in signals if s.avg_difficulty is not None]
    metrics.avg_difficulty_rating = round(sum(difficulties) / len(difficulties), 1) if difficulties else None

    needing = [s for s in signals if s.status != AdherenceStatus.ON_TRACK]
    metrics.clients_needing_check_in = len(needing)
    metrics.follow_up_reminders = len(ReminderScheduler(gateway).get_reminders(ctx, now))

    top = sorted(needing, key=lambda s: (URGENCY_RANK[s.status], s.client_id))[:TOP_CLIENTS]
    names = ProfileCache(gateway).get_display_names(ctx, [s.client_id for s in top])
    metrics.top_clients = [
        {"client_id": s.client_id, "display_name": names[s.client_id], "status": s.status.value, "reason": s.reason}
        for s in top
    ]
    return metrics


def _week_range(generated_at: datetime) -> str:
    start = (generated_at - timedelta(days=generated_at.weekday())).date()
    end = start + timedelta(days=6)
    return f"{start.strftime('%d %b')} - {end.strftime('%d %b')}"


def render_digest(trainer_name: Optional[str], metrics: WeeklyDigestMetrics, generated_at: datetime) -> DigestEmail:
    """Pre-render the digest. The email dispatcher only sends what it is given."""
    name = html.escape(trainer_name or "there")
    week = _week_range(generated_at)
    difficulty = f"{metrics.avg_difficulty_rating:.1f}/5" if metrics.avg_difficulty_rating is not None else "n/a"

    stats = [
        ("Active clients", metrics.active_clients),
        ("On track", metrics.on_track_count),
        ("At risk", metrics.at_risk_count),
        ("Inactive", metrics.inactive_count),
        ("Too hard / too easy", f"{metrics.too_hard_count} / {metrics.too_easy_count}"),
        ("Avg completion rate", f"{metrics.avg_completion_rate}%"),
        ("Avg difficulty", difficulty),
        ("Follow-up reminders", metrics.follow_up_reminders),
    ]

    html_parts = [
        f"<h2>Hi {name},</h2>",
        f"<p>Your client check-in summary for {week}.</p>",
        "<table>",
    ]
    for label, value in stats:
        html_parts.append(f"<tr><td>{label}</td><td><strong>{value}</strong></td></tr>")
    html_parts.append("</table>")

    text_parts = [f"Hi {trainer_name or 'there'},", f"\nYour client check-in summary for {week}.\n"]
    text_parts.extend(f"{label}: {value}" for label, value in stats)

    if metrics.top_clients:
        html_parts.append("<h3>Check in first</h3>")
        html_parts.append("<ul>")
        text_parts.append("\nCHECK IN FIRST:")
        for client in metrics.top_clients:
            html_parts.append(
                f"<li><strong>{html.escape(client['display_name'])}</strong> ({client['status']}): "
                f"{html.escape(client['reason'])}</li>"
            )
            text_parts.append(f"- {client['display_name']} ({client['status']}): {client['reason']}")
        html_parts.append("</ul>")
    else:
        html_parts.append("<p>Every client is on track this week.</p>")
        text_parts.append("\nEvery client is on track this week.")

    return DigestEmail(
        subject=f"Weekly client summary ({week})",
        html_content="\n".join(html_parts),
        text_content="\n".join(text_parts),
    )


def build_trainer_digest(db: Session, trainer_id: str, now: Optional[datetime] = None):
    """
    Metrics + rendered email for one trainer, computed as that trainer.

    The gateway re-checks that trainer_id currently holds the trainer role.
    Returns (metrics, email).
    """
    now = as_utc(now or datetime.now(timezone.utc))
    record = get_role_record(db, trainer_id)
    gateway = ScopedAccessGateway(db)
    ctx = AuthContext(member_id=trainer_id, role=Role.TRAINER)
    metrics = calculate_weekly_metrics(gateway, ctx, now)
    trainer_name = record.email.split("@")[0] if record is not None and record.email else None
    email = render_digest(trainer_name, metrics, now)
    return metrics, email
