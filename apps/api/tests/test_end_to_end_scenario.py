"""
One week in the life of a client, across every service.

C signed up six days ago and was assigned to trainer T. This week C completed
three workouts, missed two, and rated them 3/5 on average. Trainer U has no
relationship with C.
"""
from datetime import timedelta

import pytest

from conftest import NOW, client_ctx, trainer_ctx
from core.exceptions import NotFoundError
from models import AccessAuditEvent
from services.access_gateway import ScopedAccessGateway
from services.adherence_signals import AdherenceSignalService, AdherenceStatus
from services.check_ins import CheckInService
from services.follow_up_reminders import KIND_INTERACTION_GAP, ReminderScheduler
from services.record_store import SqlRecordStore
from services.role_resolver import bootstrap_client_role
from services.relationship_registry import assign_client


@pytest.fixture
def week(db_session, make_member, make_profile):
    make_member("T", "trainer")
    make_member("U", "trainer")
    make_member("other-client", "client")
    bootstrap_client_role(db_session, "C", email="c@example.com")
    assignment = assign_client(db_session, "T", "C")
    assignment.assigned_at = NOW - timedelta(days=6)
    db_session.flush()
    make_profile("C", created_at=NOW - timedelta(days=6), first_name="Casey")
    assign_client(db_session, "U", "other-client")

    gateway = ScopedAccessGateway(db_session)
    signals = AdherenceSignalService(gateway)
    ctx = client_ctx("C")
    ratings = [3, 2, 4]
    for days_ago, rating in zip((1, 3, 5), ratings):
        activity = signals.record_workout(ctx, occurred_at=NOW - timedelta(days=days_ago))
        signals.record_feedback(ctx, rating, activity_id=activity["id"], submitted_at=NOW - timedelta(days=days_ago))
    for days_ago in (2, 4):
        signals.record_workout(ctx, completed=False, occurred_at=NOW - timedelta(days=days_ago))

    store = SqlRecordStore(db_session)
    store.insert("clientassignedworkouts", {"client_id": "C", "trainer_id": "T", "title": "Strength block"})
    store.insert("clientassignedworkouts", {"client_id": "C", "title": "Mobility"})
    store.insert("clientassignedworkouts", {"client_id": "other-client", "trainer_id": "U", "title": "Base"})
    return gateway


def test_client_is_at_risk(week):
    signal = AdherenceSignalService(week).classify_client(trainer_ctx("T"), "C", now=NOW)

    assert signal.status == AdherenceStatus.AT_RISK
    assert "2" in signal.reason
    assert signal.completed_count_7d == 3
    assert signal.missed_count_7d == 2
    assert signal.avg_difficulty == 3.0


def test_assigned_trainer_gets_reminder(week):
    prompts = ReminderScheduler(week).get_reminders(trainer_ctx("T"), NOW)

    assert len(prompts) == 1
    assert prompts[0].client_id == "C"
    assert prompts[0].kind == KIND_INTERACTION_GAP
    assert prompts[0].days_since_last_interaction == 6


def test_unassigned_trainer_never_sees_client(week, db_session):
    u = trainer_ctx("U")

    records = week.read_all("clientassignedworkouts", u)
    assert all(r["client_id"] != "C" for r in records)
    assert [r["title"] for r in records] == ["Base"]

    assert week.read_all("clientassignedworkouts", u, {"client_id": "C"}) == []
    assert ReminderScheduler(week).get_reminders(u, NOW) == []
    assert AdherenceSignalService(week).classify_client(u, "C", now=NOW).reason == "No workout data yet"

    c_record = week.read_all("clientassignedworkouts", client_ctx("C"))[0]
    with pytest.raises(NotFoundError):
        week.read_one("clientassignedworkouts", c_record["id"], u)
    with pytest.raises(NotFoundError):
        CheckInService(week).send_check_in(u, "C", "Hi there", now=NOW)

    denials = db_session.query(AccessAuditEvent).filter(AccessAuditEvent.actor_member_id == "U").all()
    assert {d.action for d in denials} == {"read_one.denied", "write.denied"}


def test_check_in_then_reengagement_closes_the_loop(week, db_session):
    service = CheckInService(week)
    check_in = service.send_check_in(trainer_ctx("T"), "C", "How's the week going?", reason="At Risk", now=NOW)

    # A reply and a fresh workout within 72 hours.
    service.mark_responded(client_ctx("C"), check_in["id"], now=NOW + timedelta(hours=3))
    AdherenceSignalService(week).record_workout(client_ctx("C"), occurred_at=NOW + timedelta(hours=20))

    metrics = service.effectiveness_metrics(trainer_ctx("T"), now=NOW + timedelta(days=1))
    assert metrics["total_check_ins_sent"] == 1
    assert metrics["clients_reengaged_within_72h"] == 1
    assert metrics["effectiveness_rate"] == 100.0

    # The check-in is now the latest contact, so the gap reminder goes quiet.
    assert ReminderScheduler(week).get_reminders(trainer_ctx("T"), NOW + timedelta(days=1)) == []
