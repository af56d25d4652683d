"""
Tests for the scoped access gateway.

Covers the ownership predicate for each acting role, NotFound masking of
out-of-scope records, write-time registry checks, the admin entry points
and the audit trail behind every denial.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import NOW, admin_ctx, client_ctx, trainer_ctx
from core.auth import AuthContext
from core.cache import profile_cache_key, set_cache, get_cache
from core.exceptions import (
    ConfigurationError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from models import AccessAuditEvent
from services.access_gateway import PROTECTED_COLLECTIONS, RecordQuery, ScopedAccessGateway
from services.record_store import SqlRecordStore
from services.relationship_registry import set_assignment_status
from services.role_resolver import Role

WORKOUTS = "clientassignedworkouts"


@pytest.fixture
def world(db_session, make_member, make_assignment):
    """
    t1 coaches c1 and c2; t2 coaches c3. c4 has no trainer.
    Each client has two assigned workouts; t1 also has a draft with no client.
    """
    for member in ("c1", "c2", "c3", "c4"):
        make_member(member, "client")
    make_member("t1", "trainer")
    make_member("t2", "trainer")
    make_member("a1", "admin")
    edges = {
        ("t1", "c1"): make_assignment("t1", "c1"),
        ("t1", "c2"): make_assignment("t1", "c2"),
        ("t2", "c3"): make_assignment("t2", "c3"),
    }

    store = SqlRecordStore(db_session)
    records = {}
    for client_id, trainer_id in (("c1", "t1"), ("c2", "t1"), ("c3", "t2"), ("c4", None)):
        records[client_id] = [
            store.insert(WORKOUTS, {"client_id": client_id, "trainer_id": trainer_id, "title": f"{client_id} day {n}"})
            for n in (1, 2)
        ]
    records["draft"] = store.insert("programdrafts", {"trainer_id": "t1", "title": "Hypertrophy block"})
    return {"edges": edges, "records": records, "store": store}


def _ids(items):
    return {item["id"] for item in items}


class TestCollectionAllowList:
    def test_is_protected(self, db_session):
        gateway = ScopedAccessGateway(db_session)
        assert gateway.is_protected("clientworkoutactivity")
        assert not gateway.is_protected("athlete")
        assert len(PROTECTED_COLLECTIONS) == 17

    def test_unlisted_collection_fails_fast(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        with pytest.raises(ConfigurationError):
            gateway.read("newcollection", client_ctx("c1"))
        with pytest.raises(ConfigurationError):
            gateway.read_one("newcollection", "x", client_ctx("c1"))
        with pytest.raises(ConfigurationError):
            gateway.write("newcollection", client_ctx("c1"), {"title": "x"})

    def test_allow_list_checked_before_auth(self, db_session):
        with pytest.raises(ConfigurationError):
            ScopedAccessGateway(db_session).read("newcollection", None)


class TestAuthentication:
    def test_missing_context(self, db_session, world):
        with pytest.raises(UnauthorizedError):
            ScopedAccessGateway(db_session).read(WORKOUTS, None)

    def test_role_not_held(self, db_session, world):
        with pytest.raises(UnauthorizedError):
            ScopedAccessGateway(db_session).read(WORKOUTS, trainer_ctx("c1"))

        audit = db_session.query(AccessAuditEvent).filter(AccessAuditEvent.action == "read.unauthorized").one()
        assert audit.actor_member_id == "c1"
        assert audit.reason == "acting role not held"

    def test_invalid_role(self, db_session, world):
        ctx = AuthContext(member_id="c1", role="superuser")
        with pytest.raises(UnauthorizedError):
            ScopedAccessGateway(db_session).read(WORKOUTS, ctx)

    def test_unauthorized_detail_is_generic(self, db_session, world):
        with pytest.raises(UnauthorizedError) as exc_info:
            ScopedAccessGateway(db_session).read_one(WORKOUTS, world["records"]["c1"][0]["id"], None)
        assert WORKOUTS not in exc_info.value.detail
        assert world["records"]["c1"][0]["id"] not in exc_info.value.detail

    def test_deactivated_member_loses_access(self, db_session, world):
        from services.role_resolver import deactivate_member

        deactivate_member(db_session, "a1", "c1")
        with pytest.raises(UnauthorizedError):
            ScopedAccessGateway(db_session).read(WORKOUTS, client_ctx("c1"))


class TestRead:
    def test_client_sees_only_own_records(self, db_session, world):
        page = ScopedAccessGateway(db_session).read(WORKOUTS, client_ctx("c1"))
        assert _ids(page.items) == _ids(world["records"]["c1"])
        assert page.total_count == 2
        assert not page.has_next

    def test_trainer_sees_assigned_clients_and_own_records(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        page = gateway.read(WORKOUTS, trainer_ctx("t1"))
        assert _ids(page.items) == _ids(world["records"]["c1"] + world["records"]["c2"])

        drafts = gateway.read("programdrafts", trainer_ctx("t1"))
        assert _ids(drafts.items) == {world["records"]["draft"]["id"]}
        assert gateway.read("programdrafts", trainer_ctx("t2")).items == []

    def test_filters_cannot_widen_scope(self, db_session, world):
        page = ScopedAccessGateway(db_session).read(
            WORKOUTS, trainer_ctx("t1"), RecordQuery(filters={"client_id": "c3"})
        )
        assert page.items == []
        assert page.total_count == 0

    def test_pagination(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        first = gateway.read(WORKOUTS, trainer_ctx("t1"), RecordQuery(limit=3))
        second = gateway.read(WORKOUTS, trainer_ctx("t1"), RecordQuery(limit=3, skip=3))

        assert len(first.items) == 3 and first.has_next
        assert len(second.items) == 1 and not second.has_next
        assert first.total_count == second.total_count == 4
        assert not _ids(first.items) & _ids(second.items)

    @pytest.mark.parametrize("limit,skip", [(0, 0), (201, 0), (10, -1)])
    def test_invalid_paging(self, db_session, world, limit, skip):
        with pytest.raises(ValidationError):
            ScopedAccessGateway(db_session).read(WORKOUTS, client_ctx("c1"), RecordQuery(limit=limit, skip=skip))

    def test_unknown_filter_field(self, db_session, world):
        with pytest.raises(ValidationError):
            ScopedAccessGateway(db_session).read(
                "clientworkoutactivity", client_ctx("c1"), RecordQuery(filters={"colour": "red"})
            )

    def test_read_all_pages_through(self, db_session, world):
        store = world["store"]
        for n in range(250):
            store.insert(WORKOUTS, {"client_id": "c4", "title": f"extra {n}"})
        items = ScopedAccessGateway(db_session).read_all(WORKOUTS, client_ctx("c4"))
        assert len(items) == 252

    def test_revocation_takes_effect_on_next_read(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        store = world["store"]
        store.insert("weeklycheckins", {"client_id": "c1", "sleep": "ok"})
        store.insert("weeklycheckins", {"client_id": "c1", "sleep": "poor"})
        query = RecordQuery(filters={"client_id": "c1"})
        assert len(gateway.read("weeklycheckins", trainer_ctx("t1"), query).items) == 2

        set_assignment_status(db_session, world["edges"][("t1", "c1")].id, "inactive")

        page = gateway.read("weeklycheckins", trainer_ctx("t1"), query)
        assert page.items == []
        assert page.total_count == 0

    def test_own_trainer_records_survive_revocation(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        set_assignment_status(db_session, world["edges"][("t1", "c1")].id, "inactive")

        remaining = gateway.read(WORKOUTS, trainer_ctx("t1"), RecordQuery(filters={"client_id": "c1"})).items
        assert _ids(remaining) == _ids(world["records"]["c1"])
        assert all(r["trainer_id"] == "t1" for r in remaining)

    def test_admin_rejected_on_scoped_path(self, db_session, world):
        with pytest.raises(ForbiddenError):
            ScopedAccessGateway(db_session).read(WORKOUTS, admin_ctx("a1"))


class TestReadOne:
    def test_in_scope(self, db_session, world):
        record_id = world["records"]["c1"][0]["id"]
        record = ScopedAccessGateway(db_session).read_one(WORKOUTS, record_id, trainer_ctx("t1"))
        assert record["id"] == record_id

    def test_out_of_scope_looks_like_missing(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        existing = world["records"]["c3"][0]["id"]

        with pytest.raises(NotFoundError) as missing:
            gateway.read_one(WORKOUTS, "does-not-exist", trainer_ctx("t1"))
        with pytest.raises(NotFoundError) as hidden:
            gateway.read_one(WORKOUTS, existing, trainer_ctx("t1"))

        assert hidden.value.status_code == missing.value.status_code == 404
        assert hidden.value.detail == missing.value.detail
        assert hidden.value.error_code == missing.value.error_code

    def test_out_of_scope_is_audited(self, db_session, world):
        existing = world["records"]["c2"][0]["id"]
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).read_one(WORKOUTS, existing, client_ctx("c1"))

        audit = db_session.query(AccessAuditEvent).filter(AccessAuditEvent.action == "read_one.denied").one()
        assert audit.actor_member_id == "c1"
        assert audit.acting_role == "client"
        assert audit.record_id == existing
        assert audit.target_client_id == "c2"

    def test_other_collection_with_same_id_is_missing(self, db_session, world):
        record_id = world["records"]["c1"][0]["id"]
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).read_one("weeklysummaries", record_id, client_ctx("c1"))


class TestAdminEntryPoints:
    def test_admin_read_is_unscoped(self, db_session, world):
        page = ScopedAccessGateway(db_session).admin_read(WORKOUTS, admin_ctx("a1"))
        assert page.total_count == 8

    def test_admin_read_one(self, db_session, world):
        record_id = world["records"]["c4"][1]["id"]
        assert ScopedAccessGateway(db_session).admin_read_one(WORKOUTS, record_id, admin_ctx("a1"))["id"] == record_id

    def test_non_admin_cannot_use_admin_entry_point(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        with pytest.raises(UnauthorizedError):
            gateway.admin_read(WORKOUTS, trainer_ctx("t1"))
        with pytest.raises(UnauthorizedError):
            gateway.admin_read_one(WORKOUTS, world["records"]["c1"][0]["id"], client_ctx("c1"))

    def test_admin_context_must_hold_admin(self, db_session, world):
        with pytest.raises(UnauthorizedError):
            ScopedAccessGateway(db_session).admin_read(WORKOUTS, admin_ctx("t1"))


class TestWriteCreate:
    def test_client_create_is_owned_by_caller(self, db_session, world):
        record = ScopedAccessGateway(db_session).write(WORKOUTS, client_ctx("c1"), {"title": "Extra run"})
        assert record["client_id"] == "c1"
        assert record["title"] == "Extra run"

    def test_client_cannot_write_for_another_client(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(WORKOUTS, client_ctx("c1"), {"client_id": "c2", "title": "x"})

        audit = db_session.query(AccessAuditEvent).filter(AccessAuditEvent.action == "write.denied").one()
        assert audit.target_client_id == "c2"

    def test_client_message_to_own_trainer_only(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        ok = gateway.write("trainerclientmessages", client_ctx("c1"), {"trainer_id": "t1", "body": "hi"})
        assert ok["trainer_id"] == "t1"
        with pytest.raises(NotFoundError):
            gateway.write("trainerclientmessages", client_ctx("c1"), {"trainer_id": "t2", "body": "hi"})

    @pytest.mark.parametrize("collection", ["clientcoachmessages", "trainerclientnotes", "programs"])
    def test_client_cannot_author_trainer_records(self, db_session, world, collection):
        """Even addressed to their own trainer, a client cannot create trainer-authored records."""
        payload = {"trainer_id": "t1", "message": "checking in", "sent_at": NOW - timedelta(days=1)}
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(collection, client_ctx("c1"), payload)

        audit = db_session.query(AccessAuditEvent).filter(AccessAuditEvent.action == "write.denied").one()
        assert audit.actor_member_id == "c1"
        assert audit.collection == collection
        assert SqlRecordStore(db_session).query(collection, {"client_id": "c1"}).total_count == 0

    def test_created_at_is_server_owned(self, db_session, world):
        forged = NOW - timedelta(days=1)
        gateway = ScopedAccessGateway(db_session)

        profile = gateway.write("clientprofiles", client_ctx("c1"), {"display_name": "Sam", "created_at": forged})
        assert profile["created_at"] != forged

        workout = gateway.write(WORKOUTS, trainer_ctx("t1"), {"client_id": "c1", "created_at": forged, "updated_at": forged})
        assert workout["created_at"] != forged
        assert workout["updated_at"] != forged

        seeded = gateway.write("clientprofiles", admin_ctx("a1"), {"client_id": "c2", "created_at": forged})
        assert seeded["created_at"] == forged

    def test_trainer_create_for_assigned_client(self, db_session, world):
        record = ScopedAccessGateway(db_session).write(
            WORKOUTS, trainer_ctx("t1"), {"client_id": "c2", "title": "Tempo"}
        )
        assert record["trainer_id"] == "t1"
        assert record["client_id"] == "c2"

    def test_trainer_create_for_unassigned_client(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(WORKOUTS, trainer_ctx("t1"), {"client_id": "c3", "title": "x"})

    def test_trainer_write_checks_registry_at_write_time(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        gateway.write(WORKOUTS, trainer_ctx("t1"), {"client_id": "c1", "title": "before"})

        set_assignment_status(db_session, world["edges"][("t1", "c1")].id, "paused")
        with pytest.raises(NotFoundError):
            gateway.write(WORKOUTS, trainer_ctx("t1"), {"client_id": "c1", "title": "after"})

    def test_trainer_cannot_impersonate_other_trainer(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(
                WORKOUTS, trainer_ctx("t1"), {"client_id": "c1", "trainer_id": "t2", "title": "x"}
            )

    def test_trainer_cannot_author_client_event_logs(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(
                "clientworkoutactivity", trainer_ctx("t1"), {"client_id": "c1", "completed": True}
            )

    def test_trainer_record_without_client(self, db_session, world):
        record = ScopedAccessGateway(db_session).write("programs", trainer_ctx("t1"), {"name": "Base 12"})
        assert record["trainer_id"] == "t1"
        assert record["client_id"] is None

    def test_trainer_typed_collection_without_client_id(self, db_session, world):
        with pytest.raises(ValidationError):
            ScopedAccessGateway(db_session).write("clientprofiles", trainer_ctx("t1"), {"display_name": "x"})

    def test_assignments_are_admin_write_only(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(
                "trainerclientassignments", trainer_ctx("t2"), {"client_id": "c1", "trainer_id": "t2"}
            )

    def test_admin_write_is_unscoped(self, db_session, world):
        record = ScopedAccessGateway(db_session).write(
            WORKOUTS, admin_ctx("a1"), {"client_id": "c4", "trainer_id": "t2", "title": "admin"}
        )
        assert record["client_id"] == "c4"


class TestWriteUpdate:
    def test_trainer_updates_assigned_record(self, db_session, world):
        record_id = world["records"]["c2"][0]["id"]
        updated = ScopedAccessGateway(db_session).write(
            WORKOUTS, trainer_ctx("t1"), {"id": record_id, "title": "renamed"}
        )
        assert updated["id"] == record_id
        assert updated["title"] == "renamed"

    def test_update_out_of_scope_is_not_found(self, db_session, world):
        record_id = world["records"]["c3"][0]["id"]
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(WORKOUTS, trainer_ctx("t1"), {"id": record_id, "title": "x"})

    def test_update_missing_record(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(WORKOUTS, client_ctx("c1"), {"id": "nope", "title": "x"})

    def test_ownership_fields_are_immutable(self, db_session, world):
        record_id = world["records"]["c1"][0]["id"]
        with pytest.raises(ValidationError):
            ScopedAccessGateway(db_session).write(WORKOUTS, client_ctx("c1"), {"id": record_id, "client_id": "c2"})

    def test_client_limited_fields_on_check_ins(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        message = gateway.write(
            "clientcoachmessages",
            trainer_ctx("t1"),
            {"client_id": "c1", "message": "How was the week?", "sent_at": NOW},
        )
        with pytest.raises(ValidationError):
            gateway.write("clientcoachmessages", client_ctx("c1"), {"id": message["id"], "message": "edited"})

        updated = gateway.write(
            "clientcoachmessages", client_ctx("c1"), {"id": message["id"], "responded": True, "responded_at": NOW}
        )
        assert updated["responded"] is True

    def test_feedback_is_append_only(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        feedback = gateway.write(
            "clientworkoutfeedback", client_ctx("c1"), {"difficulty_rating": 3, "submitted_at": NOW}
        )
        with pytest.raises(NotFoundError):
            gateway.write("clientworkoutfeedback", client_ctx("c1"), {"id": feedback["id"], "difficulty_rating": 5})

    def test_activity_correction_is_stamped(self, db_session, world):
        gateway = ScopedAccessGateway(db_session)
        activity = gateway.write(
            "clientworkoutactivity", client_ctx("c1"), {"completed": False, "occurred_at": NOW}
        )
        assert activity["corrected_at"] is None

        corrected = gateway.write(
            "clientworkoutactivity", client_ctx("c1"), {"id": activity["id"], "completed": True}
        )
        assert corrected["completed"] is True
        assert corrected["corrected_at"] is not None

    def test_admin_update_missing_record(self, db_session, world):
        with pytest.raises(NotFoundError):
            ScopedAccessGateway(db_session).write(WORKOUTS, admin_ctx("a1"), {"id": "nope", "title": "x"})


class TestWriteSideEffects:
    def test_profile_write_invalidates_cache(self, db_session, world, fake_redis):
        set_cache(profile_cache_key("c1"), "Stale Name")
        ScopedAccessGateway(db_session).write("clientprofiles", client_ctx("c1"), {"display_name": "Fresh"})
        assert get_cache(profile_cache_key("c1")) is None

    def test_store_failure_propagates_unchanged(self, db_session, world):
        store = MagicMock()
        store.supports_field.return_value = True
        store.insert.side_effect = RuntimeError("disk full")

        with pytest.raises(RuntimeError, match="disk full"):
            ScopedAccessGateway(db_session, store=store).write(WORKOUTS, client_ctx("c1"), {"title": "x"})

    def test_workout_logged_event(self, db_session, world):
        from core.events import EVENT_WORKOUT_LOGGED, subscribe, unsubscribe

        seen = []

        def handler(db, client_id, occurred_at=None, **_):
            seen.append((client_id, occurred_at))

        subscribe(EVENT_WORKOUT_LOGGED, handler)
        try:
            gateway = ScopedAccessGateway(db_session)
            gateway.write("clientworkoutactivity", client_ctx("c1"), {"completed": False, "occurred_at": NOW})
            gateway.write(
                "clientworkoutactivity", client_ctx("c1"),
                {"completed": True, "occurred_at": NOW + timedelta(hours=1)},
            )
        finally:
            unsubscribe(EVENT_WORKOUT_LOGGED, handler)

        assert [c for c, _ in seen] == ["c1"]
