"""
Tests for the role resolver: bootstrap idempotence, retries and admin-only
role changes.
"""
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from core.config import settings
from core.exceptions import ForbiddenError, NotFoundError, ValidationError
from models import AccessAuditEvent, MemberRoleAssignment, TrainerClientAssignment
from services.role_resolver import (
    Role,
    bootstrap_client_role,
    deactivate_member,
    has_role,
    parse_role,
    resolve_roles,
    set_member_roles,
)


class TestParseRole:
    def test_known_values(self):
        assert parse_role("client") == Role.CLIENT
        assert parse_role(" Trainer ") == Role.TRAINER
        assert parse_role(Role.ADMIN) == Role.ADMIN

    def test_unknown_values(self):
        assert parse_role("coach") is None
        assert parse_role("") is None
        assert parse_role(None) is None


class TestResolveRoles:
    def test_no_record_means_no_roles(self, db_session):
        assert resolve_roles(db_session, "nobody") == set()

    def test_multiple_roles(self, db_session, make_member):
        make_member("m1", "trainer", "admin")
        assert resolve_roles(db_session, "m1") == {Role.TRAINER, Role.ADMIN}
        assert has_role(db_session, "m1", Role.ADMIN)
        assert not has_role(db_session, "m1", Role.CLIENT)

    def test_inactive_record_resolves_empty(self, db_session, make_member):
        make_member("m1", "trainer", status="inactive")
        assert resolve_roles(db_session, "m1") == set()


class TestBootstrapClientRole:
    def test_creates_client_role(self, db_session):
        record = bootstrap_client_role(db_session, "new-member", email="New@Example.com")
        assert record.role_names == ["client"]
        assert record.status == "active"
        assert record.email == "new@example.com"

    def test_twice_yields_exactly_one_record(self, db_session):
        first = bootstrap_client_role(db_session, "c1")
        second = bootstrap_client_role(db_session, "c1")

        assert first.id == second.id
        count = db_session.query(MemberRoleAssignment).filter(
            MemberRoleAssignment.member_id == "c1",
            MemberRoleAssignment.status == "active",
        ).count()
        assert count == 1

    def test_existing_record_returned_unchanged(self, db_session, make_member):
        make_member("t1", "trainer")
        record = bootstrap_client_role(db_session, "t1")
        assert record.role_names == ["trainer"]

    def test_requires_member_id(self, db_session):
        with pytest.raises(ValidationError):
            bootstrap_client_role(db_session, "")

    def test_retries_transient_failure(self, db_session):
        """A transient storage error is retried; the retry creates one record."""
        calls = {"n": 0}
        real_flush = db_session.flush

        def flaky_flush(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real_flush(*args, **kwargs)

        with patch.object(db_session, "flush", side_effect=flaky_flush), \
                patch("services.role_resolver.time.sleep") as sleep:
            record = bootstrap_client_role(db_session, "c-retry")

        assert record.member_id == "c-retry"
        sleep.assert_called_once_with(settings.ROLE_BOOTSTRAP_BACKOFF_S)
        assert db_session.query(MemberRoleAssignment).filter(
            MemberRoleAssignment.member_id == "c-retry"
        ).count() == 1

    def test_gives_up_after_max_attempts(self):
        db = MagicMock()
        db.query.side_effect = OperationalError("SELECT", {}, Exception("down"))

        with patch("services.role_resolver.time.sleep") as sleep:
            with pytest.raises(OperationalError):
                bootstrap_client_role(db, "c1", max_attempts=3)

        assert db.rollback.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [
            settings.ROLE_BOOTSTRAP_BACKOFF_S,
            settings.ROLE_BOOTSTRAP_BACKOFF_S * 2,
        ]

    def test_onboarding_auto_assigns_default_trainer(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_TRAINER_ID", "house-trainer")
        bootstrap_client_role(db_session, "c-new")

        edge = db_session.query(TrainerClientAssignment).filter(
            TrainerClientAssignment.client_id == "c-new"
        ).one()
        assert edge.trainer_id == "house-trainer"
        assert edge.status == "active"

    def test_no_default_trainer_no_assignment(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_TRAINER_ID", None)
        bootstrap_client_role(db_session, "c-new")
        assert db_session.query(TrainerClientAssignment).count() == 0


class TestSetMemberRoles:
    def test_admin_grants_trainer(self, db_session, make_member):
        make_member("a1", "admin")
        make_member("m1", "client")

        record = set_member_roles(db_session, "a1", "m1", ["trainer", "client"])
        assert record.role_names == ["client", "trainer"]
        assert resolve_roles(db_session, "m1") == {Role.CLIENT, Role.TRAINER}

    def test_creates_record_when_missing(self, db_session, make_member):
        make_member("a1", "admin")
        record = set_member_roles(db_session, "a1", "m2", ["trainer"])
        assert record.role_names == ["trainer"]

    def test_non_admin_cannot_change_roles(self, db_session, make_member):
        make_member("t1", "trainer")
        with pytest.raises(ForbiddenError):
            set_member_roles(db_session, "t1", "t1", ["admin"])

        assert resolve_roles(db_session, "t1") == {Role.TRAINER}
        audit = db_session.query(AccessAuditEvent).filter(
            AccessAuditEvent.action == "roles.change.denied"
        ).one()
        assert audit.actor_member_id == "t1"

    def test_unknown_role_rejected(self, db_session, make_member):
        make_member("a1", "admin")
        with pytest.raises(ValidationError):
            set_member_roles(db_session, "a1", "m1", ["superuser"])

    def test_empty_role_set_rejected(self, db_session, make_member):
        make_member("a1", "admin")
        with pytest.raises(ValidationError):
            set_member_roles(db_session, "a1", "m1", [])


class TestDeactivateMember:
    def test_deactivated_member_has_no_roles(self, db_session, make_member):
        make_member("a1", "admin")
        make_member("c1", "client")

        record = deactivate_member(db_session, "a1", "c1")
        assert record.status == "inactive"
        assert resolve_roles(db_session, "c1") == set()

    def test_missing_member(self, db_session, make_member):
        make_member("a1", "admin")
        with pytest.raises(NotFoundError):
            deactivate_member(db_session, "a1", "ghost")
