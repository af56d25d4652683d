"""
Tests for trainer-client assignment edges.
"""
import pytest

from core.exceptions import NotFoundError, ValidationError
from models import TrainerClientAssignment
from services.relationship_registry import (
    active_clients_of,
    active_trainers_of,
    assign_client,
    is_active_assignment,
    set_assignment_status,
)


class TestAssignClient:
    def test_creates_active_edge(self, db_session):
        edge = assign_client(db_session, "t1", "c1", notes="intro call done")
        assert edge.status == "active"
        assert is_active_assignment(db_session, "t1", "c1")
        assert not is_active_assignment(db_session, "t2", "c1")

    def test_idempotent(self, db_session):
        first = assign_client(db_session, "t1", "c1")
        second = assign_client(db_session, "t1", "c1", notes="later note")

        assert first.id == second.id
        assert second.notes == "later note"
        assert db_session.query(TrainerClientAssignment).count() == 1

    def test_self_assignment_rejected(self, db_session):
        with pytest.raises(ValidationError):
            assign_client(db_session, "m1", "m1")

    def test_missing_ids_rejected(self, db_session):
        with pytest.raises(ValidationError):
            assign_client(db_session, "", "c1")


class TestActiveSets:
    def test_only_active_edges_count(self, db_session, make_assignment):
        make_assignment("t1", "c1")
        make_assignment("t1", "c2", status="paused")
        make_assignment("t1", "c3", status="inactive")
        make_assignment("t2", "c1")

        assert active_clients_of(db_session, "t1") == ["c1"]
        assert active_trainers_of(db_session, "c1") == ["t1", "t2"]
        assert active_clients_of(db_session, "nobody") == []


class TestSetAssignmentStatus:
    def test_revoke_takes_effect_immediately(self, db_session, make_assignment):
        edge = make_assignment("t1", "c1")
        assert is_active_assignment(db_session, "t1", "c1")

        set_assignment_status(db_session, edge.id, "inactive")
        assert not is_active_assignment(db_session, "t1", "c1")
        # History is kept
        assert db_session.query(TrainerClientAssignment).count() == 1

    def test_reactivate(self, db_session, make_assignment):
        edge = make_assignment("t1", "c1", status="paused")
        set_assignment_status(db_session, edge.id, "active")
        assert is_active_assignment(db_session, "t1", "c1")

    def test_reactivation_cannot_duplicate_active_pair(self, db_session, make_assignment):
        old = make_assignment("t1", "c1", status="inactive")
        make_assignment("t1", "c1")

        with pytest.raises(ValidationError):
            set_assignment_status(db_session, old.id, "active")

    def test_invalid_status(self, db_session, make_assignment):
        edge = make_assignment("t1", "c1")
        with pytest.raises(ValidationError):
            set_assignment_status(db_session, edge.id, "deleted")

    def test_unknown_assignment(self, db_session):
        with pytest.raises(NotFoundError):
            set_assignment_status(db_session, "missing", "inactive")
