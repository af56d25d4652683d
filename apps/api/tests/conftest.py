"""
Pytest configuration and fixtures

Every test runs against a fresh in-memory SQLite schema (created and dropped
per test) and an in-memory FakeRedis patched over the Redis client, so
nothing persists between tests and no external services are needed.
"""
import os
import sys
from datetime import datetime, timezone

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-coachline-suite-0123456789")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ["EMAIL_ENABLED"] = "false"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from unittest.mock import patch

from core.auth import AuthContext
from core.database import Base, SessionLocal, engine
from core.security import create_access_token
import models  # noqa: F401  registers tables
from models import ClientProfile, MemberRoleAssignment, TrainerClientAssignment
from services.role_resolver import Role

# Event subscribers register on import.
import services.check_ins  # noqa: F401
import services.follow_up_reminders  # noqa: F401
import services.relationship_registry  # noqa: F401

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._ttls[key] = ttl

    def delete(self, *keys):
        for k in keys:
            self._store.pop(k, None)
            self._ttls.pop(k, None)

    def ping(self):
        return True


@pytest.fixture(autouse=True)
def fake_redis():
    """Provide a FakeRedis and patch get_redis_client to return it."""
    r = FakeRedis()
    with patch("core.cache.get_redis_client", return_value=r):
        yield r


@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test.

    Audit rows are written through their own SessionLocal; with the shared
    in-memory connection they are visible to this session too.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_member(db_session):
    """Create a role record: make_member("t1", "trainer", email=...)."""

    def _make(member_id, *roles, email=None, status="active"):
        record = MemberRoleAssignment(
            member_id=member_id,
            roles=",".join(sorted(roles or ("client",))),
            status=status,
            email=email,
        )
        db_session.add(record)
        db_session.flush()
        return record

    return _make


@pytest.fixture
def make_assignment(db_session):
    def _make(trainer_id, client_id, status="active", assigned_at=None, notes=None):
        assignment = TrainerClientAssignment(
            trainer_id=trainer_id,
            client_id=client_id,
            status=status,
            notes=notes,
        )
        if assigned_at is not None:
            assignment.assigned_at = assigned_at
        db_session.add(assignment)
        db_session.flush()
        return assignment

    return _make


@pytest.fixture
def make_profile(db_session):
    def _make(client_id, created_at=None, **fields):
        profile = ClientProfile(client_id=client_id, **fields)
        if created_at is not None:
            profile.created_at = created_at
        db_session.add(profile)
        db_session.flush()
        return profile

    return _make


def client_ctx(member_id):
    return AuthContext(member_id=member_id, role=Role.CLIENT)


def trainer_ctx(member_id):
    return AuthContext(member_id=member_id, role=Role.TRAINER)


def admin_ctx(member_id):
    return AuthContext(member_id=member_id, role=Role.ADMIN)


def auth_headers(member_id, role=None):
    token = create_access_token(data={"sub": member_id})
    headers = {"Authorization": f"Bearer {token}"}
    if role:
        headers["X-Acting-Role"] = role
    return headers
