"""
Scoped Access Gateway

The single choke point for reading and writing protected records. Every call
carries an explicit AuthContext; the gateway re-checks the member's role and
(for trainers) the active assignment set on every call, then applies one
ownership predicate:

    client:  record.client_id == ctx.member_id
    trainer: record.trainer_id == ctx.member_id
             or record.client_id in active_clients_of(ctx.member_id)
    admin:   unscoped, but only through admin_read / admin_read_one

The predicate is handed to the store as a ScopeHint and then asserted again
over every item the store returns. Denials are audited; non-admin callers
only ever see NotFound (records) or Unauthorized (identity).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from core.auth import AuthContext
from core.cache import invalidate_profile_cache
from core.events import emit, EVENT_WORKOUT_LOGGED
from core.exceptions import (
    APIException,
    ConfigurationError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from services.audit_logger import record_access_denial
from services.record_store import RecordStore, ScopeHint, SqlRecordStore
from services.relationship_registry import active_clients_of, active_trainers_of, is_active_assignment
from services.role_resolver import Role, parse_role, resolve_roles

logger = logging.getLogger(__name__)

PROTECTED_COLLECTIONS = frozenset({
    "clientassignedworkouts",
    "programassignments",
    "trainerclientassignments",
    "trainerclientmessages",
    "trainerclientnotes",
    "weeklycheckins",
    "weeklycoachesnotes",
    "weeklysummaries",
    "trainernotifications",
    "trainernotificationpreferences",
    "clientprofiles",
    "clientprograms",
    "programdrafts",
    "programs",
    "clientworkoutactivity",
    "clientworkoutfeedback",
    "clientcoachmessages",
})

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 200

# Append-only event logs written by the client who did the workout.
CLIENT_AUTHORED_COLLECTIONS = frozenset({"clientworkoutactivity", "clientworkoutfeedback"})
# Records a trainer writes about or for a client; clients may only respond.
TRAINER_AUTHORED_COLLECTIONS = frozenset({
    "clientcoachmessages",
    "trainerclientnotes",
    "weeklycoachesnotes",
    "trainernotifications",
    "trainernotificationpreferences",
    "programs",
    "programdrafts",
})
# Assignment edges go through the relationship registry, not generic writes.
ADMIN_WRITE_ONLY_COLLECTIONS = frozenset({"trainerclientassignments"})
OWNERSHIP_FIELDS = ("client_id", "trainer_id")
# Stamped by the store; only admins may set them explicitly.
SERVER_OWNED_FIELDS = ("created_at", "updated_at")
# Fields a client may touch on records someone else authored.
CLIENT_UPDATABLE_FIELDS = {
    "clientcoachmessages": frozenset({"responded", "responded_at"}),
}


@dataclass
class RecordQuery:
    filters: Dict[str, Any] = field(default_factory=dict)
    limit: int = DEFAULT_PAGE_LIMIT
    skip: int = 0


@dataclass
class Page:
    items: List[Dict[str, Any]]
    total_count: int
    has_next: bool


@dataclass(frozen=True)
class Scope:
    """Resolved ownership predicate for one call."""

    member_id: str
    role: Role
    client_ids: FrozenSet[str] = frozenset()

    def allows(self, record: Dict[str, Any]) -> bool:
        if self.role == Role.ADMIN:
            return True
        client_id = record.get("client_id")
        if self.role == Role.CLIENT:
            return client_id is not None and client_id == self.member_id
        return record.get("trainer_id") == self.member_id or (
            client_id is not None and client_id in self.client_ids
        )

    def hint(self) -> Optional[ScopeHint]:
        if self.role == Role.ADMIN:
            return None
        if self.role == Role.CLIENT:
            return ScopeHint(clauses=[{"client_id": self.member_id}])
        clauses: List[Dict[str, Any]] = [{"trainer_id": self.member_id}]
        if self.client_ids:
            clauses.append({"client_id": sorted(self.client_ids)})
        return ScopeHint(clauses=clauses)


class ScopedAccessGateway:
    def __init__(self, db: Session, store: Optional[RecordStore] = None):
        self.db = db
        self.store = store or SqlRecordStore(db)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def is_protected(self, collection: str) -> bool:
        return collection in PROTECTED_COLLECTIONS

    def _check_collection(self, collection: str) -> None:
        if not self.is_protected(collection):
            logger.error(f"Gateway called with unlisted collection '{collection}'")
            raise ConfigurationError(f"Collection '{collection}' is not a protected collection")

    def _authenticate(self, ctx: Optional[AuthContext], action: str) -> Role:
        member_id = getattr(ctx, "member_id", None) if ctx is not None else None
        role = parse_role(getattr(ctx, "role", None)) if ctx is not None else None

        reason = None
        if not member_id:
            reason = "missing auth context"
        elif role is None:
            reason = "invalid acting role"
        elif role not in resolve_roles(self.db, member_id):
            reason = "acting role not held"

        if reason:
            record_access_denial(
                action=f"{action}.unauthorized",
                actor_member_id=member_id,
                acting_role=role.value if role else None,
                reason=reason,
            )
            raise UnauthorizedError()
        return role

    def _scope(self, ctx: AuthContext, role: Role) -> Scope:
        if role == Role.TRAINER:
            # Fresh every call: a revoked edge must not survive in any cache.
            return Scope(ctx.member_id, role, frozenset(active_clients_of(self.db, ctx.member_id)))
        return Scope(ctx.member_id, role)

    def _reject_admin_on_scoped_path(self, ctx: AuthContext, collection: str, action: str) -> None:
        record_access_denial(
            action=f"{action}.admin_redirect",
            actor_member_id=ctx.member_id,
            acting_role=Role.ADMIN.value,
            collection=collection,
            reason="admin must use the unscoped entry point",
        )
        raise ForbiddenError("Admins must use admin_read / admin_read_one for unscoped access")

    def _deny_as_not_found(
        self,
        ctx: AuthContext,
        action: str,
        collection: str,
        record_id: Optional[str],
        target_client_id: Optional[str],
        reason: str,
    ) -> NotFoundError:
        record_access_denial(
            action=action,
            actor_member_id=ctx.member_id,
            acting_role=parse_role(ctx.role).value,
            collection=collection,
            record_id=record_id,
            target_client_id=target_client_id,
            reason=reason,
        )
        return NotFoundError()

    @staticmethod
    def _validate_query(query: Optional[RecordQuery]) -> RecordQuery:
        query = query or RecordQuery()
        if query.limit < 1 or query.limit > MAX_PAGE_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}", field="limit")
        if query.skip < 0:
            raise ValidationError("skip must be >= 0", field="skip")
        return query

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, collection: str, ctx: AuthContext, query: Optional[RecordQuery] = None) -> Page:
        """One page of in-scope records."""
        self._check_collection(collection)
        role = self._authenticate(ctx, "read")
        if role == Role.ADMIN:
            self._reject_admin_on_scoped_path(ctx, collection, "read")

        query = self._validate_query(query)
        scope = self._scope(ctx, role)
        result = self.store.query(
            collection,
            filters=dict(query.filters or {}),
            scope=scope.hint(),
            limit=query.limit,
            skip=query.skip,
        )

        items = []
        leaked = 0
        for item in result.items:
            if scope.allows(item):
                items.append(item)
                continue
            leaked += 1
            logger.error(
                f"Store returned out-of-scope record {collection}/{item.get('id')} "
                f"to {role.value} {ctx.member_id}; dropped"
            )
            record_access_denial(
                action="read.leak",
                actor_member_id=ctx.member_id,
                acting_role=role.value,
                collection=collection,
                record_id=item.get("id"),
                target_client_id=item.get("client_id"),
                reason="store ignored scope hint",
            )

        return Page(
            items=items,
            total_count=max(result.total_count - leaked, len(items)),
            has_next=result.has_next,
        )

    def read_all(
        self,
        collection: str,
        ctx: AuthContext,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Every in-scope record matching filters, paging through read()."""
        items: List[Dict[str, Any]] = []
        skip = 0
        while True:
            page = self.read(collection, ctx, RecordQuery(filters=dict(filters or {}), limit=MAX_PAGE_LIMIT, skip=skip))
            items.extend(page.items)
            if not page.has_next:
                return items
            skip += MAX_PAGE_LIMIT

    def read_one(self, collection: str, record_id: str, ctx: AuthContext) -> Dict[str, Any]:
        self._check_collection(collection)
        role = self._authenticate(ctx, "read_one")
        if role == Role.ADMIN:
            self._reject_admin_on_scoped_path(ctx, collection, "read_one")

        record = self.store.get(collection, record_id)
        if record is None:
            raise NotFoundError()

        scope = self._scope(ctx, role)
        try:
            self._assert_in_scope(scope, record)
        except ForbiddenError:
            # Same outcome as a missing id; the denial itself is audited.
            raise self._deny_as_not_found(
                ctx, "read_one.denied", collection, record_id, record.get("client_id"), "record out of scope"
            ) from None
        return record

    @staticmethod
    def _assert_in_scope(scope: Scope, record: Dict[str, Any]) -> None:
        if not scope.allows(record):
            raise ForbiddenError()

    def _require_admin(self, ctx: AuthContext, action: str) -> None:
        role = self._authenticate(ctx, action)
        if role != Role.ADMIN:
            record_access_denial(
                action=f"{action}.denied",
                actor_member_id=ctx.member_id,
                acting_role=role.value,
                reason="admin entry point called without admin role",
            )
            raise UnauthorizedError()

    def admin_read(self, collection: str, ctx: AuthContext, query: Optional[RecordQuery] = None) -> Page:
        """Unscoped read. Admin acting role only."""
        self._check_collection(collection)
        self._require_admin(ctx, "admin_read")
        query = self._validate_query(query)
        result = self.store.query(
            collection, filters=dict(query.filters or {}), scope=None, limit=query.limit, skip=query.skip
        )
        return Page(items=result.items, total_count=result.total_count, has_next=result.has_next)

    def admin_read_all(
        self,
        collection: str,
        ctx: AuthContext,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        skip = 0
        while True:
            page = self.admin_read(
                collection, ctx, RecordQuery(filters=dict(filters or {}), limit=MAX_PAGE_LIMIT, skip=skip)
            )
            items.extend(page.items)
            if not page.has_next:
                return items
            skip += MAX_PAGE_LIMIT

    def admin_read_one(self, collection: str, record_id: str, ctx: AuthContext) -> Dict[str, Any]:
        self._check_collection(collection)
        self._require_admin(ctx, "admin_read_one")
        record = self.store.get(collection, record_id)
        if record is None:
            raise NotFoundError()
        return record

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, collection: str, ctx: AuthContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create (payload without id) or update (payload with id) one record.

        Non-admin writes are checked against the ownership predicate and, for
        trainers, against the registry at write time. Server-owned timestamps in a
        non-admin payload are dropped. Store failures propagate unchanged after
        being logged.
        """
        self._check_collection(collection)
        role = self._authenticate(ctx, "write")
        payload = dict(payload or {})
        record_id = payload.pop("id", None)

        if role != Role.ADMIN:
            for name in SERVER_OWNED_FIELDS:
                payload.pop(name, None)

        if role == Role.ADMIN:
            values = payload
        elif record_id is None:
            values = self._authorize_create(collection, ctx, role, payload)
        else:
            values = self._authorize_update(collection, ctx, role, record_id, payload)

        try:
            if record_id is None:
                record = self.store.insert(collection, values)
            else:
                if role == Role.ADMIN and self.store.get(collection, record_id) is None:
                    raise NotFoundError()
                record = self.store.update(collection, record_id, values)
        except APIException:
            raise
        except Exception:
            logger.exception(
                f"Store write failed: collection={collection} record_id={record_id} "
                f"actor={ctx.member_id} role={role.value}"
            )
            raise

        self._after_write(collection, record, values, created=record_id is None)
        return record

    def _authorize_create(
        self, collection: str, ctx: AuthContext, role: Role, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        client_id = payload.get("client_id")

        def deny(reason: str) -> NotFoundError:
            return self._deny_as_not_found(ctx, "write.denied", collection, None, client_id, reason)

        if collection in ADMIN_WRITE_ONLY_COLLECTIONS:
            raise deny("collection is admin-write-only")

        if role == Role.CLIENT:
            if collection in TRAINER_AUTHORED_COLLECTIONS:
                raise deny("collection is written by trainers only")
            if client_id is not None and client_id != ctx.member_id:
                raise deny("client writing another client's record")
            payload["client_id"] = ctx.member_id
            trainer_id = payload.get("trainer_id")
            if trainer_id is not None and trainer_id not in active_trainers_of(self.db, ctx.member_id):
                raise deny("client addressing an unassigned trainer")
            return payload

        # trainer
        if collection in CLIENT_AUTHORED_COLLECTIONS:
            raise deny("collection is written by clients only")
        trainer_id = payload.get("trainer_id")
        if trainer_id is not None and trainer_id != ctx.member_id:
            raise deny("trainer writing on behalf of another trainer")
        if client_id is not None:
            if not is_active_assignment(self.db, ctx.member_id, client_id):
                raise deny("client not actively assigned")
        elif not self.store.supports_field(collection, "trainer_id"):
            raise ValidationError("client_id is required", field="client_id")
        if self.store.supports_field(collection, "trainer_id"):
            payload["trainer_id"] = ctx.member_id
        return payload

    def _authorize_update(
        self, collection: str, ctx: AuthContext, role: Role, record_id: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        existing = self.store.get(collection, record_id)
        if existing is None:
            raise NotFoundError()
        client_id = existing.get("client_id")

        def deny(reason: str) -> NotFoundError:
            return self._deny_as_not_found(ctx, "write.denied", collection, record_id, client_id, reason)

        if not self._scope(ctx, role).allows(existing):
            raise deny("record out of scope")
        if collection in ADMIN_WRITE_ONLY_COLLECTIONS:
            raise deny("collection is admin-write-only")
        if collection == "clientworkoutfeedback":
            raise deny("feedback is append-only")
        if collection == "clientworkoutactivity" and role != Role.CLIENT:
            raise deny("activity corrections belong to the owning client")

        for name in OWNERSHIP_FIELDS:
            if name in payload and payload[name] != existing.get(name):
                raise ValidationError(f"{name} cannot be changed", field=name)

        allowed = CLIENT_UPDATABLE_FIELDS.get(collection)
        if role == Role.CLIENT and allowed is not None:
            extra = set(payload) - allowed - set(OWNERSHIP_FIELDS)
            if extra:
                raise ValidationError(f"Fields not writable by clients: {sorted(extra)}")

        if role == Role.TRAINER and client_id is not None:
            if not is_active_assignment(self.db, ctx.member_id, client_id):
                raise deny("client not actively assigned")
        if collection == "clientworkoutactivity":
            payload["corrected_at"] = datetime.now(timezone.utc)
        return payload

    def _after_write(
        self, collection: str, record: Dict[str, Any], values: Dict[str, Any], created: bool
    ) -> None:
        if collection == "clientprofiles" and record.get("client_id"):
            invalidate_profile_cache(record["client_id"])
        if collection == "clientworkoutactivity" and record.get("completed"):
            if created or values.get("completed"):
                emit(
                    EVENT_WORKOUT_LOGGED,
                    db=self.db,
                    client_id=record["client_id"],
                    occurred_at=record.get("occurred_at"),
                )
