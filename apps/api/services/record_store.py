"""
Record store behind the access gateway.

The gateway never touches tables directly: it asks a RecordStore for
documents (plain dicts with snake_case keys) and hands it a ScopeHint to
narrow the query. The store is allowed to honour the hint badly; the gateway
re-checks every item it gets back.

SqlRecordStore maps the protected collections onto SQLAlchemy models:
collections with a dedicated table use it, everything else is kept as a
ProtectedRecord document (owner columns + JSON body).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, and_, false, or_
from sqlalchemy.orm import Session

from core.exceptions import ValidationError
from models import (
    CheckInMessage,
    ClientProfile,
    ProtectedRecord,
    TrainerClientAssignment,
    WorkoutActivity,
    WorkoutFeedback,
)

logger = logging.getLogger(__name__)


@dataclass
class ScopeHint:
    """
    Query-shaping hint: OR over clauses, each clause an AND of
    field == value (or field IN values when the value is a list/set).

    An empty clause list matches nothing.
    """

    clauses: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class QueryResult:
    items: List[Dict[str, Any]]
    total_count: int
    has_next: bool


class RecordStore:
    """Interface the gateway depends on."""

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        scope: Optional[ScopeHint] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> QueryResult:
        raise NotImplementedError

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def insert(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, collection: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def supports_field(self, collection: str, name: str) -> bool:
        return True


# Collections with a dedicated table. Everything else is a ProtectedRecord.
COLLECTION_MODELS = {
    "trainerclientassignments": TrainerClientAssignment,
    "clientworkoutactivity": WorkoutActivity,
    "clientworkoutfeedback": WorkoutFeedback,
    "clientcoachmessages": CheckInMessage,
    "clientprofiles": ClientProfile,
}

# Newest first; id breaks ties so pagination is stable.
_ORDER_COLUMNS = {
    TrainerClientAssignment: TrainerClientAssignment.assigned_at,
    WorkoutActivity: WorkoutActivity.occurred_at,
    WorkoutFeedback: WorkoutFeedback.submitted_at,
    CheckInMessage: CheckInMessage.sent_at,
    ClientProfile: ClientProfile.created_at,
    ProtectedRecord: ProtectedRecord.created_at,
}

_READ_ONLY_FIELDS = {"id", "collection", "created_at", "updated_at"}


def _parse_datetime(value: Any, name: str) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid datetime for '{name}'", field=name)
    raise ValidationError(f"Invalid datetime for '{name}'", field=name)


def _json_safe(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data, default=str))


class SqlRecordStore(RecordStore):
    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def model_for(collection: str):
        return COLLECTION_MODELS.get(collection, ProtectedRecord)

    def _columns(self, model) -> Dict[str, Any]:
        return {c.key: c for c in model.__table__.columns}

    def supports_field(self, collection: str, name: str) -> bool:
        model = self.model_for(collection)
        if model is ProtectedRecord:
            return True
        return name in self._columns(model)

    def _condition(self, model, name: str, value: Any):
        columns = self._columns(model)
        if name not in columns or name == "data" or (model is ProtectedRecord and name == "collection"):
            return None
        column = getattr(model, name)
        if isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            return column.in_(values) if values else false()
        return column == value

    def _base_query(self, collection: str, filters: Optional[Dict[str, Any]], scope: Optional[ScopeHint]):
        model = self.model_for(collection)
        q = self.db.query(model)
        if model is ProtectedRecord:
            q = q.filter(ProtectedRecord.collection == collection)

        for name, value in (filters or {}).items():
            condition = self._condition(model, name, value)
            if condition is None:
                raise ValidationError(f"Unsupported filter '{name}' for {collection}", field=name)
            q = q.filter(condition)

        if scope is not None:
            alternatives = []
            for clause in scope.clauses:
                parts = [self._condition(model, name, value) for name, value in clause.items()]
                # A clause naming a field this table lacks can never match.
                if any(p is None for p in parts):
                    continue
                alternatives.append(and_(*parts))
            q = q.filter(or_(*alternatives) if alternatives else false())
        return model, q

    def query(self, collection, filters=None, scope=None, limit=50, skip=0) -> QueryResult:
        model, q = self._base_query(collection, filters, scope)
        total = q.count()
        rows = (
            q.order_by(_ORDER_COLUMNS[model].desc(), model.id)
            .offset(skip)
            .limit(limit)
            .all()
        )
        return QueryResult(
            items=[row.to_record() for row in rows],
            total_count=total,
            has_next=skip + len(rows) < total,
        )

    def _get_row(self, collection: str, record_id: str):
        model = self.model_for(collection)
        q = self.db.query(model).filter(model.id == str(record_id))
        if model is ProtectedRecord:
            q = q.filter(ProtectedRecord.collection == collection)
        return q.first()

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._get_row(collection, record_id)
        return row.to_record() if row is not None else None

    def _apply(self, model, row, values: Dict[str, Any], creating: bool) -> None:
        columns = self._columns(model)
        if model is ProtectedRecord:
            body = dict(row.data or {}) if not creating else {}
            for name, value in values.items():
                if name in ("client_id", "trainer_id"):
                    setattr(row, name, value)
                elif name not in _READ_ONLY_FIELDS:
                    body[name] = value
            row.data = _json_safe(body)
            return

        for name, value in values.items():
            if name in _READ_ONLY_FIELDS and not (creating and name in columns and name != "id"):
                continue
            if name not in columns:
                raise ValidationError(f"Unknown field '{name}'", field=name)
            if isinstance(columns[name].type, DateTime):
                value = _parse_datetime(value, name)
            setattr(row, name, value)

    def insert(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        model = self.model_for(collection)
        row = model(collection=collection) if model is ProtectedRecord else model()
        self._apply(model, row, payload, creating=True)
        self.db.add(row)
        self.db.flush()
        return row.to_record()

    def update(self, collection: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        row = self._get_row(collection, record_id)
        if row is None:
            raise LookupError(f"{collection}/{record_id} vanished during update")
        self._apply(type(row), row, changes, creating=False)
        self.db.flush()
        return row.to_record()
