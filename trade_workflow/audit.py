"""
Trade Workflow - Audit Sink.

============================================================
PURPOSE
============================================================
Append-only emission of one attributable record per state
change.

- DatabaseAuditSink writes audit_events rows inside the
  command's transaction, so a rolled-back command leaves
  no audit trace
- InMemoryAuditSink collects records for callers without
  persistence

The core never formats or renders audit records.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from database.gateway import PersistenceGateway
from database.models import AuditEvent

from .schemas import ActionContext
from .types import ActionCategory, ActionType, EntityType


logger = logging.getLogger(__name__)


# ============================================================
# AUDIT RECORD
# ============================================================

@dataclass
class AuditRecord:
    """One state change, attributable to an actor."""

    entity_type: str
    entity_id: str
    actor_id: str
    action_type: str
    action_category: str
    occurred_at: datetime

    from_state: Optional[Dict[str, Any]] = None
    to_state: Optional[Dict[str, Any]] = None
    changed_fields: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    actor_name: Optional[str] = None
    actor_email: Optional[str] = None
    actor_role: Optional[str] = None
    request_id: Optional[str] = None
    parent_entity_type: Optional[str] = None
    parent_entity_id: Optional[str] = None

    @classmethod
    def build(
        cls,
        ctx: ActionContext,
        entity_type: EntityType,
        entity_id: str,
        action_type: ActionType,
        category: ActionCategory,
        occurred_at: datetime,
        from_state: Optional[Dict[str, Any]] = None,
        to_state: Optional[Dict[str, Any]] = None,
        changed_fields: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        parent: Optional[tuple] = None,
    ) -> "AuditRecord":
        """
        Build a record from the command envelope.

        Args:
            ctx: Command envelope
            parent: Optional (entity_type, entity_id) of the owning entity
        """
        meta: Dict[str, Any] = {"ui_source": ctx.ui_source}
        if ctx.note:
            meta["note"] = ctx.note
        if ctx.batch_id:
            meta["batch_id"] = ctx.batch_id
            meta["batch_index"] = ctx.batch_index
            meta["batch_total"] = ctx.batch_total
        if metadata:
            meta.update(metadata)

        parent_type, parent_id = parent if parent else (None, None)

        return cls(
            entity_type=_plain(entity_type),
            entity_id=str(entity_id),
            actor_id=ctx.actor_id,
            action_type=_plain(action_type),
            action_category=_plain(category),
            occurred_at=occurred_at,
            from_state=jsonable(from_state),
            to_state=jsonable(to_state),
            changed_fields=list(changed_fields or []),
            metadata=jsonable(meta),
            actor_name=ctx.actor_name,
            actor_email=ctx.actor_email,
            actor_role=_plain(ctx.actor_role),
            request_id=ctx.request_id,
            parent_entity_type=_plain(parent_type) if parent_type else None,
            parent_entity_id=str(parent_id) if parent_id else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def jsonable(value: Any) -> Any:
    """Convert a state snapshot into JSON-safe primitives."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return value


# ============================================================
# AUDIT SINKS
# ============================================================

class AuditSink(ABC):
    """Append-only destination for audit records."""

    @abstractmethod
    def emit(self, record: AuditRecord) -> None:
        """Append one record."""

    def has_request(self, request_id: str, entity_id: str, action_type: ActionType) -> bool:
        """Whether a request id already produced this action on this entity."""
        return False


class DatabaseAuditSink(AuditSink):
    """Writes audit_events rows through the persistence gateway."""

    def __init__(self, gateway: PersistenceGateway):
        self._gateway = gateway

    def emit(self, record: AuditRecord) -> None:
        event = AuditEvent(
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            parent_entity_type=record.parent_entity_type,
            parent_entity_id=record.parent_entity_id,
            actor_id=record.actor_id,
            actor_name=record.actor_name,
            actor_email=record.actor_email,
            actor_role=record.actor_role,
            action_type=record.action_type,
            action_category=record.action_category,
            from_state=record.from_state,
            to_state=record.to_state,
            changed_fields=record.changed_fields,
            request_id=record.request_id,
            ui_source=record.metadata.get("ui_source"),
            event_metadata=record.metadata,
            occurred_at=record.occurred_at,
        )
        self._gateway.insert(event)

        logger.debug(
            f"Audit: {record.action_type} {record.entity_type}={record.entity_id} "
            f"by {record.actor_id}"
        )

    def has_request(self, request_id: str, entity_id: str, action_type: ActionType) -> bool:
        if not request_id:
            return False
        stmt = (
            select(AuditEvent.id)
            .where(
                AuditEvent.request_id == request_id,
                AuditEvent.entity_id == str(entity_id),
                AuditEvent.action_type == _plain(action_type),
            )
            .limit(1)
        )
        return self._gateway.session.execute(stmt).first() is not None


class InMemoryAuditSink(AuditSink):
    """Collects records in memory."""

    def __init__(self):
        self.records: List[AuditRecord] = []

    def emit(self, record: AuditRecord) -> None:
        self.records.append(record)

    def has_request(self, request_id: str, entity_id: str, action_type: ActionType) -> bool:
        if not request_id:
            return False
        return any(
            r.request_id == request_id
            and r.entity_id == str(entity_id)
            and r.action_type == _plain(action_type)
            for r in self.records
        )

    def for_entity(self, entity_id: str) -> List[AuditRecord]:
        return [r for r in self.records if r.entity_id == str(entity_id)]


__all__ = [
    "AuditRecord",
    "AuditSink",
    "DatabaseAuditSink",
    "InMemoryAuditSink",
    "jsonable",
]
