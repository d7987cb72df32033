"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan, schedule and lending mutation is logged here.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
from decimal import Decimal
import uuid

from .currency import Money
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    SCHEDULE_GENERATED = "schedule_generated"
    SCHEDULE_REGENERATED = "schedule_regenerated"
    LOAN_PAYMENT_RECORDED = "loan_payment_recorded"
    LOAN_PREPAID = "loan_prepaid"
    LOAN_RESTRUCTURED = "loan_restructured"
    LOAN_UPDATED = "loan_updated"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_CLOSED = "loan_closed"
    LOAN_DELETED = "loan_deleted"

    # Lending events
    LENDING_CREATED = "lending_created"
    LENDING_UPDATED = "lending_updated"
    LENDING_PAYMENT_RECORDED = "lending_payment_recorded"
    LENDING_STATUS_CHANGED = "lending_status_changed"
    LENDING_DELETED = "lending_deleted"


def _jsonable(value: Any) -> Any:
    """Convert metadata values to JSON-serializable form"""
    if isinstance(value, Money):
        return {"amount": str(value.amount), "currency": value.currency.code}
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str      # loan, lending
    entity_id: str
    user_id: Optional[str]
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        SHA-256 over every field except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            **StorageRecord.base_fields(data),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            user_id=data.get('user_id'),
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    Events are chained in the order of their ``_seq`` number. The chain head
    (last sequence number and hash) lives in its own table and is written in
    the same transaction as the event, so appending never rescans the trail.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    @staticmethod
    def _sorted(events: List[AuditEvent]) -> List[AuditEvent]:
        return sorted(events, key=lambda e: e.metadata.get('_seq', 0))

    def _ordered_events(self) -> List[AuditEvent]:
        return self._sorted(
            [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        )

    def _chain_head(self) -> Tuple[int, str]:
        """Sequence number and hash of the newest event, (0, "") when empty"""
        head = self.storage.load(self.head_table, self.HEAD_ID)
        if head:
            return head['seq'], head['hash']
        # Trails written before the head record existed
        events = self._ordered_events()
        if not events:
            return 0, ""
        last = events[-1]
        return last.metadata.get('_seq', 0), last.current_hash

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: Owner of the entity

        Returns:
            Created AuditEvent
        """
        # The storage transaction serializes writers on the chain head
        with self.storage.atomic():
            seq, previous_hash = self._chain_head()
            metadata = dict(metadata or {})
            metadata['_seq'] = seq + 1

            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                'id': self.HEAD_ID,
                'seq': metadata['_seq'],
                'hash': event.current_hash,
                'event_id': event.id,
            })
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        query = {'entity_type': entity_type, 'entity_id': entity_id}
        return self._sorted(
            [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, query)]
        )

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain and report the first broken link, if any.
        A chain head pointing past the last stored event means the tail was
        removed.

        Returns:
            {"valid": bool, "events_checked": int, "broken_at": Optional[str]}
        """
        previous_hash = ""
        events = self._ordered_events()
        for index, event in enumerate(events):
            if event.previous_hash != previous_hash or not event.verify_hash():
                return {"valid": False, "events_checked": index + 1, "broken_at": event.id}
            previous_hash = event.current_hash

        head = self.storage.load(self.head_table, self.HEAD_ID)
        if head and head['hash'] != previous_hash:
            return {"valid": False, "events_checked": len(events), "broken_at": head.get('event_id')}
        return {"valid": True, "events_checked": len(events), "broken_at": None}
