"""
Audit Trail Module

Hash-chained, append-only log of loan lifecycle events with SHA-256 for
tamper detection. Every state change the engine makes is logged here.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_SUBMITTED = "loan_submitted"
    LOAN_TERMS_UPDATED = "loan_terms_updated"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_RESTRUCTURED = "loan_restructured"
    LOAN_PAYMENT_RECORDED = "loan_payment_recorded"
    LOAN_PAYMENT_CONFIRMED = "loan_payment_confirmed"
    LOAN_PAYMENT_FAILED = "loan_payment_failed"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_LATENESS_ASSESSED = "loan_lateness_assessed"
    LOAN_NOTE_ADDED = "loan_note_added"
    LOAN_DOCUMENT_ATTACHED = "loan_document_attached"
    LOAN_CONTRACT_LINKED = "loan_contract_linked"


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event, chained to its predecessor by hash
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data.pop('version', None)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Dict[str, Any]:
        """Sequence and hash of the most recent event"""
        head = self.storage.latest(self.table_name, 'sequence')
        return head or {'sequence': 0, 'current_hash': ""}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an audit event to the chain

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        # Storage transaction first, matching the order LoanManager commits in
        with self.storage.atomic(), self._lock:
            # Re-read the head so several trails over one storage stay chained
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'],
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict(), expected_version=0)
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one entity, oldest first (the most recent ``limit`` if given)"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(d) for d in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
