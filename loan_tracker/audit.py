"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection. Loan
creation, every recorded payment and every failed recording attempt land
here, with enough context (loan id, payment number, stage) to reconcile a
partially written payment by hand.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
from decimal import Decimal
import uuid

from .async_storage import AsyncStorageInterface
from .config import TrackerConfig
from .storage import StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_PAID_OFF = "loan_paid_off"

    # Payment events
    LOAN_PAYMENT_RECORDED = "loan_payment_recorded"
    PAYMENT_PROOF_UPLOADED = "payment_proof_uploaded"
    PAYMENT_RECORDING_FAILED = "payment_recording_failed"

    # Expense events
    CATEGORY_CREATED = "category_created"
    INTEREST_EXPENSE_CREATED = "interest_expense_created"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, loan_payment, category, expense
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: AsyncStorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = asyncio.Lock()
        # (event id, sequence, hash, event count) of the last event written here
        self._head: Optional[Tuple[str, int, str, int]] = None

    async def _load_chain_head(self) -> Tuple[int, str, int]:
        """Return (sequence, hash, event count) at the head of the chain"""
        count = await self.storage.count(self.table_name)
        if self._head is not None:
            head_id, sequence, head_hash, head_count = self._head
            # Stale if another writer appended or a rollback removed the head
            if head_count == count and await self.storage.load(self.table_name, head_id) is not None:
                return sequence, head_hash, count

        events = await self.storage.load_all(self.table_name)
        if not events:
            return 0, "", 0
        head = max(events, key=lambda e: e.get('sequence', 0))
        return head.get('sequence', 0), head.get('current_hash', ""), len(events)

    async def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: Owner of the entity

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        async with self._lock:
            now = datetime.now(timezone.utc)

            last_sequence, last_hash, count = await self._load_chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=last_sequence + 1,
                previous_hash=last_hash,
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            await self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = (event.id, event.sequence, event.current_hash, count + 1)
            return event

    async def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events_data = await self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    async def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get all audit events of one type, oldest first"""
        events_data = await self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    async def verify_integrity(self) -> Dict[str, Any]:
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

        all_events_data = await self.storage.load_all(self.table_name)
        events = [AuditEvent.from_dict(data) for data in all_events_data]
        events.sort(key=lambda x: x.sequence)
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

    async def count_events(self) -> int:
        """Get total number of audit events"""
        return await self.storage.count(self.table_name)


def create_audit_trail(storage: AsyncStorageInterface, config: TrackerConfig) -> AuditTrail:
    """Build the audit trail, switched off when audit logging is disabled"""
    return AuditTrail(storage, enabled=config.enable_audit_logging)
