"""
Audit Trail Module

Append-only event log for security and money events. Each event carries a
sequence number and the SHA-256 of its predecessor, so editing or removing
a stored event breaks the chain.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger


class AuditEventType(Enum):
    """Types of audit events"""
    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_SOFT_DELETED = "account_soft_deleted"
    ACCOUNT_RESTORED = "account_restored"
    ACCOUNT_PURGED = "account_purged"
    ACCOUNT_REACTIVATED = "account_reactivated"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    CONTACT_UPDATED = "contact_updated"
    DETAILS_UPDATED = "details_updated"

    # Transaction events
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_REVERSED = "transaction_reversed"

    # Security events
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    PIN_FAILED = "pin_failed"
    TRACK_LOCKED = "track_locked"
    TRACK_UNLOCKED = "track_unlocked"
    SECRET_MIGRATED = "secret_migrated"
    SECRET_CHANGED = "secret_changed"
    OTP_ISSUED = "otp_issued"
    ADMIN_CREATED = "admin_created"
    ADMIN_UPDATED = "admin_updated"
    ADMIN_DELETED = "admin_deleted"

    # Loan events
    LOAN_REQUESTED = "loan_requested"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_CLOSED = "loan_closed"
    LOAN_AUTO_REPAY_CHANGED = "loan_auto_repay_changed"

    # Deletion request events
    DELETION_REQUESTED = "deletion_requested"
    DELETION_APPROVED = "deletion_approved"
    DELETION_REJECTED = "deletion_rejected"

    # Free-form sink events
    SYSTEM_NOTE = "system_note"


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
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        self.metadata = {k: _jsonable(v) for k, v in (self.metadata or {}).items()}

    def calculate_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field but current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'user_id': self.user_id,
            'session_id': self.session_id,
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
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Writer and verifier of the audit chain. Appends are serialized by a
    process-local lock; the chain head is recovered from storage on start.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self.logger = get_logger("bank_ledger.audit")
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain. Storage errors propagate; use
        try_log_event or record where an audit failure must not abort the
        operation.
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                sequence=self._sequence + 1,
                current_hash="",
                user_id=user_id,
                session_id=session_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            self._sequence = event.sequence
            return event

    def try_log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                      metadata: Optional[Dict[str, Any]] = None,
                      user_id: Optional[str] = None) -> Optional[AuditEvent]:
        """Like log_event, but a failed write is logged instead of raised"""
        if not self.enabled:
            return None
        try:
            return self.log_event(event_type, entity_type, entity_id, metadata, user_id)
        except Exception:
            self.logger.warning(
                f"Audit write failed for {event_type.value} on {entity_type}:{entity_id}",
                exc_info=True
            )
            return None

    def record(self, event_type: str, description: str, actor: Optional[str] = None,
               timestamp: Optional[datetime] = None, entity_type: str = "system",
               entity_id: str = "-") -> Optional[AuditEvent]:
        """
        Best-effort audit sink. Never raises: a failed audit write is logged
        and the caller's operation carries on.
        """
        try:
            kind = AuditEventType(event_type.lower())
        except ValueError:
            kind = AuditEventType.SYSTEM_NOTE
        metadata = {"event": event_type, "description": description}
        if timestamp:
            metadata["occurred_at"] = timestamp
        return self.try_log_event(kind, entity_type, entity_id, metadata, user_id=actor)

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events for one entity, oldest first; limit keeps the newest N"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda x: x.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        return sorted((AuditEvent.from_dict(data) for data in events_data),
                      key=lambda x: x.sequence)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain oldest to newest, checking each hash and link

        Returns:
            Dict with 'valid', 'total_events' and the ids of 'broken' events
        """
        events = sorted((AuditEvent.from_dict(d) for d in self.storage.load_all(self.table_name)),
                        key=lambda x: x.sequence)
        broken = []
        previous = ""
        for event in events:
            if not event.verify_hash() or event.previous_hash != previous:
                broken.append(event.id)
            previous = event.current_hash
        return {'valid': not broken, 'total_events': len(events), 'broken': broken}
