"""
WorkWise Escrow (WWE) - Event Bus & Immutable Audit Log
Version: 1.0.0

Every committed mutation publishes an EscrowEvent carrying the entity, the
action and the before/after state. The AuditLog subscribes to the bus and
appends each event to a hash chain:

    hash_signature = sha256(canonical_json(entry) + previous_hash)

so editing any entry, or removing one, breaks verification from that point on.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import hashlib
import json
import threading
import uuid

from wwe_enforcement_v1 import SystemCompromised, logger

GENESIS_HASH = "0" * 64

# ============================================
# DOMAIN EVENTS
# ============================================

@dataclass
class EscrowEvent:
    """Structured notification of one committed change."""
    entity: str  # table name, e.g. "escrow_transactions"
    entity_id: str
    action: str
    account_id: str
    actor_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: f"EVT-{uuid.uuid4().hex[:12].upper()}")

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'entity': self.entity,
            'entity_id': self.entity_id,
            'action': self.action,
            'account_id': self.account_id,
            'actor_id': self.actor_id,
            'before': self.before,
            'after': self.after,
            'occurred_at': self.occurred_at.isoformat(),
        }


class EventBus:
    """Synchronous fan-out to subscribers, in publication order."""

    def __init__(self):
        self.subscribers: List[Callable[[EscrowEvent], None]] = []

    def subscribe(self, handler: Callable[[EscrowEvent], None]):
        self.subscribers.append(handler)

    def publish(self, events: List[EscrowEvent]):
        for event in events:
            for handler in self.subscribers:
                handler(event)

# ============================================
# IMMUTABLE AUDIT LOG
# ============================================

@dataclass(frozen=True)
class AuditLogEntry:
    sequence: int
    log_id: str
    table_name: str
    action: str
    record_id: str
    actor_id: Optional[str]
    actor_type: str
    old_values: Optional[Dict[str, Any]]
    new_values: Optional[Dict[str, Any]]
    metadata: Dict[str, Any]
    logged_at: str
    previous_hash: str
    hash_signature: str

    def hashed_fields(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'log_id': self.log_id,
            'table_name': self.table_name,
            'action': self.action,
            'record_id': self.record_id,
            'actor_id': self.actor_id,
            'actor_type': self.actor_type,
            'old_values': self.old_values,
            'new_values': self.new_values,
            'metadata': self.metadata,
            'logged_at': self.logged_at,
        }

    def to_dict(self) -> Dict:
        return {
            **self.hashed_fields(),
            'previous_hash': self.previous_hash,
            'hash_signature': self.hash_signature,
        }


def compute_hash(fields: Dict[str, Any], previous_hash: str) -> str:
    payload = json.dumps(fields, sort_keys=True, default=str)
    return hashlib.sha256((payload + previous_hash).encode()).hexdigest()


class AuditLog:
    """Append-only hash chain with monotonic sequence numbers."""

    SYSTEM_ACTORS = {"system", "fraud_engine", "invariant_enforcer", "scheduler", "payment_rail", "dispute_service"}

    def __init__(self):
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[AuditLogEntry]:
        return list(self._entries)

    @property
    def head_hash(self) -> str:
        return self._entries[-1].hash_signature if self._entries else GENESIS_HASH

    def append(
        self,
        table_name: str,
        action: str,
        record_id: str,
        actor_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditLogEntry:
        with self._lock:
            previous_hash = self.head_hash
            actor_type = "system" if actor_id is None or actor_id in self.SYSTEM_ACTORS else "user"
            fields = {
                'sequence': len(self._entries) + 1,
                'log_id': f"LOG-{uuid.uuid4().hex[:12].upper()}",
                'table_name': table_name,
                'action': action,
                'record_id': record_id,
                'actor_id': actor_id,
                'actor_type': actor_type,
                'old_values': old_values,
                'new_values': new_values,
                'metadata': metadata or {},
                'logged_at': datetime.now().isoformat(),
            }
            entry = AuditLogEntry(
                **fields,
                previous_hash=previous_hash,
                hash_signature=compute_hash(fields, previous_hash),
            )
            self._entries.append(entry)

        logger.debug(f"[AUDIT] #{entry.sequence} {table_name}.{action} {record_id}")
        return entry

    def on_event(self, event: EscrowEvent):
        """EventBus subscriber."""
        self.append(
            table_name=event.entity,
            action=event.action,
            record_id=event.entity_id,
            actor_id=event.actor_id,
            old_values=event.before,
            new_values=event.after,
            metadata={'account_id': event.account_id, 'event_id': event.id},
        )

    def find_first_broken(self) -> Optional[int]:
        """Sequence number of the first entry that fails verification."""
        previous_hash = GENESIS_HASH
        for index, entry in enumerate(self._entries, start=1):
            if entry.sequence != index or entry.previous_hash != previous_hash:
                return entry.sequence
            if compute_hash(entry.hashed_fields(), entry.previous_hash) != entry.hash_signature:
                return entry.sequence
            previous_hash = entry.hash_signature
        return None

    def verify_chain(self) -> bool:
        return self.find_first_broken() is None

    def assert_intact(self):
        broken = self.find_first_broken()
        if broken is not None:
            logger.critical(f"[AUDIT] Hash chain broken at entry #{broken}")
            raise SystemCompromised(f"Audit log tampered at entry #{broken}")

    def for_record(self, record_id: str) -> List[AuditLogEntry]:
        return [e for e in self._entries if e.record_id == record_id]
