"""
WorkWise Escrow (WWE) - Account Storage
Version: 1.0.0

In-memory persistence with the per-account discipline the ledger needs:

- every mutation holds the account's lock and works on a private copy
  (AccountWorkspace) that replaces the committed record in one swap,
- readers get deep-copied snapshots of committed records and never wait,
- events gathered by a workspace are published only after its commit.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
import copy
import threading

from wwe_enforcement_v1 import (
    EscrowPolicy,
    ConcurrencyConflict,
    EntityNotFound,
    ValidationError,
    logger
)
from wwe_escrow_models_v1 import (
    EscrowAccount,
    EscrowMilestone,
    EscrowTransaction,
    DisputeCase,
    InsuranceClaim,
    TransactionType,
    fold_available,
    in_flight_outflows,
    to_money
)
from wwe_audit_log_v1 import EscrowEvent, EventBus

# ============================================
# PER-ACCOUNT LOCKS
# ============================================

class AccountLockManager:
    """One re-entrant lock per escrow account."""

    def __init__(self, policy: EscrowPolicy):
        self.policy = policy
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._guard:
            if account_id not in self._locks:
                self._locks[account_id] = threading.RLock()
            return self._locks[account_id]

    @contextmanager
    def acquire(self, account_id: str) -> Iterator[None]:
        from wwe_metrics import record_lock_contention

        lock = self._lock_for(account_id)
        for attempt in range(1, self.policy.lock_max_attempts + 1):
            if lock.acquire(timeout=self.policy.lock_timeout_seconds):
                break
            record_lock_contention()
            logger.warning(f"[STORAGE] Lock wait timed out for {account_id} (attempt {attempt}/{self.policy.lock_max_attempts})")
        else:
            raise ConcurrencyConflict(f"Could not acquire lock for escrow account {account_id}")

        try:
            yield
        finally:
            lock.release()

# ============================================
# RECORDS & WORKSPACES
# ============================================

@dataclass
class AccountRecord:
    """Committed state of an escrow account and everything it owns."""
    account: EscrowAccount
    milestones: Dict[str, EscrowMilestone] = field(default_factory=dict)
    transactions: Dict[str, EscrowTransaction] = field(default_factory=dict)
    disputes: Dict[str, DisputeCase] = field(default_factory=dict)
    claims: Dict[str, InsuranceClaim] = field(default_factory=dict)
    version: int = 0

    def ordered_milestones(self) -> List[EscrowMilestone]:
        return sorted(self.milestones.values(), key=lambda m: m.order_index)

    def to_dict(self) -> Dict:
        return {
            **self.account.to_dict(),
            'version': self.version,
            'milestones': [m.to_dict() for m in self.ordered_milestones()],
            'transactions': [t.to_dict() for t in self.transactions.values()],
            'disputes': [d.to_dict() for d in self.disputes.values()],
            'insurance_claims': [c.to_dict() for c in self.claims.values()],
        }


class AccountWorkspace:
    """Private copy of one account record, mutated inside a unit of work."""

    def __init__(self, record: AccountRecord):
        self.record = copy.deepcopy(record)
        self.base_version = record.version
        self.events: List[EscrowEvent] = []
        self.discarded = False

    @property
    def account(self) -> EscrowAccount:
        return self.record.account

    @property
    def transactions(self) -> List[EscrowTransaction]:
        return list(self.record.transactions.values())

    @property
    def milestones(self) -> List[EscrowMilestone]:
        return self.record.ordered_milestones()

    @property
    def disputes(self) -> List[DisputeCase]:
        return list(self.record.disputes.values())

    def milestone(self, milestone_id: str) -> EscrowMilestone:
        if milestone_id not in self.record.milestones:
            raise EntityNotFound(f"Milestone {milestone_id} not found in escrow {self.account.id}")
        return self.record.milestones[milestone_id]

    def transaction(self, transaction_id: str) -> EscrowTransaction:
        if transaction_id not in self.record.transactions:
            raise EntityNotFound(f"Transaction {transaction_id} not found in escrow {self.account.id}")
        return self.record.transactions[transaction_id]

    def dispute(self, dispute_id: str) -> DisputeCase:
        if dispute_id not in self.record.disputes:
            raise EntityNotFound(f"Dispute {dispute_id} not found in escrow {self.account.id}")
        return self.record.disputes[dispute_id]

    def claim(self, claim_id: str) -> InsuranceClaim:
        if claim_id not in self.record.claims:
            raise EntityNotFound(f"Insurance claim {claim_id} not found in escrow {self.account.id}")
        return self.record.claims[claim_id]

    def transaction_by_intent(self, payment_intent_id: str) -> Optional[EscrowTransaction]:
        for txn in self.record.transactions.values():
            if txn.payment_intent_id == payment_intent_id:
                return txn
        return None

    def add_transaction(self, txn: EscrowTransaction):
        self.record.transactions[txn.id] = txn

    def add_dispute(self, dispute: DisputeCase):
        self.record.disputes[dispute.id] = dispute

    def add_claim(self, claim: InsuranceClaim):
        self.record.claims[claim.id] = claim

    def in_flight(self, transaction_type: Optional[TransactionType] = None) -> List[EscrowTransaction]:
        return [
            t for t in self.record.transactions.values()
            if t.is_in_flight and (transaction_type is None or t.transaction_type == transaction_type)
        ]

    def unresolved_disputes(self, milestone_id: Optional[str] = None, account_level: bool = False) -> List[DisputeCase]:
        disputes = [d for d in self.record.disputes.values() if d.is_unresolved]
        if milestone_id is not None:
            disputes = [d for d in disputes if d.milestone_id == milestone_id]
        elif account_level:
            disputes = [d for d in disputes if d.milestone_id is None]
        return disputes

    def spendable(self) -> float:
        """Available balance not already promised to an in-flight outflow."""
        return to_money(self.account.available_amount - in_flight_outflows(self.record.transactions.values()))

    def folded_available(self) -> float:
        return fold_available(self.record.transactions.values())

    def emit(self, entity: str, entity_id: str, action: str, actor_id: Optional[str] = None,
             before: Optional[Dict[str, Any]] = None, after: Optional[Dict[str, Any]] = None):
        self.events.append(EscrowEvent(
            entity=entity,
            entity_id=entity_id,
            action=action,
            account_id=self.account.id,
            actor_id=actor_id,
            before=before,
            after=after,
        ))

    def discard(self):
        self.discarded = True

# ============================================
# STORAGE
# ============================================

class EscrowStorage:
    """Committed account records plus lookup indexes."""

    def __init__(self, policy: EscrowPolicy, bus: EventBus):
        self.policy = policy
        self.bus = bus
        self.locks = AccountLockManager(policy)
        self._records: Dict[str, AccountRecord] = {}
        self._entity_index: Dict[str, str] = {}
        self._intent_index: Dict[str, str] = {}
        self._project_index: Dict[str, str] = {}
        self._index_lock = threading.Lock()

    def add_account(self, record: AccountRecord, events: List[EscrowEvent]):
        """Persist a brand new account record."""
        account = record.account
        with self.locks.acquire(account.id):
            with self._index_lock:
                if account.id in self._records:
                    raise ConcurrencyConflict(f"Escrow account {account.id} already exists")
                if account.project_id in self._project_index:
                    raise ValidationError(f"Project {account.project_id} already has an escrow account")
                record.version = 1
                self._records[account.id] = record
                self._project_index[account.project_id] = account.id
                self._reindex(record)
            self.bus.publish(events)
        logger.info(f"[STORAGE] Created escrow {account.id} for project {account.project_id}")

    @contextmanager
    def unit_of_work(self, account_id: str) -> Iterator[AccountWorkspace]:
        """Serialized read-modify-write of one account.

        The workspace is committed when the block exits normally and was not
        discarded. Any exception leaves the committed record untouched.
        """
        with self.locks.acquire(account_id):
            committed = self._records.get(account_id)
            if committed is None:
                raise EntityNotFound(f"Escrow account {account_id} not found")

            workspace = AccountWorkspace(committed)
            yield workspace

            if workspace.discarded:
                logger.debug(f"[STORAGE] Unit of work on {account_id} discarded")
                return

            with self._index_lock:
                if self._records[account_id].version != workspace.base_version:
                    raise ConcurrencyConflict(f"Escrow account {account_id} changed during unit of work")
                workspace.record.version = workspace.base_version + 1
                self._records[account_id] = workspace.record
                self._reindex(workspace.record)

            self.bus.publish(workspace.events)

    def _reindex(self, record: AccountRecord):
        account_id = record.account.id
        for entity_id in list(record.milestones) + list(record.transactions) + list(record.disputes) + list(record.claims):
            self._entity_index[entity_id] = account_id
        for txn in record.transactions.values():
            if txn.payment_intent_id:
                self._intent_index[txn.payment_intent_id] = account_id

    # ---- snapshot reads ----

    def snapshot(self, account_id: str) -> AccountRecord:
        record = self._records.get(account_id)
        if record is None:
            raise EntityNotFound(f"Escrow account {account_id} not found")
        return copy.deepcopy(record)

    def account_id_for(self, entity_id: str) -> str:
        if entity_id in self._records:
            return entity_id
        account_id = self._entity_index.get(entity_id)
        if account_id is None:
            raise EntityNotFound(f"No escrow record with id {entity_id}")
        return account_id

    def account_id_for_intent(self, payment_intent_id: str) -> str:
        account_id = self._intent_index.get(payment_intent_id)
        if account_id is None:
            raise EntityNotFound(f"No transaction for payment intent {payment_intent_id}")
        return account_id

    def account_id_for_project(self, project_id: str) -> Optional[str]:
        return self._project_index.get(project_id)

    def account_ids(self) -> List[str]:
        return list(self._records)

    def snapshots(self) -> List[AccountRecord]:
        return [self.snapshot(account_id) for account_id in self.account_ids()]
