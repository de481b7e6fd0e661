"""
WorkWise Escrow (WWE) - Data Models
Version: 1.0.0

Escrow accounts own their milestones, transactions, disputes and insurance
claims. Transactions and disputes refer to milestones by id only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import uuid


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def to_money(amount: float) -> float:
    return round(float(amount), 2)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

# ============================================
# ENUMS
# ============================================

class AccountStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DISPUTED = "disputed"  # frozen
    CANCELLED = "cancelled"


class ProtectionLevel(Enum):
    BASIC = "basic"
    ENHANCED = "enhanced"
    PREMIUM = "premium"


class MilestoneStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"


class TransactionType(Enum):
    DEPOSIT = "deposit"
    RELEASE = "release"
    REFUND = "refund"
    FEE = "fee"
    INSURANCE_CLAIM = "insurance_claim"


class TransactionStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DisputeType(Enum):
    QUALITY = "quality"
    DELIVERY = "delivery"
    PAYMENT = "payment"
    SCOPE = "scope"
    COMMUNICATION = "communication"


class DisputeStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    MEDIATION = "mediation"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class DisputeResolution(Enum):
    CLIENT_FAVOR = "client_favor"
    FREELANCER_FAVOR = "freelancer_favor"
    PARTIAL_REFUND = "partial_refund"
    FULL_REFUND = "full_refund"
    NO_ACTION = "no_action"


class InsuranceClaimType(Enum):
    FRAUD = "fraud"
    NON_DELIVERY = "non_delivery"
    QUALITY_ISSUE = "quality_issue"
    IDENTITY_THEFT = "identity_theft"


class InsuranceClaimStatus(Enum):
    SUBMITTED = "submitted"
    REVIEWING = "reviewing"
    INVESTIGATING = "investigating"
    APPROVED = "approved"
    DENIED = "denied"
    PAID = "paid"


TERMINAL_ACCOUNT_STATUSES = {AccountStatus.COMPLETED, AccountStatus.CANCELLED}
IN_FLIGHT_STATUSES = {TransactionStatus.PENDING, TransactionStatus.PROCESSING}
OUTFLOW_TYPES = {TransactionType.RELEASE, TransactionType.REFUND, TransactionType.FEE}
# Resolutions that settle a disputed milestone by refunding it
REFUND_CLOSING_RESOLUTIONS = {DisputeResolution.CLIENT_FAVOR, DisputeResolution.FULL_REFUND}

# ============================================
# ESCROW ACCOUNT
# ============================================

@dataclass
class EscrowTerms:
    """Terms fixed when the escrow is created."""
    approval_timeout_hours: int = 72
    insurance_coverage_percent: float = 80.0
    expiry_days: int = 60
    alert_threshold: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            'approval_timeout_hours': self.approval_timeout_hours,
            'insurance_coverage_percent': self.insurance_coverage_percent,
            'expiry_days': self.expiry_days,
            'alert_threshold': self.alert_threshold,
        }


@dataclass
class EscrowAccount:
    """One escrow account per funded project."""
    id: str
    project_id: str
    client_id: str
    freelancer_id: str
    total_amount: float
    platform_fee: float
    available_amount: float = 0.0
    status: AccountStatus = AccountStatus.PENDING
    protection_level: ProtectionLevel = ProtectionLevel.BASIC
    risk_score: float = 0.0

    # Flags
    milestone_based: bool = True
    automatic_release: bool = False
    fraud_insurance: bool = False
    multi_signature: bool = False

    terms: EscrowTerms = field(default_factory=EscrowTerms)
    payout_account: Optional[str] = None
    funding_source: Optional[str] = None
    fee_collected: bool = False
    closing: Optional[str] = None  # "complete" | "cancel"

    created_at: datetime = field(default_factory=datetime.now)
    funded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    # Freeze metadata
    frozen_at: Optional[datetime] = None
    freeze_reason: Optional[str] = None
    frozen_by: Optional[str] = None
    status_before_freeze: Optional[AccountStatus] = None
    unfrozen_at: Optional[datetime] = None
    unfrozen_by: Optional[str] = None

    @property
    def is_frozen(self) -> bool:
        return self.status == AccountStatus.DISPUTED

    @property
    def net_amount(self) -> float:
        return to_money(self.total_amount - self.platform_fee)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'project_id': self.project_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'total_amount': self.total_amount,
            'platform_fee': self.platform_fee,
            'available_amount': self.available_amount,
            'status': self.status.value,
            'protection_level': self.protection_level.value,
            'risk_score': self.risk_score,
            'milestone_based': self.milestone_based,
            'automatic_release': self.automatic_release,
            'fraud_insurance': self.fraud_insurance,
            'multi_signature': self.multi_signature,
            'escrow_terms': self.terms.to_dict(),
            'fee_collected': self.fee_collected,
            'created_at': _iso(self.created_at),
            'funded_at': _iso(self.funded_at),
            'expires_at': _iso(self.expires_at),
            'completed_at': _iso(self.completed_at),
            'cancelled_at': _iso(self.cancelled_at),
            'frozen_at': _iso(self.frozen_at),
            'freeze_reason': self.freeze_reason,
            'frozen_by': self.frozen_by,
        }

# ============================================
# MILESTONES
# ============================================

@dataclass
class EscrowMilestone:
    """Ordered deliverable within an escrow account."""
    id: str
    account_id: str
    title: str
    amount: float
    order_index: int
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    completion_criteria: List[str] = field(default_factory=list)
    deliverables: List[str] = field(default_factory=list)
    submission_notes: Optional[str] = None
    due_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    auto_approve_due_at: Optional[datetime] = None
    approvals: List[str] = field(default_factory=list)
    status_before_dispute: Optional[MilestoneStatus] = None
    resolution: Optional[DisputeResolution] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_closed(self) -> bool:
        """Nothing further can be paid out of this milestone."""
        if self.status == MilestoneStatus.RELEASED:
            return True
        return self.status == MilestoneStatus.DISPUTED and self.resolution in REFUND_CLOSING_RESOLUTIONS

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'title': self.title,
            'description': self.description,
            'amount': self.amount,
            'order_index': self.order_index,
            'status': self.status.value,
            'completion_criteria': list(self.completion_criteria),
            'deliverables': list(self.deliverables),
            'due_date': _iso(self.due_date),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'approved_at': _iso(self.approved_at),
            'released_at': _iso(self.released_at),
            'auto_approve_due_at': _iso(self.auto_approve_due_at),
            'approvals': list(self.approvals),
            'resolution': self.resolution.value if self.resolution else None,
        }

# ============================================
# TRANSACTIONS
# ============================================

@dataclass
class EscrowTransaction:
    """Append-only money movement record. Only status fields progress."""
    id: str
    account_id: str
    transaction_type: TransactionType
    amount: float
    status: TransactionStatus = TransactionStatus.PENDING
    milestone_id: Optional[str] = None
    dispute_id: Optional[str] = None
    claim_id: Optional[str] = None
    description: str = ""
    payment_intent_id: Optional[str] = None
    transfer_id: Optional[str] = None
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    held_since: Optional[datetime] = None
    hold_escalated_at: Optional[datetime] = None
    initiated_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'transaction_type': self.transaction_type.value,
            'amount': self.amount,
            'status': self.status.value,
            'milestone_id': self.milestone_id,
            'dispute_id': self.dispute_id,
            'claim_id': self.claim_id,
            'description': self.description,
            'payment_intent_id': self.payment_intent_id,
            'transfer_id': self.transfer_id,
            'attempts': self.attempts,
            'next_retry_at': _iso(self.next_retry_at),
            'submitted_at': _iso(self.submitted_at),
            'processed_at': _iso(self.processed_at),
            'failure_reason': self.failure_reason,
            'held_since': _iso(self.held_since),
            'hold_escalated_at': _iso(self.hold_escalated_at),
            'initiated_by': self.initiated_by,
            'created_at': _iso(self.created_at),
        }

# ============================================
# DISPUTES & INSURANCE
# ============================================

@dataclass
class DisputeCase:
    """Dispute against an account, optionally scoped to one milestone."""
    id: str
    account_id: str
    initiated_by: str
    dispute_type: DisputeType
    reason: str
    milestone_id: Optional[str] = None
    description: str = ""
    evidence: List[str] = field(default_factory=list)
    status: DisputeStatus = DisputeStatus.OPEN
    resolution: Optional[DisputeResolution] = None
    resolution_amount: Optional[float] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    transaction_ids: List[str] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_unresolved(self) -> bool:
        return self.status != DisputeStatus.RESOLVED

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'milestone_id': self.milestone_id,
            'initiated_by': self.initiated_by,
            'dispute_type': self.dispute_type.value,
            'reason': self.reason,
            'description': self.description,
            'evidence': list(self.evidence),
            'status': self.status.value,
            'resolution': self.resolution.value if self.resolution else None,
            'resolution_amount': self.resolution_amount,
            'resolution_notes': self.resolution_notes,
            'resolved_by': self.resolved_by,
            'resolved_at': _iso(self.resolved_at),
            'escalated_at': _iso(self.escalated_at),
            'transaction_ids': list(self.transaction_ids),
            'created_at': _iso(self.created_at),
        }


@dataclass
class InsuranceClaim:
    """Claim against the insurance pool backing a protected escrow."""
    id: str
    account_id: str
    claimant_id: str
    claim_type: InsuranceClaimType
    claim_amount: float
    description: str = ""
    evidence: List[str] = field(default_factory=list)
    status: InsuranceClaimStatus = InsuranceClaimStatus.SUBMITTED
    approved_amount: Optional[float] = None
    review_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'claimant_id': self.claimant_id,
            'claim_type': self.claim_type.value,
            'claim_amount': self.claim_amount,
            'description': self.description,
            'evidence': list(self.evidence),
            'status': self.status.value,
            'approved_amount': self.approved_amount,
            'review_notes': self.review_notes,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': _iso(self.reviewed_at),
            'paid_at': _iso(self.paid_at),
            'transaction_id': self.transaction_id,
            'created_at': _iso(self.created_at),
        }

# ============================================
# LEDGER FOLDS
# ============================================

def fold_available(transactions: Iterable[EscrowTransaction]) -> float:
    """Available balance as a pure fold over completed transactions.

    Deposits add; releases, refunds and fees subtract. Insurance payouts come
    from the insurance pool and do not touch the escrow balance.
    """
    balance = 0.0
    for txn in transactions:
        if txn.status != TransactionStatus.COMPLETED:
            continue
        if txn.transaction_type == TransactionType.DEPOSIT:
            balance += txn.amount
        elif txn.transaction_type in OUTFLOW_TYPES:
            balance -= txn.amount
    return to_money(balance)


def in_flight_outflows(transactions: Iterable[EscrowTransaction]) -> float:
    return to_money(sum(
        t.amount for t in transactions
        if t.is_in_flight and t.transaction_type in OUTFLOW_TYPES
    ))


def completed_total(transactions: Iterable[EscrowTransaction], transaction_type: TransactionType) -> float:
    return to_money(sum(
        t.amount for t in transactions
        if t.status == TransactionStatus.COMPLETED and t.transaction_type == transaction_type
    ))
