"""
WorkWise Escrow (WWE) - Dispute & Insurance Workflow
Version: 1.0.0

Disputes:   open -> investigating -> mediation -> resolved | escalated
            escalated -> resolved

Resolving a dispute emits the transaction its resolution calls for, in the
same unit of work as the status change:

    client_favor      refund the milestone amount to the client
    freelancer_favor  approve the milestone and release it
    partial_refund    refund resolution_amount
    full_refund       refund resolution_amount (default: the milestone amount)
    no_action         no transaction; the milestone reverts to approved

Insurance claims:   submitted -> reviewing -> investigating -> approved -> paid
                                           \\-> approved        \\-> denied
"""

from datetime import datetime
from typing import Dict, List, Optional, Set
import copy

from wwe_enforcement_v1 import (
    EscrowPolicy,
    MONEY_EPSILON,
    ValidationError,
    logger
)
from wwe_escrow_models_v1 import (
    AccountStatus,
    MilestoneStatus,
    TransactionStatus,
    TransactionType,
    DisputeCase,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    InsuranceClaim,
    InsuranceClaimStatus,
    InsuranceClaimType,
    new_id,
    to_money
)
from wwe_storage_v1 import AccountWorkspace, EscrowStorage
from wwe_escrow_ledger_v1 import LedgerService
from wwe_transaction_processor_v1 import TransactionProcessor
from wwe_milestone_service_v1 import MilestoneService
from wwe_metrics import record_dispute_event, record_claim_status

DISPUTE_TRANSITIONS: Dict[DisputeStatus, Set[DisputeStatus]] = {
    DisputeStatus.OPEN: {DisputeStatus.INVESTIGATING},
    DisputeStatus.INVESTIGATING: {DisputeStatus.MEDIATION},
    DisputeStatus.MEDIATION: {DisputeStatus.RESOLVED, DisputeStatus.ESCALATED},
    DisputeStatus.ESCALATED: {DisputeStatus.RESOLVED},
    DisputeStatus.RESOLVED: set(),
}

CLAIM_TRANSITIONS: Dict[InsuranceClaimStatus, Set[InsuranceClaimStatus]] = {
    InsuranceClaimStatus.SUBMITTED: {InsuranceClaimStatus.REVIEWING},
    InsuranceClaimStatus.REVIEWING: {InsuranceClaimStatus.INVESTIGATING, InsuranceClaimStatus.APPROVED, InsuranceClaimStatus.DENIED},
    InsuranceClaimStatus.INVESTIGATING: {InsuranceClaimStatus.APPROVED, InsuranceClaimStatus.DENIED},
    InsuranceClaimStatus.APPROVED: {InsuranceClaimStatus.PAID},
    InsuranceClaimStatus.DENIED: set(),
    InsuranceClaimStatus.PAID: set(),
}


class DisputeService:
    """Dispute cases and insurance claims for escrow accounts."""

    def __init__(
        self,
        storage: EscrowStorage,
        ledger: LedgerService,
        processor: TransactionProcessor,
        milestones: MilestoneService,
        policy: EscrowPolicy
    ):
        self.storage = storage
        self.ledger = ledger
        self.processor = processor
        self.milestones = milestones
        self.policy = policy

    # ============================================
    # DISPUTES
    # ============================================

    def open_dispute(
        self,
        account_id: str,
        initiated_by: str,
        dispute_type: DisputeType,
        reason: str,
        milestone_id: Optional[str] = None,
        description: str = "",
        evidence: Optional[List[str]] = None
    ) -> DisputeCase:
        """Open a dispute. A milestone dispute freezes that milestone at once.

        Disputes on escrows above the high-value threshold freeze the whole account.
        """
        if not reason or not reason.strip():
            raise ValidationError("a dispute needs a reason")

        with self.ledger.guarded_unit_of_work(account_id) as ws:
            account = ws.account
            if initiated_by not in (account.client_id, account.freelancer_id):
                raise ValidationError("only the client or the freelancer can open a dispute")
            if account.status in (AccountStatus.PENDING, AccountStatus.CANCELLED):
                raise ValidationError(f"Escrow {account_id} is {account.status.value}; nothing to dispute")

            dispute = DisputeCase(
                id=new_id("DSP"),
                account_id=account_id,
                initiated_by=initiated_by,
                dispute_type=dispute_type,
                reason=reason.strip(),
                milestone_id=milestone_id,
                description=description,
                evidence=list(evidence or []),
            )

            if milestone_id is not None:
                milestone = ws.milestone(milestone_id)
                if ws.unresolved_disputes(milestone_id=milestone_id):
                    raise ValidationError(f"Milestone {milestone_id} already has an open dispute")
                self._hold_pending_release(ws, milestone_id, initiated_by)
                self.milestones.mark_disputed(ws, milestone, initiated_by)
            elif ws.unresolved_disputes(account_level=True):
                raise ValidationError(f"Escrow {account_id} already has an open account dispute")
            else:
                self._cancel_pending_releases(ws, initiated_by)

            dispute.history.append(self._history_entry(None, DisputeStatus.OPEN, initiated_by, reason))
            ws.add_dispute(dispute)
            ws.emit("dispute_cases", dispute.id, "opened", actor_id=initiated_by, after=dispute.to_dict())

            if account.total_amount > self.policy.high_value_dispute_threshold:
                self.ledger.freeze_in(ws, "High-value dispute initiated", "dispute_service")
            result = copy.deepcopy(dispute)

        record_dispute_event("opened")
        logger.info(f"[DISPUTE] {result.id} opened on {account_id} (milestone={milestone_id}) by {initiated_by}: {dispute_type.value}")
        return result

    def _hold_pending_release(self, workspace: AccountWorkspace, milestone_id: str, actor_id: str):
        for txn in workspace.transactions:
            if txn.transaction_type != TransactionType.RELEASE or txn.milestone_id != milestone_id:
                continue
            if txn.status == TransactionStatus.PROCESSING:
                raise ValidationError(
                    f"Release {txn.id} for milestone {milestone_id} is already with the payment rail"
                )
            if txn.status == TransactionStatus.PENDING:
                self.processor.cancel_in(workspace, txn, actor_id)

    def _cancel_pending_releases(self, workspace: AccountWorkspace, actor_id: str):
        """Account disputes stop releases that have not reached the rail yet."""
        for txn in workspace.transactions:
            if txn.transaction_type == TransactionType.RELEASE and txn.status == TransactionStatus.PENDING:
                self.processor.cancel_in(workspace, txn, actor_id)

    @staticmethod
    def _history_entry(from_status: Optional[DisputeStatus], to_status: DisputeStatus, actor_id: str, notes: Optional[str]) -> Dict:
        return {
            'from': from_status.value if from_status else None,
            'to': to_status.value,
            'actor_id': actor_id,
            'notes': notes,
            'at': datetime.now().isoformat(),
        }

    def _move(self, workspace: AccountWorkspace, dispute: DisputeCase, target: DisputeStatus, actor_id: str, notes: Optional[str] = None):
        current = dispute.status
        if target not in DISPUTE_TRANSITIONS[current]:
            raise ValidationError(f"Dispute {dispute.id} cannot move from {current.value} to {target.value}")
        before = dispute.to_dict()
        dispute.status = target
        dispute.history.append(self._history_entry(current, target, actor_id, notes))
        if target == DisputeStatus.ESCALATED:
            dispute.escalated_at = datetime.now()
        workspace.emit("dispute_cases", dispute.id, target.value, actor_id=actor_id, before=before, after=dispute.to_dict())
        record_dispute_event(target.value)
        logger.info(f"[DISPUTE] {dispute.id}: {current.value} -> {target.value} ({actor_id})")

    def advance_dispute(self, dispute_id: str, status: DisputeStatus, actor_id: str, notes: Optional[str] = None) -> DisputeCase:
        """Move a dispute along its workflow. Use resolve_dispute to resolve."""
        if status == DisputeStatus.RESOLVED:
            raise ValidationError("use resolve_dispute to resolve a dispute")
        account_id = self.storage.account_id_for(dispute_id)
        with self.storage.unit_of_work(account_id) as ws:
            dispute = ws.dispute(dispute_id)
            self._move(ws, dispute, status, actor_id, notes)
            result = copy.deepcopy(dispute)
        return result

    def resolve_dispute(
        self,
        dispute_id: str,
        resolution: DisputeResolution,
        actor_id: str,
        resolution_amount: Optional[float] = None,
        notes: Optional[str] = None
    ) -> DisputeCase:
        """Resolve and emit the resolution's transaction atomically."""
        account_id = self.storage.account_id_for(dispute_id)
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            dispute = ws.dispute(dispute_id)
            if dispute.status not in (DisputeStatus.MEDIATION, DisputeStatus.ESCALATED):
                raise ValidationError(
                    f"Dispute {dispute_id} is {dispute.status.value}; only disputes in mediation or escalated can be resolved"
                )
            if resolution_amount is not None and to_money(resolution_amount) <= 0:
                raise ValidationError("resolution_amount must be positive")

            if dispute.milestone_id is not None:
                transaction_ids = self._resolve_milestone(ws, dispute, resolution, actor_id, resolution_amount)
            else:
                transaction_ids = self._resolve_account(ws, dispute, resolution, actor_id, resolution_amount)

            dispute.transaction_ids.extend(transaction_ids)
            dispute.resolution = resolution
            dispute.resolution_notes = notes
            dispute.resolved_by = actor_id
            dispute.resolved_at = datetime.now()
            self._move(ws, dispute, DisputeStatus.RESOLVED, actor_id, notes)
            result = copy.deepcopy(dispute)

        for transaction_id in transaction_ids:
            self.processor.submit(account_id, transaction_id)
        self.processor.maybe_close(account_id)

        logger.info(
            f"[DISPUTE] {dispute_id} resolved: {resolution.value}"
            f"{f' ${result.resolution_amount:,.2f}' if result.resolution_amount else ''}, "
            f"{len(transaction_ids)} transaction(s)"
        )
        return self.get_dispute(dispute_id)

    def _resolve_milestone(self, ws: AccountWorkspace, dispute: DisputeCase, resolution: DisputeResolution,
                           actor_id: str, resolution_amount: Optional[float]) -> List[str]:
        milestone = ws.milestone(dispute.milestone_id)
        if milestone.status != MilestoneStatus.DISPUTED:
            raise ValidationError(f"Milestone {milestone.id} is {milestone.status.value}, expected disputed")
        milestone.resolution = resolution

        if resolution in (DisputeResolution.FREELANCER_FAVOR, DisputeResolution.NO_ACTION):
            self.milestones.approve_after_dispute(ws, milestone, actor_id)
            if resolution == DisputeResolution.NO_ACTION:
                return []
            if ws.unresolved_disputes(account_level=True):
                logger.info(f"[DISPUTE] Release of {milestone.id} deferred until the account dispute resolves")
                return []
            txn = self.processor.create_transaction(
                ws, TransactionType.RELEASE, milestone.amount, actor_id=actor_id,
                milestone_id=milestone.id, dispute_id=dispute.id,
                description=f"Release for milestone '{milestone.title}' after dispute"
            )
            dispute.resolution_amount = milestone.amount
            return [txn.id]

        if resolution == DisputeResolution.CLIENT_FAVOR:
            amount = milestone.amount
        elif resolution == DisputeResolution.FULL_REFUND:
            amount = to_money(resolution_amount) if resolution_amount is not None else milestone.amount
        else:
            if resolution_amount is None:
                raise ValidationError("partial_refund requires resolution_amount")
            amount = to_money(resolution_amount)

        if amount > milestone.amount + MONEY_EPSILON:
            raise ValidationError(f"Refund {amount:.2f} exceeds milestone amount {milestone.amount:.2f}")

        txn = self.processor.create_transaction(
            ws, TransactionType.REFUND, amount, actor_id=actor_id,
            milestone_id=milestone.id, dispute_id=dispute.id,
            description=f"Dispute {dispute.id} resolved: {resolution.value}"
        )
        dispute.resolution_amount = amount
        ws.emit("escrow_milestones", milestone.id, "resolution_recorded", actor_id=actor_id, after=milestone.to_dict())
        return [txn.id]

    def _resolve_account(self, ws: AccountWorkspace, dispute: DisputeCase, resolution: DisputeResolution,
                         actor_id: str, resolution_amount: Optional[float]) -> List[str]:
        if resolution == DisputeResolution.NO_ACTION:
            return []

        if resolution == DisputeResolution.FREELANCER_FAVOR:
            transaction_ids = []
            payable = (MilestoneStatus.COMPLETED, MilestoneStatus.APPROVED, MilestoneStatus.DISPUTED)
            for milestone in ws.milestones:
                if milestone.status not in payable or milestone.is_closed:
                    continue
                if any(t.is_in_flight for t in ws.transactions
                       if t.transaction_type == TransactionType.RELEASE and t.milestone_id == milestone.id):
                    continue
                if ws.unresolved_disputes(milestone_id=milestone.id):
                    continue
                if milestone.status != MilestoneStatus.APPROVED:
                    self.milestones.approve_after_dispute(ws, milestone, actor_id)
                transaction_ids.append(self.processor.create_transaction(
                    ws, TransactionType.RELEASE, milestone.amount, actor_id=actor_id,
                    milestone_id=milestone.id, dispute_id=dispute.id,
                    description=f"Release for milestone '{milestone.title}' after account dispute"
                ).id)
            dispute.resolution_amount = to_money(sum(
                ws.transaction(t).amount for t in transaction_ids
            )) if transaction_ids else None
            return transaction_ids

        refundable = to_money(ws.spendable() - self.processor.unpaid_fee(ws))
        if resolution == DisputeResolution.PARTIAL_REFUND:
            if resolution_amount is None:
                raise ValidationError("partial_refund requires resolution_amount")
            amount = to_money(resolution_amount)
        elif resolution_amount is not None:
            amount = to_money(resolution_amount)
        else:
            amount = refundable

        if amount > refundable + MONEY_EPSILON:
            raise ValidationError(f"Refund {amount:.2f} exceeds refundable balance {refundable:.2f}")
        if amount <= MONEY_EPSILON:
            dispute.resolution_amount = 0.0
            return []

        txn = self.processor.create_transaction(
            ws, TransactionType.REFUND, amount, actor_id=actor_id, dispute_id=dispute.id,
            description=f"Dispute {dispute.id} resolved: {resolution.value}"
        )
        dispute.resolution_amount = amount
        return [txn.id]

    def get_dispute(self, dispute_id: str) -> DisputeCase:
        record = self.storage.snapshot(self.storage.account_id_for(dispute_id))
        return record.disputes[dispute_id]

    # ============================================
    # INSURANCE CLAIMS
    # ============================================

    def file_claim(
        self,
        account_id: str,
        claimant_id: str,
        claim_type: InsuranceClaimType,
        claim_amount: float,
        description: str = "",
        evidence: Optional[List[str]] = None
    ) -> InsuranceClaim:
        """File a claim; capped at the escrow total. Needs fraud insurance."""
        if claim_amount is None or to_money(claim_amount) <= 0:
            raise ValidationError("claim_amount must be positive")

        with self.storage.unit_of_work(account_id) as ws:
            account = ws.account
            if not account.fraud_insurance:
                raise ValidationError(f"Escrow {account_id} does not carry fraud insurance")
            if claimant_id not in (account.client_id, account.freelancer_id):
                raise ValidationError("only a party to the escrow can file a claim")
            if account.status in (AccountStatus.PENDING, AccountStatus.CANCELLED):
                raise ValidationError(f"Escrow {account_id} is {account.status.value}; claims need a funded escrow")

            claim = InsuranceClaim(
                id=new_id("CLM"),
                account_id=account_id,
                claimant_id=claimant_id,
                claim_type=claim_type,
                claim_amount=min(to_money(claim_amount), account.total_amount),
                description=description,
                evidence=list(evidence or []),
            )
            ws.add_claim(claim)
            ws.emit("insurance_claims", claim.id, "submitted", actor_id=claimant_id, after=claim.to_dict())
            result = copy.deepcopy(claim)

        record_claim_status(result.status.value)
        logger.info(f"[INSURANCE] {result.id} filed on {account_id}: {claim_type.value} ${result.claim_amount:,.2f}")
        return result

    def _move_claim(self, claim_id: str, target: InsuranceClaimStatus, reviewer_id: str,
                    notes: Optional[str] = None, approved_amount: Optional[float] = None) -> InsuranceClaim:
        account_id = self.storage.account_id_for(claim_id)
        with self.storage.unit_of_work(account_id) as ws:
            claim = ws.claim(claim_id)
            current = claim.status
            if target not in CLAIM_TRANSITIONS[current]:
                raise ValidationError(f"Claim {claim_id} cannot move from {current.value} to {target.value}")

            before = claim.to_dict()
            claim.status = target
            claim.reviewed_by = reviewer_id
            claim.reviewed_at = datetime.now()
            if notes:
                claim.review_notes = notes
            if target == InsuranceClaimStatus.APPROVED:
                claim.approved_amount = self._approved_amount(ws, claim, approved_amount)
            ws.emit("insurance_claims", claim.id, target.value, actor_id=reviewer_id, before=before, after=claim.to_dict())
            result = copy.deepcopy(claim)

        record_claim_status(target.value)
        logger.info(f"[INSURANCE] {claim_id}: {current.value} -> {target.value} ({reviewer_id})")
        return result

    @staticmethod
    def _approved_amount(ws: AccountWorkspace, claim: InsuranceClaim, requested: Optional[float]) -> float:
        coverage = ws.account.terms.insurance_coverage_percent / 100.0
        cap = to_money(claim.claim_amount * coverage)
        if requested is None:
            return cap
        requested = to_money(requested)
        if requested <= 0:
            raise ValidationError("approved_amount must be positive")
        return min(requested, cap)

    def review_claim(self, claim_id: str, reviewer_id: str, notes: Optional[str] = None) -> InsuranceClaim:
        return self._move_claim(claim_id, InsuranceClaimStatus.REVIEWING, reviewer_id, notes)

    def investigate_claim(self, claim_id: str, reviewer_id: str, notes: Optional[str] = None) -> InsuranceClaim:
        return self._move_claim(claim_id, InsuranceClaimStatus.INVESTIGATING, reviewer_id, notes)

    def approve_claim(self, claim_id: str, reviewer_id: str, approved_amount: Optional[float] = None,
                      notes: Optional[str] = None) -> InsuranceClaim:
        return self._move_claim(claim_id, InsuranceClaimStatus.APPROVED, reviewer_id, notes, approved_amount)

    def deny_claim(self, claim_id: str, reviewer_id: str, notes: str) -> InsuranceClaim:
        if not notes or not notes.strip():
            raise ValidationError("denying a claim requires notes")
        return self._move_claim(claim_id, InsuranceClaimStatus.DENIED, reviewer_id, notes)

    def pay_claim(self, claim_id: str, actor_id: str) -> InsuranceClaim:
        """Emit the insurance_claim transaction; the claim is paid once it completes."""
        self.processor.pay_insurance_claim(claim_id, actor_id)
        record = self.storage.snapshot(self.storage.account_id_for(claim_id))
        return record.claims[claim_id]
