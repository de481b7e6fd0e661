"""
WorkWise Escrow (WWE) - Platform Orchestrator
Version: 1.0.0

Wires storage, ledger, payment rail, milestone, dispute and fraud services
together and exposes the operations the HTTP layer calls. Scheduled work
(auto-approval, rail retries, confirmation timeouts, reconciliation, fraud
scoring) runs through run_scheduled_jobs.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from wwe_enforcement_v1 import (
    DecisionLedger,
    EscrowPolicy,
    OperatorAlertSink,
    EscrowError,
    ValidationError,
    logger
)
from wwe_escrow_models_v1 import (
    MilestoneStatus,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    InsuranceClaimType,
    EscrowMilestone,
    EscrowTransaction,
    DisputeCase,
    InsuranceClaim
)
from wwe_audit_log_v1 import AuditLog, EventBus
from wwe_storage_v1 import AccountRecord, EscrowStorage
from wwe_payment_rail_v1 import PaymentRail, SimulatedPaymentRail
from wwe_escrow_ledger_v1 import LedgerService
from wwe_transaction_processor_v1 import TransactionProcessor
from wwe_milestone_service_v1 import MilestoneService
from wwe_dispute_service_v1 import DisputeService
from wwe_fraud_scoring_v1 import FraudDetectionEngine, FraudPipeline, FraudDetectionRule
from wwe_metrics import update_audit_integrity


class EscrowPlatform:
    """Orchestrates the complete escrow flow."""

    def __init__(
        self,
        policy: Optional[EscrowPolicy] = None,
        rail: Optional[PaymentRail] = None,
        fraud_rules: Optional[List[FraudDetectionRule]] = None
    ):
        self.policy = policy or EscrowPolicy.from_env()
        self.bus = EventBus()
        self.audit_log = AuditLog()
        self.bus.subscribe(self.audit_log.on_event)

        self.storage = EscrowStorage(self.policy, self.bus)
        self.alerts = OperatorAlertSink()
        self.decision_ledger = DecisionLedger()
        self.rail = rail or SimulatedPaymentRail()

        self.ledger = LedgerService(self.storage, self.policy, self.alerts)
        self.processor = TransactionProcessor(
            self.storage,
            self.ledger,
            self.rail,
            self.policy,
            self.alerts,
            self.decision_ledger
        )
        self.ledger.bind_processor(self.processor)
        self.milestones = MilestoneService(self.storage, self.ledger, self.policy)
        self.disputes = DisputeService(self.storage, self.ledger, self.processor, self.milestones, self.policy)

        self.fraud = FraudDetectionEngine(self.storage, self.ledger, self.policy, rules=fraud_rules)
        self.fraud_pipeline = FraudPipeline(self.fraud, self.storage)
        self.bus.subscribe(self.fraud_pipeline.on_event)

        logger.info("[PLATFORM] WorkWise escrow core initialized")

    # ============================================
    # ACCOUNTS
    # ============================================

    def create_escrow(self, project_id: str, client_id: str, freelancer_id: str, total_amount: float,
                      milestones: Optional[List[Dict[str, Any]]] = None, **options) -> AccountRecord:
        return self.ledger.create_account(
            project_id=project_id,
            client_id=client_id,
            freelancer_id=freelancer_id,
            total_amount=total_amount,
            milestones=milestones,
            **options
        )

    def fund(self, account_id: str, amount: float, actor_id: Optional[str] = None) -> EscrowTransaction:
        return self.ledger.fund(account_id, amount, actor_id)

    def get_account(self, account_id: str) -> AccountRecord:
        return self.storage.snapshot(account_id)

    def account_for_entity(self, entity_id: str) -> AccountRecord:
        return self.storage.snapshot(self.storage.account_id_for(entity_id))

    def settle_account(self, account_id: str, actor_id: str):
        return self.ledger.settle_account(account_id, actor_id)

    def cancel_account(self, account_id: str, actor_id: str):
        return self.ledger.cancel_account(account_id, actor_id)

    def unfreeze_account(self, account_id: str, actor_id: str):
        return self.ledger.unfreeze_account(account_id, actor_id)

    def reconcile_account(self, account_id: str, actor_id: str, notes: str):
        return self.ledger.apply_manual_reconciliation(account_id, actor_id, notes)

    # ============================================
    # MILESTONES
    # ============================================

    def start_milestone(self, milestone_id: str, actor_id: str) -> EscrowMilestone:
        return self.milestones.start(milestone_id, actor_id)

    def submit_milestone(self, milestone_id: str, actor_id: str, deliverables: List[str],
                         notes: Optional[str] = None) -> EscrowMilestone:
        return self.milestones.submit(milestone_id, actor_id, deliverables, notes)

    def approve_milestone(self, milestone_id: str, actor_id: str) -> EscrowMilestone:
        """Approve and, once fully approved, release the milestone payment."""
        milestone = self.milestones.approve(milestone_id, actor_id)
        if milestone.status == MilestoneStatus.APPROVED:
            self.processor.release(milestone_id, actor_id=actor_id)
        return self.account_for_entity(milestone_id).milestones[milestone_id]

    def release_milestone(self, milestone_id: str, actor_id: str = "system",
                          amount: Optional[float] = None) -> EscrowTransaction:
        return self.processor.release(milestone_id, actor_id=actor_id, amount=amount)

    # ============================================
    # TRANSACTIONS
    # ============================================

    def refund(self, account_id: str, amount: float, reason: str, actor_id: str) -> EscrowTransaction:
        return self.processor.refund(account_id, amount, reason, actor_id)

    def handle_rail_webhook(self, payment_intent_id: str, succeeded: bool,
                            reason: Optional[str] = None) -> EscrowTransaction:
        return self.processor.handle_rail_confirmation(payment_intent_id, succeeded, reason)

    def cancel_transaction(self, transaction_id: str, actor_id: str) -> EscrowTransaction:
        return self.processor.cancel_transaction(transaction_id, actor_id)

    # ============================================
    # DISPUTES & INSURANCE
    # ============================================

    def open_dispute(self, account_id: str, initiated_by: str, dispute_type: DisputeType, reason: str,
                     milestone_id: Optional[str] = None, description: str = "",
                     evidence: Optional[List[str]] = None) -> DisputeCase:
        return self.disputes.open_dispute(account_id, initiated_by, dispute_type, reason,
                                          milestone_id=milestone_id, description=description, evidence=evidence)

    def advance_dispute(self, dispute_id: str, status: DisputeStatus, actor_id: str,
                        notes: Optional[str] = None) -> DisputeCase:
        return self.disputes.advance_dispute(dispute_id, status, actor_id, notes)

    def resolve_dispute(self, dispute_id: str, resolution: DisputeResolution, actor_id: str,
                        resolution_amount: Optional[float] = None, notes: Optional[str] = None) -> DisputeCase:
        return self.disputes.resolve_dispute(dispute_id, resolution, actor_id, resolution_amount, notes)

    def file_insurance_claim(self, account_id: str, claimant_id: str, claim_type: InsuranceClaimType,
                             claim_amount: float, description: str = "",
                             evidence: Optional[List[str]] = None) -> InsuranceClaim:
        return self.disputes.file_claim(account_id, claimant_id, claim_type, claim_amount, description, evidence)

    def review_claim(self, claim_id: str, reviewer_id: str, notes: Optional[str] = None) -> InsuranceClaim:
        return self.disputes.review_claim(claim_id, reviewer_id, notes)

    def investigate_claim(self, claim_id: str, reviewer_id: str, notes: Optional[str] = None) -> InsuranceClaim:
        return self.disputes.investigate_claim(claim_id, reviewer_id, notes)

    def approve_claim(self, claim_id: str, reviewer_id: str, approved_amount: Optional[float] = None,
                      notes: Optional[str] = None) -> InsuranceClaim:
        return self.disputes.approve_claim(claim_id, reviewer_id, approved_amount, notes)

    def deny_claim(self, claim_id: str, reviewer_id: str, notes: str) -> InsuranceClaim:
        return self.disputes.deny_claim(claim_id, reviewer_id, notes)

    def pay_claim(self, claim_id: str, actor_id: str) -> InsuranceClaim:
        return self.disputes.pay_claim(claim_id, actor_id)

    # ============================================
    # SCHEDULED JOBS
    # ============================================

    def release_approved(self) -> List[EscrowTransaction]:
        """Release approved milestones that have no release yet."""
        released = []
        for record in self.storage.snapshots():
            if record.account.is_frozen:
                continue
            if any(d.is_unresolved and d.milestone_id is None for d in record.disputes.values()):
                continue
            for milestone in record.ordered_milestones():
                if milestone.status != MilestoneStatus.APPROVED:
                    continue
                try:
                    released.append(self.processor.release(milestone.id, actor_id="scheduler"))
                except EscrowError as e:
                    logger.error(f"[PLATFORM] Release of {milestone.id} failed: {e}")
        return released

    def run_scheduled_jobs(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One pass of every periodic job."""
        now = now or datetime.now()
        approved = self.milestones.process_auto_approvals(now)
        released = self.release_approved()
        retried = self.processor.process_retries(now)
        expired = self.processor.expire_stale(now)
        escalated = self.processor.escalate_held(now)
        halted = self.ledger.reconcile_all()
        assessments = self.fraud_pipeline.drain()
        audit_intact = self.audit_log.verify_chain()
        update_audit_integrity(audit_intact)
        if not audit_intact:
            logger.critical("[PLATFORM] Audit chain verification failed")

        summary = {
            'auto_approved': len(approved),
            'released': len(released),
            'retried': len(retried),
            'expired': len(expired),
            'held_escalated': len(escalated),
            'halted_accounts': halted,
            'fraud_assessments': len(assessments),
            'audit_chain_intact': audit_intact,
        }
        logger.info(f"[PLATFORM] Scheduled jobs: {summary}")
        return summary

    # ============================================
    # HEALTH
    # ============================================

    def get_system_health(self) -> Dict:
        records = self.storage.snapshots()
        total_checks = len(self.decision_ledger.entries)
        failed_checks = len(self.decision_ledger.failures())
        return {
            'total_accounts': len(records),
            'frozen_accounts': sum(1 for r in records if r.account.is_frozen),
            'total_transactions': sum(len(r.transactions) for r in records),
            'total_invariant_checks': total_checks,
            'failed_checks': failed_checks,
            'health_score': self.decision_ledger.pass_rate(),
            'decision_integrity': self.decision_ledger.verify_chain_integrity(),
            'audit_entries': len(self.audit_log),
            'audit_chain_intact': self.audit_log.verify_chain(),
            'operator_alerts': len(self.alerts.all_alerts()),
            'active_fraud_alerts': len(self.fraud.active_alerts()),
            'rail_status': self.rail.health_check() if hasattr(self.rail, "health_check") else None,
            'fraud_pipeline_running': self.fraud_pipeline.running,
        }

# ============================================
# COMPLETE DEMONSTRATION
# ============================================

def demonstrate_escrow_flow():
    """Walk one escrow from funding to close-out, with a dispute on the way."""
    platform = EscrowPlatform(EscrowPolicy())

    print("\n" + "="*80)
    print("WORKWISE ESCROW FLOW")
    print("="*80)

    record = platform.create_escrow(
        project_id="PRJ-001",
        client_id="EMP-001",
        freelancer_id="GW-001",
        total_amount=1000.00,
        milestones=[
            {'title': "Design", 'amount': 500.00},
            {'title': "Build", 'amount': 450.00},
        ],
        risk_score=0.2,
    )
    account_id = record.account.id
    design, build = [m.id for m in record.ordered_milestones()]
    print(f"\nEscrow {account_id}: total $1,000.00, fee ${record.account.platform_fee:,.2f}")

    platform.fund(account_id, 1000.00)
    print(f"Funded: status {platform.get_account(account_id).account.status.value}")

    platform.start_milestone(design, "GW-001")
    platform.submit_milestone(design, "GW-001", ["wireframes.pdf"])
    platform.approve_milestone(design, "EMP-001")
    account = platform.get_account(account_id).account
    print(f"Design released: available ${account.available_amount:,.2f}")

    platform.start_milestone(build, "GW-001")
    platform.submit_milestone(build, "GW-001", ["build.zip"])
    dispute = platform.open_dispute(account_id, "EMP-001", DisputeType.QUALITY, "Build is incomplete", milestone_id=build)
    platform.advance_dispute(dispute.id, DisputeStatus.INVESTIGATING, "ADMIN-1")
    platform.advance_dispute(dispute.id, DisputeStatus.MEDIATION, "ADMIN-1")
    platform.resolve_dispute(dispute.id, DisputeResolution.CLIENT_FAVOR, "ADMIN-1")

    account = platform.get_account(account_id).account
    print(f"Dispute resolved for the client: status {account.status.value}, available ${account.available_amount:,.2f}")

    summary = platform.run_scheduled_jobs(datetime.now() + timedelta(hours=1))
    print(f"Scheduled jobs: {summary}")

    health = platform.get_system_health()
    print("\n" + "="*80)
    print("SYSTEM HEALTH REPORT")
    print("="*80)
    print(f"  Invariant checks: {health['total_invariant_checks']} ({health['failed_checks']} failed)")
    print(f"  Audit entries: {health['audit_entries']} (chain {'intact' if health['audit_chain_intact'] else 'BROKEN'})")
    print(f"  Operator alerts: {health['operator_alerts']}")
    print("="*80 + "\n")


if __name__ == "__main__":
    demonstrate_escrow_flow()
