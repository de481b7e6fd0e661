"""
WorkWise Escrow (WWE) - Transaction Processor
Version: 1.0.0

Records money movement against escrow accounts and drives it through the
payment rail:

    pending -> processing -> completed | failed
    pending -> cancelled
    processing -> pending   (transient rail error, retry scheduled)

A transaction is created and marked `processing` under the account lock; the
rail is called outside the lock; the outcome is applied under the lock again.
The balance only changes when a transaction completes, inside the completion
invariants, so available_amount is always the fold of completed transactions.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import copy
import time

from wwe_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    EscrowPolicy,
    OperatorAlertSink,
    MONEY_EPSILON,
    EscrowError,
    ValidationError,
    ExternalRailError,
    EntityNotFound,
    logger
)
from wwe_escrow_models_v1 import (
    AccountStatus,
    MilestoneStatus,
    TransactionStatus,
    TransactionType,
    InsuranceClaimStatus,
    EscrowTransaction,
    OUTFLOW_TYPES,
    completed_total,
    new_id,
    to_money
)
from wwe_storage_v1 import AccountWorkspace, EscrowStorage
from wwe_escrow_ledger_v1 import LedgerService, transaction_invariants, completion_invariants
from wwe_payment_rail_v1 import (
    PaymentRail,
    RailReceipt,
    RailStatus,
    RetryPolicy,
    new_payment_reference
)
from wwe_metrics import (
    record_transaction,
    record_rail_call,
    record_rail_retry,
    record_milestone_transition,
    record_claim_status
)

ENTITY = "escrow_transactions"
PLATFORM_REVENUE_ACCOUNT = "platform_revenue"


class TransactionProcessor:
    """Creates, submits and settles escrow transactions."""

    def __init__(
        self,
        storage: EscrowStorage,
        ledger: LedgerService,
        rail: PaymentRail,
        policy: EscrowPolicy,
        alerts: OperatorAlertSink,
        decision_ledger: DecisionLedger
    ):
        self.storage = storage
        self.ledger = ledger
        self.rail = rail
        self.policy = policy
        self.alerts = alerts
        self.retry_policy = RetryPolicy.from_policy(policy)
        self.creation_enforcer = InvariantEnforcer(transaction_invariants(), decision_ledger)
        self.completion_enforcer = InvariantEnforcer(completion_invariants(), decision_ledger)

        logger.info(f"[PROCESSOR] Initialized on rail '{rail.name}' (max {self.retry_policy.max_attempts} attempts)")

    # ============================================
    # CREATION
    # ============================================

    def create_transaction(
        self,
        workspace: AccountWorkspace,
        transaction_type: TransactionType,
        amount: float,
        actor_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        dispute_id: Optional[str] = None,
        claim_id: Optional[str] = None,
        description: str = ""
    ) -> EscrowTransaction:
        """Append a pending transaction inside an open unit of work."""
        return self.creation_enforcer.enforce_action(
            self._append_transaction,
            workspace=workspace,
            transaction_type=transaction_type,
            amount=to_money(amount) if amount is not None else amount,
            actor_id=actor_id,
            milestone_id=milestone_id,
            dispute_id=dispute_id,
            claim_id=claim_id,
            description=description,
        )

    def _append_transaction(self, workspace: AccountWorkspace, transaction_type: TransactionType, amount: float,
                            actor_id=None, milestone_id=None, dispute_id=None, claim_id=None, description="") -> EscrowTransaction:
        txn = EscrowTransaction(
            id=new_id("TXN"),
            account_id=workspace.account.id,
            transaction_type=transaction_type,
            amount=amount,
            milestone_id=milestone_id,
            dispute_id=dispute_id,
            claim_id=claim_id,
            description=description,
            initiated_by=actor_id,
        )
        workspace.add_transaction(txn)
        workspace.emit(ENTITY, txn.id, "created", actor_id=actor_id, after=txn.to_dict())
        record_transaction(transaction_type.value, TransactionStatus.PENDING.value, amount)
        logger.info(f"[PROCESSOR] {txn.id}: {transaction_type.value} ${amount:,.2f} pending on {workspace.account.id}")
        return txn

    def deposit(self, account_id: str, amount: float, actor_id: Optional[str] = None) -> EscrowTransaction:
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            account = ws.account
            if account.status != AccountStatus.PENDING:
                raise ValidationError(f"Escrow {account_id} is {account.status.value}, cannot fund")
            txn = self.create_transaction(
                ws, TransactionType.DEPOSIT, amount,
                actor_id=actor_id or account.client_id, description="Escrow funding"
            )
        return self.submit(account_id, txn.id)

    def release(self, milestone_id: str, actor_id: str = "system", amount: Optional[float] = None) -> EscrowTransaction:
        """Pay an approved milestone to the freelancer.

        Idempotent per milestone: once a release has completed, or while one is
        in flight, that transaction is returned and nothing new is debited.
        """
        account_id = self.storage.account_id_for(milestone_id)
        existing = None
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            milestone = ws.milestone(milestone_id)
            existing = self._existing_release(ws, milestone_id)
            if existing is None:
                if milestone.status != MilestoneStatus.APPROVED:
                    raise ValidationError(
                        f"Milestone {milestone_id} is {milestone.status.value}; only approved milestones can be released"
                    )
                if ws.unresolved_disputes(account_level=True):
                    raise ValidationError(
                        f"Escrow {account_id} has an open account dispute; release of {milestone_id} waits for its resolution",
                        code="dispute_open"
                    )
                if amount is not None and abs(to_money(amount) - milestone.amount) > self.policy.amount_tolerance:
                    raise ValidationError(
                        f"Release amount {to_money(amount):.2f} does not match milestone amount {milestone.amount:.2f}"
                    )
                txn = self.create_transaction(
                    ws, TransactionType.RELEASE, milestone.amount, actor_id=actor_id,
                    milestone_id=milestone_id, description=f"Release for milestone '{milestone.title}'"
                )
            else:
                existing = copy.deepcopy(existing)
                ws.discard()

        if existing is not None:
            logger.info(f"[PROCESSOR] Milestone {milestone_id} already has release {existing.id} ({existing.status.value}); no new debit")
            return existing
        return self.submit(account_id, txn.id)

    @staticmethod
    def _existing_release(workspace: AccountWorkspace, milestone_id: str) -> Optional[EscrowTransaction]:
        for txn in workspace.transactions:
            if (txn.transaction_type == TransactionType.RELEASE and txn.milestone_id == milestone_id
                    and (txn.status == TransactionStatus.COMPLETED or txn.is_in_flight)):
                return txn
        return None

    def refund(self, account_id: str, amount: float, reason: str, actor_id: str,
               milestone_id: Optional[str] = None, dispute_id: Optional[str] = None) -> EscrowTransaction:
        """Return escrowed funds to the client. Never adds to the balance."""
        if not reason or not reason.strip():
            raise ValidationError("refund requires a reason")
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            txn = self.create_transaction(
                ws, TransactionType.REFUND, amount, actor_id=actor_id,
                milestone_id=milestone_id, dispute_id=dispute_id, description=reason
            )
        return self.submit(account_id, txn.id)

    def unpaid_fee(self, workspace: AccountWorkspace) -> float:
        """Platform fee still to collect, capped at the spendable balance."""
        account = workspace.account
        if account.fee_collected:
            return 0.0
        collected = completed_total(workspace.transactions, TransactionType.FEE)
        in_flight = sum(t.amount for t in workspace.in_flight(TransactionType.FEE))
        due = to_money(account.platform_fee - collected - in_flight)
        return max(0.0, min(due, workspace.spendable()))

    def collect_fee(self, account_id: str, actor_id: str = "system") -> EscrowTransaction:
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            in_flight = ws.in_flight(TransactionType.FEE)
            if in_flight:
                txn = copy.deepcopy(in_flight[0])
                submit = False
            else:
                fee_due = self.unpaid_fee(ws)
                if fee_due <= MONEY_EPSILON:
                    raise ValidationError(f"Escrow {account_id} has no platform fee outstanding")
                txn = self.create_transaction(ws, TransactionType.FEE, fee_due, actor_id=actor_id, description="Platform fee")
                submit = True
        return self.submit(account_id, txn.id) if submit else txn

    def pay_insurance_claim(self, claim_id: str, actor_id: str) -> EscrowTransaction:
        """Pay an approved claim from the insurance pool."""
        account_id = self.storage.account_id_for(claim_id)
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            claim = ws.claim(claim_id)
            existing = [
                t for t in ws.transactions
                if t.claim_id == claim_id and (t.is_in_flight or t.status == TransactionStatus.COMPLETED)
            ]
            if existing:
                txn = copy.deepcopy(existing[0])
                submit = False
            else:
                if claim.status != InsuranceClaimStatus.APPROVED:
                    raise ValidationError(f"Claim {claim_id} is {claim.status.value}; only approved claims are paid")
                txn = self.create_transaction(
                    ws, TransactionType.INSURANCE_CLAIM, claim.approved_amount, actor_id=actor_id,
                    claim_id=claim_id, description=f"Insurance payout ({claim.claim_type.value})"
                )
                claim.transaction_id = txn.id
                submit = True
        return self.submit(account_id, txn.id) if submit else txn

    # ============================================
    # RAIL SUBMISSION
    # ============================================

    def submit(self, account_id: str, transaction_id: str) -> EscrowTransaction:
        """Send a pending transaction to the payment rail."""
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            txn = ws.transaction(transaction_id)
            call = None
            if txn.status != TransactionStatus.PENDING:
                logger.info(f"[PROCESSOR] {txn.id} is {txn.status.value}; submit skipped")
                ws.discard()
            elif ws.account.is_frozen and txn.transaction_type != TransactionType.INSURANCE_CLAIM:
                if txn.held_since is None:
                    self._mark_held(ws, txn, datetime.now())
                else:
                    ws.discard()
                logger.warning(f"[PROCESSOR] {txn.id} held: escrow {account_id} is frozen")
            else:
                before = txn.to_dict()
                txn.status = TransactionStatus.PROCESSING
                txn.attempts += 1
                txn.submitted_at = datetime.now()
                txn.next_retry_at = None
                txn.held_since = None
                txn.hold_escalated_at = None
                if not txn.payment_intent_id:
                    prefix = "pi" if txn.transaction_type == TransactionType.DEPOSIT else "tr"
                    txn.payment_intent_id = new_payment_reference(prefix)
                ws.emit(ENTITY, txn.id, "submitted", actor_id="system", before=before, after=txn.to_dict())
                call = (txn.transaction_type, txn.amount, txn.payment_intent_id, self._payout_account(ws, txn))
            result = copy.deepcopy(txn)

        if call is None:
            return result

        transaction_type, amount, reference, payout_account = call
        try:
            receipt = self._execute_on_rail(transaction_type, amount, reference, payout_account)
        except ExternalRailError as e:
            logger.warning(f"[PROCESSOR] {transaction_id}: rail error on attempt {result.attempts}: {e}")
            return self._schedule_retry(account_id, transaction_id, str(e))
        return self._apply_receipt(account_id, transaction_id, receipt)

    def _payout_account(self, workspace: AccountWorkspace, txn: EscrowTransaction) -> str:
        account = workspace.account
        if txn.transaction_type == TransactionType.RELEASE:
            return account.payout_account or account.freelancer_id
        if txn.transaction_type == TransactionType.REFUND:
            return account.funding_source or account.client_id
        if txn.transaction_type == TransactionType.FEE:
            return PLATFORM_REVENUE_ACCOUNT
        if txn.transaction_type == TransactionType.INSURANCE_CLAIM:
            return workspace.claim(txn.claim_id).claimant_id
        return account.funding_source or account.client_id

    def _execute_on_rail(self, transaction_type: TransactionType, amount: float, reference: str, payout_account: str) -> RailReceipt:
        operation = "transfer"
        started = time.time()
        try:
            if transaction_type == TransactionType.DEPOSIT:
                operation = "authorize"
                receipt = self.rail.authorize(amount, reference)
                if receipt.status == RailStatus.SUCCEEDED:
                    operation = "capture"
                    receipt = self.rail.capture(reference)
            else:
                receipt = self.rail.transfer(payout_account, amount, reference)
        except ExternalRailError:
            record_rail_call(operation, "error", time.time() - started)
            raise
        record_rail_call(operation, receipt.status.value, time.time() - started)
        return receipt

    def _apply_receipt(self, account_id: str, transaction_id: str, receipt: RailReceipt) -> EscrowTransaction:
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            txn = ws.transaction(transaction_id)
            if txn.status == TransactionStatus.PROCESSING:
                if receipt.status == RailStatus.SUCCEEDED:
                    self._complete(ws, txn, receipt.reference)
                elif receipt.status == RailStatus.DECLINED:
                    self._fail(ws, txn, receipt.reason or "declined")
                else:
                    logger.info(f"[PROCESSOR] {txn.id} accepted by rail; awaiting confirmation for {txn.payment_intent_id}")
            result = copy.deepcopy(txn)

        if result.status == TransactionStatus.COMPLETED:
            self.maybe_close(account_id)
        return result

    def _schedule_retry(self, account_id: str, transaction_id: str, error: str) -> EscrowTransaction:
        exhausted = False
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            txn = ws.transaction(transaction_id)
            if txn.status == TransactionStatus.PROCESSING:
                if self.retry_policy.can_retry(txn.attempts):
                    before = txn.to_dict()
                    txn.status = TransactionStatus.PENDING
                    txn.next_retry_at = self.retry_policy.next_retry_at(txn.attempts)
                    txn.failure_reason = error
                    ws.emit(ENTITY, txn.id, "retry_scheduled", actor_id="system", before=before, after=txn.to_dict())
                    record_rail_retry(txn.transaction_type.value)
                    logger.info(f"[PROCESSOR] {txn.id} retry {txn.attempts + 1}/{self.retry_policy.max_attempts} at {txn.next_retry_at.isoformat()}")
                else:
                    self._fail(ws, txn, f"rail retries exhausted after {txn.attempts} attempts: {error}")
                    exhausted = True
            result = copy.deepcopy(txn)

        if exhausted:
            self.alerts.raise_alert(
                category="rail_retries_exhausted",
                message=f"{result.transaction_type.value} {result.id} failed after {result.attempts} attempts: {error}",
                account_id=account_id,
                reference_id=result.id,
            )
        return result

    # ============================================
    # SETTLEMENT OF OUTCOMES
    # ============================================

    def _complete(self, workspace: AccountWorkspace, txn: EscrowTransaction, transfer_id: Optional[str] = None):
        self.completion_enforcer.enforce_action(
            self._apply_completion,
            workspace=workspace,
            transaction=txn,
            transfer_id=transfer_id,
        )

    def _apply_completion(self, workspace: AccountWorkspace, transaction: EscrowTransaction, transfer_id: Optional[str] = None) -> EscrowTransaction:
        txn = transaction
        account = workspace.account
        now = datetime.now()

        before = txn.to_dict()
        txn.status = TransactionStatus.COMPLETED
        txn.processed_at = now
        txn.transfer_id = transfer_id
        txn.failure_reason = None
        workspace.emit(ENTITY, txn.id, "completed", actor_id="payment_rail", before=before, after=txn.to_dict())
        record_transaction(txn.transaction_type.value, txn.status.value, txn.amount)

        if txn.transaction_type == TransactionType.DEPOSIT:
            delta = txn.amount
        elif txn.transaction_type in OUTFLOW_TYPES:
            delta = -txn.amount
        else:
            delta = 0.0

        if delta:
            account_before = account.to_dict()
            account.available_amount = to_money(account.available_amount + delta)
            workspace.emit("escrow_accounts", account.id, "balance_updated", actor_id="payment_rail",
                           before=account_before, after=account.to_dict())

        if txn.transaction_type == TransactionType.DEPOSIT:
            self.ledger.activate_if_funded(workspace, now)
        elif txn.transaction_type == TransactionType.RELEASE:
            milestone = workspace.milestone(txn.milestone_id)
            if milestone.status == MilestoneStatus.APPROVED:
                ms_before = milestone.to_dict()
                milestone.status = MilestoneStatus.RELEASED
                milestone.released_at = now
                workspace.emit("escrow_milestones", milestone.id, "released", actor_id="payment_rail",
                               before=ms_before, after=milestone.to_dict())
                record_milestone_transition(MilestoneStatus.APPROVED.value, MilestoneStatus.RELEASED.value)
        elif txn.transaction_type == TransactionType.FEE:
            if completed_total(workspace.transactions, TransactionType.FEE) + MONEY_EPSILON >= account.platform_fee:
                account.fee_collected = True
        elif txn.transaction_type == TransactionType.INSURANCE_CLAIM:
            claim = workspace.claim(txn.claim_id)
            claim_before = claim.to_dict()
            claim.status = InsuranceClaimStatus.PAID
            claim.paid_at = now
            workspace.emit("insurance_claims", claim.id, "paid", actor_id="payment_rail",
                           before=claim_before, after=claim.to_dict())
            record_claim_status(claim.status.value)

        logger.info(f"[PROCESSOR] {txn.id} completed: {txn.transaction_type.value} ${txn.amount:,.2f}, available ${account.available_amount:,.2f}")
        return txn

    def _fail(self, workspace: AccountWorkspace, txn: EscrowTransaction, reason: str):
        """Failed transactions leave the balance untouched."""
        before = txn.to_dict()
        txn.status = TransactionStatus.FAILED
        txn.processed_at = datetime.now()
        txn.failure_reason = reason
        workspace.emit(ENTITY, txn.id, "failed", actor_id="payment_rail", before=before, after=txn.to_dict())
        record_transaction(txn.transaction_type.value, txn.status.value, txn.amount)
        logger.warning(f"[PROCESSOR] {txn.id} failed: {reason}")

    def handle_rail_confirmation(self, payment_intent_id: str, succeeded: bool, reason: Optional[str] = None) -> EscrowTransaction:
        """Webhook from the rail for a previously submitted transaction."""
        account_id = self.storage.account_id_for_intent(payment_intent_id)
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            txn = ws.transaction_by_intent(payment_intent_id)
            if txn is None:
                raise EntityNotFound(f"No transaction for payment intent {payment_intent_id}")

            # A late success can arrive after a timeout already scheduled a retry
            awaiting = txn.status == TransactionStatus.PROCESSING or (
                succeeded and txn.status == TransactionStatus.PENDING and txn.attempts > 0
            )
            if not awaiting:
                logger.info(f"[PROCESSOR] Duplicate confirmation for {payment_intent_id} ignored ({txn.status.value})")
            elif succeeded:
                self._complete(ws, txn, payment_intent_id)
            else:
                self._fail(ws, txn, reason or "declined")
            result = copy.deepcopy(txn)

        if result.status == TransactionStatus.COMPLETED:
            self.maybe_close(account_id)
        return result

    def cancel_transaction(self, transaction_id: str, actor_id: str) -> EscrowTransaction:
        """Cancel a transaction that has not reached the rail yet."""
        account_id = self.storage.account_id_for(transaction_id)
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            txn = ws.transaction(transaction_id)
            self.cancel_in(ws, txn, actor_id)
            result = copy.deepcopy(txn)
        return result

    def cancel_in(self, workspace: AccountWorkspace, txn: EscrowTransaction, actor_id: str):
        if txn.status != TransactionStatus.PENDING:
            raise ValidationError(f"Transaction {txn.id} is {txn.status.value}; only pending transactions can be cancelled")
        before = txn.to_dict()
        txn.status = TransactionStatus.CANCELLED
        txn.processed_at = datetime.now()
        workspace.emit(ENTITY, txn.id, "cancelled", actor_id=actor_id, before=before, after=txn.to_dict())
        record_transaction(txn.transaction_type.value, txn.status.value, txn.amount)
        logger.info(f"[PROCESSOR] {txn.id} cancelled by {actor_id}")

    # ============================================
    # SCHEDULED JOBS
    # ============================================

    def _collect(self, predicate) -> List[Tuple[str, str]]:
        found = []
        for record in self.storage.snapshots():
            for txn in record.transactions.values():
                if predicate(record, txn):
                    found.append((record.account.id, txn.id))
        return found

    def process_retries(self, now: Optional[datetime] = None) -> List[EscrowTransaction]:
        """Submit pending transactions whose backoff has elapsed."""
        now = now or datetime.now()
        due = self._collect(lambda record, txn: (
            txn.status == TransactionStatus.PENDING
            and (txn.next_retry_at is None or txn.next_retry_at <= now)
        ))
        results = []
        for account_id, transaction_id in due:
            try:
                results.append(self.submit(account_id, transaction_id))
            except EscrowError as e:
                logger.error(f"[PROCESSOR] Retry of {transaction_id} on {account_id} failed: {e}")
        return results

    def expire_stale(self, now: Optional[datetime] = None) -> List[EscrowTransaction]:
        """Fail transactions the rail never confirmed and page an operator."""
        now = now or datetime.now()
        timeout = timedelta(minutes=self.policy.confirmation_timeout_minutes)
        stale = self._collect(lambda record, txn: (
            txn.status == TransactionStatus.PROCESSING
            and txn.submitted_at is not None
            and now - txn.submitted_at > timeout
        ))

        expired = []
        for account_id, transaction_id in stale:
            with self.ledger.guarded_unit_of_work(account_id) as ws:
                txn = ws.transaction(transaction_id)
                if txn.status != TransactionStatus.PROCESSING:
                    ws.discard()
                    continue
                self._fail(ws, txn, f"no rail confirmation within {self.policy.confirmation_timeout_minutes} minutes")
                result = copy.deepcopy(txn)
            expired.append(result)
            self.alerts.raise_alert(
                category="rail_confirmation_timeout",
                message=f"{result.transaction_type.value} {result.id} ({result.payment_intent_id}) unconfirmed; marked failed",
                account_id=account_id,
                reference_id=result.id,
            )
        return expired

    def _mark_held(self, workspace: AccountWorkspace, txn: EscrowTransaction, since: datetime):
        before = txn.to_dict()
        txn.held_since = since
        workspace.emit(ENTITY, txn.id, "held", actor_id="system", before=before, after=txn.to_dict())

    def escalate_held(self, now: Optional[datetime] = None) -> List[EscrowTransaction]:
        """Page an operator, once per transaction, when a freeze holds it past the timeout."""
        now = now or datetime.now()
        timeout = timedelta(hours=self.policy.held_timeout_hours)
        held = self._collect(lambda record, txn: (
            record.account.is_frozen
            and txn.status == TransactionStatus.PENDING
            and txn.transaction_type != TransactionType.INSURANCE_CLAIM
            and txn.hold_escalated_at is None
        ))

        escalated = []
        for account_id, transaction_id in held:
            with self.ledger.guarded_unit_of_work(account_id) as ws:
                txn = ws.transaction(transaction_id)
                if (not ws.account.is_frozen or txn.status != TransactionStatus.PENDING
                        or txn.hold_escalated_at is not None):
                    ws.discard()
                    continue
                if txn.held_since is None:
                    self._mark_held(ws, txn, now)
                    continue
                if now - txn.held_since < timeout:
                    ws.discard()
                    continue
                before = txn.to_dict()
                txn.hold_escalated_at = now
                ws.emit(ENTITY, txn.id, "hold_escalated", actor_id="system", before=before, after=txn.to_dict())
                reason = ws.account.freeze_reason
                result = copy.deepcopy(txn)
            escalated.append(result)
            self.alerts.raise_alert(
                category="transaction_held",
                severity="warning",
                message=(
                    f"{result.transaction_type.value} {result.id} held on frozen escrow since "
                    f"{result.held_since.isoformat()} ({reason})"
                ),
                account_id=account_id,
                reference_id=result.id,
            )
        return escalated

    # ============================================
    # CLOSE-OUT
    # ============================================

    def maybe_close(self, account_id: str):
        """Finish an account once every milestone is closed.

        Collects the platform fee first, then marks the account completed.
        Cancellations complete once the refund has gone out.
        """
        to_submit = []
        with self.ledger.guarded_unit_of_work(account_id) as ws:
            account = ws.account
            ready = account.status in (AccountStatus.PENDING, AccountStatus.ACTIVE) and not ws.in_flight()

            if ready and account.closing is None:
                milestones = ws.milestones
                if (account.status == AccountStatus.ACTIVE and milestones
                        and all(m.is_closed for m in milestones) and not ws.unresolved_disputes()):
                    before = account.to_dict()
                    account.closing = "complete"
                    ws.emit("escrow_accounts", account.id, "close_requested", actor_id="system",
                            before=before, after=account.to_dict())

            if ready and account.closing == "complete":
                fee_due = self.unpaid_fee(ws)
                if fee_due > MONEY_EPSILON:
                    to_submit.append(self.create_transaction(
                        ws, TransactionType.FEE, fee_due, actor_id="system", description="Platform fee"
                    ).id)
                elif account.available_amount <= MONEY_EPSILON:
                    self._finish(ws, AccountStatus.COMPLETED)
                else:
                    logger.info(f"[PROCESSOR] Escrow {account_id} has ${account.available_amount:,.2f} unallocated; awaiting settlement")
            elif ready and account.closing == "cancel" and account.available_amount <= MONEY_EPSILON:
                self._finish(ws, AccountStatus.CANCELLED)

        for transaction_id in to_submit:
            self.submit(account_id, transaction_id)

    def _finish(self, workspace: AccountWorkspace, status: AccountStatus):
        account = workspace.account
        before = account.to_dict()
        account.status = status
        if status == AccountStatus.COMPLETED:
            account.completed_at = datetime.now()
        else:
            account.cancelled_at = datetime.now()
        workspace.emit("escrow_accounts", account.id, status.value, actor_id="system", before=before, after=account.to_dict())
        logger.info(f"[PROCESSOR] Escrow {account.id} {status.value}")
