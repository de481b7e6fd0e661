"""
WorkWise Escrow (WWE) - Ledger & Account Model
Version: 1.0.0

Escrow account lifecycle and the balance invariants:

- available_amount == fold(completed transactions), always,
- available_amount <= total_amount - sum(completed releases),
- outflows never exceed the spendable balance,
- milestone amounts sum to total_amount - platform_fee.

A fold mismatch is never corrected automatically: the account is frozen and
an operator alert raised until someone reconciles it by hand.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional
import copy

from wwe_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    EscrowPolicy,
    OperatorAlertSink,
    RISK_THRESHOLDS,
    MONEY_EPSILON,
    ValidationError,
    AccountFrozenError,
    InsufficientFundsError,
    InvariantViolation,
    logger
)
from wwe_escrow_models_v1 import (
    AccountStatus,
    MilestoneStatus,
    ProtectionLevel,
    TransactionStatus,
    TransactionType,
    EscrowAccount,
    EscrowMilestone,
    EscrowTerms,
    OUTFLOW_TYPES,
    TERMINAL_ACCOUNT_STATUSES,
    completed_total,
    fold_available,
    new_id,
    to_money
)
from wwe_storage_v1 import AccountRecord, AccountWorkspace, EscrowStorage
from wwe_audit_log_v1 import EscrowEvent
from wwe_metrics import record_escrow_created, record_freeze, update_ledger_variance

# ============================================
# LEDGER INVARIANTS
# ============================================

class LedgerInvariant(Invariant):
    """Ledger invariants roll back by discarding the unit of work."""

    def __init__(self, id: str, statement: str, type: InvariantType, dependencies: Optional[List[str]] = None):
        super().__init__(
            id=id,
            statement=statement,
            type=type,
            criticality=Criticality.CRITICAL,
            dependencies=dependencies or [],
            owner="escrow_ledger"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        return True

    def rollback_action(self, state_before: Dict[str, Any], workspace: AccountWorkspace = None, **kwargs):
        if workspace is not None:
            workspace.discard()
            logger.warning(f"ROLLBACK {self.id}: discarded changes to {workspace.account.id}")


class AvailableMatchesLedgerFold(LedgerInvariant):
    """available_amount is recomputable from completed transactions."""

    error_class = InvariantViolation

    def __init__(self):
        super().__init__(
            id="ledger_available_matches_fold",
            statement="available_amount must equal the fold of completed transactions",
            type=InvariantType.DATA_INTEGRITY
        )

    def _holds(self, workspace: AccountWorkspace) -> bool:
        return abs(workspace.account.available_amount - workspace.folded_available()) < MONEY_EPSILON

    def pre_check(self, workspace: AccountWorkspace = None, **kwargs) -> bool:
        return self._holds(workspace)

    def post_check(self, result: Any, workspace: AccountWorkspace = None, **kwargs) -> bool:
        return self._holds(workspace)

    def describe_failure(self, workspace: AccountWorkspace = None, **kwargs) -> str:
        return (
            f"Escrow {workspace.account.id}: available_amount {workspace.account.available_amount:.2f} "
            f"!= ledger fold {workspace.folded_available():.2f}"
        )


class AvailableWithinCommitted(LedgerInvariant):
    """0 <= available_amount <= total_amount - released."""

    def __init__(self):
        super().__init__(
            id="ledger_available_within_committed",
            statement="available_amount must stay within [0, total_amount - released]",
            type=InvariantType.FINANCIAL,
            dependencies=["ledger_available_matches_fold"]
        )

    def post_check(self, result: Any, workspace: AccountWorkspace = None, **kwargs) -> bool:
        account = workspace.account
        released = completed_total(workspace.transactions, TransactionType.RELEASE)
        ceiling = account.total_amount - released
        return -MONEY_EPSILON < account.available_amount < ceiling + MONEY_EPSILON


class AccountNotFrozen(LedgerInvariant):
    """Frozen accounts move no escrow money."""

    error_class = AccountFrozenError

    def __init__(self):
        super().__init__(
            id="ledger_account_not_frozen",
            statement="escrow account is frozen pending investigation",
            type=InvariantType.STATE
        )

    def pre_check(self, workspace: AccountWorkspace = None, transaction_type: TransactionType = None, **kwargs) -> bool:
        if transaction_type == TransactionType.INSURANCE_CLAIM:
            return True
        return not workspace.account.is_frozen

    def describe_failure(self, workspace: AccountWorkspace = None, **kwargs) -> str:
        return f"Escrow {workspace.account.id} is frozen: {workspace.account.freeze_reason}"


class AccountOpenForMovement(LedgerInvariant):
    error_class = ValidationError

    def __init__(self):
        super().__init__(
            id="ledger_account_open",
            statement="escrow account is closed",
            type=InvariantType.STATE
        )

    def pre_check(self, workspace: AccountWorkspace = None, transaction_type: TransactionType = None, **kwargs) -> bool:
        status = workspace.account.status
        if transaction_type == TransactionType.INSURANCE_CLAIM:
            return status != AccountStatus.CANCELLED
        return status not in TERMINAL_ACCOUNT_STATUSES

    def describe_failure(self, workspace: AccountWorkspace = None, **kwargs) -> str:
        return f"Escrow {workspace.account.id} is {workspace.account.status.value}; no further money movement"


class PositiveAmount(LedgerInvariant):
    error_class = ValidationError

    def __init__(self):
        super().__init__(
            id="ledger_positive_amount",
            statement="transaction amount must be positive",
            type=InvariantType.STATE
        )

    def pre_check(self, amount: float = 0.0, **kwargs) -> bool:
        return amount is not None and to_money(amount) > 0


class SufficientEscrowFunds(LedgerInvariant):
    """Outflows are covered by the balance not already promised elsewhere."""

    error_class = InsufficientFundsError

    def __init__(self):
        super().__init__(
            id="ledger_sufficient_funds",
            statement="outflow exceeds the spendable escrow balance",
            type=InvariantType.FINANCIAL,
            dependencies=["ledger_available_matches_fold"]
        )

    def pre_check(self, workspace: AccountWorkspace = None, transaction_type: TransactionType = None, amount: float = 0.0, **kwargs) -> bool:
        if transaction_type not in OUTFLOW_TYPES:
            return True
        return amount <= workspace.spendable() + MONEY_EPSILON

    def post_check(self, result: Any, workspace: AccountWorkspace = None, **kwargs) -> bool:
        return workspace.spendable() > -MONEY_EPSILON

    def describe_failure(self, workspace: AccountWorkspace = None, amount: float = 0.0, **kwargs) -> str:
        return f"Escrow {workspace.account.id}: requested {amount:.2f} but only {workspace.spendable():.2f} is available"


class DepositWithinCommitment(LedgerInvariant):
    """Deposits never exceed the unfunded part of the escrow."""

    error_class = ValidationError

    def __init__(self):
        super().__init__(
            id="ledger_deposit_within_commitment",
            statement="deposit exceeds the unfunded escrow amount",
            type=InvariantType.FINANCIAL
        )

    @staticmethod
    def unfunded(workspace: AccountWorkspace) -> float:
        deposited = sum(
            t.amount for t in workspace.transactions
            if t.transaction_type == TransactionType.DEPOSIT and (t.is_in_flight or t.status == TransactionStatus.COMPLETED)
        )
        return to_money(workspace.account.total_amount - deposited)

    def pre_check(self, workspace: AccountWorkspace = None, transaction_type: TransactionType = None, amount: float = 0.0, **kwargs) -> bool:
        if transaction_type != TransactionType.DEPOSIT:
            return True
        return amount <= self.unfunded(workspace) + MONEY_EPSILON

    def describe_failure(self, workspace: AccountWorkspace = None, amount: float = 0.0, **kwargs) -> str:
        return f"Escrow {workspace.account.id}: deposit {amount:.2f} exceeds unfunded amount {self.unfunded(workspace):.2f}"


def transaction_invariants() -> List[Invariant]:
    """Checked around creation of every escrow transaction."""
    return [
        AvailableMatchesLedgerFold(),
        AccountOpenForMovement(),
        AccountNotFrozen(),
        PositiveAmount(),
        DepositWithinCommitment(),
        SufficientEscrowFunds(),
    ]


def completion_invariants() -> List[Invariant]:
    """Checked around applying a confirmed transaction to the balance."""
    return [
        AvailableMatchesLedgerFold(),
        AvailableWithinCommitted(),
    ]

# ============================================
# ESCROW TERMS
# ============================================

RISK_FACTOR_WEIGHTS = {
    'client_history': 0.25,
    'freelancer_history': 0.25,
    'project_complexity': 0.15,
    'communication_quality': 0.10,
    'timeline_realism': 0.10,
    'amount_risk': 0.10,
    'skill_match': 0.05,
}

# Factors with no data behind them yet
UNASSESSED_FACTOR_RISK = 0.2

# (ceiling, risk) bands for the escrowed amount
AMOUNT_RISK_BANDS = [
    (10000.0, 0.1),
    (50000.0, 0.4),
]
AMOUNT_RISK_ABOVE_BANDS = 0.8


@dataclass
class PartyHistory:
    """What earlier escrows say about one party."""
    completed: int = 0
    disputed: int = 0
    refunded: int = 0


@dataclass
class DerivedTerms:
    protection_level: ProtectionLevel
    automatic_release: bool
    fraud_insurance: bool
    multi_signature: bool
    terms: EscrowTerms


class EscrowTermsPolicy:
    """Project risk and the protection/release terms derived from it at creation."""

    def __init__(self, policy: EscrowPolicy, storage: Optional[EscrowStorage] = None):
        self.policy = policy
        self.storage = storage

    # ---- risk assessment ----

    def party_history(self, user_id: str, role: str) -> PartyHistory:
        """Count earlier escrows where `user_id` was the client or the freelancer."""
        history = PartyHistory()
        if self.storage is None:
            return history
        for record in self.storage.snapshots():
            account = record.account
            party = account.client_id if role == "client" else account.freelancer_id
            if party != user_id:
                continue
            if account.status == AccountStatus.COMPLETED:
                history.completed += 1
            if record.disputes:
                history.disputed += 1
            if any(t.transaction_type == TransactionType.REFUND and t.status == TransactionStatus.COMPLETED
                   for t in record.transactions.values()):
                history.refunded += 1
        return history

    @staticmethod
    def client_history_risk(history: PartyHistory) -> float:
        risk = 0.5
        if history.completed > 10:
            risk -= 0.2
        elif history.completed == 0:
            risk += 0.3
        if history.disputed:
            risk += history.disputed / max(history.completed, 1) * 0.4
        return min(1.0, max(0.0, risk))

    @staticmethod
    def freelancer_history_risk(history: PartyHistory) -> float:
        risk = 0.4
        if history.completed > 20:
            risk -= 0.2
        elif history.completed < 3:
            risk += 0.2
        if history.disputed:
            risk += history.disputed / max(history.completed, 1) * 0.4
        if history.refunded:
            risk += history.refunded / max(history.completed, 1) * 0.2
        return min(1.0, max(0.0, risk))

    @staticmethod
    def amount_risk(total_amount: float) -> float:
        for ceiling, risk in AMOUNT_RISK_BANDS:
            if total_amount <= ceiling:
                return risk
        return AMOUNT_RISK_ABOVE_BANDS

    def assess_risk(self, client_id: str, freelancer_id: str, total_amount: float) -> float:
        """Weighted project risk on the 0-1 scale."""
        factors = {name: UNASSESSED_FACTOR_RISK for name in RISK_FACTOR_WEIGHTS}
        factors['client_history'] = self.client_history_risk(self.party_history(client_id, "client"))
        factors['freelancer_history'] = self.freelancer_history_risk(self.party_history(freelancer_id, "freelancer"))
        factors['amount_risk'] = self.amount_risk(total_amount)

        total = sum(risk * RISK_FACTOR_WEIGHTS[name] for name, risk in factors.items())
        risk_score = round(min(1.0, max(0.0, total)), 2)
        logger.info(
            f"[LEDGER] Assessed risk {risk_score:.2f} for {client_id}/{freelancer_id} "
            f"(client {factors['client_history']:.2f}, freelancer {factors['freelancer_history']:.2f}, "
            f"amount {factors['amount_risk']:.2f})"
        )
        return risk_score

    # ---- terms ----

    def protection_level(self, risk_score: float) -> ProtectionLevel:
        if risk_score >= RISK_THRESHOLDS['high']:
            return ProtectionLevel.PREMIUM
        if risk_score >= RISK_THRESHOLDS['medium']:
            return ProtectionLevel.ENHANCED
        return ProtectionLevel.BASIC

    def derive(
        self,
        risk_score: float,
        automatic_release: Optional[bool] = None,
        fraud_insurance: Optional[bool] = None,
        multi_signature: Optional[bool] = None,
        approval_timeout_hours: Optional[int] = None,
        alert_threshold: Optional[float] = None
    ) -> DerivedTerms:
        high_risk = risk_score > RISK_THRESHOLDS['high']
        terms = EscrowTerms(
            approval_timeout_hours=self.policy.auto_approve_hours if approval_timeout_hours is None else approval_timeout_hours,
            insurance_coverage_percent=100.0 if high_risk else 80.0,
            expiry_days=90 if high_risk else 60,
            alert_threshold=alert_threshold,
        )
        return DerivedTerms(
            protection_level=self.protection_level(risk_score),
            automatic_release=risk_score < RISK_THRESHOLDS['medium'] if automatic_release is None else automatic_release,
            fraud_insurance=risk_score > RISK_THRESHOLDS['medium'] if fraud_insurance is None else fraud_insurance,
            multi_signature=high_risk if multi_signature is None else multi_signature,
            terms=terms,
        )

# ============================================
# LEDGER SERVICE
# ============================================

class LedgerService:
    """Creates, funds, reconciles, freezes and closes escrow accounts."""

    ENTITY = "escrow_accounts"

    def __init__(self, storage: EscrowStorage, policy: EscrowPolicy, alerts: OperatorAlertSink):
        self.storage = storage
        self.policy = policy
        self.alerts = alerts
        self.terms_policy = EscrowTermsPolicy(policy, storage)
        self.processor = None  # bound by the platform once built

    def bind_processor(self, processor):
        self.processor = processor

    @contextmanager
    def guarded_unit_of_work(self, account_id: str) -> Iterator[AccountWorkspace]:
        """Unit of work that halts the account on any invariant violation."""
        try:
            with self.storage.unit_of_work(account_id) as workspace:
                yield workspace
        except InvariantViolation as e:
            self.halt_account(account_id, str(e))
            raise

    # ---- creation ----

    def calculate_platform_fee(self, total_amount: float) -> float:
        return to_money(total_amount * self.policy.platform_fee_rate)

    def create_account(
        self,
        project_id: str,
        client_id: str,
        freelancer_id: str,
        total_amount: float,
        platform_fee: Optional[float] = None,
        milestones: Optional[List[Dict[str, Any]]] = None,
        risk_score: Optional[float] = None,
        milestone_based: Optional[bool] = None,
        automatic_release: Optional[bool] = None,
        fraud_insurance: Optional[bool] = None,
        multi_signature: Optional[bool] = None,
        approval_timeout_hours: Optional[int] = None,
        alert_threshold: Optional[float] = None,
        payout_account: Optional[str] = None,
        funding_source: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> AccountRecord:
        """Create an escrow account in `pending` with its milestones."""
        if not project_id or not client_id or not freelancer_id:
            raise ValidationError("project_id, client_id and freelancer_id are required")
        if client_id == freelancer_id:
            raise ValidationError("client and freelancer must be different users")
        if total_amount is None or to_money(total_amount) <= 0:
            raise ValidationError("total_amount must be positive")
        if risk_score is not None and not 0.0 <= risk_score <= 1.0:
            raise ValidationError("risk_score must be between 0.00 and 1.00")
        if alert_threshold is not None and not 0.0 < alert_threshold <= 1.0:
            raise ValidationError("alert_threshold must be in (0, 1]")
        if self.storage.account_id_for_project(project_id):
            raise ValidationError(f"Project {project_id} already has an escrow account")

        total_amount = to_money(total_amount)
        fee = self.calculate_platform_fee(total_amount) if platform_fee is None else to_money(platform_fee)
        if fee < 0 or fee >= total_amount:
            raise ValidationError("platform_fee must be in [0, total_amount)")

        if risk_score is None:
            risk_score = self.terms_policy.assess_risk(client_id, freelancer_id, total_amount)

        if milestone_based is None:
            milestone_based = bool(milestones)

        derived = self.terms_policy.derive(
            risk_score,
            automatic_release=automatic_release,
            fraud_insurance=fraud_insurance,
            multi_signature=multi_signature,
            approval_timeout_hours=approval_timeout_hours,
            alert_threshold=alert_threshold,
        )

        account = EscrowAccount(
            id=new_id("ESC"),
            project_id=project_id,
            client_id=client_id,
            freelancer_id=freelancer_id,
            total_amount=total_amount,
            platform_fee=fee,
            risk_score=round(risk_score, 2),
            protection_level=derived.protection_level,
            milestone_based=milestone_based,
            automatic_release=derived.automatic_release,
            fraud_insurance=derived.fraud_insurance,
            multi_signature=derived.multi_signature,
            terms=derived.terms,
            payout_account=payout_account,
            funding_source=funding_source,
        )

        if milestone_based:
            built = self._build_milestones(account, milestones or [])
        else:
            if milestones:
                raise ValidationError("milestones given for an escrow that is not milestone based")
            built = [EscrowMilestone(
                id=new_id("MS"),
                account_id=account.id,
                title="Project completion",
                description="Full project delivery",
                amount=account.net_amount,
                order_index=0,
            )]

        record = AccountRecord(account=account, milestones={m.id: m for m in built})
        events = [EscrowEvent(entity=self.ENTITY, entity_id=account.id, action="created",
                              account_id=account.id, actor_id=actor_id or client_id, after=account.to_dict())]
        events.extend(
            EscrowEvent(entity="escrow_milestones", entity_id=m.id, action="created",
                        account_id=account.id, actor_id=actor_id or client_id, after=m.to_dict())
            for m in built
        )
        self.storage.add_account(record, events)
        record_escrow_created(account.protection_level.value, account.total_amount)

        logger.info(
            f"[LEDGER] Escrow {account.id}: total ${total_amount:,.2f}, fee ${fee:,.2f}, "
            f"{len(built)} milestone(s), protection={account.protection_level.value}"
        )
        return self.storage.snapshot(account.id)

    def _build_milestones(self, account: EscrowAccount, specs: List[Dict[str, Any]]) -> List[EscrowMilestone]:
        if not specs:
            raise ValidationError("milestone based escrow requires at least one milestone")

        built = []
        seen_indexes = set()
        for position, spec in enumerate(specs):
            title = (spec.get('title') or "").strip()
            amount = to_money(spec.get('amount') or 0)
            order_index = spec.get('order_index', position)
            if not title:
                raise ValidationError(f"Milestone #{position + 1} needs a title")
            if amount <= 0:
                raise ValidationError(f"Milestone '{title}' amount must be positive")
            if order_index in seen_indexes:
                raise ValidationError(f"Duplicate milestone order_index {order_index}")
            seen_indexes.add(order_index)

            built.append(EscrowMilestone(
                id=new_id("MS"),
                account_id=account.id,
                title=title,
                description=spec.get('description') or "",
                amount=amount,
                order_index=order_index,
                completion_criteria=list(spec.get('completion_criteria') or []),
                due_date=spec.get('due_date'),
            ))

        milestone_sum = to_money(sum(m.amount for m in built))
        if abs(milestone_sum - account.net_amount) > self.policy.amount_tolerance + 1e-9:
            raise ValidationError(
                f"Milestone amounts sum to {milestone_sum:.2f}, expected {account.net_amount:.2f} "
                f"(total {account.total_amount:.2f} - fee {account.platform_fee:.2f})"
            )
        return built

    # ---- funding ----

    def fund(self, account_id: str, amount: float, actor_id: Optional[str] = None):
        """Deposit into a pending escrow. Activates it once fully covered."""
        return self.processor.deposit(account_id, amount, actor_id)

    def activate_if_funded(self, workspace: AccountWorkspace, now: Optional[datetime] = None):
        account = workspace.account
        if account.status != AccountStatus.PENDING:
            return
        deposited = completed_total(workspace.transactions, TransactionType.DEPOSIT)
        if deposited + MONEY_EPSILON < account.total_amount:
            return

        before = account.to_dict()
        now = now or datetime.now()
        account.status = AccountStatus.ACTIVE
        account.funded_at = now
        account.expires_at = now + timedelta(days=account.terms.expiry_days)
        workspace.emit(self.ENTITY, account.id, "funded", actor_id="payment_rail", before=before, after=account.to_dict())
        logger.info(f"[LEDGER] Escrow {account.id} fully funded (${deposited:,.2f}) and active")

    # ---- balance ----

    def compute_available(self, account_id: str) -> float:
        """Fold of completed transactions; must equal the persisted balance."""
        record = self.storage.snapshot(account_id)
        folded = fold_available(record.transactions.values())
        persisted = record.account.available_amount
        update_ledger_variance(account_id, persisted - folded)

        if abs(persisted - folded) >= MONEY_EPSILON:
            message = f"Escrow {account_id}: available_amount {persisted:.2f} != ledger fold {folded:.2f}"
            self.halt_account(account_id, message)
            raise InvariantViolation(message)
        return folded

    def reconcile(self, account_id: str) -> Dict[str, Any]:
        folded = self.compute_available(account_id)
        return {'account_id': account_id, 'available_amount': folded, 'consistent': True}

    def reconcile_all(self) -> List[str]:
        """Check every account; returns the ids that were halted."""
        halted = []
        for account_id in self.storage.account_ids():
            try:
                self.compute_available(account_id)
            except InvariantViolation as e:
                logger.critical(f"[LEDGER] Reconciliation failed: {e}")
                halted.append(account_id)
        return halted

    def apply_manual_reconciliation(self, account_id: str, actor_id: str, notes: str) -> EscrowAccount:
        """Operator-confirmed reset of available_amount to the ledger fold."""
        if not notes or not notes.strip():
            raise ValidationError("manual reconciliation requires notes")
        with self.storage.unit_of_work(account_id) as ws:
            account = ws.account
            before = account.to_dict()
            account.available_amount = ws.folded_available()
            ws.emit(self.ENTITY, account.id, "manually_reconciled", actor_id=actor_id, before=before,
                    after={**account.to_dict(), 'notes': notes})
            result = copy.deepcopy(account)
        logger.warning(f"[LEDGER] Escrow {account_id} manually reconciled by {actor_id}: {notes}")
        return result

    # ---- freeze / halt ----

    def freeze_in(self, workspace: AccountWorkspace, reason: str, frozen_by: str) -> bool:
        account = workspace.account
        if account.status in TERMINAL_ACCOUNT_STATUSES:
            logger.warning(f"[LEDGER] Escrow {account.id} is {account.status.value}; freeze skipped ({reason})")
            return False
        if account.is_frozen:
            return False

        before = account.to_dict()
        account.status_before_freeze = account.status
        account.status = AccountStatus.DISPUTED
        account.frozen_at = datetime.now()
        account.freeze_reason = reason
        account.frozen_by = frozen_by
        workspace.emit(self.ENTITY, account.id, "frozen", actor_id=frozen_by, before=before, after=account.to_dict())
        record_freeze(frozen_by)
        logger.warning(f"[LEDGER] Escrow {account.id} FROZEN by {frozen_by}: {reason}")
        return True

    def freeze_account(self, account_id: str, reason: str, frozen_by: str) -> EscrowAccount:
        with self.storage.unit_of_work(account_id) as ws:
            self.freeze_in(ws, reason, frozen_by)
            result = copy.deepcopy(ws.account)
        return result

    def halt_account(self, account_id: str, reason: str):
        """Freeze after a consistency failure and page an operator."""
        self.freeze_account(account_id, reason, frozen_by="invariant_enforcer")
        self.alerts.raise_alert(
            category="invariant_violation",
            message=reason,
            account_id=account_id,
        )

    def unfreeze_account(self, account_id: str, actor_id: str) -> EscrowAccount:
        """Manual release of a freeze. Requires a consistent ledger."""
        with self.storage.unit_of_work(account_id) as ws:
            account = ws.account
            if not account.is_frozen:
                raise ValidationError(f"Escrow {account_id} is not frozen")
            folded = ws.folded_available()
            if abs(account.available_amount - folded) >= MONEY_EPSILON:
                raise InvariantViolation(
                    f"Escrow {account_id} cannot be unfrozen: available_amount {account.available_amount:.2f} "
                    f"!= ledger fold {folded:.2f}; reconcile first"
                )

            before = account.to_dict()
            account.status = account.status_before_freeze or AccountStatus.ACTIVE
            account.status_before_freeze = None
            account.unfrozen_at = datetime.now()
            account.unfrozen_by = actor_id
            ws.emit(self.ENTITY, account.id, "unfrozen", actor_id=actor_id, before=before, after=account.to_dict())
            result = copy.deepcopy(account)

        logger.info(f"[LEDGER] Escrow {account_id} unfrozen by {actor_id}")
        self.processor.maybe_close(account_id)
        return result

    # ---- close-out ----

    def settle_account(self, account_id: str, actor_id: str) -> EscrowAccount:
        """Admin close-out: collect the unpaid fee, refund the rest to the client."""
        to_submit = []
        with self.guarded_unit_of_work(account_id) as ws:
            account = ws.account
            if account.status != AccountStatus.ACTIVE:
                raise ValidationError(f"Escrow {account_id} is {account.status.value}, cannot settle")
            if ws.in_flight():
                raise ValidationError(f"Escrow {account_id} has transactions in flight")
            if ws.unresolved_disputes():
                raise ValidationError(f"Escrow {account_id} has unresolved disputes")

            before = account.to_dict()
            account.closing = "complete"
            ws.emit(self.ENTITY, account.id, "settlement_requested", actor_id=actor_id, before=before, after=account.to_dict())

            fee_due = self.processor.unpaid_fee(ws)
            if fee_due > MONEY_EPSILON:
                to_submit.append(self.processor.create_transaction(
                    ws, TransactionType.FEE, fee_due, actor_id=actor_id, description="Platform fee"
                ).id)
            remainder = ws.spendable()
            if remainder > MONEY_EPSILON:
                to_submit.append(self.processor.create_transaction(
                    ws, TransactionType.REFUND, remainder, actor_id=actor_id,
                    description="Unreleased balance returned at settlement"
                ).id)

        for transaction_id in to_submit:
            self.processor.submit(account_id, transaction_id)
        self.processor.maybe_close(account_id)
        return self.storage.snapshot(account_id).account

    def cancel_account(self, account_id: str, actor_id: str) -> EscrowAccount:
        """Cancel an escrow before work starts, refunding any deposits."""
        to_submit = []
        with self.guarded_unit_of_work(account_id) as ws:
            account = ws.account
            if account.status not in (AccountStatus.PENDING, AccountStatus.ACTIVE):
                raise ValidationError(f"Escrow {account_id} is {account.status.value}, cannot cancel")
            started = [m for m in ws.milestones if m.status != MilestoneStatus.PENDING]
            if started:
                raise ValidationError(f"Escrow {account_id} has milestones in progress; open a dispute instead")
            if ws.in_flight():
                raise ValidationError(f"Escrow {account_id} has transactions in flight")

            before = account.to_dict()
            account.closing = "cancel"
            ws.emit(self.ENTITY, account.id, "cancellation_requested", actor_id=actor_id, before=before, after=account.to_dict())

            if account.available_amount > MONEY_EPSILON:
                to_submit.append(self.processor.create_transaction(
                    ws, TransactionType.REFUND, account.available_amount, actor_id=actor_id,
                    description="Escrow cancelled"
                ).id)

        for transaction_id in to_submit:
            self.processor.submit(account_id, transaction_id)
        self.processor.maybe_close(account_id)
        return self.storage.snapshot(account_id).account
