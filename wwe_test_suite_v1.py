"""
WorkWise Escrow (WWE) - Test Suite
Version: 1.0.0

Coverage for the escrow core:
- Enforcement engine (pre/post checks, rollback, signed decisions)
- Ledger invariants and account lifecycle
- Milestone state machine and transaction processing
- Disputes, insurance claims and fraud scoring
- Audit chain integrity and concurrent access
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import List
import dataclasses
import threading

from wwe_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    InvariantEnforcer,
    DecisionLedger,
    EscrowPolicy,
    EscrowError,
    ValidationError,
    EntityNotFound,
    AccountFrozenError,
    InsufficientFundsError,
    InvariantViolation,
    SystemCompromised
)
from wwe_escrow_models_v1 import (
    AccountStatus,
    MilestoneStatus,
    ProtectionLevel,
    TransactionStatus,
    TransactionType,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    InsuranceClaimStatus,
    InsuranceClaimType
)
from wwe_fraud_scoring_v1 import (
    FraudDetectionRule,
    FraudDetectionAlert,
    RuleCondition,
    RuleType,
    Severity,
    Composition,
    AlertStatus,
    CaseStatus,
    ActionTaken
)
from wwe_escrow_ledger_v1 import EscrowTermsPolicy, PartyHistory
from wwe_platform_v1 import EscrowPlatform

CLIENT = "EMP-001"
FREELANCER = "GW-001"
ADMIN = "ADMIN-1"

# ============================================
# HELPERS
# ============================================

def make_platform(fraud_rules=None, **policy_overrides) -> EscrowPlatform:
    return EscrowPlatform(EscrowPolicy(**policy_overrides), fraud_rules=fraud_rules)


def create_escrow(platform: EscrowPlatform, fund: bool = True, risk_score: float = 0.2, **options):
    """1000.00 escrow, 5% fee, milestones of 500 and 450."""
    record = platform.create_escrow(
        project_id=options.pop('project_id', "PRJ-001"),
        client_id=CLIENT,
        freelancer_id=FREELANCER,
        total_amount=1000.00,
        milestones=options.pop('milestones', [
            {'title': "Design", 'amount': 500.00},
            {'title': "Build", 'amount': 450.00},
        ]),
        risk_score=risk_score,
        **options
    )
    if fund:
        platform.fund(record.account.id, 1000.00)
    return platform.get_account(record.account.id)


def milestone_ids(record) -> List[str]:
    return [m.id for m in record.ordered_milestones()]


def deliver(platform: EscrowPlatform, milestone_id: str):
    platform.start_milestone(milestone_id, FREELANCER)
    return platform.submit_milestone(milestone_id, FREELANCER, ["deliverable.zip"])


def to_mediation(platform: EscrowPlatform, dispute_id: str):
    platform.advance_dispute(dispute_id, DisputeStatus.INVESTIGATING, ADMIN)
    return platform.advance_dispute(dispute_id, DisputeStatus.MEDIATION, ADMIN)


def transactions_of(platform: EscrowPlatform, account_id: str, transaction_type: TransactionType):
    record = platform.get_account(account_id)
    return [t for t in record.transactions.values() if t.transaction_type == transaction_type]


def available(platform: EscrowPlatform, account_id: str) -> float:
    return platform.get_account(account_id).account.available_amount


def score_rule(severity: Severity, threshold: float = 0.80, rule_id: str = "R-SCORE", **overrides) -> FraudDetectionRule:
    fields = dict(
        id=rule_id,
        rule_name=f"Score at or above {threshold:.2f}",
        rule_type=RuleType.THRESHOLD,
        threshold_field="score",
        threshold_operator=">=",
        threshold_value=threshold,
        risk_score=None,
        severity=severity,
        priority=1,
    )
    fields.update(overrides)
    return FraudDetectionRule(**fields)

# ============================================
# MOCK INVARIANTS
# ============================================

class StubInvariant(Invariant):
    """Invariant with scripted outcomes."""

    def __init__(self, id: str, pre: bool = True, post: bool = True, error_class=ValidationError,
                 dependencies=None, rollback_fails: bool = False):
        super().__init__(
            id=id,
            statement=f"{id} must hold",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=dependencies or [],
            owner="tests"
        )
        self.pre = pre
        self.post = post
        self.error_class = error_class
        self.rollback_fails = rollback_fails
        self.rolled_back = False

    def pre_check(self, **kwargs) -> bool:
        return self.pre

    def post_check(self, result, **kwargs) -> bool:
        return self.post

    def rollback_action(self, state_before, **kwargs):
        if self.rollback_fails:
            raise RuntimeError("storage unavailable")
        self.rolled_back = True

# ============================================
# CONFIGURATION
# ============================================

class TestEscrowPolicy:
    """Policy defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        for name in ("WWE_PLATFORM_FEE_RATE", "WWE_AUTO_APPROVE_HOURS", "WWE_RAIL_MAX_ATTEMPTS"):
            monkeypatch.delenv(name, raising=False)
        policy = EscrowPolicy.from_env()

        assert policy.platform_fee_rate == 0.05
        assert policy.auto_approve_hours == 72
        assert policy.fraud_alert_threshold == 0.80
        assert policy.rail_max_attempts == 5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WWE_PLATFORM_FEE_RATE", "0.10")
        monkeypatch.setenv("WWE_AUTO_APPROVE_HOURS", "48")
        monkeypatch.setenv("WWE_REQUIRED_APPROVALS", "3")
        policy = EscrowPolicy.from_env()

        assert policy.platform_fee_rate == 0.10
        assert policy.auto_approve_hours == 48
        assert policy.required_approvals == 3

    def test_hold_and_dispute_thresholds(self, monkeypatch):
        monkeypatch.delenv("WWE_HELD_TIMEOUT_HOURS", raising=False)
        monkeypatch.setenv("WWE_HIGH_VALUE_DISPUTE_THRESHOLD", "25000")
        policy = EscrowPolicy.from_env()

        assert policy.held_timeout_hours == 24
        assert policy.high_value_dispute_threshold == 25000.0

    def test_fee_rate_applies_to_new_escrows(self):
        platform = make_platform(platform_fee_rate=0.10)
        record = platform.create_escrow("PRJ-001", CLIENT, FREELANCER, 1000.00)

        assert record.account.platform_fee == 100.00
        assert record.ordered_milestones()[0].amount == 900.00

# ============================================
# ENFORCEMENT ENGINE
# ============================================

class TestInvariantEnforcer:
    """Pre-checks, post-checks and rollback around an action."""

    def test_pre_check_failure_raises_invariant_error_class(self):
        calls = []
        enforcer = InvariantEnforcer([StubInvariant("always_rejects", pre=False, error_class=InsufficientFundsError)], DecisionLedger())

        with pytest.raises(InsufficientFundsError):
            enforcer.enforce_action(lambda **kw: calls.append(kw))

        assert calls == []

    def test_post_check_failure_rolls_back(self):
        inv = StubInvariant("breaks_after", post=False)
        enforcer = InvariantEnforcer([inv], DecisionLedger())

        with pytest.raises(InvariantViolation):
            enforcer.enforce_action(lambda **kw: "done")

        assert inv.rolled_back

    def test_action_exception_rolls_back_and_propagates(self):
        inv = StubInvariant("holds")
        enforcer = InvariantEnforcer([inv], DecisionLedger())

        def explode(**kwargs):
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            enforcer.enforce_action(explode)
        assert inv.rolled_back

    def test_failed_rollback_is_system_compromise(self):
        enforcer = InvariantEnforcer([StubInvariant("fragile", post=False, rollback_fails=True)], DecisionLedger())

        with pytest.raises(SystemCompromised):
            enforcer.enforce_action(lambda **kw: None)

    def test_circular_dependencies_rejected(self):
        a = StubInvariant("a", dependencies=["b"])
        b = StubInvariant("b", dependencies=["a"])

        with pytest.raises(InvariantViolation):
            InvariantEnforcer([a, b], DecisionLedger())

    def test_dependency_order(self):
        first = StubInvariant("first")
        second = StubInvariant("second", dependencies=["first"])
        enforcer = InvariantEnforcer([second, first], DecisionLedger())

        assert [inv.id for inv in enforcer.sorted_invariants] == ["first", "second"]

    def test_decisions_are_signed(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([StubInvariant("holds")], ledger)
        enforcer.enforce_action(lambda **kw: None, account_id="ESC-1")

        assert len(ledger.entries) == 2  # PRE + POST
        assert ledger.verify_chain_integrity()
        assert ledger.pass_rate() == 1.0

        ledger.entries[0].result = False
        assert not ledger.verify_chain_integrity()

    def test_unsigned_decision_rejected(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([StubInvariant("holds")], ledger)
        decision = enforcer._decision("holds", "PRE", True, None, {})
        decision.signature = "0" * 64

        with pytest.raises(SystemCompromised):
            ledger.record(decision)

# ============================================
# ACCOUNT CREATION
# ============================================

class TestAccountCreation:
    """Validation and term derivation at creation."""

    def test_milestone_escrow_created_pending(self):
        platform = make_platform()
        record = create_escrow(platform, fund=False)

        assert record.account.status == AccountStatus.PENDING
        assert record.account.platform_fee == 50.00
        assert record.account.available_amount == 0.0
        assert [m.amount for m in record.ordered_milestones()] == [500.00, 450.00]
        assert all(m.status == MilestoneStatus.PENDING for m in record.milestones.values())

    def test_milestone_sum_must_match_net_amount(self):
        platform = make_platform()
        with pytest.raises(ValidationError):
            create_escrow(platform, fund=False, milestones=[
                {'title': "Design", 'amount': 500.00},
                {'title': "Build", 'amount': 400.00},
            ])

    def test_milestone_sum_within_tolerance(self):
        platform = make_platform()
        record = create_escrow(platform, fund=False, milestones=[
            {'title': "Design", 'amount': 500.00},
            {'title': "Build", 'amount': 449.99},
        ])
        assert len(record.milestones) == 2

    def test_single_milestone_when_not_milestone_based(self):
        platform = make_platform()
        record = platform.create_escrow("PRJ-001", CLIENT, FREELANCER, 1000.00)

        assert not record.account.milestone_based
        assert [m.amount for m in record.milestones.values()] == [950.00]

    def test_explicit_zero_fee(self):
        platform = make_platform()
        record = create_escrow(platform, fund=False, platform_fee=0.0, milestones=[
            {'title': "Everything", 'amount': 1000.00},
        ])
        assert record.account.platform_fee == 0.0

    @pytest.mark.parametrize("kwargs", [
        {'client_id': FREELANCER},
        {'total_amount': 0},
        {'total_amount': -10},
        {'risk_score': 1.5},
        {'platform_fee': 1000.00},
        {'alert_threshold': 0},
    ])
    def test_invalid_creation_rejected(self, kwargs):
        platform = make_platform()
        params = dict(project_id="PRJ-001", client_id=CLIENT, freelancer_id=FREELANCER, total_amount=1000.00)
        params.update(kwargs)

        with pytest.raises(ValidationError):
            platform.create_escrow(**params)

    def test_one_escrow_per_project(self):
        platform = make_platform()
        create_escrow(platform, fund=False)

        with pytest.raises(ValidationError):
            create_escrow(platform, fund=False)

    @pytest.mark.parametrize("risk_score,protection,automatic_release,fraud_insurance,multi_signature", [
        (0.0, ProtectionLevel.BASIC, True, False, False),
        (0.5, ProtectionLevel.ENHANCED, False, False, False),
        (0.6, ProtectionLevel.ENHANCED, False, True, False),
        (0.7, ProtectionLevel.PREMIUM, False, True, False),
        (0.8, ProtectionLevel.PREMIUM, False, True, True),
    ])
    def test_terms_follow_risk(self, risk_score, protection, automatic_release, fraud_insurance, multi_signature):
        platform = make_platform()
        account = create_escrow(platform, fund=False, risk_score=risk_score).account

        assert account.protection_level == protection
        assert account.automatic_release == automatic_release
        assert account.fraud_insurance == fraud_insurance
        assert account.multi_signature == multi_signature

    def test_high_risk_terms(self):
        platform = make_platform()
        terms = create_escrow(platform, fund=False, risk_score=0.8).account.terms

        assert terms.insurance_coverage_percent == 100.0
        assert terms.expiry_days == 90
        assert terms.approval_timeout_hours == 72

    def test_flags_can_be_overridden(self):
        platform = make_platform()
        account = create_escrow(platform, fund=False, risk_score=0.8, multi_signature=False,
                                approval_timeout_hours=24).account

        assert not account.multi_signature
        assert account.terms.approval_timeout_hours == 24

    def test_zero_approval_timeout_is_kept(self):
        platform = make_platform()
        terms = create_escrow(platform, fund=False, approval_timeout_hours=0).account.terms

        assert terms.approval_timeout_hours == 0

    def test_risk_assessed_when_not_given(self):
        """New client and freelancer, small amount: 0.44, basic protection."""
        platform = make_platform()
        account = platform.create_escrow("PRJ-001", CLIENT, FREELANCER, 1000.00).account

        assert account.risk_score == 0.44
        assert account.protection_level == ProtectionLevel.BASIC
        assert account.automatic_release
        assert not account.fraud_insurance

    def test_dispute_history_raises_assessed_risk(self):
        platform = make_platform()
        first = create_escrow(platform).account.id
        platform.open_dispute(first, CLIENT, DisputeType.DELIVERY, "Nothing delivered")

        account = platform.create_escrow("PRJ-002", CLIENT, FREELANCER, 1000.00).account

        assert account.risk_score == 0.59
        assert account.protection_level == ProtectionLevel.ENHANCED
        assert not account.automatic_release
        assert account.fraud_insurance

    def test_history_risk_factors(self):
        assert EscrowTermsPolicy.client_history_risk(PartyHistory()) == pytest.approx(0.8)
        assert EscrowTermsPolicy.client_history_risk(PartyHistory(completed=12)) == pytest.approx(0.3)
        assert EscrowTermsPolicy.client_history_risk(PartyHistory(completed=1, disputed=2)) == 1.0
        assert EscrowTermsPolicy.freelancer_history_risk(PartyHistory(completed=25)) == pytest.approx(0.2)
        assert EscrowTermsPolicy.freelancer_history_risk(PartyHistory(completed=5, refunded=1)) == pytest.approx(0.44)
        assert EscrowTermsPolicy.amount_risk(5000.00) == 0.1
        assert EscrowTermsPolicy.amount_risk(20000.00) == 0.4
        assert EscrowTermsPolicy.amount_risk(60000.00) == 0.8

# ============================================
# FUNDING
# ============================================

class TestFunding:
    """Deposits move pending escrows to active."""

    def test_full_deposit_activates(self):
        platform = make_platform()
        account = create_escrow(platform).account

        assert account.status == AccountStatus.ACTIVE
        assert account.available_amount == 1000.00
        assert account.funded_at is not None
        assert account.expires_at == account.funded_at + timedelta(days=60)

    def test_partial_deposits(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id

        platform.fund(account_id, 400.00)
        assert platform.get_account(account_id).account.status == AccountStatus.PENDING
        assert available(platform, account_id) == 400.00

        platform.fund(account_id, 600.00)
        assert platform.get_account(account_id).account.status == AccountStatus.ACTIVE

    def test_over_deposit_rejected(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id

        with pytest.raises(ValidationError):
            platform.fund(account_id, 1200.00)
        assert available(platform, account_id) == 0.0

    def test_active_escrow_cannot_be_funded_again(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        with pytest.raises(ValidationError):
            platform.fund(account_id, 10.00)

    def test_declined_deposit_leaves_balance(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id
        platform.rail.decline_next()

        txn = platform.fund(account_id, 1000.00)

        assert txn.status == TransactionStatus.FAILED
        assert available(platform, account_id) == 0.0
        assert platform.get_account(account_id).account.status == AccountStatus.PENDING

        # Failed deposits do not count against the unfunded amount
        assert platform.fund(account_id, 1000.00).status == TransactionStatus.COMPLETED

    def test_deferred_deposit_completes_on_webhook(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id
        platform.rail.defer_next()

        txn = platform.fund(account_id, 1000.00)
        assert txn.status == TransactionStatus.PROCESSING
        assert available(platform, account_id) == 0.0

        confirmed = platform.handle_rail_webhook(txn.payment_intent_id, succeeded=True)
        assert confirmed.status == TransactionStatus.COMPLETED
        assert platform.get_account(account_id).account.status == AccountStatus.ACTIVE

# ============================================
# MILESTONE STATE MACHINE
# ============================================

class TestMilestoneStateMachine:
    """pending -> in_progress -> completed -> approved -> released."""

    def test_happy_path(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]

        assert platform.start_milestone(design, FREELANCER).status == MilestoneStatus.IN_PROGRESS
        submitted = platform.submit_milestone(design, FREELANCER, ["wireframes.pdf"])
        assert submitted.status == MilestoneStatus.COMPLETED
        assert submitted.auto_approve_due_at is not None

        released = platform.approve_milestone(design, CLIENT)
        assert released.status == MilestoneStatus.RELEASED
        assert released.released_at is not None

    def test_milestones_need_funded_escrow(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform, fund=False))[0]

        with pytest.raises(ValidationError):
            platform.start_milestone(design, FREELANCER)

    def test_only_freelancer_starts_and_submits(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]

        with pytest.raises(ValidationError):
            platform.start_milestone(design, CLIENT)
        platform.start_milestone(design, FREELANCER)
        with pytest.raises(ValidationError):
            platform.submit_milestone(design, CLIENT, ["file.zip"])

    def test_submit_requires_deliverables(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]
        platform.start_milestone(design, FREELANCER)

        with pytest.raises(ValidationError):
            platform.submit_milestone(design, FREELANCER, ["   "])

    def test_cannot_skip_states(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]

        with pytest.raises(ValidationError):
            platform.submit_milestone(design, FREELANCER, ["file.zip"])
        with pytest.raises(ValidationError):
            platform.approve_milestone(design, CLIENT)

    def test_freelancer_cannot_approve(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]
        deliver(platform, design)

        with pytest.raises(ValidationError):
            platform.approve_milestone(design, FREELANCER)

    def test_released_is_terminal(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]
        deliver(platform, design)
        platform.approve_milestone(design, CLIENT)

        with pytest.raises(ValidationError):
            platform.start_milestone(design, FREELANCER)

    def test_multi_signature_needs_cosigner(self):
        platform = make_platform()
        record = create_escrow(platform, risk_score=0.8)
        design = milestone_ids(record)[0]
        deliver(platform, design)

        first = platform.approve_milestone(design, CLIENT)
        assert first.status == MilestoneStatus.COMPLETED
        assert first.approvals == [CLIENT]

        with pytest.raises(ValidationError):
            platform.approve_milestone(design, CLIENT)

        second = platform.approve_milestone(design, ADMIN)
        assert second.status == MilestoneStatus.RELEASED
        assert available(platform, record.account.id) == 500.00

    def test_multi_signature_requires_client(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform, risk_score=0.8))[0]
        deliver(platform, design)

        platform.approve_milestone(design, ADMIN)
        assert platform.approve_milestone(design, "ADMIN-2").status == MilestoneStatus.COMPLETED
        assert platform.approve_milestone(design, CLIENT).status == MilestoneStatus.RELEASED

    def test_auto_approval_after_grace_period(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)

        assert platform.milestones.process_auto_approvals(datetime.now() + timedelta(hours=71)) == []

        summary = platform.run_scheduled_jobs(datetime.now() + timedelta(hours=73))
        assert summary['auto_approved'] == 1
        assert summary['released'] == 1
        assert summary['audit_chain_intact']
        assert platform.get_account(record.account.id).milestones[design].status == MilestoneStatus.RELEASED

    def test_no_auto_approval_without_automatic_release(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform, risk_score=0.6))[0]
        deliver(platform, design)

        assert platform.milestones.process_auto_approvals(datetime.now() + timedelta(days=30)) == []

    def test_no_auto_approval_while_disputed(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.open_dispute(record.account.id, CLIENT, DisputeType.QUALITY, "Incomplete")
        version = platform.storage.snapshot(record.account.id).version

        assert platform.milestones.process_auto_approvals(datetime.now() + timedelta(hours=73)) == []
        assert platform.storage.snapshot(record.account.id).version == version

# ============================================
# RELEASES & LEDGER FOLD
# ============================================

class TestReleaseAccounting:
    """available_amount tracks the fold of completed transactions."""

    def test_release_then_repeat_release(self):
        """1000 funded, 50 fee, milestones 500/450: one release, one debit."""
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)

        platform.approve_milestone(design, CLIENT)
        assert available(platform, account_id) == 500.00

        first = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        again = platform.release_milestone(design, CLIENT)

        assert again.id == first.id
        assert again.status == TransactionStatus.COMPLETED
        assert len(transactions_of(platform, account_id, TransactionType.RELEASE)) == 1
        assert available(platform, account_id) == 500.00

    def test_release_requires_approval(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]
        deliver(platform, design)

        with pytest.raises(ValidationError):
            platform.release_milestone(design)

    def test_release_amount_must_match_milestone(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]
        deliver(platform, design)
        platform.milestones.approve(design, CLIENT)

        with pytest.raises(ValidationError):
            platform.release_milestone(design, amount=450.00)

    def test_completion_collects_fee_and_closes(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id

        for milestone_id in milestone_ids(record):
            deliver(platform, milestone_id)
            platform.approve_milestone(milestone_id, CLIENT)

        account = platform.get_account(account_id).account
        fees = transactions_of(platform, account_id, TransactionType.FEE)
        assert account.status == AccountStatus.COMPLETED
        assert account.fee_collected
        assert account.available_amount == 0.0
        assert [f.amount for f in fees] == [50.00]

    def test_refund_cannot_exceed_balance(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        with pytest.raises(InsufficientFundsError):
            platform.refund(account_id, 1200.00, "Client request", ADMIN)
        assert available(platform, account_id) == 1000.00

    def test_refund_requires_positive_amount_and_reason(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        with pytest.raises(ValidationError):
            platform.refund(account_id, 0, "Nothing", ADMIN)
        with pytest.raises(ValidationError):
            platform.refund(account_id, 10.00, "  ", ADMIN)

    def test_compute_available_matches_fold(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id
        platform.refund(account_id, 100.00, "Scope reduced", ADMIN)

        assert platform.ledger.compute_available(account_id) == 900.00
        assert platform.ledger.reconcile(account_id)['consistent']

# ============================================
# PAYMENT RAIL
# ============================================

class TestPaymentRail:
    """Retries, confirmations and timeouts."""

    def test_transient_failure_is_retried(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.fail_next()

        platform.approve_milestone(design, CLIENT)
        release = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        assert release.status == TransactionStatus.PENDING
        assert release.attempts == 1
        assert release.next_retry_at is not None
        assert available(platform, account_id) == 1000.00

        retried = platform.processor.process_retries(datetime.now() + timedelta(minutes=10))
        assert [t.status for t in retried] == [TransactionStatus.COMPLETED]
        assert retried[0].attempts == 2
        assert available(platform, account_id) == 500.00

    def test_retries_not_before_backoff(self):
        platform = make_platform()
        design = milestone_ids(create_escrow(platform))[0]
        deliver(platform, design)
        platform.rail.fail_next()
        platform.approve_milestone(design, CLIENT)

        assert platform.processor.process_retries(datetime.now() - timedelta(seconds=1)) == []

    def test_exhausted_retries_fail_and_page_operator(self):
        platform = make_platform(rail_max_attempts=2)
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.fail_next(2)

        platform.approve_milestone(design, CLIENT)
        platform.processor.process_retries(datetime.now() + timedelta(minutes=10))

        release = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        assert release.status == TransactionStatus.FAILED
        assert available(platform, account_id) == 1000.00
        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.APPROVED
        assert [a.category for a in platform.alerts.for_account(account_id)] == ["rail_retries_exhausted"]

        # A fresh release goes through once the rail recovers
        assert platform.release_milestone(design).status == TransactionStatus.COMPLETED

    def test_declined_release_leaves_balance(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.decline_next()

        milestone = platform.approve_milestone(design, CLIENT)

        assert milestone.status == MilestoneStatus.APPROVED
        assert available(platform, record.account.id) == 1000.00

    def test_webhook_confirms_and_duplicates_are_ignored(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.defer_next()

        platform.approve_milestone(design, CLIENT)
        release = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        assert release.status == TransactionStatus.PROCESSING

        confirmed = platform.handle_rail_webhook(release.payment_intent_id, succeeded=True)
        assert confirmed.status == TransactionStatus.COMPLETED
        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.RELEASED

        duplicate = platform.handle_rail_webhook(release.payment_intent_id, succeeded=True)
        assert duplicate.status == TransactionStatus.COMPLETED
        assert available(platform, account_id) == 500.00

    def test_webhook_for_unknown_intent(self):
        platform = make_platform()
        with pytest.raises(EntityNotFound):
            platform.handle_rail_webhook("tr_unknown", succeeded=True)

    def test_unconfirmed_transactions_expire(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.defer_next()
        platform.approve_milestone(design, CLIENT)

        assert platform.processor.expire_stale(datetime.now() + timedelta(minutes=5)) == []
        expired = platform.processor.expire_stale(datetime.now() + timedelta(minutes=31))

        assert [t.status for t in expired] == [TransactionStatus.FAILED]
        assert "rail_confirmation_timeout" in [a.category for a in platform.alerts.for_account(account_id)]

        late = platform.handle_rail_webhook(expired[0].payment_intent_id, succeeded=True)
        assert late.status == TransactionStatus.FAILED
        assert available(platform, account_id) == 1000.00

    def test_frozen_hold_escalates_once(self):
        platform = make_platform(fraud_rules=[])
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.fail_next()
        platform.approve_milestone(design, CLIENT)
        platform.ledger.freeze_account(account_id, "Manual review", frozen_by=ADMIN)

        platform.run_scheduled_jobs(datetime.now() + timedelta(hours=1))
        assert platform.alerts.for_account(account_id) == []

        for days in (2, 10, 100):
            platform.run_scheduled_jobs(datetime.now() + timedelta(days=days))

        release = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        assert release.status == TransactionStatus.PENDING
        assert release.held_since is not None
        assert release.hold_escalated_at is not None
        assert [a.category for a in platform.alerts.for_account(account_id)] == ["transaction_held"]

        # Unfreezing lets the retry through and clears the hold
        platform.unfreeze_account(account_id, ADMIN)
        retried = platform.processor.process_retries(datetime.now() + timedelta(days=101))
        assert [t.status for t in retried] == [TransactionStatus.COMPLETED]
        assert retried[0].held_since is None
        assert available(platform, account_id) == 500.00

    def test_cancel_pending_transaction(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.fail_next()
        platform.approve_milestone(design, CLIENT)
        release = transactions_of(platform, record.account.id, TransactionType.RELEASE)[0]

        cancelled = platform.cancel_transaction(release.id, ADMIN)

        assert cancelled.status == TransactionStatus.CANCELLED
        assert platform.processor.process_retries(datetime.now() + timedelta(minutes=10)) == []

    def test_completed_transactions_cannot_be_cancelled(self):
        platform = make_platform()
        record = create_escrow(platform)
        deposit = transactions_of(platform, record.account.id, TransactionType.DEPOSIT)[0]

        with pytest.raises(ValidationError):
            platform.cancel_transaction(deposit.id, ADMIN)

# ============================================
# FREEZE, HALT & RECONCILIATION
# ============================================

class TestLedgerIntegrity:
    """Fold mismatches halt the account until reconciled by hand."""

    def test_fold_mismatch_halts_account(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id
        platform.storage._records[account_id].account.available_amount = 999.00

        with pytest.raises(InvariantViolation):
            platform.ledger.compute_available(account_id)

        account = platform.get_account(account_id).account
        assert account.status == AccountStatus.DISPUTED
        assert account.frozen_by == "invariant_enforcer"
        assert [a.category for a in platform.alerts.for_account(account_id)] == ["invariant_violation"]

    def test_mutation_on_inconsistent_account_is_rejected(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id
        platform.storage._records[account_id].account.available_amount = 1200.00

        with pytest.raises(InvariantViolation):
            platform.refund(account_id, 100.00, "Scope reduced", ADMIN)

        assert platform.get_account(account_id).account.is_frozen
        assert transactions_of(platform, account_id, TransactionType.REFUND) == []

    def test_reconcile_all_reports_halted_accounts(self):
        platform = make_platform()
        good = create_escrow(platform, project_id="PRJ-A").account.id
        bad = create_escrow(platform, project_id="PRJ-B").account.id
        platform.storage._records[bad].account.available_amount = 10.00

        assert platform.ledger.reconcile_all() == [bad]
        assert not platform.get_account(good).account.is_frozen

    def test_unfreeze_requires_manual_reconciliation(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id
        platform.storage._records[account_id].account.available_amount = 999.00
        with pytest.raises(InvariantViolation):
            platform.ledger.compute_available(account_id)

        with pytest.raises(InvariantViolation):
            platform.unfreeze_account(account_id, ADMIN)
        with pytest.raises(ValidationError):
            platform.reconcile_account(account_id, ADMIN, "")

        platform.reconcile_account(account_id, ADMIN, "Rail statement confirms 1000.00")
        account = platform.unfreeze_account(account_id, ADMIN)

        assert account.status == AccountStatus.ACTIVE
        assert account.available_amount == 1000.00
        assert account.unfrozen_by == ADMIN

    def test_frozen_account_blocks_money_movement(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.ledger.freeze_account(account_id, "Manual review", frozen_by=ADMIN)

        with pytest.raises(AccountFrozenError):
            platform.refund(account_id, 100.00, "Scope reduced", ADMIN)
        with pytest.raises(AccountFrozenError):
            platform.approve_milestone(design, CLIENT)
        assert available(platform, account_id) == 1000.00

    def test_unfreeze_unfrozen_account(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        with pytest.raises(ValidationError):
            platform.unfreeze_account(account_id, ADMIN)

# ============================================
# CLOSE-OUT
# ============================================

class TestCloseOut:
    """Settlement and cancellation."""

    def test_cancel_unfunded_escrow(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id

        assert platform.cancel_account(account_id, CLIENT).status == AccountStatus.CANCELLED

    def test_cancel_refunds_partial_deposit(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id
        platform.fund(account_id, 400.00)

        account = platform.cancel_account(account_id, CLIENT)

        assert account.status == AccountStatus.CANCELLED
        assert account.available_amount == 0.0
        assert [t.amount for t in transactions_of(platform, account_id, TransactionType.REFUND)] == [400.00]

    def test_cancel_refused_once_work_started(self):
        platform = make_platform()
        record = create_escrow(platform)
        platform.start_milestone(milestone_ids(record)[0], FREELANCER)

        with pytest.raises(ValidationError):
            platform.cancel_account(record.account.id, CLIENT)

    def test_settle_collects_fee_and_refunds_rest(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.approve_milestone(design, CLIENT)

        account = platform.settle_account(account_id, ADMIN)

        assert account.status == AccountStatus.COMPLETED
        assert account.available_amount == 0.0
        assert [t.amount for t in transactions_of(platform, account_id, TransactionType.FEE)] == [50.00]
        assert [t.amount for t in transactions_of(platform, account_id, TransactionType.REFUND)] == [450.00]

# ============================================
# DISPUTES
# ============================================

class TestDisputes:
    """Dispute workflow and resolution side effects."""

    def test_opening_dispute_marks_milestone_not_account(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)

        dispute = platform.open_dispute(record.account.id, CLIENT, DisputeType.QUALITY, "Missing screens", milestone_id=design)

        snapshot = platform.get_account(record.account.id)
        assert dispute.status == DisputeStatus.OPEN
        assert snapshot.milestones[design].status == MilestoneStatus.DISPUTED
        assert snapshot.account.status == AccountStatus.ACTIVE

    def test_released_milestone_cannot_be_disputed(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.approve_milestone(design, CLIENT)

        with pytest.raises(ValidationError):
            platform.open_dispute(record.account.id, CLIENT, DisputeType.QUALITY, "Late complaint", milestone_id=design)

        # Post-release complaints go against the account
        dispute = platform.open_dispute(record.account.id, CLIENT, DisputeType.QUALITY, "Late complaint")
        assert dispute.milestone_id is None

    def test_only_parties_open_disputes(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        with pytest.raises(ValidationError):
            platform.open_dispute(account_id, "STRANGER", DisputeType.PAYMENT, "Who knows")

    def test_one_open_dispute_per_scope(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        platform.open_dispute(account_id, CLIENT, DisputeType.COMMUNICATION, "Unresponsive")

        with pytest.raises(ValidationError):
            platform.open_dispute(account_id, FREELANCER, DisputeType.PAYMENT, "Late payment")

    def test_open_dispute_blocks_approval(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.open_dispute(record.account.id, FREELANCER, DisputeType.SCOPE, "Scope creep")

        with pytest.raises(ValidationError) as exc_info:
            platform.approve_milestone(design, CLIENT)
        assert exc_info.value.code == "dispute_open"

    def test_dispute_cancels_pending_release(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.fail_next()
        platform.approve_milestone(design, CLIENT)

        platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Broken build", milestone_id=design)

        release = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        assert release.status == TransactionStatus.CANCELLED
        assert available(platform, account_id) == 1000.00

    def test_account_dispute_stops_scheduled_release(self):
        platform = make_platform(fraud_rules=[])
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.decline_next()
        platform.approve_milestone(design, CLIENT)
        platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Work does not match the brief")

        summary = platform.run_scheduled_jobs()

        assert summary['released'] == 0
        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.APPROVED
        assert available(platform, account_id) == 1000.00
        with pytest.raises(ValidationError) as exc_info:
            platform.release_milestone(design)
        assert exc_info.value.code == "dispute_open"

    def test_account_dispute_cancels_pending_releases(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.rail.fail_next()
        platform.approve_milestone(design, CLIENT)

        platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Wrong deliverable")

        release = transactions_of(platform, account_id, TransactionType.RELEASE)[0]
        assert release.status == TransactionStatus.CANCELLED
        assert platform.processor.process_retries(datetime.now() + timedelta(minutes=10)) == []
        assert available(platform, account_id) == 1000.00

    def test_milestone_award_waits_for_account_dispute(self):
        platform = make_platform(fraud_rules=[])
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        milestone_dispute = platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Missing screens", milestone_id=design)
        account_dispute = platform.open_dispute(account_id, FREELANCER, DisputeType.PAYMENT, "Client withholding payment")

        to_mediation(platform, milestone_dispute.id)
        platform.resolve_dispute(milestone_dispute.id, DisputeResolution.FREELANCER_FAVOR, ADMIN)

        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.APPROVED
        assert available(platform, account_id) == 1000.00

        to_mediation(platform, account_dispute.id)
        platform.resolve_dispute(account_dispute.id, DisputeResolution.NO_ACTION, ADMIN)
        platform.run_scheduled_jobs()

        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.RELEASED
        assert available(platform, account_id) == 500.00

    def test_high_value_dispute_freezes_escrow(self):
        platform = make_platform(high_value_dispute_threshold=500.00)
        account_id = create_escrow(platform).account.id

        dispute = platform.open_dispute(account_id, CLIENT, DisputeType.DELIVERY, "Nothing delivered")

        account = platform.get_account(account_id).account
        assert account.status == AccountStatus.DISPUTED
        assert account.frozen_by == "dispute_service"
        assert account.freeze_reason == "High-value dispute initiated"

        to_mediation(platform, dispute.id)
        with pytest.raises(AccountFrozenError):
            platform.resolve_dispute(dispute.id, DisputeResolution.FULL_REFUND, ADMIN)

        platform.unfreeze_account(account_id, ADMIN)
        resolved = platform.resolve_dispute(dispute.id, DisputeResolution.FULL_REFUND, ADMIN)
        assert resolved.status == DisputeStatus.RESOLVED
        assert available(platform, account_id) == 50.00

    def test_dispute_at_threshold_does_not_freeze(self):
        platform = make_platform(high_value_dispute_threshold=1000.00)
        account_id = create_escrow(platform).account.id

        platform.open_dispute(account_id, CLIENT, DisputeType.DELIVERY, "Nothing delivered")

        assert platform.get_account(account_id).account.status == AccountStatus.ACTIVE

    def test_workflow_order_enforced(self):
        platform = make_platform()
        record = create_escrow(platform)
        dispute = platform.open_dispute(record.account.id, CLIENT, DisputeType.DELIVERY, "Late")

        with pytest.raises(ValidationError):
            platform.resolve_dispute(dispute.id, DisputeResolution.NO_ACTION, ADMIN)
        with pytest.raises(ValidationError):
            platform.advance_dispute(dispute.id, DisputeStatus.MEDIATION, ADMIN)
        with pytest.raises(ValidationError):
            platform.advance_dispute(dispute.id, DisputeStatus.RESOLVED, ADMIN)

        to_mediation(platform, dispute.id)
        escalated = platform.advance_dispute(dispute.id, DisputeStatus.ESCALATED, ADMIN)
        assert escalated.escalated_at is not None
        resolved = platform.resolve_dispute(dispute.id, DisputeResolution.NO_ACTION, ADMIN)
        assert resolved.status == DisputeStatus.RESOLVED
        assert [h['to'] for h in resolved.history] == ["open", "investigating", "mediation", "escalated", "resolved"]

    def test_partial_refund_keeps_milestone_disputed(self):
        """partial_refund of 200 on a 500 milestone: one refund, milestone stays disputed."""
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        dispute = platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Half delivered", milestone_id=design)
        to_mediation(platform, dispute.id)

        resolved = platform.resolve_dispute(dispute.id, DisputeResolution.PARTIAL_REFUND, ADMIN, resolution_amount=200.00)

        refunds = transactions_of(platform, account_id, TransactionType.REFUND)
        snapshot = platform.get_account(account_id)
        assert [(t.amount, t.status) for t in refunds] == [(200.00, TransactionStatus.COMPLETED)]
        assert refunds[0].dispute_id == dispute.id
        assert resolved.resolution_amount == 200.00
        assert snapshot.account.available_amount == 800.00
        assert snapshot.milestones[design].status == MilestoneStatus.DISPUTED
        assert not snapshot.milestones[design].is_closed
        assert snapshot.account.status == AccountStatus.ACTIVE

    def test_partial_refund_needs_amount_within_milestone(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)
        dispute = platform.open_dispute(record.account.id, CLIENT, DisputeType.QUALITY, "Bad", milestone_id=design)
        to_mediation(platform, dispute.id)

        with pytest.raises(ValidationError):
            platform.resolve_dispute(dispute.id, DisputeResolution.PARTIAL_REFUND, ADMIN)
        with pytest.raises(ValidationError):
            platform.resolve_dispute(dispute.id, DisputeResolution.PARTIAL_REFUND, ADMIN, resolution_amount=600.00)
        assert platform.disputes.get_dispute(dispute.id).status == DisputeStatus.MEDIATION

    def test_client_favor_on_last_milestone_closes_escrow(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design, build = milestone_ids(record)
        deliver(platform, design)
        platform.approve_milestone(design, CLIENT)
        deliver(platform, build)
        dispute = platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Build fails", milestone_id=build)
        to_mediation(platform, dispute.id)

        platform.resolve_dispute(dispute.id, DisputeResolution.CLIENT_FAVOR, ADMIN)

        account = platform.get_account(account_id).account
        assert [t.amount for t in transactions_of(platform, account_id, TransactionType.REFUND)] == [450.00]
        assert account.fee_collected
        assert account.available_amount == 0.0
        assert account.status == AccountStatus.COMPLETED

    def test_freelancer_favor_releases_milestone(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        dispute = platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Not convinced", milestone_id=design)
        to_mediation(platform, dispute.id)

        resolved = platform.resolve_dispute(dispute.id, DisputeResolution.FREELANCER_FAVOR, ADMIN)

        assert resolved.resolution_amount == 500.00
        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.RELEASED
        assert available(platform, account_id) == 500.00

    def test_no_action_reverts_to_approved(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        dispute = platform.open_dispute(account_id, FREELANCER, DisputeType.PAYMENT, "Client silent", milestone_id=design)
        to_mediation(platform, dispute.id)

        resolved = platform.resolve_dispute(dispute.id, DisputeResolution.NO_ACTION, ADMIN)

        assert resolved.transaction_ids == []
        assert platform.get_account(account_id).milestones[design].status == MilestoneStatus.APPROVED
        assert platform.release_milestone(design).status == TransactionStatus.COMPLETED

    def test_account_full_refund_keeps_fee(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id
        dispute = platform.open_dispute(account_id, CLIENT, DisputeType.DELIVERY, "Never started")
        to_mediation(platform, dispute.id)

        resolved = platform.resolve_dispute(dispute.id, DisputeResolution.FULL_REFUND, ADMIN)

        assert resolved.resolution_amount == 950.00
        assert available(platform, account_id) == 50.00

    def test_partial_refund_then_admin_settlement(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        dispute = platform.open_dispute(account_id, CLIENT, DisputeType.QUALITY, "Half delivered", milestone_id=design)
        to_mediation(platform, dispute.id)
        platform.resolve_dispute(dispute.id, DisputeResolution.PARTIAL_REFUND, ADMIN, resolution_amount=200.00)

        account = platform.settle_account(account_id, ADMIN)

        assert account.status == AccountStatus.COMPLETED
        assert sorted(t.amount for t in transactions_of(platform, account_id, TransactionType.REFUND)) == [200.00, 750.00]

# ============================================
# INSURANCE CLAIMS
# ============================================

class TestInsuranceClaims:
    """Claims against fraud-insured escrows."""

    def test_claim_paid_from_insurance_pool(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.6).account.id

        claim = platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.NON_DELIVERY, 500.00, "Freelancer vanished")
        assert claim.status == InsuranceClaimStatus.SUBMITTED

        platform.review_claim(claim.id, ADMIN)
        approved = platform.approve_claim(claim.id, ADMIN)
        assert approved.approved_amount == 400.00  # 80% coverage

        paid = platform.pay_claim(claim.id, ADMIN)
        assert paid.status == InsuranceClaimStatus.PAID
        assert paid.paid_at is not None
        assert available(platform, account_id) == 1000.00

        payouts = transactions_of(platform, account_id, TransactionType.INSURANCE_CLAIM)
        assert [(t.amount, t.status) for t in payouts] == [(400.00, TransactionStatus.COMPLETED)]

    def test_approved_amount_capped_by_coverage(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.6).account.id
        claim = platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.FRAUD, 500.00)
        platform.review_claim(claim.id, ADMIN)
        platform.investigate_claim(claim.id, ADMIN, "Checking payout account")

        assert platform.approve_claim(claim.id, ADMIN, approved_amount=450.00).approved_amount == 400.00

    def test_claim_amount_capped_at_total(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.8).account.id

        claim = platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.IDENTITY_THEFT, 5000.00)
        assert claim.claim_amount == 1000.00

    def test_claims_need_fraud_insurance(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.2).account.id

        with pytest.raises(ValidationError):
            platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.FRAUD, 100.00)

    def test_denial_requires_notes(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.6).account.id
        claim = platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.QUALITY_ISSUE, 100.00)
        platform.review_claim(claim.id, ADMIN)

        with pytest.raises(ValidationError):
            platform.deny_claim(claim.id, ADMIN, "")
        denied = platform.deny_claim(claim.id, ADMIN, "Quality issues are not covered")
        assert denied.status == InsuranceClaimStatus.DENIED

        with pytest.raises(ValidationError):
            platform.pay_claim(claim.id, ADMIN)

    def test_claim_workflow_order(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.6).account.id
        claim = platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.FRAUD, 100.00)

        with pytest.raises(ValidationError):
            platform.approve_claim(claim.id, ADMIN)
        with pytest.raises(ValidationError):
            platform.pay_claim(claim.id, ADMIN)

    def test_frozen_account_can_still_pay_claims(self):
        platform = make_platform()
        account_id = create_escrow(platform, risk_score=0.6).account.id
        claim = platform.file_insurance_claim(account_id, CLIENT, InsuranceClaimType.FRAUD, 300.00)
        platform.review_claim(claim.id, ADMIN)
        platform.approve_claim(claim.id, ADMIN)
        platform.ledger.freeze_account(account_id, "Fraud investigation", frozen_by=ADMIN)

        assert platform.pay_claim(claim.id, ADMIN).status == InsuranceClaimStatus.PAID

# ============================================
# FRAUD SCORING
# ============================================

class TestFraudRules:
    """Rule evaluation and aggregation."""

    def test_rule_contributes_observed_score(self):
        rule = score_rule(Severity.HIGH)
        assert rule.evaluate({'score': 0.85}) == 0.85
        assert rule.evaluate({'score': 0.79}) is None
        assert rule.evaluate({}) is None

    def test_conditions_gate_rule(self):
        rule = score_rule(Severity.MEDIUM, risk_score=0.6, conditions=[RuleCondition("amount", ">=", 1000)])
        assert rule.evaluate({'score': 0.9, 'amount': 500}) is None
        assert rule.evaluate({'score': 0.9, 'amount': 1500}) == 0.6

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            RuleCondition("amount", "~=", 10)
        with pytest.raises(ValidationError):
            score_rule(Severity.LOW, threshold_operator="between")

    def test_first_match_per_rule_type_by_priority(self):
        platform = make_platform(fraud_rules=[
            score_rule(Severity.LOW, rule_id="R-LOW", risk_score=0.3, priority=1),
            score_rule(Severity.CRITICAL, rule_id="R-HIGH", risk_score=0.9, priority=2),
        ])
        engine = platform.fraud

        triggered = engine.evaluate_rules(lambda _: {'score': 0.85})
        assert [r.id for r, _ in triggered] == ["R-LOW"]
        assert engine.aggregate(triggered) == 0.3

    def test_max_plus_additive_aggregation(self):
        platform = make_platform(fraud_rules=[
            score_rule(Severity.HIGH, rule_id="R-VEL", rule_type=RuleType.VELOCITY,
                       threshold_field="velocity", threshold_value=1, risk_score=0.6),
            score_rule(Severity.MEDIUM, rule_id="R-DSP", rule_type=RuleType.PATTERN,
                       threshold_field="disputes", threshold_value=1, risk_score=0.25,
                       composition=Composition.ADDITIVE),
        ])
        engine = platform.fraud

        triggered = engine.evaluate_rules(lambda _: {'velocity': 2, 'disputes': 1})
        assert engine.aggregate(triggered) == 0.85

    def test_disabled_rules_skipped(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.HIGH)])
        platform.fraud.set_rule_enabled("R-SCORE", False)

        assert platform.fraud.evaluate_rules(lambda _: {'score': 0.95}) == []

    def test_alert_requires_user_and_score(self):
        with pytest.raises(ValidationError):
            FraudDetectionAlert(id="FDA-1", user_id="", risk_score=0.5, severity=Severity.LOW, rule_id=None)
        with pytest.raises(ValidationError):
            FraudDetectionAlert(id="FDA-1", user_id=CLIENT, risk_score=1.5, severity=Severity.LOW, rule_id=None)


class TestFraudEngine:
    """Alerts, cases, freezes and the watchlist."""

    def test_critical_alert_freezes_account(self):
        """score 0.85 against a >= 0.80 critical rule: alert + freeze."""
        platform = make_platform(fraud_rules=[score_rule(Severity.CRITICAL)])
        account_id = create_escrow(platform).account.id

        assessment = platform.fraud.assess_context(CLIENT, {'score': 0.85}, account_id=account_id)

        account = platform.get_account(account_id).account
        assert assessment.alert.severity == Severity.CRITICAL
        assert assessment.alert.risk_score == 0.85
        assert assessment.action_taken == ActionTaken.FREEZE
        assert account.status == AccountStatus.DISPUTED
        assert account.frozen_by == "fraud_engine"

    def test_all_alerts_lists_every_account(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.HIGH)])
        first = create_escrow(platform).account.id
        second = create_escrow(platform, project_id="PRJ-002").account.id

        platform.fraud.assess_context(CLIENT, {'score': 0.9}, account_id=first)
        platform.fraud.assess_context(CLIENT, {'score': 0.9}, account_id=second)

        assert sorted(a.account_id for a in platform.fraud.all_alerts()) == sorted([first, second])

    def test_high_alert_does_not_freeze(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.HIGH)])
        account_id = create_escrow(platform).account.id

        assessment = platform.fraud.assess_context(CLIENT, {'score': 0.85}, account_id=account_id)

        assert assessment.alert.severity == Severity.HIGH
        assert assessment.alert.case_id is not None
        assert assessment.action_taken == ActionTaken.INVESTIGATE
        assert platform.get_account(account_id).account.status == AccountStatus.ACTIVE

    def test_below_threshold_logged_without_alert(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.CRITICAL)])
        account_id = create_escrow(platform, alert_threshold=0.9).account.id

        assessment = platform.fraud.assess_context(CLIENT, {'score': 0.85}, account_id=account_id)

        assert assessment.triggered == [("R-SCORE", 0.85)]
        assert assessment.alert is None
        assert platform.fraud.logs[-1].action_taken == ActionTaken.NONE
        assert not platform.get_account(account_id).account.is_frozen

    def test_alerts_join_open_case(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.HIGH)])
        account_id = create_escrow(platform).account.id

        first = platform.fraud.assess_context(CLIENT, {'score': 0.82}, account_id=account_id)
        second = platform.fraud.assess_context(CLIENT, {'score': 0.90}, account_id=account_id)

        case = platform.fraud.get_case(first.alert.case_id)
        assert second.alert.case_id == case.id
        assert case.alert_ids == [first.alert.id, second.alert.id]
        assert case.fraud_score == 90.0

    def test_false_positive_does_not_unfreeze(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.CRITICAL)])
        account_id = create_escrow(platform).account.id
        alert = platform.fraud.assess_context(CLIENT, {'score': 0.85}, account_id=account_id).alert

        corrected = platform.fraud.mark_false_positive(alert.id, ADMIN, "Known corporate card")

        assert corrected.status == AlertStatus.FALSE_POSITIVE
        assert platform.fraud.logs[-1].false_positive
        assert platform.get_account(account_id).account.is_frozen

        assert platform.unfreeze_account(account_id, ADMIN).status == AccountStatus.ACTIVE

    def test_resolved_case_is_immutable(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.HIGH)])
        alert = platform.fraud.assess_context(CLIENT, {'score': 0.85}).alert

        platform.fraud.resolve_case(alert.case_id, CaseStatus.CONFIRMED, ADMIN, "Stolen card")

        with pytest.raises(ValidationError):
            platform.fraud.resolve_case(alert.case_id, CaseStatus.FALSE_POSITIVE, ADMIN)

    def test_watchlist_after_repeated_critical_alerts(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.CRITICAL)])

        platform.fraud.assess_context(FREELANCER, {'score': 0.85})
        platform.fraud.assess_context(FREELANCER, {'score': 0.88})
        assert not platform.fraud.is_watchlisted(FREELANCER)

        platform.fraud.assess_context(FREELANCER, {'score': 0.91})
        assert platform.fraud.is_watchlisted(FREELANCER)
        assert len(platform.fraud.watchlist[FREELANCER].alert_ids) == 3

    def test_alert_admin_actions(self):
        platform = make_platform(fraud_rules=[score_rule(Severity.MEDIUM)])
        alert = platform.fraud.assess_context(CLIENT, {'score': 0.85}).alert

        assert platform.fraud.acknowledge_alert(alert.id, ADMIN).status == AlertStatus.ACKNOWLEDGED
        with pytest.raises(ValidationError):
            platform.fraud.acknowledge_alert(alert.id, ADMIN)
        assert platform.fraud.resolve_alert(alert.id, ADMIN).status == AlertStatus.RESOLVED
        with pytest.raises(EntityNotFound):
            platform.fraud.get_alert("FDA-MISSING")

    def test_velocity_rule_with_account_threshold(self):
        platform = make_platform()
        account_id = create_escrow(platform, alert_threshold=0.7).account.id
        for _ in range(4):
            platform.fraud.record_payment(CLIENT, 100.00)

        assessment = platform.fraud.assess(CLIENT, account_id=account_id, amount=100.00)

        assert "FR-VELOCITY" in [rule_id for rule_id, _ in assessment.triggered]
        assert assessment.alert.rule_id == "FR-VELOCITY"
        assert assessment.alert.severity == Severity.HIGH
        assert not platform.get_account(account_id).account.is_frozen

    def test_bot_typing_behavior(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        for _ in range(4):
            assert platform.fraud.record_behavior(FREELANCER, typing_interval_ms=20) is None
        assessment = platform.fraud.record_behavior(FREELANCER, typing_interval_ms=22, account_id=account_id)

        assert assessment.alert.rule_id == "FR-BOT-TYPING"
        assert assessment.alert.severity == Severity.HIGH

    def test_pipeline_scores_committed_events(self):
        platform = make_platform()
        account_id = create_escrow(platform, fund=False).account.id
        platform.rail.decline_next(3)
        for _ in range(3):
            platform.fund(account_id, 1000.00)

        assessments = platform.fraud_pipeline.drain()

        assert len(assessments) == 6  # three created, three failed
        assert len(platform.fraud.activity[CLIENT].failed_payments) == 3
        assert platform.fraud_pipeline.queue.empty()

# ============================================
# AUDIT LOG
# ============================================

class TestAuditLog:
    """Hash-chained, append-only audit trail."""

    def test_every_mutation_is_logged(self):
        platform = make_platform()
        record = create_escrow(platform)
        design = milestone_ids(record)[0]
        deliver(platform, design)

        actions = [e.action for e in platform.audit_log.for_record(record.account.id)]
        assert actions[0] == "created"
        assert "funded" in actions
        assert [e.action for e in platform.audit_log.for_record(design)] == ["created", "started", "submitted"]

        sequences = [e.sequence for e in platform.audit_log.entries]
        assert sequences == list(range(1, len(sequences) + 1))
        assert platform.audit_log.verify_chain()

    def test_user_and_system_actors(self):
        platform = make_platform()
        record = create_escrow(platform)
        entries = platform.audit_log.for_record(record.account.id)

        assert entries[0].actor_type == "user"
        assert any(e.actor_type == "system" for e in entries)

    def test_tampering_detected(self):
        platform = make_platform()
        create_escrow(platform)
        log = platform.audit_log
        log._entries[2] = dataclasses.replace(log._entries[2], new_values={'available_amount': 0})

        assert log.find_first_broken() == 3
        with pytest.raises(SystemCompromised):
            log.assert_intact()
        assert not platform.run_scheduled_jobs()['audit_chain_intact']

    def test_removed_entry_detected(self):
        platform = make_platform()
        create_escrow(platform)
        del platform.audit_log._entries[1]

        assert not platform.audit_log.verify_chain()

# ============================================
# CONCURRENCY
# ============================================

class TestConcurrency:
    """Per-account serialization under parallel callers."""

    def test_parallel_releases_debit_once(self):
        platform = make_platform()
        record = create_escrow(platform)
        account_id = record.account.id
        design = milestone_ids(record)[0]
        deliver(platform, design)
        platform.milestones.approve(design, CLIENT)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: platform.release_milestone(design), range(8)))

        assert len({t.id for t in results}) == 1
        assert len(transactions_of(platform, account_id, TransactionType.RELEASE)) == 1
        assert available(platform, account_id) == 500.00

    def test_parallel_refunds_never_overdraw(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        def refund(_):
            try:
                return platform.refund(account_id, 150.00, "Parallel refund", ADMIN)
            except InsufficientFundsError:
                return None

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(refund, range(10)))

        succeeded = [r for r in results if r is not None]
        assert len(succeeded) == 6
        assert available(platform, account_id) == 100.00
        assert platform.ledger.compute_available(account_id) == 100.00

    def test_parallel_creates_for_one_project(self):
        platform = make_platform()
        barrier = threading.Barrier(20)

        def create(n):
            barrier.wait()
            try:
                return platform.create_escrow("PRJ-RACE", f"EMP-{n:03d}", FREELANCER, 1000.00, risk_score=0.2)
            except ValidationError:
                return None

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(create, range(20)))

        created = [r for r in results if r is not None]
        assert len(created) == 1
        assert platform.storage.account_ids() == [created[0].account.id]
        assert platform.storage.account_id_for_project("PRJ-RACE") == created[0].account.id

    def test_snapshots_are_isolated(self):
        platform = make_platform()
        account_id = create_escrow(platform).account.id

        snapshot = platform.get_account(account_id)
        snapshot.account.available_amount = 0.0

        assert available(platform, account_id) == 1000.00

# ============================================
# SYSTEM HEALTH
# ============================================

class TestSystemHealth:

    def test_health_report(self):
        platform = make_platform()
        create_escrow(platform)
        health = platform.get_system_health()

        assert health['total_accounts'] == 1
        assert health['frozen_accounts'] == 0
        assert health['total_invariant_checks'] > 0
        assert health['health_score'] == 1.0
        assert health['decision_integrity']
        assert health['audit_chain_intact']
        assert health['rail_status'] is True

    def test_typed_errors_share_base(self):
        assert issubclass(AccountFrozenError, ValidationError)
        assert issubclass(InvariantViolation, EscrowError)
        assert AccountFrozenError("frozen").code == "account_frozen"


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
