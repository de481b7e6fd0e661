"""
WorkWise Escrow (WWE) - Fraud & Risk Scoring
Version: 1.0.0
Feature: Rule-driven fraud detection over transactional and behavioral signals

Signals feeding the composite score:
- Velocity (bursts of payments)
- Unusual amount (vs. the user's own average)
- Rapid milestone completion
- Repeated disputes
- Failed payment attempts
- Device fingerprint churn
- Typing dynamics (bot-like input)
- Round amounts

Rules are evaluated in ascending priority; the first match per rule type wins
that category. The aggregate score is the max of max-composed rules plus the
sum of additive rules, capped at 1.0. Scores are normalized to 0-1; cases
carry fraud_score on the 0-100 scale.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
import operator
import queue
import statistics
import threading
import uuid

from wwe_enforcement_v1 import (
    EscrowPolicy,
    EscrowError,
    ValidationError,
    EntityNotFound,
    logger
)
from wwe_storage_v1 import EscrowStorage
from wwe_escrow_ledger_v1 import LedgerService
from wwe_audit_log_v1 import EscrowEvent
from wwe_metrics import (
    record_fraud_assessment,
    record_fraud_alert,
    update_fraud_queue_depth
)

# ============================================
# FRAUD SIGNALS
# ============================================

class FraudSignal(Enum):
    """Individual fraud indicators."""
    VELOCITY = "velocity"  # Too many payments too fast
    UNUSUAL_AMOUNT = "unusual_amount"  # Far above the user's average
    RAPID_COMPLETION = "rapid_completion"  # Milestones submitted in bursts
    REPEATED_DISPUTES = "repeated_disputes"
    FAILED_PAYMENTS = "failed_payments"
    DEVICE_CHURN = "device_churn"  # Many device fingerprints
    TYPING_ANOMALY = "typing_anomaly"  # Inhumanly fast, uniform input
    ROUND_AMOUNT = "round_amount"


@dataclass
class SignalScore:
    """Score for individual fraud signal."""
    signal: FraudSignal
    weight: float
    triggered: bool
    confidence: float
    reason: str

    @property
    def contribution(self) -> float:
        if not self.triggered:
            return 0.0
        return self.weight * self.confidence

    def to_dict(self) -> Dict:
        return {
            'signal': self.signal.value,
            'weight': self.weight,
            'confidence': self.confidence,
            'contribution': round(self.contribution, 4),
            'reason': self.reason,
        }

# ============================================
# RULES
# ============================================

class RuleType(Enum):
    THRESHOLD = "threshold"
    PATTERN = "pattern"
    BEHAVIORAL = "behavioral"
    VELOCITY = "velocity"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high", "critical"].index(self.value)


class Composition(Enum):
    MAX = "max"
    ADDITIVE = "additive"


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    '>': operator.gt,
    '>=': operator.ge,
    '<': operator.lt,
    '<=': operator.le,
    '==': operator.eq,
    '!=': operator.ne,
}


@dataclass
class RuleCondition:
    """One `field operator value` test against the evaluation context."""
    field: str
    operator: str
    value: Any

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise ValidationError(f"Unknown operator '{self.operator}'")

    def matches(self, context: Dict[str, Any]) -> bool:
        observed = context.get(self.field)
        if observed is None:
            return False
        return OPERATORS[self.operator](observed, self.value)

    def to_dict(self) -> Dict:
        return {'field': self.field, 'operator': self.operator, 'value': self.value}


@dataclass
class FraudDetectionRule:
    """Declarative rule evaluated over a time window.

    risk_score None means the rule contributes the observed value of its
    threshold field (used by rules that threshold the composite score).
    """
    id: str
    rule_name: str
    rule_type: RuleType
    threshold_value: float
    threshold_field: str = "score"
    threshold_operator: str = ">="
    conditions: List[RuleCondition] = field(default_factory=list)
    time_window_minutes: int = 60
    risk_score: Optional[float] = None
    severity: Severity = Severity.MEDIUM
    priority: int = 100
    composition: Composition = Composition.MAX
    enabled: bool = True
    description: str = ""
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None

    def __post_init__(self):
        if self.threshold_operator not in OPERATORS:
            raise ValidationError(f"Unknown threshold operator '{self.threshold_operator}'")
        if self.risk_score is not None and not 0.0 <= self.risk_score <= 1.0:
            raise ValidationError(f"Rule {self.id}: risk_score must be within 0-1")

    def evaluate(self, context: Dict[str, Any]) -> Optional[float]:
        """Contribution when the rule matches, else None."""
        if not all(c.matches(context) for c in self.conditions):
            return None
        observed = context.get(self.threshold_field)
        if observed is None or not OPERATORS[self.threshold_operator](observed, self.threshold_value):
            return None
        if self.risk_score is not None:
            return self.risk_score
        return max(0.0, min(1.0, float(observed)))

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'rule_name': self.rule_name,
            'rule_type': self.rule_type.value,
            'description': self.description,
            'conditions': [c.to_dict() for c in self.conditions],
            'threshold_field': self.threshold_field,
            'threshold_operator': self.threshold_operator,
            'threshold_value': self.threshold_value,
            'time_window_minutes': self.time_window_minutes,
            'risk_score': self.risk_score,
            'severity': self.severity.value,
            'priority': self.priority,
            'composition': self.composition.value,
            'enabled': self.enabled,
            'trigger_count': self.trigger_count,
            'last_triggered_at': self.last_triggered_at.isoformat() if self.last_triggered_at else None,
        }


def default_rules() -> List[FraudDetectionRule]:
    """Platform rule set (risk scores normalized to 0-1)."""
    return [
        FraudDetectionRule(
            id="FR-VELOCITY", rule_name="Payment Velocity Check", rule_type=RuleType.VELOCITY,
            description="More than 3 payments within 5 minutes",
            threshold_field="velocity", threshold_operator=">", threshold_value=3,
            time_window_minutes=5, risk_score=0.75, severity=Severity.HIGH, priority=1,
        ),
        FraudDetectionRule(
            id="FR-COMPOSITE", rule_name="Composite Risk Score", rule_type=RuleType.THRESHOLD,
            description="Weighted signal score at or above 0.80",
            threshold_field="score", threshold_operator=">=", threshold_value=0.80,
            time_window_minutes=1440, risk_score=None, severity=Severity.CRITICAL, priority=1,
        ),
        FraudDetectionRule(
            id="FR-HIGH-VALUE", rule_name="High Value Transaction", rule_type=RuleType.THRESHOLD,
            description="At least 3x the user's average and $1,000 or more",
            conditions=[RuleCondition("amount", ">=", 1000)],
            threshold_field="amount_ratio", threshold_operator=">=", threshold_value=3,
            time_window_minutes=60, risk_score=0.60, severity=Severity.MEDIUM, priority=2,
        ),
        FraudDetectionRule(
            id="FR-BOT-TYPING", rule_name="Automated Input", rule_type=RuleType.BEHAVIORAL,
            description="Keystroke intervals too fast and regular for a human",
            conditions=[RuleCondition("typing_samples", ">=", 5)],
            threshold_field="typing_interval_ms", threshold_operator="<", threshold_value=40,
            time_window_minutes=60, risk_score=0.80, severity=Severity.HIGH, priority=1,
        ),
        FraudDetectionRule(
            id="FR-DEVICE-CHURN", rule_name="Device Fingerprint Churn", rule_type=RuleType.BEHAVIORAL,
            description="Three or more devices within 24 hours",
            threshold_field="device_changes", threshold_operator=">=", threshold_value=3,
            time_window_minutes=1440, risk_score=0.70, severity=Severity.HIGH, priority=2,
        ),
        FraudDetectionRule(
            id="FR-FAILED-PAYMENTS", rule_name="Failed Payment Attempts", rule_type=RuleType.PATTERN,
            description="Three or more failed payments in 24 hours",
            threshold_field="failed_payments", threshold_operator=">=", threshold_value=3,
            time_window_minutes=1440, risk_score=0.65, severity=Severity.MEDIUM, priority=1,
        ),
        FraudDetectionRule(
            id="FR-RAPID-COMPLETION", rule_name="Rapid Milestone Completion", rule_type=RuleType.PATTERN,
            description="More than 3 milestones submitted in 24 hours",
            threshold_field="completions", threshold_operator=">", threshold_value=3,
            time_window_minutes=1440, risk_score=0.55, severity=Severity.MEDIUM, priority=2,
        ),
        FraudDetectionRule(
            id="FR-REPEATED-DISPUTES", rule_name="Repeated Disputes", rule_type=RuleType.PATTERN,
            description="Three or more disputes opened within 30 days",
            threshold_field="disputes", threshold_operator=">=", threshold_value=3,
            time_window_minutes=43200, risk_score=0.25, severity=Severity.MEDIUM, priority=3,
            composition=Composition.ADDITIVE,
        ),
    ]

# ============================================
# ALERTS, CASES, LOGS
# ============================================

class AlertStatus(Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class CaseStatus(Enum):
    INVESTIGATING = "investigating"
    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"
    RESOLVED = "resolved"


class ActionTaken(Enum):
    NONE = "none"
    FLAG = "flag"
    FREEZE = "freeze"
    INVESTIGATE = "investigate"
    RELEASE = "release"


@dataclass
class FraudDetectionAlert:
    id: str
    user_id: str
    risk_score: float
    severity: Severity
    rule_id: Optional[str]
    account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    case_id: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    description: str = ""
    evidence: Dict[str, Any] = field(default_factory=dict)
    acknowledged_by: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.user_id:
            raise ValidationError("a fraud alert must reference a user")
        if self.risk_score is None or not 0.0 <= self.risk_score <= 1.0:
            raise ValidationError("a fraud alert must carry a risk_score within 0-1")

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'account_id': self.account_id,
            'transaction_id': self.transaction_id,
            'rule_id': self.rule_id,
            'case_id': self.case_id,
            'risk_score': self.risk_score,
            'severity': self.severity.value,
            'status': self.status.value,
            'description': self.description,
            'evidence': self.evidence,
            'acknowledged_by': self.acknowledged_by,
            'resolved_by': self.resolved_by,
            'resolution_notes': self.resolution_notes,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class FraudDetectionCase:
    """Investigation aggregating related alerts for one user."""
    id: str
    user_id: str
    fraud_score: float  # 0-100
    severity: Severity
    alert_ids: List[str] = field(default_factory=list)
    account_ids: List[str] = field(default_factory=list)
    evidence: List[Dict[str, Any]] = field(default_factory=list)
    status: CaseStatus = CaseStatus.INVESTIGATING
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'fraud_score': self.fraud_score,
            'severity': self.severity.value,
            'alert_ids': list(self.alert_ids),
            'account_ids': list(self.account_ids),
            'evidence': list(self.evidence),
            'status': self.status.value,
            'resolved_by': self.resolved_by,
            'resolution_notes': self.resolution_notes,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class FraudDetectionLog:
    id: str
    user_id: str
    account_id: Optional[str]
    transaction_id: Optional[str]
    rule_ids: List[str]
    risk_score: float
    action_taken: ActionTaken
    alert_id: Optional[str] = None
    false_positive: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'account_id': self.account_id,
            'transaction_id': self.transaction_id,
            'rule_ids': list(self.rule_ids),
            'risk_score': self.risk_score,
            'action_taken': self.action_taken.value,
            'alert_id': self.alert_id,
            'false_positive': self.false_positive,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class WatchlistEntry:
    user_id: str
    reason: str
    alert_ids: List[str]
    added_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'user_id': self.user_id,
            'reason': self.reason,
            'alert_ids': list(self.alert_ids),
            'added_at': self.added_at.isoformat(),
        }


@dataclass
class FraudAssessment:
    """Outcome of one evaluation pass."""
    user_id: str
    account_id: Optional[str]
    score: float
    composite_score: float
    triggered: List[Tuple[str, float]]
    signals: List[SignalScore]
    action_taken: ActionTaken = ActionTaken.NONE
    alert: Optional[FraudDetectionAlert] = None
    assessed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'user_id': self.user_id,
            'account_id': self.account_id,
            'score': self.score,
            'composite_score': self.composite_score,
            'triggered_rules': [{'rule_id': r, 'contribution': c} for r, c in self.triggered],
            'triggered_signals': [s.to_dict() for s in self.signals if s.triggered],
            'action_taken': self.action_taken.value,
            'alert': self.alert.to_dict() if self.alert else None,
            'assessed_at': self.assessed_at.isoformat(),
        }

# ============================================
# USER ACTIVITY
# ============================================

@dataclass
class UserActivity:
    """Timestamped history the signals are computed from."""
    user_id: str
    payments: List[Tuple[datetime, float]] = field(default_factory=list)
    failed_payments: List[datetime] = field(default_factory=list)
    disputes: List[datetime] = field(default_factory=list)
    completions: List[datetime] = field(default_factory=list)
    devices: List[Tuple[datetime, str]] = field(default_factory=list)
    typing: List[Tuple[datetime, float]] = field(default_factory=list)

    @staticmethod
    def _since(items: List, cutoff: datetime) -> List:
        return [i for i in items if (i[0] if isinstance(i, tuple) else i) >= cutoff]

    def context(self, window_minutes: int, now: datetime, amount: float = 0.0) -> Dict[str, Any]:
        cutoff = now - timedelta(minutes=window_minutes)
        typing = [ms for _, ms in self._since(self.typing, cutoff)]
        return {
            'amount': amount,
            'amount_ratio': self.amount_ratio(amount),
            'velocity': len(self._since(self.payments, cutoff)),
            'failed_payments': len(self._since(self.failed_payments, cutoff)),
            'disputes': len(self._since(self.disputes, cutoff)),
            'completions': len(self._since(self.completions, cutoff)),
            'device_changes': len({d for _, d in self._since(self.devices, cutoff)}),
            'typing_samples': len(typing),
            'typing_interval_ms': statistics.mean(typing) if typing else None,
        }

    def amount_ratio(self, amount: float) -> float:
        # The current payment is already recorded; compare against the earlier ones
        previous = [a for _, a in self.payments[:-1]] if self.payments else []
        if not previous or not amount:
            return 0.0
        average = statistics.mean(previous)
        return round(amount / average, 4) if average > 0 else 0.0

# ============================================
# FRAUD DETECTION ENGINE
# ============================================

class FraudDetectionEngine:
    """Scores users, raises alerts, freezes escrows on critical findings."""

    # Signal weights (sum to 1.0)
    SIGNAL_WEIGHTS = {
        FraudSignal.VELOCITY: 0.20,
        FraudSignal.UNUSUAL_AMOUNT: 0.20,
        FraudSignal.RAPID_COMPLETION: 0.15,
        FraudSignal.REPEATED_DISPUTES: 0.15,
        FraudSignal.FAILED_PAYMENTS: 0.10,
        FraudSignal.DEVICE_CHURN: 0.10,
        FraudSignal.TYPING_ANOMALY: 0.05,
        FraudSignal.ROUND_AMOUNT: 0.05,
    }

    def __init__(self, storage: EscrowStorage, ledger: LedgerService, policy: EscrowPolicy,
                 rules: Optional[List[FraudDetectionRule]] = None):
        self.storage = storage
        self.ledger = ledger
        self.policy = policy
        self.rules: Dict[str, FraudDetectionRule] = {r.id: r for r in (default_rules() if rules is None else rules)}
        self.activity: Dict[str, UserActivity] = {}
        self.alerts: Dict[str, FraudDetectionAlert] = {}
        self.cases: Dict[str, FraudDetectionCase] = {}
        self.logs: List[FraudDetectionLog] = []
        self.watchlist: Dict[str, WatchlistEntry] = {}
        self._lock = threading.RLock()

        logger.info(f"[FRAUD] Engine initialized with {len(self.rules)} rules")

    # ---- rule administration ----

    def add_rule(self, rule: FraudDetectionRule) -> FraudDetectionRule:
        with self._lock:
            if rule.id in self.rules:
                raise ValidationError(f"Rule {rule.id} already exists")
            self.rules[rule.id] = rule
        logger.info(f"[FRAUD] Rule {rule.id} '{rule.rule_name}' added ({rule.rule_type.value}, priority {rule.priority})")
        return rule

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> FraudDetectionRule:
        with self._lock:
            rule = self._get(self.rules, rule_id, "rule")
            rule.enabled = enabled
        logger.info(f"[FRAUD] Rule {rule_id} {'enabled' if enabled else 'disabled'}")
        return rule

    # ---- activity ----

    def _activity(self, user_id: str) -> UserActivity:
        if user_id not in self.activity:
            self.activity[user_id] = UserActivity(user_id=user_id)
        return self.activity[user_id]

    def record_payment(self, user_id: str, amount: float, at: Optional[datetime] = None):
        with self._lock:
            self._activity(user_id).payments.append((at or datetime.now(), amount))

    def record_failed_payment(self, user_id: str, at: Optional[datetime] = None):
        with self._lock:
            self._activity(user_id).failed_payments.append(at or datetime.now())

    def record_dispute(self, user_id: str, at: Optional[datetime] = None):
        with self._lock:
            self._activity(user_id).disputes.append(at or datetime.now())

    def record_completion(self, user_id: str, at: Optional[datetime] = None):
        with self._lock:
            self._activity(user_id).completions.append(at or datetime.now())

    def record_behavior(
        self,
        user_id: str,
        device_fingerprint: Optional[str] = None,
        typing_interval_ms: Optional[float] = None,
        account_id: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> Optional[FraudAssessment]:
        """Behavioral telemetry; assessed right away when tied to an escrow."""
        at = at or datetime.now()
        with self._lock:
            activity = self._activity(user_id)
            if device_fingerprint:
                activity.devices.append((at, device_fingerprint))
            if typing_interval_ms is not None:
                activity.typing.append((at, float(typing_interval_ms)))
        if account_id is None:
            return None
        return self.assess(user_id, account_id=account_id, now=at)

    # ---- signals ----

    def calculate_signals(self, user_id: str, amount: float = 0.0, now: Optional[datetime] = None) -> List[SignalScore]:
        now = now or datetime.now()
        with self._lock:
            activity = self._activity(user_id)
            hour = activity.context(60, now, amount)
            day = activity.context(1440, now, amount)
            month = activity.context(43200, now, amount)

        w = self.SIGNAL_WEIGHTS
        signals = []

        velocity = hour['velocity']
        signals.append(SignalScore(
            FraudSignal.VELOCITY, w[FraudSignal.VELOCITY], velocity >= 5,
            min(1.0, velocity / 10), f"{velocity} payments in the last hour"
        ))

        ratio = hour['amount_ratio']
        signals.append(SignalScore(
            FraudSignal.UNUSUAL_AMOUNT, w[FraudSignal.UNUSUAL_AMOUNT], ratio >= 3,
            1.0 if ratio >= 5 else 0.7, f"{ratio:.1f}x the user's average"
        ))

        completions = day['completions']
        signals.append(SignalScore(
            FraudSignal.RAPID_COMPLETION, w[FraudSignal.RAPID_COMPLETION], completions > 1,
            0.8 if completions > 3 else 0.5, f"{completions} milestones submitted in 24h"
        ))

        disputes = month['disputes']
        signals.append(SignalScore(
            FraudSignal.REPEATED_DISPUTES, w[FraudSignal.REPEATED_DISPUTES], disputes >= 2,
            min(1.0, disputes / 4), f"{disputes} disputes in 30 days"
        ))

        failed = day['failed_payments']
        signals.append(SignalScore(
            FraudSignal.FAILED_PAYMENTS, w[FraudSignal.FAILED_PAYMENTS], failed >= 1,
            1.0 if failed >= 3 else 0.4, f"{failed} failed payments in 24h"
        ))

        devices = day['device_changes']
        signals.append(SignalScore(
            FraudSignal.DEVICE_CHURN, w[FraudSignal.DEVICE_CHURN], devices >= 2,
            1.0 if devices >= 3 else 0.5, f"{devices} devices in 24h"
        ))

        typing = hour['typing_interval_ms']
        bot_like = typing is not None and hour['typing_samples'] >= 5 and typing < 40
        signals.append(SignalScore(
            FraudSignal.TYPING_ANOMALY, w[FraudSignal.TYPING_ANOMALY], bot_like,
            1.0, f"mean keystroke interval {typing:.0f}ms" if typing is not None else "no typing data"
        ))

        signals.append(SignalScore(
            FraudSignal.ROUND_AMOUNT, w[FraudSignal.ROUND_AMOUNT], amount >= 1000 and amount % 1000 == 0,
            1.0, f"round amount ${amount:,.2f}"
        ))
        return signals

    # ---- evaluation ----

    def evaluate_rules(self, context_for: Callable[[int], Dict[str, Any]]) -> List[Tuple[FraudDetectionRule, float]]:
        """First matching rule per rule type, in ascending priority."""
        with self._lock:
            rules = sorted((r for r in self.rules.values() if r.enabled), key=lambda r: (r.priority, r.id))
        matched: Dict[RuleType, Tuple[FraudDetectionRule, float]] = {}
        for rule in rules:
            if rule.rule_type in matched:
                continue
            contribution = rule.evaluate(context_for(rule.time_window_minutes))
            if contribution is not None:
                matched[rule.rule_type] = (rule, contribution)
        return list(matched.values())

    @staticmethod
    def aggregate(triggered: List[Tuple[FraudDetectionRule, float]]) -> float:
        dominant = max((c for r, c in triggered if r.composition == Composition.MAX), default=0.0)
        additive = sum(c for r, c in triggered if r.composition == Composition.ADDITIVE)
        return round(min(1.0, dominant + additive), 4)

    def alert_threshold(self, account_id: Optional[str]) -> float:
        if account_id is not None:
            override = self.storage.snapshot(account_id).account.terms.alert_threshold
            if override is not None:
                return override
        return self.policy.fraud_alert_threshold

    def assess(
        self,
        user_id: str,
        account_id: Optional[str] = None,
        amount: float = 0.0,
        transaction_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> FraudAssessment:
        """Score a user's recent activity and act on the result."""
        now = now or datetime.now()
        signals = self.calculate_signals(user_id, amount, now)
        composite = round(min(1.0, sum(s.contribution for s in signals)), 4)
        risk_score = self.storage.snapshot(account_id).account.risk_score if account_id else 0.0

        def context_for(window_minutes: int) -> Dict[str, Any]:
            with self._lock:
                context = self._activity(user_id).context(window_minutes, now, amount)
            context['score'] = composite
            context['risk_score'] = risk_score
            return context

        return self._conclude(user_id, account_id, transaction_id, composite, signals, context_for, now)

    def assess_context(
        self,
        user_id: str,
        context: Dict[str, Any],
        account_id: Optional[str] = None,
        transaction_id: Optional[str] = None
    ) -> FraudAssessment:
        """Evaluate the rules against precomputed context values."""
        composite = float(context.get('score', 0.0))
        return self._conclude(user_id, account_id, transaction_id, composite, [], lambda _: dict(context), datetime.now())

    def _conclude(self, user_id, account_id, transaction_id, composite, signals, context_for, now) -> FraudAssessment:
        triggered = self.evaluate_rules(context_for)
        score = self.aggregate(triggered)
        record_fraud_assessment(score)

        assessment = FraudAssessment(
            user_id=user_id,
            account_id=account_id,
            score=score,
            composite_score=composite,
            triggered=[(r.id, c) for r, c in triggered],
            signals=signals,
            assessed_at=now,
        )
        if not triggered:
            return assessment

        with self._lock:
            for rule, _ in triggered:
                rule.trigger_count += 1
                rule.last_triggered_at = now

        threshold = self.alert_threshold(account_id)
        if score >= threshold:
            dominant, _ = max(triggered, key=lambda t: (t[1], t[0].severity.rank))
            self._raise_alert(assessment, dominant, transaction_id)
        else:
            logger.info(f"[FRAUD] {user_id}: score {score:.2f} below threshold {threshold:.2f}")

        self._log(assessment, transaction_id)
        return assessment

    def _raise_alert(self, assessment: FraudAssessment, rule: FraudDetectionRule, transaction_id: Optional[str]):
        alert = FraudDetectionAlert(
            id=f"FDA-{uuid.uuid4().hex[:10].upper()}",
            user_id=assessment.user_id,
            risk_score=assessment.score,
            severity=rule.severity,
            rule_id=rule.id,
            account_id=assessment.account_id,
            transaction_id=transaction_id,
            description=f"{rule.rule_name}: score {assessment.score:.2f}",
            evidence={'triggered_rules': [r for r, _ in assessment.triggered], 'composite_score': assessment.composite_score},
            created_at=assessment.assessed_at,
        )
        with self._lock:
            self.alerts[alert.id] = alert
        assessment.alert = alert
        assessment.action_taken = ActionTaken.FLAG
        record_fraud_alert(alert.severity.value)
        logger.warning(f"[FRAUD] Alert {alert.id} ({alert.severity.value}) for {alert.user_id}: {alert.description}")

        if alert.severity in (Severity.HIGH, Severity.CRITICAL):
            self._open_or_join_case(alert)
            assessment.action_taken = ActionTaken.INVESTIGATE

        if alert.severity == Severity.CRITICAL:
            if assessment.account_id is not None:
                self.ledger.freeze_account(
                    assessment.account_id,
                    reason=f"Fraud alert {alert.id}: {alert.description}",
                    frozen_by="fraud_engine",
                )
                assessment.action_taken = ActionTaken.FREEZE
            self._check_watchlist(alert.user_id, assessment.assessed_at)

    def _open_or_join_case(self, alert: FraudDetectionAlert):
        with self._lock:
            case = next(
                (c for c in self.cases.values() if c.user_id == alert.user_id and c.status == CaseStatus.INVESTIGATING),
                None
            )
            if case is None:
                case = FraudDetectionCase(
                    id=f"FDC-{uuid.uuid4().hex[:10].upper()}",
                    user_id=alert.user_id,
                    fraud_score=round(alert.risk_score * 100, 2),
                    severity=alert.severity,
                )
                self.cases[case.id] = case
                logger.warning(f"[FRAUD] Case {case.id} opened for {alert.user_id}")
            else:
                case.fraud_score = max(case.fraud_score, round(alert.risk_score * 100, 2))
                if alert.severity.rank > case.severity.rank:
                    case.severity = alert.severity
            case.alert_ids.append(alert.id)
            if alert.account_id and alert.account_id not in case.account_ids:
                case.account_ids.append(alert.account_id)
            case.evidence.append({'alert_id': alert.id, 'rule_id': alert.rule_id, 'risk_score': alert.risk_score})
            alert.case_id = case.id

    def _check_watchlist(self, user_id: str, now: datetime):
        cutoff = now - timedelta(days=self.policy.watchlist_window_days)
        with self._lock:
            if user_id in self.watchlist:
                return
            recent = [
                a for a in self.alerts.values()
                if a.user_id == user_id and a.severity == Severity.CRITICAL
                and a.status != AlertStatus.FALSE_POSITIVE and a.created_at >= cutoff
            ]
            if len(recent) < self.policy.watchlist_critical_alerts:
                return
            self.watchlist[user_id] = WatchlistEntry(
                user_id=user_id,
                reason=f"{len(recent)} critical fraud alerts within {self.policy.watchlist_window_days} days",
                alert_ids=[a.id for a in recent],
            )
        logger.warning(f"[FRAUD] {user_id} added to watchlist")

    def _log(self, assessment: FraudAssessment, transaction_id: Optional[str]):
        entry = FraudDetectionLog(
            id=f"FDL-{uuid.uuid4().hex[:10].upper()}",
            user_id=assessment.user_id,
            account_id=assessment.account_id,
            transaction_id=transaction_id,
            rule_ids=[r for r, _ in assessment.triggered],
            risk_score=assessment.score,
            action_taken=assessment.action_taken,
            alert_id=assessment.alert.id if assessment.alert else None,
            created_at=assessment.assessed_at,
        )
        with self._lock:
            self.logs.append(entry)

    # ---- admin actions ----

    @staticmethod
    def _get(items: Dict, key: str, kind: str):
        if key not in items:
            raise EntityNotFound(f"Fraud {kind} {key} not found")
        return items[key]

    def acknowledge_alert(self, alert_id: str, actor_id: str) -> FraudDetectionAlert:
        with self._lock:
            alert = self._get(self.alerts, alert_id, "alert")
            if alert.status != AlertStatus.ACTIVE:
                raise ValidationError(f"Alert {alert_id} is {alert.status.value}, cannot acknowledge")
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_by = actor_id
        logger.info(f"[FRAUD] Alert {alert_id} acknowledged by {actor_id}")
        return alert

    def resolve_alert(self, alert_id: str, actor_id: str, notes: Optional[str] = None) -> FraudDetectionAlert:
        with self._lock:
            alert = self._get(self.alerts, alert_id, "alert")
            if alert.status in (AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE):
                raise ValidationError(f"Alert {alert_id} is already {alert.status.value}")
            alert.status = AlertStatus.RESOLVED
            alert.resolved_by = actor_id
            alert.resolution_notes = notes
            alert.resolved_at = datetime.now()
        logger.info(f"[FRAUD] Alert {alert_id} resolved by {actor_id}")
        return alert

    def mark_false_positive(self, alert_id: str, actor_id: str, notes: Optional[str] = None) -> FraudDetectionAlert:
        """Admin correction. Frozen escrows stay frozen until unfrozen by hand."""
        with self._lock:
            alert = self._get(self.alerts, alert_id, "alert")
            if alert.status == AlertStatus.FALSE_POSITIVE:
                raise ValidationError(f"Alert {alert_id} is already marked false positive")
            alert.status = AlertStatus.FALSE_POSITIVE
            alert.resolved_by = actor_id
            alert.resolution_notes = notes
            alert.resolved_at = datetime.now()
            for entry in self.logs:
                if entry.alert_id == alert_id:
                    entry.false_positive = True
        logger.info(f"[FRAUD] Alert {alert_id} marked false positive by {actor_id}; freezes are not lifted")
        return alert

    def resolve_case(self, case_id: str, outcome: CaseStatus, actor_id: str, notes: Optional[str] = None) -> FraudDetectionCase:
        if outcome == CaseStatus.INVESTIGATING:
            raise ValidationError("a case can only be resolved as confirmed, false_positive or resolved")
        with self._lock:
            case = self._get(self.cases, case_id, "case")
            if case.resolved_at is not None:
                raise ValidationError(f"Case {case_id} was resolved at {case.resolved_at.isoformat()} and is immutable")
            case.status = outcome
            case.resolved_by = actor_id
            case.resolution_notes = notes
            case.resolved_at = datetime.now()
        logger.info(f"[FRAUD] Case {case_id} resolved as {outcome.value} by {actor_id}")
        return case

    # ---- queries ----

    def get_alert(self, alert_id: str) -> FraudDetectionAlert:
        return self._get(self.alerts, alert_id, "alert")

    def get_case(self, case_id: str) -> FraudDetectionCase:
        return self._get(self.cases, case_id, "case")

    def all_alerts(self) -> List[FraudDetectionAlert]:
        with self._lock:
            return list(self.alerts.values())

    def active_alerts(self) -> List[FraudDetectionAlert]:
        with self._lock:
            return [a for a in self.alerts.values() if a.status == AlertStatus.ACTIVE]

    def alerts_for_account(self, account_id: str) -> List[FraudDetectionAlert]:
        with self._lock:
            return [a for a in self.alerts.values() if a.account_id == account_id]

    def is_watchlisted(self, user_id: str) -> bool:
        return user_id in self.watchlist

# ============================================
# ASYNCHRONOUS PIPELINE
# ============================================

class FraudPipeline:
    """Feeds committed escrow events to the engine off the write path.

    `on_event` only enqueues; evaluation happens on the worker thread or when
    `drain()` is called, so a mutation never waits for scoring.
    """

    def __init__(self, engine: FraudDetectionEngine, storage: EscrowStorage):
        self.engine = engine
        self.storage = storage
        self.queue: "queue.Queue[Optional[EscrowEvent]]" = queue.Queue()
        self.processed = 0
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def on_event(self, event: EscrowEvent):
        if self._relevant(event):
            self.queue.put(event)
            update_fraud_queue_depth(self.queue.qsize())

    @staticmethod
    def _relevant(event: EscrowEvent) -> bool:
        return (event.entity, event.action) in {
            ("escrow_transactions", "created"),
            ("escrow_transactions", "failed"),
            ("escrow_milestones", "submitted"),
            ("dispute_cases", "opened"),
        }

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="wwe-fraud-pipeline", daemon=True)
        self._thread.start()
        logger.info("[FRAUD] Pipeline worker started")

    def stop(self, timeout: float = 5.0):
        if self._thread is None:
            return
        self._stop.set()
        self.queue.put(None)
        self._thread.join(timeout)
        self._thread = None
        logger.info("[FRAUD] Pipeline worker stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop.is_set():
            event = self.queue.get()
            if event is None:
                continue
            try:
                self.process(event)
            except Exception:
                logger.exception(f"[FRAUD] Pipeline failed on event {event.id}")
            finally:
                update_fraud_queue_depth(self.queue.qsize())

    def drain(self) -> List[FraudAssessment]:
        """Evaluate everything queued so far on the calling thread."""
        assessments = []
        while True:
            try:
                event = self.queue.get_nowait()
            except queue.Empty:
                break
            if event is None:
                continue
            try:
                result = self.process(event)
            except EscrowError as e:
                logger.error(f"[FRAUD] Could not assess event {event.id}: {e}")
                continue
            if result is not None:
                assessments.append(result)
        update_fraud_queue_depth(self.queue.qsize())
        return assessments

    def process(self, event: EscrowEvent) -> Optional[FraudAssessment]:
        account = self.storage.snapshot(event.account_id).account
        after = event.after or {}
        at = event.occurred_at
        self.processed += 1

        if event.entity == "escrow_transactions":
            transaction_type = after.get('transaction_type')
            if transaction_type == "deposit":
                user_id = account.client_id
            elif transaction_type == "release":
                user_id = account.freelancer_id
            else:
                return None
            amount = float(after.get('amount') or 0.0)
            if event.action == "created":
                self.engine.record_payment(user_id, amount, at)
            else:
                self.engine.record_failed_payment(user_id, at)
            return self.engine.assess(user_id, account.id, amount, transaction_id=event.entity_id, now=at)

        if event.entity == "escrow_milestones":
            self.engine.record_completion(account.freelancer_id, at)
            return self.engine.assess(account.freelancer_id, account.id, now=at)

        if event.entity == "dispute_cases":
            user_id = after.get('initiated_by') or event.actor_id
            self.engine.record_dispute(user_id, at)
            return self.engine.assess(user_id, account.id, now=at)
        return None
