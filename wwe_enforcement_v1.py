"""
WorkWise Escrow (WWE) - Enforcement Layer
Version: 1.0.0

Configuration, error taxonomy and the invariant enforcer shared by every
escrow service. Every ledger mutation runs through InvariantEnforcer so that
pre-checks, post-checks and rollback are applied uniformly and each decision
is signed into the DecisionLedger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type
from enum import Enum
from abc import ABC, abstractmethod
import hmac
import logging
import os
import threading
import uuid

# ============================================
# SYSTEM CONFIGURATION
# ============================================

SYSTEM_SECRET = os.getenv("WWE_SYSTEM_SECRET", "WWE_DEV_SECRET_ROTATE_BEFORE_DEPLOY").encode()

# Risk bands on the normalized 0-1 scale
RISK_THRESHOLDS = {
    'low': 0.3,
    'medium': 0.5,
    'high': 0.7,
    'critical': 0.9,
}

MONEY_EPSILON = 0.005


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass(frozen=True)
class EscrowPolicy:
    """Platform tunables. Override any value with the matching WWE_* variable."""
    platform_fee_rate: float = 0.05
    auto_approve_hours: int = 72
    fraud_alert_threshold: float = 0.80
    watchlist_critical_alerts: int = 3
    watchlist_window_days: int = 30
    rail_max_attempts: int = 5
    rail_backoff_base_seconds: float = 2.0
    rail_backoff_max_seconds: float = 300.0
    confirmation_timeout_minutes: int = 30
    lock_timeout_seconds: float = 5.0
    lock_max_attempts: int = 3
    amount_tolerance: float = 0.01
    required_approvals: int = 2
    held_timeout_hours: int = 24
    high_value_dispute_threshold: float = 50000.0

    @classmethod
    def from_env(cls) -> "EscrowPolicy":
        return cls(
            platform_fee_rate=_env_float("WWE_PLATFORM_FEE_RATE", cls.platform_fee_rate),
            auto_approve_hours=_env_int("WWE_AUTO_APPROVE_HOURS", cls.auto_approve_hours),
            fraud_alert_threshold=_env_float("WWE_FRAUD_ALERT_THRESHOLD", cls.fraud_alert_threshold),
            watchlist_critical_alerts=_env_int("WWE_WATCHLIST_CRITICAL_ALERTS", cls.watchlist_critical_alerts),
            watchlist_window_days=_env_int("WWE_WATCHLIST_WINDOW_DAYS", cls.watchlist_window_days),
            rail_max_attempts=_env_int("WWE_RAIL_MAX_ATTEMPTS", cls.rail_max_attempts),
            rail_backoff_base_seconds=_env_float("WWE_RAIL_BACKOFF_BASE_SECONDS", cls.rail_backoff_base_seconds),
            rail_backoff_max_seconds=_env_float("WWE_RAIL_BACKOFF_MAX_SECONDS", cls.rail_backoff_max_seconds),
            confirmation_timeout_minutes=_env_int("WWE_CONFIRMATION_TIMEOUT_MINUTES", cls.confirmation_timeout_minutes),
            lock_timeout_seconds=_env_float("WWE_LOCK_TIMEOUT_SECONDS", cls.lock_timeout_seconds),
            lock_max_attempts=_env_int("WWE_LOCK_MAX_ATTEMPTS", cls.lock_max_attempts),
            amount_tolerance=_env_float("WWE_AMOUNT_TOLERANCE", cls.amount_tolerance),
            required_approvals=_env_int("WWE_REQUIRED_APPROVALS", cls.required_approvals),
            held_timeout_hours=_env_int("WWE_HELD_TIMEOUT_HOURS", cls.held_timeout_hours),
            high_value_dispute_threshold=_env_float("WWE_HIGH_VALUE_DISPUTE_THRESHOLD", cls.high_value_dispute_threshold),
        )


class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"


class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"


class EnforcementResult(Enum):
    PROCEED = "proceed"
    REJECT = "reject"
    ROLLBACK = "rollback"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("WWE.Escrow")

# ============================================
# EXCEPTIONS
# ============================================

class EscrowError(Exception):
    """Base class for every typed escrow failure."""
    code = "escrow_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class ValidationError(EscrowError):
    """Malformed input, rejected before any mutation."""
    code = "validation_error"


class EntityNotFound(EscrowError):
    code = "not_found"


class AccountFrozenError(ValidationError):
    """Escrow account is frozen pending investigation."""
    code = "account_frozen"


class InsufficientFundsError(EscrowError):
    """Request would drive the available balance negative."""
    code = "insufficient_funds"


class InvariantViolation(EscrowError):
    """Ledger consistency lost. Fatal for the account."""
    code = "invariant_violation"


class ExternalRailError(EscrowError):
    """Transient payment rail failure."""
    code = "external_rail_error"


class ConcurrencyConflict(EscrowError):
    """Mutation collided with another on the same account."""
    code = "concurrency_conflict"


class SystemCompromised(EscrowError):
    """Raised when rollback fails or a signed record does not verify."""
    code = "system_compromised"

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def sign_decision(invariant_id: str, result: bool, timestamp: datetime) -> str:
    """HMAC-SHA256 over the decision fields."""
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(SYSTEM_SECRET, data.encode(), 'sha256').hexdigest()


@dataclass
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    state_snapshot: Dict[str, Any]
    signature: str

    def verify_signature(self) -> bool:
        expected = sign_decision(self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only ledger of all enforcement decisions."""

    def __init__(self):
        self.entries: List[EnforcementDecision] = []
        self._lock = threading.Lock()

    def record(self, decision: EnforcementDecision):
        if not decision.verify_signature():
            raise SystemCompromised("Invalid signature on enforcement decision")

        with self._lock:
            self.entries.append(decision)
        logger.debug(f"[ENFORCEMENT] Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def pass_rate(self) -> float:
        total = len(self.entries)
        if total == 0:
            return 1.0
        return (total - len(self.failures())) / total

    def verify_chain_integrity(self) -> bool:
        """Verify no decision has been altered since it was recorded."""
        return all(entry.verify_signature() for entry in self.entries)

# ============================================
# OPERATOR ALERTS
# ============================================

@dataclass
class OperatorAlert:
    """Operator-visible page raised for conditions needing a human."""
    id: str
    severity: str
    category: str
    message: str
    account_id: Optional[str] = None
    reference_id: Optional[str] = None
    raised_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'severity': self.severity,
            'category': self.category,
            'message': self.message,
            'account_id': self.account_id,
            'reference_id': self.reference_id,
            'raised_at': self.raised_at.isoformat(),
        }


class OperatorAlertSink:
    """Collects operator alerts; paging integrations subscribe via listeners."""

    def __init__(self):
        self.alerts: List[OperatorAlert] = []
        self.listeners: List[Callable[[OperatorAlert], None]] = []
        self._lock = threading.Lock()

    def raise_alert(
        self,
        category: str,
        message: str,
        severity: str = "critical",
        account_id: Optional[str] = None,
        reference_id: Optional[str] = None
    ) -> OperatorAlert:
        # Imported lazily to keep metrics out of the enforcement import graph
        from wwe_metrics import record_operator_alert

        alert = OperatorAlert(
            id=f"OPS-{uuid.uuid4().hex[:8].upper()}",
            severity=severity,
            category=category,
            message=message,
            account_id=account_id,
            reference_id=reference_id,
        )
        with self._lock:
            self.alerts.append(alert)
        record_operator_alert(category, severity)
        logger.critical(f"[OPERATOR ALERT] {category}: {message} (account={account_id}, ref={reference_id})")

        for listener in self.listeners:
            listener(alert)
        return alert

    def all_alerts(self) -> List[OperatorAlert]:
        with self._lock:
            return list(self.alerts)

    def for_account(self, account_id: str) -> List[OperatorAlert]:
        with self._lock:
            return [a for a in self.alerts if a.account_id == account_id]

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants."""

    # Raised when the pre-check rejects the action
    error_class: Type[EscrowError] = InvariantViolation

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner
        self.last_verified: Optional[datetime] = None

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""

    @abstractmethod
    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""

    @abstractmethod
    def rollback_action(self, state_before: Dict[str, Any], **kwargs):
        """Define rollback procedure."""

    def describe_failure(self, **kwargs) -> str:
        return self.statement

# ============================================
# ENFORCEMENT ENGINE
# ============================================

class InvariantEnforcer:
    """Runs an action between signed pre- and post-checks."""

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger):
        self.invariants = invariants
        self.ledger = ledger
        self.sorted_invariants = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order."""
        sorted_invs = []
        remaining = set(inv.id for inv in invariants)

        while remaining:
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            sorted_invs.extend(ready)
            for inv in ready:
                remaining.remove(inv.id)

        return sorted_invs

    def enforce_action(self, action: Callable, **kwargs) -> Any:
        """Execute action with full invariant enforcement."""
        from wwe_metrics import record_invariant_check

        state_before = self._capture_state(kwargs)

        for inv in self.sorted_invariants:
            decision = self._pre_check(inv, state_before, **kwargs)
            self.ledger.record(decision)
            record_invariant_check(inv.id, "PRE", decision.result)

            if not decision.result:
                message = inv.describe_failure(**kwargs)
                logger.warning(f"[ENFORCEMENT] PRE-CHECK FAILED: {inv.id}: {message}")
                raise inv.error_class(message)

        try:
            result = action(**kwargs)
        except Exception as e:
            logger.error(f"[ENFORCEMENT] ACTION FAILED: {e}")
            self._rollback(state_before, **kwargs)
            raise

        for inv in self.sorted_invariants:
            decision = self._post_check(inv, result, state_before, **kwargs)
            self.ledger.record(decision)
            record_invariant_check(inv.id, "POST", decision.result)

            if not decision.result:
                logger.critical(f"[ENFORCEMENT] POST-CHECK FAILED: {inv.id}")
                self._rollback(state_before, **kwargs)
                raise InvariantViolation(f"Post-check failed: {inv.id}: {inv.statement}")

        return result

    def _pre_check(self, inv: Invariant, state: Dict, **kwargs) -> EnforcementDecision:
        try:
            result = bool(inv.pre_check(**kwargs))
        except EscrowError:
            raise
        except Exception as e:
            logger.error(f"Pre-check exception: {inv.id}", exc_info=e)
            result = False

        return self._decision(inv.id, "PRE", result, EnforcementResult.PROCEED if result else EnforcementResult.REJECT, state)

    def _post_check(self, inv: Invariant, result: Any, state: Dict, **kwargs) -> EnforcementDecision:
        try:
            check_result = bool(inv.post_check(result, **kwargs))
        except Exception as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False

        return self._decision(inv.id, "POST", check_result, EnforcementResult.PROCEED if check_result else EnforcementResult.ROLLBACK, state)

    def _decision(self, invariant_id: str, check_type: str, result: bool, action: EnforcementResult, state: Dict) -> EnforcementDecision:
        timestamp = datetime.now()
        return EnforcementDecision(
            invariant_id=invariant_id,
            check_type=check_type,
            result=result,
            action=action,
            timestamp=timestamp,
            state_snapshot=dict(state),
            signature=sign_decision(invariant_id, result, timestamp)
        )

    def _rollback(self, state_before: Dict, **kwargs):
        """Roll back in reverse dependency order."""
        logger.warning("[ENFORCEMENT] ROLLBACK INITIATED")

        for inv in reversed(self.sorted_invariants):
            try:
                inv.rollback_action(state_before, **kwargs)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}") from e

        logger.info("[ENFORCEMENT] ROLLBACK COMPLETE")

    def _capture_state(self, kwargs: Dict) -> Dict[str, Any]:
        """Scalar view of the call for the decision record."""
        state: Dict[str, Any] = {'timestamp': datetime.now().isoformat()}
        for key, value in kwargs.items():
            if isinstance(value, (str, int, float, bool)) or value is None:
                state[key] = value
            elif isinstance(value, Enum):
                state[key] = value.value
            elif hasattr(value, 'id'):
                state[f"{key}_id"] = value.id
        return state
