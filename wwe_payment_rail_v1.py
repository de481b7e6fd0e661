"""
WorkWise Escrow (WWE) - Payment Rail
Version: 1.0.0

Contract of the card/bank processor the escrow core drives, plus a simulated
rail for development and tests. Real rails confirm asynchronously through a
webhook carrying the payment intent id.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional
from enum import Enum
import time
import uuid

from wwe_enforcement_v1 import EscrowPolicy, ExternalRailError, logger


class RailStatus(Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"  # confirmation will arrive by webhook
    DECLINED = "declined"


@dataclass
class RailReceipt:
    """Acknowledgement returned by the rail for one call."""
    reference: str
    status: RailStatus
    reason: Optional[str] = None


class PaymentRail(ABC):
    """Card network / bank processor."""

    name = "rail"

    @abstractmethod
    def authorize(self, amount: float, reference: str) -> RailReceipt:
        """Place a hold on the payer's instrument. Reference is the payment intent."""

    @abstractmethod
    def capture(self, payment_intent_id: str) -> RailReceipt:
        """Capture a previously authorized payment intent."""

    @abstractmethod
    def transfer(self, payout_account: str, amount: float, reference: str) -> RailReceipt:
        """Push funds out of escrow to a payout account."""

# ============================================
# SIMULATED RAIL
# ============================================

@dataclass
class SimulatedPaymentRail(PaymentRail):
    """In-process rail with scriptable outcomes.

    Queue outcomes with fail_next / decline_next / defer_next; calls without a
    queued outcome succeed.
    """
    name: str = "simulated"
    status: str = "UP"
    latency_ms: int = 0
    calls: List[Dict] = field(default_factory=list)
    _script: Deque[str] = field(default_factory=deque)

    def fail_next(self, count: int = 1):
        self._script.extend(["error"] * count)

    def decline_next(self, count: int = 1):
        self._script.extend(["decline"] * count)

    def defer_next(self, count: int = 1):
        self._script.extend(["defer"] * count)

    def _respond(self, operation: str, reference: str, amount: Optional[float] = None) -> RailReceipt:
        if self.latency_ms:
            time.sleep(self.latency_ms / 1000)

        self.calls.append({
            'operation': operation,
            'reference': reference,
            'amount': amount,
            'at': datetime.now(),
        })

        if self.status != "UP":
            raise ExternalRailError(f"[{self.name}] rail unavailable")

        outcome = self._script.popleft() if self._script else "ok"
        if outcome == "error":
            logger.warning(f"[{self.name}] {operation} {reference}: transient error")
            raise ExternalRailError(f"[{self.name}] timeout during {operation}")
        if outcome == "decline":
            logger.info(f"[{self.name}] {operation} {reference}: declined")
            return RailReceipt(reference=reference, status=RailStatus.DECLINED, reason="declined_by_issuer")
        if outcome == "defer":
            logger.info(f"[{self.name}] {operation} {reference}: awaiting confirmation")
            return RailReceipt(reference=reference, status=RailStatus.PROCESSING)

        logger.info(f"[{self.name}] {operation} {reference}: succeeded")
        return RailReceipt(reference=reference, status=RailStatus.SUCCEEDED)

    def authorize(self, amount: float, reference: str) -> RailReceipt:
        return self._respond("authorize", reference, amount)

    def capture(self, payment_intent_id: str) -> RailReceipt:
        return self._respond("capture", payment_intent_id)

    def transfer(self, payout_account: str, amount: float, reference: str) -> RailReceipt:
        receipt = self._respond("transfer", reference, amount)
        self.calls[-1]['payout_account'] = payout_account
        return receipt

    def health_check(self) -> bool:
        return self.status == "UP"

# ============================================
# RETRY POLICY
# ============================================

@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient rail failures."""
    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0

    @classmethod
    def from_policy(cls, policy: EscrowPolicy) -> "RetryPolicy":
        return cls(
            max_attempts=policy.rail_max_attempts,
            base_delay_seconds=policy.rail_backoff_base_seconds,
            max_delay_seconds=policy.rail_backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given attempt (1-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))

    def can_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def next_retry_at(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now()) + timedelta(seconds=self.delay_for(attempt))


def new_payment_reference(prefix: str = "PI") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"
