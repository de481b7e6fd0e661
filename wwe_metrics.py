"""
WorkWise Escrow - Prometheus Metrics
Observability for the escrow ledger, payment rail and fraud pipeline
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# ESCROW METRICS
# ============================================

escrow_created_counter = Counter(
    'wwe_escrow_accounts_created_total',
    'Total number of escrow accounts created',
    ['protection_level'],
    registry=metrics_registry
)

escrow_amount_histogram = Histogram(
    'wwe_escrow_amount_dollars',
    'Escrow account totals in dollars',
    buckets=[50, 100, 500, 1000, 5000, 10000, 50000, 100000],
    registry=metrics_registry
)

transaction_counter = Counter(
    'wwe_transactions_total',
    'Escrow transactions by type and resulting status',
    ['transaction_type', 'status'],
    registry=metrics_registry
)

released_volume_counter = Counter(
    'wwe_released_dollars_total',
    'Total dollars released to freelancers',
    registry=metrics_registry
)

milestone_transition_counter = Counter(
    'wwe_milestone_transitions_total',
    'Milestone state transitions',
    ['from_status', 'to_status'],
    registry=metrics_registry
)

dispute_counter = Counter(
    'wwe_disputes_total',
    'Disputes by lifecycle event',
    ['event'],
    registry=metrics_registry
)

insurance_claim_counter = Counter(
    'wwe_insurance_claims_total',
    'Insurance claims by status reached',
    ['status'],
    registry=metrics_registry
)

# ============================================
# PAYMENT RAIL METRICS
# ============================================

rail_call_counter = Counter(
    'wwe_rail_calls_total',
    'Payment rail calls by outcome',
    ['operation', 'outcome'],
    registry=metrics_registry
)

rail_latency_histogram = Histogram(
    'wwe_rail_latency_seconds',
    'Payment rail call latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=metrics_registry
)

rail_retry_counter = Counter(
    'wwe_rail_retries_total',
    'Transactions rescheduled after a transient rail error',
    ['transaction_type'],
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_check_counter = Counter(
    'wwe_invariant_checks_total',
    'Total number of invariant checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

invariant_violation_counter = Counter(
    'wwe_invariant_violations_total',
    'Total number of failed invariant checks',
    ['invariant_id', 'check_type'],
    registry=metrics_registry
)

operator_alert_counter = Counter(
    'wwe_operator_alerts_total',
    'Operator alerts raised',
    ['category', 'severity'],
    registry=metrics_registry
)

lock_contention_counter = Counter(
    'wwe_account_lock_timeouts_total',
    'Per-account lock acquisitions that timed out',
    registry=metrics_registry
)

ledger_variance_gauge = Gauge(
    'wwe_ledger_variance_dollars',
    'Persisted available_amount minus ledger fold (should be 0)',
    ['account_id'],
    registry=metrics_registry
)

audit_chain_integrity_gauge = Gauge(
    'wwe_audit_chain_integrity',
    'Audit hash chain integrity (1=verified, 0=broken)',
    registry=metrics_registry
)

# ============================================
# FRAUD METRICS
# ============================================

fraud_score_histogram = Histogram(
    'wwe_fraud_score',
    'Distribution of aggregate fraud scores',
    buckets=[0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    registry=metrics_registry
)

fraud_alert_counter = Counter(
    'wwe_fraud_alerts_total',
    'Fraud alerts created',
    ['severity'],
    registry=metrics_registry
)

account_freeze_counter = Counter(
    'wwe_account_freezes_total',
    'Escrow accounts frozen',
    ['frozen_by'],
    registry=metrics_registry
)

fraud_queue_gauge = Gauge(
    'wwe_fraud_queue_depth',
    'Events waiting for fraud evaluation',
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_escrow_created(protection_level: str, amount: float):
    escrow_created_counter.labels(protection_level=protection_level).inc()
    escrow_amount_histogram.observe(amount)

def record_transaction(transaction_type: str, status: str, amount: float = 0.0):
    """Record a transaction reaching a status."""
    transaction_counter.labels(transaction_type=transaction_type, status=status).inc()
    if transaction_type == "release" and status == "completed":
        released_volume_counter.inc(amount)

def record_rail_call(operation: str, outcome: str, duration: float):
    rail_call_counter.labels(operation=operation, outcome=outcome).inc()
    rail_latency_histogram.labels(operation=operation).observe(duration)

def record_rail_retry(transaction_type: str):
    rail_retry_counter.labels(transaction_type=transaction_type).inc()

def record_milestone_transition(from_status: str, to_status: str):
    milestone_transition_counter.labels(from_status=from_status, to_status=to_status).inc()

def record_dispute_event(event: str):
    dispute_counter.labels(event=event).inc()

def record_claim_status(status: str):
    insurance_claim_counter.labels(status=status).inc()

def record_invariant_check(invariant_id: str, check_type: str, result: bool):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()

    if not result:
        invariant_violation_counter.labels(
            invariant_id=invariant_id,
            check_type=check_type
        ).inc()

def record_operator_alert(category: str, severity: str):
    operator_alert_counter.labels(category=category, severity=severity).inc()

def record_lock_contention():
    lock_contention_counter.inc()

def update_ledger_variance(account_id: str, variance: float):
    ledger_variance_gauge.labels(account_id=account_id).set(variance)

def update_audit_integrity(intact: bool):
    audit_chain_integrity_gauge.set(1 if intact else 0)

def record_fraud_assessment(score: float):
    fraud_score_histogram.observe(score)

def record_fraud_alert(severity: str):
    fraud_alert_counter.labels(severity=severity).inc()

def record_freeze(frozen_by: str):
    account_freeze_counter.labels(frozen_by=frozen_by).inc()

def update_fraud_queue_depth(depth: int):
    fraud_queue_gauge.set(depth)
