"""
WorkWise Escrow - FastAPI Application
Escrow, milestone, dispute and fraud endpoints with enforcement and observability
"""

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging
from contextlib import asynccontextmanager

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from wwe_enforcement_v1 import (
    EscrowPolicy,
    EscrowError,
    ValidationError,
    EntityNotFound,
    AccountFrozenError,
    InsufficientFundsError,
    ConcurrencyConflict,
    ExternalRailError,
    InvariantViolation,
    SystemCompromised
)
from wwe_escrow_models_v1 import (
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    InsuranceClaimType
)
from wwe_fraud_scoring_v1 import CaseStatus
from wwe_platform_v1 import EscrowPlatform
from wwe_metrics import metrics_registry

logger = logging.getLogger("wwe.api")

API_VERSION = "1.0.0"

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class MilestoneRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=2000)
    order_index: Optional[int] = Field(None, ge=0)
    completion_criteria: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None


class EscrowCreateRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    freelancer_id: str = Field(..., min_length=1)
    total_amount: float = Field(..., gt=0)
    platform_fee: Optional[float] = Field(None, ge=0)
    risk_score: Optional[float] = Field(None, ge=0, le=1)
    milestones: Optional[List[MilestoneRequest]] = None
    automatic_release: Optional[bool] = None
    fraud_insurance: Optional[bool] = None
    multi_signature: Optional[bool] = None
    approval_timeout_hours: Optional[int] = Field(None, ge=0)
    alert_threshold: Optional[float] = Field(None, gt=0, le=1)
    payout_account: Optional[str] = None
    funding_source: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "project_id": "PRJ-001",
                "client_id": "EMP-001",
                "freelancer_id": "GW-001",
                "total_amount": 1000.00,
                "risk_score": 0.2,
                "milestones": [
                    {"title": "Design", "amount": 500.00},
                    {"title": "Build", "amount": 450.00}
                ]
            }
        }


class FundRequest(BaseModel):
    amount: float = Field(..., gt=0)
    actor_id: Optional[str] = None


class ActorRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)


class SubmitMilestoneRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    deliverables: List[str] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)

    class Config:
        json_schema_extra = {
            "example": {
                "actor_id": "GW-001",
                "deliverables": ["https://files.example.com/wireframes.pdf"],
                "notes": "Wireframes for all five screens"
            }
        }


class ReleaseRequest(BaseModel):
    actor_id: str = Field("system", min_length=1)
    amount: Optional[float] = Field(None, gt=0)


class RefundRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)


class DisputeCreateRequest(BaseModel):
    initiated_by: str = Field(..., min_length=1)
    dispute_type: DisputeType
    reason: str = Field(..., min_length=1, max_length=500)
    milestone_id: Optional[str] = None
    description: str = Field("", max_length=5000)
    evidence: List[str] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "initiated_by": "EMP-001",
                "dispute_type": "quality",
                "reason": "Deliverable does not meet the agreed criteria",
                "milestone_id": "MS-0A1B2C3D4E5F"
            }
        }


class DisputeAdvanceRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    status: DisputeStatus
    notes: Optional[str] = None


class DisputeResolveRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    resolution: DisputeResolution
    resolution_amount: Optional[float] = Field(None, gt=0)
    notes: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "actor_id": "ADMIN-1",
                "resolution": "partial_refund",
                "resolution_amount": 200.00,
                "notes": "Half of the scope was delivered"
            }
        }


class ClaimCreateRequest(BaseModel):
    claimant_id: str = Field(..., min_length=1)
    claim_type: InsuranceClaimType
    claim_amount: float = Field(..., gt=0)
    description: str = Field("", max_length=5000)
    evidence: List[str] = Field(default_factory=list)


class ClaimApproveRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    approved_amount: Optional[float] = Field(None, gt=0)
    notes: Optional[str] = None


class ClaimDenyRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    notes: str = Field(..., min_length=1)


class RailWebhookRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)
    succeeded: bool
    reason: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "payment_intent_id": "pi_3f9a2e8d4b7c1a60",
                "succeeded": True
            }
        }


class CaseResolveRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    outcome: CaseStatus
    notes: Optional[str] = None


class BehaviorRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    account_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    typing_interval_ms: Optional[float] = Field(None, ge=0)


class TransactionResponse(BaseModel):
    id: str
    account_id: str
    transaction_type: str
    amount: float
    status: str
    milestone_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    attempts: int
    failure_reason: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "TXN-9C1D2E3F4A5B",
                "account_id": "ESC-0A1B2C3D4E5F",
                "transaction_type": "release",
                "amount": 500.00,
                "status": "completed",
                "milestone_id": "MS-0A1B2C3D4E5F",
                "payment_intent_id": "tr_3f9a2e8d4b7c1a60",
                "attempts": 1
            }
        }


class HealthResponse(BaseModel):
    status: str
    version: str
    health_score: float
    total_accounts: int
    frozen_accounts: int
    audit_chain_intact: bool
    decision_integrity: bool
    rail_status: Optional[bool] = None


def transaction_response(txn) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        account_id=txn.account_id,
        transaction_type=txn.transaction_type.value,
        amount=txn.amount,
        status=txn.status.value,
        milestone_id=txn.milestone_id,
        payment_intent_id=txn.payment_intent_id,
        attempts=txn.attempts,
        failure_reason=txn.failure_reason
    )

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""

    def __init__(self):
        self.platform = EscrowPlatform(EscrowPolicy.from_env())

    def reset(self):
        if self.platform.fraud_pipeline.running:
            self.platform.fraud_pipeline.stop()
        self.platform = EscrowPlatform(EscrowPolicy.from_env())


app_state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("WorkWise escrow core starting...")
    app_state.platform.fraud_pipeline.start()
    yield
    app_state.platform.fraud_pipeline.stop()
    logger.info("WorkWise escrow core shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="WorkWise Escrow",
    description="Milestone escrow with dispute resolution, insurance and fraud detection",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# ERROR HANDLERS
# ============================================

ERROR_STATUS = {
    AccountFrozenError: status.HTTP_423_LOCKED,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    EntityNotFound: status.HTTP_404_NOT_FOUND,
    InsufficientFundsError: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    ExternalRailError: status.HTTP_502_BAD_GATEWAY,
    InvariantViolation: status.HTTP_500_INTERNAL_SERVER_ERROR,
    SystemCompromised: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(exc: EscrowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc}")
    return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": str(exc)})

# ============================================
# HEALTH & OBSERVABILITY
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "WorkWise Escrow",
        "version": API_VERSION,
        "status": "operational"
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """System health check."""
    health = app_state.platform.get_system_health()
    healthy = health['health_score'] >= 0.95 and health['audit_chain_intact'] and health['decision_integrity']

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=API_VERSION,
        health_score=health['health_score'],
        total_accounts=health['total_accounts'],
        frozen_accounts=health['frozen_accounts'],
        audit_chain_intact=health['audit_chain_intact'],
        decision_integrity=health['decision_integrity'],
        rail_status=health['rail_status']
    )


@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ESCROW ACCOUNTS
# ============================================

@app.post("/api/v1/escrows", status_code=status.HTTP_201_CREATED, tags=["Escrows"])
def create_escrow(request: EscrowCreateRequest):
    """Create an escrow in `pending`. Milestone amounts must sum to total minus fee."""
    milestones = None
    if request.milestones is not None:
        milestones = [m.model_dump(exclude_none=True) for m in request.milestones]

    options = request.model_dump(
        exclude_none=True,
        exclude={"project_id", "client_id", "freelancer_id", "total_amount", "milestones"}
    )
    record = app_state.platform.create_escrow(
        project_id=request.project_id,
        client_id=request.client_id,
        freelancer_id=request.freelancer_id,
        total_amount=request.total_amount,
        milestones=milestones,
        **options
    )
    return record.to_dict()


@app.get("/api/v1/escrows/{account_id}", tags=["Escrows"])
def get_escrow(account_id: str):
    return app_state.platform.get_account(account_id).to_dict()


@app.post("/api/v1/escrows/{account_id}/fund", response_model=TransactionResponse, tags=["Escrows"])
def fund_escrow(account_id: str, request: FundRequest):
    """Deposit through the payment rail. The escrow activates once fully funded."""
    return transaction_response(app_state.platform.fund(account_id, request.amount, request.actor_id))


@app.post("/api/v1/escrows/{account_id}/refund", response_model=TransactionResponse, tags=["Escrows"])
def refund_escrow(account_id: str, request: RefundRequest):
    return transaction_response(
        app_state.platform.refund(account_id, request.amount, request.reason, request.actor_id)
    )


@app.post("/api/v1/escrows/{account_id}/settle", tags=["Escrows"])
def settle_escrow(account_id: str, request: ActorRequest):
    return app_state.platform.settle_account(account_id, request.actor_id).to_dict()


@app.post("/api/v1/escrows/{account_id}/cancel", tags=["Escrows"])
def cancel_escrow(account_id: str, request: ActorRequest):
    return app_state.platform.cancel_account(account_id, request.actor_id).to_dict()


@app.post("/api/v1/escrows/{account_id}/unfreeze", tags=["Escrows"])
def unfreeze_escrow(account_id: str, request: ActorRequest):
    """Manual release of a freeze. Fraud false positives never unfreeze on their own."""
    return app_state.platform.unfreeze_account(account_id, request.actor_id).to_dict()


@app.post("/api/v1/escrows/{account_id}/reconcile", tags=["Escrows"])
def reconcile_escrow(account_id: str, request: ActorRequest):
    return app_state.platform.reconcile_account(account_id, request.actor_id, request.notes or "").to_dict()


@app.get("/api/v1/escrows/{account_id}/audit", tags=["Escrows"])
def escrow_audit_trail(account_id: str):
    app_state.platform.get_account(account_id)
    entries = [
        e.to_dict() for e in app_state.platform.audit_log.entries
        if e.metadata.get('account_id') == account_id
    ]
    return {"account_id": account_id, "chain_intact": app_state.platform.audit_log.verify_chain(), "entries": entries}

# ============================================
# MILESTONES
# ============================================

@app.post("/api/v1/milestones/{milestone_id}/start", tags=["Milestones"])
def start_milestone(milestone_id: str, request: ActorRequest):
    return app_state.platform.start_milestone(milestone_id, request.actor_id).to_dict()


@app.post("/api/v1/milestones/{milestone_id}/submit", tags=["Milestones"])
def submit_milestone(milestone_id: str, request: SubmitMilestoneRequest):
    return app_state.platform.submit_milestone(
        milestone_id, request.actor_id, request.deliverables, request.notes
    ).to_dict()


@app.post("/api/v1/milestones/{milestone_id}/approve", tags=["Milestones"])
def approve_milestone(milestone_id: str, request: ActorRequest):
    """Employer approval; the release is issued as soon as approval is complete."""
    return app_state.platform.approve_milestone(milestone_id, request.actor_id).to_dict()


@app.post("/api/v1/milestones/{milestone_id}/release", response_model=TransactionResponse, tags=["Milestones"])
def release_milestone(milestone_id: str, request: ReleaseRequest):
    return transaction_response(
        app_state.platform.release_milestone(milestone_id, request.actor_id, request.amount)
    )

# ============================================
# DISPUTES
# ============================================

@app.post("/api/v1/escrows/{account_id}/disputes", status_code=status.HTTP_201_CREATED, tags=["Disputes"])
def open_dispute(account_id: str, request: DisputeCreateRequest):
    dispute = app_state.platform.open_dispute(
        account_id,
        request.initiated_by,
        request.dispute_type,
        request.reason,
        milestone_id=request.milestone_id,
        description=request.description,
        evidence=request.evidence
    )
    return dispute.to_dict()


@app.post("/api/v1/disputes/{dispute_id}/advance", tags=["Disputes"])
def advance_dispute(dispute_id: str, request: DisputeAdvanceRequest):
    return app_state.platform.advance_dispute(dispute_id, request.status, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/disputes/{dispute_id}/resolve", tags=["Disputes"])
def resolve_dispute(dispute_id: str, request: DisputeResolveRequest):
    """Resolve a dispute and emit the refund or release its resolution calls for."""
    dispute = app_state.platform.resolve_dispute(
        dispute_id,
        request.resolution,
        request.actor_id,
        resolution_amount=request.resolution_amount,
        notes=request.notes
    )
    return dispute.to_dict()

# ============================================
# INSURANCE CLAIMS
# ============================================

@app.post("/api/v1/escrows/{account_id}/insurance-claims", status_code=status.HTTP_201_CREATED, tags=["Insurance"])
def file_insurance_claim(account_id: str, request: ClaimCreateRequest):
    claim = app_state.platform.file_insurance_claim(
        account_id,
        request.claimant_id,
        request.claim_type,
        request.claim_amount,
        request.description,
        request.evidence
    )
    return claim.to_dict()


@app.post("/api/v1/insurance-claims/{claim_id}/review", tags=["Insurance"])
def review_claim(claim_id: str, request: ActorRequest):
    return app_state.platform.review_claim(claim_id, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/insurance-claims/{claim_id}/investigate", tags=["Insurance"])
def investigate_claim(claim_id: str, request: ActorRequest):
    return app_state.platform.investigate_claim(claim_id, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/insurance-claims/{claim_id}/approve", tags=["Insurance"])
def approve_claim(claim_id: str, request: ClaimApproveRequest):
    return app_state.platform.approve_claim(
        claim_id, request.actor_id, request.approved_amount, request.notes
    ).to_dict()


@app.post("/api/v1/insurance-claims/{claim_id}/deny", tags=["Insurance"])
def deny_claim(claim_id: str, request: ClaimDenyRequest):
    return app_state.platform.deny_claim(claim_id, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/insurance-claims/{claim_id}/pay", tags=["Insurance"])
def pay_claim(claim_id: str, request: ActorRequest):
    return app_state.platform.pay_claim(claim_id, request.actor_id).to_dict()

# ============================================
# TRANSACTIONS & RAIL
# ============================================

@app.post("/api/v1/transactions/{transaction_id}/cancel", response_model=TransactionResponse, tags=["Transactions"])
def cancel_transaction(transaction_id: str, request: ActorRequest):
    """Only pending transactions can be cancelled; completed releases are final."""
    return transaction_response(app_state.platform.cancel_transaction(transaction_id, request.actor_id))


@app.post("/api/v1/webhooks/rail", response_model=TransactionResponse, tags=["Transactions"])
def rail_webhook(request: RailWebhookRequest):
    """Asynchronous confirmation from the payment rail. Duplicates are ignored."""
    return transaction_response(
        app_state.platform.handle_rail_webhook(request.payment_intent_id, request.succeeded, request.reason)
    )

# ============================================
# FRAUD
# ============================================

@app.get("/api/v1/fraud/alerts", tags=["Fraud"])
def list_fraud_alerts(account_id: Optional[str] = None, active_only: bool = False):
    fraud = app_state.platform.fraud
    alerts = fraud.alerts_for_account(account_id) if account_id else fraud.all_alerts()
    if active_only:
        alerts = [a for a in alerts if a.status.value == "active"]
    return [a.to_dict() for a in alerts]


@app.post("/api/v1/fraud/alerts/{alert_id}/acknowledge", tags=["Fraud"])
def acknowledge_fraud_alert(alert_id: str, request: ActorRequest):
    return app_state.platform.fraud.acknowledge_alert(alert_id, request.actor_id).to_dict()


@app.post("/api/v1/fraud/alerts/{alert_id}/resolve", tags=["Fraud"])
def resolve_fraud_alert(alert_id: str, request: ActorRequest):
    return app_state.platform.fraud.resolve_alert(alert_id, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/fraud/alerts/{alert_id}/false-positive", tags=["Fraud"])
def mark_false_positive(alert_id: str, request: ActorRequest):
    """Admin correction. Any freeze stays in place until /unfreeze is called."""
    return app_state.platform.fraud.mark_false_positive(alert_id, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/fraud/cases/{case_id}/resolve", tags=["Fraud"])
def resolve_fraud_case(case_id: str, request: CaseResolveRequest):
    return app_state.platform.fraud.resolve_case(case_id, request.outcome, request.actor_id, request.notes).to_dict()


@app.post("/api/v1/fraud/behavior", tags=["Fraud"])
def record_behavior(request: BehaviorRequest) -> Dict[str, Any]:
    assessment = app_state.platform.fraud.record_behavior(
        request.user_id,
        device_fingerprint=request.device_fingerprint,
        typing_interval_ms=request.typing_interval_ms,
        account_id=request.account_id
    )
    return {"recorded": True, "assessment": assessment.to_dict() if assessment else None}

# ============================================
# OPERATIONS
# ============================================

@app.post("/api/v1/jobs/run", tags=["Operations"])
def run_jobs():
    """Run one pass of the scheduled jobs (auto-approval, retries, timeouts, reconciliation)."""
    return app_state.platform.run_scheduled_jobs()


@app.get("/api/v1/operator-alerts", tags=["Operations"])
def operator_alerts(account_id: Optional[str] = None):
    sink = app_state.platform.alerts
    alerts = sink.for_account(account_id) if account_id else sink.all_alerts()
    return [a.to_dict() for a in alerts]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "wwe_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
