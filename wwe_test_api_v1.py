"""
WorkWise Escrow (WWE) - API Test Suite
Version: 1.0.0

HTTP-level checks: request validation, error mapping, end-to-end flows.
"""

import pytest
from fastapi.testclient import TestClient

from wwe_main_api import app, app_state

CLIENT = "EMP-001"
FREELANCER = "GW-001"
ADMIN = "ADMIN-1"

ESCROW_REQUEST = {
    "project_id": "PRJ-001",
    "client_id": CLIENT,
    "freelancer_id": FREELANCER,
    "total_amount": 1000.00,
    "risk_score": 0.2,
    "milestones": [
        {"title": "Design", "amount": 500.00},
        {"title": "Build", "amount": 450.00},
    ],
}


class ApiTestCase:
    """Fresh platform per test; the lifespan (fraud worker) is not started."""

    def setup_method(self):
        app_state.reset()
        self.client = TestClient(app)

    def create_escrow(self, fund: bool = True, **overrides):
        body = {**ESCROW_REQUEST, **overrides}
        response = self.client.post("/api/v1/escrows", json=body)
        assert response.status_code == 201, response.text
        escrow = response.json()
        if fund:
            funded = self.client.post(f"/api/v1/escrows/{escrow['id']}/fund", json={"amount": 1000.00})
            assert funded.status_code == 200, funded.text
        return escrow

    def get_escrow(self, account_id: str):
        return self.client.get(f"/api/v1/escrows/{account_id}").json()

    def deliver(self, milestone_id: str):
        self.client.post(f"/api/v1/milestones/{milestone_id}/start", json={"actor_id": FREELANCER})
        return self.client.post(
            f"/api/v1/milestones/{milestone_id}/submit",
            json={"actor_id": FREELANCER, "deliverables": ["design.fig"]}
        )

# ============================================
# HEALTH & METRICS
# ============================================

class TestHealthEndpoints(ApiTestCase):

    def test_root(self):
        response = self.client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_health(self):
        self.create_escrow()
        body = self.client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["total_accounts"] == 1
        assert body["audit_chain_intact"]

    def test_metrics_exposed(self):
        self.create_escrow()
        response = self.client.get("/metrics")

        assert response.status_code == 200
        assert "wwe_escrow_accounts_created_total" in response.text

# ============================================
# ESCROWS
# ============================================

class TestEscrowEndpoints(ApiTestCase):

    def test_create_returns_pending_escrow(self):
        escrow = self.create_escrow(fund=False)

        assert escrow["status"] == "pending"
        assert escrow["platform_fee"] == 50.00
        assert [m["amount"] for m in escrow["milestones"]] == [500.00, 450.00]

    def test_risk_assessed_when_omitted(self):
        body = {key: value for key, value in ESCROW_REQUEST.items() if key != "risk_score"}
        response = self.client.post("/api/v1/escrows", json=body)

        assert response.status_code == 201
        assert response.json()["risk_score"] == 0.44
        assert response.json()["protection_level"] == "basic"

    def test_fund_activates(self):
        escrow = self.create_escrow()
        body = self.get_escrow(escrow["id"])

        assert body["status"] == "active"
        assert body["available_amount"] == 1000.00

    def test_unknown_escrow_is_404(self):
        response = self.client.get("/api/v1/escrows/ESC-MISSING")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_milestone_mismatch_is_400(self):
        response = self.client.post("/api/v1/escrows", json={
            **ESCROW_REQUEST,
            "milestones": [{"title": "Design", "amount": 100.00}],
        })

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_schema_violations_are_422(self):
        response = self.client.post("/api/v1/escrows", json={**ESCROW_REQUEST, "total_amount": -5})
        assert response.status_code == 422

    def test_refund_over_balance_is_409(self):
        escrow = self.create_escrow()
        response = self.client.post(f"/api/v1/escrows/{escrow['id']}/refund", json={
            "actor_id": ADMIN, "amount": 5000.00, "reason": "Too much"
        })

        assert response.status_code == 409
        assert response.json()["code"] == "insufficient_funds"

    def test_frozen_escrow_is_423(self):
        escrow = self.create_escrow()
        app_state.platform.ledger.freeze_account(escrow["id"], "Manual review", frozen_by=ADMIN)

        response = self.client.post(f"/api/v1/escrows/{escrow['id']}/refund", json={
            "actor_id": ADMIN, "amount": 100.00, "reason": "Scope reduced"
        })
        assert response.status_code == 423
        assert response.json()["code"] == "account_frozen"

        unfrozen = self.client.post(f"/api/v1/escrows/{escrow['id']}/unfreeze", json={"actor_id": ADMIN})
        assert unfrozen.status_code == 200
        assert unfrozen.json()["status"] == "active"

    def test_audit_trail(self):
        escrow = self.create_escrow()
        body = self.client.get(f"/api/v1/escrows/{escrow['id']}/audit").json()

        assert body["chain_intact"]
        assert body["entries"][0]["action"] == "created"

# ============================================
# MILESTONES & RELEASES
# ============================================

class TestMilestoneEndpoints(ApiTestCase):

    def test_submit_approve_releases(self):
        escrow = self.create_escrow()
        design = escrow["milestones"][0]["id"]

        submitted = self.deliver(design)
        assert submitted.json()["status"] == "completed"

        approved = self.client.post(f"/api/v1/milestones/{design}/approve", json={"actor_id": CLIENT})
        assert approved.status_code == 200
        assert approved.json()["status"] == "released"
        assert self.get_escrow(escrow["id"])["available_amount"] == 500.00

    def test_empty_deliverables_rejected(self):
        escrow = self.create_escrow()
        design = escrow["milestones"][0]["id"]
        self.client.post(f"/api/v1/milestones/{design}/start", json={"actor_id": FREELANCER})

        response = self.client.post(f"/api/v1/milestones/{design}/submit", json={
            "actor_id": FREELANCER, "deliverables": [""]
        })
        assert response.status_code == 400

    def test_repeat_release_returns_same_transaction(self):
        escrow = self.create_escrow()
        design = escrow["milestones"][0]["id"]
        self.deliver(design)
        self.client.post(f"/api/v1/milestones/{design}/approve", json={"actor_id": CLIENT})

        first = self.client.post(f"/api/v1/milestones/{design}/release", json={})
        second = self.client.post(f"/api/v1/milestones/{design}/release", json={})

        assert first.json()["id"] == second.json()["id"]
        assert first.json()["status"] == "completed"

    def test_webhook_confirms_deferred_release(self):
        escrow = self.create_escrow()
        design = escrow["milestones"][0]["id"]
        self.deliver(design)
        app_state.platform.rail.defer_next()
        self.client.post(f"/api/v1/milestones/{design}/approve", json={"actor_id": CLIENT})

        pending = [t for t in self.get_escrow(escrow["id"])["transactions"] if t["transaction_type"] == "release"][0]
        assert pending["status"] == "processing"

        response = self.client.post("/api/v1/webhooks/rail", json={
            "payment_intent_id": pending["payment_intent_id"], "succeeded": True
        })
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        duplicate = self.client.post("/api/v1/webhooks/rail", json={
            "payment_intent_id": pending["payment_intent_id"], "succeeded": True
        })
        assert duplicate.json()["status"] == "completed"
        assert self.get_escrow(escrow["id"])["available_amount"] == 500.00

# ============================================
# DISPUTES & CLAIMS
# ============================================

class TestDisputeEndpoints(ApiTestCase):

    def test_partial_refund_flow(self):
        escrow = self.create_escrow()
        design = escrow["milestones"][0]["id"]
        self.deliver(design)

        opened = self.client.post(f"/api/v1/escrows/{escrow['id']}/disputes", json={
            "initiated_by": CLIENT, "dispute_type": "quality", "reason": "Half delivered", "milestone_id": design
        })
        assert opened.status_code == 201
        dispute_id = opened.json()["id"]

        for status in ("investigating", "mediation"):
            advanced = self.client.post(f"/api/v1/disputes/{dispute_id}/advance", json={"actor_id": ADMIN, "status": status})
            assert advanced.status_code == 200

        resolved = self.client.post(f"/api/v1/disputes/{dispute_id}/resolve", json={
            "actor_id": ADMIN, "resolution": "partial_refund", "resolution_amount": 200.00
        })
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert self.get_escrow(escrow["id"])["available_amount"] == 800.00

    def test_approval_blocked_by_open_dispute(self):
        escrow = self.create_escrow()
        design = escrow["milestones"][0]["id"]
        self.deliver(design)
        self.client.post(f"/api/v1/escrows/{escrow['id']}/disputes", json={
            "initiated_by": FREELANCER, "dispute_type": "payment", "reason": "Client silent"
        })

        response = self.client.post(f"/api/v1/milestones/{design}/approve", json={"actor_id": CLIENT})
        assert response.status_code == 400
        assert response.json()["code"] == "dispute_open"

    def test_insurance_claim_flow(self):
        escrow = self.create_escrow(risk_score=0.6)
        filed = self.client.post(f"/api/v1/escrows/{escrow['id']}/insurance-claims", json={
            "claimant_id": CLIENT, "claim_type": "non_delivery", "claim_amount": 500.00
        })
        assert filed.status_code == 201
        claim_id = filed.json()["id"]

        self.client.post(f"/api/v1/insurance-claims/{claim_id}/review", json={"actor_id": ADMIN})
        approved = self.client.post(f"/api/v1/insurance-claims/{claim_id}/approve", json={"actor_id": ADMIN})
        assert approved.json()["approved_amount"] == 400.00

        paid = self.client.post(f"/api/v1/insurance-claims/{claim_id}/pay", json={"actor_id": ADMIN})
        assert paid.json()["status"] == "paid"

# ============================================
# FRAUD & OPERATIONS
# ============================================

class TestFraudEndpoints(ApiTestCase):

    def test_behavior_without_account_is_recorded_only(self):
        response = self.client.post("/api/v1/fraud/behavior", json={"user_id": FREELANCER, "typing_interval_ms": 120})

        assert response.status_code == 200
        assert response.json() == {"recorded": True, "assessment": None}

    def test_list_alerts(self):
        escrow = self.create_escrow()
        app_state.platform.fraud.assess_context(CLIENT, {"score": 0.95}, account_id=escrow["id"])

        alerts = self.client.get("/api/v1/fraud/alerts").json()
        assert [a["account_id"] for a in alerts] == [escrow["id"]]

    def test_unknown_alert_is_404(self):
        response = self.client.post("/api/v1/fraud/alerts/FDA-MISSING/acknowledge", json={"actor_id": ADMIN})
        assert response.status_code == 404

    def test_run_jobs(self):
        self.create_escrow()
        body = self.client.post("/api/v1/jobs/run").json()

        assert body["audit_chain_intact"]
        assert body["halted_accounts"] == []
        assert body["fraud_assessments"] >= 1

    def test_tampered_balance_pages_operator(self):
        escrow = self.create_escrow()
        app_state.platform.storage._records[escrow["id"]].account.available_amount = 999.00

        body = self.client.post("/api/v1/jobs/run").json()
        assert body["halted_accounts"] == [escrow["id"]]

        alerts = self.client.get("/api/v1/operator-alerts", params={"account_id": escrow["id"]}).json()
        assert [a["category"] for a in alerts] == ["invariant_violation"]


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
