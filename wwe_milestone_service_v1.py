"""
WorkWise Escrow (WWE) - Milestone State Machine
Version: 1.0.0

    pending -> in_progress -> completed -> approved -> released
    any non-terminal state -> disputed
    disputed -> approved            (dispute resolved for the freelancer / no action)

Released is terminal. Approval is refused while a dispute on the milestone or
on the whole account is unresolved; a dispute always wins over an approval.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set
import copy

from wwe_enforcement_v1 import (
    EscrowPolicy,
    ValidationError,
    AccountFrozenError,
    EscrowError,
    logger
)
from wwe_escrow_models_v1 import (
    AccountStatus,
    MilestoneStatus,
    EscrowMilestone
)
from wwe_storage_v1 import AccountWorkspace, EscrowStorage
from wwe_escrow_ledger_v1 import LedgerService
from wwe_metrics import record_milestone_transition

ENTITY = "escrow_milestones"

TRANSITIONS: Dict[MilestoneStatus, Set[MilestoneStatus]] = {
    MilestoneStatus.PENDING: {MilestoneStatus.IN_PROGRESS, MilestoneStatus.DISPUTED},
    MilestoneStatus.IN_PROGRESS: {MilestoneStatus.COMPLETED, MilestoneStatus.DISPUTED},
    MilestoneStatus.COMPLETED: {MilestoneStatus.APPROVED, MilestoneStatus.DISPUTED},
    MilestoneStatus.APPROVED: {MilestoneStatus.RELEASED, MilestoneStatus.DISPUTED},
    MilestoneStatus.DISPUTED: {MilestoneStatus.APPROVED},
    MilestoneStatus.RELEASED: set(),
}


class MilestoneService:
    """Worker and employer actions on milestones."""

    def __init__(self, storage: EscrowStorage, ledger: LedgerService, policy: EscrowPolicy):
        self.storage = storage
        self.ledger = ledger
        self.policy = policy

    def transition(self, workspace: AccountWorkspace, milestone: EscrowMilestone, target: MilestoneStatus,
                   actor_id: str, action: Optional[str] = None):
        """Apply one state change, rejecting anything not in TRANSITIONS."""
        current = milestone.status
        if target not in TRANSITIONS[current]:
            raise ValidationError(f"Milestone {milestone.id} cannot move from {current.value} to {target.value}")

        before = milestone.to_dict()
        milestone.status = target
        workspace.emit(ENTITY, milestone.id, action or target.value, actor_id=actor_id, before=before, after=milestone.to_dict())
        record_milestone_transition(current.value, target.value)
        logger.info(f"[MILESTONE] {milestone.id}: {current.value} -> {target.value} ({actor_id})")

    def _require_open_account(self, workspace: AccountWorkspace):
        account = workspace.account
        if account.is_frozen:
            raise AccountFrozenError(f"Escrow {account.id} is frozen: {account.freeze_reason}")
        if account.status != AccountStatus.ACTIVE:
            raise ValidationError(f"Escrow {account.id} is {account.status.value}; milestones need an active, funded escrow")

    # ---- worker actions ----

    def start(self, milestone_id: str, actor_id: str) -> EscrowMilestone:
        account_id = self.storage.account_id_for(milestone_id)
        with self.storage.unit_of_work(account_id) as ws:
            self._require_open_account(ws)
            if actor_id != ws.account.freelancer_id:
                raise ValidationError("only the freelancer can start a milestone")
            milestone = ws.milestone(milestone_id)
            self.transition(ws, milestone, MilestoneStatus.IN_PROGRESS, actor_id, action="started")
            milestone.started_at = datetime.now()
            result = copy.deepcopy(milestone)
        return result

    def submit(self, milestone_id: str, actor_id: str, deliverables: List[str], notes: Optional[str] = None) -> EscrowMilestone:
        """Worker hands in deliverables; arms the auto-approval clock."""
        cleaned = [d.strip() for d in deliverables or [] if d and d.strip()]
        if not cleaned:
            raise ValidationError("deliverables must not be empty")

        account_id = self.storage.account_id_for(milestone_id)
        with self.storage.unit_of_work(account_id) as ws:
            self._require_open_account(ws)
            account = ws.account
            if actor_id != account.freelancer_id:
                raise ValidationError("only the freelancer can submit deliverables")
            milestone = ws.milestone(milestone_id)

            now = datetime.now()
            milestone.deliverables = cleaned
            milestone.submission_notes = notes
            milestone.completed_at = now
            if account.automatic_release and not account.multi_signature:
                milestone.auto_approve_due_at = now + timedelta(hours=account.terms.approval_timeout_hours)
            self.transition(ws, milestone, MilestoneStatus.COMPLETED, actor_id, action="submitted")
            result = copy.deepcopy(milestone)
        return result

    # ---- employer actions ----

    def approve(self, milestone_id: str, actor_id: str) -> EscrowMilestone:
        """Employer approval. Multi-signature escrows need distinct co-signers."""
        account_id = self.storage.account_id_for(milestone_id)
        with self.storage.unit_of_work(account_id) as ws:
            self._require_open_account(ws)
            account = ws.account
            milestone = ws.milestone(milestone_id)

            if actor_id == account.freelancer_id:
                raise ValidationError("the freelancer cannot approve their own milestone")
            if not account.multi_signature and actor_id != account.client_id:
                raise ValidationError("only the client can approve this milestone")
            self._reject_if_disputed(ws, milestone)
            if milestone.status != MilestoneStatus.COMPLETED:
                raise ValidationError(f"Milestone {milestone_id} is {milestone.status.value}; only completed milestones can be approved")

            if account.multi_signature:
                if actor_id in milestone.approvals:
                    raise ValidationError(f"{actor_id} has already signed milestone {milestone_id}")
                before = milestone.to_dict()
                milestone.approvals.append(actor_id)
                ws.emit(ENTITY, milestone.id, "signature_added", actor_id=actor_id, before=before, after=milestone.to_dict())
                signed = len(milestone.approvals) >= self.policy.required_approvals and account.client_id in milestone.approvals
                if not signed:
                    logger.info(f"[MILESTONE] {milestone.id}: {len(milestone.approvals)}/{self.policy.required_approvals} signatures")
                    return copy.deepcopy(milestone)
            else:
                milestone.approvals = [actor_id]

            self._approve_in(ws, milestone, actor_id)
            result = copy.deepcopy(milestone)
        return result

    def _reject_if_disputed(self, workspace: AccountWorkspace, milestone: EscrowMilestone):
        if workspace.unresolved_disputes(milestone_id=milestone.id) or workspace.unresolved_disputes(account_level=True):
            raise ValidationError(
                f"Milestone {milestone.id} has an open dispute; approval rejected",
                code="dispute_open"
            )

    def _approve_in(self, workspace: AccountWorkspace, milestone: EscrowMilestone, actor_id: str, action: str = "approved"):
        self.transition(workspace, milestone, MilestoneStatus.APPROVED, actor_id, action=action)
        milestone.approved_at = datetime.now()
        milestone.auto_approve_due_at = None

    def process_auto_approvals(self, now: Optional[datetime] = None) -> List[EscrowMilestone]:
        """Approve completed milestones whose grace period expired undisputed."""
        now = now or datetime.now()
        due = []
        for record in self.storage.snapshots():
            account = record.account
            if account.status != AccountStatus.ACTIVE or not account.automatic_release or account.multi_signature:
                continue
            for milestone in record.milestones.values():
                if (milestone.status == MilestoneStatus.COMPLETED and milestone.auto_approve_due_at
                        and milestone.auto_approve_due_at <= now):
                    due.append((account.id, milestone.id))

        approved = []
        for account_id, milestone_id in due:
            try:
                with self.storage.unit_of_work(account_id) as ws:
                    milestone = ws.milestone(milestone_id)
                    # Re-check under the lock: a dispute may have landed since the snapshot
                    if (ws.account.status != AccountStatus.ACTIVE or milestone.status != MilestoneStatus.COMPLETED
                            or ws.unresolved_disputes(milestone_id=milestone_id)
                            or ws.unresolved_disputes(account_level=True)):
                        ws.discard()
                        continue
                    self._approve_in(ws, milestone, "scheduler", action="auto_approved")
                    approved.append(copy.deepcopy(milestone))
            except EscrowError as e:
                logger.error(f"[MILESTONE] Auto-approval of {milestone_id} failed: {e}")

        if approved:
            logger.info(f"[MILESTONE] Auto-approved {len(approved)} milestone(s)")
        return approved

    # ---- dispute hooks ----

    def mark_disputed(self, workspace: AccountWorkspace, milestone: EscrowMilestone, actor_id: str):
        if milestone.status == MilestoneStatus.RELEASED:
            raise ValidationError(
                f"Milestone {milestone.id} is already released; open an account-level dispute instead"
            )
        if milestone.status == MilestoneStatus.DISPUTED:
            raise ValidationError(f"Milestone {milestone.id} is already disputed")
        previous = milestone.status
        self.transition(workspace, milestone, MilestoneStatus.DISPUTED, actor_id, action="disputed")
        milestone.status_before_dispute = previous
        milestone.auto_approve_due_at = None

    def approve_after_dispute(self, workspace: AccountWorkspace, milestone: EscrowMilestone, actor_id: str):
        self._approve_in(workspace, milestone, actor_id, action="approved_by_resolution")
