"""
Job service - Business logic for the job lifecycle.

Every status change goes through ``_move``: the state machine approves the
edge, then a conditional update writes it only if the row still holds the
status we read. Losing that race is reported, never overwritten.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...action_tokens import issue_capability, verify_action_token
from ...config import COMPLETION_WINDOW_DAYS
from ...events import (
    APPOINTMENT_PROPOSED,
    JOB_ADMIN_ASSIGNED,
    JOB_ARCHIVED,
    JOB_CLAIMED,
    JOB_CREATED,
    JOB_STATUS_CHANGED,
    EventOutbox,
    job_event,
)
from ...models import AssignmentStatus, Job, PaymentStatus, RoutingStatus
from ...outcomes import Outcome, OutcomeKind
from ...utils.time import utcnow
from ..dispatch.repository import DispatchRepository
from ..eligibility.matcher import IneligibilityReason
from ..eligibility.service import EligibilityService, pricing_locked
from ..ledger.funding import EscrowFunding
from ..ledger.service import LedgerService, breakdown_is_consistent
from .repository import JobRepository
from .routing import claim_values, routable_job_failure, router_failure, unclaimed_expectation
from .schemas import JobCreate
from .state_machine import EXECUTION_STATUSES, HOLDING_STATUSES, JobStatus, TransitionError, assert_transition

logger = logging.getLogger(__name__)

REJECT_REASONS = frozenset({"QUALITY_ISSUE", "INCOMPLETE_WORK", "DAMAGE", "NO_SHOW", "OTHER"})
RESOLVE_APPROVE = "APPROVE"
RESOLVE_REWORK = "REWORK"


class JobService:
    """Service layer for job lifecycle actions"""

    def __init__(self, db: Session, payment_processor=None):
        self.db = db
        self.repo = JobRepository()
        self.dispatches = DispatchRepository()
        self.eligibility = EligibilityService(db)
        self.ledger = LedgerService(db)
        self.funding = EscrowFunding(db, payment_processor)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.repo.get_job(self.db, job_id)

    def list_jobs(self, statuses: Optional[list[str]] = None, include_archived: bool = False) -> list[Job]:
        return self.repo.list_jobs(self.db, statuses=statuses, include_archived=include_archived)

    # ------------------------------------------------------------------
    # Authoring and review
    # ------------------------------------------------------------------

    def create_job(self, poster_user_id: str, data: JobCreate, now: Optional[datetime] = None) -> Outcome:
        now = now or utcnow()
        job = self.repo.create_job(
            self.db,
            poster_user_id=poster_user_id,
            status=JobStatus.DRAFT.value,
            routing_status=RoutingStatus.UNROUTED.value,
            **data.to_columns(),
        )
        event = job_event(JOB_CREATED, job.id, poster_user_id, now=now, trade_category=job.trade_category)
        EventOutbox.stage(self.db, [event])
        self.db.commit()
        logger.info(f"📥 Created job {job.id} for poster {poster_user_id}")
        return Outcome.success(events=[event], job=job)

    def submit_for_review(self, actor_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        return self._simple_move(actor_user_id, job_id, JobStatus.IN_REVIEW, now)

    def request_clarification(
        self, admin_user_id: str, job_id: str, note: Optional[str] = None, now: Optional[datetime] = None
    ) -> Outcome:
        return self._simple_move(admin_user_id, job_id, JobStatus.NEEDS_CLARIFICATION, now, note=note)

    def approve_job(self, admin_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        return self._simple_move(admin_user_id, job_id, JobStatus.APPROVED, now)

    def publish_job(self, admin_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        job = self.repo.get_job(self.db, job_id)
        if job and not breakdown_is_consistent(job):
            return self._fail(OutcomeKind.INVALID_REQUEST, "Payout breakdown does not add up to the labor total")
        return self._simple_move(admin_user_id, job_id, JobStatus.PUBLISHED, now)

    def open_for_routing(self, admin_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        job = self.repo.get_job(self.db, job_id)
        if job and not pricing_locked(job):
            return self._fail(OutcomeKind.PRICING_NOT_LOCKED, "Job pricing is not locked")
        return self._simple_move(admin_user_id, job_id, JobStatus.OPEN_FOR_ROUTING, now)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def claim_job(self, router_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        """Router takes exclusive routing rights on an open job"""
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        failure = routable_job_failure(job)
        if failure:
            return self._fail(failure.kind, failure.detail)

        router = self.repo.get_router(self.db, router_user_id)
        failure = router_failure(self.db, router, job, now)
        if failure:
            return self._fail(failure.kind, failure.detail)

        claimed = self.repo.update_if(
            self.db,
            job_id,
            expected=unclaimed_expectation(),
            values=claim_values(job, router_user_id, RoutingStatus.ROUTED_BY_ROUTER, now),
        )
        if claimed == 0:
            return self._fail(OutcomeKind.ALREADY_CLAIMED, "Job was claimed by another router")

        event = job_event(JOB_CLAIMED, job_id, router_user_id, now=now)
        EventOutbox.stage(self.db, [event])
        self.db.commit()
        logger.info(f"✅ Router {router_user_id} claimed job {job_id}")
        return Outcome.success(events=[event], job=self.repo.reload_job(self.db, job_id))

    def admin_assign(
        self,
        admin_user_id: str,
        job_id: str,
        contractor_id: str,
        override_distance: bool = False,
        override_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Outcome:
        """Assign a contractor directly, bypassing offers"""
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        if not job or job.archived or job.is_mock:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        try:
            assert_transition(job.status, JobStatus.ASSIGNED)
        except TransitionError as e:
            return self._fail(OutcomeKind.INVALID_TRANSITION, str(e))

        if override_distance and not (override_reason or "").strip():
            return self._fail(OutcomeKind.INVALID_REQUEST, "A reason is required to override the distance limit")

        contractor = self.repo.get_contractor(self.db, contractor_id)
        if not contractor:
            return self._fail(OutcomeKind.NOT_FOUND, "Contractor not found")
        result = self.eligibility.check_pairing(job, contractor)
        overridden = False
        if not result.eligible:
            # Only distance can be overridden; jurisdiction and approval never
            if not (override_distance and result.reason == IneligibilityReason.OUT_OF_RANGE):
                return self._fail(
                    OutcomeKind.NOT_ELIGIBLE,
                    "Contractor is not eligible for this job",
                    contractor_id=contractor_id,
                    reason=result.reason.value,
                )
            overridden = True

        if self.funding.authorization_lapsed(job, now):
            return self.funding.archive_unfunded(job, admin_user_id, now, contractor_id=contractor_id)
        funded = self.funding.secure(job, admin_user_id, now)
        if not funded.ok:
            return self._fail(funded.kind, funded.detail)

        current = job.status
        values = {
            "status": JobStatus.ASSIGNED,
            "accepted_at": now,
            "completion_deadline_at": now + timedelta(days=COMPLETION_WINDOW_DAYS),
            **funded.data["values"],
        }
        expected = {"status": current, "archived": False}
        if job.routing_status == RoutingStatus.UNROUTED.value:
            expected.update(unclaimed_expectation())
            expected["status"] = current
            values.update(claim_values(job, admin_user_id, RoutingStatus.ROUTED_BY_ADMIN, now))
        else:
            expected["claimed_by_router_id"] = job.claimed_by_router_id

        tokens = self._issue_missing_tokens(job, values, now)

        if self.repo.update_if(self.db, job_id, expected, values) == 0:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job changed while assigning")

        assignment = self.repo.upsert_assignment(self.db, job_id, contractor_id, admin_user_id, now)
        withdrawn = self.dispatches.expire_pending_for_job(self.db, job_id, now)

        events = [
            job_event(
                JOB_ADMIN_ASSIGNED,
                job_id,
                admin_user_id,
                now=now,
                contractor_id=contractor_id,
                distance_km=result.distance_km,
                override_distance=overridden,
                override_reason=override_reason if overridden else None,
                withdrawn_offers=withdrawn,
            ),
            job_event(
                JOB_STATUS_CHANGED,
                job_id,
                admin_user_id,
                now=now,
                from_status=current,
                to_status=JobStatus.ASSIGNED.value,
            ),
        ]
        if funded.data["event"]:
            events.append(funded.data["event"])
        EventOutbox.stage(self.db, events)
        self.db.commit()
        logger.info(f"✅ Admin {admin_user_id} assigned job {job_id} to contractor {contractor_id}")
        return Outcome.success(events=events, assignment_id=assignment.id, **tokens)

    # ------------------------------------------------------------------
    # Execution (contractor action token)
    # ------------------------------------------------------------------

    def start_job(self, job_id: str, contractor_token: str, now: Optional[datetime] = None) -> Outcome:
        now = now or utcnow()
        job, failure = self._job_for_token(job_id, contractor_token, "contractor_action_token_hash")
        if failure:
            return failure
        assignment = self.repo.get_assignment(self.db, job_id)
        actor = assignment.contractor_id if assignment else None
        return self._commit(self._move(job, JobStatus.IN_PROGRESS, actor, now, values={"started_at": now}))

    def propose_appointment(
        self, job_id: str, contractor_token: str, proposed_for: datetime, now: Optional[datetime] = None
    ) -> Outcome:
        """Record the visit time the contractor proposed to the customer"""
        now = now or utcnow()
        job, failure = self._job_for_token(job_id, contractor_token, "contractor_action_token_hash")
        if failure:
            return failure
        if job.status != JobStatus.ASSIGNED.value:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Appointments can only be proposed before work starts")
        assignment = self.repo.get_assignment(self.db, job_id)
        if not assignment:
            return self._fail(OutcomeKind.NO_ASSIGNMENT, "Job has no contractor assignment")

        event = job_event(
            APPOINTMENT_PROPOSED,
            job_id,
            assignment.contractor_id,
            now=now,
            contractor_id=assignment.contractor_id,
            proposed_for=proposed_for,
        )
        EventOutbox.stage(self.db, [event])
        self.db.commit()
        return Outcome.success(events=[event], proposed_for=proposed_for)

    def contractor_complete(
        self, job_id: str, contractor_token: str, summary: Optional[str] = None, now: Optional[datetime] = None
    ) -> Outcome:
        now = now or utcnow()
        job, failure = self._job_for_token(job_id, contractor_token, "contractor_action_token_hash")
        if failure:
            return failure
        assignment = self.repo.get_assignment(self.db, job_id)
        actor = assignment.contractor_id if assignment else None

        outcome = self._move(
            job,
            JobStatus.CONTRACTOR_COMPLETED,
            actor,
            now,
            values={"contractor_completed_at": now, "completion_summary": summary},
        )
        if outcome.ok and assignment:
            assignment.status = AssignmentStatus.COMPLETED.value
            assignment.completed_at = now
        return self._commit(outcome)

    # ------------------------------------------------------------------
    # Acceptance (customer action token, router, admin)
    # ------------------------------------------------------------------

    def customer_review(
        self,
        job_id: str,
        customer_token: str,
        decision: str,
        reason: Optional[str] = None,
        feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Outcome:
        now = now or utcnow()
        job, failure = self._job_for_token(job_id, customer_token, "customer_action_token_hash")
        if failure:
            return failure

        decision = (decision or "").strip().upper()
        if decision == "ACCEPT":
            outcome = self._move(
                job,
                JobStatus.CUSTOMER_APPROVED,
                job.poster_user_id,
                now,
                values={"customer_approved_at": now, "customer_feedback": feedback},
            )
        elif decision == "REJECT":
            reason = (reason or "").strip().upper()
            if reason not in REJECT_REASONS:
                return self._fail(OutcomeKind.INVALID_REQUEST, "A valid rejection reason is required")
            outcome = self._move(
                job,
                JobStatus.CUSTOMER_REJECTED,
                job.poster_user_id,
                now,
                values={
                    "customer_rejected_at": now,
                    "customer_reject_reason": reason,
                    "customer_feedback": feedback,
                },
                reason=reason,
            )
        else:
            return self._fail(OutcomeKind.INVALID_REQUEST, "Decision must be ACCEPT or REJECT")
        return self._commit(outcome)

    def router_approve(
        self,
        actor_user_id: str,
        job_id: str,
        notes: Optional[str] = None,
        is_admin: bool = False,
        now: Optional[datetime] = None,
    ) -> Outcome:
        """
        Final sign-off by the routing router, or by an admin. Credits the
        router and platform and releases escrow in the same transaction, then
        schedules the contractor payout.
        """
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        if not job or job.archived:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if not is_admin and job.claimed_by_router_id != actor_user_id:
            return self._fail(OutcomeKind.FORBIDDEN, "Only the routing router or an admin can approve this job")
        if job.payment_status != PaymentStatus.FUNDS_SECURED.value:
            return self._fail(OutcomeKind.ESCROW_NOT_FUNDED, "Customer funds were never secured for this job")

        # Admin-routed jobs have no router to pay
        earning_router_id = None
        if job.routing_status == RoutingStatus.ROUTED_BY_ROUTER.value:
            earning_router_id = job.claimed_by_router_id

        outcome = self._move(
            job,
            JobStatus.COMPLETED_APPROVED,
            actor_user_id,
            now,
            values={"router_approved_at": now, "router_approval_notes": notes},
        )
        if not outcome.ok:
            return outcome

        assignment = self.repo.get_assignment(self.db, job_id)
        if assignment and assignment.status != AssignmentStatus.COMPLETED.value:
            assignment.status = AssignmentStatus.COMPLETED.value
            assignment.completed_at = assignment.completed_at or now

        self.ledger.record_completion_credits(job, earning_router_id, now)
        released = self.ledger.release_escrow(job, actor_user_id, now)
        if released:
            outcome.events.append(released)
        if earning_router_id:
            self.repo.increment_routes_completed(self.db, earning_router_id)
        self._commit(outcome)

        payout = self.ledger.schedule_contractor_payout(job_id, now=now)
        if payout.ok:
            outcome.events.extend(payout.events)
        outcome.data["payout"] = payout.kind.value
        outcome.data["payout_scheduled_for"] = payout.data.get("scheduled_for")
        return outcome

    def flag_completion(
        self,
        actor_user_id: str,
        job_id: str,
        reason: str,
        is_admin: bool = False,
        now: Optional[datetime] = None,
    ) -> Outcome:
        """Put a completed job on hold for admin review"""
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        if not job:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if not is_admin and job.claimed_by_router_id != actor_user_id:
            return self._fail(OutcomeKind.FORBIDDEN, "Only the routing router or an admin can flag this job")
        if not (reason or "").strip():
            return self._fail(OutcomeKind.INVALID_REQUEST, "A reason is required")
        outcome = self._move(
            job,
            JobStatus.COMPLETION_FLAGGED,
            actor_user_id,
            now,
            values={"flagged_at": now, "flag_reason": reason},
            reason=reason,
        )
        return self._commit(outcome)

    def resolve_hold(
        self,
        admin_user_id: str,
        job_id: str,
        resolution: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Outcome:
        """Leave CUSTOMER_REJECTED / COMPLETION_FLAGGED by approving or sending back for rework"""
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        if not job:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if JobStatus(job.status) not in HOLDING_STATUSES:
            return self._fail(OutcomeKind.INVALID_TRANSITION, f"Job is not on hold ({job.status})")

        resolution = (resolution or "").strip().upper()
        if resolution == RESOLVE_APPROVE:
            outcome = self._move(
                job,
                JobStatus.CUSTOMER_APPROVED,
                admin_user_id,
                now,
                values={"customer_approved_at": now},
                resolution=resolution,
                note=note,
            )
        elif resolution == RESOLVE_REWORK:
            outcome = self._move(
                job,
                JobStatus.IN_PROGRESS,
                admin_user_id,
                now,
                values={"contractor_completed_at": None},
                resolution=resolution,
                note=note,
            )
            if outcome.ok:
                assignment = self.repo.get_assignment(self.db, job_id)
                if assignment:
                    assignment.status = AssignmentStatus.ASSIGNED.value
                    assignment.completed_at = None
        else:
            return self._fail(OutcomeKind.INVALID_REQUEST, "Resolution must be APPROVE or REWORK")
        return self._commit(outcome)

    def archive_job(self, admin_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        if not job:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if JobStatus(job.status) in EXECUTION_STATUSES:
            return self._fail(OutcomeKind.INVALID_TRANSITION, "Job cannot be archived while work is under way")

        archived = self.repo.update_if(
            self.db,
            job_id,
            expected={"archived": False, "status": job.status},
            values={"archived": True, "archived_at": now},
        )
        if archived == 0:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job changed or is already archived")
        withdrawn = self.dispatches.expire_pending_for_job(self.db, job_id, now)

        event = job_event(JOB_ARCHIVED, job_id, admin_user_id, now=now, withdrawn_offers=withdrawn)
        EventOutbox.stage(self.db, [event])
        self.db.commit()
        return Outcome.success(events=[event])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _simple_move(self, actor_user_id: str, job_id: str, desired: JobStatus, now, **metadata) -> Outcome:
        now = now or utcnow()
        job = self.repo.get_job(self.db, job_id)
        if not job or job.archived:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        return self._commit(self._move(job, desired, actor_user_id, now, **metadata))

    def _move(
        self,
        job: Job,
        desired: JobStatus,
        actor_user_id: Optional[str],
        now: datetime,
        values: Optional[dict] = None,
        **metadata,
    ) -> Outcome:
        """Check and write one status change; the caller commits"""
        current = job.status
        try:
            assert_transition(current, desired)
        except TransitionError as e:
            return self._fail(OutcomeKind.INVALID_TRANSITION, str(e))

        updates = {"status": desired}
        updates.update(values or {})
        if self.repo.update_if(self.db, job.id, {"status": current}, updates) == 0:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job status changed concurrently")

        event = job_event(
            JOB_STATUS_CHANGED,
            job.id,
            actor_user_id,
            now=now,
            from_status=current,
            to_status=desired.value,
            **{k: v for k, v in metadata.items() if v is not None},
        )
        return Outcome.success(events=[event], job_id=job.id, status=desired.value)

    def _commit(self, outcome: Outcome) -> Outcome:
        if not outcome.ok:
            return outcome
        EventOutbox.stage(self.db, outcome.events)
        self.db.commit()
        return outcome

    def _job_for_token(self, job_id: str, raw_token: str, hash_column: str):
        job = self.repo.get_job(self.db, job_id)
        if not job or job.archived:
            return None, self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if not verify_action_token(raw_token, getattr(job, hash_column)):
            return None, self._fail(OutcomeKind.INVALID_TOKEN, "Invalid or expired action link")
        return job, None

    def _issue_missing_tokens(self, job: Job, values: dict, now: datetime) -> dict:
        tokens = {"contractor_token": None, "customer_token": None}
        if not job.contractor_action_token_hash:
            capability = issue_capability("contractor", job.id, now=now)
            values["contractor_action_token_hash"] = capability.token_hash
            tokens["contractor_token"] = capability.secret
        if not job.customer_action_token_hash:
            capability = issue_capability("customer", job.id, now=now)
            values["customer_action_token_hash"] = capability.token_hash
            tokens["customer_token"] = capability.secret
        return tokens

    def _fail(self, kind: OutcomeKind, detail: str, **data) -> Outcome:
        self.db.rollback()
        return Outcome.failure(kind, detail, **data)
