"""
Dispatch service - offering jobs to contractors and resolving the offers.

An offer (dispatch) is a PENDING row with a hashed bearer token and a 24h
expiry. Expiry is lazy: a PENDING row past ``expires_at`` is treated as dead
by every read, flipped to EXPIRED when someone responds to it, and swept up
in bulk by the worker.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...action_tokens import OFFER_TOKEN_BYTES, hash_action_token, issue_capability
from ...config import COMPLETION_WINDOW_DAYS, DISPATCH_TTL_HOURS, MAX_PENDING_DISPATCHES
from ...events import (
    JOB_CLAIM_RELEASED,
    JOB_DISPATCH_ACCEPTED,
    JOB_DISPATCH_DECLINED,
    JOB_DISPATCH_EXPIRED,
    JOB_DISPATCH_SENT,
    JOB_ROUTING_APPLIED,
    JOB_STATUS_CHANGED,
    EventOutbox,
    job_event,
)
from ...models import DispatchStatus, Job, JobDispatch, RoutingStatus
from ...outcomes import Outcome, OutcomeKind
from ...utils.time import utcnow
from ..eligibility.service import EligibilityService, contractor_in_good_standing, pricing_locked
from ..jobs.repository import JobRepository
from ..jobs.routing import claim_values, release_values, routable_job_failure, router_failure, unclaimed_expectation
from ..jobs.state_machine import OPEN_STATUSES, JobStatus, TransitionError, assert_transition
from ..ledger.funding import EscrowFunding
from .repository import DispatchRepository

logger = logging.getLogger(__name__)

ACCEPT = "ACCEPT"
DECLINE = "DECLINE"


class DispatchService:
    """Service layer for job offers"""

    def __init__(self, db: Session, payment_processor=None):
        self.db = db
        self.repo = DispatchRepository()
        self.jobs = JobRepository()
        self.eligibility = EligibilityService(db)
        self.funding = EscrowFunding(db, payment_processor)

    # ------------------------------------------------------------------
    # Creating offers
    # ------------------------------------------------------------------

    def send_offer(
        self, router_user_id: str, job_id: str, contractor_id: str, now: Optional[datetime] = None
    ) -> Outcome:
        """Offer a job this router has already claimed to one more contractor"""
        now = now or utcnow()

        job = self.jobs.get_job(self.db, job_id)
        if not job or job.archived or job.is_mock:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if job.claimed_by_router_id != router_user_id:
            return self._fail(OutcomeKind.FORBIDDEN, "Job is not claimed by this router")
        if JobStatus(job.status) not in OPEN_STATUSES:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job is no longer open")
        if not pricing_locked(job):
            return self._fail(OutcomeKind.PRICING_NOT_LOCKED, "Job pricing is not locked")

        router = self.jobs.get_router(self.db, router_user_id)
        failure = router_failure(self.db, router, job, now, check_daily_limit=False)
        if failure:
            return self._fail(failure.kind, failure.detail)

        contractor = self.jobs.get_contractor(self.db, contractor_id)
        result = self.eligibility.check_pairing(job, contractor)
        if not result.eligible:
            return self._fail(
                OutcomeKind.NOT_ELIGIBLE,
                "Contractor is not eligible for this job",
                contractor_id=contractor_id,
                reason=result.reason.value,
            )

        # Re-confirms the claim and serializes offer creation on the job row
        touched = self.jobs.update_if(
            self.db,
            job_id,
            expected={"claimed_by_router_id": router_user_id, "status": OPEN_STATUSES, "archived": False},
            values={"routed_at": now},
        )
        if touched == 0:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job is no longer claimed by this router")

        if contractor_id in self.repo.live_pending_contractor_ids(self.db, job_id, now):
            return self._fail(OutcomeKind.ALREADY_SENT, "Contractor already has a pending offer")
        if self.repo.count_live_pending(self.db, job_id, now) >= MAX_PENDING_DISPATCHES:
            return self._fail(
                OutcomeKind.TOO_MANY_OFFERS, f"Job already has {MAX_PENDING_DISPATCHES} pending offers"
            )

        dispatch, token, event = self._create_offer(job_id, contractor_id, router_user_id, now)
        EventOutbox.stage(self.db, [event])
        self.db.commit()

        logger.info(f"📨 Router {router_user_id} offered job {job_id} to contractor {contractor_id}")
        return Outcome.success(events=[event], dispatch=dispatch, token=token)

    def claim_and_dispatch(
        self,
        router_user_id: str,
        job_id: str,
        contractor_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Outcome:
        """
        Claim an unrouted job and offer it to up to five contractors in one
        transaction. Losing the claim to another router writes nothing.
        """
        now = now or utcnow()
        ids = list(dict.fromkeys(c for c in contractor_ids if c))
        if not ids:
            return self._fail(OutcomeKind.INVALID_REQUEST, "No contractors selected")
        if len(ids) > MAX_PENDING_DISPATCHES:
            return self._fail(
                OutcomeKind.TOO_MANY_OFFERS, f"At most {MAX_PENDING_DISPATCHES} contractors per job"
            )

        job = self.jobs.get_job(self.db, job_id)
        failure = routable_job_failure(job)
        if failure:
            return self._fail(failure.kind, failure.detail)

        router = self.jobs.get_router(self.db, router_user_id)
        failure = router_failure(self.db, router, job, now)
        if failure:
            return self._fail(failure.kind, failure.detail)

        for contractor_id in ids:
            result = self.eligibility.check_pairing(job, self.jobs.get_contractor(self.db, contractor_id))
            if not result.eligible:
                return self._fail(
                    OutcomeKind.NOT_ELIGIBLE,
                    f"Contractor {contractor_id} is not eligible for this job",
                    contractor_id=contractor_id,
                    reason=result.reason.value,
                )

        claimed = self.jobs.update_if(
            self.db,
            job_id,
            expected=unclaimed_expectation(),
            values=claim_values(job, router_user_id, RoutingStatus.ROUTED_BY_ROUTER, now),
        )
        if claimed == 0:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job was claimed by someone else")

        if self.repo.count_live_pending(self.db, job_id, now) + len(ids) > MAX_PENDING_DISPATCHES:
            return self._fail(
                OutcomeKind.TOO_MANY_OFFERS, f"Job would exceed {MAX_PENDING_DISPATCHES} pending offers"
            )

        events = [job_event(JOB_ROUTING_APPLIED, job_id, router_user_id, now=now, contractor_ids=ids)]
        dispatches = []
        tokens = {}
        for contractor_id in ids:
            dispatch, token, event = self._create_offer(job_id, contractor_id, router_user_id, now)
            dispatches.append(dispatch)
            tokens[contractor_id] = token
            events.append(event)

        EventOutbox.stage(self.db, events)
        self.db.commit()

        logger.info(f"✅ Router {router_user_id} claimed job {job_id} and sent {len(ids)} offers")
        return Outcome.success(events=events, dispatches=dispatches, tokens=tokens)

    def _create_offer(self, job_id: str, contractor_id: str, router_user_id: str, now: datetime):
        capability = issue_capability(
            "dispatch",
            job_id,
            ttl=timedelta(hours=DISPATCH_TTL_HOURS),
            single_use=True,
            nbytes=OFFER_TOKEN_BYTES,
            now=now,
        )
        dispatch = self.repo.create(
            self.db,
            job_id=job_id,
            contractor_id=contractor_id,
            router_user_id=router_user_id,
            token_hash=capability.token_hash,
            expires_at=capability.expires_at,
            now=now,
        )
        event = job_event(
            JOB_DISPATCH_SENT,
            job_id,
            router_user_id,
            now=now,
            dispatch_id=dispatch.id,
            contractor_id=contractor_id,
            expires_at=capability.expires_at,
        )
        return dispatch, capability.secret, event

    # ------------------------------------------------------------------
    # Resolving offers
    # ------------------------------------------------------------------

    def respond(
        self,
        token: str,
        decision: str,
        estimated_completion_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Outcome:
        """Contractor accepts or declines an offer with its bearer token"""
        now = now or utcnow()
        decision = (decision or "").strip().upper()
        if decision not in (ACCEPT, DECLINE):
            return self._fail(OutcomeKind.INVALID_REQUEST, "Decision must be ACCEPT or DECLINE")
        if not token:
            return self._fail(OutcomeKind.NOT_FOUND, "Offer not found")

        dispatch = self.repo.get_by_token_hash(self.db, hash_action_token(token))
        if not dispatch:
            return self._fail(OutcomeKind.NOT_FOUND, "Offer not found")
        if dispatch.status != DispatchStatus.PENDING.value:
            return self._fail(OutcomeKind.ALREADY_RESPONDED, f"Offer already {dispatch.status.lower()}")

        if now > dispatch.expires_at:
            return self._expire(dispatch, now)

        job = self.jobs.get_job(self.db, dispatch.job_id)
        if not job or job.archived:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job is no longer available")
        if job.claimed_by_router_id != dispatch.router_user_id:
            return self._fail(OutcomeKind.JOB_NOT_OWNED, "Job is no longer routed by the offering router")
        if JobStatus(job.status) not in OPEN_STATUSES:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job is no longer available")

        if decision == DECLINE:
            return self._decline(dispatch, now)
        return self._accept(dispatch, job, estimated_completion_date, now)

    def _expire(self, dispatch: JobDispatch, now: datetime) -> Outcome:
        # Committed even though the caller gets a failure
        updated = self.repo.update_status_if(
            self.db,
            dispatch.id,
            DispatchStatus.PENDING.value,
            {"status": DispatchStatus.EXPIRED.value, "responded_at": now},
        )
        if updated:
            EventOutbox.stage(
                self.db,
                [job_event(JOB_DISPATCH_EXPIRED, dispatch.job_id, now=now, dispatch_id=dispatch.id)],
            )
        self.db.commit()
        return Outcome.failure(OutcomeKind.EXPIRED, "Offer has expired", dispatch_id=dispatch.id)

    def _decline(self, dispatch: JobDispatch, now: datetime) -> Outcome:
        updated = self.repo.update_status_if(
            self.db,
            dispatch.id,
            DispatchStatus.PENDING.value,
            {"status": DispatchStatus.DECLINED.value, "responded_at": now},
        )
        if updated == 0:
            return self._fail(OutcomeKind.ALREADY_RESPONDED, "Offer already answered")

        event = job_event(
            JOB_DISPATCH_DECLINED,
            dispatch.job_id,
            dispatch.contractor_id,
            now=now,
            dispatch_id=dispatch.id,
        )
        EventOutbox.stage(self.db, [event])
        self.db.commit()
        logger.info(f"Contractor {dispatch.contractor_id} declined job {dispatch.job_id}")
        return Outcome.success(events=[event], dispatch_id=dispatch.id, status=DispatchStatus.DECLINED.value)

    def _accept(
        self,
        dispatch: JobDispatch,
        job: Job,
        estimated_completion_date: Optional[date],
        now: datetime,
    ) -> Outcome:
        job_id = job.id
        previous_status = job.status

        contractor = self.jobs.get_contractor(self.db, dispatch.contractor_id)
        if not contractor_in_good_standing(contractor):
            return self._fail(
                OutcomeKind.NOT_ELIGIBLE,
                "Contractor account is not active",
                contractor_id=dispatch.contractor_id,
            )
        try:
            assert_transition(previous_status, JobStatus.ASSIGNED)
        except TransitionError as e:
            return self._fail(OutcomeKind.INVALID_TRANSITION, str(e))

        if self.funding.authorization_lapsed(job, now):
            return self.funding.archive_unfunded(job, dispatch.contractor_id, now, dispatch_id=dispatch.id)
        funded = self.funding.secure(job, dispatch.contractor_id, now)
        if not funded.ok:
            return self._fail(funded.kind, funded.detail)

        values = {
            "status": JobStatus.ASSIGNED,
            "accepted_at": now,
            "completion_deadline_at": now + timedelta(days=COMPLETION_WINDOW_DAYS),
            **funded.data["values"],
        }
        if estimated_completion_date:
            values["estimated_completion_date"] = estimated_completion_date

        contractor_token = customer_token = None
        if not job.contractor_action_token_hash:
            capability = issue_capability("contractor", job_id, now=now)
            values["contractor_action_token_hash"] = capability.token_hash
            contractor_token = capability.secret
        if not job.customer_action_token_hash:
            capability = issue_capability("customer", job_id, now=now)
            values["customer_action_token_hash"] = capability.token_hash
            customer_token = capability.secret

        assigned = self.jobs.update_if(
            self.db,
            job_id,
            expected={
                "status": OPEN_STATUSES,
                "archived": False,
                "claimed_by_router_id": dispatch.router_user_id,
            },
            values=values,
        )
        if assigned == 0:
            logger.info(f"Contractor {dispatch.contractor_id} lost the race for job {job_id}")
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job was accepted by someone else")

        assignment = self.jobs.upsert_assignment(
            self.db, job_id, dispatch.contractor_id, dispatch.router_user_id, now
        )

        accepted = self.repo.update_status_if(
            self.db,
            dispatch.id,
            DispatchStatus.PENDING.value,
            {"status": DispatchStatus.ACCEPTED.value, "responded_at": now},
        )
        if accepted == 0:
            return self._fail(OutcomeKind.ALREADY_RESPONDED, "Offer already answered")
        expired = self.repo.expire_pending_for_job(self.db, job_id, now, exclude_id=dispatch.id)

        events = [
            job_event(
                JOB_DISPATCH_ACCEPTED,
                job_id,
                dispatch.contractor_id,
                now=now,
                dispatch_id=dispatch.id,
                expired_offers=expired,
            ),
            job_event(
                JOB_STATUS_CHANGED,
                job_id,
                dispatch.contractor_id,
                now=now,
                from_status=previous_status,
                to_status=JobStatus.ASSIGNED.value,
            ),
        ]
        if funded.data["event"]:
            events.append(funded.data["event"])

        EventOutbox.stage(self.db, events)
        self.db.commit()

        logger.info(f"✅ Contractor {dispatch.contractor_id} accepted job {job_id}")
        return Outcome.success(
            events=events,
            job_id=job_id,
            assignment_id=assignment.id,
            contractor_id=dispatch.contractor_id,
            contractor_token=contractor_token,
            customer_token=customer_token,
            expired_offers=expired,
        )

    # ------------------------------------------------------------------
    # Claim release, sweeps and reads
    # ------------------------------------------------------------------

    def release_claim(self, router_user_id: str, job_id: str, now: Optional[datetime] = None) -> Outcome:
        """Hand an open job back to the pool and withdraw its live offers"""
        now = now or utcnow()
        job = self.jobs.get_job(self.db, job_id)
        if not job:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if job.claimed_by_router_id != router_user_id:
            return self._fail(OutcomeKind.FORBIDDEN, "Job is not claimed by this router")

        released = self.jobs.update_if(
            self.db,
            job_id,
            expected={
                "routing_status": RoutingStatus.ROUTED_BY_ROUTER,
                "claimed_by_router_id": router_user_id,
                "status": OPEN_STATUSES,
            },
            values=release_values(),
        )
        if released == 0:
            return self._fail(OutcomeKind.JOB_NOT_AVAILABLE, "Job can no longer be released")

        withdrawn = self.repo.expire_pending_for_job(self.db, job_id, now)
        event = job_event(JOB_CLAIM_RELEASED, job_id, router_user_id, now=now, withdrawn_offers=withdrawn)
        EventOutbox.stage(self.db, [event])
        self.db.commit()
        return Outcome.success(events=[event], withdrawn_offers=withdrawn)

    def expire_stale_offers(self, now: Optional[datetime] = None) -> int:
        """Flip every PENDING offer past its expiry to EXPIRED"""
        count = self.repo.expire_stale(self.db, now or utcnow())
        self.db.commit()
        if count:
            logger.info(f"⏰ Expired {count} stale offers")
        return count

    def list_job_offers(self, router_user_id: str, job_id: str) -> Outcome:
        job = self.jobs.get_job(self.db, job_id)
        if not job:
            return Outcome.failure(OutcomeKind.NOT_FOUND, "Job not found")
        if job.claimed_by_router_id != router_user_id:
            return Outcome.failure(OutcomeKind.FORBIDDEN, "Job is not claimed by this router")
        return Outcome.success(dispatches=self.repo.list_for_job(self.db, job_id))

    def list_contractor_offers(self, contractor_id: str, now: Optional[datetime] = None) -> list[JobDispatch]:
        """Offers a contractor can still answer"""
        now = now or utcnow()
        return [
            d
            for d in self.repo.list_for_contractor(self.db, contractor_id, DispatchStatus.PENDING.value)
            if d.expires_at >= now
        ]

    def _fail(self, kind: OutcomeKind, detail: str, **data) -> Outcome:
        self.db.rollback()
        return Outcome.failure(kind, detail, **data)
