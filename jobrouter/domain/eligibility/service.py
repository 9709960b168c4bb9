"""Eligibility service - who may be offered a given job"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models import AccountStatus, ApprovalStatus, Contractor, Job, RouterProfile, RoutingStatus
from ...outcomes import Outcome, OutcomeKind
from ..jobs.repository import JobRepository
from ..jobs.state_machine import OPEN_STATUSES, JobStatus
from .geo import same_jurisdiction
from .matcher import (
    Availability,
    ContractorProfile,
    EligibilityResult,
    IneligibilityReason,
    JobCriteria,
    RankedCandidate,
    evaluate_contractor,
    rank_candidates,
)
from .repository import EligibilityRepository

logger = logging.getLogger(__name__)


def pricing_locked(job: Job) -> bool:
    return (job.contractor_payout_cents or 0) > 0


def router_covers_job(router: Optional[RouterProfile], job: Job) -> bool:
    if router is None:
        return False
    return same_jurisdiction(router.home_country, router.home_region_code, job.country_code, job.state_code)


def contractor_in_good_standing(contractor: Optional[Contractor]) -> bool:
    """Account still active and approved; checked again when an offer is accepted"""
    return (
        contractor is not None
        and contractor.account_status == AccountStatus.ACTIVE.value
        and contractor.approval_status == ApprovalStatus.APPROVED.value
    )


class EligibilityService:
    """Service layer for contractor eligibility"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = EligibilityRepository()
        self.jobs = JobRepository()

    def check_pairing(self, job: Job, contractor: Optional[Contractor]) -> EligibilityResult:
        """Single job/contractor gate used before any offer or assignment"""
        if contractor is None:
            return EligibilityResult(contractor_id="", eligible=False, reason=IneligibilityReason.NOT_APPROVED)
        return evaluate_contractor(JobCriteria.from_job(job), ContractorProfile.from_contractor(contractor))

    def list_eligible(self, router_user_id: str, job_id: str) -> Outcome:
        """Ranked contractors a router may offer the job to"""
        job = self.jobs.get_job(self.db, job_id)
        if not job or job.archived or job.is_mock:
            return Outcome.failure(OutcomeKind.NOT_FOUND, "Job not found")
        if JobStatus(job.status) not in OPEN_STATUSES:
            return Outcome.failure(OutcomeKind.JOB_NOT_AVAILABLE, "Job is not open for routing")
        if job.routing_status != RoutingStatus.UNROUTED.value and job.claimed_by_router_id != router_user_id:
            return Outcome.failure(OutcomeKind.JOB_NOT_OWNED, "Job is claimed by another router")
        if not pricing_locked(job):
            return Outcome.failure(OutcomeKind.PRICING_NOT_LOCKED, "Job pricing is not locked")

        router = self.jobs.get_router(self.db, router_user_id)
        if not router or router.status != AccountStatus.ACTIVE.value:
            return Outcome.failure(OutcomeKind.ROUTER_INACTIVE, "Router account is not active")
        if not router_covers_job(router, job):
            return Outcome.failure(OutcomeKind.JURISDICTION_MISMATCH, "Job is outside the router's region")

        criteria = JobCriteria.from_job(job)
        eligible: list[EligibilityResult] = []
        names = {}
        for contractor in self.repo.get_candidate_contractors(self.db, job.country_code):
            result = evaluate_contractor(criteria, ContractorProfile.from_contractor(contractor))
            if result.eligible:
                eligible.append(result)
                names[contractor.id] = contractor.business_name

        ids = [r.contractor_id for r in eligible]
        stats = self.repo.get_completion_stats(self.db, ids)
        busy = self.repo.get_busy_contractor_ids(self.db, ids)

        candidates = []
        for result in eligible:
            completed, last_completed_at = stats.get(result.contractor_id, (0, None))
            candidates.append(
                RankedCandidate(
                    contractor_id=result.contractor_id,
                    distance_km=result.distance_km,
                    availability=Availability.BUSY if result.contractor_id in busy else Availability.AVAILABLE,
                    last_completed_at=last_completed_at,
                    completed_jobs=completed,
                    business_name=names.get(result.contractor_id),
                )
            )

        ranked = rank_candidates(candidates)
        logger.info(f"📊 Job {job_id}: {len(ranked)} eligible contractors within {criteria.limit_km:.1f} km")
        return Outcome.success(contractors=ranked, limit_km=criteria.limit_km)
