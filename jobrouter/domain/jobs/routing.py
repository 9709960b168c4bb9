"""Shared rules for claiming a job on behalf of a router"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import ROUTING_WINDOW_HOURS
from ...models import AccountStatus, Job, RouterProfile, RoutingStatus
from ...outcomes import Outcome, OutcomeKind
from ...utils.time import start_of_utc_day
from ..eligibility.service import pricing_locked, router_covers_job
from .repository import JobRepository
from .state_machine import OPEN_STATUSES, JobStatus


def routable_job_failure(job: Optional[Job]) -> Optional[Outcome]:
    """Why a job cannot be claimed right now, or None"""
    if not job or job.archived or job.is_mock:
        return Outcome.failure(OutcomeKind.NOT_FOUND, "Job not found")
    if JobStatus(job.status) not in OPEN_STATUSES:
        return Outcome.failure(OutcomeKind.JOB_NOT_AVAILABLE, "Job is not open for routing")
    if job.routing_status != RoutingStatus.UNROUTED.value or job.claimed_by_router_id:
        return Outcome.failure(OutcomeKind.ALREADY_CLAIMED, "Job is already claimed")
    if not pricing_locked(job):
        return Outcome.failure(OutcomeKind.PRICING_NOT_LOCKED, "Job pricing is not locked")
    return None


def router_failure(
    db: Session,
    router: Optional[RouterProfile],
    job: Job,
    now: datetime,
    check_daily_limit: bool = True,
) -> Optional[Outcome]:
    """Why this router may not route this job, or None"""
    if not router or router.status != AccountStatus.ACTIVE.value:
        return Outcome.failure(OutcomeKind.ROUTER_INACTIVE, "Router account is not active")
    if not router.home_country or not router.home_region_code:
        return Outcome.failure(OutcomeKind.JURISDICTION_MISMATCH, "Router has no home region")
    if not router_covers_job(router, job):
        return Outcome.failure(OutcomeKind.JURISDICTION_MISMATCH, "Job is outside the router's region")
    if check_daily_limit:
        routed_today = JobRepository.count_routes_since(db, router.user_id, start_of_utc_day(now))
        if routed_today >= router.daily_route_limit:
            return Outcome.failure(
                OutcomeKind.DAILY_LIMIT_REACHED,
                f"Daily route limit of {router.daily_route_limit} reached",
            )
    return None


def unclaimed_expectation() -> dict:
    """Conditions a claim's compare-and-swap requires"""
    return {
        "routing_status": RoutingStatus.UNROUTED,
        "claimed_by_router_id": None,
        "status": OPEN_STATUSES,
        "archived": False,
    }


def claim_values(job: Job, claimer_user_id: str, routing_status: RoutingStatus, now: datetime) -> dict:
    return {
        "routing_status": routing_status,
        "claimed_by_router_id": claimer_user_id,
        "claimed_at": now,
        "routed_at": now,
        "first_routed_at": job.first_routed_at or now,
        "routing_due_at": now + timedelta(hours=ROUTING_WINDOW_HOURS),
    }


def release_values() -> dict:
    return {
        "routing_status": RoutingStatus.UNROUTED,
        "claimed_by_router_id": None,
        "claimed_at": None,
        "routed_at": None,
        "routing_due_at": None,
    }
