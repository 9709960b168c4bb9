"""Job router - FastAPI endpoints for the job lifecycle"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import Actor, Role, require_roles
from ...database import get_db
from ...outcomes import raise_for_outcome
from ...services.payment_processor import get_payment_processor
from .schemas import (
    AdminAssignRequest,
    AppointmentProposalRequest,
    AssignmentResponse,
    ClarificationRequest,
    CompletionRequest,
    ContractorActionRequest,
    CustomerReviewRequest,
    FlagRequest,
    JobCreate,
    JobResponse,
    ResolveHoldRequest,
    RouterApprovalRequest,
    RouterApprovalResponse,
    TransitionResponse,
)
from .service import JobService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])

require_admin = require_roles(Role.ADMIN)


def get_job_service(
    db: Session = Depends(get_db),
    payment_processor=Depends(get_payment_processor),
) -> JobService:
    """Dependency injection for JobService"""
    return JobService(db, payment_processor=payment_processor)


def _transition_response(outcome) -> TransitionResponse:
    raise_for_outcome(outcome)
    return TransitionResponse(jobId=outcome.data["job_id"], status=outcome.data["status"])


# ============================================================================
# AUTHORING AND REVIEW
# ============================================================================


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    data: JobCreate,
    actor: Actor = Depends(require_roles(Role.POSTER, Role.ADMIN)),
    service: JobService = Depends(get_job_service),
):
    """Create a DRAFT job"""
    outcome = raise_for_outcome(service.create_job(actor.user_id, data))
    return JobResponse.from_job(outcome.data["job"])


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: Optional[list[str]] = Query(None),
    include_archived: bool = Query(False),
    actor: Actor = Depends(require_roles(Role.ADMIN, Role.ROUTER)),
    service: JobService = Depends(get_job_service),
):
    return [JobResponse.from_job(job) for job in service.list_jobs(status, include_archived)]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    actor: Actor = Depends(require_roles(Role.ADMIN, Role.ROUTER, Role.POSTER)),
    service: JobService = Depends(get_job_service),
):
    job = service.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if actor.role == Role.POSTER and job.poster_user_id != actor.user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@router.post("/{job_id}/submit", response_model=TransitionResponse)
async def submit_for_review(
    job_id: str,
    actor: Actor = Depends(require_roles(Role.POSTER, Role.ADMIN)),
    service: JobService = Depends(get_job_service),
):
    job = service.get_job(job_id)
    if job and not actor.is_admin and job.poster_user_id != actor.user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return _transition_response(service.submit_for_review(actor.user_id, job_id))


@router.post("/{job_id}/clarification", response_model=TransitionResponse)
async def request_clarification(
    job_id: str,
    data: ClarificationRequest,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    return _transition_response(service.request_clarification(actor.user_id, job_id, data.note))


@router.post("/{job_id}/approve", response_model=TransitionResponse)
async def approve_job(
    job_id: str,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    return _transition_response(service.approve_job(actor.user_id, job_id))


@router.post("/{job_id}/publish", response_model=TransitionResponse)
async def publish_job(
    job_id: str,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    return _transition_response(service.publish_job(actor.user_id, job_id))


@router.post("/{job_id}/open", response_model=TransitionResponse)
async def open_for_routing(
    job_id: str,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    return _transition_response(service.open_for_routing(actor.user_id, job_id))


# ============================================================================
# ROUTING
# ============================================================================


@router.post("/{job_id}/claim", response_model=JobResponse)
async def claim_job(
    job_id: str,
    actor: Actor = Depends(require_roles(Role.ROUTER)),
    service: JobService = Depends(get_job_service),
):
    """Take exclusive routing rights on an open job"""
    outcome = raise_for_outcome(service.claim_job(actor.user_id, job_id))
    return JobResponse.from_job(outcome.data["job"])


@router.post("/{job_id}/assign", response_model=AssignmentResponse)
async def admin_assign(
    job_id: str,
    data: AdminAssignRequest,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    outcome = raise_for_outcome(
        service.admin_assign(
            actor.user_id,
            job_id,
            data.contractor_id,
            override_distance=data.override_distance,
            override_reason=data.override_reason,
        )
    )
    return AssignmentResponse(
        assignment_id=outcome.data["assignment_id"],
        contractor_token=outcome.data.get("contractor_token"),
        customer_token=outcome.data.get("customer_token"),
    )


# ============================================================================
# EXECUTION - authenticated by the contractor's action token
# ============================================================================


@router.post("/{job_id}/start", response_model=TransitionResponse)
async def start_job(job_id: str, data: ContractorActionRequest, service: JobService = Depends(get_job_service)):
    return _transition_response(service.start_job(job_id, data.token))


@router.post("/{job_id}/appointment")
async def propose_appointment(
    job_id: str, data: AppointmentProposalRequest, service: JobService = Depends(get_job_service)
):
    outcome = raise_for_outcome(service.propose_appointment(job_id, data.token, data.proposed_for))
    return {"jobId": job_id, "proposedFor": outcome.data["proposed_for"]}


@router.post("/{job_id}/complete", response_model=TransitionResponse)
async def contractor_complete(job_id: str, data: CompletionRequest, service: JobService = Depends(get_job_service)):
    return _transition_response(service.contractor_complete(job_id, data.token, data.summary))


# ============================================================================
# ACCEPTANCE
# ============================================================================


@router.post("/{job_id}/review", response_model=TransitionResponse)
async def customer_review(
    job_id: str, data: CustomerReviewRequest, service: JobService = Depends(get_job_service)
):
    """Customer accepts or rejects the work with their action token"""
    return _transition_response(
        service.customer_review(job_id, data.token, data.decision, reason=data.reason, feedback=data.feedback)
    )


@router.post("/{job_id}/router-approve", response_model=RouterApprovalResponse)
async def router_approve(
    job_id: str,
    data: RouterApprovalRequest,
    actor: Actor = Depends(require_roles(Role.ROUTER, Role.ADMIN)),
    service: JobService = Depends(get_job_service),
):
    outcome = raise_for_outcome(
        service.router_approve(actor.user_id, job_id, data.notes, is_admin=actor.is_admin)
    )
    return RouterApprovalResponse(
        jobId=job_id,
        status=outcome.data["status"],
        payout=outcome.data["payout"],
        payoutScheduledFor=outcome.data.get("payout_scheduled_for"),
    )


@router.post("/{job_id}/flag", response_model=TransitionResponse)
async def flag_completion(
    job_id: str,
    data: FlagRequest,
    actor: Actor = Depends(require_roles(Role.ROUTER, Role.ADMIN)),
    service: JobService = Depends(get_job_service),
):
    return _transition_response(
        service.flag_completion(actor.user_id, job_id, data.reason, is_admin=actor.is_admin)
    )


@router.post("/{job_id}/resolve", response_model=TransitionResponse)
async def resolve_hold(
    job_id: str,
    data: ResolveHoldRequest,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    return _transition_response(service.resolve_hold(actor.user_id, job_id, data.resolution, data.note))


@router.post("/{job_id}/archive")
async def archive_job(
    job_id: str,
    actor: Actor = Depends(require_admin),
    service: JobService = Depends(get_job_service),
):
    raise_for_outcome(service.archive_job(actor.user_id, job_id))
    return {"jobId": job_id, "archived": True}
