"""Dispatch router - FastAPI endpoints for job offers"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import Actor, Role, require_roles
from ...config import ALLOW_DEV_TOKEN_ECHO
from ...database import get_db
from ...models import DispatchStatus
from ...outcomes import raise_for_outcome
from ...services.payment_processor import get_payment_processor
from .schemas import (
    ClaimAndDispatchRequest,
    DispatchResponse,
    OfferRequest,
    ReleaseResponse,
    RespondRequest,
    RespondResponse,
)
from .service import DispatchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dispatch", tags=["Dispatch"])

require_router = require_roles(Role.ROUTER)


def get_dispatch_service(
    db: Session = Depends(get_db),
    payment_processor=Depends(get_payment_processor),
) -> DispatchService:
    """Dependency injection for DispatchService"""
    return DispatchService(db, payment_processor=payment_processor)


def _echo(token):
    return token if ALLOW_DEV_TOKEN_ECHO else None


@router.post("/jobs/{job_id}/offers", response_model=DispatchResponse, status_code=201)
async def send_offer(
    job_id: str,
    data: OfferRequest,
    actor: Actor = Depends(require_router),
    service: DispatchService = Depends(get_dispatch_service),
):
    """Offer a claimed job to one more contractor"""
    outcome = raise_for_outcome(service.send_offer(actor.user_id, job_id, data.contractor_id))
    return DispatchResponse.from_dispatch(outcome.data["dispatch"], _echo(outcome.data["token"]))


@router.post("/jobs/{job_id}/route", response_model=list[DispatchResponse], status_code=201)
async def claim_and_dispatch(
    job_id: str,
    data: ClaimAndDispatchRequest,
    actor: Actor = Depends(require_router),
    service: DispatchService = Depends(get_dispatch_service),
):
    """Claim an unrouted job and offer it to up to five contractors"""
    outcome = raise_for_outcome(service.claim_and_dispatch(actor.user_id, job_id, data.contractor_ids))
    tokens = outcome.data["tokens"]
    return [
        DispatchResponse.from_dispatch(d, _echo(tokens.get(d.contractor_id))) for d in outcome.data["dispatches"]
    ]


@router.post("/jobs/{job_id}/release", response_model=ReleaseResponse)
async def release_claim(
    job_id: str,
    actor: Actor = Depends(require_router),
    service: DispatchService = Depends(get_dispatch_service),
):
    outcome = raise_for_outcome(service.release_claim(actor.user_id, job_id))
    return ReleaseResponse(jobId=job_id, withdrawnOffers=outcome.data["withdrawn_offers"])


@router.get("/jobs/{job_id}/offers", response_model=list[DispatchResponse])
async def list_job_offers(
    job_id: str,
    actor: Actor = Depends(require_router),
    service: DispatchService = Depends(get_dispatch_service),
):
    outcome = raise_for_outcome(service.list_job_offers(actor.user_id, job_id))
    return [DispatchResponse.from_dispatch(d) for d in outcome.data["dispatches"]]


@router.get("/offers/mine", response_model=list[DispatchResponse])
async def list_my_offers(
    actor: Actor = Depends(require_roles(Role.CONTRACTOR)),
    service: DispatchService = Depends(get_dispatch_service),
):
    return [DispatchResponse.from_dispatch(d) for d in service.list_contractor_offers(actor.user_id)]


@router.post("/respond", response_model=RespondResponse)
def respond_to_offer(data: RespondRequest, service: DispatchService = Depends(get_dispatch_service)):
    """Accept or decline an offer; the token in the offer link is the credential"""
    outcome = raise_for_outcome(service.respond(data.token, data.decision, data.estimated_completion_date))
    if outcome.data.get("status") == DispatchStatus.DECLINED.value:
        return RespondResponse(status=DispatchStatus.DECLINED.value)
    return RespondResponse(
        status=DispatchStatus.ACCEPTED.value,
        jobId=outcome.data["job_id"],
        assignmentId=outcome.data["assignment_id"],
        contractorToken=outcome.data.get("contractor_token"),
    )
