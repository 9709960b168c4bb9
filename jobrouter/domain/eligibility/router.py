"""Eligibility router - ranked contractor candidates for a job"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import Actor, Role, require_roles
from ...database import get_db
from ...outcomes import raise_for_outcome
from .schemas import EligibleContractor, EligibleContractorsResponse
from .service import EligibilityService

router = APIRouter(prefix="/eligibility", tags=["Eligibility"])


def get_eligibility_service(db: Session = Depends(get_db)) -> EligibilityService:
    """Dependency injection for EligibilityService"""
    return EligibilityService(db)


@router.get("/jobs/{job_id}/contractors", response_model=EligibleContractorsResponse)
async def list_eligible_contractors(
    job_id: str,
    actor: Actor = Depends(require_roles(Role.ROUTER)),
    service: EligibilityService = Depends(get_eligibility_service),
):
    """Contractors the router may offer this job to, best candidates first"""
    outcome = raise_for_outcome(service.list_eligible(actor.user_id, job_id))
    return EligibleContractorsResponse(
        jobId=job_id,
        limitKm=round(outcome.data["limit_km"], 2),
        contractors=[
            EligibleContractor(
                contractorId=c.contractor_id,
                businessName=c.business_name,
                distanceKm=round(c.distance_km, 2),
                availability=c.availability.value,
                reliability=c.reliability.value,
                completedJobs=c.completed_jobs,
                lastCompletedAt=c.last_completed_at,
            )
            for c in outcome.data["contractors"]
        ],
    )
