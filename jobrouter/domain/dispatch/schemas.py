"""Dispatch domain schemas"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class OfferRequest(BaseModel):
    contractor_id: str


class ClaimAndDispatchRequest(BaseModel):
    contractor_ids: list[str] = Field(min_length=1, max_length=5)


class DispatchResponse(BaseModel):
    id: str
    jobId: str
    contractorId: str
    status: str
    expiresAt: datetime
    respondedAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None
    # Raw offer token, echoed only in development
    token: Optional[str] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_dispatch(cls, dispatch, token: Optional[str] = None) -> "DispatchResponse":
        return cls(
            id=dispatch.id,
            jobId=dispatch.job_id,
            contractorId=dispatch.contractor_id,
            status=dispatch.status,
            expiresAt=dispatch.expires_at,
            respondedAt=dispatch.responded_at,
            createdAt=dispatch.created_at,
            token=token,
        )


class RespondRequest(BaseModel):
    """Contractor answer to an offer link"""

    token: str = Field(min_length=1)
    decision: str  # ACCEPT | DECLINE
    estimated_completion_date: Optional[date] = None


class RespondResponse(BaseModel):
    status: str
    jobId: Optional[str] = None
    assignmentId: Optional[str] = None
    contractorToken: Optional[str] = None


class ReleaseResponse(BaseModel):
    jobId: str
    withdrawnOffers: int
