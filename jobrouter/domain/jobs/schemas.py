"""Job domain schemas - Pydantic models for validation"""

from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..eligibility.geo import normalize_code


class JobCreate(BaseModel):
    """Schema for creating a new job"""

    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    countryCode: str = Field(min_length=2, max_length=2)
    stateCode: str = Field(min_length=1, max_length=10)
    city: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    tradeCategory: str
    jobType: str = "urban"  # urban | regional
    laborTotalCents: int = Field(default=0, ge=0)
    materialsTotalCents: int = Field(default=0, ge=0)
    contractorPayoutCents: int = Field(default=0, ge=0)
    routerEarningsCents: int = Field(default=0, ge=0)
    platformFeeCents: int = Field(default=0, ge=0)
    transactionFeeCents: int = Field(default=0, ge=0)
    paymentReference: Optional[str] = None
    authorizationExpiresAt: Optional[datetime] = None
    isMock: bool = False

    @field_validator("countryCode", "stateCode", "tradeCategory")
    @classmethod
    def normalize(cls, v):
        return normalize_code(v)

    @field_validator("authorizationExpiresAt")
    @classmethod
    def to_naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_validator("jobType")
    @classmethod
    def validate_job_type(cls, v):
        v = (v or "").strip().lower()
        if v == "rural":
            return "regional"
        if v not in ("urban", "regional"):
            raise ValueError("jobType must be 'urban' or 'regional'")
        return v

    def to_columns(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "country_code": self.countryCode,
            "state_code": self.stateCode,
            "city": self.city,
            "lat": self.lat,
            "lng": self.lng,
            "trade_category": self.tradeCategory,
            "job_type": self.jobType,
            "labor_total_cents": self.laborTotalCents,
            "materials_total_cents": self.materialsTotalCents,
            "contractor_payout_cents": self.contractorPayoutCents,
            "router_earnings_cents": self.routerEarningsCents,
            "platform_fee_cents": self.platformFeeCents,
            "transaction_fee_cents": self.transactionFeeCents,
            "payment_reference": self.paymentReference,
            "payment_status": "AUTHORIZED" if self.paymentReference else "UNPAID",
            "authorization_expires_at": self.authorizationExpiresAt,
            "is_mock": self.isMock,
        }


class JobResponse(BaseModel):
    """Schema for job response"""

    id: str
    title: str
    status: str
    routingStatus: str
    archived: bool
    countryCode: str
    stateCode: str
    tradeCategory: str
    jobType: str
    laborTotalCents: int
    contractorPayoutCents: int
    routerEarningsCents: int
    platformFeeCents: int
    paymentStatus: str
    claimedByRouterId: Optional[str] = None
    claimedAt: Optional[datetime] = None
    acceptedAt: Optional[datetime] = None
    completionDeadlineAt: Optional[datetime] = None
    estimatedCompletionDate: Optional[date] = None
    createdAt: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            id=job.id,
            title=job.title,
            status=job.status,
            routingStatus=job.routing_status,
            archived=job.archived,
            countryCode=job.country_code,
            stateCode=job.state_code,
            tradeCategory=job.trade_category,
            jobType=job.job_type,
            laborTotalCents=job.labor_total_cents,
            contractorPayoutCents=job.contractor_payout_cents,
            routerEarningsCents=job.router_earnings_cents,
            platformFeeCents=job.platform_fee_cents,
            paymentStatus=job.payment_status,
            claimedByRouterId=job.claimed_by_router_id,
            claimedAt=job.claimed_at,
            acceptedAt=job.accepted_at,
            completionDeadlineAt=job.completion_deadline_at,
            estimatedCompletionDate=job.estimated_completion_date,
            createdAt=job.created_at,
        )


class TransitionResponse(BaseModel):
    jobId: str
    status: str


class ClarificationRequest(BaseModel):
    note: Optional[str] = None


class AdminAssignRequest(BaseModel):
    """Schema for direct admin assignment"""

    contractor_id: str
    override_distance: bool = False
    override_reason: Optional[str] = None


class AssignmentResponse(BaseModel):
    assignment_id: str
    # Raw action tokens are only returned the first time they are issued
    contractor_token: Optional[str] = None
    customer_token: Optional[str] = None


class ContractorActionRequest(BaseModel):
    token: str


class AppointmentProposalRequest(BaseModel):
    token: str
    proposed_for: datetime


class CompletionRequest(BaseModel):
    token: str
    summary: Optional[str] = Field(default=None, max_length=5000)


class CustomerReviewRequest(BaseModel):
    token: str
    decision: str  # ACCEPT | REJECT
    reason: Optional[str] = None  # required for REJECT
    feedback: Optional[str] = Field(default=None, max_length=5000)


class RouterApprovalRequest(BaseModel):
    notes: Optional[str] = None


class RouterApprovalResponse(BaseModel):
    jobId: str
    status: str
    payout: str
    payoutScheduledFor: Optional[date] = None


class FlagRequest(BaseModel):
    reason: str = Field(min_length=1)


class ResolveHoldRequest(BaseModel):
    resolution: str  # APPROVE | REWORK
    note: Optional[str] = None
