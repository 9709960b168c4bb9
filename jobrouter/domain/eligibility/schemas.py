"""Eligibility domain schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class EligibleContractor(BaseModel):
    contractorId: str
    businessName: Optional[str] = None
    distanceKm: float
    availability: str
    reliability: str
    completedJobs: int
    lastCompletedAt: Optional[datetime] = None


class EligibleContractorsResponse(BaseModel):
    jobId: str
    limitKm: float
    contractors: list[EligibleContractor]
