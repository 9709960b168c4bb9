"""
Contractor eligibility gates and candidate ranking.

Pure functions over plain snapshots of a job and a contractor; nothing here
touches the database. Gates run cheapest first and the first failure wins.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ...models import AccountStatus, ApprovalStatus
from .geo import has_coordinates, haversine_km, normalize_code, radius_limit_km, same_jurisdiction

AUTOMOTIVE_CATEGORY = "AUTOMOTIVE"


class IneligibilityReason(str, Enum):
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    NOT_APPROVED = "NOT_APPROVED"
    CATEGORY_MISMATCH = "CATEGORY_MISMATCH"
    AUTOMOTIVE_NOT_ENABLED = "AUTOMOTIVE_NOT_ENABLED"
    JURISDICTION_MISMATCH = "JURISDICTION_MISMATCH"
    MISSING_COORDINATES = "MISSING_COORDINATES"
    OUT_OF_RANGE = "OUT_OF_RANGE"


class Availability(str, Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"


class Reliability(str, Enum):
    GOOD = "GOOD"
    NEW = "NEW"
    WATCH = "WATCH"


@dataclass(frozen=True)
class JobCriteria:
    job_id: str
    trade_category: str
    job_type: str
    country_code: Optional[str]
    state_code: Optional[str]
    lat: Optional[float]
    lng: Optional[float]

    @classmethod
    def from_job(cls, job) -> "JobCriteria":
        return cls(
            job_id=job.id,
            trade_category=job.trade_category,
            job_type=job.job_type,
            country_code=job.country_code,
            state_code=job.state_code,
            lat=job.lat,
            lng=job.lng,
        )

    @property
    def limit_km(self) -> float:
        return radius_limit_km(self.job_type, self.country_code)


@dataclass(frozen=True)
class ContractorProfile:
    contractor_id: str
    account_status: str
    approval_status: str
    trade_categories: tuple = ()
    automotive_enabled: bool = False
    country_code: Optional[str] = None
    state_code: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    service_radius_km: Optional[float] = None
    business_name: Optional[str] = None

    @classmethod
    def from_contractor(cls, contractor) -> "ContractorProfile":
        return cls(
            contractor_id=contractor.id,
            account_status=contractor.account_status,
            approval_status=contractor.approval_status,
            trade_categories=tuple(contractor.trade_categories or ()),
            automotive_enabled=bool(contractor.automotive_enabled),
            country_code=contractor.country_code,
            state_code=contractor.state_code,
            lat=contractor.lat,
            lng=contractor.lng,
            service_radius_km=contractor.service_radius_km,
            business_name=contractor.business_name,
        )


@dataclass(frozen=True)
class EligibilityResult:
    contractor_id: str
    eligible: bool
    reason: Optional[IneligibilityReason] = None
    distance_km: Optional[float] = None
    limit_km: Optional[float] = None


def effective_limit_km(job: JobCriteria, contractor: ContractorProfile) -> float:
    limit = job.limit_km
    if contractor.service_radius_km is not None and contractor.service_radius_km > 0:
        limit = min(limit, contractor.service_radius_km)
    return limit


def evaluate_contractor(job: JobCriteria, contractor: ContractorProfile) -> EligibilityResult:
    """Run the eligibility gates for one job/contractor pair"""

    def reject(reason, distance_km=None, limit_km=None):
        return EligibilityResult(
            contractor_id=contractor.contractor_id,
            eligible=False,
            reason=reason,
            distance_km=distance_km,
            limit_km=limit_km,
        )

    if contractor.account_status != AccountStatus.ACTIVE.value:
        return reject(IneligibilityReason.ACCOUNT_INACTIVE)
    if contractor.approval_status != ApprovalStatus.APPROVED.value:
        return reject(IneligibilityReason.NOT_APPROVED)

    category = normalize_code(job.trade_category)
    categories = {normalize_code(c) for c in contractor.trade_categories}
    if category not in categories:
        return reject(IneligibilityReason.CATEGORY_MISMATCH)
    if category == AUTOMOTIVE_CATEGORY and not contractor.automotive_enabled:
        return reject(IneligibilityReason.AUTOMOTIVE_NOT_ENABLED)

    # Checked before distance: a contractor across a border is never eligible
    if not same_jurisdiction(job.country_code, job.state_code, contractor.country_code, contractor.state_code):
        return reject(IneligibilityReason.JURISDICTION_MISMATCH)

    if not has_coordinates(job.lat, job.lng) or not has_coordinates(contractor.lat, contractor.lng):
        return reject(IneligibilityReason.MISSING_COORDINATES)

    limit_km = effective_limit_km(job, contractor)
    distance_km = haversine_km(job.lat, job.lng, contractor.lat, contractor.lng)
    if distance_km > limit_km:
        return reject(IneligibilityReason.OUT_OF_RANGE, distance_km, limit_km)

    return EligibilityResult(
        contractor_id=contractor.contractor_id,
        eligible=True,
        distance_km=distance_km,
        limit_km=limit_km,
    )


def reliability_for(completed_jobs: int) -> Reliability:
    if completed_jobs >= 5:
        return Reliability.GOOD
    if completed_jobs == 0:
        return Reliability.NEW
    return Reliability.WATCH


@dataclass
class RankedCandidate:
    contractor_id: str
    distance_km: float
    availability: Availability = Availability.AVAILABLE
    last_completed_at: Optional[datetime] = None
    completed_jobs: int = 0
    business_name: Optional[str] = None
    reliability: Reliability = field(init=False)

    def __post_init__(self):
        self.reliability = reliability_for(self.completed_jobs)


def rank_candidates(candidates: list[RankedCandidate]) -> list[RankedCandidate]:
    """Available first, then longest since last completion, then nearest"""

    def sort_key(candidate: RankedCandidate):
        busy = 1 if candidate.availability == Availability.BUSY else 0
        # Never completed counts as the oldest completion
        last = candidate.last_completed_at.timestamp() if candidate.last_completed_at else 0.0
        return (busy, last, candidate.distance_km, candidate.contractor_id)

    return sorted(candidates, key=sort_key)
