"""
Typed results for domain operations.

Expected business outcomes (lost races, expired offers, ineligible pairings)
are returned as ``Outcome`` values so callers can branch on them. Only
infrastructure failures are raised.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException


class OutcomeKind(str, Enum):
    OK = "ok"

    # Lookup / authorization
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_TOKEN = "invalid_token"
    INVALID_REQUEST = "invalid_request"

    # Lifecycle
    INVALID_TRANSITION = "invalid_transition"
    JOB_NOT_AVAILABLE = "job_not_available"
    ALREADY_CLAIMED = "already_claimed"
    JOB_NOT_OWNED = "job_not_owned"
    ROUTER_INACTIVE = "router_inactive"
    DAILY_LIMIT_REACHED = "daily_limit_reached"

    # Offers
    EXPIRED = "expired"
    ALREADY_RESPONDED = "already_responded"
    ALREADY_SENT = "already_sent"
    TOO_MANY_OFFERS = "too_many"

    # Eligibility
    NOT_ELIGIBLE = "not_eligible"
    JURISDICTION_MISMATCH = "jurisdiction_mismatch"
    PRICING_NOT_LOCKED = "pricing_not_locked"

    # Money
    AUTHORIZATION_EXPIRED = "authorization_expired"
    PAYMENT_NOT_CAPTURABLE = "payment_not_capturable"
    ESCROW_NOT_FUNDED = "escrow_not_funded"
    ALREADY_SCHEDULED = "already_scheduled"
    MOCK_JOB = "mock_job"
    NO_ASSIGNMENT = "no_assignment"
    NO_CONTRACTOR_PAYOUT = "no_contractor_payout"
    PAYMENT_NOT_RELEASED = "payment_not_released"
    CONTRACTOR_MISSING = "contractor_missing"


# Outcomes that report an already-completed side effect rather than a failure
NO_OP_KINDS = frozenset({OutcomeKind.ALREADY_SCHEDULED})

HTTP_STATUS_BY_KIND = {
    OutcomeKind.NOT_FOUND: 404,
    OutcomeKind.FORBIDDEN: 403,
    OutcomeKind.INVALID_TOKEN: 403,
    OutcomeKind.INVALID_REQUEST: 400,
    OutcomeKind.INVALID_TRANSITION: 409,
    OutcomeKind.JOB_NOT_AVAILABLE: 409,
    OutcomeKind.ALREADY_CLAIMED: 409,
    OutcomeKind.JOB_NOT_OWNED: 409,
    OutcomeKind.ROUTER_INACTIVE: 403,
    OutcomeKind.DAILY_LIMIT_REACHED: 429,
    OutcomeKind.EXPIRED: 409,
    OutcomeKind.ALREADY_RESPONDED: 409,
    OutcomeKind.ALREADY_SENT: 409,
    OutcomeKind.TOO_MANY_OFFERS: 409,
    OutcomeKind.NOT_ELIGIBLE: 409,
    OutcomeKind.JURISDICTION_MISMATCH: 403,
    OutcomeKind.PRICING_NOT_LOCKED: 409,
    OutcomeKind.AUTHORIZATION_EXPIRED: 410,
    OutcomeKind.PAYMENT_NOT_CAPTURABLE: 402,
    OutcomeKind.ESCROW_NOT_FUNDED: 409,
    OutcomeKind.MOCK_JOB: 409,
    OutcomeKind.NO_ASSIGNMENT: 409,
    OutcomeKind.NO_CONTRACTOR_PAYOUT: 409,
    OutcomeKind.PAYMENT_NOT_RELEASED: 409,
    OutcomeKind.CONTRACTOR_MISSING: 409,
}


@dataclass
class Outcome:
    """Result of a domain operation, with the events it produced"""

    kind: OutcomeKind
    detail: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    events: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.OK

    @classmethod
    def success(cls, events: Optional[list] = None, **data) -> "Outcome":
        return cls(kind=OutcomeKind.OK, data=data, events=list(events or []))

    @classmethod
    def failure(cls, kind: OutcomeKind, detail: Optional[str] = None, **data) -> "Outcome":
        return cls(kind=kind, detail=detail, data=data)


def raise_for_outcome(outcome: Outcome) -> Outcome:
    """Convert a failed outcome into an HTTPException for the request layer"""
    if outcome.ok or outcome.kind in NO_OP_KINDS:
        return outcome
    status_code = HTTP_STATUS_BY_KIND.get(outcome.kind, 400)
    raise HTTPException(
        status_code=status_code,
        detail={"code": outcome.kind.value, "message": outcome.detail or outcome.kind.value},
    )
