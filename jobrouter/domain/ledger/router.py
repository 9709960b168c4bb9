"""Ledger router - balances, entries and payouts"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import Actor, Role, require_roles
from ...database import get_db
from ...models_ledger import LedgerBucket, LedgerOwnerType
from ...outcomes import raise_for_outcome
from .schemas import BalanceResponse, LedgerEntryResponse, PayoutResponse, SchedulePayoutResponse
from .service import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ledger", tags=["Ledger"])

OWNER_TYPE_BY_ROLE = {
    Role.ROUTER: LedgerOwnerType.ROUTER,
    Role.CONTRACTOR: LedgerOwnerType.CONTRACTOR,
}


def get_ledger_service(db: Session = Depends(get_db)) -> LedgerService:
    """Dependency injection for LedgerService"""
    return LedgerService(db)


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    actor: Actor = Depends(require_roles(Role.ROUTER, Role.CONTRACTOR)),
    service: LedgerService = Depends(get_ledger_service),
):
    """Current pending and available balance for the caller"""
    owner_type = OWNER_TYPE_BY_ROLE[actor.role].value
    balances = service.account_balance(owner_type, actor.user_id)
    return BalanceResponse(
        ownerType=owner_type,
        ownerId=actor.user_id,
        pendingCents=balances[LedgerBucket.PENDING.value],
        availableCents=balances[LedgerBucket.AVAILABLE.value],
    )


@router.get("/entries", response_model=list[LedgerEntryResponse])
async def list_entries(
    actor: Actor = Depends(require_roles(Role.ROUTER, Role.CONTRACTOR)),
    service: LedgerService = Depends(get_ledger_service),
):
    entries = service.list_entries(OWNER_TYPE_BY_ROLE[actor.role].value, actor.user_id)
    return [
        LedgerEntryResponse(
            id=e.id,
            jobId=e.job_id,
            type=e.type,
            bucket=e.bucket,
            direction=e.direction,
            amountCents=e.amount_cents,
            memo=e.memo,
            createdAt=e.created_at,
        )
        for e in entries
    ]


@router.get("/payouts", response_model=list[PayoutResponse])
async def list_payouts(
    actor: Actor = Depends(require_roles(Role.CONTRACTOR)),
    service: LedgerService = Depends(get_ledger_service),
):
    return [
        PayoutResponse(
            id=p.id,
            jobId=p.job_id,
            amountCents=p.amount_cents,
            scheduledFor=p.scheduled_for,
            status=p.status,
        )
        for p in service.list_payouts(actor.user_id)
    ]


@router.post("/jobs/{job_id}/schedule-payout", response_model=SchedulePayoutResponse)
async def schedule_contractor_payout(
    job_id: str,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
    service: LedgerService = Depends(get_ledger_service),
):
    """Retry payout scheduling for a settled job; repeating it is harmless"""
    outcome = raise_for_outcome(service.schedule_contractor_payout(job_id))
    logger.info(f"Admin {actor.user_id} scheduled payout for job {job_id}: {outcome.kind.value}")
    return SchedulePayoutResponse(
        jobId=job_id,
        result=outcome.kind.value,
        payoutId=outcome.data.get("payout_id"),
        scheduledFor=outcome.data.get("scheduled_for"),
    )
