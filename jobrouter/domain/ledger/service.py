"""
Ledger service - money side effects of the job lifecycle.

Every entry written here belongs to the same transaction as the state change
that justifies it, except contractor payout scheduling, which runs after the
approval commits and is safe to repeat.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import PLATFORM_ACCOUNT_ID
from ...events import CONTRACTOR_PAYOUT_SCHEDULED, ESCROW_FUNDED, ESCROW_RELEASED, EventOutbox, job_event
from ...models import Job, PaymentStatus
from ...models_ledger import (
    ContractorPayout,
    LedgerBucket,
    LedgerDirection,
    LedgerEntry,
    LedgerEntryType,
    LedgerOwnerType,
    PayoutStatus,
)
from ...outcomes import Outcome, OutcomeKind
from ...utils.time import utcnow
from ..jobs.repository import JobRepository
from .business_days import next_business_day
from .repository import LedgerRepository

logger = logging.getLogger(__name__)

# Allowed drift between the labor total and its split, from per-part rounding
ROUNDING_TOLERANCE_CENTS = 2
DEFAULT_PAYOUT_COUNTRY = "US"


def breakdown_is_consistent(job: Job, tolerance_cents: int = ROUNDING_TOLERANCE_CENTS) -> bool:
    """Contractor payout, router earning and platform fee must add up to the labor total"""
    parts = (job.contractor_payout_cents or 0) + (job.router_earnings_cents or 0) + (job.platform_fee_cents or 0)
    return abs(parts - (job.labor_total_cents or 0)) <= tolerance_cents


def escrow_amount_cents(job: Job) -> int:
    return (job.labor_total_cents or 0) + (job.materials_total_cents or 0)


class LedgerService:
    """Service layer for ledger entries and contractor payouts"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = LedgerRepository()
        self.jobs = JobRepository()

    # ------------------------------------------------------------------
    # Writes inside a caller's transaction
    # ------------------------------------------------------------------

    def record_escrow_funding(self, job: Job, actor_user_id: Optional[str], now: datetime):
        """Funds captured into escrow when a contractor accepts"""
        amount = escrow_amount_cents(job)
        self.repo.add_entry(
            self.db,
            owner_type=LedgerOwnerType.PLATFORM.value,
            owner_id=PLATFORM_ACCOUNT_ID,
            job_id=job.id,
            type=LedgerEntryType.ESCROW_FUND.value,
            bucket=LedgerBucket.PENDING.value,
            direction=LedgerDirection.CREDIT.value,
            amount_cents=amount,
            memo="Customer funds captured into escrow",
            created_at=now,
        )
        return job_event(ESCROW_FUNDED, job.id, actor_user_id, now=now, amount_cents=amount)

    def record_completion_credits(
        self, job: Job, router_user_id: Optional[str], now: datetime
    ) -> list[LedgerEntry]:
        """
        Router earning and platform fee become available at final approval.
        Without a routing router (admin-routed jobs) the platform keeps the
        router earning.
        """
        entries = []
        if (job.router_earnings_cents or 0) > 0:
            if router_user_id:
                owner_type, owner_id = LedgerOwnerType.ROUTER.value, router_user_id
                memo = "Router earning for approved job"
            else:
                owner_type, owner_id = LedgerOwnerType.PLATFORM.value, PLATFORM_ACCOUNT_ID
                memo = "Router earning retained by the platform for an admin-routed job"
            entries.append(
                self.repo.add_entry(
                    self.db,
                    owner_type=owner_type,
                    owner_id=owner_id,
                    job_id=job.id,
                    type=LedgerEntryType.ROUTER_EARNING.value,
                    bucket=LedgerBucket.AVAILABLE.value,
                    direction=LedgerDirection.CREDIT.value,
                    amount_cents=job.router_earnings_cents,
                    memo=memo,
                    created_at=now,
                )
            )
        if (job.platform_fee_cents or 0) > 0:
            entries.append(
                self.repo.add_entry(
                    self.db,
                    owner_type=LedgerOwnerType.PLATFORM.value,
                    owner_id=PLATFORM_ACCOUNT_ID,
                    job_id=job.id,
                    type=LedgerEntryType.PLATFORM_FEE.value,
                    bucket=LedgerBucket.AVAILABLE.value,
                    direction=LedgerDirection.CREDIT.value,
                    amount_cents=job.platform_fee_cents,
                    memo="Platform fee for approved job",
                    created_at=now,
                )
            )
        return entries

    def release_escrow(self, job: Job, actor_user_id: Optional[str], now: datetime):
        """
        Mark the job's escrow released. Returns the event, or None when the
        escrow was already released or never funded.
        """
        updated = self.jobs.update_if(
            self.db,
            job.id,
            expected={"payment_released_at": None, "payment_status": PaymentStatus.FUNDS_SECURED},
            values={"payment_released_at": now, "payment_status": PaymentStatus.RELEASED},
        )
        if updated == 0:
            return None

        amount = escrow_amount_cents(job)
        self.repo.add_entry(
            self.db,
            owner_type=LedgerOwnerType.PLATFORM.value,
            owner_id=PLATFORM_ACCOUNT_ID,
            job_id=job.id,
            type=LedgerEntryType.ESCROW_RELEASE.value,
            bucket=LedgerBucket.PENDING.value,
            direction=LedgerDirection.DEBIT.value,
            amount_cents=amount,
            memo="Escrow released after final approval",
            created_at=now,
        )
        return job_event(ESCROW_RELEASED, job.id, actor_user_id, now=now, amount_cents=amount)

    # ------------------------------------------------------------------
    # Standalone operations (own transaction)
    # ------------------------------------------------------------------

    def schedule_contractor_payout(self, job_id: str, now: Optional[datetime] = None) -> Outcome:
        """
        Create the contractor payout and its PENDING earning for a settled job.

        Safe to call any number of times: the payout table allows one row per
        job, and a caller that loses the insert gets ALREADY_SCHEDULED.
        """
        now = now or utcnow()

        job = self.jobs.get_job(self.db, job_id)
        if not job:
            return self._fail(OutcomeKind.NOT_FOUND, "Job not found")
        if job.is_mock:
            return self._fail(OutcomeKind.MOCK_JOB, "Mock jobs are never paid out")

        assignment = self.jobs.get_assignment(self.db, job_id)
        if not assignment:
            return self._fail(OutcomeKind.NO_ASSIGNMENT, "Job has no contractor assignment")

        amount = job.contractor_payout_cents or 0
        if amount <= 0:
            return self._fail(OutcomeKind.NO_CONTRACTOR_PAYOUT, "Job has no contractor payout")
        if not job.payment_released_at:
            return self._fail(OutcomeKind.PAYMENT_NOT_RELEASED, "Escrow has not been released")

        contractor = self.jobs.get_contractor(self.db, assignment.contractor_id)
        if not contractor:
            return self._fail(OutcomeKind.CONTRACTOR_MISSING, "Assigned contractor no longer exists")

        existing = self.repo.get_payout_for_job(self.db, job_id)
        if existing:
            return self._fail(OutcomeKind.ALREADY_SCHEDULED, "Payout already scheduled", payout_id=existing.id)

        country = (contractor.country_code or DEFAULT_PAYOUT_COUNTRY).upper()
        scheduled_for = next_business_day(now, country)

        try:
            with self.db.begin_nested():
                payout = ContractorPayout(
                    contractor_id=contractor.id,
                    job_id=job_id,
                    amount_cents=amount,
                    scheduled_for=scheduled_for,
                    status=PayoutStatus.PENDING.value,
                    created_at=now,
                )
                self.db.add(payout)
                self.db.flush()
        except IntegrityError:
            # A concurrent caller inserted the payout between our check and insert
            logger.info(f"Payout for job {job_id} was scheduled concurrently")
            return self._fail(OutcomeKind.ALREADY_SCHEDULED, "Payout already scheduled")

        self.repo.add_entry(
            self.db,
            owner_type=LedgerOwnerType.CONTRACTOR.value,
            owner_id=contractor.id,
            job_id=job_id,
            type=LedgerEntryType.CONTRACTOR_EARNING.value,
            bucket=LedgerBucket.PENDING.value,
            direction=LedgerDirection.CREDIT.value,
            amount_cents=amount,
            memo="Contractor earning (scheduled for next business day payout)",
            created_at=now,
        )
        event = job_event(
            CONTRACTOR_PAYOUT_SCHEDULED,
            job_id,
            now=now,
            contractor_id=contractor.id,
            payout_id=payout.id,
            amount_cents=amount,
            scheduled_for=scheduled_for,
        )
        EventOutbox.stage(self.db, [event])
        self.db.commit()

        logger.info(f"✅ Scheduled payout of {amount} cents to contractor {contractor.id} for {scheduled_for}")
        return Outcome.success(events=[event], payout_id=payout.id, scheduled_for=scheduled_for, amount_cents=amount)

    def reconcile_payouts(self, now: Optional[datetime] = None, limit: int = 200) -> int:
        """Schedule payouts for released jobs that do not have one yet"""
        scheduled = 0
        for job_id in self.repo.released_job_ids_without_payout(self.db, limit=limit):
            outcome = self.schedule_contractor_payout(job_id, now=now)
            if outcome.ok:
                scheduled += 1
            elif outcome.kind != OutcomeKind.ALREADY_SCHEDULED:
                logger.warning(f"⚠️ Could not schedule payout for job {job_id}: {outcome.kind.value}")
        return scheduled

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def account_balance(self, owner_type: str, owner_id: str) -> dict[str, int]:
        """Signed balance per bucket (credits minus debits)"""
        balances = {bucket.value: 0 for bucket in LedgerBucket}
        for bucket, direction, total in self.repo.sum_by_bucket(self.db, owner_type, owner_id):
            sign = 1 if direction == LedgerDirection.CREDIT.value else -1
            balances[bucket] = balances.get(bucket, 0) + sign * int(total or 0)
        return balances

    def list_entries(self, owner_type: str, owner_id: str) -> list[LedgerEntry]:
        return self.repo.list_entries(self.db, owner_type=owner_type, owner_id=owner_id)

    def list_payouts(self, contractor_id: str) -> list[ContractorPayout]:
        return self.repo.list_payouts(self.db, contractor_id)

    def _fail(self, kind: OutcomeKind, detail: str, **data) -> Outcome:
        self.db.rollback()
        return Outcome.failure(kind, detail, **data)
