"""
Escrow funding - securing the customer's money when a contractor is put on a job.

Both ways of assigning a contractor (accepting an offer, admin assignment)
go through ``EscrowFunding.secure`` inside their own transaction. Nothing is
committed here except the unfunded archive.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...events import JOB_AUTHORIZATION_EXPIRED, EventOutbox, job_event
from ...models import Job, PaymentStatus
from ...outcomes import Outcome, OutcomeKind
from ...services.payment_processor import AuthorizationState
from ..dispatch.repository import DispatchRepository
from ..jobs.repository import JobRepository
from .service import LedgerService

logger = logging.getLogger(__name__)


class EscrowFunding:
    def __init__(self, db: Session, payment_processor=None):
        self.db = db
        self.payments = payment_processor
        self.jobs = JobRepository()
        self.dispatches = DispatchRepository()
        self.ledger = LedgerService(db)

    @staticmethod
    def authorization_lapsed(job: Job, now: datetime) -> bool:
        return (
            job.payment_status == PaymentStatus.AUTHORIZED.value
            and job.authorization_expires_at is not None
            and job.authorization_expires_at < now
        )

    def secure(self, job: Job, actor_user_id: Optional[str], now: datetime) -> Outcome:
        """
        Capture the job's authorization unless the funds are already secured.

        On success ``data["values"]`` holds the job columns to write with the
        assignment and ``data["event"]`` the ESCROW_FUNDED event (None when
        nothing was captured). The ESCROW_FUND ledger row is added to the
        session; the caller's commit or rollback decides its fate.
        """
        if job.payment_status == PaymentStatus.FUNDS_SECURED.value:
            return Outcome.success(values={}, event=None)
        if not self._capture(job):
            return Outcome.failure(OutcomeKind.PAYMENT_NOT_CAPTURABLE, "Payment could not be captured")

        event = self.ledger.record_escrow_funding(job, actor_user_id, now)
        values = {"payment_status": PaymentStatus.FUNDS_SECURED, "funds_secured_at": now}
        return Outcome.success(values=values, event=event)

    def archive_unfunded(self, job: Job, actor_user_id: Optional[str], now: datetime, **metadata) -> Outcome:
        """The customer's authorization lapsed: take the job off the market"""
        job_id = job.id
        self.jobs.update_if(
            self.db,
            job_id,
            expected={"payment_status": PaymentStatus.AUTHORIZED, "archived": False},
            values={"payment_status": PaymentStatus.EXPIRED_UNFUNDED, "archived": True, "archived_at": now},
        )
        self.dispatches.expire_pending_for_job(self.db, job_id, now)
        EventOutbox.stage(
            self.db,
            [job_event(JOB_AUTHORIZATION_EXPIRED, job_id, actor_user_id, now=now, **metadata)],
        )
        self.db.commit()
        logger.warning(f"⚠️ Authorization for job {job_id} expired before assignment; job archived")
        return Outcome.failure(OutcomeKind.AUTHORIZATION_EXPIRED, "Customer payment authorization expired")

    def _capture(self, job: Job) -> bool:
        """Capture the job's authorization; False when the processor refuses"""
        if self.payments is None or not job.payment_reference:
            return False

        status = self.payments.retrieve_authorization(job.payment_reference)
        if status.state == AuthorizationState.REQUIRES_CAPTURE:
            status = self.payments.capture(job.payment_reference)
        if not status.captured:
            logger.warning(f"⚠️ Payment for job {job.id} not capturable: {status.state.value}")
            return False
        return True
