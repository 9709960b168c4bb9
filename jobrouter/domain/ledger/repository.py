"""Ledger repository - append-only entries and payouts"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Job
from ...models_ledger import ContractorPayout, LedgerEntry


class LedgerRepository:
    """Repository for ledger and payout rows"""

    @staticmethod
    def add_entry(db: Session, **entry_data) -> LedgerEntry:
        entry = LedgerEntry(**entry_data)
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def list_entries(
        db: Session,
        owner_type: Optional[str] = None,
        owner_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> list[LedgerEntry]:
        query = db.query(LedgerEntry)
        if owner_type:
            query = query.filter(LedgerEntry.owner_type == owner_type)
        if owner_id:
            query = query.filter(LedgerEntry.owner_id == owner_id)
        if job_id:
            query = query.filter(LedgerEntry.job_id == job_id)
        return query.order_by(LedgerEntry.created_at.asc()).all()

    @staticmethod
    def sum_by_bucket(db: Session, owner_type: str, owner_id: str) -> list[tuple[str, str, int]]:
        """(bucket, direction, total_cents) rows for one account"""
        return (
            db.query(LedgerEntry.bucket, LedgerEntry.direction, func.sum(LedgerEntry.amount_cents))
            .filter(LedgerEntry.owner_type == owner_type, LedgerEntry.owner_id == owner_id)
            .group_by(LedgerEntry.bucket, LedgerEntry.direction)
            .all()
        )

    @staticmethod
    def get_payout_for_job(db: Session, job_id: str) -> Optional[ContractorPayout]:
        return db.query(ContractorPayout).filter(ContractorPayout.job_id == job_id).first()

    @staticmethod
    def list_payouts(db: Session, contractor_id: str) -> list[ContractorPayout]:
        return (
            db.query(ContractorPayout)
            .filter(ContractorPayout.contractor_id == contractor_id)
            .order_by(ContractorPayout.scheduled_for.asc())
            .all()
        )

    @staticmethod
    def released_job_ids_without_payout(db: Session, limit: int = 200) -> list[str]:
        rows = (
            db.query(Job.id)
            .outerjoin(ContractorPayout, ContractorPayout.job_id == Job.id)
            .filter(
                Job.payment_released_at.isnot(None),
                Job.is_mock.is_(False),
                Job.contractor_payout_cents > 0,
                ContractorPayout.id.is_(None),
            )
            .limit(limit)
            .all()
        )
        return [job_id for (job_id,) in rows]
