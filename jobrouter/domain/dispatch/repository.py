"""Dispatch repository - Database operations for job offers"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import DispatchStatus, JobDispatch


class DispatchRepository:
    """Repository for job dispatch (offer) rows"""

    @staticmethod
    def get_by_token_hash(db: Session, token_hash: str) -> Optional[JobDispatch]:
        return db.query(JobDispatch).filter(JobDispatch.token_hash == token_hash).first()

    @staticmethod
    def get(db: Session, dispatch_id: str) -> Optional[JobDispatch]:
        return db.query(JobDispatch).filter(JobDispatch.id == dispatch_id).first()

    @staticmethod
    def _live_pending(db: Session, job_id: str, now: datetime):
        # PENDING rows past expiry are dead even before the sweep flips them
        return db.query(JobDispatch).filter(
            JobDispatch.job_id == job_id,
            JobDispatch.status == DispatchStatus.PENDING.value,
            JobDispatch.expires_at >= now,
        )

    @staticmethod
    def count_live_pending(db: Session, job_id: str, now: datetime) -> int:
        return (
            DispatchRepository._live_pending(db, job_id, now)
            .with_entities(func.count(JobDispatch.id))
            .scalar()
            or 0
        )

    @staticmethod
    def live_pending_contractor_ids(db: Session, job_id: str, now: datetime) -> set[str]:
        rows = DispatchRepository._live_pending(db, job_id, now).with_entities(JobDispatch.contractor_id).all()
        return {contractor_id for (contractor_id,) in rows}

    @staticmethod
    def create(
        db: Session,
        job_id: str,
        contractor_id: str,
        router_user_id: str,
        token_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> JobDispatch:
        dispatch = JobDispatch(
            job_id=job_id,
            contractor_id=contractor_id,
            router_user_id=router_user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            status=DispatchStatus.PENDING.value,
            created_at=now,
        )
        db.add(dispatch)
        db.flush()
        return dispatch

    @staticmethod
    def update_status_if(db: Session, dispatch_id: str, expected_status: str, values: dict[str, Any]) -> int:
        """Move one offer out of ``expected_status``; returns rows changed"""
        return (
            db.query(JobDispatch)
            .filter(JobDispatch.id == dispatch_id, JobDispatch.status == expected_status)
            .update(values, synchronize_session=False)
        )

    @staticmethod
    def expire_pending_for_job(db: Session, job_id: str, now: datetime, exclude_id: Optional[str] = None) -> int:
        query = db.query(JobDispatch).filter(
            JobDispatch.job_id == job_id,
            JobDispatch.status == DispatchStatus.PENDING.value,
        )
        if exclude_id:
            query = query.filter(JobDispatch.id != exclude_id)
        return query.update(
            {"status": DispatchStatus.EXPIRED.value, "responded_at": now},
            synchronize_session=False,
        )

    @staticmethod
    def expire_stale(db: Session, now: datetime) -> int:
        return (
            db.query(JobDispatch)
            .filter(JobDispatch.status == DispatchStatus.PENDING.value, JobDispatch.expires_at < now)
            .update({"status": DispatchStatus.EXPIRED.value}, synchronize_session=False)
        )

    @staticmethod
    def list_for_job(db: Session, job_id: str) -> list[JobDispatch]:
        return db.query(JobDispatch).filter(JobDispatch.job_id == job_id).order_by(JobDispatch.created_at.asc()).all()

    @staticmethod
    def list_for_contractor(db: Session, contractor_id: str, status: Optional[str] = None) -> list[JobDispatch]:
        query = db.query(JobDispatch).filter(JobDispatch.contractor_id == contractor_id)
        if status:
            query = query.filter(JobDispatch.status == status)
        return query.order_by(JobDispatch.created_at.desc()).all()
