"""Job repository - Database operations for jobs, routers and assignments"""

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...events import ROUTING_ACTIONS
from ...models import AssignmentStatus, AuditLog, Contractor, Job, JobAssignment, RouterProfile


class JobRepository:
    """Repository for job database operations"""

    @staticmethod
    def get_job(db: Session, job_id: str) -> Optional[Job]:
        return db.query(Job).filter(Job.id == job_id).first()

    @staticmethod
    def reload_job(db: Session, job_id: str) -> Optional[Job]:
        """Re-read a job after a conditional update bypassed the identity map"""
        job = db.get(Job, job_id)
        if job is not None:
            db.refresh(job)
        return job

    @staticmethod
    def create_job(db: Session, **job_data) -> Job:
        job = Job(**job_data)
        db.add(job)
        db.flush()
        return job

    @staticmethod
    def update_if(db: Session, job_id: str, expected: dict[str, Any], values: dict[str, Any]) -> int:
        """
        Compare-and-swap on a job row.

        ``expected`` maps column names to the value the row must still hold:
        ``None`` means IS NULL and a collection means IN (...). Returns the
        number of rows changed; 0 means another writer got there first.
        """
        query = db.query(Job).filter(Job.id == job_id)
        for column, value in expected.items():
            attr = getattr(Job, column)
            if value is None:
                query = query.filter(attr.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                query = query.filter(attr.in_([_plain(v) for v in value]))
            else:
                query = query.filter(attr == _plain(value))
        return query.update({k: _plain(v) for k, v in values.items()}, synchronize_session=False)

    @staticmethod
    def get_router(db: Session, user_id: str) -> Optional[RouterProfile]:
        return db.query(RouterProfile).filter(RouterProfile.user_id == user_id).first()

    @staticmethod
    def increment_routes_completed(db: Session, user_id: str) -> int:
        return (
            db.query(RouterProfile)
            .filter(RouterProfile.user_id == user_id)
            .update(
                {RouterProfile.routes_completed: RouterProfile.routes_completed + 1},
                synchronize_session=False,
            )
        )

    @staticmethod
    def count_routes_since(db: Session, router_user_id: str, since: datetime) -> int:
        """Jobs this router claimed or routed since ``since``"""
        return (
            db.query(func.count(AuditLog.id))
            .filter(
                AuditLog.actor_user_id == router_user_id,
                AuditLog.action.in_(ROUTING_ACTIONS),
                AuditLog.created_at >= since,
            )
            .scalar()
            or 0
        )

    @staticmethod
    def get_contractor(db: Session, contractor_id: str) -> Optional[Contractor]:
        return db.query(Contractor).filter(Contractor.id == contractor_id).first()

    @staticmethod
    def get_assignment(db: Session, job_id: str) -> Optional[JobAssignment]:
        return db.query(JobAssignment).filter(JobAssignment.job_id == job_id).first()

    @staticmethod
    def upsert_assignment(
        db: Session,
        job_id: str,
        contractor_id: str,
        assigned_by_user_id: Optional[str],
        now: datetime,
    ) -> JobAssignment:
        """Create the job's assignment, or point the existing one at a new contractor"""
        assignment = JobRepository.get_assignment(db, job_id)
        if assignment is None:
            assignment = JobAssignment(job_id=job_id)
            db.add(assignment)
        assignment.contractor_id = contractor_id
        assignment.assigned_by_user_id = assigned_by_user_id
        assignment.status = AssignmentStatus.ASSIGNED.value
        assignment.assigned_at = now
        assignment.completed_at = None
        db.flush()
        return assignment

    @staticmethod
    def list_jobs(
        db: Session,
        statuses: Optional[Iterable[str]] = None,
        include_archived: bool = False,
        limit: int = 100,
    ) -> list[Job]:
        query = db.query(Job)
        if statuses:
            query = query.filter(Job.status.in_([_plain(s) for s in statuses]))
        if not include_archived:
            query = query.filter(Job.archived.is_(False))
        return query.order_by(Job.created_at.desc()).limit(limit).all()


def _plain(value):
    """Store enum members by value"""
    return value.value if hasattr(value, "value") and isinstance(value, str) else value
