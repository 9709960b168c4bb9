"""Eligibility repository - candidate, workload and history queries"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...events import APPOINTMENT_PROPOSED
from ...models import (
    AccountStatus,
    ApprovalStatus,
    AssignmentStatus,
    AuditLog,
    Contractor,
    Job,
    JobAssignment,
)
from ..jobs.state_machine import JobStatus


class EligibilityRepository:
    """Read-only queries behind the eligibility matcher"""

    @staticmethod
    def get_candidate_contractors(db: Session, country_code: Optional[str]) -> list[Contractor]:
        """Active, approved contractors; category and distance are filtered in Python"""
        query = db.query(Contractor).filter(
            Contractor.account_status == AccountStatus.ACTIVE.value,
            Contractor.approval_status == ApprovalStatus.APPROVED.value,
        )
        if country_code:
            query = query.filter(func.upper(Contractor.country_code) == country_code.strip().upper())
        return query.all()

    @staticmethod
    def get_completion_stats(
        db: Session, contractor_ids: Iterable[str]
    ) -> dict[str, tuple[int, Optional[datetime]]]:
        """contractor_id -> (completed assignment count, last completion time)"""
        ids = list(contractor_ids)
        if not ids:
            return {}
        rows = (
            db.query(
                JobAssignment.contractor_id,
                func.count(JobAssignment.id),
                func.max(JobAssignment.completed_at),
            )
            .filter(
                JobAssignment.contractor_id.in_(ids),
                JobAssignment.status == AssignmentStatus.COMPLETED.value,
            )
            .group_by(JobAssignment.contractor_id)
            .all()
        )
        return {contractor_id: (count, last) for contractor_id, count, last in rows}

    @staticmethod
    def get_busy_contractor_ids(db: Session, contractor_ids: Iterable[str]) -> set[str]:
        """
        Contractors currently tied up: working an IN_PROGRESS job, or named by
        the latest appointment proposal on a job that is still ASSIGNED.
        """
        ids = list(contractor_ids)
        if not ids:
            return set()

        live = (
            db.query(JobAssignment.contractor_id, Job.id, Job.status)
            .join(Job, Job.id == JobAssignment.job_id)
            .filter(
                JobAssignment.contractor_id.in_(ids),
                JobAssignment.status == AssignmentStatus.ASSIGNED.value,
                Job.status.in_([JobStatus.IN_PROGRESS.value, JobStatus.ASSIGNED.value]),
            )
            .all()
        )

        busy = {contractor_id for contractor_id, _job_id, status in live if status == JobStatus.IN_PROGRESS.value}

        assigned_jobs = {job_id: contractor_id for contractor_id, job_id, status in live if status == JobStatus.ASSIGNED.value}
        if assigned_jobs:
            proposals = (
                db.query(AuditLog)
                .filter(
                    AuditLog.entity_type == "job",
                    AuditLog.entity_id.in_(list(assigned_jobs)),
                    AuditLog.action == APPOINTMENT_PROPOSED,
                )
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .all()
            )
            seen = set()
            for proposal in proposals:
                if proposal.entity_id in seen:
                    continue
                seen.add(proposal.entity_id)
                proposed_by = (proposal.event_metadata or {}).get("contractor_id")
                if proposed_by and proposed_by == assigned_jobs[proposal.entity_id]:
                    busy.add(proposed_by)

        return busy
