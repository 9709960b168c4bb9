import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate an opaque identifier for a new row"""
    return str(uuid.uuid4())


class RoutingStatus(str, Enum):
    UNROUTED = "UNROUTED"
    ROUTED_BY_ROUTER = "ROUTED_BY_ROUTER"
    ROUTED_BY_ADMIN = "ROUTED_BY_ADMIN"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    AUTHORIZED = "AUTHORIZED"
    FUNDS_SECURED = "FUNDS_SECURED"
    EXPIRED_UNFUNDED = "EXPIRED_UNFUNDED"
    RELEASED = "RELEASED"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DispatchStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class AssignmentStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"


class JobType(str, Enum):
    URBAN = "urban"
    REGIONAL = "regional"


class Job(Base):
    """A unit of field work moving through routing, execution and settlement"""

    __tablename__ = "jobs"
    __table_args__ = (
        # routing_status != UNROUTED exactly when a claiming router is recorded
        CheckConstraint(
            "(routing_status = 'UNROUTED' AND claimed_by_router_id IS NULL) OR "
            "(routing_status <> 'UNROUTED' AND claimed_by_router_id IS NOT NULL)",
            name="ck_jobs_routing_claim",
        ),
        Index("ix_jobs_status_routing", "status", "routing_status"),
    )

    id = Column(String(36), primary_key=True, default=generate_public_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    poster_user_id = Column(String(64), nullable=True, index=True)

    status = Column(String(40), nullable=False, default="DRAFT", index=True)
    routing_status = Column(String(30), nullable=False, default=RoutingStatus.UNROUTED.value)
    archived = Column(Boolean, nullable=False, default=False)
    is_mock = Column(Boolean, nullable=False, default=False)

    # Location
    country_code = Column(String(2), nullable=False)
    state_code = Column(String(10), nullable=False)
    city = Column(String(120), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    trade_category = Column(String(50), nullable=False)
    job_type = Column(String(20), nullable=False, default=JobType.URBAN.value)

    # Money breakdown in minor units
    labor_total_cents = Column(Integer, nullable=False, default=0)
    materials_total_cents = Column(Integer, nullable=False, default=0)
    contractor_payout_cents = Column(Integer, nullable=False, default=0)
    router_earnings_cents = Column(Integer, nullable=False, default=0)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    transaction_fee_cents = Column(Integer, nullable=False, default=0)

    # Payment authorization held by the processor
    payment_status = Column(String(30), nullable=False, default=PaymentStatus.UNPAID.value)
    payment_reference = Column(String(255), nullable=True)  # processor payment id
    authorization_expires_at = Column(DateTime, nullable=True)
    funds_secured_at = Column(DateTime, nullable=True)
    payment_released_at = Column(DateTime, nullable=True)

    # Routing claim
    claimed_by_router_id = Column(String(64), nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)
    routed_at = Column(DateTime, nullable=True)
    first_routed_at = Column(DateTime, nullable=True)
    routing_due_at = Column(DateTime, nullable=True)

    # SHA-256 digests of the contractor and customer action tokens
    contractor_action_token_hash = Column(String(64), nullable=True)
    customer_action_token_hash = Column(String(64), nullable=True)

    # Execution and review
    accepted_at = Column(DateTime, nullable=True)
    completion_deadline_at = Column(DateTime, nullable=True)
    estimated_completion_date = Column(Date, nullable=True)
    started_at = Column(DateTime, nullable=True)
    contractor_completed_at = Column(DateTime, nullable=True)
    completion_summary = Column(Text, nullable=True)
    customer_approved_at = Column(DateTime, nullable=True)
    customer_rejected_at = Column(DateTime, nullable=True)
    customer_reject_reason = Column(String(40), nullable=True)
    customer_feedback = Column(Text, nullable=True)
    router_approved_at = Column(DateTime, nullable=True)
    router_approval_notes = Column(Text, nullable=True)
    flagged_at = Column(DateTime, nullable=True)
    flag_reason = Column(Text, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    dispatches = relationship("JobDispatch", back_populates="job", order_by="JobDispatch.created_at")
    assignment = relationship("JobAssignment", back_populates="job", uselist=False)


class Contractor(Base):
    __tablename__ = "contractors"

    id = Column(String(64), primary_key=True, default=generate_public_id)  # contractor user id
    business_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    account_status = Column(String(20), nullable=False, default=AccountStatus.ACTIVE.value)
    approval_status = Column(String(20), nullable=False, default=ApprovalStatus.PENDING.value)
    trade_categories = Column(JSON, nullable=False, default=list)  # e.g. ["PLUMBING", "HVAC"]
    automotive_enabled = Column(Boolean, nullable=False, default=False)
    country_code = Column(String(2), nullable=True)
    state_code = Column(String(10), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    service_radius_km = Column(Float, nullable=True)  # None means the job-type radius applies
    created_at = Column(DateTime, server_default=func.now())

    assignments = relationship("JobAssignment", back_populates="contractor")


class RouterProfile(Base):
    """An intermediary who claims jobs and chooses contractors for them"""

    __tablename__ = "routers"

    user_id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=AccountStatus.ACTIVE.value)
    home_country = Column(String(2), nullable=True)
    home_region_code = Column(String(10), nullable=True)
    daily_route_limit = Column(Integer, nullable=False, default=10)
    routes_completed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())


class JobDispatch(Base):
    """A time-bounded offer of one job to one contractor"""

    __tablename__ = "job_dispatches"
    __table_args__ = (Index("ix_job_dispatches_job_status", "job_id", "status"),)

    id = Column(String(36), primary_key=True, default=generate_public_id)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=False)
    contractor_id = Column(String(64), ForeignKey("contractors.id"), nullable=False, index=True)
    router_user_id = Column(String(64), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=DispatchStatus.PENDING.value)
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    job = relationship("Job", back_populates="dispatches")
    contractor = relationship("Contractor")


class JobAssignment(Base):
    """The single live contractor assignment for a job; reused on reassignment"""

    __tablename__ = "job_assignments"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    job_id = Column(String(36), ForeignKey("jobs.id"), unique=True, nullable=False)
    contractor_id = Column(String(64), ForeignKey("contractors.id"), nullable=False, index=True)
    assigned_by_user_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default=AssignmentStatus.ASSIGNED.value)
    assigned_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    job = relationship("Job", back_populates="assignment")
    contractor = relationship("Contractor", back_populates="assignments")


class AuditLog(Base):
    """Outbox of domain events; delivered_at is the only mutable column"""

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id", "action"),)

    id = Column(Integer, primary_key=True, index=True)
    actor_user_id = Column(String(64), nullable=True, index=True)
    action = Column(String(60), nullable=False)
    entity_type = Column(String(40), nullable=False)
    entity_id = Column(String(64), nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    delivered_at = Column(DateTime, nullable=True, index=True)
