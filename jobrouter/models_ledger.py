"""
Ledger and payout models
"""

from enum import Enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text, event
from sqlalchemy.sql import func

from .database import Base
from .models import generate_public_id


class LedgerOwnerType(str, Enum):
    CONTRACTOR = "CONTRACTOR"
    ROUTER = "ROUTER"
    PLATFORM = "PLATFORM"


class LedgerEntryType(str, Enum):
    ESCROW_FUND = "ESCROW_FUND"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    CONTRACTOR_EARNING = "CONTRACTOR_EARNING"
    ROUTER_EARNING = "ROUTER_EARNING"
    PLATFORM_FEE = "PLATFORM_FEE"


class LedgerBucket(str, Enum):
    PENDING = "PENDING"
    AVAILABLE = "AVAILABLE"


class LedgerDirection(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class LedgerEntryImmutableError(Exception):
    """Raised when code tries to change or remove a written ledger row"""

    pass


class LedgerEntry(Base):
    """Append-only money movement record"""

    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    owner_type = Column(String(20), nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=True, index=True)
    type = Column(String(30), nullable=False)
    bucket = Column(String(20), nullable=False)
    direction = Column(String(10), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    memo = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(_mapper, _connection, target):
    raise LedgerEntryImmutableError(f"Ledger entry {target.id} cannot be modified")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(_mapper, _connection, target):
    raise LedgerEntryImmutableError(f"Ledger entry {target.id} cannot be deleted")


class ContractorPayout(Base):
    """Scheduled transfer of a contractor's earning; one per job"""

    __tablename__ = "contractor_payouts"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    contractor_id = Column(String(64), ForeignKey("contractors.id"), nullable=False, index=True)
    job_id = Column(String(36), ForeignKey("jobs.id"), unique=True, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    scheduled_for = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
