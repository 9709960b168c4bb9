"""Ledger domain schemas"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


class BalanceResponse(BaseModel):
    ownerType: str
    ownerId: str
    pendingCents: int
    availableCents: int


class LedgerEntryResponse(BaseModel):
    id: str
    jobId: Optional[str] = None
    type: str
    bucket: str
    direction: str
    amountCents: int
    memo: Optional[str] = None
    createdAt: datetime


class PayoutResponse(BaseModel):
    id: str
    jobId: str
    amountCents: int
    scheduledFor: date
    status: str


class SchedulePayoutResponse(BaseModel):
    jobId: str
    result: str
    payoutId: Optional[str] = None
    scheduledFor: Optional[date] = None
