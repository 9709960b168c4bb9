"""
Domain events and the audit outbox.

Services describe what happened as ``DomainEvent`` values. ``EventOutbox``
stages them as ``audit_logs`` rows inside the caller's transaction, so an
event exists exactly when the change it describes was committed. A worker
task later forwards undelivered rows to the audit sink.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from .models import AuditLog
from .utils.time import utcnow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("jobrouter.audit")

# Event actions
JOB_CREATED = "JOB_CREATED"
JOB_STATUS_CHANGED = "JOB_STATUS_CHANGED"
JOB_CLAIMED = "JOB_CLAIMED"
JOB_CLAIM_RELEASED = "JOB_CLAIM_RELEASED"
JOB_ROUTING_APPLIED = "JOB_ROUTING_APPLIED"
JOB_ADMIN_ASSIGNED = "JOB_ADMIN_ASSIGNED"
JOB_ARCHIVED = "JOB_ARCHIVED"
JOB_AUTHORIZATION_EXPIRED = "JOB_AUTHORIZATION_EXPIRED"
JOB_DISPATCH_SENT = "JOB_DISPATCH_SENT"
JOB_DISPATCH_ACCEPTED = "JOB_DISPATCH_ACCEPTED"
JOB_DISPATCH_DECLINED = "JOB_DISPATCH_DECLINED"
JOB_DISPATCH_EXPIRED = "JOB_DISPATCH_EXPIRED"
APPOINTMENT_PROPOSED = "APPOINTMENT_PROPOSED"
ESCROW_FUNDED = "ESCROW_FUNDED"
ESCROW_RELEASED = "ESCROW_RELEASED"
CONTRACTOR_PAYOUT_SCHEDULED = "CONTRACTOR_PAYOUT_SCHEDULED"

# Actions that count against a router's daily route limit
ROUTING_ACTIONS = (JOB_CLAIMED, JOB_ROUTING_APPLIED)


@dataclass
class DomainEvent:
    action: str
    entity_type: str
    entity_id: str
    actor_user_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


def job_event(action: str, job_id: str, actor_user_id: Optional[str] = None, now=None, **metadata):
    return DomainEvent(
        action=action,
        entity_type="job",
        entity_id=job_id,
        actor_user_id=actor_user_id,
        metadata=metadata,
        occurred_at=now or utcnow(),
    )


class EventOutbox:
    """Stages domain events into the audit_logs table"""

    @staticmethod
    def stage(db: Session, events: Iterable[DomainEvent]) -> list[AuditLog]:
        rows = []
        for evt in events:
            row = AuditLog(
                actor_user_id=evt.actor_user_id,
                action=evt.action,
                entity_type=evt.entity_type,
                entity_id=evt.entity_id,
                event_metadata=_json_safe(evt.metadata),
                created_at=evt.occurred_at,
            )
            db.add(row)
            rows.append(row)
        if rows:
            db.flush()
        return rows

    @staticmethod
    def deliver_pending(db: Session, limit: int = 500, now: Optional[datetime] = None) -> int:
        """Forward undelivered events to the audit log sink and stamp them"""
        rows = (
            db.query(AuditLog)
            .filter(AuditLog.delivered_at.is_(None))
            .order_by(AuditLog.id.asc())
            .limit(limit)
            .all()
        )
        if not rows:
            return 0

        delivered_at = now or utcnow()
        for row in rows:
            audit_logger.info(
                f"{row.action} {row.entity_type}={row.entity_id} actor={row.actor_user_id} "
                f"metadata={row.event_metadata}"
            )
            row.delivered_at = delivered_at
        db.commit()
        logger.info(f"📤 Delivered {len(rows)} audit events")
        return len(rows)


def _json_safe(value):
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value
