import logging
from datetime import date, datetime

from jobrouter.events import JOB_CREATED, DomainEvent, EventOutbox, job_event
from jobrouter.models import AuditLog, DispatchStatus

from .conftest import NOW


def test_stage_writes_audit_rows_with_json_safe_metadata(db):
    event = job_event(
        JOB_CREATED,
        "job-1",
        "poster-1",
        now=NOW,
        when=datetime(2024, 3, 5, 9, 30),
        day=date(2024, 3, 5),
        status=DispatchStatus.PENDING,
        ids=("a", "b"),
    )

    rows = EventOutbox.stage(db, [event])
    db.commit()

    row = db.query(AuditLog).one()
    assert rows == [row]
    assert row.entity_type == "job"
    assert row.created_at == NOW
    assert row.delivered_at is None
    assert row.event_metadata == {
        "when": "2024-03-05T09:30:00",
        "day": "2024-03-05",
        "status": "PENDING",
        "ids": ["a", "b"],
    }


def test_stage_nothing(db):
    assert EventOutbox.stage(db, []) == []
    assert db.query(AuditLog).count() == 0


def test_deliver_pending_stamps_rows_once(db, caplog):
    EventOutbox.stage(
        db,
        [
            job_event(JOB_CREATED, "job-1", "poster-1", now=NOW),
            DomainEvent(action="CUSTOM", entity_type="contractor", entity_id="c-1", occurred_at=NOW),
        ],
    )
    db.commit()

    with caplog.at_level(logging.INFO, logger="jobrouter.audit"):
        assert EventOutbox.deliver_pending(db, now=NOW) == 2
    assert "JOB_CREATED job=job-1" in caplog.text
    assert all(row.delivered_at == NOW for row in db.query(AuditLog))

    assert EventOutbox.deliver_pending(db, now=NOW) == 0
