import asyncio

from jobrouter import worker
from jobrouter.domain.dispatch.service import DispatchService
from jobrouter.models import AuditLog, JobDispatch

from .conftest import NOW


def test_worker_registers_tasks_and_crons():
    names = {f.__name__ for f in worker.WorkerSettings.functions}
    assert names == {
        "expire_stale_offers_task",
        "schedule_contractor_payout_task",
        "reconcile_payouts_task",
        "deliver_audit_events_task",
    }
    assert len(worker.WorkerSettings.cron_jobs) == 3


def test_expiry_sweep_task(db, world, monkeypatch):
    router, contractor, job = world
    DispatchService(db).claim_and_dispatch("router-1", job.id, [contractor.id], now=NOW)
    monkeypatch.setattr(worker, "SessionLocal", lambda: db)

    # Offers issued in the past are long expired by the wall clock
    result = asyncio.run(worker.expire_stale_offers_task({}))

    assert result == {"expired": 1}
    assert db.query(JobDispatch).one().status == "EXPIRED"


def test_audit_delivery_task(db, world, monkeypatch):
    router, contractor, job = world
    DispatchService(db).claim_and_dispatch("router-1", job.id, [contractor.id], now=NOW)
    monkeypatch.setattr(worker, "SessionLocal", lambda: db)

    assert asyncio.run(worker.deliver_audit_events_task({})) == {"delivered": 2}
    assert db.query(AuditLog).filter(AuditLog.delivered_at.is_(None)).count() == 0


def test_payout_task_reports_outcome(db, monkeypatch):
    monkeypatch.setattr(worker, "SessionLocal", lambda: db)
    result = asyncio.run(worker.schedule_contractor_payout_task({}, "missing-job"))
    assert result == {"job_id": "missing-job", "result": "not_found"}
