from datetime import date, datetime

import pytest

from jobrouter.domain.jobs.repository import JobRepository
from jobrouter.domain.ledger.repository import LedgerRepository
from jobrouter.domain.ledger.service import LedgerService, breakdown_is_consistent, escrow_amount_cents
from jobrouter.models import Job, PaymentStatus, RoutingStatus
from jobrouter.models_ledger import (
    ContractorPayout,
    LedgerEntry,
    LedgerEntryImmutableError,
    LedgerEntryType,
    LedgerOwnerType,
)
from jobrouter.outcomes import OutcomeKind

from .conftest import NOW


@pytest.fixture
def settled_job(db, make_router, make_contractor, make_job):
    """Factory for approved jobs whose escrow has been released"""
    make_router()
    contractors = {}

    def _make(contractor_id="contractor-1", country="US", region="WA", assign=True, **overrides):
        if contractor_id not in contractors:
            contractors[contractor_id] = make_contractor(contractor_id, country=country, region=region)
        data = dict(
            status="COMPLETED_APPROVED",
            routing_status=RoutingStatus.ROUTED_BY_ROUTER.value,
            claimed_by_router_id="router-1",
            payment_status=PaymentStatus.RELEASED.value,
            payment_released_at=NOW,
            country_code=country,
            state_code=region,
        )
        data.update(overrides)
        job = make_job(**data)
        if assign:
            JobRepository.upsert_assignment(db, job.id, contractor_id, "router-1", NOW)
            db.commit()
        return job

    return _make


def test_schedules_payout_for_next_business_day(db, settled_job):
    job = settled_job()

    outcome = LedgerService(db).schedule_contractor_payout(job.id, now=NOW)

    assert outcome.ok
    assert outcome.data["scheduled_for"] == date(2024, 3, 5)
    payout = db.query(ContractorPayout).one()
    assert payout.amount_cents == 7500
    assert payout.status == "PENDING"
    earning = db.query(LedgerEntry).filter_by(type=LedgerEntryType.CONTRACTOR_EARNING.value).one()
    assert earning.owner_id == "contractor-1"
    assert earning.bucket == "PENDING"


def test_canadian_payouts_follow_canadian_holidays(db, settled_job):
    job = settled_job(contractor_id="contractor-ca", country="CA", region="BC")
    # Friday before Canada Day
    friday = datetime(2024, 6, 28, 18, 0)

    outcome = LedgerService(db).schedule_contractor_payout(job.id, now=friday)

    assert outcome.data["scheduled_for"] == date(2024, 7, 2)


def test_scheduling_twice_is_a_no_op(db, settled_job):
    job = settled_job()
    service = LedgerService(db)

    assert service.schedule_contractor_payout(job.id, now=NOW).ok
    again = service.schedule_contractor_payout(job.id, now=NOW)

    assert again.kind == OutcomeKind.ALREADY_SCHEDULED
    assert db.query(ContractorPayout).count() == 1
    assert db.query(LedgerEntry).filter_by(type=LedgerEntryType.CONTRACTOR_EARNING.value).count() == 1


def test_concurrent_insert_is_reported_as_already_scheduled(db, settled_job, monkeypatch):
    job = settled_job()
    service = LedgerService(db)
    assert service.schedule_contractor_payout(job.id, now=NOW).ok

    # Simulate a caller whose existence check ran before the other insert
    monkeypatch.setattr(LedgerRepository, "get_payout_for_job", staticmethod(lambda db, job_id: None))
    outcome = service.schedule_contractor_payout(job.id, now=NOW)

    assert outcome.kind == OutcomeKind.ALREADY_SCHEDULED
    assert db.query(ContractorPayout).count() == 1
    assert db.query(LedgerEntry).filter_by(type=LedgerEntryType.CONTRACTOR_EARNING.value).count() == 1


@pytest.mark.parametrize(
    "overrides,kind",
    [
        ({"is_mock": True}, OutcomeKind.MOCK_JOB),
        ({"assign": False}, OutcomeKind.NO_ASSIGNMENT),
        ({"contractor_payout_cents": 0}, OutcomeKind.NO_CONTRACTOR_PAYOUT),
        ({"payment_released_at": None, "payment_status": "FUNDS_SECURED"}, OutcomeKind.PAYMENT_NOT_RELEASED),
    ],
)
def test_payout_preconditions(db, settled_job, overrides, kind):
    job = settled_job(**overrides)
    assert LedgerService(db).schedule_contractor_payout(job.id, now=NOW).kind == kind
    assert db.query(ContractorPayout).count() == 0


def test_missing_job(db):
    assert LedgerService(db).schedule_contractor_payout("nope", now=NOW).kind == OutcomeKind.NOT_FOUND


def test_reconcile_picks_up_missed_payouts(db, settled_job):
    first = settled_job()
    settled_job()
    settled_job(is_mock=True)
    service = LedgerService(db)
    assert service.schedule_contractor_payout(first.id, now=NOW).ok

    assert service.reconcile_payouts(now=NOW) == 1
    assert service.reconcile_payouts(now=NOW) == 0
    assert db.query(ContractorPayout).count() == 2


def test_release_escrow_happens_once(db, make_job):
    job = make_job(payment_status=PaymentStatus.FUNDS_SECURED.value)
    service = LedgerService(db)

    assert service.release_escrow(job, "router-1", NOW) is not None
    assert service.release_escrow(job, "router-1", NOW) is None
    db.commit()

    releases = db.query(LedgerEntry).filter_by(type=LedgerEntryType.ESCROW_RELEASE.value).all()
    assert [e.amount_cents for e in releases] == [escrow_amount_cents(job)]
    assert job.payment_status == PaymentStatus.RELEASED.value


def test_unfunded_escrow_is_not_released(db, make_job):
    job = make_job()
    assert LedgerService(db).release_escrow(job, "router-1", NOW) is None


def test_ledger_entries_are_append_only(db, settled_job):
    job = settled_job()
    assert LedgerService(db).schedule_contractor_payout(job.id, now=NOW).ok
    entry = db.query(LedgerEntry).one()

    entry.amount_cents = 1
    with pytest.raises(LedgerEntryImmutableError):
        db.flush()
    db.rollback()

    db.delete(entry)
    with pytest.raises(LedgerEntryImmutableError):
        db.flush()
    db.rollback()

    assert db.query(LedgerEntry).one().amount_cents == 7500


def test_account_balance_nets_credits_and_debits(db, settled_job):
    job = settled_job()
    service = LedgerService(db)
    assert service.schedule_contractor_payout(job.id, now=NOW).ok

    balance = service.account_balance(LedgerOwnerType.CONTRACTOR.value, "contractor-1")
    assert balance == {"PENDING": 7500, "AVAILABLE": 0}
    assert len(service.list_entries(LedgerOwnerType.CONTRACTOR.value, "contractor-1")) == 1
    assert [p.job_id for p in service.list_payouts("contractor-1")] == [job.id]


def test_breakdown_tolerates_rounding():
    job = Job(labor_total_cents=10000, contractor_payout_cents=7501, router_earnings_cents=1500, platform_fee_cents=1001)
    assert breakdown_is_consistent(job)
    job.platform_fee_cents = 1003
    assert not breakdown_is_consistent(job)
