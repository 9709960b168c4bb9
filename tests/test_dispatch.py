from datetime import timedelta

import pytest

from jobrouter.action_tokens import verify_action_token
from jobrouter.domain.dispatch import service as dispatch_service_module
from jobrouter.domain.dispatch.service import DispatchService
from jobrouter.domain.jobs.repository import JobRepository
from jobrouter.domain.jobs.service import JobService
from jobrouter.domain.jobs.state_machine import TransitionError
from jobrouter.models import AuditLog, DispatchStatus, JobDispatch, PaymentStatus, RoutingStatus
from jobrouter.models_ledger import LedgerEntry, LedgerEntryType
from jobrouter.outcomes import OutcomeKind
from jobrouter.services.payment_processor import AuthorizationState

from .conftest import NOW, SEATTLE, FakePaymentProcessor, north_of

DAY = timedelta(hours=24)


def route(db, job, contractor_ids, router="router-1", now=NOW):
    outcome = DispatchService(db).claim_and_dispatch(router, job.id, contractor_ids, now=now)
    assert outcome.ok, outcome
    return outcome.data["tokens"]


def assert_routing_consistent(job):
    assert (job.routing_status == RoutingStatus.UNROUTED.value) == (job.claimed_by_router_id is None)


def dispatch_for(db, job_id, contractor_id):
    return db.query(JobDispatch).filter_by(job_id=job_id, contractor_id=contractor_id).one()


@pytest.fixture
def two_contractors(world, make_contractor):
    router, contractor, job = world
    other = make_contractor("contractor-2", location=north_of(SEATTLE, 8))
    return job, contractor, other


# ---------------------------------------------------------------------------
# Creating offers
# ---------------------------------------------------------------------------


def test_claim_and_dispatch_claims_and_offers(db, two_contractors):
    job, first, second = two_contractors

    tokens = route(db, job, [first.id, second.id])

    assert set(tokens) == {first.id, second.id}
    assert job.routing_status == RoutingStatus.ROUTED_BY_ROUTER.value
    assert job.claimed_by_router_id == "router-1"
    assert job.routing_due_at == NOW + DAY
    assert_routing_consistent(job)

    dispatch = dispatch_for(db, job.id, first.id)
    assert dispatch.status == DispatchStatus.PENDING.value
    assert dispatch.expires_at == NOW + DAY
    # Only the digest is stored
    assert dispatch.token_hash != tokens[first.id]
    assert len(tokens[first.id]) == 48

    actions = sorted(a for (a,) in db.query(AuditLog.action).filter(AuditLog.entity_id == job.id))
    assert actions == ["JOB_DISPATCH_SENT", "JOB_DISPATCH_SENT", "JOB_ROUTING_APPLIED"]


def test_claim_and_dispatch_with_ineligible_contractor_writes_nothing(db, world, make_contractor):
    router, contractor, job = world
    make_contractor("oregon", location=north_of(SEATTLE, 5), region="OR")

    outcome = DispatchService(db).claim_and_dispatch("router-1", job.id, [contractor.id, "oregon"], now=NOW)

    assert outcome.kind == OutcomeKind.NOT_ELIGIBLE
    assert outcome.data["reason"] == "JURISDICTION_MISMATCH"
    assert job.routing_status == RoutingStatus.UNROUTED.value
    assert db.query(JobDispatch).count() == 0
    assert db.query(AuditLog).count() == 0


def test_claim_and_dispatch_caps_contractor_count(db, world):
    router, contractor, job = world
    ids = [f"c-{i}" for i in range(6)]
    outcome = DispatchService(db).claim_and_dispatch("router-1", job.id, ids, now=NOW)
    assert outcome.kind == OutcomeKind.TOO_MANY_OFFERS


def test_losing_the_claim_leaves_no_offers(db, world, make_router, monkeypatch):
    router, contractor, job = world
    make_router("router-2")
    assert JobService(db).claim_job("router-2", job.id, now=NOW).ok

    # Pretend the pre-check saw the job unclaimed, as a concurrent request would
    monkeypatch.setattr(dispatch_service_module, "routable_job_failure", lambda job: None)
    outcome = DispatchService(db).claim_and_dispatch("router-1", job.id, [contractor.id], now=NOW)

    assert outcome.kind == OutcomeKind.JOB_NOT_AVAILABLE
    assert db.query(JobDispatch).count() == 0
    assert job.claimed_by_router_id == "router-2"


def test_send_offer_requires_the_claim(db, world):
    router, contractor, job = world
    outcome = DispatchService(db).send_offer("router-1", job.id, contractor.id, now=NOW)
    assert outcome.kind == OutcomeKind.FORBIDDEN


def test_send_offer_refuses_duplicate_pending_offer(db, world):
    router, contractor, job = world
    assert JobService(db).claim_job("router-1", job.id, now=NOW).ok
    service = DispatchService(db)

    assert service.send_offer("router-1", job.id, contractor.id, now=NOW).ok
    outcome = service.send_offer("router-1", job.id, contractor.id, now=NOW)
    assert outcome.kind == OutcomeKind.ALREADY_SENT


def test_at_most_five_live_offers(db, world, make_contractor):
    router, contractor, job = world
    ids = [contractor.id]
    for i in range(5):
        ids.append(make_contractor(f"extra-{i}", location=north_of(SEATTLE, i + 1)).id)
    assert JobService(db).claim_job("router-1", job.id, now=NOW).ok
    service = DispatchService(db)

    for contractor_id in ids[:5]:
        assert service.send_offer("router-1", job.id, contractor_id, now=NOW).ok
    outcome = service.send_offer("router-1", job.id, ids[5], now=NOW)
    assert outcome.kind == OutcomeKind.TOO_MANY_OFFERS
    assert db.query(JobDispatch).count() == 5

    # Expired offers stop counting even before the sweep runs
    later = NOW + DAY + timedelta(seconds=1)
    assert service.send_offer("router-1", job.id, ids[5], now=later).ok


def test_send_offer_checks_eligibility(db, world, make_contractor):
    router, contractor, job = world
    make_contractor("far", location=north_of(SEATTLE, 80))
    assert JobService(db).claim_job("router-1", job.id, now=NOW).ok

    outcome = DispatchService(db).send_offer("router-1", job.id, "far", now=NOW)
    assert outcome.kind == OutcomeKind.NOT_ELIGIBLE
    assert outcome.data["reason"] == "OUT_OF_RANGE"


# ---------------------------------------------------------------------------
# Accepting
# ---------------------------------------------------------------------------


def test_accept_assigns_job_and_captures_funds(db, two_contractors):
    job, first, second = two_contractors
    tokens = route(db, job, [first.id, second.id])
    payments = FakePaymentProcessor()

    outcome = DispatchService(db, payments).respond(tokens[first.id], "accept", now=NOW + timedelta(hours=1))

    assert outcome.ok
    accepted_at = NOW + timedelta(hours=1)
    assert job.status == "ASSIGNED"
    assert job.payment_status == PaymentStatus.FUNDS_SECURED.value
    assert job.funds_secured_at == accepted_at
    assert job.completion_deadline_at == accepted_at + timedelta(days=14)
    assert verify_action_token(outcome.data["contractor_token"], job.contractor_action_token_hash)
    assert verify_action_token(outcome.data["customer_token"], job.customer_action_token_hash)
    assert_routing_consistent(job)

    assignment = JobRepository.get_assignment(db, job.id)
    assert assignment.contractor_id == first.id
    assert assignment.id == outcome.data["assignment_id"]

    assert dispatch_for(db, job.id, first.id).status == DispatchStatus.ACCEPTED.value
    assert dispatch_for(db, job.id, second.id).status == DispatchStatus.EXPIRED.value
    assert outcome.data["expired_offers"] == 1

    assert payments.retrieved == ["pay_123"]
    assert payments.captured == ["pay_123"]
    escrow = db.query(LedgerEntry).filter_by(job_id=job.id, type=LedgerEntryType.ESCROW_FUND.value).one()
    assert escrow.amount_cents == 12500


def test_accepted_token_cannot_be_reused(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    service = DispatchService(db, FakePaymentProcessor())

    assert service.respond(tokens[contractor.id], "ACCEPT", now=NOW).ok
    again = service.respond(tokens[contractor.id], "ACCEPT", now=NOW)
    assert again.kind == OutcomeKind.ALREADY_RESPONDED


def test_only_one_of_two_concurrent_accepts_wins(db, two_contractors):
    job, first, second = two_contractors
    tokens = route(db, job, [first.id, second.id])
    payments = FakePaymentProcessor()
    service = DispatchService(db, payments)
    inner = []

    # The first contractor's accept lands while the second is talking to the processor
    payments.on_retrieve = lambda: inner.append(service.respond(tokens[first.id], "ACCEPT", now=NOW))
    outcome = service.respond(tokens[second.id], "ACCEPT", now=NOW)

    assert inner[0].ok
    assert outcome.kind == OutcomeKind.JOB_NOT_AVAILABLE
    assert JobRepository.get_assignment(db, job.id).contractor_id == first.id
    assert db.query(LedgerEntry).filter_by(type=LedgerEntryType.ESCROW_FUND.value).count() == 1
    assert dispatch_for(db, job.id, second.id).status == DispatchStatus.EXPIRED.value

    # Trying again afterwards is a plain "already responded"
    assert service.respond(tokens[second.id], "ACCEPT", now=NOW).kind == OutcomeKind.ALREADY_RESPONDED


def test_refused_capture_leaves_job_open(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    payments = FakePaymentProcessor(state=AuthorizationState.CANCELED)

    outcome = DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW)

    assert outcome.kind == OutcomeKind.PAYMENT_NOT_CAPTURABLE
    assert payments.captured == []
    assert job.status == "OPEN_FOR_ROUTING"
    assert job.payment_status == PaymentStatus.AUTHORIZED.value
    assert dispatch_for(db, job.id, contractor.id).status == DispatchStatus.PENDING.value
    assert JobRepository.get_assignment(db, job.id) is None


def test_failed_capture_call_leaves_job_open(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    payments = FakePaymentProcessor(capture_state=AuthorizationState.FAILED)

    outcome = DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW)

    assert outcome.kind == OutcomeKind.PAYMENT_NOT_CAPTURABLE
    assert job.status == "OPEN_FOR_ROUTING"


def test_already_secured_funds_skip_the_processor(db, world, make_job):
    router, contractor, _ = world
    job = make_job(payment_status=PaymentStatus.FUNDS_SECURED.value, funds_secured_at=NOW - DAY)
    tokens = route(db, job, [contractor.id])
    payments = FakePaymentProcessor()

    assert DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW).ok
    assert payments.retrieved == []
    assert job.funds_secured_at == NOW - DAY
    assert db.query(LedgerEntry).count() == 0


def test_lapsed_authorization_archives_the_job(db, world, make_job):
    router, contractor, _ = world
    job = make_job(authorization_expires_at=NOW + timedelta(hours=1))
    tokens = route(db, job, [contractor.id])
    payments = FakePaymentProcessor()

    outcome = DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW + timedelta(hours=2))

    assert outcome.kind == OutcomeKind.AUTHORIZATION_EXPIRED
    assert payments.retrieved == []
    assert job.archived
    assert job.payment_status == PaymentStatus.EXPIRED_UNFUNDED.value
    assert dispatch_for(db, job.id, contractor.id).status == DispatchStatus.EXPIRED.value


def test_payment_captured_by_an_earlier_attempt_is_not_captured_again(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    payments = FakePaymentProcessor(state=AuthorizationState.CAPTURED)

    assert DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW).ok
    assert payments.retrieved == ["pay_123"]
    assert payments.captured == []
    assert job.payment_status == PaymentStatus.FUNDS_SECURED.value


@pytest.mark.parametrize(
    "field,value",
    [("account_status", "SUSPENDED"), ("approval_status", "PENDING")],
)
def test_contractor_suspended_after_the_offer_cannot_accept(db, world, field, value):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    setattr(contractor, field, value)
    db.commit()
    payments = FakePaymentProcessor()

    outcome = DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW)

    assert outcome.kind == OutcomeKind.NOT_ELIGIBLE
    assert payments.retrieved == []
    assert job.status == "OPEN_FOR_ROUTING"
    assert dispatch_for(db, job.id, contractor.id).status == DispatchStatus.PENDING.value
    assert JobRepository.get_assignment(db, job.id) is None


def test_suspended_contractor_can_still_decline(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    contractor.account_status = "SUSPENDED"
    db.commit()

    assert DispatchService(db).respond(tokens[contractor.id], "DECLINE", now=NOW).ok


def test_accept_goes_through_the_state_machine(db, world, monkeypatch):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    payments = FakePaymentProcessor()

    def refuse(current, desired):
        raise TransitionError(current, desired)

    monkeypatch.setattr(dispatch_service_module, "assert_transition", refuse)
    outcome = DispatchService(db, payments).respond(tokens[contractor.id], "ACCEPT", now=NOW)

    assert outcome.kind == OutcomeKind.INVALID_TRANSITION
    assert payments.retrieved == []
    assert job.status == "OPEN_FOR_ROUTING"
    assert dispatch_for(db, job.id, contractor.id).status == DispatchStatus.PENDING.value


def test_accept_without_processor_fails_safely(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    outcome = DispatchService(db).respond(tokens[contractor.id], "ACCEPT", now=NOW)
    assert outcome.kind == OutcomeKind.PAYMENT_NOT_CAPTURABLE


# ---------------------------------------------------------------------------
# Declining, expiry and withdrawal
# ---------------------------------------------------------------------------


def test_decline_keeps_job_open(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    service = DispatchService(db)

    outcome = service.respond(tokens[contractor.id], "DECLINE", now=NOW)

    assert outcome.ok
    assert outcome.data["status"] == DispatchStatus.DECLINED.value
    assert job.status == "OPEN_FOR_ROUTING"
    assert job.claimed_by_router_id == "router-1"
    assert service.respond(tokens[contractor.id], "DECLINE", now=NOW).kind == OutcomeKind.ALREADY_RESPONDED


def test_offer_is_valid_until_exactly_24_hours(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    assert DispatchService(db).respond(tokens[contractor.id], "DECLINE", now=NOW + DAY).ok


def test_late_response_expires_the_offer(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    service = DispatchService(db, FakePaymentProcessor())

    outcome = service.respond(tokens[contractor.id], "ACCEPT", now=NOW + DAY + timedelta(seconds=1))

    assert outcome.kind == OutcomeKind.EXPIRED
    # The expiry is persisted even though the caller got a failure
    db.expire_all()
    assert dispatch_for(db, job.id, contractor.id).status == DispatchStatus.EXPIRED.value
    assert db.query(AuditLog).filter_by(action="JOB_DISPATCH_EXPIRED").count() == 1
    assert job.status == "OPEN_FOR_ROUTING"


def test_respond_rejects_bad_input(db, world):
    service = DispatchService(db)
    assert service.respond("not-a-token", "ACCEPT", now=NOW).kind == OutcomeKind.NOT_FOUND
    assert service.respond("", "ACCEPT", now=NOW).kind == OutcomeKind.NOT_FOUND
    assert service.respond("whatever", "MAYBE", now=NOW).kind == OutcomeKind.INVALID_REQUEST


def test_release_claim_withdraws_offers(db, world):
    router, contractor, job = world
    tokens = route(db, job, [contractor.id])
    service = DispatchService(db)

    outcome = service.release_claim("router-1", job.id, now=NOW)

    assert outcome.ok
    assert outcome.data["withdrawn_offers"] == 1
    assert job.routing_status == RoutingStatus.UNROUTED.value
    assert job.claimed_by_router_id is None
    assert_routing_consistent(job)
    assert service.respond(tokens[contractor.id], "ACCEPT", now=NOW).kind == OutcomeKind.ALREADY_RESPONDED


def test_only_the_claiming_router_can_release(db, world, make_router):
    router, contractor, job = world
    make_router("router-2")
    route(db, job, [contractor.id])
    assert DispatchService(db).release_claim("router-2", job.id, now=NOW).kind == OutcomeKind.FORBIDDEN


def test_expire_stale_offers_sweep(db, two_contractors):
    job, first, second = two_contractors
    route(db, job, [first.id, second.id])
    service = DispatchService(db)

    assert service.expire_stale_offers(now=NOW + timedelta(hours=1)) == 0
    assert service.list_contractor_offers(first.id, now=NOW + timedelta(hours=1))
    assert service.expire_stale_offers(now=NOW + DAY + timedelta(seconds=1)) == 2
    db.expire_all()
    assert {d.status for d in db.query(JobDispatch)} == {DispatchStatus.EXPIRED.value}
    assert service.list_contractor_offers(first.id, now=NOW + DAY) == []


def test_list_job_offers_is_private_to_the_router(db, world, make_router):
    router, contractor, job = world
    make_router("router-2")
    route(db, job, [contractor.id])
    service = DispatchService(db)

    assert len(service.list_job_offers("router-1", job.id).data["dispatches"]) == 1
    assert service.list_job_offers("router-2", job.id).kind == OutcomeKind.FORBIDDEN
