import math
import os
from datetime import datetime, timedelta

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobrouter import models, models_ledger  # noqa: F401
from jobrouter.database import Base
from jobrouter.domain.eligibility.geo import EARTH_RADIUS_KM
from jobrouter.domain.jobs.state_machine import JobStatus
from jobrouter.models import (
    AccountStatus,
    ApprovalStatus,
    Contractor,
    Job,
    PaymentStatus,
    RouterProfile,
    RoutingStatus,
)
from jobrouter.services.payment_processor import AuthorizationState, AuthorizationStatus

# Monday, mid-afternoon UTC
NOW = datetime(2024, 3, 4, 15, 0, 0)

SEATTLE = (47.6062, -122.3321)
VANCOUVER = (49.2827, -123.1207)


def north_of(point, km):
    """A point ``km`` due north; haversine distance is exactly ``km``"""
    lat, lng = point
    return (lat + km / (EARTH_RADIUS_KM * math.pi / 180), lng)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Let SQLAlchemy manage BEGIN so SAVEPOINTs work with pysqlite
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class FakePaymentProcessor:
    """In-memory stand-in for the Square client"""

    def __init__(
        self,
        state=AuthorizationState.REQUIRES_CAPTURE,
        capture_state=AuthorizationState.CAPTURED,
        on_retrieve=None,
    ):
        self.state = state
        self.capture_state = capture_state
        self.on_retrieve = on_retrieve
        self.retrieved = []
        self.captured = []

    def retrieve_authorization(self, reference):
        self.retrieved.append(reference)
        if self.on_retrieve is not None:
            hook, self.on_retrieve = self.on_retrieve, None
            hook()
        return AuthorizationStatus(reference=reference, state=self.state)

    def capture(self, reference):
        self.captured.append(reference)
        return AuthorizationStatus(reference=reference, state=self.capture_state)


@pytest.fixture
def payments():
    return FakePaymentProcessor()


@pytest.fixture
def make_router(db):
    def _make(user_id="router-1", country="US", region="WA", **overrides):
        router = RouterProfile(
            user_id=user_id,
            display_name=overrides.pop("display_name", f"Router {user_id}"),
            status=overrides.pop("status", AccountStatus.ACTIVE.value),
            home_country=country,
            home_region_code=region,
            daily_route_limit=overrides.pop("daily_route_limit", 10),
            **overrides,
        )
        db.add(router)
        db.commit()
        return router

    return _make


@pytest.fixture
def make_contractor(db):
    def _make(contractor_id="contractor-1", location=SEATTLE, country="US", region="WA", **overrides):
        lat, lng = location if location else (None, None)
        contractor = Contractor(
            id=contractor_id,
            business_name=overrides.pop("business_name", f"{contractor_id} LLC"),
            account_status=overrides.pop("account_status", AccountStatus.ACTIVE.value),
            approval_status=overrides.pop("approval_status", ApprovalStatus.APPROVED.value),
            trade_categories=overrides.pop("trade_categories", ["PLUMBING"]),
            automotive_enabled=overrides.pop("automotive_enabled", False),
            country_code=country,
            state_code=region,
            lat=lat,
            lng=lng,
            **overrides,
        )
        db.add(contractor)
        db.commit()
        return contractor

    return _make


@pytest.fixture
def make_job(db):
    def _make(**overrides):
        location = overrides.pop("location", SEATTLE)
        lat, lng = location if location else (None, None)
        data = dict(
            title="Replace water heater",
            status=JobStatus.OPEN_FOR_ROUTING.value,
            routing_status=RoutingStatus.UNROUTED.value,
            country_code="US",
            state_code="WA",
            lat=lat,
            lng=lng,
            trade_category="PLUMBING",
            job_type="urban",
            labor_total_cents=10000,
            materials_total_cents=2500,
            contractor_payout_cents=7500,
            router_earnings_cents=1500,
            platform_fee_cents=1000,
            transaction_fee_cents=300,
            payment_status=PaymentStatus.AUTHORIZED.value,
            payment_reference="pay_123",
            authorization_expires_at=NOW + timedelta(days=6),
            poster_user_id="poster-1",
        )
        data.update(overrides)
        job = Job(**data)
        db.add(job)
        db.commit()
        return job

    return _make


@pytest.fixture
def client(db, payments):
    """TestClient bound to the test session and the fake processor"""
    from fastapi.testclient import TestClient

    from jobrouter.database import get_db
    from jobrouter.main import app
    from jobrouter.services.payment_processor import get_payment_processor

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: payments
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    from jobrouter.auth import create_access_token

    def _headers(user_id, role):
        return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}

    return _headers


@pytest.fixture
def world(make_router, make_contractor, make_job):
    """One router, one nearby contractor and one open job in Washington"""
    router = make_router()
    contractor = make_contractor()
    job = make_job()
    return router, contractor, job
