"""
Shared fixtures: an in-memory SQLite store, one tenant with a customer and
three suppliers, and helpers that walk a request to a published RFQ.
"""
import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("REASONING_PROVIDER", "mock")

from datetime import timedelta

import pytest

from procura.core.clock import utcnow
from procura.core.security import create_access_token
from procura.db import models  # noqa
from procura.db.models import Customer, Organization, Supplier
from procura.db.session import Base, build_engine, build_session_factory
from procura.services.request_intake import RequestIntakeService
from procura.services.rfq_publisher import RFQPublisher
from procura.services.quote_intake import QuoteIntakeService


SCENARIO_WEIGHTS = {
    "price": 0.4,
    "delivery": 0.25,
    "quality": 0.2,
    "capability": 0.1,
    "risk": 0.05,
}

REQUEST_PAYLOAD = {
    "category": "Road freight",
    "title": "Pallets Rotterdam to Milan",
    "description": "12 pallets of packaged goods, tail-lift required",
    "origin": "Rotterdam",
    "destination": "Milan",
    "requested_lead_time_days": 5,
}


# ============= DATABASE =============

@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============= TENANT =============

@pytest.fixture
def org(db):
    org = Organization(name="Test Logistics", slug="test-logistics", settings={})
    db.add(org)
    db.commit()
    return org


@pytest.fixture
def other_org(db):
    org = Organization(name="Other Tenant", slug="other-tenant", settings={})
    db.add(org)
    db.commit()
    return org


@pytest.fixture
def customer(db, org):
    customer = Customer(organization_id=org.id, company_name="Acme Retail", email="ops@acme.test")
    db.add(customer)
    db.commit()
    return customer


@pytest.fixture
def suppliers(db, org):
    """Three suppliers with identical default statistics (A, B, C)."""
    rows = [
        Supplier(organization_id=org.id, company_name=name, capabilities=["FTL"], certifications=[])
        for name in ("Alpha Freight", "Bravo Haulage", "Charlie Cargo")
    ]
    db.add_all(rows)
    db.commit()
    return rows


# ============= WORKFLOW HELPERS =============

@pytest.fixture
def make_request(db, org, customer):
    def _make(status="approved", **overrides):
        service = RequestIntakeService(db, org.id, user_id=1)
        request = service.create_request(customer.id, {**REQUEST_PAYLOAD, **overrides})
        if status == "draft":
            return request
        service.submit_request(request.id)
        if status == "submitted":
            return request
        return service.approve_request(request.id, notes="ok")
    return _make


@pytest.fixture
def make_rfq(db, org, make_request):
    def _make(deadline=None, weights=None, **kwargs):
        request = make_request()
        return RFQPublisher(db, org.id, user_id=1).publish_rfq(
            request_id=request.id,
            deadline=deadline or utcnow() + timedelta(days=7),
            criteria_weights=weights or SCENARIO_WEIGHTS,
            **kwargs,
        )
    return _make


@pytest.fixture
def submit(db, org):
    def _submit(rfq, supplier, price, lead_days, valid_days=30, **kwargs):
        return QuoteIntakeService(db, org.id, user_id=1).submit_quote(
            rfq_id=rfq.id,
            supplier_id=supplier.id,
            base_price=price,
            lead_time_days=lead_days,
            valid_until=utcnow() + timedelta(days=valid_days),
            **kwargs,
        )
    return _submit


@pytest.fixture
def scenario(make_rfq, submit, suppliers):
    """The three-quote scenario: A 1000/5d, B 1200/3d, C 900/7d."""
    rfq = make_rfq()
    a, b, c = suppliers
    quotes = {
        "A": submit(rfq, a, 1000, 5),
        "B": submit(rfq, b, 1200, 3),
        "C": submit(rfq, c, 900, 7),
    }
    return rfq, quotes


@pytest.fixture
def auth_headers(org):
    def _headers(role="admin", org_id=None, user_id="1"):
        token = create_access_token({"sub": user_id, "org_id": org_id or org.id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers
