"""Tests for the collateral writes bound to request transitions."""
import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.eservices import create_app
from app.eservices.db import session_scope
from app.eservices.errors import InvalidTransition, StoreUnavailable
from app.eservices.identity import register_user
from app.eservices.models import AuditLog, Base, Department, User
from app.eservices.modules.catalog.models import Service
from app.eservices.modules.catalog.service import update_service
from app.eservices.modules.notifications.models import Notification
from app.eservices.modules.service_requests import side_effects
from app.eservices.modules.service_requests.models import Payment, ServiceRequest
from app.eservices.modules.service_requests.side_effects import (
    PaymentEffect,
    decide,
    plan_creation_effects,
    submit_request,
)
from app.eservices.rbac import Role


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        dept = Department(name="Licensing", is_active=True)
        s.add(dept)
        s.flush()
        s.add_all(
            [
                Service(department_id=dept.id, name="Business Permit", description="Permit", fee=Decimal("25.00")),
                Service(department_id=dept.id, name="Free Inquiry", description="Inquiry", fee=Decimal("0.00")),
            ]
        )
        register_user(s, name="Citizen One", email="citizen@example.com", password="secret1")
        register_user(
            s,
            name="Officer One",
            email="officer@example.com",
            password="secret1",
            role=Role.OFFICER,
            department_id=dept.id,
        )
        register_user(s, name="Admin", email="admin@example.com", password="secret1", role=Role.ADMIN)
    return app


@pytest.fixture()
def session(app):
    s = app.extensions["sqlalchemy_sessionmaker"]()
    yield s
    s.close()


def _user(s, email):
    return s.execute(select(User).where(User.email == email)).scalar_one()


def _service(s, name):
    return s.execute(select(Service).where(Service.name == name)).scalar_one()


def _count(s, model):
    return s.execute(select(func.count()).select_from(model)).scalar_one()


def test_plan_has_payment_only_when_fee_positive(session):
    req = ServiceRequest(user_id=1, reference_number="REQ-00000000-000")
    paid = plan_creation_effects(_service(session, "Business Permit"), req)
    free = plan_creation_effects(_service(session, "Free Inquiry"), req)
    assert [e.amount for e in paid if isinstance(e, PaymentEffect)] == [Decimal("25.00")]
    assert not any(isinstance(e, PaymentEffect) for e in free)


def test_free_service_creates_no_payment(session):
    citizen = _user(session, "citizen@example.com")
    result = submit_request(session, citizen, _service(session, "Free Inquiry"))

    assert result.payment is None
    assert _count(session, Payment) == 0
    assert len(result.effects.notifications) == 1
    assert [a.action for a in result.effects.audit] == ["REQUEST_CREATED"]


def test_paid_service_creates_pending_payment(session):
    citizen = _user(session, "citizen@example.com")
    result = submit_request(session, citizen, _service(session, "Business Permit"), {"business": "Bakery"})
    session.expire_all()

    payment = session.execute(select(Payment)).scalar_one()
    assert payment.request_id == result.request.id
    assert payment.amount == Decimal("25.00")
    assert payment.status == "pending"
    assert payment.payment_date is None


def test_creation_notifies_owner_and_audits(session):
    citizen = _user(session, "citizen@example.com")
    req = submit_request(session, citizen, _service(session, "Business Permit")).request

    n = session.execute(select(Notification)).scalar_one()
    assert n.user_id == citizen.id
    assert n.title == "Request Submitted"
    assert n.message == "Your request for Business Permit has been submitted successfully."
    assert n.type == "success"
    assert n.is_read is False

    log = session.execute(select(AuditLog).where(AuditLog.action == "REQUEST_CREATED")).scalar_one()
    assert log.actor_id == citizen.id
    assert log.target_type == "request"
    assert log.target_id == str(req.id)
    assert json.loads(log.metadata_json)["reference_number"] == req.reference_number


def test_creation_is_atomic_when_a_collateral_write_fails(session, monkeypatch):
    citizen = _user(session, "citizen@example.com")
    service = _service(session, "Business Permit")

    def _broken_audit(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

    monkeypatch.setattr(side_effects, "record_event", _broken_audit)
    with pytest.raises(StoreUnavailable):
        submit_request(session, citizen, service)

    assert _count(session, ServiceRequest) == 0
    assert _count(session, Payment) == 0
    assert _count(session, Notification) == 0


def test_decision_notifies_owner_and_audits(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Free Inquiry")).request

    decide(session, officer, req, "rejected", "Missing ID")

    n = session.execute(select(Notification).where(Notification.title == "Request Rejected")).scalar_one()
    assert n.user_id == citizen.id
    assert n.type == "warning"
    assert req.reference_number in n.message
    assert "Missing ID" in n.message

    log = session.execute(select(AuditLog).where(AuditLog.action == "REQUEST_DECIDED")).scalar_one()
    assert log.actor_id == officer.id
    meta = json.loads(log.metadata_json)
    assert meta["from"] == "submitted"
    assert meta["to"] == "rejected"
    assert meta["remarks"] == "Missing ID"


def test_failed_decision_leaves_no_collateral_rows(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Free Inquiry")).request
    decide(session, officer, req, "approved")
    before = (_count(session, Notification), _count(session, AuditLog))

    with pytest.raises(InvalidTransition):
        decide(session, officer, req, "rejected")

    assert (_count(session, Notification), _count(session, AuditLog)) == before


def test_fee_change_does_not_touch_existing_payment(session):
    citizen = _user(session, "citizen@example.com")
    admin = _user(session, "admin@example.com")
    service = _service(session, "Business Permit")
    submit_request(session, citizen, service)

    update_service(session, service, {"fee": "40.00"}, admin)
    session.commit()
    session.expire_all()

    assert _service(session, "Business Permit").fee == Decimal("40.00")
    assert session.execute(select(Payment)).scalar_one().amount == Decimal("25.00")
