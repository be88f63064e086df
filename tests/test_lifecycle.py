"""Tests for request creation, reference numbers and review transitions."""
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.eservices import create_app
from app.eservices.db import session_scope
from app.eservices.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    ReferenceCollision,
    ValidationFailed,
)
from app.eservices.identity import register_user
from app.eservices.models import Base, Department, User
from app.eservices.modules.catalog.models import Service
from app.eservices.modules.service_requests import lifecycle
from app.eservices.modules.service_requests.models import ServiceRequest
from app.eservices.modules.service_requests.side_effects import begin_review, complete, decide, submit_request
from app.eservices.rbac import Role

FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        dept = Department(name="Civil Registry", is_active=True)
        s.add(dept)
        s.flush()
        s.add_all(
            [
                Service(department_id=dept.id, name="Birth Certificate", description="Copy", fee=Decimal("25.00")),
                Service(department_id=dept.id, name="Address Update", description="Free", fee=Decimal("0.00")),
                Service(department_id=dept.id, name="Retired", description="Old", fee=Decimal("0"), is_active=False),
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


def _draws(*values):
    it = iter(values)
    return lambda: next(it)


def test_reference_number_format():
    ref = lifecycle.new_reference_number(FIXED_NOW, 7)
    assert lifecycle.REFERENCE_PATTERN.match(ref)
    millis = lifecycle.epoch_millis(FIXED_NOW)
    assert ref == f"REQ-{str(millis)[-8:]}-007"


def test_reference_number_pads_short_timestamps():
    assert lifecycle.new_reference_number(datetime(1970, 1, 1, 0, 0, 1), 0) == "REQ-00001000-000"


def test_reference_number_rejects_out_of_range_draw():
    with pytest.raises(ValueError):
        lifecycle.new_reference_number(FIXED_NOW, 1000)


def test_create_request_sets_submitted_state(session):
    citizen = _user(session, "citizen@example.com")
    service = _service(session, "Address Update")
    req = lifecycle.create_request(session, citizen, service, {"street": "Main"}, clock=lambda: FIXED_NOW)
    session.commit()

    assert req.status == "submitted"
    assert req.user_id == citizen.id
    assert req.service_id == service.id
    assert req.form_data == {"street": "Main"}
    assert req.submitted_at == FIXED_NOW
    assert req.reviewed_by is None and req.reviewed_at is None
    assert req.version == 1
    assert lifecycle.REFERENCE_PATTERN.match(req.reference_number)


def test_create_request_missing_or_inactive_service(session):
    citizen = _user(session, "citizen@example.com")
    with pytest.raises(NotFound):
        lifecycle.create_request(session, citizen, None)
    with pytest.raises(NotFound):
        lifecycle.create_request(session, citizen, _service(session, "Retired"))


def test_create_request_rejects_non_object_form_data(session):
    citizen = _user(session, "citizen@example.com")
    with pytest.raises(ValidationFailed):
        lifecycle.create_request(session, citizen, _service(session, "Address Update"), ["not", "a", "dict"])


def test_create_request_does_not_check_form_fields(session):
    citizen = _user(session, "citizen@example.com")
    service = _service(session, "Address Update")
    service.form_fields = [{"name": "street", "required": True}]
    req = lifecycle.create_request(session, citizen, service, {"unexpected": 1})
    assert req.form_data == {"unexpected": 1}


def test_reference_collision_retries_then_succeeds(session):
    citizen = _user(session, "citizen@example.com")
    service = _service(session, "Address Update")
    first = lifecycle.create_request(session, citizen, service, clock=lambda: FIXED_NOW, rng=_draws(5))
    session.commit()

    second = lifecycle.create_request(session, citizen, service, clock=lambda: FIXED_NOW, rng=_draws(5, 5, 6))
    session.commit()

    assert first.reference_number.endswith("-005")
    assert second.reference_number.endswith("-006")
    assert session.execute(select(func.count(ServiceRequest.id))).scalar_one() == 2


def test_reference_collision_exhausts_retry_limit(session):
    citizen = _user(session, "citizen@example.com")
    service = _service(session, "Address Update")
    lifecycle.create_request(session, citizen, service, clock=lambda: FIXED_NOW, rng=_draws(5))
    session.commit()

    with pytest.raises(ReferenceCollision):
        submit_request(session, citizen, service, clock=lambda: FIXED_NOW, rng=lambda: 5, retry_limit=3)

    assert session.execute(select(func.count(ServiceRequest.id))).scalar_one() == 1


def test_decide_records_reviewer(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Address Update")).request

    decide(session, officer, req, "approved", "  looks good ", clock=lambda: FIXED_NOW)

    assert req.status == "approved"
    assert req.remarks == "looks good"
    assert req.reviewed_by == officer.id
    assert req.reviewed_at == FIXED_NOW
    assert req.version == 2


@pytest.mark.parametrize("decision", ["pending", "", None, "APPROVED"])
def test_decide_rejects_unknown_decisions(session, decision):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Address Update")).request

    with pytest.raises(ValidationFailed):
        decide(session, officer, req, decision)
    session.refresh(req)
    assert req.status == "submitted"


def test_decide_rejects_non_string_remarks(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Address Update")).request
    with pytest.raises(ValidationFailed):
        decide(session, officer, req, "rejected", {"why": "no"})


def test_decided_request_cannot_be_decided_again(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Address Update")).request
    decide(session, officer, req, "rejected", "missing documents")

    with pytest.raises(InvalidTransition):
        decide(session, officer, req, "approved")
    session.refresh(req)
    assert req.status == "rejected"
    assert req.remarks == "missing documents"


def test_review_and_completion_path(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Address Update")).request

    begin_review(session, officer, req)
    assert req.status == "under_review"
    with pytest.raises(InvalidTransition):
        begin_review(session, officer, req)
    with pytest.raises(InvalidTransition):
        complete(session, officer, req)

    decide(session, officer, req, "approved")
    complete(session, officer, req)
    assert req.status == "completed"
    with pytest.raises(InvalidTransition):
        decide(session, officer, req, "rejected")


def test_load_request_for_update_missing(session):
    with pytest.raises(NotFound):
        lifecycle.load_request_for_update(session, 999)


def test_concurrent_decisions_second_one_fails(app):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    with session_scope(app) as s:
        req = submit_request(s, _user(s, "citizen@example.com"), _service(s, "Address Update")).request
        request_id = req.id

    s1, s2 = sm(), sm()
    try:
        officer2 = _user(s2, "officer@example.com")
        stale = lifecycle.load_request_for_update(s2, request_id)
        s2.commit()  # release the SQLite read lock; ``stale`` stays loaded at version 1

        officer1 = _user(s1, "officer@example.com")
        fresh = lifecycle.load_request_for_update(s1, request_id)
        decide(s1, officer1, fresh, "approved", "first")

        with pytest.raises(ConcurrentModification):
            decide(s2, officer2, stale, "rejected", "second")
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        final = s.get(ServiceRequest, request_id)
        assert final.status == "approved"
        assert final.remarks == "first"
        assert final.version == 2


def test_decision_after_waiting_on_the_lock_reports_the_lost_race(app):
    # Reviewer B reads the request, then waits on the row lock while A decides.
    sm = app.extensions["sqlalchemy_sessionmaker"]
    with session_scope(app) as s:
        req = submit_request(s, _user(s, "citizen@example.com"), _service(s, "Address Update")).request
        request_id = req.id

    s_a, s_b = sm(), sm()
    try:
        seen = s_b.get(ServiceRequest, request_id).version
        s_b.rollback()

        decide(s_a, _user(s_a, "officer@example.com"), lifecycle.load_request_for_update(s_a, request_id), "approved")

        officer_b = _user(s_b, "officer@example.com")
        current = lifecycle.load_request_for_update(s_b, request_id)
        assert current.status == "approved"
        with pytest.raises(ConcurrentModification) as exc:
            decide(s_b, officer_b, current, "rejected", "late", expected_version=seen)
        assert exc.value.details["expected_version"] == seen
        assert exc.value.details["current_version"] == seen + 1
    finally:
        s_a.close()
        s_b.close()

    with session_scope(app) as s:
        final = s.get(ServiceRequest, request_id)
        assert final.status == "approved"
        assert final.remarks is None
        assert final.version == 2


def test_matching_expected_version_allows_the_transition(session):
    citizen = _user(session, "citizen@example.com")
    officer = _user(session, "officer@example.com")
    req = submit_request(session, citizen, _service(session, "Address Update")).request

    begin_review(session, officer, req, expected_version=req.version)
    assert req.status == "under_review"
    with pytest.raises(ConcurrentModification):
        decide(session, officer, req, "approved", expected_version=1)
    session.refresh(req)
    assert req.status == "under_review"
