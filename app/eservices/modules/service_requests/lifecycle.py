"""
Service request state machine.

    submitted -> under_review | approved | rejected
    under_review -> approved | rejected
    approved -> completed

Operations here mutate and flush but never commit and never authorize; run them
through ``side_effects`` so the transition and its collateral writes share one
transaction, and enforce the guard pipeline before calling.
"""
from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable, Mapping
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.eservices.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    ReferenceCollision,
    ValidationFailed,
)
from app.eservices.models import User
from app.eservices.utils import utcnow

from app.eservices.modules.catalog.models import Service
from .models import ServiceRequest

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RandomSource = Callable[[], int]  # uniform draw from 0..999

VALID_STATUSES = ("submitted", "under_review", "approved", "rejected", "completed")
DECISIONS = ("approved", "rejected")
OPEN_STATUSES = ("submitted", "under_review")

STATUS_TRANSITIONS = {
    "submitted": {"under_review", "approved", "rejected"},
    "under_review": {"approved", "rejected"},
    "approved": {"completed"},
    "rejected": set(),
    "completed": set(),
}

REFERENCE_PATTERN = re.compile(r"^REQ-\d{8}-\d{3}$")
DEFAULT_REFERENCE_RETRY_LIMIT = 5

_EPOCH = datetime(1970, 1, 1)


def system_draw() -> int:
    return secrets.randbelow(1000)


def epoch_millis(now: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC timestamp."""
    delta = now.replace(tzinfo=None) - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def new_reference_number(now: datetime, draw: int) -> str:
    """REQ-<last 8 digits of epoch ms>-<draw, zero-padded to 3>."""
    if not 0 <= draw <= 999:
        raise ValueError(f"reference draw must be in 0..999, got {draw}")
    stamp = str(epoch_millis(now))[-8:].zfill(8)
    return f"REQ-{stamp}-{draw:03d}"


def build_request(
    actor: User,
    service: Service,
    form_data: Mapping,
    *,
    now: datetime,
    draw: int,
) -> ServiceRequest:
    """Fully formed, not yet persisted request (reference number included)."""
    return ServiceRequest(
        user_id=actor.id,
        service_id=service.id,
        status="submitted",
        form_data=dict(form_data),
        reference_number=new_reference_number(now, draw),
        submitted_at=now,
        updated_at=now,
        is_deleted=False,
    )


def _is_reference_violation(e: IntegrityError) -> bool:
    return "reference_number" in str(getattr(e, "orig", e))


def create_request(
    s: Session,
    actor: User,
    service: Service | None,
    form_data: object = None,
    *,
    clock: Clock = utcnow,
    rng: RandomSource = system_draw,
    retry_limit: int = DEFAULT_REFERENCE_RETRY_LIMIT,
) -> ServiceRequest:
    """
    Insert a new ``submitted`` request owned by ``actor``.

    The unique constraint on ``reference_number`` is the collision detector: each
    attempt is inserted inside a SAVEPOINT and a reference violation rolls back just
    that attempt before regenerating. After ``retry_limit`` attempts the call fails
    with ``ReferenceCollision``.

    Known gap: ``form_data`` is stored as given and is not checked against the
    service's declared ``form_fields``.
    """
    if service is None or not service.is_active:
        raise NotFound("Service not found")
    if service.department is not None and not service.department.is_active:
        raise NotFound("Service not found")
    if form_data is None:
        form_data = {}
    if not isinstance(form_data, Mapping):
        raise ValidationFailed("form_data must be an object")
    if retry_limit < 1:
        raise ValueError("retry_limit must be at least 1")

    for attempt in range(1, retry_limit + 1):
        req = build_request(actor, service, form_data, now=clock(), draw=rng())
        try:
            with s.begin_nested():
                s.add(req)
                s.flush()
        except IntegrityError as e:
            if not _is_reference_violation(e):
                raise
            logger.warning(
                "Reference number collision (attempt %s/%s): %s",
                attempt,
                retry_limit,
                req.reference_number,
            )
            continue
        return req

    raise ReferenceCollision(
        "Could not assign a unique reference number; please retry.",
        attempts=retry_limit,
    )


def can_transition_to(req: ServiceRequest, new_status: str) -> tuple[bool, list[str]]:
    """Check if the request can move to ``new_status``."""
    if req.status not in STATUS_TRANSITIONS:
        return False, [f"Current status '{req.status}' is invalid"]
    if new_status not in STATUS_TRANSITIONS[req.status]:
        return False, [f"Cannot transition from '{req.status}' to '{new_status}'"]
    return True, []


def check_version(req: ServiceRequest, expected_version: int | None) -> None:
    """
    Compare the version the caller last read with the (locked) row. A mismatch means
    another transition committed in between, even if the new status would also
    allow this one.
    """
    if expected_version is None or req.version == expected_version:
        return
    raise ConcurrentModification(
        "The request was changed by someone else; re-fetch and retry.",
        expected_version=expected_version,
        current_version=req.version,
        status=req.status,
    )


def _transition(req: ServiceRequest, new_status: str, *, now: datetime, expected_version: int | None = None) -> str:
    check_version(req, expected_version)
    ok, errors = can_transition_to(req, new_status)
    if not ok:
        raise InvalidTransition("; ".join(errors), status=req.status, requested=new_status)
    old_status = req.status
    req.status = new_status
    req.updated_at = now
    return old_status


def _normalize_remarks(remarks: object) -> str | None:
    if remarks is None:
        return None
    if not isinstance(remarks, str):
        raise ValidationFailed("remarks must be a string")
    return remarks.strip() or None


def decide_request(
    s: Session,
    actor: User,
    req: ServiceRequest,
    decision: str,
    remarks: object = None,
    *,
    clock: Clock = utcnow,
    expected_version: int | None = None,
) -> ServiceRequest:
    """
    Record a review decision. Only open requests (submitted/under_review) can be
    decided; an already decided or completed request raises ``InvalidTransition``
    instead of overwriting its review trail.

    With ``expected_version`` set, a request that moved on since the caller read it
    raises ``ConcurrentModification`` before the status check.
    """
    if decision not in DECISIONS:
        raise ValidationFailed(f"decision must be one of: {', '.join(DECISIONS)}")
    note = _normalize_remarks(remarks)
    now = clock()
    _transition(req, decision, now=now, expected_version=expected_version)
    req.remarks = note
    req.reviewed_by = actor.id
    req.reviewed_at = now
    s.flush()
    return req


def start_review(
    s: Session,
    actor: User,
    req: ServiceRequest,
    *,
    clock: Clock = utcnow,
    expected_version: int | None = None,
) -> ServiceRequest:
    """submitted -> under_review."""
    _transition(req, "under_review", now=clock(), expected_version=expected_version)
    s.flush()
    return req


def complete_request(
    s: Session,
    actor: User,
    req: ServiceRequest,
    *,
    clock: Clock = utcnow,
    expected_version: int | None = None,
) -> ServiceRequest:
    """approved -> completed."""
    _transition(req, "completed", now=clock(), expected_version=expected_version)
    s.flush()
    return req


def load_request_for_update(s: Session, request_id: int) -> ServiceRequest:
    """
    Fetch a live request and hold a row lock on it for the rest of the transaction
    (no-op on SQLite). The row is re-read, so a caller that waited on the lock sees
    the winner's status and version; pass the version it read before waiting to the
    transition as ``expected_version``.
    """
    stmt = (
        select(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .where(ServiceRequest.is_deleted.is_(False))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    req = s.execute(stmt).scalar_one_or_none()
    if req is None:
        raise NotFound("Request not found")
    return req
