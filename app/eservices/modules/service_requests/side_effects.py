"""
Binds each lifecycle transition to its collateral writes and commits them as one unit.

    create        -> Request (+ Payment iff fee > 0) + Notification + AuditLog
    decide        -> Request update + Notification to owner + AuditLog REQUEST_DECIDED
    start review  -> Request update + Notification to owner + AuditLog REQUEST_REVIEW_STARTED
    complete      -> Request update + Notification to owner + AuditLog REQUEST_COMPLETED

Either everything in the unit commits or nothing does. Engine errors raised inside
the unit propagate unchanged after the rollback; store errors are translated.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.eservices.audit import record_event
from app.eservices.errors import ConcurrentModification, EngineError, StoreUnavailable, ValidationFailed
from app.eservices.models import AuditLog, User
from app.eservices.utils import utcnow

from app.eservices.modules.catalog.models import Service
from app.eservices.modules.notifications.models import Notification
from . import lifecycle
from .models import Payment, ServiceRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentEffect:
    amount: Decimal


@dataclass(frozen=True)
class NotificationEffect:
    user_id: int
    title: str
    message: str
    type: str = "info"


@dataclass(frozen=True)
class AuditEffect:
    action: str
    metadata: dict[str, Any] = field(default_factory=dict)


Effect = PaymentEffect | NotificationEffect | AuditEffect


@dataclass
class AppliedEffects:
    payment: Payment | None = None
    notifications: list[Notification] = field(default_factory=list)
    audit: list[AuditLog] = field(default_factory=list)


# status entered -> (audit action, notification title, notification type, phrase)
_TRANSITION_NOTICES = {
    "under_review": ("REQUEST_REVIEW_STARTED", "Request Under Review", "info", "is now under review"),
    "approved": ("REQUEST_DECIDED", "Request Approved", "success", "has been approved"),
    "rejected": ("REQUEST_DECIDED", "Request Rejected", "warning", "has been rejected"),
    "completed": ("REQUEST_COMPLETED", "Request Completed", "success", "has been completed"),
}


def plan_creation_effects(service: Service, req: ServiceRequest) -> list[Effect]:
    effects: list[Effect] = []
    fee = Decimal(service.fee or 0)
    if fee > 0:
        effects.append(PaymentEffect(amount=fee))
    effects.append(
        NotificationEffect(
            user_id=req.user_id,
            title="Request Submitted",
            message=f"Your request for {service.name} has been submitted successfully.",
            type="success",
        )
    )
    effects.append(
        AuditEffect(
            action="REQUEST_CREATED",
            metadata={
                "reference_number": req.reference_number,
                "service_id": service.id,
                "fee": str(fee),
            },
        )
    )
    return effects


def plan_transition_effects(req: ServiceRequest, previous_status: str) -> list[Effect]:
    action, title, kind, phrase = _TRANSITION_NOTICES[req.status]
    service_name = req.service.name if req.service else "your service"
    message = f"Your request {req.reference_number} for {service_name} {phrase}."
    if req.status in lifecycle.DECISIONS and req.remarks:
        message = f"{message} Remarks: {req.remarks}"
    metadata: dict[str, Any] = {
        "reference_number": req.reference_number,
        "from": previous_status,
        "to": req.status,
    }
    if req.status in lifecycle.DECISIONS:
        metadata["remarks"] = req.remarks
    return [
        NotificationEffect(user_id=req.user_id, title=title, message=message, type=kind),
        AuditEffect(action=action, metadata=metadata),
    ]


def apply_effects(s: Session, effects: list[Effect], *, actor: User, req: ServiceRequest) -> AppliedEffects:
    applied = AppliedEffects()
    for effect in effects:
        if isinstance(effect, PaymentEffect):
            payment = Payment(
                request=req,
                amount=effect.amount,
                status="pending",
                payment_date=None,
                created_at=utcnow(),
            )
            s.add(payment)
            applied.payment = payment
        elif isinstance(effect, NotificationEffect):
            n = Notification(
                user_id=effect.user_id,
                title=effect.title,
                message=effect.message,
                type=effect.type,
                is_read=False,
            )
            s.add(n)
            applied.notifications.append(n)
        elif isinstance(effect, AuditEffect):
            applied.audit.append(
                record_event(
                    s,
                    actor=actor,
                    action=effect.action,
                    target_type="request",
                    target_id=req.id,
                    metadata=effect.metadata,
                )
            )
        else:
            raise TypeError(f"Unknown effect: {effect!r}")
    s.flush()
    return applied


@contextmanager
def coordinated(s: Session, *, action: str) -> Iterator[Session]:
    """All-or-nothing unit: commit on success, roll back everything on any failure."""
    try:
        yield s
        s.commit()
    except EngineError:
        s.rollback()
        raise
    except StaleDataError as e:
        s.rollback()
        logger.warning("Concurrent modification during %s: %s", action, e)
        raise ConcurrentModification(
            "The request was changed by someone else; re-fetch and retry."
        ) from e
    except IntegrityError as e:
        s.rollback()
        logger.warning("Integrity violation during %s: %s", action, e.orig)
        raise ValidationFailed("The change conflicts with existing data.") from e
    except SQLAlchemyError as e:
        s.rollback()
        logger.exception("Store failure during %s", action)
        raise StoreUnavailable("The data store is unavailable; nothing was saved.") from e
    except Exception:
        s.rollback()
        raise


@dataclass
class CreationResult:
    request: ServiceRequest
    payment: Payment | None
    effects: AppliedEffects


def submit_request(
    s: Session,
    actor: User,
    service: Service | None,
    form_data: object = None,
    *,
    clock: lifecycle.Clock = utcnow,
    rng: lifecycle.RandomSource = lifecycle.system_draw,
    retry_limit: int = lifecycle.DEFAULT_REFERENCE_RETRY_LIMIT,
) -> CreationResult:
    """Create a request with its payment, notification and audit entry, atomically."""
    with coordinated(s, action="request.create"):
        req = lifecycle.create_request(
            s, actor, service, form_data, clock=clock, rng=rng, retry_limit=retry_limit
        )
        applied = apply_effects(s, plan_creation_effects(service, req), actor=actor, req=req)  # type: ignore[arg-type]
    logger.info(
        "Request %s (%s) submitted by user=%s payment=%s",
        req.id,
        req.reference_number,
        actor.id,
        applied.payment.amount if applied.payment else None,
    )
    return CreationResult(request=req, payment=applied.payment, effects=applied)


def _run_transition(s: Session, actor: User, req: ServiceRequest, action: str, op) -> ServiceRequest:
    with coordinated(s, action=action):
        previous = req.status
        op()
        apply_effects(s, plan_transition_effects(req, previous), actor=actor, req=req)
    logger.info("Request %s moved %s -> %s by user=%s", req.id, previous, req.status, actor.id)
    return req


def decide(
    s: Session,
    actor: User,
    req: ServiceRequest,
    decision: str,
    remarks: object = None,
    *,
    clock: lifecycle.Clock = utcnow,
    expected_version: int | None = None,
) -> ServiceRequest:
    return _run_transition(
        s,
        actor,
        req,
        "request.decide",
        lambda: lifecycle.decide_request(
            s, actor, req, decision, remarks, clock=clock, expected_version=expected_version
        ),
    )


def begin_review(
    s: Session,
    actor: User,
    req: ServiceRequest,
    *,
    clock: lifecycle.Clock = utcnow,
    expected_version: int | None = None,
) -> ServiceRequest:
    return _run_transition(
        s,
        actor,
        req,
        "request.start_review",
        lambda: lifecycle.start_review(s, actor, req, clock=clock, expected_version=expected_version),
    )


def complete(
    s: Session,
    actor: User,
    req: ServiceRequest,
    *,
    clock: lifecycle.Clock = utcnow,
    expected_version: int | None = None,
) -> ServiceRequest:
    return _run_transition(
        s,
        actor,
        req,
        "request.complete",
        lambda: lifecycle.complete_request(s, actor, req, clock=clock, expected_version=expected_version),
    )
