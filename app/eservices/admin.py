from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from flask import Blueprint, g, jsonify, request
from sqlalchemy import and_, func, select

from app.eservices.audit import record_event
from app.eservices.db import db_session
from app.eservices.errors import NotFound, ValidationFailed
from app.eservices.identity import register_user
from app.eservices.models import AuditLog, Department, User
from app.eservices.rbac import DEPARTMENT_SCOPED_ROLES, Role, parse_role, require_role
from app.eservices.utils import json_body, page_args, parse_int, utcnow

from app.eservices.modules.catalog.models import Service
from app.eservices.modules.service_requests.lifecycle import VALID_STATUSES
from app.eservices.modules.service_requests.models import Payment, ServiceRequest

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _department_or_error(s, raw) -> int | None:
    if raw in (None, ""):
        return None
    department_id = parse_int(raw)
    if department_id is None:
        raise ValidationFailed("department_id must be an integer")
    dept = s.get(Department, department_id)
    if dept is None or not dept.is_active:
        raise NotFound("Department not found")
    return dept.id


@bp.get("/users")
@require_role(Role.ADMIN)
def users_list():
    s = db_session()
    page, limit = page_args(request.args, default_limit=50)
    q = select(User)
    role = (request.args.get("role") or "").strip()
    if role:
        if parse_role(role) is None:
            raise ValidationFailed(f"Unknown role: {role}")
        q = q.where(User.role == role)
    users = s.execute(q.order_by(User.id.asc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return jsonify({"success": True, "data": {"users": [u.to_dict() for u in users]}})


@bp.post("/users")
@require_role(Role.ADMIN)
def users_create():
    """Create a staff account (any role, optionally attached to a department)."""
    s = db_session()
    u = _current_user()
    data = json_body()
    role = parse_role(data.get("role") or Role.CITIZEN.value)
    if role is None:
        raise ValidationFailed(f"Unknown role: {data.get('role')}")
    user = register_user(
        s,
        name=data.get("name") or "",
        email=data.get("email") or "",
        password=data.get("password") or "",
        role=role,
        national_id=data.get("national_id"),
        department_id=_department_or_error(s, data.get("department_id")),
    )
    record_event(
        s,
        actor=u,
        action="USER_CREATED",
        target_type="user",
        target_id=user.id,
        metadata={"role": user.role, "department_id": user.department_id},
    )
    s.commit()
    return jsonify({"success": True, "data": {"user": user.to_dict()}}), 201


@bp.patch("/users/<int:user_id>")
@require_role(Role.ADMIN)
def users_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    if user.id == u.id:
        raise ValidationFailed("You cannot modify your own account.")

    data = json_body()
    before = {"role": user.role, "department_id": user.department_id, "is_active": user.is_active}

    if "role" in data:
        role = parse_role(data.get("role"))
        if role is None:
            raise ValidationFailed(f"Unknown role: {data.get('role')}")
        user.role = role.value
    if "department_id" in data:
        user.department_id = _department_or_error(s, data.get("department_id"))
    if parse_role(user.role) not in DEPARTMENT_SCOPED_ROLES:
        user.department_id = None
    if "is_active" in data:
        # Soft deactivation only; users are never deleted.
        user.is_active = bool(data.get("is_active"))

    after = {"role": user.role, "department_id": user.department_id, "is_active": user.is_active}
    if after != before:
        user.updated_at = utcnow()
        record_event(
            s,
            actor=u,
            action="USER_UPDATED",
            target_type="user",
            target_id=user.id,
            metadata={"before": before, "after": after},
        )
    s.commit()
    return jsonify({"success": True, "data": {"user": user.to_dict()}})


@bp.get("/audit-logs")
@require_role(Role.ADMIN)
def audit_list():
    """
    Last 200 audit entries, newest first. Filters:
    - action (contains)
    - target_type (exact)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    target_type = (request.args.get("target_type") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")
    if (request.args.get("date_from") or "").strip() and not date_from:
        raise ValidationFailed("date_from must be YYYY-MM-DD")
    if (request.args.get("date_to") or "").strip() and not date_to:
        raise ValidationFailed("date_to must be YYYY-MM-DD")

    q = select(AuditLog)
    if action:
        q = q.where(AuditLog.action.like(f"%{action}%"))
    if target_type:
        q = q.where(AuditLog.target_type == target_type)
    if date_from:
        q = q.where(AuditLog.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date
        q = q.where(AuditLog.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    rows = s.execute(q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(200)).scalars().all()
    return jsonify({"success": True, "data": {"logs": [r.to_dict() for r in rows]}})


# ---------- Oversight ----------
@bp.get("/dashboard")
@require_role(Role.ADMIN)
def dashboard():
    s = db_session()

    def _count(model, *where):
        return s.execute(select(func.count()).select_from(model).where(*where)).scalar_one()

    stats = {
        "total_users": _count(User, User.is_active.is_(True)),
        "total_departments": _count(Department, Department.is_active.is_(True)),
        "total_services": _count(Service, Service.is_active.is_(True)),
        "total_requests": _count(ServiceRequest, ServiceRequest.is_deleted.is_(False)),
    }
    recent = (
        s.execute(
            select(ServiceRequest)
            .where(ServiceRequest.is_deleted.is_(False))
            .order_by(ServiceRequest.submitted_at.desc(), ServiceRequest.id.desc())
            .limit(10)
        )
        .scalars()
        .all()
    )
    return jsonify({"success": True, "data": {"stats": stats, "recent_requests": [r.to_dict() for r in recent]}})


def _overview_report(s) -> dict:
    by_department = s.execute(
        select(Department.name, func.count(ServiceRequest.id).label("request_count"))
        .select_from(Department)
        .outerjoin(Service, Service.department_id == Department.id)
        .outerjoin(
            ServiceRequest,
            and_(ServiceRequest.service_id == Service.id, ServiceRequest.is_deleted.is_(False)),
        )
        .where(Department.is_active.is_(True))
        .group_by(Department.id, Department.name)
        .order_by(func.count(ServiceRequest.id).desc(), Department.name.asc())
    ).all()

    by_status = dict(
        s.execute(
            select(ServiceRequest.status, func.count(ServiceRequest.id))
            .where(ServiceRequest.is_deleted.is_(False))
            .group_by(ServiceRequest.status)
        ).all()
    )

    # Month bucketing in Python; date_trunc is Postgres-only.
    revenue: dict[str, Decimal] = defaultdict(lambda: Decimal("0.00"))
    paid = s.execute(
        select(Payment.payment_date, Payment.amount)
        .where(Payment.status == "paid")
        .where(Payment.payment_date.is_not(None))
    ).all()
    for paid_at, amount in paid:
        revenue[paid_at.strftime("%Y-%m")] += Decimal(amount)

    return {
        "requests_by_department": [{"department": name, "request_count": n} for name, n in by_department],
        "requests_by_status": {st: by_status.get(st, 0) for st in VALID_STATUSES},
        "monthly_revenue": [{"month": m, "total": str(revenue[m])} for m in sorted(revenue, reverse=True)],
    }


@bp.get("/reports")
@require_role(Role.ADMIN)
def reports():
    report_type = (request.args.get("type") or "overview").strip()
    if report_type != "overview":
        raise ValidationFailed("Invalid report type")
    return jsonify({"success": True, "data": _overview_report(db_session())})


@bp.get("/requests/all")
@require_role(Role.ADMIN)
def requests_all():
    s = db_session()
    page, limit = page_args(request.args, default_limit=20)
    q = select(ServiceRequest).where(ServiceRequest.is_deleted.is_(False))
    status = (request.args.get("status") or "").strip()
    if status:
        if status not in VALID_STATUSES:
            raise ValidationFailed(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
        q = q.where(ServiceRequest.status == status)
    total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = (
        s.execute(
            q.order_by(ServiceRequest.submitted_at.desc(), ServiceRequest.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        .scalars()
        .all()
    )
    return jsonify(
        {
            "success": True,
            "data": {
                "requests": [r.to_dict() for r in rows],
                "pagination": {"total": total, "page": page, "pages": (total + limit - 1) // limit},
            },
        }
    )
