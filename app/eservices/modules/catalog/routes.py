from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.eservices.db import db_session
from app.eservices.errors import NotFound, ValidationFailed
from app.eservices.models import Department, User
from app.eservices.rbac import Role, require_role
from app.eservices.utils import json_body, parse_int

from .models import Service
from .service import (
    create_department,
    create_service,
    list_departments,
    list_services,
    update_department,
    update_service,
)

bp = Blueprint("catalog", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _department_dict(d: Department, *, admin: bool = False) -> dict:
    out = {"id": d.id, "name": d.name, "description": d.description}
    if admin:
        out["is_active"] = d.is_active
        out["staff"] = [{"id": u.id, "name": u.name, "role": u.role} for u in d.staff]
    return out


@bp.get("/services")
@require_role(Role.CITIZEN)
def services_list():
    s = db_session()
    raw_department = request.args.get("department_id")
    department_id = parse_int(raw_department)
    if raw_department and department_id is None:
        raise ValidationFailed("department_id must be an integer")
    search = (request.args.get("search") or "").strip() or None
    services = list_services(s, department_id=department_id, search=search)
    return jsonify({"success": True, "data": {"services": [x.to_dict() for x in services]}})


@bp.get("/departments")
@require_role(Role.CITIZEN)
def departments_list():
    s = db_session()
    depts = list_departments(s)
    return jsonify(
        {
            "success": True,
            "data": {"departments": [_department_dict(d) for d in depts]},
        }
    )


@bp.post("/admin/departments")
@require_role(Role.ADMIN)
def departments_create():
    s = db_session()
    dept = create_department(s, json_body(), _current_user())
    s.commit()
    return jsonify({"success": True, "data": {"department": _department_dict(dept, admin=True)}}), 201


@bp.post("/admin/services")
@require_role(Role.ADMIN)
def services_create():
    s = db_session()
    service = create_service(s, json_body(), _current_user())
    s.commit()
    return jsonify({"success": True, "data": {"service": service.to_dict()}}), 201


@bp.patch("/admin/services/<int:service_id>")
@require_role(Role.ADMIN)
def services_update(service_id: int):
    s = db_session()
    service = s.get(Service, service_id)
    if service is None:
        raise NotFound("Service not found")
    update_service(s, service, json_body(), _current_user())
    s.commit()
    return jsonify({"success": True, "data": {"service": service.to_dict()}})


# ---------- Admin listings (inactive rows included) ----------
@bp.get("/admin/departments")
@require_role(Role.ADMIN)
def admin_departments_list():
    s = db_session()
    depts = list_departments(s, active_only=False)
    return jsonify({"success": True, "data": {"departments": [_department_dict(d, admin=True) for d in depts]}})


@bp.put("/admin/departments/<int:department_id>")
@require_role(Role.ADMIN)
def departments_update(department_id: int):
    s = db_session()
    dept = s.get(Department, department_id)
    if dept is None:
        raise NotFound("Department not found")
    update_department(s, dept, json_body(), _current_user())
    s.commit()
    return jsonify({"success": True, "data": {"department": _department_dict(dept, admin=True)}})


@bp.get("/admin/services")
@require_role(Role.ADMIN)
def admin_services_list():
    s = db_session()
    raw_department = request.args.get("department_id")
    department_id = parse_int(raw_department)
    if raw_department and department_id is None:
        raise ValidationFailed("department_id must be an integer")
    services = list_services(s, department_id=department_id, include_inactive=True)
    return jsonify({"success": True, "data": {"services": [x.to_dict() for x in services]}})
