from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.eservices.db import db_session
from app.eservices.errors import ValidationFailed
from app.eservices.models import User
from app.eservices.rbac import Role, require_role
from app.eservices.utils import json_body, page_args, parse_int

from .lifecycle import load_request_for_update
from .models import ServiceRequest
from .service import (
    department_request_stats,
    get_request,
    guard_review_access,
    list_department_requests,
    list_pending_requests,
)
from .side_effects import begin_review, complete, decide

bp = Blueprint("officer", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _department_arg() -> int | None:
    raw_department = request.args.get("department_id")
    department_id = parse_int(raw_department)
    if raw_department and department_id is None:
        raise ValidationFailed("department_id must be an integer")
    return department_id


def _expected_version(data: dict, seen: int) -> int:
    """The client's ``version`` when sent, else the one read before taking the lock."""
    if "version" not in data:
        return seen
    v = data.get("version")
    if isinstance(v, bool) or not isinstance(v, int):
        raise ValidationFailed("version must be an integer")
    return v


def _locked_for_review(s, u: User, request_id: int, *, action: str) -> tuple[ServiceRequest, int]:
    # Version as read before waiting on the row lock.
    seen = get_request(s, request_id).version
    req = load_request_for_update(s, request_id)
    guard_review_access(u, req, action=action)
    return req, seen


@bp.get("/dashboard")
@require_role(Role.OFFICER)
def dashboard():
    s = db_session()
    u = _current_user()
    department_id = _department_arg()
    stats = department_request_stats(s, u, department_id=department_id)
    pending = list_pending_requests(s, u, department_id=department_id, limit=10)
    return jsonify({"success": True, "data": {"stats": stats, "pending_requests": [r.to_dict() for r in pending]}})


@bp.get("/requests")
@require_role(Role.OFFICER)
def requests_list():
    s = db_session()
    u = _current_user()
    page, limit = page_args(request.args, default_limit=20)
    status = (request.args.get("status") or "").strip() or None
    rows, total = list_department_requests(
        s, u, status=status, department_id=_department_arg(), page=page, limit=limit
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


@bp.get("/requests/pending")
@require_role(Role.OFFICER)
def pending_list():
    s = db_session()
    u = _current_user()
    rows = list_pending_requests(s, u, department_id=_department_arg())
    return jsonify({"success": True, "data": {"requests": [r.to_dict() for r in rows]}})


@bp.get("/requests/<int:request_id>")
@require_role(Role.OFFICER)
def request_detail(request_id: int):
    s = db_session()
    u = _current_user()
    req = get_request(s, request_id)
    guard_review_access(u, req, action="request.view")
    return jsonify({"success": True, "data": {"request": req.to_dict(detail=True)}})


@bp.post("/requests/<int:request_id>/review")
@require_role(Role.OFFICER)
def request_start_review(request_id: int):
    s = db_session()
    u = _current_user()
    data = json_body()
    req, seen = _locked_for_review(s, u, request_id, action="request.start_review")
    begin_review(s, u, req, expected_version=_expected_version(data, seen))
    return jsonify({"success": True, "message": "Request under review", "data": {"request": req.to_dict()}})


@bp.post("/requests/<int:request_id>/decision")
@require_role(Role.OFFICER)
def request_decision(request_id: int):
    s = db_session()
    u = _current_user()
    data = json_body()
    req, seen = _locked_for_review(s, u, request_id, action="request.decide")
    decision = data.get("decision")
    decide(s, u, req, decision, data.get("remarks"), expected_version=_expected_version(data, seen))
    return jsonify({"success": True, "message": f"Request {decision}", "data": {"request": req.to_dict()}})


@bp.post("/requests/<int:request_id>/complete")
@require_role(Role.OFFICER)
def request_complete(request_id: int):
    s = db_session()
    u = _current_user()
    data = json_body()
    req, seen = _locked_for_review(s, u, request_id, action="request.complete")
    complete(s, u, req, expected_version=_expected_version(data, seen))
    return jsonify({"success": True, "message": "Request completed", "data": {"request": req.to_dict()}})
