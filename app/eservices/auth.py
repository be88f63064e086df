from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request

from app.eservices.audit import record_event
from app.eservices.db import db_session
from app.eservices.errors import Unauthenticated
from app.eservices.identity import (
    authenticate_token,
    bearer_token_from_header,
    issue_token,
    normalize_email,
    register_user,
    verify_credentials,
)
from app.eservices.rbac import Role, require_role
from app.eservices.utils import json_body, utcnow

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    cutoff = utcnow() - timedelta(seconds=_LOGIN_RATE_WINDOW)
    # Drop clients with no attempts left in the window.
    for key in list(_login_attempts):
        recent = [t for t in _login_attempts[key] if t > cutoff]
        if recent:
            _login_attempts[key] = recent
        else:
            del _login_attempts[key]
    return len(_login_attempts.get(ip, ())) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the Authorization: Bearer header.
    Also assigns a simple per-request request_id (for log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return
    token = bearer_token_from_header(request.headers.get("Authorization"))
    if not token:
        return
    g.current_user = authenticate_token(db_session(), token)


@bp.post("/register")
def register():
    data = json_body()
    s = db_session()
    # Self-registration always yields a citizen; staff roles are granted by an admin.
    user = register_user(
        s,
        name=data.get("name") or "",
        email=data.get("email") or "",
        password=data.get("password") or "",
        role=Role.CITIZEN,
        national_id=data.get("national_id"),
    )
    record_event(s, actor=user, action="USER_REGISTERED", target_type="user", target_id=user.id)
    s.commit()
    return jsonify({"success": True, "data": {"user": user.to_dict(), "token": issue_token(user)}}), 201


@bp.post("/login")
def login():
    data = json_body()
    email = normalize_email(data.get("email"))
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"success": False, "error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    s = db_session()
    user = verify_credentials(s, email, data.get("password"))
    if user is None:
        record_event(
            s,
            actor=None,
            action="LOGIN_FAILED",
            target_type="user",
            target_id=email,
            metadata={"email": email},
        )
        s.commit()
        current_app.logger.info("Login failed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise Unauthenticated("Invalid credentials.")

    _login_attempts.pop(ip, None)
    record_event(s, actor=user, action="LOGIN", target_type="user", target_id=user.id)
    s.commit()
    return jsonify({"success": True, "data": {"user": user.to_dict(), "token": issue_token(user)}})


@bp.get("/me")
@require_role(Role.CITIZEN)
def me():
    return jsonify({"success": True, "data": {"user": g.current_user.to_dict()}})
