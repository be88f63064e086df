from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.eservices.db import db_session
from app.eservices.models import User
from app.eservices.rbac import Role, require_role
from app.eservices.utils import page_args

from .service import list_notifications, mark_read

bp = Blueprint("notifications", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/notifications")
@require_role(Role.CITIZEN)
def notifications_list():
    s = db_session()
    u = _current_user()
    page, limit = page_args(request.args)
    rows, total = list_notifications(s, u, page=page, limit=limit)
    return jsonify(
        {
            "success": True,
            "data": {
                "notifications": [n.to_dict() for n in rows],
                "pagination": {"total": total, "page": page, "pages": (total + limit - 1) // limit},
            },
        }
    )


@bp.put("/notifications/<int:notification_id>/read")
@require_role(Role.CITIZEN)
def notifications_mark_read(notification_id: int):
    s = db_session()
    u = _current_user()
    mark_read(s, u, notification_id)
    s.commit()
    return jsonify({"success": True, "message": "Notification marked as read"})
