from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.eservices.db import db_session
from app.eservices.errors import NotFound, StoreUnavailable, ValidationFailed
from app.eservices.models import User
from app.eservices.rbac import Role, require_role
from app.eservices.storage import StorageError, storage_from_config
from app.eservices.utils import json_body, page_args

from app.eservices.modules.catalog.service import get_active_service
from app.eservices.modules.notifications.service import unread_count
from .service import attach_document, get_request, guard_owner_access, list_own_requests, request_stats
from .side_effects import submit_request

bp = Blueprint("citizen", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/dashboard")
@require_role(Role.CITIZEN)
def dashboard():
    s = db_session()
    u = _current_user()
    recent, _ = list_own_requests(s, u, page=1, limit=5)
    stats = request_stats(s, u)
    stats["unread_notifications"] = unread_count(s, u)
    return jsonify({"success": True, "data": {"stats": stats, "recent_requests": [r.to_dict() for r in recent]}})


# ---------- Create ----------
@bp.post("/requests")
@require_role(Role.CITIZEN)
def requests_create():
    s = db_session()
    u = _current_user()
    data = json_body()

    service = get_active_service(s, data.get("service_id"))
    result = submit_request(
        s,
        u,
        service,
        data.get("form_data"),
        retry_limit=int(current_app.config.get("REFERENCE_RETRY_LIMIT") or 5),
    )
    payload = {"request": result.request.to_dict(detail=True)}
    if result.payment is not None:
        payload["payment"] = result.payment.to_dict()
    return jsonify({"success": True, "message": "Request submitted successfully", "data": payload}), 201


# ---------- List ----------
@bp.get("/requests")
@require_role(Role.CITIZEN)
def requests_list():
    s = db_session()
    u = _current_user()
    page, limit = page_args(request.args)
    status = (request.args.get("status") or "").strip() or None
    rows, total = list_own_requests(s, u, status=status, page=page, limit=limit)
    return jsonify(
        {
            "success": True,
            "data": {
                "requests": [r.to_dict() for r in rows],
                "pagination": {"total": total, "page": page, "pages": (total + limit - 1) // limit},
            },
        }
    )


# ---------- Detail ----------
@bp.get("/requests/<int:request_id>")
@require_role(Role.CITIZEN)
def requests_detail(request_id: int):
    s = db_session()
    u = _current_user()
    req = get_request(s, request_id)
    guard_owner_access(u, req, action="request.view")
    return jsonify({"success": True, "data": {"request": req.to_dict(detail=True)}})


# ---------- Documents ----------
@bp.post("/requests/<int:request_id>/documents")
@require_role(Role.CITIZEN)
def requests_document_upload(request_id: int):
    s = db_session()
    u = _current_user()
    req = get_request(s, request_id)
    guard_owner_access(u, req, action="request.document_upload")

    f = request.files.get("document")
    if not f or not f.filename:
        raise ValidationFailed("No file uploaded.")
    doc = attach_document(
        s,
        storage_from_config(current_app.config),
        req,
        file_bytes=f.read(),
        filename=f.filename,
        content_type=f.mimetype or "application/octet-stream",
        user=u,
    )
    s.commit()
    return jsonify({"success": True, "message": "Document uploaded successfully", "data": {"document": doc.to_dict()}}), 201


@bp.get("/requests/<int:request_id>/documents/<int:document_id>")
@require_role(Role.CITIZEN)
def requests_document_download(request_id: int, document_id: int):
    s = db_session()
    u = _current_user()
    req = get_request(s, request_id)
    guard_owner_access(u, req, action="request.document_download")
    doc = next((d for d in req.documents if d.id == document_id), None)
    if doc is None:
        raise NotFound("Document not found")
    try:
        fobj = storage_from_config(current_app.config).open(doc.storage_key)
    except StorageError as e:
        current_app.logger.error("Document %s unreadable: %s", doc.id, e)
        raise StoreUnavailable("Document storage is unavailable.") from e
    return send_file(fobj, mimetype=doc.mime_type, as_attachment=True, download_name=doc.file_name)
