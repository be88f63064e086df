"""
Service request read side, guard pipelines and document attachments.

State changes go through ``side_effects``; this module only answers "who may see or
touch this request" and handles the supporting-document blobs.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from werkzeug.utils import secure_filename

from app.eservices.audit import record_event
from app.eservices.errors import NotFound, StoreUnavailable, ValidationFailed
from app.eservices.rbac import (
    Role,
    authorize,
    check_department_access,
    check_resource_ownership,
    enforce,
    parse_role,
)
from app.eservices.storage import Storage, StorageError

from app.eservices.modules.catalog.models import Service
from .lifecycle import OPEN_STATUSES, VALID_STATUSES
from .models import RequestDocument, ServiceRequest

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.eservices.models import User


ALLOWED_EXTENSIONS = {
    "pdf": "pdf",
    "jpg": "image",
    "jpeg": "image",
    "png": "image",
    "doc": "document",
    "docx": "document",
}
MAX_DOCUMENT_BYTES = 5 * 1024 * 1024


def guard_owner_access(actor: "User | None", req: ServiceRequest, *, action: str) -> None:
    """authenticate -> citizen rank -> ownership of the loaded request."""
    enforce(
        authorize(actor, [Role.CITIZEN]),
        check_resource_ownership(actor, "user_id", resource=req),
        actor=actor,
        action=action,
    )


def guard_review_access(actor: "User | None", req: ServiceRequest, *, action: str) -> None:
    """authenticate -> officer rank -> department of the request's service."""
    department_id = req.service.department_id if req.service else None
    enforce(
        authorize(actor, [Role.OFFICER]),
        check_department_access(actor, department_id),
        actor=actor,
        action=action,
    )


def get_request(s: "Session", request_id: int) -> ServiceRequest:
    req = s.execute(
        select(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .where(ServiceRequest.is_deleted.is_(False))
    ).scalar_one_or_none()
    if req is None:
        raise NotFound("Request not found")
    return req


def list_own_requests(
    s: "Session",
    user: "User",
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[ServiceRequest], int]:
    q = (
        select(ServiceRequest)
        .where(ServiceRequest.user_id == user.id)
        .where(ServiceRequest.is_deleted.is_(False))
    )
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
    return list(rows), total


def request_stats(s: "Session", user: "User") -> dict[str, int]:
    rows = s.execute(
        select(ServiceRequest.status, func.count(ServiceRequest.id))
        .where(ServiceRequest.user_id == user.id)
        .where(ServiceRequest.is_deleted.is_(False))
        .group_by(ServiceRequest.status)
    ).all()
    counts = {status: n for status, n in rows}
    return {
        "total": sum(counts.values()),
        "pending": sum(counts.get(st, 0) for st in OPEN_STATUSES),
        "approved": counts.get("approved", 0),
        "rejected": counts.get("rejected", 0),
        "completed": counts.get("completed", 0),
    }


def _scoped_requests(actor: "User", *, department_id: int | None, action: str):
    """
    Base query over live requests visible to a reviewer, or None when the actor
    can see nothing.

    Admins see every department, optionally filtered by ``department_id``. Officers
    and department heads only ever see their own department; asking for another
    one is forbidden, and staff without a department see nothing.
    """
    enforce(
        authorize(actor, [Role.OFFICER]),
        check_department_access(actor, department_id),
        actor=actor,
        action=action,
    )
    q = (
        select(ServiceRequest)
        .join(Service, Service.id == ServiceRequest.service_id)
        .where(ServiceRequest.is_deleted.is_(False))
    )
    if parse_role(actor.role) is Role.ADMIN:
        if department_id is not None:
            q = q.where(Service.department_id == department_id)
        return q
    if actor.department_id is None:
        return None
    return q.where(Service.department_id == actor.department_id)


def list_pending_requests(
    s: "Session",
    actor: "User",
    *,
    department_id: int | None = None,
    limit: int = 50,
) -> list[ServiceRequest]:
    """Open requests (submitted/under_review), oldest first."""
    q = _scoped_requests(actor, department_id=department_id, action="request.list_pending")
    if q is None:
        return []
    q = q.where(ServiceRequest.status.in_(OPEN_STATUSES))
    rows = s.execute(q.order_by(ServiceRequest.submitted_at.asc(), ServiceRequest.id.asc()).limit(limit)).scalars().all()
    return list(rows)


def list_department_requests(
    s: "Session",
    actor: "User",
    *,
    status: str | None = None,
    department_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ServiceRequest], int]:
    """Every request in the reviewer's scope, newest first, optionally by status."""
    if status and status not in VALID_STATUSES:
        raise ValidationFailed(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    q = _scoped_requests(actor, department_id=department_id, action="request.list")
    if q is None:
        return [], 0
    if status:
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
    return list(rows), total


def department_request_stats(s: "Session", actor: "User", *, department_id: int | None = None) -> dict[str, int]:
    q = _scoped_requests(actor, department_id=department_id, action="request.stats")
    if q is None:
        return {"total": 0, "pending": 0}
    sub = q.subquery()
    rows = s.execute(select(sub.c.status, func.count()).group_by(sub.c.status)).all()
    counts = {status: n for status, n in rows}
    return {
        "total": sum(counts.values()),
        "pending": sum(counts.get(st, 0) for st in OPEN_STATUSES),
    }


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def classify_upload(filename: str) -> str | None:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return ALLOWED_EXTENSIONS.get(ext)


def build_document_storage_key(req: ServiceRequest, filename: str, upload_date: date | None = None) -> str:
    if upload_date is None:
        upload_date = date.today()
    safe_filename = secure_filename(filename) or "document.bin"
    return f"requests/{req.reference_number}/{upload_date.isoformat()}/{safe_filename}"


def attach_document(
    s: "Session",
    storage: Storage,
    req: ServiceRequest,
    *,
    file_bytes: bytes,
    filename: str,
    content_type: str,
    user: "User",
) -> RequestDocument:
    """Store the blob, then record it against the request. Caller commits."""
    safe_name = secure_filename(filename or "") or "document.bin"
    file_type = classify_upload(safe_name)
    if file_type is None:
        raise ValidationFailed("Invalid file type. Allowed: " + ", ".join(sorted(ALLOWED_EXTENSIONS)))
    if not file_bytes:
        raise ValidationFailed("No file uploaded.")
    if len(file_bytes) > MAX_DOCUMENT_BYTES:
        raise ValidationFailed("File size exceeds limit.")

    sha256, size_bytes = file_digest_and_bytes(file_bytes)
    storage_key = build_document_storage_key(req, safe_name)
    try:
        storage.put_bytes(storage_key, file_bytes, content_type=content_type)
    except StorageError as e:
        logger.exception("Document upload failed for request %s", req.id)
        raise StoreUnavailable("Document storage is unavailable; nothing was saved.") from e

    doc = RequestDocument(
        request_id=req.id,
        file_name=safe_name,
        file_type=file_type,
        storage_key=storage_key,
        file_size=size_bytes,
        mime_type=content_type or "application/octet-stream",
        sha256=sha256,
    )
    s.add(doc)
    s.flush()

    record_event(
        s,
        actor=user,
        action="DOCUMENT_UPLOADED",
        target_type="request",
        target_id=req.id,
        metadata={"document_id": doc.id, "file_name": safe_name, "sha256": sha256},
    )
    return doc
