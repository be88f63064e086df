import json
from typing import Any

from flask import has_request_context, request
from sqlalchemy.orm import Session

from app.eservices.models import AuditLog, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    target_type: str | None = None,
    target_id: object = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Append-only audit event helper. Adds to the session; the caller's
    transaction decides whether it is kept.
    """
    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = request.headers.get("User-Agent")
    ev = AuditLog(
        actor_id=actor.id if actor else None,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    s.add(ev)
    return ev
