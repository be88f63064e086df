from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from app.eservices.errors import Forbidden, NotFound
from app.eservices.utils import utcnow

from .models import Notification

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.eservices.models import User


def list_notifications(s: "Session", user: "User", *, page: int = 1, limit: int = 10) -> tuple[list[Notification], int]:
    base = select(Notification).where(Notification.user_id == user.id)
    total = s.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    rows = (
        s.execute(
            base.order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        .scalars()
        .all()
    )
    return list(rows), total


def unread_count(s: "Session", user: "User") -> int:
    return s.execute(
        select(func.count(Notification.id))
        .where(Notification.user_id == user.id)
        .where(Notification.is_read.is_(False))
    ).scalar_one()


def mark_read(s: "Session", user: "User", notification_id: int) -> Notification:
    """Only the recipient may flip ``is_read``; there is no admin override."""
    n = s.get(Notification, notification_id)
    if n is None:
        raise NotFound("Notification not found")
    if n.user_id != user.id:
        logger.warning("Access denied: actor=%s action=notification.read target=%s", user.id, n.id)
        raise Forbidden("Only the recipient can mark a notification as read")
    if not n.is_read:
        n.is_read = True
        n.read_at = utcnow()
    return n
