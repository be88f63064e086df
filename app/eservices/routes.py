from flask import Blueprint, current_app
from sqlalchemy import text

from app.eservices.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON and pings the database."""
    try:
        db_session().execute(text("SELECT 1"))
    except Exception:
        current_app.logger.exception("Health check: database unreachable")
        return {"ok": False, "database": "unavailable"}, 503
    return {"ok": True, "database": "ok"}


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB access, minimal overhead.
    """
    return "ok", 200
