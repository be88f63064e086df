import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app.eservices.config import load_config
from app.eservices.db import init_db, teardown_db_session
from app.eservices.errors import EngineError

# Models first: the blueprints below import module services that expect the
# mapper registry to be complete.
from app.eservices import models  # noqa: F401
from app.eservices.routes import bp as routes_bp
from app.eservices.auth import bp as auth_bp, load_current_user
from app.eservices.admin import bp as admin_bp
from app.eservices.modules.catalog.routes import bp as catalog_bp
from app.eservices.modules.service_requests.citizen import bp as citizen_bp
from app.eservices.modules.service_requests.officer import bp as officer_bp
from app.eservices.modules.notifications.routes import bp as notifications_bp

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.json.sort_keys = False

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(catalog_bp)
    app.register_blueprint(citizen_bp, url_prefix="/citizen")
    app.register_blueprint(officer_bp, url_prefix="/officer")
    app.register_blueprint(notifications_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(EngineError)
    def _engine_error(e: EngineError):
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        if e.http_status >= 500:
            app.logger.error("%s: %s (request_id=%s)", e.kind, e.message, getattr(g, "request_id", None))
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        if e.code == 413:
            message = "File too large. Maximum size is 5MB."
        else:
            message = e.description or e.name
        error = (e.name or "error").lower().replace(" ", "_")
        return jsonify({"success": False, "error": error, "message": message}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s path=%s)", getattr(g, "request_id", None), request.path)
        return jsonify({"success": False, "error": "internal_error", "message": "Internal server error"}), 500

    logger.info("create_app() complete; app ready to serve")

    return app
