import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session

from app.portal.config import load_config
from app.portal.db import init_db, teardown_db_session
from app.portal.errors import csrf as csrf_error
from app.portal.errors import register_error_handlers
from app.portal.rate_limit import apply_rate_limit_headers
from app.portal.routes import bp as routes_bp
from app.portal.auth import bp as auth_bp, load_current_user
from app.portal.modules.requests.admin import bp as requests_bp
from app.portal.modules.companies.admin import bp as companies_bp
from app.portal.modules.notifications.admin import bp as notifications_bp
from app.portal.modules.templates.admin import bp as templates_bp
from app.portal.modules.workflows.admin import bp as workflows_bp
from app.portal.modules.invitations.admin import bp as invitations_bp
from app.portal.modules.audit_logs.admin import bp as audit_logs_bp
from app.portal.modules.analytics.admin import bp as analytics_bp
from app.portal.modules.woocommerce.admin import bp as woocommerce_bp
from app.portal.modules.leads.admin import bp as leads_bp
from app.portal.modules.profile.admin import bp as profile_bp

MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False

    from app.portal.security import csrf_exempt, ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in MUTATING_METHODS and not csrf_exempt(request.path):
            if not validate_csrf(request):
                err = csrf_error("CSRF token missing or invalid")
                return jsonify(err.to_dict()), err.status
        return None

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
        _check_s3_storage(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(requests_bp, url_prefix="/api/requests")
    app.register_blueprint(companies_bp, url_prefix="/api/companies")
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")
    app.register_blueprint(templates_bp, url_prefix="/api/templates")
    app.register_blueprint(workflows_bp, url_prefix="/api/workflows")
    app.register_blueprint(invitations_bp, url_prefix="/api/invitations")
    app.register_blueprint(audit_logs_bp, url_prefix="/api/audit-logs")
    app.register_blueprint(leads_bp, url_prefix="/api/leads")
    app.register_blueprint(analytics_bp, url_prefix="/api")
    app.register_blueprint(woocommerce_bp, url_prefix="/api")
    app.register_blueprint(profile_bp, url_prefix="/api")

    # Runs before _csrf_guard so rejected requests still carry a request id.
    app.before_request_funcs.setdefault(None, []).insert(0, load_current_user)
    app.after_request(apply_rate_limit_headers)
    app.teardown_appcontext(teardown_db_session)

    @app.after_request
    def _request_id_header(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers.setdefault("X-Request-ID", rid)
        return response

    register_error_handlers(app)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app


def _check_s3_storage(app: Flask) -> None:
    """Log loudly at boot when attachments cannot be stored; the app still starts."""
    from app.portal.storage import S3_REQUIRED_SETTINGS, StorageError, storage_from_config

    missing = [name for name in S3_REQUIRED_SETTINGS if not app.config.get(name)]
    if missing:
        app.logger.error("STORAGE CONFIG ERROR: missing S3 settings: %s", ", ".join(missing))
        return
    storage = storage_from_config(app.config)
    try:
        storage.check()
    except StorageError as e:
        app.logger.error("STORAGE CONFIG ERROR: %s", e)
    else:
        app.logger.info("Storage check passed: bucket %r reachable", app.config["S3_BUCKET"])
