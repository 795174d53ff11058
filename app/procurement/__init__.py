import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, has_request_context, render_template, request, session

from app.procurement.config import load_config
from app.procurement.db import ENGINE_KEY, init_db, teardown_db_session
from app.procurement.errors import json_error, register_error_handlers
from app.procurement.ratelimit import check_rate_limit, init_rate_limiter
from app.procurement.rbac import user_has_permission
from app.procurement.security import csrf_exempt, ensure_csrf_token, validate_csrf
from app.procurement.routes import bp as routes_bp
from app.procurement.auth import api_bp as auth_api_bp, bp as auth_bp, load_current_user
from app.procurement.admin import bp as admin_bp
from app.procurement.modules.organization.api import bp as organization_bp
from app.procurement.modules.options.api import bp as options_bp
from app.procurement.modules.suppliers.api import bp as suppliers_bp
from app.procurement.modules.approvals.api import bp as approvals_bp
from app.procurement.modules.requests.api import bp as requests_bp
from app.procurement.modules.rfq.api import bp as rfq_bp
from app.procurement.modules.rfq.portal import bp as rfq_portal_bp
from app.procurement.modules.orders.api import bp as orders_bp
from app.procurement.modules.deliveries.api import bp as deliveries_bp
from app.procurement.modules.invoices.api import bp as invoices_bp
from app.procurement.modules.contracts.api import bp as contracts_bp
from app.procurement.modules.evaluations.api import bp as evaluations_bp
from app.procurement.modules.notifications.api import bp as notifications_bp
from app.procurement.modules.reports.api import bp as reports_bp

API_BLUEPRINTS = (
    auth_api_bp,
    organization_bp,
    options_bp,
    suppliers_bp,
    approvals_bp,
    requests_bp,
    rfq_bp,
    rfq_portal_bp,
    orders_bp,
    deliveries_bp,
    invoices_bp,
    contracts_bp,
    evaluations_bp,
    notifications_bp,
    reports_bp,
)

_SKIP_PREFIXES = ("/static/", "/health", "/healthz")


def _check_production_guardrails(app: Flask) -> None:
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _log_config_problems(app: Flask) -> None:
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
    if not app.config.get("SMTP_SERVER"):
        app.logger.error("SMTP_SERVER is not set; outgoing email will be recorded as skipped.")


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _check_production_guardrails(app)

    @app.context_processor
    def _inject_csrf() -> dict:
        # Email bodies are also rendered from background jobs, outside any request.
        return {"csrf_token": ensure_csrf_token()} if has_request_context() else {}

    @app.context_processor
    def _inject_permissions() -> dict:
        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    init_db(app)
    init_rate_limiter(app)
    register_error_handlers(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get(ENGINE_KEY)
                if engine:
                    engine.dispose()

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()
    _log_config_problems(app)

    # Order matters: the request id and user exist before CSRF and rate limiting run.
    app.before_request(load_current_user)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_SKIP_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE") and not csrf_exempt(request):
            if not validate_csrf(request):
                if request.path.startswith("/api/"):
                    return json_error(400, "csrf_failed", "CSRF token missing or invalid.")
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400
        return None

    @app.before_request
    def _api_rate_limit():
        if request.path.startswith("/api/"):
            check_rate_limit("api")
        return None

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    for bp in API_BLUEPRINTS:
        app.register_blueprint(bp, url_prefix="/api")

    app.teardown_appcontext(teardown_db_session)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
