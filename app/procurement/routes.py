import logging

from flask import Blueprint, current_app, render_template
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.procurement.db import db_session

logger = logging.getLogger(__name__)

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Readiness: the app answers and the database accepts a trivial query."""
    body = {"ok": True, "version": current_app.config.get("APP_VERSION", "dev"), "database": "ok"}
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("health check: database unreachable: %s", e)
        body.update(ok=False, database="unreachable")
        return body, 503
    return body


@bp.get("/healthz")
def healthz():
    """Liveness check for the container platform; never touches the database."""
    return "ok", 200
