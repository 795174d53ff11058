from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, render_template, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.procurement.db import db_session
from app.procurement.mailer import smtp_configured
from app.procurement.models import AuditEvent
from app.procurement.rbac import require_permission, user_permission_keys
from app.procurement.utils import parse_date

bp = Blueprint("admin", __name__)


def _storage_status(config) -> dict:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    status = {"backend": backend, "configured": True, "error": None}
    if backend == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not config.get(k)]
        status["configured"] = not missing
        if missing:
            status["error"] = f"Missing: {', '.join(missing)}"
    return status


def _headline_counts(s) -> dict:
    from app.procurement.modules.contracts.models import Contract
    from app.procurement.modules.deliveries.models import DeliveryReceipt
    from app.procurement.modules.orders.models import PurchaseOrder
    from app.procurement.modules.requests.models import PurchaseRequest
    from app.procurement.modules.rfq.models import Rfq
    from app.procurement.modules.suppliers.models import Supplier

    window = current_app.config.get("CONTRACT_EXPIRY_WINDOW_DAYS", 30)
    today = date.today()
    return {
        "requests": s.query(PurchaseRequest).count(),
        "open_rfqs": s.query(Rfq).filter(Rfq.status == "Open").count(),
        "open_orders": s.query(PurchaseOrder).filter(PurchaseOrder.status.in_(("Open", "Partially Delivered"))).count(),
        "pending_deliveries": s.query(DeliveryReceipt).filter(DeliveryReceipt.status == "Pending").count(),
        "pending_suppliers": s.query(Supplier).filter(Supplier.status == "Pending").count(),
        "expiring_contracts": s.query(Contract)
        .filter(Contract.deleted_at.is_(None), Contract.end_date >= today, Contract.end_date <= today + timedelta(days=window))
        .count(),
    }


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    status = {
        "env": cfg.get("ENV", "development"),
        "db_connected": False,
        "db_error": None,
        "storage": _storage_status(cfg),
        "smtp_configured": smtp_configured(cfg),
        "email_deferred": bool(cfg.get("EMAIL_DEFERRED")),
    }

    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except SQLAlchemyError as e:
        s.rollback()
        status["db_error"] = str(e)

    counts = _headline_counts(s) if status["db_connected"] else {}
    return render_template("admin/index.html", system_status=status, counts=counts)


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = getattr(g, "current_user", None)
    role_keys = sorted(user.role_keys) if user else []
    return render_template("admin/me.html", user=user, role_keys=role_keys, perm_keys=user_permission_keys(user))


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Recent audit events (last 200) with simple filters:
    - action (contains)
    - actor_email (contains)
    - entity_type (exact)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit.html",
        events=events,
        action=action,
        actor_email=actor_email,
        entity_type=entity_type,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
