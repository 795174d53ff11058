from __future__ import annotations

import io
from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, g, request, send_file

from app.procurement.audit import audit_to_dict, record_event
from app.procurement.db import db_session
from app.procurement.models import AuditEvent, User
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.modules.reports.service import dashboard_stats, openapi_spec, order_rows, orders_csv, orders_xlsx
from app.procurement.rbac import require_api_permission, scope_query
from app.procurement.utils import page_params, paginate, parse_date

bp = Blueprint("reports_api", __name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/dashboard/stats")
@require_api_permission("reports.view")
def dashboard():
    """Headline counts and year-to-date spend for the user's data scope."""
    s = db_session()
    return dashboard_stats(s, _current_user(), expiry_window_days=current_app.config["CONTRACT_EXPIRY_WINDOW_DAYS"])


# ---------- Exports ----------
def _export_orders_query(s):
    q = scope_query(s.query(PurchaseOrder), PurchaseOrder, _current_user())
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(PurchaseOrder.status == status_filter)
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    if date_from:
        q = q.filter(PurchaseOrder.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(PurchaseOrder.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q


def _export(fmt: str):
    s = db_session()
    rows = order_rows(_export_orders_query(s))
    record_event(
        s,
        actor=_current_user(),
        action="report.orders_export",
        entity_type="PurchaseOrder",
        entity_id="export",
        metadata={"format": fmt, "row_count": len(rows), "filters": request.args.to_dict()},
    )
    s.commit()
    if fmt == "xlsx":
        data, mimetype = orders_xlsx(rows), XLSX_MIMETYPE
    else:
        data, mimetype = orders_csv(rows), "text/csv"
    filename = f"orders_{date.today().strftime('%Y%m%d')}.{fmt}"
    return send_file(io.BytesIO(data), mimetype=mimetype, as_attachment=True, download_name=filename, max_age=0)


@bp.get("/reports/orders.csv")
@require_api_permission("reports.view")
def orders_export_csv():
    """Order export as CSV."""
    return _export("csv")


@bp.get("/reports/orders.xlsx")
@require_api_permission("reports.view")
def orders_export_xlsx():
    """Order export as an Excel workbook."""
    return _export("xlsx")


# ---------- Audit ----------
@bp.get("/audit")
@require_api_permission("audit.view")
def audit_events():
    s = db_session()
    q = s.query(AuditEvent)
    for arg, column in (("entity_type", AuditEvent.entity_type), ("entity_id", AuditEvent.entity_id)):
        value = (request.args.get(arg) or "").strip()
        if value:
            q = q.filter(column == value)
    action = (request.args.get("action") or "").strip()
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    actor = (request.args.get("actor") or "").strip().lower()
    if actor:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor}%"))
    page, size = page_params(request.args)
    return paginate(q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()), page, size, audit_to_dict)


# ---------- Docs ----------
@bp.get("/docs")
def api_docs():
    """OpenAPI document for the JSON API."""
    return openapi_spec(current_app)
