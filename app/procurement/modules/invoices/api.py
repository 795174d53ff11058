from __future__ import annotations

from datetime import date, datetime, time, timedelta

from flask import Blueprint, g, request

from app.procurement.db import db_session, get_or_404
from app.procurement.errors import ValidationError
from app.procurement.models import User
from app.procurement.modules.invoices.models import Invoice, WithholdingJobType
from app.procurement.modules.invoices.service import (
    create_invoice,
    create_job_type,
    invoice_to_dict,
    job_type_to_dict,
    preview_totals,
    update_invoice,
    update_job_type,
    validate_invoice_payload,
    validate_job_type_payload,
)
from app.procurement.rbac import get_scoped, require_api_permission, scope_query
from app.procurement.utils import json_body, page_params, paginate, parse_date

bp = Blueprint("invoices_api", __name__)

DUE_SOON_DAYS = 7

_SORT_COLUMNS = {
    "date": Invoice.created_at,
    "amount": Invoice.amount,
    "due_date": Invoice.due_date,
}


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Invoices ----------
@bp.get("/invoices")
@require_api_permission("invoices.view")
def invoices_list():
    """List invoices; due_only=1 keeps pending ones due within a week (overdue included)."""
    s = db_session()
    q = scope_query(s.query(Invoice), Invoice, _current_user())

    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Invoice.number.ilike(like) | Invoice.order_code.ilike(like))
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(Invoice.status == status_filter)
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    if date_from:
        q = q.filter(Invoice.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(Invoice.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    if (request.args.get("due_only") or "").lower() in ("1", "true"):
        q = q.filter(Invoice.status == "Pending", Invoice.due_date <= date.today() + timedelta(days=DUE_SOON_DAYS))

    sort_col = _SORT_COLUMNS.get(request.args.get("sort_by") or "date", Invoice.created_at)
    sort_dir = (request.args.get("sort_dir") or "desc").lower()
    q = q.order_by(sort_col.asc() if sort_dir == "asc" else sort_col.desc(), Invoice.id.desc())

    page, size = page_params(request.args)
    return paginate(q, page, size, invoice_to_dict)


@bp.post("/invoices")
@require_api_permission("invoices.create")
def invoices_create():
    s = db_session()
    payload = json_body()
    errors = validate_invoice_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    inv = create_invoice(s, payload, _current_user())
    s.commit()
    return invoice_to_dict(inv, detail=True), 201


@bp.post("/invoices/calculate")
@require_api_permission("invoices.view")
def invoices_calculate():
    """Preview subtotal, VAT, withheld VAT and net payable without saving."""
    s = db_session()
    return preview_totals(s, json_body())


@bp.get("/invoices/<int:invoice_id>")
@require_api_permission("invoices.view")
def invoice_detail(invoice_id: int):
    s = db_session()
    return invoice_to_dict(get_scoped(s, Invoice, invoice_id, _current_user()), detail=True)


@bp.patch("/invoices/<int:invoice_id>")
@require_api_permission("invoices.edit")
def invoice_update(invoice_id: int):
    s = db_session()
    inv = get_scoped(s, Invoice, invoice_id, _current_user())
    update_invoice(s, inv, json_body(), _current_user())
    s.commit()
    return invoice_to_dict(inv, detail=True)


# ---------- Withholding job types ----------
@bp.get("/withholding-job-types")
@require_api_permission()
def job_types_list():
    s = db_session()
    q = s.query(WithholdingJobType)
    if (request.args.get("active") or "").lower() in ("1", "true"):
        q = q.filter(WithholdingJobType.is_active.is_(True))
    rows = q.order_by(WithholdingJobType.sort.asc(), WithholdingJobType.code.asc()).all()
    return {"items": [job_type_to_dict(jt) for jt in rows]}


@bp.post("/withholding-job-types")
@require_api_permission("settings.edit")
def job_types_create():
    s = db_session()
    payload = json_body()
    errors = validate_job_type_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    jt = create_job_type(s, payload, _current_user())
    s.commit()
    return job_type_to_dict(jt), 201


@bp.patch("/withholding-job-types/<int:job_type_id>")
@require_api_permission("settings.edit")
def job_types_update(job_type_id: int):
    s = db_session()
    jt = get_or_404(s, WithholdingJobType, job_type_id)
    payload = json_body()
    errors = validate_job_type_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    update_job_type(s, jt, payload, _current_user())
    s.commit()
    return job_type_to_dict(jt)
