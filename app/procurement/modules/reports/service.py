from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import Flask
from openpyxl import Workbook
from openpyxl.styles import Font
from sqlalchemy import func

from app.procurement.modules.contracts.models import Contract
from app.procurement.modules.deliveries.models import DeliveryReceipt
from app.procurement.modules.invoices.models import Invoice
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.modules.requests.models import PurchaseRequest
from app.procurement.modules.rfq.models import Rfq
from app.procurement.rbac import scope_query
from app.procurement.utils import as_float, money

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.procurement.models import User

ORDER_EXPORT_HEADERS = ["Code", "Date", "Supplier", "Status", "Currency", "Total"]


# ---------- Dashboard ----------


def dashboard_stats(s: "Session", user: "User", *, today: date | None = None, expiry_window_days: int = 30) -> dict:
    """Headline numbers, restricted to what the user may see."""
    today = today or date.today()

    req_q = scope_query(s.query(PurchaseRequest.status, func.count(PurchaseRequest.id)), PurchaseRequest, user)
    requests_by_status = {status: count for status, count in req_q.group_by(PurchaseRequest.status).all()}

    open_rfqs = scope_query(s.query(Rfq), Rfq, user).filter(Rfq.status == "Open").count()

    orders_q = scope_query(s.query(PurchaseOrder), PurchaseOrder, user)
    open_orders = orders_q.filter(PurchaseOrder.status.in_(("Open", "Partially Delivered"))).count()

    pending_deliveries = (
        scope_query(s.query(DeliveryReceipt).join(PurchaseOrder), PurchaseOrder, user)
        .filter(DeliveryReceipt.status == "Pending")
        .count()
    )

    invoices_due = (
        scope_query(s.query(Invoice), Invoice, user)
        .filter(Invoice.status == "Pending", Invoice.due_date.is_not(None), Invoice.due_date <= today + timedelta(days=7))
        .count()
    )

    contracts_expiring = (
        scope_query(s.query(Contract), Contract, user)
        .filter(
            Contract.deleted_at.is_(None),
            Contract.end_date >= today,
            Contract.end_date <= today + timedelta(days=expiry_window_days),
        )
        .count()
    )

    year_start = datetime.combine(date(today.year, 1, 1), time.min)
    spend = (
        scope_query(s.query(func.coalesce(func.sum(PurchaseOrder.total_amount), 0)), PurchaseOrder, user)
        .filter(PurchaseOrder.created_at >= year_start, PurchaseOrder.status != "Cancelled")
        .scalar()
    )

    return {
        "requests_by_status": requests_by_status,
        "requests_total": sum(requests_by_status.values()),
        "open_rfqs": open_rfqs,
        "open_orders": open_orders,
        "pending_deliveries": pending_deliveries,
        "invoices_due_soon": invoices_due,
        "contracts_expiring": contracts_expiring,
        "ytd_spend": as_float(money(spend or Decimal("0"))),
    }


# ---------- Order export ----------


def order_rows(q: "Query") -> list[list[Any]]:
    rows = []
    for o in q.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc()).all():
        rows.append(
            [
                o.code,
                o.created_at.date().isoformat() if o.created_at else "",
                o.supplier.name if o.supplier else "",
                o.status,
                o.currency,
                money(o.total_amount),
            ]
        )
    return rows


def orders_csv(rows: list[list[Any]]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(ORDER_EXPORT_HEADERS)
    for r in rows:
        w.writerow([*r[:5], f"{r[5]:.2f}"])
    return out.getvalue().encode("utf-8")


def orders_xlsx(rows: list[list[Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Orders"
    ws.append(ORDER_EXPORT_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for r in rows:
        ws.append([*r[:5], float(r[5])])
    for row in ws.iter_rows(min_row=2, max_row=ws.max_row, min_col=6, max_col=6):
        for cell in row:
            cell.number_format = "#,##0.00"
    for col, width in zip("ABCDEF", (22, 12, 36, 20, 10, 16)):
        ws.column_dimensions[col].width = width
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------- OpenAPI ----------

_CONVERTER_RE = re.compile(r"<(?:(\w+):)?(\w+)>")


def _openapi_path(rule: str) -> tuple[str, list[dict]]:
    params = []
    for conv, name in _CONVERTER_RE.findall(rule):
        schema = {"type": "integer"} if conv == "int" else {"type": "string"}
        params.append({"name": name, "in": "path", "required": True, "schema": schema})
    return _CONVERTER_RE.sub(r"{\2}", rule), params


def openapi_spec(app: Flask) -> dict:
    """OpenAPI 3.0 document for every /api route; summaries are the first docstring line."""
    paths: dict[str, dict] = {}
    for rule in sorted(app.url_map.iter_rules(), key=lambda r: r.rule):
        if not rule.rule.startswith("/api/"):
            continue
        view = app.view_functions[rule.endpoint]
        path, params = _openapi_path(rule.rule)
        doc = (view.__doc__ or "").strip().splitlines()
        summary = doc[0].strip() if doc else rule.endpoint.split(".")[-1].replace("_", " ")
        for method in sorted((rule.methods or set()) - {"HEAD", "OPTIONS"}):
            op: dict[str, Any] = {
                "summary": summary,
                "operationId": f"{rule.endpoint}.{method.lower()}",
                "tags": [rule.endpoint.split(".")[0]],
                "responses": {"200": {"description": "OK"}},
            }
            if params:
                op["parameters"] = params
            permission = getattr(view, "required_permission", None)
            if permission:
                op["x-permission"] = permission
            paths.setdefault(path, {})[method.lower()] = op
    return {
        "openapi": "3.0.3",
        "info": {"title": "Procurement API", "version": app.config.get("APP_VERSION", "dev")},
        "paths": paths,
    }
