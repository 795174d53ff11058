from __future__ import annotations

from datetime import datetime, time, timedelta

from flask import Blueprint, g, request

from app.procurement.db import db_session
from app.procurement.errors import ValidationError
from app.procurement.models import User
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.modules.orders.service import (
    create_order,
    issue_delivery_token,
    order_to_dict,
    three_way_match,
    update_order,
    validate_order_payload,
)
from app.procurement.rbac import get_scoped, require_api_permission, scope_query
from app.procurement.utils import json_body, page_params, paginate, parse_date

bp = Blueprint("orders_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


_SORT_COLUMNS = {
    "date": PurchaseOrder.created_at,
    "total": PurchaseOrder.total_amount,
    "code": PurchaseOrder.code,
}


@bp.get("/orders")
@require_api_permission("orders.view")
def orders_list():
    s = db_session()
    q = scope_query(s.query(PurchaseOrder), PurchaseOrder, _current_user())

    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(PurchaseOrder.code.ilike(f"%{search}%"))
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(PurchaseOrder.status == status_filter)
    supplier_id = request.args.get("supplier_id", type=int)
    if supplier_id:
        q = q.filter(PurchaseOrder.supplier_id == supplier_id)
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    if date_from:
        q = q.filter(PurchaseOrder.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(PurchaseOrder.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    sort_col = _SORT_COLUMNS.get(request.args.get("sort_by") or "date", PurchaseOrder.created_at)
    sort_dir = (request.args.get("sort_dir") or "desc").lower()
    q = q.order_by(sort_col.asc() if sort_dir == "asc" else sort_col.desc(), PurchaseOrder.id.desc())

    page, size = page_params(request.args)
    return paginate(q, page, size, order_to_dict)


@bp.post("/orders")
@require_api_permission("orders.create")
def orders_create():
    """Create a purchase order directly (not through RFQ finalization)."""
    s = db_session()
    payload = json_body()
    errors = validate_order_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    order = create_order(s, payload, _current_user())
    s.commit()
    return order_to_dict(order, detail=True), 201


@bp.get("/orders/<int:order_id>")
@require_api_permission("orders.view")
def order_detail(order_id: int):
    s = db_session()
    return order_to_dict(get_scoped(s, PurchaseOrder, order_id, _current_user()), detail=True)


@bp.patch("/orders/<int:order_id>")
@require_api_permission("orders.edit")
def order_update(order_id: int):
    s = db_session()
    order = get_scoped(s, PurchaseOrder, order_id, _current_user())
    update_order(s, order, json_body(), _current_user())
    s.commit()
    return order_to_dict(order, detail=True)


@bp.get("/orders/<int:order_id>/match")
@require_api_permission("orders.view")
def order_match(order_id: int):
    """Three-way match of ordered, delivered and invoiced quantities."""
    s = db_session()
    return three_way_match(s, get_scoped(s, PurchaseOrder, order_id, _current_user()))


@bp.post("/orders/<int:order_id>/delivery-token")
@require_api_permission("orders.edit")
def order_delivery_token(order_id: int):
    """Issue a portal link the supplier can use to announce a delivery."""
    s = db_session()
    user = _current_user()
    order = get_scoped(s, PurchaseOrder, order_id, user)
    token = issue_delivery_token(s, order, user, send_email=bool(json_body().get("send_email")))
    s.commit()
    return {"token": token.token, "expires_at": token.expires_at.isoformat(), "order_id": order.id}, 201
