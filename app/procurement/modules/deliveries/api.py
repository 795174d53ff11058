from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.audit import record_event
from app.procurement.db import db_session
from app.procurement.errors import NotFoundError, ValidationError
from app.procurement.models import User
from app.procurement.modules.deliveries.models import DeliveryReceipt
from app.procurement.modules.deliveries.service import (
    approve_receipt,
    create_receipt,
    portal_order_view,
    receipt_to_dict,
    reject_receipt,
    resolve_delivery_token,
    submit_portal_delivery,
)
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.ratelimit import rate_limited
from app.procurement.rbac import get_scoped, require_api_permission, scope_query, user_has_permission
from app.procurement.utils import json_body, page_params, paginate

bp = Blueprint("deliveries_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_receipt(s, receipt_id: int) -> DeliveryReceipt:
    q = scope_query(s.query(DeliveryReceipt).join(PurchaseOrder), PurchaseOrder, _current_user())
    receipt = q.filter(DeliveryReceipt.id == receipt_id).one_or_none()
    if receipt is None:
        raise NotFoundError()
    return receipt


@bp.get("/deliveries")
@require_api_permission("deliveries.view")
def deliveries_list():
    s = db_session()
    q = scope_query(s.query(DeliveryReceipt).join(PurchaseOrder), PurchaseOrder, _current_user())
    order_id = request.args.get("order_id", type=int)
    if order_id:
        q = q.filter(DeliveryReceipt.order_id == order_id)
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(DeliveryReceipt.status == status_filter)
    page, size = page_params(request.args)
    return paginate(q.order_by(DeliveryReceipt.created_at.desc(), DeliveryReceipt.id.desc()), page, size, receipt_to_dict)


@bp.post("/deliveries")
@require_api_permission("deliveries.create")
def deliveries_create():
    """Record a goods receipt; approve=true also accepts it when permitted."""
    s = db_session()
    user = _current_user()
    payload = json_body()
    if not payload.get("order_id"):
        raise ValidationError(details=["order_id is required."])
    order = get_scoped(s, PurchaseOrder, int(payload["order_id"]), user)
    receipt, warnings = create_receipt(s, order, payload, user)
    if payload.get("approve") and user_has_permission(user, "deliveries.approve"):
        approve_receipt(s, receipt, user)
    s.commit()
    return {**receipt_to_dict(receipt), "order_status": order.status, "warnings": warnings}, 201


@bp.get("/deliveries/<int:receipt_id>")
@require_api_permission("deliveries.view")
def delivery_detail(receipt_id: int):
    s = db_session()
    return receipt_to_dict(_get_receipt(s, receipt_id))


@bp.post("/deliveries/<int:receipt_id>/approve")
@require_api_permission("deliveries.approve")
def delivery_approve(receipt_id: int):
    s = db_session()
    receipt = _get_receipt(s, receipt_id)
    approve_receipt(s, receipt, _current_user(), json_body().get("items"))
    s.commit()
    return {**receipt_to_dict(receipt), "order_status": receipt.order.status}


@bp.post("/deliveries/<int:receipt_id>/reject")
@require_api_permission("deliveries.approve")
def delivery_reject(receipt_id: int):
    s = db_session()
    receipt = _get_receipt(s, receipt_id)
    reject_receipt(s, receipt, _current_user(), json_body().get("reason"))
    s.commit()
    return receipt_to_dict(receipt)


# ---------- Supplier portal ----------
@bp.get("/portal/deliveries/<token>")
def portal_delivery_view(token: str):
    """Order lines and remaining quantities for a delivery link."""
    s = db_session()
    row = resolve_delivery_token(s, token)
    return portal_order_view(s.get(PurchaseOrder, row.order_id))


@bp.post("/portal/deliveries/<token>")
@rate_limited("sensitive")
def portal_delivery_submit(token: str):
    s = db_session()
    row = resolve_delivery_token(s, token)
    receipt, warnings = submit_portal_delivery(s, row, json_body())
    record_event(s, actor=None, action="portal.delivery", entity_type="DeliveryReceipt", entity_id=str(receipt.id), metadata={"order_id": row.order_id})
    s.commit()
    return {"id": receipt.id, "code": receipt.code, "status": receipt.status, "warnings": warnings}, 201
