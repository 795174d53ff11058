from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.procurement.modules.notifications.service import notify
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.modules.orders.service import delivered_quantities, recompute_order_status
from app.procurement.utils import parse_date, parse_decimal_flexible

from .models import DeliveryItem, DeliveryReceipt, DeliveryToken

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User


PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"
STATUSES = (PENDING, APPROVED, REJECTED)

ZERO = Decimal("0")


def _default_code() -> str:
    return f"IRS-{datetime.utcnow().strftime('%Y%m%d%H%M%S%f')}"


def _valid_lines(order: PurchaseOrder, raw: Any) -> list[tuple[int, Decimal]]:
    """(order_item_id, quantity) pairs; unknown items and non-positive quantities are skipped."""
    known = {it.id for it in order.items}
    out = []
    for it in raw if isinstance(raw, list) else []:
        if not isinstance(it, dict):
            continue
        try:
            item_id = int(it.get("order_item_id"))
        except (TypeError, ValueError):
            continue
        qty = parse_decimal_flexible(it.get("quantity"))
        if item_id not in known or qty is None or qty <= 0:
            continue
        out.append((item_id, qty))
    return out


def remaining_quantities(order: PurchaseOrder) -> dict[int, Decimal]:
    delivered = delivered_quantities(order)
    return {it.id: max(ZERO, Decimal(it.quantity) - delivered.get(it.id, ZERO)) for it in order.items}


def create_receipt(
    s: "Session",
    order: PurchaseOrder,
    payload: dict,
    user: "User | None",
    *,
    source: str = "internal",
) -> tuple[DeliveryReceipt, list[str]]:
    """Record a Pending goods receipt. Returns the receipt and over-delivery warnings."""
    lines = _valid_lines(order, payload.get("items"))
    if not lines:
        raise BadRequestError("no_valid_items")

    code = (payload.get("code") or "").strip() or _default_code()
    if s.query(DeliveryReceipt).filter(DeliveryReceipt.code == code).count():
        raise BadRequestError("duplicate_code")

    remaining = remaining_quantities(order)
    names = {it.id: it.name for it in order.items}
    warnings = [
        f"{names[item_id]}: {qty} exceeds remaining {remaining.get(item_id, ZERO)}."
        for item_id, qty in lines
        if qty > remaining.get(item_id, ZERO)
    ]

    receipt = DeliveryReceipt(
        order_id=order.id,
        code=code,
        status=PENDING,
        source=source,
        delivery_date=parse_date(payload.get("delivery_date")) or date.today(),
        notes=(payload.get("notes") or "").strip() or None,
        received_by_user_id=user.id if user else None,
    )
    receipt.items = [DeliveryItem(order_item_id=item_id, quantity=qty) for item_id, qty in lines]
    order.deliveries.append(receipt)
    s.flush()
    record_event(
        s,
        actor=user,
        action="delivery.create",
        entity_type="DeliveryReceipt",
        entity_id=str(receipt.id),
        metadata={"order_id": order.id, "code": code, "source": source, "lines": len(lines), "warnings": len(warnings)},
    )
    return receipt, warnings


def approve_receipt(s: "Session", receipt: DeliveryReceipt, user: "User", quantities: Any = None) -> DeliveryReceipt:
    """
    Accept a Pending receipt and recompute the order status.

    Each entry in quantities names a line by delivery_item_id or by
    order_item_id together with the accepted amount. A delivery item id wins
    over an order item id for the same line; lines not named accept what was
    delivered. Values are clamped to 0..delivered.
    """
    if receipt.status != PENDING:
        raise ConflictError("status_conflict")
    by_delivery_item: dict[int, Decimal] = {}
    by_order_item: dict[int, Decimal] = {}
    for it in quantities if isinstance(quantities, list) else []:
        if not isinstance(it, dict):
            continue
        qty = parse_decimal_flexible(it.get("approved_quantity"))
        if qty is None:
            continue
        try:
            if it.get("delivery_item_id") is not None:
                by_delivery_item[int(it["delivery_item_id"])] = qty
            elif it.get("order_item_id") is not None:
                by_order_item[int(it["order_item_id"])] = qty
        except (TypeError, ValueError):
            raise BadRequestError("bad_request", "Item ids must be integers.") from None

    for di in receipt.items:
        accepted = by_delivery_item.get(di.id)
        if accepted is None:
            accepted = by_order_item.get(di.order_item_id)
        if accepted is None:
            accepted = di.quantity
        di.approved_quantity = min(Decimal(di.quantity), max(ZERO, Decimal(accepted)))

    receipt.status = APPROVED
    receipt.approved_by_user_id = user.id
    receipt.approved_at = datetime.utcnow()
    order = receipt.order
    old_status = order.status
    s.flush()
    new_status = recompute_order_status(order)
    record_event(
        s,
        actor=user,
        action="delivery.approve",
        entity_type="DeliveryReceipt",
        entity_id=str(receipt.id),
        metadata={"order_id": order.id, "order_status": {"old": old_status, "new": new_status}},
    )
    if order.responsible_user_id and order.responsible_user_id != user.id:
        notify(s, order.responsible_user_id, f"Delivery {receipt.code} approved", f"Order {order.code} is now {new_status}.", link=f"/orders/{order.id}", kind="delivery")
    return receipt


def reject_receipt(s: "Session", receipt: DeliveryReceipt, user: "User", reason: str | None) -> DeliveryReceipt:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(details=["Reason is required."])
    if receipt.status != PENDING:
        raise ConflictError("status_conflict")
    receipt.status = REJECTED
    receipt.reject_reason = reason[:512]
    record_event(s, actor=user, action="delivery.reject", entity_type="DeliveryReceipt", entity_id=str(receipt.id), reason=reason, metadata={"order_id": receipt.order_id})
    return receipt


# ---------- Portal tokens ----------


def resolve_delivery_token(s: "Session", token: str) -> DeliveryToken:
    row = s.query(DeliveryToken).filter(DeliveryToken.token == token).one_or_none()
    if row is None:
        raise NotFoundError("not_found", "Delivery link not found.")
    if row.used_at is not None or row.expires_at < datetime.utcnow():
        raise ForbiddenError("token_expired")
    return row


def portal_order_view(order: PurchaseOrder) -> dict:
    remaining = remaining_quantities(order)
    return {
        "order_code": order.code,
        "supplier": order.supplier.name if order.supplier else None,
        "estimated_delivery": order.estimated_delivery.isoformat() if order.estimated_delivery else None,
        "items": [
            {
                "order_item_id": it.id,
                "name": it.name,
                "unit": it.unit,
                "ordered": float(it.quantity),
                "remaining": float(remaining.get(it.id, ZERO)),
            }
            for it in order.items
        ],
    }


def submit_portal_delivery(s: "Session", token_row: DeliveryToken, payload: dict) -> tuple[DeliveryReceipt, list[str]]:
    order = s.get(PurchaseOrder, token_row.order_id)
    receipt, warnings = create_receipt(s, order, payload, None, source="portal")
    token_row.used_at = datetime.utcnow()
    if order.responsible_user_id:
        notify(s, order.responsible_user_id, f"Delivery announced for {order.code}", f"Receipt {receipt.code} is waiting for approval.", link=f"/orders/{order.id}", kind="delivery")
    return receipt, warnings


def receipt_to_dict(r: DeliveryReceipt) -> dict:
    return {
        "id": r.id,
        "order_id": r.order_id,
        "code": r.code,
        "status": r.status,
        "source": r.source,
        "delivery_date": r.delivery_date.isoformat() if r.delivery_date else None,
        "notes": r.notes,
        "reject_reason": r.reject_reason,
        "approved_at": r.approved_at.isoformat() if r.approved_at else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "items": [
            {
                "id": di.id,
                "order_item_id": di.order_item_id,
                "quantity": float(di.quantity),
                "approved_quantity": float(di.approved_quantity) if di.approved_quantity is not None else None,
            }
            for di in r.items
        ],
    }
