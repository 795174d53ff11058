from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.procurement.audit import record_event
from app.procurement.db import next_sequential_code
from app.procurement.errors import BadRequestError, ConflictError, NotFoundError
from app.procurement.models import User
from app.procurement.modules.deliveries.models import DeliveryToken
from app.procurement.modules.invoices.models import Invoice
from app.procurement.modules.notifications.service import dispatch_email, notify, portal_url
from app.procurement.modules.organization.models import Company, DeliveryAddress
from app.procurement.modules.organization.service import consume_budget, format_address, resolve_delivery_address
from app.procurement.modules.requests.models import PurchaseRequest
from app.procurement.modules.requests.service import ORDERED, mark_requests_status
from app.procurement.modules.suppliers.models import Supplier
from app.procurement.rbac import user_has_permission
from app.procurement.utils import format_number_tr, money, parse_date, parse_decimal_flexible

from .models import OrderItem, PurchaseOrder

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


OPEN = "Open"
PARTIALLY_DELIVERED = "Partially Delivered"
DELIVERED = "Delivered"
CLOSED = "Closed"
CANCELLED = "Cancelled"

STATUSES = (OPEN, PARTIALLY_DELIVERED, DELIVERED, CLOSED, CANCELLED)
STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    OPEN: (PARTIALLY_DELIVERED, DELIVERED, CLOSED, CANCELLED),
    PARTIALLY_DELIVERED: (OPEN, DELIVERED, CLOSED, CANCELLED),
    DELIVERED: (PARTIALLY_DELIVERED, CLOSED),
    CLOSED: (),
    CANCELLED: (),
}

ZERO = Decimal("0")


def _clean(value: Any) -> str | None:
    return (str(value).strip() if value is not None else "") or None


def _non_negative(value: Any) -> Decimal:
    d = parse_decimal_flexible(value)
    return d if d is not None and d > 0 else ZERO


def parse_order_items(raw: Any) -> list[dict]:
    """Lines without a name are dropped; numbers below zero are clamped to zero."""
    if not isinstance(raw, list):
        return []
    out = []
    for it in raw:
        if not isinstance(it, dict):
            continue
        name = _clean(it.get("name"))
        if not name:
            continue
        out.append(
            {
                "name": name,
                "sku": _clean(it.get("sku")),
                "unit": _clean(it.get("unit")),
                "quantity": _non_negative(it.get("quantity")),
                "unit_price": money(_non_negative(it.get("unit_price"))),
                "extra_costs": money(_non_negative(it.get("extra_costs"))),
                "rfq_item_id": it.get("rfq_item_id"),
            }
        )
    return out


def order_total(items: list[OrderItem]) -> Decimal:
    return money(sum((Decimal(it.quantity) * Decimal(it.unit_price) + Decimal(it.extra_costs or 0) for it in items), ZERO))


def resolve_company(s: "Session", company_id: Any) -> Company:
    """Explicit company, or the only active one when exactly one exists."""
    if company_id:
        try:
            company = s.get(Company, int(company_id))
        except (TypeError, ValueError) as e:
            raise BadRequestError("bad_request", "company_id must be an integer.") from e
        if company is None:
            raise NotFoundError("not_found", "Company not found.")
        return company
    active = s.query(Company).filter(Company.is_active.is_(True)).limit(2).all()
    if len(active) == 1:
        return active[0]
    raise BadRequestError("company_required")


# ---------- Create ----------


def build_order(
    s: "Session",
    *,
    supplier: Supplier,
    company: Company | None,
    items: list[dict],
    user: User,
    request: PurchaseRequest | None = None,
    rfq_id: int | None = None,
    offer_id: int | None = None,
    department_id: int | None = None,
    currency: str | None = None,
    method: str | None = None,
    regulation: str | None = None,
    estimated_delivery=None,
    notes: str | None = None,
    responsible_user_id: int | None = None,
    code: str | None = None,
    extra_requests: list[PurchaseRequest] | None = None,
    delivery_address: DeliveryAddress | None = None,
) -> PurchaseOrder:
    """Persist one order with its lines and run the side effects shared by every creation path.

    Without an explicit delivery address the default one, if any, is used.
    """
    if not items:
        raise BadRequestError("no_valid_items")
    if code:
        if s.query(PurchaseOrder).filter(PurchaseOrder.code == code).count():
            raise ConflictError("duplicate_code")
    else:
        code = next_sequential_code(s, PurchaseOrder.code, f"ORD-{datetime.utcnow().year}")

    if department_id is None and request is not None:
        department_id = request.department_id
    if delivery_address is None:
        delivery_address = resolve_delivery_address(s, None)

    now = datetime.utcnow()
    order = PurchaseOrder(
        code=code,
        status=OPEN,
        method=method,
        regulation=regulation,
        currency=currency or current_app.config.get("DEFAULT_CURRENCY", "TRY"),
        notes=notes,
        supplier_id=supplier.id,
        company_id=company.id if company else None,
        request_id=request.id if request else None,
        rfq_id=rfq_id,
        offer_id=offer_id,
        responsible_user_id=responsible_user_id or user.id,
        department_id=department_id,
        tenant_id=user.tenant_id,
        delivery_address_id=delivery_address.id if delivery_address else None,
        estimated_delivery=estimated_delivery,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    order.items = [
        OrderItem(
            name=it["name"],
            sku=it.get("sku"),
            unit=it.get("unit"),
            quantity=it["quantity"],
            unit_price=it["unit_price"],
            extra_costs=it.get("extra_costs") or ZERO,
            rfq_item_id=it.get("rfq_item_id"),
        )
        for it in items
    ]
    order.total_amount = order_total(order.items)
    s.add(order)
    s.flush()

    linked = [r for r in [request, *(extra_requests or [])] if r is not None]
    mark_requests_status(s, linked, ORDERED, user, source=f"order:{order.code}")
    consume_budget(s, department_id, now.year, order.total_amount)

    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="PurchaseOrder",
        entity_id=str(order.id),
        metadata={
            "code": order.code,
            "supplier_id": supplier.id,
            "total_amount": str(order.total_amount),
            "request_id": order.request_id,
            "rfq_id": rfq_id,
        },
    )
    _send_order_emails(s, order, supplier, request, delivery_address)
    return order


def _order_email_context(
    order: PurchaseOrder, supplier: Supplier, request: PurchaseRequest | None, address: DeliveryAddress | None = None
) -> dict:
    fields = [
        ("Order", order.code),
        ("Supplier", supplier.name),
        ("Total", f"{format_number_tr(order.total_amount)} {order.currency}"),
    ]
    if order.estimated_delivery:
        fields.append(("Estimated delivery", order.estimated_delivery.isoformat()))
    if address is not None:
        fields.append(("Delivery address", format_address(address)))
    if request is not None:
        fields.append(("Request", request.code))
        fields.append(("Request budget", f"{format_number_tr(request.budget)} {request.currency}"))
        fields.append(("Budget difference", f"{format_number_tr(money((request.budget or ZERO) - order.total_amount))} {order.currency}"))
    return {
        "heading": f"Purchase order {order.code}",
        "intro": "A purchase order has been issued.",
        "fields": fields,
        "items": [
            {
                "name": it.name,
                "quantity": format_number_tr(it.quantity, 3),
                "unit": it.unit or "",
                "unit_price": format_number_tr(it.unit_price),
            }
            for it in order.items
        ],
    }


def _send_order_emails(
    s: "Session",
    order: PurchaseOrder,
    supplier: Supplier,
    request: PurchaseRequest | None,
    address: DeliveryAddress | None = None,
) -> None:
    ctx = _order_email_context(order, supplier, request, address)
    responsible = s.get(User, order.responsible_user_id) if order.responsible_user_id else None
    if responsible is not None:
        dispatch_email(s, responsible.email, f"Order {order.code} created", template="detail", context=ctx, category="order")
        notify(s, responsible.id, f"Order {order.code} created", supplier.name, link=f"/orders/{order.id}", kind="order")
    dispatch_email(s, supplier.email, f"Purchase order {order.code}", template="detail", context=ctx, category="order")


def validate_order_payload(payload: dict) -> list[str]:
    errors = []
    if not payload.get("supplier_id"):
        errors.append("Supplier is required.")
    if not parse_order_items(payload.get("items")):
        errors.append("At least one item with a name is required.")
    if payload.get("estimated_delivery") and parse_date(payload.get("estimated_delivery")) is None:
        errors.append("estimated_delivery must be a date (YYYY-MM-DD).")
    return errors


def create_order(s: "Session", payload: dict, user: User) -> PurchaseOrder:
    try:
        supplier = s.get(Supplier, int(payload["supplier_id"]))
    except (TypeError, ValueError):
        supplier = None
    if supplier is None:
        raise NotFoundError("not_found", "Supplier not found.")
    company = resolve_company(s, payload.get("company_id"))

    request = None
    if payload.get("request_id"):
        request = s.get(PurchaseRequest, int(payload["request_id"]))
        if request is None:
            raise NotFoundError("not_found", "Purchase request not found.")
    elif not user_has_permission(user, "orders.create_unlinked"):
        raise BadRequestError("request_required")

    return build_order(
        s,
        supplier=supplier,
        company=company,
        items=parse_order_items(payload.get("items")),
        user=user,
        request=request,
        department_id=payload.get("department_id") or (request.department_id if request else user.department_id),
        currency=_clean(payload.get("currency")),
        method=_clean(payload.get("method")) or "Direct",
        regulation=_clean(payload.get("regulation")),
        estimated_delivery=parse_date(payload.get("estimated_delivery")),
        notes=_clean(payload.get("notes")),
        responsible_user_id=payload.get("responsible_user_id"),
        code=_clean(payload.get("code")),
        delivery_address=resolve_delivery_address(s, payload.get("delivery_address_id")),
    )


# ---------- Update ----------


def update_order(s: "Session", order: PurchaseOrder, payload: dict, user: User) -> PurchaseOrder:
    changes: dict[str, Any] = {}
    if "status" in payload:
        status = _clean(payload.get("status"))
        if status != order.status:
            if status not in STATUS_TRANSITIONS.get(order.status, ()):
                raise ConflictError("status_conflict", f"Cannot move order from '{order.status}' to '{status}'.")
            changes["status"] = {"old": order.status, "new": status}
            order.status = status
    if "responsible_user_id" in payload:
        uid = int(payload["responsible_user_id"]) if payload.get("responsible_user_id") else None
        if uid and s.get(User, uid) is None:
            raise NotFoundError("not_found", "Responsible user not found.")
        if uid != order.responsible_user_id:
            changes["responsible_user_id"] = {"old": order.responsible_user_id, "new": uid}
            order.responsible_user_id = uid
    if "estimated_delivery" in payload:
        new = parse_date(payload.get("estimated_delivery"))
        if new != order.estimated_delivery:
            changes["estimated_delivery"] = {"old": order.estimated_delivery, "new": new}
            order.estimated_delivery = new
    if "notes" in payload:
        order.notes = _clean(payload.get("notes"))
        changes["notes"] = True

    order.updated_at = datetime.utcnow()
    if changes:
        record_event(s, actor=user, action="order.edit", entity_type="PurchaseOrder", entity_id=str(order.id), metadata={"changes": changes})
    return order


def delivered_quantities(order: PurchaseOrder) -> dict[int, Decimal]:
    """Approved delivered quantity per order item id."""
    out: dict[int, Decimal] = {it.id: ZERO for it in order.items}
    for receipt in order.deliveries:
        if receipt.status != "Approved":
            continue
        for di in receipt.items:
            qty = di.approved_quantity if di.approved_quantity is not None else di.quantity
            out[di.order_item_id] = out.get(di.order_item_id, ZERO) + Decimal(qty)
    return out


def recompute_order_status(order: PurchaseOrder) -> str:
    """Derive delivery status from approved receipts; Closed/Cancelled stay put."""
    if order.status in (CLOSED, CANCELLED):
        return order.status
    delivered = delivered_quantities(order)
    if order.items and all(delivered.get(it.id, ZERO) >= it.quantity for it in order.items):
        order.status = DELIVERED
    elif any(v > 0 for v in delivered.values()):
        order.status = PARTIALLY_DELIVERED
    else:
        order.status = OPEN
    order.updated_at = datetime.utcnow()
    return order.status


# ---------- Three-way match ----------


def _match_key(sku: str | None, name: str | None) -> tuple[str | None, str]:
    return ((sku or "").strip() or None, (name or "").strip().lower())


def three_way_match(s: "Session", order: PurchaseOrder) -> dict:
    """Reconcile ordered, delivered and invoiced quantities line by line."""
    delivered = delivered_quantities(order)
    invoices = (
        s.query(Invoice)
        .filter((Invoice.order_id == order.id) | (Invoice.order_code == order.code))
        .filter(Invoice.status != "Cancelled")
        .all()
    )
    inv_lines = [(_match_key(ii.sku, ii.name), ii) for inv in invoices for ii in inv.items]

    lines = []
    ordered_total = ZERO
    for it in order.items:
        sku, name = _match_key(it.sku, it.name)
        matched = [
            ii
            for (isku, iname), ii in inv_lines
            if (sku and isku and sku == isku) or (not (sku and isku) and name == iname)
        ]
        invoiced = sum((Decimal(ii.quantity) for ii in matched), ZERO)
        got = delivered.get(it.id, ZERO)
        ordered = Decimal(it.quantity)
        ordered_total += money(ordered * Decimal(it.unit_price) + Decimal(it.extra_costs or 0))
        lines.append(
            {
                "order_item_id": it.id,
                "name": it.name,
                "sku": it.sku,
                "ordered": float(ordered),
                "delivered": float(got),
                "invoiced": float(invoiced),
                "unit_price": float(it.unit_price),
                "price_variance": any(money(ii.unit_price) != money(it.unit_price) for ii in matched),
                "qty_match": ordered == got == invoiced,
                "over_delivered": got > ordered,
                "under_delivered": got < ordered,
                "over_invoiced": invoiced > got,
            }
        )

    invoiced_total = money(sum((Decimal(inv.amount or 0) for inv in invoices), ZERO))
    ordered_total = money(ordered_total)
    return {
        "order_id": order.id,
        "order_code": order.code,
        "lines": lines,
        "ordered_total": float(ordered_total),
        "invoiced_total": float(invoiced_total),
        "balance": float(money(ordered_total - invoiced_total)),
        "is_fully_matched": bool(lines) and all(ln["qty_match"] and not ln["price_variance"] for ln in lines),
    }


# ---------- Delivery token ----------


def issue_delivery_token(s: "Session", order: PurchaseOrder, user: User, *, send_email: bool = False) -> DeliveryToken:
    ttl = int(current_app.config.get("DELIVERY_TOKEN_TTL_DAYS", 7))
    token = DeliveryToken(
        order_id=order.id,
        token=f"DLV-{secrets.token_hex(4).upper()}",
        expires_at=datetime.utcnow() + timedelta(days=ttl),
        created_by_user_id=user.id,
    )
    s.add(token)
    s.flush()
    record_event(
        s,
        actor=user,
        action="order.delivery_token",
        entity_type="PurchaseOrder",
        entity_id=str(order.id),
        metadata={"token_id": token.id, "expires_at": token.expires_at, "emailed": send_email},
    )
    if send_email:
        supplier = s.get(Supplier, order.supplier_id)
        link = portal_url(f"/portal/deliveries/{token.token}")
        dispatch_email(
            s,
            supplier.email if supplier else None,
            f"Delivery notice link for order {order.code}",
            template="generic",
            context={
                "heading": f"Order {order.code}",
                "lines": ["Use the link below to announce your shipment.", f"Valid until {token.expires_at:%Y-%m-%d}."],
                "action_url": link,
                "action_label": "Announce delivery",
            },
            category="delivery",
        )
    return token


# ---------- Serialization ----------


def order_item_to_dict(it: OrderItem) -> dict:
    return {
        "id": it.id,
        "name": it.name,
        "sku": it.sku,
        "quantity": float(it.quantity),
        "unit": it.unit,
        "unit_price": float(it.unit_price),
        "extra_costs": float(it.extra_costs or 0),
        "line_total": float(money(Decimal(it.quantity) * Decimal(it.unit_price) + Decimal(it.extra_costs or 0))),
    }


def order_to_dict(order: PurchaseOrder, *, detail: bool = False) -> dict:
    out = {
        "id": order.id,
        "code": order.code,
        "status": order.status,
        "method": order.method,
        "regulation": order.regulation,
        "currency": order.currency,
        "supplier_id": order.supplier_id,
        "supplier_name": order.supplier.name if order.supplier else None,
        "company_id": order.company_id,
        "request_id": order.request_id,
        "rfq_id": order.rfq_id,
        "responsible_user_id": order.responsible_user_id,
        "department_id": order.department_id,
        "delivery_address_id": order.delivery_address_id,
        "total_amount": float(order.total_amount or 0),
        "estimated_delivery": order.estimated_delivery.isoformat() if order.estimated_delivery else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }
    if detail:
        from app.procurement.modules.deliveries.service import receipt_to_dict

        out["notes"] = order.notes
        out["items"] = [order_item_to_dict(it) for it in order.items]
        out["deliveries"] = [receipt_to_dict(r) for r in order.deliveries]
    return out
