from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from flask import current_app

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.procurement.modules.notifications.service import dispatch_email, portal_url
from app.procurement.utils import is_valid_email, iso, money

from .models import Supplier, SupplierCategory, SupplierPortalToken

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User


VALID_STATUSES = ("Approved", "Conditional", "Pending", "Rejected")
PERFORMANCE_ORDER_WINDOW = 50

_TEXT_FIELDS = ("contact_name", "phone", "website", "tax_id", "tax_office", "address", "notes")


def _norm_email(value: str | None) -> str | None:
    return (value or "").strip().lower() or None


def validate_supplier_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate supplier creation/update payload. Returns list of errors."""
    errors = []
    name = (payload.get("name") or "").strip()
    if not name and (not partial or "name" in payload):
        errors.append("Name is required.")
    status = (payload.get("status") or "").strip()
    if status and status not in VALID_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
    email = _norm_email(payload.get("email"))
    if email and not is_valid_email(email):
        errors.append("Email is invalid.")
    custom = payload.get("custom_fields")
    if custom is not None and not isinstance(custom, dict):
        errors.append("Custom fields must be a JSON object.")
    return errors


def _ensure_unique_email(s: "Session", email: str | None, exclude_id: int | None = None) -> None:
    if not email:
        return
    q = s.query(Supplier).filter(Supplier.email == email)
    if exclude_id is not None:
        q = q.filter(Supplier.id != exclude_id)
    if q.count():
        raise ConflictError("duplicate_supplier")


def _resolve_categories(s: "Session", ids) -> list[SupplierCategory]:
    if not ids:
        return []
    try:
        wanted = {int(i) for i in ids}
    except (TypeError, ValueError) as e:
        raise ValidationError(details=["category_ids must be integers."]) from e
    cats = s.query(SupplierCategory).filter(SupplierCategory.id.in_(wanted)).all()
    if len(cats) != len(wanted):
        raise NotFoundError("not_found", "Unknown supplier category.")
    return cats


def create_supplier(s: "Session", payload: dict, user: "User | None", *, source: str = "internal") -> Supplier:
    """Create a new supplier. user is None for portal self-registration."""
    email = _norm_email(payload.get("email"))
    _ensure_unique_email(s, email)

    now = datetime.utcnow()
    supplier = Supplier(
        name=(payload.get("name") or "").strip(),
        status=(payload.get("status") or "Pending").strip(),
        is_active=True,
        email=email,
        custom_fields=payload.get("custom_fields") or None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
    )
    for field in _TEXT_FIELDS:
        setattr(supplier, field, (payload.get(field) or "").strip() or None)
    supplier.categories = _resolve_categories(s, payload.get("category_ids"))
    s.add(supplier)
    s.flush()

    record_event(
        s,
        actor=user,
        action="supplier.register" if source == "portal" else "supplier.create",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        metadata={"name": supplier.name, "status": supplier.status, "source": source},
    )
    return supplier


def update_supplier(s: "Session", supplier: Supplier, payload: dict, user: "User", reason: str | None = None) -> Supplier:
    """Update an existing supplier; only keys present in the payload change."""
    changes = {}

    if "name" in payload:
        new_name = (payload.get("name") or "").strip()
        if new_name and new_name != supplier.name:
            changes["name"] = {"old": supplier.name, "new": new_name}
            supplier.name = new_name

    if "status" in payload:
        new_status = (payload.get("status") or "").strip()
        if new_status and new_status != supplier.status:
            changes["status"] = {"old": supplier.status, "new": new_status}
            supplier.status = new_status

    if "email" in payload:
        new_email = _norm_email(payload.get("email"))
        if new_email != supplier.email:
            _ensure_unique_email(s, new_email, exclude_id=supplier.id)
            changes["email"] = {"old": supplier.email, "new": new_email}
            supplier.email = new_email

    for field in _TEXT_FIELDS:
        if field not in payload:
            continue
        new = (payload.get(field) or "").strip() or None
        old = getattr(supplier, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(supplier, field, new)

    if "custom_fields" in payload:
        supplier.custom_fields = payload.get("custom_fields") or None
        changes["custom_fields"] = True

    if "category_ids" in payload:
        supplier.categories = _resolve_categories(s, payload.get("category_ids"))
        changes["category_ids"] = sorted(c.id for c in supplier.categories)

    supplier.updated_at = datetime.utcnow()
    supplier.updated_by_user_id = user.id

    record_event(
        s,
        actor=user,
        action="supplier.edit",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        reason=reason,
        metadata={"name": supplier.name, "changes": changes},
    )
    return supplier


def set_supplier_status(s: "Session", supplier: Supplier, status: str, user: "User", reason: str | None = None) -> Supplier:
    """Approve or reject a supplier registration and tell the supplier."""
    if status not in ("Approved", "Rejected"):
        raise ValidationError(details=["status must be Approved or Rejected."])
    if status == "Rejected" and not (reason or "").strip():
        raise ValidationError(details=["A rejection reason is required."])
    old = supplier.status
    supplier.status = status
    supplier.rejection_reason = ((reason or "").strip() or None) if status == "Rejected" else None
    supplier.updated_at = datetime.utcnow()
    supplier.updated_by_user_id = user.id

    record_event(
        s,
        actor=user,
        action="supplier.approve" if status == "Approved" else "supplier.reject",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        reason=reason,
        metadata={"old_status": old, "new_status": status},
    )
    dispatch_email(
        s,
        supplier.email,
        f"Supplier registration {status.lower()}",
        context={
            "heading": f"Your supplier registration was {status.lower()}",
            "lines": [f"Supplier: {supplier.name}"] + ([f"Reason: {supplier.rejection_reason}"] if supplier.rejection_reason else []),
        },
        category="supplier_status",
    )
    return supplier


def toggle_supplier_active(s: "Session", supplier: Supplier, user: "User") -> Supplier:
    supplier.is_active = not supplier.is_active
    supplier.updated_at = datetime.utcnow()
    supplier.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="supplier.toggle_active",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        metadata={"is_active": supplier.is_active},
    )
    return supplier


def find_or_create_supplier(s: "Session", *, email: str | None, name: str | None, contact_name: str | None, user: "User | None") -> Supplier:
    """Reuse a supplier with the same email, otherwise onboard one as Pending."""
    email = _norm_email(email)
    if email:
        existing = s.query(Supplier).filter(Supplier.email == email).one_or_none()
        if existing:
            return existing
    return create_supplier(
        s,
        {"name": (name or contact_name or email or "Unnamed supplier"), "email": email, "contact_name": contact_name},
        user,
        source="auto",
    )


def suggest_suppliers(s: "Session", category_ids: list[int]) -> list[Supplier]:
    """Approved, active suppliers serving any of the given categories."""
    if not category_ids:
        raise ValidationError(details=["category_ids is required."])
    return (
        s.query(Supplier)
        .join(Supplier.categories)
        .filter(
            SupplierCategory.id.in_(category_ids),
            Supplier.status == "Approved",
            Supplier.is_active.is_(True),
        )
        .distinct()
        .order_by(Supplier.name.asc())
        .all()
    )


def supplier_performance(s: "Session", supplier: Supplier) -> dict:
    """Lead time, quality and on-time delivery over the supplier's recent orders."""
    from app.procurement.modules.orders.models import PurchaseOrder

    orders = (
        s.query(PurchaseOrder)
        .filter(PurchaseOrder.supplier_id == supplier.id)
        .order_by(PurchaseOrder.created_at.desc())
        .limit(PERFORMANCE_ORDER_WINDOW)
        .all()
    )
    lead_times: list[float] = []
    delivered_qty = Decimal("0")
    approved_qty = Decimal("0")
    on_time = 0
    on_time_base = 0
    spend = Decimal("0")

    for order in orders:
        spend += order.total_amount or 0
        approved = [d for d in order.deliveries if d.status == "Approved"]
        for d in order.deliveries:
            if d.status == "Pending":
                continue
            delivered_qty += sum((it.quantity or 0) for it in d.items)
            if d.status == "Approved":
                approved_qty += sum((it.approved_quantity or 0) for it in d.items)
        if not approved:
            continue
        first = min((d.approved_at or d.created_at) for d in approved)
        lead_times.append((first - order.created_at).total_seconds() / 86400)
        if order.estimated_delivery is not None:
            on_time_base += 1
            if first.date() <= order.estimated_delivery:
                on_time += 1

    return {
        "supplier_id": supplier.id,
        "total_orders": len(orders),
        "avg_lead_time_days": round(sum(lead_times) / len(lead_times), 1) if lead_times else None,
        "quality_rate": float(money(approved_qty / delivered_qty * 100)) if delivered_qty > 0 else None,
        "on_time_rate": round(on_time / on_time_base * 100, 1) if on_time_base else None,
        "total_spend": float(money(spend)),
    }


def category_to_dict(c: SupplierCategory) -> dict:
    return {"id": c.id, "name": c.name, "code": c.code, "parent_id": c.parent_id}


def supplier_to_dict(sp: Supplier) -> dict:
    return {
        "id": sp.id,
        "name": sp.name,
        "status": sp.status,
        "is_active": sp.is_active,
        "email": sp.email,
        "contact_name": sp.contact_name,
        "phone": sp.phone,
        "website": sp.website,
        "tax_id": sp.tax_id,
        "tax_office": sp.tax_office,
        "address": sp.address,
        "notes": sp.notes,
        "rejection_reason": sp.rejection_reason,
        "custom_fields": sp.custom_fields or {},
        "categories": [category_to_dict(c) for c in sp.categories],
        "created_at": sp.created_at.isoformat() if sp.created_at else None,
    }


# ---------- Supplier portal: orders ----------


def issue_portal_token(s: "Session", supplier: Supplier, user: "User", *, send_email: bool = False) -> SupplierPortalToken:
    if send_email and not is_valid_email(supplier.email):
        raise BadRequestError("bad_request", "The supplier has no valid email address.")
    ttl = int(current_app.config.get("SUPPLIER_PORTAL_TTL_DAYS", 30))
    row = SupplierPortalToken(
        supplier_id=supplier.id,
        token=f"SUP-{secrets.token_urlsafe(16)}",
        expires_at=datetime.utcnow() + timedelta(days=ttl),
        created_by_user_id=user.id,
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="supplier.portal_link",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        metadata={"token_id": row.id, "expires_at": row.expires_at, "emailed": send_email},
    )
    if send_email:
        dispatch_email(
            s,
            supplier.email,
            "Your purchase orders",
            template="generic",
            context={
                "heading": f"Purchase orders for {supplier.name}",
                "lines": ["Use the link below to follow your purchase orders and deliveries.", f"Valid until {row.expires_at:%Y-%m-%d}."],
                "action_url": portal_url(f"/portal/orders/{row.token}"),
                "action_label": "Open my orders",
            },
            category="supplier_portal",
        )
    return row


def resolve_portal_token(s: "Session", token: str) -> SupplierPortalToken:
    row = s.query(SupplierPortalToken).filter(SupplierPortalToken.token == token).one_or_none()
    if row is None:
        raise NotFoundError("not_found", "Portal link not found.")
    if row.expires_at < datetime.utcnow():
        raise ForbiddenError("token_expired")
    return row


def portal_orders(s: "Session", supplier: Supplier, status: str | None = None) -> dict:
    """Orders issued to the supplier, newest first, with the latest delivery of each."""
    from app.procurement.modules.orders.models import PurchaseOrder
    from app.procurement.modules.organization.models import Company

    q = s.query(PurchaseOrder).filter(PurchaseOrder.supplier_id == supplier.id)
    if status:
        q = q.filter(PurchaseOrder.status == status)
    orders = q.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc()).all()

    out = []
    for order in orders:
        company = s.get(Company, order.company_id) if order.company_id else None
        last = max(order.deliveries, key=lambda d: (d.created_at, d.id), default=None)
        out.append(
            {
                "code": order.code,
                "status": order.status,
                "company": company.name if company else None,
                "currency": order.currency,
                "total_amount": float(order.total_amount or 0),
                "estimated_delivery": order.estimated_delivery.isoformat() if order.estimated_delivery else None,
                "created_at": iso(order.created_at),
                "items": [
                    {"name": it.name, "unit": it.unit, "quantity": float(it.quantity), "unit_price": float(it.unit_price)}
                    for it in order.items
                ],
                "last_delivery": (
                    {"code": last.code, "status": last.status, "created_at": iso(last.created_at)} if last is not None else None
                ),
            }
        )
    return {"supplier": {"id": supplier.id, "name": supplier.name}, "orders": out, "total": len(out)}
