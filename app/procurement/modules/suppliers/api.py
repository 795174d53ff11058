from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.db import db_session, get_or_404
from app.procurement.errors import ConflictError, ValidationError
from app.procurement.models import User
from app.procurement.modules.notifications.service import portal_url
from app.procurement.modules.suppliers.models import Supplier, SupplierCategory
from app.procurement.modules.suppliers.service import (
    category_to_dict,
    create_supplier,
    issue_portal_token,
    portal_orders,
    resolve_portal_token,
    set_supplier_status,
    suggest_suppliers,
    supplier_performance,
    supplier_to_dict,
    toggle_supplier_active,
    update_supplier,
    validate_supplier_payload,
)
from app.procurement.ratelimit import rate_limited
from app.procurement.rbac import require_api_permission
from app.procurement.utils import json_body, page_params, paginate

bp = Blueprint("suppliers_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- List ----------
@bp.get("/suppliers")
@require_api_permission("suppliers.view")
def suppliers_list():
    """List suppliers with search, status, category and active filters."""
    s = db_session()

    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    category_id = request.args.get("category_id", type=int)
    active = (request.args.get("active") or "").strip().lower()

    q = s.query(Supplier)
    if search:
        like = f"%{search}%"
        q = q.filter(Supplier.name.ilike(like) | Supplier.email.ilike(like) | Supplier.tax_id.ilike(like))
    if status_filter:
        q = q.filter(Supplier.status == status_filter)
    if category_id:
        q = q.filter(Supplier.categories.any(SupplierCategory.id == category_id))
    if active in ("1", "true"):
        q = q.filter(Supplier.is_active.is_(True))
    elif active in ("0", "false"):
        q = q.filter(Supplier.is_active.is_(False))

    page, size = page_params(request.args)
    return paginate(q.order_by(Supplier.name.asc()), page, size, supplier_to_dict)


@bp.get("/suppliers/pending")
@require_api_permission("suppliers.approve")
def suppliers_pending():
    """Registrations waiting for approval."""
    s = db_session()
    rows = s.query(Supplier).filter(Supplier.status == "Pending").order_by(Supplier.created_at.asc()).all()
    return {"items": [supplier_to_dict(sp) for sp in rows], "total": len(rows)}


@bp.get("/suppliers/suggest")
@require_api_permission("rfq.create")
def suppliers_suggest():
    """Approved, active suppliers for the given category ids (comma separated)."""
    s = db_session()
    raw = (request.args.get("category_ids") or "").strip()
    try:
        ids = [int(x) for x in raw.split(",") if x.strip()]
    except ValueError as e:
        raise ValidationError(details=["category_ids must be integers."]) from e
    return {"items": [supplier_to_dict(sp) for sp in suggest_suppliers(s, ids)]}


# ---------- Create ----------
@bp.post("/suppliers")
@require_api_permission("suppliers.create")
def suppliers_create():
    s = db_session()
    payload = json_body()
    errors = validate_supplier_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    supplier = create_supplier(s, payload, _current_user())
    s.commit()
    return supplier_to_dict(supplier), 201


# ---------- Detail / edit ----------
@bp.get("/suppliers/<int:supplier_id>")
@require_api_permission("suppliers.view")
def supplier_detail(supplier_id: int):
    s = db_session()
    return supplier_to_dict(get_or_404(s, Supplier, supplier_id))


@bp.patch("/suppliers/<int:supplier_id>")
@require_api_permission("suppliers.edit")
def supplier_update(supplier_id: int):
    s = db_session()
    supplier = get_or_404(s, Supplier, supplier_id)
    payload = json_body()
    errors = validate_supplier_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    update_supplier(s, supplier, payload, _current_user(), reason=(payload.get("reason") or "").strip() or None)
    s.commit()
    return supplier_to_dict(supplier)


@bp.post("/suppliers/<int:supplier_id>/approve")
@require_api_permission("suppliers.approve")
def supplier_approve(supplier_id: int):
    s = db_session()
    supplier = get_or_404(s, Supplier, supplier_id)
    set_supplier_status(s, supplier, "Approved", _current_user())
    s.commit()
    return supplier_to_dict(supplier)


@bp.post("/suppliers/<int:supplier_id>/reject")
@require_api_permission("suppliers.approve")
def supplier_reject(supplier_id: int):
    s = db_session()
    supplier = get_or_404(s, Supplier, supplier_id)
    payload = json_body()
    set_supplier_status(s, supplier, "Rejected", _current_user(), reason=payload.get("reason"))
    s.commit()
    return supplier_to_dict(supplier)


@bp.post("/suppliers/<int:supplier_id>/toggle-active")
@require_api_permission("suppliers.edit")
def supplier_toggle_active(supplier_id: int):
    s = db_session()
    supplier = get_or_404(s, Supplier, supplier_id)
    toggle_supplier_active(s, supplier, _current_user())
    s.commit()
    return supplier_to_dict(supplier)


@bp.get("/suppliers/<int:supplier_id>/performance")
@require_api_permission("suppliers.view")
def supplier_performance_get(supplier_id: int):
    """Average lead time, quality rate and on-time rate over recent orders."""
    s = db_session()
    return supplier_performance(s, get_or_404(s, Supplier, supplier_id))


# ---------- Categories ----------
@bp.get("/supplier-categories")
@require_api_permission("suppliers.view")
def categories_list():
    s = db_session()
    rows = s.query(SupplierCategory).order_by(SupplierCategory.name.asc()).all()
    return {"items": [category_to_dict(c) for c in rows]}


@bp.post("/supplier-categories")
@require_api_permission("suppliers.edit")
def categories_create():
    s = db_session()
    payload = json_body()
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError(details=["Name is required."])
    if s.query(SupplierCategory).filter(SupplierCategory.name == name).count():
        raise ConflictError("duplicate", f"Category '{name}' already exists.")
    parent_id = payload.get("parent_id")
    if parent_id is not None:
        get_or_404(s, SupplierCategory, int(parent_id))
    cat = SupplierCategory(name=name, code=(payload.get("code") or "").strip() or None, parent_id=parent_id)
    s.add(cat)
    s.commit()
    return category_to_dict(cat), 201


# ---------- Portal self-registration ----------
@bp.post("/portal/register")
@rate_limited("sensitive")
def portal_register():
    """Public supplier self-registration; lands as Pending for review."""
    s = db_session()
    payload = json_body()
    errors = validate_supplier_payload(payload)
    if not (payload.get("email") or "").strip():
        errors.append("Email is required.")
    if errors:
        raise ValidationError(details=errors)
    payload = {**payload, "status": "Pending"}
    payload.pop("custom_fields", None)
    supplier = create_supplier(s, payload, None, source="portal")
    s.commit()
    return {"id": supplier.id, "status": supplier.status}, 201


# ---------- Portal order tracking ----------
@bp.post("/suppliers/<int:supplier_id>/portal-link")
@require_api_permission("suppliers.edit")
def supplier_portal_link(supplier_id: int):
    """Issue a read-only link listing the supplier's orders; optionally email it."""
    s = db_session()
    supplier = get_or_404(s, Supplier, supplier_id)
    row = issue_portal_token(s, supplier, _current_user(), send_email=bool(json_body().get("email")))
    s.commit()
    return {"token": row.token, "url": portal_url(f"/portal/orders/{row.token}"), "expires_at": row.expires_at.isoformat()}, 201


@bp.get("/portal/orders/<token>")
def portal_orders_view(token: str):
    s = db_session()
    row = resolve_portal_token(s, token)
    supplier = s.get(Supplier, row.supplier_id)
    status = (request.args.get("status") or "").strip() or None
    return portal_orders(s, supplier, status)
