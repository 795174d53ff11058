from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.db import db_session, get_or_404
from app.procurement.errors import ValidationError
from app.procurement.models import User
from app.procurement.modules.notifications.service import portal_url
from app.procurement.modules.organization.models import Budget, Company, DeliveryAddress, Department, TenantInvite
from app.procurement.modules.organization.service import (
    address_to_dict,
    budget_to_dict,
    company_to_dict,
    create_company,
    create_department,
    create_invite,
    delete_address,
    department_to_dict,
    invite_to_dict,
    save_address,
    toggle_company_active,
    update_company,
    upsert_budget,
    validate_address_payload,
    validate_budget_payload,
    validate_company_payload,
    validate_department_payload,
    validate_invite_payload,
)
from app.procurement.rbac import require_api_permission, scope_query
from app.procurement.utils import json_body

bp = Blueprint("organization_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Departments ----------
@bp.get("/departments")
@require_api_permission("org.view")
def departments_list():
    s = db_session()
    q = scope_query(s.query(Department), Department, _current_user())
    return {"items": [department_to_dict(d) for d in q.order_by(Department.name.asc()).all()]}


@bp.post("/departments")
@require_api_permission("org.manage")
def departments_create():
    s = db_session()
    payload = json_body()
    errors = validate_department_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    dept = create_department(s, payload, _current_user())
    s.commit()
    return department_to_dict(dept), 201


# ---------- Companies ----------
@bp.get("/companies")
@require_api_permission("org.view")
def companies_list():
    s = db_session()
    q = scope_query(s.query(Company), Company, _current_user())
    if (request.args.get("active") or "").lower() in ("1", "true"):
        q = q.filter(Company.is_active.is_(True))
    return {"items": [company_to_dict(c) for c in q.order_by(Company.name.asc()).all()]}


@bp.post("/companies")
@require_api_permission("org.manage")
def companies_create():
    s = db_session()
    payload = json_body()
    errors = validate_company_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    company = create_company(s, payload, _current_user())
    s.commit()
    return company_to_dict(company), 201


@bp.patch("/companies/<int:company_id>")
@require_api_permission("org.manage")
def companies_update(company_id: int):
    s = db_session()
    company = get_or_404(s, Company, company_id)
    payload = json_body()
    errors = validate_company_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    update_company(s, company, payload, _current_user())
    s.commit()
    return company_to_dict(company)


@bp.post("/companies/<int:company_id>/toggle-active")
@require_api_permission("org.manage")
def companies_toggle_active(company_id: int):
    s = db_session()
    company = get_or_404(s, Company, company_id)
    toggle_company_active(s, company, _current_user())
    s.commit()
    return company_to_dict(company)


# ---------- Budgets ----------
@bp.get("/budgets")
@require_api_permission("budgets.view")
def budgets_list():
    """List department budgets with remaining amount and utilization."""
    s = db_session()
    q = s.query(Budget)
    year = request.args.get("year", type=int)
    department_id = request.args.get("department_id", type=int)
    if year:
        q = q.filter(Budget.year == year)
    if department_id:
        q = q.filter(Budget.department_id == department_id)
    rows = q.order_by(Budget.year.desc(), Budget.department_id.asc()).all()
    return {"items": [budget_to_dict(b) for b in rows]}


@bp.post("/budgets")
@require_api_permission("budgets.manage")
def budgets_upsert():
    """Create or update the budget for a department/year."""
    s = db_session()
    payload = json_body()
    errors = validate_budget_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    budget = upsert_budget(s, payload, _current_user())
    s.commit()
    return budget_to_dict(budget)


# ---------- Tenant invitations ----------
@bp.get("/tenant/invites")
@require_api_permission("users.manage")
def invites_list():
    s = db_session()
    q = scope_query(s.query(TenantInvite), TenantInvite, _current_user())
    if (request.args.get("pending") or "").lower() in ("1", "true"):
        q = q.filter(TenantInvite.accepted_at.is_(None))
    return {"items": [invite_to_dict(i) for i in q.order_by(TenantInvite.id.desc()).all()]}


@bp.post("/tenant/invites")
@require_api_permission("users.manage")
def invites_create():
    """Invite someone into the current tenant; the link is emailed and returned once."""
    s = db_session()
    payload = json_body()
    errors = validate_invite_payload(s, payload)
    if errors:
        raise ValidationError(details=errors)
    invite, token = create_invite(s, payload, _current_user())
    s.commit()
    out = invite_to_dict(invite)
    out.update({"token": token, "invite_url": portal_url(f"/auth/invite/{token}")})
    return out, 201


# ---------- Delivery addresses ----------
@bp.get("/delivery-addresses")
@require_api_permission("org.view")
def addresses_list():
    s = db_session()
    q = scope_query(s.query(DeliveryAddress), DeliveryAddress, _current_user())
    if (request.args.get("active") or "").lower() in ("1", "true"):
        q = q.filter(DeliveryAddress.active.is_(True))
    rows = q.order_by(DeliveryAddress.is_default.desc(), DeliveryAddress.name.asc()).all()
    return {"items": [address_to_dict(a) for a in rows]}


@bp.post("/delivery-addresses")
@require_api_permission("settings.edit")
def addresses_create():
    s = db_session()
    payload = json_body()
    errors = validate_address_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    address = save_address(s, payload, _current_user())
    s.commit()
    return address_to_dict(address), 201


@bp.patch("/delivery-addresses/<int:address_id>")
@require_api_permission("settings.edit")
def addresses_update(address_id: int):
    s = db_session()
    address = get_or_404(s, DeliveryAddress, address_id)
    payload = json_body()
    errors = validate_address_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    save_address(s, payload, _current_user(), address)
    s.commit()
    return address_to_dict(address)


@bp.delete("/delivery-addresses/<int:address_id>")
@require_api_permission("settings.edit")
def addresses_delete(address_id: int):
    s = db_session()
    address = get_or_404(s, DeliveryAddress, address_id)
    delete_address(s, address, _current_user())
    s.commit()
    return {"ok": True}
