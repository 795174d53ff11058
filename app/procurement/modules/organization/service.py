from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app
from werkzeug.security import generate_password_hash

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, NotFoundError
from app.procurement.modules.notifications.service import dispatch_email, portal_url
from app.procurement.security import hash_token, new_secret_token, password_problem
from app.procurement.utils import is_valid_email, iso, money, parse_decimal_flexible

from .models import Budget, Company, DeliveryAddress, Department, TenantInvite

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User


def validate_department_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    email = (payload.get("email") or "").strip()
    if email and not is_valid_email(email):
        errors.append("Email is invalid.")
    return errors


def create_department(s: "Session", payload: dict, user: "User") -> Department:
    name = (payload.get("name") or "").strip()
    if s.query(Department).filter(Department.name == name).count():
        raise ConflictError("duplicate", f"Department '{name}' already exists.")
    dept = Department(
        name=name,
        email=(payload.get("email") or "").strip() or None,
        tenant_id=user.tenant_id,
    )
    s.add(dept)
    s.flush()
    record_event(s, actor=user, action="department.create", entity_type="Department", entity_id=str(dept.id), metadata={"name": name})
    return dept


def department_to_dict(d: Department) -> dict:
    return {"id": d.id, "name": d.name, "email": d.email}


def validate_company_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial and not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    email = (payload.get("email") or "").strip()
    if email and not is_valid_email(email):
        errors.append("Email is invalid.")
    return errors


_COMPANY_FIELDS = ("name", "tax_id", "tax_office", "address", "email", "phone")


def create_company(s: "Session", payload: dict, user: "User") -> Company:
    company = Company(tenant_id=user.tenant_id, is_active=True)
    for field in _COMPANY_FIELDS:
        setattr(company, field, (payload.get(field) or "").strip() or None)
    s.add(company)
    s.flush()
    record_event(s, actor=user, action="company.create", entity_type="Company", entity_id=str(company.id), metadata={"name": company.name})
    return company


def update_company(s: "Session", company: Company, payload: dict, user: "User") -> Company:
    changes = {}
    for field in _COMPANY_FIELDS:
        if field not in payload:
            continue
        new = (payload.get(field) or "").strip() or None
        if field == "name" and not new:
            continue
        old = getattr(company, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(company, field, new)
    record_event(s, actor=user, action="company.edit", entity_type="Company", entity_id=str(company.id), metadata={"changes": changes})
    return company


def toggle_company_active(s: "Session", company: Company, user: "User") -> Company:
    company.is_active = not company.is_active
    record_event(
        s,
        actor=user,
        action="company.toggle_active",
        entity_type="Company",
        entity_id=str(company.id),
        metadata={"is_active": company.is_active},
    )
    return company


def company_to_dict(c: Company) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "tax_id": c.tax_id,
        "tax_office": c.tax_office,
        "address": c.address,
        "email": c.email,
        "phone": c.phone,
        "is_active": c.is_active,
    }


# ---------- Budgets ----------


def validate_budget_payload(payload: dict) -> list[str]:
    errors = []
    try:
        int(payload.get("department_id"))
    except (TypeError, ValueError):
        errors.append("department_id is required.")
    try:
        year = int(payload.get("year"))
        if year < 2000 or year > 2100:
            errors.append("year is out of range.")
    except (TypeError, ValueError):
        errors.append("year is required.")
    total = parse_decimal_flexible(payload.get("total_amount"))
    if total is None or total < 0:
        errors.append("total_amount must be a non-negative number.")
    return errors


def upsert_budget(s: "Session", payload: dict, user: "User") -> Budget:
    department_id = int(payload["department_id"])
    year = int(payload["year"])
    if s.get(Department, department_id) is None:
        raise NotFoundError("not_found", "Department not found.")
    budget = s.query(Budget).filter(Budget.department_id == department_id, Budget.year == year).one_or_none()
    created = budget is None
    if created:
        budget = Budget(department_id=department_id, year=year, spent_amount=Decimal("0"), reserved_amount=Decimal("0"))
        s.add(budget)
    budget.total_amount = money(parse_decimal_flexible(payload.get("total_amount")))
    budget.currency = (payload.get("currency") or budget.currency or "TRY").strip().upper()
    budget.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="budget.create" if created else "budget.edit",
        entity_type="Budget",
        entity_id=str(budget.id),
        metadata={"department_id": department_id, "year": year, "total_amount": str(budget.total_amount)},
    )
    return budget


def _budget_for(s: "Session", department_id: int | None, year: int) -> Budget | None:
    if department_id is None:
        return None
    return s.query(Budget).filter(Budget.department_id == department_id, Budget.year == year).one_or_none()


def reserve_budget(s: "Session", department_id: int | None, year: int, amount: Decimal) -> Budget | None:
    """Earmark an approved request's amount. No-op without a budget row."""
    budget = _budget_for(s, department_id, year)
    if budget is None or amount <= 0:
        return budget
    budget.reserved_amount = money((budget.reserved_amount or 0) + amount)
    budget.updated_at = datetime.utcnow()
    return budget


def consume_budget(s: "Session", department_id: int | None, year: int, amount: Decimal) -> Budget | None:
    """Move an order total from reserved (as far as it goes) to spent."""
    budget = _budget_for(s, department_id, year)
    if budget is None or amount <= 0:
        return budget
    reserved = budget.reserved_amount or Decimal("0")
    budget.reserved_amount = money(reserved - min(reserved, amount))
    budget.spent_amount = money((budget.spent_amount or 0) + amount)
    budget.updated_at = datetime.utcnow()
    return budget


def budget_to_dict(b: Budget) -> dict:
    total = b.total_amount or Decimal("0")
    spent = b.spent_amount or Decimal("0")
    reserved = b.reserved_amount or Decimal("0")
    utilization = money(spent / total * 100) if total > 0 else Decimal("0")
    return {
        "id": b.id,
        "department_id": b.department_id,
        "year": b.year,
        "currency": b.currency,
        "total_amount": float(total),
        "spent_amount": float(spent),
        "reserved_amount": float(reserved),
        "remaining": float(money(total - spent - reserved)),
        "utilization_rate": float(utilization),
    }


# ---------- Tenant invitations ----------


def validate_invite_payload(s: "Session", payload: dict) -> list[str]:
    from app.procurement.models import Role

    errors = []
    if not is_valid_email((payload.get("email") or "").strip()):
        errors.append("A valid email is required.")
    role_key = (payload.get("role_key") or "").strip()
    if not role_key or s.query(Role).filter(Role.key == role_key).count() == 0:
        errors.append("role_key must name an existing role.")
    elif role_key == "admin":
        errors.append("Administrators cannot be invited.")
    if payload.get("department_id") not in (None, ""):
        try:
            if s.get(Department, int(payload["department_id"])) is None:
                errors.append("Department not found.")
        except (TypeError, ValueError):
            errors.append("department_id must be an integer.")
    return errors


def create_invite(s: "Session", payload: dict, user: "User") -> tuple[TenantInvite, str]:
    """Record the invitation and email the link. Returns the invite and the raw token."""
    from app.procurement.models import User

    email = payload["email"].strip().lower()
    if s.query(User).filter(User.email == email).count():
        raise ConflictError("duplicate", "A user with this email already exists.")
    pending = s.query(TenantInvite).filter(
        TenantInvite.email == email,
        TenantInvite.accepted_at.is_(None),
        TenantInvite.expires_at > datetime.utcnow(),
    )
    if pending.count():
        raise ConflictError("duplicate_invite")

    token, digest = new_secret_token()
    ttl = int(current_app.config.get("TENANT_INVITE_TTL_DAYS", 7))
    invite = TenantInvite(
        tenant_id=user.tenant_id,
        email=email,
        role_key=payload["role_key"].strip(),
        department_id=int(payload["department_id"]) if payload.get("department_id") not in (None, "") else None,
        token_hash=digest,
        expires_at=datetime.utcnow() + timedelta(days=ttl),
        invited_by_user_id=user.id,
    )
    s.add(invite)
    s.flush()
    record_event(
        s,
        actor=user,
        action="tenant.invite",
        entity_type="TenantInvite",
        entity_id=str(invite.id),
        metadata={"email": email, "role_key": invite.role_key},
    )
    dispatch_email(
        s,
        email,
        "You have been invited",
        template="generic",
        context={
            "heading": "You have been invited",
            "lines": [f"{user.display_name} invited you to the procurement platform.", f"The invitation is valid for {ttl} day(s)."],
            "action_url": portal_url(f"/auth/invite/{token}"),
            "action_label": "Create your account",
        },
        category="tenant_invite",
    )
    return invite, token


def resolve_invite(s: "Session", token: str) -> TenantInvite:
    invite = s.query(TenantInvite).filter(TenantInvite.token_hash == hash_token(token)).one_or_none()
    if invite is None or invite.accepted_at is not None or invite.expires_at < datetime.utcnow():
        raise BadRequestError("invalid_token")
    return invite


def accept_invite(s: "Session", invite: TenantInvite, payload: dict) -> "User":
    from app.procurement.models import Role, User

    problem = password_problem(payload.get("password"))
    if problem:
        raise BadRequestError(problem)
    if s.query(User).filter(User.email == invite.email).count():
        raise ConflictError("duplicate", "A user with this email already exists.")
    role = s.query(Role).filter(Role.key == invite.role_key).one_or_none()
    if role is None:
        raise BadRequestError("invalid_token")
    user = User(
        email=invite.email,
        password_hash=generate_password_hash(payload["password"]),
        full_name=(payload.get("full_name") or "").strip() or None,
        is_active=True,
        department_id=invite.department_id,
        tenant_id=invite.tenant_id,
    )
    user.roles.append(role)
    s.add(user)
    invite.accepted_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="tenant.invite_accept",
        entity_type="TenantInvite",
        entity_id=str(invite.id),
        metadata={"user_id": user.id, "role_key": role.key},
    )
    return user


def invite_to_dict(invite: TenantInvite) -> dict:
    return {
        "id": invite.id,
        "email": invite.email,
        "role_key": invite.role_key,
        "department_id": invite.department_id,
        "expires_at": iso(invite.expires_at),
        "accepted_at": iso(invite.accepted_at),
        "created_at": iso(invite.created_at),
    }


# ---------- Delivery addresses ----------

_ADDRESS_FIELDS = ("name", "address", "city", "district", "postal_code", "phone", "contact_person")


def validate_address_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    for field in ("name", "address"):
        if (not partial or field in payload) and not (payload.get(field) or "").strip():
            errors.append(f"{field.replace('_', ' ').capitalize()} is required.")
    return errors


def _clear_default(s: "Session", keep_id: int | None = None) -> None:
    q = s.query(DeliveryAddress).filter(DeliveryAddress.is_default.is_(True))
    if keep_id is not None:
        q = q.filter(DeliveryAddress.id != keep_id)
    for row in q.all():
        row.is_default = False


def save_address(s: "Session", payload: dict, user: "User", address: DeliveryAddress | None = None) -> DeliveryAddress:
    created = address is None
    if created:
        address = DeliveryAddress(tenant_id=user.tenant_id, active=True, is_default=False)
        s.add(address)
    changes: dict[str, Any] = {}
    for field in _ADDRESS_FIELDS:
        if field not in payload and not created:
            continue
        new = (payload.get(field) or "").strip() or None
        if new != getattr(address, field):
            changes[field] = new
            setattr(address, field, new)
    if "active" in payload:
        address.active = bool(payload["active"])
    if "is_default" in payload:
        address.is_default = bool(payload["is_default"])
    s.flush()
    if address.is_default:
        _clear_default(s, keep_id=address.id)
    record_event(
        s,
        actor=user,
        action="delivery_address.create" if created else "delivery_address.edit",
        entity_type="DeliveryAddress",
        entity_id=str(address.id),
        metadata={"changes": changes, "is_default": address.is_default},
    )
    return address


def delete_address(s: "Session", address: DeliveryAddress, user: "User") -> None:
    from app.procurement.modules.orders.models import PurchaseOrder

    if s.query(PurchaseOrder).filter(PurchaseOrder.delivery_address_id == address.id).count():
        raise ConflictError("linked_record", "The address is used by purchase orders; deactivate it instead.")
    record_event(s, actor=user, action="delivery_address.delete", entity_type="DeliveryAddress", entity_id=str(address.id), metadata={"name": address.name})
    s.delete(address)


def resolve_delivery_address(s: "Session", address_id: Any) -> DeliveryAddress | None:
    """Explicit active address, else the default one, else None."""
    if address_id not in (None, ""):
        try:
            address = s.get(DeliveryAddress, int(address_id))
        except (TypeError, ValueError) as e:
            raise BadRequestError("bad_request", "delivery_address_id must be an integer.") from e
        if address is None or not address.active:
            raise NotFoundError("not_found", "Delivery address not found.")
        return address
    return (
        s.query(DeliveryAddress)
        .filter(DeliveryAddress.is_default.is_(True), DeliveryAddress.active.is_(True))
        .order_by(DeliveryAddress.id.asc())
        .first()
    )


def address_to_dict(a: DeliveryAddress) -> dict:
    out = {field: getattr(a, field) for field in _ADDRESS_FIELDS}
    out.update({"id": a.id, "is_default": a.is_default, "active": a.active})
    return out


def format_address(a: DeliveryAddress) -> str:
    place = " ".join(p for p in (a.postal_code, a.district, a.city) if p)
    return ", ".join(p for p in (a.name, a.address, place) if p)
