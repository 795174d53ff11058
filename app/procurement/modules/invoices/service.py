from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.procurement.audit import record_event
from app.procurement.errors import ConflictError, NotFoundError, ValidationError
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.utils import money, parse_date, parse_decimal_flexible

from .models import Invoice, InvoiceItem, WithholdingJobType
from .withholding import calculate_withholding

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User


PENDING = "Pending"
APPROVED = "Approved"
PAID = "Paid"
CANCELLED = "Cancelled"

STATUSES = (PENDING, APPROVED, PAID, CANCELLED)
STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    PENDING: (APPROVED, CANCELLED),
    APPROVED: (PAID, CANCELLED),
    PAID: (),
    CANCELLED: (),
}


def _clean(value: Any) -> str | None:
    return (str(value).strip() if value is not None else "") or None


# ---------- Validation ----------


def parse_invoice_items(raw: Any) -> tuple[list[dict], list[str]]:
    if raw in (None, ""):
        return [], []
    if not isinstance(raw, list):
        return [], ["items must be a list."]
    items: list[dict] = []
    errors: list[str] = []
    for i, it in enumerate(raw, start=1):
        if not isinstance(it, dict):
            errors.append(f"Item {i}: must be an object.")
            continue
        name = _clean(it.get("name"))
        qty = parse_decimal_flexible(it.get("quantity"))
        price = parse_decimal_flexible(it.get("unit_price"))
        tax = parse_decimal_flexible(it.get("tax_rate")) if it.get("tax_rate") not in (None, "") else Decimal("0")
        if not name:
            errors.append(f"Item {i}: name is required.")
        if qty is None or qty <= 0:
            errors.append(f"Item {i}: quantity must be greater than 0.")
        if price is None or price < 0:
            errors.append(f"Item {i}: unit_price must be 0 or more.")
        if tax is None or not (0 <= tax <= 100):
            errors.append(f"Item {i}: tax_rate must be between 0 and 100.")
        items.append(
            {
                "name": name,
                "sku": _clean(it.get("sku")),
                "quantity": qty,
                "unit_price": price,
                "tax_rate": tax,
                "apply_withholding": bool(it.get("apply_withholding")),
            }
        )
    return items, errors


def validate_invoice_payload(payload: dict) -> list[str]:
    """All problems at once so the form can show them together."""
    errors: list[str] = []
    if not _clean(payload.get("number")):
        errors.append("Invoice number is required.")
    if not payload.get("order_id") and not _clean(payload.get("order_code")):
        errors.append("Order is required (order_id or order_code).")
    items, item_errors = parse_invoice_items(payload.get("items"))
    errors.extend(item_errors)
    if not items:
        amount = parse_decimal_flexible(payload.get("amount"))
        if amount is None:
            errors.append("Amount is required.")
        elif amount < 0:
            errors.append("Amount must be 0 or more.")
    if parse_date(payload.get("due_date")) is None:
        errors.append("Due date is required (YYYY-MM-DD).")
    status = _clean(payload.get("status"))
    if not status:
        errors.append("Status is required.")
    elif status not in STATUSES:
        errors.append(f"Status must be one of: {', '.join(STATUSES)}")
    if payload.get("invoice_date") and parse_date(payload.get("invoice_date")) is None:
        errors.append("invoice_date must be a date (YYYY-MM-DD).")
    return errors


# ---------- Withholding ----------


def job_type_rule(jt: WithholdingJobType | None) -> dict | None:
    if jt is None:
        return None
    return {
        "ratio": jt.ratio,
        "vat_rate": jt.vat_rate,
        "applicable_vat_rates": jt.applicable_vat_rates or None,
    }


def _rule_for(s: "Session", code: str | None) -> dict | None:
    if not code:
        return None
    jt = s.query(WithholdingJobType).filter(WithholdingJobType.code == code).one_or_none()
    if jt is None:
        raise NotFoundError("not_found", f"Withholding job type '{code}' not found.")
    return job_type_rule(jt)


def preview_totals(s: "Session", payload: dict) -> dict:
    items, _ = parse_invoice_items(payload.get("items"))
    rule = _rule_for(s, _clean(payload.get("withholding_code")))
    totals = calculate_withholding(items, rule)
    return {k: float(v) for k, v in totals.items()}


# ---------- Create / update ----------


def _resolve_order(s: "Session", payload: dict) -> PurchaseOrder | None:
    if payload.get("order_id"):
        order = s.get(PurchaseOrder, int(payload["order_id"]))
        if order is None:
            raise NotFoundError("not_found", "Order not found.")
        return order
    code = _clean(payload.get("order_code"))
    return s.query(PurchaseOrder).filter(PurchaseOrder.code == code).one_or_none() if code else None


def create_invoice(s: "Session", payload: dict, user: "User") -> Invoice:
    number = _clean(payload.get("number"))
    if s.query(Invoice).filter(Invoice.number == number).count():
        raise ConflictError("duplicate_invoice")

    order = _resolve_order(s, payload)
    items, _ = parse_invoice_items(payload.get("items"))
    withholding_code = _clean(payload.get("withholding_code"))

    now = datetime.utcnow()
    inv = Invoice(
        number=number,
        order_id=order.id if order else None,
        order_code=order.code if order else _clean(payload.get("order_code")),
        supplier_id=order.supplier_id if order else None,
        currency=_clean(payload.get("currency")) or (order.currency if order else current_app.config.get("DEFAULT_CURRENCY", "TRY")),
        invoice_date=parse_date(payload.get("invoice_date")),
        due_date=parse_date(payload.get("due_date")),
        status=_clean(payload.get("status")),
        bank=_clean(payload.get("bank")),
        notes=_clean(payload.get("notes")),
        vat_rate=parse_decimal_flexible(payload.get("vat_rate")),
        withholding_code=withholding_code,
        department_id=order.department_id if order else user.department_id,
        tenant_id=user.tenant_id,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    if items:
        totals = calculate_withholding(items, _rule_for(s, withholding_code))
        inv.subtotal = totals["subtotal"]
        inv.vat_total = totals["vat_total"]
        inv.withheld_vat = totals["withheld_vat"]
        inv.net_payable = totals["net_payable"]
        inv.amount = totals["net_payable"]
        inv.items = [
            InvoiceItem(
                name=it["name"],
                sku=it["sku"],
                quantity=it["quantity"],
                unit_price=money(it["unit_price"]),
                tax_rate=it["tax_rate"],
                apply_withholding=it["apply_withholding"],
            )
            for it in items
        ]
    else:
        inv.amount = money(parse_decimal_flexible(payload.get("amount")))
    s.add(inv)
    s.flush()
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"number": inv.number, "order_code": inv.order_code, "amount": str(inv.amount), "withholding_code": withholding_code},
    )
    return inv


def update_invoice(s: "Session", inv: Invoice, payload: dict, user: "User") -> Invoice:
    changes: dict[str, Any] = {}
    if "status" in payload:
        status = _clean(payload.get("status"))
        if status != inv.status:
            if status not in STATUS_TRANSITIONS.get(inv.status, ()):
                raise ConflictError("status_conflict", f"Cannot move invoice from '{inv.status}' to '{status}'.")
            changes["status"] = {"old": inv.status, "new": status}
            inv.status = status
    if "due_date" in payload:
        due = parse_date(payload.get("due_date"))
        if due is None:
            raise ValidationError(details=["Due date is required (YYYY-MM-DD)."])
        if due != inv.due_date:
            changes["due_date"] = {"old": inv.due_date, "new": due}
            inv.due_date = due
    for field in ("bank", "notes"):
        if field in payload:
            new = _clean(payload.get(field))
            if new != getattr(inv, field):
                changes[field] = {"old": getattr(inv, field), "new": new}
                setattr(inv, field, new)
    inv.updated_at = datetime.utcnow()
    if changes:
        record_event(s, actor=user, action="invoice.edit", entity_type="Invoice", entity_id=str(inv.id), metadata={"changes": changes})
    return inv


def invoice_to_dict(inv: Invoice, *, detail: bool = False) -> dict:
    def _f(v):
        return float(v) if v is not None else None

    out = {
        "id": inv.id,
        "number": inv.number,
        "order_id": inv.order_id,
        "order_code": inv.order_code,
        "supplier_id": inv.supplier_id,
        "amount": float(inv.amount or 0),
        "currency": inv.currency,
        "invoice_date": inv.invoice_date.isoformat() if inv.invoice_date else None,
        "due_date": inv.due_date.isoformat() if inv.due_date else None,
        "status": inv.status,
        "bank": inv.bank,
        "vat_rate": _f(inv.vat_rate),
        "withholding_code": inv.withholding_code,
        "subtotal": _f(inv.subtotal),
        "vat_total": _f(inv.vat_total),
        "withheld_vat": _f(inv.withheld_vat),
        "net_payable": _f(inv.net_payable),
        "created_at": inv.created_at.isoformat() if inv.created_at else None,
    }
    if detail:
        out["notes"] = inv.notes
        out["items"] = [
            {
                "id": it.id,
                "name": it.name,
                "sku": it.sku,
                "quantity": float(it.quantity),
                "unit_price": float(it.unit_price),
                "tax_rate": float(it.tax_rate),
                "apply_withholding": it.apply_withholding,
            }
            for it in inv.items
        ]
    return out


# ---------- Withholding job types ----------


def validate_job_type_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial and not _clean(payload.get("code")):
        errors.append("Code is required.")
    if not partial and not _clean(payload.get("label")):
        errors.append("Label is required.")
    if not partial or "ratio" in payload:
        ratio = _clean(payload.get("ratio")) or ""
        num, sep, den = ratio.partition("/")
        if not (sep and num.strip().isdigit() and den.strip().isdigit() and int(den) > 0 and int(num) <= int(den)):
            errors.append("Ratio must look like '7/10'.")
    rates = payload.get("applicable_vat_rates")
    if rates is not None and (not isinstance(rates, list) or any(parse_decimal_flexible(r) is None for r in rates)):
        errors.append("applicable_vat_rates must be a list of numbers.")
    return errors


def _apply_job_type(jt: WithholdingJobType, payload: dict) -> None:
    if "label" in payload:
        jt.label = _clean(payload.get("label")) or jt.label
    if "ratio" in payload:
        jt.ratio = _clean(payload.get("ratio"))
    if "vat_rate" in payload:
        jt.vat_rate = parse_decimal_flexible(payload.get("vat_rate"))
    if "applicable_vat_rates" in payload:
        rates = payload.get("applicable_vat_rates")
        jt.applicable_vat_rates = [float(parse_decimal_flexible(r)) for r in rates] if rates else None
    if "is_active" in payload:
        jt.is_active = bool(payload.get("is_active"))
    if "sort" in payload:
        jt.sort = int(payload.get("sort") or 0)


def create_job_type(s: "Session", payload: dict, user: "User") -> WithholdingJobType:
    code = _clean(payload.get("code"))
    if s.query(WithholdingJobType).filter(WithholdingJobType.code == code).count():
        raise ConflictError("duplicate_code")
    jt = WithholdingJobType(code=code, label=_clean(payload.get("label")), ratio=_clean(payload.get("ratio")), is_active=True, sort=0)
    _apply_job_type(jt, payload)
    s.add(jt)
    s.flush()
    record_event(s, actor=user, action="withholding_type.create", entity_type="WithholdingJobType", entity_id=str(jt.id), metadata={"code": code})
    return jt


def update_job_type(s: "Session", jt: WithholdingJobType, payload: dict, user: "User") -> WithholdingJobType:
    _apply_job_type(jt, payload)
    record_event(s, actor=user, action="withholding_type.edit", entity_type="WithholdingJobType", entity_id=str(jt.id), metadata={"code": jt.code})
    return jt


def job_type_to_dict(jt: WithholdingJobType) -> dict:
    return {
        "id": jt.id,
        "code": jt.code,
        "label": jt.label,
        "ratio": jt.ratio,
        "vat_rate": float(jt.vat_rate) if jt.vat_rate is not None else None,
        "applicable_vat_rates": jt.applicable_vat_rates,
        "is_active": jt.is_active,
        "sort": jt.sort,
    }
