from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.procurement.audit import record_event
from app.procurement.errors import ConflictError, NotFoundError
from app.procurement.models import User
from app.procurement.modules.notifications.service import dispatch_email, notify
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.storage import store_upload
from app.procurement.utils import parse_date, render_placeholders

from .models import Contract, ContractAttachment

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DRAFT = "Draft"
ACTIVE = "Active"
TERMINATED = "Terminated"
EXPIRED = "Expired"

STATUSES = (DRAFT, ACTIVE, TERMINATED, EXPIRED)
STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    DRAFT: (ACTIVE, TERMINATED),
    ACTIVE: (TERMINATED, EXPIRED),
    TERMINATED: (),
    EXPIRED: (),
}

EXPIRY_FILTERS = ("expired", "expiring", "active", "perpetual")

CONTRACT_TEMPLATES: dict[str, dict[str, str]] = {
    "purchase": {
        "name": "Purchase agreement",
        "body": (
            "PURCHASE AGREEMENT\n\n"
            "Parties: {{ parties }}\n"
            "Term: {{ start_date }} - {{ end_date }}\n\n"
            "This agreement covers order {{ order.code }} with a total value of "
            "{{ order.total }} {{ currency }}, procured by {{ method }}.\n\n"
            "Scope: {{ summary }}\n"
        ),
    },
    "service": {
        "name": "Service agreement",
        "body": (
            "SERVICE AGREEMENT\n\n"
            "Between {{ parties }}, effective {{ start_date }} until {{ end_date }}.\n\n"
            "Services: {{ summary }}\n"
            "Fee: {{ order.total }} {{ currency }} (order {{ order.code }}).\n"
        ),
    },
    "framework": {
        "name": "Framework agreement",
        "body": (
            "FRAMEWORK AGREEMENT\n\n"
            "Parties: {{ parties }}\n"
            "Validity: {{ start_date }} - {{ end_date }}\n\n"
            "Call-off orders placed under this agreement follow the {{ method }} procedure.\n"
            "{{ summary }}\n"
        ),
    },
}


def _clean(value: Any) -> str | None:
    return (str(value).strip() if value is not None else "") or None


# ---------- Validation ----------


def validate_contract_payload(payload: dict, existing: Contract | None = None) -> list[str]:
    """Validate a create payload, or an update merged over an existing contract."""

    def _value(key: str):
        if key in payload or existing is None:
            return payload.get(key)
        return getattr(existing, key)

    errors = []
    for key, label in (("title", "Title"), ("type", "Type"), ("parties", "Parties")):
        if not _clean(_value(key)):
            errors.append(f"{label} is required.")
    start = parse_date(_value("start_date"))
    if start is None:
        errors.append("Start date is required (YYYY-MM-DD).")
    end_raw = _value("end_date")
    end = parse_date(end_raw)
    if end_raw not in (None, "") and end is None:
        errors.append("End date must be a date (YYYY-MM-DD).")
    if start and end and start > end:
        errors.append("Start date must not be after end date.")
    status = _value("status")
    if status not in (None, "") and status not in STATUSES:
        errors.append(f"Status must be one of: {', '.join(STATUSES)}")
    template = _clean(payload.get("template"))
    if template and template not in CONTRACT_TEMPLATES:
        errors.append(f"Unknown template '{template}'.")
    return errors


def _overlaps(a_start: date, a_end: date | None, b_start: date, b_end: date | None) -> bool:
    """Closed intervals; a missing end is open-ended."""
    return (b_end is None or a_start <= b_end) and (a_end is None or b_start <= a_end)


def _ensure_not_duplicate(
    s: "Session", *, order_id: int | None, title: str, start: date, end: date | None, exclude_id: int | None = None
) -> None:
    q = s.query(Contract).filter(Contract.deleted_at.is_(None), Contract.title == title)
    q = q.filter(Contract.order_id == order_id) if order_id else q.filter(Contract.order_id.is_(None))
    if exclude_id is not None:
        q = q.filter(Contract.id != exclude_id)
    for other in q.all():
        if _overlaps(start, end, other.start_date, other.end_date):
            raise ConflictError("duplicate_contract", details={"contract_id": other.id, "number": other.number})


# ---------- Templates ----------


def template_vars(contract: Contract, order: PurchaseOrder | None, summary: str | None = None) -> dict:
    return {
        "parties": contract.parties,
        "start_date": contract.start_date.isoformat() if contract.start_date else "",
        "end_date": contract.end_date.isoformat() if contract.end_date else "open-ended",
        "order": {"code": order.code, "total": order.total_amount} if order else {},
        "currency": order.currency if order else current_app.config.get("DEFAULT_CURRENCY", "TRY"),
        "method": (order.method if order else None) or "",
        "summary": summary or (", ".join(it.name for it in order.items) if order else ""),
    }


def render_contract_body(contract: Contract, order: PurchaseOrder | None, summary: str | None = None) -> str:
    tpl = CONTRACT_TEMPLATES[contract.template]
    return render_placeholders(tpl["body"], template_vars(contract, order, summary))


def templates_list() -> list[dict]:
    return [{"key": key, "name": tpl["name"], "body": tpl["body"]} for key, tpl in CONTRACT_TEMPLATES.items()]


# ---------- Create / update / delete ----------


def _resolve_order(s: "Session", order_id: Any) -> PurchaseOrder | None:
    if not order_id:
        return None
    order = s.get(PurchaseOrder, int(order_id))
    if order is None:
        raise NotFoundError("not_found", "Order not found.")
    return order


def create_contract(s: "Session", payload: dict, user: User) -> Contract:
    order = _resolve_order(s, payload.get("order_id"))
    title = _clean(payload.get("title"))
    start = parse_date(payload.get("start_date"))
    end = parse_date(payload.get("end_date"))
    _ensure_not_duplicate(s, order_id=order.id if order else None, title=title, start=start, end=end)

    now = datetime.utcnow()
    number = _clean(payload.get("number")) or f"S-{now.year}-{now.strftime('%m%d%H%M%S%f')}"
    if s.query(Contract).filter(Contract.number == number).count():
        raise ConflictError("duplicate_code")

    contract = Contract(
        number=number,
        title=title,
        type=_clean(payload.get("type")),
        template=_clean(payload.get("template")),
        parties=_clean(payload.get("parties")),
        body=_clean(payload.get("body")),
        start_date=start,
        end_date=end,
        status=_clean(payload.get("status")) or DRAFT,
        order_id=order.id if order else None,
        responsible_user_id=payload.get("responsible_user_id") or user.id,
        tenant_id=user.tenant_id,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    if contract.template:
        contract.body = render_contract_body(contract, order, _clean(payload.get("summary")))
    s.add(contract)
    s.flush()
    record_event(
        s,
        actor=user,
        action="contract.create",
        entity_type="Contract",
        entity_id=str(contract.id),
        metadata={"number": contract.number, "order_id": contract.order_id, "template": contract.template},
    )
    return contract


def update_contract(s: "Session", contract: Contract, payload: dict, user: User) -> Contract:
    changes: dict[str, Any] = {}
    if "status" in payload and payload.get("status") != contract.status:
        status = payload.get("status")
        if status not in STATUS_TRANSITIONS.get(contract.status, ()):
            raise ConflictError("status_conflict", f"Cannot move contract from '{contract.status}' to '{status}'.")
        changes["status"] = {"old": contract.status, "new": status}
        contract.status = status

    for field in ("title", "type", "parties", "body"):
        if field in payload:
            new = _clean(payload.get(field))
            if new != getattr(contract, field):
                changes[field] = True
                setattr(contract, field, new)
    for field in ("start_date", "end_date"):
        if field in payload:
            new = parse_date(payload.get(field))
            if new != getattr(contract, field):
                changes[field] = {"old": getattr(contract, field), "new": new}
                setattr(contract, field, new)
    if "order_id" in payload:
        order = _resolve_order(s, payload.get("order_id"))
        contract.order_id = order.id if order else None
    if "responsible_user_id" in payload:
        contract.responsible_user_id = payload.get("responsible_user_id") or None

    _ensure_not_duplicate(
        s,
        order_id=contract.order_id,
        title=contract.title,
        start=contract.start_date,
        end=contract.end_date,
        exclude_id=contract.id,
    )
    template = _clean(payload.get("template"))
    if template:
        contract.template = template
        contract.body = render_contract_body(contract, _resolve_order(s, contract.order_id), _clean(payload.get("summary")))
        changes["template"] = template

    contract.updated_at = datetime.utcnow()
    if changes:
        record_event(s, actor=user, action="contract.edit", entity_type="Contract", entity_id=str(contract.id), metadata={"changes": changes})
    return contract


def delete_contract(s: "Session", contract: Contract, user: User) -> Contract:
    contract.deleted_at = datetime.utcnow()
    record_event(s, actor=user, action="contract.delete", entity_type="Contract", entity_id=str(contract.id), metadata={"number": contract.number})
    return contract


# ---------- Attachments ----------


def add_attachment(s: "Session", contract: Contract, file_bytes: bytes, filename: str, content_type: str, user: User) -> ContractAttachment:
    stored = store_upload(current_app.config, "contracts", contract.id, filename, file_bytes, content_type)
    att = ContractAttachment(
        storage_key=stored.key,
        filename=stored.filename,
        content_type=stored.content_type,
        sha256=stored.sha256,
        size_bytes=stored.size_bytes,
        uploaded_by_user_id=user.id,
    )
    contract.attachments.append(att)
    s.flush()
    record_event(
        s,
        actor=user,
        action="contract.attachment_upload",
        entity_type="Contract",
        entity_id=str(contract.id),
        metadata={"attachment_id": att.id, "filename": att.filename, "sha256": stored.sha256},
    )
    return att


# ---------- Expiry ----------


def apply_expiry_filter(q, expiry: str, today: date, window_days: int):
    if expiry == "expired":
        return q.filter(Contract.end_date.is_not(None), Contract.end_date < today)
    if expiry == "expiring":
        return q.filter(Contract.end_date >= today, Contract.end_date <= today + timedelta(days=window_days))
    if expiry == "active":
        return q.filter(Contract.end_date >= today)
    if expiry == "perpetual":
        return q.filter(Contract.end_date.is_(None))
    return q


def send_expiry_reminders(s: "Session", today: date | None = None) -> dict:
    """Remind responsible users about contracts ending in exactly N days for each configured N."""
    today = today or date.today()
    days_list = current_app.config.get("CONTRACT_REMINDER_DAYS") or (30, 15, 7, 1)
    sent = 0
    reminded = []
    for days in days_list:
        target = today + timedelta(days=days)
        rows = (
            s.query(Contract)
            .filter(
                Contract.deleted_at.is_(None),
                Contract.status.not_in((TERMINATED, EXPIRED)),
                Contract.end_date == target,
            )
            .all()
        )
        for c in rows:
            if c.last_reminder_days == days and c.last_reminder_at and c.last_reminder_at.date() == today:
                continue
            user = s.get(User, c.responsible_user_id) if c.responsible_user_id else None
            title = f"Contract {c.number} ends in {days} day(s)"
            if user is not None:
                notify(s, user.id, title, c.title, link=f"/contracts/{c.id}", kind="contract")
                dispatch_email(
                    s,
                    user.email,
                    title,
                    template="detail",
                    context={
                        "heading": title,
                        "intro": "The following contract is approaching its end date.",
                        "fields": [("Number", c.number), ("Title", c.title), ("Parties", c.parties), ("End date", c.end_date.isoformat())],
                    },
                    category="contract_reminder",
                )
                sent += 1
            c.last_reminder_at = datetime.utcnow()
            c.last_reminder_days = days
            reminded.append({"id": c.id, "number": c.number, "end_date": c.end_date.isoformat(), "days_left": days})
    if reminded:
        logger.info("Contract expiry reminders: %s contracts, %s sent", len(reminded), sent)
    return {"sent": sent, "contracts": reminded}


def expire_contracts(s: "Session", today: date | None = None) -> int:
    today = today or date.today()
    rows = (
        s.query(Contract)
        .filter(Contract.deleted_at.is_(None), Contract.status == ACTIVE, Contract.end_date.is_not(None), Contract.end_date < today)
        .all()
    )
    for c in rows:
        c.status = EXPIRED
        c.updated_at = datetime.utcnow()
        record_event(s, actor=None, action="contract.expire", entity_type="Contract", entity_id=str(c.id), metadata={"end_date": c.end_date})
    return len(rows)


# ---------- Serialization ----------


def attachment_to_dict(att: ContractAttachment) -> dict:
    return {
        "id": att.id,
        "filename": att.filename,
        "content_type": att.content_type,
        "size_bytes": att.size_bytes,
        "sha256": att.sha256,
        "uploaded_at": att.uploaded_at.isoformat() if att.uploaded_at else None,
    }


def contract_to_dict(c: Contract, *, detail: bool = False) -> dict:
    today = date.today()
    out = {
        "id": c.id,
        "number": c.number,
        "title": c.title,
        "type": c.type,
        "template": c.template,
        "parties": c.parties,
        "status": c.status,
        "start_date": c.start_date.isoformat() if c.start_date else None,
        "end_date": c.end_date.isoformat() if c.end_date else None,
        "days_left": (c.end_date - today).days if c.end_date else None,
        "order_id": c.order_id,
        "responsible_user_id": c.responsible_user_id,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }
    if detail:
        out["body"] = c.body
        out["attachments"] = [attachment_to_dict(a) for a in c.attachments]
    return out
