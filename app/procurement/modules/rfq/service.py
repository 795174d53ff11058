"""
Requests for quotation.

An RFQ gathers the items of one or more approved purchase requests and
invites suppliers through tokenized portal links. Suppliers answer with
offers (one per negotiation round); the buyer compares the latest offers,
optionally runs further rounds, and finalizes by turning the winning offer
(or a split across several offers) into purchase orders.
"""
from __future__ import annotations

import secrets
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from app.procurement.modules.approvals.service import act, notify_approvers, resolve_workflow, restart_cycle
from app.procurement.modules.notifications.service import dispatch_email, notify, portal_url
from app.procurement.modules.orders.service import build_order, resolve_company
from app.procurement.modules.requests.models import PurchaseRequest
from app.procurement.modules.requests.service import ORDERED, SOURCING, mark_requests_status
from app.procurement.modules.suppliers.models import Supplier
from app.procurement.modules.suppliers.service import find_or_create_supplier
from app.procurement.rbac import get_scoped
from app.procurement.utils import format_number_tr, is_valid_email, money, parse_datetime, parse_decimal_flexible

from .models import Offer, OfferItem, Rfq, RfqItem, RfqSupplier

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User
    from app.procurement.modules.orders.models import PurchaseOrder


DRAFT = "Draft"
OPEN = "Open"
PASSIVE = "Passive"
WAITING_APPROVAL = "Waiting Approval"
APPROVED = "Approved"
CANCELLED = "Cancelled"
COMPLETED = "Completed"

STATUSES = (DRAFT, OPEN, PASSIVE, WAITING_APPROVAL, APPROVED, CANCELLED, COMPLETED)
STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    DRAFT: (CANCELLED,),
    OPEN: (PASSIVE, CANCELLED),
    PASSIVE: (OPEN, CANCELLED),
}
APPROVABLE_STATUSES = (OPEN, PASSIVE, WAITING_APPROVAL)
FINALIZABLE_STATUSES = (OPEN, APPROVED)

# invitation stages
INVITED = "Invited"
VIEWED = "Viewed"
OFFERED = "Offered"
DECLINED = "Declined"
AWARDED = "Awarded"
LOST = "Lost"

NEGOTIATION_ACTIVE = "Active"
NEGOTIATION_FINISHED = "Finished"

ZERO = Decimal("0")


def _clean(value: Any) -> str | None:
    return (str(value).strip() if value is not None else "") or None


def _new_token() -> str:
    return secrets.token_hex(32)


def _token_expiry() -> datetime:
    return datetime.utcnow() + timedelta(days=int(current_app.config.get("RFQ_INVITE_TTL_DAYS", 7)))


def invitation_label(inv: RfqSupplier) -> str:
    if inv.supplier is not None:
        return inv.supplier.name
    return inv.company_name or inv.contact_name or inv.email or f"Invitation {inv.id}"


# ---------- Create ----------


def validate_rfq_payload(payload: dict) -> list[str]:
    errors = []
    if not _clean(payload.get("title")):
        errors.append("Title is required.")
    request_ids = payload.get("request_ids")
    if not isinstance(request_ids, list) or not request_ids:
        errors.append("At least one request is required (request_ids).")
    suppliers = payload.get("suppliers")
    if not isinstance(suppliers, list) or not suppliers:
        errors.append("At least one supplier is required.")
    else:
        for i, entry in enumerate(suppliers, start=1):
            if not isinstance(entry, dict) or not (entry.get("supplier_id") or is_valid_email(entry.get("email"))):
                errors.append(f"Supplier {i}: supplier_id or a valid email is required.")
    if payload.get("deadline") and parse_datetime(payload.get("deadline")) is None:
        errors.append("deadline must be an ISO date/time.")
    return errors


def _unique_code(s: "Session", base: str) -> str:
    taken = {c for (c,) in s.query(Rfq.code).filter(Rfq.code.like(f"{base}%")).all()}
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def _aggregate_request_items(requests: list[PurchaseRequest]) -> list[RfqItem]:
    """One RFQ line per distinct (name, unit, sku); quantities of repeats are summed."""
    grouped: "OrderedDict[tuple, RfqItem]" = OrderedDict()
    for req in requests:
        for it in req.items:
            key = ((it.name or "").strip().lower(), it.unit or "", it.sku or "")
            existing = grouped.get(key)
            if existing is None:
                grouped[key] = RfqItem(
                    request_item_id=it.id,
                    name=it.name,
                    sku=it.sku,
                    unit=it.unit,
                    quantity=Decimal(it.quantity),
                )
            else:
                existing.quantity = Decimal(existing.quantity) + Decimal(it.quantity)
                existing.request_item_id = None
    return list(grouped.values())


def _explicit_items(raw: list) -> list[RfqItem]:
    out = []
    for it in raw:
        if not isinstance(it, dict) or not _clean(it.get("name")):
            continue
        qty = parse_decimal_flexible(it.get("quantity"))
        if qty is None or qty <= 0:
            continue
        out.append(
            RfqItem(
                request_item_id=it.get("request_item_id"),
                category_id=it.get("category_id"),
                name=_clean(it.get("name")),
                sku=_clean(it.get("sku")),
                unit=_clean(it.get("unit")),
                quantity=qty,
            )
        )
    return out


def _build_invitation(s: "Session", entry: dict) -> RfqSupplier:
    supplier = None
    if entry.get("supplier_id"):
        supplier = s.get(Supplier, int(entry["supplier_id"]))
        if supplier is None:
            raise NotFoundError("not_found", f"Supplier {entry['supplier_id']} not found.")
    email = _clean(entry.get("email")) or (supplier.email if supplier else None)
    return RfqSupplier(
        supplier_id=supplier.id if supplier else None,
        email=email.lower() if email else None,
        contact_name=_clean(entry.get("contact_name")) or (supplier.contact_name if supplier else None),
        company_name=_clean(entry.get("name")) or _clean(entry.get("company_name")) or (supplier.name if supplier else None),
        token=_new_token(),
        token_expires_at=_token_expiry(),
        stage=INVITED,
    )


def _send_invitation(s: "Session", rfq: Rfq, inv: RfqSupplier) -> None:
    lines = [f"You are invited to quote for {rfq.title} ({rfq.code})."]
    if rfq.deadline:
        lines.append(f"Offers are accepted until {rfq.deadline:%Y-%m-%d %H:%M}.")
    lines.append(f"This link is valid until {inv.token_expires_at:%Y-%m-%d}.")
    dispatch_email(
        s,
        inv.email,
        f"Request for quotation {rfq.code}",
        template="generic",
        context={
            "heading": rfq.title,
            "lines": lines,
            "action_url": portal_url(f"/portal/rfq/{inv.token}"),
            "action_label": "Submit your offer",
        },
        category="rfq_invite",
    )


def create_rfq(s: "Session", payload: dict, user: "User") -> Rfq:
    requests = [get_scoped(s, PurchaseRequest, int(rid), user) for rid in payload["request_ids"]]
    explicit = payload.get("items")
    items = _explicit_items(explicit) if isinstance(explicit, list) and explicit else _aggregate_request_items(requests)
    if not items:
        raise BadRequestError("no_valid_items")

    now = datetime.utcnow()
    draft = bool(payload.get("draft"))
    rfq = Rfq(
        code=_unique_code(s, f"RFQ-{requests[0].code}"),
        title=_clean(payload.get("title")),
        notes=_clean(payload.get("notes")),
        deadline=parse_datetime(payload.get("deadline")),
        status=DRAFT if draft else OPEN,
        currency=_clean(payload.get("currency")) or current_app.config.get("DEFAULT_CURRENCY", "TRY"),
        negotiation_round=1,
        department_id=requests[0].department_id,
        tenant_id=user.tenant_id,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    rfq.requests = requests
    rfq.items = items
    rfq.suppliers = [_build_invitation(s, entry) for entry in payload["suppliers"]]
    s.add(rfq)
    s.flush()

    mark_requests_status(s, requests, SOURCING, user, source=f"rfq:{rfq.code}")
    record_event(
        s,
        actor=user,
        action="rfq.create",
        entity_type="Rfq",
        entity_id=str(rfq.id),
        metadata={"code": rfq.code, "status": rfq.status, "requests": [r.id for r in requests], "suppliers": len(rfq.suppliers)},
    )
    if not draft:
        for inv in rfq.suppliers:
            _send_invitation(s, rfq, inv)
    return rfq


def publish_rfq(s: "Session", rfq: Rfq, user: "User") -> Rfq:
    if rfq.status != DRAFT:
        raise BadRequestError("already_published")
    rfq.status = OPEN
    rfq.updated_at = datetime.utcnow()
    for inv in rfq.suppliers:
        inv.token_expires_at = _token_expiry()
        _send_invitation(s, rfq, inv)
    record_event(s, actor=user, action="rfq.publish", entity_type="Rfq", entity_id=str(rfq.id), metadata={"suppliers": len(rfq.suppliers)})
    return rfq


# ---------- Status / invitations ----------


def change_rfq_status(s: "Session", rfq: Rfq, status: str, user: "User", reason: str | None = None) -> Rfq:
    if status not in STATUS_TRANSITIONS.get(rfq.status, ()):
        raise ConflictError("status_conflict", f"Cannot move RFQ from '{rfq.status}' to '{status}'.")
    old = rfq.status
    rfq.status = status
    rfq.updated_at = datetime.utcnow()
    reason = _clean(reason)
    record_event(s, actor=user, action="rfq.status", entity_type="Rfq", entity_id=str(rfq.id), reason=reason, metadata={"from": old, "to": status})
    if status in (PASSIVE, CANCELLED):
        verb = "paused" if status == PASSIVE else "cancelled"
        for inv in rfq.suppliers:
            dispatch_email(
                s,
                inv.email,
                f"RFQ {rfq.code} has been {verb}",
                template="generic",
                context={"heading": rfq.title, "lines": [f"The request for quotation {rfq.code} has been {verb}.", reason or ""]},
                category="rfq_status",
            )
    return rfq


def add_invitation(s: "Session", rfq: Rfq, entry: dict, user: "User") -> RfqSupplier:
    if rfq.status not in (DRAFT, OPEN):
        raise ConflictError("rfq_closed")
    inv = _build_invitation(s, entry)
    if inv.email and any(existing.email == inv.email for existing in rfq.suppliers):
        raise ConflictError("duplicate", "This supplier is already invited.")
    rfq.suppliers.append(inv)
    s.flush()
    record_event(s, actor=user, action="rfq.invite", entity_type="Rfq", entity_id=str(rfq.id), metadata={"rfq_supplier_id": inv.id, "email": inv.email})
    if rfq.status == OPEN:
        _send_invitation(s, rfq, inv)
    return inv


def resend_invitation(s: "Session", rfq: Rfq, inv: RfqSupplier, user: "User") -> RfqSupplier:
    if rfq.status != OPEN:
        raise ConflictError("rfq_closed")
    inv.token = _new_token()
    inv.token_expires_at = _token_expiry()
    inv.invited_at = datetime.utcnow()
    record_event(s, actor=user, action="rfq.invite_resend", entity_type="Rfq", entity_id=str(rfq.id), metadata={"rfq_supplier_id": inv.id})
    _send_invitation(s, rfq, inv)
    return inv


# ---------- Approval ----------


def decide_rfq(s: "Session", rfq: Rfq, user: "User", decision: str, comment: str | None = None) -> Rfq:
    """Approve through the Rfq workflow when one exists, otherwise directly."""
    if rfq.status not in APPROVABLE_STATUSES:
        raise ConflictError("status_conflict", f"RFQs in status '{rfq.status}' cannot be approved.")
    workflow = resolve_workflow(s, "Rfq", rfq.department_id)
    old = rfq.status
    if workflow is None:
        rfq.status = APPROVED if decision == "approved" else OPEN
    else:
        if old != WAITING_APPROVAL:
            # a reopened RFQ starts a fresh approval round
            restart_cycle(s, "Rfq", rfq.id, user)
        rfq.status = WAITING_APPROVAL
        outcome = act(s, entity_type="Rfq", entity_id=rfq.id, workflow=workflow, user=user, decision=decision, comment=comment)
        if decision == "rejected":
            rfq.status = OPEN
        elif outcome.is_complete:
            rfq.status = APPROVED
        elif outcome.step_completed:
            notify_approvers(
                s,
                outcome.next_step,
                department_id=rfq.department_id,
                title=f"RFQ {rfq.code} awaits your approval",
                body=f"{rfq.title} (step: {outcome.next_step.name})",
                link=f"/rfqs/{rfq.id}",
                exclude=user.id,
            )
    rfq.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action=f"rfq.{'approve' if decision == 'approved' else 'reject'}",
        entity_type="Rfq",
        entity_id=str(rfq.id),
        reason=_clean(comment),
        metadata={"from": old, "to": rfq.status, "workflow_id": workflow.id if workflow else None},
    )
    if rfq.created_by_user_id and rfq.created_by_user_id != user.id:
        notify(s, rfq.created_by_user_id, f"RFQ {rfq.code}: {rfq.status}", _clean(comment), link=f"/rfqs/{rfq.id}", kind="approval")
    return rfq


# ---------- Negotiation ----------


def start_negotiation(s: "Session", rfq: Rfq, user: "User", deadline: Any = None) -> Rfq:
    if rfq.status != OPEN:
        raise ConflictError("rfq_closed")
    rfq.negotiation_round = (rfq.negotiation_round or 1) + 1
    rfq.negotiation_status = NEGOTIATION_ACTIVE
    rfq.negotiation_deadline = parse_datetime(deadline)
    rfq.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="rfq.negotiation_start",
        entity_type="Rfq",
        entity_id=str(rfq.id),
        metadata={"round": rfq.negotiation_round, "deadline": rfq.negotiation_deadline},
    )
    for inv in rfq.suppliers:
        if not inv.offers:
            continue
        lines = [f"Round {rfq.negotiation_round} of negotiation has started for {rfq.code}. You may revise your offer."]
        if rfq.negotiation_deadline:
            lines.append(f"Revised offers are accepted until {rfq.negotiation_deadline:%Y-%m-%d %H:%M}.")
        dispatch_email(
            s,
            inv.email,
            f"Negotiation round {rfq.negotiation_round}: {rfq.code}",
            template="generic",
            context={"heading": rfq.title, "lines": lines, "action_url": portal_url(f"/portal/rfq/{inv.token}"), "action_label": "Revise offer"},
            category="rfq_negotiation",
        )
    return rfq


def finish_negotiation(s: "Session", rfq: Rfq, user: "User") -> Rfq:
    if rfq.negotiation_status != NEGOTIATION_ACTIVE:
        raise ConflictError("status_conflict", "No negotiation round is active.")
    rfq.negotiation_status = NEGOTIATION_FINISHED
    rfq.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="rfq.negotiation_finish", entity_type="Rfq", entity_id=str(rfq.id), metadata={"round": rfq.negotiation_round})
    return rfq


# ---------- Comparison ----------


def latest_offer(inv: RfqSupplier) -> Offer | None:
    return max(inv.offers, key=lambda o: o.round) if inv.offers else None


def latest_offers(rfq: Rfq) -> list[tuple[RfqSupplier, Offer]]:
    out = []
    for inv in rfq.suppliers:
        offer = latest_offer(inv)
        if offer is not None:
            out.append((inv, offer))
    return out


def comparison(rfq: Rfq) -> dict:
    """Side-by-side view of each supplier's latest offer."""
    latest = latest_offers(rfq)
    items_out = []
    for ri in rfq.items:
        prices = []
        for inv, offer in latest:
            oi = next((x for x in offer.items if x.rfq_item_id == ri.id), None)
            if oi is None:
                continue
            prices.append(
                {
                    "rfq_supplier_id": inv.id,
                    "supplier": invitation_label(inv),
                    "offer_id": offer.id,
                    "quantity": float(oi.quantity),
                    "unit_price": float(oi.unit_price),
                    "vat_rate": float(oi.vat_rate or 0),
                    "brand": oi.brand,
                }
            )
        lowest = min((p["unit_price"] for p in prices), default=None)
        for p in prices:
            p["is_lowest"] = lowest is not None and p["unit_price"] == lowest
        items_out.append({"rfq_item_id": ri.id, "name": ri.name, "quantity": float(ri.quantity), "unit": ri.unit, "prices": prices})

    ranked = sorted(latest, key=lambda pair: pair[1].total_amount)
    suppliers_out = [
        {
            "rfq_supplier_id": inv.id,
            "supplier": invitation_label(inv),
            "offer_id": offer.id,
            "round": offer.round,
            "total_amount": float(offer.total_amount),
            "delivery_days": offer.delivery_days,
            "rank": i,
        }
        for i, (inv, offer) in enumerate(ranked, start=1)
    ]
    totals = [offer.total_amount for _, offer in latest]
    return {
        "items": items_out,
        "suppliers": suppliers_out,
        "lowest_total": float(min(totals)) if totals else None,
        "average_total": float(money(sum(totals, ZERO) / len(totals))) if totals else None,
    }


# ---------- Supplier portal ----------


def resolve_invitation(s: "Session", token: str) -> RfqSupplier:
    inv = s.query(RfqSupplier).filter(RfqSupplier.token == token).one_or_none()
    if inv is None:
        raise NotFoundError("invitation_not_found")
    if inv.token_expires_at < datetime.utcnow():
        raise ForbiddenError("invitation_expired")
    return inv


def offer_to_dict(offer: Offer) -> dict:
    return {
        "id": offer.id,
        "round": offer.round,
        "total_amount": float(offer.total_amount),
        "currency": offer.currency,
        "delivery_days": offer.delivery_days,
        "notes": offer.notes,
        "is_winner": offer.is_winner,
        "submitted_at": offer.submitted_at.isoformat() if offer.submitted_at else None,
        "items": [
            {
                "rfq_item_id": oi.rfq_item_id,
                "quantity": float(oi.quantity),
                "unit_price": float(oi.unit_price),
                "vat_rate": float(oi.vat_rate or 0),
                "brand": oi.brand,
                "notes": oi.notes,
            }
            for oi in offer.items
        ],
    }


def portal_view(s: "Session", inv: RfqSupplier) -> dict:
    rfq = inv.rfq
    if inv.stage == INVITED:
        inv.stage = VIEWED
        inv.viewed_at = datetime.utcnow()
        record_event(s, actor=None, action="portal.rfq_view", entity_type="Rfq", entity_id=str(rfq.id), metadata={"rfq_supplier_id": inv.id})
    offer = latest_offer(inv)
    return {
        "rfq": {
            "code": rfq.code,
            "title": rfq.title,
            "notes": rfq.notes,
            "status": rfq.status,
            "currency": rfq.currency,
            "deadline": rfq.deadline.isoformat() if rfq.deadline else None,
            "round": rfq.negotiation_round,
            "negotiation_status": rfq.negotiation_status,
            "negotiation_deadline": rfq.negotiation_deadline.isoformat() if rfq.negotiation_deadline else None,
        },
        "items": [{"id": ri.id, "name": ri.name, "quantity": float(ri.quantity), "unit": ri.unit, "sku": ri.sku} for ri in rfq.items],
        "supplier": {"name": invitation_label(inv), "stage": inv.stage},
        "offer": offer_to_dict(offer) if offer else None,
    }


def _offer_deadline(rfq: Rfq) -> datetime | None:
    if rfq.negotiation_status == NEGOTIATION_ACTIVE and rfq.negotiation_deadline:
        return rfq.negotiation_deadline
    return rfq.deadline


def _parse_offer_items(rfq: Rfq, raw: Any) -> list[dict]:
    known = {ri.id for ri in rfq.items}
    if not isinstance(raw, list) or not raw:
        raise BadRequestError("invalid_items", details=["At least one item is required."])
    errors = []
    out = []
    for i, it in enumerate(raw, start=1):
        if not isinstance(it, dict):
            errors.append(f"Item {i}: must be an object.")
            continue
        try:
            rfq_item_id = int(it.get("rfq_item_id"))
        except (TypeError, ValueError):
            rfq_item_id = None
        qty = parse_decimal_flexible(it.get("quantity"))
        price = parse_decimal_flexible(it.get("unit_price"))
        vat = parse_decimal_flexible(it.get("vat_rate")) if it.get("vat_rate") not in (None, "") else ZERO
        if rfq_item_id not in known:
            errors.append(f"Item {i}: rfq_item_id does not belong to this RFQ.")
        if qty is None or qty <= 0:
            errors.append(f"Item {i}: quantity must be greater than 0.")
        if price is None or price < 0:
            errors.append(f"Item {i}: unit_price must be 0 or more.")
        if vat is None or not (0 <= vat <= 100):
            errors.append(f"Item {i}: vat_rate must be between 0 and 100.")
        out.append(
            {
                "rfq_item_id": rfq_item_id,
                "quantity": qty,
                "unit_price": price,
                "vat_rate": vat,
                "brand": _clean(it.get("brand")),
                "notes": _clean(it.get("notes")),
            }
        )
    if errors:
        raise BadRequestError("invalid_items", details=errors)
    return out


def offer_total(items: list[dict]) -> Decimal:
    """Sum of quantity x unit price including VAT."""
    return money(sum((it["quantity"] * it["unit_price"] * (1 + it["vat_rate"] / 100) for it in items), ZERO))


def submit_offer(s: "Session", inv: RfqSupplier, payload: dict) -> Offer:
    rfq = inv.rfq
    if rfq.status != OPEN:
        raise ConflictError("rfq_closed")
    if rfq.negotiation_status == NEGOTIATION_FINISHED:
        raise ConflictError("negotiation_closed")
    deadline = _offer_deadline(rfq)
    if deadline is not None and deadline < datetime.utcnow():
        raise ForbiddenError("rfq_expired")

    items = _parse_offer_items(rfq, payload.get("items"))
    round_no = rfq.negotiation_round or 1
    offer = next((o for o in inv.offers if o.round == round_no), None)
    if offer is None:
        offer = Offer(round=round_no)
        inv.offers.append(offer)
    else:
        offer.items.clear()
        s.flush()

    offer.currency = _clean(payload.get("currency")) or rfq.currency
    offer.notes = _clean(payload.get("notes"))
    try:
        offer.delivery_days = int(payload["delivery_days"]) if payload.get("delivery_days") not in (None, "") else None
    except (TypeError, ValueError) as e:
        raise BadRequestError("bad_request", "delivery_days must be an integer.") from e
    offer.submitted_at = datetime.utcnow()
    offer.items.extend(
        OfferItem(
            rfq_item_id=it["rfq_item_id"],
            quantity=it["quantity"],
            unit_price=money(it["unit_price"]),
            vat_rate=it["vat_rate"],
            brand=it["brand"],
            notes=it["notes"],
        )
        for it in items
    )
    offer.total_amount = offer_total(items)
    inv.stage = OFFERED
    s.flush()

    record_event(
        s,
        actor=None,
        action="portal.offer",
        entity_type="Rfq",
        entity_id=str(rfq.id),
        metadata={"rfq_supplier_id": inv.id, "round": round_no, "total_amount": str(offer.total_amount)},
    )
    notify(
        s,
        rfq.created_by_user_id,
        f"New offer on {rfq.code}",
        f"{invitation_label(inv)}: {format_number_tr(offer.total_amount)} {offer.currency} (round {round_no})",
        link=f"/rfqs/{rfq.id}",
        kind="offer",
    )
    return offer


def decline_invitation(s: "Session", inv: RfqSupplier, reason: str | None = None) -> RfqSupplier:
    if inv.rfq.status != OPEN:
        raise ConflictError("rfq_closed")
    inv.stage = DECLINED
    record_event(s, actor=None, action="portal.decline", entity_type="Rfq", entity_id=str(inv.rfq_id), reason=_clean(reason), metadata={"rfq_supplier_id": inv.id})
    notify(s, inv.rfq.created_by_user_id, f"Invitation declined on {inv.rfq.code}", invitation_label(inv), link=f"/rfqs/{inv.rfq_id}", kind="offer")
    return inv


def negotiation_stats(inv: RfqSupplier) -> dict:
    """Where the caller stands among the latest offers, without revealing competitors."""
    rfq = inv.rfq
    latest = latest_offers(rfq)
    totals = sorted(offer.total_amount for _, offer in latest)
    mine = latest_offer(inv)
    rank = None
    if mine is not None:
        rank = 1 + sum(1 for t in totals if t < mine.total_amount)
    return {
        "round": rfq.negotiation_round,
        "negotiation_status": rfq.negotiation_status,
        "participants": len(totals),
        "rank": rank,
        "market_average": float(money(sum(totals, ZERO) / len(totals))) if totals else None,
        "lowest_total": float(totals[0]) if totals else None,
        "my_total": float(mine.total_amount) if mine else None,
        "is_my_offer_latest": bool(mine and mine.round == rfq.negotiation_round),
    }


# ---------- Finalize ----------


def resolve_invitation_supplier(s: "Session", inv: RfqSupplier, user: "User") -> Supplier:
    """Registered supplier behind an invitation, onboarding the contact when needed."""
    if inv.supplier_id:
        supplier = s.get(Supplier, inv.supplier_id)
        if supplier is not None:
            return supplier
    supplier = find_or_create_supplier(s, email=inv.email, name=inv.company_name, contact_name=inv.contact_name, user=user)
    inv.supplier_id = supplier.id
    return supplier


def _order_lines(rfq: Rfq, offer: Offer, selected: dict[int, Decimal | None] | None = None) -> list[dict]:
    rfq_items = {ri.id: ri for ri in rfq.items}
    lines = []
    for oi in offer.items:
        if selected is not None and oi.rfq_item_id not in selected:
            continue
        ri = rfq_items.get(oi.rfq_item_id)
        if ri is None:
            continue
        qty = selected.get(oi.rfq_item_id) if selected is not None else None
        lines.append(
            {
                "name": ri.name,
                "sku": ri.sku,
                "unit": ri.unit,
                "quantity": qty if qty is not None else Decimal(oi.quantity),
                "unit_price": money(oi.unit_price),
                "extra_costs": ZERO,
                "rfq_item_id": ri.id,
            }
        )
    return lines


def _offer_in_rfq(rfq: Rfq, offer_id: Any) -> Offer:
    try:
        oid = int(offer_id)
    except (TypeError, ValueError) as e:
        raise BadRequestError("bad_request", "offer_id is required.") from e
    for inv in rfq.suppliers:
        for offer in inv.offers:
            if offer.id == oid:
                return offer
    raise BadRequestError("bad_request", "The offer does not belong to this RFQ.")


def _close_rfq(s: "Session", rfq: Rfq, winners: list[Offer], orders: list["PurchaseOrder"], user: "User", mode: str) -> None:
    winner_invites = {o.rfq_supplier_id for o in winners}
    for offer in winners:
        offer.is_winner = True
    for inv in rfq.suppliers:
        inv.stage = AWARDED if inv.id in winner_invites else (LOST if inv.stage != DECLINED else DECLINED)
    rfq.status = COMPLETED
    rfq.updated_at = datetime.utcnow()
    mark_requests_status(s, list(rfq.requests), ORDERED, user, source=f"rfq:{rfq.code}")
    record_event(
        s,
        actor=user,
        action="rfq.finalize",
        entity_type="Rfq",
        entity_id=str(rfq.id),
        metadata={"mode": mode, "orders": [o.code for o in orders], "offers": [o.id for o in winners]},
    )


def _create_rfq_order(s: "Session", rfq: Rfq, offer: Offer, lines: list[dict], user: "User", company) -> "PurchaseOrder":
    supplier = resolve_invitation_supplier(s, offer.rfq_supplier, user)
    requests = list(rfq.requests)
    return build_order(
        s,
        supplier=supplier,
        company=company,
        items=lines,
        user=user,
        request=requests[0] if requests else None,
        extra_requests=requests[1:],
        rfq_id=rfq.id,
        offer_id=offer.id,
        department_id=rfq.department_id,
        currency=offer.currency,
        method="RFQ",
    )


def finalize_single(s: "Session", rfq: Rfq, payload: dict, user: "User") -> list["PurchaseOrder"]:
    if rfq.status not in FINALIZABLE_STATUSES:
        raise ConflictError("status_conflict")
    offer = _offer_in_rfq(rfq, payload.get("offer_id"))
    company = resolve_company(s, payload.get("company_id"))
    order = _create_rfq_order(s, rfq, offer, _order_lines(rfq, offer), user, company)
    _close_rfq(s, rfq, [offer], [order], user, "single")
    return [order]


def finalize_split(s: "Session", rfq: Rfq, payload: dict, user: "User") -> list["PurchaseOrder"]:
    """One order per offer from item-level selections."""
    if rfq.status not in FINALIZABLE_STATUSES:
        raise ConflictError("status_conflict")
    selections = payload.get("selections")
    if not isinstance(selections, list) or not selections:
        raise BadRequestError("no_valid_items")

    grouped: "OrderedDict[int, tuple[Offer, dict[int, Decimal | None]]]" = OrderedDict()
    for sel in selections:
        if not isinstance(sel, dict):
            continue
        offer = _offer_in_rfq(rfq, sel.get("offer_id"))
        try:
            rfq_item_id = int(sel.get("rfq_item_id"))
        except (TypeError, ValueError):
            continue
        if not any(oi.rfq_item_id == rfq_item_id for oi in offer.items):
            continue
        qty = parse_decimal_flexible(sel.get("quantity")) if sel.get("quantity") not in (None, "") else None
        if qty is not None and qty <= 0:
            continue
        grouped.setdefault(offer.id, (offer, {}))[1][rfq_item_id] = qty

    if not grouped:
        raise BadRequestError("no_valid_items")

    company = resolve_company(s, payload.get("company_id"))
    orders = []
    winners = []
    for offer, selected in grouped.values():
        lines = _order_lines(rfq, offer, selected)
        if not lines:
            continue
        orders.append(_create_rfq_order(s, rfq, offer, lines, user, company))
        winners.append(offer)
    if not orders:
        raise BadRequestError("no_valid_items")
    _close_rfq(s, rfq, winners, orders, user, "split")
    return orders


# ---------- Serialization ----------


def invitation_to_dict(inv: RfqSupplier, *, show_token: bool = False) -> dict:
    offer = latest_offer(inv)
    out = {
        "id": inv.id,
        "supplier_id": inv.supplier_id,
        "name": invitation_label(inv),
        "email": inv.email,
        "contact_name": inv.contact_name,
        "stage": inv.stage,
        "invited_at": inv.invited_at.isoformat() if inv.invited_at else None,
        "token_expires_at": inv.token_expires_at.isoformat() if inv.token_expires_at else None,
        "latest_offer": offer_to_dict(offer) if offer else None,
    }
    if show_token:
        out["token"] = inv.token
        out["portal_url"] = portal_url(f"/portal/rfq/{inv.token}")
    return out


def rfq_to_dict(rfq: Rfq, *, detail: bool = False, show_tokens: bool = False) -> dict:
    out = {
        "id": rfq.id,
        "code": rfq.code,
        "title": rfq.title,
        "status": rfq.status,
        "currency": rfq.currency,
        "deadline": rfq.deadline.isoformat() if rfq.deadline else None,
        "negotiation_round": rfq.negotiation_round,
        "negotiation_status": rfq.negotiation_status,
        "negotiation_deadline": rfq.negotiation_deadline.isoformat() if rfq.negotiation_deadline else None,
        "department_id": rfq.department_id,
        "request_ids": [r.id for r in rfq.requests],
        "supplier_count": len(rfq.suppliers),
        "offer_count": sum(1 for inv in rfq.suppliers if inv.offers),
        "created_at": rfq.created_at.isoformat() if rfq.created_at else None,
    }
    if detail:
        out["notes"] = rfq.notes
        out["items"] = [
            {"id": ri.id, "name": ri.name, "sku": ri.sku, "quantity": float(ri.quantity), "unit": ri.unit, "request_item_id": ri.request_item_id}
            for ri in rfq.items
        ]
        out["suppliers"] = [invitation_to_dict(inv, show_token=show_tokens) for inv in rfq.suppliers]
        out["comparison"] = comparison(rfq)
    return out
