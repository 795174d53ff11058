"""
Purchase request lifecycle.

A request is raised by a unit, walks through the configured approval
workflow, then moves on to sourcing (RFQ) and ordering. Status changes made
by other modules (RFQ creation, order creation) go through
mark_requests_status() so the transition table stays the single gatekeeper
for manual moves while automatic moves stay lenient.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.procurement.audit import audit_to_dict, record_event
from app.procurement.db import next_sequential_code
from app.procurement.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from app.procurement.models import AuditEvent, User
from app.procurement.modules.approvals.service import (
    act,
    approval_history,
    approval_progress,
    notify_approvers,
    public_progress,
    resolve_workflow,
    restart_cycle,
    user_can_act,
)
from app.procurement.modules.notifications.service import dispatch_email, notify
from app.procurement.modules.organization.models import Department
from app.procurement.modules.organization.service import reserve_budget
from app.procurement.rbac import scope_query, user_has_permission
from app.procurement.utils import is_valid_email, money, parse_decimal_flexible

from .models import PurchaseRequest, RequestComment, RequestItem

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


DRAFT = "Draft"
PENDING = "Pending"
IN_APPROVAL = "In Approval"
APPROVED = "Approved"
REJECTED = "Rejected"
SOURCING = "Sourcing"
ORDERED = "Ordered"
COMPLETED = "Completed"
CANCELLED = "Cancelled"

STATUSES = (DRAFT, PENDING, IN_APPROVAL, APPROVED, REJECTED, SOURCING, ORDERED, COMPLETED, CANCELLED)

STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    DRAFT: (PENDING, CANCELLED),
    PENDING: (DRAFT, IN_APPROVAL, APPROVED, REJECTED, CANCELLED),
    IN_APPROVAL: (APPROVED, REJECTED, CANCELLED),
    APPROVED: (SOURCING, ORDERED, COMPLETED, CANCELLED),
    REJECTED: (DRAFT,),
    SOURCING: (APPROVED, ORDERED, CANCELLED),
    ORDERED: (COMPLETED,),
    COMPLETED: (),
    CANCELLED: (),
}

EDITABLE_STATUSES = (DRAFT, PENDING)
CANCELLABLE_STATUSES = (DRAFT, PENDING, IN_APPROVAL)
ACTIONABLE_STATUSES = (PENDING, IN_APPROVAL)


def _clean(value: Any) -> str | None:
    return (str(value).strip() if value is not None else "") or None


# ---------- Validation ----------


def parse_request_items(raw: Any) -> tuple[list[dict], list[str]]:
    """Normalize the items list; returns (items, errors)."""
    if not isinstance(raw, list) or not raw:
        return [], ["At least one item is required."]
    items: list[dict] = []
    errors: list[str] = []
    for i, it in enumerate(raw, start=1):
        if not isinstance(it, dict):
            errors.append(f"Item {i}: must be an object.")
            continue
        name = _clean(it.get("name"))
        qty = parse_decimal_flexible(it.get("quantity"))
        price = parse_decimal_flexible(it.get("unit_price")) if it.get("unit_price") not in (None, "") else Decimal("0")
        if not name:
            errors.append(f"Item {i}: name is required.")
        if qty is None or qty <= 0:
            errors.append(f"Item {i}: quantity must be greater than 0.")
        if price is None or price < 0:
            errors.append(f"Item {i}: unit_price must be 0 or more.")
        items.append(
            {
                "name": name,
                "quantity": qty,
                "unit_price": price,
                "unit": _clean(it.get("unit")),
                "sku": _clean(it.get("sku")),
            }
        )
    return items, errors


def validate_request_payload(s: "Session", payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "subject" in payload:
        if not _clean(payload.get("subject")):
            errors.append("Subject is required.")
    if not partial or "department_id" in payload:
        dept_id = payload.get("department_id")
        if not dept_id:
            errors.append("Department is required.")
        else:
            try:
                if s.get(Department, int(dept_id)) is None:
                    errors.append("Department not found.")
            except (TypeError, ValueError):
                errors.append("department_id must be an integer.")
    email = _clean(payload.get("department_email"))
    if email and not is_valid_email(email):
        errors.append("Department email is invalid.")
    if "budget" in payload and payload.get("budget") not in (None, ""):
        b = parse_decimal_flexible(payload.get("budget"))
        if b is None or b < 0:
            errors.append("Budget must be a non-negative number.")
    if not partial or "items" in payload:
        errors.extend(parse_request_items(payload.get("items"))[1])
    return errors


def _build_items(parsed: list[dict]) -> list[RequestItem]:
    return [
        RequestItem(
            name=it["name"],
            quantity=it["quantity"],
            unit_price=money(it["unit_price"]),
            unit=it["unit"],
            sku=it["sku"],
        )
        for it in parsed
    ]


def items_total(items) -> Decimal:
    return money(sum((Decimal(it.quantity) * Decimal(it.unit_price or 0) for it in items), Decimal("0")))


# ---------- Create / update ----------


def create_request(s: "Session", payload: dict, user: User) -> PurchaseRequest:
    code = _clean(payload.get("code"))
    if code:
        if s.query(PurchaseRequest).filter(PurchaseRequest.code == code).count():
            raise ConflictError("duplicate_code")
    else:
        code = next_sequential_code(s, PurchaseRequest.code, f"REQ-{datetime.utcnow().year}")

    parsed, _ = parse_request_items(payload.get("items"))
    items = _build_items(parsed)
    budget_raw = payload.get("budget")
    budget = money(parse_decimal_flexible(budget_raw)) if budget_raw not in (None, "") else items_total(items)

    now = datetime.utcnow()
    req = PurchaseRequest(
        code=code,
        subject=_clean(payload.get("subject")),
        justification=_clean(payload.get("justification")),
        budget=budget,
        currency=_clean(payload.get("currency")) or current_app.config.get("DEFAULT_CURRENCY", "TRY"),
        status=DRAFT if payload.get("draft") else PENDING,
        department_id=int(payload["department_id"]),
        department_email=_clean(payload.get("department_email")),
        related_person=_clean(payload.get("related_person")),
        owner_user_id=user.id,
        tenant_id=user.tenant_id,
        created_at=now,
        updated_at=now,
    )
    req.items = items
    s.add(req)
    s.flush()
    record_event(
        s,
        actor=user,
        action="request.create",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        metadata={"code": req.code, "status": req.status, "budget": str(req.budget), "items": len(items)},
    )
    if req.status == PENDING:
        _notify_current_approvers(s, req, exclude=user.id)
    return req


def can_edit_request(user: User, req: PurchaseRequest) -> bool:
    return req.owner_user_id == user.id or user_has_permission(user, "requests.edit")


def update_request(s: "Session", req: PurchaseRequest, payload: dict, user: User) -> PurchaseRequest:
    if not can_edit_request(user, req):
        raise ForbiddenError(details={"missing_permission": "requests.edit"})
    if req.status not in EDITABLE_STATUSES:
        raise ConflictError("status_conflict", f"Requests in status '{req.status}' cannot be edited.")

    changes: dict[str, Any] = {}
    for field in ("subject", "justification", "department_email", "related_person", "currency"):
        if field in payload:
            new = _clean(payload.get(field))
            if field == "subject" and not new:
                continue
            if new != getattr(req, field):
                changes[field] = {"old": getattr(req, field), "new": new}
                setattr(req, field, new)
    if "department_id" in payload and payload.get("department_id"):
        dept_id = int(payload["department_id"])
        if dept_id != req.department_id:
            changes["department_id"] = {"old": req.department_id, "new": dept_id}
            req.department_id = dept_id
    if "items" in payload:
        parsed, _ = parse_request_items(payload.get("items"))
        req.items.clear()
        s.flush()
        req.items.extend(_build_items(parsed))
        changes["items"] = len(parsed)
        if payload.get("budget") in (None, ""):
            req.budget = items_total(req.items)
    if payload.get("budget") not in (None, ""):
        new_budget = money(parse_decimal_flexible(payload.get("budget")))
        if new_budget != req.budget:
            changes["budget"] = {"old": str(req.budget), "new": str(new_budget)}
            req.budget = new_budget

    req.updated_at = datetime.utcnow()
    if changes:
        record_event(s, actor=user, action="request.edit", entity_type="PurchaseRequest", entity_id=str(req.id), metadata={"changes": changes})
    return req


# ---------- Notifications ----------


def _notify_parties(s: "Session", req: PurchaseRequest, title: str, body: str, *, exclude: int | None = None) -> None:
    """In-app and email notice to the owner and the responsible user."""
    for uid in {req.owner_user_id, req.responsible_user_id}:
        if not uid or uid == exclude:
            continue
        notify(s, uid, title, body, link=f"/requests/{req.id}", kind="request")
        u = s.get(User, uid)
        if u is not None:
            dispatch_email(
                s,
                u.email,
                title,
                template="generic",
                context={"heading": title, "lines": [body, f"Request: {req.code} - {req.subject}"]},
                category="request",
            )


def _notify_current_approvers(s: "Session", req: PurchaseRequest, *, exclude: int | None = None) -> int:
    workflow = resolve_workflow(s, "Request", req.department_id)
    if workflow is None:
        return 0
    step = approval_progress(s, workflow, "Request", req.id)["_current"]
    return notify_approvers(
        s,
        step,
        department_id=req.department_id,
        tenant_id=req.tenant_id,
        title=f"Request {req.code} awaits your approval",
        body=f"{req.subject} (step: {step.name})" if step else None,
        link=f"/requests/{req.id}",
        exclude=exclude,
    )


def _add_comment(s: "Session", req: PurchaseRequest, user: User | None, text: str) -> RequestComment:
    c = RequestComment(request_id=req.id, author_user_id=user.id if user else None, text=text)
    req.comments.append(c)
    return c


# ---------- Status ----------


def change_status(s: "Session", req: PurchaseRequest, status: str, user: User, note: str | None = None) -> PurchaseRequest:
    if status not in STATUSES:
        raise BadRequestError("bad_request", f"Unknown status '{status}'.")
    if status not in STATUS_TRANSITIONS.get(req.status, ()):
        raise ConflictError("status_conflict", f"Cannot move from '{req.status}' to '{status}'.")
    old = req.status
    req.status = status
    req.updated_at = datetime.utcnow()
    if status == PENDING:
        restart_cycle(s, "Request", req.id, user)
        req.current_step_name = None
    note = _clean(note)
    _add_comment(s, req, user, f"Status changed: {old} -> {status}" + (f". {note}" if note else ""))
    record_event(
        s,
        actor=user,
        action="request.status",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        reason=note,
        metadata={"from": old, "to": status},
    )
    _notify_parties(s, req, f"Request {req.code} is now {status}", note or f"Status changed from {old} to {status}.")
    if status == PENDING:
        _notify_current_approvers(s, req, exclude=user.id)
    return req


def mark_requests_status(s: "Session", requests: list[PurchaseRequest], status: str, user: User | None, *, source: str) -> None:
    """Automatic moves driven by RFQ/order events; terminal requests are left alone."""
    for req in requests:
        if req.status in (CANCELLED, COMPLETED, REJECTED) or req.status == status:
            continue
        old = req.status
        req.status = status
        req.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="request.status",
            entity_type="PurchaseRequest",
            entity_id=str(req.id),
            metadata={"from": old, "to": status, "source": source},
        )


# ---------- Approval ----------


def decide(s: "Session", req: PurchaseRequest, user: User, decision: str, comment: str | None = None):
    """Approve or reject the current workflow step and move the request accordingly."""
    if req.status not in ACTIONABLE_STATUSES:
        raise ConflictError("status_conflict", f"Requests in status '{req.status}' cannot be approved or rejected.")
    workflow = resolve_workflow(s, "Request", req.department_id)
    if workflow is None:
        raise NotFoundError("workflow_not_found")

    outcome = act(s, entity_type="Request", entity_id=req.id, workflow=workflow, user=user, decision=decision, comment=comment)
    now = datetime.utcnow()
    req.last_approval_at = now
    req.updated_at = now

    if decision == "rejected":
        req.status = REJECTED
        req.current_step_name = outcome.step.name
        text = f"Rejected at step '{outcome.step.name}'"
    elif outcome.is_complete:
        req.status = APPROVED
        req.current_step_name = None
        reserve_budget(s, req.department_id, req.created_at.year, req.budget or Decimal("0"))
        text = f"Approved at final step '{outcome.step.name}'"
    elif outcome.step_completed and outcome.next_step is not None:
        req.status = IN_APPROVAL
        req.current_step_name = outcome.next_step.name
        text = f"Step '{outcome.step.name}' approved; next: '{outcome.next_step.name}'"
        notify_approvers(
            s,
            outcome.next_step,
            department_id=req.department_id,
            tenant_id=req.tenant_id,
            title=f"Request {req.code} awaits your approval",
            body=f"{req.subject} (step: {outcome.next_step.name})",
            link=f"/requests/{req.id}",
            exclude=user.id,
        )
    else:
        req.status = IN_APPROVAL
        req.current_step_name = outcome.step.name
        text = f"Approval recorded at step '{outcome.step.name}'"

    comment = _clean(comment)
    _add_comment(s, req, user, text + (f". {comment}" if comment else ""))
    record_event(
        s,
        actor=user,
        action=f"request.{'approve' if decision == 'approved' else 'reject'}",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        reason=comment,
        metadata={"status": req.status, "step": outcome.step.name},
    )
    if req.owner_user_id and req.owner_user_id != user.id:
        notify(s, req.owner_user_id, f"Request {req.code}: {req.status}", text, link=f"/requests/{req.id}", kind="approval")
    return outcome


def approval_view(s: "Session", req: PurchaseRequest) -> dict:
    workflow = resolve_workflow(s, "Request", req.department_id)
    history = approval_history(s, "Request", req.id)
    if workflow is None:
        return {"workflow": None, "history": history}
    return {"workflow": public_progress(approval_progress(s, workflow, "Request", req.id)), "history": history}


def pending_approvals_for(s: "Session", user: User) -> list[dict]:
    """Requests whose current approval step this user may act on."""
    q = scope_query(s.query(PurchaseRequest), PurchaseRequest, user)
    rows = q.filter(PurchaseRequest.status.in_(ACTIONABLE_STATUSES)).order_by(PurchaseRequest.created_at.asc()).all()
    out = []
    for req in rows:
        workflow = resolve_workflow(s, "Request", req.department_id)
        if workflow is None:
            continue
        progress = approval_progress(s, workflow, "Request", req.id)
        step = progress["_current"]
        if step is None or not user_can_act(user, step):
            continue
        out.append({**request_to_dict(req), "current_step": progress["current_step"]})
    return out


# ---------- Cancel / assign / comments ----------


def cancel_request(s: "Session", req: PurchaseRequest, user: User, reason: str | None = None) -> PurchaseRequest:
    if req.owner_user_id != user.id and not user.is_admin:
        raise ForbiddenError()
    if req.status not in CANCELLABLE_STATUSES:
        raise ConflictError("cannot_cancel")
    old = req.status
    reason = _clean(reason)
    req.status = CANCELLED
    req.cancel_reason = reason
    req.updated_at = datetime.utcnow()
    _add_comment(s, req, user, "Request cancelled" + (f": {reason}" if reason else ""))
    record_event(s, actor=user, action="request.cancel", entity_type="PurchaseRequest", entity_id=str(req.id), reason=reason, metadata={"from": old})
    return req


def assign_request(s: "Session", req: PurchaseRequest, user: User, assignee_id: Any) -> PurchaseRequest:
    try:
        assignee = s.get(User, int(assignee_id))
    except (TypeError, ValueError):
        assignee = None
    if assignee is None:
        raise NotFoundError("not_found", "Assignee not found.")
    old = req.responsible_user_id
    req.responsible_user_id = assignee.id
    req.updated_at = datetime.utcnow()
    _add_comment(s, req, user, f"Assigned to {assignee.display_name}")
    record_event(
        s,
        actor=user,
        action="request.assign",
        entity_type="PurchaseRequest",
        entity_id=str(req.id),
        metadata={"from": old, "to": assignee.id},
    )
    notify(s, assignee.id, f"Request {req.code} assigned to you", req.subject, link=f"/requests/{req.id}", kind="assignment")
    dispatch_email(
        s,
        assignee.email,
        f"Request {req.code} assigned to you",
        template="generic",
        context={"heading": "New assignment", "lines": [f"{req.code} - {req.subject}"]},
        category="request",
    )
    return req


def add_comment(s: "Session", req: PurchaseRequest, user: User, text: str) -> RequestComment:
    c = _add_comment(s, req, user, text.strip())
    s.flush()
    record_event(s, actor=user, action="request.comment", entity_type="PurchaseRequest", entity_id=str(req.id))
    return c


def request_history(s: "Session", req: PurchaseRequest) -> dict:
    events = (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == "PurchaseRequest", AuditEvent.entity_id == str(req.id))
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        .all()
    )
    return {"events": [audit_to_dict(ev) for ev in events], "approvals": approval_history(s, "Request", req.id)}


# ---------- Serialization ----------


def comment_to_dict(s: "Session", c: RequestComment) -> dict:
    author = s.get(User, c.author_user_id) if c.author_user_id else None
    return {
        "id": c.id,
        "text": c.text,
        "author": author.display_name if author else None,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }


def item_to_dict(it: RequestItem) -> dict:
    return {
        "id": it.id,
        "name": it.name,
        "sku": it.sku,
        "quantity": float(it.quantity),
        "unit": it.unit,
        "unit_price": float(it.unit_price or 0),
    }


def request_to_dict(req: PurchaseRequest, *, detail: bool = False, s: "Session | None" = None) -> dict:
    out = {
        "id": req.id,
        "code": req.code,
        "subject": req.subject,
        "status": req.status,
        "budget": float(req.budget or 0),
        "currency": req.currency,
        "department_id": req.department_id,
        "department_email": req.department_email,
        "owner_user_id": req.owner_user_id,
        "responsible_user_id": req.responsible_user_id,
        "related_person": req.related_person,
        "current_step_name": req.current_step_name,
        "last_approval_at": req.last_approval_at.isoformat() if req.last_approval_at else None,
        "created_at": req.created_at.isoformat() if req.created_at else None,
        "updated_at": req.updated_at.isoformat() if req.updated_at else None,
    }
    if detail:
        out["justification"] = req.justification
        out["cancel_reason"] = req.cancel_reason
        out["items"] = [item_to_dict(it) for it in req.items]
        if s is not None:
            out["comments"] = [comment_to_dict(s, c) for c in req.comments]
    return out
