from __future__ import annotations

from datetime import datetime, time, timedelta

from flask import Blueprint, g, request

from app.procurement.db import db_session
from app.procurement.errors import ValidationError
from app.procurement.models import User
from app.procurement.modules.requests.models import PurchaseRequest
from app.procurement.modules.requests.service import (
    add_comment,
    approval_view,
    assign_request,
    cancel_request,
    change_status,
    comment_to_dict,
    create_request,
    decide,
    pending_approvals_for,
    request_history,
    request_to_dict,
    update_request,
    validate_request_payload,
)
from app.procurement.rbac import get_scoped, require_api_permission, scope_query
from app.procurement.utils import json_body, page_params, paginate, parse_date

bp = Blueprint("requests_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_request(s, request_id: int) -> PurchaseRequest:
    return get_scoped(s, PurchaseRequest, request_id, _current_user())


# ---------- List ----------
@bp.get("/requests")
@require_api_permission("requests.view")
def requests_list():
    """List purchase requests visible to the current user."""
    s = db_session()
    user = _current_user()
    q = scope_query(s.query(PurchaseRequest), PurchaseRequest, user)

    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(PurchaseRequest.code.ilike(like) | PurchaseRequest.subject.ilike(like))
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(PurchaseRequest.status == status_filter)
    department_id = request.args.get("department_id", type=int)
    if department_id:
        q = q.filter(PurchaseRequest.department_id == department_id)
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))
    if date_from:
        q = q.filter(PurchaseRequest.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(PurchaseRequest.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    sort_col = PurchaseRequest.budget if request.args.get("sort_by") == "budget" else PurchaseRequest.created_at
    sort_dir = (request.args.get("sort_dir") or "desc").lower()
    q = q.order_by(sort_col.asc() if sort_dir == "asc" else sort_col.desc(), PurchaseRequest.id.desc())

    page, size = page_params(request.args)
    return paginate(q, page, size, request_to_dict)


# ---------- Create ----------
@bp.post("/requests")
@require_api_permission("requests.create")
def requests_create():
    s = db_session()
    payload = json_body()
    errors = validate_request_payload(s, payload)
    if errors:
        raise ValidationError(details=errors)
    req = create_request(s, payload, _current_user())
    s.commit()
    return request_to_dict(req, detail=True, s=s), 201


# ---------- Detail / edit ----------
@bp.get("/requests/<int:request_id>")
@require_api_permission("requests.view")
def request_detail(request_id: int):
    s = db_session()
    return request_to_dict(_get_request(s, request_id), detail=True, s=s)


@bp.patch("/requests/<int:request_id>")
@require_api_permission()
def request_update(request_id: int):
    """Edit a Draft or Pending request (owner or requests.edit)."""
    s = db_session()
    req = _get_request(s, request_id)
    payload = json_body()
    errors = validate_request_payload(s, payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    update_request(s, req, payload, _current_user())
    s.commit()
    return request_to_dict(req, detail=True, s=s)


@bp.patch("/requests/<int:request_id>/status")
@require_api_permission("requests.edit")
def request_status(request_id: int):
    """Move a request to another status along the allowed transitions."""
    s = db_session()
    req = _get_request(s, request_id)
    payload = json_body()
    status = (payload.get("status") or "").strip()
    if not status:
        raise ValidationError(details=["Status is required."])
    change_status(s, req, status, _current_user(), note=payload.get("note"))
    s.commit()
    return request_to_dict(req)


# ---------- Approval ----------
@bp.post("/requests/<int:request_id>/approve")
@require_api_permission("requests.approve")
def request_approve(request_id: int):
    """Approve the current workflow step."""
    s = db_session()
    req = _get_request(s, request_id)
    outcome = decide(s, req, _current_user(), "approved", json_body().get("comment"))
    s.commit()
    return {
        "request": request_to_dict(req),
        "step_completed": outcome.step_completed,
        "is_complete": outcome.is_complete,
        "next_step": outcome.next_step.name if outcome.next_step else None,
    }


@bp.post("/requests/<int:request_id>/reject")
@require_api_permission("requests.approve")
def request_reject(request_id: int):
    s = db_session()
    req = _get_request(s, request_id)
    decide(s, req, _current_user(), "rejected", json_body().get("comment"))
    s.commit()
    return {"request": request_to_dict(req)}


@bp.get("/requests/<int:request_id>/approval")
@require_api_permission("requests.view")
def request_approval(request_id: int):
    """Workflow progress and approval history."""
    s = db_session()
    return approval_view(s, _get_request(s, request_id))


@bp.get("/approvals/pending")
@require_api_permission("requests.approve")
def approvals_pending():
    """Requests waiting on a step the current user can approve."""
    s = db_session()
    items = pending_approvals_for(s, _current_user())
    return {"items": items, "total": len(items)}


# ---------- Cancel / assign ----------
@bp.post("/requests/<int:request_id>/cancel")
@require_api_permission()
def request_cancel(request_id: int):
    s = db_session()
    req = _get_request(s, request_id)
    cancel_request(s, req, _current_user(), json_body().get("reason"))
    s.commit()
    return request_to_dict(req)


@bp.post("/requests/<int:request_id>/assign")
@require_api_permission("requests.assign")
def request_assign(request_id: int):
    s = db_session()
    req = _get_request(s, request_id)
    payload = json_body()
    if not payload.get("user_id"):
        raise ValidationError(details=["user_id is required."])
    assign_request(s, req, _current_user(), payload.get("user_id"))
    s.commit()
    return request_to_dict(req)


# ---------- Comments / history ----------
@bp.get("/requests/<int:request_id>/comments")
@require_api_permission("requests.view")
def request_comments(request_id: int):
    s = db_session()
    req = _get_request(s, request_id)
    return {"items": [comment_to_dict(s, c) for c in req.comments]}


@bp.post("/requests/<int:request_id>/comments")
@require_api_permission("requests.view")
def request_comment_add(request_id: int):
    s = db_session()
    req = _get_request(s, request_id)
    text = (json_body().get("text") or "").strip()
    if not text:
        raise ValidationError(details=["Comment text is required."])
    c = add_comment(s, req, _current_user(), text)
    s.commit()
    return comment_to_dict(s, c), 201


@bp.get("/requests/<int:request_id>/history")
@require_api_permission("requests.view")
def request_history_get(request_id: int):
    """Audit events plus approval records for one request."""
    s = db_session()
    return request_history(s, _get_request(s, request_id))
