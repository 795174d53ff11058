from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.db import db_session
from app.procurement.errors import NotFoundError, ValidationError
from app.procurement.models import User
from app.procurement.modules.orders.service import order_to_dict
from app.procurement.modules.rfq.models import Rfq, RfqSupplier
from app.procurement.modules.rfq.service import (
    add_invitation,
    change_rfq_status,
    create_rfq,
    decide_rfq,
    finalize_single,
    finalize_split,
    finish_negotiation,
    invitation_to_dict,
    publish_rfq,
    resend_invitation,
    rfq_to_dict,
    start_negotiation,
    validate_rfq_payload,
)
from app.procurement.rbac import get_scoped, require_api_permission, scope_query, user_has_permission
from app.procurement.utils import json_body, page_params, paginate

bp = Blueprint("rfq_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_rfq(s, rfq_id: int) -> Rfq:
    return get_scoped(s, Rfq, rfq_id, _current_user())


def _detail(rfq: Rfq) -> dict:
    return rfq_to_dict(rfq, detail=True, show_tokens=user_has_permission(_current_user(), "rfq.manage"))


# ---------- List / create ----------
@bp.get("/rfqs")
@require_api_permission("rfq.view")
def rfqs_list():
    s = db_session()
    q = scope_query(s.query(Rfq), Rfq, _current_user())
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Rfq.code.ilike(like) | Rfq.title.ilike(like))
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(Rfq.status == status_filter)
    page, size = page_params(request.args)
    return paginate(q.order_by(Rfq.created_at.desc(), Rfq.id.desc()), page, size, rfq_to_dict)


@bp.post("/rfqs")
@require_api_permission("rfq.create")
def rfqs_create():
    """Create an RFQ from purchase requests and invite suppliers."""
    s = db_session()
    payload = json_body()
    errors = validate_rfq_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    rfq = create_rfq(s, payload, _current_user())
    s.commit()
    return _detail(rfq), 201


@bp.get("/rfqs/<int:rfq_id>")
@require_api_permission("rfq.view")
def rfq_detail(rfq_id: int):
    """Items, invitations and the offer comparison."""
    s = db_session()
    return _detail(_get_rfq(s, rfq_id))


@bp.post("/rfqs/<int:rfq_id>/publish")
@require_api_permission("rfq.edit")
def rfq_publish(rfq_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    publish_rfq(s, rfq, _current_user())
    s.commit()
    return _detail(rfq)


@bp.patch("/rfqs/<int:rfq_id>/status")
@require_api_permission("rfq.edit")
def rfq_status(rfq_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    payload = json_body()
    status = (payload.get("status") or "").strip()
    if not status:
        raise ValidationError(details=["Status is required."])
    change_rfq_status(s, rfq, status, _current_user(), payload.get("reason"))
    s.commit()
    return rfq_to_dict(rfq)


# ---------- Invitations ----------
@bp.post("/rfqs/<int:rfq_id>/suppliers")
@require_api_permission("rfq.edit")
def rfq_add_supplier(rfq_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    payload = json_body()
    if not (payload.get("supplier_id") or payload.get("email")):
        raise ValidationError(details=["supplier_id or email is required."])
    inv = add_invitation(s, rfq, payload, _current_user())
    s.commit()
    return invitation_to_dict(inv, show_token=user_has_permission(_current_user(), "rfq.manage")), 201


@bp.post("/rfqs/<int:rfq_id>/suppliers/<int:invitation_id>/resend")
@require_api_permission("rfq.edit")
def rfq_resend_invitation(rfq_id: int, invitation_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    inv = s.get(RfqSupplier, invitation_id)
    if inv is None or inv.rfq_id != rfq.id:
        raise NotFoundError("invitation_not_found")
    resend_invitation(s, rfq, inv, _current_user())
    s.commit()
    return invitation_to_dict(inv, show_token=user_has_permission(_current_user(), "rfq.manage"))


# ---------- Approval ----------
@bp.post("/rfqs/<int:rfq_id>/approve")
@require_api_permission("rfq.approve")
def rfq_approve(rfq_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    decide_rfq(s, rfq, _current_user(), "approved", json_body().get("comment"))
    s.commit()
    return rfq_to_dict(rfq)


@bp.post("/rfqs/<int:rfq_id>/reject")
@require_api_permission("rfq.approve")
def rfq_reject(rfq_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    decide_rfq(s, rfq, _current_user(), "rejected", json_body().get("comment"))
    s.commit()
    return rfq_to_dict(rfq)


# ---------- Negotiation ----------
@bp.post("/rfqs/<int:rfq_id>/negotiation/start")
@require_api_permission("rfq.edit")
def rfq_negotiation_start(rfq_id: int):
    """Open a new offer round and invite everyone who already offered to revise."""
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    start_negotiation(s, rfq, _current_user(), json_body().get("deadline"))
    s.commit()
    return rfq_to_dict(rfq)


@bp.post("/rfqs/<int:rfq_id>/negotiation/finish")
@require_api_permission("rfq.edit")
def rfq_negotiation_finish(rfq_id: int):
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    finish_negotiation(s, rfq, _current_user())
    s.commit()
    return rfq_to_dict(rfq)


# ---------- Finalize ----------
@bp.post("/rfqs/<int:rfq_id>/finalize")
@require_api_permission("rfq.finalize")
def rfq_finalize(rfq_id: int):
    """Award a single offer and create its purchase order."""
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    orders = finalize_single(s, rfq, json_body(), _current_user())
    s.commit()
    return {"rfq": rfq_to_dict(rfq), "orders": [order_to_dict(o) for o in orders]}, 201


@bp.post("/rfqs/<int:rfq_id>/finalize-split")
@require_api_permission("rfq.finalize")
def rfq_finalize_split(rfq_id: int):
    """Award items across several offers; one order per offer."""
    s = db_session()
    rfq = _get_rfq(s, rfq_id)
    orders = finalize_split(s, rfq, json_body(), _current_user())
    s.commit()
    return {"rfq": rfq_to_dict(rfq), "orders": [order_to_dict(o) for o in orders]}, 201
