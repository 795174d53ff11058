from __future__ import annotations

from datetime import date

from flask import Blueprint, current_app, g, request, send_file
from werkzeug.utils import secure_filename

from app.procurement.audit import record_event
from app.procurement.db import db_session
from app.procurement.errors import BadRequestError, NotFoundError, ValidationError
from app.procurement.models import User
from app.procurement.modules.contracts.models import Contract, ContractAttachment
from app.procurement.modules.contracts.service import (
    EXPIRY_FILTERS,
    add_attachment,
    apply_expiry_filter,
    attachment_to_dict,
    contract_to_dict,
    create_contract,
    delete_contract,
    expire_contracts,
    send_expiry_reminders,
    templates_list,
    update_contract,
    validate_contract_payload,
)
from app.procurement.rbac import require_api_permission, scope_query
from app.procurement.storage import storage_from_config
from app.procurement.utils import json_body, page_params, paginate, parse_date

bp = Blueprint("contracts_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _contracts_query(s):
    q = s.query(Contract).filter(Contract.deleted_at.is_(None))
    return scope_query(q, Contract, _current_user())


def _get_contract(s, contract_id: int) -> Contract:
    contract = _contracts_query(s).filter(Contract.id == contract_id).one_or_none()
    if contract is None:
        raise NotFoundError()
    return contract


@bp.get("/contract-templates")
@require_api_permission("contracts.view")
def contract_templates():
    return {"items": templates_list()}


@bp.get("/contracts")
@require_api_permission("contracts.view")
def contracts_list():
    """List contracts. expiry=expired|expiring|active|perpetual narrows by end date."""
    s = db_session()
    q = _contracts_query(s)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Contract.number.ilike(like) | Contract.title.ilike(like) | Contract.parties.ilike(like))
    status_filter = (request.args.get("status") or "").strip()
    if status_filter:
        q = q.filter(Contract.status == status_filter)
    expiry = (request.args.get("expiry") or "").strip()
    if expiry:
        if expiry not in EXPIRY_FILTERS:
            raise BadRequestError("bad_request", f"expiry must be one of: {', '.join(EXPIRY_FILTERS)}")
        q = apply_expiry_filter(q, expiry, date.today(), current_app.config["CONTRACT_EXPIRY_WINDOW_DAYS"])
    order_id = request.args.get("order_id", type=int)
    if order_id:
        q = q.filter(Contract.order_id == order_id)
    page, size = page_params(request.args)
    return paginate(q.order_by(Contract.end_date.asc(), Contract.id.desc()), page, size, contract_to_dict)


@bp.post("/contracts")
@require_api_permission("contracts.create")
def contracts_create():
    s = db_session()
    payload = json_body()
    errors = validate_contract_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    contract = create_contract(s, payload, _current_user())
    s.commit()
    return contract_to_dict(contract, detail=True), 201


@bp.get("/contracts/<int:contract_id>")
@require_api_permission("contracts.view")
def contract_detail(contract_id: int):
    s = db_session()
    return contract_to_dict(_get_contract(s, contract_id), detail=True)


@bp.patch("/contracts/<int:contract_id>")
@require_api_permission("contracts.edit")
def contract_update(contract_id: int):
    s = db_session()
    contract = _get_contract(s, contract_id)
    payload = json_body()
    errors = validate_contract_payload(payload, existing=contract)
    if errors:
        raise ValidationError(details=errors)
    update_contract(s, contract, payload, _current_user())
    s.commit()
    return contract_to_dict(contract, detail=True)


@bp.delete("/contracts/<int:contract_id>")
@require_api_permission("contracts.delete")
def contract_delete(contract_id: int):
    s = db_session()
    contract = _get_contract(s, contract_id)
    delete_contract(s, contract, _current_user())
    s.commit()
    return {"deleted": True, "id": contract.id}


# ---------- Attachments ----------
@bp.post("/contracts/<int:contract_id>/attachments")
@require_api_permission("contracts.edit")
def contract_attachment_upload(contract_id: int):
    s = db_session()
    contract = _get_contract(s, contract_id)
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError(details=["File is required."])
    file_bytes = f.read()
    if not file_bytes:
        raise ValidationError(details=["File is empty."])
    filename = secure_filename(f.filename) or "document.bin"
    content_type = f.mimetype or "application/octet-stream"
    att = add_attachment(s, contract, file_bytes, filename, content_type, _current_user())
    s.commit()
    return attachment_to_dict(att), 201


@bp.get("/contracts/<int:contract_id>/attachments/<int:attachment_id>/download")
@require_api_permission("contracts.view")
def contract_attachment_download(contract_id: int, attachment_id: int):
    s = db_session()
    contract = _get_contract(s, contract_id)
    att = s.get(ContractAttachment, attachment_id)
    if att is None or att.contract_id != contract.id:
        raise NotFoundError()
    storage = storage_from_config(current_app.config)
    fobj = storage.open(att.storage_key)
    record_event(
        s,
        actor=_current_user(),
        action="contract.attachment_download",
        entity_type="Contract",
        entity_id=str(contract.id),
        metadata={"attachment_id": att.id, "filename": att.filename},
    )
    s.commit()
    return send_file(fobj, mimetype=att.content_type, as_attachment=True, download_name=att.filename, max_age=0)


# ---------- Expiry ----------
@bp.post("/contracts/remind-expiry")
@require_api_permission("contracts.edit")
def contracts_remind_expiry():
    """Run the expiry reminder pass now; `today` may be overridden for backfills."""
    s = db_session()
    today = parse_date(json_body().get("today")) or date.today()
    result = send_expiry_reminders(s, today)
    result["expired"] = expire_contracts(s, today)
    s.commit()
    return result
