from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.audit import record_event
from app.procurement.db import db_session, get_or_404
from app.procurement.errors import ValidationError
from app.procurement.models import User
from app.procurement.modules.approvals.models import ApprovalWorkflow
from app.procurement.modules.approvals.service import (
    create_workflow,
    update_workflow,
    validate_workflow_payload,
    workflow_to_dict,
)
from app.procurement.rbac import require_api_permission
from app.procurement.utils import json_body

bp = Blueprint("approvals_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/approval-workflows")
@require_api_permission("settings.edit")
def workflows_list():
    s = db_session()
    q = s.query(ApprovalWorkflow)
    entity_type = (request.args.get("entity_type") or "").strip()
    if entity_type:
        q = q.filter(ApprovalWorkflow.entity_type == entity_type)
    rows = q.order_by(ApprovalWorkflow.entity_type.asc(), ApprovalWorkflow.id.asc()).all()
    return {"items": [workflow_to_dict(wf) for wf in rows]}


@bp.post("/approval-workflows")
@require_api_permission("settings.edit")
def workflows_create():
    """Create a workflow with its ordered steps."""
    s = db_session()
    payload = json_body()
    errors = validate_workflow_payload(s, payload)
    if errors:
        raise ValidationError(details=errors)
    wf = create_workflow(s, payload, _current_user())
    s.commit()
    return workflow_to_dict(wf), 201


@bp.get("/approval-workflows/<int:workflow_id>")
@require_api_permission("settings.edit")
def workflows_detail(workflow_id: int):
    s = db_session()
    return workflow_to_dict(get_or_404(s, ApprovalWorkflow, workflow_id))


@bp.put("/approval-workflows/<int:workflow_id>")
@require_api_permission("settings.edit")
def workflows_update(workflow_id: int):
    """Replace a workflow definition, steps included."""
    s = db_session()
    wf = get_or_404(s, ApprovalWorkflow, workflow_id)
    payload = json_body()
    errors = validate_workflow_payload(s, payload)
    if errors:
        raise ValidationError(details=errors)
    update_workflow(s, wf, payload, _current_user())
    s.commit()
    return workflow_to_dict(wf)


@bp.delete("/approval-workflows/<int:workflow_id>")
@require_api_permission("settings.edit")
def workflows_delete(workflow_id: int):
    s = db_session()
    wf = get_or_404(s, ApprovalWorkflow, workflow_id)
    record_event(s, actor=_current_user(), action="workflow.delete", entity_type="ApprovalWorkflow", entity_id=str(wf.id), metadata={"name": wf.name})
    s.delete(wf)
    s.commit()
    return {"ok": True}
