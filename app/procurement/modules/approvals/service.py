"""
Approval workflow engine.

A workflow is an ordered list of steps. Each step names the roles allowed to
decide and how many approvals complete it. Progress is never stored; it is
derived from ApprovalRecord rows every time, so records are the only source
of truth for where an entity stands.

Only records of the current cycle count. A cycle ends when the entity is sent
back into approval (a rejected request resubmitted, a rejected RFQ reopened);
restart_cycle() voids the earlier records, which remain visible in history.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, ForbiddenError
from app.procurement.models import Role
from app.procurement.modules.notifications.service import notify_many
from app.procurement.utils import iso

from .models import ApprovalRecord, ApprovalStep, ApprovalWorkflow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User


ENTITY_TYPES = ("Request", "Rfq")
DECISIONS = ("approved", "rejected")


@dataclass(frozen=True)
class ApprovalOutcome:
    decision: str
    step: ApprovalStep
    step_completed: bool
    next_step: ApprovalStep | None
    is_complete: bool
    record: ApprovalRecord


def resolve_workflow(s: "Session", entity_type: str, department_id: int | None) -> ApprovalWorkflow | None:
    """Department-specific active workflow first, then the global one."""
    base = s.query(ApprovalWorkflow).filter(
        ApprovalWorkflow.entity_type == entity_type,
        ApprovalWorkflow.is_active.is_(True),
    )
    if department_id is not None:
        wf = base.filter(ApprovalWorkflow.department_id == department_id).order_by(ApprovalWorkflow.id.desc()).first()
        if wf is not None and wf.steps:
            return wf
    wf = base.filter(ApprovalWorkflow.department_id.is_(None)).order_by(ApprovalWorkflow.id.desc()).first()
    if wf is not None and wf.steps:
        return wf
    return None


def _records(
    s: "Session", entity_type: str, entity_id: int, workflow_id: int | None = None, *, include_voided: bool = False
) -> list[ApprovalRecord]:
    q = s.query(ApprovalRecord).filter(ApprovalRecord.entity_type == entity_type, ApprovalRecord.entity_id == entity_id)
    if workflow_id is not None:
        q = q.filter(ApprovalRecord.workflow_id == workflow_id)
    if not include_voided:
        q = q.filter(ApprovalRecord.voided_at.is_(None))
    return q.order_by(ApprovalRecord.created_at.asc(), ApprovalRecord.id.asc()).all()


def restart_cycle(s: "Session", entity_type: str, entity_id: int, user: "User | None" = None) -> int:
    """Void the live records of an entity so approval starts again from the first step."""
    live = _records(s, entity_type, entity_id)
    if not live:
        return 0
    now = datetime.utcnow()
    for r in live:
        r.voided_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="approval.restart",
        entity_type=entity_type,
        entity_id=str(entity_id),
        metadata={"voided": len(live)},
    )
    return len(live)


def approval_progress(s: "Session", workflow: ApprovalWorkflow, entity_type: str, entity_id: int) -> dict:
    records = _records(s, entity_type, entity_id, workflow.id)
    steps_out = []
    current: ApprovalStep | None = None
    rejected = False

    for step in sorted(workflow.steps, key=lambda st: st.step_order):
        mine = [r for r in records if r.step_order == step.step_order]
        approved_count = sum(1 for r in mine if r.decision == "approved")
        required = max(1, step.min_approvals or 1)
        if any(r.decision == "rejected" for r in mine):
            state = "rejected"
            rejected = True
        elif current is None and not rejected and approved_count >= required:
            state = "completed"
        elif current is None and not rejected:
            state = "current"
            current = step
        else:
            state = "pending"
        steps_out.append(
            {
                "step_order": step.step_order,
                "name": step.name,
                "approver_roles": list(step.approver_roles or []),
                "min_approvals": required,
                "approved_count": approved_count,
                "state": state,
            }
        )

    return {
        "workflow_id": workflow.id,
        "workflow_name": workflow.name,
        "steps": steps_out,
        "current_step": None if rejected or current is None else {"step_order": current.step_order, "name": current.name},
        "is_complete": not rejected and current is None,
        "is_rejected": rejected,
        "_current": None if rejected else current,
    }


def user_can_act(user: "User", step: ApprovalStep) -> bool:
    if user.is_admin:
        return True
    return bool(user.role_keys & set(step.approver_roles or []))


def step_approver_ids(s: "Session", step: ApprovalStep, department_id: int | None, tenant_id: int | None = None) -> list[int]:
    """Active users holding a step role, limited to the record's department when they belong to one."""
    from app.procurement.models import User

    roles = set(step.approver_roles or [])
    out = []
    for u in s.query(User).filter(User.is_active.is_(True)).order_by(User.id.asc()).all():
        if not (u.role_keys & roles):
            continue
        if u.department_id is not None and department_id is not None and u.department_id != department_id:
            continue
        if tenant_id is not None and u.tenant_id not in (None, tenant_id):
            continue
        out.append(u.id)
    return out


def notify_approvers(
    s: "Session",
    step: ApprovalStep | None,
    *,
    department_id: int | None,
    title: str,
    body: str | None = None,
    link: str | None = None,
    tenant_id: int | None = None,
    exclude: int | None = None,
) -> int:
    if step is None:
        return 0
    ids = [uid for uid in step_approver_ids(s, step, department_id, tenant_id) if uid != exclude]
    return len(notify_many(s, ids, title, body, link=link, kind="approval"))


def act(
    s: "Session",
    *,
    entity_type: str,
    entity_id: int,
    workflow: ApprovalWorkflow,
    user: "User",
    decision: str,
    comment: str | None = None,
) -> ApprovalOutcome:
    """Record one decision on the current step."""
    if decision not in DECISIONS:
        raise BadRequestError("bad_request", f"decision must be one of: {', '.join(DECISIONS)}")

    progress = approval_progress(s, workflow, entity_type, entity_id)
    if progress["is_rejected"]:
        raise ConflictError("status_conflict")
    step: ApprovalStep | None = progress["_current"]
    if step is None:
        raise BadRequestError("all_steps_completed")
    if not user_can_act(user, step):
        raise ForbiddenError("not_authorized_for_step", details={"step": step.name, "approver_roles": step.approver_roles or []})

    existing = [
        r
        for r in _records(s, entity_type, entity_id, workflow.id)
        if r.step_order == step.step_order and r.decision == "approved"
    ]
    if decision == "approved" and any(r.approver_user_id == user.id for r in existing):
        raise BadRequestError("already_approved")

    record = ApprovalRecord(
        entity_type=entity_type,
        entity_id=entity_id,
        workflow_id=workflow.id,
        step_order=step.step_order,
        step_name=step.name,
        decision=decision,
        approver_user_id=user.id,
        comment=(comment or "").strip() or None,
    )
    s.add(record)
    s.flush()

    step_completed = decision == "approved" and len(existing) + 1 >= max(1, step.min_approvals or 1)
    next_step = None
    if step_completed:
        later = [st for st in workflow.steps if st.step_order > step.step_order]
        next_step = min(later, key=lambda st: st.step_order) if later else None

    record_event(
        s,
        actor=user,
        action=f"approval.{decision}",
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=record.comment,
        metadata={"workflow_id": workflow.id, "step_order": step.step_order, "step_name": step.name, "step_completed": step_completed},
    )
    return ApprovalOutcome(
        decision=decision,
        step=step,
        step_completed=step_completed,
        next_step=next_step,
        is_complete=step_completed and next_step is None,
        record=record,
    )


def approval_history(s: "Session", entity_type: str, entity_id: int) -> list[dict]:
    from app.procurement.models import User

    out = []
    for r in _records(s, entity_type, entity_id, include_voided=True):
        approver = s.get(User, r.approver_user_id) if r.approver_user_id else None
        out.append(
            {
                "id": r.id,
                "step_order": r.step_order,
                "step_name": r.step_name,
                "decision": r.decision,
                "approver": approver.email if approver else None,
                "comment": r.comment,
                "created_at": iso(r.created_at),
                "voided": r.voided_at is not None,
            }
        )
    return out


def public_progress(progress: dict) -> dict:
    return {k: v for k, v in progress.items() if not k.startswith("_")}


# ---------- Workflow definitions ----------


def validate_workflow_payload(s: "Session", payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    if payload.get("entity_type") not in ENTITY_TYPES:
        errors.append(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
    steps = payload.get("steps")
    if not isinstance(steps, list) or not steps:
        errors.append("At least one step is required.")
        return errors

    known_roles = {r.key for r in s.query(Role).all()}
    orders: set[int] = set()
    for i, st in enumerate(steps, start=1):
        if not isinstance(st, dict):
            errors.append(f"Step {i}: must be an object.")
            continue
        try:
            order = int(st.get("step_order", i))
        except (TypeError, ValueError):
            errors.append(f"Step {i}: step_order must be an integer.")
            continue
        if order in orders:
            errors.append(f"Step {i}: duplicate step_order {order}.")
        orders.add(order)
        if not (st.get("name") or "").strip():
            errors.append(f"Step {i}: name is required.")
        roles = st.get("approver_roles") or []
        if not isinstance(roles, list) or not roles:
            errors.append(f"Step {i}: approver_roles must be a non-empty list.")
        else:
            unknown = sorted(set(roles) - known_roles)
            if unknown:
                errors.append(f"Step {i}: unknown roles {', '.join(unknown)}.")
        try:
            if int(st.get("min_approvals", 1)) < 1:
                errors.append(f"Step {i}: min_approvals must be at least 1.")
        except (TypeError, ValueError):
            errors.append(f"Step {i}: min_approvals must be an integer.")
    return errors


def _build_steps(payload: dict) -> list[ApprovalStep]:
    steps = [
        ApprovalStep(
            step_order=int(st.get("step_order", i)),
            name=st["name"].strip(),
            approver_roles=list(st.get("approver_roles") or []),
            min_approvals=int(st.get("min_approvals", 1)),
        )
        for i, st in enumerate(payload["steps"], start=1)
    ]
    return sorted(steps, key=lambda st: st.step_order)


def create_workflow(s: "Session", payload: dict, user: "User") -> ApprovalWorkflow:
    wf = ApprovalWorkflow(
        name=payload["name"].strip(),
        entity_type=payload["entity_type"],
        department_id=payload.get("department_id"),
        is_active=bool(payload.get("is_active", True)),
    )
    wf.steps = _build_steps(payload)
    s.add(wf)
    s.flush()
    record_event(s, actor=user, action="workflow.create", entity_type="ApprovalWorkflow", entity_id=str(wf.id), metadata={"name": wf.name})
    return wf


def update_workflow(s: "Session", wf: ApprovalWorkflow, payload: dict, user: "User") -> ApprovalWorkflow:
    wf.name = payload["name"].strip()
    wf.entity_type = payload["entity_type"]
    wf.department_id = payload.get("department_id")
    wf.is_active = bool(payload.get("is_active", wf.is_active))
    wf.steps.clear()
    s.flush()
    wf.steps.extend(_build_steps(payload))
    s.flush()
    record_event(s, actor=user, action="workflow.edit", entity_type="ApprovalWorkflow", entity_id=str(wf.id), metadata={"name": wf.name})
    return wf


def workflow_to_dict(wf: ApprovalWorkflow) -> dict:
    return {
        "id": wf.id,
        "name": wf.name,
        "entity_type": wf.entity_type,
        "department_id": wf.department_id,
        "is_active": wf.is_active,
        "steps": [
            {
                "id": st.id,
                "step_order": st.step_order,
                "name": st.name,
                "approver_roles": list(st.approver_roles or []),
                "min_approvals": st.min_approvals,
            }
            for st in wf.steps
        ],
    }
