import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.procurement.models import AuditEvent, User
from app.procurement.utils import iso


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    Works outside a request too (jobs); request_id/client_ip are then left empty.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=(reason or None) and reason[:512],
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip() if in_request else None,
    )
    s.add(ev)
    return ev


def client_ip() -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    fwd = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if fwd:
        return fwd
    real = (request.headers.get("X-Real-IP") or "").strip()
    if real:
        return real
    return request.remote_addr or "unknown"


def audit_to_dict(ev: AuditEvent) -> dict:
    return {
        "id": ev.id,
        "created_at": iso(ev.created_at),
        "actor": ev.actor_user_email,
        "action": ev.action,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
        "request_id": ev.request_id,
        "client_ip": ev.client_ip,
    }
