from __future__ import annotations

from datetime import datetime

from flask import Blueprint, g, request

from app.procurement.db import db_session
from app.procurement.errors import NotFoundError
from app.procurement.models import User
from app.procurement.modules.notifications.models import Notification
from app.procurement.modules.notifications.service import notification_to_dict
from app.procurement.rbac import require_api_permission
from app.procurement.utils import page_params, paginate

bp = Blueprint("notifications_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/notifications")
@require_api_permission()
def notifications_list():
    """Current user's notifications, newest first."""
    s = db_session()
    q = s.query(Notification).filter(Notification.user_id == _current_user().id)
    if (request.args.get("unread") or "").lower() in ("1", "true"):
        q = q.filter(Notification.read_at.is_(None))
    q = q.order_by(Notification.created_at.desc(), Notification.id.desc())
    page, size = page_params(request.args)
    return paginate(q, page, size, notification_to_dict)


@bp.post("/notifications/<int:notification_id>/read")
@require_api_permission()
def notifications_mark_read(notification_id: int):
    s = db_session()
    n = s.get(Notification, notification_id)
    if not n or n.user_id != _current_user().id:
        raise NotFoundError()
    if n.read_at is None:
        n.read_at = datetime.utcnow()
    s.commit()
    return notification_to_dict(n)


@bp.post("/notifications/read-all")
@require_api_permission()
def notifications_mark_all_read():
    s = db_session()
    now = datetime.utcnow()
    updated = (
        s.query(Notification)
        .filter(Notification.user_id == _current_user().id, Notification.read_at.is_(None))
        .update({Notification.read_at: now}, synchronize_session=False)
    )
    s.commit()
    return {"ok": True, "updated": updated}
