from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from flask import current_app, render_template

from app.procurement.mailer import send_email, smtp_configured
from app.procurement.utils import is_valid_email, iso

from .models import EmailOutbox, Notification

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

EMAIL_TEMPLATES = ("generic", "detail")
MAX_ATTEMPTS = 3


def notify(
    s: "Session",
    user_id: int | None,
    title: str,
    body: str | None = None,
    *,
    link: str | None = None,
    kind: str = "info",
) -> Notification | None:
    """In-app notification. Silently skips a missing recipient."""
    if not user_id:
        return None
    n = Notification(user_id=user_id, title=title[:255], body=body, link=link, kind=kind)
    s.add(n)
    return n


def notify_many(s: "Session", user_ids, title: str, body: str | None = None, **kwargs: Any) -> list[Notification]:
    seen: set[int] = set()
    out = []
    for uid in user_ids:
        if not uid or uid in seen:
            continue
        seen.add(uid)
        n = notify(s, uid, title, body, **kwargs)
        if n is not None:
            out.append(n)
    return out


def portal_url(path: str) -> str:
    return f"{current_app.config['APP_BASE_URL']}{path}"


def _deliver(row: EmailOutbox) -> None:
    config = current_app.config
    row.attempts = (row.attempts or 0) + 1
    if not smtp_configured(config):
        row.status = "skipped"
        logger.info("SMTP not configured; email %s to %s recorded as skipped", row.category, row.to_address)
        return
    ok, info = send_email(config, row.to_address, row.subject, row.html)
    if ok:
        row.status = "sent"
        row.sent_at = datetime.utcnow()
        row.error = None
    else:
        row.status = "failed"
        row.error = info
        logger.error("Email %s to %s failed: %s", row.category, row.to_address, info)


def dispatch_email(
    s: "Session",
    to: str | None,
    subject: str,
    *,
    template: str = "generic",
    context: dict[str, Any] | None = None,
    category: str | None = None,
) -> EmailOutbox | None:
    """
    Render email/<template>.html, record it in the outbox and, unless
    EMAIL_DEFERRED is set, try to send it right away.
    """
    to = (to or "").strip()
    if not is_valid_email(to):
        logger.info("Skipping %s email: invalid recipient %r", category, to)
        return None
    if template not in EMAIL_TEMPLATES:
        raise ValueError(f"Unknown email template: {template}")
    html = render_template(f"email/{template}.html", subject=subject, **(context or {}))
    row = EmailOutbox(to_address=to, subject=subject[:512], html=html, category=category, status="queued")
    s.add(row)
    if not current_app.config.get("EMAIL_DEFERRED"):
        _deliver(row)
    return row


def process_outbox(s: "Session", limit: int = 50) -> dict[str, int]:
    """Send queued (and retry failed) outbox rows."""
    rows = (
        s.query(EmailOutbox)
        .filter(EmailOutbox.status.in_(("queued", "failed")), EmailOutbox.attempts < MAX_ATTEMPTS)
        .order_by(EmailOutbox.created_at.asc(), EmailOutbox.id.asc())
        .limit(limit)
        .all()
    )
    counts = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
    for row in rows:
        _deliver(row)
        counts["processed"] += 1
        counts[row.status] = counts.get(row.status, 0) + 1
    return counts


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "body": n.body,
        "link": n.link,
        "kind": n.kind,
        "read": n.read_at is not None,
        "created_at": iso(n.created_at),
    }
