"""
SMTP transport. Callers go through notifications.service.dispatch_email, which
records every message in the outbox before handing it to send_email().
"""
from __future__ import annotations

import logging
import re
import smtplib
from collections.abc import Mapping
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "SMTP server not configured (SMTP_SERVER environment variable missing)"


def html_to_text(html: str) -> str:
    text = re.sub(r"<(br|/p|/tr|/h\d)\s*/?>", "\n", html, flags=re.I)
    text = re.sub(r"<[^>]+>", "", text)
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def smtp_configured(config: Mapping[str, Any]) -> bool:
    return bool((config.get("SMTP_SERVER") or "").strip())


def send_email(config: Mapping[str, Any], to: str, subject: str, html: str) -> tuple[bool, str]:
    """
    Send one HTML email (with a plain-text alternative).
    Returns (ok, "sent" | error message); never raises for transport errors.
    """
    smtp_server = (config.get("SMTP_SERVER") or "").strip()
    if not smtp_server:
        return False, NOT_CONFIGURED

    msg = MIMEMultipart("alternative")
    msg.attach(MIMEText(html_to_text(html), "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))
    msg["Subject"] = subject
    msg["From"] = config.get("EMAIL_FROM") or config.get("SMTP_USERNAME") or "no-reply@example.com"
    msg["To"] = to

    try:
        with smtplib.SMTP(smtp_server, int(config.get("SMTP_PORT") or 587), timeout=30) as server:
            if config.get("SMTP_USE_TLS", True):
                server.starttls()
            username = (config.get("SMTP_USERNAME") or "").strip()
            password = config.get("SMTP_PASSWORD") or ""
            if username and password:
                server.login(username, password)
            server.send_message(msg)
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed sending to %s: %s", to, e)
        return False, f"SMTP authentication failed: {e}"
    except (smtplib.SMTPException, OSError) as e:
        logger.exception("SMTP error sending to %s", to)
        return False, f"SMTP error: {e}"

    logger.info("Sent email to %s subject=%r", to, subject)
    return True, "sent"
