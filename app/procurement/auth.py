from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.procurement.audit import client_ip, record_event
from app.procurement.db import db_session
from app.procurement.errors import BadRequestError
from app.procurement.models import PasswordResetToken, User
from app.procurement.modules.organization.models import Department
from app.procurement.modules.organization.service import accept_invite, resolve_invite
from app.procurement.modules.notifications.service import dispatch_email, portal_url
from app.procurement.ratelimit import rate_limited
from app.procurement.rbac import require_api_permission, user_permission_keys
from app.procurement.security import ensure_csrf_token, hash_token, new_secret_token, password_problem
from app.procurement.utils import iso, json_body

bp = Blueprint("auth", __name__)
api_bp = Blueprint("auth_api", __name__)


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = client_ip()

    limiter = current_app.extensions["rate_limiter"]
    allowed, retry_after = limiter.hit("login", ip)
    if not allowed:
        current_app.logger.warning("Login rate limit exceeded ip=%s", ip)
        flash(f"Too many login attempts. Try again in {retry_after} seconds.", "danger")
        return render_template("auth/login.html", next=nxt), 429, {"Retry-After": str(retry_after)}

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=nxt or None))

    session["user_id"] = user.id
    ensure_csrf_token()
    limiter.reset("login", ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    # Only local paths, to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("admin.index"))


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return redirect(url_for("routes.index"))


# ---------- Password reset ----------
@bp.post("/password/forgot")
@rate_limited("sensitive")
def password_forgot():
    """Email a one-time reset link. The answer is the same whether or not the address is known."""
    email = (json_body().get("email") or "").strip().lower()
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none() if email else None
    if user is not None and user.is_active:
        now = datetime.utcnow()
        # one live link per user
        s.query(PasswordResetToken).filter(
            PasswordResetToken.user_id == user.id, PasswordResetToken.used_at.is_(None)
        ).update({PasswordResetToken.used_at: now})
        token, digest = new_secret_token()
        ttl = int(current_app.config.get("PASSWORD_RESET_TTL_HOURS", 2))
        s.add(PasswordResetToken(user_id=user.id, token_hash=digest, expires_at=now + timedelta(hours=ttl)))
        record_event(s, actor=None, action="auth.password_reset_requested", entity_type="User", entity_id=str(user.id))
        dispatch_email(
            s,
            user.email,
            "Password reset",
            template="generic",
            context={
                "heading": "Password reset",
                "lines": [f"A password reset was requested for {user.email}.", f"The link is valid for {ttl} hour(s)."],
                "action_url": portal_url(f"/auth/reset/{token}"),
                "action_label": "Choose a new password",
            },
            category="password_reset",
        )
        s.commit()
    else:
        current_app.logger.info("Password reset requested for unknown or inactive address")
    return {"ok": True}


@bp.post("/password/reset")
@rate_limited("sensitive")
def password_reset():
    payload = json_body()
    s = db_session()
    row = (
        s.query(PasswordResetToken)
        .filter(PasswordResetToken.token_hash == hash_token(payload.get("token") or ""))
        .one_or_none()
    )
    if row is None or row.used_at is not None or row.expires_at < datetime.utcnow():
        raise BadRequestError("invalid_token")
    problem = password_problem(payload.get("password"))
    if problem:
        raise BadRequestError(problem)
    user = s.get(User, row.user_id)
    if user is None or not user.is_active:
        raise BadRequestError("invalid_token")
    user.password_hash = generate_password_hash(payload["password"])
    row.used_at = datetime.utcnow()
    record_event(s, actor=user, action="auth.password_reset", entity_type="User", entity_id=str(user.id))
    s.commit()
    return {"ok": True}


# ---------- Tenant invitations ----------
@bp.get("/invite/<token>")
def invite_get(token: str):
    invite = resolve_invite(db_session(), token)
    return {"email": invite.email, "role_key": invite.role_key, "expires_at": iso(invite.expires_at)}


@bp.post("/invite/<token>")
@rate_limited("sensitive")
def invite_accept(token: str):
    """Create the invited account and sign it in."""
    s = db_session()
    invite = resolve_invite(s, token)
    user = accept_invite(s, invite, json_body())
    s.commit()
    session["user_id"] = user.id
    ensure_csrf_token()
    return {"id": user.id, "email": user.email, "tenant_id": user.tenant_id, "roles": sorted(user.role_keys)}, 201


# ---------- JSON session helpers ----------
@api_bp.get("/auth/csrf")
def auth_csrf():
    """CSRF token for API clients that authenticate with the session cookie."""
    return {"csrf_token": ensure_csrf_token()}


@api_bp.get("/auth/me")
@require_api_permission()
def auth_me():
    """Current user with roles, effective permissions and department."""
    user: User = g.current_user
    s = db_session()
    dept = s.get(Department, user.department_id) if user.department_id else None
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "is_admin": user.is_admin,
        "tenant_id": user.tenant_id,
        "roles": sorted(user.role_keys),
        "permissions": user_permission_keys(user),
        "department": {"id": dept.id, "name": dept.name} if dept else None,
    }
