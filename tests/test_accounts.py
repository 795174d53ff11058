"""Password reset and tenant invitations."""
import re
from datetime import datetime, timedelta

from app.procurement.db import session_scope
from app.procurement.models import PasswordResetToken
from app.procurement.modules.notifications.models import EmailOutbox


def _link_token(app, category, to, prefix):
    with session_scope(app) as s:
        row = (
            s.query(EmailOutbox)
            .filter(EmailOutbox.category == category, EmailOutbox.to_address == to)
            .order_by(EmailOutbox.id.desc())
            .first()
        )
        assert row is not None
        return re.search(rf"{prefix}/([A-Za-z0-9_-]+)", row.html).group(1)


def _me_status(client):
    return client.get("/api/auth/me").status_code


def test_password_reset_flow(app, login):
    client = app.test_client()
    r = client.post("/auth/password/forgot", json={"email": "Requester@example.com"})
    assert r.status_code == 200
    assert r.json == {"ok": True}
    token = _link_token(app, "password_reset", "requester@example.com", "/auth/reset")

    r = client.post("/auth/password/reset", json={"token": token, "password": "short"})
    assert r.status_code == 400
    assert r.json["code"] == "weak_password"

    r = client.post("/auth/password/reset", json={"token": token, "password": "a-much-longer-one"})
    assert r.status_code == 200

    # single use
    r = client.post("/auth/password/reset", json={"token": token, "password": "another-long-one"})
    assert r.json["code"] == "invalid_token"

    fresh = app.test_client()
    login(fresh, "requester@example.com", "a-much-longer-one")
    assert _me_status(fresh) == 200

    stale = app.test_client()
    login(stale, "requester@example.com")
    assert _me_status(stale) == 401


def test_password_reset_for_unknown_address_looks_the_same(app):
    r = app.test_client().post("/auth/password/forgot", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert r.json == {"ok": True}
    with session_scope(app) as s:
        assert s.query(EmailOutbox).filter(EmailOutbox.category == "password_reset").count() == 0
        assert s.query(PasswordResetToken).count() == 0


def test_new_reset_request_invalidates_the_previous_link(app):
    client = app.test_client()
    client.post("/auth/password/forgot", json={"email": "buyer@example.com"})
    first = _link_token(app, "password_reset", "buyer@example.com", "/auth/reset")
    client.post("/auth/password/forgot", json={"email": "buyer@example.com"})
    second = _link_token(app, "password_reset", "buyer@example.com", "/auth/reset")
    assert first != second

    assert client.post("/auth/password/reset", json={"token": first, "password": "long-enough-pw"}).json["code"] == "invalid_token"

    with session_scope(app) as s:
        live = s.query(PasswordResetToken).filter(PasswordResetToken.used_at.is_(None)).one()
        live.expires_at = datetime.utcnow() - timedelta(minutes=1)
    assert client.post("/auth/password/reset", json={"token": second, "password": "long-enough-pw"}).json["code"] == "invalid_token"


def test_tenant_invite_flow(app, admin, requester, department_ids):
    payload = {"email": "New.Person@example.com", "role_key": "requester", "department_id": department_ids["IT"]}
    assert requester.post("/api/tenant/invites", json=payload).status_code == 403

    r = admin.post("/api/tenant/invites", json=payload)
    assert r.status_code == 201, r.json
    assert r.json["email"] == "new.person@example.com"
    assert r.json["invite_url"].endswith(f"/auth/invite/{r.json['token']}")
    token = r.json["token"]
    assert _link_token(app, "tenant_invite", "new.person@example.com", "/auth/invite") == token

    r = admin.post("/api/tenant/invites", json=payload)
    assert r.status_code == 409
    assert r.json["code"] == "duplicate_invite"

    client = app.test_client()
    r = client.get(f"/auth/invite/{token}")
    assert r.status_code == 200
    assert r.json["role_key"] == "requester"

    assert client.post(f"/auth/invite/{token}", json={"password": "short"}).json["code"] == "weak_password"
    r = client.post(f"/auth/invite/{token}", json={"password": "welcome-aboard", "full_name": "New Person"})
    assert r.status_code == 201
    assert r.json["roles"] == ["requester"]

    me = client.get("/api/auth/me").json
    assert me["email"] == "new.person@example.com"
    assert me["department"]["name"] == "IT"

    assert client.post(f"/auth/invite/{token}", json={"password": "welcome-aboard"}).json["code"] == "invalid_token"
    assert admin.get("/api/tenant/invites?pending=1").json["items"] == []
    assert admin.get("/api/tenant/invites").json["items"][0]["accepted_at"] is not None


def test_tenant_invite_validation(app, admin):
    r = admin.post("/api/tenant/invites", json={"email": "requester@example.com", "role_key": "requester"})
    assert r.status_code == 409
    assert r.json["code"] == "duplicate"

    r = admin.post("/api/tenant/invites", json={"email": "bad", "role_key": "admin"})
    assert r.status_code == 400
    assert len(r.json["details"]) == 2

    assert app.test_client().get("/auth/invite/not-a-token").status_code == 400
