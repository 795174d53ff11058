from app.procurement import create_app


def test_health_ok(app):
    client = app.test_client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_admin_access(app, login):
    client = app.test_client()
    # Anonymous should be redirected to the login form
    r = client.get("/admin/")
    assert r.status_code in (302, 403)

    r = login(client, "admin@example.com")
    assert r.status_code == 302

    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"Database" in r.data


def test_bad_password_is_audited(app, admin, login):
    client = app.test_client()
    r = login(client, "admin@example.com", "wrong")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = admin.get("/api/audit?action=auth.login_failed")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["items"][0]["entity_id"] == "admin@example.com"


def test_api_requires_login(app):
    client = app.test_client()
    r = client.get("/api/requests")
    assert r.status_code == 401
    assert r.json["code"] == "unauthorized"


def test_me_lists_roles_and_permissions(requester):
    r = requester.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["roles"] == ["requester"]
    assert "requests.create" in r.json["permissions"]
    assert "rfq.view" not in r.json["permissions"]
    assert r.json["department"]["name"] == "IT"


def test_missing_permission_is_403(requester):
    r = requester.get("/api/rfqs")
    assert r.status_code == 403
    assert r.json["details"]["missing_permission"] == "rfq.view"


def test_write_without_csrf_token_is_rejected(admin):
    r = admin.client.post("/api/departments", json={"name": "Ops"})
    assert r.status_code == 400
    assert r.json["code"] == "csrf_failed"

    r = admin.post("/api/departments", json={"name": "Ops"})
    assert r.status_code == 201


def test_login_rate_limit(app, login):
    limited = create_app({"RATELIMIT_ENABLED": True, "RATELIMIT_LOGIN": "2/300"})
    client = limited.test_client()
    for _ in range(2):
        assert login(client, "admin@example.com", "wrong").status_code == 302
    r = login(client, "admin@example.com", "wrong")
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) > 0


def test_api_rate_limit(app):
    limited = create_app({"RATELIMIT_ENABLED": True, "RATELIMIT_API": "3/60"})
    client = limited.test_client()
    codes = [client.get("/api/docs").status_code for _ in range(4)]
    assert codes[:3] == [200, 200, 200]
    assert codes[3] == 429


def test_sensitive_rate_limit_returns_json_error(app):
    limited = create_app({"RATELIMIT_ENABLED": True, "RATELIMIT_SENSITIVE": "1/60"})
    client = limited.test_client()
    assert client.post("/api/portal/rfq/nope/decline", json={}).status_code == 404
    r = client.post("/api/portal/rfq/nope/decline", json={})
    assert r.status_code == 429
    assert r.json["code"] == "rate_limited"
    assert int(r.headers["Retry-After"]) > 0


def test_openapi_document(app):
    r = app.test_client().get("/api/docs")
    assert r.status_code == 200
    doc = r.json
    assert doc["openapi"].startswith("3.0")
    assert "/api/requests/{request_id}" in doc["paths"]
    assert doc["paths"]["/api/requests"]["post"]["x-permission"] == "requests.create"


def test_unknown_api_route_is_json_404(admin):
    r = admin.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["code"] == "not_found"
