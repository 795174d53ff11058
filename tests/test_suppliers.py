"""Tests for the suppliers module."""


def _create_category(api, name="Office supplies"):
    r = api.post("/api/supplier-categories", json={"name": name, "code": name[:3].upper()})
    assert r.status_code == 201
    return r.json["id"]


def test_suppliers_list_requires_auth(app):
    r = app.test_client().get("/api/suppliers")
    assert r.status_code == 401


def test_supplier_create_and_list(buyer):
    cat_id = _create_category(buyer)
    r = buyer.post(
        "/api/suppliers",
        json={"name": "Acme Ltd", "email": "Sales@Acme.example", "tax_id": "1234567890", "category_ids": [cat_id]},
    )
    assert r.status_code == 201
    assert r.json["status"] == "Pending"
    assert r.json["email"] == "sales@acme.example"
    assert r.json["categories"][0]["id"] == cat_id

    r = buyer.get("/api/suppliers?q=acme")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["total_pages"] == 1


def test_supplier_validation_and_duplicate_email(buyer):
    r = buyer.post("/api/suppliers", json={"name": "", "email": "not-an-email"})
    assert r.status_code == 400
    assert r.json["code"] == "validation_error"
    assert "Name is required." in r.json["details"]

    assert buyer.post("/api/suppliers", json={"name": "A", "email": "x@example.com"}).status_code == 201
    r = buyer.post("/api/suppliers", json={"name": "B", "email": "X@example.com"})
    assert r.status_code == 409
    assert r.json["code"] == "duplicate_supplier"


def test_supplier_approve_reject(buyer):
    sid = buyer.post("/api/suppliers", json={"name": "Beta"}).json["id"]

    r = buyer.post(f"/api/suppliers/{sid}/reject", json={})
    assert r.status_code == 400

    r = buyer.post(f"/api/suppliers/{sid}/reject", json={"reason": "Missing tax certificate"})
    assert r.status_code == 200
    assert r.json["status"] == "Rejected"
    assert r.json["rejection_reason"] == "Missing tax certificate"

    r = buyer.post(f"/api/suppliers/{sid}/approve")
    assert r.status_code == 200
    assert r.json["status"] == "Approved"
    assert r.json["rejection_reason"] is None


def test_supplier_update_and_toggle(buyer):
    sid = buyer.post("/api/suppliers", json={"name": "Gamma"}).json["id"]
    r = buyer.patch(f"/api/suppliers/{sid}", json={"phone": "+90 212 000 00 00", "custom_fields": {"iban": "TR00"}})
    assert r.status_code == 200
    assert r.json["phone"] == "+90 212 000 00 00"
    assert r.json["custom_fields"] == {"iban": "TR00"}

    r = buyer.post(f"/api/suppliers/{sid}/toggle-active")
    assert r.json["is_active"] is False
    assert buyer.get("/api/suppliers?active=1").json["total"] == 0


def test_suggest_only_returns_approved_active(buyer):
    cat_id = _create_category(buyer)
    approved = buyer.post("/api/suppliers", json={"name": "Approved Co", "category_ids": [cat_id]}).json["id"]
    buyer.post("/api/suppliers", json={"name": "Pending Co", "category_ids": [cat_id]})
    buyer.post(f"/api/suppliers/{approved}/approve")

    r = buyer.get(f"/api/suppliers/suggest?category_ids={cat_id}")
    assert r.status_code == 200
    assert [sp["name"] for sp in r.json["items"]] == ["Approved Co"]

    assert buyer.get("/api/suppliers/suggest?category_ids=x").status_code == 400


def test_portal_registration_lands_pending(app, buyer):
    client = app.test_client()
    r = client.post("/api/portal/register", json={"name": "Self Reg", "email": "self@example.com", "status": "Approved"})
    assert r.status_code == 201
    assert r.json["status"] == "Pending"

    r = client.post("/api/portal/register", json={"name": "No Email"})
    assert r.status_code == 400

    pending = buyer.get("/api/suppliers/pending").json
    assert [sp["email"] for sp in pending["items"]] == ["self@example.com"]


def test_supplier_performance_without_orders(buyer):
    sid = buyer.post("/api/suppliers", json={"name": "Delta"}).json["id"]
    r = buyer.get(f"/api/suppliers/{sid}/performance")
    assert r.status_code == 200
    assert r.json["total_orders"] == 0
    assert r.json["avg_lead_time_days"] is None
    assert r.json["total_spend"] == 0.0


def test_unknown_supplier_is_404(buyer):
    assert buyer.get("/api/suppliers/9999").status_code == 404


def test_supplier_portal_lists_its_orders(app, admin, buyer):
    admin.post("/api/companies", json={"name": "Our Company A.S."})
    sid = buyer.post("/api/suppliers", json={"name": "Acme", "email": "sales@acme.example"}).json["id"]
    other = buyer.post("/api/suppliers", json={"name": "Other"}).json["id"]
    for supplier_id, item in ((sid, "Paper"), (sid, "Toner"), (other, "Chairs")):
        buyer.post("/api/orders", json={"supplier_id": supplier_id, "items": [{"name": item, "quantity": 2, "unit_price": "5"}]})
    first = buyer.get("/api/orders").json["items"][-1]
    buyer.patch(f"/api/orders/{first['id']}", json={"status": "Closed"})

    r = buyer.post(f"/api/suppliers/{sid}/portal-link", json={"email": True})
    assert r.status_code == 201
    token = r.json["token"]
    assert r.json["url"].endswith(f"/portal/orders/{token}")

    client = app.test_client()
    view = client.get(f"/api/portal/orders/{token}").json
    assert view["supplier"]["name"] == "Acme"
    assert view["total"] == 2
    assert [o["items"][0]["name"] for o in view["orders"]] == ["Toner", "Paper"]
    assert view["orders"][0]["company"] == "Our Company A.S."
    assert view["orders"][0]["last_delivery"] is None

    closed = client.get(f"/api/portal/orders/{token}?status=Closed").json
    assert [o["code"] for o in closed["orders"]] == [first["code"]]

    assert client.get("/api/portal/orders/SUP-NOPE").status_code == 404
    assert buyer.post(f"/api/suppliers/{other}/portal-link", json={"email": True}).status_code == 400
