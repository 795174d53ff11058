from datetime import date


def test_department_duplicate_name(admin):
    assert admin.post("/api/departments", json={"name": "Ops"}).status_code == 201
    r = admin.post("/api/departments", json={"name": "Ops"})
    assert r.status_code == 409


def test_departments_scoped_for_unit_users(manager):
    # unit_manager has org.view but not data.view_all; departments carry no department_id
    r = manager.get("/api/departments")
    assert r.status_code == 200
    assert {d["name"] for d in r.json["items"]} >= {"IT", "Finance"}


def test_company_lifecycle(admin):
    r = admin.post("/api/companies", json={"name": "Holding A.S.", "tax_id": "999", "email": "info@holding.example"})
    assert r.status_code == 201
    cid = r.json["id"]

    r = admin.patch(f"/api/companies/{cid}", json={"phone": "0212"})
    assert r.status_code == 200
    assert r.json["phone"] == "0212"

    r = admin.post(f"/api/companies/{cid}/toggle-active")
    assert r.json["is_active"] is False
    assert admin.get("/api/companies?active=1").json["items"] == []


def test_budget_upsert_and_remaining(admin, department_ids):
    year = date.today().year
    payload = {"department_id": department_ids["IT"], "year": year, "total_amount": "100.000,00"}
    r = admin.post("/api/budgets", json=payload)
    assert r.status_code == 200
    assert r.json["total_amount"] == 100000.0
    assert r.json["remaining"] == 100000.0

    r = admin.post("/api/budgets", json={**payload, "total_amount": 50000})
    assert r.json["total_amount"] == 50000.0
    assert len(admin.get(f"/api/budgets?year={year}").json["items"]) == 1


def test_budget_validation(admin):
    r = admin.post("/api/budgets", json={"year": 1990, "total_amount": -1})
    assert r.status_code == 400
    assert len(r.json["details"]) == 3


def test_delivery_addresses_keep_a_single_default(admin, manager):
    r = admin.post("/api/delivery-addresses", json={"name": "HQ", "address": "Main St 1", "city": "Istanbul", "is_default": True})
    assert r.status_code == 201
    hq = r.json["id"]
    r = admin.post("/api/delivery-addresses", json={"name": "Depot", "address": "Port Rd 5", "is_default": True})
    depot = r.json["id"]

    items = admin.get("/api/delivery-addresses").json["items"]
    assert [(a["id"], a["is_default"]) for a in items] == [(depot, True), (hq, False)]

    r = admin.patch(f"/api/delivery-addresses/{hq}", json={"active": False, "phone": "0212"})
    assert r.json["phone"] == "0212"
    assert [a["id"] for a in admin.get("/api/delivery-addresses?active=1").json["items"]] == [depot]

    assert manager.get("/api/delivery-addresses").status_code == 200
    assert manager.post("/api/delivery-addresses", json={"name": "X", "address": "Y"}).status_code == 403


def test_delivery_address_validation_and_delete(admin):
    r = admin.post("/api/delivery-addresses", json={"name": " "})
    assert r.status_code == 400
    assert len(r.json["details"]) == 2

    aid = admin.post("/api/delivery-addresses", json={"name": "Annex", "address": "Side St 2"}).json["id"]
    assert admin.delete(f"/api/delivery-addresses/{aid}").status_code == 200
    assert admin.get("/api/delivery-addresses").json["items"] == []
