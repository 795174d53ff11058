"""Direct purchase orders, goods receipts, the delivery portal and three-way match."""
from datetime import date

import pytest


@pytest.fixture()
def order(admin, buyer, department_ids):
    admin.post("/api/companies", json={"name": "Our Company A.S."})
    supplier = buyer.post("/api/suppliers", json={"name": "Acme", "email": "sales@acme.example"}).json
    r = buyer.post(
        "/api/orders",
        json={
            "supplier_id": supplier["id"],
            "department_id": department_ids["IT"],
            "estimated_delivery": "2030-01-15",
            "items": [
                {"name": "Laptop", "sku": "LAP-1", "unit": "pcs", "quantity": 4, "unit_price": "1000"},
                {"name": "Mouse", "unit": "pcs", "quantity": 10, "unit_price": "20", "extra_costs": "50"},
            ],
        },
    )
    assert r.status_code == 201, r.json
    return r.json


def _lines(order):
    return {it["name"]: it["id"] for it in order["items"]}


def test_create_direct_order(order):
    assert order["code"] == f"ORD-{date.today().year}-00001"
    assert order["status"] == "Open"
    assert order["method"] == "Direct"
    assert order["total_amount"] == 4250.0
    assert order["estimated_delivery"] == "2030-01-15"
    assert order["deliveries"] == []


def test_order_validation_and_permissions(buyer, requester):
    r = buyer.post("/api/orders", json={"items": [{"quantity": 1}], "estimated_delivery": "someday"})
    assert r.status_code == 400
    assert len(r.json["details"]) == 3

    assert requester.post("/api/orders", json={}).status_code == 403


def test_order_requires_company(buyer):
    sid = buyer.post("/api/suppliers", json={"name": "Solo"}).json["id"]
    r = buyer.post("/api/orders", json={"supplier_id": sid, "items": [{"name": "Pen", "quantity": 1}]})
    assert r.status_code == 400
    assert r.json["code"] == "company_required"


def test_order_status_transitions(order, buyer):
    r = buyer.patch(f"/api/orders/{order['id']}", json={"status": "Closed", "notes": "Done"})
    assert r.status_code == 200
    assert r.json["status"] == "Closed"

    r = buyer.patch(f"/api/orders/{order['id']}", json={"status": "Open"})
    assert r.status_code == 409


def test_order_list_filters(order, buyer):
    assert buyer.get("/api/orders?status=Open").json["total"] == 1
    assert buyer.get("/api/orders?status=Closed").json["total"] == 0
    assert buyer.get(f"/api/orders?q={order['code']}").json["total"] == 1


def test_partial_then_full_delivery(order, api_as, buyer):
    warehouse = api_as("warehouse@example.com")
    lines = _lines(order)

    r = warehouse.post("/api/deliveries", json={"order_id": order["id"], "items": [{"order_item_id": lines["Laptop"], "quantity": 2}]})
    assert r.status_code == 201
    assert r.json["status"] == "Pending"
    assert r.json["order_status"] == "Open"

    r = warehouse.post(f"/api/deliveries/{r.json['id']}/approve")
    assert r.status_code == 200
    assert r.json["order_status"] == "Partially Delivered"

    # 3 announced against 2 remaining; only 2 accepted
    r = warehouse.post("/api/deliveries", json={"order_id": order["id"], "items": [{"order_item_id": lines["Laptop"], "quantity": 3}]})
    assert len(r.json["warnings"]) == 1
    r = warehouse.post(
        f"/api/deliveries/{r.json['id']}/approve",
        json={"items": [{"order_item_id": lines["Laptop"], "approved_quantity": 2}]},
    )
    assert r.json["items"][0]["approved_quantity"] == 2.0
    assert r.json["order_status"] == "Partially Delivered"

    r = warehouse.post(
        "/api/deliveries",
        json={"order_id": order["id"], "items": [{"order_item_id": lines["Mouse"], "quantity": 10}], "approve": True},
    )
    assert r.json["status"] == "Approved"
    assert r.json["order_status"] == "Delivered"

    detail = buyer.get(f"/api/orders/{order['id']}").json
    assert detail["status"] == "Delivered"
    assert len(detail["deliveries"]) == 3


def test_delivery_rejection(order, api_as):
    warehouse = api_as("warehouse@example.com")
    rid = warehouse.post(
        "/api/deliveries", json={"order_id": order["id"], "items": [{"order_item_id": _lines(order)["Mouse"], "quantity": 5}]}
    ).json["id"]

    assert warehouse.post(f"/api/deliveries/{rid}/reject", json={}).status_code == 400
    r = warehouse.post(f"/api/deliveries/{rid}/reject", json={"reason": "Damaged boxes"})
    assert r.json["status"] == "Rejected"
    assert r.json["reject_reason"] == "Damaged boxes"

    assert warehouse.post(f"/api/deliveries/{rid}/approve").status_code == 409
    assert warehouse.get(f"/api/deliveries?order_id={order['id']}&status=Rejected").json["total"] == 1


def test_delivery_needs_valid_lines_and_permission(order, api_as, buyer):
    warehouse = api_as("warehouse@example.com")
    r = warehouse.post("/api/deliveries", json={"order_id": order["id"], "items": [{"order_item_id": 9999, "quantity": 1}]})
    assert r.status_code == 400
    assert r.json["code"] == "no_valid_items"

    # purchasing can view receipts but not record them
    assert buyer.post("/api/deliveries", json={"order_id": order["id"]}).status_code == 403


def test_portal_delivery_token(app, order, buyer):
    r = buyer.post(f"/api/orders/{order['id']}/delivery-token")
    assert r.status_code == 201
    token = r.json["token"]
    assert token.startswith("DLV-")

    client = app.test_client()
    view = client.get(f"/api/portal/deliveries/{token}").json
    assert view["order_code"] == order["code"]
    assert {it["name"]: it["remaining"] for it in view["items"]} == {"Laptop": 4.0, "Mouse": 10.0}

    r = client.post(f"/api/portal/deliveries/{token}", json={"items": [{"order_item_id": _lines(order)["Laptop"], "quantity": 4}]})
    assert r.status_code == 201
    assert r.json["status"] == "Pending"

    r = client.post(f"/api/portal/deliveries/{token}", json={"items": [{"order_item_id": _lines(order)["Laptop"], "quantity": 1}]})
    assert r.status_code == 403
    assert r.json["code"] == "token_expired"

    assert client.get("/api/portal/deliveries/DLV-NOPE").status_code == 404

    receipts = buyer.get(f"/api/deliveries?order_id={order['id']}").json["items"]
    assert [rc["source"] for rc in receipts] == ["portal"]
    assert any("Delivery announced" in n["title"] for n in buyer.get("/api/notifications").json["items"])


def test_three_way_match(order, api_as, buyer):
    warehouse = api_as("warehouse@example.com")
    finance = api_as("finance@example.com")
    lines = _lines(order)
    warehouse.post(
        "/api/deliveries",
        json={
            "order_id": order["id"],
            "items": [{"order_item_id": lines["Laptop"], "quantity": 4}, {"order_item_id": lines["Mouse"], "quantity": 10}],
            "approve": True,
        },
    )
    r = finance.post(
        "/api/invoices",
        json={
            "number": "INV-1",
            "order_id": order["id"],
            "due_date": "2030-02-01",
            "status": "Pending",
            "items": [
                {"name": "Laptop computer", "sku": "LAP-1", "quantity": 4, "unit_price": 1000},
                {"name": "mouse", "quantity": 10, "unit_price": 21},
            ],
        },
    )
    assert r.status_code == 201, r.json

    match = buyer.get(f"/api/orders/{order['id']}/match").json
    by_name = {ln["name"]: ln for ln in match["lines"]}
    assert by_name["Laptop"]["invoiced"] == 4.0
    assert by_name["Laptop"]["qty_match"] is True
    assert by_name["Laptop"]["price_variance"] is False
    assert by_name["Mouse"]["delivered"] == 10.0
    assert by_name["Mouse"]["price_variance"] is True
    assert match["ordered_total"] == 4250.0
    assert match["invoiced_total"] == 4210.0
    assert match["balance"] == 40.0
    assert match["is_fully_matched"] is False


def test_match_flags_over_invoicing(order, api_as, buyer):
    api_as("finance@example.com").post(
        "/api/invoices",
        json={
            "number": "INV-2",
            "order_code": order["code"],
            "due_date": "2030-02-01",
            "status": "Pending",
            "items": [{"name": "Laptop", "sku": "LAP-1", "quantity": 1, "unit_price": 1000}],
        },
    )
    laptop = next(ln for ln in buyer.get(f"/api/orders/{order['id']}/match").json["lines"] if ln["name"] == "Laptop")
    assert laptop["over_invoiced"] is True
    assert laptop["under_delivered"] is True


def test_order_item_override_does_not_hit_a_delivery_item_with_the_same_id(order, api_as):
    warehouse = api_as("warehouse@example.com")
    lines = _lines(order)
    warehouse.post(
        "/api/deliveries",
        json={"order_id": order["id"], "items": [{"order_item_id": lines["Laptop"], "quantity": 1}], "approve": True},
    )
    receipt = warehouse.post(
        "/api/deliveries",
        json={
            "order_id": order["id"],
            "items": [{"order_item_id": lines["Laptop"], "quantity": 1}, {"order_item_id": lines["Mouse"], "quantity": 5}],
        },
    ).json
    laptop_line = next(di for di in receipt["items"] if di["order_item_id"] == lines["Laptop"])
    # the Laptop receipt line carries the same number as the Mouse order line
    assert laptop_line["id"] == lines["Mouse"]

    r = warehouse.post(
        f"/api/deliveries/{receipt['id']}/approve",
        json={"items": [{"order_item_id": lines["Mouse"], "approved_quantity": 0}]},
    )
    assert r.status_code == 200
    approved = {di["order_item_id"]: di["approved_quantity"] for di in r.json["items"]}
    assert approved == {lines["Laptop"]: 1.0, lines["Mouse"]: 0.0}


def test_delivery_item_override_wins_and_is_clamped(order, api_as):
    warehouse = api_as("warehouse@example.com")
    lines = _lines(order)
    receipt = warehouse.post(
        "/api/deliveries",
        json={
            "order_id": order["id"],
            "items": [{"order_item_id": lines["Laptop"], "quantity": 2}, {"order_item_id": lines["Mouse"], "quantity": 5}],
        },
    ).json
    ids = {di["order_item_id"]: di["id"] for di in receipt["items"]}

    r = warehouse.post(
        f"/api/deliveries/{receipt['id']}/approve",
        json={
            "items": [
                {"delivery_item_id": ids[lines["Laptop"]], "approved_quantity": 1},
                {"order_item_id": lines["Laptop"], "approved_quantity": 2},
                {"delivery_item_id": ids[lines["Mouse"]], "approved_quantity": 99},
            ]
        },
    )
    approved = {di["order_item_id"]: di["approved_quantity"] for di in r.json["items"]}
    assert approved == {lines["Laptop"]: 1.0, lines["Mouse"]: 5.0}

    r = warehouse.post(
        "/api/deliveries",
        json={"order_id": order["id"], "items": [{"order_item_id": lines["Mouse"], "quantity": 1}]},
    )
    r = warehouse.post(f"/api/deliveries/{r.json['id']}/approve", json={"items": [{"delivery_item_id": "x", "approved_quantity": 1}]})
    assert r.status_code == 400


def test_order_uses_explicit_or_default_delivery_address(app, admin, buyer):
    from app.procurement.db import session_scope
    from app.procurement.modules.notifications.models import EmailOutbox

    admin.post("/api/companies", json={"name": "Our Company A.S."})
    sid = buyer.post("/api/suppliers", json={"name": "Acme", "email": "sales@acme.example"}).json["id"]
    default = admin.post("/api/delivery-addresses", json={"name": "HQ", "address": "Main St 1", "city": "Ankara", "is_default": True}).json["id"]
    dock = admin.post("/api/delivery-addresses", json={"name": "Dock", "address": "Pier 9"}).json["id"]
    line = [{"name": "Pallet", "quantity": 1, "unit_price": "10"}]

    r = buyer.post("/api/orders", json={"supplier_id": sid, "items": line})
    assert r.json["delivery_address_id"] == default
    r = buyer.post("/api/orders", json={"supplier_id": sid, "items": line, "delivery_address_id": dock})
    assert r.json["delivery_address_id"] == dock
    assert buyer.post("/api/orders", json={"supplier_id": sid, "items": line, "delivery_address_id": 9999}).status_code == 404

    with session_scope(app) as s:
        html = s.query(EmailOutbox).filter(EmailOutbox.to_address == "sales@acme.example").order_by(EmailOutbox.id.desc()).first().html
    assert "Dock, Pier 9" in html

    r = admin.delete(f"/api/delivery-addresses/{dock}")
    assert r.status_code == 409
    assert r.json["code"] == "linked_record"
