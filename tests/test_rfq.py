"""RFQ lifecycle: invitations, supplier portal offers, negotiation and award."""
from datetime import datetime, timedelta

import pytest


@pytest.fixture()
def sourcing(admin, requester, buyer, department_ids):
    """An open RFQ built from two IT requests with one registered and one email-only supplier."""
    admin.post("/api/companies", json={"name": "Our Company A.S."})
    request_ids = []
    for subject in ("Laptops", "More laptops"):
        r = requester.post(
            "/api/requests",
            json={
                "subject": subject,
                "department_id": department_ids["IT"],
                "items": [
                    {"name": "Laptop", "quantity": 2, "unit": "pcs"},
                    {"name": "Mouse", "quantity": 5, "unit": "pcs"},
                ],
            },
        )
        request_ids.append(r.json["id"])

    supplier = buyer.post("/api/suppliers", json={"name": "Acme", "email": "sales@acme.example"}).json
    r = buyer.post(
        "/api/rfqs",
        json={
            "title": "IT hardware",
            "request_ids": request_ids,
            "suppliers": [{"supplier_id": supplier["id"]}, {"email": "bids@newco.example", "name": "NewCo"}],
        },
    )
    assert r.status_code == 201, r.json
    rfq = r.json
    tokens = {inv["name"]: inv["token"] for inv in rfq["suppliers"]}
    items = {it["name"]: it["id"] for it in rfq["items"]}
    return {"rfq": rfq, "tokens": tokens, "items": items, "request_ids": request_ids, "supplier": supplier}


def _offer(client, token, items, laptop_price, mouse_price, **extra):
    payload = {
        "items": [
            {"rfq_item_id": items["Laptop"], "quantity": 4, "unit_price": laptop_price, "vat_rate": 20},
            {"rfq_item_id": items["Mouse"], "quantity": 10, "unit_price": mouse_price, "vat_rate": 20},
        ],
        "delivery_days": 10,
        **extra,
    }
    return client.post(f"/api/portal/rfq/{token}/offer", json=payload)


def test_create_rfq_aggregates_items_and_moves_requests(sourcing, requester):
    rfq = sourcing["rfq"]
    assert rfq["status"] == "Open"
    assert rfq["code"].startswith("RFQ-REQ-")
    assert {it["name"]: it["quantity"] for it in rfq["items"]} == {"Laptop": 4.0, "Mouse": 10.0}
    assert all(inv["stage"] == "Invited" for inv in rfq["suppliers"])

    for rid in sourcing["request_ids"]:
        assert requester.get(f"/api/requests/{rid}").json["status"] == "Sourcing"


def test_rfq_validation(buyer):
    r = buyer.post("/api/rfqs", json={"title": "", "request_ids": [], "suppliers": [{"email": "nope"}], "deadline": "soon"})
    assert r.status_code == 400
    assert len(r.json["details"]) == 4


def test_portal_view_marks_viewed_and_hides_competitors(app, sourcing, buyer):
    client = app.test_client()
    token = sourcing["tokens"]["Acme"]
    r = client.get(f"/api/portal/rfq/{token}")
    assert r.status_code == 200
    assert r.json["supplier"]["stage"] == "Viewed"
    assert r.json["offer"] is None
    assert "suppliers" not in r.json

    detail = buyer.get(f"/api/rfqs/{sourcing['rfq']['id']}").json
    assert {inv["name"]: inv["stage"] for inv in detail["suppliers"]}["Acme"] == "Viewed"


def test_invalid_token_is_404_and_audited(app, admin):
    r = app.test_client().get("/api/portal/rfq/not-a-token")
    assert r.status_code == 404
    assert r.json["code"] == "invitation_not_found"
    assert admin.get("/api/audit?action=portal.invalid_token").json["total"] == 1


def test_offers_comparison_and_negotiation(app, sourcing, buyer):
    client = app.test_client()
    items, tokens = sourcing["items"], sourcing["tokens"]

    r = _offer(client, tokens["Acme"], items, "1000", "20")
    assert r.status_code == 201
    # (4 x 1000 + 10 x 20) x 1.2
    assert r.json["total_amount"] == 5040.0
    assert _offer(client, tokens["NewCo"], items, "900", "25").status_code == 201

    detail = buyer.get(f"/api/rfqs/{sourcing['rfq']['id']}").json
    cmp = detail["comparison"]
    assert [s["supplier"] for s in cmp["suppliers"]] == ["NewCo", "Acme"]
    assert cmp["lowest_total"] == 4620.0
    laptop = next(i for i in cmp["items"] if i["name"] == "Laptop")
    assert [p["supplier"] for p in laptop["prices"] if p["is_lowest"]] == ["NewCo"]
    assert detail["offer_count"] == 2

    stats = client.get(f"/api/portal/rfq/{tokens['Acme']}/negotiation").json
    assert stats["rank"] == 2
    assert stats["participants"] == 2

    r = buyer.post(f"/api/rfqs/{sourcing['rfq']['id']}/negotiation/start", json={"deadline": (datetime.utcnow() + timedelta(days=2)).isoformat()})
    assert r.status_code == 200
    assert r.json["negotiation_round"] == 2
    assert r.json["negotiation_status"] == "Active"

    r = _offer(client, tokens["Acme"], items, "850", "20")
    assert r.json["round"] == 2
    stats = client.get(f"/api/portal/rfq/{tokens['Acme']}/negotiation").json
    assert stats["rank"] == 1
    assert stats["is_my_offer_latest"] is True

    buyer.post(f"/api/rfqs/{sourcing['rfq']['id']}/negotiation/finish")
    r = _offer(client, tokens["NewCo"], items, "800", "20")
    assert r.status_code == 409
    assert r.json["code"] == "negotiation_closed"


def test_offer_validation(app, sourcing):
    client = app.test_client()
    token = sourcing["tokens"]["Acme"]
    r = client.post(f"/api/portal/rfq/{token}/offer", json={"items": [{"rfq_item_id": 9999, "quantity": 0, "unit_price": -1, "vat_rate": 150}]})
    assert r.status_code == 400
    assert r.json["code"] == "invalid_items"
    assert len(r.json["details"]) == 4


def test_offer_after_deadline_is_refused(app, requester, buyer, department_ids):
    rid = requester.post(
        "/api/requests",
        json={"subject": "Chairs", "department_id": department_ids["IT"], "items": [{"name": "Chair", "quantity": 3}]},
    ).json["id"]
    rfq = buyer.post(
        "/api/rfqs",
        json={
            "title": "Chairs",
            "request_ids": [rid],
            "suppliers": [{"email": "chairs@example.com"}],
            "deadline": (datetime.utcnow() - timedelta(days=1)).isoformat(),
        },
    ).json
    token = rfq["suppliers"][0]["token"]
    r = app.test_client().post(
        f"/api/portal/rfq/{token}/offer",
        json={"items": [{"rfq_item_id": rfq["items"][0]["id"], "quantity": 3, "unit_price": 10}]},
    )
    assert r.status_code == 403
    assert r.json["code"] == "rfq_expired"


def test_decline(app, sourcing, buyer):
    client = app.test_client()
    r = client.post(f"/api/portal/rfq/{sourcing['tokens']['NewCo']}/decline", json={"reason": "No stock"})
    assert r.status_code == 200
    assert r.json["stage"] == "Declined"
    notes = buyer.get("/api/notifications").json["items"]
    assert any("declined" in n["title"] for n in notes)


def test_finalize_single_creates_order(app, sourcing, buyer, requester):
    client = app.test_client()
    items, tokens = sourcing["items"], sourcing["tokens"]
    offer = _offer(client, tokens["NewCo"], items, "900", "25").json
    _offer(client, tokens["Acme"], items, "1000", "20")

    r = buyer.post(f"/api/rfqs/{sourcing['rfq']['id']}/finalize", json={"offer_id": offer["id"]})
    assert r.status_code == 201, r.json
    assert r.json["rfq"]["status"] == "Completed"
    orders = r.json["orders"]
    assert len(orders) == 1
    assert orders[0]["supplier_name"] == "NewCo"
    # net of VAT: 4 x 900 + 10 x 25
    assert orders[0]["total_amount"] == 3850.0

    detail = buyer.get(f"/api/rfqs/{sourcing['rfq']['id']}").json
    assert {inv["name"]: inv["stage"] for inv in detail["suppliers"]} == {"Acme": "Lost", "NewCo": "Awarded"}
    for rid in sourcing["request_ids"]:
        assert requester.get(f"/api/requests/{rid}").json["status"] == "Ordered"

    # the email-only invitee was onboarded as a supplier
    assert buyer.get("/api/suppliers?q=bids@newco.example").json["total"] == 1

    r = buyer.post(f"/api/rfqs/{sourcing['rfq']['id']}/finalize", json={"offer_id": offer["id"]})
    assert r.status_code == 409


def test_finalize_split_creates_one_order_per_offer(app, sourcing, buyer):
    client = app.test_client()
    items, tokens = sourcing["items"], sourcing["tokens"]
    acme = _offer(client, tokens["Acme"], items, "1000", "20").json
    newco = _offer(client, tokens["NewCo"], items, "900", "25").json

    r = buyer.post(
        f"/api/rfqs/{sourcing['rfq']['id']}/finalize-split",
        json={
            "selections": [
                {"offer_id": newco["id"], "rfq_item_id": items["Laptop"]},
                {"offer_id": acme["id"], "rfq_item_id": items["Mouse"], "quantity": 8},
            ]
        },
    )
    assert r.status_code == 201, r.json
    totals = sorted(o["total_amount"] for o in r.json["orders"])
    assert totals == [160.0, 3600.0]


def test_finalize_requires_company_when_ambiguous(app, sourcing, admin, buyer):
    admin.post("/api/companies", json={"name": "Second Company"})
    offer = _offer(app.test_client(), sourcing["tokens"]["Acme"], sourcing["items"], "1", "1").json
    r = buyer.post(f"/api/rfqs/{sourcing['rfq']['id']}/finalize", json={"offer_id": offer["id"]})
    assert r.status_code == 400
    assert r.json["code"] == "company_required"


def test_approval_without_workflow_and_status_changes(sourcing, buyer):
    rid = sourcing["rfq"]["id"]
    r = buyer.patch(f"/api/rfqs/{rid}/status", json={"status": "Passive", "reason": "On hold"})
    assert r.status_code == 200
    assert r.json["status"] == "Passive"

    r = buyer.post(f"/api/rfqs/{rid}/approve")
    assert r.status_code == 200
    assert r.json["status"] == "Approved"


def test_add_and_resend_invitation(sourcing, buyer):
    rid = sourcing["rfq"]["id"]
    r = buyer.post(f"/api/rfqs/{rid}/suppliers", json={"email": "third@example.com"})
    assert r.status_code == 201
    inv_id, old_token = r.json["id"], r.json["token"]

    r = buyer.post(f"/api/rfqs/{rid}/suppliers", json={"email": "third@example.com"})
    assert r.status_code == 409

    r = buyer.post(f"/api/rfqs/{rid}/suppliers/{inv_id}/resend")
    assert r.status_code == 200
    assert r.json["token"] != old_token


def test_draft_rfq_publish(requester, buyer, department_ids):
    rid = requester.post(
        "/api/requests",
        json={"subject": "Desks", "department_id": department_ids["IT"], "items": [{"name": "Desk", "quantity": 1}]},
    ).json["id"]
    rfq = buyer.post(
        "/api/rfqs",
        json={"title": "Desks", "request_ids": [rid], "suppliers": [{"email": "desks@example.com"}], "draft": True},
    ).json
    assert rfq["status"] == "Draft"
    r = buyer.post(f"/api/rfqs/{rfq['id']}/publish")
    assert r.json["status"] == "Open"
    r = buyer.post(f"/api/rfqs/{rfq['id']}/publish")
    assert r.status_code == 400
    assert r.json["code"] == "already_published"


def test_rejected_rfq_can_be_approved_in_a_new_cycle(admin, sourcing, buyer):
    r = admin.post(
        "/api/approval-workflows",
        json={"name": "RFQ sign-off", "entity_type": "Rfq", "steps": [{"step_order": 1, "name": "Purchasing", "approver_roles": ["purchasing"]}]},
    )
    assert r.status_code == 201
    rid = sourcing["rfq"]["id"]

    r = buyer.post(f"/api/rfqs/{rid}/reject", json={"comment": "Too few suppliers"})
    assert r.status_code == 200
    assert r.json["status"] == "Open"

    r = buyer.post(f"/api/rfqs/{rid}/approve")
    assert r.status_code == 200
    assert r.json["status"] == "Approved"
    assert admin.get("/api/audit?action=approval.restart").json["total"] == 1


def test_deadline_with_offset_is_stored_as_utc(requester, buyer, department_ids):
    rid = requester.post(
        "/api/requests",
        json={"subject": "Lamps", "department_id": department_ids["IT"], "items": [{"name": "Lamp", "quantity": 2}]},
    ).json["id"]
    r = buyer.post(
        "/api/rfqs",
        json={"title": "Lamps", "request_ids": [rid], "suppliers": [{"email": "lamps@example.com"}], "deadline": "2030-01-01T00:00:00+03:00"},
    )
    assert r.status_code == 201, r.json
    assert r.json["deadline"] == "2029-12-31T21:00:00"

    r = buyer.post(f"/api/rfqs/{r.json['id']}/negotiation/start", json={"deadline": "2030-01-05T12:00:00Z"})
    assert r.json["negotiation_deadline"] == "2030-01-05T12:00:00"


def test_finalize_with_malformed_company_id(app, sourcing, buyer):
    offer = _offer(app.test_client(), sourcing["tokens"]["Acme"], sourcing["items"], "1", "1").json
    r = buyer.post(f"/api/rfqs/{sourcing['rfq']['id']}/finalize", json={"offer_id": offer["id"], "company_id": "abc"})
    assert r.status_code == 400
    assert r.json["code"] == "bad_request"
