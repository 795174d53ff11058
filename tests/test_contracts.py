import io
from datetime import date, timedelta


def _contract(api, **overrides):
    payload = {
        "title": "Office cleaning",
        "type": "Service",
        "parties": "Our Company A.S. / CleanCo Ltd",
        "start_date": date.today().isoformat(),
        "end_date": (date.today() + timedelta(days=365)).isoformat(),
    }
    payload.update(overrides)
    return api.post("/api/contracts", json=payload)


def _days(n):
    return (date.today() + timedelta(days=n)).isoformat()


def test_templates_listed(buyer):
    keys = [t["key"] for t in buyer.get("/api/contract-templates").json["items"]]
    assert keys == ["purchase", "service", "framework"]


def test_contract_validation(buyer):
    r = buyer.post("/api/contracts", json={})
    assert r.status_code == 400
    assert len(r.json["details"]) == 4

    r = _contract(buyer, start_date=_days(10), end_date=_days(1), template="nda")
    details = r.json["details"]
    assert "Start date must not be after end date." in details
    assert "Unknown template 'nda'." in details


def test_create_from_template_with_order(admin, buyer):
    admin.post("/api/companies", json={"name": "Our Company A.S."})
    sid = buyer.post("/api/suppliers", json={"name": "CleanCo"}).json["id"]
    order = buyer.post(
        "/api/orders",
        json={"supplier_id": sid, "items": [{"name": "Cleaning", "quantity": 12, "unit_price": "1000"}]},
    ).json

    r = _contract(buyer, template="purchase", order_id=order["id"], summary="Monthly cleaning")
    assert r.status_code == 201, r.json
    body = r.json["body"]
    assert f"order {order['code']}" in body
    assert "12.000,00 TRY" in body
    assert "procured by Direct" in body
    assert "Scope: Monthly cleaning" in body
    assert r.json["status"] == "Draft"
    assert r.json["number"].startswith(f"S-{date.today().year}-")

    assert buyer.get(f"/api/contracts?order_id={order['id']}").json["total"] == 1


def test_overlapping_duplicate_is_refused(buyer):
    first = _contract(buyer).json
    r = _contract(buyer, start_date=_days(100), end_date=None)
    assert r.status_code == 409
    assert r.json["code"] == "duplicate_contract"
    assert r.json["details"]["contract_id"] == first["id"]

    # same title after the first one ends is fine
    assert _contract(buyer, start_date=_days(400), end_date=_days(500)).status_code == 201


def test_status_transitions(buyer):
    cid = _contract(buyer).json["id"]
    r = buyer.patch(f"/api/contracts/{cid}", json={"status": "Active"})
    assert r.status_code == 200
    assert r.json["status"] == "Active"

    r = buyer.patch(f"/api/contracts/{cid}", json={"status": "Draft"})
    assert r.status_code == 409

    r = buyer.patch(f"/api/contracts/{cid}", json={"end_date": "2000-01-01"})
    assert r.status_code == 400


def test_expiry_filters(buyer):
    _contract(buyer, title="Old lease", start_date=_days(-400), end_date=_days(-10))
    _contract(buyer, title="Soon", end_date=_days(10))
    _contract(buyer, title="Later", end_date=_days(100))
    _contract(buyer, title="Forever", end_date=None)

    def titles(expiry):
        return sorted(c["title"] for c in buyer.get(f"/api/contracts?expiry={expiry}").json["items"])

    assert titles("expired") == ["Old lease"]
    assert titles("expiring") == ["Soon"]
    assert titles("active") == ["Later", "Soon"]
    assert titles("perpetual") == ["Forever"]
    assert buyer.get("/api/contracts?expiry=someday").status_code == 400


def test_attachment_upload_and_download(buyer):
    cid = _contract(buyer).json["id"]
    r = buyer.post(
        f"/api/contracts/{cid}/attachments",
        data={"file": (io.BytesIO(b"%PDF-1.4 signed copy"), "signed copy.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    att = r.json
    assert att["filename"] == "signed_copy.pdf"
    assert att["size_bytes"] == len(b"%PDF-1.4 signed copy")

    r = buyer.get(f"/api/contracts/{cid}/attachments/{att['id']}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 signed copy"
    assert "signed_copy.pdf" in r.headers["Content-Disposition"]

    r = buyer.post(
        f"/api/contracts/{cid}/attachments",
        data={"file": (io.BytesIO(b""), "empty.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400

    assert buyer.get(f"/api/contracts/{cid}/attachments/9999/download").status_code == 404


def test_expiry_reminders_and_expiration(buyer):
    soon = _contract(buyer, title="Soon", end_date=_days(7)).json
    buyer.patch(f"/api/contracts/{soon['id']}", json={"status": "Active"})
    old = _contract(buyer, title="Old", start_date=_days(-30), end_date=_days(-1)).json
    buyer.patch(f"/api/contracts/{old['id']}", json={"status": "Active"})

    r = buyer.post("/api/contracts/remind-expiry")
    assert r.status_code == 200
    assert r.json["sent"] == 1
    assert r.json["contracts"][0]["days_left"] == 7
    assert r.json["expired"] == 1

    # one reminder per contract and threshold per day
    assert buyer.post("/api/contracts/remind-expiry").json["sent"] == 0
    assert buyer.get(f"/api/contracts/{old['id']}").json["status"] == "Expired"

    notes = buyer.get("/api/notifications").json["items"]
    assert any("ends in 7 day(s)" in n["title"] for n in notes)


def test_soft_delete(admin, buyer):
    cid = _contract(buyer).json["id"]
    assert buyer.delete(f"/api/contracts/{cid}").status_code == 403

    r = admin.delete(f"/api/contracts/{cid}")
    assert r.status_code == 200
    assert r.json["deleted"] is True
    assert buyer.get(f"/api/contracts/{cid}").status_code == 404
    # a deleted contract no longer blocks the same title
    assert _contract(buyer).status_code == 201
