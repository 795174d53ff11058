from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.procurement.modules.invoices.withholding import calculate_withholding, parse_ratio


class TestWithholding:
    """Tests for parse_ratio() and calculate_withholding()"""

    @pytest.mark.parametrize(
        "raw,expected",
        [("7/10", Decimal("0.7")), ("2/10", Decimal("0.2")), ("0.5", Decimal("0.5")), ("12/10", Decimal("1")), ("3/0", Decimal("0")), (None, Decimal("0"))],
    )
    def test_parse_ratio(self, raw, expected):
        assert parse_ratio(raw) == expected

    def test_only_matching_vat_rate_is_withheld(self):
        items = [
            {"quantity": 10, "unit_price": "100", "tax_rate": 20, "apply_withholding": True},
            {"quantity": 1, "unit_price": "50", "tax_rate": 10, "apply_withholding": True},
            {"quantity": 1, "unit_price": "100", "tax_rate": 20, "apply_withholding": False},
        ]
        totals = calculate_withholding(items, {"ratio": "4/10", "vat_rate": 20})
        assert totals["subtotal"] == Decimal("1150.00")
        assert totals["vat_total"] == Decimal("225.00")
        # only the first line qualifies: 200 x 0.4
        assert totals["withheld_vat"] == Decimal("80.00")
        assert totals["payable_vat"] == Decimal("145.00")
        assert totals["gross_total"] == Decimal("1375.00")
        assert totals["net_payable"] == Decimal("1295.00")

    def test_applicable_rates_and_no_rule(self):
        items = [{"quantity": 1, "unit_price": "100", "tax_rate": 10, "apply_withholding": True}]
        assert calculate_withholding(items, {"ratio": "5/10", "applicable_vat_rates": [10, 20]})["withheld_vat"] == Decimal("5.00")
        assert calculate_withholding(items)["withheld_vat"] == Decimal("0.00")


def _invoice(**overrides):
    payload = {
        "number": "INV-100",
        "order_code": "EXT-1",
        "due_date": (date.today() + timedelta(days=3)).isoformat(),
        "status": "Pending",
        "withholding_code": "601",
        "items": [{"name": "Repair works", "quantity": 10, "unit_price": "100", "tax_rate": 20, "apply_withholding": True}],
    }
    payload.update(overrides)
    return payload


def test_create_invoice_with_withholding(api_as):
    finance = api_as("finance@example.com")
    r = finance.post("/api/invoices", json=_invoice())
    assert r.status_code == 201, r.json
    inv = r.json
    assert inv["subtotal"] == 1000.0
    assert inv["vat_total"] == 200.0
    assert inv["withheld_vat"] == 80.0
    assert inv["net_payable"] == 1120.0
    assert inv["amount"] == 1120.0
    assert inv["items"][0]["apply_withholding"] is True

    r = finance.post("/api/invoices", json=_invoice())
    assert r.status_code == 409
    assert r.json["code"] == "duplicate_invoice"


def test_create_invoice_with_plain_amount(api_as):
    r = api_as("finance@example.com").post("/api/invoices", json=_invoice(items=None, withholding_code=None, amount="1.250,75"))
    assert r.status_code == 201
    assert r.json["amount"] == 1250.75
    assert r.json["net_payable"] is None


def test_invoice_validation(api_as):
    r = api_as("finance@example.com").post("/api/invoices", json={})
    assert r.status_code == 400
    assert len(r.json["details"]) == 5

    r = api_as("finance@example.com").post("/api/invoices", json=_invoice(status="Draft", items=[{"name": "", "quantity": 0, "unit_price": 1}]))
    details = r.json["details"]
    assert any(d.startswith("Status must be one of") for d in details)
    assert "Item 1: name is required." in details


def test_calculate_preview(api_as):
    finance = api_as("finance@example.com")
    r = finance.post("/api/invoices/calculate", json={"withholding_code": "612", "items": _invoice()["items"]})
    assert r.status_code == 200
    assert r.json["withheld_vat"] == 140.0
    assert r.json["net_payable"] == 1060.0

    r = finance.post("/api/invoices/calculate", json={"withholding_code": "999", "items": []})
    assert r.status_code == 404


def test_invoice_status_flow(api_as, buyer):
    finance = api_as("finance@example.com")
    inv_id = finance.post("/api/invoices", json=_invoice()).json["id"]

    r = finance.patch(f"/api/invoices/{inv_id}", json={"status": "Paid"})
    assert r.status_code == 409

    assert finance.patch(f"/api/invoices/{inv_id}", json={"status": "Approved", "bank": "Ziraat"}).json["status"] == "Approved"
    r = finance.patch(f"/api/invoices/{inv_id}", json={"status": "Paid"})
    assert r.json["status"] == "Paid"
    assert r.json["bank"] == "Ziraat"

    # purchasing may read but not edit
    assert buyer.get(f"/api/invoices/{inv_id}").status_code == 200
    assert buyer.patch(f"/api/invoices/{inv_id}", json={"status": "Cancelled"}).status_code == 403


def test_due_only_filter(api_as):
    finance = api_as("finance@example.com")
    finance.post("/api/invoices", json=_invoice())
    finance.post("/api/invoices", json=_invoice(number="INV-200", due_date=(date.today() + timedelta(days=60)).isoformat()))

    assert finance.get("/api/invoices").json["total"] == 2
    due = finance.get("/api/invoices?due_only=1").json
    assert [i["number"] for i in due["items"]] == ["INV-100"]


def test_withholding_job_types(admin, api_as):
    finance = api_as("finance@example.com")
    codes = [jt["code"] for jt in finance.get("/api/withholding-job-types").json["items"]]
    assert "601" in codes and "615" in codes

    assert finance.post("/api/withholding-job-types", json={"code": "699", "label": "Other", "ratio": "3/10"}).status_code == 403

    r = admin.post("/api/withholding-job-types", json={"code": "699", "label": "Other", "ratio": "3/10", "applicable_vat_rates": [20]})
    assert r.status_code == 201
    jt_id = r.json["id"]

    r = admin.post("/api/withholding-job-types", json={"code": "699", "label": "Again", "ratio": "3/10"})
    assert r.status_code == 409

    r = admin.post("/api/withholding-job-types", json={"code": "700", "label": "Bad", "ratio": "30%"})
    assert r.status_code == 400

    r = admin.patch(f"/api/withholding-job-types/{jt_id}", json={"ratio": "5/10", "is_active": False})
    assert r.json["ratio"] == "5/10"
    assert r.json["is_active"] is False
    active = [jt["code"] for jt in finance.get("/api/withholding-job-types?active=1").json["items"]]
    assert "699" not in active
