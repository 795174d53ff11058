"""Dashboard, order exports, audit log and the scheduled job runner."""
import csv
import io
import json
from datetime import date, timedelta

import pytest
from openpyxl import load_workbook

from app.procurement.db import session_scope
from app.procurement.modules.notifications.models import EmailOutbox
from scripts import run_jobs


@pytest.fixture()
def placed_order(admin, buyer):
    admin.post("/api/companies", json={"name": "Our Company A.S."})
    sid = buyer.post("/api/suppliers", json={"name": "Acme, Inc."}).json["id"]
    r = buyer.post("/api/orders", json={"supplier_id": sid, "items": [{"name": "Paper", "quantity": 100, "unit_price": "12,5"}]})
    assert r.status_code == 201
    return r.json


def test_dashboard_stats(placed_order, buyer, requester, department_ids):
    requester.post("/api/requests", json={"subject": "Chairs", "department_id": department_ids["IT"], "items": [{"name": "Chair", "quantity": 2}]})
    stats = buyer.get("/api/dashboard/stats").json
    assert stats["requests_by_status"] == {"Pending": 1}
    assert stats["requests_total"] == 1
    assert stats["open_orders"] == 1
    assert stats["pending_deliveries"] == 0
    assert stats["ytd_spend"] == 1250.0

    assert requester.get("/api/dashboard/stats").status_code == 403


def test_orders_csv_export_is_audited(placed_order, buyer, admin):
    r = buyer.get("/api/reports/orders.csv")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert f"orders_{date.today():%Y%m%d}.csv" in r.headers["Content-Disposition"]

    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert rows[0] == ["Code", "Date", "Supplier", "Status", "Currency", "Total"]
    assert rows[1] == [placed_order["code"], date.today().isoformat(), "Acme, Inc.", "Open", "TRY", "1250.00"]

    events = admin.get("/api/audit?action=report.orders_export").json["items"]
    assert events[0]["metadata"]["format"] == "csv"
    assert events[0]["metadata"]["row_count"] == 1
    assert events[0]["actor"] == "buyer@example.com"


def test_orders_xlsx_export(placed_order, buyer):
    r = buyer.get("/api/reports/orders.xlsx?status=Open")
    assert r.status_code == 200
    ws = load_workbook(io.BytesIO(r.data)).active
    assert ws.title == "Orders"
    assert ws["A2"].value == placed_order["code"]
    assert ws["F2"].value == 1250.0

    r = buyer.get("/api/reports/orders.xlsx?status=Closed")
    assert load_workbook(io.BytesIO(r.data)).active.max_row == 1


def test_audit_requires_permission(buyer, admin):
    assert buyer.get("/api/audit").status_code == 403
    r = admin.get("/api/audit?actor=ADMIN@")
    assert r.status_code == 200
    assert all(ev["actor"].startswith("admin@") for ev in r.json["items"])


def test_run_jobs_contracts_remind(app, buyer, capsys):
    end = date.today() + timedelta(days=30)
    cid = buyer.post(
        "/api/contracts",
        json={"title": "Lease", "type": "Lease", "parties": "A / B", "start_date": date.today().isoformat(), "end_date": end.isoformat()},
    ).json["id"]
    buyer.patch(f"/api/contracts/{cid}", json={"status": "Active"})

    assert run_jobs.main(["contracts-remind", "--today", date.today().isoformat()]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["sent"] == 1
    assert out["contracts"][0]["days_left"] == 30

    # a second run on the same day sends nothing new
    assert run_jobs.main(["contracts-remind", "--today", date.today().isoformat()]) == 0
    assert json.loads(capsys.readouterr().out)["sent"] == 0


def test_run_jobs_email_outbox(app, capsys):
    with session_scope(app) as s:
        s.add(EmailOutbox(to_address="someone@example.com", subject="Hello", html="<p>Hi</p>", category="test", status="queued"))

    assert run_jobs.main(["email-outbox", "--limit", "10"]) == 0
    assert json.loads(capsys.readouterr().out) == {"processed": 1, "sent": 0, "failed": 0, "skipped": 1}

    with session_scope(app) as s:
        row = s.query(EmailOutbox).one()
        assert row.status == "skipped"
        assert row.attempts == 1


def test_run_jobs_evaluations_summarize(app, buyer, capsys):
    sid = buyer.post("/api/suppliers", json={"name": "Acme"}).json["id"]
    buyer.post("/api/evaluations/metrics", json={"supplier_id": sid, "period": "2026-09", "on_time_rate": 1, "service_score": 1})

    assert run_jobs.main(["evaluations-summarize", "--period", "2026-09"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["period"] == "2026-09"
    assert [row["supplier_id"] for row in out["summaries"]] == [sid]


def test_email_outbox_retries_until_max_attempts(app, monkeypatch, capsys):
    from app.procurement.modules.notifications import service as notifications

    monkeypatch.setattr(notifications, "smtp_configured", lambda config: True)
    monkeypatch.setattr(notifications, "send_email", lambda config, to, subject, html: (False, "connection refused"))
    with session_scope(app) as s:
        s.add_all(
            [
                EmailOutbox(to_address="a@example.com", subject="A", html="<p>A</p>", status="failed", attempts=2),
                EmailOutbox(to_address="b@example.com", subject="B", html="<p>B</p>", status="failed", attempts=3),
                EmailOutbox(to_address="c@example.com", subject="C", html="<p>C</p>", status="queued", attempts=0),
            ]
        )

    assert run_jobs.main(["email-outbox"]) == 0
    assert json.loads(capsys.readouterr().out) == {"processed": 2, "sent": 0, "failed": 2, "skipped": 0}
    with session_scope(app) as s:
        attempts = {row.to_address: row.attempts for row in s.query(EmailOutbox).all()}
        assert attempts == {"a@example.com": 3, "b@example.com": 3, "c@example.com": 1}
        assert s.query(EmailOutbox).filter(EmailOutbox.error == "connection refused").count() == 2

    # only the row with attempts left is retried
    run_jobs.main(["email-outbox"])
    assert json.loads(capsys.readouterr().out)["processed"] == 1


def test_run_jobs_evaluations_remind(app, placed_order, buyer, capsys):
    buyer.patch(f"/api/orders/{placed_order['id']}", json={"status": "Closed"})
    later = (date.today() + timedelta(days=8)).isoformat()

    # too recent
    assert run_jobs.main(["evaluations-remind", "--today", date.today().isoformat()]) == 0
    assert json.loads(capsys.readouterr().out)["orders"] == []

    assert run_jobs.main(["evaluations-remind", "--today", later]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["sent"] == 1
    assert out["orders"][0]["code"] == placed_order["code"]
    with session_scope(app) as s:
        row = s.query(EmailOutbox).filter(EmailOutbox.category == "evaluation_reminder").one()
        assert row.to_address == "buyer@example.com"

    assert run_jobs.main(["evaluations-remind", "--today", later]) == 0
    assert json.loads(capsys.readouterr().out)["sent"] == 0


def test_evaluated_orders_are_not_reminded(app, placed_order, buyer, capsys):
    buyer.patch(f"/api/orders/{placed_order['id']}", json={"status": "Closed"})
    qid = buyer.get("/api/evaluations/questions?active=1").json["items"][0]["id"]
    r = buyer.post(
        "/api/evaluations",
        json={"supplier_id": placed_order["supplier_id"], "order_id": placed_order["id"], "answers": [{"question_id": qid, "value": "o1"}]},
    )
    assert r.status_code == 201

    assert run_jobs.main(["evaluations-remind", "--today", (date.today() + timedelta(days=30)).isoformat()]) == 0
    assert json.loads(capsys.readouterr().out)["sent"] == 0
