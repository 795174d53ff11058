"""Purchase requests and the approval workflow."""
from datetime import date


def _payload(department_id, **overrides):
    payload = {
        "subject": "Laptops for new hires",
        "department_id": department_id,
        "justification": "Two new developers start next month.",
        "items": [
            {"name": "Laptop", "quantity": 2, "unit_price": "150", "unit": "pcs"},
            {"name": "Docking station", "quantity": "1", "unit_price": "49,50"},
        ],
    }
    payload.update(overrides)
    return payload


def _create(api, department_id, **overrides):
    r = api.post("/api/requests", json=_payload(department_id, **overrides))
    assert r.status_code == 201, r.json
    return r.json


def test_create_request_computes_budget_and_code(requester, department_ids):
    req = _create(requester, department_ids["IT"])
    assert req["status"] == "Pending"
    assert req["budget"] == 349.5
    assert req["code"] == f"REQ-{date.today().year}-00001"
    assert len(req["items"]) == 2

    second = _create(requester, department_ids["IT"])
    assert second["code"].endswith("-00002")


def test_create_request_validation(requester, department_ids):
    r = requester.post("/api/requests", json={"department_id": 9999, "items": [{"name": "", "quantity": 0}]})
    assert r.status_code == 400
    details = r.json["details"]
    assert "Subject is required." in details
    assert "Department not found." in details
    assert any("quantity must be greater than 0" in d for d in details)


def test_requests_are_scoped_to_department(requester, api_as, buyer, department_ids):
    req = _create(requester, department_ids["IT"])
    other = api_as("other@example.com")

    assert other.get(f"/api/requests/{req['id']}").status_code == 404
    assert other.get("/api/requests").json["total"] == 0
    # purchasing sees every department
    assert buyer.get("/api/requests").json["total"] == 1


def test_owner_can_edit_pending_request(requester, department_ids):
    req = _create(requester, department_ids["IT"])
    r = requester.patch(f"/api/requests/{req['id']}", json={"subject": "Laptops", "items": [{"name": "Laptop", "quantity": 3, "unit_price": 100}]})
    assert r.status_code == 200
    assert r.json["subject"] == "Laptops"
    assert r.json["budget"] == 300.0


def test_two_step_approval_reserves_budget(admin, requester, manager, buyer, department_ids):
    dept = department_ids["IT"]
    admin.post("/api/budgets", json={"department_id": dept, "year": date.today().year, "total_amount": 10000})
    req = _create(requester, dept)

    # requesters cannot approve
    assert requester.post(f"/api/requests/{req['id']}/approve").status_code == 403

    pending = manager.get("/api/approvals/pending").json
    assert [p["id"] for p in pending["items"]] == [req["id"]]
    assert buyer.get("/api/approvals/pending").json["total"] == 0

    r = manager.post(f"/api/requests/{req['id']}/approve", json={"comment": "OK from IT"})
    assert r.status_code == 200
    assert r.json["request"]["status"] == "In Approval"
    assert r.json["step_completed"] is True
    assert r.json["next_step"] == "Purchasing approval"

    # step 2 belongs to purchasing
    r = manager.post(f"/api/requests/{req['id']}/approve")
    assert r.status_code == 403
    assert r.json["code"] == "not_authorized_for_step"

    r = buyer.post(f"/api/requests/{req['id']}/approve")
    assert r.status_code == 200
    assert r.json["is_complete"] is True
    assert r.json["request"]["status"] == "Approved"

    budget = admin.get(f"/api/budgets?department_id={dept}").json["items"][0]
    assert budget["reserved_amount"] == 349.5
    assert budget["remaining"] == 10000 - 349.5

    progress = requester.get(f"/api/requests/{req['id']}/approval").json
    assert progress["workflow"]["is_complete"] is True
    assert [h["decision"] for h in progress["history"]] == ["approved", "approved"]

    notes = requester.get("/api/notifications?unread=1").json
    assert notes["total"] >= 2


def test_rejection_blocks_further_approval(requester, manager, department_ids):
    req = _create(requester, department_ids["IT"])
    r = manager.post(f"/api/requests/{req['id']}/reject", json={"comment": "Out of budget"})
    assert r.status_code == 200
    assert r.json["request"]["status"] == "Rejected"

    r = manager.post(f"/api/requests/{req['id']}/approve")
    assert r.status_code == 409
    assert r.json["code"] == "status_conflict"


def test_department_workflow_overrides_global(admin, requester, buyer, department_ids):
    r = admin.post(
        "/api/approval-workflows",
        json={
            "name": "IT fast track",
            "entity_type": "Request",
            "department_id": department_ids["IT"],
            "steps": [{"step_order": 1, "name": "Purchasing only", "approver_roles": ["purchasing"]}],
        },
    )
    assert r.status_code == 201
    req = _create(requester, department_ids["IT"])
    r = buyer.post(f"/api/requests/{req['id']}/approve")
    assert r.json["request"]["status"] == "Approved"


def test_workflow_validation(admin):
    r = admin.post(
        "/api/approval-workflows",
        json={"name": "Bad", "entity_type": "Invoice", "steps": [{"name": "x", "approver_roles": ["nobody"], "min_approvals": 0}]},
    )
    assert r.status_code == 400
    details = r.json["details"]
    assert any("entity_type" in d for d in details)
    assert any("unknown roles nobody" in d for d in details)
    assert any("min_approvals" in d for d in details)


def test_status_transitions(requester, manager, department_ids):
    req = _create(requester, department_ids["IT"], draft=True)
    assert req["status"] == "Draft"

    r = manager.patch(f"/api/requests/{req['id']}/status", json={"status": "Ordered"})
    assert r.status_code == 409

    r = manager.patch(f"/api/requests/{req['id']}/status", json={"status": "Pending", "note": "Ready"})
    assert r.status_code == 200
    assert r.json["status"] == "Pending"

    comments = requester.get(f"/api/requests/{req['id']}/comments").json["items"]
    assert comments[-1]["text"] == "Status changed: Draft -> Pending. Ready"


def test_cancel_only_by_owner(requester, manager, department_ids):
    req = _create(requester, department_ids["IT"])
    assert manager.post(f"/api/requests/{req['id']}/cancel").status_code == 403

    r = requester.post(f"/api/requests/{req['id']}/cancel", json={"reason": "Duplicate"})
    assert r.status_code == 200
    assert r.json["status"] == "Cancelled"

    r = requester.post(f"/api/requests/{req['id']}/cancel")
    assert r.status_code == 409
    assert r.json["code"] == "cannot_cancel"


def test_assign_comment_and_history(requester, buyer, department_ids, user_ids):
    req = _create(requester, department_ids["IT"])
    r = buyer.post(f"/api/requests/{req['id']}/assign", json={"user_id": user_ids["buyer@example.com"]})
    assert r.status_code == 200
    assert r.json["responsible_user_id"] == user_ids["buyer@example.com"]

    r = requester.post(f"/api/requests/{req['id']}/comments", json={"text": "Any update?"})
    assert r.status_code == 201
    assert r.json["author"] == "Requester"

    history = requester.get(f"/api/requests/{req['id']}/history").json
    actions = [e["action"] for e in history["events"]]
    assert actions[0] == "request.create"
    assert "request.assign" in actions
    assert "request.comment" in actions


def test_notifications_mark_read(requester, manager, department_ids):
    req = _create(requester, department_ids["IT"])
    manager.post(f"/api/requests/{req['id']}/approve")

    items = requester.get("/api/notifications").json["items"]
    assert items
    r = requester.post(f"/api/notifications/{items[0]['id']}/read")
    assert r.json["read"] is True

    r = requester.post("/api/notifications/read-all")
    assert r.json["ok"] is True
    assert requester.get("/api/notifications?unread=1").json["total"] == 0

    # someone else's notification is invisible
    assert manager.post(f"/api/notifications/{items[0]['id']}/read").status_code == 404


def test_resubmitted_request_starts_a_new_approval_cycle(requester, manager, buyer, department_ids):
    req = _create(requester, department_ids["IT"])
    manager.post(f"/api/requests/{req['id']}/reject", json={"comment": "Add a quote"})

    assert manager.patch(f"/api/requests/{req['id']}/status", json={"status": "Draft"}).status_code == 200
    r = manager.patch(f"/api/requests/{req['id']}/status", json={"status": "Pending", "note": "Quote attached"})
    assert r.status_code == 200

    progress = requester.get(f"/api/requests/{req['id']}/approval").json
    assert progress["workflow"]["is_rejected"] is False
    assert progress["workflow"]["current_step"]["step_order"] == 1
    assert [(h["decision"], h["voided"]) for h in progress["history"]] == [("rejected", True)]

    r = manager.post(f"/api/requests/{req['id']}/approve")
    assert r.status_code == 200
    assert r.json["request"]["status"] == "In Approval"
    r = buyer.post(f"/api/requests/{req['id']}/approve")
    assert r.json["request"]["status"] == "Approved"


def test_unknown_status_is_bad_request(requester, manager, department_ids):
    req = _create(requester, department_ids["IT"])
    r = manager.patch(f"/api/requests/{req['id']}/status", json={"status": "Shipped"})
    assert r.status_code == 400
    assert r.json["code"] == "bad_request"


def test_current_step_approvers_are_notified(requester, manager, buyer, api_as, department_ids):
    req = _create(requester, department_ids["IT"])

    def awaiting(api):
        return [n for n in api.get("/api/notifications").json["items"] if n["title"] == f"Request {req['code']} awaits your approval"]

    assert len(awaiting(manager)) == 1
    assert awaiting(buyer) == []

    manager.post(f"/api/requests/{req['id']}/approve")
    assert len(awaiting(buyer)) == 1
    # the requester holds no approver role
    assert awaiting(requester) == []

    other_dept = _create(api_as("other@example.com"), department_ids["Finance"])
    assert not any(other_dept["code"] in n["title"] for n in manager.get("/api/notifications").json["items"])
