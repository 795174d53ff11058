"""
Supplier evaluation: questionnaire scoring, period summaries and the API.
"""
import pytest

from app.procurement.modules.evaluations.scoring import (
    answer_value,
    evaluation_decision,
    normalize,
    score_evaluation,
    summarize_metrics,
)


class TestQuestionnaireScoring:
    """Tests for score_evaluation() and its helpers"""

    @pytest.mark.parametrize("raw,expected", [("o1", 5.0), ("O4", 2.0), ("3", 3.0), ("-1", 0.0), ("nan", 0.0), (None, 0.0), ("bogus", 0.0)])
    def test_answer_value(self, raw, expected):
        assert answer_value(raw) == expected

    def test_default_weights(self):
        answers = [("A", "o1"), ("A", "o1"), ("B", "o2"), ("C", "o3")]
        result = score_evaluation(answers, "malzeme")
        assert result["section_averages"] == {"A": 5.0, "B": 4.0, "C": 3.0}
        assert result["overall"] == 4.2
        assert result["score"] == 84.0
        assert result["decision"] == "Workable"

    def test_unknown_scoring_type_uses_equal_weights(self):
        result = score_evaluation([("A", 3), ("B", 3), ("C", 3)], "unknown")
        assert result["overall"] == 3.0
        assert result["decision"] == "Conditional"

    def test_missing_section_counts_as_zero(self):
        assert score_evaluation([("A", "o1")], weights=(0.5, 0.5, 0.0))["overall"] == 2.5

    @pytest.mark.parametrize(
        "overall,scoring_type,expected",
        [
            (4.5, None, "Approved"),
            (4.6, "insaat", "Approved contractor"),
            (3.5, "insaat", "Workable contractor"),
            (2.5, "hizmet", "Conditional"),
            (1.0, None, "Insufficient"),
            (0.5, None, "Undetermined"),
        ],
    )
    def test_decision_thresholds(self, overall, scoring_type, expected):
        assert evaluation_decision(overall, scoring_type) == expected


class TestPeriodSummaries:
    def test_normalize_clamps_and_inverts(self):
        assert normalize(None, 0, 1) == 0.0
        assert normalize(2, 0, 1) == 100
        assert normalize(0.25, 0, 1, invert=True) == 75
        assert normalize(90, 1, 60, invert=True) == 0

    def test_summarize_metrics(self):
        perfect = summarize_metrics([{"on_time_rate": 1, "defect_rate": 0, "avg_lead_time_days": 1, "price_index": 0.5, "service_score": 1}])
        assert perfect["total"] == 100
        assert perfect["decision"] == "Approved"

        mixed = summarize_metrics(
            [{"on_time_rate": 0.9, "defect_rate": 0.1, "avg_lead_time_days": 30.5, "price_index": 1.0, "service_score": 0.8}]
        )
        assert mixed["quality"] == 90
        assert mixed["delivery"] == 70
        assert mixed["total"] == 75.5
        assert mixed["decision"] == "Conditional"

        assert summarize_metrics([])["decision"] == "Insufficient"


def _questions_by_section(api):
    out = {}
    for q in api.get("/api/evaluations/questions?active=1").json["items"]:
        out.setdefault(q["section"], []).append(q["id"])
    return out


def test_submit_evaluation(buyer):
    sid = buyer.post("/api/suppliers", json={"name": "Acme"}).json["id"]
    questions = _questions_by_section(buyer)
    assert set(questions) == {"A", "B", "C"}

    option = {"A": "o1", "B": "o2", "C": "o3"}
    answers = [{"question_id": qid, "value": option[sec]} for sec, ids in questions.items() for qid in ids]
    r = buyer.post("/api/evaluations", json={"supplier_id": sid, "scoring_type": "malzeme", "answers": answers, "comment": "Solid"})
    assert r.status_code == 201, r.json
    assert r.json["overall"] == 4.2
    assert r.json["decision"] == "Workable"
    assert r.json["weights"] == {"A": 0.4, "B": 0.4, "C": 0.2}
    assert len(r.json["answers"]) == len(answers)

    listed = buyer.get(f"/api/evaluations?supplier_id={sid}").json
    assert listed["total"] == 1
    assert buyer.get(f"/api/evaluations/{r.json['id']}").json["comment"] == "Solid"


def test_submit_evaluation_errors(buyer):
    sid = buyer.post("/api/suppliers", json={"name": "Acme"}).json["id"]
    r = buyer.post("/api/evaluations", json={"answers": [{"question_id": "x"}]})
    assert r.status_code == 400
    assert len(r.json["details"]) == 2

    r = buyer.post("/api/evaluations", json={"supplier_id": sid, "answers": [{"question_id": 9999, "value": "o1"}]})
    assert r.status_code == 400
    assert r.json["code"] == "invalid_question_ids"
    assert r.json["details"]["unknown_ids"] == [9999]

    r = buyer.post("/api/evaluations", json={"supplier_id": 9999, "answers": [{"question_id": 1}]})
    assert r.status_code == 404


def test_custom_scoring_type_weights(admin, buyer):
    r = admin.post("/api/evaluations/scoring-types", json={"code": "IT", "name": "IT services", "weight_a": 1, "weight_b": 0, "weight_c": 0})
    assert r.status_code == 201
    assert r.json["code"] == "it"
    assert admin.post("/api/evaluations/scoring-types", json={"code": "it", "name": "Again", "weight_a": 1, "weight_b": 0, "weight_c": 0}).status_code == 409
    assert admin.post("/api/evaluations/scoring-types", json={"code": "x", "name": "X", "weight_a": 2}).status_code == 400
    assert buyer.post("/api/evaluations/scoring-types", json={}).status_code == 403

    sid = buyer.post("/api/suppliers", json={"name": "Acme"}).json["id"]
    questions = _questions_by_section(buyer)
    answers = [{"question_id": questions["A"][0], "value": "o2"}, {"question_id": questions["C"][0], "value": "o1"}]
    r = buyer.post("/api/evaluations", json={"supplier_id": sid, "scoring_type": "it", "answers": answers})
    assert r.json["overall"] == 4.0


def test_question_management(admin):
    r = admin.post("/api/evaluations/questions", json={"section": "D", "text": ""})
    assert r.status_code == 400
    assert len(r.json["details"]) == 2

    r = admin.post("/api/evaluations/questions", json={"section": "b", "text": "Invoices arrive on time", "sort": 50})
    assert r.status_code == 201
    assert r.json["section"] == "B"

    r = admin.patch(f"/api/evaluations/questions/{r.json['id']}", json={"is_active": False})
    assert r.json["is_active"] is False


def test_metrics_and_summaries(buyer):
    good = buyer.post("/api/suppliers", json={"name": "Good"}).json["id"]
    buyer.post("/api/suppliers", json={"name": "No metrics"})

    r = buyer.post("/api/evaluations/metrics", json={"supplier_id": good, "period": "2026-13"})
    assert r.status_code == 400

    metric = {"supplier_id": good, "period": "2026-09", "on_time_rate": "0,9", "defect_rate": 0.1, "avg_lead_time_days": 30.5, "price_index": 1, "service_score": 0.8}
    r = buyer.post("/api/evaluations/metrics", json=metric)
    assert r.status_code == 200
    assert r.json["on_time_rate"] == 0.9
    # upsert keeps one row per supplier and period
    buyer.post("/api/evaluations/metrics", json={**metric, "service_score": 0.8})
    assert len(buyer.get(f"/api/evaluations/metrics?supplier_id={good}").json["items"]) == 1

    r = buyer.post("/api/evaluations/summaries/run", json={"period": "2026-09"})
    assert r.status_code == 200
    assert [row["supplier_id"] for row in r.json["items"]] == [good]
    assert r.json["items"][0]["total"] == 75.5

    summaries = buyer.get("/api/evaluations/summaries?period=2026-09").json
    assert summaries["items"][0]["decision"] == "Conditional"

    assert buyer.post("/api/evaluations/summaries/run", json={"period": "Sept"}).status_code == 400
