from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.db import db_session, get_or_404
from app.procurement.errors import ValidationError
from app.procurement.models import User
from app.procurement.modules.evaluations.models import (
    EvaluationQuestion,
    ScoringType,
    SupplierEvaluation,
    SupplierEvaluationSummary,
    SupplierPerformanceMetric,
)
from app.procurement.modules.evaluations.service import (
    PERIOD_RE,
    current_period,
    evaluation_to_dict,
    metric_to_dict,
    question_to_dict,
    run_summaries,
    save_question,
    save_scoring_type,
    scoring_type_to_dict,
    submit_evaluation,
    summary_to_dict,
    upsert_metric,
    validate_evaluation_payload,
    validate_metric_payload,
    validate_question_payload,
    validate_scoring_type_payload,
)
from app.procurement.rbac import require_api_permission
from app.procurement.utils import json_body, page_params, paginate

bp = Blueprint("evaluations_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Evaluations ----------
@bp.get("/evaluations")
@require_api_permission("evaluations.view")
def evaluations_list():
    s = db_session()
    q = s.query(SupplierEvaluation)
    supplier_id = request.args.get("supplier_id", type=int)
    if supplier_id:
        q = q.filter(SupplierEvaluation.supplier_id == supplier_id)
    order_id = request.args.get("order_id", type=int)
    if order_id:
        q = q.filter(SupplierEvaluation.order_id == order_id)
    page, size = page_params(request.args)
    return paginate(q.order_by(SupplierEvaluation.created_at.desc(), SupplierEvaluation.id.desc()), page, size, evaluation_to_dict)


@bp.post("/evaluations")
@require_api_permission("evaluations.submit")
def evaluations_submit():
    """Score a questionnaire; the response carries section averages, weights and the decision."""
    s = db_session()
    payload = json_body()
    errors = validate_evaluation_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    ev, result = submit_evaluation(s, payload, _current_user())
    s.commit()
    return {**evaluation_to_dict(ev, detail=True), **result}, 201


@bp.get("/evaluations/<int:evaluation_id>")
@require_api_permission("evaluations.view")
def evaluation_detail(evaluation_id: int):
    s = db_session()
    return evaluation_to_dict(get_or_404(s, SupplierEvaluation, evaluation_id), detail=True)


# ---------- Questions ----------
@bp.get("/evaluations/questions")
@require_api_permission("evaluations.view")
def questions_list():
    s = db_session()
    q = s.query(EvaluationQuestion)
    if (request.args.get("active") or "").lower() in ("1", "true"):
        q = q.filter(EvaluationQuestion.is_active.is_(True))
    rows = q.order_by(EvaluationQuestion.section.asc(), EvaluationQuestion.sort.asc(), EvaluationQuestion.id.asc()).all()
    return {"items": [question_to_dict(r) for r in rows]}


@bp.post("/evaluations/questions")
@require_api_permission("settings.edit")
def questions_create():
    s = db_session()
    payload = json_body()
    errors = validate_question_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    question = save_question(s, payload, _current_user())
    s.commit()
    return question_to_dict(question), 201


@bp.patch("/evaluations/questions/<int:question_id>")
@require_api_permission("settings.edit")
def questions_update(question_id: int):
    s = db_session()
    question = get_or_404(s, EvaluationQuestion, question_id)
    payload = json_body()
    errors = validate_question_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    save_question(s, payload, _current_user(), question)
    s.commit()
    return question_to_dict(question)


# ---------- Scoring types ----------
@bp.get("/evaluations/scoring-types")
@require_api_permission("evaluations.view")
def scoring_types_list():
    s = db_session()
    rows = s.query(ScoringType).order_by(ScoringType.code.asc()).all()
    return {"items": [scoring_type_to_dict(r) for r in rows]}


@bp.post("/evaluations/scoring-types")
@require_api_permission("settings.edit")
def scoring_types_create():
    s = db_session()
    payload = json_body()
    errors = validate_scoring_type_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    row = save_scoring_type(s, payload, _current_user())
    s.commit()
    return scoring_type_to_dict(row), 201


@bp.patch("/evaluations/scoring-types/<int:scoring_type_id>")
@require_api_permission("settings.edit")
def scoring_types_update(scoring_type_id: int):
    s = db_session()
    row = get_or_404(s, ScoringType, scoring_type_id)
    payload = json_body()
    errors = validate_scoring_type_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    save_scoring_type(s, payload, _current_user(), row)
    s.commit()
    return scoring_type_to_dict(row)


# ---------- Metrics / summaries ----------
@bp.get("/evaluations/metrics")
@require_api_permission("evaluations.view")
def metrics_list():
    s = db_session()
    q = s.query(SupplierPerformanceMetric)
    supplier_id = request.args.get("supplier_id", type=int)
    if supplier_id:
        q = q.filter(SupplierPerformanceMetric.supplier_id == supplier_id)
    period = (request.args.get("period") or "").strip()
    if period:
        q = q.filter(SupplierPerformanceMetric.period == period)
    rows = q.order_by(SupplierPerformanceMetric.period.desc(), SupplierPerformanceMetric.supplier_id.asc()).all()
    return {"items": [metric_to_dict(m) for m in rows]}


@bp.post("/evaluations/metrics")
@require_api_permission("evaluations.submit")
def metrics_upsert():
    s = db_session()
    payload = json_body()
    errors = validate_metric_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    metric = upsert_metric(s, payload, _current_user())
    s.commit()
    return metric_to_dict(metric)


@bp.get("/evaluations/summaries")
@require_api_permission("evaluations.view")
def summaries_list():
    s = db_session()
    period = (request.args.get("period") or "").strip() or current_period()
    rows = (
        s.query(SupplierEvaluationSummary)
        .filter(SupplierEvaluationSummary.period == period)
        .order_by(SupplierEvaluationSummary.total.desc())
        .all()
    )
    return {"period": period, "items": [summary_to_dict(r) for r in rows]}


@bp.post("/evaluations/summaries/run")
@require_api_permission("evaluations.submit")
def summaries_run():
    s = db_session()
    period = (json_body().get("period") or "").strip() or current_period()
    if not PERIOD_RE.match(period):
        raise ValidationError(details=["Period must look like YYYY-MM."])
    rows = run_summaries(s, period, _current_user())
    s.commit()
    return {"period": period, "items": [summary_to_dict(r) for r in rows]}
