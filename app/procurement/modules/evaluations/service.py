from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy import or_, select

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, NotFoundError
from app.procurement.modules.notifications.service import dispatch_email
from app.procurement.modules.orders.models import PurchaseOrder
from app.procurement.modules.requests.models import PurchaseRequest
from app.procurement.modules.suppliers.models import Supplier
from app.procurement.utils import is_valid_email, parse_decimal_flexible

from .models import (
    EvaluationQuestion,
    ScoringType,
    SupplierEvaluation,
    SupplierEvaluationAnswer,
    SupplierEvaluationSummary,
    SupplierPerformanceMetric,
)
from .scoring import SECTIONS, score_evaluation, summarize_metrics

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User

logger = logging.getLogger(__name__)

PERIOD_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
METRIC_FIELDS = ("on_time_rate", "defect_rate", "avg_lead_time_days", "price_index", "service_score")


def _clean(value: Any) -> str | None:
    return (str(value).strip() if value is not None else "") or None


def current_period(today: date | None = None) -> str:
    today = today or date.today()
    return f"{today.year}-{today.month:02d}"


def _float_or_none(value: Any) -> float | None:
    d = parse_decimal_flexible(value)
    return float(d) if d is not None else None


# ---------- Evaluations ----------


def weights_for(s: "Session", scoring_type: str | None) -> tuple[float, float, float] | None:
    """Weights from an active scoring type row; None means fall back to the built-in defaults."""
    if not scoring_type:
        return None
    row = s.query(ScoringType).filter(ScoringType.code == scoring_type, ScoringType.is_active.is_(True)).one_or_none()
    if row is None:
        return None
    return (row.weight_a, row.weight_b, row.weight_c)


def validate_evaluation_payload(payload: dict) -> list[str]:
    errors = []
    if not payload.get("supplier_id"):
        errors.append("supplier_id is required.")
    answers = payload.get("answers")
    if not isinstance(answers, list) or not answers:
        errors.append("answers must be a non-empty list.")
    else:
        for i, a in enumerate(answers, start=1):
            if not isinstance(a, dict) or not str(a.get("question_id") or "").isdigit():
                errors.append(f"Answer {i}: question_id is required.")
    return errors


def submit_evaluation(s: "Session", payload: dict, user: "User") -> tuple[SupplierEvaluation, dict]:
    supplier = s.get(Supplier, int(payload["supplier_id"]))
    if supplier is None:
        raise NotFoundError("not_found", "Supplier not found.")
    order_id = payload.get("order_id")
    if order_id and s.get(PurchaseOrder, int(order_id)) is None:
        raise NotFoundError("not_found", "Order not found.")

    answers = payload["answers"]
    question_ids = {int(a["question_id"]) for a in answers}
    questions = {q.id: q for q in s.query(EvaluationQuestion).filter(EvaluationQuestion.id.in_(question_ids)).all()}
    unknown = sorted(question_ids - set(questions))
    if unknown:
        raise BadRequestError("invalid_question_ids", details={"unknown_ids": unknown, "count": len(unknown)})

    scoring_type = _clean(payload.get("scoring_type"))
    pairs = [(questions[int(a["question_id"])].section, a.get("value")) for a in answers]
    result = score_evaluation(pairs, scoring_type, weights_for(s, scoring_type))

    ev = SupplierEvaluation(
        supplier_id=supplier.id,
        order_id=int(order_id) if order_id else None,
        evaluator_user_id=user.id,
        scoring_type=scoring_type,
        section_averages=result["section_averages"],
        overall=result["overall"],
        score=result["score"],
        decision=result["decision"],
        comment=_clean(payload.get("comment")),
    )
    for a in answers:
        ev.answers.append(SupplierEvaluationAnswer(question_id=int(a["question_id"]), value=str(a.get("value") if a.get("value") is not None else "")))
    s.add(ev)
    s.flush()
    record_event(
        s,
        actor=user,
        action="evaluation.submit",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        metadata={"evaluation_id": ev.id, "order_id": ev.order_id, "score": ev.score, "decision": ev.decision},
    )
    return ev, result


def evaluation_to_dict(ev: SupplierEvaluation, *, detail: bool = False) -> dict:
    out = {
        "id": ev.id,
        "supplier_id": ev.supplier_id,
        "order_id": ev.order_id,
        "evaluator_user_id": ev.evaluator_user_id,
        "scoring_type": ev.scoring_type,
        "section_averages": ev.section_averages or {},
        "overall": ev.overall,
        "score": ev.score,
        "decision": ev.decision,
        "comment": ev.comment,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
    }
    if detail:
        out["answers"] = [{"question_id": a.question_id, "value": a.value} for a in ev.answers]
    return out


# ---------- Questions / scoring types ----------


def validate_question_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial or "section" in payload:
        if (payload.get("section") or "").upper() not in SECTIONS:
            errors.append("Section must be A, B or C.")
    if not partial or "text" in payload:
        if not _clean(payload.get("text")):
            errors.append("Text is required.")
    return errors


def save_question(s: "Session", payload: dict, user: "User", question: EvaluationQuestion | None = None) -> EvaluationQuestion:
    creating = question is None
    if creating:
        question = EvaluationQuestion()
        s.add(question)
    if "section" in payload:
        question.section = payload["section"].upper()
    if "text" in payload:
        question.text = _clean(payload.get("text"))
    if "is_active" in payload:
        question.is_active = bool(payload.get("is_active"))
    if "sort" in payload:
        question.sort = int(payload.get("sort") or 0)
    s.flush()
    record_event(
        s,
        actor=user,
        action="evaluation.question_create" if creating else "evaluation.question_update",
        entity_type="EvaluationQuestion",
        entity_id=str(question.id),
    )
    return question


def question_to_dict(q: EvaluationQuestion) -> dict:
    return {"id": q.id, "section": q.section, "text": q.text, "is_active": q.is_active, "sort": q.sort}


def validate_scoring_type_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial:
        if not _clean(payload.get("code")):
            errors.append("Code is required.")
        if not _clean(payload.get("name")):
            errors.append("Name is required.")
    for key in ("weight_a", "weight_b", "weight_c"):
        if partial and key not in payload:
            continue
        w = parse_decimal_flexible(payload.get(key))
        if w is None or not (0 <= w <= 1):
            errors.append(f"{key} must be between 0 and 1.")
    return errors


def save_scoring_type(s: "Session", payload: dict, user: "User", row: ScoringType | None = None) -> ScoringType:
    creating = row is None
    if creating:
        code = _clean(payload.get("code")).lower()
        if s.query(ScoringType).filter(ScoringType.code == code).count():
            raise ConflictError("duplicate_code")
        row = ScoringType(code=code)
        s.add(row)
    if "name" in payload:
        row.name = _clean(payload.get("name"))
    for key in ("weight_a", "weight_b", "weight_c"):
        if key in payload:
            setattr(row, key, float(parse_decimal_flexible(payload[key])))
    if "is_active" in payload:
        row.is_active = bool(payload.get("is_active"))
    s.flush()
    record_event(
        s,
        actor=user,
        action="evaluation.scoring_type_create" if creating else "evaluation.scoring_type_update",
        entity_type="ScoringType",
        entity_id=str(row.id),
        metadata={"code": row.code, "weights": [row.weight_a, row.weight_b, row.weight_c]},
    )
    return row


def scoring_type_to_dict(row: ScoringType) -> dict:
    return {
        "id": row.id,
        "code": row.code,
        "name": row.name,
        "weight_a": row.weight_a,
        "weight_b": row.weight_b,
        "weight_c": row.weight_c,
        "is_active": row.is_active,
    }


# ---------- Metrics / summaries ----------


def validate_metric_payload(payload: dict) -> list[str]:
    errors = []
    if not payload.get("supplier_id"):
        errors.append("supplier_id is required.")
    if not PERIOD_RE.match(str(payload.get("period") or "")):
        errors.append("Period must look like YYYY-MM.")
    for key in METRIC_FIELDS:
        raw = payload.get(key)
        if raw not in (None, "") and parse_decimal_flexible(raw) is None:
            errors.append(f"{key} must be a number.")
    return errors


def upsert_metric(s: "Session", payload: dict, user: "User") -> SupplierPerformanceMetric:
    supplier = s.get(Supplier, int(payload["supplier_id"]))
    if supplier is None:
        raise NotFoundError("not_found", "Supplier not found.")
    period = payload["period"]
    metric = (
        s.query(SupplierPerformanceMetric)
        .filter(SupplierPerformanceMetric.supplier_id == supplier.id, SupplierPerformanceMetric.period == period)
        .one_or_none()
    )
    if metric is None:
        metric = SupplierPerformanceMetric(supplier_id=supplier.id, period=period)
        s.add(metric)
    for key in METRIC_FIELDS:
        if key in payload:
            setattr(metric, key, _float_or_none(payload.get(key)))
    metric.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="evaluation.metric_upsert",
        entity_type="Supplier",
        entity_id=str(supplier.id),
        metadata={"period": period},
    )
    return metric


def metric_to_dict(m: SupplierPerformanceMetric) -> dict:
    out = {"id": m.id, "supplier_id": m.supplier_id, "period": m.period}
    for key in METRIC_FIELDS:
        out[key] = getattr(m, key)
    return out


def run_summaries(s: "Session", period: str, user: "User | None" = None) -> list[SupplierEvaluationSummary]:
    """Recompute summaries for every active supplier that has metrics in the period."""
    rows = (
        s.query(SupplierPerformanceMetric)
        .join(Supplier, Supplier.id == SupplierPerformanceMetric.supplier_id)
        .filter(SupplierPerformanceMetric.period == period, Supplier.is_active.is_(True))
        .all()
    )
    by_supplier: dict[int, list[dict]] = {}
    for m in rows:
        by_supplier.setdefault(m.supplier_id, []).append({key: getattr(m, key) for key in METRIC_FIELDS})

    out = []
    for supplier_id, metrics in sorted(by_supplier.items()):
        result = summarize_metrics(metrics)
        summary = (
            s.query(SupplierEvaluationSummary)
            .filter(SupplierEvaluationSummary.supplier_id == supplier_id, SupplierEvaluationSummary.period == period)
            .one_or_none()
        )
        if summary is None:
            summary = SupplierEvaluationSummary(supplier_id=supplier_id, period=period)
            s.add(summary)
        for key in ("quality", "delivery", "cost", "service", "total", "decision"):
            setattr(summary, key, result[key])
        summary.updated_at = datetime.utcnow()
        out.append(summary)
    s.flush()
    record_event(
        s,
        actor=user,
        action="evaluation.summaries_run",
        entity_type="SupplierEvaluationSummary",
        metadata={"period": period, "suppliers": len(out)},
    )
    return out


def summary_to_dict(row: SupplierEvaluationSummary) -> dict:
    return {
        "supplier_id": row.supplier_id,
        "period": row.period,
        "quality": row.quality,
        "delivery": row.delivery,
        "cost": row.cost,
        "service": row.service,
        "total": row.total,
        "decision": row.decision,
    }


# ---------- Reminders ----------


def send_evaluation_reminders(s: "Session", today: date | None = None, limit: int = 50) -> dict:
    """Ask the requesting side to evaluate suppliers of delivered orders that have no evaluation yet.

    An order is reminded at most once per day.
    """
    from app.procurement.models import User

    today = today or date.today()
    day_start = datetime.combine(today, datetime.min.time())
    after_days = int(current_app.config.get("EVALUATION_REMINDER_AFTER_DAYS", 7))
    cutoff = datetime.combine(today - timedelta(days=after_days), datetime.max.time())
    evaluated = select(SupplierEvaluation.order_id).where(SupplierEvaluation.order_id.is_not(None))
    rows = (
        s.query(PurchaseOrder)
        .filter(
            PurchaseOrder.status.in_(("Delivered", "Closed")),
            PurchaseOrder.created_at <= cutoff,
            PurchaseOrder.id.not_in(evaluated),
            or_(PurchaseOrder.evaluation_reminded_at.is_(None), PurchaseOrder.evaluation_reminded_at < day_start),
        )
        .order_by(PurchaseOrder.created_at.asc(), PurchaseOrder.id.asc())
        .limit(limit)
        .all()
    )
    sent = 0
    reminded = []
    for order in rows:
        request = s.get(PurchaseRequest, order.request_id) if order.request_id else None
        recipients: list[str] = []
        for uid in (request.owner_user_id if request else None, order.responsible_user_id):
            user = s.get(User, uid) if uid else None
            if user is not None and user.is_active:
                recipients.append(user.email)
        if request is not None and request.department_email:
            recipients.append(request.department_email)
        recipients = [r for r in dict.fromkeys(e.strip().lower() for e in recipients) if is_valid_email(r)]

        supplier_name = order.supplier.name if order.supplier else ""
        title = f"Please evaluate {supplier_name} for order {order.code}"
        for to in recipients:
            dispatch_email(
                s,
                to,
                title,
                template="detail",
                context={
                    "heading": title,
                    "intro": "The order below has been delivered and the supplier has not been evaluated yet.",
                    "fields": [("Order", order.code), ("Supplier", supplier_name), ("Status", order.status)],
                },
                category="evaluation_reminder",
            )
        sent += len(recipients)
        order.evaluation_reminded_at = day_start
        reminded.append({"id": order.id, "code": order.code, "recipients": len(recipients)})
    if reminded:
        logger.info("Evaluation reminders: %s orders, %s emails", len(reminded), sent)
    return {"sent": sent, "orders": reminded}
