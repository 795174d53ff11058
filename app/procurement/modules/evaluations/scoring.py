"""
Supplier scoring.

Two independent schemes live here:
- questionnaire evaluations: answers grouped into sections A/B/C, section
  averages weighted by scoring type, overall rating on a 0..5 scale;
- period summaries: monthly performance metrics normalized to 0..100 and
  combined into quality/delivery/cost/service scores.

Everything here is pure so it can be tested without a database.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping

SECTIONS = ("A", "B", "C")

DEFAULT_WEIGHTS: dict[str, tuple[float, float, float]] = {
    "malzeme": (0.4, 0.4, 0.2),
    "hizmet": (0.3, 0.5, 0.2),
    "danismanlik": (0.2, 0.4, 0.4),
    "bakim": (0.5, 0.4, 0.1),
    "insaat": (0.4, 0.5, 0.1),
}
EQUAL_WEIGHTS = (1 / 3, 1 / 3, 1 / 3)

OPTION_VALUES = {"o1": 5.0, "o2": 4.0, "o3": 3.0, "o4": 2.0}

SUMMARY_WEIGHTS = {"quality": 0.4, "delivery": 0.25, "cost": 0.2, "service": 0.15}


def answer_value(value: Any) -> float:
    raw = str(value if value is not None else "").strip()
    try:
        num = float(raw)
    except ValueError:
        return OPTION_VALUES.get(raw.lower(), 0.0)
    if num != num or num < 0 or num in (float("inf"), float("-inf")):
        return 0.0
    return num


def default_weights(scoring_type: str | None) -> tuple[float, float, float]:
    return DEFAULT_WEIGHTS.get((scoring_type or "").strip().lower(), EQUAL_WEIGHTS)


def _avg(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def section_averages(answers: Iterable[tuple[str, Any]]) -> dict[str, float]:
    """answers: (section, raw value) pairs. Missing sections average to 0."""
    by_section: dict[str, list[float]] = {sec: [] for sec in SECTIONS}
    for section, value in answers:
        by_section.setdefault((section or "").upper(), []).append(answer_value(value))
    return {sec: _avg(by_section[sec]) for sec in SECTIONS}


def evaluation_decision(overall: float, scoring_type: str | None = None) -> str:
    contractor = (scoring_type or "").lower() == "insaat"
    if overall >= 4.5:
        return "Approved contractor" if contractor else "Approved"
    if overall >= 3.5:
        return "Workable contractor" if contractor else "Workable"
    if overall >= 2.5:
        return "Conditional contractor" if contractor else "Conditional"
    if overall >= 1.0:
        return "Insufficient"
    return "Undetermined"


def score_evaluation(
    answers: Iterable[tuple[str, Any]],
    scoring_type: str | None = None,
    weights: tuple[float, float, float] | None = None,
) -> dict:
    averages = section_averages(answers)
    w = weights or default_weights(scoring_type)
    overall = round(averages["A"] * w[0] + averages["B"] * w[1] + averages["C"] * w[2], 2)
    score = round(overall / 5 * 100, 2)
    return {
        "section_averages": averages,
        "weights": {"A": w[0], "B": w[1], "C": w[2]},
        "overall": overall,
        "score": score,
        "decision": evaluation_decision(overall, scoring_type),
    }


# ---------- Period summaries ----------


def normalize(value: float | None, lo: float, hi: float, invert: bool = False) -> float:
    """Clamp into [lo, hi] and map onto 0..100 (inverted when lower is better)."""
    if value is None:
        return 0.0
    clamped = max(lo, min(hi, float(value)))
    base = (clamped - lo) / (hi - lo)
    return round((1 - base if invert else base) * 100)


def _mean(values: Iterable[float | None]) -> float | None:
    present = [float(v) for v in values if v is not None]
    return sum(present) / len(present) if present else None


def summary_decision(total: float) -> str:
    if total >= 80:
        return "Approved"
    if total >= 60:
        return "Conditional"
    return "Insufficient"


def summarize_metrics(metrics: Iterable[Mapping[str, Any]]) -> dict:
    """Combine one period's metric rows for a supplier into the four headline scores."""
    rows = list(metrics)
    if not rows:
        return {"quality": 0, "delivery": 0, "cost": 0, "service": 0, "total": 0, "decision": summary_decision(0)}

    on_time = normalize(_mean(r.get("on_time_rate") for r in rows), 0, 1)
    defect = normalize(_mean(r.get("defect_rate") for r in rows), 0, 1, invert=True)
    lead = normalize(_mean(r.get("avg_lead_time_days") for r in rows), 1, 60, invert=True)
    price = normalize(_mean(r.get("price_index") for r in rows), 0.5, 1.5, invert=True)
    service = normalize(_mean(r.get("service_score") for r in rows), 0, 1)

    quality = round((on_time + defect) / 2, 2)
    delivery = round((on_time + lead) / 2, 2)
    total = round(
        quality * SUMMARY_WEIGHTS["quality"]
        + delivery * SUMMARY_WEIGHTS["delivery"]
        + price * SUMMARY_WEIGHTS["cost"]
        + service * SUMMARY_WEIGHTS["service"],
        2,
    )
    return {
        "quality": quality,
        "delivery": delivery,
        "cost": price,
        "service": service,
        "total": total,
        "decision": summary_decision(total),
    }
