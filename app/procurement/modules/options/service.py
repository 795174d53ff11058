"""
Pick lists for forms.

Each category is a flat, ordered list of labels. Sort positions are kept
dense (1..n) after every move and delete so the order a user sees is the
order stored.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.procurement.audit import record_event
from app.procurement.errors import BadRequestError, ConflictError, NotFoundError
from app.procurement.utils import is_valid_email

from .models import OptionItem

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.procurement.models import User


CATEGORIES: dict[str, str] = {
    "birim": "Requesting unit",
    "durum": "Request status label",
    "paraBirimi": "Currency",
    "birimTipi": "Unit of measure",
    "siparisDurumu": "Order status label",
    "alimYontemi": "Procurement method",
    "yonetmelikMaddesi": "Regulation article",
    "projeKodu": "Project code",
    "butceKodu": "Budget code",
}

# categories readable without a session (the supplier registration form)
PUBLIC_CATEGORIES = ("birim",)


def check_category(category: Any) -> str:
    if category not in CATEGORIES:
        raise NotFoundError("category_not_found")
    return category


def list_options(s: "Session", category: str, *, include_inactive: bool = False) -> list[OptionItem]:
    q = s.query(OptionItem).filter(OptionItem.category == check_category(category))
    if not include_inactive:
        q = q.filter(OptionItem.active.is_(True))
    return q.order_by(OptionItem.sort.asc(), OptionItem.label.asc()).all()


def grouped_options(s: "Session") -> dict[str, list[dict]]:
    """Every category's active entries, categories without entries included."""
    out: dict[str, list[dict]] = {key: [] for key in CATEGORIES}
    rows = (
        s.query(OptionItem)
        .filter(OptionItem.active.is_(True), OptionItem.category.in_(tuple(CATEGORIES)))
        .order_by(OptionItem.sort.asc(), OptionItem.label.asc())
        .all()
    )
    for row in rows:
        out[row.category].append(option_to_dict(row))
    return out


def validate_option_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial and payload.get("category") not in CATEGORIES:
        errors.append(f"category must be one of: {', '.join(CATEGORIES)}")
    if (not partial or "label" in payload) and not (payload.get("label") or "").strip():
        errors.append("Label is required.")
    email = (payload.get("email") or "").strip()
    if email and not is_valid_email(email):
        errors.append("Email is invalid.")
    return errors


def _ensure_unique(s: "Session", category: str, label: str, exclude_id: int | None = None) -> None:
    q = s.query(OptionItem).filter(OptionItem.category == category, func.lower(OptionItem.label) == label.lower())
    if exclude_id is not None:
        q = q.filter(OptionItem.id != exclude_id)
    if q.count():
        raise ConflictError("duplicate", f"'{label}' already exists in {category}.")


def _resequence(s: "Session", category: str) -> None:
    rows = (
        s.query(OptionItem)
        .filter(OptionItem.category == category)
        .order_by(OptionItem.sort.asc(), OptionItem.label.asc(), OptionItem.id.asc())
        .all()
    )
    for i, row in enumerate(rows, start=1):
        row.sort = i


def create_option(s: "Session", payload: dict, user: "User | None") -> OptionItem:
    category = check_category(payload.get("category"))
    label = payload["label"].strip()
    _ensure_unique(s, category, label)
    last = s.query(func.max(OptionItem.sort)).filter(OptionItem.category == category).scalar() or 0
    item = OptionItem(
        category=category,
        label=label,
        value=(payload.get("value") or "").strip() or None,
        email=((payload.get("email") or "").strip() or None) if category == "birim" else None,
        sort=last + 1,
        active=bool(payload.get("active", True)),
        tenant_id=user.tenant_id if user else None,
    )
    s.add(item)
    s.flush()
    record_event(s, actor=user, action="option.create", entity_type="OptionItem", entity_id=str(item.id), metadata={"category": category, "label": label})
    return item


def update_option(s: "Session", item: OptionItem, payload: dict, user: "User") -> OptionItem:
    changes: dict[str, Any] = {}
    if "label" in payload:
        label = payload["label"].strip()
        if label != item.label:
            _ensure_unique(s, item.category, label, exclude_id=item.id)
            changes["label"] = {"old": item.label, "new": label}
            item.label = label
    if "value" in payload:
        item.value = (payload.get("value") or "").strip() or None
    if "email" in payload and item.category == "birim":
        item.email = (payload.get("email") or "").strip() or None
    if "active" in payload and bool(payload["active"]) != item.active:
        changes["active"] = {"old": item.active, "new": bool(payload["active"])}
        item.active = bool(payload["active"])
    record_event(s, actor=user, action="option.edit", entity_type="OptionItem", entity_id=str(item.id), metadata={"changes": changes})
    return item


def move_option(s: "Session", item: OptionItem, direction: Any, user: "User") -> OptionItem:
    """Swap the entry one place up (-1) or down (+1) within its category."""
    try:
        step = int(direction)
    except (TypeError, ValueError):
        step = 0
    if step not in (-1, 1):
        raise BadRequestError("bad_request", "direction must be -1 or 1.")
    _resequence(s, item.category)
    rows = list_options(s, item.category, include_inactive=True)
    idx = next(i for i, row in enumerate(rows) if row.id == item.id)
    target = idx + step
    if 0 <= target < len(rows):
        rows[idx].sort, rows[target].sort = rows[target].sort, rows[idx].sort
    s.flush()
    record_event(s, actor=user, action="option.move", entity_type="OptionItem", entity_id=str(item.id), metadata={"sort": item.sort})
    return item


def delete_option(s: "Session", item: OptionItem, user: "User") -> str:
    category = item.category
    record_event(s, actor=user, action="option.delete", entity_type="OptionItem", entity_id=str(item.id), metadata={"category": category, "label": item.label})
    s.delete(item)
    s.flush()
    _resequence(s, category)
    return category


def option_to_dict(item: OptionItem) -> dict:
    return {
        "id": item.id,
        "category": item.category,
        "label": item.label,
        "value": item.value,
        "email": item.email,
        "sort": item.sort,
        "active": item.active,
    }
