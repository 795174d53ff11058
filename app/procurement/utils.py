from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from flask import request

from app.procurement.errors import BadRequestError, ValidationError

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_.]+)\s*\}\}")

TWO_PLACES = Decimal("0.01")
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def is_valid_email(value: str | None) -> bool:
    return bool(value and EMAIL_RE.match(value.strip()))


def parse_decimal_flexible(value: Any) -> Decimal | None:
    """Parse numbers typed in either "1.234,56" or "1,234.56" style.

    Both separators present: the rightmost one is the decimal point.
    Comma only: decimal comma. Dot only: a single dot followed by one or two
    digits is a decimal point, otherwise dots are thousands separators.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    s = re.sub(r"\s+", "", value)
    if not s:
        return None

    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        last_sep = max(s.rfind("."), s.rfind(","))
        s = "".join(ch for i, ch in enumerate(s) if ch not in ".," or i == last_sep)
        s = s.replace(",", ".")
    elif has_comma:
        s = s.replace(",", ".", 1)
    elif has_dot:
        after = s[s.rfind(".") + 1:]
        if not (s.count(".") == 1 and 0 < len(after) <= 2):
            s = s.replace(".", "")

    try:
        num = Decimal(s)
    except InvalidOperation:
        return None
    return num if num.is_finite() else None


def money(value: Any) -> Decimal:
    """Quantize to 2 places, half-up."""
    d = value if isinstance(value, Decimal) else (parse_decimal_flexible(value) or Decimal("0"))
    return d.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def as_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def format_number_tr(value: Any, digits: int = 2) -> str:
    """1234.5 -> "1.234,50"."""
    d = parse_decimal_flexible(value)
    if d is None:
        return "0," + "0" * digits if digits else "0"
    q = Decimal(1).scaleb(-digits) if digits else Decimal(1)
    text = f"{d.quantize(q, rounding=ROUND_HALF_UP):,.{digits}f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def parse_date(value: Any) -> date | None:
    """Lenient ISO date parse; invalid input yields None (used for list filters)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = (value or "").strip() if isinstance(value, str) else ""
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> datetime | None:
    """ISO date/time as naive UTC; values with an offset are converted first."""
    if isinstance(value, datetime):
        dt = value
    else:
        s = (value or "").strip() if isinstance(value, str) else ""
        if not s:
            return None
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def require_date(value: Any, field: str) -> date:
    d = parse_date(value)
    if d is None:
        raise ValidationError(details=[f"{field} must be a date (YYYY-MM-DD)."])
    return d


def json_body() -> dict:
    """Request JSON as a dict; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        if request.form:
            return request.form.to_dict()
        return {}
    if not isinstance(data, dict):
        raise BadRequestError("invalid_json")
    return data


def page_params(args: Mapping[str, Any]) -> tuple[int, int]:
    def _int(raw: Any, default: int) -> int:
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    page = max(1, _int(args.get("page"), 1))
    size = _int(args.get("page_size") or args.get("pageSize"), DEFAULT_PAGE_SIZE)
    size = min(MAX_PAGE_SIZE, max(1, size))
    return page, size


def paginate(query, page: int, page_size: int, serialize: Callable[[Any], dict]) -> dict:
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * page_size).limit(page_size).all()
    return {
        "items": [serialize(r) for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": max(1, math.ceil(total / page_size)) if total else 0,
    }


def render_placeholders(template: str | None, variables: Mapping[str, Any]) -> str:
    """Replace {{ key }} / {{ a.b }} placeholders. Missing values render empty."""
    if not template:
        return ""

    def _sub(m: re.Match) -> str:
        val: Any = variables
        for part in m.group(1).split("."):
            if val is None:
                break
            val = val.get(part) if isinstance(val, Mapping) else getattr(val, part, None)
        if val is None:
            return ""
        if isinstance(val, (int, float, Decimal)) and not isinstance(val, bool):
            return format_number_tr(val)
        return str(val)

    return _PLACEHOLDER_RE.sub(_sub, template)


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
