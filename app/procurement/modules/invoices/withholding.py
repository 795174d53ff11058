"""
VAT withholding arithmetic.

Pure functions over plain mappings so they can be used for the preview
endpoint, on create, and in tests without a database.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from app.procurement.utils import money, parse_decimal_flexible

ZERO = Decimal("0")


def parse_ratio(ratio: Any) -> Decimal:
    """Ratio "7/10" -> 0.7, clamped to 0..1. Plain numbers are accepted as-is."""
    if ratio is None:
        return ZERO
    text = str(ratio).strip()
    if "/" in text:
        num_raw, _, den_raw = text.partition("/")
        num = parse_decimal_flexible(num_raw)
        den = parse_decimal_flexible(den_raw)
        if num is None or not den:
            return ZERO
        value = num / den
    else:
        value = parse_decimal_flexible(text) or ZERO
    return min(Decimal("1"), max(ZERO, value))


def _dec(value: Any) -> Decimal:
    return parse_decimal_flexible(value) or ZERO


def _rule_applies(rule: Mapping[str, Any], tax_rate: Decimal) -> bool:
    rates = rule.get("applicable_vat_rates")
    if rates:
        return any(_dec(r) == tax_rate for r in rates)
    vat_rate = rule.get("vat_rate")
    if vat_rate in (None, ""):
        return True
    return _dec(vat_rate) == tax_rate


def calculate_withholding(items: Iterable[Mapping[str, Any]], rule: Mapping[str, Any] | None = None) -> dict[str, Decimal]:
    """
    Totals for a list of invoice lines.

    Each line carries quantity, unit_price, tax_rate (percent) and
    apply_withholding. Only flagged lines whose VAT rate matches the rule
    contribute to the withheld VAT.
    """
    subtotal = ZERO
    vat_total = ZERO
    withheld = ZERO
    percent = parse_ratio(rule.get("ratio")) if rule else ZERO

    for it in items:
        line = _dec(it.get("quantity")) * _dec(it.get("unit_price"))
        tax_rate = _dec(it.get("tax_rate"))
        line_vat = line * tax_rate / 100
        subtotal += line
        vat_total += line_vat
        if rule and it.get("apply_withholding") and _rule_applies(rule, tax_rate):
            withheld += line_vat * percent

    subtotal = money(subtotal)
    vat_total = money(vat_total)
    withheld = money(withheld)
    payable_vat = money(vat_total - withheld)
    return {
        "subtotal": subtotal,
        "vat_total": vat_total,
        "withheld_vat": withheld,
        "payable_vat": payable_vat,
        "gross_total": money(subtotal + vat_total),
        "net_payable": money(subtotal + payable_vat),
    }
