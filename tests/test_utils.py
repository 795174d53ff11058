"""
Unit tests for the shared helpers.

Tests cover:
- Flexible decimal parsing (Turkish and English separators)
- Number formatting and template placeholders
- Pagination and storage key helpers
- The fixed-window rate limiter
- ISO date/time parsing with offsets
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from app.procurement.ratelimit import Limit, RateLimiter
from app.procurement.storage import build_storage_key
from app.procurement.utils import (
    format_number_tr,
    is_valid_email,
    page_params,
    parse_date,
    parse_datetime,
    parse_decimal_flexible,
    render_placeholders,
)


class TestParseDecimalFlexible:
    """Tests for parse_decimal_flexible()"""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("49,50", Decimal("49.50")),
            ("100.000,00", Decimal("100000.00")),
            ("1,234.56", Decimal("1234.56")),
            ("1.234", Decimal("1234")),
            ("12.5", Decimal("12.5")),
            (" 7 ", Decimal("7")),
            (3, Decimal("3")),
            (2.5, Decimal("2.5")),
        ],
    )
    def test_accepts_both_conventions(self, raw, expected):
        assert parse_decimal_flexible(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", True, float("inf"), "nan", [1]])
    def test_rejects_garbage(self, raw):
        assert parse_decimal_flexible(raw) is None


class TestFormatting:
    def test_format_number_tr(self):
        assert format_number_tr(Decimal("1234.5")) == "1.234,50"
        assert format_number_tr(1000000, 0) == "1.000.000"
        assert format_number_tr(None) == "0,00"

    def test_render_placeholders(self):
        """Dotted paths resolve into mappings; missing values render empty"""
        tpl = "Order {{ order.code }} for {{parties}} totals {{ order.total }}{{ missing }}."
        out = render_placeholders(tpl, {"order": {"code": "ORD-1", "total": Decimal("1500")}, "parties": "A / B"})
        assert out == "Order ORD-1 for A / B totals 1.500,00."
        assert render_placeholders(None, {}) == ""


class TestParsing:
    def test_is_valid_email(self):
        assert is_valid_email("a@b.co")
        assert not is_valid_email("a@b")
        assert not is_valid_email(None)

    def test_parse_date_is_lenient(self):
        assert parse_date("2026-03-04T10:00:00") == date(2026, 3, 4)
        assert parse_date("04.03.2026") is None

    def test_page_params_clamps(self):
        assert page_params({}) == (1, 20)
        assert page_params({"page": "0", "page_size": "1000"}) == (1, 100)
        assert page_params({"page": "3", "pageSize": "5"}) == (3, 5)

    def test_parse_datetime_normalizes_offsets_to_utc(self):
        assert parse_datetime("2030-01-01T00:00:00+03:00") == datetime(2029, 12, 31, 21, 0)
        assert parse_datetime("2030-01-01T09:30:00Z") == datetime(2030, 1, 1, 9, 30)
        assert parse_datetime("2030-01-01T09:30:00") == datetime(2030, 1, 1, 9, 30)
        assert parse_datetime("2030-01-01") == datetime(2030, 1, 1)
        assert parse_datetime("tomorrow") is None
        assert parse_datetime(None) is None

    def test_storage_key_is_sanitized(self):
        assert build_storage_key("contracts", 7, "../etc/passwd", date(2026, 1, 2)) == "contracts/7/2026-01-02/etc_passwd"


class TestRateLimiter:
    def test_limit_parse(self):
        assert Limit.parse("10/60") == Limit(10, 60)
        assert Limit.parse("5") == Limit(5, 60)
        with pytest.raises(ValueError):
            Limit.parse("ten/minute")

    def test_fixed_window(self):
        now = [100.0]
        limiter = RateLimiter({"api": Limit(2, 10)}, clock=lambda: now[0])
        assert limiter.hit("api", "1.2.3.4") == (True, 10)
        assert limiter.hit("api", "1.2.3.4")[0] is True
        allowed, retry_after = limiter.hit("api", "1.2.3.4")
        assert allowed is False
        assert retry_after == 10
        # other clients have their own counters
        assert limiter.hit("api", "5.6.7.8")[0] is True

        now[0] += 10
        assert limiter.hit("api", "1.2.3.4")[0] is True

    def test_reset_and_disabled(self):
        limiter = RateLimiter({"api": Limit(1, 10)}, clock=lambda: 0.0)
        limiter.hit("api", "x")
        assert limiter.hit("api", "x")[0] is False
        limiter.reset("api", "x")
        assert limiter.hit("api", "x")[0] is True

        disabled = RateLimiter({"api": Limit(1, 10)}, enabled=False)
        assert all(disabled.hit("api", "x")[0] for _ in range(5))

    def test_closed_windows_are_evicted(self):
        now = [0.0]
        limiter = RateLimiter({"api": Limit(5, 10)}, clock=lambda: now[0])
        for i in range(50):
            limiter.hit("api", f"10.0.0.{i}")
        assert len(limiter) == 50

        now[0] = 11.0
        limiter.hit("api", "10.0.1.1")
        assert len(limiter) == 1

    def test_open_windows_survive_a_sweep(self):
        now = [0.0]
        limiter = RateLimiter({"api": Limit(1, 10), "login": Limit(1, 300)}, clock=lambda: now[0])
        limiter.hit("login", "x")
        now[0] = 20.0
        limiter.hit("api", "y")
        assert len(limiter) == 2
        assert limiter.hit("login", "x")[0] is False
