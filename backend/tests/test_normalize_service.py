"""
Tests for the Normalizer — pure functions, no DB.

Covers:
- parse_decimal_or_default: every junk shape OCR/LLM output comes in
- normalize_item: defaults, clamping, quantity 0 → 1, OCR total fallback
"""
from datetime import date
from decimal import Decimal

import pytest

from models.schemas import MAX_AMOUNT, ApprovalState, Category
from services.normalize_service import (
    coerce_category,
    line_total,
    normalize_item,
    parse_date_or_default,
    parse_decimal_or_default,
    round2,
)


# ── round2 ───────────────────────────────────────────────────────────────────

class TestRound2:

    def test_half_up(self):
        assert round2(Decimal("0.125")) == Decimal("0.13")
        assert round2(Decimal("0.005")) == Decimal("0.01")

    def test_pads_to_two_places(self):
        assert str(round2(Decimal("3"))) == "3.00"


# ── parse_decimal_or_default ─────────────────────────────────────────────────

class TestParseDecimal:

    @pytest.mark.parametrize("value", [
        None, "", "   ", "abc", "NaN", "nan", "Infinity", "-inf",
        float("nan"), float("inf"), [], {}, True, False,
    ])
    def test_junk_returns_default(self, value):
        assert parse_decimal_or_default(value, Decimal("7")) == Decimal("7")

    def test_default_may_be_none(self):
        assert parse_decimal_or_default("n/a", None) is None

    def test_numeric_string(self):
        assert parse_decimal_or_default("2.50", None) == Decimal("2.50")

    def test_currency_symbols_stripped(self):
        assert parse_decimal_or_default("£4.99", None) == Decimal("4.99")
        assert parse_decimal_or_default(" 1,299.00 ", None) == Decimal("1299.00")

    @pytest.mark.parametrize("value", ["1e40", "-1e40", "1E+30", 10 ** 12, 1e40, Decimal("1e40")])
    def test_beyond_max_amount_returns_default(self, value):
        assert parse_decimal_or_default(value, Decimal("7")) == Decimal("7")

    def test_max_amount_itself_accepted(self):
        assert parse_decimal_or_default("1000000000", None) == MAX_AMOUNT

    @pytest.mark.parametrize("value,expected", [
        ("1,299.00", Decimal("1299.00")),
        ("12,345,678", Decimal("12345678")),
        ("£1,000", Decimal("1000")),
    ])
    def test_thousands_separators_stripped(self, value, expected):
        assert parse_decimal_or_default(value, None) == expected

    @pytest.mark.parametrize("value", ["1,50", "1,5", "12,3456", "1,2,3"])
    def test_decimal_comma_is_not_a_separator(self, value):
        """A decimal comma ("1,50") is never read as 150."""
        assert parse_decimal_or_default(value, Decimal("7")) == Decimal("7")

    def test_float_goes_through_str(self):
        """0.1 must not become 0.1000000000000000055511151231257827…"""
        assert parse_decimal_or_default(0.1, None) == Decimal("0.1")

    def test_int(self):
        assert parse_decimal_or_default(3, None) == Decimal("3")

    def test_negative_kept(self):
        """Clamping is the caller's job; parsing keeps the sign."""
        assert parse_decimal_or_default("-1.20", None) == Decimal("-1.20")


class TestParseDate:

    def test_iso_string(self):
        assert parse_date_or_default("2026-03-14", date(2000, 1, 1)) == date(2026, 3, 14)

    def test_datetime_string_truncated(self):
        assert parse_date_or_default("2026-03-14T10:22:00", date(2000, 1, 1)) == date(2026, 3, 14)

    def test_garbage_returns_default(self):
        assert parse_date_or_default("14th March", date(2000, 1, 1)) == date(2000, 1, 1)
        assert parse_date_or_default(None, date(2000, 1, 1)) == date(2000, 1, 1)


class TestCoerceCategory:

    def test_known_value(self):
        assert coerce_category("Dairy_Eggs") == Category.DAIRY_EGGS

    def test_enum_passes_through(self):
        assert coerce_category(Category.BAKERY) == Category.BAKERY

    def test_unknown_becomes_other(self):
        assert coerce_category("Produce") == Category.OTHER
        assert coerce_category(None) == Category.OTHER


def test_line_total_never_negative():
    assert line_total(Decimal("1"), Decimal("1.00"), Decimal("5.00")) == Decimal("0.00")
    assert line_total(Decimal("3"), Decimal("0.45"), Decimal("0.35")) == Decimal("1.00")


# ── normalize_item ───────────────────────────────────────────────────────────

class TestNormalizeItem:

    def test_empty_mapping_gets_defaults(self):
        item = normalize_item({}, 0)
        assert item.name == "Item 1"
        assert item.quantity == Decimal("1")
        assert item.unit_price == Decimal("0")
        assert item.total_price == Decimal("0.00")
        assert item.vat_rate == Decimal("0")
        assert item.vat_amount == Decimal("0.00")
        assert item.category == Category.OTHER
        assert item.approval_state == ApprovalState.PENDING
        assert item.confidence_score == Decimal("3")

    def test_non_mapping_gets_defaults(self):
        item = normalize_item("MILK 1.20", 4)
        assert item.name == "Item 5"
        assert item.total_price == Decimal("0.00")

    @pytest.mark.parametrize("qty", [0, "0", -2, None, "", "abc"])
    def test_non_positive_or_missing_quantity_becomes_one(self, qty):
        item = normalize_item({"name": "Milk", "quantity": qty, "unit_price": "1.20"})
        assert item.quantity == Decimal("1")
        assert item.total_price == Decimal("1.20")

    def test_total_recomputed_from_components(self):
        item = normalize_item({
            "name": "Yoghurt", "quantity": 3, "unit_price": 0.45,
            "discount_applied": 0.35, "total_price": 9.99,
        })
        assert item.total_price == Decimal("1.00")

    def test_ocr_total_kept_when_unit_price_illegible(self):
        item = normalize_item({"name": "Bread", "unit_price": None, "total_price": "1.35"})
        assert item.unit_price == Decimal("0")
        assert item.total_price == Decimal("1.35")

    def test_negative_prices_clamped(self):
        item = normalize_item({"name": "Refund?", "unit_price": "-2.00", "discount_applied": "-1"})
        assert item.unit_price == Decimal("0")
        assert item.discount_applied == Decimal("0")
        assert item.total_price == Decimal("0.00")

    def test_oversized_values_use_defaults(self):
        item = normalize_item({"name": "Milk", "quantity": "1e30", "unit_price": "1.20", "total_price": "1e40"})
        assert item.quantity == Decimal("1")
        assert item.total_price == Decimal("1.20")

    def test_oversized_total_alone_gives_zero(self):
        item = normalize_item({"name": "Milk", "total_price": "1e40"})
        assert item.total_price == Decimal("0.00")

    def test_line_total_capped(self):
        item = normalize_item({"name": "Pallet", "quantity": "100000", "unit_price": "100000"})
        assert item.total_price == MAX_AMOUNT

    def test_unsupported_vat_rate_falls_back_to_zero(self):
        item = normalize_item({"name": "Crisps", "unit_price": "1.20", "vat_rate": 17.5})
        assert item.vat_rate == Decimal("0")
        assert item.vat_amount == Decimal("0.00")

    def test_vat_computed_on_standard_rate(self):
        item = normalize_item({"name": "Crisps", "unit_price": "2.50", "vat_rate": "20"})
        assert item.vat_amount == Decimal("0.42")
        assert item.price_ex_vat == Decimal("2.08")

    def test_unknown_approval_state_is_pending(self):
        item = normalize_item({"name": "Eggs", "approval_state": "maybe"})
        assert item.approval_state == ApprovalState.PENDING

    def test_optional_fields(self):
        item = normalize_item({
            "name": "TESCO SEMI SKIM 2PT", "canonical_name": "Semi-skimmed milk",
            "brand": "Tesco", "category": "dairy_eggs", "pack_size_value": "1.136",
            "pack_size_unit": "l", "is_own_brand": True, "offer_description": "Clubcard price",
        })
        assert item.canonical_name == "Semi-skimmed milk"
        assert item.category == Category.DAIRY_EGGS
        assert item.pack_size_value == Decimal("1.136")
        assert item.pack_size_unit == "l"
        assert item.is_own_brand is True
        assert item.offer_description == "Clubcard price"

    def test_canonical_name_defaults_to_name(self):
        assert normalize_item({"name": "  Bananas "}).canonical_name == "Bananas"

