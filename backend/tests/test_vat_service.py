"""
Tests for VAT apportionment — extraction from tax-inclusive prices, rate
overrides, and per-band aggregation.
"""
from decimal import Decimal

import pytest

from models.schemas import LineItem, RateBand
from services.vat_service import (
    InvalidVatRate,
    aggregate,
    assign_rate,
    compute_vat,
    rate_band_for,
    with_vat,
)


def make_item(total="2.50", rate="0", **kw):
    return with_vat(LineItem(
        name=kw.pop("name", "Item"),
        unit_price=Decimal(total),
        total_price=Decimal(total),
        vat_rate=Decimal(rate),
        **kw,
    ))


# ── compute_vat ──────────────────────────────────────────────────────────────

class TestComputeVat:

    def test_zero_rate_is_exactly_zero(self):
        assert compute_vat(Decimal("123.45"), Decimal("0")) == Decimal("0.00")

    def test_standard_rate_is_one_sixth(self):
        assert compute_vat(Decimal("6.00"), Decimal("20")) == Decimal("1.00")
        assert compute_vat(Decimal("2.50"), Decimal("20")) == Decimal("0.42")

    def test_reduced_rate(self):
        assert compute_vat(Decimal("1.05"), Decimal("5")) == Decimal("0.05")
        assert compute_vat(Decimal("10.00"), Decimal("5")) == Decimal("0.48")

    def test_zero_total(self):
        assert compute_vat(Decimal("0.00"), Decimal("20")) == Decimal("0.00")

    @pytest.mark.parametrize("rate", [Decimal("-100"), Decimal("12")])
    def test_unsupported_rate_raises(self, rate):
        with pytest.raises(InvalidVatRate):
            compute_vat(Decimal("5.00"), rate)


class TestRateBand:

    @pytest.mark.parametrize("rate,band", [
        (Decimal("0"), RateBand.ZERO),
        (Decimal("5"), RateBand.REDUCED),
        (Decimal("20.0"), RateBand.STANDARD),
    ])
    def test_known_rates(self, rate, band):
        assert rate_band_for(rate) == band

    @pytest.mark.parametrize("rate", [Decimal("17.5"), Decimal("-5"), Decimal("12")])
    def test_unknown_rate_raises(self, rate):
        with pytest.raises(InvalidVatRate):
            rate_band_for(rate)


# ── with_vat / assign_rate ───────────────────────────────────────────────────

class TestWithVat:

    def test_sets_amount_and_ex_vat(self):
        item = make_item("2.50", "20")
        assert item.vat_amount == Decimal("0.42")
        assert item.price_ex_vat == Decimal("2.08")

    def test_unchanged_item_returned_as_is(self):
        item = make_item("2.50", "20")
        assert with_vat(item) is item


class TestAssignRate:

    def test_explicit_override(self):
        item = make_item("2.50", "0")
        updated = assign_rate(item, 20)
        assert updated.vat_rate == Decimal("20")
        assert updated.vat_amount == Decimal("0.42")
        assert item.vat_amount == Decimal("0.00"), "original item must not change"

    def test_override_accepts_string(self):
        assert assign_rate(make_item("1.05"), "5").vat_amount == Decimal("0.05")

    def test_none_keeps_existing_rate(self):
        item = make_item("6.00", "20")
        assert assign_rate(item).vat_amount == Decimal("1.00")

    @pytest.mark.parametrize("rate", [17.5, "abc", "", 100])
    def test_invalid_override_raises(self, rate):
        with pytest.raises(InvalidVatRate):
            assign_rate(make_item(), rate)


# ── aggregate ────────────────────────────────────────────────────────────────

class TestAggregate:

    def test_empty(self):
        summary = aggregate([])
        assert summary.total_vat == Decimal("0.00")
        assert summary.breakdown == {band: Decimal("0.00") for band in RateBand}
        assert summary.counts == {band: 0 for band in RateBand}

    def test_total_equals_sum_of_rounded_item_amounts(self):
        # three items whose unrounded VAT would sum differently
        items = [make_item("0.10", "20"), make_item("0.10", "20"), make_item("0.10", "20")]
        assert [i.vat_amount for i in items] == [Decimal("0.02")] * 3
        assert aggregate(items).total_vat == Decimal("0.06")

    def test_breakdown_and_counts_per_band(self):
        items = [
            make_item("2.00", "0"),
            make_item("3.00", "0"),
            make_item("1.05", "5"),
            make_item("6.00", "20"),
            make_item("2.50", "20"),
        ]
        summary = aggregate(items)
        assert summary.breakdown[RateBand.ZERO] == Decimal("0.00")
        assert summary.breakdown[RateBand.REDUCED] == Decimal("0.05")
        assert summary.breakdown[RateBand.STANDARD] == Decimal("1.42")
        assert summary.counts == {RateBand.ZERO: 2, RateBand.REDUCED: 1, RateBand.STANDARD: 2}
        assert summary.total_vat == sum(summary.breakdown.values())

    def test_item_with_unsupported_rate_raises(self):
        bad = LineItem(name="Bad", total_price=Decimal("1.00"), vat_rate=Decimal("7"))
        with pytest.raises(InvalidVatRate):
            aggregate([bad])
