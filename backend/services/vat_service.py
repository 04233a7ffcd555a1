"""
VAT Service — UK VAT apportionment over tax-inclusive shelf prices.

Prices on a UK receipt already include VAT, so the tax is *extracted* from
each line total:  vat = total × rate / (100 + rate).  Rates are restricted
to the three fixed bands below; the rate for an item comes from the
extraction pass or from an explicit user override, never from its category
here.

Rounding happens per item (half-up, 2 dp).  aggregate() only sums the
already-rounded amounts so the receipt totals always equal the sum of what
the user sees on each line.
"""
import logging
from decimal import Decimal
from typing import Any, Iterable, Optional

from models.schemas import LineItem, RateBand, VATSummary
from services.money import parse_decimal_or_default, round2

logger = logging.getLogger("tally.vat")

VAT_RATES: dict[RateBand, Decimal] = {
    RateBand.ZERO: Decimal("0"),
    RateBand.REDUCED: Decimal("5"),
    RateBand.STANDARD: Decimal("20"),
}

_BAND_BY_RATE = {rate: band for band, rate in VAT_RATES.items()}


class InvalidVatRate(ValueError):
    """Raised when a rate is not one of the fixed VAT bands."""
    pass


def is_valid_rate(rate: Optional[Decimal]) -> bool:
    return rate is not None and rate in _BAND_BY_RATE


def rate_band_for(rate: Decimal) -> RateBand:
    """Map a percentage (0/5/20) to its band."""
    try:
        return _BAND_BY_RATE[Decimal(rate)]
    except (KeyError, TypeError, ArithmeticError):
        raise InvalidVatRate(
            f"Unsupported VAT rate {rate!r}. Must be one of: "
            f"{', '.join(str(r) for r in VAT_RATES.values())}"
        ) from None


def compute_vat(total_price: Decimal, rate: Decimal) -> Decimal:
    """VAT contained in a tax-inclusive total.  Rate 0 is exactly 0.00."""
    rate_band_for(rate)
    if rate == 0:
        return Decimal("0.00")
    return round2(total_price * rate / (Decimal("100") + rate))


def with_vat(item: LineItem) -> LineItem:
    """Return `item` with vat_amount and price_ex_vat recomputed from its total."""
    vat_amount = compute_vat(item.total_price, item.vat_rate)
    if vat_amount == item.vat_amount and item.price_ex_vat == item.total_price - vat_amount:
        return item
    return item.model_copy(update={
        "vat_amount": vat_amount,
        "price_ex_vat": item.total_price - vat_amount,
    })


def assign_rate(item: LineItem, explicit_rate: Any = None) -> LineItem:
    """
    Apply a user-selected rate when given, otherwise keep the rate the item
    already carries.  Either way the VAT amount is recomputed.
    """
    if explicit_rate is None:
        rate_band_for(item.vat_rate)
        return with_vat(item)

    rate = parse_decimal_or_default(explicit_rate, None)
    if rate is None:
        raise InvalidVatRate(f"Unsupported VAT rate {explicit_rate!r}")
    rate_band_for(rate)
    logger.debug("VAT override on %r: %s%% → %s%%", item.name, item.vat_rate, rate)
    return with_vat(item.model_copy(update={"vat_rate": rate}))


def aggregate(items: Iterable[LineItem]) -> VATSummary:
    """Total VAT plus per-band amounts and item counts."""
    breakdown = {band: Decimal("0.00") for band in RateBand}
    counts = {band: 0 for band in RateBand}
    total = Decimal("0.00")
    for item in items:
        band = rate_band_for(item.vat_rate)
        breakdown[band] += item.vat_amount
        counts[band] += 1
        total += item.vat_amount
    return VATSummary(total_vat=total, breakdown=breakdown, counts=counts)
