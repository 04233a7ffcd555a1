"""
Normalize Service — turns untrusted extraction output into safe numeric values.

Everything that comes back from the OCR/LLM pass is treated as arbitrary
data: numbers arrive as strings, floats, nulls, "£4.99", "NaN", or not at
all.  parse_decimal_or_default() (defined in services.money, re-exported
here) is the single coercion point; nothing in this package parses a
numeric field any other way.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from models.schemas import MAX_AMOUNT, ApprovalState, Category, LineItem
from services.money import parse_decimal_or_default, round2  # noqa: F401  (re-exported)
from services.vat_service import is_valid_rate, with_vat

logger = logging.getLogger("tally.normalize")

DEFAULT_STORE_NAME = "Unknown Store"
DEFAULT_CONFIDENCE = Decimal("3")


def parse_date_or_default(value: Any, default: date) -> date:
    """Accept a date, or an ISO string (a trailing time part is ignored)."""
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    return default


def coerce_category(value: Any) -> Category:
    if isinstance(value, Category):
        return value
    try:
        return Category(str(value).strip().lower())
    except ValueError:
        return Category.OTHER


def clean_text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def line_total(quantity: Decimal, unit_price: Decimal, discount: Decimal) -> Decimal:
    """round2(max(0, quantity × unit_price − discount)), capped at MAX_AMOUNT"""
    return round2(min(MAX_AMOUNT, max(Decimal("0"), quantity * unit_price - discount)))


def normalize_item(raw: Any, index: int = 0) -> LineItem:
    """
    Build a fully-populated LineItem from one raw extracted item.

    - quantity defaults to 1 (also when zero or negative)
    - unit_price / discount_applied default to 0 and are clamped at 0
    - vat_rate outside the 0/5/20 bands falls back to 0
    - total_price is recomputed from its components; if that comes out at
      exactly 0 but OCR read a positive line total, the OCR total is kept
      (unit price illegible, total legible)
    """
    if not isinstance(raw, Mapping):
        logger.debug("Item %d is not a mapping (%s) — using defaults", index, type(raw).__name__)
        raw = {}

    zero = Decimal("0")
    quantity = parse_decimal_or_default(raw.get("quantity"), Decimal("1"))
    if quantity <= 0:
        quantity = Decimal("1")
    unit_price = max(zero, parse_decimal_or_default(raw.get("unit_price"), zero))
    discount = max(zero, parse_decimal_or_default(raw.get("discount_applied"), zero))

    total_price = line_total(quantity, unit_price, discount)
    extracted_total = parse_decimal_or_default(raw.get("total_price"), zero)
    if total_price == 0 and extracted_total > 0:
        total_price = round2(extracted_total)

    vat_rate = parse_decimal_or_default(raw.get("vat_rate"), zero)
    if not is_valid_rate(vat_rate):
        logger.debug("Item %d has unsupported vat_rate %r — using 0", index, raw.get("vat_rate"))
        vat_rate = zero

    try:
        approval_state = ApprovalState(raw.get("approval_state") or ApprovalState.PENDING)
    except (ValueError, TypeError):
        approval_state = ApprovalState.PENDING

    name = clean_text(raw.get("name")) or f"Item {index + 1}"
    item = LineItem(
        name=name,
        canonical_name=clean_text(raw.get("canonical_name")) or name,
        brand=clean_text(raw.get("brand")),
        category=coerce_category(raw.get("category") or Category.OTHER.value),
        quantity=quantity,
        unit_price=unit_price,
        discount_applied=discount,
        total_price=total_price,
        vat_rate=vat_rate,
        approval_state=approval_state,
        offer_description=clean_text(raw.get("offer_description")),
        pack_size_value=parse_decimal_or_default(raw.get("pack_size_value"), None),
        pack_size_unit=clean_text(raw.get("pack_size_unit")) or None,
        confidence_score=parse_decimal_or_default(raw.get("confidence_score"), DEFAULT_CONFIDENCE),
        is_own_brand=raw.get("is_own_brand") in (True, 1, "true", "True", "yes"),
    )
    return with_vat(item)

