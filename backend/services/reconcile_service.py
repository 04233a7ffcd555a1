"""
Reconcile Service — keeps line totals consistent with their components and
checks the items against the receipt's printed total.

Line totals are always recomputed as round2(max(0, qty × unit − discount))
after an edit.  The one exception is a direct edit of total_price, which is
stored as typed and survives until the next edit of any other field.

Receipt-level mismatches are reported, never fixed silently: the user
decides between "use items total" and "keep declared total".
"""
import logging
from decimal import Decimal
from typing import Any, Iterable

from models.schemas import ApprovalState, LineItem, TotalReconciliation
from services.normalize_service import (
    coerce_category,
    line_total,
    parse_decimal_or_default,
    round2,
)
from services.vat_service import assign_rate, with_vat

logger = logging.getLogger("tally.reconcile")

MISMATCH_TOLERANCE = Decimal("1.00")

_ZERO = Decimal("0")

# Numeric fields and the value substituted while the user is mid-edit.
# Quantity falls back to 0 (not 1) so an emptied field reaches the blur
# handler, which restores a sane quantity.
_NUMERIC_EDIT_DEFAULTS = {
    "quantity": _ZERO,
    "unit_price": _ZERO,
    "discount_applied": _ZERO,
    "total_price": _ZERO,
}
_NON_NEGATIVE = {"quantity", "unit_price", "discount_applied", "total_price"}
_TEXT_FIELDS = {"name", "canonical_name", "brand", "offer_description", "pack_size_unit"}
EDITABLE_FIELDS = (
    set(_NUMERIC_EDIT_DEFAULTS) | _TEXT_FIELDS
    | {"category", "pack_size_value", "is_own_brand", "vat_rate"}
)


class DraftCommandError(ValueError):
    """Raised when an edit cannot be applied (unknown field, bad index …)."""
    pass


def _mark_corrected(item: LineItem) -> LineItem:
    if item.approval_state == ApprovalState.MANUAL_ADD:
        return item
    return item.model_copy(update={"approval_state": ApprovalState.CORRECTED})


def _coerce_edit(field: str, value: Any) -> Any:
    if field in _NUMERIC_EDIT_DEFAULTS:
        parsed = parse_decimal_or_default(value, _NUMERIC_EDIT_DEFAULTS[field])
        if field in _NON_NEGATIVE:
            parsed = max(_ZERO, parsed)
        if field == "total_price":
            parsed = round2(parsed)
        return parsed
    if field == "pack_size_value":
        return parse_decimal_or_default(value, None)
    if field == "category":
        return coerce_category(value)
    if field == "is_own_brand":
        return value in (True, 1, "true", "True", "yes")
    if field == "pack_size_unit":
        return (str(value).strip() or None) if value is not None else None
    if value is None:
        return ""
    return str(value)


def recompute_item(item: LineItem, changed_field: str, new_value: Any) -> LineItem:
    """
    Apply one field edit and bring total_price and VAT back in line.

    A real change marks the item `corrected` (manual additions stay
    `manual_add`).  A vat_rate edit is a rate override and leaves the
    approval state alone.
    """
    if changed_field not in EDITABLE_FIELDS:
        raise DraftCommandError(f"Unknown line item field: {changed_field!r}")

    if changed_field == "vat_rate":
        return assign_rate(item, new_value)

    value = _coerce_edit(changed_field, new_value)
    changed = getattr(item, changed_field) != value
    updated = item.model_copy(update={changed_field: value})
    if changed:
        updated = _mark_corrected(updated)

    if changed_field != "total_price":
        updated = updated.model_copy(update={
            "total_price": line_total(updated.quantity, updated.unit_price, updated.discount_applied),
        })
    return with_vat(updated)


def normalize_quantity_on_blur(item: LineItem) -> LineItem:
    """
    When editing ends with a missing/zero/negative quantity, reset it to 1
    and infer the unit price from the line total, so a flat total read off
    the receipt is preserved.
    """
    if item.quantity > 0:
        return item
    logger.debug("Quantity %s on %r reset to 1 (unit price from total %s)",
                 item.quantity, item.name, item.total_price)
    updated = item.model_copy(update={
        "quantity": Decimal("1"),
        "unit_price": round2(item.total_price / 1),
    })
    return with_vat(_mark_corrected(updated))


def items_total(items: Iterable[LineItem]) -> Decimal:
    return round2(sum((i.total_price for i in items), _ZERO))


def reconcile_receipt_total(
    items: Iterable[LineItem],
    declared_total: Decimal,
    acknowledged: bool = False,
) -> TotalReconciliation:
    """
    Compare the sum of line totals with the receipt's declared total.

    A mismatch needs both values above zero and a gap larger than
    MISMATCH_TOLERANCE; empty or zero-total receipts never warn.
    """
    items_sum = items_total(items)
    declared = round2(declared_total)
    difference = abs(items_sum - declared)
    mismatch = items_sum > 0 and declared > 0 and difference > MISMATCH_TOLERANCE
    if mismatch:
        logger.warning("Total mismatch: items %s vs declared %s (diff %s)",
                       items_sum, declared, difference)
    return TotalReconciliation(
        items_sum=items_sum,
        declared_total=declared,
        difference=difference,
        mismatch=mismatch,
        requires_decision=mismatch and not acknowledged,
    )
