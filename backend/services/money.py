"""
Money helpers shared by every service: half-up rounding to pence and the
one parser that turns untrusted input into a bounded, finite Decimal.

Nothing here imports another service, so the Normalizer and the VAT
Apportioner can both build on it.
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from models.schemas import MAX_AMOUNT

CENT = Decimal("0.01")

# Symbols OCR/LLM output tends to leave around numbers
_NUMERIC_NOISE_RE = re.compile(r'[£$€\s]')
# A comma only counts as a thousands separator when a full group of three
# digits follows it ("1,299.00"); "1,50" is left alone and fails to parse.
_THOUSANDS_SEP_RE = re.compile(r',(?=\d{3}(?!\d))')


def round2(value: Decimal) -> Decimal:
    """Half-up rounding to 2 decimal places (0.125 → 0.13)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_decimal_or_default(value: Any, default: Optional[Decimal]) -> Optional[Decimal]:
    """
    Parse `value` as a finite Decimal no larger than MAX_AMOUNT in magnitude,
    returning `default` when that is not possible (None, "", "abc", NaN,
    ±Infinity, "1e40", "1,50", bools, lists …).  Never raises.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return default
    elif isinstance(value, str):
        cleaned = _THOUSANDS_SEP_RE.sub('', _NUMERIC_NOISE_RE.sub('', value))
        if not cleaned:
            return default
        try:
            parsed = Decimal(cleaned)
        except InvalidOperation:
            return default
    else:
        return default
    if not parsed.is_finite() or abs(parsed) > MAX_AMOUNT:
        return default
    return parsed
