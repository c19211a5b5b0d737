"""Normalization and parsing functions for meter CSV ingestion.

All functions accept str | None and return the appropriate type or None.
None of the parse_* functions raise: malformed text is treated as absent.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation

from dateutil import parser as date_parser

_INT_RE = re.compile(r"^[+-]?\d+$")
# Invariant-culture number: optional sign, ',' group separators, '.' decimal
# point, optional exponent.
_DECIMAL_RE = re.compile(r"^[+-]?(\d{1,3}(,\d{3})+|\d*)(\.\d*)?([eE][+-]?\d+)?$")

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

# Range of the 96-bit decimal the source systems export.
DECIMAL_MAX = Decimal("79228162514264337593543950335")
DECIMAL_MAX_SCALE = 28
_DECIMAL_QUANTUM = Decimal(1).scaleb(-DECIMAL_MAX_SCALE)
_DECIMAL_CONTEXT = Context(prec=64, rounding=ROUND_HALF_EVEN)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: casefold_key  (for in-batch natural-key matching)
# ---------------------------------------------------------------------------

def casefold_key(value: str | None) -> str:
    """Case- and spacing-insensitive comparison key; absent values compare as ''."""
    v = normalize_space(value)
    return v.casefold() if v is not None else ""


# ---------------------------------------------------------------------------
# Rule 4: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | None) -> int | None:
    """Parse a 32-bit signed integer, returning None on failure.

    Accepts an optional sign and surrounding whitespace only; decimal
    points, group separators and out-of-range values yield None.
    """
    v = trim(value)
    if v is None or not _INT_RE.match(v):
        return None
    result = int(v)
    if result < INT32_MIN or result > INT32_MAX:
        return None
    return result


# ---------------------------------------------------------------------------
# Rule 5: parse_decimal
# ---------------------------------------------------------------------------

def parse_decimal(value: str | None) -> Decimal | None:
    """Parse a decimal in the locale-independent format, or None.

    '1,234.50' -> Decimal('1234.50'); '1.234,50' -> None.

    Magnitudes above DECIMAL_MAX yield None.  Digits past the 28th decimal
    place are rounded half-even, so '1e-20000' parses as zero.
    """
    v = trim(value)
    if v is None or not _DECIMAL_RE.match(v):
        return None
    digits = v.replace(",", "")
    if not any(c.isdigit() for c in digits):
        return None
    try:
        result = Decimal(digits)
    except InvalidOperation:
        return None
    if not result.is_finite() or result.copy_abs() > DECIMAL_MAX:
        return None
    if result.as_tuple().exponent < -DECIMAL_MAX_SCALE:
        result = result.quantize(_DECIMAL_QUANTUM, context=_DECIMAL_CONTEXT)
    return result


# ---------------------------------------------------------------------------
# Rule 6: parse_datetime
# ---------------------------------------------------------------------------

def parse_datetime(value: str | None) -> datetime | None:
    """Parse any timestamp the generic dateutil parser understands, or None."""
    v = trim(value)
    if v is None:
        return None
    try:
        return date_parser.parse(v)
    except (ValueError, OverflowError):
        return None
