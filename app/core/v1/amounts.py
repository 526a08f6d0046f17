"""Monetary helpers shared by extraction, evaluation and reporting."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_CURRENCY_NOISE = re.compile(r"(?i)\$|cop|\s| ")


def quantize_amount(value: Decimal, quantize: Optional[Decimal] = CENT) -> Decimal:
    """Round a monetary value half-up to the given exponent."""
    if quantize is None:
        return value
    return value.quantize(quantize, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """Convert ints, strings and Decimals to Decimal without going through float.

    Raises:
        ValueError: If the value is not numeric or not finite (NaN, Infinity).
    """
    if isinstance(value, bool):
        raise ValueError(f"Boolean is not a numeric value: {value}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as err:
            raise ValueError(f"Not a numeric value: {value!r}") from err
    if not result.is_finite():
        raise ValueError(f"Not a finite numeric value: {value!r}")
    return result


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    return quantize_amount(sum(values, ZERO))


def parse_amount(raw: Any) -> Decimal:
    """Parse an amount as printed on an invoice.

    Accepts Colombian grouping ("$ 1.234.567,89") and US grouping
    ("1,234,567.89"). A single separator followed by exactly three digits
    is read as a thousands separator ("90.000" is ninety thousand).

    Args:
        raw: Printed amount.

    Returns:
        Decimal: Parsed amount (not quantized).

    Raises:
        ValueError: If the text is not an amount.
    """
    if raw is None:
        raise ValueError("Empty amount")
    if isinstance(raw, (int, Decimal)) and not isinstance(raw, bool):
        return Decimal(raw)

    text = _CURRENCY_NOISE.sub("", str(raw))
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative, text = True, text[1:-1]
    if text.startswith("-"):
        negative, text = True, text[1:]

    if not text or not re.fullmatch(r"[0-9.,]+", text):
        raise ValueError(f"Not an amount: {raw!r}")

    if "," in text and "." in text:
        decimal_sep = "," if text.rfind(",") > text.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        text = text.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in text or "." in text:
        sep = "," if "," in text else "."
        head, _, tail = text.rpartition(sep)
        if text.count(sep) > 1 or len(tail) == 3:
            text = text.replace(sep, "")
        else:
            text = f"{head}.{tail}"

    try:
        value = Decimal(text)
    except InvalidOperation as err:
        raise ValueError(f"Not an amount: {raw!r}") from err
    return -value if negative else value
