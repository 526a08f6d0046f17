"""Range (rango) classification of a case by its controlling value."""

from decimal import Decimal
from typing import Optional, Sequence

from app.settings.v1.general import SETTINGS

RANGES = (1, 2, 3, 4)


def controlling_value(contracted_value: Optional[Decimal], total_billed: Optional[Decimal]) -> Optional[Decimal]:
    """Contracted value when defined, otherwise the total billed value."""
    if contracted_value is not None:
        return contracted_value
    return total_billed


def classify_range(value: Optional[Decimal], thresholds: Optional[Sequence[Decimal]] = None) -> int:
    """Map a controlling value to a range between 1 and 4.

    Each threshold is the inclusive lower bound of the next range, so with
    the default thresholds 100.000 belongs to range 2 and 99.999,99 to
    range 1. A case without a value yet is range 1.

    Args:
        value (Optional[Decimal]): Controlling value of the case.
        thresholds (Optional[Sequence[Decimal]]): Three ascending bounds,
            defaults to SETTINGS.RANGE_THRESHOLDS.

    Returns:
        int: Range number.
    """
    bounds = list(thresholds if thresholds is not None else SETTINGS.RANGE_THRESHOLDS)
    if len(bounds) != len(RANGES) - 1 or bounds != sorted(bounds):
        raise ValueError(f"Range thresholds must be three ascending values, got {bounds}")

    if value is None:
        return RANGES[0]

    band = RANGES[0]
    for bound in bounds:
        if Decimal(value) >= Decimal(bound):
            band += 1
    return band
