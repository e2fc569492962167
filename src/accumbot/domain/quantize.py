from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal


def floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Largest multiple of ``step`` that is <= ``value``.

    Non-positive steps and non-finite values are returned untouched; callers
    validate filters and balances first.
    """
    if not value.is_finite() or step <= 0:
        return value
    units = (value / step).to_integral_value(rounding=ROUND_DOWN)
    if units * step > value:
        units -= 1
    return (units * step).quantize(step)


def round_to_tick(value: Decimal, tick: Decimal) -> Decimal:
    """Nearest multiple of ``tick``; ties round away from zero."""
    if not value.is_finite() or tick <= 0:
        return value
    units = (value / tick).to_integral_value(rounding=ROUND_HALF_UP)
    return (units * tick).quantize(tick)


def is_finite_positive(value: Decimal | None) -> bool:
    return value is not None and value.is_finite() and value > 0


def fmt_decimal(value: Decimal) -> str:
    normalized = format(value, "f")
    if "." in normalized:
        normalized = normalized.rstrip("0").rstrip(".")
    return normalized or "0"
