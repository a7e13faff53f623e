"""Helpers for determining price precision for chart output."""

from __future__ import annotations

import math

# (minimum absolute price, decimals), checked in order.
DEFAULT_PRECISION_STEPS: tuple[tuple[float, int], ...] = (
    (1000.0, 2),
    (10.0, 4),
    (0.0, 6),
)


def get_price_precision(price: float, *, steps: tuple[tuple[float, int], ...] | None = None) -> int:
    """Return decimal precision by magnitude: >= 1000 -> 2, >= 10 -> 4, otherwise 6."""

    magnitude = abs(float(price))
    for floor, decimals in steps or DEFAULT_PRECISION_STEPS:
        if magnitude >= floor:
            return decimals
    return 6


def round_price(value: float) -> float:
    if not math.isfinite(value):
        return value
    return round(float(value), get_price_precision(value))


def format_price(value: float) -> str:
    formatted = f"{float(value):.{get_price_precision(value)}f}"
    if "." in formatted:
        formatted = formatted.rstrip("0").rstrip(".")
    return formatted


__all__ = ["DEFAULT_PRECISION_STEPS", "format_price", "get_price_precision", "round_price"]
