"""Monetary precision helpers."""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

AMOUNT_PRECISION = 2


def round_amount(value: Any, places: int = AMOUNT_PRECISION) -> float:
    """Round `value` half away from zero to `places` decimals.

    The float is converted through its shortest repr so that values such as
    `1.005` round the way they read, not the way they are stored.
    """
    if value is None:
        return 0.0
    number = float(value)
    if math.isnan(number):
        return 0.0
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(repr(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    result = float(rounded)
    return result + 0.0  # normalize -0.0


def to_precise(value: Any) -> float:
    """Canonical 2-decimal monetary normalization. Idempotent."""
    return round_amount(value, AMOUNT_PRECISION)
