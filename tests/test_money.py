from __future__ import annotations

import math

import pytest

from billing_reports.money import round_amount, to_precise


@pytest.mark.parametrize(
    "value, expected",
    [
        (1.005, 1.01),
        (2.675, 2.68),
        (-1.005, -1.01),
        (10, 10.0),
        (0.1 + 0.2, 0.3),
        (None, 0.0),
        (float("nan"), 0.0),
    ],
)
def test_to_precise_rounds_half_up(value: object, expected: float) -> None:
    assert to_precise(value) == expected


@pytest.mark.parametrize("value", [1.005, 33.333333, -0.004, 99.995, 1e-9, 123456.789])
def test_to_precise_is_idempotent(value: float) -> None:
    once = to_precise(value)
    assert to_precise(once) == once


def test_negative_zero_is_normalized() -> None:
    assert math.copysign(1.0, to_precise(-0.001)) == 1.0


def test_round_amount_places() -> None:
    assert round_amount(1.23456, places=4) == 1.2346
