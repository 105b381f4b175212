"""Tests for micro-dollar conversion."""

from decimal import Decimal

import pytest

from spendguard.money import (
    amount_usd_to_micros,
    format_usd_from_micros,
    limit_usd_to_micros,
    micros_to_usd_float,
)


def test_amounts_round_up_and_limits_round_down():
    assert amount_usd_to_micros("0.0000001") == 1
    assert limit_usd_to_micros("0.0000019") == 1
    assert amount_usd_to_micros(Decimal("12.5")) == 12_500_000
    assert limit_usd_to_micros(20) == 20_000_000


def test_float_amounts_are_exact():
    assert amount_usd_to_micros(0.1) + amount_usd_to_micros(0.2) == amount_usd_to_micros(0.3)


@pytest.mark.parametrize("bad", [True, float("nan"), float("inf"), "abc", "Infinity"])
def test_invalid_amounts_rejected(bad):
    with pytest.raises(ValueError):
        amount_usd_to_micros(bad)


def test_formatting():
    assert micros_to_usd_float(2_500_000) == 2.5
    assert format_usd_from_micros(12_500_000) == "$12.50"
    assert format_usd_from_micros(-10_000_000) == "$-10.00"
