"""
Tests for ETH/wei conversions.
"""

from __future__ import annotations

from decimal import Decimal

from strategy_engine.core.units import format_eth, from_wei, to_wei


def test_to_wei_accepts_str_decimal_and_float():
    assert to_wei("0.997") == 997 * 10**15
    assert to_wei(Decimal("0.003")) == 3 * 10**15
    assert to_wei(0.1) == 10**17
    assert to_wei(1) == 10**18


def test_from_wei():
    assert from_wei(10**18) == Decimal("1")
    assert from_wei(10**9) == Decimal("0.000000001")


def test_format_eth_has_no_exponent():
    assert format_eth(0) == "0"
    assert format_eth(10**18) == "1"
    assert format_eth(2 * 10**10) == "0.00000002"
    assert format_eth(997 * 10**15) == "0.997"
