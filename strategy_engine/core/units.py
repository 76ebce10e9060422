"""ETH / wei conversions. Amounts are carried as integer wei internally."""

from __future__ import annotations

from decimal import Decimal
from typing import Union

from web3 import Web3

EthAmount = Union[Decimal, int, str, float]


def to_wei(amount_eth: EthAmount) -> int:
    """Convert an ETH amount to integer wei. Floats go through str() to avoid binary noise."""
    if isinstance(amount_eth, float):
        amount_eth = str(amount_eth)
    return int(Web3.to_wei(Decimal(amount_eth), "ether"))


def from_wei(amount_wei: int) -> Decimal:
    return Decimal(Web3.from_wei(int(amount_wei), "ether"))


def format_eth(amount_wei: int) -> str:
    """Human-readable ETH string without exponent notation or trailing zeros."""
    value = from_wei(amount_wei).normalize()
    text = format(value, "f")
    return text if text else "0"
