"""
Treasury package: the credential, the transfer primitive and withdrawals.

TreasurySigner is the only component holding key material; WithdrawalService
and the settlement engine both move funds exclusively through it.
"""

from strategy_engine.treasury.signer import SettlementReceipt, TreasuryAccount, TreasurySigner
from strategy_engine.treasury.withdrawal import WithdrawalReceipt, WithdrawalService

__all__ = [
    "SettlementReceipt",
    "TreasuryAccount",
    "TreasurySigner",
    "WithdrawalReceipt",
    "WithdrawalService",
]
