"""
On-demand withdrawal (sweep) from the treasury to an external address.

A withdrawal never touches the reserved gas floor: the largest transferable
amount is balance - reserved_gas_floor. Omitting the amount (or passing a
non-positive one) sweeps exactly that ceiling. Rejections happen before any
transfer is attempted and echo the computed ceiling so the caller can retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from strategy_engine.core.exceptions import BelowFloor, InvalidAmount, InvalidDestination
from strategy_engine.core.units import format_eth
from strategy_engine.engine_logging import get_logger
from strategy_engine.treasury.signer import TreasurySigner, normalize_address

logger = get_logger(__name__)


@dataclass(frozen=True)
class WithdrawalReceipt:
    """Returned to the caller; not retained."""

    amount_wei: int
    source: str
    destination: str
    tx_id: str
    block_number: int
    swept: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "amountEth": format_eth(self.amount_wei),
            "amountWei": str(self.amount_wei),
            "from": self.source,
            "to": self.destination,
            "txHash": self.tx_id,
            "blockNumber": self.block_number,
            "sweep": self.swept,
        }


class WithdrawalService:
    def __init__(
        self,
        signer: TreasurySigner,
        reserved_gas_floor_wei: int,
        *,
        default_destination: str | None = None,
        lock_wait_sec: float = 30.0,
    ) -> None:
        self._signer = signer
        self._reserved_gas_floor_wei = reserved_gas_floor_wei
        self._default_destination = default_destination
        self._lock_wait_sec = lock_wait_sec

    @property
    def reserved_gas_floor_wei(self) -> int:
        return self._reserved_gas_floor_wei

    def _resolve_destination(self, destination: str | None) -> str:
        target = destination or self._default_destination
        if not target:
            raise InvalidDestination("No destination given and WITHDRAWAL_ADDRESS is not configured")
        try:
            return normalize_address(target)
        except ValueError as e:
            raise InvalidDestination(str(e), destination=target) from e

    def withdraw(self, amount_wei: int | None = None, destination: str | None = None) -> WithdrawalReceipt:
        """
        Withdraw amount_wei (or sweep when None / non-positive) to destination.

        The balance is read and the ceiling computed while holding the transfer
        gate, so a transfer finishing while this call waits cannot leave the
        amount stale.

        Raises:
            InvalidDestination, BelowFloor (nothing above the floor to sweep),
            InvalidAmount (request above ceiling), plus any TreasurySigner.transfer error.
        """
        to_address = self._resolve_destination(destination)
        with self._signer.transfer_gate(self._lock_wait_sec):
            balance = self._signer.balance()
            ceiling = balance - self._reserved_gas_floor_wei
            context = {
                "balance_eth": format_eth(balance),
                "reserved_floor_eth": format_eth(self._reserved_gas_floor_wei),
                "max_withdrawable_eth": format_eth(max(ceiling, 0)),
            }

            swept = amount_wei is None or amount_wei <= 0
            requested = ceiling if swept else amount_wei
            if requested <= 0:
                raise BelowFloor("Treasury balance does not exceed the reserved gas floor", **context)
            if requested > ceiling:
                raise InvalidAmount(
                    "Requested amount exceeds balance minus reserved gas floor",
                    requested_eth=format_eth(requested),
                    **context,
                )

            logger.info(
                "withdrawal_accepted",
                amount_eth=format_eth(requested),
                destination=to_address,
                sweep=swept,
                **context,
            )
            receipt = self._signer.transfer_held(requested, to_address, keep_wei=self._reserved_gas_floor_wei)
        return WithdrawalReceipt(
            amount_wei=receipt.amount_wei,
            source=receipt.source,
            destination=receipt.destination,
            tx_id=receipt.tx_id,
            block_number=receipt.block_number,
            swept=swept,
        )
