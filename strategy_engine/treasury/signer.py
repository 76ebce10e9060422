"""
Treasury signer: owns the treasury key and the only path that moves funds.

transfer() runs, in order: refresh balance → solvency check → fee estimate →
sign (fixed gas limit, EIP-1559) → single-endpoint submit → bounded wait for
confirmation. Any failure aborts before or after submission without touching
local state beyond the advisory cached balance.

All transfers for one credential are serialized behind a process-wide lock
keyed by the treasury address; callers either wait a bounded time or get Busy.
Callers that must read the balance and decide an amount atomically with the
transfer hold transfer_gate() themselves and call transfer_held().
Config: TREASURY_PRIVATE_KEY (hex, 0x optional, or JSON array of 32 bytes).
"""

from __future__ import annotations

import json
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from strategy_engine.core.exceptions import (
    Busy,
    ConfigError,
    InsufficientFunds,
    NoCredential,
    RejectedBySigner,
    RpcRejected,
)
from strategy_engine.core.units import format_eth
from strategy_engine.engine_logging import bind_treasury, get_logger
from strategy_engine.rpc.quorum import QuorumRpcClient

logger = get_logger(__name__)

DEFAULT_TRANSFER_GAS_LIMIT = 21_000
TX_TYPE_EIP1559 = 2

_CREDENTIAL_LOCKS: dict[str, threading.Lock] = {}
_CREDENTIAL_LOCKS_GUARD = threading.Lock()


def credential_lock(address: str) -> threading.Lock:
    """Return the single transfer lock for this treasury address (shared by every signer on it)."""
    key = address.lower()
    with _CREDENTIAL_LOCKS_GUARD:
        lock = _CREDENTIAL_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _CREDENTIAL_LOCKS[key] = lock
        return lock


def load_treasury_key(private_key: str) -> LocalAccount:
    """Load the treasury account from a hex string or a JSON array of 32 bytes."""
    raw = private_key.strip()
    try:
        if raw.startswith("["):
            arr = json.loads(raw)
            if len(arr) != 32:
                raise ValueError("expected 32 key bytes")
            return Account.from_key(bytes(arr))
        if not raw.startswith("0x"):
            raw = "0x" + raw
        return Account.from_key(raw)
    except (ValueError, TypeError) as e:
        # Never echo the key material
        raise ConfigError("Invalid TREASURY_PRIVATE_KEY", variable="TREASURY_PRIVATE_KEY") from e


def normalize_address(address: str) -> str:
    """Checksum an address; ValueError when it is not a 20-byte hex address."""
    candidate = (address or "").strip()
    if not Web3.is_address(candidate):
        raise ValueError(f"Invalid Ethereum address: {candidate[:12]}")
    return Web3.to_checksum_address(candidate)


@dataclass
class TreasuryAccount:
    """Treasury address plus an advisory cached balance. The key itself is never exposed."""

    address: str
    _account: LocalAccount = field(repr=False, compare=False)
    last_known_balance_wei: int | None = None
    balance_checked_at: float | None = None


@dataclass(frozen=True)
class SettlementReceipt:
    """Confirmed on-chain transfer."""

    tx_id: str
    block_number: int
    amount_wei: int
    source: str
    destination: str
    nonce: int
    gas_limit: int
    max_fee_per_gas_wei: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "txHash": self.tx_id,
            "blockNumber": self.block_number,
            "amountEth": format_eth(self.amount_wei),
            "amountWei": str(self.amount_wei),
            "from": self.source,
            "to": self.destination,
            "nonce": self.nonce,
            "gasLimit": self.gas_limit,
            "maxFeePerGasWei": str(self.max_fee_per_gas_wei),
        }


class TreasurySigner:
    """Balance queries and signed transfers for the treasury, via the shared quorum client."""

    def __init__(
        self,
        client: QuorumRpcClient,
        private_key: str | None,
        *,
        chain_id: int = 1,
        gas_limit: int = DEFAULT_TRANSFER_GAS_LIMIT,
        confirmation_timeout_sec: float | None = None,
    ) -> None:
        self._client = client
        self._chain_id = chain_id
        self._gas_limit = gas_limit
        self._confirmation_timeout_sec = confirmation_timeout_sec
        self.account: TreasuryAccount | None = None
        if private_key:
            local = load_treasury_key(private_key)
            self.account = TreasuryAccount(address=local.address, _account=local)
            self._lock = credential_lock(local.address)
            self._log = bind_treasury(local.address)
        else:
            self._lock = threading.Lock()
            self._log = logger

    @property
    def has_credential(self) -> bool:
        return self.account is not None

    @property
    def address(self) -> str | None:
        return self.account.address if self.account else None

    @property
    def gas_limit(self) -> int:
        return self._gas_limit

    @property
    def in_flight(self) -> bool:
        """True while a transfer holds the credential lock."""
        return self._lock.locked()

    def _require_account(self) -> TreasuryAccount:
        if self.account is None:
            raise NoCredential("Treasury credential is not configured (TREASURY_PRIVATE_KEY)")
        return self.account

    def balance(self) -> int:
        """Fresh quorum balance in wei; also refreshes the advisory cache."""
        account = self._require_account()
        result = self._client.account_balance(account.address)
        account.last_known_balance_wei = result.value
        account.balance_checked_at = time.time()
        return result.value

    @contextmanager
    def transfer_gate(self, wait_sec: float = 0.0) -> Iterator[None]:
        """
        Hold this credential's transfer gate for the duration of the block.

        wait_sec: how long to wait for an in-flight transfer to finish; 0 raises
        Busy immediately.
        """
        acquired = self._lock.acquire(timeout=wait_sec) if wait_sec > 0 else self._lock.acquire(blocking=False)
        if not acquired:
            raise Busy(
                "Another transfer is in flight for this treasury",
                treasury=self.address,
                waited_sec=wait_sec,
            )
        try:
            yield
        finally:
            self._lock.release()

    def transfer(
        self,
        amount_wei: int,
        destination: str,
        *,
        wait_sec: float = 0.0,
        keep_wei: int = 0,
    ) -> SettlementReceipt:
        """
        Move amount_wei from the treasury to destination and wait for confirmation.

        wait_sec: how long to wait for an in-flight transfer on this credential
        to finish; 0 rejects immediately with Busy.
        keep_wei: balance that must remain after the amount leaves (gas is paid from it).

        Raises:
            NoCredential, Busy, InsufficientFunds, RejectedBySigner,
            ConfirmationTimeout, RpcError (reads, or broadcast pool exhausted).
        """
        account = self._require_account()
        to_address = self._checked_destination(amount_wei, destination)
        with self.transfer_gate(wait_sec):
            return self._transfer_locked(account, amount_wei, to_address, keep_wei)

    def transfer_held(self, amount_wei: int, destination: str, *, keep_wei: int = 0) -> SettlementReceipt:
        """transfer() for a caller already inside transfer_gate()."""
        account = self._require_account()
        if not self._lock.locked():
            raise RuntimeError("transfer_held() requires the transfer gate")
        to_address = self._checked_destination(amount_wei, destination)
        return self._transfer_locked(account, amount_wei, to_address, keep_wei)

    def _checked_destination(self, amount_wei: int, destination: str) -> str:
        if amount_wei < 0:
            raise ValueError("amount_wei must be non-negative")
        try:
            return normalize_address(destination)
        except ValueError as e:
            raise RejectedBySigner(str(e), destination=destination) from e

    def _transfer_locked(
        self,
        account: TreasuryAccount,
        amount_wei: int,
        to_address: str,
        keep_wei: int = 0,
    ) -> SettlementReceipt:
        balance = self.balance()
        if keep_wei and balance - amount_wei < keep_wei:
            shortfall = amount_wei + keep_wei - balance
            raise InsufficientFunds(
                "Transfer would leave less than the reserved balance",
                balance_eth=format_eth(balance),
                amount_eth=format_eth(amount_wei),
                reserved_eth=format_eth(keep_wei),
                shortfall_eth=format_eth(shortfall),
                shortfall_wei=str(shortfall),
            )
        if balance < amount_wei:
            shortfall = amount_wei - balance
            raise InsufficientFunds(
                "Treasury balance is below the transfer amount",
                balance_eth=format_eth(balance),
                amount_eth=format_eth(amount_wei),
                shortfall_eth=format_eth(shortfall),
                shortfall_wei=str(shortfall),
            )

        fees = self._client.current_fee_estimate().value
        max_fee = fees.max_fee_per_gas
        max_gas_cost = self._gas_limit * max_fee
        if balance < amount_wei + max_gas_cost:
            shortfall = amount_wei + max_gas_cost - balance
            raise InsufficientFunds(
                "Treasury balance does not cover amount plus maximum gas cost",
                balance_eth=format_eth(balance),
                amount_eth=format_eth(amount_wei),
                max_gas_cost_eth=format_eth(max_gas_cost),
                shortfall_eth=format_eth(shortfall),
                shortfall_wei=str(shortfall),
            )

        nonce = self._client.transaction_count(account.address).value
        tx = {
            "type": TX_TYPE_EIP1559,
            "chainId": self._chain_id,
            "nonce": nonce,
            "to": to_address,
            "value": amount_wei,
            "gas": self._gas_limit,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": fees.priority_fee_wei,
        }
        signed = account._account.sign_transaction(tx)
        raw_tx = Web3.to_hex(signed.raw_transaction)
        local_hash = Web3.to_hex(signed.hash)

        try:
            tx_id = self._client.submit_signed_transfer(raw_tx, local_hash)
        except RpcRejected as e:
            raise RejectedBySigner(e.message, stage="submit", nonce=nonce) from e
        self._log.info(
            "treasury_transfer_submitted",
            tx_id=tx_id,
            to=to_address,
            amount_eth=format_eth(amount_wei),
            nonce=nonce,
            max_fee_per_gas_wei=max_fee,
        )

        try:
            block_number = self._client.wait_for_confirmation(tx_id, self._confirmation_timeout_sec)
        except RpcRejected as e:
            raise RejectedBySigner(e.message, stage="confirmation", tx_id=tx_id) from e
        self._log.info("treasury_transfer_confirmed", tx_id=tx_id, block_number=block_number)
        return SettlementReceipt(
            tx_id=tx_id,
            block_number=block_number,
            amount_wei=amount_wei,
            source=account.address,
            destination=to_address,
            nonce=nonce,
            gas_limit=self._gas_limit,
            max_fee_per_gas_wei=max_fee,
        )
