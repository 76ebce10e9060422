"""
Settlement engine: one aggregate-and-transfer cycle per scheduler tick.

Cycle states: idle → computing → transferring → settled | failed, or skipped
when the pre-conditions (usable credential, treasury balance at or above the
minimum gas floor) do not hold.

Computing synthesizes a batch of N opaque work units by round-robin over a
fixed strategy roster (the index continues across batches, modulo roster
size) and adds its profit to the synthetic-earnings total. That total tracks
simulated throughput and is advanced whether or not the transfer succeeds.
Transferring realizes the batch profit as a self-transfer of the treasury;
the realized total moves only on a confirmed transfer.

Records, totals and state are replaced as whole objects so status readers on
other threads never observe a half-updated record.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from strategy_engine.core.exceptions import BelowGasFloor, Busy, EngineError, EngineSkipped, NoCredential
from strategy_engine.core.units import format_eth, from_wei
from strategy_engine.engine_logging import get_logger
from strategy_engine.treasury.signer import TreasurySigner

logger = get_logger(__name__)

STRATEGY_FAMILIES: tuple[str, ...] = (
    "triangular-arb",
    "flash-loan-arb",
    "cross-dex-arb",
    "liquidation-snipe",
    "mev-backrun",
    "yield-rotation",
    "stable-peg",
    "funding-basis",
)
STRATEGIES_PER_FAMILY = 8
DEFAULT_STRATEGY_ROSTER: tuple[str, ...] = tuple(
    f"{family}-{n:02d}" for family in STRATEGY_FAMILIES for n in range(1, STRATEGIES_PER_FAMILY + 1)
)
USD_QUANT = Decimal("0.01")


class CycleState(str, Enum):
    IDLE = "idle"
    COMPUTING = "computing"
    TRANSFERRING = "transferring"
    SETTLED = "settled"
    FAILED = "failed"
    SKIPPED = "skipped"


class StrategyRoster:
    """Fixed strategy identifiers with a wrap-around cursor owned by one engine."""

    def __init__(self, strategy_ids: tuple[str, ...] = DEFAULT_STRATEGY_ROSTER, start_index: int = 0) -> None:
        if not strategy_ids:
            raise ValueError("StrategyRoster requires at least one strategy")
        self._ids = tuple(strategy_ids)
        self._index = start_index % len(self._ids)

    @property
    def index(self) -> int:
        return self._index

    @property
    def strategy_ids(self) -> tuple[str, ...]:
        return self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def advance(self, units: int) -> tuple[int, tuple[str, ...]]:
        """
        Consume units from the cursor. Returns (start index, distinct strategies touched
        in execution order). Within one traversal no strategy is skipped or repeated.
        """
        size = len(self._ids)
        start = self._index
        touched = tuple(self._ids[(start + i) % size] for i in range(min(units, size)))
        self._index = (start + units) % size
        return start, touched


@dataclass(frozen=True)
class WorkBatch:
    """Result of one synthetic batch: opaque work in, profit figure and identifiers out."""

    size: int
    start_index: int
    next_index: int
    unit_profit_wei: int
    profit_wei: int
    profit_usd: Decimal
    strategy_ids: tuple[str, ...]

    @property
    def profit_eth(self) -> Decimal:
        return from_wei(self.profit_wei)


def synthesize_batch(
    roster: StrategyRoster,
    size: int,
    unit_profit_wei: int,
    eth_usd_rate: Decimal,
) -> WorkBatch:
    """Run one batch of size units. USD uses the fixed rate and is approximate by design."""
    start, touched = roster.advance(size)
    profit_wei = unit_profit_wei * size
    profit_usd = (from_wei(profit_wei) * eth_usd_rate).quantize(USD_QUANT, rounding=ROUND_HALF_UP)
    return WorkBatch(
        size=size,
        start_index=start,
        next_index=roster.index,
        unit_profit_wei=unit_profit_wei,
        profit_wei=profit_wei,
        profit_usd=profit_usd,
        strategy_ids=touched,
    )


@dataclass(frozen=True)
class SettlementTotals:
    cycles: int = 0
    settled: int = 0
    failed: int = 0
    skipped: int = 0
    synthetic_earnings_wei: int = 0
    realized_wei: int = 0

    def to_dict(self, eth_usd_rate: Decimal) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "settled": self.settled,
            "failed": self.failed,
            "skipped": self.skipped,
            "totalSyntheticEarningsEth": format_eth(self.synthetic_earnings_wei),
            "totalSyntheticEarningsUsd": str(
                (from_wei(self.synthetic_earnings_wei) * eth_usd_rate).quantize(USD_QUANT)
            ),
            "totalRealizedToTreasuryEth": format_eth(self.realized_wei),
        }


@dataclass(frozen=True)
class SettlementRecord:
    """Outcome of one cycle. Only the latest is retained."""

    cycle: int
    timestamp: str
    state: CycleState
    batch_size: int
    profit_wei: int
    profit_usd: Decimal
    strategy_index: int
    total_synthetic_earnings_wei: int
    total_realized_wei: int
    duration_ms: int
    tx_id: str | None = None
    block_number: int | None = None
    error: dict[str, Any] | None = None
    strategies_sampled: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is CycleState.SETTLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle,
            "timestamp": self.timestamp,
            "state": self.state.value,
            "batchSize": self.batch_size,
            "profitEth": format_eth(self.profit_wei),
            "profitUsd": str(self.profit_usd),
            "strategyIndex": self.strategy_index,
            "strategiesSampled": list(self.strategies_sampled[:10]),
            "txHash": self.tx_id,
            "blockNumber": self.block_number,
            "error": self.error,
            "totalSyntheticEarningsEth": format_eth(self.total_synthetic_earnings_wei),
            "totalRealizedToTreasuryEth": format_eth(self.total_realized_wei),
            "durationMs": self.duration_ms,
        }


@dataclass
class SettlementConfig:
    """Batch economics and pre-condition floor for the settlement engine."""

    batch_size: int = 1_000_000
    unit_profit_wei: int = 1_000_000_000  # 1 gwei
    eth_usd_rate: Decimal = Decimal("3500")
    min_gas_floor_wei: int = 10_000_000_000_000_000  # 0.01 ETH
    manual_wait_sec: float = 30.0

    def __post_init__(self) -> None:
        self.batch_size = max(1, int(self.batch_size))


class SettlementEngine:
    """Owns its roster, totals and last record; the status reporter only reads them."""

    def __init__(
        self,
        signer: TreasurySigner,
        config: SettlementConfig | None = None,
        *,
        roster: StrategyRoster | None = None,
    ) -> None:
        self._signer = signer
        self._config = config or SettlementConfig()
        self._roster = roster or StrategyRoster()
        self._cycle_lock = threading.Lock()
        self._cycle = 0
        self.state = CycleState.IDLE
        self.totals = SettlementTotals()
        self.last_record: SettlementRecord | None = None

    @property
    def config(self) -> SettlementConfig:
        return self._config

    @property
    def roster_index(self) -> int:
        return self._roster.index

    def tick(self) -> SettlementRecord | None:
        """
        Scheduler entry point. Returns None (tick coalesced) when a previous cycle
        or any other transfer on the treasury credential is still in flight.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("settlement_tick_coalesced", cycle=self._cycle, reason="cycle_running")
            return None
        try:
            return self._run_cycle(wait_sec=0.0)
        except Busy:
            logger.debug("settlement_tick_coalesced", cycle=self._cycle, reason="transfer_in_flight")
            return None
        finally:
            self._cycle_lock.release()

    def settle_now(self) -> SettlementRecord:
        """
        Manual trigger: waits up to manual_wait_sec for a running cycle or an
        in-flight transfer on the credential, else Busy.
        """
        if not self._cycle_lock.acquire(timeout=self._config.manual_wait_sec):
            raise Busy("A settlement cycle is already running", waited_sec=self._config.manual_wait_sec)
        try:
            return self._run_cycle(wait_sec=self._config.manual_wait_sec)
        finally:
            self._cycle_lock.release()

    def _check_preconditions(self) -> None:
        if not self._signer.has_credential:
            raise NoCredential("Treasury credential is not configured; cycle skipped")
        balance = self._signer.balance()
        if balance < self._config.min_gas_floor_wei:
            raise BelowGasFloor(
                "Treasury balance is below the minimum gas floor; cycle skipped",
                balance_eth=format_eth(balance),
                min_gas_floor_eth=format_eth(self._config.min_gas_floor_wei),
            )

    def _compute(self) -> WorkBatch:
        self.state = CycleState.COMPUTING
        batch = synthesize_batch(
            self._roster,
            self._config.batch_size,
            self._config.unit_profit_wei,
            self._config.eth_usd_rate,
        )
        self.totals = replace(
            self.totals, synthetic_earnings_wei=self.totals.synthetic_earnings_wei + batch.profit_wei
        )
        return batch

    def _run_cycle(self, wait_sec: float) -> SettlementRecord:
        # The whole cycle holds the credential gate; Busy here means nothing ran
        with self._signer.transfer_gate(wait_sec):
            self._cycle += 1
            cycle = self._cycle
            started = time.monotonic()
            self.state = CycleState.IDLE
            try:
                self._check_preconditions()
            except EngineSkipped as e:
                return self._publish(cycle, started, CycleState.SKIPPED, error=e)
            except EngineError as e:
                # Balance unreadable: the batch still counts as simulated work, nothing moves
                batch = self._compute()
                return self._publish(cycle, started, CycleState.FAILED, batch=batch, error=e)

            batch = self._compute()
            self.state = CycleState.TRANSFERRING
            try:
                receipt = self._signer.transfer_held(batch.profit_wei, self._signer.address or "")
            except EngineError as e:
                return self._publish(cycle, started, CycleState.FAILED, batch=batch, error=e)

            self.totals = replace(self.totals, realized_wei=self.totals.realized_wei + batch.profit_wei)
            return self._publish(
                cycle,
                started,
                CycleState.SETTLED,
                batch=batch,
                tx_id=receipt.tx_id,
                block_number=receipt.block_number,
            )

    def _publish(
        self,
        cycle: int,
        started: float,
        state: CycleState,
        *,
        batch: WorkBatch | None = None,
        tx_id: str | None = None,
        block_number: int | None = None,
        error: EngineError | None = None,
    ) -> SettlementRecord:
        counts = {
            CycleState.SETTLED: "settled",
            CycleState.FAILED: "failed",
            CycleState.SKIPPED: "skipped",
        }
        field_name = counts[state]
        self.totals = replace(
            self.totals,
            cycles=self.totals.cycles + 1,
            **{field_name: getattr(self.totals, field_name) + 1},
        )
        record = SettlementRecord(
            cycle=cycle,
            timestamp=datetime.now(timezone.utc).isoformat(),
            state=state,
            batch_size=batch.size if batch else 0,
            profit_wei=batch.profit_wei if batch else 0,
            profit_usd=batch.profit_usd if batch else Decimal("0.00"),
            strategy_index=self._roster.index,
            total_synthetic_earnings_wei=self.totals.synthetic_earnings_wei,
            total_realized_wei=self.totals.realized_wei,
            duration_ms=int((time.monotonic() - started) * 1000),
            tx_id=tx_id,
            block_number=block_number,
            error=error.to_dict() if error else None,
            strategies_sampled=batch.strategy_ids if batch else (),
        )
        self.last_record = record
        self.state = state

        if state is CycleState.SETTLED:
            logger.info(
                "settlement_cycle_settled",
                cycle=cycle,
                batch_size=record.batch_size,
                profit_eth=format_eth(record.profit_wei),
                profit_usd=str(record.profit_usd),
                tx_id=tx_id,
                block_number=block_number,
                duration_ms=record.duration_ms,
            )
        elif state is CycleState.SKIPPED:
            logger.debug("settlement_cycle_skipped", cycle=cycle, reason=error.code if error else None)
        else:
            logger.warning(
                "settlement_cycle_failed",
                cycle=cycle,
                reason=error.code if error else None,
                error=error.message if error else None,
                batch_size=record.batch_size,
            )
        return record
