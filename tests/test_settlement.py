"""
Tests for the settlement cycle: pre-condition skips, dual counters
(synthetic vs realized), round-robin roster and tick coalescing.
"""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from conftest import DESTINATION, TREASURY_KEY, TX_HASH
from strategy_engine.agent_worker.settlement import (
    DEFAULT_STRATEGY_ROSTER,
    CycleState,
    SettlementConfig,
    SettlementEngine,
    StrategyRoster,
    synthesize_batch,
)
from strategy_engine.core.exceptions import Busy, RpcConnectivityError, RpcRejected
from strategy_engine.core.units import to_wei
from strategy_engine.treasury.signer import TreasurySigner, credential_lock

UNIT_PROFIT_WEI = to_wei("0.000000001")


def _engine(signer, batch_size: int = 10) -> SettlementEngine:
    return SettlementEngine(
        signer,
        SettlementConfig(batch_size=batch_size, unit_profit_wei=UNIT_PROFIT_WEI, manual_wait_sec=0.05),
    )


def test_roster_has_64_unique_strategies():
    assert len(DEFAULT_STRATEGY_ROSTER) == 64
    assert len(set(DEFAULT_STRATEGY_ROSTER)) == 64
    assert DEFAULT_STRATEGY_ROSTER[0] == "triangular-arb-01"


def test_roster_wraps_around():
    roster = StrategyRoster(("a", "b", "c"), start_index=2)
    start, touched = roster.advance(4)
    assert start == 2
    assert touched == ("c", "a", "b")
    assert roster.index == 0


def test_synthesize_batch_profit():
    """1,000,000 units at 1 gwei = 0.001 ETH = 3.50 USD at 3500."""
    batch = synthesize_batch(StrategyRoster(), 1_000_000, UNIT_PROFIT_WEI, Decimal("3500"))
    assert batch.profit_wei == to_wei("0.001")
    assert batch.profit_usd == Decimal("3.50")
    assert batch.profit_eth == Decimal("0.001")
    assert batch.next_index == 1_000_000 % 64


def test_cycle_skipped_below_gas_floor(network, signer):
    """Balance 0.005 with a 0.01 floor: skipped, nothing computed, counters unchanged."""
    network.set_all("eth_getBalance", hex(to_wei("0.005")))
    engine = _engine(signer)
    record = engine.tick()
    assert record.state is CycleState.SKIPPED
    assert record.error["error"] == "below_gas_floor"
    assert record.error["balance_eth"] == "0.005"
    assert engine.totals.synthetic_earnings_wei == 0
    assert engine.totals.realized_wei == 0
    assert engine.totals.skipped == 1
    assert engine.roster_index == 0
    assert network.total("eth_sendRawTransaction") == 0


def test_cycle_skipped_without_credential(rpc_client):
    engine = _engine(TreasurySigner(rpc_client, None))
    record = engine.tick()
    assert record.state is CycleState.SKIPPED
    assert record.error["error"] == "no_credential"


def test_cycle_failed_when_balance_unreadable(network, signer):
    """Unreadable balance fails the cycle; the batch still advances synthetic earnings and the roster."""
    network.set_all("eth_getBalance", RpcConnectivityError("connection refused"))
    engine = _engine(signer)
    record = engine.tick()
    assert record.state is CycleState.FAILED
    assert record.error["error"] == "all_endpoints_unavailable"
    assert record.profit_wei == 10 * UNIT_PROFIT_WEI
    assert engine.totals.synthetic_earnings_wei == 10 * UNIT_PROFIT_WEI
    assert engine.totals.realized_wei == 0
    assert engine.totals.failed == 1
    assert engine.roster_index == 10
    assert network.total("eth_sendRawTransaction") == 0


def test_cycle_settles(network, signer):
    """Successful cycle: self-transfer of the batch profit, both counters advance."""
    engine = _engine(signer)
    record = engine.tick()
    assert record.succeeded
    assert record.tx_id == TX_HASH
    assert record.block_number == 101
    assert record.profit_wei == 10 * UNIT_PROFIT_WEI
    assert engine.totals.realized_wei == record.profit_wei
    assert engine.totals.synthetic_earnings_wei == record.profit_wei
    assert engine.totals.settled == 1
    assert engine.roster_index == 10
    assert engine.state is CycleState.SETTLED
    assert engine.last_record is record
    assert record.to_dict()["strategiesSampled"] == list(DEFAULT_STRATEGY_ROSTER[:10])


def test_failed_cycle_advances_synthetic_only(network, signer):
    """Rejected transfer: realized unchanged, synthetic earnings and roster index still advance."""
    network.set_all("eth_sendRawTransaction", RpcRejected("replacement transaction underpriced"))
    engine = _engine(signer)
    record = engine.tick()
    assert record.state is CycleState.FAILED
    assert record.error["error"] == "rejected_by_signer"
    assert engine.totals.realized_wei == 0
    assert engine.totals.synthetic_earnings_wei == 10 * UNIT_PROFIT_WEI
    assert engine.roster_index == 10
    assert engine.totals.failed == 1


def test_confirmation_timeout_fails_cycle(network, signer):
    network.set_all("eth_getTransactionReceipt", None)
    engine = _engine(signer)
    record = engine.tick()
    assert record.state is CycleState.FAILED
    assert record.error["error"] == "confirmation_timeout"
    assert record.error["tx_id"] == TX_HASH


def test_tick_coalesced_while_transfer_in_flight(network, signer):
    """A tick during another transfer on the credential is dropped, not queued."""
    engine = _engine(signer)
    lock = credential_lock(signer.address)
    lock.acquire()
    try:
        assert engine.tick() is None
    finally:
        lock.release()
    assert engine.totals.cycles == 0
    assert network.total("eth_getBalance") == 0


def test_settle_now_busy_while_cycle_running(network, signer):
    """Manual trigger during a running cycle waits briefly, then reports Busy."""
    engine = _engine(signer)
    outcome: list[Exception] = []

    def receipt_during_cycle(params):
        with pytest.raises(Busy) as exc_info:
            engine.settle_now()
        outcome.append(exc_info.value)
        return {"blockNumber": hex(101), "status": "0x1"}

    network.set_all("eth_getTransactionReceipt", receipt_during_cycle)
    record = engine.tick()
    assert record.succeeded
    assert len(outcome) == 1


def test_totals_accumulate_over_cycles(network, signer):
    engine = _engine(signer)
    engine.tick()
    engine.tick()
    totals = engine.totals.to_dict(Decimal("3500"))
    assert totals["cycles"] == 2
    assert totals["settled"] == 2
    assert totals["totalRealizedToTreasuryEth"] == "0.00000002"
    assert engine.roster_index == 20


def test_second_signer_on_same_key_shares_gate(network, rpc_client):
    a = TreasurySigner(rpc_client, TREASURY_KEY)
    b = TreasurySigner(rpc_client, TREASURY_KEY)
    engine = _engine(b)
    with credential_lock(a.address):
        assert a.in_flight
        assert engine.tick() is None



@pytest.fixture
def withdrawal_in_flight(network, signer):
    """Run a transfer on another thread and hold it at the confirmation poll."""
    entered = threading.Event()
    release = threading.Event()

    def slow_receipt(params):
        entered.set()
        release.wait(5.0)
        return {"blockNumber": hex(101), "status": "0x1"}

    network.set_all("eth_getTransactionReceipt", slow_receipt)
    worker = threading.Thread(target=signer.transfer, args=(to_wei("0.1"), DESTINATION))
    worker.start()
    assert entered.wait(5.0)
    try:
        yield
    finally:
        release.set()
        worker.join(5.0)


def test_tick_during_withdrawal_is_coalesced_not_failed(network, signer, withdrawal_in_flight):
    engine = _engine(signer)
    assert engine.tick() is None
    assert engine.totals.cycles == 0
    assert engine.totals.failed == 0
    assert engine.last_record is None
    assert network.total("eth_sendRawTransaction") == 1


def test_settle_now_busy_while_withdrawal_in_flight(network, signer, withdrawal_in_flight):
    engine = _engine(signer)
    with pytest.raises(Busy):
        engine.settle_now()
    assert engine.totals.cycles == 0
