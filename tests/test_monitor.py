"""
Tests for the liquidity pool monitor tick and its record.
"""

from __future__ import annotations

from conftest import URL_A
from strategy_engine.agent_worker.monitor import (
    HEALTHY,
    LIQUIDITY_POOLS,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_INITIALIZING,
    WARNING,
    MonitorEngine,
    SyntheticReserveSource,
    classify_reserve,
)
from strategy_engine.core.exceptions import RpcConnectivityError


def test_classify_reserve_threshold():
    assert classify_reserve(10_500.01) == HEALTHY
    assert classify_reserve(10_500.0) == WARNING
    assert classify_reserve(10_000.0) == WARNING


def test_synthetic_reserve_bounds():
    source = SyntheticReserveSource(seed=7)
    readings = [source(LIQUIDITY_POOLS[0]) for _ in range(200)]
    assert all(10_000.0 <= r < 11_000.0 for r in readings)


def test_tick_publishes_record(rpc_client):
    reserves = {pool.name: reserve for pool, reserve in zip(LIQUIDITY_POOLS, (10_800.0, 10_200.0, 10_500.0))}
    monitor = MonitorEngine(rpc_client, reserve_source=lambda pool: reserves[pool.name])
    assert monitor.status == STATUS_INITIALIZING

    record = monitor.tick()
    assert monitor.status == STATUS_CONNECTED
    assert monitor.current_block == 100
    assert monitor.last_record is record
    assert [r.status for r in record.pool_reports] == [HEALTHY, WARNING, WARNING]

    payload = record.to_dict()
    assert payload["blockNumber"] == 100
    assert payload["poolReports"][0]["name"] == "Uniswap V3 ETH/USDC"
    assert payload["poolReports"][0]["currentReserve"] == "10800.00 ETH"


def test_failed_tick_keeps_previous_record(network, rpc_client):
    """An RPC outage flags the status but leaves the last good record in place."""
    monitor = MonitorEngine(rpc_client, reserve_source=SyntheticReserveSource(seed=1))
    first = monitor.tick()
    network.set_all("eth_blockNumber", RpcConnectivityError("connection refused"))
    assert monitor.tick() is None
    assert monitor.status == STATUS_DISCONNECTED
    assert monitor.last_record is first

    network[URL_A].responses["eth_blockNumber"] = hex(105)
    record = monitor.tick()
    assert record.block_number == 105
    assert monitor.status == STATUS_CONNECTED
