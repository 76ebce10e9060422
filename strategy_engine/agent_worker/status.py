"""
Read-only status snapshots for the HTTP layer.

The reporter holds handles to the engines and the RPC client and only reads
their published attributes (records and totals are replaced whole by their
owners, never mutated in place), so it needs no locking.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from strategy_engine import __version__
from strategy_engine.agent_worker.monitor import MonitorEngine
from strategy_engine.agent_worker.settlement import SettlementEngine
from strategy_engine.rpc.quorum import STATE_CONNECTED, QuorumRpcClient
from strategy_engine.treasury.signer import TreasurySigner

SERVICE_NAME = "Strategy Engine API"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StatusReporter:
    def __init__(
        self,
        client: QuorumRpcClient,
        *,
        mode: str,
        interval_sec: float,
        settlement: SettlementEngine | None = None,
        monitor: MonitorEngine | None = None,
        signer: TreasurySigner | None = None,
    ) -> None:
        self._client = client
        self._mode = mode
        self._interval_sec = interval_sec
        self._settlement = settlement
        self._monitor = monitor
        self._signer = signer

    @property
    def engine_status(self) -> str:
        if self._monitor is not None:
            return self._monitor.status
        return self._client.state

    def mode_label(self) -> str:
        if self._monitor is not None:
            return f"Liquidity Pool Monitoring (Rate: {self._interval_sec:g}s)"
        return f"Treasury Settlement (Rate: {self._interval_sec:g}s)"

    def current_block(self) -> int:
        if self._monitor is not None and self._monitor.current_block is not None:
            return self._monitor.current_block
        return self._client.last_block_height or 0

    def overview(self) -> dict[str, Any]:
        return {
            "name": SERVICE_NAME,
            "version": __version__,
            "status": self.engine_status,
            "mode": self.mode_label(),
            "currentBlock": self.current_block(),
        }

    def liquidity_status(self) -> dict[str, Any]:
        monitor = self._monitor
        record = monitor.last_record if monitor else None
        return {
            "status": self.engine_status,
            "blockchainConnection": "robust_connected" if self._client.state == STATE_CONNECTED else "disconnected",
            "currentBlock": self.current_block(),
            "lastReport": record.to_dict() if record else None,
            "monitoredPoolsCount": len(monitor.pools) if monitor else 0,
            "timestamp": _now_iso(),
        }

    def settlement_status(self) -> dict[str, Any]:
        engine = self._settlement
        record = engine.last_record if engine else None
        signer = self._signer
        snapshot: dict[str, Any] = {
            "status": self.engine_status,
            "blockchainConnection": "robust_connected" if self._client.state == STATE_CONNECTED else "disconnected",
            "currentBlock": self.current_block(),
            "treasury": signer.address if signer else None,
            "credentialConfigured": bool(signer and signer.has_credential),
            "transferInFlight": bool(signer and signer.in_flight),
            "endpoints": self._client.health_snapshot(),
            "timestamp": _now_iso(),
        }
        if engine is not None:
            config = engine.config
            snapshot.update(
                {
                    "engineState": engine.state.value,
                    "batchSize": config.batch_size,
                    "strategyIndex": engine.roster_index,
                    "totals": engine.totals.to_dict(config.eth_usd_rate),
                    "lastSettlement": record.to_dict() if record else None,
                }
            )
        return snapshot
