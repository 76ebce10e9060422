"""
Liquidity pool monitor: the monitor-only deployment of the periodic job.

Each tick reads the current block height through the quorum client, takes a
reserve reading for every configured pool from the reserve source and
classifies it Healthy (above threshold) or Warning. One MonitorRecord is kept
and replaced per successful tick; a failed tick keeps the previous record and
flags the engine status as error until the next successful read.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from strategy_engine.core.exceptions import AllEndpointsUnavailable, RpcError
from strategy_engine.engine_logging import get_logger
from strategy_engine.rpc.quorum import QuorumRpcClient

logger = get_logger(__name__)

STATUS_INITIALIZING = "initializing"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"

HEALTHY = "Healthy"
WARNING = "Warning"

HEALTHY_RESERVE_THRESHOLD = 10_500.0
SYNTHETIC_RESERVE_MIN = 10_000.0
SYNTHETIC_RESERVE_SPAN = 1_000.0


@dataclass(frozen=True)
class LiquidityPool:
    name: str
    address: str


# Critical pools watched by the monitor (addresses kept in abbreviated display form)
LIQUIDITY_POOLS: tuple[LiquidityPool, ...] = (
    LiquidityPool(name="Uniswap V3 ETH/USDC", address="0x88e6A0c2d...7A34bEa"),
    LiquidityPool(name="Curve 3Crv", address="0xB20b7280A...90515C8"),
    LiquidityPool(name="Aave V3 ETH Market", address="0x7d2768dEa...1D1e905F"),
)

ReserveSource = Callable[[LiquidityPool], float]


class SyntheticReserveSource:
    """Stand-in for an on-chain reserve read: uniform in [10000, 11000) ETH."""

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)

    def __call__(self, pool: LiquidityPool) -> float:
        return SYNTHETIC_RESERVE_MIN + self._rng.random() * SYNTHETIC_RESERVE_SPAN


def classify_reserve(reserve: float, threshold: float = HEALTHY_RESERVE_THRESHOLD) -> str:
    return HEALTHY if reserve > threshold else WARNING


@dataclass(frozen=True)
class PoolReport:
    name: str
    address: str
    reserve: float
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "currentReserve": f"{self.reserve:.2f} ETH",
            "status": self.status,
        }


@dataclass(frozen=True)
class MonitorRecord:
    timestamp: str
    block_number: int
    pool_reports: tuple[PoolReport, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "poolReports": [p.to_dict() for p in self.pool_reports],
        }


class MonitorEngine:
    def __init__(
        self,
        client: QuorumRpcClient,
        *,
        pools: tuple[LiquidityPool, ...] = LIQUIDITY_POOLS,
        reserve_source: ReserveSource | None = None,
        threshold: float = HEALTHY_RESERVE_THRESHOLD,
    ) -> None:
        self._client = client
        self._pools = pools
        self._reserve_source = reserve_source or SyntheticReserveSource()
        self._threshold = threshold
        self.status = STATUS_INITIALIZING
        self.current_block: int | None = None
        self.last_record: MonitorRecord | None = None

    @property
    def pools(self) -> tuple[LiquidityPool, ...]:
        return self._pools

    def tick(self) -> MonitorRecord | None:
        try:
            block_number = self._client.current_block_height().value
        except AllEndpointsUnavailable as e:
            self.status = STATUS_DISCONNECTED
            logger.error("monitor_tick_failed", reason=e.code, error=e.message)
            return None
        except RpcError as e:
            self.status = STATUS_ERROR
            logger.error("monitor_tick_failed", reason=e.code, error=e.message)
            return None

        reports = tuple(
            PoolReport(
                name=pool.name,
                address=pool.address,
                reserve=reserve,
                status=classify_reserve(reserve, self._threshold),
            )
            for pool, reserve in ((p, self._reserve_source(p)) for p in self._pools)
        )
        record = MonitorRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            block_number=block_number,
            pool_reports=reports,
        )
        self.current_block = block_number
        self.last_record = record
        self.status = STATUS_CONNECTED
        logger.info(
            "monitor_tick_done",
            block_number=block_number,
            pools=len(reports),
            warnings=sum(1 for r in reports if r.status == WARNING),
        )
        return record
