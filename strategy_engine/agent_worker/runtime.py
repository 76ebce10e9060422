"""
Engine runtime: wires settings into pool, client, treasury, engines and status.

build_runtime() is used both by the FastAPI lifespan and by the headless CLI.
Only the engine matching ENGINE_MODE is scheduled: the settlement cycle in the
settlement deployment, the pool monitor in the monitor deployment.

Usage: python -m strategy_engine.agent_worker.runtime
"""

from __future__ import annotations

import signal
import sys
import threading
from dataclasses import dataclass
from typing import Any

from strategy_engine.agent_worker.monitor import MonitorEngine, ReserveSource
from strategy_engine.agent_worker.scheduler import PeriodicRunner
from strategy_engine.agent_worker.settlement import SettlementConfig, SettlementEngine
from strategy_engine.agent_worker.status import StatusReporter
from strategy_engine.config.settings import MODE_MONITOR, EngineSettings, get_settings
from strategy_engine.core.exceptions import ConfigError
from strategy_engine.core.units import to_wei
from strategy_engine.engine_logging import get_logger
from strategy_engine.rpc.endpoints import EndpointPool
from strategy_engine.rpc.quorum import QuorumConfig, QuorumRpcClient
from strategy_engine.rpc.transport import TransportFactory
from strategy_engine.treasury.signer import TreasurySigner
from strategy_engine.treasury.withdrawal import WithdrawalService

logger = get_logger(__name__)


@dataclass
class EngineRuntime:
    settings: EngineSettings
    client: QuorumRpcClient
    signer: TreasurySigner
    withdrawals: WithdrawalService
    reporter: StatusReporter
    runner: PeriodicRunner
    settlement: SettlementEngine | None = None
    monitor: MonitorEngine | None = None

    def start(self) -> None:
        """Initial connectivity probe, then start the periodic runner thread."""
        self.client.connect()
        self.runner.start()

    def stop(self) -> None:
        self.runner.stop()
        self.client.close()


def build_runtime(
    settings: EngineSettings,
    *,
    transport_factory: TransportFactory | None = None,
    reserve_source: ReserveSource | None = None,
) -> EngineRuntime:
    """Construct every component from settings. Raises ConfigError on a bad credential."""
    pool = EndpointPool.from_urls(
        settings.rpc_urls,
        preferred_url=settings.preferred_rpc_url,
        chain=settings.chain,
    )
    client = QuorumRpcClient(
        pool,
        QuorumConfig(
            quorum=settings.quorum,
            timeout_sec=settings.rpc_timeout_sec,
            fan_out=settings.fan_out,
            failure_threshold=settings.failure_threshold,
            cooldown_sec=settings.cooldown_sec,
            confirmation_timeout_sec=settings.confirmation_timeout_sec,
        ),
        transport_factory=transport_factory,
    )
    signer = TreasurySigner(
        client,
        settings.treasury_private_key,
        chain_id=settings.chain_id,
        gas_limit=settings.transfer_gas_limit,
        confirmation_timeout_sec=settings.confirmation_timeout_sec,
    )
    if not signer.has_credential:
        # Hard configuration fault, reported once; cycles record NoCredential from here on
        logger.error("treasury_credential_missing", variable="TREASURY_PRIVATE_KEY")
    withdrawals = WithdrawalService(
        signer,
        to_wei(settings.reserved_gas_floor_eth),
        default_destination=settings.withdrawal_address,
        lock_wait_sec=settings.transfer_lock_wait_sec,
    )

    settlement: SettlementEngine | None = None
    monitor: MonitorEngine | None = None
    if settings.mode == MODE_MONITOR:
        monitor = MonitorEngine(client, reserve_source=reserve_source)
        runner = PeriodicRunner("liquidity-monitor", settings.interval_sec, monitor.tick)
    else:
        settlement = SettlementEngine(
            signer,
            SettlementConfig(
                batch_size=settings.batch_size,
                unit_profit_wei=to_wei(settings.unit_profit_eth),
                eth_usd_rate=settings.eth_usd_rate,
                min_gas_floor_wei=to_wei(settings.min_gas_floor_eth),
                manual_wait_sec=settings.transfer_lock_wait_sec,
            ),
        )
        runner = PeriodicRunner("settlement", settings.interval_sec, settlement.tick)

    reporter = StatusReporter(
        client,
        mode=settings.mode,
        interval_sec=settings.interval_sec,
        settlement=settlement,
        monitor=monitor,
        signer=signer,
    )
    logger.info(
        "runtime_built",
        mode=settings.mode,
        chain=settings.chain,
        endpoints=[ep.label for ep in pool],
        preferred=pool.preferred.label if pool.preferred else None,
        quorum=settings.quorum,
        fan_out=settings.fan_out,
        interval_sec=settings.interval_sec,
        treasury=signer.address,
    )
    return EngineRuntime(
        settings=settings,
        client=client,
        signer=signer,
        withdrawals=withdrawals,
        reporter=reporter,
        runner=runner,
        settlement=settlement,
        monitor=monitor,
    )


def run_headless(settings: EngineSettings) -> None:
    """Run the configured engine without HTTP until SIGINT/SIGTERM."""
    runtime = build_runtime(settings)
    stop = threading.Event()

    def request_shutdown(*args: Any) -> None:
        stop.set()

    try:
        signal.signal(signal.SIGTERM, request_shutdown)
    except (AttributeError, ValueError):
        # Windows or not on the main thread
        pass

    runtime.client.connect()
    try:
        runtime.runner.run(stop)
    finally:
        runtime.client.close()


def main() -> int:
    """CLI entrypoint: load settings from env and run the engine loop."""
    try:
        run_headless(get_settings())
        return 0
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
        return 0
    except ConfigError as e:
        logger.error("runtime_config_error", **e.to_dict())
        return 2
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
