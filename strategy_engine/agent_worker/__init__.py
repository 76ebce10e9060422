"""
Agent worker package — periodic engines and their wiring.

SettlementEngine (aggregate-and-transfer cycle) or MonitorEngine (pool
monitor) runs on a PeriodicRunner thread; StatusReporter exposes their
last-known state to the API server.
"""

from strategy_engine.agent_worker.runtime import EngineRuntime, build_runtime

__all__ = ["EngineRuntime", "build_runtime"]
