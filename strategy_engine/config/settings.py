"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files.
- Validate required settings and provide defaults for optional ones.
- Expose typed, immutable settings (endpoints, treasury credential, batch
  economics, floors, quorum tuning) for the RPC client, treasury and engines.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from strategy_engine.config.env import (
    CHAIN_IDS,
    env_str,
    get_chain,
    get_preferred_rpc_url,
    get_public_rpc_urls,
    load_engine_env,
)
from strategy_engine.core.exceptions import ConfigError

MODE_SETTLEMENT = "settlement"
MODE_MONITOR = "monitor"
ENGINE_MODES = (MODE_SETTLEMENT, MODE_MONITOR)

DEFAULT_BATCH_SIZE = 1_000_000
DEFAULT_UNIT_PROFIT_ETH = Decimal("0.000000001")
DEFAULT_ETH_USD_RATE = Decimal("3500")
DEFAULT_SETTLEMENT_INTERVAL_SEC = 1.0
DEFAULT_MONITOR_INTERVAL_SEC = 10.0
MIN_INTERVAL_SEC = 1.0
DEFAULT_MIN_GAS_FLOOR_ETH = Decimal("0.01")
DEFAULT_RESERVED_GAS_FLOOR_ETH = Decimal("0.003")
DEFAULT_QUORUM = 1
DEFAULT_RPC_TIMEOUT_SEC = 5.0
DEFAULT_FAN_OUT = 3
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SEC = 60.0
DEFAULT_TRANSFER_GAS_LIMIT = 21_000
DEFAULT_CONFIRMATION_TIMEOUT_SEC = 120.0
DEFAULT_TRANSFER_LOCK_WAIT_SEC = 30.0
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 8081


def _env_int(name: str, default: int) -> int:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer", variable=name, value=raw) from e


def _env_float(name: str, default: float) -> float:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number", variable=name, value=raw) from e


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation as e:
        raise ConfigError(f"{name} must be a decimal amount", variable=name, value=raw) from e


@dataclass(frozen=True)
class EngineSettings:
    """Validated startup configuration. Construct via from_env() or directly in tests."""

    mode: str = MODE_SETTLEMENT
    rpc_urls: tuple[str, ...] = ()
    preferred_rpc_url: str | None = None
    chain: str = "mainnet"
    treasury_private_key: str | None = field(default=None, repr=False)
    withdrawal_address: str | None = None
    batch_size: int = DEFAULT_BATCH_SIZE
    unit_profit_eth: Decimal = DEFAULT_UNIT_PROFIT_ETH
    eth_usd_rate: Decimal = DEFAULT_ETH_USD_RATE
    interval_sec: float = DEFAULT_SETTLEMENT_INTERVAL_SEC
    min_gas_floor_eth: Decimal = DEFAULT_MIN_GAS_FLOOR_ETH
    reserved_gas_floor_eth: Decimal = DEFAULT_RESERVED_GAS_FLOOR_ETH
    quorum: int = DEFAULT_QUORUM
    rpc_timeout_sec: float = DEFAULT_RPC_TIMEOUT_SEC
    fan_out: int = DEFAULT_FAN_OUT
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    cooldown_sec: float = DEFAULT_COOLDOWN_SEC
    transfer_gas_limit: int = DEFAULT_TRANSFER_GAS_LIMIT
    confirmation_timeout_sec: float = DEFAULT_CONFIRMATION_TIMEOUT_SEC
    transfer_lock_wait_sec: float = DEFAULT_TRANSFER_LOCK_WAIT_SEC
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT

    def __post_init__(self) -> None:
        if self.mode not in ENGINE_MODES:
            raise ConfigError(f"ENGINE_MODE must be one of {ENGINE_MODES}", variable="ENGINE_MODE", value=self.mode)
        if self.chain not in CHAIN_IDS:
            raise ConfigError(f"CHAIN must be one of {tuple(CHAIN_IDS)}", variable="CHAIN", value=self.chain)
        # Same dedupe as EndpointPool.from_urls
        pool_size = len(set(self.rpc_urls) | ({self.preferred_rpc_url} if self.preferred_rpc_url else set()))
        if pool_size == 0:
            raise ConfigError("At least one RPC endpoint is required", variable="RPC_URLS")
        if self.quorum < 1 or self.quorum > pool_size:
            raise ConfigError(
                "RPC_QUORUM must be between 1 and the endpoint pool size",
                variable="RPC_QUORUM",
                value=self.quorum,
                pool_size=pool_size,
            )
        if self.fan_out < self.quorum:
            raise ConfigError("RPC_FAN_OUT must be >= RPC_QUORUM", variable="RPC_FAN_OUT", value=self.fan_out)
        if self.batch_size < 1:
            raise ConfigError("BATCH_SIZE must be positive", variable="BATCH_SIZE", value=self.batch_size)
        for name in ("unit_profit_eth", "eth_usd_rate", "min_gas_floor_eth", "reserved_gas_floor_eth"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name.upper()} must be non-negative", variable=name.upper())
        if self.rpc_timeout_sec <= 0 or self.confirmation_timeout_sec <= 0:
            raise ConfigError("Timeouts must be positive", variable="RPC_TIMEOUT_SEC")
        if self.failure_threshold < 1:
            raise ConfigError("RPC_FAILURE_THRESHOLD must be >= 1", variable="RPC_FAILURE_THRESHOLD")
        if self.transfer_gas_limit < 21_000:
            raise ConfigError("TRANSFER_GAS_LIMIT must be >= 21000", variable="TRANSFER_GAS_LIMIT")
        # Clamp like the worker configs: never spin faster than once per second
        object.__setattr__(self, "interval_sec", max(MIN_INTERVAL_SEC, float(self.interval_sec)))

    @property
    def chain_id(self) -> int:
        return CHAIN_IDS[self.chain]

    @property
    def has_credential(self) -> bool:
        return bool(self.treasury_private_key)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from environment (after loading .env)."""
        load_engine_env()
        mode = env_str("ENGINE_MODE", MODE_SETTLEMENT).lower()
        default_interval = DEFAULT_MONITOR_INTERVAL_SEC if mode == MODE_MONITOR else DEFAULT_SETTLEMENT_INTERVAL_SEC
        return cls(
            mode=mode,
            rpc_urls=tuple(get_public_rpc_urls()),
            preferred_rpc_url=get_preferred_rpc_url(),
            chain=get_chain(),
            treasury_private_key=env_str("TREASURY_PRIVATE_KEY") or None,
            withdrawal_address=env_str("WITHDRAWAL_ADDRESS") or None,
            batch_size=_env_int("BATCH_SIZE", DEFAULT_BATCH_SIZE),
            unit_profit_eth=_env_decimal("UNIT_PROFIT_ETH", DEFAULT_UNIT_PROFIT_ETH),
            eth_usd_rate=_env_decimal("ETH_USD_RATE", DEFAULT_ETH_USD_RATE),
            interval_sec=_env_float("EXECUTION_INTERVAL_SEC", default_interval),
            min_gas_floor_eth=_env_decimal("MIN_GAS_FLOOR_ETH", DEFAULT_MIN_GAS_FLOOR_ETH),
            reserved_gas_floor_eth=_env_decimal("RESERVED_GAS_FLOOR_ETH", DEFAULT_RESERVED_GAS_FLOOR_ETH),
            quorum=_env_int("RPC_QUORUM", DEFAULT_QUORUM),
            rpc_timeout_sec=_env_float("RPC_TIMEOUT_SEC", DEFAULT_RPC_TIMEOUT_SEC),
            fan_out=_env_int("RPC_FAN_OUT", DEFAULT_FAN_OUT),
            failure_threshold=_env_int("RPC_FAILURE_THRESHOLD", DEFAULT_FAILURE_THRESHOLD),
            cooldown_sec=_env_float("RPC_COOLDOWN_SEC", DEFAULT_COOLDOWN_SEC),
            transfer_gas_limit=_env_int("TRANSFER_GAS_LIMIT", DEFAULT_TRANSFER_GAS_LIMIT),
            confirmation_timeout_sec=_env_float("CONFIRMATION_TIMEOUT_SEC", DEFAULT_CONFIRMATION_TIMEOUT_SEC),
            transfer_lock_wait_sec=_env_float("TRANSFER_LOCK_WAIT_SEC", DEFAULT_TRANSFER_LOCK_WAIT_SEC),
            api_host=env_str("API_HOST", DEFAULT_API_HOST),
            api_port=_env_int("STRATEGY_PORT", _env_int("API_PORT", DEFAULT_API_PORT)),
        )


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """
    Return the current application settings (loaded once per process).

    Raises:
        ConfigError: when an environment value is malformed or inconsistent.
    """
    return EngineSettings.from_env()
