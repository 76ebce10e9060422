"""
Tests for EngineSettings validation and environment loading.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import TREASURY_KEY, URL_A, URL_B
from strategy_engine.config.env import DEFAULT_PUBLIC_RPC_URLS, mask_rpc_url
from strategy_engine.config.settings import MODE_MONITOR, EngineSettings
from strategy_engine.core.exceptions import ConfigError

ENV_VARS = (
    "ENGINE_MODE",
    "RPC_URLS",
    "ETHERSCAN_RPC_URL",
    "PREFERRED_RPC_URL",
    "CHAIN",
    "TREASURY_PRIVATE_KEY",
    "WITHDRAWAL_ADDRESS",
    "BATCH_SIZE",
    "EXECUTION_INTERVAL_SEC",
    "RPC_QUORUM",
    "RPC_FAN_OUT",
    "MIN_GAS_FLOOR_ETH",
    "STRATEGY_PORT",
    "API_PORT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_from_env(clean_env):
    settings = EngineSettings.from_env()
    assert settings.mode == "settlement"
    assert settings.rpc_urls == DEFAULT_PUBLIC_RPC_URLS
    assert settings.preferred_rpc_url is None
    assert settings.chain_id == 1
    assert settings.batch_size == 1_000_000
    assert settings.min_gas_floor_eth == Decimal("0.01")
    assert settings.reserved_gas_floor_eth == Decimal("0.003")
    assert settings.interval_sec == 1.0
    assert settings.api_port == 8081
    assert settings.has_credential is False


def test_env_overrides(clean_env):
    clean_env.setenv("ENGINE_MODE", "monitor")
    clean_env.setenv("RPC_URLS", f"{URL_A}, {URL_B}")
    clean_env.setenv("ETHERSCAN_RPC_URL", "https://eth-mainnet.example/v2/abcdefghijklmnopqrstuvwxyz123456")
    clean_env.setenv("RPC_QUORUM", "2")
    clean_env.setenv("TREASURY_PRIVATE_KEY", TREASURY_KEY)
    settings = EngineSettings.from_env()
    assert settings.mode == MODE_MONITOR
    assert settings.interval_sec == 10.0
    assert settings.rpc_urls == (URL_A, URL_B)
    assert settings.quorum == 2
    assert settings.has_credential is True


def test_private_key_not_in_repr():
    settings = EngineSettings(rpc_urls=(URL_A,), treasury_private_key=TREASURY_KEY)
    assert TREASURY_KEY not in repr(settings)


def test_interval_clamped_to_one_second():
    assert EngineSettings(rpc_urls=(URL_A,), interval_sec=0.1).interval_sec == 1.0


@pytest.mark.parametrize(
    "overrides, variable",
    [
        ({"quorum": 3}, "RPC_QUORUM"),
        ({"quorum": 0}, "RPC_QUORUM"),
        ({"quorum": 2, "fan_out": 1}, "RPC_FAN_OUT"),
        ({"mode": "arbitrage"}, "ENGINE_MODE"),
        ({"chain": "polygon"}, "CHAIN"),
        ({"batch_size": 0}, "BATCH_SIZE"),
        ({"min_gas_floor_eth": Decimal("-1")}, "MIN_GAS_FLOOR_ETH"),
        ({"transfer_gas_limit": 20_000}, "TRANSFER_GAS_LIMIT"),
    ],
)
def test_invalid_settings_rejected(overrides, variable):
    with pytest.raises(ConfigError) as exc_info:
        EngineSettings(rpc_urls=(URL_A, URL_B), **overrides)
    assert exc_info.value.details["variable"] == variable


def test_empty_pool_rejected():
    with pytest.raises(ConfigError):
        EngineSettings(rpc_urls=())


def test_quorum_counts_distinct_endpoints():
    """A preferred URL repeated in RPC_URLS is one endpoint, not two."""
    with pytest.raises(ConfigError) as exc_info:
        EngineSettings(rpc_urls=(URL_A,), preferred_rpc_url=URL_A, quorum=2, fan_out=2)
    assert exc_info.value.details["variable"] == "RPC_QUORUM"
    assert exc_info.value.details["pool_size"] == 1
    settings = EngineSettings(rpc_urls=(URL_A,), preferred_rpc_url=URL_B, quorum=2, fan_out=2)
    assert settings.quorum == 2


def test_malformed_number_names_variable(clean_env):
    clean_env.setenv("BATCH_SIZE", "lots")
    with pytest.raises(ConfigError) as exc_info:
        EngineSettings.from_env()
    assert exc_info.value.details["variable"] == "BATCH_SIZE"


def test_mask_rpc_url():
    assert mask_rpc_url("https://api.etherscan.io/v2/api?chainid=1&apikey=SECRET") == (
        "https://api.etherscan.io/v2/api?chainid=1&apikey=***"
    )
    assert mask_rpc_url("https://eth-mainnet.example/v2/abcdefghijklmnopqrstuvwxyz123456") == (
        "https://eth-mainnet.example/v2/***"
    )
    assert mask_rpc_url(URL_A) == URL_A
