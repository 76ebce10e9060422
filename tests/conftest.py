"""
Pytest fixtures for Strategy Engine tests.

No network: every endpoint is a FakeTransport scripted per JSON-RPC method.
Time-dependent behaviour (cool-downs, confirmation deadlines) runs on a
ManualClock. Signing uses eth-account with a throwaway key.
"""

from __future__ import annotations

from typing import Any, Callable

import pytest

from strategy_engine.core.units import to_wei
from strategy_engine.rpc.endpoints import EndpointDescriptor, EndpointPool
from strategy_engine.rpc.quorum import QuorumConfig, QuorumRpcClient
from strategy_engine.treasury.signer import TreasurySigner

# Throwaway key (well-known test vector, never funded on a real chain)
TREASURY_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
DESTINATION = "0x5fbd2c8bbc2e2c0e8c8b29b1b17a1a5f5a3f1a5d"

URL_A = "https://rpc-a.example"
URL_B = "https://rpc-b.example"
URL_C = "https://rpc-c.example"
URL_PREFERRED = "https://preferred.example"

BASE_FEE_WEI = 10 * 10**9
PRIORITY_FEE_WEI = 1 * 10**9
TX_HASH = "0x" + "ab" * 32


class ManualClock:
    """Monotonic clock that only moves when told to (sleep() advances it)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """
    Scripted JSON-RPC endpoint. Each method maps to a value, an exception
    instance (raised) or a callable taking params.
    """

    def __init__(self, url: str, responses: dict[str, Any] | None = None) -> None:
        self.url = url
        self.responses: dict[str, Any] = dict(responses or {})
        self.calls: list[tuple[str, list[Any]]] = []
        self.closed = False

    def call(self, method: str, params: list[Any]) -> Any:
        self.calls.append((method, list(params)))
        if method not in self.responses:
            raise KeyError(method)
        response = self.responses[method]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    def close(self) -> None:
        self.closed = True


def healthy_responses(*, block: int = 100, balance_eth: str = "1", nonce: int = 0) -> dict[str, Any]:
    """A node that answers every method the engine uses; receipts confirm in block+1."""
    return {
        "eth_blockNumber": hex(block),
        "eth_getBalance": hex(to_wei(balance_eth)),
        "eth_getTransactionCount": hex(nonce),
        "eth_getBlockByNumber": {"number": hex(block), "baseFeePerGas": hex(BASE_FEE_WEI)},
        "eth_maxPriorityFeePerGas": hex(PRIORITY_FEE_WEI),
        "eth_sendRawTransaction": TX_HASH,
        "eth_getTransactionReceipt": {"blockNumber": hex(block + 1), "status": "0x1"},
    }


class FakeNetwork:
    """One FakeTransport per URL; factory() plugs into QuorumRpcClient."""

    def __init__(self) -> None:
        self.transports: dict[str, FakeTransport] = {}

    def add(self, url: str, responses: dict[str, Any] | None = None) -> FakeTransport:
        transport = FakeTransport(url, responses)
        self.transports[url] = transport
        return transport

    def __getitem__(self, url: str) -> FakeTransport:
        return self.transports[url]

    def factory(self, endpoint: EndpointDescriptor, timeout_sec: float) -> FakeTransport:
        return self.transports[endpoint.url]

    def set_all(self, method: str, response: Any) -> None:
        for transport in self.transports.values():
            transport.responses[method] = response

    def total(self, method: str) -> int:
        return sum(t.count(method) for t in self.transports.values())


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def network() -> FakeNetwork:
    """Three healthy public endpoints with 1 ETH in the treasury."""
    net = FakeNetwork()
    for url in (URL_A, URL_B, URL_C):
        net.add(url, healthy_responses())
    return net


@pytest.fixture
def make_client(network: FakeNetwork, clock: ManualClock) -> Callable[..., QuorumRpcClient]:
    """Build a QuorumRpcClient over the fake network. Config overrides as kwargs."""

    def _make(urls: tuple[str, ...] = (URL_A, URL_B, URL_C), preferred: str | None = None, **config: Any):
        pool = EndpointPool.from_urls(list(urls), preferred_url=preferred)
        return QuorumRpcClient(
            pool,
            QuorumConfig(**config),
            transport_factory=network.factory,
            clock=clock,
            sleep=clock.sleep,
        )

    return _make


@pytest.fixture
def rpc_client(make_client) -> QuorumRpcClient:
    return make_client()


@pytest.fixture
def signer(rpc_client: QuorumRpcClient) -> TreasurySigner:
    return TreasurySigner(rpc_client, TREASURY_KEY, confirmation_timeout_sec=10.0)
