"""
JSON-RPC over HTTP for a single endpoint, with error classification.

Every failure is mapped onto the RPC taxonomy so the quorum client can decide
whether to try another endpoint:

- RpcTimeout / RpcConnectivityError: transport problems, HTTP 5xx/429, node-side
  errors that say nothing about the request itself. Retryable elsewhere.
- RpcRejected: the node understood and refused the request (insufficient funds,
  nonce too low, bad signature...). Terminal for the call.
"""

from __future__ import annotations

import itertools
from typing import Any, Callable, Protocol

import httpx

from strategy_engine.core.exceptions import RpcConnectivityError, RpcRejected, RpcTimeout
from strategy_engine.engine_logging import get_logger
from strategy_engine.rpc.endpoints import EndpointDescriptor

logger = get_logger(__name__)

# Message fragments (lower-cased) that mean the node refused the transaction itself
REJECTION_MARKERS: tuple[str, ...] = (
    "insufficient funds",
    "nonce too low",
    "underpriced",
    "invalid signature",
    "invalid sender",
    "intrinsic gas too low",
    "exceeds block gas limit",
    "gas limit reached",
    "max fee per gas less than block base fee",
    "invalid chain id",
    "only replay-protected",
)
ALREADY_KNOWN_MARKERS: tuple[str, ...] = ("already known", "known transaction")


class Transport(Protocol):
    """Anything that can execute one JSON-RPC method against one endpoint."""

    def call(self, method: str, params: list[Any]) -> Any: ...

    def close(self) -> None: ...


TransportFactory = Callable[[EndpointDescriptor, float], Transport]


def is_rejection_message(message: str) -> bool:
    text = message.lower()
    return any(marker in text for marker in REJECTION_MARKERS)


def is_already_known_message(message: str) -> bool:
    text = message.lower()
    return any(marker in text for marker in ALREADY_KNOWN_MARKERS)


def classify_rpc_error(endpoint: str, method: str, error: Any) -> Exception:
    """Map a JSON-RPC error object onto RpcRejected or RpcConnectivityError."""
    if isinstance(error, dict):
        message = str(error.get("message", ""))
        code = error.get("code")
    else:
        message = str(error)
        code = None
    if is_rejection_message(message) or is_already_known_message(message):
        return RpcRejected(message, endpoint=endpoint, method=method, rpc_code=code)
    return RpcConnectivityError(message or "rpc error", endpoint=endpoint, method=method, rpc_code=code)


class HttpJsonRpcTransport:
    """One pooled httpx.Client per endpoint; timeout applies to the whole request."""

    _ids = itertools.count(1)

    def __init__(self, endpoint: EndpointDescriptor, timeout_sec: float) -> None:
        self._endpoint = endpoint
        self._client = httpx.Client(timeout=timeout_sec)

    def call(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        label = self._endpoint.label
        try:
            resp = self._client.post(self._endpoint.url, json=body)
        except httpx.TimeoutException as e:
            raise RpcTimeout(f"{method} timed out", endpoint=label, method=method) from e
        except httpx.HTTPError as e:
            raise RpcConnectivityError(str(e) or type(e).__name__, endpoint=label, method=method) from e
        if resp.status_code >= 400:
            raise RpcConnectivityError(
                f"HTTP {resp.status_code}", endpoint=label, method=method, status_code=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise RpcConnectivityError("invalid JSON response", endpoint=label, method=method) from e
        if not isinstance(data, dict):
            raise RpcConnectivityError("unexpected JSON-RPC payload", endpoint=label, method=method)
        err = data.get("error")
        if err:
            logger.debug("rpc_remote_error", endpoint=label, method=method, error=str(err))
            raise classify_rpc_error(label, method, err)
        if "result" not in data:
            raise RpcConnectivityError("JSON-RPC response without result", endpoint=label, method=method)
        return data["result"]

    def close(self) -> None:
        self._client.close()


def http_transport_factory(endpoint: EndpointDescriptor, timeout_sec: float) -> Transport:
    return HttpJsonRpcTransport(endpoint, timeout_sec)
