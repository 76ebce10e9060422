"""
Quorum-voting JSON-RPC client over an EndpointPool.

Reads fan out concurrently to the enabled endpoints (priority order, up to the
fan-out limit), each probe bounded by the per-endpoint timeout. Responses are
tallied in completion order; the first value reported by `quorum` endpoints
wins. If the first round ends without agreement, untried endpoints are polled
in further rounds until the pool is exhausted. Every probe feeds health
bookkeeping: errors, timeouts and disagreement count as failures, and an
endpoint reaching the failure threshold is disabled for a cool-down window
before being retried. The preferred endpoint is never penalised for
disagreement, only for hard errors.

Writes (raw transaction broadcast) go to exactly one endpoint at a time, in
priority order. Only connectivity-class failures move on to the next endpoint;
a rejection from the node is terminal.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

from strategy_engine.core.exceptions import (
    RETRYABLE_RPC_ERRORS,
    AllEndpointsUnavailable,
    ConfirmationTimeout,
    NoQuorum,
    RpcConnectivityError,
    RpcDisagreement,
    RpcError,
    RpcRejected,
    RpcTimeout,
)
from strategy_engine.engine_logging import get_logger
from strategy_engine.rpc.endpoints import EndpointDescriptor, EndpointHealth, EndpointPool
from strategy_engine.rpc.transport import (
    Transport,
    TransportFactory,
    http_transport_factory,
    is_already_known_message,
)

logger = get_logger(__name__)

T = TypeVar("T")

STATE_INITIALIZING = "initializing"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"

DEFAULT_CONFIRMATION_POLL_SEC = 2.0


@dataclass(frozen=True)
class QuorumResult(Generic[T]):
    """Agreed value plus who agreed and who did not (disagreed, errored or timed out)."""

    value: T
    agreeing: int
    agreeing_endpoints: tuple[str, ...] = ()
    dissenting: tuple[str, ...] = ()


@dataclass(frozen=True)
class FeeEstimate:
    """EIP-1559 fee inputs in wei."""

    base_fee_wei: int
    priority_fee_wei: int

    @property
    def max_fee_per_gas(self) -> int:
        # Headroom for two consecutive full blocks of base-fee growth
        return 2 * self.base_fee_wei + self.priority_fee_wei


@dataclass
class QuorumConfig:
    """Quorum and health tuning for the client."""

    quorum: int = 1
    timeout_sec: float = 5.0
    fan_out: int = 3
    failure_threshold: int = 3
    cooldown_sec: float = 60.0
    confirmation_timeout_sec: float = 120.0
    confirmation_poll_sec: float = DEFAULT_CONFIRMATION_POLL_SEC

    def __post_init__(self) -> None:
        self.quorum = max(1, int(self.quorum))
        self.fan_out = max(self.quorum, int(self.fan_out))
        self.failure_threshold = max(1, int(self.failure_threshold))


def hex_to_int(value: Any) -> int:
    """Parse a JSON-RPC quantity ("0x1a"). Raises ValueError on anything else."""
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"not a hex quantity: {value!r}")
    return int(value, 16)


def _fetch_fees(transport: Transport) -> FeeEstimate:
    block = transport.call("eth_getBlockByNumber", ["latest", False])
    if not isinstance(block, dict) or "baseFeePerGas" not in block:
        raise ValueError("latest block has no baseFeePerGas")
    priority = transport.call("eth_maxPriorityFeePerGas", [])
    return FeeEstimate(base_fee_wei=hex_to_int(block["baseFeePerGas"]), priority_fee_wei=hex_to_int(priority))


def _identity(value: Any) -> Hashable:
    return value


class QuorumRpcClient:
    """
    Shared, thread-safe RPC client. Health state is mutated only here, under a lock;
    everything else reads it through health_snapshot().
    """

    def __init__(
        self,
        pool: EndpointPool,
        config: QuorumConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._pool = pool
        self._config = config or QuorumConfig()
        factory = transport_factory or http_transport_factory
        self._transports: dict[str, Transport] = {
            ep.url: factory(ep, self._config.timeout_sec) for ep in pool
        }
        self._health: dict[str, EndpointHealth] = {ep.url: EndpointHealth() for ep in pool}
        self._health_lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep
        self.state = STATE_INITIALIZING
        self.last_block_height: int | None = None

    @property
    def pool(self) -> EndpointPool:
        return self._pool

    @property
    def config(self) -> QuorumConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Health bookkeeping
    # -------------------------------------------------------------------------

    def enabled_endpoints(self) -> list[EndpointDescriptor]:
        now = self._clock()
        with self._health_lock:
            return [ep for ep in self._pool if self._health[ep.url].is_enabled(now)]

    def health_snapshot(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        with self._health_lock:
            return {ep.label: self._health[ep.url].to_dict(now) for ep in self._pool}

    def _record_success(self, endpoint: EndpointDescriptor) -> None:
        with self._health_lock:
            health = self._health[endpoint.url]
            if health.disabled_until is not None:
                logger.info("rpc_endpoint_recovered", endpoint=endpoint.label)
            health.consecutive_failures = 0
            health.disabled_until = None
            health.last_error = None
            health.last_success_at = time.time()

    def _record_failure(self, endpoint: EndpointDescriptor, error: RpcError) -> None:
        disagreement = isinstance(error, RpcDisagreement)
        now = self._clock()
        with self._health_lock:
            health = self._health[endpoint.url]
            health.last_error = error.code
            if disagreement and endpoint.preferred:
                return
            health.consecutive_failures += 1
            if health.consecutive_failures < self._config.failure_threshold:
                return
            was_enabled = health.is_enabled(now)
            health.disabled_until = now + self._config.cooldown_sec
        if was_enabled:
            logger.warning(
                "rpc_endpoint_disabled",
                endpoint=endpoint.label,
                consecutive_failures=health.consecutive_failures,
                cooldown_sec=self._config.cooldown_sec,
                reason=error.code,
            )

    # -------------------------------------------------------------------------
    # Fan-out reads
    # -------------------------------------------------------------------------

    def _probe(self, endpoint: EndpointDescriptor, fetch: Callable[[Transport], T]) -> T:
        try:
            return fetch(self._transports[endpoint.url])
        except (ValueError, TypeError, KeyError) as e:
            raise RpcConnectivityError(f"malformed response: {e}", endpoint=endpoint.label) from e

    def _run_round(
        self,
        batch: list[EndpointDescriptor],
        fetch: Callable[[Transport], T],
    ) -> tuple[list[tuple[EndpointDescriptor, T]], list[tuple[EndpointDescriptor, RpcError]]]:
        """Probe batch concurrently. Returns (responses in completion order, failures)."""
        responses: list[tuple[EndpointDescriptor, T]] = []
        failures: list[tuple[EndpointDescriptor, RpcError]] = []
        handled: set[Any] = set()

        def collect(fut: Any, endpoint: EndpointDescriptor) -> None:
            handled.add(fut)
            try:
                responses.append((endpoint, fut.result()))
            except RpcError as e:
                failures.append((endpoint, e))

        executor = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="rpc-fanout")
        try:
            futures = {executor.submit(self._probe, ep, fetch): ep for ep in batch}
            try:
                for fut in as_completed(futures, timeout=self._config.timeout_sec):
                    collect(fut, futures[fut])
            except FuturesTimeout:
                pass
            for fut, endpoint in futures.items():
                if fut in handled:
                    continue
                if fut.done():
                    collect(fut, endpoint)
                else:
                    fut.cancel()
                    failures.append(
                        (endpoint, RpcTimeout("no response within timeout", endpoint=endpoint.label))
                    )
        finally:
            # Stragglers finish on their own (bounded by the transport timeout); results are discarded
            executor.shutdown(wait=False, cancel_futures=True)
        return responses, failures

    def _fan_out_read(
        self,
        operation: str,
        fetch: Callable[[Transport], T],
        *,
        quorum: int | None = None,
        key: Callable[[T], Hashable] = _identity,
    ) -> QuorumResult[T]:
        needed = quorum or self._config.quorum
        remaining = self.enabled_endpoints()
        if not remaining:
            self.state = STATE_DISCONNECTED
            raise AllEndpointsUnavailable(
                "No enabled RPC endpoints (all cooling down)", operation=operation, pool_size=len(self._pool)
            )

        tally: dict[Hashable, list[EndpointDescriptor]] = {}
        first_value: dict[Hashable, T] = {}
        responded: list[tuple[EndpointDescriptor, Hashable]] = []
        failures: list[tuple[EndpointDescriptor, RpcError]] = []
        decided: Hashable | None = None
        has_decision = False

        while remaining and not has_decision:
            batch = remaining[: self._config.fan_out]
            remaining = remaining[len(batch):]
            responses, round_failures = self._run_round(batch, fetch)
            failures.extend(round_failures)
            for endpoint, value in responses:
                k = key(value)
                responded.append((endpoint, k))
                tally.setdefault(k, []).append(endpoint)
                first_value.setdefault(k, value)
                if not has_decision and len(tally[k]) >= needed:
                    decided, has_decision = k, True

        for endpoint, error in failures:
            self._record_failure(endpoint, error)

        if has_decision:
            agreeing = tally[decided]
            dissenting = [ep for ep, k in responded if k != decided]
            for endpoint in agreeing:
                self._record_success(endpoint)
            for endpoint in dissenting:
                self._record_failure(
                    endpoint, RpcDisagreement("value disagrees with quorum", endpoint=endpoint.label)
                )
            if dissenting:
                logger.warning(
                    "rpc_quorum_disagreement",
                    operation=operation,
                    agreed=str(decided),
                    dissenting=[ep.label for ep in dissenting],
                )
            self.state = STATE_CONNECTED
            return QuorumResult(
                value=first_value[decided],
                agreeing=len(agreeing),
                agreeing_endpoints=tuple(ep.label for ep in agreeing),
                dissenting=tuple(ep.label for ep in dissenting) + tuple(ep.label for ep, _ in failures),
            )

        for endpoint, _ in responded:
            self._record_success(endpoint)
        if not responded:
            self.state = STATE_DISCONNECTED
            logger.error(
                "rpc_all_endpoints_failed",
                operation=operation,
                errors={ep.label: e.code for ep, e in failures},
            )
            raise AllEndpointsUnavailable(
                f"{operation}: every endpoint failed",
                operation=operation,
                errors={ep.label: e.code for ep, e in failures},
            )
        self.state = STATE_CONNECTED
        votes = {str(k): len(eps) for k, eps in tally.items()}
        logger.warning("rpc_no_quorum", operation=operation, quorum=needed, votes=votes, failed=len(failures))
        raise NoQuorum(
            f"{operation}: fewer than {needed} endpoints agree",
            operation=operation,
            quorum=needed,
            votes=votes,
            failed=len(failures),
        )

    def current_block_height(self) -> QuorumResult[int]:
        result = self._fan_out_read(
            "block_height", lambda t: hex_to_int(t.call("eth_blockNumber", []))
        )
        self.last_block_height = result.value
        return result

    def account_balance(self, address: str) -> QuorumResult[int]:
        return self._fan_out_read(
            "account_balance", lambda t: hex_to_int(t.call("eth_getBalance", [address, "latest"]))
        )

    def transaction_count(self, address: str) -> QuorumResult[int]:
        """Pending nonce for address."""
        return self._fan_out_read(
            "transaction_count", lambda t: hex_to_int(t.call("eth_getTransactionCount", [address, "pending"]))
        )

    def current_fee_estimate(self) -> QuorumResult[FeeEstimate]:
        # Fee data legitimately differs between nodes and blocks: first responder wins
        return self._fan_out_read("fee_estimate", _fetch_fees, quorum=1)

    def connect(self) -> bool:
        """Initial connectivity probe; logs the outcome and never raises."""
        self.state = STATE_CONNECTING
        try:
            result = self.current_block_height()
        except RpcError as e:
            self.state = STATE_DISCONNECTED
            logger.error("rpc_connect_failed", error=e.message, code=e.code)
            return False
        logger.info(
            "rpc_connected",
            block_number=result.value,
            agreeing=result.agreeing,
            endpoints=[ep.label for ep in self._pool],
        )
        return True

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def submit_signed_transfer(self, raw_transaction: str, tx_hash: str | None = None) -> str:
        """
        Broadcast a signed transaction through one endpoint at a time, in priority order.
        Returns the transaction hash. RpcRejected propagates immediately.
        """
        candidates = self.enabled_endpoints()
        attempts: dict[str, str] = {}
        for endpoint in candidates:
            try:
                result = self._transports[endpoint.url].call("eth_sendRawTransaction", [raw_transaction])
            except RpcRejected as e:
                # The node is fine; the transaction is not
                self._record_success(endpoint)
                if tx_hash and is_already_known_message(e.message):
                    logger.info("rpc_submit_already_known", endpoint=endpoint.label, tx_id=tx_hash)
                    return tx_hash
                logger.warning("rpc_submit_rejected", endpoint=endpoint.label, error=e.message)
                raise
            except RETRYABLE_RPC_ERRORS as e:
                self._record_failure(endpoint, e)
                attempts[endpoint.label] = e.code
                logger.warning("rpc_submit_failover", endpoint=endpoint.label, error=e.message, code=e.code)
                continue
            self._record_success(endpoint)
            submitted = str(result)
            logger.info("rpc_submit_accepted", endpoint=endpoint.label, tx_id=submitted)
            return submitted
        raise AllEndpointsUnavailable(
            "Transaction could not be submitted to any endpoint",
            operation="submit_signed_transfer",
            errors=attempts,
        )

    def _find_receipt(self, tx_id: str) -> dict[str, Any] | None:
        for endpoint in self.enabled_endpoints()[: self._config.fan_out]:
            try:
                receipt = self._transports[endpoint.url].call("eth_getTransactionReceipt", [tx_id])
            except RETRYABLE_RPC_ERRORS as e:
                self._record_failure(endpoint, e)
                continue
            self._record_success(endpoint)
            if receipt:
                return receipt
        return None

    def wait_for_confirmation(self, tx_id: str, timeout_sec: float | None = None) -> int:
        """
        Poll for a receipt until timeout. Returns the block number it was mined in.

        Raises:
            RpcRejected: the transaction was mined but reverted.
            ConfirmationTimeout: no receipt before the deadline (it may still confirm later).
        """
        timeout = self._config.confirmation_timeout_sec if timeout_sec is None else timeout_sec
        deadline = self._clock() + timeout
        while True:
            receipt = self._find_receipt(tx_id)
            if receipt is not None:
                try:
                    block_number = hex_to_int(receipt["blockNumber"])
                    status = hex_to_int(receipt.get("status", "0x1"))
                except (KeyError, ValueError) as e:
                    raise RpcConnectivityError(f"malformed receipt: {e}", tx_id=tx_id) from e
                if status == 0:
                    raise RpcRejected("transaction reverted", tx_id=tx_id, block_number=block_number)
                return block_number
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ConfirmationTimeout(
                    "Transaction not confirmed before timeout; it may still confirm later",
                    tx_id=tx_id,
                    timeout_sec=timeout,
                )
            self._sleep(min(self._config.confirmation_poll_sec, remaining))

    def close(self) -> None:
        for transport in self._transports.values():
            transport.close()
